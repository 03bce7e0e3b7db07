"""
Conversation management.

The ConversationManager owns conversations in memory and keeps one JSON
record per conversation on disk, rewritten after every mutation. Mutations
of one conversation are serialized with a per-conversation lock so that
concurrent writers cannot interleave their read-modify-persist cycles.
"""

import asyncio
import logging
import math
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from ..core.exceptions import (
    ConversationNotFoundError,
    ImmutableMessageError,
    MessageNotFoundError,
    ParseError,
)
from ..core.models import ActionSet, Conversation, Message, MessageRole, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_STORAGE_DIR = Path("~/.mimir/conversations")
DEFAULT_CONTEXT_TOKENS = 4000
DEFAULT_MESSAGE_OVERHEAD = 100
TITLE_LENGTH = 50
SNIPPET_LENGTH = 150


class ConversationManager:
    """
    In-memory conversations backed by per-conversation JSON records.

    Example:
        >>> manager = ConversationManager(tmp_path)
        >>> conversation_id = await manager.create_conversation(project_id="p1")
        >>> await manager.add_message(conversation_id, {"role": "user", "content": "Hi"})
        >>> manager.generate_ai_context_history(conversation_id, max_tokens=500)
        [{'role': 'user', 'content': 'Hi'}]
    """

    def __init__(
        self,
        storage_dir: str | Path | None = None,
        message_overhead: int = DEFAULT_MESSAGE_OVERHEAD,
    ):
        self.storage_dir = Path(storage_dir or DEFAULT_STORAGE_DIR).expanduser()
        self.storage_dir.mkdir(parents=True, exist_ok=True)
        self.message_overhead = message_overhead

        self._conversations: dict[str, Conversation] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._turn_locks: dict[str, asyncio.Lock] = {}
        self.active_conversation_id: str | None = None

        logger.info(f"Initialized ConversationManager with storage_dir: {self.storage_dir}")

    # Persistence

    def _record_path(self, conversation_id: str) -> Path:
        return self.storage_dir / f"{conversation_id}.json"

    def _lock_for(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    def turn_lock(self, conversation_id: str) -> asyncio.Lock:
        """
        Lock held by a caller for a whole chat turn on one conversation.

        It is separate from the mutation lock, so the holder can still call
        mutating methods. Turns that hold it read history and store their
        messages one after another.
        """
        lock = self._turn_locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._turn_locks[conversation_id] = lock
        return lock

    async def _save(self, conversation: Conversation) -> None:
        payload = conversation.model_dump_json(indent=2)
        await asyncio.to_thread(self._write_record, self._record_path(conversation.id), payload)

    @staticmethod
    def _write_record(path: Path, payload: str) -> None:
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(payload, encoding="utf-8")
        tmp_path.replace(path)

    @staticmethod
    def _read_record(path: Path) -> Conversation:
        try:
            return Conversation.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, UnicodeDecodeError, ValidationError) as e:
            raise ParseError(f"Malformed conversation record: {e}", source=str(path)) from e

    async def load_conversations(self) -> int:
        """
        Load every conversation record from the storage directory.

        Records that cannot be parsed are logged and skipped.

        Returns:
            Number of conversations loaded
        """
        count = 0
        for path in sorted(self.storage_dir.glob("*.json")):
            try:
                conversation = await asyncio.to_thread(self._read_record, path)
            except ParseError as e:
                logger.warning(f"Skipping conversation record {path.name}: {e}")
                continue
            self._conversations[conversation.id] = conversation
            count += 1

        logger.info(f"Loaded {count} conversations from {self.storage_dir}")
        return count

    @asynccontextmanager
    async def _mutate(self, conversation_id: str) -> AsyncIterator[Conversation]:
        """Hold the conversation's lock, yield it, then touch and persist it."""
        async with self._lock_for(conversation_id):
            conversation = self._require(conversation_id)
            yield conversation
            conversation.touch()
            await self._save(conversation)

    def _require(self, conversation_id: str) -> Conversation:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return conversation

    # Conversations

    async def create_conversation(
        self,
        title: str | None = None,
        project_id: str | None = None,
        file_path: str | None = None,
        initial_context: list[Any] | None = None,
    ) -> str:
        """
        Create, activate and persist a new conversation.

        Args:
            title: Display title; derived from the first user message when omitted
            project_id: Owning project
            file_path: Associated file
            initial_context: Initial context items

        Returns:
            The new conversation's id
        """
        conversation = Conversation(
            title=title,
            project_id=project_id,
            file_path=file_path,
            context=list(initial_context or []),
        )
        self._conversations[conversation.id] = conversation
        self.active_conversation_id = conversation.id

        async with self._lock_for(conversation.id):
            await self._save(conversation)

        logger.info(f"Created conversation {conversation.id}")
        return conversation.id

    def get_conversation(self, conversation_id: str) -> Conversation | None:
        return self._conversations.get(conversation_id)

    def get_active_conversation(self) -> Conversation | None:
        if not self.active_conversation_id:
            return None
        return self._conversations.get(self.active_conversation_id)

    def set_active_conversation(self, conversation_id: str) -> None:
        self._require(conversation_id)
        self.active_conversation_id = conversation_id

    def get_all_conversations(
        self,
        project_id: str | None = None,
        file_path: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[Conversation]:
        """Filter, sort by ``updated_at`` newest first, then paginate."""
        conversations = list(self._conversations.values())

        if project_id:
            conversations = [c for c in conversations if c.project_id == project_id]
        if file_path:
            conversations = [c for c in conversations if c.file_path == file_path]

        conversations.sort(key=lambda c: c.updated_at, reverse=True)

        end = offset + limit if limit is not None else None
        return conversations[offset:end]

    async def delete_conversation(self, conversation_id: str) -> bool:
        """
        Remove a conversation from memory and disk.

        Returns:
            False if the id was unknown
        """
        if conversation_id not in self._conversations:
            return False

        async with self._lock_for(conversation_id):
            self._conversations.pop(conversation_id, None)
            try:
                await asyncio.to_thread(
                    self._record_path(conversation_id).unlink, missing_ok=True
                )
            except OSError as e:
                logger.error(f"Error deleting conversation file for {conversation_id}: {e}")

        self._locks.pop(conversation_id, None)
        self._turn_locks.pop(conversation_id, None)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None

        logger.info(f"Deleted conversation {conversation_id}")
        return True

    # Messages

    async def add_message(
        self, conversation_id: str, message: Message | dict[str, Any]
    ) -> Message:
        """
        Append a message with a freshly generated id and timestamp.

        Raises:
            ConversationNotFoundError: Unknown conversation
        """
        stored = self._prepare_message(message)

        async with self._mutate(conversation_id) as conversation:
            self._append(conversation, stored)

        return stored

    async def append_turn(
        self,
        conversation_id: str,
        user_message: Message | dict[str, Any],
        assistant_message: Message | dict[str, Any],
        usage: TokenUsage | None = None,
    ) -> tuple[Message, Message]:
        """
        Store a completed chat turn in a single persisted mutation.

        Both messages are appended together and ``usage`` is folded into the
        totals, so a turn is stored whole or not at all.

        Returns:
            The stored user and assistant messages

        Raises:
            ConversationNotFoundError: Unknown conversation
        """
        user = self._prepare_message(user_message)
        assistant = self._prepare_message(assistant_message)

        async with self._mutate(conversation_id) as conversation:
            self._append(conversation, user)
            self._append(conversation, assistant)
            if usage is not None:
                conversation.usage = conversation.usage.add(usage)

        return user, assistant

    @staticmethod
    def _prepare_message(message: Message | dict[str, Any]) -> Message:
        data = message.model_dump() if isinstance(message, Message) else dict(message)
        data.pop("id", None)
        data.pop("timestamp", None)
        return Message.model_validate(data)

    @staticmethod
    def _append(conversation: Conversation, message: Message) -> None:
        conversation.messages.append(message)
        if conversation.title is None and message.role == MessageRole.USER.value:
            conversation.title = message.content.strip()[:TITLE_LENGTH] or None

    def _find_message(self, conversation: Conversation, message_id: str) -> Message:
        for message in reversed(conversation.messages):
            if message.id == message_id:
                return message
        raise MessageNotFoundError(conversation.id, message_id)

    async def append_to_message(self, conversation_id: str, message_id: str, text: str) -> Message:
        """
        Append text to a message that is still streaming.

        Raises:
            ImmutableMessageError: The message has been finalized
        """
        async with self._mutate(conversation_id) as conversation:
            message = self._find_message(conversation, message_id)
            if not message.streaming:
                raise ImmutableMessageError(message_id)
            message.content += text
        return message

    async def finalize_message(
        self,
        conversation_id: str,
        message_id: str,
        content: str | None = None,
        actions: ActionSet | None = None,
        usage: TokenUsage | None = None,
    ) -> Message:
        """Clear a message's streaming flag, optionally setting its final state."""
        async with self._mutate(conversation_id) as conversation:
            message = self._find_message(conversation, message_id)
            if not message.streaming:
                raise ImmutableMessageError(message_id)
            if content is not None:
                message.content = content
            if actions is not None:
                message.actions = actions
            if usage is not None:
                message.usage = usage
            message.streaming = False
        return message

    async def record_usage(self, conversation_id: str, usage: TokenUsage) -> TokenUsage:
        """Fold usage into the conversation's running totals."""
        async with self._mutate(conversation_id) as conversation:
            conversation.usage = conversation.usage.add(usage)
        return conversation.usage

    # Context

    async def update_context(self, conversation_id: str, context: list[Any]) -> None:
        async with self._mutate(conversation_id) as conversation:
            conversation.context = list(context)

    async def add_context_item(self, conversation_id: str, item: Any) -> None:
        async with self._mutate(conversation_id) as conversation:
            conversation.context.append(item)

    async def clear_context(self, conversation_id: str) -> None:
        async with self._mutate(conversation_id) as conversation:
            conversation.context = []

    def estimate_message_tokens(self, content: str) -> int:
        return math.ceil(len(content) / 4) + self.message_overhead

    def generate_ai_context_history(
        self, conversation_id: str, max_tokens: int = DEFAULT_CONTEXT_TOKENS
    ) -> list[dict[str, str]]:
        """
        Select the most recent messages that fit in a token budget.

        Walks newest first and stops at the first message that would push
        the estimate over ``max_tokens``; older messages are dropped
        wholesale. Messages still streaming are skipped.

        Args:
            conversation_id: Conversation to read
            max_tokens: Token budget

        Returns:
            ``{role, content}`` dicts in chronological order, empty for an
            unknown conversation
        """
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return []

        selected: list[dict[str, str]] = []
        used = 0
        for message in reversed(conversation.messages):
            if message.streaming:
                continue
            cost = self.estimate_message_tokens(message.content)
            if used + cost > max_tokens:
                break
            selected.append({"role": message.role, "content": message.content})
            used += cost

        selected.reverse()
        return selected

    def create_conversation_summary(self, conversation_id: str) -> str:
        """Markdown summary with counts, project, file and message snippets."""
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            return ""

        counts = {role.value: 0 for role in MessageRole}
        for message in conversation.messages:
            counts[message.role] += 1

        created = conversation.created_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")
        updated = conversation.updated_at.astimezone().strftime("%Y-%m-%d %H:%M:%S")

        lines = [
            f"# Conversation: {conversation.title or 'New Conversation'}",
            "",
            f"- Started: {created}",
            f"- Last updated: {updated}",
            f"- Messages: {len(conversation.messages)} "
            f"({counts['user']} user, {counts['assistant']} assistant)",
        ]
        if conversation.project_id:
            lines.append(f"- Project: {conversation.project_id}")
        if conversation.file_path:
            lines.append(f"- File: {conversation.file_path}")

        if conversation.messages:
            first = conversation.messages[0]
            lines += ["", "## Started with:", _snippet(first.content)]
            last = conversation.messages[-1]
            if last is not first:
                lines += ["", "## Most recent:", _snippet(last.content)]

        return "\n".join(lines) + "\n"


def _snippet(content: str) -> str:
    if len(content) > SNIPPET_LENGTH:
        return content[:SNIPPET_LENGTH] + "..."
    return content
