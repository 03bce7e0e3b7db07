"""
Request orchestration.

The Orchestrator drives one request end to end: it resolves the provider,
renders templated prompts, runs streaming or non-streaming completions,
routes chunks through the ResponseProcessor, applies extracted file
actions, and records chat turns in the ConversationManager.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any

from ..conversations.manager import DEFAULT_CONTEXT_TOKENS, ConversationManager
from ..core.exceptions import ConversationNotFoundError, NoProviderAvailableError
from ..core.models import (
    ActionSet,
    Attachment,
    CompletionOptions,
    CompletionResult,
    Message,
    StreamChunk,
    new_id,
)
from ..processing.response_processor import ResponseProcessor, extract_code_blocks
from ..prompts.manager import PromptManager
from ..providers.base import BaseProvider, ChunkCallback, Prompt, emit_chunk
from ..providers.registry import ProviderRegistry
from .types import ChatResult, StreamResult

logger = logging.getLogger(__name__)


class Orchestrator:
    """
    Coordinates providers, prompts, response processing and conversations.

    Collaborators are passed in explicitly so that several independent
    instances can coexist, e.g. one per test.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        prompt_manager: PromptManager,
        response_processor: ResponseProcessor,
        conversation_manager: ConversationManager,
        context_tokens: int = DEFAULT_CONTEXT_TOKENS,
    ):
        self.registry = registry
        self.prompt_manager = prompt_manager
        self.response_processor = response_processor
        self.conversation_manager = conversation_manager
        self.context_tokens = context_tokens

        self._active_streams: set[str] = set()
        self._cancelled: set[str] = set()
        self._tasks: dict[str, asyncio.Task] = {}

        logger.debug("Orchestrator initialized")

    def resolve_provider(self, provider_type: str | None = None) -> BaseProvider:
        """
        Return the requested provider, or the default one.

        Raises:
            NoProviderAvailableError: No type given and no default set
            ProviderNotInitializedError: The requested type is not initialized
        """
        if provider_type is None and self.registry.get_default_provider() is None:
            raise NoProviderAvailableError()
        return self.registry.get_provider(provider_type)

    # Completions

    async def generate_completion(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
    ) -> CompletionResult:
        provider = self.resolve_provider(provider_type)
        return await provider.generate_completion(prompt, options)

    async def stream_completion(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
        stream_id: str | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """
        Stream processed chunks tagged with a stream id.

        The terminal chunk carries the cleaned response and actions, or the
        error. Cancelling the stream id stops delivery; chunks already
        delivered stand.
        """
        provider = self.resolve_provider(provider_type)
        stream_id = stream_id or new_id()
        self._active_streams.add(stream_id)

        try:
            async with aclosing(provider.stream_completion(prompt, options)) as raw:
                async with aclosing(
                    self.response_processor.process_stream(raw, stream_id)
                ) as processed:
                    async for chunk in processed:
                        if stream_id in self._cancelled:
                            logger.info(f"Stream {stream_id} cancelled")
                            break
                        yield chunk
        finally:
            self._active_streams.discard(stream_id)
            if stream_id in self._cancelled:
                self._cancelled.discard(stream_id)
                self.response_processor.clear_response_cache(stream_id)

    async def generate_completion_stream(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        on_chunk: ChunkCallback | None = None,
        provider_type: str | None = None,
        stream_id: str | None = None,
    ) -> StreamResult:
        """
        Stream a completion to ``on_chunk`` and return the aggregate result.

        Args:
            prompt: Plain text or role/content messages
            options: Completion options
            on_chunk: Sync or async callable receiving processed chunks
            provider_type: Provider to use instead of the default
            stream_id: Identifier to tag chunks with (generated when omitted)

        Returns:
            StreamResult with the cleaned completion and extracted actions
        """
        provider = self.resolve_provider(provider_type)
        stream_id = stream_id or new_id()
        model = provider.resolve_options(options).model

        final: StreamChunk | None = None
        async for chunk in self.stream_completion(prompt, options, provider_type, stream_id):
            if chunk.done:
                final = chunk
            await emit_chunk(on_chunk, chunk)

        if final is None:
            return StreamResult(
                stream_id=stream_id,
                success=False,
                model=model,
                error="Stream cancelled",
                cancelled=True,
            )
        if final.error:
            return StreamResult(stream_id=stream_id, success=False, model=model, error=final.error)

        return StreamResult(
            stream_id=stream_id,
            success=True,
            completion=final.full_response or "",
            model=model,
            actions=final.actions or ActionSet(),
            usage=final.usage,
        )

    def start_completion_stream(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        on_chunk: ChunkCallback | None = None,
        provider_type: str | None = None,
    ) -> str:
        """
        Start a streamed completion in the background and return its stream id.

        The provider is resolved up front so that a missing provider fails
        here rather than inside the task.
        """
        self.resolve_provider(provider_type)
        stream_id = new_id()
        task = asyncio.create_task(
            self.generate_completion_stream(prompt, options, on_chunk, provider_type, stream_id)
        )
        self._tasks[stream_id] = task
        task.add_done_callback(lambda _: self._forget_stream(stream_id))
        return stream_id

    def _forget_stream(self, stream_id: str) -> None:
        self._tasks.pop(stream_id, None)
        self._cancelled.discard(stream_id)

    async def wait_for_stream(self, stream_id: str) -> StreamResult | None:
        task = self._tasks.get(stream_id)
        if task is None:
            return None
        return await task

    def cancel_stream(self, stream_id: str) -> bool:
        """
        Request cancellation of an in-flight stream.

        Cancellation is cooperative: the network call is not interrupted,
        but no further chunks are delivered and the stream's buffer is
        dropped.

        Returns:
            True if the stream was in flight
        """
        self.response_processor.clear_response_cache(stream_id)
        active = stream_id in self._active_streams or stream_id in self._tasks
        if active:
            self._cancelled.add(stream_id)
        return active

    def is_streaming(self, stream_id: str) -> bool:
        return stream_id in self._active_streams

    # Templated requests

    async def generate_code(
        self,
        requirements: str,
        language: str | None = None,
        project_context: str = "",
        additional_notes: str = "",
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
    ) -> dict[str, Any]:
        """
        Generate code from requirements via the ``codeGeneration`` template.

        Returns:
            The completion result plus ``code`` and ``language`` taken from
            the first fenced block, or the whole completion if there is none
        """
        provider = self.resolve_provider(provider_type)
        language = language or "javascript"
        prompt = self.prompt_manager.format_template(
            "codeGeneration",
            {
                "language": language,
                "requirements": requirements,
                "projectContext": project_context,
                "additionalNotes": additional_notes,
            },
        )

        result = await provider.generate_completion(prompt, options)
        payload = result.to_dict()
        if result.success:
            blocks = extract_code_blocks(result.completion)
            payload["code"] = blocks[0].code if blocks else result.completion
            payload["language"] = blocks[0].language if blocks else language
        return payload

    # Chat

    async def chat(
        self,
        message: str,
        conversation_id: str | None = None,
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
        on_chunk: ChunkCallback | None = None,
        code_context: list[dict[str, Any]] | None = None,
        project_context: str = "",
        attachments: list[Attachment | dict[str, Any]] | None = None,
        apply_actions: bool = True,
    ) -> ChatResult:
        """
        Run one chat turn.

        History is selected within the context token budget, the prompt is
        assembled, and the response is streamed through ``on_chunk``. Only a
        turn that finalizes successfully is stored: the user message, the
        assistant message with its actions and usage, and the conversation's
        usage totals. Failed or cancelled turns store nothing.

        Args:
            message: User message
            conversation_id: Existing conversation; a new one is created when omitted
            options: Completion options
            provider_type: Provider to use instead of the default
            on_chunk: Sync or async callable receiving processed chunks
            code_context: Code snippets to include in the prompt
            project_context: Free-form project description
            attachments: Files attached to the user message
            apply_actions: Apply extracted file actions through the executor

        Returns:
            ChatResult describing what was generated, applied and stored

        Raises:
            NoProviderAvailableError: No provider to send the request to
            ConversationNotFoundError: Unknown conversation id
        """
        provider = self.resolve_provider(provider_type)
        opts = provider.resolve_options(options)

        if conversation_id is None:
            conversation_id = await self.conversation_manager.create_conversation()
        elif self.conversation_manager.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)

        async with self.conversation_manager.turn_lock(conversation_id):
            return await self._run_chat_turn(
                conversation_id,
                message,
                provider_type,
                opts,
                on_chunk,
                code_context,
                project_context,
                attachments,
                apply_actions,
            )

    async def _run_chat_turn(
        self,
        conversation_id: str,
        message: str,
        provider_type: str | None,
        opts: CompletionOptions,
        on_chunk: ChunkCallback | None,
        code_context: list[dict[str, Any]] | None,
        project_context: str,
        attachments: list[Attachment | dict[str, Any]] | None,
        apply_actions: bool,
    ) -> ChatResult:
        """Stream one turn and store it; the caller holds the turn lock."""
        history = self.conversation_manager.generate_ai_context_history(
            conversation_id, self.context_tokens
        )
        prompt = self.prompt_manager.create_prompt(
            message,
            code_context=code_context,
            conversation_history=history,
            project_context=project_context,
            temperature=opts.temperature,
            max_tokens=opts.max_tokens,
        )

        stream_id = new_id()
        final: StreamChunk | None = None
        async for chunk in self.stream_completion(
            prompt["messages"], opts, provider_type, stream_id
        ):
            if chunk.done:
                final = chunk
                continue
            await emit_chunk(on_chunk, chunk)

        result = ChatResult(
            stream_id=stream_id, success=False, model=opts.model, conversation_id=conversation_id
        )
        if final is None:
            result.cancelled = True
            result.error = "Stream cancelled"
            return result
        if final.error:
            result.error = final.error
            await emit_chunk(on_chunk, final)
            return result

        actions = final.actions or ActionSet()
        if apply_actions and actions.has_file_operations():
            result.file_results = await self.response_processor.process_file_operations(actions)

        user_message, assistant_message = await self.conversation_manager.append_turn(
            conversation_id,
            Message(role="user", content=message, attachments=list(attachments or [])),
            Message(
                role="assistant",
                content=final.full_response or "",
                actions=actions if actions.has_actions() else None,
                usage=final.usage,
            ),
            usage=final.usage,
        )

        result.success = True
        result.completion = final.full_response or ""
        result.actions = actions
        result.usage = final.usage
        result.user_message_id = user_message.id
        result.assistant_message_id = assistant_message.id

        await emit_chunk(on_chunk, final)
        logger.info(f"Chat turn stored in conversation {conversation_id}")
        return result

    async def close(self) -> None:
        """Cancel background streams and wait for them to finish."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
