"""
Application facade for Mimir.

MimirApplication owns one instance of every component (provider registry,
prompt manager, response processor, conversation manager, key store and
orchestrator) and exposes them to callers as a flat async surface. Every
call returns a dict with a ``success`` flag; failures are logged and
reported under ``error`` instead of being raised.
"""

import functools
import logging
from typing import Any

import httpx

from .config.settings import AppSettings, get_settings
from .conversations.manager import ConversationManager
from .core.exceptions import ConversationNotFoundError, MimirError, UnknownProviderTypeError
from .core.models import CompletionOptions, Message
from .orchestration.orchestrator import Orchestrator
from .processing.file_actions import FileActionExecutor, LocalFileActionExecutor
from .processing.response_processor import ResponseProcessor
from .prompts.manager import PromptManager
from .providers import PROVIDER_TYPES
from .providers.base import ChunkCallback, Prompt
from .providers.registry import ProviderRegistry
from .security.key_store import KeyStore

logger = logging.getLogger(__name__)


def facade_call(func):
    """Convert exceptions raised by a facade method into a failed result."""

    @functools.wraps(func)
    async def wrapper(*args, **kwargs):
        try:
            return await func(*args, **kwargs)
        except MimirError as e:
            logger.error(f"{func.__name__} failed: {e}")
            return {"success": False, "error": str(e), "error_type": type(e).__name__}
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}")
            return {"success": False, "error": str(e), "error_type": type(e).__name__}

    return wrapper


def _conversation_overview(conversation) -> dict[str, Any]:
    return {
        "id": conversation.id,
        "title": conversation.title,
        "project_id": conversation.project_id,
        "file_path": conversation.file_path,
        "message_count": len(conversation.messages),
        "created_at": conversation.created_at.isoformat(),
        "updated_at": conversation.updated_at.isoformat(),
    }


class MimirApplication:
    """
    Explicit application context wiring every component together.

    Example:
        >>> app = MimirApplication()
        >>> await app.initialize()
        >>> result = await app.chat("Write a hello world in Python")
        >>> result["success"], result["conversation_id"]
        (True, '...')
        >>> await app.shutdown()
    """

    def __init__(
        self,
        settings: AppSettings | None = None,
        executor: FileActionExecutor | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            settings: Application settings (defaults to the loaded configuration)
            executor: File-action executor (defaults to the local file system)
            transport: HTTP transport handed to every provider
        """
        self._executor = executor
        self._transport = transport
        self._build(settings or get_settings())

    def _build(self, settings: AppSettings) -> None:
        self.settings = settings
        self.registry = ProviderRegistry()
        self.prompt_manager = PromptManager(history_limit=settings.context.history_limit)
        self.response_processor = ResponseProcessor(
            cache_size=settings.streaming.cache_size,
            executor=self._executor or LocalFileActionExecutor(),
        )
        self.conversation_manager = ConversationManager(
            storage_dir=settings.storage.get_conversations_path(),
            message_overhead=settings.context.message_overhead,
        )
        self.key_store = KeyStore(settings.storage.get_keys_path(), settings.master_key)
        self.orchestrator = Orchestrator(
            self.registry,
            self.prompt_manager,
            self.response_processor,
            self.conversation_manager,
            context_tokens=settings.context.max_tokens,
        )
        self.initialized = False

    def _provider_config(self, provider_type: str, api_key: str | None = None) -> dict[str, Any]:
        config = self.settings.provider_config(provider_type)
        stored_key = api_key or self.key_store.get_key(provider_type)
        if stored_key and not config.get("api_key"):
            config["api_key"] = stored_key
        if self._transport is not None:
            config["transport"] = self._transport
        return config

    # Lifecycle

    @facade_call
    async def initialize(self, settings: AppSettings | None = None) -> dict[str, Any]:
        """
        Load stored keys, connect providers and load conversations.

        A provider is started when it is enabled in the settings or has a
        stored API key. One provider failing does not stop the others.

        Args:
            settings: Replace the settings the application was built with

        Returns:
            Initialized providers, per-provider failures, the default
            provider and the number of conversations loaded
        """
        if settings is not None:
            await self.orchestrator.close()
            await self.registry.close()
            self._build(settings)

        stored = self.key_store.load_keys()
        candidates = [
            name
            for name in PROVIDER_TYPES
            if self.settings.get_provider_settings(name).enabled or name in stored
        ]

        failures: dict[str, str] = {}
        for provider_type in candidates:
            try:
                await self.registry.initialize_provider(
                    provider_type, self._provider_config(provider_type)
                )
            except Exception as e:
                logger.error(f"Failed to initialize provider {provider_type}: {e}")
                failures[provider_type] = str(e)

        default = self.settings.default_provider
        if default and self.registry.has_provider(default):
            self.registry.set_default_provider(default)
        elif self.registry.get_default_provider() is None:
            logger.warning("No AI provider available")

        loaded = await self.conversation_manager.load_conversations()
        self.initialized = True

        logger.info(
            f"Mimir initialized with providers: {list(self.registry.get_all_providers())}"
        )
        return {
            "success": True,
            "providers": list(self.registry.get_all_providers()),
            "failed_providers": failures,
            "default_provider": self.registry.get_default_provider(),
            "conversations_loaded": loaded,
        }

    @facade_call
    async def shutdown(self) -> dict[str, Any]:
        await self.orchestrator.close()
        await self.registry.close()
        self.initialized = False
        logger.info("Mimir shut down")
        return {"success": True}

    # Completions

    @facade_call
    async def generate_completion(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
    ) -> dict[str, Any]:
        result = await self.orchestrator.generate_completion(prompt, options, provider_type)
        return result.to_dict()

    @facade_call
    async def generate_completion_stream(
        self,
        prompt: Prompt,
        options: CompletionOptions | dict[str, Any] | None = None,
        on_chunk: ChunkCallback | None = None,
        provider_type: str | None = None,
        wait: bool = True,
    ) -> dict[str, Any]:
        """
        Stream a completion to ``on_chunk``.

        With ``wait=False`` the stream runs in the background and only its
        stream id is returned, so that it can be cancelled.
        """
        if not wait:
            stream_id = self.orchestrator.start_completion_stream(
                prompt, options, on_chunk, provider_type
            )
            return {"success": True, "stream_id": stream_id}

        result = await self.orchestrator.generate_completion_stream(
            prompt, options, on_chunk, provider_type
        )
        return result.to_dict()

    @facade_call
    async def cancel_stream(self, stream_id: str) -> dict[str, Any]:
        cancelled = self.orchestrator.cancel_stream(stream_id)
        return {"success": True, "stream_id": stream_id, "cancelled": cancelled}

    @facade_call
    async def generate_code(
        self,
        requirements: str,
        language: str | None = None,
        project_context: str = "",
        additional_notes: str = "",
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
    ) -> dict[str, Any]:
        return await self.orchestrator.generate_code(
            requirements,
            language=language,
            project_context=project_context,
            additional_notes=additional_notes,
            options=options,
            provider_type=provider_type,
        )

    @facade_call
    async def chat(
        self,
        message: str,
        conversation_id: str | None = None,
        options: CompletionOptions | dict[str, Any] | None = None,
        provider_type: str | None = None,
        on_chunk: ChunkCallback | None = None,
        code_context: list[dict[str, Any]] | None = None,
        project_context: str = "",
        attachments: list[dict[str, Any]] | None = None,
        apply_actions: bool = True,
    ) -> dict[str, Any]:
        result = await self.orchestrator.chat(
            message,
            conversation_id=conversation_id,
            options=options,
            provider_type=provider_type,
            on_chunk=on_chunk,
            code_context=code_context,
            project_context=project_context,
            attachments=attachments,
            apply_actions=apply_actions,
        )
        return result.to_dict()

    # Conversations

    @facade_call
    async def create_conversation(
        self,
        title: str | None = None,
        project_id: str | None = None,
        file_path: str | None = None,
        initial_context: list[Any] | None = None,
    ) -> dict[str, Any]:
        conversation_id = await self.conversation_manager.create_conversation(
            title=title,
            project_id=project_id,
            file_path=file_path,
            initial_context=initial_context,
        )
        return {"success": True, "conversation_id": conversation_id}

    @facade_call
    async def get_conversation(self, conversation_id: str) -> dict[str, Any]:
        conversation = self.conversation_manager.get_conversation(conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)
        return {
            "success": True,
            "conversation": conversation.model_dump(mode="json", by_alias=True),
            "summary": self.conversation_manager.create_conversation_summary(conversation_id),
        }

    @facade_call
    async def add_message(
        self, conversation_id: str, message: Message | dict[str, Any]
    ) -> dict[str, Any]:
        stored = await self.conversation_manager.add_message(conversation_id, message)
        return {"success": True, "message": stored.model_dump(mode="json", by_alias=True)}

    @facade_call
    async def get_all_conversations(
        self,
        project_id: str | None = None,
        file_path: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> dict[str, Any]:
        conversations = self.conversation_manager.get_all_conversations(
            project_id=project_id, file_path=file_path, limit=limit, offset=offset
        )
        return {
            "success": True,
            "conversations": [_conversation_overview(c) for c in conversations],
        }

    @facade_call
    async def delete_conversation(self, conversation_id: str) -> dict[str, Any]:
        deleted = await self.conversation_manager.delete_conversation(conversation_id)
        if not deleted:
            return {
                "success": False,
                "error": f"Conversation not found: {conversation_id}",
                "error_type": ConversationNotFoundError.__name__,
            }
        return {"success": True, "conversation_id": conversation_id}

    @facade_call
    async def update_context(self, conversation_id: str, context: list[Any]) -> dict[str, Any]:
        await self.conversation_manager.update_context(conversation_id, context)
        return {"success": True, "conversation_id": conversation_id}

    # Response processing

    @facade_call
    async def process_actions(self, response: str, apply: bool = True) -> dict[str, Any]:
        """Extract action tags from a response and optionally apply file actions."""
        extraction = self.response_processor.extract_action_tags(response)
        file_results = None
        if apply and extraction.actions.has_file_operations():
            file_results = await self.response_processor.process_file_operations(
                extraction.actions
            )
        return {
            "success": True,
            "cleaned_response": extraction.cleaned_response,
            "actions": extraction.actions.model_dump(mode="json", by_alias=True),
            "file_results": file_results,
        }

    @facade_call
    async def extract_code_blocks(self, response: str) -> dict[str, Any]:
        blocks = self.response_processor.extract_code_blocks(response)
        return {"success": True, "code_blocks": [block.model_dump() for block in blocks]}

    @facade_call
    async def extract_action_tags(self, response: str) -> dict[str, Any]:
        extraction = self.response_processor.extract_action_tags(response)
        return {
            "success": True,
            "cleaned_response": extraction.cleaned_response,
            "actions": extraction.actions.model_dump(mode="json", by_alias=True),
        }

    @facade_call
    async def format_prompt(
        self, template_name: str, variables: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        prompt = self.prompt_manager.format_template(template_name, variables)
        return {"success": True, "template": template_name, "prompt": prompt}

    # Providers and credentials

    @facade_call
    async def set_api_key(self, provider_type: str, api_key: str) -> dict[str, Any]:
        """
        Store a provider's API key and (re)connect the provider with it.

        Raises through the result when the provider type is unknown, no
        master key is configured, or the provider rejects the key.
        """
        provider_type = provider_type.lower().strip()
        if provider_type not in PROVIDER_TYPES:
            raise UnknownProviderTypeError(provider_type)

        self.key_store.set_key(provider_type, api_key)

        if self.registry.has_provider(provider_type):
            provider = self.registry.get_provider(provider_type)
            provider.api_key = api_key
            await provider.connect()
        else:
            await self.registry.initialize_provider(
                provider_type, self._provider_config(provider_type, api_key)
            )

        return {"success": True, "provider": provider_type}

    @facade_call
    async def delete_api_key(self, provider_type: str) -> dict[str, Any]:
        """Forget a stored key and remove the provider if it needs one."""
        deleted = self.key_store.delete_key(provider_type)
        removed = False
        if self.registry.has_provider(provider_type):
            provider = self.registry.get_provider(provider_type)
            if provider.requires_api_key:
                removed = await self.registry.remove_provider(provider_type)
        return {"success": True, "provider": provider_type, "deleted": deleted, "removed": removed}

    @facade_call
    async def set_default_provider(self, provider_type: str) -> dict[str, Any]:
        self.registry.set_default_provider(provider_type)
        return {"success": True, "default_provider": provider_type}

    @facade_call
    async def get_providers(self) -> dict[str, Any]:
        initialized = self.registry.get_all_providers()
        default = self.registry.get_default_provider()
        providers = []
        for provider_type, provider_class in PROVIDER_TYPES.items():
            provider = initialized.get(provider_type)
            providers.append(
                {
                    "type": provider_type,
                    "display_name": provider_class.display_name,
                    "initialized": provider is not None,
                    "is_default": provider_type == default,
                    "info": provider.get_info() if provider else None,
                }
            )
        return {"success": True, "providers": providers, "default_provider": default}

    @facade_call
    async def check_provider_health(self, provider_type: str | None = None) -> dict[str, Any]:
        healthy = await self.registry.check_provider_health(provider_type)
        return {
            "success": True,
            "provider": provider_type or self.registry.get_default_provider(),
            "healthy": healthy,
        }

    @facade_call
    async def get_usage_stats(self) -> dict[str, Any]:
        stats = self.registry.get_all_usage_stats()
        total = None
        for usage in stats.values():
            total = usage if total is None else total.add(usage)
        return {
            "success": True,
            "providers": {name: usage.model_dump(mode="json") for name, usage in stats.items()},
            "total": total.model_dump(mode="json") if total else None,
        }

    @facade_call
    async def reset_usage_stats(self) -> dict[str, Any]:
        self.registry.reset_usage_stats()
        return {"success": True}
