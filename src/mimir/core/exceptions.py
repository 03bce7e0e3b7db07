"""
Exception hierarchy for Mimir.

Internal components raise these; the application facade turns them into
structured ``{"success": False, "error": ...}`` results at the boundary.
"""

from typing import Any


class MimirError(Exception):
    """Base exception for all Mimir errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)


class ProviderError(MimirError):
    """Error raised by or on behalf of a model provider."""

    def __init__(
        self,
        message: str,
        provider: str,
        model: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        self.provider = provider
        self.model = model
        super().__init__(message, details)

    def __str__(self) -> str:
        parts = [f"{self.provider}: {self.message}"]
        if self.model:
            parts.append(f"Model: {self.model}")
        return " | ".join(parts)


# Configuration


class ConfigurationError(MimirError):
    """Invalid or missing configuration. Never retried."""

    pass


class UnknownProviderTypeError(ConfigurationError):
    """No provider variant is registered under the requested type."""

    def __init__(self, provider_type: str):
        self.provider_type = provider_type
        super().__init__(f"Unknown provider type: {provider_type}")


class UnknownTemplateError(ConfigurationError):
    """No prompt template is registered under the requested name."""

    def __init__(self, template_name: str):
        self.template_name = template_name
        super().__init__(f"Unknown prompt template: {template_name}")


class MissingCredentialError(ConfigurationError, ProviderError):
    """A hosted provider was asked to connect without an API key."""

    def __init__(self, provider: str):
        ProviderError.__init__(self, f"{provider} API key is required", provider)


# Connection


class ProviderConnectionError(ProviderError):
    """Backend unreachable or rejected the handshake."""

    pass


class AuthenticationError(ProviderConnectionError):
    """Backend rejected the configured credentials."""

    pass


class RetryableError(ProviderConnectionError):
    """Transient failure that may succeed on a later attempt."""

    pass


class RateLimitError(RetryableError):
    """Backend reported that the rate limit was exceeded."""

    def __init__(
        self, message: str, provider: str, retry_after: int | None = None, **kwargs: Any
    ) -> None:
        super().__init__(message, provider, **kwargs)
        self.retry_after = retry_after


# Streaming


class StreamError(ProviderError):
    """Failure after part of a stream was already delivered."""

    pass


# Lookup


class NotFoundError(MimirError):
    """Referenced entity does not exist. Never retried."""

    pass


class ConversationNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation not found: {conversation_id}")


class ProviderNotInitializedError(NotFoundError):
    def __init__(self, provider_type: str | None):
        self.provider_type = provider_type
        super().__init__(f"Provider not initialized: {provider_type}")


class NoProviderAvailableError(NotFoundError):
    def __init__(self) -> None:
        super().__init__("No AI provider available")


class MessageNotFoundError(NotFoundError):
    def __init__(self, conversation_id: str, message_id: str):
        self.conversation_id = conversation_id
        self.message_id = message_id
        super().__init__(
            f"Message {message_id} not found in conversation {conversation_id}"
        )


# Persistence and content


class ParseError(MimirError):
    """A persisted record could not be parsed."""

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(message)


class ImmutableMessageError(MimirError):
    """Attempted to edit a message that is no longer streaming."""

    def __init__(self, message_id: str):
        self.message_id = message_id
        super().__init__(f"Message {message_id} is finalized and cannot be edited")
