"""
Provider implementations for different language-model backends.

This package provides a uniform interface to hosted APIs and local
inference servers through the BaseProvider abstraction. Backends are
registered in ``PROVIDER_TYPES``; adding a backend means adding a variant
class and an entry there.
"""

from typing import Any

from ..core.exceptions import UnknownProviderTypeError
from .anthropic import AnthropicProvider
from .base import BaseProvider, LocalProvider, ProviderReply, StreamTally
from .google import GoogleProvider
from .lmstudio import LMStudioProvider
from .ollama import OllamaProvider
from .openai import OpenAIProvider

PROVIDER_TYPES: dict[str, type[BaseProvider]] = {
    "openai": OpenAIProvider,
    "anthropic": AnthropicProvider,
    "google": GoogleProvider,
    "ollama": OllamaProvider,
    "lmstudio": LMStudioProvider,
}

__all__ = [
    "BaseProvider",
    "LocalProvider",
    "ProviderReply",
    "StreamTally",
    "OpenAIProvider",
    "AnthropicProvider",
    "GoogleProvider",
    "OllamaProvider",
    "LMStudioProvider",
    "PROVIDER_TYPES",
    "create_provider",
    "get_supported_providers",
]


def create_provider(provider_type: str, **kwargs: Any) -> BaseProvider:
    """
    Create a provider for the specified backend type.

    Args:
        provider_type: Backend type (e.g., "openai", "ollama")
        **kwargs: Provider configuration (api_key, base_url, default_model, ...)

    Returns:
        Unconnected provider instance

    Raises:
        UnknownProviderTypeError: If no variant is registered for the type

    Example:
        >>> provider = create_provider("anthropic", api_key="sk-ant-...")
        >>> await provider.connect()
    """
    key = provider_type.lower().strip()
    provider_class = PROVIDER_TYPES.get(key)
    if provider_class is None:
        raise UnknownProviderTypeError(provider_type)
    return provider_class(**kwargs)


def get_supported_providers() -> list[str]:
    """Get list of registered provider types."""
    return list(PROVIDER_TYPES)
