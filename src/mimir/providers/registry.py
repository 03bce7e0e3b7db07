"""
Provider registry.

Holds the initialized providers keyed by type, tracks which one is the
default, and aggregates health and usage across them.
"""

import logging
from typing import Any

from ..core.exceptions import ProviderNotInitializedError
from ..core.models import TokenUsage
from . import create_provider, get_supported_providers
from .base import BaseProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Initialized providers plus a designated default."""

    def __init__(self) -> None:
        self._providers: dict[str, BaseProvider] = {}
        self._default_type: str | None = None

    async def initialize_provider(
        self, provider_type: str, config: dict[str, Any] | None = None
    ) -> BaseProvider:
        """
        Construct, connect and register the provider for ``provider_type``.

        The provider becomes the default when none is set yet or when
        ``config["is_default"]`` is true. An existing provider of the same
        type is closed and replaced.

        Args:
            provider_type: Registered backend type
            config: Constructor settings plus optional ``is_default``

        Returns:
            The connected provider

        Raises:
            UnknownProviderTypeError: For an unregistered type
            ProviderError: If connecting fails
        """
        settings = dict(config or {})
        is_default = bool(settings.pop("is_default", False))

        provider = create_provider(provider_type, **settings)
        try:
            await provider.connect()
        except Exception:
            await provider.close()
            raise

        previous = self._providers.get(provider.provider_type)
        if previous is not None and previous is not provider:
            await previous.close()
        self._providers[provider.provider_type] = provider

        if self._default_type is None or is_default:
            self._default_type = provider.provider_type

        logger.info(f"Initialized provider {provider.provider_type}")
        return provider

    def register(self, provider: BaseProvider, is_default: bool = False) -> None:
        """Register an already constructed provider."""
        self._providers[provider.provider_type] = provider
        if self._default_type is None or is_default:
            self._default_type = provider.provider_type

    def has_provider(self, provider_type: str) -> bool:
        return provider_type in self._providers

    def get_provider(self, provider_type: str | None = None) -> BaseProvider:
        """
        Return the named provider, or the default when no type is given.

        Raises:
            ProviderNotInitializedError: If the provider is not registered
        """
        key = provider_type or self._default_type
        if key is None or key not in self._providers:
            raise ProviderNotInitializedError(key)
        return self._providers[key]

    def get_all_providers(self) -> dict[str, BaseProvider]:
        return dict(self._providers)

    def get_default_provider(self) -> str | None:
        return self._default_type

    def set_default_provider(self, provider_type: str) -> None:
        if provider_type not in self._providers:
            raise ProviderNotInitializedError(provider_type)
        self._default_type = provider_type
        logger.info(f"Default provider set to {provider_type}")

    async def remove_provider(self, provider_type: str) -> bool:
        """Close and unregister a provider; the default moves to the next one."""
        provider = self._providers.pop(provider_type, None)
        if provider is None:
            return False
        await provider.close()
        if self._default_type == provider_type:
            self._default_type = next(iter(self._providers), None)
        return True

    def get_available_provider_types(self) -> list[str]:
        return get_supported_providers()

    async def check_provider_health(self, provider_type: str | None = None) -> bool:
        """Health of one provider; False for unknown providers. Never raises."""
        try:
            provider = self.get_provider(provider_type)
        except ProviderNotInitializedError:
            return False
        return await provider.check_health()

    def get_all_usage_stats(self) -> dict[str, TokenUsage]:
        return {
            provider_type: provider.get_usage_stats()
            for provider_type, provider in self._providers.items()
        }

    def reset_usage_stats(self) -> None:
        for provider in self._providers.values():
            provider.reset_usage_stats()

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
        self._providers.clear()
        self._default_type = None
