"""
Configuration management for Mimir.

This module implements hierarchical configuration loading with validation,
following the pattern: env vars > user config > defaults.
"""

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from ..core.exceptions import ConfigurationError

PROVIDER_NAMES = ("openai", "anthropic", "google", "ollama", "lmstudio")


class ProviderSettings(BaseModel):
    """Settings for one provider backend."""

    enabled: bool = Field(default=False, description="Initialize this provider on startup")
    api_key: str | None = Field(default=None, description="Backend API key", repr=False)
    base_url: str | None = Field(default=None, description="Override the backend base URL")
    default_model: str | None = Field(default=None, description="Model used when none is requested")
    is_default: bool = Field(default=False, description="Make this the default provider")
    timeout: int | None = Field(default=None, ge=1, le=600, description="Request timeout in seconds")
    max_retries: int | None = Field(default=None, ge=0, le=10, description="Retries for transient failures")


class StorageConfig(BaseModel):
    """Storage locations."""

    data_dir: str = Field(default="~/.mimir", description="Data directory")
    conversations_dir: str | None = Field(
        default=None, description="Conversation records (defaults to <data_dir>/conversations)"
    )
    keys_file: str | None = Field(
        default=None, description="Encrypted API keys (defaults to <data_dir>/keys.json)"
    )

    def get_data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    def get_conversations_path(self) -> Path:
        if self.conversations_dir:
            return Path(self.conversations_dir).expanduser()
        return self.get_data_path() / "conversations"

    def get_keys_path(self) -> Path:
        if self.keys_file:
            return Path(self.keys_file).expanduser()
        return self.get_data_path() / "keys.json"


class APIConfig(BaseModel):
    """API configuration."""

    timeout: int = Field(
        default=60, ge=1, le=600, description="Request timeout in seconds"
    )
    retries: int = Field(default=3, ge=0, le=10, description="Number of retries")
    base_delay: float = Field(
        default=1.0, ge=0.0, le=30.0, description="First retry delay in seconds, doubled per attempt"
    )
    max_backoff: int = Field(
        default=60, ge=1, description="Maximum backoff time in seconds"
    )


class StreamingConfig(BaseModel):
    """Streaming configuration."""

    cache_size: int = Field(
        default=50, ge=1, le=10000, description="Streams kept by the response cache"
    )


class ContextConfig(BaseModel):
    """Conversation context configuration."""

    max_tokens: int = Field(
        default=4000, ge=1, description="Token budget for conversation history"
    )
    message_overhead: int = Field(
        default=100, ge=0, description="Estimated tokens added per message"
    )
    history_limit: int = Field(
        default=5, ge=0, description="Maximum history entries in a prompt"
    )


def _default_providers() -> dict[str, ProviderSettings]:
    return {name: ProviderSettings() for name in PROVIDER_NAMES}


class AppSettings(BaseSettings):
    """Main application settings using environment variables."""

    # Application info
    app_name: str = Field(default="Mimir", description="Application name")

    # Providers
    providers: dict[str, ProviderSettings] = Field(default_factory=_default_providers)
    default_provider: str | None = Field(
        default=None, description="Provider used when a request names none"
    )

    # Security
    master_key: str | None = Field(
        default=None, description="Master key for stored API keys", repr=False
    )

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    # Configuration sections
    storage: StorageConfig = Field(default_factory=StorageConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    streaming: StreamingConfig = Field(default_factory=StreamingConfig)
    context: ContextConfig = Field(default_factory=ContextConfig)

    model_config = SettingsConfigDict(
        env_prefix="MIMIR_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="forbid",
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """
        Rank environment variables above constructor values.

        ConfigurationManager passes the user's YAML file as constructor
        values, so this ordering gives env vars > user config > defaults.
        Nested sections are merged key by key across sources.
        """
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v.upper()

    @field_validator("providers")
    @classmethod
    def validate_providers(cls, v):
        unknown = set(v) - set(PROVIDER_NAMES)
        if unknown:
            raise ValueError(f"Unknown providers: {sorted(unknown)}")
        merged = _default_providers()
        merged.update(v)
        return merged

    @model_validator(mode="after")
    def validate_default_provider(self):
        """The default provider must be one of the known backends."""
        if self.default_provider and self.default_provider not in PROVIDER_NAMES:
            raise ValueError(f"Default provider must be one of {PROVIDER_NAMES}")
        return self

    def get_provider_settings(self, provider: str) -> ProviderSettings:
        return self.providers.get(provider.lower(), ProviderSettings())

    def enabled_providers(self) -> list[str]:
        return [name for name, cfg in self.providers.items() if cfg.enabled]

    def provider_config(self, provider: str) -> dict[str, Any]:
        """
        Build constructor settings for a provider.

        API defaults are overlaid with the provider's own section; unset
        values are left out so that the provider's defaults apply.
        """
        section = self.get_provider_settings(provider)
        config: dict[str, Any] = {
            "timeout": self.api.timeout,
            "max_retries": self.api.retries,
            "base_delay": self.api.base_delay,
            "max_delay": float(self.api.max_backoff),
        }
        config.update(
            section.model_dump(exclude={"enabled"}, exclude_none=True)
        )
        config["is_default"] = section.is_default or self.default_provider == provider
        return config


class ConfigurationManager:
    """Manages hierarchical configuration loading and validation."""

    def __init__(self):
        self._settings: AppSettings | None = None
        self._user_config: dict[str, Any] = {}

    def load_configuration(self, config_path: Path | None = None) -> AppSettings:
        """
        Load configuration with hierarchy: env vars > user config > defaults.

        Args:
            config_path: Path to user configuration file

        Returns:
            Validated AppSettings instance

        Raises:
            ConfigurationError: If the file or the resulting settings are invalid
        """
        if config_path and Path(config_path).exists():
            self._user_config = self._load_yaml_config(Path(config_path))

        try:
            self._settings = AppSettings(**self._user_config)
        except ValueError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

        return self._settings

    def _load_yaml_config(self, config_path: Path) -> dict[str, Any]:
        """Load configuration from YAML file."""
        try:
            with open(config_path, encoding="utf-8") as f:
                config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML configuration: {e}") from e
        except FileNotFoundError:
            return {}
        except OSError as e:
            raise ConfigurationError(f"Failed to load configuration: {e}") from e

        if config is None:
            return {}
        if not isinstance(config, dict):
            raise ConfigurationError("Configuration file must contain a mapping")
        return config

    @property
    def settings(self) -> AppSettings:
        """Get current settings (load default if not loaded)."""
        if self._settings is None:
            self._settings = self.load_configuration()
        return self._settings

    def reset(self):
        """Reset the configuration manager (useful for testing)."""
        self._settings = None
        self._user_config = {}

    def export_config_template(self, output_path: Path):
        """Export a configuration template file."""
        template = {
            "default_provider": "openai",
            "log_level": "INFO",
            "providers": {
                "openai": {"enabled": True, "default_model": "gpt-3.5-turbo"},
                "ollama": {"enabled": False, "base_url": "http://localhost:11434"},
            },
            "storage": {"data_dir": "~/.mimir"},
            "api": {"timeout": 60, "retries": 3, "base_delay": 1.0},
            "streaming": {"cache_size": 50},
            "context": {"max_tokens": 4000, "history_limit": 5},
        }

        with open(output_path, "w", encoding="utf-8") as f:
            yaml.dump(template, f, default_flow_style=False, indent=2)


# Global configuration manager instance
config_manager = ConfigurationManager()


def get_settings() -> AppSettings:
    """Get the current application settings."""
    return config_manager.settings


def load_config(config_path: Path | None = None) -> AppSettings:
    """Load configuration from file and environment."""
    return config_manager.load_configuration(config_path)
