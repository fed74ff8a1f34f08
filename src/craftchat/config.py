"""
Configuration management for craftchat.

Settings are loaded from environment variables (``CRAFTCHAT_`` prefix, nested
sections separated by ``__``), an optional ``.env`` file, and an optional YAML
file passed to ``load_settings``.  Example::

    CRAFTCHAT_AI__PROVIDER=claude
    CRAFTCHAT_CLAUDE__API_KEY=sk-ant-...
    CRAFTCHAT_CHAT__DETECTION__CONFIDENCE_THRESHOLD=0.7
"""

from __future__ import annotations

import logging
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from craftchat.conversation.errors import ConfigurationError

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("ollama", "claude", "openai")

_PLACEHOLDER_KEY_PREFIX = "your-"


# ---------------------------------------------------------------------------
# Provider sections
# ---------------------------------------------------------------------------


class ProviderSettings(BaseModel):
    """Connection settings shared by every LLM provider."""

    model: str = ""
    base_url: str = ""
    api_key: str = ""
    temperature: float = 0.7
    timeout_seconds: float = 60.0
    max_retries: int = 3
    retry_base_delay_seconds: float = 1.0
    max_tokens: int = 4096
    calls_per_minute: int | None = None

    def has_real_api_key(self) -> bool:
        key = self.api_key.strip()
        return bool(key) and not key.startswith(_PLACEHOLDER_KEY_PREFIX)


class OllamaSettings(ProviderSettings):
    model: str = "llama3.1"
    base_url: str = "http://localhost:11434/api"


class ClaudeSettings(ProviderSettings):
    model: str = "claude-3-5-sonnet-20241022"
    base_url: str = "https://api.anthropic.com/v1"
    anthropic_version: str = "2023-06-01"


class OpenAISettings(ProviderSettings):
    model: str = "gpt-4o"
    base_url: str = "https://api.openai.com/v1"
    organization: str = ""


# ---------------------------------------------------------------------------
# Behaviour sections
# ---------------------------------------------------------------------------


class AISettings(BaseModel):
    provider: str = "ollama"
    agent_name: str = "Steve"
    system_prompt: str = (
        "You are {agent_name}, a helpful assistant in a Minecraft world. You can "
        "answer questions about Minecraft and help players with their tasks."
    )
    max_context_length: int = Field(default=50, gt=0)
    max_tool_calls: int = Field(default=5, ge=0)


class DetectionSettings(BaseModel):
    intelligent_detection: bool = True
    detection_provider: str = "ollama"
    detection_timeout_seconds: float = 3.0
    # Acceptance threshold applied to the final decision.
    confidence_threshold: float = Field(default=0.6, ge=0.0, le=1.0)
    # Pattern results at or above this skip the AI stage.
    high_confidence_cutoff: float = Field(default=0.8, ge=0.0, le=1.0)
    cache_decisions: bool = True
    cache_duration_minutes: float = 5.0
    cache_max_entries: int = Field(default=100, gt=0)
    context_size: int = Field(default=10, gt=0)
    context_window: int = Field(default=3, ge=0)


class ChatSettings(BaseModel):
    monitor_all_chat: bool = False
    # ``None`` means "<agent_name>, ".
    trigger_prefix: str | None = None
    response_format: str = "[{agent_name}] %message%"
    detection: DetectionSettings = Field(default_factory=DetectionSettings)


class ToolBackendSettings(BaseModel):
    """Connection to the external MCP tool server."""

    enabled: bool = False
    url: str = "http://localhost:25575"
    endpoint: str = "/mcp"
    api_key: str = ""
    timeout_seconds: float = 30.0
    retries: int = 3
    retry_delay_seconds: float = 1.0
    call_timeout_seconds: float = 30.0
    cache_ttl_seconds: float = 60.0


class StartupTestSettings(BaseModel):
    enabled: bool = False
    max_tool_calls: int = 2


class ServerSettings(BaseModel):
    host: str = "127.0.0.1"
    port: int = 8765


# ---------------------------------------------------------------------------
# Root settings
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """Application settings loaded from environment variables and YAML."""

    ai: AISettings = Field(default_factory=AISettings)
    ollama: OllamaSettings = Field(default_factory=OllamaSettings)
    claude: ClaudeSettings = Field(default_factory=ClaudeSettings)
    openai: OpenAISettings = Field(default_factory=OpenAISettings)
    chat: ChatSettings = Field(default_factory=ChatSettings)
    tools: ToolBackendSettings = Field(default_factory=ToolBackendSettings)
    startup_test: StartupTestSettings = Field(default_factory=StartupTestSettings)
    server: ServerSettings = Field(default_factory=ServerSettings)

    # Logging
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="CRAFTCHAT_",
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    def provider_settings(self, name: str) -> ProviderSettings:
        """Return the settings section for provider *name*.

        Raises:
            ConfigurationError: If *name* is not a supported provider.
        """
        key = name.strip().lower()
        if key not in SUPPORTED_PROVIDERS:
            raise ConfigurationError(
                f"Unsupported provider {name!r}. Supported: {', '.join(SUPPORTED_PROVIDERS)}"
            )
        return getattr(self, key)

    @property
    def resolved_trigger_prefix(self) -> str:
        if self.chat.trigger_prefix is not None:
            return self.chat.trigger_prefix
        return f"{self.ai.agent_name}, "

    @property
    def resolved_system_prompt(self) -> str:
        return self.ai.system_prompt.replace("{agent_name}", self.ai.agent_name)

    @property
    def resolved_response_format(self) -> str:
        return self.chat.response_format.replace("{agent_name}", self.ai.agent_name)

    def validate_for_startup(self) -> None:
        """Check the settings needed to start the primary provider.

        Raises:
            ConfigurationError: If the primary provider is unsupported, or a
                hosted provider has no usable API key.
        """
        section = self.provider_settings(self.ai.provider)
        if not section.model:
            raise ConfigurationError(f"No model configured for provider {self.ai.provider!r}")
        if not section.base_url:
            raise ConfigurationError(f"No base URL configured for provider {self.ai.provider!r}")
        if self.ai.provider.lower() in ("claude", "openai") and not section.has_real_api_key():
            raise ConfigurationError(
                f"Provider {self.ai.provider!r} requires an API key; set "
                f"CRAFTCHAT_{self.ai.provider.upper()}__API_KEY or the YAML config."
            )
        if self.tools.enabled and not self.tools.url:
            raise ConfigurationError("Tool backend is enabled but no URL is configured")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Build ``Settings`` from an optional YAML file plus the environment.

    Keys present in the YAML file take precedence; anything it omits is
    read from ``CRAFTCHAT_*`` environment variables and ``.env``.

    Args:
        config_path: Path to a YAML file with the same nested structure as
            ``Settings``.  ``None`` loads from the environment only.

    Raises:
        ConfigurationError: If the file is missing or is not a YAML mapping.
    """
    if config_path is None:
        return Settings()
    path = Path(config_path)
    try:
        data: Any = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except OSError as exc:
        raise ConfigurationError(f"Cannot read config file {path}: {exc}") from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigurationError(f"Config file {path} must contain a mapping")
    logger.info("Loaded configuration from %s", path)
    return Settings(**data)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the application settings instance."""
    return Settings()
