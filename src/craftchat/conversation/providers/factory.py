"""
Provider factory with a configuration-keyed instance cache.

Instances are cached under ``"<name>:<sha256 of the settings JSON>"`` so a
provider is only rebuilt when its settings actually change.  The factory is an
ordinary object owned by the orchestrator, never module state.
"""

from __future__ import annotations

import hashlib
import logging
import threading
from typing import TYPE_CHECKING, ClassVar

import httpx

from craftchat.conversation.converters import ToolConverterFactory
from craftchat.conversation.errors import ConfigurationError
from craftchat.conversation.providers.base import BaseProvider
from craftchat.conversation.providers.claude_provider import ClaudeProvider
from craftchat.conversation.providers.ollama_provider import OllamaProvider
from craftchat.conversation.providers.openai_provider import OpenAIProvider
from craftchat.conversation.retry import SleepFunc

if TYPE_CHECKING:
    from craftchat.config import ProviderSettings

logger = logging.getLogger(__name__)


class ProviderFactory:
    """Creates and caches ``AIProvider`` instances by name and configuration.

    Args:
        converters: Converter factory used to give each provider its
            ``ToolConverter``.  A private one is created if omitted.
        transport: Optional ``httpx`` transport handed to httpx-based
            providers (used by tests).
        sleep: Optional sleep coroutine for the providers' retry backoff.
    """

    _PROVIDERS: ClassVar[dict[str, type[BaseProvider]]] = {
        "ollama": OllamaProvider,
        "claude": ClaudeProvider,
        "openai": OpenAIProvider,
    }

    def __init__(
        self,
        converters: ToolConverterFactory | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunc | None = None,
    ) -> None:
        self.converters = converters or ToolConverterFactory()
        self._transport = transport
        self._sleep = sleep
        self._cache: dict[str, BaseProvider] = {}
        self._lock = threading.Lock()

    @classmethod
    def supported_providers(cls) -> list[str]:
        return list(cls._PROVIDERS)

    @classmethod
    def is_supported(cls, name: str) -> bool:
        return name.strip().lower() in cls._PROVIDERS

    @staticmethod
    def cache_key(name: str, settings: ProviderSettings) -> str:
        digest = hashlib.sha256(settings.model_dump_json().encode("utf-8")).hexdigest()
        return f"{name.strip().lower()}:{digest[:16]}"

    def get_provider(self, name: str, settings: ProviderSettings) -> BaseProvider:
        """Return a cached provider for *name* configured with *settings*.

        Raises:
            ConfigurationError: If *name* is not a supported provider.
        """
        key_name = name.strip().lower()
        provider_cls = self._PROVIDERS.get(key_name)
        if provider_cls is None:
            raise ConfigurationError(
                f"Unsupported provider {name!r}. Supported: {', '.join(self._PROVIDERS)}"
            )
        key = self.cache_key(key_name, settings)
        with self._lock:
            provider = self._cache.get(key)
            if provider is None:
                provider = provider_cls(
                    settings,
                    self.converters.get_converter(key_name),
                    transport=self._transport,
                    sleep=self._sleep,
                )
                self._cache[key] = provider
                logger.info("Created %s provider (model=%s)", key_name, settings.model)
            return provider

    def validate_provider(self, name: str, settings: ProviderSettings) -> str | None:
        """Return a description of what prevents *name* from working, or ``None``."""
        if not self.is_supported(name):
            return f"Unsupported provider: {name}"
        try:
            provider = self.get_provider(name, settings)
        except ConfigurationError as exc:
            return str(exc)
        return provider.configuration_problem()

    def cache_size(self) -> int:
        with self._lock:
            return len(self._cache)

    async def clear_cache(self) -> None:
        """Shut down and forget every cached provider."""
        with self._lock:
            providers = list(self._cache.values())
            self._cache.clear()
        for provider in providers:
            await provider.shutdown()
        logger.debug("Provider cache cleared (%d instance(s) shut down)", len(providers))
