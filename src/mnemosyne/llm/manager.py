"""
Registry of configured providers.

Initialization is best-effort: a provider whose credentials cannot be
decrypted is recorded as failed and skipped, and the rest stay usable.
"""

import logging
from typing import Any, Optional

from mnemosyne.errors import ConfigurationError, MnemosyneError
from mnemosyne.llm.provider import LLMProvider, ProviderConfig, StreamCallback
from mnemosyne.llm.types import ChatOptions, ChatResponse, Message, ToolSchema
from mnemosyne.notifications import NotificationSink, notify
from mnemosyne.security.key_manager import KeyManager

logger = logging.getLogger(__name__)


class ProviderManager:
    """Owns provider configurations and their live clients."""

    def __init__(
        self,
        configs: list[ProviderConfig],
        key_manager: KeyManager,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.key_manager = key_manager
        self.notifier = notifier
        self._configs: dict[str, ProviderConfig] = {c.id: c for c in configs}
        self._providers: dict[str, LLMProvider] = {}
        self._errors: dict[str, str] = {}
        self.initialized = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    def initialize(self) -> None:
        """Build clients for every enabled provider."""
        self._providers.clear()
        self._errors.clear()
        for provider_id in self._configs:
            self._load(provider_id)
        self.initialized = True
        logger.info(
            f"Initialized {len(self._providers)}/{len(self._configs)} providers"
            + (f" ({len(self._errors)} failed)" if self._errors else "")
        )

    def _load(self, provider_id: str) -> None:
        self._providers.pop(provider_id, None)
        self._errors.pop(provider_id, None)
        config = self._configs[provider_id]
        if not config.enabled:
            logger.debug(f"Provider {provider_id} is disabled, skipping")
            return
        try:
            provider = LLMProvider(config, self.key_manager)
            provider.ensure_decryptable()
        except MnemosyneError as e:
            self._errors[provider_id] = e.message
            logger.warning(f"Provider {provider_id} failed to initialize: {e.message}")
            notify(self.notifier, f"Provider '{config.name}' unavailable: {e.message}")
            return
        self._providers[provider_id] = provider

    def reload_provider(self, provider_id: str) -> None:
        if provider_id not in self._configs:
            raise ConfigurationError(f"Provider not found: {provider_id}", provider_id=provider_id)
        self._load(provider_id)

    def is_ready(self) -> bool:
        return self.initialized and bool(self._providers)

    # ==========================================================================
    # Configuration
    # ==========================================================================
    def list_configs(self) -> list[ProviderConfig]:
        return list(self._configs.values())

    def get_config(self, provider_id: str) -> Optional[ProviderConfig]:
        return self._configs.get(provider_id)

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._configs

    def add_provider(self, config: ProviderConfig) -> None:
        """
        Register a new provider.

        Raises:
            ConfigurationError: If the id is already taken
        """
        if config.id in self._configs:
            raise ConfigurationError(f"Provider already exists: {config.id}", provider_id=config.id)
        self._configs[config.id] = config
        if self.initialized:
            self._load(config.id)
        logger.info(f"Added provider {config.id} ({config.backend}/{config.model})")

    def update_provider(self, config: ProviderConfig) -> None:
        if config.id not in self._configs:
            raise ConfigurationError(f"Provider not found: {config.id}", provider_id=config.id)
        self._configs[config.id] = config
        if self.initialized:
            self._load(config.id)

    def remove_provider(self, provider_id: str) -> None:
        if self._configs.pop(provider_id, None) is None:
            raise ConfigurationError(f"Provider not found: {provider_id}", provider_id=provider_id)
        self._providers.pop(provider_id, None)
        self._errors.pop(provider_id, None)
        logger.info(f"Removed provider {provider_id}")

    # ==========================================================================
    # Access
    # ==========================================================================
    def is_provider_available(self, provider_id: str) -> bool:
        return provider_id in self._providers

    def get_provider(self, provider_id: str) -> LLMProvider:
        """
        Get a live provider client.

        Raises:
            ConfigurationError: If the provider is unknown, disabled or failed to initialize
        """
        config = self._configs.get(provider_id)
        if config is None:
            raise ConfigurationError(f"Provider not found: {provider_id}", provider_id=provider_id)
        if not config.enabled:
            raise ConfigurationError(f"Provider is disabled: {provider_id}", provider_id=provider_id)
        provider = self._providers.get(provider_id)
        if provider is None:
            reason = self._errors.get(provider_id, "not initialized")
            raise ConfigurationError(
                f"Provider unavailable: {provider_id} ({reason})", provider_id=provider_id
            )
        return provider

    async def chat(
        self,
        provider_id: str,
        messages: list[Message],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        return await self.get_provider(provider_id).chat(messages, options)

    async def chat_with_functions(
        self,
        provider_id: str,
        messages: list[Message],
        tools: list[ToolSchema],
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        return await self.get_provider(provider_id).chat_with_functions(messages, tools, options)

    async def stream(
        self,
        provider_id: str,
        messages: list[Message],
        on_token: StreamCallback,
        options: Optional[ChatOptions] = None,
    ) -> ChatResponse:
        return await self.get_provider(provider_id).stream(messages, on_token, options)

    async def test_provider(self, provider_id: str) -> bool:
        try:
            provider = self.get_provider(provider_id)
        except ConfigurationError as e:
            logger.warning(f"Cannot test provider {provider_id}: {e.message}")
            return False
        return await provider.test()

    def stats(self) -> dict[str, Any]:
        return {
            "total_providers": len(self._configs),
            "enabled_providers": sum(1 for c in self._configs.values() if c.enabled),
            "initialized_providers": len(self._providers),
            "providers": [
                {
                    "id": c.id,
                    "name": c.name,
                    "backend": c.backend,
                    "model": c.model,
                    "enabled": c.enabled,
                    "initialized": c.id in self._providers,
                    "error": self._errors.get(c.id),
                }
                for c in self._configs.values()
            ],
        }
