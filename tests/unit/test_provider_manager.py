"""Unit tests for llm.manager module."""

from unittest.mock import MagicMock

import pytest
from pytest_httpx import HTTPXMock

from conftest import TEST_PASSWORD
from mnemosyne.errors import ConfigurationError
from mnemosyne.llm.manager import ProviderManager
from mnemosyne.llm.provider import LLMProvider, ProviderConfig
from mnemosyne.llm.types import Message


@pytest.mark.unit
class TestProviderManagerInitialization:
    """Tests for best-effort initialization."""

    def test_locked_credentials_are_isolated(self, openai_config, ollama_config, locked_key_manager):
        """A provider whose key cannot be decrypted fails alone."""
        sink = MagicMock()
        manager = ProviderManager([openai_config, ollama_config], locked_key_manager, notifier=sink)

        manager.initialize()

        assert manager.is_provider_available("local")
        assert not manager.is_provider_available("openai-main")
        assert manager.is_ready()
        sink.notify.assert_called_once()
        stats = manager.stats()
        assert stats["initialized_providers"] == 1
        errors = {p["id"]: p["error"] for p in stats["providers"]}
        assert errors["local"] is None
        assert "Master password" in errors["openai-main"]

    def test_unavailable_provider_reports_reason(self, openai_config, locked_key_manager):
        """get_provider explains why a provider is unavailable."""
        manager = ProviderManager([openai_config], locked_key_manager)
        manager.initialize()

        with pytest.raises(ConfigurationError, match="unavailable"):
            manager.get_provider("openai-main")
        assert not manager.is_ready()

    def test_reload_after_unlock(self, openai_config, locked_key_manager):
        """Reloading a provider after unlocking makes it available."""
        manager = ProviderManager([openai_config], locked_key_manager)
        manager.initialize()

        # openai_config was encrypted under another salt; rebuild it for this manager
        locked_key_manager.set_master_password(TEST_PASSWORD)
        config = openai_config.model_copy(
            update={"encrypted_api_key": locked_key_manager.encrypt("sk-test-0123456789abcdefghij")}
        )
        manager.update_provider(config)

        assert isinstance(manager.get_provider("openai-main"), LLMProvider)

    def test_disabled_provider(self, ollama_config, locked_key_manager):
        """Disabled providers are skipped and refused."""
        config = ollama_config.model_copy(update={"enabled": False})
        manager = ProviderManager([config], locked_key_manager)
        manager.initialize()

        with pytest.raises(ConfigurationError, match="disabled"):
            manager.get_provider("local")
        assert manager.stats()["enabled_providers"] == 0

    def test_unknown_provider(self, provider_manager):
        with pytest.raises(ConfigurationError, match="not found"):
            provider_manager.get_provider("nope")


@pytest.mark.unit
class TestProviderManagerConfiguration:
    """Tests for add/update/remove."""

    def test_add_provider_loads_when_initialized(self, provider_manager):
        """New providers are usable immediately after initialization."""
        provider_manager.add_provider(
            ProviderConfig(id="lmstudio", name="LM Studio", backend="custom", model="qwen", base_url="http://localhost:1234/v1")
        )

        assert provider_manager.is_provider_available("lmstudio")
        assert provider_manager.get_provider("lmstudio").base_url == "http://localhost:1234/v1"

    def test_add_duplicate(self, provider_manager, ollama_config):
        with pytest.raises(ConfigurationError):
            provider_manager.add_provider(ollama_config)

    def test_remove_provider(self, provider_manager):
        provider_manager.remove_provider("local")

        assert not provider_manager.has_provider("local")
        assert provider_manager.list_configs() == []
        with pytest.raises(ConfigurationError):
            provider_manager.remove_provider("local")

    def test_update_unknown(self, provider_manager, ollama_config):
        with pytest.raises(ConfigurationError):
            provider_manager.update_provider(ollama_config.model_copy(update={"id": "other"}))

    def test_reload_unknown(self, provider_manager):
        with pytest.raises(ConfigurationError):
            provider_manager.reload_provider("other")


@pytest.mark.unit
class TestProviderManagerCalls:
    """Tests for delegated calls."""

    @pytest.mark.asyncio
    async def test_chat_delegates(self, provider_manager, httpx_mock: HTTPXMock):
        """chat routes to the provider by id."""
        httpx_mock.add_response(
            url="http://localhost:11434/api/chat",
            json={"message": {"content": "pong"}, "done": True},
        )

        response = await provider_manager.chat("local", [Message(role="user", content="ping")])

        assert response.content == "pong"

    @pytest.mark.asyncio
    async def test_test_provider_unknown_is_false(self, provider_manager):
        """Testing an unknown provider returns False."""
        assert await provider_manager.test_provider("missing") is False

    @pytest.mark.asyncio
    async def test_test_provider(self, provider_manager, httpx_mock: HTTPXMock):
        httpx_mock.add_response(
            url="http://localhost:11434/api/chat",
            json={"message": {"content": "OK"}, "done": True},
        )

        assert await provider_manager.test_provider("local") is True
