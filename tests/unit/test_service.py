"""Unit tests for service module."""

import pytest

from conftest import TEST_PASSWORD, FakeProvider, install_fake_providers, text_response
from mnemosyne.agents.file_tools import FileSystemToolBackend
from mnemosyne.errors import ConfigurationError, CredentialError, DecryptionFailed
from mnemosyne.llm.provider import ProviderConfig
from mnemosyne.retrieval.sources import FileSystemDocumentSource
from mnemosyne.service import MnemosyneService
from mnemosyne.storage import load_settings_record

OPENAI_KEY = "sk-test-0123456789abcdefghij"


def openai_provider() -> ProviderConfig:
    return ProviderConfig(id="openai-main", name="OpenAI", backend="openai", model="gpt-4o-mini")


def reopen(service: MnemosyneService) -> MnemosyneService:
    """Build a second service from what the first one saved."""
    return MnemosyneService(
        record=load_settings_record(service.settings_path),
        store=service.retriever.store,
        embedder=service.retriever.embedder,
        settings_path=service.settings_path,
        source=service.source,
        tool_backend=service.tool_backend,
    )


@pytest.mark.unit
class TestServiceLifecycle:
    """Tests for initialization and persistence."""

    @pytest.mark.asyncio
    async def test_initialize_creates_and_saves_default_agent(self, service, settings_file):
        await service.initialize()

        assert service.agents.get_agent("default") is not None
        saved = load_settings_record(settings_file)
        assert [a.id for a in saved.agents] == ["default"]
        assert [p.id for p in saved.providers] == ["local"]
        assert saved.salt == service.key_manager.salt_b64

    @pytest.mark.asyncio
    async def test_readiness(self, service):
        """Ready needs an indexed vault, a live provider and an agent."""
        await service.initialize()
        assert service.readiness()["retriever"] is False
        assert not service.is_ready()

        report = await service.ingest_vault()

        assert report.documents_processed == 3
        assert service.is_ready()
        readiness = service.readiness()
        assert readiness["session_unlocked"] is False
        assert readiness["ready"] is True

    @pytest.mark.asyncio
    async def test_get_stats(self, service):
        await service.initialize()

        stats = service.get_stats()

        assert set(stats) == {"rag", "llm", "agents", "ready"}
        assert stats["llm"]["total_providers"] == 1
        assert stats["agents"]["total_agents"] == 1

    @pytest.mark.asyncio
    async def test_remove_provider_invalidates_agents(self, service, settings_file):
        await service.initialize()

        service.remove_provider("local")

        assert not service.agents.is_ready()
        assert load_settings_record(settings_file).providers == []


@pytest.mark.unit
class TestSession:
    """Tests for unlock/lock and API key storage."""

    def test_first_unlock_stores_verifier(self, service, settings_file):
        service.unlock(TEST_PASSWORD)

        assert service.is_unlocked
        assert load_settings_record(settings_file).password_verifier is not None

    def test_later_unlock_checks_password(self, service):
        """A restarted service only accepts the original password."""
        service.unlock(TEST_PASSWORD)
        restarted = reopen(service)

        with pytest.raises(DecryptionFailed):
            restarted.unlock("not the password")
        assert not restarted.is_unlocked

        restarted.unlock(TEST_PASSWORD)
        assert restarted.is_unlocked

    @pytest.mark.asyncio
    async def test_api_key_needs_unlocked_session(self, service):
        await service.initialize()

        with pytest.raises(CredentialError):
            service.add_provider(openai_provider(), api_key=OPENAI_KEY)

        assert not service.providers.has_provider("openai-main")

    @pytest.mark.asyncio
    async def test_keyed_provider_follows_session(self, service, settings_file):
        """Encrypted-key providers are usable only while unlocked."""
        await service.initialize()
        service.unlock(TEST_PASSWORD)

        stored = service.add_provider(openai_provider(), api_key=OPENAI_KEY)

        assert stored.encrypted_api_key is not None
        assert OPENAI_KEY not in settings_file.read_text(encoding="utf-8")
        assert service.providers.is_provider_available("openai-main")

        service.lock()
        assert not service.is_unlocked
        assert not service.providers.is_provider_available("openai-main")
        assert service.providers.is_provider_available("local")

        service.unlock(TEST_PASSWORD)
        assert service.providers.is_provider_available("openai-main")

    @pytest.mark.asyncio
    async def test_restart_needs_unlock_for_keys(self, service):
        await service.initialize()
        service.unlock(TEST_PASSWORD)
        service.add_provider(openai_provider(), api_key=OPENAI_KEY)

        restarted = reopen(service)
        await restarted.initialize()

        assert not restarted.providers.is_provider_available("openai-main")
        restarted.unlock(TEST_PASSWORD)
        assert restarted.providers.is_provider_available("openai-main")


@pytest.mark.unit
class TestServiceOperations:
    """Tests for the exposed agent and retrieval operations."""

    @pytest.mark.asyncio
    async def test_list_agents_shape(self, service):
        await service.initialize()

        assert service.list_agents() == [
            {
                "id": "default",
                "name": "Knowledge Assistant",
                "description": "General-purpose assistant over the indexed notes",
                "enabled": True,
            }
        ]

    @pytest.mark.asyncio
    async def test_execute_agent(self, service):
        await service.initialize()
        await service.ingest_vault()
        install_fake_providers(service.providers, {"local": FakeProvider([text_response("Ship sync first.")])})

        response = await service.execute_agent("default", "What did we decide for Q3?")

        assert response.success
        assert response.answer == "Ship sync first."

    @pytest.mark.asyncio
    async def test_execute_agent_returns_structured_errors(self, service):
        """Failures come back as unsuccessful responses, not exceptions."""
        await service.initialize()

        unknown = await service.execute_agent("nope", "hello")
        empty = await service.execute_agent("default", "   ")

        assert not unknown.success
        assert unknown.error["error"] == "CONFIGURATION_ERROR"
        assert unknown.error["context"]["agent_id"] == "nope"
        assert empty.error["error"] == "INVALID_REQUEST"

    @pytest.mark.asyncio
    async def test_run_agent_raises(self, service):
        await service.initialize()

        with pytest.raises(ConfigurationError):
            await service.run_agent("nope", "hello")

    @pytest.mark.asyncio
    async def test_query(self, service):
        await service.initialize()
        await service.ingest_vault()

        results = await service.query("rotate API keys", top_k=1, score_threshold=0.0, strategy="semantic")

        assert len(results) == 1
        assert results[0].document_id == "howto/rotate-keys.md"

    @pytest.mark.asyncio
    async def test_ingest_vault_scope(self, service):
        await service.initialize()

        report = await service.ingest_vault(scope=["journal"])

        assert report.documents_processed == 1
        assert service.retriever.stats()["total_documents"] == 1

    def test_defaults_follow_settings(self, fast_kdf, faiss_store, fake_embedder, vault_dir, monkeypatch):
        """Source and tool backend default to the configured vault."""
        from mnemosyne import service as service_module
        from mnemosyne.storage import SettingsRecord

        monkeypatch.setattr(service_module.settings, "vault_path", vault_dir)

        service = MnemosyneService(SettingsRecord(), faiss_store, fake_embedder)

        assert isinstance(service.source, FileSystemDocumentSource)
        assert service.source.root == vault_dir.resolve()
        assert isinstance(service.tool_backend, FileSystemToolBackend)
        assert service.record.salt is not None
