"""
Service facade exposed to UI layers (HTTP API, CLI).

MnemosyneService wires the persisted settings record, the key manager, the
retriever, the provider manager and the agent manager together, and owns
the session lifecycle (unlock/lock).
"""

import logging
from pathlib import Path
from typing import Any, Optional

from mnemosyne.agents.file_tools import FileSystemToolBackend
from mnemosyne.agents.manager import AgentManager
from mnemosyne.agents.models import AgentConfig, AgentResponse, ExecutionContext
from mnemosyne.agents.tools import ToolBackend
from mnemosyne.config import settings
from mnemosyne.errors import CredentialError, DecryptionFailed, MnemosyneError
from mnemosyne.llm.manager import ProviderManager
from mnemosyne.llm.provider import ProviderConfig
from mnemosyne.notifications import LoggingNotificationSink, NotificationSink
from mnemosyne.retrieval.embeddings import EmbeddingProvider
from mnemosyne.retrieval.retriever import IngestionReport, Retriever
from mnemosyne.retrieval.sources import DocumentSource, FileSystemDocumentSource
from mnemosyne.retrieval.vector_store import MetadataFilters, RetrievedChunk, Strategy, VectorStore
from mnemosyne.security.key_manager import KeyManager, sanitize_api_key, validate_api_key_format
from mnemosyne.storage import SettingsRecord, load_settings_record, save_settings_record
from mnemosyne.tracing import traced

logger = logging.getLogger(__name__)


class MnemosyneService:
    """
    Entry point for collaborators.

    Example:
        >>> service = MnemosyneService.from_settings()
        >>> await service.initialize()
        >>> service.unlock("correct horse battery")
        >>> response = await service.execute_agent("default", "What did I plan for Q3?")
    """

    def __init__(
        self,
        record: SettingsRecord,
        store: VectorStore,
        embedder: Optional[EmbeddingProvider],
        settings_path: Optional[Path] = None,
        source: Optional[DocumentSource] = None,
        tool_backend: Optional[ToolBackend] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.record = record
        self.settings_path = Path(settings_path) if settings_path else None
        self.notifier = notifier or LoggingNotificationSink()

        self.key_manager = KeyManager(salt=record.salt_bytes)
        if record.salt is None:
            record.salt = self.key_manager.salt_b64

        self.retriever = Retriever(store, embedder, notifier=self.notifier)
        self.source = source or FileSystemDocumentSource(settings.vault_path)
        self.tool_backend = tool_backend or FileSystemToolBackend(settings.vault_path, self.retriever)
        self.providers = ProviderManager(record.providers, self.key_manager, self.notifier)
        self.agents = AgentManager(
            record.agents,
            self.providers,
            retriever=self.retriever,
            tool_backend=self.tool_backend,
            notifier=self.notifier,
            on_change=self._agents_changed,
        )

    @classmethod
    def from_settings(cls) -> "MnemosyneService":
        """Build a service from application settings and cached resources."""
        from mnemosyne.retrieval.resources import get_embedder, get_vector_store

        record = load_settings_record(settings.settings_path)
        return cls(
            record=record,
            store=get_vector_store(),
            embedder=get_embedder(),
            settings_path=settings.settings_path,
        )

    async def initialize(self) -> None:
        """
        Load the index and initialize providers and agents.

        Providers with encrypted keys stay unavailable until unlock().
        """
        await self.retriever.initialize()
        self._reload_runtime()

    def _reload_runtime(self) -> None:
        self.providers.initialize()
        self.agents.initialize()

    # ==========================================================================
    # Persistence
    # ==========================================================================
    def save(self) -> None:
        """
        Raises:
            StoreIOError: If the settings file cannot be written
        """
        self.record.providers = self.providers.list_configs()
        if self.settings_path is not None:
            save_settings_record(self.record, self.settings_path)

    def _agents_changed(self, configs: list[AgentConfig]) -> None:
        self.record.agents = configs
        self.save()

    # ==========================================================================
    # Session
    # ==========================================================================
    def unlock(self, password: str) -> None:
        """
        Set the master password for this session.

        The first unlock stores a verifier; later unlocks are checked against it.

        Raises:
            DecryptionFailed: If the password does not match the stored verifier
            CredentialError: If the password is too short
        """
        verifier = self.record.password_verifier
        if verifier is not None and not self.key_manager.verify_password(password, verifier):
            raise DecryptionFailed("Incorrect master password")

        session = self.key_manager.set_master_password(password)
        if verifier is None:
            self.record.password_verifier = self.key_manager.create_verifier(session)
            self.record.salt = self.key_manager.salt_b64
            self.save()
        self._reload_runtime()
        logger.info("Session unlocked")

    def lock(self) -> None:
        """Zero the session key; providers with encrypted keys become unavailable."""
        self.key_manager.clear_master_password()
        self._reload_runtime()
        logger.info("Session locked")

    @property
    def is_unlocked(self) -> bool:
        return self.key_manager.has_master_password()

    # ==========================================================================
    # Providers
    # ==========================================================================
    def add_provider(self, config: ProviderConfig, api_key: Optional[str] = None) -> ProviderConfig:
        """
        Register a provider, encrypting its API key under the session key.

        Raises:
            CredentialError: If an API key is given while the session is locked
            ConfigurationError: If the provider id is taken
        """
        if api_key:
            if not self.key_manager.has_master_password():
                raise CredentialError("Unlock the session before storing an API key")
            if not validate_api_key_format(config.backend, api_key):
                logger.warning(
                    f"API key {sanitize_api_key(api_key)} does not look like a {config.backend} key"
                )
            config = config.model_copy(update={"encrypted_api_key": self.key_manager.encrypt(api_key)})
        self.providers.add_provider(config)
        self.save()
        return config

    def remove_provider(self, provider_id: str) -> None:
        self.providers.remove_provider(provider_id)
        self.save()
        self.agents.initialize()

    # ==========================================================================
    # Exposed operations
    # ==========================================================================
    def list_agents(self) -> list[dict[str, Any]]:
        return [
            {k: agent[k] for k in ("id", "name", "description", "enabled")}
            for agent in self.agents.list_agents()
        ]

    @traced("service.run_agent")
    async def run_agent(
        self,
        agent_id: str,
        query: str,
        context: Optional[ExecutionContext] = None,
    ) -> AgentResponse:
        """Execute an agent, letting errors propagate."""
        return await self.agents.execute_agent(agent_id, query, context)

    @traced("service.delegate")
    async def delegate(
        self,
        query: str,
        capability: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
    ) -> AgentResponse:
        """Let the agent registry pick a specialist for the query, letting errors propagate."""
        return await self.agents.delegate(query, capability, context)

    async def execute_agent(
        self,
        agent_id: str,
        query: str,
        context: Optional[ExecutionContext] = None,
    ) -> AgentResponse:
        """
        Execute an agent and return a structured response.

        Failures are returned as AgentResponse(success=False, error=...) and
        never raised.
        """
        try:
            return await self.run_agent(agent_id, query, context)
        except MnemosyneError as e:
            logger.error(f"Agent {agent_id} failed: {e.code} {e.message}")
            return AgentResponse(answer="", agent_id=agent_id, success=False, error=e.to_dict())
        except ValueError as e:
            return AgentResponse(
                answer="",
                agent_id=agent_id,
                success=False,
                error={"error": "INVALID_REQUEST", "message": str(e), "context": {}},
            )

    async def query(
        self,
        text: str,
        filters: Optional[MetadataFilters] = None,
        top_k: Optional[int] = None,
        score_threshold: Optional[float] = None,
        strategy: Optional[Strategy] = None,
    ) -> list[RetrievedChunk]:
        """Direct retrieval, bypassing agents and models."""
        return await self.retriever.retrieve(
            text,
            top_k=top_k,
            filters=filters,
            score_threshold=score_threshold,
            strategy=strategy,
        )

    async def ingest_vault(self, scope: Optional[list[str]] = None, incremental: bool = False) -> IngestionReport:
        """
        Index documents from the document source.

        With incremental set, only new or modified documents are embedded
        and documents deleted from the source are dropped from the index.
        """
        if incremental:
            return await self.retriever.sync_source(self.source, scope)
        return await self.retriever.ingest_source(self.source, scope)

    def is_ready(self) -> bool:
        return self.retriever.is_ready() and self.providers.is_ready() and self.agents.is_ready()

    def readiness(self) -> dict[str, Any]:
        return {
            "retriever": self.retriever.is_ready(),
            "providers": self.providers.is_ready(),
            "agents": self.agents.is_ready(),
            "session_unlocked": self.is_unlocked,
            "ready": self.is_ready(),
        }

    def get_stats(self) -> dict[str, Any]:
        return {
            "rag": self.retriever.stats(),
            "llm": self.providers.stats(),
            "agents": self.agents.stats(),
            "ready": self.is_ready(),
        }
