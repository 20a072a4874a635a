"""
Pytest configuration and shared fixtures.

Provides common fixtures for:
    - Configuration with test values
    - A deterministic fake embedder (no model download, no network)
    - Sample notes and documents
    - Vector stores on temporary paths (FAISS files, SQLite)
    - Key managers with cheap key derivation
    - Provider configurations and a scripted fake provider
"""

import re
import zlib
from pathlib import Path
from typing import Any, Optional
from unittest.mock import patch

import numpy as np
import pytest

from mnemosyne.llm.types import ChatResponse, FunctionCall, TokenUsage

TEST_DIMENSION = 64
TEST_PASSWORD = "correct horse battery"


# =============================================================================
# Configuration Fixtures
# =============================================================================

@pytest.fixture
def mock_settings(tmp_path: Path):
    """Provide test settings without requiring .env file."""
    with patch.dict(
        "os.environ",
        {
            "EMBEDDING_PROVIDER": "huggingface",
            "EMBEDDING_MODEL": "sentence-transformers/all-MiniLM-L6-v2",
            "EMBEDDING_DIMENSION": "384",
            "CHUNK_TARGET_SIZE": "800",
            "CHUNK_MIN_SIZE": "200",
            "CHUNK_MAX_SIZE": "1000",
            "CHUNK_OVERLAP": "100",
            "INDEX_PATH": str(tmp_path / "index" / "vectors"),
            "SETTINGS_PATH": str(tmp_path / "settings.json"),
            "VAULT_PATH": str(tmp_path / "vault"),
            "ENABLE_TRACING": "false",
        },
    ):
        from mnemosyne.config import Settings
        yield Settings()


# =============================================================================
# Embedding Fixtures
# =============================================================================

class FakeEmbedder:
    """
    Deterministic bag-of-words embedder.

    Each token is hashed into one of `dimension` buckets; texts sharing
    words get similar vectors and identical texts get identical vectors.
    """

    def __init__(self, dimension: int = TEST_DIMENSION, model_name: str = "fake-embedder") -> None:
        self.dimension = dimension
        self.model_name = model_name
        self.fail_on: set[str] = set()
        self.calls: list[list[str]] = []

    def _vector(self, text: str) -> np.ndarray:
        for marker in self.fail_on:
            if marker in text:
                raise RuntimeError(f"embedding failed for text containing {marker!r}")
        vector = np.zeros(self.dimension, dtype=np.float32)
        for token in re.findall(r"[a-z0-9]+", text.lower()):
            vector[zlib.crc32(token.encode()) % self.dimension] += 1.0
        if not vector.any():
            vector[0] = 1.0
        return vector / np.linalg.norm(vector)

    def embed_texts(self, texts: list[str]) -> np.ndarray:
        self.calls.append(list(texts))
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)
        return np.vstack([self._vector(t) for t in texts]).astype(np.float32)

    async def aembed_texts(self, texts: list[str]) -> np.ndarray:
        return self.embed_texts(texts)


@pytest.fixture
def fake_embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def sample_embeddings():
    """Provide sample normalized embeddings for testing."""
    rng = np.random.default_rng(42)
    embeddings = rng.random((5, TEST_DIMENSION)).astype(np.float32)
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    return embeddings / norms


# =============================================================================
# Sample Data Fixtures
# =============================================================================

@pytest.fixture
def sample_markdown_files():
    """Provide sample notes for a small vault."""
    return {
        "projects/roadmap.md": """---
title: Q3 Roadmap
tags: [planning, roadmap]
---
# Q3 Roadmap

## Goals

We decided to ship the sync engine before the mobile app. The sync engine
needs conflict resolution and an offline queue.

## Risks

Hiring is slow. #staffing
""",
        "howto/rotate-keys.md": """# How to rotate API keys

1. Open the provider settings.
2. Paste the new key.
3. Run the connection test.

Keys are encrypted with the master password before they are saved.
""",
        "journal/2024-05-01.md": """# Journal

Met Alice about the garden project. We planted tomatoes and basil.
See [[Garden Plan]] for the layout.
""",
    }


@pytest.fixture
def vault_dir(tmp_path: Path, sample_markdown_files) -> Path:
    """Provide a temporary vault with sample notes."""
    vault = tmp_path / "vault"
    for relative, content in sample_markdown_files.items():
        path = vault / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content, encoding="utf-8")
    (vault / ".obsidian").mkdir()
    (vault / ".obsidian" / "workspace.md").write_text("# hidden", encoding="utf-8")
    return vault


@pytest.fixture
def small_chunking():
    """Chunking config small enough to split the sample notes."""
    from mnemosyne.retrieval.chunker import ChunkingConfig

    return ChunkingConfig(target_size=200, min_size=60, max_size=300, overlap=20)


def make_document(doc_id: str, content: str, title: str = "", modified_at: Optional[float] = None):
    from mnemosyne.retrieval.sources import Document

    return Document(id=doc_id, title=title or doc_id, content=content, modified_at=modified_at)


def make_entry(chunk_id: str, vector, model: str = "fake-embedder", content: str = "", **metadata: Any):
    from mnemosyne.retrieval.chunker import Chunk
    from mnemosyne.retrieval.vector_store import VectorEntry

    document_id, _, index = chunk_id.partition("#")
    chunk = Chunk(
        content=content or f"content of {chunk_id}",
        chunk_id=chunk_id,
        document_id=document_id,
        document_title=document_id.title(),
        chunk_index=int(index or 0),
        metadata=dict(metadata),
    )
    return VectorEntry(chunk=chunk, vector=np.asarray(vector, dtype=np.float32), embedding_model=model)


# =============================================================================
# Vector Store Fixtures
# =============================================================================

@pytest.fixture
def tmp_index_dir(tmp_path: Path) -> Path:
    """Provide temporary directory for vector index files."""
    index_dir = tmp_path / "index"
    index_dir.mkdir()
    return index_dir


@pytest.fixture
def faiss_store(tmp_index_dir: Path):
    from mnemosyne.retrieval.faiss_store import FAISSVectorStore

    store = FAISSVectorStore(
        tmp_index_dir / "vectors",
        embedding_model="fake-embedder",
        dimension=TEST_DIMENSION,
        hybrid_weight=0.7,
    )
    store.load()
    return store


@pytest.fixture
def sql_store(tmp_index_dir: Path):
    from mnemosyne.retrieval.sql_store import SQLVectorStore

    store = SQLVectorStore(
        f"sqlite:///{tmp_index_dir / 'vectors.db'}",
        embedding_model="fake-embedder",
        dimension=TEST_DIMENSION,
        hybrid_weight=0.7,
    )
    store.load()
    return store


@pytest.fixture(params=["faiss", "sql"])
def vector_store(request):
    """Run a test against both persistence backends."""
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def retriever(faiss_store, fake_embedder, small_chunking):
    from mnemosyne.retrieval.retriever import Retriever

    return Retriever(faiss_store, fake_embedder, chunking=small_chunking)


# =============================================================================
# Security Fixtures
# =============================================================================

@pytest.fixture
def key_manager():
    """Key manager with an unlocked session and cheap key derivation."""
    from mnemosyne.security.key_manager import KeyManager

    manager = KeyManager(iterations=1000)
    manager.set_master_password(TEST_PASSWORD)
    return manager


@pytest.fixture
def locked_key_manager():
    from mnemosyne.security.key_manager import KeyManager

    return KeyManager(iterations=1000)


# =============================================================================
# Provider Fixtures
# =============================================================================

@pytest.fixture
def openai_config(key_manager):
    from mnemosyne.llm.provider import ProviderConfig

    return ProviderConfig(
        id="openai-main",
        name="OpenAI",
        backend="openai",
        model="gpt-4o-mini",
        encrypted_api_key=key_manager.encrypt("sk-test-0123456789abcdefghij"),
    )


@pytest.fixture
def anthropic_config(key_manager):
    from mnemosyne.llm.provider import ProviderConfig

    return ProviderConfig(
        id="claude",
        name="Anthropic",
        backend="anthropic",
        model="claude-3-5-haiku-latest",
        encrypted_api_key=key_manager.encrypt("sk-ant-REDACTED"),
    )


@pytest.fixture
def ollama_config():
    from mnemosyne.llm.provider import ProviderConfig

    return ProviderConfig(id="local", name="Ollama", backend="ollama", model="llama3.1")


class FakeProvider:
    """
    Scripted stand-in for LLMProvider.

    Each call pops the next item from `script`: a ChatResponse is returned,
    an exception is raised. The last item repeats once the script runs out.
    """

    def __init__(self, script: list, backend: str = "ollama", model: str = "fake-model") -> None:
        self.script = list(script)
        self.backend = backend
        self.model = model
        self.calls: list[dict[str, Any]] = []

    def _next(self, messages, tools):
        self.calls.append({"messages": list(messages), "tools": tools})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def chat(self, messages, options=None):
        return self._next(messages, None)

    async def chat_with_functions(self, messages, tools, options=None):
        return self._next(messages, tools)


def text_response(content: str, prompt_tokens: int = 10, completion_tokens: int = 5) -> ChatResponse:
    return ChatResponse(
        content=content,
        model="fake-model",
        finish_reason="stop",
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def tool_response(name: str, arguments: dict, call_id: str = "call_1") -> ChatResponse:
    return ChatResponse(
        content="",
        model="fake-model",
        finish_reason="tool_calls",
        usage=TokenUsage(prompt_tokens=10, completion_tokens=3),
        function_call=FunctionCall(name=name, arguments=arguments, id=call_id),
    )


@pytest.fixture
def provider_manager(ollama_config, locked_key_manager):
    """ProviderManager holding one keyless Ollama provider."""
    from mnemosyne.llm.manager import ProviderManager

    manager = ProviderManager([ollama_config], locked_key_manager)
    manager.initialize()
    return manager


def install_fake_providers(manager, providers: dict[str, FakeProvider]):
    """Make manager.get_provider hand out fake providers by id."""
    original = manager.get_provider

    def get_provider(provider_id):
        if provider_id in providers:
            return providers[provider_id]
        return original(provider_id)

    manager.get_provider = get_provider
    return manager


# =============================================================================
# Service Fixtures
# =============================================================================

@pytest.fixture
def fast_kdf(monkeypatch):
    """Keep key derivation cheap for managers built from settings."""
    from mnemosyne.config import settings

    monkeypatch.setattr(settings, "kdf_iterations", 1000)


@pytest.fixture
def settings_file(tmp_path: Path) -> Path:
    return tmp_path / "data" / "settings.json"


@pytest.fixture
def service(fast_kdf, ollama_config, faiss_store, fake_embedder, settings_file, vault_dir):
    """Service over a temporary vault, FAISS index and settings file."""
    from mnemosyne.agents.file_tools import FileSystemToolBackend
    from mnemosyne.retrieval.sources import FileSystemDocumentSource
    from mnemosyne.service import MnemosyneService
    from mnemosyne.storage import SettingsRecord

    return MnemosyneService(
        record=SettingsRecord(providers=[ollama_config]),
        store=faiss_store,
        embedder=fake_embedder,
        settings_path=settings_file,
        source=FileSystemDocumentSource(vault_dir),
        tool_backend=FileSystemToolBackend(vault_dir),
    )
