"""
Singleton resource management for the vector store and embedders.

Provides cached instances of expensive resources that should only be
loaded once per application lifecycle. Uses @lru_cache pattern (same
as config.py settings singleton).

Key resources:
    - Vector store (FAISS files or SQL table, chosen by settings)
    - LocalEmbedder (sentence-transformer model, slow first load)
    - HuggingFaceEmbedder (API client, instant)

Usage:
    store = get_vector_store()  # First call loads, subsequent calls instant
    embedder = get_embedder()

    # In tests (reset cache)
    clear_resource_cache()
"""

import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from mnemosyne.config import settings

if TYPE_CHECKING:
    from mnemosyne.retrieval.embeddings import EmbeddingProvider, HuggingFaceEmbedder, LocalEmbedder
    from mnemosyne.retrieval.vector_store import VectorStore

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_vector_store() -> "VectorStore":
    """
    Get or create the global vector store, loaded from its backing medium.

    Returns:
        VectorStore for the configured backend

    Raises:
        StoreIOError: If existing index data cannot be read
    """
    if settings.vector_store_backend == "sql":
        from mnemosyne.retrieval.sql_store import SQLVectorStore

        store: "VectorStore" = SQLVectorStore(settings.database_url)
    else:
        from mnemosyne.retrieval.faiss_store import FAISSVectorStore

        store = FAISSVectorStore(settings.index_path)

    logger.info(f"Loading {settings.vector_store_backend} vector store...")
    store.load()
    logger.info(f"Vector store loaded ({store.size} entries)")
    return store


@lru_cache(maxsize=1)
def get_local_embedder() -> "LocalEmbedder":
    """Get or create the global LocalEmbedder instance."""
    from mnemosyne.retrieval.embeddings import LocalEmbedder

    logger.info(
        f"Loading local embedder model: {settings.embedding_model} "
        "(this may take 5-10 seconds)..."
    )
    embedder = LocalEmbedder(model=settings.embedding_model, show_progress=False)
    logger.info(f"Local embedder loaded successfully ({embedder.model_name})")
    return embedder


@lru_cache(maxsize=1)
def get_hf_embedder() -> "HuggingFaceEmbedder":
    """Get or create the global HuggingFaceEmbedder instance."""
    from mnemosyne.retrieval.embeddings import HuggingFaceEmbedder

    logger.info(f"Initializing HuggingFace embedder for model: {settings.embedding_model}")
    return HuggingFaceEmbedder(model=settings.embedding_model, api_key=settings.hf_api_key_value)


def get_embedder() -> "EmbeddingProvider":
    """Return the embedder selected by settings.embedding_provider."""
    if settings.embedding_provider == "huggingface":
        return get_hf_embedder()
    return get_local_embedder()


def clear_resource_cache() -> None:
    """
    Clear all cached resources.

    Used in tests to reset state between test cases.
    """
    get_vector_store.cache_clear()
    get_local_embedder.cache_clear()
    get_hf_embedder.cache_clear()
    logger.debug("Resource cache cleared")
