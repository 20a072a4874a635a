"""
Embedding generation for document chunks and queries.

Two backends share the EmbeddingProvider protocol:
    - LocalEmbedder: sentence-transformers model loaded in-process
    - HuggingFaceEmbedder: HuggingFace Inference API over httpx

Both return L2-normalized float32 vectors so cosine similarity is a dot product.
"""

import asyncio
import logging
import time
from typing import Optional, Protocol, runtime_checkable

import httpx
import numpy as np
from numpy.typing import NDArray

from mnemosyne.config import settings

logger = logging.getLogger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol that all embedders must implement."""

    model_name: str
    dimension: int

    def embed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """Embed texts into an array of shape (len(texts), dimension)."""
        ...

    async def aembed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """Async variant of embed_texts."""
        ...


def normalize_embeddings(embeddings: NDArray[np.float32]) -> NDArray[np.float32]:
    """
    Normalize embeddings to unit length for cosine similarity.

    Args:
        embeddings: Array of shape (n, dimension)

    Returns:
        Normalized embeddings of same shape
    """
    norms = np.linalg.norm(embeddings, axis=1, keepdims=True)
    # Avoid division by zero
    norms = np.where(norms == 0, 1, norms)
    return (embeddings / norms).astype(np.float32)


class HuggingFaceEmbedder:
    """
    Generate embeddings using HuggingFace Inference API.

    Uses the free-tier API with retry logic for rate limits.

    Example:
        >>> embedder = HuggingFaceEmbedder()
        >>> vectors = embedder.embed_texts(["What is a zettelkasten?"])
        >>> vectors.shape
        (1, 384)
    """

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        batch_size: Optional[int] = None,
        dimension: Optional[int] = None,
    ) -> None:
        """
        Initialize the embedder.

        Args:
            model: HuggingFace model ID (default from settings)
            api_key: HuggingFace API key (default from settings)
            batch_size: Number of texts per API call
            dimension: Expected vector dimension (default from settings)
        """
        self.model_name = model or settings.embedding_model
        self.api_key = api_key or settings.hf_api_key_value
        self.batch_size = batch_size or settings.embedding_batch_size
        self.dimension = dimension or settings.embedding_dimension
        self.base_url = "https://router.huggingface.co/hf-inference/models"
        self.max_retries = 3
        self.initial_retry_delay = 1.0  # seconds

    @property
    def url(self) -> str:
        return f"{self.base_url}/{self.model_name}/pipeline/feature-extraction"

    @property
    def headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def embed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Generate embeddings for a list of texts.

        Handles batching and retry logic for rate limits.

        Args:
            texts: List of texts to embed

        Returns:
            Array of shape (len(texts), embedding_dimension)
        """
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)

        all_embeddings = [
            self._embed_batch_sync(texts[i : i + self.batch_size])
            for i in range(0, len(texts), self.batch_size)
        ]
        return np.vstack(all_embeddings)

    def _embed_batch_sync(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Embed a single batch of texts with retry logic.

        Args:
            texts: List of texts to embed (should be <= batch_size)

        Returns:
            Array of embeddings

        Raises:
            httpx.HTTPStatusError: If API returns non-429 error or retries run out
            httpx.HTTPError: If network error occurs
        """
        retry_delay = self.initial_retry_delay

        with httpx.Client(timeout=30.0) as client:
            for attempt in range(self.max_retries):
                response = client.post(self.url, json={"inputs": texts}, headers=self.headers)

                # Handle rate limiting with exponential backoff
                if response.status_code == 429 and attempt < self.max_retries - 1:
                    logger.warning(f"Embedding API rate limited, retrying in {retry_delay:.1f}s")
                    time.sleep(retry_delay)
                    retry_delay *= 2
                    continue

                response.raise_for_status()
                return normalize_embeddings(np.array(response.json(), dtype=np.float32))

        raise RuntimeError("Unexpected error in embed_batch_sync")

    async def aembed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Async version of embed_texts for concurrent processing.

        Args:
            texts: List of texts to embed

        Returns:
            Array of shape (len(texts), embedding_dimension)
        """
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)

        batches = [
            texts[i : i + self.batch_size]
            for i in range(0, len(texts), self.batch_size)
        ]

        # Process all batches concurrently
        batch_results = await asyncio.gather(*(self._embed_batch_async(batch) for batch in batches))
        return np.vstack(batch_results)

    async def _embed_batch_async(self, texts: list[str]) -> NDArray[np.float32]:
        """
        Async embed a single batch of texts with retry logic.

        Raises:
            httpx.HTTPStatusError: If API returns non-429 error or retries run out
            httpx.HTTPError: If network error occurs
        """
        retry_delay = self.initial_retry_delay

        async with httpx.AsyncClient(timeout=30.0) as client:
            for attempt in range(self.max_retries):
                response = await client.post(self.url, json={"inputs": texts}, headers=self.headers)

                if response.status_code == 429 and attempt < self.max_retries - 1:
                    logger.warning(f"Embedding API rate limited, retrying in {retry_delay:.1f}s")
                    await asyncio.sleep(retry_delay)
                    retry_delay *= 2
                    continue

                response.raise_for_status()
                return normalize_embeddings(np.array(response.json(), dtype=np.float32))

        raise RuntimeError("Unexpected error in embed_batch_async")

    def embed_query(self, query: str) -> NDArray[np.float32]:
        """
        Generate embedding for a single query.

        Args:
            query: Query text

        Returns:
            Array of shape (embedding_dimension,)
        """
        return self.embed_texts([query])[0]


class LocalEmbedder:
    """
    Generate embeddings with a local sentence-transformers model.

    The model is loaded once at construction; encoding runs in a worker
    thread for the async API so the event loop is never blocked.
    """

    def __init__(
        self,
        model: Optional[str] = None,
        batch_size: Optional[int] = None,
        show_progress: bool = False,
    ) -> None:
        from sentence_transformers import SentenceTransformer

        self.model_name = model or settings.embedding_model
        self.batch_size = batch_size or settings.embedding_batch_size
        self.show_progress = show_progress
        self.model = SentenceTransformer(self.model_name)
        self.dimension = int(self.model.get_sentence_embedding_dimension() or settings.embedding_dimension)

    def embed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        if not texts:
            return np.empty((0, self.dimension), dtype=np.float32)

        embeddings = self.model.encode(
            texts,
            batch_size=self.batch_size,
            show_progress_bar=self.show_progress,
            convert_to_numpy=True,
        )
        return normalize_embeddings(np.asarray(embeddings, dtype=np.float32))

    async def aembed_texts(self, texts: list[str]) -> NDArray[np.float32]:
        return await asyncio.to_thread(self.embed_texts, texts)

    def embed_query(self, query: str) -> NDArray[np.float32]:
        return self.embed_texts([query])[0]
