"""
Vector store core: entries, metadata filtering and relevance scoring.

The VectorStore base class owns the in-memory snapshot of entries and all
query logic; subclasses only implement persistence:
    - FAISSVectorStore (faiss_store.py): flat index file + JSON metadata
    - SQLVectorStore (sql_store.py): relational table keyed by chunk id

Writers build a new snapshot, persist it, then publish it with a single
attribute swap. Readers work on whichever snapshot was published when the
query started (read-committed), so queries never block on ingestion.
"""

import logging
import math
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import Counter
from dataclasses import dataclass, field
from functools import cached_property
from typing import Any, Iterable, Literal, Optional

import numpy as np
from numpy.typing import NDArray

from mnemosyne.errors import DimensionMismatch
from mnemosyne.retrieval.chunker import STOP_WORDS, Chunk

logger = logging.getLogger(__name__)

Strategy = Literal["semantic", "keyword", "hybrid"]
MetadataFilters = dict[str, list[str]]

STORE_FORMAT_VERSION = 1
TOKEN_PATTERN = re.compile(r"[a-z0-9]+")


@dataclass
class VectorEntry:
    """A chunk plus its embedding and the model that produced it."""

    chunk: Chunk
    """The indexed chunk."""

    vector: NDArray[np.float32]
    """Embedding vector (stored unit-normalized)."""

    embedding_model: str
    """Identifier of the embedding model used for this vector."""

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def dimension(self) -> int:
        return int(self.vector.shape[-1])

    @cached_property
    def term_counts(self) -> Counter:
        """Token counts of the chunk text, used for keyword scoring."""
        return Counter(tokenize(self.chunk.content))

    def to_dict(self, include_vector: bool = True) -> dict[str, Any]:
        data: dict[str, Any] = {
            "chunk": self.chunk.to_dict(),
            "embedding_model": self.embedding_model,
        }
        if include_vector:
            data["vector"] = [float(x) for x in self.vector]
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], vector: Optional[NDArray[np.float32]] = None) -> "VectorEntry":
        if vector is None:
            vector = np.asarray(data["vector"], dtype=np.float32)
        return cls(
            chunk=Chunk.from_dict(data["chunk"]),
            vector=vector,
            embedding_model=data["embedding_model"],
        )


@dataclass
class RetrievedChunk:
    """A vector store entry surfaced as a query result."""

    chunk: Chunk
    """The matched chunk."""

    score: float
    """Relevance score in [0, 1] for the requested strategy."""

    rank: int
    """1-based position in the result list."""

    semantic_score: Optional[float] = None
    """Cosine similarity component (semantic and hybrid strategies)."""

    keyword_score: Optional[float] = None
    """Term-overlap component (keyword and hybrid strategies)."""

    @property
    def chunk_id(self) -> str:
        return self.chunk.chunk_id

    @property
    def document_id(self) -> str:
        return self.chunk.document_id

    @property
    def document_title(self) -> str:
        return self.chunk.document_title

    @property
    def section(self) -> str:
        return str(self.chunk.metadata.get("section", ""))

    @property
    def content(self) -> str:
        return self.chunk.content

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk": self.chunk.to_dict(),
            "score": self.score,
            "rank": self.rank,
            "semantic_score": self.semantic_score,
            "keyword_score": self.keyword_score,
        }


@dataclass
class StoreStats:
    """Read-only summary of a vector store."""

    backend: str
    total_entries: int
    embedding_model: str
    dimension: int
    document_counts: dict[str, int] = field(default_factory=dict)
    content_type_counts: dict[str, int] = field(default_factory=dict)
    stale_entries: int = 0
    created_at: Optional[float] = None
    updated_at: Optional[float] = None

    @property
    def total_documents(self) -> int:
        return len(self.document_counts)


# =============================================================================
# Scoring helpers
# =============================================================================

def tokenize(text: str) -> list[str]:
    """Lower-case alphanumeric tokens without stop words."""
    return [t for t in TOKEN_PATTERN.findall(text.lower()) if t not in STOP_WORDS and len(t) > 1]


def keyword_score(query_terms: Counter, chunk_terms: Counter) -> float:
    """
    Normalized term-frequency overlap between a query and a chunk.

    Each query term contributes min(query count, chunk count); the sum is
    divided by the total query term count, giving a score in [0, 1].
    """
    total = sum(query_terms.values())
    if total == 0:
        return 0.0
    matched = sum(min(count, chunk_terms.get(term, 0)) for term, count in query_terms.items())
    return matched / total


def matches_filters(chunk: Chunk, filters: Optional[MetadataFilters]) -> bool:
    """
    Check a chunk against metadata filters with set-membership semantics.

    A chunk passes when, for every filter key with a non-empty value set,
    its value intersects the set (list values) or is a member of it
    (scalar values). Empty value sets are ignored.
    """
    if not filters:
        return True

    for key, allowed in filters.items():
        if not allowed:
            continue
        allowed_set = {str(v) for v in allowed}
        value = chunk.get_field(key)
        if value is None:
            return False
        if isinstance(value, (list, tuple, set)):
            if not allowed_set.intersection(str(v) for v in value):
                return False
        elif str(value) not in allowed_set:
            return False

    return True


def _normalize(vector: NDArray[np.float32]) -> NDArray[np.float32]:
    norm = float(np.linalg.norm(vector))
    if norm == 0:
        return vector.astype(np.float32)
    return (vector / norm).astype(np.float32)


# =============================================================================
# Vector store base
# =============================================================================

class VectorStore(ABC):
    """
    Durable storage and nearest-neighbor/keyword querying of chunk entries.

    Example:
        >>> store = FAISSVectorStore(path, embedding_model="all-MiniLM-L6-v2", dimension=384)
        >>> store.upsert(entries)
        >>> results = store.query(query_vector, top_k=5, score_threshold=0.5)
    """

    backend_name = "base"

    def __init__(
        self,
        embedding_model: str,
        dimension: int,
        hybrid_weight: Optional[float] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            embedding_model: Identifier of the configured embedding model
            dimension: Vector dimension shared by all entries
            hybrid_weight: Semantic weight for hybrid scoring (default from settings)
        """
        from mnemosyne.config import settings

        if dimension <= 0:
            raise ValueError(f"dimension must be positive, got {dimension}")
        weight = settings.hybrid_semantic_weight if hybrid_weight is None else hybrid_weight
        if not 0.0 <= weight <= 1.0:
            raise ValueError(f"hybrid_weight must be in [0, 1], got {weight}")

        self.embedding_model = embedding_model
        self.dimension = dimension
        self.hybrid_weight = weight
        self._entries: dict[str, VectorEntry] = {}
        self._lock = threading.Lock()
        self._loaded = False
        self.created_at: Optional[float] = None
        self.updated_at: Optional[float] = None

    # ==========================================================================
    # Persistence hooks
    # ==========================================================================
    @abstractmethod
    def _load_entries(self) -> dict[str, VectorEntry]:
        """Read all entries from the backing medium (empty if none exist)."""

    @abstractmethod
    def _persist(
        self,
        entries: dict[str, VectorEntry],
        upserted: list[VectorEntry],
        deleted: list[str],
    ) -> None:
        """Write a new snapshot. Must raise StoreIOError on failure."""

    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    @property
    def is_initialized(self) -> bool:
        """Whether load() has run."""
        return self._loaded

    @property
    def size(self) -> int:
        """Number of entries in the published snapshot."""
        return len(self._entries)

    def __len__(self) -> int:
        return self.size

    def load(self) -> None:
        """
        Load entries from the backing medium.

        Raises:
            StoreIOError: If the medium exists but cannot be read
        """
        with self._lock:
            self._entries = self._load_entries()
            self._loaded = True
            if self.created_at is None:
                self.created_at = time.time()
        logger.info(f"Loaded {len(self._entries)} entries from {self.backend_name} vector store")

    def is_stale(self, entry: VectorEntry) -> bool:
        """Entries from another embedding model or dimension are stale."""
        return entry.embedding_model != self.embedding_model or entry.dimension != self.dimension

    # ==========================================================================
    # Mutations
    # ==========================================================================
    def upsert(self, entries: Iterable[VectorEntry]) -> int:
        """
        Insert or replace entries by chunk id and persist the result.

        Args:
            entries: Entries to write as one atomic batch

        Returns:
            Number of entries written

        Raises:
            DimensionMismatch: If any vector has the wrong length (nothing is written)
            StoreIOError: If persisting fails (the published snapshot is unchanged)
        """
        prepared = [self._prepare(entry) for entry in entries]
        if not prepared:
            return 0

        with self._lock:
            updated = dict(self._entries)
            for entry in prepared:
                updated[entry.chunk_id] = entry
            self._commit(updated, upserted=prepared, deleted=[])

        logger.debug(f"Upserted {len(prepared)} entries")
        return len(prepared)

    def delete(self, document_id: str) -> int:
        """
        Remove all entries belonging to a document.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = [cid for cid, e in self._entries.items() if e.chunk.document_id == document_id]
            if not removed:
                return 0
            removed_ids = set(removed)
            updated = {cid: e for cid, e in self._entries.items() if cid not in removed_ids}
            self._commit(updated, upserted=[], deleted=removed)

        logger.info(f"Deleted {len(removed)} entries for document {document_id}")
        return len(removed)

    def replace_document(self, document_id: str, entries: Iterable[VectorEntry]) -> int:
        """
        Swap all entries of a document for a new set in one batch.

        Used for re-ingestion, so queries never see a half-replaced document.

        Returns:
            Number of entries written
        """
        prepared = [self._prepare(entry) for entry in entries]
        with self._lock:
            removed = [cid for cid, e in self._entries.items() if e.chunk.document_id == document_id]
            new_ids = {entry.chunk_id for entry in prepared}
            updated = {cid: e for cid, e in self._entries.items() if e.chunk.document_id != document_id}
            for entry in prepared:
                updated[entry.chunk_id] = entry
            if not removed and not prepared:
                return 0
            self._commit(
                updated,
                upserted=prepared,
                deleted=[cid for cid in removed if cid not in new_ids],
            )
        return len(prepared)

    def clear(self) -> None:
        """Remove every entry."""
        with self._lock:
            removed = list(self._entries)
            self._commit({}, upserted=[], deleted=removed)
        logger.info("Vector store cleared")

    def import_entries(self, data: dict[str, Any], replace: bool = False) -> int:
        """
        Import an exported snapshot.

        Args:
            data: Output of export()
            replace: Clear the store first

        Returns:
            Number of entries imported
        """
        entries = [VectorEntry.from_dict(item) for item in data.get("entries", [])]
        if replace:
            self.clear()
        return self.upsert(entries)

    def _prepare(self, entry: VectorEntry) -> VectorEntry:
        vector = np.asarray(entry.vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimension:
            raise DimensionMismatch(
                f"Vector for chunk {entry.chunk_id} has dimension {vector.shape[0]}, "
                f"store expects {self.dimension}",
                chunk_id=entry.chunk_id,
                expected=self.dimension,
                actual=int(vector.shape[0]),
            )
        return VectorEntry(chunk=entry.chunk, vector=_normalize(vector), embedding_model=entry.embedding_model)

    def _commit(self, updated: dict[str, VectorEntry], upserted: list[VectorEntry], deleted: list[str]) -> None:
        # Caller holds self._lock
        self._persist(updated, upserted, deleted)
        now = time.time()
        self.created_at = self.created_at or now
        self.updated_at = now
        self._entries = updated

    # ==========================================================================
    # Queries
    # ==========================================================================
    def get(self, chunk_id: str) -> Optional[VectorEntry]:
        return self._entries.get(chunk_id)

    def entries(self) -> list[VectorEntry]:
        return list(self._entries.values())

    def query(
        self,
        query_vector: Optional[NDArray[np.float32]] = None,
        top_k: int = 5,
        metadata_filters: Optional[MetadataFilters] = None,
        score_threshold: float = 0.0,
        strategy: Strategy = "semantic",
        query_text: Optional[str] = None,
    ) -> list[RetrievedChunk]:
        """
        Rank entries against a query.

        Filters are applied before scoring. Results are sorted by score
        (descending), ties broken by semantic score, then recency, then
        chunk id; entries below score_threshold are never returned.

        Args:
            query_vector: Query embedding (semantic and hybrid strategies)
            top_k: Maximum number of results
            metadata_filters: Key to allowed-values mapping
            score_threshold: Minimum score in [0, 1]
            strategy: "semantic", "keyword" or "hybrid"
            query_text: Query text (keyword and hybrid strategies)

        Returns:
            Up to top_k retrieved chunks, never padded

        Raises:
            ValueError: On invalid arguments
            DimensionMismatch: If the query vector has the wrong length
        """
        if top_k < 0:
            raise ValueError(f"top_k must be non-negative, got {top_k}")
        if not 0.0 <= score_threshold <= 1.0:
            raise ValueError(f"score_threshold must be in [0, 1], got {score_threshold}")
        if strategy not in ("semantic", "keyword", "hybrid"):
            raise ValueError(f"Unknown strategy: {strategy}")

        uses_vector = strategy in ("semantic", "hybrid")
        uses_text = strategy in ("keyword", "hybrid")
        if uses_vector and query_vector is None:
            raise ValueError(f"{strategy} strategy requires a query vector")
        if uses_text and not query_text:
            raise ValueError(f"{strategy} strategy requires query text")

        snapshot = self._entries
        if top_k == 0 or not snapshot:
            return []

        candidates = [e for e in snapshot.values() if matches_filters(e.chunk, metadata_filters)]
        if not candidates:
            return []

        semantic: dict[str, float] = {}
        if uses_vector:
            vector = np.asarray(query_vector, dtype=np.float32).reshape(-1)
            if vector.shape[0] != self.dimension:
                raise DimensionMismatch(
                    f"Query vector has dimension {vector.shape[0]}, store expects {self.dimension}",
                    expected=self.dimension,
                    actual=int(vector.shape[0]),
                )
            fresh = [e for e in candidates if not self.is_stale(e)]
            if fresh:
                semantic = self._semantic_scores(_normalize(vector), fresh)
            if query_text:
                # Stale entries only match on exact text
                wanted = query_text.strip().lower()
                for entry in candidates:
                    if self.is_stale(entry) and entry.chunk.content.strip().lower() == wanted:
                        semantic[entry.chunk_id] = 1.0

        query_terms = Counter(tokenize(query_text or "")) if uses_text else Counter()

        scored: list[tuple[float, Optional[float], Optional[float], VectorEntry]] = []
        for entry in candidates:
            sem = semantic.get(entry.chunk_id) if uses_vector else None
            if uses_vector and sem is None:
                continue
            kw = keyword_score(query_terms, entry.term_counts) if uses_text else None

            if strategy == "semantic":
                score = sem
            elif strategy == "keyword":
                score = kw
            else:
                score = self.hybrid_weight * sem + (1.0 - self.hybrid_weight) * kw

            score = min(1.0, max(0.0, float(score)))
            if score >= score_threshold:
                scored.append((score, sem, kw, entry))

        scored.sort(
            key=lambda item: (
                -item[0],
                -(item[1] or 0.0),
                -float(item[3].chunk.metadata.get("modified_at") or 0.0),
                item[3].chunk_id,
            )
        )

        return [
            RetrievedChunk(chunk=entry.chunk, score=score, rank=rank, semantic_score=sem, keyword_score=kw)
            for rank, (score, sem, kw, entry) in enumerate(scored[:top_k], start=1)
        ]

    def _semantic_scores(self, query: NDArray[np.float32], entries: list[VectorEntry]) -> dict[str, float]:
        """Cosine similarity (clamped to [0, 1]) for each entry."""
        matrix = np.vstack([e.vector for e in entries])
        scores = matrix @ query
        return {e.chunk_id: clamp_score(float(s)) for e, s in zip(entries, scores)}

    # ==========================================================================
    # Reporting
    # ==========================================================================
    def stats(self) -> StoreStats:
        """Entry counts per document and content type. Read-only."""
        snapshot = self._entries
        document_counts: Counter = Counter()
        content_type_counts: Counter = Counter()
        stale = 0
        for entry in snapshot.values():
            document_counts[entry.chunk.document_id] += 1
            content_type_counts[str(entry.chunk.metadata.get("content_type", "unknown"))] += 1
            stale += self.is_stale(entry)

        return StoreStats(
            backend=self.backend_name,
            total_entries=len(snapshot),
            embedding_model=self.embedding_model,
            dimension=self.dimension,
            document_counts=dict(document_counts),
            content_type_counts=dict(content_type_counts),
            stale_entries=stale,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )

    def verify(self) -> dict[str, Any]:
        """
        Check snapshot integrity.

        Returns:
            Dict with "valid" flag and a list of human-readable "issues"
        """
        issues: list[str] = []
        seen: set[tuple[str, int]] = set()
        for key, entry in self._entries.items():
            if key != entry.chunk_id:
                issues.append(f"Entry key {key} does not match chunk id {entry.chunk_id}")
            position = (entry.chunk.document_id, entry.chunk.chunk_index)
            if position in seen:
                issues.append(f"Duplicate chunk position {position[1]} in document {position[0]}")
            seen.add(position)
            if entry.dimension != self.dimension:
                issues.append(f"Chunk {entry.chunk_id} has dimension {entry.dimension}, expected {self.dimension}")
            elif entry.embedding_model != self.embedding_model:
                issues.append(f"Chunk {entry.chunk_id} was embedded with {entry.embedding_model}")
            if not np.all(np.isfinite(entry.vector)):
                issues.append(f"Chunk {entry.chunk_id} has non-finite vector values")

        return {"valid": not issues, "issues": issues, "total_entries": len(self._entries)}

    def export(self) -> dict[str, Any]:
        """Serializable snapshot of the store."""
        snapshot = self._entries
        return {
            "version": STORE_FORMAT_VERSION,
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
            "total_chunks": len(snapshot),
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "entries": [entry.to_dict() for entry in snapshot.values()],
        }


def clamp_score(value: float) -> float:
    """Clamp a similarity to [0, 1], mapping NaN to 0."""
    if math.isnan(value):
        return 0.0
    return min(1.0, max(0.0, value))
