"""
FAISS-backed vector store persisted as flat files.

Vectors live in a FAISS IndexFlatIP (inner product over normalized vectors,
i.e. cosine similarity); chunk records and store metadata live in a JSON
file next to it:
    <path>.index  FAISS index
    <path>.json   {version, embedding_model, dimension, created_at, updated_at, entries}

Both files are written to temporaries and moved into place, so a crash
mid-write leaves the previous snapshot intact.
"""

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Optional

import faiss
import numpy as np
from numpy.typing import NDArray

from mnemosyne.config import settings
from mnemosyne.errors import StoreIOError
from mnemosyne.retrieval.vector_store import (
    STORE_FORMAT_VERSION,
    VectorEntry,
    VectorStore,
    clamp_score,
)

logger = logging.getLogger(__name__)


class FAISSVectorStore(VectorStore):
    """
    Vector store using a FAISS flat index file.

    The index is rebuilt from the snapshot on every write; note vaults are
    small enough that exact search over a flat index is the right trade-off.

    Example:
        >>> store = FAISSVectorStore("data/index/vectors")
        >>> store.load()
        >>> store.upsert(entries)
    """

    backend_name = "faiss"

    def __init__(
        self,
        path: str | Path | None = None,
        embedding_model: Optional[str] = None,
        dimension: Optional[int] = None,
        hybrid_weight: Optional[float] = None,
    ) -> None:
        """
        Initialize the store.

        Args:
            path: Base path for index files (default from settings)
            embedding_model: Configured embedding model (default from settings)
            dimension: Vector dimension (default from settings)
            hybrid_weight: Semantic weight for hybrid scoring
        """
        super().__init__(
            embedding_model=embedding_model or settings.embedding_model,
            dimension=dimension or settings.embedding_dimension,
            hybrid_weight=hybrid_weight,
        )
        self.path = Path(path or settings.index_path)
        self._index_cache: tuple[faiss.IndexFlatIP, list[VectorEntry]] | None = None

    @property
    def index_file(self) -> Path:
        return self.path.with_suffix(".index")

    @property
    def metadata_file(self) -> Path:
        return self.path.with_suffix(".json")

    @classmethod
    def from_disk(cls, path: str | Path | None = None, **kwargs: Any) -> "FAISSVectorStore":
        """
        Create a store and load its files.

        Args:
            path: Base path of the index files

        Returns:
            FAISSVectorStore with loaded data
        """
        store = cls(path, **kwargs)
        store.load()
        return store

    # ==========================================================================
    # Persistence
    # ==========================================================================
    def _load_entries(self) -> dict[str, VectorEntry]:
        if not self.index_file.exists() and not self.metadata_file.exists():
            logger.info(f"No index found at {self.path}, starting empty")
            self._index_cache = None
            return {}

        if not self.index_file.exists():
            raise StoreIOError(f"Index file not found: {self.index_file}", path=str(self.index_file))
        if not self.metadata_file.exists():
            raise StoreIOError(f"Metadata file not found: {self.metadata_file}", path=str(self.metadata_file))

        try:
            index = faiss.read_index(str(self.index_file))
            with self.metadata_file.open(encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, RuntimeError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to read vector index at {self.path}: {e}", path=str(self.path)) from e

        stored_model = data.get("embedding_model")
        if stored_model and stored_model != self.embedding_model:
            logger.warning(
                f"Index was built with {stored_model}, configured model is {self.embedding_model}; "
                "existing entries are stale until re-ingested"
            )

        vectors: NDArray[np.float32] = (
            index.reconstruct_n(0, index.ntotal) if index.ntotal else np.empty((0, index.d), dtype=np.float32)
        )

        entries: dict[str, VectorEntry] = {}
        rows: list[Optional[VectorEntry]] = [None] * int(index.ntotal)
        for item in data.get("entries", []):
            row = item.get("row")
            if row is not None:
                if not 0 <= row < len(rows):
                    raise StoreIOError(f"Metadata references missing index row {row}", path=str(self.path))
                entry = VectorEntry.from_dict(item, vector=np.asarray(vectors[row], dtype=np.float32))
                rows[row] = entry
            else:
                entry = VectorEntry.from_dict(item)
            entries[entry.chunk_id] = entry

        self.created_at = data.get("created_at")
        self.updated_at = data.get("updated_at")
        if index.d == self.dimension and all(r is not None for r in rows):
            self._index_cache = (index, rows)  # type: ignore[assignment]
        else:
            self._index_cache = None
        return entries

    def _persist(
        self,
        entries: dict[str, VectorEntry],
        upserted: list[VectorEntry],
        deleted: list[str],
    ) -> None:
        rows = [e for e in entries.values() if e.dimension == self.dimension]
        index = faiss.IndexFlatIP(self.dimension)
        if rows:
            matrix = np.ascontiguousarray(np.vstack([e.vector for e in rows]), dtype=np.float32)
            index.add(matrix)
        row_of = {e.chunk_id: i for i, e in enumerate(rows)}

        records = []
        for chunk_id, entry in entries.items():
            # Entries of a foreign dimension cannot live in the index
            if chunk_id in row_of:
                records.append({**entry.to_dict(include_vector=False), "row": row_of[chunk_id]})
            else:
                records.append(entry.to_dict(include_vector=True))

        now = time.time()
        payload = {
            "version": STORE_FORMAT_VERSION,
            "embedding_model": self.embedding_model,
            "dimension": self.dimension,
            "total_chunks": len(entries),
            "created_at": self.created_at or now,
            "updated_at": now,
            "entries": records,
        }

        index_tmp = self.index_file.with_suffix(".index.tmp")
        metadata_tmp = self.metadata_file.with_suffix(".json.tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            faiss.write_index(index, str(index_tmp))
            with metadata_tmp.open("w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False)
            os.replace(index_tmp, self.index_file)
            os.replace(metadata_tmp, self.metadata_file)
        except (OSError, RuntimeError, TypeError, ValueError) as e:
            raise StoreIOError(f"Failed to persist vector index at {self.path}: {e}", path=str(self.path)) from e

        self._index_cache = (index, rows)

    # ==========================================================================
    # Search
    # ==========================================================================
    def _semantic_scores(self, query: NDArray[np.float32], entries: list[VectorEntry]) -> dict[str, float]:
        cache = self._index_cache
        if cache is None or cache[0].ntotal == 0:
            return super()._semantic_scores(query, entries)

        index, rows = cache
        query_matrix = np.ascontiguousarray(query.reshape(1, -1), dtype=np.float32)
        scores, indices = index.search(query_matrix, int(index.ntotal))
        by_entry = {
            id(rows[idx]): float(score)
            for score, idx in zip(scores[0], indices[0])
            if idx >= 0
        }

        result: dict[str, float] = {}
        missing: list[VectorEntry] = []
        for entry in entries:
            # The cache may belong to a newer snapshot than the caller's
            score = by_entry.get(id(entry))
            if score is None:
                missing.append(entry)
            else:
                result[entry.chunk_id] = clamp_score(score)
        if missing:
            result.update(super()._semantic_scores(query, missing))
        return result
