"""
Relational vector store backed by SQLAlchemy.

One row per chunk, keyed by chunk id, with the vector in a binary column
(float32 bytes) and the chunk record as JSON. Works with SQLite out of the
box and with any database SQLAlchemy supports.
"""

import json
import logging
from pathlib import Path
from typing import Optional

import numpy as np
from sqlalchemy import Float, Integer, LargeBinary, String, Text, create_engine, delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column

from mnemosyne.config import settings
from mnemosyne.errors import StoreIOError
from mnemosyne.retrieval.chunker import Chunk
from mnemosyne.retrieval.vector_store import VectorEntry, VectorStore

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for vector store tables."""

    pass


class VectorRow(Base):
    """
    One vector store entry.

    Attributes:
        chunk_id: Primary key ("{document_id}#{chunk_index}")
        document_id: Owning document (indexed for deletes)
        embedding_model: Model that produced the vector
        dimension: Vector length
        vector: float32 bytes
        chunk_json: Serialized chunk record
        modified_at: Document modification time (epoch seconds)
    """

    __tablename__ = "vector_entries"

    chunk_id: Mapped[str] = mapped_column(String(512), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(512), index=True, nullable=False)
    embedding_model: Mapped[str] = mapped_column(String(255), nullable=False)
    dimension: Mapped[int] = mapped_column(Integer, nullable=False)
    vector: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    chunk_json: Mapped[str] = mapped_column(Text, nullable=False)
    modified_at: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    @classmethod
    def from_entry(cls, entry: VectorEntry) -> "VectorRow":
        return cls(
            chunk_id=entry.chunk_id,
            document_id=entry.chunk.document_id,
            embedding_model=entry.embedding_model,
            dimension=entry.dimension,
            vector=np.asarray(entry.vector, dtype=np.float32).tobytes(),
            chunk_json=json.dumps(entry.chunk.to_dict(), ensure_ascii=False),
            modified_at=entry.chunk.metadata.get("modified_at"),
        )

    def to_entry(self) -> VectorEntry:
        return VectorEntry(
            chunk=Chunk.from_dict(json.loads(self.chunk_json)),
            vector=np.frombuffer(self.vector, dtype=np.float32).copy(),
            embedding_model=self.embedding_model,
        )


class SQLVectorStore(VectorStore):
    """
    Vector store persisted to a relational table.

    Writes are row-level (merge/delete) inside one transaction per batch.

    Example:
        >>> store = SQLVectorStore("sqlite:///data/index/vectors.db")
        >>> store.load()
    """

    backend_name = "sql"

    def __init__(
        self,
        database_url: Optional[str] = None,
        embedding_model: Optional[str] = None,
        dimension: Optional[int] = None,
        hybrid_weight: Optional[float] = None,
        engine: Optional[Engine] = None,
    ) -> None:
        super().__init__(
            embedding_model=embedding_model or settings.embedding_model,
            dimension=dimension or settings.embedding_dimension,
            hybrid_weight=hybrid_weight,
        )
        self.database_url = database_url or settings.database_url
        self._engine = engine

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(self.database_url, future=True)
        return self._engine

    def _ensure_schema(self) -> None:
        if self.database_url.startswith("sqlite:///") and self._engine is None:
            db_path = self.database_url.removeprefix("sqlite:///")
            if db_path and db_path != ":memory:":
                Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        Base.metadata.create_all(self.engine)

    def _load_entries(self) -> dict[str, VectorEntry]:
        try:
            self._ensure_schema()
            with Session(self.engine) as session:
                rows = session.scalars(select(VectorRow)).all()
                entries = [row.to_entry() for row in rows]
        except (SQLAlchemyError, OSError, json.JSONDecodeError) as e:
            raise StoreIOError(f"Failed to load vector store from {self.database_url}: {e}") from e

        return {entry.chunk_id: entry for entry in entries}

    def _persist(
        self,
        entries: dict[str, VectorEntry],
        upserted: list[VectorEntry],
        deleted: list[str],
    ) -> None:
        try:
            if not self._loaded:
                self._ensure_schema()
            with Session(self.engine) as session, session.begin():
                if deleted:
                    if not entries:
                        session.execute(delete(VectorRow))
                    else:
                        session.execute(delete(VectorRow).where(VectorRow.chunk_id.in_(deleted)))
                for entry in upserted:
                    session.merge(VectorRow.from_entry(entry))
        except SQLAlchemyError as e:
            raise StoreIOError(f"Failed to persist vector store to {self.database_url}: {e}") from e

