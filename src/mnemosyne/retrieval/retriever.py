"""
Retriever: ingestion (chunk -> embed -> store) and retrieval entry point.

Vector store writes run in a worker thread so persistence I/O never blocks
the event loop; queries run against the in-memory snapshot.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import numpy as np

from mnemosyne.config import settings
from mnemosyne.errors import RetrievalError, StoreNotInitializedError
from mnemosyne.notifications import NotificationSink, notify
from mnemosyne.retrieval.chunker import Chunk, ChunkingConfig, chunk_document
from mnemosyne.retrieval.embeddings import EmbeddingProvider
from mnemosyne.retrieval.sources import Document, DocumentSource
from mnemosyne.retrieval.vector_store import (
    MetadataFilters,
    RetrievedChunk,
    Strategy,
    VectorEntry,
    VectorStore,
)

logger = logging.getLogger(__name__)


@dataclass
class IngestionReport:
    """Summary of one ingestion run."""

    documents_processed: int = 0
    """Documents that produced at least one stored chunk."""

    chunks_ingested: int = 0
    """Chunks written to the vector store."""

    failed_chunk_ids: list[str] = field(default_factory=list)
    """Chunks that could not be embedded or stored."""

    skipped_documents: list[str] = field(default_factory=list)
    """Empty documents (no-op, not an error)."""

    unreadable_documents: dict[str, str] = field(default_factory=dict)
    """Documents the source could not read, with the reason."""

    unchanged_documents: list[str] = field(default_factory=list)
    """Documents left alone by an incremental sync."""

    removed_documents: list[str] = field(default_factory=list)
    """Indexed documents an incremental sync removed because the source no longer has them."""

    errors: dict[str, str] = field(default_factory=dict)
    """Failure message per failed chunk id."""

    duration_ms: float = 0.0

    @property
    def success(self) -> bool:
        return not self.failed_chunk_ids


class Retriever:
    """
    Orchestrates ingestion and retrieval over one vector store.

    Example:
        >>> retriever = Retriever(store, embedder)
        >>> await retriever.initialize()
        >>> report = await retriever.ingest(documents)
        >>> results = await retriever.retrieve("how do I rotate keys?", top_k=3)
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Optional[EmbeddingProvider],
        chunking: Optional[ChunkingConfig] = None,
        notifier: Optional[NotificationSink] = None,
    ) -> None:
        self.store = store
        self.embedder = embedder
        self.chunking = chunking or ChunkingConfig.from_settings()
        self.notifier = notifier

    async def initialize(self) -> None:
        """Load the vector store from its backing medium."""
        if not self.store.is_initialized:
            await asyncio.to_thread(self.store.load)

    def is_ready(self) -> bool:
        """True only with an embedder, a configured model and at least one entry."""
        return (
            self.embedder is not None
            and bool(self.store.embedding_model)
            and self.store.size > 0
        )

    # ==========================================================================
    # Ingestion
    # ==========================================================================
    async def ingest(self, documents: Iterable[Document]) -> IngestionReport:
        """
        Chunk, embed and store documents.

        A chunk that fails to embed is recorded and skipped; the rest of the
        document and batch continue. Re-ingesting a document replaces its
        previous entries.

        Args:
            documents: Documents to ingest

        Returns:
            IngestionReport with failed chunk ids

        Raises:
            StoreNotInitializedError: If no embedder is configured
            StoreIOError: If the vector store cannot be persisted
        """
        if self.embedder is None:
            raise StoreNotInitializedError("No embedding provider configured")

        start_time = time.perf_counter()
        report = IngestionReport()

        for document in documents:
            chunks = chunk_document(
                document.content,
                document_id=document.id,
                title=document.title,
                config=self.chunking,
                created_at=document.created_at,
                modified_at=document.modified_at,
            )

            if not chunks:
                logger.info(f"Skipping empty document {document.id}")
                report.skipped_documents.append(document.id)
                await asyncio.to_thread(self.store.delete, document.id)
                continue

            vectors = await self._embed_chunks(chunks, report)
            entries = [
                VectorEntry(chunk=chunk, vector=vector, embedding_model=self.embedder.model_name)
                for chunk, vector in zip(chunks, vectors)
                if vector is not None
            ]
            if not entries:
                continue

            try:
                written = await asyncio.to_thread(self.store.replace_document, document.id, entries)
            except RetrievalError as e:
                # Abort this document's batch only
                logger.warning(f"Failed to store chunks of {document.id}: {e}")
                for entry in entries:
                    report.failed_chunk_ids.append(entry.chunk_id)
                    report.errors[entry.chunk_id] = str(e)
                continue

            report.documents_processed += 1
            report.chunks_ingested += written

        report.duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"Ingested {report.chunks_ingested} chunks from {report.documents_processed} documents "
            f"({len(report.failed_chunk_ids)} failed, {len(report.skipped_documents)} empty)"
        )
        if report.failed_chunk_ids:
            notify(self.notifier, f"Indexing finished with {len(report.failed_chunk_ids)} failed chunks")
        return report

    async def ingest_source(self, source: DocumentSource, scope: Optional[list[str]] = None) -> IngestionReport:
        """Ingest every document a source lists under the given scope."""
        documents = await asyncio.to_thread(source.list_documents, scope)
        notify(self.notifier, f"Indexing {len(documents)} documents")
        report = await self.ingest(documents)
        report.unreadable_documents = dict(source.unreadable)
        return report

    async def sync_source(self, source: DocumentSource, scope: Optional[list[str]] = None) -> IngestionReport:
        """
        Bring the index in line with a source, re-embedding only what changed.

        A document whose modification time equals the one stored with its
        chunks is left alone. Indexed documents under the scope that the
        source no longer lists are removed; unreadable ones are kept.

        Args:
            source: Document source to compare against
            scope: Folder prefixes to restrict the sync to

        Returns:
            IngestionReport including unchanged and removed document ids
        """
        documents = await asyncio.to_thread(source.list_documents, scope)
        indexed = self.indexed_documents()

        changed = [d for d in documents if d.modified_at is None or indexed.get(d.id) != d.modified_at]
        changed_ids = {d.id for d in changed}
        if changed:
            notify(self.notifier, f"Re-indexing {len(changed)} changed documents")
        report = await self.ingest(changed)
        report.unchanged_documents = [d.id for d in documents if d.id not in changed_ids]
        report.unreadable_documents = dict(source.unreadable)

        listed = {d.id for d in documents} | set(report.unreadable_documents)
        for document_id in sorted(indexed):
            if document_id in listed or not _in_scope(document_id, scope):
                continue
            await self.remove_document(document_id)
            report.removed_documents.append(document_id)

        logger.info(
            f"Synced source: {len(changed)} changed, {len(report.unchanged_documents)} unchanged, "
            f"{len(report.removed_documents)} removed"
        )
        return report

    def indexed_documents(self) -> dict[str, Optional[float]]:
        """Map each indexed document id to the modification time stored with its chunks."""
        indexed: dict[str, Optional[float]] = {}
        for entry in self.store.entries():
            indexed.setdefault(entry.chunk.document_id, entry.chunk.metadata.get("modified_at"))
        return indexed

    async def remove_document(self, document_id: str) -> int:
        """Remove a deleted source document from the index."""
        return await asyncio.to_thread(self.store.delete, document_id)

    async def _embed_chunks(self, chunks: list[Chunk], report: IngestionReport) -> list[Optional[np.ndarray]]:
        """Embed a document's chunks, isolating failures to single chunks."""
        assert self.embedder is not None
        texts = [chunk.content for chunk in chunks]
        try:
            vectors = await self.embedder.aembed_texts(texts)
            if len(vectors) == len(chunks):
                return list(vectors)
            logger.warning(f"Embedder returned {len(vectors)} vectors for {len(chunks)} chunks")
        except Exception as e:
            logger.warning(f"Batch embedding failed for {chunks[0].document_id}, retrying per chunk: {e}")

        results: list[Optional[np.ndarray]] = []
        for chunk in chunks:
            try:
                single = await self.embedder.aembed_texts([chunk.content])
                results.append(single[0])
            except Exception as e:
                logger.warning(f"Failed to embed chunk {chunk.chunk_id}: {e}")
                report.failed_chunk_ids.append(chunk.chunk_id)
                report.errors[chunk.chunk_id] = str(e)
                results.append(None)
        return results

    # ==========================================================================
    # Retrieval
    # ==========================================================================
    async def retrieve(
        self,
        query_text: str,
        top_k: Optional[int] = None,
        filters: Optional[MetadataFilters] = None,
        score_threshold: Optional[float] = None,
        strategy: Optional[Strategy] = None,
    ) -> list[RetrievedChunk]:
        """
        Retrieve the most relevant chunks for a query.

        Args:
            query_text: Natural language query
            top_k: Maximum results (default from settings)
            filters: Metadata pre-filters
            score_threshold: Minimum relevance (default from settings)
            strategy: "semantic", "keyword" or "hybrid" (default from settings)

        Returns:
            Results in descending score order, never padded

        Raises:
            ValueError: If the query is empty
            RetrievalError: If the query cannot be embedded
        """
        if not query_text or not query_text.strip():
            raise ValueError("Query cannot be empty")

        top_k = settings.retrieval_top_k if top_k is None else top_k
        score_threshold = settings.similarity_threshold if score_threshold is None else score_threshold
        strategy = strategy or settings.retrieval_strategy

        if top_k == 0 or self.store.size == 0:
            return []

        query_vector = None
        if strategy in ("semantic", "hybrid"):
            if self.embedder is None:
                raise StoreNotInitializedError("No embedding provider configured")
            try:
                query_vector = (await self.embedder.aembed_texts([query_text]))[0]
            except Exception as e:
                raise RetrievalError(f"Failed to embed query: {e}", operation="embed_query") from e

        results = self.store.query(
            query_vector=query_vector,
            top_k=top_k,
            metadata_filters=filters,
            score_threshold=score_threshold,
            strategy=strategy,
            query_text=query_text,
        )
        logger.debug(f"Retrieved {len(results)} chunks for query ({strategy}, top_k={top_k})")
        return results

    async def clear_index(self) -> None:
        await asyncio.to_thread(self.store.clear)

    def stats(self) -> dict[str, Any]:
        stats = self.store.stats()
        return {
            "backend": stats.backend,
            "total_entries": stats.total_entries,
            "total_documents": stats.total_documents,
            "embedding_model": stats.embedding_model,
            "dimension": stats.dimension,
            "document_counts": stats.document_counts,
            "content_type_counts": stats.content_type_counts,
            "stale_entries": stats.stale_entries,
            "updated_at": stats.updated_at,
            "ready": self.is_ready(),
        }


def _in_scope(document_id: str, scope: Optional[list[str]]) -> bool:
    """True when a document id lies under one of the scope folders (or no scope is set)."""
    if not scope:
        return True
    for folder in scope:
        prefix = folder.strip("/")
        if not prefix or document_id == prefix or document_id.startswith(prefix + "/"):
            return True
    return False
