"""
Document retrieval: chunking, embedding, vector storage and querying.
"""

from mnemosyne.retrieval.chunker import Chunk, ChunkingConfig, chunk_document
from mnemosyne.retrieval.retriever import IngestionReport, Retriever
from mnemosyne.retrieval.sources import Document, DocumentSource, FileSystemDocumentSource
from mnemosyne.retrieval.vector_store import RetrievedChunk, VectorEntry, VectorStore

__all__ = [
    "Chunk",
    "ChunkingConfig",
    "Document",
    "DocumentSource",
    "FileSystemDocumentSource",
    "IngestionReport",
    "RetrievedChunk",
    "Retriever",
    "VectorEntry",
    "VectorStore",
    "chunk_document",
]
