"""Unit tests for the vector store core and its FAISS and SQL backends."""

from unittest.mock import patch

import numpy as np
import pytest

from conftest import TEST_DIMENSION, make_entry
from mnemosyne.errors import DimensionMismatch, StoreIOError
from mnemosyne.retrieval.chunker import Chunk
from mnemosyne.retrieval.vector_store import keyword_score, matches_filters, tokenize


def axis(*indices: int) -> np.ndarray:
    vector = np.zeros(TEST_DIMENSION, dtype=np.float32)
    for i in indices:
        vector[i] = 1.0
    return vector / np.linalg.norm(vector)


@pytest.mark.unit
class TestScoringHelpers:
    """Tests for tokenize, keyword_score and matches_filters."""

    def test_tokenize_drops_stop_words(self):
        """Stop words and single characters are removed."""
        assert tokenize("The compost heap is a HEAP") == ["compost", "heap", "heap"]

    def test_keyword_score_is_normalized(self):
        """Score is the fraction of query terms found in the chunk."""
        from collections import Counter

        query = Counter(["compost", "basil"])
        assert keyword_score(query, Counter(["compost"])) == 0.5
        assert keyword_score(query, Counter(["compost", "basil", "basil"])) == 1.0
        assert keyword_score(Counter(), Counter(["compost"])) == 0.0

    def test_matches_filters_set_semantics(self):
        """List values intersect, scalars must be members, empty sets are ignored."""
        chunk = Chunk(content="x", document_id="a.md", metadata={"tags": ["x", "y"], "content_type": "procedure"})

        assert matches_filters(chunk, None)
        assert matches_filters(chunk, {"tags": ["y", "z"]})
        assert not matches_filters(chunk, {"tags": ["z"]})
        assert matches_filters(chunk, {"content_type": ["procedure", "concept"]})
        assert not matches_filters(chunk, {"content_type": ["concept"]})
        assert matches_filters(chunk, {"content_type": []})
        assert not matches_filters(chunk, {"missing": ["v"]})
        assert matches_filters(chunk, {"document_id": ["a.md"]})


@pytest.mark.unit
class TestVectorStore:
    """Behavior shared by every backend."""

    def test_empty_store_returns_nothing(self, vector_store):
        """Queries against an empty store return an empty list."""
        assert vector_store.query(axis(0), top_k=5) == []

    def test_semantic_ranking(self, vector_store):
        """Results are sorted by cosine similarity with 1-based ranks."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0)),
            make_entry("b.md#0", axis(0, 1)),
            make_entry("c.md#0", axis(2)),
        ])

        results = vector_store.query(axis(0), top_k=5, score_threshold=0.0)

        assert [r.chunk_id for r in results][:2] == ["a.md#0", "b.md#0"]
        assert [r.rank for r in results] == list(range(1, len(results) + 1))
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(2 ** -0.5, abs=1e-5)
        assert all(0.0 <= r.score <= 1.0 for r in results)

    def test_threshold_and_top_k(self, vector_store):
        """Below-threshold entries are dropped and results are never padded."""
        vector_store.upsert([make_entry("a.md#0", axis(0)), make_entry("c.md#0", axis(2))])

        assert [r.chunk_id for r in vector_store.query(axis(0), top_k=5, score_threshold=0.5)] == ["a.md#0"]
        assert len(vector_store.query(axis(0), top_k=5, score_threshold=0.0)) == 2
        assert vector_store.query(axis(0), top_k=0) == []

    def test_upsert_replaces_by_chunk_id(self, vector_store):
        """Writing the same chunk id twice keeps one entry."""
        vector_store.upsert([make_entry("a.md#0", axis(0), content="old")])
        vector_store.upsert([make_entry("a.md#0", axis(1), content="new")])

        assert vector_store.size == 1
        assert vector_store.get("a.md#0").chunk.content == "new"

    def test_dimension_mismatch_writes_nothing(self, vector_store):
        """A batch with one bad vector is rejected as a whole."""
        batch = [make_entry("a.md#0", axis(0)), make_entry("a.md#1", np.ones(3))]

        with pytest.raises(DimensionMismatch):
            vector_store.upsert(batch)

        assert vector_store.size == 0

    def test_query_dimension_mismatch(self, vector_store):
        """Query vectors of the wrong length are rejected."""
        vector_store.upsert([make_entry("a.md#0", axis(0))])

        with pytest.raises(DimensionMismatch):
            vector_store.query(np.ones(3), top_k=1)

    def test_invalid_arguments(self, vector_store):
        """Bad top_k, threshold or strategy raise ValueError."""
        with pytest.raises(ValueError):
            vector_store.query(axis(0), top_k=-1)
        with pytest.raises(ValueError):
            vector_store.query(axis(0), score_threshold=1.5)
        with pytest.raises(ValueError):
            vector_store.query(axis(0), strategy="fuzzy")
        with pytest.raises(ValueError):
            vector_store.query(None, strategy="semantic")
        with pytest.raises(ValueError):
            vector_store.query(axis(0), strategy="keyword")

    def test_metadata_filters_apply_before_scoring(self, vector_store):
        """Filtered-out entries never appear, whatever their score."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0), content_type="concept"),
            make_entry("b.md#0", axis(0, 1), content_type="procedure"),
        ])

        results = vector_store.query(
            axis(0), top_k=5, score_threshold=0.0, metadata_filters={"content_type": ["procedure"]}
        )

        assert [r.chunk_id for r in results] == ["b.md#0"]

    def test_keyword_strategy(self, vector_store):
        """Keyword scoring needs no vector and reports keyword_score."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0), content="compost heap and worms"),
            make_entry("b.md#0", axis(1), content="tomato seedlings"),
        ])

        results = vector_store.query(query_text="compost worms", top_k=5, strategy="keyword", score_threshold=0.1)

        assert [r.chunk_id for r in results] == ["a.md#0"]
        assert results[0].keyword_score == 1.0
        assert results[0].semantic_score is None

    def test_hybrid_strategy_weights(self, vector_store):
        """Hybrid score is the weighted sum of semantic and keyword scores."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0), content="garden compost"),
            make_entry("b.md#0", axis(0, 1), content="tomato"),
        ])

        results = vector_store.query(
            axis(0), query_text="compost", top_k=5, strategy="hybrid", score_threshold=0.0
        )

        assert results[0].chunk_id == "a.md#0"
        assert results[0].score == pytest.approx(1.0, abs=1e-5)
        assert results[1].score == pytest.approx(0.7 * 2 ** -0.5, abs=1e-5)
        assert results[1].keyword_score == 0.0

    def test_ties_prefer_recent_then_chunk_id(self, vector_store):
        """Equal scores order by modification time, then chunk id."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0), modified_at=100.0),
            make_entry("b.md#0", axis(0), modified_at=200.0),
            make_entry("c.md#0", axis(0), modified_at=100.0),
        ])

        results = vector_store.query(axis(0), top_k=3, score_threshold=0.0)

        assert [r.chunk_id for r in results] == ["b.md#0", "a.md#0", "c.md#0"]

    def test_delete_document(self, vector_store):
        """delete removes every chunk of one document."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0)),
            make_entry("a.md#1", axis(1)),
            make_entry("b.md#0", axis(2)),
        ])

        assert vector_store.delete("a.md") == 2
        assert vector_store.delete("a.md") == 0
        assert [e.chunk_id for e in vector_store.entries()] == ["b.md#0"]

    def test_replace_document(self, vector_store):
        """replace_document drops chunks the new version no longer has."""
        vector_store.upsert([make_entry("a.md#0", axis(0)), make_entry("a.md#1", axis(1))])

        written = vector_store.replace_document("a.md", [make_entry("a.md#0", axis(3))])

        assert written == 1
        assert vector_store.size == 1
        np.testing.assert_allclose(vector_store.get("a.md#0").vector, axis(3))

    def test_stale_entries_only_match_exact_text(self, vector_store):
        """Entries from another embedding model are excluded from semantic ranking."""
        vector_store.upsert([
            make_entry("old.md#0", axis(0), model="old-model", content="exact note text"),
            make_entry("new.md#0", axis(0)),
        ])

        plain = vector_store.query(axis(0), top_k=5, score_threshold=0.0)
        exact = vector_store.query(axis(5), query_text="Exact note text", top_k=5, score_threshold=0.5)

        assert [r.chunk_id for r in plain] == ["new.md#0"]
        assert [r.chunk_id for r in exact] == ["old.md#0"]
        assert vector_store.stats().stale_entries == 1

    def test_stats_and_verify(self, vector_store):
        """stats counts per document and content type; verify finds no issues."""
        vector_store.upsert([
            make_entry("a.md#0", axis(0), content_type="concept"),
            make_entry("a.md#1", axis(1), content_type="procedure"),
            make_entry("b.md#0", axis(2), content_type="concept"),
        ])

        stats = vector_store.stats()
        report = vector_store.verify()

        assert stats.total_entries == 3
        assert stats.total_documents == 2
        assert stats.document_counts == {"a.md": 2, "b.md": 1}
        assert stats.content_type_counts == {"concept": 2, "procedure": 1}
        assert stats.updated_at is not None
        assert report == {"valid": True, "issues": [], "total_entries": 3}

    def test_export_and_import(self, vector_store, tmp_path):
        """An exported snapshot imports into a fresh store."""
        from mnemosyne.retrieval.faiss_store import FAISSVectorStore

        vector_store.upsert([make_entry("a.md#0", axis(0)), make_entry("b.md#0", axis(1))])
        data = vector_store.export()

        other = FAISSVectorStore(tmp_path / "other" / "vectors", embedding_model="fake-embedder", dimension=TEST_DIMENSION)
        other.load()

        assert data["total_chunks"] == 2
        assert other.import_entries(data) == 2
        assert {e.chunk_id for e in other.entries()} == {"a.md#0", "b.md#0"}

    def test_clear(self, vector_store):
        """clear removes everything."""
        vector_store.upsert([make_entry("a.md#0", axis(0))])

        vector_store.clear()

        assert vector_store.size == 0
        assert vector_store.query(axis(0), top_k=5, score_threshold=0.0) == []


@pytest.mark.unit
class TestFAISSVectorStore:
    """Persistence behavior of the FAISS file backend."""

    def test_round_trip_through_disk(self, faiss_store):
        """A reopened store returns the same results."""
        from mnemosyne.retrieval.faiss_store import FAISSVectorStore

        faiss_store.upsert([make_entry("a.md#0", axis(0), tags=["x"]), make_entry("b.md#0", axis(0, 1))])
        before = faiss_store.query(axis(0), top_k=5, score_threshold=0.0)

        reopened = FAISSVectorStore.from_disk(
            faiss_store.path, embedding_model="fake-embedder", dimension=TEST_DIMENSION
        )
        after = reopened.query(axis(0), top_k=5, score_threshold=0.0)

        assert faiss_store.index_file.exists()
        assert faiss_store.metadata_file.exists()
        assert [(r.chunk_id, round(r.score, 5)) for r in after] == [(r.chunk_id, round(r.score, 5)) for r in before]
        assert reopened.get("a.md#0").chunk.metadata["tags"] == ["x"]

    def test_missing_metadata_file_is_an_error(self, faiss_store):
        """An index file without its metadata file cannot be loaded."""
        faiss_store.upsert([make_entry("a.md#0", axis(0))])
        faiss_store.metadata_file.unlink()

        with pytest.raises(StoreIOError):
            faiss_store.load()

    def test_corrupt_metadata_is_an_error(self, faiss_store):
        """Unparseable metadata raises StoreIOError."""
        faiss_store.upsert([make_entry("a.md#0", axis(0))])
        faiss_store.metadata_file.write_text("{not json", encoding="utf-8")

        with pytest.raises(StoreIOError):
            faiss_store.load()

    def test_failed_write_keeps_snapshot(self, faiss_store):
        """If persisting fails, the published snapshot is unchanged."""
        faiss_store.upsert([make_entry("a.md#0", axis(0))])

        with patch("mnemosyne.retrieval.faiss_store.faiss.write_index", side_effect=RuntimeError("disk full")):
            with pytest.raises(StoreIOError):
                faiss_store.upsert([make_entry("b.md#0", axis(1))])

        assert [e.chunk_id for e in faiss_store.entries()] == ["a.md#0"]

    def test_model_change_marks_entries_stale(self, faiss_store):
        """Reopening under another embedding model keeps entries but marks them stale."""
        from mnemosyne.retrieval.faiss_store import FAISSVectorStore

        faiss_store.upsert([make_entry("a.md#0", axis(0))])

        reopened = FAISSVectorStore.from_disk(faiss_store.path, embedding_model="new-model", dimension=TEST_DIMENSION)

        assert reopened.size == 1
        assert reopened.stats().stale_entries == 1
        assert reopened.query(axis(0), top_k=5, score_threshold=0.0) == []


@pytest.mark.unit
class TestSQLVectorStore:
    """Persistence behavior of the relational backend."""

    def test_round_trip_through_database(self, sql_store):
        """A second store on the same database sees the same entries."""
        from mnemosyne.retrieval.sql_store import SQLVectorStore

        sql_store.upsert([make_entry("a.md#0", axis(0), modified_at=5.0), make_entry("b.md#0", axis(1))])
        sql_store.delete("b.md")

        reopened = SQLVectorStore(sql_store.database_url, embedding_model="fake-embedder", dimension=TEST_DIMENSION)
        reopened.load()

        assert [e.chunk_id for e in reopened.entries()] == ["a.md#0"]
        assert reopened.get("a.md#0").chunk.metadata["modified_at"] == 5.0
        np.testing.assert_allclose(reopened.get("a.md#0").vector, axis(0))

    def test_clear_empties_table(self, sql_store):
        """clear deletes every row."""
        from mnemosyne.retrieval.sql_store import SQLVectorStore

        sql_store.upsert([make_entry("a.md#0", axis(0)), make_entry("b.md#0", axis(1))])
        sql_store.clear()

        reopened = SQLVectorStore(sql_store.database_url, embedding_model="fake-embedder", dimension=TEST_DIMENSION)
        reopened.load()

        assert reopened.size == 0
