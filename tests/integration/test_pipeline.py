"""
Integration tests for the retrieval and agent pipeline.

These tests run real components together: the file-system source, the
chunker, both vector store backends, the retriever, the tool backend and
the agent executor. Only the embedder and the model provider are fakes.
"""

import pytest

from conftest import FakeProvider, install_fake_providers, text_response, tool_response
from mnemosyne.agents.executor import AgentExecutor
from mnemosyne.agents.file_tools import FileSystemToolBackend
from mnemosyne.agents.models import AgentConfig, RetrievalSettings
from mnemosyne.retrieval.retriever import Retriever
from mnemosyne.retrieval.sources import FileSystemDocumentSource


@pytest.fixture
def source(vault_dir):
    return FileSystemDocumentSource(vault_dir)


@pytest.fixture
def pipeline_retriever(vector_store, fake_embedder, small_chunking):
    """Retriever over each persistence backend."""
    return Retriever(vector_store, fake_embedder, chunking=small_chunking)


@pytest.mark.integration
class TestIngestionPipeline:
    """Source -> chunker -> embedder -> store."""

    @pytest.mark.asyncio
    async def test_vault_is_indexed(self, pipeline_retriever, source):
        report = await pipeline_retriever.ingest_source(source)

        assert report.success
        assert report.documents_processed == 3
        stats = pipeline_retriever.stats()
        assert stats["total_documents"] == 3
        assert stats["total_entries"] == report.chunks_ingested
        assert pipeline_retriever.store.verify()["valid"]

    @pytest.mark.asyncio
    async def test_stored_bodies_reconstruct_documents(self, pipeline_retriever, source):
        """Concatenated chunk bodies give back each source document."""
        await pipeline_retriever.ingest_source(source)

        for document in source.list_documents():
            chunks = sorted(
                (e.chunk for e in pipeline_retriever.store.entries() if e.chunk.document_id == document.id),
                key=lambda c: c.chunk_index,
            )
            assert "".join(c.body for c in chunks) == document.content

    @pytest.mark.asyncio
    async def test_chunk_text_ranks_itself_first(self, pipeline_retriever, source):
        """Querying with a stored chunk's text returns that chunk with a near-perfect score."""
        await pipeline_retriever.ingest_source(source)
        target = pipeline_retriever.store.entries()[0].chunk

        results = await pipeline_retriever.retrieve(target.content, top_k=3, score_threshold=0.0, strategy="semantic")

        assert results[0].chunk_id == target.chunk_id
        assert results[0].score == pytest.approx(1.0, abs=1e-5)

    @pytest.mark.asyncio
    async def test_filtered_retrieval(self, pipeline_retriever, source):
        await pipeline_retriever.ingest_source(source)

        results = await pipeline_retriever.retrieve(
            "garden tomatoes",
            top_k=10,
            score_threshold=0.0,
            filters={"document_id": ["projects/roadmap.md"]},
        )

        assert results
        assert {r.document_id for r in results} == {"projects/roadmap.md"}

    @pytest.mark.asyncio
    async def test_reindex_after_edit(self, pipeline_retriever, source, vault_dir):
        """Re-ingesting an edited note replaces its old chunks."""
        await pipeline_retriever.ingest_source(source)
        (vault_dir / "journal" / "2024-05-01.md").write_text("# Journal\n\nPruned the roses.\n", encoding="utf-8")

        await pipeline_retriever.ingest_source(source, scope=["journal"])

        journal = [e.chunk for e in pipeline_retriever.store.entries() if e.chunk.document_id == "journal/2024-05-01.md"]
        assert "".join(c.body for c in journal) == "# Journal\n\nPruned the roses.\n"
        assert pipeline_retriever.stats()["total_documents"] == 3


@pytest.mark.integration
class TestAgentPipeline:
    """Retriever -> executor -> tools with a scripted model."""

    @pytest.mark.asyncio
    async def test_answer_cites_retrieved_notes(self, provider_manager, retriever, source):
        await retriever.ingest_source(source)
        provider = FakeProvider([text_response("Rotate keys in three steps.")])
        install_fake_providers(provider_manager, {"local": provider})
        config = AgentConfig(
            id="helper",
            name="Helper",
            provider_id="local",
            retrieval=RetrievalSettings(top_k=3, score_threshold=0.0, strategy="hybrid"),
        )
        executor = AgentExecutor(config, provider_manager, retriever=retriever)

        response = await executor.execute("How do I rotate API keys?")

        assert response.answer == "Rotate keys in three steps."
        assert response.sources[0].document_id == "howto/rotate-keys.md"
        assert "Paste the new key" in provider.calls[0]["messages"][0].content

    @pytest.mark.asyncio
    async def test_tool_search_then_read(self, provider_manager, retriever, source, vault_dir):
        """The model searches the index through a tool, then reads the hit."""
        await retriever.ingest_source(source)
        provider = FakeProvider(
            [
                tool_response("search_notes", {"query": "sync engine"}, call_id="call_search"),
                tool_response("read_note", {"path": "projects/roadmap.md"}, call_id="call_read"),
                text_response("The sync engine ships first."),
            ]
        )
        install_fake_providers(provider_manager, {"local": provider})
        config = AgentConfig(
            id="researcher",
            name="Researcher",
            provider_id="local",
            retrieval=None,
            enable_tools=True,
            folder_scope=["projects"],
        )
        executor = AgentExecutor(
            config, provider_manager, retriever=retriever, tool_backend=FileSystemToolBackend(vault_dir, retriever)
        )

        response = await executor.execute("What ships first?")

        assert response.answer == "The sync engine ships first."
        assert [r["tool_name"] for r in response.tool_results] == ["search_notes", "read_note"]
        assert all(r["success"] for r in response.tool_results)
        search_data = response.tool_results[0]["data"]
        assert {hit["path"] for hit in search_data["results"]} == {"projects/roadmap.md"}
