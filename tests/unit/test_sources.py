"""Unit tests for retrieval.sources module."""

import pytest

from mnemosyne.retrieval.sources import DocumentSource, FileSystemDocumentSource


@pytest.mark.unit
class TestFileSystemDocumentSource:
    """Tests for FileSystemDocumentSource."""

    def test_satisfies_protocol(self, vault_dir):
        """The file system source implements DocumentSource."""
        assert isinstance(FileSystemDocumentSource(vault_dir), DocumentSource)

    def test_discover_files_skips_hidden_folders(self, vault_dir):
        """Files under dot-folders are not discovered."""
        files = FileSystemDocumentSource(vault_dir).discover_files()

        relative = [f.relative_to(vault_dir).as_posix() for f in files]
        assert relative == ["howto/rotate-keys.md", "journal/2024-05-01.md", "projects/roadmap.md"]

    def test_discover_files_ignores_other_extensions(self, vault_dir):
        """Only markdown files are picked up."""
        (vault_dir / "image.png").write_bytes(b"\x89PNG")
        (vault_dir / "notes.markdown").write_text("# Alt", encoding="utf-8")

        names = [f.name for f in FileSystemDocumentSource(vault_dir).discover_files()]

        assert "image.png" not in names
        assert "notes.markdown" in names

    def test_list_documents(self, vault_dir, sample_markdown_files):
        """Documents use vault-relative ids and file stems as titles."""
        documents = FileSystemDocumentSource(vault_dir).list_documents()
        by_id = {d.id: d for d in documents}

        assert set(by_id) == set(sample_markdown_files)
        roadmap = by_id["projects/roadmap.md"]
        assert roadmap.title == "roadmap"
        assert roadmap.content == sample_markdown_files["projects/roadmap.md"]
        assert roadmap.modified_at is not None

    def test_list_documents_skips_undecodable(self, vault_dir, sample_markdown_files):
        """A file that is not UTF-8 is recorded as unreadable and the others still load."""
        (vault_dir / "legacy.md").write_bytes(b"# Old\n\ncaf\xe9 au lait\n")
        source = FileSystemDocumentSource(vault_dir)

        documents = source.list_documents()

        assert {d.id for d in documents} == set(sample_markdown_files)
        assert list(source.unreadable) == ["legacy.md"]

    def test_list_documents_scope(self, vault_dir):
        """Scope restricts listing to the given folders."""
        documents = FileSystemDocumentSource(vault_dir).list_documents(scope=["journal", "missing"])

        assert [d.id for d in documents] == ["journal/2024-05-01.md"]

    def test_read_document(self, vault_dir, sample_markdown_files):
        """read_document returns file content by id."""
        source = FileSystemDocumentSource(vault_dir)

        assert source.read_document("howto/rotate-keys.md") == sample_markdown_files["howto/rotate-keys.md"]

    def test_read_document_rejects_escape(self, vault_dir):
        """Ids that resolve outside the root are rejected."""
        with pytest.raises(ValueError):
            FileSystemDocumentSource(vault_dir).read_document("../secrets.md")

    def test_validate(self, vault_dir, tmp_path):
        """validate reports missing folders, empty folders and file counts."""
        empty = tmp_path / "empty"
        empty.mkdir()

        assert FileSystemDocumentSource(vault_dir).validate() == (True, "Found 3 markdown files")
        assert FileSystemDocumentSource(empty).validate()[0] is False
        assert FileSystemDocumentSource(tmp_path / "nope").validate()[0] is False
