"""
Document sources for ingestion.

The core only depends on the DocumentSource protocol; FileSystemDocumentSource
walks a folder of markdown notes and is what the CLI and API use.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)


@dataclass
class Document:
    """A source document to be chunked and indexed."""

    id: str
    """Stable identifier (the vault-relative path for files)."""

    title: str
    """Display title."""

    content: str
    """Full text."""

    path: str = ""
    """Location in the source, if any."""

    created_at: Optional[float] = None
    """Creation time (epoch seconds)."""

    modified_at: Optional[float] = None
    """Last modification time (epoch seconds)."""

    metadata: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class DocumentSource(Protocol):
    """Collaborator interface for listing and reading documents."""

    unreadable: dict[str, str]
    """Documents the last list_documents call skipped, with the reason."""

    def list_documents(self, scope: Optional[list[str]] = None) -> list[Document]:
        """List documents, optionally restricted to folder prefixes."""
        ...

    def read_document(self, document_id: str) -> str:
        """Return the content of one document."""
        ...


class FileSystemDocumentSource:
    """
    Markdown notes under a root folder.

    Document ids are POSIX paths relative to the root, e.g. "projects/plan.md".

    Example:
        >>> source = FileSystemDocumentSource(Path("vault"))
        >>> docs = source.list_documents(scope=["projects"])
    """

    def __init__(self, root: Path, extensions: tuple[str, ...] = (".md", ".markdown")) -> None:
        self.root = Path(root).resolve()
        self.extensions = extensions
        self.unreadable: dict[str, str] = {}

    def discover_files(self, scope: Optional[list[str]] = None) -> list[Path]:
        """
        Discover all markdown files under the root (or under scope folders).

        Hidden files and folders (".obsidian", ".git", ...) are skipped.

        Returns:
            Sorted list of file paths
        """
        bases = [self.root / s for s in scope] if scope else [self.root]
        files: set[Path] = set()
        for base in bases:
            if not base.exists():
                logger.warning(f"Scope folder does not exist: {base}")
                continue
            for path in base.rglob("*"):
                relative = path.relative_to(self.root)
                if any(part.startswith(".") for part in relative.parts):
                    continue
                if path.is_file() and path.suffix.lower() in self.extensions:
                    files.add(path)
        return sorted(files)

    def list_documents(self, scope: Optional[list[str]] = None) -> list[Document]:
        """
        Read every discovered file into a Document.

        Files that cannot be read or are not valid UTF-8 are skipped and
        recorded in `unreadable`; the rest are still returned.
        """
        documents = []
        unreadable: dict[str, str] = {}
        for path in self.discover_files(scope):
            document_id = path.relative_to(self.root).as_posix()
            try:
                content = path.read_text(encoding="utf-8")
                stat = path.stat()
            except (UnicodeDecodeError, OSError) as e:
                logger.warning(f"Skipping unreadable file {document_id}: {e}")
                unreadable[document_id] = str(e)
                continue
            documents.append(
                Document(
                    id=document_id,
                    title=path.stem,
                    content=content,
                    path=str(path),
                    created_at=stat.st_ctime,
                    modified_at=stat.st_mtime,
                )
            )
        self.unreadable = unreadable
        return documents

    def read_document(self, document_id: str) -> str:
        path = (self.root / document_id).resolve()
        if not path.is_relative_to(self.root):
            raise ValueError(f"Document id escapes the source root: {document_id}")
        return path.read_text(encoding="utf-8")

    def validate(self) -> tuple[bool, str]:
        """
        Validate that the root folder contains markdown files.

        Returns:
            Tuple of (is_valid, message)
        """
        if not self.root.exists():
            return False, f"Directory does not exist: {self.root}"

        if not self.root.is_dir():
            return False, f"Not a directory: {self.root}"

        files = self.discover_files()
        if not files:
            return False, f"No markdown files found in: {self.root}"

        return True, f"Found {len(files)} markdown files"
