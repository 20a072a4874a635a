"""
Filesystem implementation of the agent tool backend.

Notes live under a vault root and are addressed by POSIX paths relative to
it. Search goes through the Retriever when the index is ready and falls
back to a plain substring scan otherwise.
"""

import asyncio
import logging
from pathlib import Path
from typing import Any, Optional

from mnemosyne.agents.tools import ScopeConstraints, ToolResult, normalize_note_path
from mnemosyne.errors import RetrievalError, ScopeViolation, ToolError
from mnemosyne.retrieval.retriever import Retriever
from mnemosyne.retrieval.sources import FileSystemDocumentSource

logger = logging.getLogger(__name__)

DEFAULT_SEARCH_LIMIT = 10
SNIPPET_LENGTH = 200


class FileSystemToolBackend:
    """Performs note operations on a folder of markdown files."""

    def __init__(self, root: Path, retriever: Optional[Retriever] = None) -> None:
        self.source = FileSystemDocumentSource(root)
        self.root = self.source.root
        self.retriever = retriever

    def _resolve(self, path: str) -> Path:
        relative = normalize_note_path(path)
        if not relative:
            raise ToolError("A note path is required")
        resolved = (self.root / relative).resolve()
        if not resolved.is_relative_to(self.root):
            raise ScopeViolation(f"Path escapes the vault: {path}", path=path)
        return resolved

    async def invoke_tool(self, name: str, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        handler = getattr(self, f"_tool_{name}", None)
        if handler is None:
            raise ToolError(f"Tool not supported by this backend: {name}")
        return await handler(args, scope)

    # ==========================================================================
    # Read-only tools
    # ==========================================================================
    async def _tool_read_note(self, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        path = self._resolve(args["path"])
        if not path.is_file():
            raise ToolError(f"Note not found: {args['path']}")
        relative = path.relative_to(self.root).as_posix()
        try:
            content = await asyncio.to_thread(path.read_text, encoding="utf-8")
        except UnicodeDecodeError as e:
            raise ToolError(f"Note is not valid UTF-8 text: {relative}", path=relative) from e
        return ToolResult(
            success=True,
            data={"path": relative, "content": content},
            metadata={"operation_type": "read", "files_affected": []},
        )

    async def _tool_list_notes(self, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        folder = normalize_note_path(args.get("folder") or "")
        files = await asyncio.to_thread(self.source.discover_files, [folder] if folder else None)
        paths = [
            relative
            for relative in (f.relative_to(self.root).as_posix() for f in files)
            if scope.allows(relative)
        ]
        return ToolResult(
            success=True,
            data={"folder": folder, "notes": paths, "count": len(paths)},
            metadata={"operation_type": "list", "files_affected": []},
        )

    async def _tool_search_notes(self, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        query = args["query"]
        limit = max(1, args.get("limit") or DEFAULT_SEARCH_LIMIT)
        folder = normalize_note_path(args.get("folder") or "")

        def in_bounds(document_id: str) -> bool:
            if folder and not (document_id == folder or document_id.startswith(folder + "/")):
                return False
            return scope.allows(document_id)

        if self.retriever is not None and self.retriever.is_ready():
            try:
                results = await self.retriever.retrieve(query, top_k=20, score_threshold=0.0, strategy="hybrid")
            except RetrievalError as e:
                raise ToolError(f"Search failed: {e.message}") from e
            matches = [
                {
                    "path": r.document_id,
                    "title": r.document_title,
                    "section": r.section,
                    "score": round(r.score, 4),
                    "snippet": r.chunk.body.strip()[:SNIPPET_LENGTH],
                }
                for r in results
                if in_bounds(r.document_id)
            ]
        else:
            matches = await asyncio.to_thread(self._scan, query, in_bounds)

        return ToolResult(
            success=True,
            data={"query": query, "results": matches[:limit]},
            metadata={"operation_type": "search", "files_affected": []},
        )

    def _scan(self, query: str, in_bounds) -> list[dict[str, Any]]:
        needle = query.lower()
        matches = []
        for document in self.source.list_documents():
            if not in_bounds(document.id):
                continue
            position = document.content.lower().find(needle)
            if position < 0:
                continue
            start = max(0, position - SNIPPET_LENGTH // 2)
            matches.append(
                {
                    "path": document.id,
                    "title": document.title,
                    "section": "",
                    "score": 1.0,
                    "snippet": document.content[start:start + SNIPPET_LENGTH],
                }
            )
        return matches

    # ==========================================================================
    # Dangerous tools
    # ==========================================================================
    async def _tool_write_note(self, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        path = self._resolve(args["path"])
        mode = args.get("mode") or "overwrite"
        content = args["content"]

        def write() -> bool:
            created = not path.exists()
            path.parent.mkdir(parents=True, exist_ok=True)
            if mode == "append" and not created:
                with path.open("a", encoding="utf-8") as f:
                    f.write(content)
            else:
                path.write_text(content, encoding="utf-8")
            return created

        created = await asyncio.to_thread(write)
        relative = path.relative_to(self.root).as_posix()
        logger.info(f"Tool wrote note {relative} ({mode})")
        return ToolResult(
            success=True,
            data={"path": relative, "created": created, "mode": mode, "characters": len(content)},
            metadata={"operation_type": "write", "files_affected": [relative]},
        )

    async def _tool_delete_note(self, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        path = self._resolve(args["path"])
        if not path.is_file():
            raise ToolError(f"Note not found: {args['path']}")
        await asyncio.to_thread(path.unlink)
        relative = path.relative_to(self.root).as_posix()
        logger.info(f"Tool deleted note {relative}")
        return ToolResult(
            success=True,
            data={"path": relative, "deleted": True},
            metadata={"operation_type": "delete", "files_affected": [relative]},
        )
