"""
Agent tool catalogue and execution policy.

The executor never calls a tool backend directly. ToolRunner checks the
call against the catalogue and the agent's scope constraints first:
unknown tools, bad arguments, dangerous operations without permission and
paths outside the folder scope are all refused before the backend runs.
Every outcome, including failures, is a ToolResult fed back to the model.
"""

import json
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any, Literal, Optional, Protocol, runtime_checkable

from mnemosyne.errors import ScopeViolation, ToolError
from mnemosyne.llm.types import FunctionCall, ToolSchema

logger = logging.getLogger(__name__)

OperationType = Literal["read", "write", "delete", "search", "list"]

UNKNOWN_TOOL = "UNKNOWN_TOOL"
VALIDATION_FAILED = "VALIDATION_FAILED"
DANGEROUS_OPERATION = "DANGEROUS_OPERATION"
SCOPE_VIOLATION = "SCOPE_VIOLATION"
TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"
INVALID_ARGUMENTS = "INVALID_ARGUMENTS"


@dataclass(frozen=True)
class ToolDefinition:
    """A tool the model may call."""

    name: str
    description: str
    parameters: dict[str, Any]
    operation_type: OperationType
    dangerous: bool = False
    path_arguments: tuple[str, ...] = ()
    """Arguments holding note paths, checked against the folder scope."""

    def to_schema(self) -> ToolSchema:
        return ToolSchema(name=self.name, description=self.description, parameters=self.parameters)

    def to_openai(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {"name": self.name, "description": self.description, "parameters": self.parameters},
        }

    def to_anthropic(self) -> dict[str, Any]:
        return {"name": self.name, "description": self.description, "input_schema": self.parameters}


def _object_schema(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


TOOL_DEFINITIONS: dict[str, ToolDefinition] = {
    tool.name: tool
    for tool in (
        ToolDefinition(
            name="read_note",
            description="Read the full content of a note by its vault-relative path.",
            parameters=_object_schema(
                {"path": {"type": "string", "description": "Note path, e.g. 'projects/plan.md'"}},
                ["path"],
            ),
            operation_type="read",
            path_arguments=("path",),
        ),
        ToolDefinition(
            name="search_notes",
            description="Search the knowledge base and return the most relevant notes with snippets.",
            parameters=_object_schema(
                {
                    "query": {"type": "string", "description": "Search text"},
                    "folder": {"type": "string", "description": "Restrict to this folder"},
                    "limit": {"type": "integer", "minimum": 1, "description": "Maximum results (default 10)"},
                },
                ["query"],
            ),
            operation_type="search",
            path_arguments=("folder",),
        ),
        ToolDefinition(
            name="list_notes",
            description="List note paths, optionally under one folder.",
            parameters=_object_schema(
                {"folder": {"type": "string", "description": "Folder to list (default: all)"}},
                [],
            ),
            operation_type="list",
            path_arguments=("folder",),
        ),
        ToolDefinition(
            name="write_note",
            description="Create or overwrite a note, or append to it.",
            parameters=_object_schema(
                {
                    "path": {"type": "string", "description": "Note path"},
                    "content": {"type": "string", "description": "Markdown content"},
                    "mode": {"type": "string", "enum": ["overwrite", "append"]},
                },
                ["path", "content"],
            ),
            operation_type="write",
            dangerous=True,
            path_arguments=("path",),
        ),
        ToolDefinition(
            name="delete_note",
            description="Delete a note.",
            parameters=_object_schema(
                {"path": {"type": "string", "description": "Note path"}},
                ["path"],
            ),
            operation_type="delete",
            dangerous=True,
            path_arguments=("path",),
        ),
    )
}

_JSON_TYPES = {"string": str, "integer": int, "number": (int, float), "boolean": bool, "object": dict, "array": list}


@dataclass
class ToolResult:
    """Outcome of one tool call."""

    success: bool
    tool_name: str = ""
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    """operation_type and files_affected."""

    @classmethod
    def failure(cls, tool_name: str, code: str, error: str, operation_type: Optional[str] = None) -> "ToolResult":
        return cls(
            success=False,
            tool_name=tool_name,
            error=error,
            error_code=code,
            metadata={"operation_type": operation_type, "files_affected": []},
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "tool_name": self.tool_name,
            "data": self.data,
            "error": self.error,
            "error_code": self.error_code,
            "metadata": self.metadata,
        }

    def to_message_content(self) -> str:
        """Serialize for the tool-result message sent back to the model."""
        if self.success:
            return json.dumps({"success": True, "data": self.data}, default=str)
        return json.dumps({"success": False, "error": self.error, "code": self.error_code})


# =============================================================================
# Scope
# =============================================================================

def normalize_note_path(path: str) -> str:
    """
    Normalize a vault-relative path.

    Raises:
        ScopeViolation: If the path climbs out of the vault
    """
    cleaned = posixpath.normpath(path.replace("\\", "/").strip()).lstrip("/")
    if cleaned in (".", ""):
        return ""
    if cleaned == ".." or cleaned.startswith("../"):
        raise ScopeViolation(f"Path escapes the vault: {path}", path=path)
    return cleaned


@dataclass
class ScopeConstraints:
    """Restrictions an agent places on its tool calls."""

    folder_scope: list[str] = field(default_factory=list)
    """Allowed folders; empty means the whole vault."""

    allow_dangerous_operations: bool = False

    def allows(self, path: str) -> bool:
        normalized = normalize_note_path(path)
        if not self.folder_scope:
            return True
        for folder in self.folder_scope:
            prefix = normalize_note_path(folder)
            if not prefix or normalized == prefix or normalized.startswith(prefix + "/"):
                return True
        return False

    def check_path(self, path: str) -> None:
        """
        Raises:
            ScopeViolation: If the path is outside the folder scope
        """
        if not self.allows(path):
            raise ScopeViolation(
                f"Path '{path}' is outside the allowed folders: {', '.join(self.folder_scope)}",
                path=path,
            )


@runtime_checkable
class ToolBackend(Protocol):
    """Collaborator that actually performs tool operations."""

    async def invoke_tool(self, name: str, args: dict[str, Any], scope: ScopeConstraints) -> ToolResult:
        ...


def validate_tool_arguments(definition: ToolDefinition, args: dict[str, Any]) -> list[str]:
    problems = []
    properties = definition.parameters.get("properties", {})
    for name in definition.parameters.get("required", []):
        if name not in args or args[name] is None:
            problems.append(f"Missing required argument: {name}")
    for name, value in args.items():
        schema = properties.get(name)
        if schema is None:
            problems.append(f"Unexpected argument: {name}")
            continue
        expected = _JSON_TYPES.get(schema.get("type", ""))
        if expected is not None and value is not None and not isinstance(value, expected):
            problems.append(f"Argument '{name}' must be of type {schema['type']}")
        if "enum" in schema and value is not None and value not in schema["enum"]:
            problems.append(f"Argument '{name}' must be one of {schema['enum']}")
        if "minimum" in schema and isinstance(value, (int, float)) and not isinstance(value, bool):
            if value < schema["minimum"]:
                problems.append(f"Argument '{name}' must be at least {schema['minimum']}")
    return problems


class ToolRunner:
    """Applies the tool policy and dispatches allowed calls to a backend."""

    def __init__(
        self,
        backend: ToolBackend,
        scope: ScopeConstraints,
        definitions: Optional[dict[str, ToolDefinition]] = None,
    ) -> None:
        self.backend = backend
        self.scope = scope
        self.definitions = definitions or TOOL_DEFINITIONS

    def schemas(self) -> list[ToolSchema]:
        return [definition.to_schema() for definition in self.definitions.values()]

    async def run(self, call: FunctionCall) -> ToolResult:
        """
        Execute one tool call under the policy.

        Never raises for tool-level failures.
        """
        definition = self.definitions.get(call.name)
        if definition is None:
            return ToolResult.failure(call.name, UNKNOWN_TOOL, f"Unknown tool: {call.name}")

        operation = definition.operation_type
        problems = validate_tool_arguments(definition, call.arguments)
        if problems:
            return ToolResult.failure(call.name, VALIDATION_FAILED, "; ".join(problems), operation)

        if definition.dangerous and not self.scope.allow_dangerous_operations:
            logger.warning(f"Refused dangerous tool call {call.name}: not permitted for this agent")
            return ToolResult.failure(
                call.name,
                DANGEROUS_OPERATION,
                f"Operation '{call.name}' modifies notes and is not allowed for this agent",
                operation,
            )

        try:
            for argument in definition.path_arguments:
                value = call.arguments.get(argument)
                if value:
                    self.scope.check_path(value)
            result = await self.backend.invoke_tool(call.name, call.arguments, self.scope)
        except ScopeViolation as e:
            logger.warning(f"Scope violation in {call.name}: {e.message}")
            return ToolResult.failure(call.name, SCOPE_VIOLATION, e.message, operation)
        except ToolError as e:
            logger.warning(f"Tool {call.name} failed: {e.message}")
            return ToolResult.failure(call.name, TOOL_EXECUTION_FAILED, e.message, operation)
        except Exception as e:
            logger.warning(f"Tool {call.name} failed: {e}", exc_info=not isinstance(e, OSError))
            return ToolResult.failure(call.name, TOOL_EXECUTION_FAILED, str(e), operation)

        result.tool_name = result.tool_name or call.name
        result.metadata.setdefault("operation_type", operation)
        result.metadata.setdefault("files_affected", [])
        return result
