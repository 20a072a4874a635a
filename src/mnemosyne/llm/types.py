"""
Backend-neutral message and response types for the LLM layer.
"""

from dataclasses import dataclass, field
from typing import Any, Literal, Optional

Role = Literal["system", "user", "assistant", "tool"]


@dataclass
class FunctionCall:
    """A structured tool invocation requested by the model."""

    name: str
    """Tool name."""

    arguments: dict[str, Any] = field(default_factory=dict)
    """Parsed argument object."""

    id: Optional[str] = None
    """Backend call id, echoed back with the tool result."""


@dataclass
class Message:
    """A role-tagged chat message."""

    role: Role
    content: str = ""
    name: Optional[str] = None
    """Tool name for tool-result messages."""

    tool_call_id: Optional[str] = None
    """Id of the call a tool-result message answers."""

    tool_calls: list[FunctionCall] = field(default_factory=list)
    """Tool calls requested by an assistant message."""

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            data["name"] = self.name
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data


@dataclass
class ChatOptions:
    """Sampling options; None means "use the provider default"."""

    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    top_p: Optional[float] = None
    stop: Optional[list[str]] = None


@dataclass
class TokenUsage:
    """Token counts reported by the backend."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }


@dataclass
class ChatResponse:
    """A model reply."""

    content: str
    model: str
    finish_reason: Optional[str] = None
    usage: TokenUsage = field(default_factory=TokenUsage)
    function_call: Optional[FunctionCall] = None


@dataclass
class StreamChunk:
    """Incremental content delivered to a stream callback."""

    content: str
    done: bool = False
    interrupted: bool = False
    """True on the terminal chunk of a stream cut off by a connection failure."""


@dataclass
class ToolSchema:
    """A callable tool advertised to the model."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})
