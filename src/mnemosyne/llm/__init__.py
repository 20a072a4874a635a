"""LLM provider abstraction for mnemosyne."""

from mnemosyne.llm.manager import ProviderManager
from mnemosyne.llm.provider import LLMProvider, ProviderConfig
from mnemosyne.llm.types import (
    ChatOptions,
    ChatResponse,
    FunctionCall,
    Message,
    StreamChunk,
    TokenUsage,
    ToolSchema,
)

__all__ = [
    "ChatOptions",
    "ChatResponse",
    "FunctionCall",
    "LLMProvider",
    "Message",
    "ProviderConfig",
    "ProviderManager",
    "StreamChunk",
    "TokenUsage",
    "ToolSchema",
]
