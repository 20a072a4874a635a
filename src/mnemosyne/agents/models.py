"""
Agent configuration, validation and response types.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Mapping, Optional

from pydantic import BaseModel, Field

from mnemosyne.errors import ConfigurationError
from mnemosyne.llm.provider import ProviderConfig
from mnemosyne.llm.types import Message, TokenUsage
from mnemosyne.retrieval.vector_store import RetrievedChunk

CONTEXT_PLACEHOLDER = "{context}"
MIN_TOP_K = 1
MAX_TOP_K = 20
PREVIEW_LENGTH = 200

DEFAULT_AGENT_ID = "default"
DEFAULT_SYSTEM_PROMPT = """You are a helpful assistant for a personal knowledge base.
Answer the user's question using the context below. Cite the documents you use by title.
If the context does not contain the answer, say so.

Context:
{context}"""


class AgentStatus(str, Enum):
    """Lifecycle state of an agent instance."""

    UNINITIALIZED = "uninitialized"
    READY = "ready"
    EXECUTING = "executing"
    DISABLED = "disabled"
    ERROR = "error"


class RetrievalSettings(BaseModel):
    """How an agent queries the knowledge base."""

    top_k: int = Field(default=5, description="Number of chunks to retrieve")
    score_threshold: float = Field(default=0.7, description="Minimum relevance score")
    strategy: Literal["semantic", "keyword", "hybrid"] = Field(default="semantic")
    metadata_filters: dict[str, list[str]] = Field(
        default_factory=dict,
        description="Allowed values per metadata key",
        examples=[{"content_type": ["procedure"]}],
    )


class AgentConfig(BaseModel):
    """A named behavior binding: prompt, retrieval settings and model."""

    id: str = Field(..., min_length=1)
    name: str = Field(default="")
    description: str = Field(default="")
    provider_id: str = Field(..., description="Bound provider id")
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)
    retrieval: Optional[RetrievalSettings] = Field(
        default_factory=RetrievalSettings,
        description="Retrieval settings; None disables retrieval",
    )
    capabilities: list[str] = Field(default_factory=list, description="Exact-match capability tags")
    fallback_provider_ids: list[str] = Field(default_factory=list)
    enabled: bool = Field(default=True)
    is_permanent: bool = Field(default=False, description="Permanent agents can be disabled, not deleted")
    enable_tools: bool = Field(default=False)
    allow_dangerous_operations: bool = Field(default=False)
    folder_scope: list[str] = Field(default_factory=list, description="Folders tool calls may touch")
    memory_enabled: bool = Field(default=True)
    memory_max_messages: Optional[int] = Field(default=None, ge=2)
    temperature: Optional[float] = Field(default=None)
    max_tokens: Optional[int] = Field(default=None)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)


def agent_config_problems(
    config: AgentConfig,
    providers: Mapping[str, ProviderConfig],
) -> list[str]:
    """
    Collect every validation problem of an agent configuration.

    Args:
        config: Agent configuration
        providers: Known provider configurations by id

    Returns:
        List of human-readable problems (empty when valid)
    """
    problems = []
    if not config.name.strip():
        problems.append("Agent name is required")

    provider = providers.get(config.provider_id)
    if provider is None:
        problems.append(f"Provider not found: {config.provider_id}")
    elif not provider.enabled:
        problems.append(f"Provider is disabled: {config.provider_id}")

    if CONTEXT_PLACEHOLDER not in config.system_prompt:
        problems.append(f"System prompt must contain the {CONTEXT_PLACEHOLDER} placeholder")

    if config.retrieval is not None:
        if not MIN_TOP_K <= config.retrieval.top_k <= MAX_TOP_K:
            problems.append(f"top_k must be between {MIN_TOP_K} and {MAX_TOP_K}")
        if not 0.0 <= config.retrieval.score_threshold <= 1.0:
            problems.append("score_threshold must be between 0 and 1")

    if config.temperature is not None and not 0.0 <= config.temperature <= 2.0:
        problems.append("temperature must be between 0 and 2")
    if config.max_tokens is not None and config.max_tokens < 1:
        problems.append("max_tokens must be positive")

    for fallback_id in config.fallback_provider_ids:
        if fallback_id not in providers:
            problems.append(f"Fallback provider not found: {fallback_id}")
    return problems


def validate_agent_config(config: AgentConfig, providers: Mapping[str, ProviderConfig]) -> None:
    """
    Validate an agent configuration before activation.

    Raises:
        ConfigurationError: Listing every problem found
    """
    problems = agent_config_problems(config, providers)
    if problems:
        raise ConfigurationError(
            f"Invalid agent configuration '{config.id}': {'; '.join(problems)}",
            problems=problems,
            agent_id=config.id,
        )


def create_default_agent(provider_id: str) -> AgentConfig:
    return AgentConfig(
        id=DEFAULT_AGENT_ID,
        name="Knowledge Assistant",
        description="General-purpose assistant over the indexed notes",
        provider_id=provider_id,
        is_permanent=True,
        capabilities=["general", "qa"],
    )


# =============================================================================
# Execution input and output
# =============================================================================

@dataclass
class ExecutionContext:
    """Optional caller-supplied context for one execution."""

    note_content: Optional[str] = None
    """Content of the note the user is looking at."""

    note_path: Optional[str] = None

    additional_context: Optional[str] = None
    """Free-form extra context."""

    conversation_history: list[Message] = field(default_factory=list)
    """Prior turns supplied by the caller; used when agent memory is disabled."""


@dataclass
class SourceAttribution:
    """A retrieved chunk cited by an answer."""

    chunk_id: str
    document_id: str
    document_title: str
    section: str
    score: float
    preview: str

    @classmethod
    def from_retrieved(cls, result: RetrievedChunk) -> "SourceAttribution":
        content = result.chunk.body.strip()
        return cls(
            chunk_id=result.chunk_id,
            document_id=result.document_id,
            document_title=result.document_title,
            section=result.section,
            score=result.score,
            preview=content[:PREVIEW_LENGTH] + ("..." if len(content) > PREVIEW_LENGTH else ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_id": self.chunk_id,
            "document_id": self.document_id,
            "document_title": self.document_title,
            "section": self.section,
            "score": self.score,
            "preview": self.preview,
        }


@dataclass
class AgentResponse:
    """Structured result of one agent execution."""

    answer: str
    agent_id: str
    provider_id: Optional[str] = None
    model: Optional[str] = None
    sources: list[SourceAttribution] = field(default_factory=list)
    retrieved_chunks: int = 0
    usage: TokenUsage = field(default_factory=TokenUsage)
    execution_time_ms: float = 0.0
    tool_results: list[dict[str, Any]] = field(default_factory=list)
    node_timings: dict[str, float] = field(default_factory=dict)
    iterations_exhausted: bool = False
    success: bool = True
    error: Optional[dict[str, Any]] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "answer": self.answer,
            "agent_id": self.agent_id,
            "provider_id": self.provider_id,
            "model": self.model,
            "sources": [s.to_dict() for s in self.sources],
            "retrieved_chunks": self.retrieved_chunks,
            "usage": self.usage.to_dict(),
            "execution_time_ms": self.execution_time_ms,
            "tool_results": self.tool_results,
            "node_timings": self.node_timings,
            "iterations_exhausted": self.iterations_exhausted,
            "success": self.success,
            "error": self.error,
        }
