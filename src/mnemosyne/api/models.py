"""
Pydantic models for API request and response schemas.

These models provide automatic validation and OpenAPI documentation.
"""

from typing import Any, Literal, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    """Response schema for the /health endpoint."""

    status: str = Field(
        description="Health status",
        examples=["healthy"],
    )
    version: str = Field(description="API version")
    index_loaded: bool = Field(description="Whether the vector store is loaded")
    index_entries: int = Field(default=0, description="Number of indexed chunks")


class ReadinessResponse(BaseModel):
    """Response schema for the /ready endpoint."""

    retriever: bool = Field(description="Index has an embedding model and at least one entry")
    providers: bool = Field(description="At least one provider is initialized")
    agents: bool = Field(description="At least one agent is ready")
    session_unlocked: bool = Field(description="Master password set for this session")
    ready: bool = Field(description="All components ready")


class AgentSummary(BaseModel):
    """One entry of the /agents listing."""

    id: str
    name: str
    description: str = ""
    enabled: bool


class ExecuteRequest(BaseModel):
    """Request schema for /agents/{agent_id}/execute."""

    query: str = Field(
        ...,
        min_length=1,
        max_length=4000,
        description="Question or instruction for the agent",
        examples=["What did I decide about the Q3 roadmap?"],
    )
    note_content: Optional[str] = Field(
        default=None,
        description="Content of the note currently open (truncated to 2000 characters)",
    )
    note_path: Optional[str] = Field(default=None, description="Path of the open note")
    additional_context: Optional[str] = Field(default=None, description="Extra free-form context")


class DelegateRequest(ExecuteRequest):
    """Request schema for /agents/delegate."""

    capability: Optional[str] = Field(
        default=None,
        description="Capability tag of the specialist to use (inferred from the query when omitted)",
        examples=["research"],
    )


class SourceSchema(BaseModel):
    """A source chunk cited by an answer."""

    chunk_id: str
    document_id: str
    document_title: str
    section: str = ""
    score: float = Field(ge=0.0, le=1.0)
    preview: str = ""


class UsageSchema(BaseModel):
    """Token usage across all model calls of one execution."""

    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ExecuteResponse(BaseModel):
    """Response schema for /agents/{agent_id}/execute."""

    answer: str = Field(description="Agent answer")
    agent_id: str
    provider_id: Optional[str] = None
    model: Optional[str] = None
    sources: list[SourceSchema] = Field(default_factory=list)
    retrieved_chunks: int = Field(default=0, description="Chunks retrieved for the query")
    usage: UsageSchema = Field(default_factory=UsageSchema)
    execution_time_ms: float = Field(description="Total execution time in milliseconds")
    tool_results: list[dict[str, Any]] = Field(default_factory=list)
    node_timings: dict[str, float] = Field(default_factory=dict)
    iterations_exhausted: bool = False


class QueryRequest(BaseModel):
    """Request schema for the /query endpoint (direct retrieval)."""

    text: str = Field(
        ...,
        min_length=1,
        max_length=2000,
        description="Search text",
        examples=["how to rotate API keys"],
    )
    top_k: Optional[int] = Field(default=None, ge=0, le=20, description="Maximum results")
    score_threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    strategy: Optional[Literal["semantic", "keyword", "hybrid"]] = None
    filters: Optional[dict[str, list[str]]] = Field(
        default=None,
        description="Allowed values per metadata key",
        examples=[{"content_type": ["procedure"]}],
    )


class RetrievedChunkSchema(BaseModel):
    """One retrieval result."""

    chunk_id: str
    document_id: str
    document_title: str
    section: str = ""
    content: str
    score: float
    rank: int
    semantic_score: Optional[float] = None
    keyword_score: Optional[float] = None


class QueryResponse(BaseModel):
    """Response schema for the /query endpoint."""

    results: list[RetrievedChunkSchema] = Field(default_factory=list)
    count: int = 0


class UnlockRequest(BaseModel):
    """Request schema for /session/unlock."""

    password: str = Field(..., min_length=1, description="Master password")


class SessionResponse(BaseModel):
    """Response schema for session endpoints."""

    unlocked: bool


class IndexRequest(BaseModel):
    """Request schema for /index."""

    scope: Optional[list[str]] = Field(
        default=None,
        description="Folders to index (default: whole vault)",
        examples=[["projects", "journal"]],
    )
    incremental: bool = Field(
        default=False,
        description="Only re-embed changed notes and drop deleted ones",
    )


class IndexResponse(BaseModel):
    """Response schema for /index."""

    documents_processed: int
    chunks_ingested: int
    failed_chunk_ids: list[str] = Field(default_factory=list)
    skipped_documents: list[str] = Field(default_factory=list)
    unreadable_documents: dict[str, str] = Field(default_factory=dict)
    unchanged_documents: list[str] = Field(default_factory=list)
    removed_documents: list[str] = Field(default_factory=list)
    duration_ms: float
    success: bool


class ErrorResponse(BaseModel):
    """Schema for error responses."""

    error: str = Field(
        description="Error code",
        examples=["CONFIGURATION_ERROR", "RATE_LIMITED", "internal_error"],
    )
    message: str = Field(description="Human-readable error message")
    context: dict[str, Any] = Field(default_factory=dict, description="Provider, model, operation, ...")
