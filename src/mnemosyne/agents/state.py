"""
Graph state for one agent execution.

AgentGraphState flows through the executor's LangGraph workflow. Each node
reads from and writes to it.
"""

from typing import Any, Optional, TypedDict

from mnemosyne.agents.models import ExecutionContext
from mnemosyne.llm.types import ChatResponse, Message, TokenUsage
from mnemosyne.retrieval.vector_store import RetrievedChunk


class AgentGraphState(TypedDict, total=False):
    """
    State schema for the agent execution workflow.

    Flow:
        1. retrieve: fetch chunks for the query (populates retrieved_chunks)
        2. build_prompt: render the system prompt and message list
        3. call_model: invoke the provider (populates response)
        4. execute_tools: run the requested tool, append its result, back to 3
        5. finalize: produce the answer text
    """

    # ==========================================================================
    # Input
    # ==========================================================================
    query: str
    """The user's query."""

    context: ExecutionContext
    """Caller-supplied context."""

    history: list[Message]
    """Prior conversation turns (memory or caller history)."""

    # ==========================================================================
    # Retrieval
    # ==========================================================================
    retrieved_chunks: list[RetrievedChunk]
    """Chunks retrieved for the query."""

    context_text: str
    """Formatted context block substituted into the system prompt."""

    # ==========================================================================
    # Model interaction
    # ==========================================================================
    messages: list[Message]
    """Full message list sent to the provider."""

    response: Optional[ChatResponse]
    """Latest provider response."""

    provider_id: Optional[str]
    """Provider that produced the latest response."""

    model: Optional[str]

    usage: TokenUsage
    """Accumulated token usage across all model calls."""

    # ==========================================================================
    # Tools
    # ==========================================================================
    tool_results: list[dict[str, Any]]
    """Results of executed tool calls, in order."""

    iterations: int
    """Number of tool calls executed."""

    iterations_exhausted: bool
    """True when the tool-call cap stopped the loop."""

    tool_error: Optional[str]
    """Parse error of the model's last tool call, reported back on the next turn."""

    # ==========================================================================
    # Output
    # ==========================================================================
    answer: str
    """Final answer text."""

    node_timings: dict[str, float]
    """Cumulative time per node in milliseconds."""


def create_initial_state(
    query: str,
    context: Optional[ExecutionContext] = None,
    history: Optional[list[Message]] = None,
) -> AgentGraphState:
    return AgentGraphState(
        query=query,
        context=context or ExecutionContext(),
        history=list(history or []),
        retrieved_chunks=[],
        context_text="",
        messages=[],
        response=None,
        provider_id=None,
        model=None,
        usage=TokenUsage(),
        tool_results=[],
        iterations=0,
        iterations_exhausted=False,
        tool_error=None,
        answer="",
        node_timings={},
    )
