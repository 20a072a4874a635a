"""
Agent execution workflow.

Each agent runs its queries through a LangGraph workflow:

    START
      │
      ▼
    [retrieve] ──► [build_prompt] ──► [call_model]
                                          │
                                          ├── tool call ──► [execute_tools] ──► [call_model] (loop)
                                          │
                                          └── answer ─────► [finalize] ──► END

The tool loop is bounded by max_tool_iterations. Provider calls are retried
with exponential backoff on rate limits and connection failures, then the
agent's fallback providers are tried in order.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Literal, Optional

from langgraph.graph import END, START, StateGraph
from langgraph.graph.state import CompiledStateGraph

from mnemosyne.agents.memory import SUMMARY_PROMPT, ConversationMemory, render_conversation
from mnemosyne.agents.models import (
    CONTEXT_PLACEHOLDER,
    AgentConfig,
    AgentResponse,
    AgentStatus,
    ExecutionContext,
    SourceAttribution,
)
from mnemosyne.agents.state import AgentGraphState, create_initial_state
from mnemosyne.agents.tools import INVALID_ARGUMENTS, ScopeConstraints, ToolBackend, ToolResult, ToolRunner
from mnemosyne.errors import ConfigurationError, ProviderError, ToolError
from mnemosyne.llm.manager import ProviderManager
from mnemosyne.llm.provider import LLMProvider
from mnemosyne.llm.types import ChatOptions, ChatResponse, FunctionCall, Message, ToolSchema
from mnemosyne.retrieval.retriever import Retriever
from mnemosyne.retrieval.vector_store import RetrievedChunk
from mnemosyne.tracing import add_span_attributes, record_exception, traced

logger = logging.getLogger(__name__)

NO_CONTEXT_TEXT = "[No relevant context found in knowledge base]"
MAX_NOTE_CONTENT = 2000
ITERATIONS_EXHAUSTED_ANSWER = (
    "I'm sorry, I couldn't complete this request: it needed more tool calls "
    "than I'm allowed to make. Please try a more specific question."
)

NodeFunc = Callable[[AgentGraphState], Awaitable[AgentGraphState]]


def create_timed_node(node_func: NodeFunc, node_name: str) -> NodeFunc:
    """
    Wrap a node coroutine with timing instrumentation.

    Tracks execution time and stores it in state['node_timings'].
    Nodes that run several times (call_model in the tool loop) accumulate.
    """
    async def timed_node(state: AgentGraphState) -> AgentGraphState:
        start_time = time.perf_counter()
        update = await node_func(state)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        timings = dict(state.get("node_timings", {}))
        timings[node_name] = timings.get(node_name, 0.0) + elapsed_ms
        update["node_timings"] = timings
        return update

    return timed_node


def format_context(chunks: list[RetrievedChunk]) -> str:
    """
    Render retrieved chunks as a source-attributed context block.

    Args:
        chunks: Retrieved chunks in rank order

    Returns:
        Context text for the system prompt placeholder
    """
    if not chunks:
        return NO_CONTEXT_TEXT

    parts = []
    for i, result in enumerate(chunks, 1):
        lines = [f"**Source {i}** (Relevance: {result.score * 100:.1f}%)"]
        lines.append(f"Document: {result.document_title or result.document_id}")
        if result.section:
            lines.append(f"Section: {result.section}")
        content_type = result.chunk.metadata.get("content_type")
        if content_type:
            lines.append(f"Type: {content_type}")
        lines.append("")
        lines.append(result.chunk.body.strip())
        lines.append("")
        lines.append("---")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def render_system_prompt(template: str, context_text: str) -> str:
    # Plain replacement: templates may contain other literal braces
    return template.replace(CONTEXT_PLACEHOLDER, context_text)


def truncate(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "\n[... truncated]"


class AgentExecutor:
    """
    Executes queries for one agent configuration.

    Calls on one executor are serialized (they share conversation memory);
    different executors run concurrently.
    """

    def __init__(
        self,
        config: AgentConfig,
        providers: ProviderManager,
        retriever: Optional[Retriever] = None,
        tool_backend: Optional[ToolBackend] = None,
        max_tool_iterations: Optional[int] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
    ) -> None:
        from mnemosyne.config import settings

        self.config = config
        self.providers = providers
        self.retriever = retriever
        self.max_tool_iterations = (
            settings.max_tool_iterations if max_tool_iterations is None else max_tool_iterations
        )
        self.max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self.retry_delay = settings.llm_retry_delay if retry_delay is None else retry_delay

        self.tool_runner: Optional[ToolRunner] = None
        if config.enable_tools and tool_backend is not None:
            self.tool_runner = ToolRunner(
                tool_backend,
                ScopeConstraints(
                    folder_scope=list(config.folder_scope),
                    allow_dangerous_operations=config.allow_dangerous_operations,
                ),
            )

        self.memory: Optional[ConversationMemory] = None
        if config.memory_enabled:
            self.memory = ConversationMemory(config.memory_max_messages, summarizer=self._summarize)

        self.status = AgentStatus.UNINITIALIZED
        self.last_error: Optional[str] = None
        self.execution_count = 0
        self._lock = asyncio.Lock()
        self.graph = self.build_graph()

    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    def initialize(self) -> None:
        """
        Move the agent to Ready if its bound provider is usable.

        Raises:
            ConfigurationError: If the bound provider is missing, disabled or failed
        """
        if not self.config.enabled:
            self.status = AgentStatus.DISABLED
            return
        try:
            self.providers.get_provider(self.config.provider_id)
        except ConfigurationError as e:
            self.status = AgentStatus.ERROR
            self.last_error = e.message
            raise
        self.status = AgentStatus.READY
        self.last_error = None

    def set_enabled(self, enabled: bool) -> None:
        self.config.enabled = enabled
        if not enabled:
            self.status = AgentStatus.DISABLED
        else:
            self.status = AgentStatus.UNINITIALIZED
            self.initialize()

    @property
    def is_ready(self) -> bool:
        return self.status in (AgentStatus.READY, AgentStatus.EXECUTING)

    # ==========================================================================
    # Graph
    # ==========================================================================
    def build_graph(self) -> CompiledStateGraph:
        workflow = StateGraph(AgentGraphState)

        workflow.add_node("retrieve", create_timed_node(self.retrieve_node, "retrieve"))
        workflow.add_node("build_prompt", create_timed_node(self.build_prompt_node, "build_prompt"))
        workflow.add_node("call_model", create_timed_node(self.call_model_node, "call_model"))
        workflow.add_node("execute_tools", create_timed_node(self.execute_tools_node, "execute_tools"))
        workflow.add_node("finalize", create_timed_node(self.finalize_node, "finalize"))

        workflow.add_edge(START, "retrieve")
        workflow.add_edge("retrieve", "build_prompt")
        workflow.add_edge("build_prompt", "call_model")
        workflow.add_conditional_edges(
            "call_model",
            self.should_execute_tools,
            {
                "execute_tools": "execute_tools",
                "finalize": "finalize",
            },
        )
        workflow.add_edge("execute_tools", "call_model")
        workflow.add_edge("finalize", END)

        return workflow.compile()

    def _wants_tool(self, state: AgentGraphState) -> bool:
        if state.get("tool_error"):
            return True
        response = state.get("response")
        return self.tool_runner is not None and response is not None and response.function_call is not None

    def should_execute_tools(self, state: AgentGraphState) -> Literal["execute_tools", "finalize"]:
        """
        Conditional edge: run the requested tool or finish.

        A tool request past the iteration cap goes to finalize, which reports
        the exhaustion.
        """
        if self._wants_tool(state) and state.get("iterations", 0) < self.max_tool_iterations:
            return "execute_tools"
        return "finalize"

    async def retrieve_node(self, state: AgentGraphState) -> AgentGraphState:
        retrieval = self.config.retrieval
        if retrieval is None or self.retriever is None or not self.retriever.is_ready():
            return {"retrieved_chunks": []}

        chunks = await self.retriever.retrieve(
            state["query"],
            top_k=retrieval.top_k,
            filters=retrieval.metadata_filters or None,
            score_threshold=retrieval.score_threshold,
            strategy=retrieval.strategy,
        )
        add_span_attributes(agent_id=self.config.id, chunks_retrieved=len(chunks))
        return {"retrieved_chunks": chunks}

    async def build_prompt_node(self, state: AgentGraphState) -> AgentGraphState:
        context_text = format_context(state.get("retrieved_chunks", []))
        messages = [Message(role="system", content=render_system_prompt(self.config.system_prompt, context_text))]
        messages.extend(state.get("history", []))

        context = state.get("context") or ExecutionContext()
        if context.note_content:
            label = f"Current note ({context.note_path})" if context.note_path else "Current note"
            messages.append(
                Message(role="user", content=f"{label}:\n{truncate(context.note_content, MAX_NOTE_CONTENT)}")
            )
        if context.additional_context:
            messages.append(Message(role="user", content=f"Additional context:\n{context.additional_context}"))

        messages.append(Message(role="user", content=state["query"]))
        return {"context_text": context_text, "messages": messages}

    async def call_model_node(self, state: AgentGraphState) -> AgentGraphState:
        tools = self.tool_runner.schemas() if self.tool_runner is not None else None
        try:
            response, provider_id = await self.call_model(state["messages"], tools)
        except ToolError as e:
            # Unparseable tool arguments: report back to the model as a failed call
            logger.warning(f"Agent {self.config.id}: {e.message}")
            usage = state["usage"] + e.usage if e.usage is not None else state["usage"]
            return {"response": None, "tool_error": e.message, "usage": usage}

        return {
            "response": response,
            "provider_id": provider_id,
            "model": response.model,
            "usage": state["usage"] + response.usage,
            "tool_error": None,
        }

    async def execute_tools_node(self, state: AgentGraphState) -> AgentGraphState:
        iteration = state.get("iterations", 0)
        messages = list(state["messages"])

        tool_error = state.get("tool_error")
        if tool_error:
            result = ToolResult.failure("", INVALID_ARGUMENTS, tool_error)
            messages.append(
                Message(
                    role="user",
                    content=f"Your last tool call could not be parsed ({tool_error}). "
                    "Call the tool again with valid JSON arguments.",
                )
            )
        else:
            response = state["response"]
            requested = response.function_call
            call = FunctionCall(
                name=requested.name,
                arguments=requested.arguments,
                id=requested.id or f"call_{iteration}",
            )
            result = await self.tool_runner.run(call)
            logger.info(
                f"Agent {self.config.id} tool {call.name}: "
                + ("ok" if result.success else f"{result.error_code} {result.error}")
            )
            messages.append(Message(role="assistant", content=response.content, tool_calls=[call]))
            messages.append(
                Message(
                    role="tool",
                    content=result.to_message_content(),
                    name=call.name,
                    tool_call_id=call.id,
                )
            )

        return {
            "messages": messages,
            "tool_results": state.get("tool_results", []) + [result.to_dict()],
            "iterations": iteration + 1,
            "tool_error": None,
        }

    async def finalize_node(self, state: AgentGraphState) -> AgentGraphState:
        if self._wants_tool(state):
            logger.warning(
                f"Agent {self.config.id} hit the tool iteration cap ({self.max_tool_iterations})"
            )
            return {"answer": ITERATIONS_EXHAUSTED_ANSWER, "iterations_exhausted": True}

        response = state.get("response")
        return {"answer": response.content if response is not None else "", "iterations_exhausted": False}

    # ==========================================================================
    # Provider calls
    # ==========================================================================
    def _chat_options(self) -> ChatOptions:
        return ChatOptions(temperature=self.config.temperature, max_tokens=self.config.max_tokens)

    async def _call_with_retry(
        self,
        provider: LLMProvider,
        messages: list[Message],
        tools: Optional[list[ToolSchema]],
    ) -> ChatResponse:
        options = self._chat_options()
        attempt = 0
        while True:
            try:
                if tools:
                    return await provider.chat_with_functions(messages, tools, options)
                return await provider.chat(messages, options)
            except ProviderError as e:
                if not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.retry_delay * (2 ** attempt)
                logger.warning(
                    f"{e.code} from {provider.backend}/{provider.model}, "
                    f"retrying in {delay:.1f}s (attempt {attempt + 1}/{self.max_retries})"
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def call_model(
        self,
        messages: list[Message],
        tools: Optional[list[ToolSchema]] = None,
    ) -> tuple[ChatResponse, str]:
        """
        Call the bound provider, falling back to the agent's fallback providers.

        Returns:
            Tuple of (response, id of the provider that answered)

        Raises:
            ConfigurationError: If the bound provider is unavailable
            CredentialError: If credentials cannot be decrypted or are rejected
            ProviderError: If every provider failed
        """
        primary = self.config.provider_id
        candidates = [primary] + [p for p in self.config.fallback_provider_ids if p != primary]

        last_error: Optional[ProviderError] = None
        for provider_id in candidates:
            try:
                provider = self.providers.get_provider(provider_id)
            except ConfigurationError as e:
                if provider_id == primary:
                    raise
                logger.warning(f"Skipping fallback provider {provider_id}: {e.message}")
                continue

            try:
                return await self._call_with_retry(provider, messages, tools), provider_id
            except ProviderError as e:
                last_error = e
                logger.warning(f"Provider {provider_id} failed for agent {self.config.id}: {e.message}")

        assert last_error is not None
        raise last_error

    async def _summarize(self, messages: list[Message]) -> str:
        prompt = SUMMARY_PROMPT.format(conversation=render_conversation(messages))
        response, _ = await self.call_model([Message(role="user", content=prompt)])
        return response.content

    # ==========================================================================
    # Execution
    # ==========================================================================
    @traced("agent.execute")
    async def execute(self, query: str, context: Optional[ExecutionContext] = None) -> AgentResponse:
        """
        Run one query end to end.

        Args:
            query: User query
            context: Optional caller context (current note, extra text, history)

        Returns:
            AgentResponse with answer, sources, usage and timings

        Raises:
            ValueError: If the query is empty
            ConfigurationError: If the agent is disabled or its provider is unusable
            CredentialError: If provider credentials cannot be used
            ProviderError: If every provider failed
            RetrievalError: If retrieval failed
        """
        if not query or not query.strip():
            raise ValueError("Query cannot be empty")
        if self.status == AgentStatus.DISABLED or not self.config.enabled:
            raise ConfigurationError(f"Agent is disabled: {self.config.id}", agent_id=self.config.id)

        async with self._lock:
            if self.status != AgentStatus.READY:
                self.initialize()

            context = context or ExecutionContext()
            history = self.memory.messages if self.memory is not None else context.conversation_history
            state = create_initial_state(query, context, history)

            self.status = AgentStatus.EXECUTING
            start_time = time.perf_counter()
            try:
                final_state = await self.graph.ainvoke(
                    state, {"recursion_limit": 2 * self.max_tool_iterations + 10}
                )
            except Exception as e:
                self.last_error = str(e)
                record_exception(e)
                raise
            finally:
                if self.status == AgentStatus.EXECUTING:
                    self.status = AgentStatus.READY
            elapsed_ms = (time.perf_counter() - start_time) * 1000

            if self.memory is not None:
                await self.memory.add(Message(role="user", content=query))
                await self.memory.add(Message(role="assistant", content=final_state["answer"]))

            self.execution_count += 1

        chunks = final_state.get("retrieved_chunks", [])
        logger.info(
            f"Agent {self.config.id} answered in {elapsed_ms:.0f}ms "
            f"({len(chunks)} chunks, {final_state.get('iterations', 0)} tool calls)"
        )
        return AgentResponse(
            answer=final_state["answer"],
            agent_id=self.config.id,
            provider_id=final_state.get("provider_id"),
            model=final_state.get("model"),
            sources=[SourceAttribution.from_retrieved(c) for c in chunks],
            retrieved_chunks=len(chunks),
            usage=final_state["usage"],
            execution_time_ms=elapsed_ms,
            tool_results=final_state.get("tool_results", []),
            node_timings=final_state.get("node_timings", {}),
            iterations_exhausted=final_state.get("iterations_exhausted", False),
        )

    def clear_memory(self) -> None:
        if self.memory is not None:
            self.memory.clear()

    def stats(self) -> dict:
        return {
            "id": self.config.id,
            "name": self.config.name,
            "status": self.status.value,
            "enabled": self.config.enabled,
            "provider_id": self.config.provider_id,
            "execution_count": self.execution_count,
            "tools_enabled": self.tool_runner is not None,
            "memory": self.memory.status() if self.memory is not None else None,
            "last_error": self.last_error,
        }
