"""Agent configuration, execution and tools."""

from mnemosyne.agents.executor import AgentExecutor
from mnemosyne.agents.manager import AgentManager
from mnemosyne.agents.memory import ConversationMemory
from mnemosyne.agents.models import (
    AgentConfig,
    AgentResponse,
    AgentStatus,
    ExecutionContext,
    RetrievalSettings,
    SourceAttribution,
    validate_agent_config,
)
from mnemosyne.agents.templates import AGENT_TEMPLATES, AgentTemplate, get_template, recommend_template
from mnemosyne.agents.tools import ScopeConstraints, ToolResult, ToolRunner

__all__ = [
    "AGENT_TEMPLATES",
    "AgentConfig",
    "AgentExecutor",
    "AgentManager",
    "AgentResponse",
    "AgentStatus",
    "AgentTemplate",
    "ConversationMemory",
    "ExecutionContext",
    "get_template",
    "recommend_template",
    "RetrievalSettings",
    "ScopeConstraints",
    "SourceAttribution",
    "ToolResult",
    "ToolRunner",
    "validate_agent_config",
]
