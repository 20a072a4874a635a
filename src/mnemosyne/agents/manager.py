"""
Registry of agent configurations and their executors.
"""

import logging
import time
from typing import Any, Callable, Optional

from mnemosyne.agents.executor import AgentExecutor
from mnemosyne.agents.models import (
    DEFAULT_AGENT_ID,
    AgentConfig,
    AgentResponse,
    AgentStatus,
    ExecutionContext,
    create_default_agent,
    validate_agent_config,
)
from mnemosyne.agents.templates import AGENT_TEMPLATES, get_template, recommend_template
from mnemosyne.agents.tools import ToolBackend
from mnemosyne.errors import ConfigurationError
from mnemosyne.llm.manager import ProviderManager
from mnemosyne.notifications import NotificationSink, notify
from mnemosyne.retrieval.retriever import Retriever

logger = logging.getLogger(__name__)


class AgentManager:
    """
    Holds agent configurations and binds them to live executors.

    Configuration changes are reported through on_change so the owner can
    persist them.
    """

    def __init__(
        self,
        configs: list[AgentConfig],
        providers: ProviderManager,
        retriever: Optional[Retriever] = None,
        tool_backend: Optional[ToolBackend] = None,
        notifier: Optional[NotificationSink] = None,
        on_change: Optional[Callable[[list[AgentConfig]], None]] = None,
    ) -> None:
        self.providers = providers
        self.retriever = retriever
        self.tool_backend = tool_backend
        self.notifier = notifier
        self.on_change = on_change
        self._configs: dict[str, AgentConfig] = {c.id: c for c in configs}
        self._executors: dict[str, AgentExecutor] = {}
        self._errors: dict[str, list[str]] = {}
        self.initialized = False

    # ==========================================================================
    # Lifecycle
    # ==========================================================================
    def initialize(self) -> None:
        """
        Validate every agent and build executors for the valid ones.

        Creates the permanent default agent, bound to the first provider,
        when no agents exist.
        """
        if not self._configs:
            provider_configs = self.providers.list_configs()
            if provider_configs:
                default = create_default_agent(provider_configs[0].id)
                self._configs[default.id] = default
                logger.info(f"Created default agent bound to provider {default.provider_id}")
                self._changed()

        self._executors.clear()
        self._errors.clear()
        for agent_id in self._configs:
            self._load(agent_id)
        self.initialized = True
        logger.info(f"Initialized {len(self._executors)}/{len(self._configs)} agents")

    def _provider_map(self) -> dict:
        return {c.id: c for c in self.providers.list_configs()}

    def _load(self, agent_id: str) -> None:
        self._executors.pop(agent_id, None)
        self._errors.pop(agent_id, None)
        config = self._configs[agent_id]
        try:
            validate_agent_config(config, self._provider_map())
            executor = AgentExecutor(config, self.providers, self.retriever, self.tool_backend)
            executor.initialize()
        except ConfigurationError as e:
            self._errors[agent_id] = e.problems or [e.message]
            logger.warning(f"Agent {agent_id} is not available: {e.message}")
            notify(self.notifier, f"Agent '{config.name or agent_id}' has a configuration error: {e.message}")
            return
        self._executors[agent_id] = executor

    def reload_agent(self, agent_id: str) -> None:
        if agent_id not in self._configs:
            raise ConfigurationError(f"Agent not found: {agent_id}", agent_id=agent_id)
        self._load(agent_id)

    def is_ready(self) -> bool:
        return self.initialized and any(e.is_ready for e in self._executors.values())

    def _changed(self) -> None:
        if self.on_change is not None:
            self.on_change(list(self._configs.values()))

    # ==========================================================================
    # Configuration
    # ==========================================================================
    def add_agent(self, config: AgentConfig) -> AgentConfig:
        """
        Validate and register a new agent.

        Raises:
            ConfigurationError: If the id is taken or the configuration is invalid
        """
        if config.id in self._configs:
            raise ConfigurationError(f"Agent already exists: {config.id}", agent_id=config.id)
        validate_agent_config(config, self._provider_map())
        self._configs[config.id] = config
        if self.initialized:
            self._load(config.id)
        self._changed()
        logger.info(f"Added agent {config.id}")
        return config

    def create_from_template(
        self,
        template_id: str,
        agent_id: str,
        provider_id: str,
        **overrides: Any,
    ) -> AgentConfig:
        """
        Register a new agent built from a built-in template.

        Raises:
            ConfigurationError: If the template is unknown or the agent is invalid
        """
        template = get_template(template_id)
        if template is None:
            raise ConfigurationError(f"Template not found: {template_id}", template_id=template_id)
        return self.add_agent(template.to_config(agent_id, provider_id, **overrides))

    def update_agent(self, agent_id: str, **changes: Any) -> AgentConfig:
        """
        Apply field changes to an agent and re-validate it.

        Raises:
            ConfigurationError: If the agent is unknown or the result is invalid
        """
        current = self._configs.get(agent_id)
        if current is None:
            raise ConfigurationError(f"Agent not found: {agent_id}", agent_id=agent_id)
        changes.pop("id", None)
        updated = current.model_copy(update={**changes, "updated_at": time.time()})
        updated = AgentConfig.model_validate(updated.model_dump())
        validate_agent_config(updated, self._provider_map())
        self._configs[agent_id] = updated
        if self.initialized:
            self._load(agent_id)
        self._changed()
        return updated

    def delete_agent(self, agent_id: str) -> None:
        """
        Raises:
            ConfigurationError: If the agent is unknown or permanent
        """
        config = self._configs.get(agent_id)
        if config is None:
            raise ConfigurationError(f"Agent not found: {agent_id}", agent_id=agent_id)
        if config.is_permanent:
            raise ConfigurationError(
                f"Agent '{agent_id}' is permanent and can only be disabled", agent_id=agent_id
            )
        del self._configs[agent_id]
        self._executors.pop(agent_id, None)
        self._errors.pop(agent_id, None)
        self._changed()
        logger.info(f"Deleted agent {agent_id}")

    def toggle_agent(self, agent_id: str, enabled: Optional[bool] = None) -> bool:
        """
        Enable or disable an agent (flip when enabled is None).

        Returns:
            The new enabled state

        Raises:
            ConfigurationError: If the agent is unknown, or cannot be enabled
                because its provider is unusable (the agent stays disabled)
        """
        config = self._configs.get(agent_id)
        if config is None:
            raise ConfigurationError(f"Agent not found: {agent_id}", agent_id=agent_id)
        previous = config.enabled
        config.enabled = (not previous) if enabled is None else enabled
        executor = self._executors.get(agent_id)
        if executor is not None:
            try:
                executor.set_enabled(config.enabled)
            except ConfigurationError:
                config.enabled = previous
                executor.set_enabled(previous)
                raise
        config.updated_at = time.time()
        if executor is None and self.initialized:
            self._load(agent_id)
        self._changed()
        return config.enabled

    # ==========================================================================
    # Lookup
    # ==========================================================================
    def get_agent(self, agent_id: str) -> Optional[AgentConfig]:
        return self._configs.get(agent_id)

    def get_executor(self, agent_id: str) -> AgentExecutor:
        """
        Raises:
            ConfigurationError: If the agent is unknown or failed validation
        """
        if agent_id not in self._configs:
            raise ConfigurationError(f"Agent not found: {agent_id}", agent_id=agent_id)
        executor = self._executors.get(agent_id)
        if executor is None:
            problems = self._errors.get(agent_id, ["not initialized"])
            raise ConfigurationError(
                f"Agent '{agent_id}' is not available: {'; '.join(problems)}",
                problems=problems,
                agent_id=agent_id,
            )
        return executor

    def list_agents(self) -> list[dict[str, Any]]:
        agents = []
        for config in self._configs.values():
            executor = self._executors.get(config.id)
            if executor is not None:
                status = executor.status
            else:
                status = AgentStatus.ERROR if config.id in self._errors else AgentStatus.UNINITIALIZED
            agents.append(
                {
                    "id": config.id,
                    "name": config.name,
                    "description": config.description,
                    "enabled": config.enabled,
                    "status": status.value,
                    "capabilities": list(config.capabilities),
                }
            )
        return agents

    def find_by_capability(self, capability: str) -> list[AgentConfig]:
        """Enabled agents carrying an exact capability tag."""
        return [c for c in self._configs.values() if c.enabled and capability in c.capabilities]

    def route(self, query: str, capability: Optional[str] = None) -> AgentConfig:
        """
        Choose the agent that should answer a query.

        Without an explicit capability, one is inferred from the query with
        the template keyword rules. The first ready agent carrying the
        capability wins; otherwise the default agent answers.

        Raises:
            ConfigurationError: If neither a specialist nor the default agent is ready
        """
        if capability is None:
            capability = AGENT_TEMPLATES[recommend_template(query)].capabilities[0]
        for config in self.find_by_capability(capability):
            executor = self._executors.get(config.id)
            if executor is not None and executor.is_ready:
                return config

        default = self._executors.get(DEFAULT_AGENT_ID)
        if default is not None and default.is_ready:
            logger.info(f"No ready agent for capability '{capability}', using the default agent")
            return default.config
        raise ConfigurationError(f"No ready agent for capability: {capability}", capability=capability)

    # ==========================================================================
    # Execution
    # ==========================================================================
    async def execute_agent(
        self,
        agent_id: str,
        query: str,
        context: Optional[ExecutionContext] = None,
    ) -> AgentResponse:
        return await self.get_executor(agent_id).execute(query, context)

    async def delegate(
        self,
        query: str,
        capability: Optional[str] = None,
        context: Optional[ExecutionContext] = None,
    ) -> AgentResponse:
        """Route a query to a specialist agent and run it there."""
        config = self.route(query, capability)
        logger.info(f"Delegating query to agent {config.id}")
        return await self.execute_agent(config.id, query, context)

    def stats(self) -> dict[str, Any]:
        return {
            "total_agents": len(self._configs),
            "enabled_agents": sum(1 for c in self._configs.values() if c.enabled),
            "ready_agents": sum(1 for e in self._executors.values() if e.is_ready),
            "agents": [e.stats() for e in self._executors.values()],
            "errors": dict(self._errors),
        }
