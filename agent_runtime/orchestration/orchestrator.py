"""Orchestrator responsible for wiring runtime services and supervising agents."""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Type

from agent_runtime.agents.base import Agent, AgentServices
from agent_runtime.config import Config, RuntimeDocument
from agent_runtime.core.errors import ConfigurationError, NotFoundError
from agent_runtime.core.message_bus import MessageBus
from agent_runtime.core.models import AgentConfig, AgentStatus
from agent_runtime.core.resilience import ResilienceService
from agent_runtime.modules.base import Module
from agent_runtime.services.error_handler import ErrorHandler
from agent_runtime.services.error_store import ErrorStore
from agent_runtime.services.recovery import RecoveryController

logger = logging.getLogger(__name__)


class Orchestrator:
    """Runtime root: bus, error handler, recovery controller, then agents."""

    def __init__(
        self,
        *,
        config: Optional[Config] = None,
        document: Optional[RuntimeDocument] = None,
        agent_catalog: Mapping[str, Type[Agent]],
        module_catalog: Optional[Mapping[str, Type[Module]]] = None,
        bus: Optional[MessageBus] = None,
        error_store: Optional[ErrorStore] = None,
    ) -> None:
        self.config = config or Config()
        self.document = document or RuntimeDocument()
        self._agent_catalog: Dict[str, Type[Agent]] = dict(agent_catalog)
        self._module_catalog: Dict[str, Type[Module]] = dict(module_catalog or {})
        self.bus = bus or MessageBus(self.config.bus)
        policies = {"default": self.config.retry, **self.document.policies()}
        self.resilience = ResilienceService(policies)
        tuning = self.document.error_handler
        self.error_handler = ErrorHandler(
            self.bus,
            error_store,
            check_interval=tuning.check_interval,
            window=tuning.window_size,
            error_threshold=tuning.error_threshold,
            pattern_cooldown=tuning.pattern_cooldown,
        )
        recovery = self.document.recovery
        self.recovery = RecoveryController(
            self.bus,
            policies=policies,
            max_retries=recovery.max_retries,
            max_recovery_attempts=recovery.max_recovery_attempts,
            history_size=recovery.history_size,
            heartbeat_timeout=recovery.heartbeat_timeout,
            recovery_timeout=recovery.recovery_timeout,
        )
        self.recovery.register_strategies(self.document.strategy_entries())
        self._agents: Dict[str, Agent] = {}
        self._lock = asyncio.Lock()
        self._started = False

    @property
    def services(self) -> AgentServices:
        return AgentServices(bus=self.bus, resilience=self.resilience)

    async def start(self) -> None:
        """Bring services up in dependency order, then every configured agent."""
        if self._started:
            return
        await self.bus.connect()
        await self.error_handler.start()
        await self.recovery.start()
        self._started = True
        for agent_config in self.document.agent_configs(self.config):
            try:
                await self.spawn_agent(agent_config)
            except Exception as exc:  # noqa: BLE001
                logger.error("Agent %s failed to start: %s", agent_config.id, exc)
        logger.info("Runtime started with %s agent(s)", len(self._agents))

    async def spawn_agent(self, config: AgentConfig) -> Agent:
        """Create, initialize and start an agent based on the provided configuration.

        The agent stays registered when it fails to come up so that operators
        can inspect it and restart it.
        """
        agent_cls = self._resolve_agent_class(config.role)
        async with self._lock:
            if config.id in self._agents:
                raise ConfigurationError(f"Agent {config.id} already exists")
            agent = agent_cls(config, self.services, self._module_catalog)
            self._agents[config.id] = agent
        await agent.initialize()
        await agent.start()
        return agent

    async def terminate_agent(self, agent_id: str) -> bool:
        """Stop and remove an agent from the orchestrator."""
        async with self._lock:
            agent = self._agents.pop(agent_id, None)
        if agent is None:
            return False
        await agent.stop()
        return True

    async def restart_agent(self, agent_id: str) -> Agent:
        """Operator restart; works even when the agent has no command consumer."""
        agent = self._require(agent_id)
        logger.info("Restarting agent %s on operator request", agent_id)
        await agent.stop()
        await agent.initialize()
        await agent.start()
        return agent

    def list_agents(self) -> Iterable[Agent]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> Optional[Agent]:
        return self._agents.get(agent_id)

    async def dispatch(
        self,
        agent_id: str,
        command_type: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        source: str = "operator",
        wait: bool = False,
        timeout: Optional[float] = None,
    ) -> Any:
        """Publish a command to ``agent_id``; with ``wait`` return its reply envelope."""
        agent = self._require(agent_id)
        if wait:
            return await self.bus.request(
                agent_id,
                command_type,
                payload,
                source=source,
                timeout=timeout or agent.config.command_timeout,
            )
        return await self.bus.publish_command(agent_id, command_type, payload, source=source, timeout=timeout)

    async def terminate_all(self) -> None:
        """Shutdown every agent currently managed by the orchestrator."""
        async with self._lock:
            agents = list(self._agents.values())
            self._agents.clear()
        results = await asyncio.gather(*(agent.stop() for agent in agents), return_exceptions=True)
        for agent, result in zip(agents, results):
            if isinstance(result, BaseException):
                logger.error("Agent %s failed to stop: %s", agent.agent_id, result)

    async def shutdown(self, step_timeout: float = 10.0) -> Dict[str, str]:
        """Stop in reverse startup order; a step that overruns is reported and skipped."""
        steps: List[tuple[str, Callable[[], Awaitable[Any]]]] = [
            ("agents", self.terminate_all),
            ("recovery", self.recovery.stop),
            ("error_handler", self.error_handler.stop),
            ("bus", self.bus.shutdown),
        ]
        report: Dict[str, str] = {}
        for name, step in steps:
            try:
                await asyncio.wait_for(step(), step_timeout)
            except asyncio.TimeoutError:
                logger.warning("Shutdown step %s exceeded %.1fs, continuing", name, step_timeout)
                report[name] = "timeout"
            except Exception as exc:  # noqa: BLE001
                logger.error("Shutdown step %s failed: %s", name, exc)
                report[name] = f"error: {exc}"
            else:
                report[name] = "ok"
        self._started = False
        logger.info("Runtime shut down: %s", report)
        return report

    async def run(self, stop_event: asyncio.Event, step_timeout: float = 10.0) -> Dict[str, str]:
        """Start, wait for the cancellation signal, then shut down."""
        await self.start()
        try:
            await stop_event.wait()
        finally:
            report = await asyncio.shield(self.shutdown(step_timeout))
        return report

    def health(self) -> Dict[str, Any]:
        statuses = [agent.status for agent in self._agents.values()]
        healthy = self.bus.is_connected and all(
            status in (AgentStatus.RUNNING, AgentStatus.INITIALIZED) for status in statuses
        )
        return {
            "status": "ok" if healthy else "degraded",
            "environment": self.config.environment,
            "bus": self.bus.status(),
            "agents": {agent.agent_id: agent.status.value for agent in self._agents.values()},
            "circuits": self.resilience.breaker_states(),
            "recovery": self.recovery.status(),
        }

    def _require(self, agent_id: str) -> Agent:
        agent = self._agents.get(agent_id)
        if agent is None:
            raise NotFoundError(f"Unknown agent: {agent_id}")
        return agent

    def _resolve_agent_class(self, role: str) -> Type[Agent]:
        if role not in self._agent_catalog:
            raise ConfigurationError(f"No agent registered for role '{role}'")
        return self._agent_catalog[role]
