"""Base module definition: a scoped unit of work owned by one agent."""
from __future__ import annotations

import abc
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, TypeVar

from agent_runtime.core.errors import CircuitOpenError, ModuleStateError, categorize
from agent_runtime.core.models import AgentStatus, ModuleConfig
from agent_runtime.core.resilience import ResilienceService

T = TypeVar("T")

Handler = Callable[[Dict[str, Any]], Awaitable[Any]]
Publish = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class ModuleContext:
    """Services handed to a module by its owning agent."""

    agent_id: str
    publish: Publish
    resilience: ResilienceService
    owner_status: Callable[[], AgentStatus] = lambda: AgentStatus.RUNNING


class Module(abc.ABC):
    """Abstract module with an enforced lifecycle and overridable hooks."""

    ACTIVITY_LOG_SIZE = 100

    def __init__(self, module_id: str, config: ModuleConfig, context: ModuleContext) -> None:
        self.module_id = module_id
        self.config = config
        self.settings: Dict[str, Any] = dict(config.settings)
        self.context = context
        self.status = AgentStatus.INITIALIZING
        self.last_activity: Optional[float] = None
        self._activity: Deque[Dict[str, Any]] = deque(maxlen=self.ACTIVITY_LOG_SIZE)
        self.logger = logging.getLogger(f"agent_runtime.module.{context.agent_id}.{module_id}")

    @property
    def agent_id(self) -> str:
        return self.context.agent_id

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> None:
        if self.status in (AgentStatus.INITIALIZED, AgentStatus.RUNNING):
            return
        if not self.config.enabled:
            raise ModuleStateError(f"Module {self.module_id} is not enabled")
        self.logger.info("Initializing module: %s", self.module_id)
        try:
            self.validate_settings()
            await self._initialize()
        except Exception:
            self.status = AgentStatus.ERROR
            self.logger.exception("Failed to initialize module %s", self.module_id)
            raise
        self.status = AgentStatus.INITIALIZED
        self.log_activity("initialized")
        await self._emit("module.initialized")

    async def start(self) -> None:
        if self.status is AgentStatus.RUNNING:
            return
        if self.status not in (AgentStatus.INITIALIZED, AgentStatus.STOPPED):
            raise ModuleStateError(
                f"Cannot start module {self.module_id} from state {self.status.value}"
            )
        owner = self.context.owner_status()
        if owner not in (AgentStatus.INITIALIZED, AgentStatus.RUNNING):
            raise ModuleStateError(
                f"Cannot start module {self.module_id} while agent is {owner.value}"
            )
        try:
            await self._start()
        except Exception:
            self.status = AgentStatus.ERROR
            self.logger.exception("Failed to start module %s", self.module_id)
            raise
        self.status = AgentStatus.RUNNING
        self.log_activity("started")
        await self._emit("module.started")

    async def stop(self) -> None:
        if self.status is AgentStatus.STOPPED:
            return
        try:
            await self._stop()
        except Exception:
            self.status = AgentStatus.ERROR
            self.logger.exception("Failed to stop module %s", self.module_id)
            raise
        self.status = AgentStatus.STOPPED
        self.log_activity("stopped")
        await self._emit("module.stopped")

    @abc.abstractmethod
    async def _initialize(self) -> None:
        """Module-specific initialization."""

    async def _start(self) -> None:
        return None

    async def _stop(self) -> None:
        return None

    def validate_settings(self) -> None:
        """Raise ``ValidationError`` when settings are unusable."""
        return None

    # ------------------------------------------------------------------ operations

    def commands(self) -> Dict[str, Handler]:
        """Plain commands this module contributes to its agent."""
        return {}

    def tasks(self) -> Dict[str, Handler]:
        """Task commands: they report task events and can be retried."""
        return {}

    def fallbacks(self) -> Dict[str, Handler]:
        """Fallback implementations reachable through ``use-fallback``."""
        return {}

    # ------------------------------------------------------------------ helpers

    def log_activity(self, activity: str, **data: Any) -> None:
        self.last_activity = time.time()
        self._activity.append({"activity": activity, "timestamp": self.last_activity, **data})
        self.logger.debug("%s %s", activity, data or "")

    def recent_activity(self) -> list:
        return list(self._activity)

    async def handle_error(self, exc: BaseException, context: str, rethrow: bool = True) -> None:
        """Log, record and publish ``exc``; the module moves to ``error``."""
        _, category, code, _ = categorize(exc)
        self.logger.error("Error in %s: %s", context, exc)
        self.log_activity("error", context=context, error=str(exc), category=category)
        self.status = AgentStatus.ERROR
        await self._emit(
            "module.error",
            {
                "module": self.module_id,
                "context": context,
                "error": str(exc),
                "category": category,
                "code": code,
            },
        )
        if rethrow:
            raise exc

    def guarded(self, context: str, handler: Handler) -> Handler:
        """Wrap ``handler`` so its failures pass through ``handle_error`` before reaching the agent.

        Cancellation is not a module failure and propagates untouched.
        """

        async def run(payload: Dict[str, Any]) -> Any:
            try:
                return await handler(payload)
            except Exception as exc:
                await self.handle_error(exc, context, rethrow=False)
                raise

        return run

    def is_service_available(self, service: str) -> bool:
        try:
            self.context.resilience.check_circuit_breaker(service)
        except CircuitOpenError:
            return False
        return True

    async def call_service(
        self,
        service: str,
        operation: Callable[[], Awaitable[T]],
        policy: str = "default",
    ) -> T:
        """Call an external dependency through its circuit breaker."""
        return await self.context.resilience.execute_with_retry(operation, policy, service=service)

    def metrics(self) -> Dict[str, Any]:
        """Module-specific metrics merged into ``get_metrics``."""
        return {}

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "lastActivity": self.last_activity,
            "activityCount": len(self._activity),
            **self.metrics(),
        }

    async def _emit(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> None:
        body = {"agentId": self.agent_id, "moduleId": self.module_id, "status": self.status.value}
        body.update(payload or {})
        try:
            await self.context.publish(event_type, body)
        except Exception:  # noqa: BLE001
            self.logger.exception("Failed to publish %s", event_type)
