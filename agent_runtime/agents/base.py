"""Base agent definition: a supervisor for a configured set of modules."""
from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Type

import psutil

from agent_runtime.core.errors import (
    AgentNotReadyError,
    CommandCancelled,
    CommandTimeout,
    ConfigurationError,
    NotFoundError,
    UnknownCommandError,
    ValidationError,
    error_payload,
)
from agent_runtime.core.message_bus import MessageBus
from agent_runtime.core.models import AgentConfig, AgentStatus, Command, Event, ModuleConfig, freeze_payload
from agent_runtime.core.resilience import ResilienceService
from agent_runtime.modules.base import Handler, Module, ModuleContext

DEFAULT_COMMAND_TIMEOUT = 60.0

RESTART = "restart"
RESTART_MODULE = "restart-module"
RECOVER = "recover"
RETRY_TASK = "retry-task"
USE_FALLBACK = "use-fallback"

EventCallback = Callable[[Event], Any]

_PROCESS = psutil.Process()


@dataclass
class AgentServices:
    """Shared runtime services injected into every agent."""

    bus: MessageBus
    resilience: ResilienceService = field(default_factory=ResilienceService)


@dataclass(slots=True)
class TaskSpec:
    handler: Handler
    module_id: Optional[str] = None


@dataclass(slots=True)
class _TaskRun:
    task_id: str
    task_type: Optional[str]
    workflow_id: Optional[str]
    module_id: Optional[str]
    attempt: int
    original: Dict[str, Any]
    command_id: str
    retry: bool = False


class Agent:
    """Supervises modules, dispatches commands and reports its own health."""

    def __init__(
        self,
        config: AgentConfig,
        services: AgentServices,
        module_catalog: Optional[Mapping[str, Type[Module]]] = None,
    ) -> None:
        self.config = config
        self._bus = services.bus
        self._resilience = services.resilience
        self._module_catalog: Dict[str, Type[Module]] = dict(module_catalog or {})
        self.modules: Dict[str, Module] = {}
        self.status = AgentStatus.INITIALIZING
        self._commands: Dict[str, Handler] = {}
        self._tasks: Dict[str, TaskSpec] = {}
        self._fallbacks: Dict[str, Handler] = {}
        self._event_handlers: Dict[str, List[EventCallback]] = defaultdict(list)
        self._listeners: Dict[str, List[EventCallback]] = defaultdict(list)
        self._subscription_ids: List[str] = []
        self._heartbeat_task: Optional[asyncio.Task] = None
        # Running handler task -> the delivery task awaiting it.
        self._inflight: Dict[asyncio.Task, Optional[asyncio.Task]] = {}
        self._cancelled: Set[asyncio.Task] = set()
        self._started_at = time.monotonic()
        self._command_stats: Dict[str, Dict[str, Any]] = {}
        self.logger = logging.getLogger(f"agent_runtime.agent.{config.id}")
        self.register_commands()

    @property
    def agent_id(self) -> str:
        return self.config.id

    @property
    def name(self) -> str:
        return self.config.name

    # ------------------------------------------------------------------ registration

    def register_commands(self) -> None:
        """Hook for subclasses to populate the command table."""
        return None

    def register(self, command_type: str, handler: Handler) -> None:
        self._commands[command_type] = handler

    def register_task(self, task_type: str, handler: Handler, module_id: Optional[str] = None) -> None:
        self._tasks[task_type] = TaskSpec(handler=handler, module_id=module_id)
        self._commands[task_type] = handler

    def register_fallback(self, name: str, handler: Handler) -> None:
        self._fallbacks[name] = handler

    def register_event_handler(self, event_type: str, handler: EventCallback) -> None:
        self._event_handlers[event_type].append(handler)

    def add_listener(self, event_type: str, callback: EventCallback) -> None:
        """Observe events this agent publishes, in-process; ``*`` observes all."""
        self._listeners[event_type].append(callback)

    def remove_listener(self, event_type: str, callback: EventCallback) -> None:
        if callback in self._listeners.get(event_type, []):
            self._listeners[event_type].remove(callback)

    def command_types(self) -> List[str]:
        return sorted(self._commands)

    # ------------------------------------------------------------------ lifecycle

    async def initialize(self) -> None:
        """Initialize enabled modules, wire recovery handlers and subscriptions."""
        if self.status in (AgentStatus.INITIALIZED, AgentStatus.RUNNING):
            return
        reinitializing = self.status is not AgentStatus.INITIALIZING
        self.status = AgentStatus.INITIALIZING
        self.logger.info("Initializing agent: %s", self.name)
        for module_id, module_config in self.config.modules.items():
            if not module_config.enabled:
                continue
            try:
                await self._initialize_module(module_id, module_config)
            except Exception as exc:
                self.logger.error("Failed to initialize module %s: %s", module_id, exc)
                if module_config.required:
                    self.status = AgentStatus.ERROR
                    await self._publish_failure("module_init_failure", exc, module_id)
                    if reinitializing:
                        await self._publish_status_change(AgentStatus.ERROR, str(exc))
                    raise
                self.logger.warning("Continuing without non-required module: %s", module_id)
                await self._emit(
                    "module.error",
                    {"module": module_id, "moduleId": module_id, "context": "initialize", **error_payload(exc)},
                )
        try:
            self._register_recovery_handlers()
            await self._setup_subscriptions()
        except Exception as exc:
            self.status = AgentStatus.ERROR
            await self._publish_failure("agent_init_failure", exc)
            raise
        await self.send_heartbeat()
        self.status = AgentStatus.INITIALIZED
        if reinitializing:
            await self._publish_status_change(AgentStatus.INITIALIZED)
        self._start_heartbeat()
        self.logger.info("Agent initialized: %s", self.name)

    async def start(self) -> None:
        """Start modules in configuration order, then the command consumer."""
        if self.status is AgentStatus.RUNNING:
            return
        if self.status is AgentStatus.STOPPED:
            await self.initialize()
        if self.status is not AgentStatus.INITIALIZED:
            raise AgentNotReadyError(f"Agent {self.agent_id} cannot start from state {self.status.value}")
        self.logger.info("Starting agent: %s", self.name)
        module_failure = False
        try:
            for module_id, module_config in self.config.modules.items():
                module = self.modules.get(module_id)
                if module is None:
                    continue
                try:
                    await module.start()
                except Exception as exc:
                    self.logger.error("Failed to start module %s: %s", module_id, exc)
                    if module_config.required:
                        module_failure = True
                        await self._publish_failure("module_start_failure", exc, module_id)
                        raise
                    self.logger.warning("Continuing without non-required module: %s", module_id)
            if not self._bus.is_consuming(self.agent_id):
                await self._bus.consume_commands(self.agent_id, self.handle_command)
        except Exception as exc:
            self.status = AgentStatus.ERROR
            await self._publish_status_change(AgentStatus.ERROR, str(exc))
            if not module_failure:
                await self._publish_failure("agent_start_failure", exc)
            raise
        self.status = AgentStatus.RUNNING
        self._start_heartbeat()
        await self._publish_status_change(AgentStatus.RUNNING)
        self.logger.info("Agent started: %s", self.name)

    async def stop(self) -> None:
        """Stop consuming, cancel heartbeat and in-flight work, stop modules concurrently."""
        if self.status is AgentStatus.STOPPED:
            return
        self.logger.info("Stopping agent: %s", self.name)
        self._stop_heartbeat()
        # No new deliveries may start while in-flight handlers are cancelled.
        await self._bus.stop_consuming(self.agent_id)
        await self._cancel_inflight()
        results = await asyncio.gather(
            *(self._stop_module(module_id, module) for module_id, module in self.modules.items())
        )
        failed = [module_id for module_id, ok in zip(self.modules, results) if not ok]
        if failed:
            self.logger.warning("Some modules failed to stop properly: %s", ", ".join(failed))
        await self._teardown_subscriptions()
        self.status = AgentStatus.STOPPED
        await self._publish_status_change(AgentStatus.STOPPED)
        self.logger.info("Agent stopped: %s", self.name)

    async def report_failure(
        self,
        exc: BaseException,
        *,
        category: str = "agent_failure",
        module_id: Optional[str] = None,
    ) -> None:
        """Move to ``error`` after an unhandled internal failure."""
        self.status = AgentStatus.ERROR
        await self._publish_status_change(AgentStatus.ERROR, str(exc))
        await self._publish_failure(category, exc, module_id)

    # ------------------------------------------------------------------ commands

    async def handle_command(self, command: Command) -> Dict[str, Any]:
        """Run one command and return its reply envelope; never raises."""
        loop = asyncio.get_running_loop()
        started = loop.time()
        run = self._task_run(command)
        self.logger.info("Handling command: %s (%s)", command.type, command.id)
        try:
            handler = self._commands.get(command.type)
            if handler is None:
                raise UnknownCommandError(f"Unknown command type: {command.type}")
            self._check_ready(command.type)
            timeout = command.payload.get("timeout")
            if timeout is None:
                timeout = self.config.command_timeout
            if timeout is None:
                timeout = DEFAULT_COMMAND_TIMEOUT
            result = await self._run_handler(handler, command, float(timeout))
        except Exception as exc:  # noqa: BLE001
            duration = _elapsed_ms(loop, started)
            self.logger.error(
                "Command failed: %s (%s) after %sms: %s", command.type, command.id, duration, exc
            )
            self._record_command(command.type, duration, exc)
            if run is not None:
                await self._report_task_failure(run, exc)
            else:
                await self._publish_command_failure(command, exc)
            await self.send_heartbeat()
            return {"id": command.id, "success": False, "error": str(exc), "duration": duration}
        duration = _elapsed_ms(loop, started)
        self.logger.info("Command completed: %s (%s) in %sms", command.type, command.id, duration)
        self._record_command(command.type, duration)
        if run is not None:
            await self._report_task_success(run, result)
        await self.send_heartbeat()
        return {"id": command.id, "success": True, "result": result, "duration": duration}

    def _check_ready(self, command_type: str) -> None:
        recovery = command_type.startswith("restart") or command_type.startswith("recover")
        if self.status in (AgentStatus.ERROR, AgentStatus.UNRESPONSIVE) and not recovery:
            raise AgentNotReadyError(
                f"Agent is in {self.status.value} state and cannot process command: {command_type}"
            )
        if self.status is AgentStatus.STOPPED and not (
            command_type.startswith("start") or command_type.startswith("restart")
        ):
            raise AgentNotReadyError(f"Agent is stopped and cannot process command: {command_type}")

    async def _run_handler(self, handler: Handler, command: Command, timeout: float) -> Any:
        inner = asyncio.create_task(handler(dict(command.payload)))
        self._inflight[inner] = asyncio.current_task()
        try:
            return await asyncio.wait_for(inner, timeout)
        except asyncio.TimeoutError as exc:
            if inner.cancelled() or not inner.done() or inner.exception() is None:
                raise CommandTimeout(
                    f"Command timed out after {timeout}s: {command.type}",
                    details={"timeout": timeout},
                ) from exc
            raise
        except asyncio.CancelledError:
            if inner in self._cancelled:
                raise CommandCancelled(f"Command cancelled: {command.type}") from None
            raise
        finally:
            self._inflight.pop(inner, None)
            self._cancelled.discard(inner)

    async def _cancel_inflight(self) -> None:
        """Cancel every running handler except the caller's own and wait for their envelopes."""
        current = asyncio.current_task()
        waiting: Set[asyncio.Task] = set()
        for inner, handling in list(self._inflight.items()):
            if inner is current or inner.done():
                continue
            self._cancelled.add(inner)
            inner.cancel()
            if handling is not None and handling is not current and not handling.done():
                waiting.add(handling)
        if waiting:
            await asyncio.wait(waiting, timeout=self.config.command_timeout)

    def _task_run(self, command: Command) -> Optional[_TaskRun]:
        payload = command.payload
        if command.type == RETRY_TASK:
            original = payload.get("originalData") or {}
            task_type = original.get("taskType") or original.get("type")
            spec = self._tasks.get(task_type) if task_type else None
            return _TaskRun(
                task_id=str(payload.get("taskId") or command.id),
                task_type=task_type,
                workflow_id=original.get("workflowId"),
                module_id=spec.module_id if spec else None,
                attempt=int(payload.get("attempt") or 2),
                original=original,
                command_id=command.id,
                retry=True,
            )
        spec = self._tasks.get(command.type)
        if spec is None:
            return None
        return _TaskRun(
            task_id=str(payload.get("taskId") or command.id),
            task_type=command.type,
            workflow_id=payload.get("workflowId"),
            module_id=spec.module_id,
            attempt=1,
            original={**payload, "taskType": command.type},
            command_id=command.id,
        )

    async def _report_task_success(self, run: _TaskRun, result: Any) -> None:
        if run.retry:
            await self._publish_recovery_completed("retry", {"taskId": run.task_id, "attempt": run.attempt})
        await self._emit(
            "agent.task-completed",
            {
                "agentId": self.agent_id,
                "taskId": run.task_id,
                "taskType": run.task_type,
                "workflowId": run.workflow_id,
                "moduleId": run.module_id,
                "attempt": run.attempt,
                "commandId": run.command_id,
                "result": result,
            },
        )

    async def _report_task_failure(self, run: _TaskRun, exc: BaseException) -> None:
        if run.retry:
            await self._publish_recovery_failed("retry", exc, {"taskId": run.task_id, "attempt": run.attempt})
        await self._emit(
            "agent.task-failed",
            {
                "agentId": self.agent_id,
                "taskId": run.task_id,
                "taskType": run.task_type,
                "workflowId": run.workflow_id,
                "moduleId": run.module_id,
                "attempt": run.attempt,
                "commandId": run.command_id,
                "originalData": run.original,
                **error_payload(exc),
            },
        )

    def _record_command(self, command_type: str, duration: float, exc: Optional[BaseException] = None) -> None:
        stats = self._command_stats.setdefault(
            command_type, {"count": 0, "failures": 0, "totalDuration": 0.0, "lastDuration": 0.0, "lastError": None}
        )
        stats["count"] += 1
        stats["totalDuration"] += duration
        stats["lastDuration"] = duration
        if exc is not None:
            stats["failures"] += 1
            stats["lastError"] = str(exc)

    # ------------------------------------------------------------------ recovery handlers

    def _register_recovery_handlers(self) -> None:
        self._commands[RESTART] = self._handle_restart
        self._commands[RESTART_MODULE] = self._handle_restart_module
        self._commands[RECOVER] = self._handle_recover
        self._commands[RETRY_TASK] = self._handle_retry_task
        self._commands[USE_FALLBACK] = self._handle_use_fallback

    async def _handle_restart(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        self.logger.info("Handling restart command")
        try:
            await self.stop()
            await self.initialize()
            await self.start()
        except Exception as exc:
            await self._publish_recovery_failed("restart", exc)
            raise
        await self._publish_recovery_completed("restart")
        return {"message": f"Agent {self.agent_id} restarted successfully"}

    async def _handle_restart_module(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        module_id = payload.get("moduleId")
        if not module_id:
            raise ValidationError("Module ID is required for restart-module command")
        self.logger.info("Handling restart-module command for %s", module_id)
        try:
            module = self.modules.get(module_id)
            if module is None:
                module_config = self.config.modules.get(module_id)
                if module_config is None:
                    raise NotFoundError(f"Module not found: {module_id}")
                module = await self._initialize_module(module_id, module_config)
            else:
                try:
                    await module.stop()
                except Exception as exc:  # noqa: BLE001
                    self.logger.warning("Module %s did not stop cleanly: %s", module_id, exc)
                if module.status is not AgentStatus.STOPPED:
                    await module.initialize()
            await module.start()
        except Exception as exc:
            await self._publish_recovery_failed("module_restart", exc, {"moduleId": module_id})
            raise
        await self._publish_recovery_completed("module_restart", {"moduleId": module_id})
        return {"message": f"Module {module_id} restarted successfully"}

    async def _handle_recover(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        reason = payload.get("reason") or "unknown"
        self.logger.info("Handling recover command (reason: %s)", reason)
        if self.status is AgentStatus.RUNNING:
            await self._publish_recovery_completed("recover", {"reason": reason, "noop": True})
            return {"message": "Agent is already running, no recovery needed"}
        if self.status in (AgentStatus.ERROR, AgentStatus.UNRESPONSIVE):
            return await self._handle_restart(payload)
        if self.status is AgentStatus.STOPPED:
            try:
                await self.start()
            except Exception as exc:
                await self._publish_recovery_failed("recover_from_stopped", exc)
                raise
            await self._publish_recovery_completed("recover_from_stopped")
            return {"message": f"Agent {self.agent_id} recovered from stopped state"}
        exc = AgentNotReadyError(f"Cannot recover agent from {self.status.value} state")
        await self._publish_recovery_failed("recover_invalid_state", exc, {"currentState": self.status.value})
        raise exc

    async def _handle_retry_task(self, payload: Dict[str, Any]) -> Any:
        task_id = payload.get("taskId")
        original = payload.get("originalData")
        if not task_id or not isinstance(original, dict):
            raise ValidationError("Task ID and original data are required for retry-task command")
        task_type = original.get("taskType") or original.get("type")
        spec = self._tasks.get(task_type) if task_type else None
        if spec is None:
            raise UnknownCommandError(f"Task handler not found for {task_type}")
        self.logger.info("Retrying task %s (%s), attempt %s", task_id, task_type, payload.get("attempt"))
        data = {key: value for key, value in original.items() if key != "taskType"}
        data.update(isRetry=True, retryTaskId=task_id, attempt=payload.get("attempt"))
        return await spec.handler(data)

    async def _handle_use_fallback(self, payload: Dict[str, Any]) -> Any:
        method = payload.get("fallbackMethod")
        data = payload.get("data") or {}
        if not method:
            raise ValidationError("Fallback method is required for use-fallback command")
        self.logger.info("Handling use-fallback command with method %s", method)
        details = {"fallbackMethod": method, "taskId": data.get("taskId"), "workflowId": data.get("workflowId")}
        try:
            handler = self._fallbacks.get(method)
            if handler is None:
                raise NotFoundError(f"Fallback method not found: {method}")
            result = await handler(data)
        except Exception as exc:
            await self._publish_recovery_failed("fallback_failed", exc, details)
            raise
        await self._publish_recovery_completed("fallback_used", details)
        if data.get("taskId"):
            await self._emit(
                "agent.task-completed",
                {
                    "agentId": self.agent_id,
                    "taskId": data.get("taskId"),
                    "taskType": data.get("taskType"),
                    "workflowId": data.get("workflowId"),
                    "fallbackMethod": method,
                    "result": result,
                },
            )
        return result

    # ------------------------------------------------------------------ events

    async def publish_event(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> Event:
        """Publish on the bus; local listeners see the event first."""
        event = Event(type=event_type, source=self.agent_id, payload=freeze_payload(payload))
        for callback in [*self._listeners.get(event_type, []), *self._listeners.get("*", [])]:
            try:
                result = callback(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                self.logger.exception("Local listener failed for %s", event_type)
        await self._bus.publish(event)
        return event

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> bool:
        try:
            await self.publish_event(event_type, payload)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Failed to publish %s: %s", event_type, exc)
            return False
        return True

    async def _on_event(self, event: Event) -> None:
        handlers = self._event_handlers.get(event.type)
        if not handlers:
            self.logger.debug("No handler for event %s from %s", event.type, event.source)
            return
        for handler in handlers:
            result = handler(event)
            if inspect.isawaitable(result):
                await result

    async def _setup_subscriptions(self) -> None:
        await self._teardown_subscriptions()
        for subscription in self.config.subscriptions:
            self.logger.info("Subscribing to event: %s (%s)", subscription.pattern, subscription.description)
            self._subscription_ids.append(await self._bus.subscribe(subscription.pattern, self._on_event))

    async def _teardown_subscriptions(self) -> None:
        while self._subscription_ids:
            await self._bus.unsubscribe(self._subscription_ids.pop())

    async def _publish_status_change(self, status: AgentStatus, reason: Optional[str] = None) -> None:
        await self._emit("agent.status-changed", {"agentId": self.agent_id, "status": status.value, "reason": reason})

    async def _publish_failure(self, category: str, exc: BaseException, module_id: Optional[str] = None) -> None:
        described = error_payload(exc)
        described["category"] = category
        await self._emit("agent.failed", {"agentId": self.agent_id, "moduleId": module_id, **described})

    async def _publish_command_failure(self, command: Command, exc: BaseException) -> None:
        await self._emit(
            "agent.command-failed",
            {
                "agentId": self.agent_id,
                "commandType": command.type,
                "commandId": command.id,
                "payload": command.payload,
                **error_payload(exc),
            },
        )

    async def _publish_recovery_completed(self, strategy: str, details: Optional[Dict[str, Any]] = None) -> None:
        await self._emit(
            "agent.recovery-completed",
            {"agentId": self.agent_id, "strategy": strategy, "details": details or {}},
        )

    async def _publish_recovery_failed(
        self, strategy: str, exc: BaseException, details: Optional[Dict[str, Any]] = None
    ) -> None:
        await self._emit(
            "agent.recovery-failed",
            {"agentId": self.agent_id, "strategy": strategy, "error": str(exc), "details": details or {}},
        )

    # ------------------------------------------------------------------ heartbeat

    async def send_heartbeat(self) -> bool:
        metrics: Dict[str, Any] = {
            "uptime": round(time.monotonic() - self._started_at, 3),
            "memory": _memory_usage(),
            "modules": {},
        }
        for module_id, module in self.modules.items():
            try:
                metrics["modules"][module_id] = module.get_metrics()
            except Exception as exc:  # noqa: BLE001
                self.logger.debug("Failed to get metrics from module %s: %s", module_id, exc)
                metrics["modules"][module_id] = {"error": str(exc)}
        return await self._emit(
            "agent.heartbeat",
            {"agentId": self.agent_id, "status": self.status.value, "metrics": metrics},
        )

    def _start_heartbeat(self) -> None:
        if self._heartbeat_task is not None and not self._heartbeat_task.done():
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    def _stop_heartbeat(self) -> None:
        if self._heartbeat_task is not None:
            if self._heartbeat_task is not asyncio.current_task():
                self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.heartbeat_interval)
            await self.send_heartbeat()

    # ------------------------------------------------------------------ modules

    async def _initialize_module(self, module_id: str, module_config: ModuleConfig) -> Module:
        module = self.modules.get(module_id)
        if module is None:
            module_type = module_config.type or module_id
            module_cls = self._module_catalog.get(module_type)
            if module_cls is None:
                raise ConfigurationError(f"No module registered for type '{module_type}'")
            module = module_cls(
                module_id,
                module_config,
                ModuleContext(
                    agent_id=self.agent_id,
                    publish=self.publish_event,
                    resilience=self._resilience,
                    owner_status=lambda: self.status,
                ),
            )
        await module.initialize()
        self.modules[module_id] = module
        for command_type, handler in module.commands().items():
            self.register(command_type, module.guarded(command_type, handler))
        for task_type, handler in module.tasks().items():
            self.register_task(task_type, module.guarded(task_type, handler), module_id)
        for name, handler in module.fallbacks().items():
            self.register_fallback(name, module.guarded(f"fallback:{name}", handler))
        self.logger.info("Initialized module: %s", module_id)
        return module

    async def _stop_module(self, module_id: str, module: Module) -> bool:
        try:
            await module.stop()
        except Exception as exc:  # noqa: BLE001
            self.logger.error("Failed to stop module %s: %s", module_id, exc)
            return False
        self.logger.info("Stopped module: %s", module_id)
        return True

    def get_status(self) -> Dict[str, Any]:
        modules: Dict[str, Any] = {}
        for module_id, module in self.modules.items():
            try:
                modules[module_id] = module.get_metrics()
            except Exception as exc:  # noqa: BLE001
                modules[module_id] = {"error": str(exc)}
        return {
            "id": self.agent_id,
            "name": self.name,
            "role": self.config.role,
            "status": self.status.value,
            "modules": modules,
            "uptime": round(time.monotonic() - self._started_at, 3),
            "commands": {key: dict(value) for key, value in self._command_stats.items()},
            "queueDepth": self._bus.queue_depth(self.agent_id),
        }


def _elapsed_ms(loop: asyncio.AbstractEventLoop, started: float) -> float:
    return round((loop.time() - started) * 1000.0, 3)


def _memory_usage() -> Dict[str, int]:
    info = _PROCESS.memory_info()
    return {"rss": info.rss, "vms": info.vms}
