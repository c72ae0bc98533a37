"""Recovery controller: picks a strategy per failure and drives it through commands."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import deque
from typing import Any, Callable, Deque, Dict, Iterable, List, Optional, Set, Tuple

from agent_runtime.core.errors import NON_RETRYABLE_CATEGORIES, RETRYABLE_CATEGORIES, ValidationError
from agent_runtime.core.message_bus import MessageBus
from agent_runtime.core.models import DeadLetterEntry, Event, RecoveryStrategy, StrategyEntry, utcnow
from agent_runtime.core.resilience import DEFAULT_POLICIES, RetryPolicy

logger = logging.getLogger(__name__)

SOURCE = "recovery-controller"

# Window used to count agent-level recoveries per category.
RECOVERY_ATTEMPT_WINDOW = 3600.0


class RecoveryController:
    """Consumes agent failure events and sends recovery commands back."""

    def __init__(
        self,
        bus: MessageBus,
        *,
        retry_policy: Optional[RetryPolicy] = None,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        max_retries: Optional[int] = None,
        max_recovery_attempts: int = 3,
        history_size: int = 100,
        heartbeat_timeout: float = 90.0,
        recovery_timeout: float = 300.0,
        watchdog_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ) -> None:
        self._bus = bus
        self._policies: Dict[str, RetryPolicy] = dict(DEFAULT_POLICIES)
        self._policies.update(policies or {})
        if retry_policy is not None:
            self._policies["default"] = retry_policy
        self.max_retries = max_retries
        self.max_recovery_attempts = max_recovery_attempts
        self.history_size = history_size
        self.heartbeat_timeout = heartbeat_timeout
        self.recovery_timeout = recovery_timeout
        self.watchdog_interval = watchdog_interval or max(heartbeat_timeout / 3.0, 0.01)
        self._clock = clock
        self._sleep = sleep
        self._strategies: Dict[Tuple[Optional[str], Optional[str], str], StrategyEntry] = {}
        self._in_progress: Dict[str, float] = {}
        self._history: Dict[str, Deque[Dict[str, Any]]] = {}
        self._dead_letters: Dict[str, DeadLetterEntry] = {}
        self._last_heartbeat: Dict[str, float] = {}
        self._unresponsive: Set[str] = set()
        self._pending: Set[asyncio.Task] = set()
        self._subscription: Optional[str] = None
        self._watchdog: Optional[asyncio.Task] = None

    # ------------------------------------------------------------------ lifecycle

    async def start(self) -> None:
        if self._subscription is not None:
            return
        # One subscription keeps per-agent event order intact.
        self._subscription = await self._bus.subscribe("*.agent.*", self._on_agent_event, internal=True)
        self._watchdog = asyncio.create_task(self._watchdog_loop())
        logger.info("Recovery controller started with %s strategies", len(self._strategies))

    async def stop(self) -> None:
        if self._subscription is not None:
            await self._bus.unsubscribe(self._subscription)
            self._subscription = None
        tasks = [task for task in [self._watchdog, *self._pending] if task is not None]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._watchdog = None
        self._pending.clear()
        logger.info("Recovery controller stopped")

    # ------------------------------------------------------------------ strategies

    def register_strategy(
        self,
        category: str,
        strategy: RecoveryStrategy | str,
        agent_id: Optional[str] = None,
        module_id: Optional[str] = None,
        config: Optional[Dict[str, Any]] = None,
    ) -> StrategyEntry:
        entry = StrategyEntry(
            category=category,
            strategy=RecoveryStrategy(strategy),
            agent_id=None if agent_id in (None, "*") else agent_id,
            module_id=None if module_id in (None, "*") else module_id,
            config=dict(config or {}),
        )
        if entry.module_id is not None and entry.agent_id is None:
            raise ValidationError("A module-scoped strategy also needs an agent id")
        self._strategies[entry.key] = entry
        logger.info(
            "Registered recovery strategy %s for %s:%s:%s",
            entry.strategy.value,
            entry.agent_id or "*",
            entry.module_id or "*",
            category,
        )
        return entry

    def register_strategies(self, entries: Iterable[StrategyEntry]) -> None:
        for entry in entries:
            self.register_strategy(entry.category, entry.strategy, entry.agent_id, entry.module_id, entry.config)

    def get_strategy(self, agent_id: Optional[str], module_id: Optional[str], category: str) -> StrategyEntry:
        """Most specific entry for the failure, falling back to the built-in default."""
        for key in ((agent_id, module_id, category), (agent_id, None, category), (None, None, category)):
            entry = self._strategies.get(key)
            if entry is not None:
                return entry
        default = RecoveryStrategy.RETRY if category in RETRYABLE_CATEGORIES else RecoveryStrategy.DEAD_LETTER
        return StrategyEntry(category=category, strategy=default)

    def should_retry_task(self, agent_id: Optional[str], module_id: Optional[str], category: str) -> bool:
        if category in NON_RETRYABLE_CATEGORIES:
            return False
        if category in RETRYABLE_CATEGORIES:
            return True
        for key in ((agent_id, module_id, category), (agent_id, None, category), (None, None, category)):
            if key in self._strategies:
                return True
        return False

    def get_policy(self, name: Optional[str] = None) -> RetryPolicy:
        return self._policies.get(name or "default") or self._policies["default"]

    # ------------------------------------------------------------------ failures

    async def _on_agent_event(self, event: Event) -> None:
        if event.source == SOURCE:
            return
        payload = event.payload
        agent_id = payload.get("agentId") or event.source
        if event.type == "agent.failed":
            await self.handle_agent_failure(payload)
        elif event.type == "agent.task-failed":
            await self.handle_task_failure(payload)
        elif event.type in ("agent.recovery-completed", "agent.recovery-failed"):
            self._finish(agent_id, event.type, payload)
        elif event.type == "agent.heartbeat":
            self._last_heartbeat[agent_id] = self._clock()
            self._unresponsive.discard(agent_id)
        elif event.type == "agent.status-changed" and payload.get("status") == "stopped":
            self._last_heartbeat.pop(agent_id, None)

    async def handle_agent_failure(self, failure: Dict[str, Any]) -> Optional[StrategyEntry]:
        agent_id = failure.get("agentId")
        category = failure.get("category") or "internal"
        module_id = failure.get("moduleId")
        logger.info("Handling agent failure for %s (%s): %s", agent_id, category, failure.get("error"))
        if not agent_id or self.is_recovering(agent_id):
            logger.info("Recovery already in progress for agent %s", agent_id)
            return None
        recent = [
            item
            for item in self._history.get(agent_id, ())
            if item["kind"] == "agent"
            and item["category"] == category
            and self._clock() - item["at"] <= RECOVERY_ATTEMPT_WINDOW
        ]
        if len(recent) >= self.max_recovery_attempts:
            logger.warning("Max recovery attempts exceeded for agent %s", agent_id)
            entry = StrategyEntry(category=category, strategy=RecoveryStrategy.DEAD_LETTER, agent_id=agent_id)
        else:
            entry = self.get_strategy(agent_id, module_id, category)
        await self.apply_strategy(entry, failure, kind="agent")
        return entry

    async def handle_task_failure(self, failure: Dict[str, Any]) -> Optional[StrategyEntry]:
        """Retry, reroute or dead-letter one failed task.

        Task failures are never dropped because the agent is busy recovering
        something else: each ``(agent, taskId)`` runs its own retry sequence
        and always ends in completion or the dead-letter queue.
        """
        agent_id = failure.get("agentId")
        category = failure.get("category") or "internal"
        module_id = failure.get("moduleId")
        logger.info(
            "Handling task failure for %s (task %s, workflow %s): %s",
            agent_id,
            failure.get("taskId"),
            failure.get("workflowId"),
            failure.get("error"),
        )
        if not agent_id:
            logger.warning("Ignoring task failure without an agent id: %s", failure.get("taskId"))
            return None
        if not self.should_retry_task(agent_id, module_id, category):
            if failure.get("workflowId"):
                logger.warning(
                    "Task %s cannot be retried, failing workflow %s", failure.get("taskId"), failure["workflowId"]
                )
                await self._emit(
                    "workflow.failed",
                    {
                        "workflowId": failure["workflowId"],
                        "taskId": failure.get("taskId"),
                        "category": category,
                        "agentId": agent_id,
                        "error": failure.get("error"),
                    },
                )
            entry = StrategyEntry(category=category, strategy=RecoveryStrategy.DEAD_LETTER, agent_id=agent_id)
        else:
            entry = self.get_strategy(agent_id, module_id, category)
        await self.apply_strategy(entry, failure, kind="task")
        return entry

    async def apply_strategy(self, entry: StrategyEntry, failure: Dict[str, Any], kind: str = "agent") -> None:
        """Send the recovery command for ``entry``; ``failure`` is the failure event payload."""
        agent_id = failure["agentId"]
        strategy = entry.strategy
        attempt = int(failure.get("attempt") or 1)
        if strategy is RecoveryStrategy.RETRY and kind == "task" and attempt >= self._attempt_limit(entry):
            logger.warning("Retries exhausted for task %s on %s after %s attempts", failure.get("taskId"), agent_id, attempt)
            strategy = RecoveryStrategy.DEAD_LETTER
        logger.info("Applying recovery strategy for %s: %s", agent_id, strategy.value)
        progress = _progress_key(agent_id, failure.get("taskId"), kind, strategy)
        self._in_progress[progress] = self._clock()
        self._record(agent_id, kind, strategy, failure, attempt)
        try:
            if strategy is RecoveryStrategy.RETRY:
                if kind == "task":
                    await self._schedule_retry(entry, failure, attempt, progress)
                else:
                    await self._send(agent_id, "recover", {"reason": failure.get("category")})
            elif strategy is RecoveryStrategy.RESTART:
                await self._send(agent_id, "restart", {"reason": failure.get("category")})
                await self._resend_task(entry, failure, attempt, kind)
            elif strategy is RecoveryStrategy.RESTART_MODULE:
                module_id = entry.config.get("moduleId") or failure.get("moduleId")
                if module_id:
                    await self._send(agent_id, "restart-module", {"moduleId": module_id})
                else:
                    await self._send(agent_id, "restart", {"reason": failure.get("category")})
                await self._resend_task(entry, failure, attempt, kind)
            elif strategy is RecoveryStrategy.FALLBACK:
                data = dict(failure.get("originalData") or {})
                for field in ("taskId", "workflowId", "taskType"):
                    if failure.get(field) is not None:
                        data.setdefault(field, failure[field])
                await self._send(
                    agent_id,
                    "use-fallback",
                    {"fallbackMethod": entry.config.get("fallbackMethod") or failure.get("taskType"), "data": data},
                )
            elif strategy is RecoveryStrategy.SKIP:
                self._in_progress.pop(progress, None)
                if failure.get("workflowId"):
                    await self._emit(
                        "workflow.failed",
                        {
                            "workflowId": failure["workflowId"],
                            "taskId": failure.get("taskId"),
                            "category": failure.get("category"),
                            "agentId": agent_id,
                            "reason": "skipped",
                        },
                    )
            else:
                self._in_progress.pop(progress, None)
                await self._dead_letter(failure, attempt, kind)
        except Exception:
            self._in_progress.pop(progress, None)
            logger.exception("Failed to apply %s for agent %s", strategy.value, agent_id)
            raise
        await self._emit(
            "recovery.strategy-applied",
            {
                "agentId": agent_id,
                "moduleId": failure.get("moduleId"),
                "taskId": failure.get("taskId"),
                "category": failure.get("category"),
                "strategy": strategy.value,
                "attempt": attempt,
            },
        )

    def _attempt_limit(self, entry: StrategyEntry) -> int:
        if "maxRetries" in entry.config:
            return int(entry.config["maxRetries"]) + 1
        if self.max_retries is not None:
            return self.max_retries + 1
        return self.get_policy(entry.config.get("policy")).attempts

    async def _schedule_retry(
        self, entry: StrategyEntry, failure: Dict[str, Any], attempt: int, progress: str
    ) -> None:
        agent_id = failure["agentId"]
        delay = self.get_policy(entry.config.get("policy")).delay_for(attempt)
        logger.info("Scheduling task retry %s after %.0fms for %s", attempt + 1, delay, failure.get("taskId"))
        await self._emit(
            "recovery.retry-scheduled",
            {"agentId": agent_id, "taskId": failure.get("taskId"), "attempt": attempt + 1, "delay": delay},
        )
        task = asyncio.create_task(self._retry_after(delay, failure, attempt + 1, progress))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _retry_after(self, delay: float, failure: Dict[str, Any], attempt: int, progress: str) -> None:
        await self._sleep(delay / 1000.0)
        try:
            await self._send(
                failure["agentId"],
                "retry-task",
                {"taskId": failure.get("taskId"), "originalData": failure.get("originalData") or {}, "attempt": attempt},
            )
        except Exception:  # noqa: BLE001
            self._in_progress.pop(progress, None)
            logger.exception("Failed to send retry for task %s", failure.get("taskId"))

    async def _resend_task(self, entry: StrategyEntry, failure: Dict[str, Any], attempt: int, kind: str) -> None:
        if kind != "task" or not failure.get("originalData") or attempt >= self._attempt_limit(entry):
            return
        await self._send(
            failure["agentId"],
            "retry-task",
            {"taskId": failure.get("taskId"), "originalData": failure["originalData"], "attempt": attempt + 1},
        )

    def _finish(self, agent_id: str, event_type: str, payload: Dict[str, Any]) -> None:
        task_id = (payload.get("details") or {}).get("taskId")
        task_key = f"{agent_id}:{task_id}"
        if task_id and task_key in self._in_progress:
            del self._in_progress[task_key]
        else:
            self._in_progress.pop(agent_id, None)
        if event_type == "agent.recovery-failed":
            logger.error("Recovery failed for agent %s: %s", agent_id, payload.get("error"))
        else:
            logger.info("Recovery completed for agent %s (%s)", agent_id, payload.get("strategy"))

    def is_recovering(self, agent_id: str, task_id: Optional[str] = None) -> bool:
        """True while a recovery for the agent, or for one of its tasks, is outstanding."""
        key = agent_id if task_id is None else f"{agent_id}:{task_id}"
        started = self._in_progress.get(key)
        if started is None:
            return False
        if self._clock() - started > self.recovery_timeout:
            logger.warning("Recovery for %s timed out, releasing it", key)
            del self._in_progress[key]
            return False
        return True

    # ------------------------------------------------------------------ dead letters

    async def _dead_letter(self, failure: Dict[str, Any], attempt: int, kind: str) -> DeadLetterEntry:
        agent_id = failure["agentId"]
        task_id = failure.get("taskId")
        key = f"{agent_id}:{task_id or failure.get('moduleId') or 'agent'}:{uuid.uuid4().hex[:8]}"
        if kind == "task":
            original = dict(failure.get("originalData") or {})
            command_type = original.pop("taskType", None) or failure.get("taskType")
            payload = original
        else:
            command_type = "restart"
            payload = {"reason": failure.get("category")}
        entry = DeadLetterEntry(
            key=key,
            agent_id=agent_id,
            command_type=command_type,
            payload=payload,
            error=str(failure.get("error") or ""),
            category=failure.get("category") or "internal",
            module_id=failure.get("moduleId"),
            task_id=task_id,
            workflow_id=failure.get("workflowId"),
            count=attempt,
        )
        self._dead_letters[key] = entry
        logger.warning("Added %s to dead letter queue for agent %s", key, agent_id)
        await self._emit("recovery.dead_lettered", entry.to_dict())
        return entry

    def list_dead_letters(self, agent_id: Optional[str] = None) -> List[DeadLetterEntry]:
        return [entry for entry in self._dead_letters.values() if agent_id is None or entry.agent_id == agent_id]

    def get_dead_letter(self, key: str) -> Optional[DeadLetterEntry]:
        return self._dead_letters.get(key)

    def delete_dead_letter(self, key: str) -> bool:
        if self._dead_letters.pop(key, None) is None:
            logger.warning("Dead letter queue entry %s not found", key)
            return False
        logger.info("Deleted dead letter queue entry %s", key)
        return True

    async def requeue_dead_letter(self, key: str) -> Optional[str]:
        """Publish the parked command again; the entry is removed once published."""
        entry = self._dead_letters.get(key)
        if entry is None or not entry.command_type:
            logger.warning("Dead letter queue entry %s not found", key)
            return None
        payload = dict(entry.payload)
        if entry.task_id:
            payload.setdefault("taskId", entry.task_id)
        command_id = await self._send(entry.agent_id, entry.command_type, payload)
        del self._dead_letters[key]
        logger.info("Requeued dead letter queue entry %s as command %s", key, command_id)
        return command_id

    # ------------------------------------------------------------------ history

    def _record(self, agent_id: str, kind: str, strategy: RecoveryStrategy, failure: Dict[str, Any], attempt: int) -> None:
        history = self._history.get(agent_id)
        if history is None:
            history = self._history[agent_id] = deque(maxlen=self.history_size)
        history.append(
            {
                "at": self._clock(),
                "timestamp": utcnow(),
                "kind": kind,
                "strategy": strategy.value,
                "category": failure.get("category"),
                "moduleId": failure.get("moduleId"),
                "taskId": failure.get("taskId"),
                "attempt": attempt,
                "error": failure.get("error"),
            }
        )

    def get_recovery_history(self, agent_id: str) -> List[Dict[str, Any]]:
        return [dict(item) for item in self._history.get(agent_id, ())]

    # ------------------------------------------------------------------ watchdog

    async def check_heartbeats(self) -> List[str]:
        """Flag agents whose last heartbeat is older than ``heartbeat_timeout``."""
        now = self._clock()
        flagged = []
        for agent_id, seen in list(self._last_heartbeat.items()):
            if now - seen <= self.heartbeat_timeout or agent_id in self._unresponsive:
                continue
            self._unresponsive.add(agent_id)
            flagged.append(agent_id)
            logger.warning("Agent %s missed heartbeats for %.1fs", agent_id, now - seen)
            await self._emit(
                "agent.status-changed",
                {"agentId": agent_id, "status": "unresponsive", "reason": "heartbeat timeout"},
            )
            if self.is_recovering(agent_id):
                continue
            failure = {"agentId": agent_id, "category": "unresponsive", "error": "heartbeat timeout"}
            await self.apply_strategy(
                StrategyEntry(category="unresponsive", strategy=RecoveryStrategy.RESTART, agent_id=agent_id),
                failure,
            )
        return flagged

    async def _watchdog_loop(self) -> None:
        while True:
            await asyncio.sleep(self.watchdog_interval)
            try:
                await self.check_heartbeats()
            except Exception:  # noqa: BLE001
                logger.exception("Heartbeat check failed")

    # ------------------------------------------------------------------ plumbing

    async def _send(self, agent_id: str, command_type: str, payload: Dict[str, Any]) -> str:
        return await self._bus.publish_command(agent_id, command_type, payload, source=SOURCE)

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._bus.publish_event(SOURCE, event_type, payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to publish %s: %s", event_type, exc)

    def status(self) -> Dict[str, Any]:
        return {
            "strategies": len(self._strategies),
            "inProgress": sorted(self._in_progress),
            "deadLetters": len(self._dead_letters),
            "trackedAgents": sorted(self._last_heartbeat),
            "unresponsive": sorted(self._unresponsive),
        }


def _progress_key(agent_id: str, task_id: Optional[str], kind: str, strategy: RecoveryStrategy) -> str:
    # Restarts act on the whole agent; every other task strategy is tracked per task.
    if kind == "task" and task_id and strategy not in (RecoveryStrategy.RESTART, RecoveryStrategy.RESTART_MODULE):
        return f"{agent_id}:{task_id}"
    return agent_id
