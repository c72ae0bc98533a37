"""Error capture, aggregation, alerting and pattern detection."""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional, Tuple

from agent_runtime.core.errors import KIND_AGENT, KIND_SYSTEM, KIND_VALIDATION, NotFoundError, categorize
from agent_runtime.core.message_bus import MessageBus
from agent_runtime.core.models import ErrorRecord, Event, Severity, utcnow
from agent_runtime.services.error_store import ErrorStore, InMemoryErrorStore

logger = logging.getLogger(__name__)

SOURCE = "error-handler"

KIND_EVENTS = {
    KIND_AGENT: "error.agent",
    KIND_SYSTEM: "error.system",
    KIND_VALIDATION: "error.validation",
}

# Events published by agents and modules that describe a failure.
FAILURE_EVENTS = ("agent.failed", "agent.command-failed", "agent.task-failed", "module.error")


class ErrorHandler:
    """Persists errors from every component and raises alerts about them.

    Duplicates are aggregated by ``(kind, category, agent, module)``: a repeat
    bumps the count of the existing record and the alert for that aggregate
    is published at most once per window. A background scan groups recent
    occurrences by ``(code, component)`` and emits ``error.pattern`` when a
    group reaches ``error_threshold`` inside the window.
    """

    def __init__(
        self,
        bus: MessageBus,
        store: Optional[ErrorStore] = None,
        *,
        check_interval: float = 60.0,
        window: Optional[float] = None,
        error_threshold: int = 5,
        pattern_cooldown: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._bus = bus
        self._store: ErrorStore = store or InMemoryErrorStore()
        self.check_interval = check_interval
        self.window = window if window is not None else check_interval * 10
        self.error_threshold = error_threshold
        self.pattern_cooldown = pattern_cooldown if pattern_cooldown is not None else self.window
        self._clock = clock
        self._lock = asyncio.Lock()
        self._alerted: Dict[Tuple, float] = {}
        self._patterns: Dict[Tuple[str, str], float] = {}
        self._subscriptions: List[str] = []
        self._scanner: Optional[asyncio.Task] = None

    @property
    def store(self) -> ErrorStore:
        return self._store

    async def start(self) -> None:
        if self._scanner is not None:
            return
        for event_type in FAILURE_EVENTS:
            subscription = await self._bus.subscribe(f"*.{event_type}", self._on_failure_event, internal=True)
            self._subscriptions.append(subscription)
        self._scanner = asyncio.create_task(self._scan_loop())
        logger.info("Error handler started (window %.1fs, threshold %s)", self.window, self.error_threshold)

    async def stop(self) -> None:
        while self._subscriptions:
            await self._bus.unsubscribe(self._subscriptions.pop())
        if self._scanner is not None:
            self._scanner.cancel()
            await asyncio.gather(self._scanner, return_exceptions=True)
            self._scanner = None
        logger.info("Error handler stopped")

    # ------------------------------------------------------------------ capture

    async def handle_error(self, error: BaseException, context: Optional[Dict[str, Any]] = None) -> Dict[str, str]:
        """Record ``error`` raised somewhere in the runtime and return its id."""
        context = dict(context or {})
        kind, category, code, severity = categorize(error)
        details = dict(getattr(error, "details", {}) or {})
        details.update(context.pop("details", {}) or {})
        if "component" in context:
            details.setdefault("component", context["component"])
        record = await self.record(
            kind=kind,
            category=category,
            code=code,
            severity=severity,
            message=str(error) or error.__class__.__name__,
            agent_id=context.get("agentId"),
            module_id=context.get("moduleId"),
            details=details,
        )
        return {"errorId": record.id}

    async def record(
        self,
        *,
        kind: str,
        category: str,
        code: str,
        severity: Severity,
        message: str,
        agent_id: Optional[str] = None,
        module_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> ErrorRecord:
        now = self._clock()
        key = (kind, category, agent_id, module_id)
        async with self._lock:
            record = await self._store.find(key)
            if record is None:
                record = ErrorRecord(
                    id=str(uuid.uuid4()),
                    kind=kind,
                    category=category,
                    message=message,
                    agent_id=agent_id,
                    module_id=module_id,
                    code=code,
                    severity=severity,
                    first_seen=now,
                    last_seen=now,
                    details=dict(details or {}),
                    occurrences=[now],
                )
            else:
                record.count += 1
                record.last_seen = now
                record.message = message
                record.occurrences.append(now)
                if _rank(severity) > _rank(record.severity):
                    record.severity = severity
            self._prune(record, now)
            await self._store.save(record)
            publish = now - self._alerted.get(key, float("-inf")) >= self.window
            if publish:
                self._alerted[key] = now
        logger.log(
            logging.ERROR if _rank(severity) >= _rank(Severity.HIGH) else logging.WARNING,
            "%s [%s] %s (agent=%s module=%s count=%s)",
            kind,
            category,
            message,
            agent_id,
            module_id,
            record.count,
        )
        if publish:
            await self._publish_alert(record)
        return record

    async def _publish_alert(self, record: ErrorRecord) -> None:
        payload = record.to_dict()
        await self._emit(KIND_EVENTS.get(record.kind, "error.agent"), payload)
        if record.severity is Severity.CRITICAL:
            await self._emit("system.critical", payload)

    async def _on_failure_event(self, event: Event) -> None:
        payload = event.payload
        details = dict(payload.get("details") or {})
        for field in ("commandType", "taskId", "taskType", "workflowId", "context"):
            if payload.get(field) is not None:
                details[field] = payload[field]
        details["event"] = event.type
        await self.record(
            kind=payload.get("kind") or KIND_AGENT,
            category=payload.get("category") or "internal",
            code=payload.get("code") or "AGENT_ERROR",
            severity=_severity(payload.get("severity")),
            message=str(payload.get("error") or event.type),
            agent_id=payload.get("agentId") or event.source,
            module_id=payload.get("moduleId") or payload.get("module"),
            details=details,
        )

    # ------------------------------------------------------------------ queries

    async def get_error(self, error_id: str) -> ErrorRecord:
        record = await self._store.get(error_id)
        if record is None:
            raise NotFoundError(f"Error not found: {error_id}")
        return record

    async def list_errors(self, include_resolved: bool = False) -> List[ErrorRecord]:
        return await self._store.list(include_resolved)

    async def get_error_statistics(self) -> Dict[str, Any]:
        by_kind: Dict[str, int] = defaultdict(int)
        by_component: Dict[str, int] = defaultdict(int)
        by_severity: Dict[str, int] = defaultdict(int)
        total = 0
        for record in await self._store.list(include_resolved=True):
            total += record.count
            by_kind[record.kind] += record.count
            by_component[record.component] += record.count
            by_severity[record.severity.value] += record.count
        return {
            "totalErrors": total,
            "byKind": dict(by_kind),
            "byComponent": dict(by_component),
            "bySeverity": dict(by_severity),
        }

    async def resolve_error(
        self,
        error_id: str,
        resolution: Optional[str] = None,
        resolved_by: Optional[str] = None,
    ) -> ErrorRecord:
        async with self._lock:
            record = await self.get_error(error_id)
            record.resolved = True
            record.resolution = resolution
            record.resolved_by = resolved_by
            record.resolved_at = utcnow()
            await self._store.save(record)
        self._alerted.pop(record.key, None)
        logger.info("Resolved error %s by %s", error_id, resolved_by or "unknown")
        return record

    # ------------------------------------------------------------------ patterns

    async def detect_patterns(self) -> List[Dict[str, Any]]:
        """Emit ``error.pattern`` for every group over threshold; return the payloads."""
        now = self._clock()
        groups: Dict[Tuple[str, str], List[Tuple[ErrorRecord, List[float]]]] = defaultdict(list)
        for record in await self._store.list(include_resolved=False):
            recent = [seen for seen in record.occurrences if now - seen <= self.window]
            if recent:
                groups[(record.code, record.component)].append((record, recent))
        emitted: List[Dict[str, Any]] = []
        for (code, component), members in groups.items():
            occurrences = sum(len(recent) for _, recent in members)
            if occurrences < self.error_threshold:
                continue
            last_emitted = self._patterns.get((code, component))
            if last_emitted is not None and now - last_emitted < self.pattern_cooldown:
                continue
            self._patterns[(code, component)] = now
            sample = max(members, key=lambda member: member[0].last_seen)[0]
            payload: Dict[str, Any] = dict(sample.details)
            payload.update(
                category=code,
                component=component,
                occurrences=occurrences,
                firstSeen=min(recent[0] for _, recent in members),
                lastSeen=max(recent[-1] for _, recent in members),
                sample=sample.message,
                kind=sample.kind,
                errorCategory=sample.category,
            )
            logger.warning("Error pattern detected: %s in %s (%s occurrences)", code, component, occurrences)
            await self._emit("error.pattern", payload)
            emitted.append(payload)
        return emitted

    async def _scan_loop(self) -> None:
        while True:
            await asyncio.sleep(self.check_interval)
            try:
                await self.detect_patterns()
            except Exception:  # noqa: BLE001
                logger.exception("Error pattern scan failed")

    def _prune(self, record: ErrorRecord, now: float) -> None:
        horizon = now - self.window
        if record.occurrences and record.occurrences[0] < horizon:
            record.occurrences = [seen for seen in record.occurrences if seen >= horizon]

    async def _emit(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            await self._bus.publish_event(SOURCE, event_type, payload)
        except Exception as exc:  # noqa: BLE001
            logger.error("Failed to publish %s: %s", event_type, exc)


def _rank(severity: Severity) -> int:
    return list(Severity).index(severity)


def _severity(value: Any) -> Severity:
    try:
        return Severity(value)
    except ValueError:
        return Severity.MEDIUM
