"""Core data models shared across runtime components."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def freeze_payload(payload: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """Return a JSON-safe deep copy so an enqueued payload cannot be mutated."""
    if payload is None:
        return {}
    return json.loads(json.dumps(payload, default=str))


class AgentStatus(str, Enum):
    """Lifecycle states shared by agents and modules."""

    INITIALIZING = "initializing"
    INITIALIZED = "initialized"
    RUNNING = "running"
    STOPPED = "stopped"
    ERROR = "error"
    UNRESPONSIVE = "unresponsive"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RecoveryStrategy(str, Enum):
    RETRY = "retry"
    RESTART = "restart"
    RESTART_MODULE = "restart_module"
    FALLBACK = "fallback"
    SKIP = "skip"
    DEAD_LETTER = "dead_letter"


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class Command:
    """Targeted request delivered to exactly one agent."""

    type: str
    agent_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utcnow)
    source: Optional[str] = None
    deadline: Optional[float] = None
    retry_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "timestamp": self.timestamp,
            "payload": self.payload,
            "source": self.source,
        }


@dataclass(slots=True)
class Event:
    """Broadcast notification routed by ``source.type``."""

    type: str
    source: str
    payload: Dict[str, Any] = field(default_factory=dict)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=utcnow)

    @property
    def routing_key(self) -> str:
        return f"{self.source}.{self.type}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "source": self.source,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }


@dataclass(slots=True)
class ModuleConfig:
    """Per-module entry of an agent configuration."""

    enabled: bool = True
    required: bool = False
    settings: Dict[str, Any] = field(default_factory=dict)
    type: Optional[str] = None


@dataclass(slots=True)
class SubscriptionConfig:
    event: str
    description: str = ""
    source: str = "*"

    @property
    def pattern(self) -> str:
        return f"{self.source}.{self.event}"


@dataclass(slots=True)
class AgentConfig:
    """Configuration payload used by the orchestrator when instantiating an agent."""

    id: str
    name: str
    role: str = "generic"
    description: str = ""
    modules: Dict[str, ModuleConfig] = field(default_factory=dict)
    heartbeat_interval: float = 30.0
    command_timeout: float = 60.0
    subscriptions: List[SubscriptionConfig] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class StrategyEntry:
    """Recovery strategy keyed by ``(agent_id?, module_id?, category)``."""

    category: str
    strategy: RecoveryStrategy
    agent_id: Optional[str] = None
    module_id: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> tuple:
        return (self.agent_id, self.module_id, self.category)


@dataclass(slots=True)
class ErrorRecord:
    """Aggregated error keyed by ``(kind, category, agent, module)``."""

    id: str
    kind: str
    category: str
    message: str
    agent_id: Optional[str] = None
    module_id: Optional[str] = None
    code: str = "UNKNOWN_ERROR"
    severity: Severity = Severity.MEDIUM
    first_seen: float = 0.0
    last_seen: float = 0.0
    count: int = 1
    details: Dict[str, Any] = field(default_factory=dict)
    occurrences: List[float] = field(default_factory=list)
    resolved: bool = False
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.kind, self.category, self.agent_id, self.module_id)

    @property
    def component(self) -> str:
        if self.agent_id and self.module_id:
            return f"{self.agent_id}/{self.module_id}"
        return self.agent_id or self.details.get("component") or "system"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "category": self.category,
            "code": self.code,
            "message": self.message,
            "agentId": self.agent_id,
            "moduleId": self.module_id,
            "severity": self.severity.value,
            "count": self.count,
            "firstSeen": self.first_seen,
            "lastOccurred": self.last_seen,
            "details": self.details,
            "resolved": self.resolved,
            "resolution": self.resolution,
            "resolvedBy": self.resolved_by,
            "resolvedAt": self.resolved_at,
        }


@dataclass(slots=True)
class DeadLetterEntry:
    """Payload parked after every recovery strategy was exhausted."""

    key: str
    agent_id: str
    command_type: Optional[str]
    payload: Dict[str, Any]
    error: str
    category: str
    module_id: Optional[str] = None
    task_id: Optional[str] = None
    workflow_id: Optional[str] = None
    count: int = 1
    first_seen: str = field(default_factory=utcnow)
    last_seen: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "agentId": self.agent_id,
            "moduleId": self.module_id,
            "commandType": self.command_type,
            "payload": self.payload,
            "error": self.error,
            "category": self.category,
            "taskId": self.task_id,
            "workflowId": self.workflow_id,
            "count": self.count,
            "firstSeen": self.first_seen,
            "lastSeen": self.last_seen,
        }
