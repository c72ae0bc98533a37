"""Error taxonomy used by agents, modules and runtime services."""
from __future__ import annotations

import asyncio
import uuid
from typing import Any, Dict, Optional, Tuple

from .models import Severity

KIND_AGENT = "AgentError"
KIND_SYSTEM = "SystemError"
KIND_VALIDATION = "ValidationError"

# Categories that describe transient conditions worth retrying.
RETRYABLE_CATEGORIES = frozenset({"timeout", "rate_limit", "transport", "api_unavailable"})
NON_RETRYABLE_CATEGORIES = frozenset({"validation", "authorization"})


class AgentRuntimeError(Exception):
    """Base class for every error raised by the runtime."""

    kind = KIND_AGENT
    category = "internal"
    code = "INTERNAL_ERROR"
    severity = Severity.MEDIUM

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        category: Optional[str] = None,
        severity: Optional[Severity] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if category is not None:
            self.category = category
        if severity is not None:
            self.severity = severity
        self.details: Dict[str, Any] = dict(details or {})
        self.reference = uuid.uuid4().hex[:10]

    def __str__(self) -> str:
        return self.message


class ValidationError(AgentRuntimeError):
    kind = KIND_VALIDATION
    category = "validation"
    code = "VALIDATION_ERROR"
    severity = Severity.LOW


class AuthorizationError(AgentRuntimeError):
    kind = KIND_VALIDATION
    category = "authorization"
    code = "UNAUTHORIZED"
    severity = Severity.LOW


class ConfigurationError(ValidationError):
    code = "CONFIGURATION_ERROR"


class AgentError(AgentRuntimeError):
    category = "agent"
    code = "AGENT_ERROR"


class ModuleError(AgentError):
    category = "module"
    code = "MODULE_ERROR"


class ModuleStateError(ModuleError):
    code = "INVALID_MODULE_STATE"


class UnknownCommandError(AgentError):
    category = "unknown_command"
    code = "UNKNOWN_COMMAND"
    severity = Severity.LOW


class AgentNotReadyError(AgentError):
    category = "agent_not_ready"
    code = "AGENT_NOT_READY"


class CommandTimeout(AgentRuntimeError, TimeoutError):
    category = "timeout"
    code = "TIMEOUT"


class CommandCancelled(AgentRuntimeError):
    category = "cancelled"
    code = "CANCELLED"
    severity = Severity.LOW


class InfrastructureError(AgentRuntimeError):
    """Infrastructure fault: bus, storage or an external dependency."""

    kind = KIND_SYSTEM
    category = "system"
    code = "SYSTEM_ERROR"
    severity = Severity.HIGH


class BusUnavailableError(InfrastructureError):
    category = "transport"
    code = "BUS_UNAVAILABLE"


class CircuitOpenError(InfrastructureError):
    category = "api_unavailable"
    code = "SERVICE_UNAVAILABLE"
    severity = Severity.MEDIUM


class RateLimitError(InfrastructureError):
    category = "rate_limit"
    code = "RATE_LIMIT_EXCEEDED"
    severity = Severity.MEDIUM


class NotFoundError(AgentRuntimeError, KeyError):
    category = "resource_not_found"
    code = "RESOURCE_NOT_FOUND"
    severity = Severity.LOW

    def __str__(self) -> str:
        return self.message


def status_class(exc: BaseException) -> Optional[int]:
    """Return the HTTP-like status tagged on an exception, if any."""
    for attr in ("status_code", "status"):
        value = getattr(exc, attr, None)
        if isinstance(value, int):
            return value
    response = getattr(exc, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def categorize(exc: BaseException) -> Tuple[str, str, str, Severity]:
    """Map any exception to ``(kind, category, code, severity)``."""
    if isinstance(exc, AgentRuntimeError):
        return exc.kind, exc.category, exc.code, exc.severity
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return KIND_SYSTEM, "timeout", "TIMEOUT", Severity.MEDIUM
    if isinstance(exc, asyncio.CancelledError):
        return KIND_AGENT, "cancelled", "CANCELLED", Severity.LOW
    status = status_class(exc)
    if status == 429:
        return KIND_SYSTEM, "rate_limit", "RATE_LIMIT_EXCEEDED", Severity.MEDIUM
    if status is not None and 500 <= status < 600:
        return KIND_SYSTEM, "api_unavailable", f"HTTP_{status}", Severity.HIGH
    if isinstance(exc, (ConnectionError, OSError)):
        return KIND_SYSTEM, "transport", "TRANSPORT_ERROR", Severity.HIGH
    category = getattr(exc, "category", None)
    if isinstance(category, str):
        return KIND_AGENT, category, getattr(exc, "code", "AGENT_ERROR"), Severity.MEDIUM
    return KIND_AGENT, "internal", "INTERNAL_ERROR", Severity.MEDIUM


def is_retryable(exc: BaseException) -> bool:
    """Transport/timeout failures and 429/5xx statuses are retryable; all else is fatal."""
    _, category, _, _ = categorize(exc)
    return category in RETRYABLE_CATEGORIES


def error_payload(exc: BaseException) -> Dict[str, Any]:
    kind, category, code, severity = categorize(exc)
    return {
        "error": str(exc) or exc.__class__.__name__,
        "kind": kind,
        "category": category,
        "code": code,
        "severity": severity.value,
        "details": dict(getattr(exc, "details", {}) or {}),
    }
