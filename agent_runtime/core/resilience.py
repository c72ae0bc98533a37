"""Retry policies and per-dependency circuit breakers."""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional, TypeVar

from .errors import CircuitOpenError, is_retryable
from .models import CircuitState

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded exponential backoff. Delays are expressed in milliseconds."""

    attempts: int = 3
    initial_delay: float = 1000.0
    factor: float = 2.0
    max_delay: float = 30000.0
    jitter: float = 0.0

    def delay_for(self, retry: int) -> float:
        """Delay in ms before retry number ``retry`` (1-indexed)."""
        delay = min(self.initial_delay * (self.factor ** (retry - 1)), self.max_delay)
        if self.jitter:
            spread = delay * self.jitter
            delay = min(max(0.0, delay - spread + random.random() * spread * 2), self.max_delay)
        return delay

    def delays(self) -> Iterator[float]:
        for retry in range(1, self.attempts):
            yield self.delay_for(retry)


DEFAULT_POLICIES: Dict[str, RetryPolicy] = {
    "default": RetryPolicy(),
    "quick": RetryPolicy(attempts=2, initial_delay=500, factor=2, max_delay=5000),
    "external-service": RetryPolicy(attempts=5, initial_delay=2000, factor=2, max_delay=60000),
}


@dataclass
class CircuitBreaker:
    """Health state of a single dependency."""

    name: str
    failure_threshold: int = 5
    cooldown: float = 30.0
    clock: Callable[[], float] = time.monotonic
    state: CircuitState = CircuitState.CLOSED
    failures: int = 0
    open_until: Optional[float] = None
    probe_in_flight: bool = field(default=False)

    def admit(self) -> None:
        """Raise ``CircuitOpenError`` unless a call may proceed."""
        if self.state is CircuitState.OPEN:
            if self.open_until is not None and self.clock() >= self.open_until:
                self.state = CircuitState.HALF_OPEN
                self.probe_in_flight = False
                logger.info("Circuit half-open for service: %s", self.name)
            else:
                raise CircuitOpenError(
                    f"Service {self.name} is unavailable (circuit open)",
                    details={"service": self.name},
                )
        if self.state is CircuitState.HALF_OPEN:
            if self.probe_in_flight:
                raise CircuitOpenError(
                    f"Service {self.name} is being probed (circuit half-open)",
                    details={"service": self.name},
                )
            self.probe_in_flight = True

    def check(self) -> None:
        """Like ``admit`` but never claims the half-open probe."""
        if self.state is CircuitState.OPEN and (
            self.open_until is None or self.clock() < self.open_until
        ):
            raise CircuitOpenError(
                f"Service {self.name} is unavailable (circuit open)",
                details={"service": self.name},
            )
        if self.state is CircuitState.HALF_OPEN and self.probe_in_flight:
            raise CircuitOpenError(
                f"Service {self.name} is being probed (circuit half-open)",
                details={"service": self.name},
            )

    def record_success(self) -> None:
        if self.state is not CircuitState.CLOSED:
            logger.info("Circuit closed for service: %s", self.name)
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.open_until = None
        self.probe_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        if self.state is CircuitState.HALF_OPEN:
            self._open()
            logger.warning("Circuit re-opened for service: %s after failed probe", self.name)
        elif self.state is CircuitState.CLOSED and self.failures >= self.failure_threshold:
            self._open()
            logger.warning("Circuit opened for service: %s after %s failures", self.name, self.failures)

    def reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failures = 0
        self.open_until = None
        self.probe_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "failures": self.failures,
            "openUntil": self.open_until,
        }

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.open_until = self.clock() + self.cooldown
        self.probe_in_flight = False


class ResilienceService:
    """Executes operations under named retry policies and per-service breakers."""

    def __init__(
        self,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        *,
        failure_threshold: int = 5,
        cooldown: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._policies: Dict[str, RetryPolicy] = dict(DEFAULT_POLICIES)
        self._policies.update(policies or {})
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._failure_threshold = failure_threshold
        self._cooldown = cooldown
        self._clock = clock
        self._sleep = sleep

    def register_policy(self, name: str, policy: RetryPolicy) -> None:
        self._policies[name] = policy

    def get_policy(self, name: str = "default") -> RetryPolicy:
        return self._policies.get(name) or self._policies["default"]

    def breaker(self, service: str) -> CircuitBreaker:
        breaker = self._breakers.get(service)
        if breaker is None:
            breaker = CircuitBreaker(
                name=service,
                failure_threshold=self._failure_threshold,
                cooldown=self._cooldown,
                clock=self._clock,
            )
            self._breakers[service] = breaker
        return breaker

    def check_circuit_breaker(self, service: str) -> None:
        self.breaker(service).check()

    def reset_circuit_breaker(self, service: str) -> None:
        if service in self._breakers:
            self._breakers[service].reset()
            logger.info("Circuit breaker reset for service: %s", service)

    def breaker_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.snapshot() for name, breaker in self._breakers.items()}

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        policy_name: str = "default",
        *,
        service: Optional[str] = None,
        on_retry: Optional[Callable[[int, float, BaseException], Any]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds, fails fatally or attempts run out."""
        policy = self.get_policy(policy_name)
        breaker = self.breaker(service) if service else None
        attempt = 0
        while True:
            attempt += 1
            if breaker is not None:
                breaker.admit()
            try:
                result = await operation()
            except asyncio.CancelledError:
                if breaker is not None:
                    breaker.probe_in_flight = False
                raise
            except Exception as exc:  # noqa: BLE001
                if breaker is not None:
                    breaker.record_failure()
                if not is_retryable(exc) or attempt >= policy.attempts:
                    raise
                delay = policy.delay_for(attempt)
                logger.info(
                    "Retry attempt %s/%s for %s after %.0fms: %s",
                    attempt,
                    policy.attempts - 1,
                    service or "operation",
                    delay,
                    exc,
                )
                if on_retry is not None:
                    on_retry(attempt, delay, exc)
                await self._sleep(delay / 1000.0)
            else:
                if breaker is not None:
                    breaker.record_success()
                return result
