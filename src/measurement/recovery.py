"""Error recovery manager: retry, circuit breaker and fallback per operation.

Every fallible operation (a source query, a calibration lookup…) runs under
an operation key such as ``source:arcore``.  Each key has its own lazily
created circuit breaker:

    closed     run the operation; on failure sleep ``retry_delay`` and retry
               until ``max_retries`` consecutive failures open the breaker
    open       no attempt, the fallback is served directly; once
               ``2 × retry_delay`` has passed since the last failure the next
               call becomes the half-open probe
    half_open  exactly one probe in flight; success closes the breaker,
               failure re-opens it and restarts the cooldown

Errors are classified by ``ErrorKind``.  Critical kinds (hardware,
permission, resource) are never retried: the breaker opens immediately.

``execute`` never raises to its caller.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, TypeVar

from src.measurement.config_loader import MeasurementConfig, get_measurement_config

logger = logging.getLogger("fitform.measurement.recovery")

T = TypeVar("T")

Fallback = Callable[[], Any]


# ---------------------------------------------------------------------------
# Error model
# ---------------------------------------------------------------------------


class ErrorKind(str, Enum):
    HARDWARE = "hardware"
    PERMISSION = "permission"
    RESOURCE = "resource"
    TIMEOUT = "timeout"
    TRANSIENT = "transient"
    UNAVAILABLE = "unavailable"

    @property
    def is_critical(self) -> bool:
        return self in _CRITICAL_KINDS


_CRITICAL_KINDS = frozenset({ErrorKind.HARDWARE, ErrorKind.PERMISSION, ErrorKind.RESOURCE})


class MeasurementError(Exception):
    """Raised by sources and engines with a structured error kind.

    Attributes:
        kind: Classification used by the recovery manager.
    """

    def __init__(self, message: str, kind: ErrorKind = ErrorKind.TRANSIENT) -> None:
        super().__init__(message)
        self.kind = kind


def classify_error(exc: BaseException) -> ErrorKind:
    """Map an exception to an ErrorKind."""
    if isinstance(exc, MeasurementError):
        return exc.kind
    if isinstance(exc, MemoryError):
        return ErrorKind.RESOURCE
    if isinstance(exc, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(exc, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(exc, ConnectionError):
        return ErrorKind.UNAVAILABLE
    return ErrorKind.TRANSIENT


# ---------------------------------------------------------------------------
# Breaker state
# ---------------------------------------------------------------------------


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class CircuitBreaker:
    """Per-operation breaker state and counters.

    Attributes:
        operation:            Operation key (e.g. 'source:arcore').
        state:                closed / open / half_open.
        consecutive_failures: Failures since the last success.
        last_failure_time:    Clock reading of the most recent failure.
        last_error_kind:      Kind of the most recent failure.
        total_calls:          execute() calls for this key.
        total_failures:       Failed attempts (including retries).
        fallbacks_served:     Calls answered by the fallback.
        probe_in_flight:      True while the half-open probe runs.
    """

    operation: str
    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    last_failure_time: Optional[float] = None
    last_error_kind: Optional[ErrorKind] = None
    total_calls: int = 0
    total_failures: int = 0
    fallbacks_served: int = 0
    probe_in_flight: bool = False

    def record_success(self) -> None:
        self.state = BreakerState.CLOSED
        self.consecutive_failures = 0

    def record_failure(self, kind: ErrorKind, now: float) -> None:
        self.consecutive_failures += 1
        self.total_failures += 1
        self.last_failure_time = now
        self.last_error_kind = kind

    def trip(self) -> None:
        self.state = BreakerState.OPEN

    def cooldown_elapsed(self, now: float, cooldown: float) -> bool:
        return self.last_failure_time is None or now - self.last_failure_time >= cooldown

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "consecutive_failures": self.consecutive_failures,
            "last_failure_time": self.last_failure_time,
            "last_error_kind": self.last_error_kind.value if self.last_error_kind else None,
            "total_calls": self.total_calls,
            "total_failures": self.total_failures,
            "fallbacks_served": self.fallbacks_served,
        }


@dataclass
class RecoveryStats:
    total_calls: int = 0
    total_failures: int = 0
    fallbacks_served: int = 0
    open_breakers: list[str] = field(default_factory=list)
    breakers: dict[str, dict] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ErrorRecoveryManager:
    """Runs operations under retry / circuit-breaker / fallback protection.

    Usage::

        recovery = ErrorRecoveryManager(config)
        estimate = await recovery.execute("source:arcore", adapter.estimate)

    ``clock`` and ``sleep`` are injectable so tests can drive the cooldown
    without waiting.
    """

    def __init__(
        self,
        config: MeasurementConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        settings = (config or get_measurement_config()).recovery
        self._max_retries = settings.max_retries
        self._retry_delay = settings.retry_delay_s
        self._cooldown = settings.cooldown_s
        self._fallback_enabled = settings.fallback_enabled
        self._clock = clock
        self._sleep = sleep
        self._breakers: dict[str, CircuitBreaker] = {}

    def breaker(self, operation: str) -> CircuitBreaker:
        """Return (creating if needed) the breaker for ``operation``."""
        breaker = self._breakers.get(operation)
        if breaker is None:
            breaker = CircuitBreaker(operation=operation)
            self._breakers[operation] = breaker
        return breaker

    async def execute(
        self,
        operation: str,
        func: Callable[[], Awaitable[T]],
        fallback: Fallback | None = None,
    ) -> T | Any | None:
        """Run ``func`` under the breaker for ``operation``.

        Returns the operation's result, or the fallback's result (None when
        there is no usable fallback).  Never raises.
        """
        breaker = self.breaker(operation)
        breaker.total_calls += 1

        if breaker.state is BreakerState.OPEN:
            if not breaker.cooldown_elapsed(self._clock(), self._cooldown):
                return await self._serve_fallback(breaker, fallback)
            breaker.state = BreakerState.HALF_OPEN
            logger.info("Circuit breaker for %s is half-open; probing", operation)

        if breaker.state is BreakerState.HALF_OPEN:
            return await self._probe(breaker, func, fallback)

        attempt = 0
        while True:
            attempt += 1
            try:
                result = await func()
            except Exception as exc:
                kind = classify_error(exc)
                breaker.record_failure(kind, self._clock())
                logger.warning(
                    "%s failed (attempt %d, %s): %s", operation, attempt, kind.value, exc
                )
                if kind.is_critical or breaker.consecutive_failures >= self._max_retries:
                    self._open(breaker)
                    return await self._serve_fallback(breaker, fallback)
                await self._sleep(self._retry_delay)
                if breaker.state is not BreakerState.CLOSED:
                    # Another caller opened the breaker while we slept
                    return await self._serve_fallback(breaker, fallback)
                continue

            breaker.record_success()
            return result

    async def execute_fallback(self, fallback: Fallback | None) -> Any | None:
        """Run a fallback best-effort; a missing or failing fallback yields None."""
        if fallback is None or not self._fallback_enabled:
            return None
        try:
            value = fallback()
            if inspect.isawaitable(value):
                value = await value
            return value
        except Exception:
            logger.exception("Fallback failed")
            return None

    def recovery_stats(self) -> RecoveryStats:
        stats = RecoveryStats()
        for operation, breaker in sorted(self._breakers.items()):
            stats.total_calls += breaker.total_calls
            stats.total_failures += breaker.total_failures
            stats.fallbacks_served += breaker.fallbacks_served
            if breaker.state is BreakerState.OPEN:
                stats.open_breakers.append(operation)
            stats.breakers[operation] = breaker.to_dict()
        return stats

    def reset(self, operation: str | None = None) -> None:
        """Forget breaker state for one operation, or for all of them."""
        if operation is None:
            self._breakers.clear()
        else:
            self._breakers.pop(operation, None)

    # ── Internals ──

    async def _probe(
        self,
        breaker: CircuitBreaker,
        func: Callable[[], Awaitable[T]],
        fallback: Fallback | None,
    ) -> T | Any | None:
        if breaker.probe_in_flight:
            return await self._serve_fallback(breaker, fallback)

        breaker.probe_in_flight = True
        try:
            result = await func()
        except Exception as exc:
            kind = classify_error(exc)
            breaker.record_failure(kind, self._clock())
            self._open(breaker)
            logger.warning("%s probe failed (%s): %s", breaker.operation, kind.value, exc)
            return await self._serve_fallback(breaker, fallback)
        finally:
            breaker.probe_in_flight = False

        breaker.record_success()
        logger.info("Circuit breaker for %s closed after successful probe", breaker.operation)
        return result

    def _open(self, breaker: CircuitBreaker) -> None:
        if breaker.state is not BreakerState.OPEN:
            logger.error(
                "Circuit breaker for %s opened after %d consecutive failures (last: %s)",
                breaker.operation,
                breaker.consecutive_failures,
                breaker.last_error_kind.value if breaker.last_error_kind else "unknown",
            )
        breaker.trip()

    async def _serve_fallback(
        self, breaker: CircuitBreaker, fallback: Fallback | None
    ) -> Any | None:
        breaker.fallbacks_served += 1
        return await self.execute_fallback(fallback)
