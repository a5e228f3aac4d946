"""Circuit breaker gating calls by the failure rate of a rolling window.

States:
    CLOSED: Requests pass through; outcomes are recorded in the window
    OPEN: Requests are rejected with CircuitOpenError until ``next_attempt``
    HALF_OPEN: Probe requests pass; one failure reopens, enough
        consecutive successes close and clear the window

Every state change happens under the breaker's ``RLock`` and is decided
from the state observed inside the lock, so one outcome causes at most
one transition. An outcome that arrives after the breaker already opened
(a slow in-flight call) is recorded but never re-opens it.

Example:
    >>> breaker = CircuitBreaker("crm-api", failure_threshold=50.0, minimum_requests=5)
    >>> rows = await breaker.execute(lambda: client.fetch("accounts"))
    >>> breaker.get_state()["state"]
    'closed'
"""

from __future__ import annotations

import asyncio
import builtins
import contextlib
import inspect
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from mapflow.core.errors import CircuitOpenError, TimeoutError
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.core.result import Err, Ok, Result

logger = get_logger(__name__)

T = TypeVar("T")

_STATE_EVENTS = {
    "open": "open",
    "half_open": "halfOpen",
    "closed": "close",
}


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True, slots=True)
class RequestRecord:
    """One recorded outcome in the rolling window."""

    timestamp: float
    success: bool
    duration: float = 0.0


@dataclass
class CircuitStats:
    """Lifetime counters (never cleared by state transitions)."""

    total_requests: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0
    total_timeouts: int = 0
    state_transitions: int = 0
    last_state_change: datetime | None = None
    response_times: deque[float] = field(default_factory=lambda: deque(maxlen=1000))

    def percentile(self, pct: float) -> float:
        if not self.response_times:
            return 0.0
        ordered = sorted(self.response_times)
        index = min(len(ordered) - 1, int(round(pct / 100 * (len(ordered) - 1))))
        return ordered[index]

    @property
    def average_response_time(self) -> float:
        if not self.response_times:
            return 0.0
        return sum(self.response_times) / len(self.response_times)

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "totalSuccesses": self.total_successes,
            "totalFailures": self.total_failures,
            "totalRejections": self.total_rejections,
            "totalTimeouts": self.total_timeouts,
            "stateTransitions": self.state_transitions,
            "lastStateChange": self.last_state_change.isoformat() if self.last_state_change else None,
        }


class CircuitBreaker:
    """Per-resource breaker with a percentage failure threshold.

    Attributes:
        name: Identifier for this circuit
        failure_threshold: Failure rate (percent) at which CLOSED trips
        minimum_requests: Window size required before tripping
        reset_timeout: Seconds OPEN waits before allowing a probe
        success_threshold: Consecutive HALF_OPEN successes needed to close
        monitoring_period: Seconds a record stays in the window
        window_size: Maximum records kept in the window
        timeout: Default per-call timeout in seconds (None = unbounded)
    """

    def __init__(
        self,
        name: str = "default",
        *,
        failure_threshold: float = 50.0,
        minimum_requests: int = 10,
        reset_timeout: float = 30.0,
        success_threshold: int = 3,
        monitoring_period: float = 60.0,
        window_size: int = 100,
        timeout: float | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.failure_threshold = failure_threshold
        self.minimum_requests = minimum_requests
        self.reset_timeout = reset_timeout
        self.success_threshold = success_threshold
        self.monitoring_period = monitoring_period
        self.window_size = window_size
        self.timeout = timeout
        self._emitter = emitter
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._window: deque[RequestRecord] = deque(maxlen=window_size)
        self._consecutive_successes = 0
        self._next_attempt: float | None = None
        self._last_failure_time: datetime | None = None
        self._last_success_time: datetime | None = None
        self._lock = threading.RLock()
        self._stats = CircuitStats()

    @classmethod
    def from_settings(cls, name: str, settings: Any, **overrides: Any) -> CircuitBreaker:
        options = {
            "failure_threshold": settings.breaker_failure_threshold,
            "minimum_requests": settings.breaker_minimum_requests,
            "reset_timeout": settings.breaker_reset_timeout,
            "success_threshold": settings.breaker_success_threshold,
            "monitoring_period": settings.breaker_monitoring_period,
            "window_size": settings.breaker_window_size,
        }
        options.update(overrides)
        return cls(name, **options)

    # ── Observed values ──────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        with self._lock:
            return self._state

    @property
    def stats(self) -> CircuitStats:
        return self._stats

    @property
    def request_count(self) -> int:
        with self._lock:
            return len(self._window)

    @property
    def failure_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._window if not r.success)

    @property
    def success_count(self) -> int:
        with self._lock:
            return sum(1 for r in self._window if r.success)

    @property
    def failure_rate(self) -> float:
        """Failures / requests over the window, as a percentage."""
        with self._lock:
            return self._rate(self._window)

    @property
    def recent_failure_rate(self) -> float:
        """Same as :attr:`failure_rate` restricted to the monitoring period."""
        with self._lock:
            cutoff = self._clock() - self.monitoring_period
            return self._rate([r for r in self._window if r.timestamp >= cutoff])

    @staticmethod
    def _rate(records: Any) -> float:
        records = list(records)
        if not records:
            return 0.0
        failures = sum(1 for r in records if not r.success)
        return (failures / len(records)) * 100

    # ── Transitions ──────────────────────────────────────────────────

    def _transition_to(self, new_state: CircuitState, reason: str) -> None:
        old_state = self._state
        self._state = new_state
        self._stats.state_transitions += 1
        self._stats.last_state_change = utcnow()

        if new_state == CircuitState.OPEN:
            self._next_attempt = self._clock() + self.reset_timeout
            self._consecutive_successes = 0
        elif new_state == CircuitState.HALF_OPEN:
            self._consecutive_successes = 0
        else:
            self._next_attempt = None
            self._consecutive_successes = 0
            self._window.clear()

        logger.info(
            "circuit.state_change",
            circuit=self.name,
            from_state=old_state.value,
            to_state=new_state.value,
            reason=reason,
        )
        self._emit("stateChange", from_state=old_state.value, to_state=new_state.value, reason=reason)
        self._emit(_STATE_EVENTS[new_state.value], reason=reason)

    def allow_request(self) -> bool:
        """Return whether a request may proceed now.

        The first call at or after ``next_attempt`` moves OPEN to HALF_OPEN.
        """
        with self._lock:
            if self._state == CircuitState.OPEN:
                if self._next_attempt is not None and self._clock() >= self._next_attempt:
                    self._transition_to(CircuitState.HALF_OPEN, "reset timeout elapsed")
                else:
                    return False
            return True

    def _reject(self) -> CircuitOpenError:
        with self._lock:
            self._stats.total_rejections += 1
            next_attempt = self._next_attempt
        retry_in = max(0.0, next_attempt - self._clock()) if next_attempt is not None else None
        self._emit("reject", retry_in=retry_in)
        return CircuitOpenError(
            f"Circuit '{self.name}' is open, rejecting request",
            circuit=self.name,
        )

    def record_success(self, duration: float = 0.0) -> None:
        with self._lock:
            self._record(RequestRecord(self._clock(), True, duration))
            self._stats.total_successes += 1
            self._last_success_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._consecutive_successes += 1
                if self._consecutive_successes >= self.success_threshold:
                    self._transition_to(CircuitState.CLOSED, "probe succeeded")

    def record_failure(self, error: BaseException | None = None, duration: float = 0.0) -> None:
        with self._lock:
            self._record(RequestRecord(self._clock(), False, duration))
            self._stats.total_failures += 1
            self._last_failure_time = utcnow()

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to(CircuitState.OPEN, "probe failed")
            elif self._state == CircuitState.CLOSED:
                if (
                    len(self._window) >= self.minimum_requests
                    and self._rate(self._window) >= self.failure_threshold
                ):
                    self._transition_to(CircuitState.OPEN, "failure threshold exceeded")

    def _record(self, record: RequestRecord) -> None:
        self._stats.total_requests += 1
        self._stats.response_times.append(record.duration)
        self._window.append(record)
        self.cleanup()

    def cleanup(self) -> int:
        """Drop window entries older than the monitoring period."""
        with self._lock:
            cutoff = self._clock() - self.monitoring_period
            removed = 0
            while self._window and self._window[0].timestamp < cutoff:
                self._window.popleft()
                removed += 1
            return removed

    # ── Administrative overrides ─────────────────────────────────────

    def force_open(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.OPEN, "forced open")

    def force_close(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.CLOSED, "forced close")

    def reset(self) -> None:
        with self._lock:
            self._transition_to(CircuitState.CLOSED, "reset")
            self._last_failure_time = None

    # ── Execution ────────────────────────────────────────────────────

    async def execute(self, operation: Callable[[], Any], *, timeout: float | None = None) -> Any:
        """Run ``operation`` (sync or async, zero-argument) through the breaker.

        Raises:
            CircuitOpenError: the breaker is open; the operation is not invoked
            TimeoutError: the per-call timeout elapsed (recorded as a failure)
        """
        if not self.allow_request():
            raise self._reject()

        timeout = timeout if timeout is not None else self.timeout
        started = time.perf_counter()
        try:
            if timeout is None:
                result = operation()
                if inspect.isawaitable(result):
                    result = await result
            else:
                async with asyncio.timeout(timeout):
                    result = operation()
                    if inspect.isawaitable(result):
                        result = await result
        except builtins.TimeoutError as e:
            duration = time.perf_counter() - started
            with self._lock:
                self._stats.total_timeouts += 1
            self.record_failure(e, duration)
            if isinstance(e, TimeoutError):
                raise
            raise TimeoutError(
                f"Circuit '{self.name}' call timed out after {timeout}s",
                timeout=timeout,
                cause=e,
            ) from e
        except Exception as e:
            self.record_failure(e, time.perf_counter() - started)
            raise
        self.record_success(time.perf_counter() - started)
        return result

    async def run(self, operation: Callable[[], Any], *, timeout: float | None = None) -> Result[Any]:
        """Like :meth:`execute` but returns ``Ok`` / ``Err``."""
        try:
            return Ok(await self.execute(operation, timeout=timeout))
        except Exception as e:
            return Err(e)

    def call(self, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Execute a synchronous function through the circuit breaker."""
        if not self.allow_request():
            raise self._reject()

        started = time.perf_counter()
        try:
            result = func(*args, **kwargs)
        except Exception as e:
            self.record_failure(e, time.perf_counter() - started)
            raise
        self.record_success(time.perf_counter() - started)
        return result

    # ── Reporting ────────────────────────────────────────────────────

    def get_state(self) -> dict[str, Any]:
        with self._lock:
            next_attempt = None
            if self._state == CircuitState.OPEN and self._next_attempt is not None:
                next_attempt = max(0.0, self._next_attempt - self._clock())
            return {
                "name": self.name,
                "state": self._state.value,
                "failureCount": self.failure_count,
                "successCount": self.success_count,
                "requestCount": self.request_count,
                "failureRate": self.failure_rate,
                "recentFailureRate": self.recent_failure_rate,
                "lastFailureTime": self._last_failure_time.isoformat() if self._last_failure_time else None,
                "lastSuccessTime": self._last_success_time.isoformat() if self._last_success_time else None,
                "nextAttempt": next_attempt,
                "stats": self._stats.to_dict(),
            }

    def get_stats(self) -> dict[str, Any]:
        state = self.get_state()
        state["averageResponseTime"] = self._stats.average_response_time
        state["p95ResponseTime"] = self._stats.percentile(95)
        state["p99ResponseTime"] = self._stats.percentile(99)
        return state

    def _emit(self, name: str, **payload: Any) -> None:
        if self._emitter is not None:
            self._emitter.emit(name, circuit=self.name, **payload)

    def __repr__(self) -> str:
        return f"CircuitBreaker(name={self.name!r}, state={self._state.value})"


class CircuitBreakerRegistry:
    """Registry of named circuit breakers with a background window cleanup.

    Example:
        >>> registry = CircuitBreakerRegistry(defaults={"minimum_requests": 5})
        >>> await registry.start()
        >>> breaker = registry.get_or_create("warehouse")
        >>> await registry.shutdown()
    """

    def __init__(
        self,
        *,
        defaults: dict[str, Any] | None = None,
        emitter: EventEmitter | None = None,
        cleanup_interval: float = 30.0,
    ) -> None:
        self._breakers: dict[str, CircuitBreaker] = {}
        self._defaults = dict(defaults or {})
        self._emitter = emitter
        self._cleanup_interval = cleanup_interval
        self._lock = threading.RLock()
        self._task: asyncio.Task | None = None

    @classmethod
    def from_settings(cls, settings: Any, **kwargs: Any) -> CircuitBreakerRegistry:
        defaults = {
            "failure_threshold": settings.breaker_failure_threshold,
            "minimum_requests": settings.breaker_minimum_requests,
            "reset_timeout": settings.breaker_reset_timeout,
            "success_threshold": settings.breaker_success_threshold,
            "monitoring_period": settings.breaker_monitoring_period,
            "window_size": settings.breaker_window_size,
        }
        return cls(defaults=defaults, **kwargs)

    def get(self, name: str) -> CircuitBreaker | None:
        with self._lock:
            return self._breakers.get(name)

    def get_or_create(self, name: str, **options: Any) -> CircuitBreaker:
        with self._lock:
            if name not in self._breakers:
                merged = {**self._defaults, **options}
                merged.setdefault("emitter", self._emitter)
                self._breakers[name] = CircuitBreaker(name, **merged)
            return self._breakers[name]

    def list_all(self) -> list[str]:
        with self._lock:
            return list(self._breakers.keys())

    def remove(self, name: str) -> None:
        with self._lock:
            self._breakers.pop(name, None)

    def all_states(self) -> dict[str, dict[str, Any]]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.get_state() for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            for breaker in self._breakers.values():
                breaker.reset()

    def cleanup_all(self) -> int:
        with self._lock:
            breakers = list(self._breakers.values())
        return sum(b.cleanup() for b in breakers)

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._cleanup_loop(), name="circuit-breaker-cleanup")

    async def shutdown(self) -> None:
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def _cleanup_loop(self) -> None:
        while True:
            await asyncio.sleep(self._cleanup_interval)
            removed = self.cleanup_all()
            if removed:
                logger.debug("circuit.window_cleanup", removed=removed)


__all__ = [
    "CircuitState",
    "CircuitStats",
    "RequestRecord",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
]
