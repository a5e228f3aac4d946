"""Retry with pluggable backoff, jitter, per-attempt timeout and metrics.

Example:
    >>> policy = RetryPolicy(max_retries=3, initial_delay=0.01, factor=2, jitter=False)
    >>> [policy.strategy().next_delay(a) for a in range(3)]
    [0.01, 0.02, 0.04]
    >>> manager = RetryManager(policy)
    >>> value = await manager.execute(lambda: fetch_page(3))
"""

from __future__ import annotations

import asyncio
import builtins
import functools
import inspect
import random
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, TypeVar

from mapflow.core.cancellation import CancellationToken
from mapflow.core.classifier import ErrorClassifier
from mapflow.core.errors import (
    CancelledError,
    MapflowError,
    RetryExhaustedError,
    TimeoutError,
)
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.core.result import Err, Ok, Result

logger = get_logger(__name__)

T = TypeVar("T")

JITTER_LOW = 0.9
JITTER_HIGH = 1.1


class BackoffPolicy(str, Enum):
    """How the delay grows between attempts."""

    FIXED_DELAY = "FIXED_DELAY"
    LINEAR_BACKOFF = "LINEAR_BACKOFF"
    EXPONENTIAL_BACKOFF = "EXPONENTIAL_BACKOFF"
    FIBONACCI_BACKOFF = "FIBONACCI_BACKOFF"


class BackoffStrategy(ABC):
    """Abstract base for backoff strategies."""

    @abstractmethod
    def base_delay(self, attempt: int) -> float:
        """Delay in seconds before retry ``attempt`` (0 = first retry), no jitter."""
        ...

    jitter: bool = False

    def next_delay(self, attempt: int) -> float:
        """Delay including jitter, a uniform factor in [0.9, 1.1]."""
        delay = self.base_delay(attempt)
        if self.jitter:
            delay *= random.uniform(JITTER_LOW, JITTER_HIGH)
        return max(0.0, delay)


@dataclass
class FixedDelay(BackoffStrategy):
    """Constant delay between retries."""

    delay: float = 1.0
    jitter: bool = False

    def base_delay(self, attempt: int) -> float:
        return self.delay


@dataclass
class LinearBackoff(BackoffStrategy):
    """Delay = min(initial_delay * (attempt + 1), max_delay)."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (attempt + 1), self.max_delay)


@dataclass
class ExponentialBackoff(BackoffStrategy):
    """Delay = min(initial_delay * factor ** attempt, max_delay)."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = False

    def base_delay(self, attempt: int) -> float:
        return min(self.initial_delay * (self.factor ** attempt), self.max_delay)


@dataclass
class FibonacciBackoff(BackoffStrategy):
    """Delay = min(initial_delay * fib(attempt + 1), max_delay)."""

    initial_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = False

    def base_delay(self, attempt: int) -> float:
        a, b = 1, 1
        for _ in range(attempt):
            a, b = b, a + b
        return min(self.initial_delay * a, self.max_delay)


@dataclass
class RetryPolicy:
    """Retry configuration.

    Attributes:
        max_retries: Retries after the first attempt (attempts = max_retries + 1)
        initial_delay: First delay in seconds
        max_delay: Delay cap in seconds
        factor: Exponential growth factor
        jitter: Multiply each delay by a uniform factor in [0.9, 1.1]
        policy: Backoff shape
        timeout: Per-attempt timeout in seconds (None = unbounded)
        retryable_errors: Substrings matched against the error message;
            empty means every error is retryable
        retry_on_timeout: Whether per-attempt timeouts are retried
        on_retry: Callback ``(error, attempt_number)`` before each retry
    """

    max_retries: int = 3
    initial_delay: float = 1.0
    max_delay: float = 30.0
    factor: float = 2.0
    jitter: bool = True
    policy: BackoffPolicy = BackoffPolicy.EXPONENTIAL_BACKOFF
    timeout: float | None = None
    retryable_errors: list[str] = field(default_factory=list)
    retry_on_timeout: bool = True
    on_retry: Callable[[BaseException, int], Any] | None = None

    def strategy(self) -> BackoffStrategy:
        if self.policy == BackoffPolicy.FIXED_DELAY:
            return FixedDelay(delay=self.initial_delay, jitter=self.jitter)
        if self.policy == BackoffPolicy.LINEAR_BACKOFF:
            return LinearBackoff(self.initial_delay, self.max_delay, jitter=self.jitter)
        if self.policy == BackoffPolicy.FIBONACCI_BACKOFF:
            return FibonacciBackoff(self.initial_delay, self.max_delay, jitter=self.jitter)
        return ExponentialBackoff(self.initial_delay, self.max_delay, self.factor, jitter=self.jitter)

    def with_overrides(self, **kwargs: Any) -> RetryPolicy:
        return replace(self, **kwargs)

    @classmethod
    def from_settings(cls, settings: Any) -> RetryPolicy:
        return cls(
            max_retries=settings.retry_max_retries,
            initial_delay=settings.retry_initial_delay,
            max_delay=settings.retry_max_delay,
            factor=settings.retry_factor,
            jitter=settings.retry_jitter,
        )


@dataclass
class RetryMetrics:
    """Counters across every operation run by one manager."""

    total_attempts: int = 0
    successful_attempts: int = 0
    failed_attempts: int = 0
    total_retries: int = 0
    retry_successes: int = 0
    retry_failures: int = 0

    @property
    def success_rate(self) -> float:
        """Operations that eventually succeeded, as a percentage."""
        total = self.successful_attempts + self.failed_attempts
        return (self.successful_attempts / total) * 100 if total else 0.0

    @property
    def retry_success_rate(self) -> float:
        """Retried operations that eventually succeeded, as a percentage."""
        total = self.retry_successes + self.retry_failures
        return (self.retry_successes / total) * 100 if total else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalAttempts": self.total_attempts,
            "successfulAttempts": self.successful_attempts,
            "failedAttempts": self.failed_attempts,
            "totalRetries": self.total_retries,
            "retrySuccesses": self.retry_successes,
            "retryFailures": self.retry_failures,
            "successRate": self.success_rate,
            "retrySuccessRate": self.retry_success_rate,
        }


class RetryManager:
    """Run operations with bounded retries.

    Operations are zero-argument callables returning either a value or an
    awaitable. ``execute`` raises on final failure, ``run`` returns an
    :class:`~mapflow.core.result.Ok` / :class:`~mapflow.core.result.Err`.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        *,
        classifier: ErrorClassifier | None = None,
        emitter: EventEmitter | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self._classifier = classifier
        self._emitter = emitter
        self._metrics = RetryMetrics()

    # ── Classification ───────────────────────────────────────────────

    def is_retryable(self, error: BaseException, policy: RetryPolicy) -> bool:
        if isinstance(error, CancelledError):
            return False
        if isinstance(error, TimeoutError) and not policy.retry_on_timeout:
            return False
        if policy.retryable_errors:
            message = str(error).lower()
            return any(s.lower() in message for s in policy.retryable_errors)
        if isinstance(error, MapflowError):
            return error.retryable
        if self._classifier is not None:
            return self._classifier.classify(error).is_retryable
        return True

    # ── Execution ────────────────────────────────────────────────────

    async def _attempt(self, operation: Callable[[], Any], policy: RetryPolicy) -> Any:
        async def call() -> Any:
            result = operation()
            if inspect.isawaitable(result):
                result = await result
            return result

        if policy.timeout is None:
            return await call()
        try:
            async with asyncio.timeout(policy.timeout):
                return await call()
        except builtins.TimeoutError as e:
            if isinstance(e, TimeoutError):
                raise
            raise TimeoutError(
                f"Attempt timed out after {policy.timeout}s",
                timeout=policy.timeout,
                cause=e,
            ) from e

    async def execute(
        self,
        operation: Callable[[], Any],
        *,
        policy: RetryPolicy | None = None,
        token: CancellationToken | None = None,
        name: str = "operation",
    ) -> Any:
        """Run ``operation`` under ``policy`` (or the manager's default).

        Raises:
            RetryExhaustedError: every attempt failed
            Exception: a non-retryable error, re-raised unchanged
            CancelledError: the token fired
        """
        policy = policy or self.policy
        strategy = policy.strategy()
        retries = 0

        while True:
            if token is not None:
                token.raise_if_cancelled()
            self._metrics.total_attempts += 1
            try:
                value = await self._attempt(operation, policy)
            except Exception as e:
                if not self.is_retryable(e, policy):
                    self._record_failure(retries)
                    raise
                if retries >= policy.max_retries:
                    self._record_failure(retries)
                    attempts = retries + 1
                    logger.warning("retry.exhausted", operation=name, attempts=attempts, error=str(e))
                    self._emit("retryExhausted", operation=name, attempts=attempts, error=str(e))
                    raise RetryExhaustedError(
                        f"Operation failed after {attempts} attempts: {e}",
                        attempts=attempts,
                        last_error=e,
                    ) from e

                delay = strategy.next_delay(retries)
                retries += 1
                self._metrics.total_retries += 1
                logger.info("retry.scheduled", operation=name, attempt=retries, delay=delay, error=str(e))
                self._emit("retry", operation=name, attempt=retries, delay=delay, error=str(e))
                if policy.on_retry is not None:
                    policy.on_retry(e, retries)
                if token is not None:
                    await token.sleep(delay)
                else:
                    await asyncio.sleep(delay)
                continue

            self._metrics.successful_attempts += 1
            if retries:
                self._metrics.retry_successes += 1
                self._emit("retrySuccess", operation=name, attempts=retries + 1)
            return value

    async def run(
        self,
        operation: Callable[[], Any],
        *,
        policy: RetryPolicy | None = None,
        token: CancellationToken | None = None,
        name: str = "operation",
    ) -> Result[Any]:
        """Like :meth:`execute` but returns the outcome instead of raising."""
        try:
            return Ok(await self.execute(operation, policy=policy, token=token, name=name))
        except Exception as e:
            return Err(e)

    def execute_sync(
        self,
        operation: Callable[[], T],
        *,
        policy: RetryPolicy | None = None,
        name: str = "operation",
    ) -> T:
        """Blocking variant for synchronous callables (no per-attempt timeout)."""
        policy = policy or self.policy
        strategy = policy.strategy()
        retries = 0
        while True:
            self._metrics.total_attempts += 1
            try:
                value = operation()
            except Exception as e:
                if not self.is_retryable(e, policy):
                    self._record_failure(retries)
                    raise
                if retries >= policy.max_retries:
                    self._record_failure(retries)
                    self._emit("retryExhausted", operation=name, attempts=retries + 1, error=str(e))
                    raise RetryExhaustedError(
                        f"Operation failed after {retries + 1} attempts: {e}",
                        attempts=retries + 1,
                        last_error=e,
                    ) from e
                delay = strategy.next_delay(retries)
                retries += 1
                self._metrics.total_retries += 1
                self._emit("retry", operation=name, attempt=retries, delay=delay, error=str(e))
                if policy.on_retry is not None:
                    policy.on_retry(e, retries)
                time.sleep(delay)
                continue
            self._metrics.successful_attempts += 1
            if retries:
                self._metrics.retry_successes += 1
                self._emit("retrySuccess", operation=name, attempts=retries + 1)
            return value

    # ── Metrics ──────────────────────────────────────────────────────

    def _record_failure(self, retries: int) -> None:
        self._metrics.failed_attempts += 1
        if retries:
            self._metrics.retry_failures += 1

    def _emit(self, name: str, **payload: Any) -> None:
        if self._emitter is not None:
            self._emitter.emit(name, **payload)

    def metrics(self) -> RetryMetrics:
        return self._metrics

    def reset_metrics(self) -> None:
        self._metrics = RetryMetrics()


def with_retry(
    policy: RetryPolicy | None = None,
) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
    """Decorator factory adding retry logic to sync or async functions.

    Example:
        >>> @with_retry(RetryPolicy(max_retries=2, initial_delay=0.1))
        ... async def flaky_read(table: str) -> list[dict]:
        ...     return await adapter.read_data(table)
    """
    manager = RetryManager(policy or RetryPolicy())

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        if inspect.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args: Any, **kwargs: Any) -> Any:
                return await manager.execute(lambda: func(*args, **kwargs), name=func.__name__)
            async_wrapper.retry_manager = manager  # type: ignore[attr-defined]
            return async_wrapper

        @functools.wraps(func)
        def sync_wrapper(*args: Any, **kwargs: Any) -> Any:
            return manager.execute_sync(lambda: func(*args, **kwargs), name=func.__name__)
        sync_wrapper.retry_manager = manager  # type: ignore[attr-defined]
        return sync_wrapper

    return decorator


__all__ = [
    "BackoffPolicy",
    "BackoffStrategy",
    "FixedDelay",
    "LinearBackoff",
    "ExponentialBackoff",
    "FibonacciBackoff",
    "RetryPolicy",
    "RetryMetrics",
    "RetryManager",
    "with_retry",
]
