"""Retry and circuit-breaker primitives."""

from mapflow.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
    CircuitStats,
    RequestRecord,
)
from mapflow.resilience.retry import (
    BackoffPolicy,
    BackoffStrategy,
    ExponentialBackoff,
    FibonacciBackoff,
    FixedDelay,
    LinearBackoff,
    RetryManager,
    RetryMetrics,
    RetryPolicy,
    with_retry,
)

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "CircuitStats",
    "RequestRecord",
    "BackoffPolicy",
    "BackoffStrategy",
    "ExponentialBackoff",
    "FibonacciBackoff",
    "FixedDelay",
    "LinearBackoff",
    "RetryManager",
    "RetryMetrics",
    "RetryPolicy",
    "with_retry",
]
