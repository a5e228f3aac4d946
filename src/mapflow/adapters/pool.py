"""Connection pool for adapter clients, one pool per external system.

WHY
───
Adapters and the workflow engine client are expensive to create
(authentication, TLS) and external systems limit concurrent sessions.
Each system gets a bounded pool with its own circuit breaker so a
failing system is rejected fast while healthy ones keep working.

ARCHITECTURE
────────────
::

    ConnectionPool(connection_factory)
      ├── .acquire(system_id, config)     ─ idle → new (< max) → FIFO waiter
      ├── .release(system_id, conn)       ─ hand to head waiter or back to idle
      ├── .execute_with_retry(...)        ─ breaker + classify + backoff
      ├── .health_check()                 ─ probe idle clients, drop dead ones
      ├── .cleanup_idle()                 ─ close idle beyond idle_timeout
      ├── .pool_stats() / .breaker_stats()
      └── .start() / .shutdown()          ─ background health + cleanup tasks

    Every connection is either active or idle, never both.

Example::

    pool = ConnectionPool(lambda system_id, cfg: WorkflowEngineClient(**cfg))
    await pool.start()
    status = await pool.execute_with_retry("nifi-1", cfg, lambda c: c.get_flow_status(), "flow_status")
    await pool.shutdown()
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import inspect
import time
import uuid
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from mapflow.config.settings import MapflowSettings
from mapflow.core.cancellation import CancellationToken
from mapflow.core.classifier import ErrorClassifier
from mapflow.core.errors import (
    AcquireTimeoutError,
    CancelledError,
    CircuitOpenError,
    PoolError,
    RetryExhaustedError,
)
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry

logger = get_logger(__name__)

UNHEALTHY_AFTER = 3
DESTROY_AFTER = 5

ConnectionFactory = Callable[[str, dict[str, Any]], Any]


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


@dataclass(frozen=True)
class PoolConfig:
    """Pool limits. Durations are seconds."""

    min_connections: int = 1
    max_connections: int = 5
    acquire_timeout: float = 30.0
    idle_timeout: float = 300.0
    health_check_interval: float = 60.0
    max_retries: int = 3
    retry_delay: float = 1.0
    breaker_failure_threshold: float = 50.0
    breaker_minimum_requests: int = 10
    breaker_reset_timeout: float = 60.0
    breaker_timeout: float | None = None

    @classmethod
    def from_settings(cls, settings: MapflowSettings) -> PoolConfig:
        return cls(
            min_connections=settings.pool_min_connections,
            max_connections=settings.pool_max_connections,
            acquire_timeout=settings.pool_acquire_timeout,
            idle_timeout=settings.pool_idle_timeout,
            health_check_interval=settings.pool_health_check_interval,
            max_retries=settings.pool_max_retries,
            retry_delay=settings.pool_retry_delay,
            breaker_failure_threshold=settings.breaker_failure_threshold,
            breaker_minimum_requests=settings.breaker_minimum_requests,
            breaker_reset_timeout=settings.breaker_reset_timeout,
        )

    def merged(self, overrides: dict[str, Any] | None) -> PoolConfig:
        """Apply matching keys from a system config (snake_case or camelCase)."""
        if not overrides:
            return self
        updates = {}
        for f in dataclasses.fields(self):
            head, *rest = f.name.split("_")
            camel = head + "".join(p.title() for p in rest)
            for key in (f.name, camel):
                if key in overrides:
                    updates[f.name] = overrides[key]
        return dataclasses.replace(self, **updates) if updates else self


@dataclass(eq=False)
class Connection:
    id: str
    system_id: str
    client: Any
    created: float = field(default_factory=time.monotonic)
    last_used: float = field(default_factory=time.monotonic)
    is_healthy: bool = True
    consecutive_failures: int = 0

    def record_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= UNHEALTHY_AFTER:
            self.is_healthy = False

    def record_success(self) -> None:
        self.consecutive_failures = 0
        self.is_healthy = True


@dataclass
class PoolStats:
    created: int = 0
    destroyed: int = 0
    acquired: int = 0
    released: int = 0
    failed: int = 0
    timeouts: int = 0

    def to_dict(self) -> dict[str, int]:
        return dataclasses.asdict(self)


class _SystemPool:
    def __init__(self, system_id: str, config: PoolConfig, system_config: dict[str, Any], breaker: CircuitBreaker):
        self.system_id = system_id
        self.config = config
        self.system_config = system_config
        self.breaker = breaker
        self.lock = asyncio.Lock()
        self.idle: deque[Connection] = deque()
        self.active: dict[str, Connection] = {}
        self.waiters: deque[asyncio.Future[Connection | None]] = deque()
        self.creating = 0
        self.stats = PoolStats()

    @property
    def size(self) -> int:
        return len(self.idle) + len(self.active) + self.creating

    def take_idle(self) -> Connection | None:
        for conn in self.idle:
            if conn.is_healthy:
                self.idle.remove(conn)
                return conn
        return None

    def activate(self, conn: Connection) -> Connection:
        conn.last_used = time.monotonic()
        self.active[conn.id] = conn
        self.stats.acquired += 1
        return conn


class ConnectionPool:
    """Per-system connection pools sharing one factory.

    Args:
        connection_factory: ``factory(system_id, config)`` returning a
            client (sync or async). Clients may implement
            ``authenticate()``, ``is_connected()`` and ``aclose()`` or
            ``disconnect()``; each is optional.
        config: Default limits; per-system overrides come from the
            ``config`` passed to :meth:`acquire`.
        classifier: Decides which failures are retried.
        breakers: Registry holding one breaker per system.
    """

    def __init__(
        self,
        connection_factory: ConnectionFactory,
        *,
        config: PoolConfig | None = None,
        classifier: ErrorClassifier | None = None,
        emitter: EventEmitter | None = None,
        breakers: CircuitBreakerRegistry | None = None,
    ) -> None:
        self._factory = connection_factory
        self.config = config or PoolConfig()
        self.classifier = classifier or ErrorClassifier()
        self.emitter = emitter or EventEmitter(source="pool")
        self.breakers = breakers or CircuitBreakerRegistry(emitter=self.emitter)
        self._pools: dict[str, _SystemPool] = {}
        self._tasks: list[asyncio.Task] = []
        self._closing: set[asyncio.Task] = set()

    # ── Pools ────────────────────────────────────────────────────────

    def _pool(self, system_id: str, system_config: dict[str, Any] | None = None) -> _SystemPool:
        pool = self._pools.get(system_id)
        if pool is None:
            config = self.config.merged(system_config)
            breaker = self.breakers.get_or_create(
                f"pool:{system_id}",
                failure_threshold=config.breaker_failure_threshold,
                minimum_requests=config.breaker_minimum_requests,
                reset_timeout=config.breaker_reset_timeout,
                timeout=config.breaker_timeout,
            )
            pool = _SystemPool(system_id, config, dict(system_config or {}), breaker)
            self._pools[system_id] = pool
            logger.info("pool.created", system_id=system_id, max_connections=config.max_connections)
        return pool

    async def _create(self, pool: _SystemPool) -> Connection:
        client = await _maybe_await(self._factory(pool.system_id, pool.system_config))
        authenticate = getattr(client, "authenticate", None)
        if callable(authenticate):
            await _maybe_await(authenticate())
        conn = Connection(id=f"{pool.system_id}-{uuid.uuid4().hex[:12]}", system_id=pool.system_id, client=client)
        pool.stats.created += 1
        self.emitter.emit("connect", system_id=pool.system_id, connection_id=conn.id)
        logger.info("pool.connection_created", system_id=pool.system_id, connection_id=conn.id)
        return conn

    async def _destroy(self, pool: _SystemPool, conn: Connection) -> None:
        pool.stats.destroyed += 1
        close = getattr(conn.client, "aclose", None) or getattr(conn.client, "disconnect", None)
        if callable(close):
            try:
                await _maybe_await(close())
            except Exception as e:
                logger.warning("pool.close_failed", connection_id=conn.id, error=str(e))
        self.emitter.emit("disconnect", system_id=pool.system_id, connection_id=conn.id)
        logger.debug("pool.connection_destroyed", system_id=pool.system_id, connection_id=conn.id)

    # ── Acquire / release ────────────────────────────────────────────

    async def acquire(
        self,
        system_id: str,
        config: dict[str, Any] | None = None,
        *,
        token: CancellationToken | None = None,
    ) -> Connection:
        """Return a healthy connection, creating one under the limit or waiting in FIFO order.

        Raises:
            AcquireTimeoutError: ``acquire_timeout`` elapsed while waiting.
            CancelledError: ``token`` fired while waiting.
        """
        pool = self._pool(system_id, config)
        deadline = time.monotonic() + pool.config.acquire_timeout

        while True:
            waiter: asyncio.Future[Connection | None] | None = None
            async with pool.lock:
                conn = pool.take_idle()
                if conn is not None:
                    return pool.activate(conn)
                if pool.size < pool.config.max_connections:
                    pool.creating += 1
                else:
                    waiter = asyncio.get_running_loop().create_future()
                    pool.waiters.append(waiter)

            if waiter is None:
                try:
                    conn = await self._create(pool)
                except Exception:
                    pool.stats.failed += 1
                    raise
                finally:
                    pool.creating -= 1
                return pool.activate(conn)

            conn = await self._wait(pool, waiter, deadline, token)
            if conn is not None:
                return conn

    async def _wait(
        self,
        pool: _SystemPool,
        waiter: asyncio.Future[Connection | None],
        deadline: float,
        token: CancellationToken | None,
    ) -> Connection | None:
        pending: set[asyncio.Future[Any]] = {waiter}
        cancel_task = asyncio.ensure_future(token.wait()) if token is not None else None
        if cancel_task is not None:
            pending.add(cancel_task)
        try:
            await asyncio.wait(pending, timeout=max(0.0, deadline - time.monotonic()), return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            # A connection handed over before the cancellation must go back.
            if waiter.done() and not waiter.cancelled() and isinstance(waiter.result(), Connection):
                self.release(pool.system_id, waiter.result())
            raise
        finally:
            if cancel_task is not None:
                cancel_task.cancel()
            if not waiter.done():
                waiter.cancel()
                with contextlib.suppress(ValueError):
                    pool.waiters.remove(waiter)

        if waiter.cancelled():
            if token is not None and token.cancelled:
                raise CancelledError(f"Acquire for {pool.system_id} cancelled: {token.reason}")
            pool.stats.timeouts += 1
            logger.warning("pool.acquire_timeout", system_id=pool.system_id, timeout=pool.config.acquire_timeout)
            raise AcquireTimeoutError(
                f"Connection acquire timeout for system {pool.system_id}",
                timeout=pool.config.acquire_timeout,
            ).with_context(system_id=pool.system_id)
        if waiter.exception() is not None:
            raise waiter.exception()
        return waiter.result()

    def release(self, system_id: str, connection: Connection) -> None:
        """Return ``connection``; the head waiter gets it first."""
        pool = self._pools.get(system_id)
        if pool is None or pool.active.pop(connection.id, None) is None:
            logger.warning("pool.release_unknown", system_id=system_id, connection_id=connection.id)
            return
        connection.last_used = time.monotonic()
        pool.stats.released += 1

        if not connection.is_healthy:
            task = asyncio.ensure_future(self._destroy(pool, connection))
            self._closing.add(task)
            task.add_done_callback(self._closing.discard)
            self._wake(pool, None)
            return

        while pool.waiters:
            waiter = pool.waiters.popleft()
            if not waiter.done():
                waiter.set_result(pool.activate(connection))
                return
        pool.idle.append(connection)

    @staticmethod
    def _wake(pool: _SystemPool, value: Connection | None) -> None:
        while pool.waiters:
            waiter = pool.waiters.popleft()
            if not waiter.done():
                waiter.set_result(value)
                return

    # ── Execution ────────────────────────────────────────────────────

    async def execute_with_retry(
        self,
        system_id: str,
        config: dict[str, Any] | None,
        operation: Callable[[Any], Any],
        name: str = "operation",
        *,
        token: CancellationToken | None = None,
    ) -> Any:
        """Run ``operation(client)`` through the system's breaker with retries.

        Only retryable classifications are retried; the delay before retry
        ``n`` is ``retry_delay * 2 ** (n - 1)``.

        Raises:
            CircuitOpenError: The breaker rejected the call; nothing was attempted.
            RetryExhaustedError: Every attempt failed with a retryable error.
        """
        pool = self._pool(system_id, config)
        max_retries = max(1, pool.config.max_retries)
        last_error: BaseException | None = None

        for attempt in range(1, max_retries + 1):
            try:
                return await pool.breaker.execute(lambda: self._attempt(pool, config, operation, token))
            except (CircuitOpenError, CancelledError):
                pool.stats.failed += 1
                raise
            except Exception as e:
                last_error = e
                classification = self.classifier.classify(e, {"system_id": system_id, "operation": name})
                logger.warning(
                    "pool.attempt_failed",
                    system_id=system_id,
                    operation=name,
                    attempt=attempt,
                    max_retries=max_retries,
                    kind=classification.type.value,
                    error=str(e),
                )
                if not classification.is_retryable:
                    pool.stats.failed += 1
                    raise
                if attempt < max_retries:
                    delay = pool.config.retry_delay * 2 ** (attempt - 1)
                    if token is not None:
                        await token.sleep(delay)
                    else:
                        await asyncio.sleep(delay)

        pool.stats.failed += 1
        raise RetryExhaustedError(
            f"{name} failed after {max_retries} attempts for system {system_id}: {last_error}",
            attempts=max_retries,
            last_error=last_error,
        ).with_context(system_id=system_id)

    async def _attempt(
        self,
        pool: _SystemPool,
        config: dict[str, Any] | None,
        operation: Callable[[Any], Any],
        token: CancellationToken | None,
    ) -> Any:
        conn = await self.acquire(pool.system_id, config, token=token)
        try:
            result = await _maybe_await(operation(conn.client))
        except Exception:
            conn.record_failure()
            if not conn.is_healthy:
                logger.warning("pool.connection_unhealthy", system_id=pool.system_id, connection_id=conn.id)
            raise
        else:
            conn.record_success()
            return result
        finally:
            self.release(pool.system_id, conn)

    # ── Maintenance ──────────────────────────────────────────────────

    async def health_check(self) -> dict[str, int]:
        """Probe idle connections; destroy those failing ``DESTROY_AFTER`` times in a row.

        Returns healthy counts per system.
        """
        healthy: dict[str, int] = {}
        for system_id, pool in list(self._pools.items()):
            async with pool.lock:
                idle = list(pool.idle)
            for conn in idle:
                probe = getattr(conn.client, "is_connected", None)
                try:
                    ok = bool(await _maybe_await(probe())) if callable(probe) else True
                except Exception as e:
                    ok = False
                    logger.warning("pool.health_check_failed", connection_id=conn.id, error=str(e))
                if ok:
                    conn.record_success()
                else:
                    conn.is_healthy = False
                    conn.consecutive_failures += 1

            async with pool.lock:
                dead = [c for c in pool.idle if not c.is_healthy and c.consecutive_failures >= DESTROY_AFTER]
                for conn in dead:
                    pool.idle.remove(conn)
            for conn in dead:
                await self._destroy(pool, conn)
                logger.info("pool.removed_unhealthy", system_id=system_id, connection_id=conn.id)
            healthy[system_id] = sum(1 for c in [*pool.idle, *pool.active.values()] if c.is_healthy)
        return healthy

    async def cleanup_idle(self) -> int:
        """Close connections idle longer than ``idle_timeout``, keeping ``min_connections``."""
        removed = 0
        now = time.monotonic()
        for pool in list(self._pools.values()):
            async with pool.lock:
                expired = [c for c in pool.idle if now - c.last_used > pool.config.idle_timeout]
                doomed = []
                for conn in expired:
                    if pool.size - len(doomed) <= pool.config.min_connections:
                        break
                    doomed.append(conn)
                for conn in doomed:
                    pool.idle.remove(conn)
            for conn in doomed:
                await self._destroy(pool, conn)
            removed += len(doomed)
        if removed:
            logger.debug("pool.idle_cleanup", removed=removed)
        return removed

    # ── Stats ────────────────────────────────────────────────────────

    def pool_stats(self, system_id: str) -> dict[str, Any] | None:
        pool = self._pools.get(system_id)
        if pool is None:
            return None
        connections = [*pool.idle, *pool.active.values()]
        return {
            "systemId": system_id,
            "totalConnections": len(connections),
            "activeConnections": len(pool.active),
            "idleConnections": len(pool.idle),
            "healthyConnections": sum(1 for c in connections if c.is_healthy),
            "waitingRequests": sum(1 for w in pool.waiters if not w.done()),
            "stats": pool.stats.to_dict(),
        }

    def all_pool_stats(self) -> dict[str, dict[str, Any]]:
        return {system_id: self.pool_stats(system_id) for system_id in self._pools}

    def breaker_stats(self, system_id: str | None = None) -> dict[str, Any] | None:
        if system_id is not None:
            pool = self._pools.get(system_id)
            return pool.breaker.get_stats() if pool is not None else None
        return {sid: pool.breaker.get_stats() for sid, pool in self._pools.items()}

    # ── Lifecycle ────────────────────────────────────────────────────

    async def remove_pool(self, system_id: str) -> None:
        """Close every connection of ``system_id`` and fail its waiters."""
        pool = self._pools.pop(system_id, None)
        if pool is None:
            return
        async with pool.lock:
            connections = [*pool.idle, *pool.active.values()]
            pool.idle.clear()
            pool.active.clear()
            while pool.waiters:
                waiter = pool.waiters.popleft()
                if not waiter.done():
                    waiter.set_exception(PoolError(f"Pool removed for system {system_id}"))
        for conn in connections:
            await self._destroy(pool, conn)
        self.breakers.remove(pool.breaker.name)
        logger.info("pool.removed", system_id=system_id, closed=len(connections))

    async def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._every(self.config.health_check_interval, self.health_check), name="pool-health"),
            asyncio.create_task(self._every(self.config.idle_timeout, self.cleanup_idle), name="pool-cleanup"),
        ]
        logger.info("pool.started")

    async def shutdown(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks = []
        for system_id in list(self._pools):
            await self.remove_pool(system_id)
        if self._closing:
            await asyncio.gather(*self._closing, return_exceptions=True)
        logger.info("pool.shutdown")

    @staticmethod
    async def _every(interval: float, fn: Callable[[], Any]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await fn()
            except Exception as e:
                logger.error("pool.maintenance_failed", task=getattr(fn, "__name__", "task"), error=str(e))

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)


__all__ = ["Connection", "ConnectionFactory", "ConnectionPool", "PoolConfig", "PoolStats"]
