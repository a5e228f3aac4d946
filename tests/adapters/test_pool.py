"""Tests for the per-system connection pool."""

import asyncio

import pytest

from mapflow.adapters.pool import DESTROY_AFTER, ConnectionPool, PoolConfig
from mapflow.core.cancellation import CancellationToken
from mapflow.core.errors import (
    AcquireTimeoutError,
    CancelledError,
    CircuitOpenError,
    NetworkError,
    PoolError,
    RetryExhaustedError,
    ValidationError,
)
from mapflow.resilience.circuit_breaker import CircuitState


class FakeClient:
    def __init__(self, system_id, config):
        self.system_id = system_id
        self.config = config
        self.authenticated = False
        self.connected = True
        self.closed = False

    async def authenticate(self):
        self.authenticated = True

    def is_connected(self):
        return self.connected

    async def aclose(self):
        self.closed = True


class Factory:
    def __init__(self):
        self.clients = []

    def __call__(self, system_id, config):
        client = FakeClient(system_id, config)
        self.clients.append(client)
        return client


FAST = PoolConfig(max_connections=2, acquire_timeout=0.05, retry_delay=0.001, max_retries=3)


@pytest.fixture
def factory():
    return Factory()


@pytest.fixture
def pool(factory, emitter):
    return ConnectionPool(factory, config=FAST, emitter=emitter)


class TestAcquireRelease:
    @pytest.mark.asyncio
    async def test_create_authenticate_and_reuse(self, pool, factory, recorder):
        """New connections are authenticated; released ones are reused."""
        conn = await pool.acquire("nifi", {"url": "http://x"})
        assert conn.client.authenticated
        assert conn.client.config == {"url": "http://x"}
        pool.release("nifi", conn)
        again = await pool.acquire("nifi")
        assert again is conn
        assert len(factory.clients) == 1
        assert recorder.named("connect")[0]["system_id"] == "nifi"

        stats = pool.pool_stats("nifi")
        assert stats["activeConnections"] == 1
        assert stats["idleConnections"] == 0
        assert stats["stats"]["acquired"] == 2
        assert pool.pool_stats("other") is None

    @pytest.mark.asyncio
    async def test_waiter_receives_released_connection(self, pool):
        """At the limit, acquirers wait and get the next released connection."""
        first = await pool.acquire("s")
        second = await pool.acquire("s")
        waiting = asyncio.ensure_future(pool.acquire("s"))
        await asyncio.sleep(0.01)
        assert pool.pool_stats("s")["waitingRequests"] == 1
        pool.release("s", first)
        assert await waiting is first
        assert pool.pool_stats("s")["totalConnections"] == 2
        pool.release("s", second)

    @pytest.mark.asyncio
    async def test_acquire_timeout(self, pool):
        """Waiting longer than acquire_timeout raises."""
        await pool.acquire("s")
        await pool.acquire("s")
        with pytest.raises(AcquireTimeoutError):
            await pool.acquire("s")
        stats = pool.pool_stats("s")
        assert stats["stats"]["timeouts"] == 1
        assert stats["waitingRequests"] == 0

    @pytest.mark.asyncio
    async def test_cancelled_wait(self, factory):
        """A cancelled token ends the wait with CancelledError."""
        pool = ConnectionPool(factory, config=PoolConfig(max_connections=1, acquire_timeout=5.0))
        await pool.acquire("s")
        token = CancellationToken()
        waiting = asyncio.ensure_future(pool.acquire("s", token=token))
        await asyncio.sleep(0.01)
        token.cancel("shutdown")
        with pytest.raises(CancelledError):
            await waiting

    @pytest.mark.asyncio
    async def test_cancelled_waiter_returns_handed_connection(self, factory):
        """A waiter cancelled after the hand-over gives the connection back."""
        pool = ConnectionPool(factory, config=PoolConfig(max_connections=1, acquire_timeout=0.05))
        first = await pool.acquire("s")
        waiting = asyncio.ensure_future(pool.acquire("s"))
        await asyncio.sleep(0.01)
        pool.release("s", first)
        waiting.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiting

        stats = pool.pool_stats("s")
        assert stats["activeConnections"] == 0
        assert stats["idleConnections"] == 1
        assert await pool.acquire("s") is first
        assert len(factory.clients) == 1

    @pytest.mark.asyncio
    async def test_system_overrides(self, pool):
        """camelCase keys in the system config override pool limits."""
        await pool.acquire("big", {"maxConnections": 3, "acquireTimeout": 0.01})
        await pool.acquire("big")
        await pool.acquire("big")
        with pytest.raises(AcquireTimeoutError):
            await pool.acquire("big")

    @pytest.mark.asyncio
    async def test_release_unknown_is_ignored(self, pool):
        """Releasing a connection twice does nothing the second time."""
        conn = await pool.acquire("s")
        pool.release("s", conn)
        pool.release("s", conn)
        pool.release("missing", conn)
        assert pool.pool_stats("s")["stats"]["released"] == 1


class TestExecuteWithRetry:
    @pytest.mark.asyncio
    async def test_retries_retryable_errors(self, pool):
        """Network errors are retried until the operation succeeds."""
        calls = []

        async def flaky(client):
            calls.append(client)
            if len(calls) < 3:
                raise NetworkError("connection reset")
            return "ok"

        assert await pool.execute_with_retry("s", None, flaky, "flaky") == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_non_retryable_raises_immediately(self, pool):
        """Validation errors are not retried."""
        calls = []

        def invalid(client):
            calls.append(client)
            raise ValidationError("bad payload")

        with pytest.raises(ValidationError):
            await pool.execute_with_retry("s", None, invalid)
        assert len(calls) == 1
        assert pool.pool_stats("s")["stats"]["failed"] == 1

    @pytest.mark.asyncio
    async def test_exhaustion(self, pool):
        """Persistent retryable failures end in RetryExhaustedError."""

        def down(client):
            raise NetworkError("down")

        with pytest.raises(RetryExhaustedError) as exc_info:
            await pool.execute_with_retry("s", None, down, "status")
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, NetworkError)
        assert exc_info.value.context.system_id == "s"

    @pytest.mark.asyncio
    async def test_breaker_opens_and_rejects(self, factory):
        """Once the system's breaker opens the operation is not invoked."""
        config = PoolConfig(max_retries=1, breaker_minimum_requests=2, breaker_failure_threshold=50.0)
        pool = ConnectionPool(factory, config=config)
        calls = []

        def down(client):
            calls.append(client)
            raise NetworkError("down")

        for _ in range(2):
            with pytest.raises(RetryExhaustedError):
                await pool.execute_with_retry("s", None, down)
        assert pool.breakers.get("pool:s").state == CircuitState.OPEN
        with pytest.raises(CircuitOpenError):
            await pool.execute_with_retry("s", None, down)
        assert len(calls) == 2
        assert pool.breaker_stats("s") is not None
        assert set(pool.breaker_stats()) == {"s"}

    @pytest.mark.asyncio
    async def test_unhealthy_connection_destroyed_on_release(self, pool, factory):
        """Three consecutive failures mark the connection unhealthy and close it."""

        def invalid(client):
            raise ValidationError("bad")

        for _ in range(3):
            with pytest.raises(ValidationError):
                await pool.execute_with_retry("s", None, invalid)
        await asyncio.sleep(0.01)
        assert factory.clients[0].closed
        stats = pool.pool_stats("s")
        assert stats["totalConnections"] == 0
        assert stats["stats"]["destroyed"] == 1

        assert await pool.execute_with_retry("s", None, lambda c: c) is factory.clients[1]


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_health_check_destroys_dead_connections(self, pool, factory):
        """Idle connections failing the probe repeatedly are removed."""
        conn = await pool.acquire("s")
        pool.release("s", conn)
        conn.client.connected = False
        for _ in range(DESTROY_AFTER - 1):
            assert await pool.health_check() == {"s": 0}
        assert pool.pool_stats("s")["idleConnections"] == 1
        await pool.health_check()
        assert pool.pool_stats("s")["idleConnections"] == 0
        assert factory.clients[0].closed

    @pytest.mark.asyncio
    async def test_health_check_recovers(self, pool):
        """A passing probe resets the failure count."""
        conn = await pool.acquire("s")
        pool.release("s", conn)
        conn.client.connected = False
        await pool.health_check()
        conn.client.connected = True
        assert await pool.health_check() == {"s": 1}
        assert conn.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_cleanup_idle_keeps_minimum(self, factory):
        """Expired idle connections close down to min_connections."""
        pool = ConnectionPool(factory, config=PoolConfig(min_connections=1, max_connections=3, idle_timeout=0.0))
        conns = [await pool.acquire("s") for _ in range(3)]
        for conn in conns:
            pool.release("s", conn)
        await asyncio.sleep(0.001)
        assert await pool.cleanup_idle() == 2
        assert pool.pool_stats("s")["totalConnections"] == 1

    @pytest.mark.asyncio
    async def test_remove_pool_fails_waiters(self, factory):
        """Removing a pool closes its connections and fails waiters."""
        pool = ConnectionPool(factory, config=PoolConfig(max_connections=1, acquire_timeout=5.0))
        await pool.acquire("s")
        waiting = asyncio.ensure_future(pool.acquire("s"))
        await asyncio.sleep(0.01)
        await pool.remove_pool("s")
        with pytest.raises(PoolError):
            await waiting
        assert factory.clients[0].closed
        assert pool.pool_stats("s") is None
        assert pool.breakers.get("pool:s") is None

    @pytest.mark.asyncio
    async def test_start_and_shutdown(self, pool, factory):
        """Background tasks start once and shutdown closes everything."""
        await pool.start()
        await pool.start()
        assert pool.running
        conn = await pool.acquire("s")
        pool.release("s", conn)
        await pool.shutdown()
        assert not pool.running
        assert factory.clients[0].closed
        assert pool.all_pool_stats() == {}
