"""Tests for mapflow.resilience.retry."""

import asyncio

import pytest

from mapflow.config.settings import MapflowSettings
from mapflow.core.classifier import ErrorClassifier
from mapflow.core.cancellation import CancellationToken
from mapflow.core.errors import (
    CancelledError,
    NetworkError,
    RetryExhaustedError,
    TimeoutError,
    ValidationError,
)
from mapflow.resilience.retry import (
    BackoffPolicy,
    ExponentialBackoff,
    FibonacciBackoff,
    FixedDelay,
    LinearBackoff,
    RetryManager,
    RetryPolicy,
    with_retry,
)


class Flaky:
    """Fails ``failures`` times with ``error`` then returns ``value``."""

    def __init__(self, failures, error=None, value="ok"):
        self.failures = failures
        self.error = error or TimeoutError("timed out")
        self.value = value
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return self.value


class TestBackoffStrategies:
    def test_exponential(self):
        """Exponential delays double and cap at max_delay."""
        s = ExponentialBackoff(initial_delay=1, max_delay=5, factor=2)
        assert [s.next_delay(a) for a in range(4)] == [1, 2, 4, 5]

    def test_linear_fixed_fibonacci(self):
        """Linear, fixed and Fibonacci shapes."""
        assert [LinearBackoff(1, 10).next_delay(a) for a in range(3)] == [1, 2, 3]
        assert [FixedDelay(0.5).next_delay(a) for a in range(3)] == [0.5, 0.5, 0.5]
        assert [FibonacciBackoff(1, 100).next_delay(a) for a in range(6)] == [1, 1, 2, 3, 5, 8]

    def test_jitter_bounds(self):
        """Jitter stays within ±10% of the base delay."""
        s = ExponentialBackoff(initial_delay=1.0, factor=1.0, jitter=True)
        for _ in range(200):
            assert 0.9 <= s.next_delay(0) <= 1.1

    def test_policy_selects_strategy(self):
        """RetryPolicy builds the strategy its policy names."""
        assert isinstance(RetryPolicy(policy=BackoffPolicy.FIXED_DELAY).strategy(), FixedDelay)
        assert isinstance(RetryPolicy().strategy(), ExponentialBackoff)

    def test_from_settings(self):
        """Policies can be built from settings."""
        policy = RetryPolicy.from_settings(MapflowSettings(retry_max_retries=5, retry_jitter=False))
        assert policy.max_retries == 5
        assert policy.jitter is False


class TestRetryManager:
    @pytest.mark.asyncio
    async def test_retry_then_success(self, emitter, recorder):
        """Two timeouts then success: value returned, delays 10ms then 20ms."""
        manager = RetryManager(emitter=emitter)
        op = Flaky(2)
        policy = RetryPolicy(max_retries=3, initial_delay=0.01, factor=2, jitter=False)

        assert await manager.execute(op, policy=policy) == "ok"

        assert op.calls == 3
        metrics = manager.metrics()
        assert metrics.total_retries == 2
        assert metrics.retry_successes == 1
        delays = [e["delay"] for e in recorder.named("retry")]
        assert delays == [pytest.approx(0.01), pytest.approx(0.02)]
        assert recorder.named("retrySuccess")[0]["attempts"] == 3

    @pytest.mark.asyncio
    async def test_exhaustion(self, emitter, recorder):
        """Persistent failures raise RetryExhaustedError after max_retries + 1 attempts."""
        manager = RetryManager(emitter=emitter)
        op = Flaky(10, NetworkError("down"))
        with pytest.raises(RetryExhaustedError) as exc_info:
            await manager.execute(op, policy=RetryPolicy(max_retries=2, initial_delay=0, jitter=False))
        assert exc_info.value.attempts == 3
        assert isinstance(exc_info.value.last_error, NetworkError)
        assert op.calls == 3
        assert recorder.named("retryExhausted")[0]["attempts"] == 3
        assert manager.metrics().retry_failures == 1

    @pytest.mark.asyncio
    async def test_non_retryable_not_retried(self):
        """A validation error is raised on the first attempt."""
        manager = RetryManager()
        op = Flaky(1, ValidationError("bad"))
        with pytest.raises(ValidationError):
            await manager.execute(op, policy=RetryPolicy(initial_delay=0))
        assert op.calls == 1

    @pytest.mark.asyncio
    async def test_retryable_error_substrings(self):
        """retryable_errors restricts retries to matching messages."""
        manager = RetryManager()
        policy = RetryPolicy(max_retries=3, initial_delay=0, retryable_errors=["rate limit"])
        op = Flaky(1, RuntimeError("Rate limit hit"))
        assert await manager.execute(op, policy=policy) == "ok"
        other = Flaky(1, RuntimeError("boom"))
        with pytest.raises(RuntimeError):
            await manager.execute(other, policy=policy)

    @pytest.mark.asyncio
    async def test_classifier_decides_plain_exceptions(self):
        """With a classifier, plain exceptions retry only when classified retryable."""
        manager = RetryManager(classifier=ErrorClassifier())
        policy = RetryPolicy(max_retries=2, initial_delay=0)
        assert await manager.execute(Flaky(1, ConnectionResetError("reset")), policy=policy) == "ok"
        with pytest.raises(KeyError):
            await manager.execute(Flaky(1, KeyError("missing")), policy=policy)

    @pytest.mark.asyncio
    async def test_per_attempt_timeout(self):
        """Attempts exceeding the timeout fail with the runtime TimeoutError."""
        manager = RetryManager()

        async def slow():
            await asyncio.sleep(1)

        policy = RetryPolicy(max_retries=0, timeout=0.01, retry_on_timeout=False)
        with pytest.raises(TimeoutError):
            await manager.execute(slow, policy=policy)

    @pytest.mark.asyncio
    async def test_cancellation_during_backoff(self):
        """Cancelling the token interrupts the backoff sleep."""
        manager = RetryManager()
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.02, token.cancel, "stop")
        with pytest.raises(CancelledError):
            await manager.execute(
                Flaky(10),
                policy=RetryPolicy(max_retries=5, initial_delay=5, jitter=False),
                token=token,
            )

    @pytest.mark.asyncio
    async def test_run_returns_outcome(self):
        """run() returns Ok or Err instead of raising."""
        manager = RetryManager()
        ok = await manager.run(Flaky(0), policy=RetryPolicy(initial_delay=0))
        assert ok.unwrap() == "ok"
        err = await manager.run(Flaky(5, ValidationError("bad")))
        assert err.is_err()

    def test_sync_execution(self):
        """execute_sync retries synchronous callables."""
        calls = []

        def op():
            calls.append(1)
            if len(calls) < 2:
                raise NetworkError("down")
            return 42

        manager = RetryManager(RetryPolicy(max_retries=2, initial_delay=0, jitter=False))
        assert manager.execute_sync(op) == 42
        assert manager.metrics().to_dict()["totalRetries"] == 1


class TestWithRetryDecorator:
    @pytest.mark.asyncio
    async def test_async_function(self):
        """The decorator retries coroutine functions."""
        op = Flaky(1, NetworkError("down"), value=7)

        @with_retry(RetryPolicy(max_retries=2, initial_delay=0))
        async def fetch():
            return await op()

        assert await fetch() == 7
        assert fetch.retry_manager.metrics().total_retries == 1

    def test_sync_function(self):
        """The decorator retries plain functions."""
        attempts = []

        @with_retry(RetryPolicy(max_retries=1, initial_delay=0))
        def compute():
            attempts.append(1)
            if len(attempts) == 1:
                raise NetworkError("down")
            return "done"

        assert compute() == "done"
