"""Tests for ExecutionContext and the dead letter queue."""

import pytest

from mapflow.core.errors import CancelledError, NetworkError, TransformationError
from mapflow.execution.context import (
    ContextConfig,
    ContextError,
    ExecutionContext,
    ExecutionState,
    tracked_execution,
)
from mapflow.execution.dlq import DeadLetterQueue
from mapflow.execution.executors import FailedRecord


class TestExecutionContextLifecycle:
    def test_start_complete(self):
        """A started context completes once with progress at 100."""
        ctx = ExecutionContext(mapping_id="users")
        ctx.start()
        assert ctx.is_running
        assert ctx.complete({"ok": True})
        assert ctx.state == ExecutionState.COMPLETED
        assert ctx.progress == 100.0
        assert ctx.result == {"ok": True}
        assert ctx.duration is not None

    def test_terminal_state_is_written_once(self):
        """Later complete/fail/cancel calls are no-ops."""
        ctx = ExecutionContext()
        ctx.start()
        ctx.fail(NetworkError("down"))
        assert not ctx.complete()
        assert not ctx.cancel()
        assert ctx.state == ExecutionState.FAILED
        assert ctx.errors[0].kind == "NETWORK_ERROR"

    def test_pause_resume(self):
        """Only running contexts pause and only paused ones resume."""
        ctx = ExecutionContext()
        assert not ctx.pause()
        ctx.start()
        assert ctx.pause()
        assert ctx.state == ExecutionState.PAUSED
        assert ctx.resume()
        assert not ctx.resume()

    def test_cancel_propagates_to_token(self):
        """Cancelling records the reason and cancels the token."""
        ctx = ExecutionContext()
        ctx.start()
        ctx.cancel("user abort")
        assert ctx.cancelled
        assert ctx.token.cancelled
        assert ctx.cancel_reason == "user abort"

    def test_callbacks(self):
        """Callbacks fire; a raising callback is contained."""
        changes, progress = [], []

        def broken(ctx, entry):
            raise RuntimeError("callback bug")

        ctx = ExecutionContext(
            on_state_change=lambda c, old, new: changes.append((old.value, new.value)),
            on_progress=lambda c, cur, tot, msg: progress.append((cur, tot)),
            on_error=broken,
        )
        ctx.start()
        ctx.update_progress(1, 4, "quarter")
        ctx.add_error("oops")
        ctx.complete()
        assert changes == [("initialized", "running"), ("running", "completed")]
        assert progress == [(1, 4)]
        assert ctx.progress == 100.0


class TestTrackedExecution:
    def test_success_completes(self):
        """A clean block completes the context."""
        ctx = ExecutionContext()
        with tracked_execution(ctx):
            ctx.record_success(10)
        assert ctx.state == ExecutionState.COMPLETED
        assert ctx.records_processed == 10

    def test_error_fails(self):
        """An exception fails the context and propagates."""
        ctx = ExecutionContext()
        with pytest.raises(ValueError):
            with tracked_execution(ctx):
                raise ValueError("bad")
        assert ctx.state == ExecutionState.FAILED

    @pytest.mark.asyncio
    async def test_cancellation_cancels(self):
        """A CancelledError cancels the context."""
        ctx = ExecutionContext()
        with pytest.raises(CancelledError):
            async with tracked_execution(ctx):
                raise CancelledError("stop")
        assert ctx.state == ExecutionState.CANCELLED


class TestChildrenAndProfiling:
    def test_child_merge(self):
        """Terminated children merge counts, errors and profiles."""
        parent = ExecutionContext(mapping_id="m")
        child = parent.create_child_context(chunk=1)
        assert child.parent_id == parent.id
        assert child.user_data == {"chunk": 1}
        with pytest.raises(ValueError):
            parent.merge_child_context(child)

        child.start()
        child.record_success(3)
        child.record_failure()
        child.add_error(TransformationError("x"))
        with child.profile("map"):
            pass
        child.complete()
        parent.merge_child_context(child)
        assert parent.records_processed == 3
        assert parent.records_failed == 1
        assert len(parent.errors) == 1
        assert parent.profiling["map"].count == 1
        assert parent.child_ids == [child.id]

    def test_merge_rejects_strangers(self):
        """Only own children can be merged."""
        stranger = ExecutionContext()
        stranger.complete()
        with pytest.raises(ValueError):
            ExecutionContext().merge_child_context(stranger)

    def test_child_token_follows_parent(self):
        """Cancelling the parent cancels children."""
        parent = ExecutionContext()
        child = parent.create_child_context()
        parent.cancel()
        assert child.token.cancelled

    @pytest.mark.asyncio
    async def test_profile_stage_and_report(self):
        """profile_stage times sync and async callables."""
        ctx = ExecutionContext()

        async def work():
            return 5

        assert await ctx.profile_stage("a", work) == 5
        assert await ctx.profile_stage("b", lambda: 6) == 6
        report = ctx.profiling_report()
        assert {s["name"] for s in report["stages"]} == {"a", "b"}
        assert sum(s["percentage"] for s in report["stages"]) == pytest.approx(100.0)

    def test_profiling_disabled(self):
        """Disabled profiling records nothing."""
        ctx = ExecutionContext(config=ContextConfig(enable_profiling=False))
        with ctx.profile("x"):
            pass
        assert ctx.profiling == {}


class TestSerialization:
    def test_round_trip_preserves_state(self):
        """to_dict/from_dict keep identity, counts, errors and profiles."""
        ctx = ExecutionContext(mapping_id="m", user_id="u", config=ContextConfig(timeout=5.0))
        ctx.start()
        ctx.record_success(2)
        ctx.add_error(TransformationError("bad").with_context(stage="map"), {"a": 1}, 4)
        with ctx.profile("map"):
            pass
        ctx.complete()

        restored = ExecutionContext.from_dict(ctx.to_dict())
        assert restored.id == ctx.id
        assert restored.state == ExecutionState.COMPLETED
        assert restored.records_processed == 2
        assert restored.config.timeout == 5.0
        assert restored.errors[0].record_index == 4
        assert restored.errors[0].stage == "map"
        assert restored.profiling["map"].count == 1

    def test_restored_terminal_state_stays(self):
        """A restored terminal context cannot be rewritten."""
        ctx = ExecutionContext()
        ctx.cancel("stop")
        restored = ExecutionContext.from_dict(ctx.to_dict())
        assert restored.token.cancelled
        assert not restored.complete()

    def test_summary_and_metrics(self):
        """summary and metrics report counts."""
        ctx = ExecutionContext(mapping_id="m")
        ctx.start()
        ctx.record_success(4)
        ctx.record_failure(1)
        ctx.complete()
        summary = ctx.summary()
        assert summary["mappingId"] == "m"
        assert summary["state"] == "completed"
        assert ctx.metrics()["recordsFailed"] == 1

    def test_context_error_from_plain_exception(self):
        """Plain exceptions become UNKNOWN_ERROR entries."""
        entry = ContextError.from_exception(ValueError("x"), index=2)
        assert entry.kind == "UNKNOWN_ERROR"
        assert entry.to_dict()["recordIndex"] == 2


class TestDeadLetterQueue:
    @pytest.fixture
    def dlq(self):
        return DeadLetterQueue(max_retries=2)

    def _failed(self, index=0):
        return FailedRecord(index=index, error=TransformationError("bad"), original={"id": index})

    def test_add_and_list(self, dlq):
        """Entries are pending until resolved."""
        entry = dlq.add(self._failed(), context_id="c", mapping_id="users")
        assert entry.error_type == "TransformationError"
        assert [e.id for e in dlq.list_pending()] == [entry.id]
        assert dlq.list_pending(mapping_id="other") == []
        assert dlq.resolve(entry.id, "ops")
        assert not dlq.resolve(entry.id)
        assert dlq.list_pending() == []

    @pytest.mark.asyncio
    async def test_retry_resolves_on_success(self, dlq):
        """A successful retry resolves the entry and keeps the result."""
        entry = dlq.add(self._failed(1))

        async def fix(original):
            return {**original, "fixed": True}

        assert await dlq.retry(entry.id, fix)
        assert entry.resolved_by == "retry"
        assert entry.result == {"id": 1, "fixed": True}

    @pytest.mark.asyncio
    async def test_retry_limit(self, dlq):
        """Failed retries count toward max_retries."""
        entry = dlq.add(self._failed())

        def still_broken(original):
            raise ValueError("nope")

        assert not await dlq.retry(entry.id, still_broken)
        assert not await dlq.retry(entry.id, still_broken)
        assert entry.retry_count == 2
        assert entry.error_type == "ValueError"
        assert not entry.can_retry()
        assert not await dlq.retry(entry.id, lambda o: o)
        assert not await dlq.retry("missing", lambda o: o)

    def test_stats_and_purge(self, dlq):
        """stats counts by status; purge removes resolved entries."""
        a = dlq.add(self._failed(0), mapping_id="users")
        dlq.add(self._failed(1), mapping_id="orders")
        dlq.resolve(a.id)
        stats = dlq.stats()
        assert stats["total"] == 2
        assert stats["pending"] == 1
        assert stats["byMapping"] == {"orders": 1}
        assert dlq.purge_resolved() == 1
        assert len(dlq) == 1
