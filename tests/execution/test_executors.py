"""Tests for the execution strategies."""

import asyncio

import pytest

from mapflow.core.errors import CancelledError, MappingValidationError, TimeoutError, TransformationError
from mapflow.execution.context import ContextConfig, ExecutionContext, ExecutionState
from mapflow.execution.dlq import DeadLetterQueue
from mapflow.execution.executors import (
    BatchExecutor,
    ExecutorRegistry,
    ExecutorType,
    FailedRecord,
    ParallelExecutor,
    SequentialExecutor,
    StreamExecutor,
)
from mapflow.pipeline import FunctionStage, TransformationPipeline


def make_pipeline(fn):
    return TransformationPipeline("test", [FunctionStage("fn", fn)])


def square(record):
    return {"v": record["v"] ** 2}


def fail_on_two(record):
    if record["v"] == 2:
        raise TransformationError("two is not allowed")
    return record


async def jittered(record):
    await asyncio.sleep(record["delay"])
    return {"v": record["v"]}


RECORDS = [{"v": i} for i in range(5)]


class TestSequentialExecutor:
    @pytest.mark.asyncio
    async def test_list_and_single(self):
        """Lists map to lists and a single record maps to a single record."""
        executor = SequentialExecutor()
        pipeline = make_pipeline(square)
        assert await executor.execute(RECORDS, pipeline) == [{"v": i * i} for i in range(5)]
        assert await executor.execute({"v": 3}, pipeline) == {"v": 9}

    @pytest.mark.asyncio
    async def test_failed_records_become_placeholders(self):
        """A skipped record keeps its slot as a FailedRecord."""
        ctx = ExecutionContext(mapping_id="m")
        results = await SequentialExecutor().execute(RECORDS, make_pipeline(fail_on_two), ctx)
        assert isinstance(results[2], FailedRecord)
        assert results[2].index == 2
        assert results[2].to_dict()["originalRecord"] == {"v": 2}
        assert results[3] == {"v": 3}
        assert ctx.records_processed == 4
        assert ctx.records_failed == 1
        assert ctx.errors[0].record_index == 2

    @pytest.mark.asyncio
    async def test_stop_on_error(self):
        """stop_on_error raises the first record failure."""
        ctx = ExecutionContext(config=ContextConfig(stop_on_error=True))
        with pytest.raises(TransformationError):
            await SequentialExecutor().execute(RECORDS, make_pipeline(fail_on_two), ctx)

    @pytest.mark.asyncio
    async def test_dead_letter_queue(self):
        """Skipped records are sent to an attached dead letter queue."""
        dlq = DeadLetterQueue()
        ctx = ExecutionContext(mapping_id="m", dead_letter_queue=dlq)
        await SequentialExecutor().execute(RECORDS, make_pipeline(fail_on_two), ctx)
        [entry] = dlq.list_pending()
        assert entry.original == {"v": 2}
        assert entry.mapping_id == "m"
        assert entry.context_id == ctx.id

    @pytest.mark.asyncio
    async def test_progress_and_events(self, emitter, recorder):
        """Progress events count up to the total; completion is reported."""
        executor = SequentialExecutor(emitter=emitter)
        await executor.execute(RECORDS, make_pipeline(square))
        progress = recorder.named("progress")
        assert [e["current"] for e in progress] == [1, 2, 3, 4, 5]
        assert progress[-1]["percentage"] == 100.0
        complete = recorder.named("executionComplete")[0]
        assert complete["records_processed"] == 5
        assert executor.metrics()["records"] == 5

    @pytest.mark.asyncio
    async def test_missing_data_or_pipeline(self, emitter, recorder):
        """None data or pipeline is rejected and reported."""
        executor = SequentialExecutor(emitter=emitter)
        with pytest.raises(MappingValidationError):
            await executor.execute(None, make_pipeline(square))
        with pytest.raises(MappingValidationError):
            await executor.execute(RECORDS, None)
        assert len(recorder.named("executionError")) == 2
        assert executor.metrics()["errors"] == 2

    @pytest.mark.asyncio
    async def test_cancelled_token_stops_run(self):
        """A pre-cancelled context token aborts before processing."""
        ctx = ExecutionContext()
        ctx.token.cancel("stop")
        with pytest.raises(CancelledError):
            await SequentialExecutor().execute(RECORDS, make_pipeline(square), ctx)


class TestBatchExecutor:
    @pytest.mark.asyncio
    async def test_batches_and_order(self, emitter, recorder):
        """Five records in batches of two produce three batchComplete events."""
        executor = BatchExecutor(batch_size=2, emitter=emitter)
        results = await executor.execute(RECORDS, make_pipeline(square))
        assert results == [{"v": i * i} for i in range(5)]
        batches = recorder.named("batchComplete")
        assert [b["batch_index"] for b in batches] == [0, 1, 2]
        assert [b["records_processed"] for b in batches] == [2, 2, 1]
        assert batches[-1]["progress"] == 100.0

    @pytest.mark.asyncio
    async def test_max_batches(self):
        """max_batches truncates the run and records a warning for the dropped tail."""
        ctx = ExecutionContext(mapping_id="m")
        results = await BatchExecutor(batch_size=2, max_batches=1).execute(RECORDS, make_pipeline(square), ctx)
        assert results == [{"v": 0}, {"v": 1}]
        assert ctx.records_processed == 2
        assert ctx.warnings[0]["source"] == "batch"
        assert "3 trailing records" in ctx.warnings[0]["message"]

    @pytest.mark.asyncio
    async def test_rejects_non_list_and_empty(self):
        """Batch execution needs a non-empty list."""
        executor = BatchExecutor()
        with pytest.raises(MappingValidationError):
            await executor.execute({"v": 1}, make_pipeline(square))
        with pytest.raises(MappingValidationError):
            await executor.execute([], make_pipeline(square))

    def test_invalid_batch_size(self):
        """batch_size must be positive."""
        with pytest.raises(ValueError):
            BatchExecutor(batch_size=0)


class TestStreamExecutor:
    @pytest.mark.asyncio
    async def test_waves_keep_order(self, emitter, recorder):
        """Records stream in waves and come back in input order."""
        records = [{"v": i, "delay": (5 - i) * 0.002} for i in range(6)]
        executor = StreamExecutor(high_water_mark=2, backpressure_threshold=2, emitter=emitter)
        results = await executor.execute(records, make_pipeline(jittered))
        assert [r["v"] for r in results] == list(range(6))
        assert recorder.named("streamProgress")[-1]["remaining"] == 0
        assert recorder.named("backpressure")
        assert executor.in_flight == 0

    @pytest.mark.asyncio
    async def test_in_flight_never_exceeds_threshold(self):
        """Admitted minus completed stays within backpressure_threshold."""
        executor = StreamExecutor(high_water_mark=3, backpressure_threshold=6)
        peak = 0

        async def observe(record):
            nonlocal peak
            peak = max(peak, executor.in_flight)
            await asyncio.sleep(0.001 * (record["v"] % 4))
            return record

        records = [{"v": i} for i in range(40)]
        results = await executor.execute(records, make_pipeline(observe))
        assert results == records
        assert 0 < peak <= 6
        assert executor.admitted == executor.completed == 40

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, emitter, recorder):
        """A paused stream waits for resume before admitting waves."""
        executor = StreamExecutor(high_water_mark=1, emitter=emitter)
        executor.pause()
        assert executor.paused
        task = asyncio.ensure_future(executor.execute(RECORDS, make_pipeline(square)))
        await asyncio.sleep(0.01)
        assert not task.done()
        executor.resume()
        assert await task == [{"v": i * i} for i in range(5)]
        assert recorder.names()[:2] == ["paused", "resumed"]

    @pytest.mark.asyncio
    async def test_single_record(self):
        """A single record streams to a single result."""
        assert await StreamExecutor().execute({"v": 4}, make_pipeline(square)) == {"v": 16}


class TestParallelExecutor:
    @pytest.mark.asyncio
    async def test_output_order_matches_input(self, emitter, recorder):
        """Slow early records still land in their own slots."""
        records = [{"v": i, "delay": (10 - i) * 0.003} for i in range(10)]
        executor = ParallelExecutor(max_concurrency=4, chunk_size=5, emitter=emitter)
        results = await executor.execute(records, make_pipeline(jittered))
        assert [r["v"] for r in results] == list(range(10))
        assert len(recorder.named("chunkComplete")) == 2

    @pytest.mark.asyncio
    async def test_concurrency_bound(self):
        """No more than max_concurrency records run at once."""
        active, peak = [0], [0]

        async def tracked(record):
            active[0] += 1
            peak[0] = max(peak[0], active[0])
            await asyncio.sleep(0.005)
            active[0] -= 1
            return record

        await ParallelExecutor(max_concurrency=3, chunk_size=20).execute(
            [{"v": i} for i in range(12)], make_pipeline(tracked)
        )
        assert peak[0] <= 3

    @pytest.mark.asyncio
    async def test_per_record_timeout(self):
        """Records exceeding the timeout become TimeoutError placeholders."""

        async def slow(record):
            await asyncio.sleep(1 if record["v"] == 1 else 0)
            return record

        ctx = ExecutionContext()
        results = await ParallelExecutor(timeout=0.02).execute([{"v": 0}, {"v": 1}], make_pipeline(slow), ctx)
        assert results[0] == {"v": 0}
        assert isinstance(results[1], FailedRecord)
        assert isinstance(results[1].error, TimeoutError)
        assert ctx.state == ExecutionState.RUNNING

    @pytest.mark.asyncio
    async def test_rejects_non_list(self):
        """Parallel execution needs a list."""
        with pytest.raises(MappingValidationError):
            await ParallelExecutor().execute({"v": 1}, make_pipeline(square))


class TestExecutorRegistry:
    def test_builtins_and_create(self):
        """Built-ins are registered and options reach the factory."""
        registry = ExecutorRegistry()
        assert registry.names == ["batch", "parallel", "sequential", "stream"]
        executor = registry.create(ExecutorType.BATCH, batch_size=7)
        assert isinstance(executor, BatchExecutor)
        assert executor.batch_size == 7

    def test_register_and_unknown(self):
        """Custom factories can be added; unknown names raise KeyError."""
        registry = ExecutorRegistry()
        registry.register("mine", SequentialExecutor)
        assert registry.has("mine")
        with pytest.raises(KeyError):
            registry.create("nope")
        with pytest.raises(TypeError):
            registry.register("bad", 42)
