"""Executors: strategies that drive a pipeline across many records.

WHY
───
A pipeline handles one record. How many records are in flight, how they
are grouped and how progress is reported depends on data size and host
load, so that choice is a separate, swappable strategy.

ARCHITECTURE
────────────
::

    BaseExecutor.execute(data, pipeline, context)
      ├── validate_input()         ─ strategy-specific shape checks
      ├── context.start()
      ├── _run()                   ─ strategy
      │     └── _process_record()  ─ token check, pipeline.process, error policy
      └── executionComplete / executionError

    SequentialExecutor   one at a time, single record in → single record out
    BatchExecutor        fixed-size batches, batchComplete, optional delay
    StreamExecutor       waves of high_water_mark, bounded in-flight, pause/resume
    ParallelExecutor     semaphore-bounded, per-record timeout, chunkComplete

    Output order always equals input order. A failed record that is
    skipped becomes a FailedRecord placeholder in its own slot.

Example::

    executor = ParallelExecutor(max_concurrency=8)
    results = await executor.execute(records, pipeline, ExecutionContext())
"""

from __future__ import annotations

import asyncio
import builtins
import time
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from mapflow.core.errors import (
    CancelledError,
    MapflowError,
    MappingValidationError,
    TimeoutError,
)
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.execution.context import ExecutionContext, ExecutionState
from mapflow.pipeline.pipeline import PipelineContext, TransformationPipeline

logger = get_logger(__name__)


class ExecutorType(str, Enum):
    SEQUENTIAL = "sequential"
    BATCH = "batch"
    STREAM = "stream"
    PARALLEL = "parallel"


@dataclass
class FailedRecord:
    """Placeholder for a record that failed and was skipped."""

    index: int
    error: BaseException
    original: Any

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": True,
            "index": self.index,
            "message": str(self.error),
            "errorType": type(self.error).__name__,
            "originalRecord": self.original,
        }


@dataclass
class ExecutorMetrics:
    executions: int = 0
    records: int = 0
    failures: int = 0
    errors: int = 0
    total_time: float = 0.0
    last_time: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": self.executions,
            "records": self.records,
            "failures": self.failures,
            "errors": self.errors,
            "totalTime": self.total_time,
            "lastTime": self.last_time,
            "averageTime": self.total_time / self.executions if self.executions else 0.0,
            "errorRate": (self.errors / (self.executions + self.errors)) * 100
            if self.executions + self.errors else 0.0,
        }


@dataclass
class _Run:
    total: int
    done: int = 0
    failed: int = 0


class BaseExecutor(ABC):
    """Shared input checks, record error policy, progress and metrics."""

    type: ExecutorType

    def __init__(self, *, emitter: EventEmitter | None = None) -> None:
        self.emitter = emitter or EventEmitter(source=f"executor:{self.type.value}")
        self._metrics = ExecutorMetrics()

    @property
    def name(self) -> str:
        return self.type.value

    async def execute(
        self,
        data: Any,
        pipeline: TransformationPipeline,
        context: ExecutionContext | None = None,
    ) -> Any:
        context = context or ExecutionContext(executor_type=self.name)
        if context.executor_type is None:
            context.executor_type = self.name
        started = time.perf_counter()
        try:
            if pipeline is None:
                raise MappingValidationError("Pipeline is required for execution")
            self.validate_input(data)
            context.token.raise_if_cancelled()
            if context.state == ExecutionState.INITIALIZED:
                context.start()
            result = await self._run(data, pipeline, context)
        except BaseException as e:
            elapsed = time.perf_counter() - started
            self._metrics.errors += 1
            self.emitter.emit(
                "executionError",
                strategy=self.name,
                context_id=context.id,
                error=str(e),
                execution_time=elapsed,
                success=False,
            )
            raise

        elapsed = time.perf_counter() - started
        count = len(result) if isinstance(result, list) else (1 if result is not None else 0)
        failures = sum(1 for r in result if isinstance(r, FailedRecord)) if isinstance(result, list) else 0
        self._metrics.executions += 1
        self._metrics.records += count
        self._metrics.failures += failures
        self._metrics.total_time += elapsed
        self._metrics.last_time = elapsed
        self.emitter.emit(
            "executionComplete",
            strategy=self.name,
            context_id=context.id,
            records_processed=count,
            failures=failures,
            execution_time=elapsed,
            success=True,
        )
        return result

    def validate_input(self, data: Any) -> None:
        if data is None:
            raise MappingValidationError(f"Data is required for {self.name} execution")

    @abstractmethod
    async def _run(self, data: Any, pipeline: TransformationPipeline, context: ExecutionContext) -> Any:
        ...

    # ── Per-record ───────────────────────────────────────────────────

    async def _process_record(
        self,
        record: Any,
        index: int,
        pipeline: TransformationPipeline,
        context: ExecutionContext,
        run: _Run,
        timeout: float | None = None,
    ) -> Any:
        context.token.raise_if_cancelled()
        pctx = PipelineContext(record_index=index, execution=context)
        try:
            if timeout is not None:
                try:
                    async with asyncio.timeout(timeout):
                        result = await context.token.run(pipeline.process(record, pctx))
                except builtins.TimeoutError as e:
                    if isinstance(e, MapflowError):
                        raise
                    raise TimeoutError(
                        f"Record {index} processing timeout", timeout=timeout
                    ).with_context(record_index=index) from e
            else:
                result = await context.token.run(pipeline.process(record, pctx))
        except CancelledError:
            raise
        except Exception as e:
            return self._record_failed(record, index, e, context, run)

        context.record_success()
        run.done += 1
        self._report_progress(context, run)
        return result

    def _record_failed(
        self, record: Any, index: int, error: Exception, context: ExecutionContext, run: _Run
    ) -> FailedRecord:
        if isinstance(error, MapflowError) and error.context.record_index is None:
            error.with_context(record_index=index)
        context.record_failure()
        context.add_error(error, record, index)
        run.done += 1
        run.failed += 1
        if context.config.stop_on_error or not context.config.skip_failed_records:
            raise error

        logger.warning("executor.record_skipped", strategy=self.name, record_index=index, error=str(error))
        failed = FailedRecord(index=index, error=error, original=record)
        if context.dead_letter_queue is not None:
            context.dead_letter_queue.add(failed, context_id=context.id, mapping_id=context.mapping_id)
        self._report_progress(context, run)
        return failed

    def _report_progress(self, context: ExecutionContext, run: _Run) -> None:
        context.update_progress(run.done, run.total)
        self.emitter.emit(
            "progress",
            strategy=self.name,
            context_id=context.id,
            current=run.done,
            total=run.total,
            percentage=(run.done / run.total) * 100 if run.total else 100.0,
            errors=run.failed,
        )

    async def _gather_ordered(self, coros: list[Any]) -> list[Any]:
        """Run coroutines concurrently; on the first failure cancel the rest and raise it."""
        if not coros:
            return []
        tasks = [asyncio.ensure_future(c) for c in coros]
        try:
            done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        failed = [t for t in tasks if t in done and not t.cancelled() and t.exception() is not None]
        if failed:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise failed[0].exception()
        return [t.result() for t in tasks]

    # ── Metrics ──────────────────────────────────────────────────────

    def metrics(self) -> dict[str, Any]:
        return {"strategy": self.name, **self._metrics.to_dict()}

    def reset_metrics(self) -> None:
        self._metrics = ExecutorMetrics()


class SequentialExecutor(BaseExecutor):
    """One record at a time, in order."""

    type = ExecutorType.SEQUENTIAL

    async def _run(self, data: Any, pipeline: TransformationPipeline, context: ExecutionContext) -> Any:
        single = not isinstance(data, list)
        records = [data] if single else data
        run = _Run(total=len(records))
        results = []
        for index, record in enumerate(records):
            results.append(await self._process_record(record, index, pipeline, context, run))
        return results[0] if single else results


class BatchExecutor(BaseExecutor):
    """Fixed-size batches with an optional pause between them.

    Args:
        batch_size: Records per batch.
        delay_between_batches: Seconds to sleep between batches.
        max_batches: Truncation limit. Records past the last admitted batch
            are not processed and not returned; the run logs
            ``executor.batch_truncated`` and adds a context warning naming
            the dropped count.
    """

    type = ExecutorType.BATCH

    def __init__(
        self,
        batch_size: int = 100,
        delay_between_batches: float = 0.0,
        max_batches: int | None = None,
        *,
        emitter: EventEmitter | None = None,
    ) -> None:
        super().__init__(emitter=emitter)
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.batch_size = batch_size
        self.delay_between_batches = delay_between_batches
        self.max_batches = max_batches

    def validate_input(self, data: Any) -> None:
        if not isinstance(data, list):
            raise MappingValidationError("Batch execution requires a list of records")
        if not data:
            raise MappingValidationError("Batch execution requires at least one record")

    async def _run(self, data: list[Any], pipeline: TransformationPipeline, context: ExecutionContext) -> list[Any]:
        total_batches = -(-len(data) // self.batch_size)
        if self.max_batches is not None:
            total_batches = min(total_batches, self.max_batches)
        run = _Run(total=min(len(data), total_batches * self.batch_size))
        results: list[Any] = []
        logger.info("executor.batch_start", records=len(data), batches=total_batches, batch_size=self.batch_size)
        dropped = len(data) - run.total
        if dropped:
            logger.warning("executor.batch_truncated", max_batches=self.max_batches, dropped=dropped)
            context.add_warning(
                f"max_batches={self.max_batches} reached: {dropped} trailing records not processed",
                source=self.name,
            )

        for batch_index in range(total_batches):
            start = batch_index * self.batch_size
            batch = data[start:start + self.batch_size]
            batch_started = time.perf_counter()
            for offset, record in enumerate(batch):
                results.append(await self._process_record(record, start + offset, pipeline, context, run))

            self.emitter.emit(
                "batchComplete",
                context_id=context.id,
                batch_index=batch_index,
                total_batches=total_batches,
                records_processed=len(batch),
                execution_time=time.perf_counter() - batch_started,
                progress=((batch_index + 1) / total_batches) * 100,
            )
            if self.delay_between_batches > 0 and batch_index < total_batches - 1:
                await context.token.sleep(self.delay_between_batches)
        return results


class StreamExecutor(BaseExecutor):
    """Admit records in waves; stall admission while too many are in flight.

    ``pause()`` stops admitting new waves until ``resume()``; waves already
    admitted finish normally.
    """

    type = ExecutorType.STREAM

    def __init__(
        self,
        high_water_mark: int = 16,
        backpressure_threshold: int = 100,
        *,
        emitter: EventEmitter | None = None,
    ) -> None:
        super().__init__(emitter=emitter)
        if high_water_mark < 1:
            raise ValueError("high_water_mark must be >= 1")
        self.high_water_mark = high_water_mark
        self.backpressure_threshold = max(backpressure_threshold, high_water_mark)
        self.admitted = 0
        self.completed = 0
        self._resume = asyncio.Event()
        self._resume.set()

    @property
    def paused(self) -> bool:
        return not self._resume.is_set()

    @property
    def in_flight(self) -> int:
        return self.admitted - self.completed

    def pause(self) -> None:
        self._resume.clear()
        self.emitter.emit("paused", strategy=self.name)

    def resume(self) -> None:
        self._resume.set()
        self.emitter.emit("resumed", strategy=self.name)

    async def _run(self, data: Any, pipeline: TransformationPipeline, context: ExecutionContext) -> Any:
        single = not isinstance(data, list)
        records = [data] if single else data
        run = _Run(total=len(records))
        results: list[Any] = [None] * len(records)
        self.admitted = 0
        self.completed = 0
        pending: set[asyncio.Task] = set()

        async def _wave(start: int, wave: list[Any]) -> None:
            try:
                values = await self._gather_ordered([
                    self._process_record(r, start + i, pipeline, context, run) for i, r in enumerate(wave)
                ])
            finally:
                self.completed += len(wave)
            results[start:start + len(wave)] = values
            self.emitter.emit(
                "streamProgress",
                context_id=context.id,
                processed=self.completed,
                remaining=len(records) - self.completed,
                errors=run.failed,
            )

        try:
            for start in range(0, len(records), self.high_water_mark):
                wave = records[start:start + self.high_water_mark]
                if self.paused:
                    await context.token.run(self._resume.wait())
                context.token.raise_if_cancelled()

                if self.in_flight + len(wave) > self.backpressure_threshold:
                    self.emitter.emit(
                        "backpressure",
                        context_id=context.id,
                        in_flight=self.in_flight,
                        threshold=self.backpressure_threshold,
                        queue_size=len(records) - start,
                    )
                    while pending and self.in_flight + len(wave) > self.backpressure_threshold:
                        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                        for task in done:
                            task.result()

                self.admitted += len(wave)
                pending.add(asyncio.ensure_future(_wave(start, wave)))

            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_EXCEPTION)
                for task in done:
                    task.result()
        except BaseException:
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            raise
        return results[0] if single else results


class ParallelExecutor(BaseExecutor):
    """Bounded concurrency over chunks with a per-record timeout.

    Results land in positionally indexed slots so output order matches
    input order regardless of completion order.
    """

    type = ExecutorType.PARALLEL

    def __init__(
        self,
        max_concurrency: int = 10,
        chunk_size: int = 50,
        timeout: float | None = 30.0,
        *,
        emitter: EventEmitter | None = None,
    ) -> None:
        super().__init__(emitter=emitter)
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.max_concurrency = max_concurrency
        self.chunk_size = max(1, chunk_size)
        self.timeout = timeout

    def validate_input(self, data: Any) -> None:
        if not isinstance(data, list):
            raise MappingValidationError("Parallel execution requires a list of records")

    async def _run(self, data: list[Any], pipeline: TransformationPipeline, context: ExecutionContext) -> list[Any]:
        run = _Run(total=len(data))
        results: list[Any] = [None] * len(data)
        semaphore = asyncio.Semaphore(self.max_concurrency)
        chunks = [(start, data[start:start + self.chunk_size]) for start in range(0, len(data), self.chunk_size)]
        logger.info(
            "executor.parallel_start",
            records=len(data),
            chunks=len(chunks),
            max_concurrency=self.max_concurrency,
        )

        async def _one(index: int, record: Any) -> None:
            async with semaphore:
                results[index] = await self._process_record(
                    record, index, pipeline, context, run, timeout=self.timeout
                )

        async def _chunk(chunk_index: int, start: int, chunk: list[Any]) -> None:
            chunk_started = time.perf_counter()
            await self._gather_ordered([_one(start + i, r) for i, r in enumerate(chunk)])
            self.emitter.emit(
                "chunkComplete",
                context_id=context.id,
                chunk_index=chunk_index,
                total_chunks=len(chunks),
                records_processed=len(chunk),
                execution_time=time.perf_counter() - chunk_started,
                progress=(run.done / run.total) * 100 if run.total else 100.0,
            )

        await self._gather_ordered([_chunk(i, start, chunk) for i, (start, chunk) in enumerate(chunks)])
        return results


ExecutorFactory = Callable[..., BaseExecutor]


class ExecutorRegistry:
    """Named executor factories; the four built-ins are pre-registered."""

    def __init__(self) -> None:
        self._factories: dict[str, ExecutorFactory] = {
            ExecutorType.SEQUENTIAL.value: SequentialExecutor,
            ExecutorType.BATCH.value: BatchExecutor,
            ExecutorType.STREAM.value: StreamExecutor,
            ExecutorType.PARALLEL.value: ParallelExecutor,
        }

    def register(self, name: str, factory: ExecutorFactory) -> None:
        if not callable(factory):
            raise TypeError(f"Executor factory {name} must be callable")
        self._factories[name] = factory
        logger.debug("executor.registered", name=name)

    def create(self, name: ExecutorType | str, **options: Any) -> BaseExecutor:
        key = name.value if isinstance(name, ExecutorType) else name
        factory = self._factories.get(key)
        if factory is None:
            raise KeyError(f"Unknown executor: {key}")
        return factory(**options)

    def has(self, name: str) -> bool:
        return name in self._factories

    @property
    def names(self) -> list[str]:
        return sorted(self._factories)


__all__ = [
    "ExecutorType",
    "FailedRecord",
    "ExecutorMetrics",
    "BaseExecutor",
    "SequentialExecutor",
    "BatchExecutor",
    "StreamExecutor",
    "ParallelExecutor",
    "ExecutorFactory",
    "ExecutorRegistry",
]
