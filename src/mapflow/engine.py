"""Mapping engine: the entry point that runs a mapping over data.

WHY
───
Callers hand over a mapping document and some records. Everything in
between (argument checks, result and pipeline caches, strategy choice,
execution context bookkeeping, timeouts, events and metrics) belongs in
one place so adapters, the CLI and embedders all get the same behaviour.

ARCHITECTURE
────────────
::

    MappingEngine.execute_mapping(mapping, data, options)
      │
      ├── _coerce_mapping / _validate_inputs     ─ MappingValidationError
      ├── FieldMappingValidator                  ─ options.validate_mapping
      ├── result cache (id, version, fp(data), fp(options))
      ├── pipeline cache (id_version)            ─ compile_mapping()
      ├── PerformanceOptimizer.optimize_execution_strategy()
      ├── ExecutorRegistry.create(...)
      ├── ExecutionContext.start()
      ├── executor.execute(data, pipeline, ctx)  ─ asyncio.timeout(run timeout)
      ├── ctx.complete() / ctx.fail() / ctx.cancel()
      └── mappingComplete / mappingError

    execute_batch_mapping()  ─ same path, batch executor, totals

Example::

    async with MappingEngine() as engine:
        outcome = await engine.execute_mapping(mapping_doc, {"id": 1, "name": "John Doe"})
        outcome.data   # {"userId": 1, "fullName": "JOHN DOE", "isActive": True}
"""

from __future__ import annotations

import asyncio
import builtins
import copy
import math
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from mapflow.config.settings import MapflowSettings, get_settings
from mapflow.core.cache import CacheManager
from mapflow.core.cancellation import CancellationToken
from mapflow.core.classifier import ErrorClassifier
from mapflow.core.errors import (
    CancelledError,
    ErrorContext,
    MapflowError,
    MappingExecutionError,
    MappingValidationError,
    TimeoutError,
)
from mapflow.core.events import EventEmitter
from mapflow.core.hashing import fingerprint
from mapflow.core.logging import LogContext, get_logger
from mapflow.execution.context import ContextConfig, ExecutionContext
from mapflow.execution.dlq import DeadLetterQueue
from mapflow.execution.executors import ExecutorFactory, ExecutorRegistry, ExecutorType, FailedRecord
from mapflow.mapping.models import Mapping, RuleType
from mapflow.performance.optimizer import BATCH_THRESHOLD, PerformanceOptimizer
from mapflow.pipeline.pipeline import TransformationPipeline, compile_mapping
from mapflow.pipeline.transforms import Transformer, TransformLibrary
from mapflow.validation.framework import ValidationFramework
from mapflow.validation.mapping_validators import FieldMappingValidator
from mapflow.validation.validators import BaseValidator

if TYPE_CHECKING:
    from mapflow.adapters.pool import ConnectionPool

logger = get_logger(__name__)

DEFAULT_BATCH_SIZE = 100


class ExecutionOptions(BaseModel):
    """Per-call options. Unset values fall back to settings or the optimizer."""

    model_config = ConfigDict(populate_by_name=True, arbitrary_types_allowed=True, extra="ignore")

    executor: str | None = Field(default=None, alias="executorType")
    batch_size: int | None = Field(default=None, ge=1, alias="batchSize")
    parallelism: int | None = Field(default=None, ge=1)
    use_cache: bool = Field(default=True, alias="useCache")
    strict_mode: bool | None = Field(default=None, alias="strictMode")
    stop_on_error: bool = Field(default=False, alias="stopOnError")
    skip_failed_records: bool = Field(default=True, alias="skipFailedRecords")
    timeout: float | None = Field(default=None, gt=0)
    user_id: str | None = Field(default=None, alias="userId")
    job_id: str | None = Field(default=None, alias="jobId")
    validate_mapping: bool = Field(default=False, alias="validateMapping")
    token: CancellationToken | None = Field(default=None, exclude=True)

    def cache_fingerprint(self) -> str:
        """Options that change the output; identity fields are left out."""
        return fingerprint(self.model_dump(exclude={"token", "user_id", "job_id", "use_cache"}))


@dataclass
class MappingOutcome:
    success: bool
    data: Any
    context: ExecutionContext
    execution_time: float
    cached: bool = False

    @property
    def failed_records(self) -> list[FailedRecord]:
        items = self.data if isinstance(self.data, list) else [self.data]
        return [r for r in items if isinstance(r, FailedRecord)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "data": _jsonable(self.data),
            "context": self.context.summary(),
            "executionTime": self.execution_time,
            "cached": self.cached,
        }


@dataclass
class BatchOutcome:
    total_processed: int
    success_count: int
    error_count: int
    results: list[Any] = field(default_factory=list)
    batches: int = 0
    context: ExecutionContext | None = None
    execution_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "results": _jsonable(self.results),
            "batches": self.batches,
            "executionTime": self.execution_time,
        }


def _jsonable(data: Any) -> Any:
    if isinstance(data, FailedRecord):
        return data.to_dict()
    if isinstance(data, list):
        return [_jsonable(d) for d in data]
    return data


@dataclass
class EngineMetrics:
    execution_count: int = 0
    success_count: int = 0
    error_count: int = 0
    total_execution_time: float = 0.0
    cache_hits: int = 0
    cache_misses: int = 0

    def to_dict(self) -> dict[str, Any]:
        finished = self.success_count + self.error_count
        lookups = self.cache_hits + self.cache_misses
        return {
            "executionCount": self.execution_count,
            "successCount": self.success_count,
            "errorCount": self.error_count,
            "totalExecutionTime": self.total_execution_time,
            "averageExecutionTime": self.total_execution_time / finished if finished else 0.0,
            "cacheHits": self.cache_hits,
            "cacheMisses": self.cache_misses,
            "successRate": (self.success_count / finished) * 100 if finished else 0.0,
            "cacheHitRate": (self.cache_hits / lookups) * 100 if lookups else 0.0,
        }


class MappingEngine:
    """Run mappings over single records or lists of records.

    Args:
        settings: Engine settings (``get_settings()`` when omitted).
        optimizer: Strategy recommender; built from settings when omitted.
        classifier: Used for rule retry decisions and failure reports.
        emitter: Receives engine, pipeline and executor events.
        pool: Connection pool started and stopped with the engine.
        dead_letter_queue: Attached to every run's context.
    """

    def __init__(
        self,
        settings: MapflowSettings | None = None,
        *,
        optimizer: PerformanceOptimizer | None = None,
        classifier: ErrorClassifier | None = None,
        emitter: EventEmitter | None = None,
        pool: ConnectionPool | None = None,
        dead_letter_queue: DeadLetterQueue | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.emitter = emitter or EventEmitter(source="engine")
        self.classifier = classifier or ErrorClassifier()
        self.optimizer = optimizer or PerformanceOptimizer(self.settings, emitter=self.emitter)
        self.pool = pool
        self.dead_letter_queue = dead_letter_queue
        self.transforms = TransformLibrary()
        self.executors = ExecutorRegistry()
        self.validation = ValidationFramework(cache_size=self.settings.cache_size, emitter=self.emitter)
        self._validators: list[BaseValidator] = []

        self._results = CacheManager(max_size=self.settings.cache_size, name="results", emitter=self.emitter)
        self.optimizer.register_cache(self._results)
        self._result_keys: dict[str, set[str]] = {}
        self._pipelines: dict[tuple[str, str, bool], TransformationPipeline] = {}
        self._mappings: dict[str, Mapping] = {}
        self._metrics = EngineMetrics()
        self._started = False

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._started:
            return
        if self.pool is not None:
            await self.pool.start()
        self._started = True
        logger.info("engine.started", executors=self.executors.names)

    async def shutdown(self) -> None:
        if self.pool is not None:
            await self.pool.shutdown()
        self.clear_caches()
        await self.emitter.drain()
        self._started = False
        logger.info("engine.shutdown", **self.metrics())

    async def __aenter__(self) -> MappingEngine:
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.shutdown()

    # ── Extension points ─────────────────────────────────────────────

    def register_transformer(self, name: str, fn: Transformer) -> None:
        self.transforms.register(name, fn)
        self._results.clear()
        self._result_keys.clear()

    def register_validator(self, name: str, validator: BaseValidator | Callable[..., Any]) -> None:
        """Add a validator to every pipeline compiled from now on."""
        self.validation.register_validator(name, validator)
        self._validators.append(self.validation.get_validator(name))
        self.clear_caches()

    def register_executor(self, name: str, factory: ExecutorFactory) -> None:
        self.executors.register(name, factory)

    # ── Entry points ─────────────────────────────────────────────────

    async def execute_mapping(
        self,
        mapping: Mapping | dict[str, Any],
        data: Any,
        options: ExecutionOptions | dict[str, Any] | None = None,
    ) -> MappingOutcome:
        """Run ``mapping`` over a record or a list of records.

        Raises:
            MappingValidationError: Bad mapping or missing data.
            MappingExecutionError: The run failed or timed out.
            CancelledError: The caller's token was cancelled.
        """
        outcome, _ = await self._execute(mapping, data, _options(options))
        return outcome

    async def execute_batch_mapping(
        self,
        mapping: Mapping | dict[str, Any],
        items: list[Any],
        options: ExecutionOptions | dict[str, Any] | None = None,
    ) -> BatchOutcome:
        """Run ``mapping`` over ``items`` in fixed-size batches and report totals."""
        opts = _options(options)
        if not isinstance(items, list) or not items:
            raise MappingValidationError("Batch mapping requires a non-empty list of records")
        if opts.executor is None:
            opts = opts.model_copy(update={"executor": ExecutorType.BATCH.value})
        outcome, batch_size = await self._execute(mapping, items, opts)

        results = outcome.data if isinstance(outcome.data, list) else [outcome.data]
        errors = sum(1 for r in results if isinstance(r, FailedRecord))
        return BatchOutcome(
            total_processed=len(results),
            success_count=len(results) - errors,
            error_count=errors,
            results=results,
            batches=math.ceil(len(items) / batch_size) if batch_size else 1,
            context=outcome.context,
            execution_time=outcome.execution_time,
        )

    # ── Core run ─────────────────────────────────────────────────────

    async def _execute(
        self, mapping: Mapping | dict[str, Any], data: Any, options: ExecutionOptions
    ) -> tuple[MappingOutcome, int | None]:
        started = time.perf_counter()
        mapping = self._coerce_mapping(mapping)
        self._validate_inputs(mapping, data)
        if options.validate_mapping:
            await self._validate_definition(mapping)
        self._track_version(mapping)
        self._metrics.execution_count += 1

        use_cache = options.use_cache and self.settings.enable_cache
        result_key = None
        if use_cache:
            result_key = self._result_key(mapping, data, options)
            cached = self._results.get(result_key)
            if cached is not None:
                self._metrics.cache_hits += 1
                self._metrics.success_count += 1
                logger.debug("mapping.cache_hit", mapping_id=mapping.id, version=mapping.version)
                elapsed = time.perf_counter() - started
                self._metrics.total_execution_time += elapsed
                return (
                    MappingOutcome(
                        success=True,
                        data=copy.deepcopy(cached["data"]),
                        context=cached["context"],
                        execution_time=elapsed,
                        cached=True,
                    ),
                    cached["batch_size"],
                )
            self._metrics.cache_misses += 1

        pipeline = self._pipeline_for(mapping, options)
        executor_name, executor_options = self._select_executor(mapping, data, options)
        timeout = options.timeout or self.settings.default_timeout
        context = ExecutionContext(
            mapping_id=mapping.id,
            user_id=options.user_id,
            job_id=options.job_id,
            executor_type=executor_name,
            config=ContextConfig(
                timeout=timeout,
                strict_mode=pipeline.strict_mode,
                stop_on_error=options.stop_on_error,
                skip_failed_records=options.skip_failed_records,
            ),
            token=options.token.child() if options.token is not None else None,
            user_data={"mappingVersion": mapping.version},
            dead_letter_queue=self.dead_letter_queue,
        )

        try:
            executor = self.executors.create(executor_name, emitter=self.emitter, **executor_options)
        except KeyError as e:
            raise MappingExecutionError(f"Unknown executor type: {executor_name}", cause=e) from e

        async with LogContext(execution_id=context.id, mapping_id=mapping.id):
            logger.info(
                "mapping.start",
                version=mapping.version,
                executor=executor_name,
                records=len(data) if isinstance(data, list) else 1,
            )
            context.start()
            try:
                async with asyncio.timeout(timeout) as scope:
                    result = await executor.execute(data, pipeline, context)
            except (CancelledError, asyncio.CancelledError) as e:
                context.cancel(context.token.reason or "cancelled")
                self._record_error(mapping, context, e, started)
                raise
            except builtins.TimeoutError as e:
                if not scope.expired():
                    raise self._failure(mapping, context, e, started) from e
                context.cancel(f"Mapping timed out after {timeout}s")
                timeout_error = TimeoutError(
                    f"Mapping {mapping.id} timed out after {timeout}s", timeout=timeout
                )
                raise self._failure(mapping, context, timeout_error, started) from e
            except Exception as e:
                raise self._failure(mapping, context, e, started) from e

            context.complete(result)
            elapsed = time.perf_counter() - started
            self._metrics.success_count += 1
            self._metrics.total_execution_time += elapsed
            self.optimizer.record_timing("mapping", elapsed)

            batch_size = executor_options.get("batch_size")
            if use_cache and result_key is not None and context.records_failed == 0:
                self._results.set(
                    result_key,
                    {"data": copy.deepcopy(result), "context": context, "batch_size": batch_size},
                )
                self._result_keys.setdefault(mapping.id, set()).add(result_key)

            self.emitter.emit(
                "mappingComplete",
                mapping_id=mapping.id,
                version=mapping.version,
                context_id=context.id,
                executor=executor_name,
                records_processed=context.records_processed,
                records_failed=context.records_failed,
                execution_time=elapsed,
            )
            logger.info(
                "mapping.complete",
                records=context.records_processed,
                failed=context.records_failed,
                duration=elapsed,
            )
        return (
            MappingOutcome(success=True, data=result, context=context, execution_time=elapsed),
            batch_size,
        )

    def _failure(
        self, mapping: Mapping, context: ExecutionContext, error: BaseException, started: float
    ) -> MappingExecutionError:
        context.fail(error)
        classification = self._record_error(mapping, context, error, started)
        record_index = error.context.record_index if isinstance(error, MapflowError) else None
        return MappingExecutionError(
            f"Mapping {mapping.id} failed: {error}",
            kind=classification.type,
            severity=classification.severity,
            retryable=classification.is_retryable,
            context=ErrorContext(
                execution_id=context.id,
                mapping_id=mapping.id,
                record_index=record_index,
            ),
            cause=error,
        )

    def _record_error(
        self, mapping: Mapping, context: ExecutionContext, error: BaseException, started: float
    ) -> Any:
        elapsed = time.perf_counter() - started
        self._metrics.error_count += 1
        self._metrics.total_execution_time += elapsed
        classification = self.classifier.classify(error, {"mapping_id": mapping.id})
        self.emitter.emit(
            "mappingError",
            mapping_id=mapping.id,
            version=mapping.version,
            context_id=context.id,
            error=str(error),
            kind=classification.type.value,
            severity=classification.severity.value,
            state=context.state.value,
            execution_time=elapsed,
        )
        logger.error(
            "mapping.failed",
            error=str(error),
            kind=classification.type.value,
            state=context.state.value,
            duration=elapsed,
        )
        return classification

    # ── Inputs ───────────────────────────────────────────────────────

    @staticmethod
    def _coerce_mapping(mapping: Mapping | dict[str, Any]) -> Mapping:
        if isinstance(mapping, Mapping):
            return mapping
        if not isinstance(mapping, dict):
            raise MappingValidationError("Mapping configuration is required")
        if not mapping.get("id"):
            raise MappingValidationError("Mapping must have an id", field="id")
        try:
            return Mapping.model_validate(mapping)
        except PydanticValidationError as e:
            raise MappingValidationError(f"Invalid mapping {mapping.get('id')}: {e}", cause=e) from e

    @staticmethod
    def _validate_inputs(mapping: Mapping, data: Any) -> None:
        if not mapping.id:
            raise MappingValidationError("Mapping must have an id", field="id")
        if not mapping.rules:
            raise MappingValidationError(f"Mapping {mapping.id} must have at least one rule", field="rules")
        if data is None:
            raise MappingValidationError("Source data is required", field="data")

    async def _validate_definition(self, mapping: Mapping) -> None:
        validator = FieldMappingValidator(
            mapping.source_schema,
            mapping.target_schema,
            strict_mode=mapping.strict_mode,
            default_values=mapping.default_values,
        )
        result = await validator.validate(mapping)
        if not result.valid:
            detail = "; ".join(f"{e.field}: {e.message}" for e in result.errors)
            raise MappingValidationError(
                f"Mapping {mapping.id} is invalid: {detail}",
                issues=list(result.errors),
            )

    # ── Caches ───────────────────────────────────────────────────────

    @staticmethod
    def _result_key(mapping: Mapping, data: Any, options: ExecutionOptions) -> str:
        return fingerprint(mapping.id, mapping.version, fingerprint(data), options.cache_fingerprint())

    def _track_version(self, mapping: Mapping) -> None:
        known = self._mappings.get(mapping.id)
        if known is not None and known.version != mapping.version:
            logger.info(
                "mapping.version_changed",
                mapping_id=mapping.id,
                previous=known.version,
                version=mapping.version,
            )
            self.invalidate(mapping.id)
        self._mappings[mapping.id] = mapping

    def _pipeline_for(self, mapping: Mapping, options: ExecutionOptions) -> TransformationPipeline:
        strict = options.strict_mode
        if strict is None:
            strict = mapping.strict_mode or self.settings.strict_mode
        key = (mapping.id, mapping.version, strict)
        pipeline = self._pipelines.get(key)
        if pipeline is None:
            pipeline = compile_mapping(
                mapping,
                transforms=self.transforms,
                validators=list(self._validators),
                classifier=self.classifier,
                emitter=self.emitter,
                strict_mode=strict,
            )
            self._pipelines[key] = pipeline
        return pipeline

    def invalidate(self, mapping_id: str | None = None) -> int:
        """Drop cached pipelines and results for one mapping id, or all.

        Returns the number of cache entries removed.
        """
        if mapping_id is None:
            removed = len(self._pipelines) + len(self._results)
            self.clear_caches()
            return removed

        doomed = [k for k in self._pipelines if k[0] == mapping_id]
        for key in doomed:
            del self._pipelines[key]
        removed = len(doomed)
        for key in self._result_keys.pop(mapping_id, set()):
            if key in self._results:
                removed += 1
            self._results.delete(key)
        logger.debug("engine.invalidated", mapping_id=mapping_id, removed=removed)
        return removed

    def on_schema_drift(self, system_id: str, schema_name: str | None = None) -> list[str]:
        """Invalidate every known mapping that touches ``system_id`` or ``schema_name``.

        Returns the affected mapping ids.
        """
        affected = []
        for mapping_id, mapping in self._mappings.items():
            adapters = {mapping.source_adapter, mapping.target_adapter}
            schemas = {
                s.name for s in (mapping.source_schema, mapping.target_schema) if s is not None
            }
            if system_id in adapters or (schema_name is not None and schema_name in schemas):
                affected.append(mapping_id)
        for mapping_id in affected:
            self.invalidate(mapping_id)
        logger.info("engine.schema_drift", system_id=system_id, schema=schema_name, affected=affected)
        return affected

    def clear_caches(self) -> None:
        self._pipelines.clear()
        self._results.clear()
        self._result_keys.clear()

    # ── Strategy ─────────────────────────────────────────────────────

    def _select_executor(
        self, mapping: Mapping, data: Any, options: ExecutionOptions
    ) -> tuple[str, dict[str, Any]]:
        size = len(data) if isinstance(data, list) else 1
        batch_size = options.batch_size
        parallelism = options.parallelism

        if options.executor is not None:
            name = options.executor
        elif not isinstance(data, list):
            name = ExecutorType.SEQUENTIAL.value
        else:
            if size >= BATCH_THRESHOLD:
                self.optimizer.check_memory()
            rec = self.optimizer.optimize_execution_strategy(size, self.calculate_complexity(mapping))
            name = rec.executor_type
            batch_size = batch_size or rec.batch_size
            parallelism = parallelism or rec.parallelism

        executor_options: dict[str, Any] = {}
        if name == ExecutorType.BATCH.value:
            executor_options["batch_size"] = batch_size or DEFAULT_BATCH_SIZE
        elif name == ExecutorType.PARALLEL.value:
            executor_options["max_concurrency"] = parallelism or self.settings.max_concurrency
        return name, executor_options

    @staticmethod
    def calculate_complexity(mapping: Mapping) -> float:
        """Score in [0, 1] from rule, transform, validation, aggregation and quality counts."""
        if not mapping.rules:
            return 0.1
        transforms = sum(1 for r in mapping.rules if r.type != RuleType.DIRECT)
        complexity = min(len(mapping.rules) / 50, 0.3)
        complexity += min(transforms / 20, 0.2)
        complexity += min(len(mapping.validation_rules) / 30, 0.2)
        if mapping.aggregation:
            complexity += 0.15
        complexity += min(len(mapping.quality_rules) / 25, 0.15)
        return min(complexity, 1.0)

    # ── Metrics ──────────────────────────────────────────────────────

    def metrics(self) -> dict[str, Any]:
        return self._metrics.to_dict()

    def detailed_metrics(self) -> dict[str, Any]:
        return {
            **self.metrics(),
            "resultCache": self._results.stats(),
            "pipelines": {
                f"{mid}_{version}": p.metrics() for (mid, version, _), p in self._pipelines.items()
            },
            "optimizer": self.optimizer.metrics(),
            "deadLetters": self.dead_letter_queue.stats() if self.dead_letter_queue is not None else None,
        }

    def reset_metrics(self) -> None:
        self._metrics = EngineMetrics()


def _options(options: ExecutionOptions | dict[str, Any] | None) -> ExecutionOptions:
    if options is None:
        return ExecutionOptions()
    if isinstance(options, ExecutionOptions):
        return options
    return ExecutionOptions.model_validate(options)


__all__ = [
    "BatchOutcome",
    "EngineMetrics",
    "ExecutionOptions",
    "MappingEngine",
    "MappingOutcome",
]
