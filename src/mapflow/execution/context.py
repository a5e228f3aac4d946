"""
Run-scoped execution state.

Manifesto:
    Every mapping run owns exactly one ExecutionContext. Executors and
    pipelines report progress, errors and stage timings into it; the
    engine reads its terminal state. A terminal state is written once:
    later ``complete``/``fail``/``cancel`` calls are no-ops, so replaying
    a serialized context cannot rewrite history.

Architecture:
    ::

        initialized ──start()──▶ running ──complete()──▶ completed
                                  │  ▲
                          pause() │  │ resume()
                                  ▼  │
                                 paused
        running/paused ──fail()──▶ failed
        any non-terminal ─cancel()─▶ cancelled

    Child contexts link by ``parent_id`` and are merged into the parent
    only after they terminate.

Example:
    >>> ctx = ExecutionContext(mapping_id="users_v2")
    >>> with tracked_execution(ctx):
    ...     ctx.record_success(10)
    >>> ctx.state, ctx.records_processed
    (<ExecutionState.COMPLETED: 'completed'>, 10)

Tags:
    execution, context, profiling, lifecycle, mapflow
"""

from __future__ import annotations

import asyncio
import inspect
import time
import uuid
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from mapflow.core.cancellation import CancellationToken
from mapflow.core.errors import CancelledError, MapflowError
from mapflow.core.logging import get_logger

if TYPE_CHECKING:
    from mapflow.execution.dlq import DeadLetterQueue

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class ExecutionState(str, Enum):
    INITIALIZED = "initialized"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.FAILED, ExecutionState.CANCELLED)


@dataclass
class ContextConfig:
    """Per-run switches read by executors and pipelines."""

    timeout: float | None = None
    retry_attempts: int = 0
    strict_mode: bool = False
    stop_on_error: bool = False
    skip_failed_records: bool = True
    validate_input: bool = True
    validate_output: bool = False
    collect_metrics: bool = True
    enable_profiling: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextConfig:
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ContextError:
    """An error recorded against a run."""

    message: str
    kind: str = "UNKNOWN_ERROR"
    severity: str = "MEDIUM"
    record_index: int | None = None
    record: Any = None
    stage: str | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @classmethod
    def from_exception(cls, error: BaseException | str, record: Any = None, index: int | None = None) -> ContextError:
        if isinstance(error, MapflowError):
            return cls(
                message=error.message,
                kind=error.kind.value,
                severity=error.severity.value,
                record_index=index if index is not None else error.context.record_index,
                record=record,
                stage=error.context.stage,
            )
        return cls(message=str(error), record_index=index, record=record)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "message": self.message,
            "kind": self.kind,
            "severity": self.severity,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.record_index is not None:
            data["recordIndex"] = self.record_index
        if self.record is not None:
            data["record"] = self.record
        if self.stage:
            data["stage"] = self.stage
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ContextError:
        return cls(
            message=data["message"],
            kind=data.get("kind", "UNKNOWN_ERROR"),
            severity=data.get("severity", "MEDIUM"),
            record_index=data.get("recordIndex"),
            record=data.get("record"),
            stage=data.get("stage"),
            timestamp=datetime.fromisoformat(data["timestamp"]) if data.get("timestamp") else utcnow(),
        )


@dataclass
class StageProfile:
    count: int = 0
    total_ns: int = 0
    min_ns: int | None = None
    max_ns: int = 0

    def record(self, elapsed_ns: int) -> None:
        self.count += 1
        self.total_ns += elapsed_ns
        self.min_ns = elapsed_ns if self.min_ns is None else min(self.min_ns, elapsed_ns)
        self.max_ns = max(self.max_ns, elapsed_ns)

    def merge(self, other: StageProfile) -> None:
        if other.count == 0:
            return
        self.count += other.count
        self.total_ns += other.total_ns
        if other.min_ns is not None:
            self.min_ns = other.min_ns if self.min_ns is None else min(self.min_ns, other.min_ns)
        self.max_ns = max(self.max_ns, other.max_ns)

    @property
    def average_ns(self) -> float:
        return self.total_ns / self.count if self.count else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {"count": self.count, "totalNs": self.total_ns, "minNs": self.min_ns, "maxNs": self.max_ns}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StageProfile:
        return cls(
            count=data.get("count", 0),
            total_ns=data.get("totalNs", 0),
            min_ns=data.get("minNs"),
            max_ns=data.get("maxNs", 0),
        )


class ExecutionContext:
    """State of one mapping run.

    Callbacks (all optional, all synchronous):
        on_progress(context, current, total, message)
        on_error(context, ContextError)
        on_complete(context)
        on_state_change(context, old_state, new_state)
    """

    def __init__(
        self,
        *,
        id: str | None = None,
        parent_id: str | None = None,
        mapping_id: str | None = None,
        user_id: str | None = None,
        job_id: str | None = None,
        executor_type: str | None = None,
        config: ContextConfig | None = None,
        token: CancellationToken | None = None,
        user_data: dict[str, Any] | None = None,
        dead_letter_queue: DeadLetterQueue | None = None,
        on_progress: Callable[..., Any] | None = None,
        on_error: Callable[..., Any] | None = None,
        on_complete: Callable[..., Any] | None = None,
        on_state_change: Callable[..., Any] | None = None,
    ) -> None:
        self.id = id or f"ctx_{uuid.uuid4().hex[:16]}"
        self.parent_id = parent_id
        self.mapping_id = mapping_id
        self.user_id = user_id
        self.job_id = job_id
        self.executor_type = executor_type
        self.config = config or ContextConfig()
        self.token = token or CancellationToken()
        self.user_data: dict[str, Any] = dict(user_data or {})
        self.dead_letter_queue = dead_letter_queue

        self.state = ExecutionState.INITIALIZED
        self.created_at = utcnow()
        self.start_time: datetime | None = None
        self.end_time: datetime | None = None
        self.duration: float | None = None
        self.progress: float = 0.0
        self.progress_message: str | None = None
        self.records_processed = 0
        self.records_failed = 0
        self.errors: list[ContextError] = []
        self.warnings: list[dict[str, Any]] = []
        self.child_ids: list[str] = []
        self.profiling: dict[str, StageProfile] = {}
        self.result: Any = None
        self.cancel_reason: str | None = None

        self.on_progress = on_progress
        self.on_error = on_error
        self.on_complete = on_complete
        self.on_state_change = on_state_change

    # ── Lifecycle ────────────────────────────────────────────────────

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    @property
    def is_running(self) -> bool:
        return self.state == ExecutionState.RUNNING

    @property
    def cancelled(self) -> bool:
        return self.state == ExecutionState.CANCELLED or self.token.cancelled

    def _set_state(self, new_state: ExecutionState) -> None:
        old = self.state
        if old == new_state:
            return
        self.state = new_state
        logger.debug("context.state_change", context_id=self.id, from_state=old.value, to_state=new_state.value)
        self._callback(self.on_state_change, old, new_state)

    def _callback(self, fn: Callable[..., Any] | None, *args: Any) -> None:
        if fn is None:
            return
        try:
            fn(self, *args)
        except Exception as e:
            logger.warning("context.callback_error", context_id=self.id, error=str(e))

    def start(self) -> None:
        if self.is_terminal:
            logger.warning("context.start_after_terminal", context_id=self.id, state=self.state.value)
            return
        if self.start_time is None:
            self.start_time = utcnow()
        self._set_state(ExecutionState.RUNNING)

    def pause(self) -> bool:
        if self.state != ExecutionState.RUNNING:
            return False
        self._set_state(ExecutionState.PAUSED)
        return True

    def resume(self) -> bool:
        if self.state != ExecutionState.PAUSED:
            return False
        self._set_state(ExecutionState.RUNNING)
        return True

    def _finish(self, state: ExecutionState) -> bool:
        if self.is_terminal:
            return False
        self.end_time = utcnow()
        if self.start_time is None:
            self.start_time = self.end_time
        self.duration = (self.end_time - self.start_time).total_seconds()
        self._set_state(state)
        return True

    def complete(self, result: Any = None) -> bool:
        """Mark completed. Returns False if the context was already terminal."""
        if not self._finish(ExecutionState.COMPLETED):
            return False
        self.result = result
        self.progress = 100.0
        self._callback(self.on_complete)
        return True

    def fail(self, error: BaseException | str) -> bool:
        if self.is_terminal:
            return False
        self.add_error(error)
        return self._finish(ExecutionState.FAILED)

    def cancel(self, reason: str = "cancelled") -> bool:
        if self.is_terminal:
            return False
        self.cancel_reason = reason
        self.token.cancel(reason)
        return self._finish(ExecutionState.CANCELLED)

    # ── Progress and outcomes ────────────────────────────────────────

    def update_progress(self, current: int, total: int, message: str | None = None) -> None:
        self.progress = min(100.0, (current / total) * 100) if total else 0.0
        self.progress_message = message
        self._callback(self.on_progress, current, total, message)

    def add_error(self, error: BaseException | str, record: Any = None, index: int | None = None) -> ContextError:
        entry = ContextError.from_exception(error, record, index)
        self.errors.append(entry)
        self._callback(self.on_error, entry)
        return entry

    def add_warning(self, message: str, source: str | None = None) -> None:
        self.warnings.append({"message": message, "source": source, "timestamp": utcnow().isoformat()})

    def record_success(self, n: int = 1) -> None:
        self.records_processed += n

    def record_failure(self, n: int = 1) -> None:
        self.records_failed += n

    # ── Profiling ────────────────────────────────────────────────────

    def _profile_entry(self, name: str) -> StageProfile:
        if name not in self.profiling:
            self.profiling[name] = StageProfile()
        return self.profiling[name]

    @contextmanager
    def profile(self, name: str) -> Generator[None, None, None]:
        """Time the enclosed block under ``name``."""
        if not self.config.enable_profiling:
            yield
            return
        started = time.perf_counter_ns()
        try:
            yield
        finally:
            self._profile_entry(name).record(time.perf_counter_ns() - started)

    async def profile_stage(self, name: str, fn: Callable[[], Any]) -> Any:
        """Call ``fn`` (sync or async) and record its duration under ``name``."""
        with self.profile(name):
            result = fn()
            if inspect.isawaitable(result):
                result = await result
            return result

    def profiling_report(self) -> dict[str, Any]:
        total = sum(p.total_ns for p in self.profiling.values())
        stages = sorted(self.profiling.items(), key=lambda kv: kv[1].total_ns, reverse=True)
        return {
            "totalNs": total,
            "stages": [
                {
                    "name": name,
                    **profile.to_dict(),
                    "avgNs": profile.average_ns,
                    "percentage": (profile.total_ns / total) * 100 if total else 0.0,
                }
                for name, profile in stages
            ],
        }

    # ── Children ─────────────────────────────────────────────────────

    def create_child_context(self, **meta: Any) -> ExecutionContext:
        child = ExecutionContext(
            parent_id=self.id,
            mapping_id=meta.pop("mapping_id", self.mapping_id),
            user_id=self.user_id,
            job_id=self.job_id,
            executor_type=meta.pop("executor_type", self.executor_type),
            config=ContextConfig.from_dict(self.config.to_dict()),
            token=self.token.child(),
            user_data={**self.user_data, **meta},
            dead_letter_queue=self.dead_letter_queue,
        )
        self.child_ids.append(child.id)
        return child

    def merge_child_context(self, child: ExecutionContext) -> None:
        if not child.is_terminal:
            raise ValueError(f"Cannot merge child context {child.id} in state {child.state.value}")
        if child.parent_id != self.id:
            raise ValueError(f"Context {child.id} is not a child of {self.id}")
        self.records_processed += child.records_processed
        self.records_failed += child.records_failed
        self.errors.extend(child.errors)
        self.warnings.extend(child.warnings)
        for name, profile in child.profiling.items():
            self._profile_entry(name).merge(profile)

    # ── Reporting ────────────────────────────────────────────────────

    def metrics(self) -> dict[str, Any]:
        elapsed = self.duration
        if elapsed is None and self.start_time is not None:
            elapsed = (utcnow() - self.start_time).total_seconds()
        total = self.records_processed + self.records_failed
        return {
            "recordsProcessed": self.records_processed,
            "recordsFailed": self.records_failed,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
            "duration": elapsed,
            "throughput": (total / elapsed) if elapsed else 0.0,
            "averageRecordTime": (elapsed / total) if elapsed and total else 0.0,
        }

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "mappingId": self.mapping_id,
            "state": self.state.value,
            "progress": self.progress,
            "recordsProcessed": self.records_processed,
            "recordsFailed": self.records_failed,
            "errorCount": len(self.errors),
            "duration": self.duration,
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "parentId": self.parent_id,
            "mappingId": self.mapping_id,
            "userId": self.user_id,
            "jobId": self.job_id,
            "executorType": self.executor_type,
            "state": self.state.value,
            "createdAt": self.created_at.isoformat(),
            "startTime": self.start_time.isoformat() if self.start_time else None,
            "endTime": self.end_time.isoformat() if self.end_time else None,
            "duration": self.duration,
            "progress": self.progress,
            "recordsProcessed": self.records_processed,
            "recordsFailed": self.records_failed,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
            "childIds": list(self.child_ids),
            "profiling": {"stages": {k: v.to_dict() for k, v in self.profiling.items()}},
            "userData": self.user_data,
            "config": self.config.to_dict(),
            "cancelReason": self.cancel_reason,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ExecutionContext:
        ctx = cls(
            id=data["id"],
            parent_id=data.get("parentId"),
            mapping_id=data.get("mappingId"),
            user_id=data.get("userId"),
            job_id=data.get("jobId"),
            executor_type=data.get("executorType"),
            config=ContextConfig.from_dict(data.get("config", {})),
            user_data=data.get("userData"),
        )
        ctx.state = ExecutionState(data.get("state", ExecutionState.INITIALIZED.value))
        if data.get("createdAt"):
            ctx.created_at = datetime.fromisoformat(data["createdAt"])
        ctx.start_time = datetime.fromisoformat(data["startTime"]) if data.get("startTime") else None
        ctx.end_time = datetime.fromisoformat(data["endTime"]) if data.get("endTime") else None
        ctx.duration = data.get("duration")
        ctx.progress = data.get("progress", 0.0)
        ctx.records_processed = data.get("recordsProcessed", 0)
        ctx.records_failed = data.get("recordsFailed", 0)
        ctx.errors = [ContextError.from_dict(e) for e in data.get("errors", [])]
        ctx.warnings = list(data.get("warnings", []))
        ctx.child_ids = list(data.get("childIds", []))
        ctx.profiling = {
            k: StageProfile.from_dict(v) for k, v in data.get("profiling", {}).get("stages", {}).items()
        }
        ctx.cancel_reason = data.get("cancelReason")
        if ctx.state == ExecutionState.CANCELLED:
            ctx.token.cancel(ctx.cancel_reason or "cancelled")
        return ctx

    def __repr__(self) -> str:
        return f"ExecutionContext(id={self.id!r}, state={self.state.value})"


class tracked_execution:
    """Start a context, then complete it or fail/cancel it on exit.

    Works as both ``with`` and ``async with``.
    """

    def __init__(self, context: ExecutionContext) -> None:
        self.context = context

    def __enter__(self) -> ExecutionContext:
        self.context.start()
        return self.context

    def __exit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        self._finish(exc)

    async def __aenter__(self) -> ExecutionContext:
        return self.__enter__()

    async def __aexit__(self, exc_type: Any, exc: BaseException | None, tb: Any) -> None:
        self._finish(exc)

    def _finish(self, exc: BaseException | None) -> None:
        if exc is None:
            self.context.complete()
        elif isinstance(exc, CancelledError | asyncio.CancelledError):
            self.context.cancel(str(exc) or "cancelled")
        else:
            self.context.fail(exc)


__all__ = [
    "ExecutionState",
    "ContextConfig",
    "ContextError",
    "StageProfile",
    "ExecutionContext",
    "tracked_execution",
    "utcnow",
]
