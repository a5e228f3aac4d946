"""Dead letter queue: capture, inspect and retry failed records.

WHY
───
A skipped record should not disappear silently. When a queue is attached
to an :class:`~mapflow.execution.context.ExecutionContext`, executors
hand it every :class:`FailedRecord` with the original input and error so
operators can inspect, retry or resolve it without re-running the batch.

ARCHITECTURE
────────────
::

    DeadLetterQueue(max_retries=3)
      ├── .add(failed, context_id, mapping_id)
      ├── .list_pending()          ─ unresolved entries
      ├── .retry(id, fn)           ─ re-run fn(original), resolve on success
      ├── .resolve(id, by)         ─ mark as handled
      ├── .purge_resolved(days)    ─ drop old resolved entries
      └── .stats()                 ─ counts by status / mapping

Example::

    dlq = DeadLetterQueue()
    ctx = ExecutionContext(mapping_id="users", dead_letter_queue=dlq)
    await BatchExecutor().execute(records, pipeline, ctx)
    for entry in dlq.list_pending():
        await dlq.retry(entry.id, pipeline.process)
"""

from __future__ import annotations

import threading
import uuid
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from mapflow.core.logging import get_logger
from mapflow.validation.validators import call_flexible

if TYPE_CHECKING:
    from mapflow.execution.executors import FailedRecord

logger = get_logger(__name__)


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


@dataclass
class DeadLetter:
    """A failed record waiting for attention."""

    id: str
    record_index: int
    original: Any
    error: str
    error_type: str
    context_id: str | None
    mapping_id: str | None
    retry_count: int
    max_retries: int
    created_at: datetime
    last_retry_at: datetime | None = None
    resolved_at: datetime | None = None
    resolved_by: str | None = None
    result: Any = None

    @property
    def resolved(self) -> bool:
        return self.resolved_at is not None

    def can_retry(self) -> bool:
        """Check if this dead letter can be retried."""
        return self.resolved_at is None and self.retry_count < self.max_retries

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "recordIndex": self.record_index,
            "original": self.original,
            "error": self.error,
            "errorType": self.error_type,
            "contextId": self.context_id,
            "mappingId": self.mapping_id,
            "retryCount": self.retry_count,
            "maxRetries": self.max_retries,
            "createdAt": self.created_at.isoformat(),
            "lastRetryAt": self.last_retry_at.isoformat() if self.last_retry_at else None,
            "resolvedAt": self.resolved_at.isoformat() if self.resolved_at else None,
            "resolvedBy": self.resolved_by,
        }


class DeadLetterQueue:
    """In-memory dead letter queue.

    Entries persist until resolved and purged.
    """

    def __init__(self, max_retries: int = 3) -> None:
        self._max_retries = max_retries
        self._entries: dict[str, DeadLetter] = {}
        self._lock = threading.Lock()

    def add(
        self,
        failed: FailedRecord,
        *,
        context_id: str | None = None,
        mapping_id: str | None = None,
        max_retries: int | None = None,
    ) -> DeadLetter:
        entry = DeadLetter(
            id=f"dlq_{uuid.uuid4().hex[:16]}",
            record_index=failed.index,
            original=failed.original,
            error=str(failed.error),
            error_type=type(failed.error).__name__,
            context_id=context_id,
            mapping_id=mapping_id,
            retry_count=0,
            max_retries=max_retries if max_retries is not None else self._max_retries,
            created_at=utcnow(),
        )
        with self._lock:
            self._entries[entry.id] = entry
        logger.info(
            "dlq.added",
            dlq_id=entry.id,
            record_index=entry.record_index,
            mapping_id=mapping_id,
            error=entry.error,
        )
        return entry

    def get(self, dlq_id: str) -> DeadLetter | None:
        return self._entries.get(dlq_id)

    def list_pending(self, mapping_id: str | None = None, limit: int = 100) -> list[DeadLetter]:
        """Unresolved entries, oldest first."""
        with self._lock:
            entries = [
                e for e in self._entries.values()
                if not e.resolved and (mapping_id is None or e.mapping_id == mapping_id)
            ]
        entries.sort(key=lambda e: e.created_at)
        return entries[:limit]

    def resolve(self, dlq_id: str, resolved_by: str | None = None) -> bool:
        """Mark an entry resolved. False if unknown or already resolved."""
        with self._lock:
            entry = self._entries.get(dlq_id)
            if entry is None or entry.resolved:
                return False
            entry.resolved_at = utcnow()
            entry.resolved_by = resolved_by
        logger.info("dlq.resolved", dlq_id=dlq_id, resolved_by=resolved_by)
        return True

    async def retry(self, dlq_id: str, fn: Callable[[Any], Any]) -> bool:
        """Re-run ``fn(original)``; resolves the entry when it succeeds.

        Returns False when the entry is unknown, resolved, out of retries,
        or the retry failed again.
        """
        entry = self.get(dlq_id)
        if entry is None or not entry.can_retry():
            return False
        entry.retry_count += 1
        entry.last_retry_at = utcnow()
        try:
            entry.result = await call_flexible(fn, entry.original)
        except Exception as e:
            entry.error = str(e)
            entry.error_type = type(e).__name__
            logger.warning("dlq.retry_failed", dlq_id=dlq_id, attempt=entry.retry_count, error=str(e))
            return False
        self.resolve(dlq_id, resolved_by="retry")
        return True

    def purge_resolved(self, days: int = 0) -> int:
        """Delete resolved entries resolved more than ``days`` ago."""
        cutoff = utcnow() - timedelta(days=days)
        with self._lock:
            doomed = [
                e.id for e in self._entries.values()
                if e.resolved_at is not None and e.resolved_at <= cutoff
            ]
            for dlq_id in doomed:
                del self._entries[dlq_id]
        return len(doomed)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        pending = [e for e in entries if not e.resolved]
        return {
            "total": len(entries),
            "pending": len(pending),
            "resolved": len(entries) - len(pending),
            "retryable": sum(1 for e in pending if e.can_retry()),
            "byMapping": dict(Counter(e.mapping_id or "unknown" for e in pending)),
            "byErrorType": dict(Counter(e.error_type for e in pending)),
        }

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["DeadLetter", "DeadLetterQueue"]
