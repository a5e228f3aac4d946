"""System adapter contract.

Manifesto:
    The engine never talks to a source or target system directly. Each
    system sits behind an adapter that declares what it can do
    (capabilities, supported operations) and exposes one async interface
    for connect, discovery, reads, writes and custom queries.

Features:
    - ``BaseAdapter`` ABC with the async lifecycle and data operations
    - ``AdapterCapabilities`` / ``SupportedOperations`` flag sets
    - ``WriteMode`` and ``ReadOptions`` / ``WriteResult`` value objects
    - ``validate_config()`` against the adapter's declared config schema
    - ``measure()`` timing wrapper emitting ``performance`` events
    - ``matches_filters()`` for the ``$eq ... $json`` filter language

Tags:
    mapflow, adapters, abstract-base, adapter-pattern

Doc-Types:
    api-reference
"""

from __future__ import annotations

import json
import re
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from mapflow.core.errors import ConfigError
from mapflow.core.events import EventEmitter
from mapflow.core.logging import get_logger
from mapflow.mapping.models import Schema
from mapflow.mapping.paths import get_path

logger = get_logger(__name__)


# ── Declarations ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class AdapterCapabilities:
    supports_schema_discovery: bool = False
    supports_batch_operations: bool = False
    supports_streaming: bool = False
    supports_transactions: bool = False
    supports_partitioning: bool = False
    supports_change_data_capture: bool = False
    supports_incremental_sync: bool = False
    supports_custom_query: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {_camel(k): v for k, v in asdict(self).items()}


@dataclass(frozen=True)
class SupportedOperations:
    read: bool = False
    write: bool = False
    update: bool = False
    delete: bool = False
    upsert: bool = False
    truncate: bool = False
    create_schema: bool = False
    drop_schema: bool = False

    def to_dict(self) -> dict[str, bool]:
        return {_camel(k): v for k, v in asdict(self).items()}


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(p.title() for p in rest)


def _snake(name: str) -> str:
    return re.sub(r"(?<!^)([A-Z])", r"_\1", name).lower()


class WriteMode(str, Enum):
    INSERT = "insert"
    UPSERT = "upsert"
    REPLACE = "replace"
    UPDATE = "update"
    DELETE = "delete"


FILTER_OPERATORS = frozenset(
    {"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$like", "$between", "$json"}
)


@dataclass
class ReadOptions:
    filters: dict[str, Any] = field(default_factory=dict)
    joins: list[dict[str, Any]] = field(default_factory=list)
    sort: list[tuple[str, str]] = field(default_factory=list)
    limit: int | None = None
    offset: int = 0
    batch_size: int | None = None
    transaction: Any = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> ReadOptions:
        data = data or {}
        sort = data.get("sort") or []
        if isinstance(sort, dict):
            sort = list(sort.items())
        return cls(
            filters=dict(data.get("filters") or {}),
            joins=list(data.get("joins") or []),
            sort=[(f, str(d).lower()) for f, d in sort],
            limit=data.get("limit"),
            offset=data.get("offset", 0),
            batch_size=data.get("batchSize", data.get("batch_size")),
            transaction=data.get("transaction"),
        )


@dataclass
class ReadResult:
    records: list[dict[str, Any]]
    total: int
    has_more: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"records": self.records, "total": self.total, "hasMore": self.has_more}


@dataclass
class WriteResult:
    inserted: int = 0
    updated: int = 0
    deleted: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "inserted": self.inserted,
            "updated": self.updated,
            "deleted": self.deleted,
            "errors": list(self.errors),
            "success": self.success,
        }


@dataclass
class AdapterInfo:
    """Static description of an adapter type."""

    name: str
    type: str
    version: str = "1.0.0"
    capabilities: AdapterCapabilities = field(default_factory=AdapterCapabilities)
    supported_operations: SupportedOperations = field(default_factory=SupportedOperations)
    config_schema: dict[str, Any] | None = None


@dataclass
class AdapterMetrics:
    connect_time: float | None = None
    last_activity: datetime | None = None
    operation_count: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "connectTime": self.connect_time,
            "lastActivity": self.last_activity.isoformat() if self.last_activity else None,
            "operationCount": self.operation_count,
            "errorCount": self.error_count,
        }


# ── Filters ──────────────────────────────────────────────────────────


def _like(actual: Any, pattern: Any) -> bool:
    if not isinstance(actual, str):
        return False
    regex = "".join(
        ".*" if ch == "%" else "." if ch == "_" else re.escape(ch) for ch in str(pattern)
    )
    return re.fullmatch(regex, actual, flags=re.IGNORECASE) is not None


def _json(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        try:
            actual = json.loads(actual)
        except ValueError:
            return False
    if not isinstance(actual, dict) or not isinstance(expected, dict):
        return False
    return all(get_path(actual, path) == value for path, value in expected.items())


def _ordered(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def apply(actual: Any, expected: Any) -> bool:
        if actual is None or expected is None:
            return False
        try:
            return op(actual, expected)
        except TypeError:
            return False
    return apply


def _between(actual: Any, bounds: Any) -> bool:
    low, high = bounds
    return _ordered(lambda a, _: low <= a <= high)(actual, bounds)


_FILTERS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda a, e: a == e,
    "$ne": lambda a, e: a != e,
    "$gt": _ordered(lambda a, e: a > e),
    "$gte": _ordered(lambda a, e: a >= e),
    "$lt": _ordered(lambda a, e: a < e),
    "$lte": _ordered(lambda a, e: a <= e),
    "$in": lambda a, e: a in e,
    "$nin": lambda a, e: a not in e,
    "$like": _like,
    "$between": _between,
    "$json": _json,
}


def matches_filters(record: dict[str, Any], filters: dict[str, Any] | None) -> bool:
    """Whether ``record`` satisfies every field filter.

    A filter value is either a literal (equality) or a dict of operators::

        {"status": "active", "age": {"$between": [18, 65]}, "name": {"$like": "Jo%"}}
    """
    for path, condition in (filters or {}).items():
        actual = get_path(record, path)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, operand in condition.items():
                handler = _FILTERS.get(op)
                if handler is None:
                    raise ValueError(f"Unsupported filter operator: {op}")
                if not handler(actual, operand):
                    return False
        elif actual != condition:
            return False
    return True


# ── Base adapter ─────────────────────────────────────────────────────


_JSON_TYPES: dict[str, tuple[type, ...]] = {
    "string": (str,),
    "number": (int, float),
    "integer": (int,),
    "boolean": (bool,),
    "array": (list, tuple),
    "object": (dict,),
}


class BaseAdapter(ABC):
    """
    Abstract base class for system adapters.

    Subclasses set ``info`` (or pass one in) and implement the async
    operations. Configuration is validated on construction.
    """

    info: AdapterInfo = AdapterInfo(name="base", type="base")

    def __init__(
        self,
        config: dict[str, Any] | None = None,
        info: AdapterInfo | None = None,
        *,
        emitter: EventEmitter | None = None,
    ):
        self.config = dict(config or {})
        if info is not None:
            self.info = info
        self.emitter = emitter or EventEmitter(source=f"adapter:{self.info.type}")
        self._connected = False
        self._metrics = AdapterMetrics()
        self.validate_config()

    @property
    def is_connected(self) -> bool:
        return self._connected

    # ── Contract ─────────────────────────────────────────────────────

    @abstractmethod
    async def connect(self) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...

    @abstractmethod
    async def test_connection(self) -> bool:
        ...

    @abstractmethod
    async def discover_schemas(self, **options: Any) -> list[Schema]:
        ...

    @abstractmethod
    async def read_data(self, schema: str, options: ReadOptions | dict[str, Any] | None = None) -> ReadResult:
        ...

    @abstractmethod
    async def write_data(
        self,
        schema: str,
        records: list[dict[str, Any]],
        mode: WriteMode | str = WriteMode.INSERT,
        **options: Any,
    ) -> WriteResult:
        ...

    @abstractmethod
    async def execute_query(self, query: Any, params: dict[str, Any] | None = None) -> Any:
        ...

    @abstractmethod
    async def get_system_metadata(self) -> dict[str, Any]:
        ...

    # ── Shared behaviour ─────────────────────────────────────────────

    def validate_config(self) -> None:
        """Check ``config`` against ``info.config_schema`` (required keys and types)."""
        schema = self.info.config_schema
        if not schema:
            return
        errors = [
            f"Missing required field: {name}" for name in schema.get("required", []) if name not in self.config
        ]
        for key, value in self.config.items():
            expected = schema.get("properties", {}).get(key, {}).get("type")
            if expected is None or expected not in _JSON_TYPES:
                continue
            ok = isinstance(value, _JSON_TYPES[expected])
            if expected in ("number", "integer") and isinstance(value, bool):
                ok = False
            if not ok:
                errors.append(f"Invalid type for {key}: expected {expected}, got {type(value).__name__}")
        if errors:
            raise ConfigError(f"Configuration validation failed: {', '.join(errors)}")

    @property
    def capabilities(self) -> AdapterCapabilities:
        return self.info.capabilities

    @property
    def supported_operations(self) -> SupportedOperations:
        return self.info.supported_operations

    def has_capability(self, capability: str) -> bool:
        """Accepts ``supportsStreaming`` or ``supports_streaming``."""
        return getattr(self.capabilities, _snake(capability), False) is True

    def supports_operation(self, operation: str) -> bool:
        return getattr(self.supported_operations, _snake(operation), False) is True

    def _set_connected(self, connected: bool, connect_time: float | None = None) -> None:
        self._connected = connected
        if connected:
            self._metrics.connect_time = connect_time
            self.emitter.emit("connected", adapter=self.info.name, type=self.info.type)
            logger.info("adapter.connected", adapter=self.info.name, connect_time=connect_time)
        else:
            self.emitter.emit("disconnected", adapter=self.info.name, type=self.info.type)
            logger.info("adapter.disconnected", adapter=self.info.name)

    async def measure(self, operation_name: str, fn: Callable[[], Awaitable[Any]]) -> Any:
        """Await ``fn()`` and emit a ``performance`` event with its duration."""
        started = time.perf_counter()
        try:
            result = await fn()
        except Exception as e:
            self._metrics.error_count += 1
            self.emitter.emit(
                "performance",
                operation=operation_name,
                duration=time.perf_counter() - started,
                success=False,
                error=str(e),
            )
            raise
        duration = time.perf_counter() - started
        self._metrics.operation_count += 1
        self._metrics.last_activity = datetime.now(UTC)
        self.emitter.emit("performance", operation=operation_name, duration=duration, success=True)
        logger.debug("adapter.operation", adapter=self.info.name, operation=operation_name, duration=duration)
        return result

    async def process_batch(
        self,
        items: list[Any],
        processor: Callable[[list[Any], int], Awaitable[Any]],
        batch_size: int = 1000,
    ) -> list[Any]:
        """Run ``processor(batch, batch_number)`` over consecutive slices."""
        results = []
        total = -(-len(items) // batch_size) if items else 0
        for number, start in enumerate(range(0, len(items), batch_size), start=1):
            batch = items[start:start + batch_size]
            try:
                results.append(await processor(batch, number))
            except Exception as e:
                self.emitter.emit("batchError", batch=number, error=str(e), items=len(batch))
                raise
            self.emitter.emit(
                "batchProgress",
                current=number,
                total=total,
                processed=min(start + batch_size, len(items)),
                total_items=len(items),
            )
        return results

    def metrics(self) -> dict[str, Any]:
        return {"adapter": self.info.name, "connected": self._connected, **self._metrics.to_dict()}

    async def __aenter__(self) -> BaseAdapter:
        await self.connect()
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.disconnect()


__all__ = [
    "AdapterCapabilities",
    "AdapterInfo",
    "AdapterMetrics",
    "BaseAdapter",
    "FILTER_OPERATORS",
    "ReadOptions",
    "ReadResult",
    "SupportedOperations",
    "WriteMode",
    "WriteResult",
    "matches_filters",
]
