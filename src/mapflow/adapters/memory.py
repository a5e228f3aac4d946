"""In-process adapter over dict tables.

Backs tests, the CLI and local dry runs. Tables are lists of dict rows
keyed by schema name; schemas are either declared up front or inferred
from the first row.
"""

from __future__ import annotations

import asyncio
import copy
import time
from typing import Any

from mapflow.adapters.base import (
    AdapterCapabilities,
    AdapterInfo,
    BaseAdapter,
    ReadOptions,
    ReadResult,
    SupportedOperations,
    WriteMode,
    WriteResult,
    matches_filters,
)
from mapflow.core.errors import AdapterError, DuplicateKeyError
from mapflow.mapping.models import Column, Schema, UniversalType


def _infer_type(value: Any) -> UniversalType:
    if isinstance(value, bool):
        return UniversalType.BOOLEAN
    if isinstance(value, int):
        return UniversalType.INTEGER
    if isinstance(value, float):
        return UniversalType.DOUBLE
    if isinstance(value, list):
        return UniversalType.ARRAY
    if isinstance(value, dict):
        return UniversalType.JSON
    return UniversalType.STRING


class MemoryAdapter(BaseAdapter):
    """Reference adapter. Config: ``tables`` (name -> rows), ``key`` (default ``id``)."""

    info = AdapterInfo(
        name="memory",
        type="memory",
        capabilities=AdapterCapabilities(
            supports_schema_discovery=True,
            supports_batch_operations=True,
            supports_custom_query=True,
        ),
        supported_operations=SupportedOperations(
            read=True,
            write=True,
            update=True,
            delete=True,
            upsert=True,
            truncate=True,
            create_schema=True,
            drop_schema=True,
        ),
        config_schema={
            "properties": {"tables": {"type": "object"}, "key": {"type": "string"}, "schemas": {"type": "object"}},
        },
    )

    def __init__(self, config: dict[str, Any] | None = None, **kwargs: Any):
        super().__init__(config, **kwargs)
        self.key = self.config.get("key", "id")
        self.tables: dict[str, list[dict[str, Any]]] = {
            name: [dict(r) for r in rows] for name, rows in (self.config.get("tables") or {}).items()
        }
        self.schemas: dict[str, Schema] = {
            name: s if isinstance(s, Schema) else Schema.model_validate({"name": name, **s})
            for name, s in (self.config.get("schemas") or {}).items()
        }
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        started = time.perf_counter()
        self._set_connected(True, time.perf_counter() - started)

    async def disconnect(self) -> None:
        if self._connected:
            self._set_connected(False)

    async def test_connection(self) -> bool:
        return self._connected

    async def discover_schemas(self, **options: Any) -> list[Schema]:
        self._require_connection()
        names = sorted(set(self.tables) | set(self.schemas))
        return [self.schemas.get(name) or self._infer_schema(name) for name in names]

    def _infer_schema(self, name: str) -> Schema:
        rows = self.tables.get(name) or []
        sample = rows[0] if rows else {}
        return Schema(
            name=name,
            columns=[
                Column(name=k, type=_infer_type(v), primary_key=(k == self.key)) for k, v in sample.items()
            ],
        )

    async def read_data(self, schema: str, options: ReadOptions | dict[str, Any] | None = None) -> ReadResult:
        self._require_connection()
        opts = options if isinstance(options, ReadOptions) else ReadOptions.from_dict(options)

        async def _read() -> ReadResult:
            rows = [r for r in self._table(schema) if matches_filters(r, opts.filters)]
            for field, direction in reversed(opts.sort):
                rows.sort(key=lambda r: (r.get(field) is None, r.get(field)), reverse=direction == "desc")
            total = len(rows)
            end = opts.offset + opts.limit if opts.limit is not None else None
            page = rows[opts.offset:end]
            return ReadResult(
                records=copy.deepcopy(page),
                total=total,
                has_more=end is not None and end < total,
            )

        return await self.measure("read_data", _read)

    async def write_data(
        self,
        schema: str,
        records: list[dict[str, Any]],
        mode: WriteMode | str = WriteMode.INSERT,
        **options: Any,
    ) -> WriteResult:
        self._require_connection()
        mode = WriteMode(mode)

        async def _write() -> WriteResult:
            async with self._lock:
                table = self.tables.setdefault(schema, [])
                result = WriteResult()
                if mode == WriteMode.REPLACE:
                    result.deleted = len(table)
                    table.clear()
                index = {row.get(self.key): i for i, row in enumerate(table)}
                for position, record in enumerate(records):
                    try:
                        self._apply(table, index, record, mode, result)
                    except DuplicateKeyError as e:
                        if options.get("stop_on_error"):
                            raise
                        result.errors.append({"index": position, "error": str(e)})
                return result

        return await self.measure("write_data", _write)

    def _apply(
        self,
        table: list[dict[str, Any]],
        index: dict[Any, int],
        record: dict[str, Any],
        mode: WriteMode,
        result: WriteResult,
    ) -> None:
        key = record.get(self.key)
        position = index.get(key) if key is not None else None
        if mode in (WriteMode.INSERT, WriteMode.REPLACE):
            if position is not None:
                raise DuplicateKeyError(f"Duplicate key {self.key}={key}")
            index[key] = len(table)
            table.append(dict(record))
            result.inserted += 1
        elif mode == WriteMode.UPSERT:
            if position is None:
                index[key] = len(table)
                table.append(dict(record))
                result.inserted += 1
            else:
                table[position].update(record)
                result.updated += 1
        elif mode == WriteMode.UPDATE:
            if position is not None:
                table[position].update(record)
                result.updated += 1
        elif mode == WriteMode.DELETE and position is not None:
            del table[position]
            index.clear()
            index.update({row.get(self.key): i for i, row in enumerate(table)})
            result.deleted += 1

    async def execute_query(self, query: Any, params: dict[str, Any] | None = None) -> Any:
        """Queries are dicts: ``{"op": "count" | "select" | "truncate" | "drop", "table": ..., "filters": ...}``."""
        self._require_connection()
        if not isinstance(query, dict) or "table" not in query:
            raise AdapterError("Memory adapter queries need a dict with a 'table'")
        op = query.get("op", "select")
        table = query["table"]
        filters = {**(query.get("filters") or {}), **(params or {})}
        if op == "select":
            return copy.deepcopy([r for r in self._table(table) if matches_filters(r, filters)])
        if op == "count":
            return sum(1 for r in self._table(table) if matches_filters(r, filters))
        if op == "truncate":
            removed = len(self.tables.get(table, []))
            self.tables[table] = []
            return removed
        if op == "drop":
            self.schemas.pop(table, None)
            return self.tables.pop(table, None) is not None
        raise AdapterError(f"Unsupported memory adapter operation: {op}")

    async def get_system_metadata(self) -> dict[str, Any]:
        return {
            "type": self.info.type,
            "version": self.info.version,
            "tables": {name: len(rows) for name, rows in self.tables.items()},
            "capabilities": self.capabilities.to_dict(),
        }

    def _table(self, name: str) -> list[dict[str, Any]]:
        if name not in self.tables:
            raise AdapterError(f"Unknown table: {name}")
        return self.tables[name]

    def _require_connection(self) -> None:
        if not self._connected:
            raise AdapterError(f"Adapter {self.info.name} is not connected")


__all__ = ["MemoryAdapter"]
