"""Native database type → UniversalType mapping.

Lookup order for ``map_type``:
    1. exact match in the system's table
    2. base type with parameters stripped (``varchar(255)`` → ``varchar``)
    3. system-neutral prefix patterns
    4. ``string`` with zero confidence
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any

from mapflow.core.logging import get_logger
from mapflow.mapping.models import Column, Schema, UniversalType

logger = get_logger(__name__)

U = UniversalType

_POSTGRESQL: dict[str, UniversalType] = {
    "integer": U.INTEGER, "int": U.INTEGER, "int4": U.INTEGER,
    "smallint": U.INTEGER, "int2": U.INTEGER, "serial": U.INTEGER,
    "bigint": U.LONG, "int8": U.LONG, "bigserial": U.LONG,
    "decimal": U.DECIMAL, "numeric": U.DECIMAL, "money": U.DECIMAL,
    "real": U.FLOAT, "float4": U.FLOAT,
    "double precision": U.DOUBLE, "float8": U.DOUBLE,
    "character varying": U.STRING, "varchar": U.STRING,
    "character": U.STRING, "char": U.STRING, "uuid": U.STRING,
    "text": U.TEXT,
    "date": U.DATE,
    "time": U.TIME, "time without time zone": U.TIME, "time with time zone": U.TIME,
    "timestamp": U.TIMESTAMP, "timestamp without time zone": U.TIMESTAMP,
    "timestamp with time zone": U.TIMESTAMP, "timestamptz": U.TIMESTAMP,
    "boolean": U.BOOLEAN, "bool": U.BOOLEAN,
    "bytea": U.BINARY,
    "json": U.JSON, "jsonb": U.JSON,
    "array": U.ARRAY,
}

_MYSQL: dict[str, UniversalType] = {
    "int": U.INTEGER, "integer": U.INTEGER, "smallint": U.INTEGER,
    "mediumint": U.INTEGER, "tinyint": U.INTEGER, "year": U.INTEGER,
    "bigint": U.LONG,
    "decimal": U.DECIMAL, "numeric": U.DECIMAL,
    "float": U.FLOAT, "double": U.DOUBLE, "real": U.DOUBLE,
    "varchar": U.STRING, "char": U.STRING, "enum": U.STRING, "set": U.STRING,
    "text": U.TEXT, "longtext": U.TEXT, "mediumtext": U.TEXT, "tinytext": U.TEXT,
    "date": U.DATE, "time": U.TIME, "datetime": U.DATETIME, "timestamp": U.TIMESTAMP,
    "tinyint(1)": U.BOOLEAN, "bit(1)": U.BOOLEAN, "boolean": U.BOOLEAN, "bool": U.BOOLEAN,
    "binary": U.BINARY, "varbinary": U.BINARY, "blob": U.BINARY,
    "longblob": U.BINARY, "mediumblob": U.BINARY, "tinyblob": U.BINARY,
    "json": U.JSON,
}

_ORACLE: dict[str, UniversalType] = {
    "number": U.DECIMAL, "integer": U.INTEGER, "float": U.DOUBLE,
    "binary_float": U.FLOAT, "binary_double": U.DOUBLE,
    "varchar2": U.STRING, "nvarchar2": U.STRING, "char": U.STRING, "nchar": U.STRING,
    "clob": U.TEXT, "nclob": U.TEXT, "long": U.TEXT,
    "date": U.DATETIME, "timestamp": U.TIMESTAMP,
    "timestamp with time zone": U.TIMESTAMP, "timestamp with local time zone": U.TIMESTAMP,
    "blob": U.BINARY, "raw": U.BINARY, "long raw": U.BINARY,
}

_MSSQL: dict[str, UniversalType] = {
    "int": U.INTEGER, "smallint": U.INTEGER, "tinyint": U.INTEGER,
    "bigint": U.LONG,
    "decimal": U.DECIMAL, "numeric": U.DECIMAL, "money": U.DECIMAL, "smallmoney": U.DECIMAL,
    "real": U.FLOAT, "float": U.DOUBLE,
    "varchar": U.STRING, "nvarchar": U.STRING, "char": U.STRING, "nchar": U.STRING,
    "uniqueidentifier": U.STRING,
    "text": U.TEXT, "ntext": U.TEXT,
    "date": U.DATE, "time": U.TIME,
    "datetime": U.DATETIME, "datetime2": U.DATETIME, "smalldatetime": U.DATETIME,
    "datetimeoffset": U.TIMESTAMP,
    "bit": U.BOOLEAN,
    "binary": U.BINARY, "varbinary": U.BINARY, "image": U.BINARY,
}

_SQLITE: dict[str, UniversalType] = {
    "integer": U.INTEGER, "int": U.INTEGER, "bigint": U.LONG,
    "real": U.DOUBLE, "double": U.DOUBLE, "float": U.DOUBLE, "numeric": U.DECIMAL,
    "text": U.TEXT, "varchar": U.STRING, "char": U.STRING,
    "blob": U.BINARY, "boolean": U.BOOLEAN, "date": U.DATE, "datetime": U.DATETIME,
}

_MONGODB: dict[str, UniversalType] = {
    "string": U.STRING, "objectid": U.STRING,
    "int": U.INTEGER, "int32": U.INTEGER, "long": U.LONG, "int64": U.LONG,
    "double": U.DOUBLE, "decimal": U.DECIMAL, "decimal128": U.DECIMAL,
    "bool": U.BOOLEAN, "boolean": U.BOOLEAN,
    "date": U.DATETIME, "timestamp": U.TIMESTAMP,
    "object": U.JSON, "array": U.ARRAY, "bindata": U.BINARY,
}

_DEFAULT: dict[str, UniversalType] = {
    "string": U.STRING, "number": U.DOUBLE, "integer": U.INTEGER, "boolean": U.BOOLEAN,
    "date": U.TIMESTAMP, "object": U.JSON, "array": U.ARRAY,
}

_SYSTEMS: dict[str, dict[str, UniversalType]] = {
    "postgresql": _POSTGRESQL,
    "postgres": _POSTGRESQL,
    "mysql": _MYSQL,
    "mariadb": _MYSQL,
    "oracle": _ORACLE,
    "mssql": _MSSQL,
    "sqlserver": _MSSQL,
    "sqlite": _SQLITE,
    "mongodb": _MONGODB,
}

_PATTERNS: list[tuple[re.Pattern[str], UniversalType]] = [
    (re.compile(r"^(n)?(var)?char"), U.STRING),
    (re.compile(r"^(n)?text|clob"), U.TEXT),
    (re.compile(r"^bigint"), U.LONG),
    (re.compile(r"^(small|tiny|medium)?int"), U.INTEGER),
    (re.compile(r"^decimal|^numeric|^number"), U.DECIMAL),
    (re.compile(r"^float|^double|^real"), U.DOUBLE),
    (re.compile(r"^bool|^bit"), U.BOOLEAN),
    (re.compile(r"^timestamp|^datetime"), U.TIMESTAMP),
    (re.compile(r"^date"), U.DATE),
    (re.compile(r"^time"), U.TIME),
    (re.compile(r"^json"), U.JSON),
    (re.compile(r"blob|binary|bytea"), U.BINARY),
]

_PARAMS_RE = re.compile(r"^\s*([a-z_][a-z0-9_ ]*?)\s*\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\)")

_PRECISION_TYPES = frozenset({U.DECIMAL, U.FLOAT, U.DOUBLE})


@dataclass
class TypeMapping:
    """Result of mapping one native type."""

    universal_type: UniversalType
    native_type: str
    system_type: str
    source: str
    confidence: float
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def confidence_level(self) -> str:
        if self.confidence >= 0.9:
            return "high"
        if self.confidence >= 0.6:
            return "medium"
        return "low"


class TypeMapper:
    """Map native column types of a source system to :class:`UniversalType`."""

    def __init__(self) -> None:
        self._custom: dict[str, dict[str, UniversalType]] = {}

    def register(self, system_type: str, native_type: str, universal: UniversalType) -> None:
        self._custom.setdefault(system_type.lower(), {})[native_type.lower().strip()] = universal

    @staticmethod
    def parse_parameters(native_type: str) -> dict[str, int]:
        """Extract ``length`` or ``precision``/``scale`` from ``name(n[,m])``."""
        match = _PARAMS_RE.match(native_type.lower())
        if not match:
            return {}
        first, second = int(match.group(2)), match.group(3)
        if second is not None:
            return {"precision": first, "scale": int(second)}
        return {"length": first}

    def map_type(self, native_type: str | None, system_type: str = "") -> TypeMapping:
        system = (system_type or "").lower()
        if not native_type or not isinstance(native_type, str):
            return TypeMapping(U.STRING, str(native_type), system, "unknown", 0.0)

        normalized = native_type.lower().strip()
        table = {**_SYSTEMS.get(system, _DEFAULT), **self._custom.get(system, {})}
        known_system = system in _SYSTEMS or system in self._custom
        metadata: dict[str, Any] = dict(self.parse_parameters(normalized))

        if normalized in table:
            return TypeMapping(table[normalized], native_type, system,
                               system if known_system else "default",
                               0.95 if known_system else 0.7, metadata)

        if normalized.endswith("[]"):
            return TypeMapping(U.ARRAY, native_type, system, "pattern", 0.9, metadata)

        base = re.sub(r"\s*\(.*\)\s*", "", normalized).strip()
        if base in table:
            return TypeMapping(table[base], native_type, system,
                               system if known_system else "default",
                               0.9 if known_system else 0.7, metadata)

        for pattern, universal in _PATTERNS:
            if pattern.search(base):
                return TypeMapping(universal, native_type, system, "pattern", 0.5, metadata)

        logger.debug("type_mapper.unknown_type", native_type=native_type, system_type=system)
        return TypeMapping(U.STRING, native_type, system, "unknown", 0.0, metadata)

    def map_column(
        self,
        name: str,
        native_type: str,
        system_type: str = "",
        *,
        nullable: bool = True,
        primary_key: bool = False,
        default_value: Any = None,
        **metadata: Any,
    ) -> Column:
        mapping = self.map_type(native_type, system_type)
        params = {**mapping.metadata, **{k: v for k, v in metadata.items() if v is not None}}
        length = params.get("length")
        precision = params.get("precision")
        scale = params.get("scale")
        # A single parameter on a numeric type is its precision, not a length.
        if mapping.universal_type in _PRECISION_TYPES and length is not None and precision is None:
            precision, length = length, None
        return Column(
            name=name,
            type=mapping.universal_type,
            original_type=native_type,
            nullable=nullable,
            primary_key=primary_key,
            default_value=default_value,
            length=length,
            precision=precision,
            scale=scale,
        )

    def map_schema(self, name: str, columns: list[dict[str, Any]], system_type: str = "") -> Schema:
        """Build a :class:`Schema` from native column dicts (``name``, ``type``, ...)."""
        mapped = []
        for col in columns:
            col = dict(col)
            col_name = col.pop("name")
            native = col.pop("type", None) or col.pop("data_type", None) or ""
            mapped.append(self.map_column(
                col_name,
                native,
                system_type,
                nullable=col.pop("nullable", True),
                primary_key=col.pop("primary_key", col.pop("primaryKey", False)),
                default_value=col.pop("default_value", col.pop("defaultValue", None)),
                length=col.get("length"),
                precision=col.get("precision"),
                scale=col.get("scale"),
            ))
        return Schema(name=name, columns=mapped)


__all__ = ["TypeMapping", "TypeMapper"]
