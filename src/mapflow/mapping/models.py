"""
Declarative mapping document.

Manifesto:
    A mapping is data, not code. The JSON document stored by the catalog
    is accepted verbatim (camelCase keys) and parsed once into immutable
    pydantic models; the pipeline compiler and validators read these
    models and never the raw dict.

Architecture:
    Mapping ─┬─ source_schema / target_schema : Schema ── Column*
             ├─ rules : Rule*  (ordered by priority, then declaration)
             ├─ default_values : target-field → literal
             ├─ lookup_tables  : name → {key: value} | [row, ...]
             └─ validation_rules, aggregation, quality_rules (optional stages)

    Rules and columns refer to fields by name (dotted paths for nested
    records), never by object identity.

Tags:
    mapping, rules, schema, pydantic, mapflow
"""

from __future__ import annotations

import re
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from mapflow.mapping.paths import get_path

# ── Enums ────────────────────────────────────────────────────────────


class UniversalType(str, Enum):
    """Platform-neutral column type."""

    STRING = "string"
    TEXT = "text"
    INTEGER = "integer"
    LONG = "long"
    FLOAT = "float"
    DOUBLE = "double"
    DECIMAL = "decimal"
    BOOLEAN = "boolean"
    DATE = "date"
    TIME = "time"
    DATETIME = "datetime"
    TIMESTAMP = "timestamp"
    BINARY = "binary"
    JSON = "json"
    ARRAY = "array"


class RuleType(str, Enum):
    DIRECT = "direct"
    TRANSFORM = "transform"
    CONCAT = "concat"
    SPLIT = "split"
    LOOKUP = "lookup"
    FORMULA = "formula"
    CONDITIONAL = "conditional"


class ErrorPolicy(str, Enum):
    """What a rule does when it fails."""

    SKIP = "skip"
    DEFAULT = "default"
    FAIL = "fail"


class ConditionOperator(str, Enum):
    EQ = "=="
    STRICT_EQ = "==="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    CONTAINS = "contains"
    STARTS_WITH = "startsWith"
    ENDS_WITH = "endsWith"
    IN = "in"
    NOT_IN = "notIn"
    IS_NULL = "isNull"
    IS_NOT_NULL = "isNotNull"


_NUMERIC_RE = re.compile(r"^\s*-?\d+(\.\d+)?([eE][-+]?\d+)?\s*$")

_JSON_TYPES: dict[UniversalType, tuple[str, str | None]] = {
    UniversalType.STRING: ("string", None),
    UniversalType.TEXT: ("string", None),
    UniversalType.INTEGER: ("integer", None),
    UniversalType.LONG: ("integer", None),
    UniversalType.FLOAT: ("number", None),
    UniversalType.DOUBLE: ("number", None),
    UniversalType.DECIMAL: ("number", None),
    UniversalType.BOOLEAN: ("boolean", None),
    UniversalType.DATE: ("string", "date"),
    UniversalType.TIME: ("string", "time"),
    UniversalType.DATETIME: ("string", "date-time"),
    UniversalType.TIMESTAMP: ("string", "date-time"),
    UniversalType.BINARY: ("string", None),
    UniversalType.ARRAY: ("array", None),
}


# ── Comparison ───────────────────────────────────────────────────────


def _is_number(value: Any) -> bool:
    return isinstance(value, int | float) and not isinstance(value, bool)


def _coerce_pair(a: Any, b: Any) -> tuple[Any, Any]:
    """Align a number with a numeric string so ``1 == "1"`` compares loosely."""
    if _is_number(a) and isinstance(b, str) and _NUMERIC_RE.match(b):
        return a, float(b)
    if _is_number(b) and isinstance(a, str) and _NUMERIC_RE.match(a):
        return float(a), b
    return a, b


def _loose_equal(a: Any, b: Any) -> bool:
    if a == b:
        return True
    x, y = _coerce_pair(a, b)
    return x == y


def compare(operand: Any, operator: ConditionOperator | str, value: Any = None) -> bool:
    """Evaluate ``operand <operator> value``; incomparable values yield False."""
    op = ConditionOperator(operator)

    if op == ConditionOperator.IS_NULL:
        return operand is None
    if op == ConditionOperator.IS_NOT_NULL:
        return operand is not None
    if op == ConditionOperator.EQ:
        return _loose_equal(operand, value)
    if op == ConditionOperator.STRICT_EQ:
        return type(operand) is type(value) and operand == value
    if op == ConditionOperator.NE:
        return not _loose_equal(operand, value)
    if op in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        if operand is None or value is None:
            return False
        x, y = _coerce_pair(operand, value)
        try:
            if op == ConditionOperator.GT:
                return x > y
            if op == ConditionOperator.GTE:
                return x >= y
            if op == ConditionOperator.LT:
                return x < y
            return x <= y
        except TypeError:
            return False
    if op == ConditionOperator.CONTAINS:
        if isinstance(operand, str):
            return value is not None and str(value) in operand
        if isinstance(operand, list | tuple | set):
            return value in operand
        return False
    if op == ConditionOperator.STARTS_WITH:
        return isinstance(operand, str) and value is not None and operand.startswith(str(value))
    if op == ConditionOperator.ENDS_WITH:
        return isinstance(operand, str) and value is not None and operand.endswith(str(value))
    if op == ConditionOperator.IN:
        return isinstance(value, list | tuple | set) and operand in value
    # NOT_IN
    return not (isinstance(value, list | tuple | set) and operand in value)


# ── Models ───────────────────────────────────────────────────────────


class _Model(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True, use_enum_values=False)


class Condition(_Model):
    """``field <operator> value`` predicate over one record."""

    field: str = Field(..., min_length=1, description="Dotted path of the operand")
    operator: ConditionOperator = Field(default=ConditionOperator.EQ)
    value: Any = Field(default=None)

    def evaluate(self, record: dict[str, Any]) -> bool:
        return compare(get_path(record, self.field), self.operator, self.value)


class Column(_Model):
    name: str = Field(..., min_length=1)
    type: UniversalType = Field(default=UniversalType.STRING)
    original_type: str | None = Field(default=None, alias="originalType")
    nullable: bool = Field(default=True)
    primary_key: bool = Field(default=False, alias="primaryKey")
    default_value: Any = Field(default=None, alias="defaultValue")
    length: int | None = Field(default=None, ge=0)
    precision: int | None = Field(default=None, ge=0)
    scale: int | None = Field(default=None, ge=0)

    @property
    def required(self) -> bool:
        return not self.nullable and self.default_value is None

    def to_json_schema(self) -> dict[str, Any]:
        if self.type == UniversalType.JSON:
            prop: dict[str, Any] = {}
        else:
            json_type, fmt = _JSON_TYPES[self.type]
            prop = {"type": [json_type, "null"] if self.nullable else json_type}
            if fmt:
                prop["format"] = fmt
            if json_type == "string" and self.length:
                prop["maxLength"] = self.length
        return prop


class Schema(_Model):
    """Named collection of column descriptors."""

    name: str = Field(default="")
    columns: list[Column] = Field(default_factory=list)

    def column(self, name: str) -> Column | None:
        for col in self.columns:
            if col.name == name:
                return col
        return None

    def has_field(self, path: str) -> bool:
        """Whether ``path`` (or its top-level segment) is a declared column."""
        return self.column(path) is not None or self.column(path.split(".")[0]) is not None

    @property
    def field_names(self) -> list[str]:
        return [c.name for c in self.columns]

    @property
    def required_fields(self) -> list[str]:
        return [c.name for c in self.columns if c.required]

    def to_json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "required": self.required_fields,
            "properties": {c.name: c.to_json_schema() for c in self.columns},
        }


class Rule(_Model):
    """One typed instruction inside a mapping.

    Parameters per type:
        direct:      source_field
        transform:   source_field, transform, params
        concat:      source_fields, separator
        split:       source_field, delimiter, index
        lookup:      source_field, lookup_table, key_field, value_field
        formula:     formula, inputs (name → source field)
        conditional: source_field, operator, compare_value,
                     then_value / then_field, else_value / else_field
    """

    name: str = Field(default="")
    type: RuleType = Field(default=RuleType.DIRECT)
    source_field: str | None = Field(default=None, alias="sourceField")
    source_fields: list[str] = Field(default_factory=list, alias="sourceFields")
    target_field: str = Field(..., min_length=1, alias="targetField")
    priority: int = Field(default=100)
    enabled: bool = Field(default=True)
    condition: Condition | None = Field(default=None)
    default_value: Any = Field(default=None, alias="defaultValue")
    required: bool = Field(default=False)
    on_error: ErrorPolicy = Field(default=ErrorPolicy.SKIP, alias="onError")
    retryable: bool = Field(default=False, description="Whether transformation failures may be retried")
    source_type: str | None = Field(default=None, alias="sourceType")
    target_type: str | None = Field(default=None, alias="targetType")

    # Type-specific parameters
    transform: str | None = Field(default=None)
    params: dict[str, Any] = Field(default_factory=dict)
    separator: str = Field(default=" ")
    delimiter: str = Field(default=",")
    index: int = Field(default=0)
    lookup_table: str | dict[str, Any] | None = Field(default=None, alias="lookupTable")
    key_field: str | None = Field(default=None, alias="keyField")
    value_field: str | None = Field(default=None, alias="valueField")
    formula: str | None = Field(default=None)
    inputs: dict[str, str] = Field(default_factory=dict)
    operator: ConditionOperator | None = Field(default=None)
    compare_value: Any = Field(default=None, alias="compareValue")
    then_value: Any = Field(default=None, alias="thenValue")
    else_value: Any = Field(default=None, alias="elseValue")
    then_field: str | None = Field(default=None, alias="thenField")
    else_field: str | None = Field(default=None, alias="elseField")

    @property
    def display_name(self) -> str:
        return self.name or f"{self.type.value}:{self.target_field}"

    @property
    def referenced_fields(self) -> list[str]:
        """Every source field this rule reads."""
        fields: list[str] = []
        if self.source_field:
            fields.append(self.source_field)
        fields.extend(self.source_fields)
        fields.extend(self.inputs.values())
        for extra in (self.then_field, self.else_field):
            if extra:
                fields.append(extra)
        if self.condition is not None:
            fields.append(self.condition.field)
        return fields


class Mapping(_Model):
    """A declarative mapping from a source schema to a target schema."""

    id: str = Field(..., min_length=1)
    version: str = Field(default="latest")
    name: str = Field(default="")
    source_schema: Schema | None = Field(default=None, alias="sourceSchema")
    target_schema: Schema | None = Field(default=None, alias="targetSchema")
    rules: list[Rule] = Field(default_factory=list)
    default_values: dict[str, Any] = Field(default_factory=dict, alias="defaultValues")
    source_adapter: str | None = Field(default=None, alias="sourceAdapter")
    target_adapter: str | None = Field(default=None, alias="targetAdapter")
    preset: str | None = Field(default=None)
    lookup_tables: dict[str, Any] = Field(default_factory=dict, alias="lookupTables")
    strict_mode: bool = Field(default=False, alias="strictMode")
    validation_rules: list[dict[str, Any]] = Field(default_factory=list, alias="validationRules")
    aggregation: list[dict[str, Any]] = Field(default_factory=list)
    quality_rules: list[dict[str, Any]] = Field(default_factory=list, alias="qualityRules")
    quality_threshold: float = Field(default=0.8, ge=0, le=1, alias="qualityThreshold")
    sanitizers: list[str] = Field(default_factory=list)
    enrichment_rules: list[dict[str, Any]] = Field(default_factory=list, alias="enrichmentRules")

    @field_validator("id", "version", mode="before")
    @classmethod
    def _stringify(cls, v: Any) -> Any:
        if isinstance(v, int | float) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def cache_key(self) -> str:
        return f"{self.id}_{self.version}"

    def ordered_rules(self) -> list[Rule]:
        """Enabled rules by ascending priority; ties keep declaration order."""
        return sorted((r for r in self.rules if r.enabled), key=lambda r: r.priority)

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


__all__ = [
    "UniversalType",
    "RuleType",
    "ErrorPolicy",
    "ConditionOperator",
    "compare",
    "Condition",
    "Column",
    "Schema",
    "Rule",
    "Mapping",
]
