"""Built-in validators.

Every validator exposes ``await validate(data, context=None)`` and returns
a :class:`~mapflow.validation.result.ValidationResult`. Exceptions raised
inside a validator never escape: they become a ``_validator`` error.

Kinds:
    SchemaValidator        JSON-schema-like structural checks
    TypeValidator          single type or union, arrays distinct from objects
    BusinessRuleValidator  conditional record rules (``$and``/``$or``/...)
    CustomValidator        bool / ValidationResult / dict returning callables
    CompositeValidator     all / any / sequential combination
"""

from __future__ import annotations

import asyncio
import inspect
import ipaddress
import json
import math
import re
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any

from mapflow.core.logging import get_logger
from mapflow.mapping.paths import MISSING, get_path
from mapflow.validation.conditions import Condition, evaluate_condition
from mapflow.validation.result import IssueSeverity, ValidationResult

logger = get_logger(__name__)


async def call_flexible(fn: Callable[..., Any], *args: Any) -> Any:
    """Call ``fn`` with as many of ``args`` as it accepts; await if needed."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        params = None
    if params is not None and not any(p.kind == p.VAR_POSITIONAL for p in params):
        positional = [p for p in params if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD)]
        args = args[: len(positional)]
    result = fn(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


def type_of(value: Any) -> str:
    """JSON-ish type name: null, undefined, boolean, integer, number, string, array, object, date."""
    if value is MISSING:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, int):
        return "integer"
    if isinstance(value, float):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list | tuple):
        return "array"
    if isinstance(value, dict):
        return "object"
    if isinstance(value, datetime | date):
        return "date"
    if callable(value):
        return "function"
    return type(value).__name__


def matches_type(value: Any, expected: str) -> bool:
    actual = type_of(value)
    if expected == "number":
        return actual in ("integer", "number")
    if expected == "integer":
        return actual == "integer" or (actual == "number" and math.isfinite(value) and float(value).is_integer())
    return actual == expected


# ── Base ─────────────────────────────────────────────────────────────


@dataclass
class ValidatorMetrics:
    execution_count: int = 0
    error_count: int = 0
    total_execution_time: float = 0.0
    last_execution_time: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        count = self.execution_count
        return {
            "executionCount": count,
            "errorCount": self.error_count,
            "totalExecutionTime": self.total_execution_time,
            "lastExecutionTime": self.last_execution_time,
            "averageExecutionTime": self.total_execution_time / count if count else 0.0,
            "errorRate": (self.error_count / count) * 100 if count else 0.0,
        }


class BaseValidator:
    """Base class: subclasses implement :meth:`perform_validation`."""

    def __init__(self, name: str | None = None, *, enabled: bool = True, stop_on_error: bool = False) -> None:
        self.name = name or type(self).__name__
        self.enabled = enabled
        self.stop_on_error = stop_on_error
        self._metrics = ValidatorMetrics()

    async def validate(self, data: Any, context: dict[str, Any] | None = None) -> ValidationResult:
        if not self.enabled:
            return ValidationResult()
        context = context or {}
        started = time.perf_counter()
        try:
            result = await self.perform_validation(data, context)
        except Exception as e:
            logger.warning("validator.failed", validator=self.name, error=str(e))
            result = ValidationResult.failure(
                "_validator", f"Validator {self.name} failed: {e}", "validator_error", error=e
            )
        elapsed = time.perf_counter() - started
        self._metrics.execution_count += 1
        self._metrics.total_execution_time += elapsed
        self._metrics.last_execution_time = elapsed
        if not result.valid:
            self._metrics.error_count += 1
        return result

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        raise NotImplementedError(f"{type(self).__name__} must implement perform_validation()")

    def metrics(self) -> dict[str, Any]:
        return self._metrics.to_dict()


# ── Schema ───────────────────────────────────────────────────────────

_FORMATS: dict[str, Callable[[str], bool]] = {}


def _format(name: str) -> Callable[[Callable[[str], bool]], Callable[[str], bool]]:
    def register(fn: Callable[[str], bool]) -> Callable[[str], bool]:
        _FORMATS[name] = fn
        return fn
    return register


_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
_URI_RE = re.compile(r"^https?://[^\s/$.?#].[^\s]*$", re.IGNORECASE)
_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_DATETIME_RE = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?(Z|[+-]\d{2}:\d{2})?$")
_TIME_RE = re.compile(r"^\d{2}:\d{2}:\d{2}(\.\d+)?$")


@_format("email")
def _is_email(value: str) -> bool:
    return bool(_EMAIL_RE.match(value))


@_format("uri")
def _is_uri(value: str) -> bool:
    return bool(_URI_RE.match(value))


@_format("date")
def _is_date(value: str) -> bool:
    if not _DATE_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


@_format("date-time")
def _is_datetime(value: str) -> bool:
    if not _DATETIME_RE.match(value):
        return False
    try:
        datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return False
    return True


@_format("time")
def _is_time(value: str) -> bool:
    return bool(_TIME_RE.match(value))


@_format("ipv4")
def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


@_format("ipv6")
def _is_ipv6(value: str) -> bool:
    try:
        ipaddress.IPv6Address(value)
    except ValueError:
        return False
    return True


@_format("uuid")
def _is_uuid(value: str) -> bool:
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return len(value) == 36


def _join(path: str, prop: str) -> str:
    return f"{path}.{prop}" if path else prop


def _unique(items: list[Any]) -> bool:
    seen: set[str] = set()
    for item in items:
        key = json.dumps(item, sort_keys=True, default=str)
        if key in seen:
            return False
        seen.add(key)
    return True


class SchemaValidator(BaseValidator):
    """Structural validation against a JSON-schema-like dict.

    Example:
        >>> schema = {"type": "object", "required": ["name"],
        ...           "properties": {"name": {"type": "string", "minLength": 2}}}
        >>> result = await SchemaValidator(schema).validate({"name": "J"})
        >>> result.errors[0].field, result.errors[0].message
        ('name', 'String length 1 is less than minimum 2')
    """

    def __init__(
        self,
        schema: dict[str, Any] | None,
        *,
        strict_mode: bool = False,
        coerce_types: bool = False,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "SchemaValidator", **kwargs)
        self.schema = schema
        self.strict_mode = strict_mode
        self.coerce_types = coerce_types

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        if not self.schema:
            return result.add_warning("_schema", "No schema defined for validation", "no_schema")
        self._check(data, self.schema, "", result)
        result.metadata["schemaType"] = self.schema.get("type")
        result.metadata["strictMode"] = self.strict_mode
        return result

    @staticmethod
    def coerce(value: Any, target: str) -> Any:
        """Best-effort conversion to ``target``; MISSING when not possible."""
        try:
            if target == "string":
                if isinstance(value, dict | list):
                    return MISSING
                return str(value).lower() if isinstance(value, bool) else str(value)
            if target == "number":
                if isinstance(value, bool) or value is None:
                    return MISSING
                number = float(value)
                return int(number) if number.is_integer() and isinstance(value, str) and "." not in value else number
            if target == "integer":
                if isinstance(value, bool) or value is None:
                    return MISSING
                if isinstance(value, float) and not value.is_integer():
                    return MISSING
                return int(str(value).strip()) if isinstance(value, str) else int(value)
            if target == "boolean":
                if isinstance(value, str):
                    lowered = value.strip().lower()
                    if lowered in ("true", "1", "yes"):
                        return True
                    if lowered in ("false", "0", "no"):
                        return False
                    return MISSING
                if isinstance(value, int | float):
                    return bool(value)
                return MISSING
            if target == "array":
                if isinstance(value, str):
                    try:
                        parsed = json.loads(value)
                    except ValueError:
                        return [value]
                    return parsed if isinstance(parsed, list) else [value]
                return list(value) if isinstance(value, tuple) else [value]
            if target == "object" and isinstance(value, str):
                parsed = json.loads(value)
                return parsed if isinstance(parsed, dict) else MISSING
        except (TypeError, ValueError):
            return MISSING
        return MISSING

    def _check(self, data: Any, schema: dict[str, Any], path: str, result: ValidationResult) -> None:
        where = path or "root"
        declared = schema.get("type")
        expected = declared if isinstance(declared, list) else ([declared] if declared else [])

        if expected and not any(matches_type(data, t) for t in expected):
            coerced = MISSING
            if self.coerce_types and data is not None:
                for target in expected:
                    coerced = self.coerce(data, target)
                    if coerced is not MISSING:
                        break
            if coerced is MISSING:
                result.add_error(
                    where,
                    f"Expected type {' or '.join(expected)}, got {type_of(data)}",
                    "type_mismatch",
                    expected=expected,
                    actual=type_of(data),
                )
                return
            data = coerced

        if data is None:
            if schema.get("nullable") is False:
                result.add_error(where, "Value is required", "required")
            return

        if "enum" in schema and data not in schema["enum"]:
            result.add_error(where, f"Value must be one of: {', '.join(map(str, schema['enum']))}", "enum")

        if isinstance(data, str):
            self._check_string(data, schema, where, result)
        elif type_of(data) in ("integer", "number"):
            self._check_number(data, schema, where, result)
        elif isinstance(data, list | tuple):
            self._check_array(list(data), schema, path, result)
        elif isinstance(data, dict):
            self._check_object(data, schema, path, result)

    def _check_string(self, data: str, schema: dict[str, Any], where: str, result: ValidationResult) -> None:
        if "minLength" in schema and len(data) < schema["minLength"]:
            result.add_error(where, f"String length {len(data)} is less than minimum {schema['minLength']}", "min_length")
        if "maxLength" in schema and len(data) > schema["maxLength"]:
            result.add_error(where, f"String length {len(data)} exceeds maximum {schema['maxLength']}", "max_length")
        if "pattern" in schema and not re.search(schema["pattern"], data):
            result.add_error(where, f"String does not match pattern {schema['pattern']}", "pattern")
        fmt = schema.get("format")
        if fmt and fmt in _FORMATS and not _FORMATS[fmt](data):
            result.add_error(where, f"Value does not match format: {fmt}", "format")

    def _check_number(self, data: float, schema: dict[str, Any], where: str, result: ValidationResult) -> None:
        if schema.get("type") == "integer" and not matches_type(data, "integer"):
            result.add_error(where, "Value must be an integer", "not_integer")
        if "minimum" in schema and data < schema["minimum"]:
            result.add_error(where, f"Value {data} is less than minimum {schema['minimum']}", "minimum")
        if "maximum" in schema and data > schema["maximum"]:
            result.add_error(where, f"Value {data} exceeds maximum {schema['maximum']}", "maximum")
        if "exclusiveMinimum" in schema and data <= schema["exclusiveMinimum"]:
            result.add_error(where, f"Value {data} must be greater than {schema['exclusiveMinimum']}", "exclusive_minimum")
        if "exclusiveMaximum" in schema and data >= schema["exclusiveMaximum"]:
            result.add_error(where, f"Value {data} must be less than {schema['exclusiveMaximum']}", "exclusive_maximum")
        multiple = schema.get("multipleOf")
        if multiple and not math.isclose(data / multiple, round(data / multiple), abs_tol=1e-9):
            result.add_error(where, f"Value {data} must be a multiple of {multiple}", "multiple_of")

    def _check_array(self, data: list[Any], schema: dict[str, Any], path: str, result: ValidationResult) -> None:
        where = path or "root"
        if "minItems" in schema and len(data) < schema["minItems"]:
            result.add_error(where, f"Array length {len(data)} is less than minimum {schema['minItems']}", "min_items")
        if "maxItems" in schema and len(data) > schema["maxItems"]:
            result.add_error(where, f"Array length {len(data)} exceeds maximum {schema['maxItems']}", "max_items")
        if schema.get("uniqueItems") and not _unique(data):
            result.add_error(where, "Array items must be unique", "unique_items")
        items = schema.get("items")
        if isinstance(items, dict):
            for index, item in enumerate(data):
                self._check(item, items, f"{path}[{index}]", result)

    def _check_object(self, data: dict[str, Any], schema: dict[str, Any], path: str, result: ValidationResult) -> None:
        where = path or "root"
        for prop in schema.get("required", []) or []:
            if prop not in data:
                result.add_error(_join(path, prop), "Property is required", "required")

        properties = schema.get("properties", {}) or {}
        for prop, prop_schema in properties.items():
            if prop in data:
                self._check(data[prop], prop_schema, _join(path, prop), result)

        if self.strict_mode and schema.get("additionalProperties") is False:
            extra = [k for k in data if k not in properties]
            if extra:
                result.add_error(where, f"Additional properties not allowed: {', '.join(extra)}", "additional_properties")

        if "minProperties" in schema and len(data) < schema["minProperties"]:
            result.add_error(where, f"Object has fewer than {schema['minProperties']} properties", "min_properties")
        if "maxProperties" in schema and len(data) > schema["maxProperties"]:
            result.add_error(where, f"Object has more than {schema['maxProperties']} properties", "max_properties")


# ── Type ─────────────────────────────────────────────────────────────


class TypeValidator(BaseValidator):
    """Check a value against one type name or a union of names."""

    def __init__(
        self,
        expected: str | list[str],
        *,
        allow_null: bool = False,
        allow_undefined: bool = False,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "TypeValidator", **kwargs)
        self.expected = [expected] if isinstance(expected, str) else list(expected)
        self.allow_null = allow_null
        self.allow_undefined = allow_undefined

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        if data is None and self.allow_null:
            return result
        if data is MISSING and self.allow_undefined:
            return result
        if not any(matches_type(data, t) for t in self.expected):
            result.add_error(
                "type",
                f"Expected type {' or '.join(self.expected)}, got {type_of(data)}",
                "type_mismatch",
            )
        return result


# ── Business rules ───────────────────────────────────────────────────

NAMED_VALIDATORS: dict[str, Callable[[Any], bool]] = {
    "required": lambda v: v is not None and v is not MISSING and v != "",
    "email": lambda v: isinstance(v, str) and bool(_EMAIL_RE.match(v)),
    "phone": lambda v: isinstance(v, str) and bool(re.match(r"^\+?[\d\s\-()]+$", v)),
    "url": lambda v: isinstance(v, str) and bool(re.match(r"^https?://\S+$", v)),
    "positive": lambda v: _as_number(v) is not None and _as_number(v) > 0,
    "nonNegative": lambda v: _as_number(v) is not None and _as_number(v) >= 0,
}


def _as_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None or value is MISSING:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


class RuleSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass
class BusinessRule:
    """A record-level rule.

    ``validate`` is a callable ``(data[, context]) -> bool | ValidationResult``
    (sync or async) or the name of a built-in check applied to ``field``.
    """

    name: str
    validate: Callable[..., Any] | str | None = None
    field: str | None = None
    condition: Condition | None = None
    message: str | None = None
    severity: RuleSeverity = RuleSeverity.ERROR
    enabled: bool = True


class BusinessRuleValidator(BaseValidator):
    def __init__(
        self,
        rules: list[BusinessRule] | BusinessRule,
        *,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "BusinessRuleValidator", **kwargs)
        self.rules = rules if isinstance(rules, list) else [rules]

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        for rule in self.rules:
            if not rule.enabled:
                continue
            rule_result = await self._check_rule(data, rule, context)
            result = result.merge(rule_result)
            if not rule_result.valid and self.stop_on_error:
                break
        return result

    async def _check_rule(self, data: Any, rule: BusinessRule, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        target = rule.field or "_rule"
        try:
            if rule.condition is not None and not evaluate_condition(rule.condition, data):
                return result
            if rule.validate is None:
                return result

            if isinstance(rule.validate, str):
                check = NAMED_VALIDATORS.get(rule.validate)
                if check is None:
                    raise ValueError(f"Unknown named validator: {rule.validate}")
                subject = get_path(data, rule.field, MISSING) if rule.field else data
                outcome: Any = check(subject)
            else:
                outcome = await call_flexible(rule.validate, data, context)

            if isinstance(outcome, ValidationResult):
                return outcome
            if outcome:
                return result

            message = rule.message or f"Business rule validation failed: {rule.name}"
            severity = RuleSeverity(rule.severity)
            if severity == RuleSeverity.ERROR:
                result.add_error(target, message, "business_rule", rule=rule.name)
            elif severity == RuleSeverity.WARNING:
                result.add_warning(target, message, "business_rule", rule=rule.name)
            else:
                result.add_suggestion(target, message, "business_rule", rule=rule.name)
        except Exception as e:
            result.add_error("_rule", f"Rule validation error: {e}", "rule_error", rule=rule.name)
        return result


# ── Custom ───────────────────────────────────────────────────────────


class CustomValidator(BaseValidator):
    """Wrap a callable returning bool, a ValidationResult or a result dict."""

    def __init__(
        self,
        fn: Callable[..., Any],
        *,
        message: str = "Custom validation failed",
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or getattr(fn, "__name__", None) or "CustomValidator", **kwargs)
        self.fn = fn
        self.message = message

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        result = ValidationResult()
        try:
            outcome = await call_flexible(self.fn, data, context)
        except Exception as e:
            return result.add_error("_custom", f"Custom validation error: {e}", "custom_error", error=e)

        if isinstance(outcome, ValidationResult):
            return outcome
        if isinstance(outcome, bool):
            if not outcome:
                result.add_error("_custom", self.message, "custom")
            return result
        if isinstance(outcome, dict):
            for error in outcome.get("errors", []):
                result.add_error(error.get("field", "_custom"), error.get("message", self.message), error.get("code", "custom"))
            for warning in outcome.get("warnings", []):
                result.add_warning(warning.get("field", "_custom"), warning.get("message", ""), warning.get("code", "custom"))
            if outcome.get("valid") is False and result.valid:
                result.add_error("_custom", outcome.get("message", self.message), "custom")
        elif not outcome:
            result.add_error("_custom", self.message, "custom")
        return result


# ── Composite ────────────────────────────────────────────────────────


class CompositeMode(str, Enum):
    ALL = "all"
    ANY = "any"
    SEQUENTIAL = "sequential"


class CompositeValidator(BaseValidator):
    def __init__(
        self,
        validators: list[BaseValidator],
        *,
        mode: CompositeMode | str = CompositeMode.ALL,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "CompositeValidator", **kwargs)
        self.validators = list(validators)
        self.mode = CompositeMode(mode)

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        if self.mode == CompositeMode.SEQUENTIAL:
            combined = ValidationResult()
            for validator in self.validators:
                result = await validator.validate(data, context)
                combined = combined.merge(result)
                if not result.valid and self.stop_on_error:
                    break
            return combined

        results = await asyncio.gather(*(v.validate(data, context) for v in self.validators))
        if self.mode == CompositeMode.ANY:
            for result in results:
                if result.valid:
                    return result
        return ValidationResult.combine(results)


__all__ = [
    "call_flexible",
    "type_of",
    "matches_type",
    "ValidatorMetrics",
    "BaseValidator",
    "SchemaValidator",
    "TypeValidator",
    "NAMED_VALIDATORS",
    "RuleSeverity",
    "BusinessRule",
    "BusinessRuleValidator",
    "CustomValidator",
    "CompositeMode",
    "CompositeValidator",
    "IssueSeverity",
]
