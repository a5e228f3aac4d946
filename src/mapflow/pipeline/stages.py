"""
Pipeline stages.

A stage transforms one record: ``await stage.execute(record, context)``
returns the next record (or None to drop it). Stages belong to one of
four phases and run in phase order.

Built-ins:
    SanitizationStage     preprocessing   trim strings, drop None, lowercase keys
    RuleMappingStage      transformation  apply a mapping's rules
    AggregationStage      transformation  sum/avg/count/min/max/first/last over a list
    RequiredFieldsStage   validation      listed fields present and not empty
    SchemaValidationStage validation      wrap any validator
    EnrichmentStage       postprocessing  timestamp, id, metadata, static values
"""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from mapflow.core.errors import TransformationError, ValidationError
from mapflow.mapping.models import ErrorPolicy, Mapping
from mapflow.mapping.paths import get_path, set_path
from mapflow.pipeline.rules import RuleEvaluator, map_record
from mapflow.validation.validators import BaseValidator, call_flexible

if TYPE_CHECKING:
    from mapflow.pipeline.pipeline import PipelineContext


class Phase(str, Enum):
    PREPROCESSING = "preprocessing"
    TRANSFORMATION = "transformation"
    VALIDATION = "validation"
    POSTPROCESSING = "postprocessing"

    @property
    def order(self) -> int:
        return list(Phase).index(self)


@dataclass
class StageMetrics:
    executions: int = 0
    failures: int = 0
    total_time: float = 0.0

    @property
    def average_time(self) -> float:
        return self.total_time / self.executions if self.executions else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "executions": self.executions,
            "failures": self.failures,
            "totalTime": self.total_time,
            "averageTime": self.average_time,
        }


class Stage(ABC):
    """Base stage.

    Attributes:
        phase: Phase the stage runs in.
        on_error: What the pipeline does when the stage raises.
        warn_only: Validation stages only; failures become warnings.
        default: Record returned under ``on_error=default``.
    """

    phase: Phase = Phase.TRANSFORMATION

    def __init__(
        self,
        name: str,
        *,
        phase: Phase | str | None = None,
        on_error: ErrorPolicy | str = ErrorPolicy.FAIL,
        warn_only: bool = False,
        default: Any = None,
    ) -> None:
        self.name = name
        if phase is not None:
            self.phase = Phase(phase)
        self.on_error = ErrorPolicy(on_error)
        self.warn_only = warn_only
        self.default = default
        self.metrics = StageMetrics()

    async def run(self, record: Any, context: PipelineContext) -> Any:
        """Execute with metrics bookkeeping."""
        started = time.perf_counter()
        try:
            return await self.execute(record, context)
        except Exception:
            self.metrics.failures += 1
            raise
        finally:
            self.metrics.executions += 1
            self.metrics.total_time += time.perf_counter() - started

    @abstractmethod
    async def execute(self, record: Any, context: PipelineContext) -> Any:
        ...

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, phase={self.phase.value})"


class FunctionStage(Stage):
    """Wrap ``fn(record[, context])``, sync or async."""

    def __init__(
        self,
        name: str,
        fn: Callable[..., Any],
        phase: Phase | str = Phase.TRANSFORMATION,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, phase=phase, **kwargs)
        self.fn = fn

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        return await call_flexible(self.fn, record, context)


# ── Preprocessing ────────────────────────────────────────────────────


class SanitizationStage(Stage):
    """Clean the source record before the rules see it.

    Every option is off by default, so a bare stage passes records through
    unchanged. ``from_names`` builds one from a mapping's ``sanitizers``
    list (``trim``, ``dropNone``, ``lowercaseKeys``).
    """

    phase = Phase.PREPROCESSING
    NAMES = {"trim": "trim_strings", "dropNone": "drop_none", "lowercaseKeys": "lowercase_keys"}

    def __init__(
        self,
        name: str = "sanitization",
        *,
        trim_strings: bool = False,
        drop_none: bool = False,
        lowercase_keys: bool = False,
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.trim_strings = trim_strings
        self.drop_none = drop_none
        self.lowercase_keys = lowercase_keys

    @classmethod
    def from_names(cls, names: list[str], **kwargs: Any) -> SanitizationStage:
        unknown = [n for n in names if n not in cls.NAMES]
        if unknown:
            raise ValueError(f"Unknown sanitizers: {unknown}")
        return cls(**{cls.NAMES[n]: True for n in names}, **kwargs)

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        return self._clean(record)

    def _clean(self, value: Any) -> Any:
        if isinstance(value, dict):
            cleaned = {}
            for key, item in value.items():
                if self.drop_none and item is None:
                    continue
                new_key = key.lower() if self.lowercase_keys and isinstance(key, str) else key
                cleaned[new_key] = self._clean(item)
            return cleaned
        if isinstance(value, list):
            return [self._clean(v) for v in value if not (self.drop_none and v is None)]
        if self.trim_strings and isinstance(value, str):
            return value.strip()
        return value


# ── Transformation ───────────────────────────────────────────────────


class RuleMappingStage(Stage):
    """Turn a source record into a target record using a mapping's rules."""

    phase = Phase.TRANSFORMATION

    def __init__(
        self,
        mapping: Mapping,
        evaluator: RuleEvaluator | None = None,
        name: str = "ruleMapping",
        **kwargs: Any,
    ) -> None:
        super().__init__(name, **kwargs)
        self.mapping = mapping
        self.evaluator = evaluator or RuleEvaluator(lookup_tables=mapping.lookup_tables)

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        return await map_record(self.mapping, record, self.evaluator)


_AGGREGATES: dict[str, Callable[[list[Any]], Any]] = {
    "sum": lambda vs: sum(float(v) for v in vs),
    "avg": lambda vs: sum(float(v) for v in vs) / len(vs) if vs else 0,
    "count": len,
    "min": lambda vs: min(float(v) for v in vs) if vs else None,
    "max": lambda vs: max(float(v) for v in vs) if vs else None,
    "first": lambda vs: vs[0] if vs else None,
    "last": lambda vs: vs[-1] if vs else None,
}


class AggregationStage(Stage):
    """Aggregate a list field of the record.

    Each aggregation is ``{"type", "sourceField", "targetField", "itemField"?}``;
    ``itemField`` picks a value out of each list element.
    """

    phase = Phase.TRANSFORMATION

    def __init__(self, aggregations: list[dict[str, Any]], name: str = "aggregation", **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        for agg in aggregations:
            if agg.get("type") not in _AGGREGATES:
                raise ValueError(f"Unknown aggregation type: {agg.get('type')}")
        self.aggregations = aggregations

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        if not isinstance(record, dict):
            return record
        result = dict(record)
        for agg in self.aggregations:
            items = get_path(record, agg["sourceField"])
            if not isinstance(items, list):
                items = []
            item_field = agg.get("itemField")
            values = [get_path(i, item_field) if item_field else i for i in items]
            values = [v for v in values if v is not None]
            try:
                set_path(result, agg["targetField"], _AGGREGATES[agg["type"]](values))
            except (TypeError, ValueError) as e:
                raise TransformationError(f"Aggregation {agg['type']} over {agg['sourceField']} failed: {e}", cause=e) from e
        return result


# ── Validation ───────────────────────────────────────────────────────


class RequiredFieldsStage(Stage):
    phase = Phase.VALIDATION

    def __init__(self, fields: list[str], name: str = "requiredFields", **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.fields = list(fields)

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        missing = [f for f in self.fields if get_path(record, f) in (None, "")]
        if missing:
            raise ValidationError(
                f"Required field missing: {', '.join(missing)}",
                field=missing[0],
                constraint="required",
            )
        return record


class SchemaValidationStage(Stage):
    """Run a validator; invalid records raise :class:`ValidationError`."""

    phase = Phase.VALIDATION

    def __init__(self, validator: BaseValidator, name: str | None = None, **kwargs: Any) -> None:
        super().__init__(name or f"validate:{validator.name}", **kwargs)
        self.validator = validator

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        result = await self.validator.validate(record, {"stage": self.name, "recordIndex": context.record_index})
        for warning in result.warnings:
            context.add_warning(f"{warning.field}: {warning.message}", self.name)
        if not result.valid:
            detail = "; ".join(f"{e.field}: {e.message}" for e in result.errors)
            raise ValidationError(
                f"Validation failed: {detail}",
                field=result.errors[0].field if result.errors else None,
                issues=list(result.errors),
            )
        return record


# ── Postprocessing ───────────────────────────────────────────────────


class EnrichmentStage(Stage):
    """Add generated fields.

    Rule types: ``timestamp``, ``id`` (optional ``prefix``), ``metadata``
    (processedAt, contextId plus static ``metadata``) and ``static``
    (``value``). Each rule names its ``targetField``.
    """

    phase = Phase.POSTPROCESSING

    def __init__(self, rules: list[dict[str, Any]], name: str = "enrichment", **kwargs: Any) -> None:
        super().__init__(name, **kwargs)
        self.rules = rules

    async def execute(self, record: Any, context: PipelineContext) -> Any:
        if not isinstance(record, dict):
            return record
        result = dict(record)
        now = datetime.now(UTC).isoformat()
        for rule in self.rules:
            kind = rule.get("type")
            target = rule["targetField"]
            if kind == "timestamp":
                set_path(result, target, now)
            elif kind == "id":
                set_path(result, target, f"{rule.get('prefix', 'id')}_{uuid.uuid4().hex[:12]}")
            elif kind == "metadata":
                set_path(result, target, {"processedAt": now, "contextId": context.id, **rule.get("metadata", {})})
            elif kind == "static":
                set_path(result, target, rule.get("value"))
            else:
                raise ValueError(f"Unknown enrichment type: {kind}")
        return result


__all__ = [
    "Phase",
    "StageMetrics",
    "Stage",
    "FunctionStage",
    "SanitizationStage",
    "RuleMappingStage",
    "AggregationStage",
    "RequiredFieldsStage",
    "SchemaValidationStage",
    "EnrichmentStage",
]
