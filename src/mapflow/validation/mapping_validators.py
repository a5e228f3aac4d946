"""Validators over mapping definitions and over data quality.

FieldMappingValidator checks declared rules against the source and target
schemas before anything runs. DataQualityValidator scores records along
five weighted dimensions and fails below a threshold.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from mapflow.core.errors import FormulaError
from mapflow.mapping.formula import FormulaEvaluator
from mapflow.mapping.models import Mapping, Rule, RuleType, Schema, UniversalType
from mapflow.mapping.paths import get_path
from mapflow.validation.result import ValidationResult
from mapflow.validation.validators import BaseValidator, call_flexible

FIELD_PATH_RE = re.compile(r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*$")

_INTEGRAL = {UniversalType.INTEGER, UniversalType.LONG}
_FRACTIONAL = {UniversalType.FLOAT, UniversalType.DOUBLE, UniversalType.DECIMAL}
_TEXTUAL = {UniversalType.STRING, UniversalType.TEXT}
_TEMPORAL_WIDE = {UniversalType.DATETIME, UniversalType.TIMESTAMP}
_TEMPORAL_NARROW = {UniversalType.DATE, UniversalType.TIME}


def is_narrowing(source: UniversalType, target: UniversalType) -> bool:
    """Whether converting ``source`` to ``target`` may lose information."""
    if source == target:
        return False
    if source in _FRACTIONAL and target in _INTEGRAL:
        return True
    if source == UniversalType.LONG and target == UniversalType.INTEGER:
        return True
    if source == UniversalType.DOUBLE and target == UniversalType.FLOAT:
        return True
    if source in _TEXTUAL and target not in _TEXTUAL:
        return True
    if source == UniversalType.TEXT and target == UniversalType.STRING:
        return True
    if source in _TEMPORAL_WIDE and target in _TEMPORAL_NARROW:
        return True
    return source in (UniversalType.JSON, UniversalType.ARRAY) and target not in _TEXTUAL | {UniversalType.JSON}


def _as_universal(value: str | None) -> UniversalType | None:
    if not value:
        return None
    try:
        return UniversalType(value.lower())
    except ValueError:
        return None


class FieldMappingValidator(BaseValidator):
    """Check mapping rules against source and target schemas.

    ``validate`` accepts a :class:`Mapping`, a list of :class:`Rule` or a
    list of rule dicts. Issues are reported at ``rule[i]`` paths.
    """

    def __init__(
        self,
        source_schema: Schema | None = None,
        target_schema: Schema | None = None,
        *,
        strict_mode: bool = False,
        allow_unmapped_fields: bool = True,
        default_values: dict[str, Any] | None = None,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "FieldMappingValidator", **kwargs)
        self.source_schema = source_schema
        self.target_schema = target_schema
        self.strict_mode = strict_mode
        self.allow_unmapped_fields = allow_unmapped_fields
        self.default_values = dict(default_values or {})
        self._formulas = FormulaEvaluator()

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        source_schema, target_schema = self.source_schema, self.target_schema
        default_values = dict(self.default_values)
        strict = self.strict_mode

        if isinstance(data, Mapping):
            source_schema = source_schema or data.source_schema
            target_schema = target_schema or data.target_schema
            default_values = {**data.default_values, **default_values}
            strict = strict or data.strict_mode
            raw_rules: Any = data.rules
        else:
            raw_rules = data

        result = ValidationResult()
        if not isinstance(raw_rules, list):
            return result.add_error("mappingRules", "Mapping rules must be a list", "invalid_rules")

        targets: dict[str, int] = {}
        sources_used: set[str] = set()
        for index, raw in enumerate(raw_rules):
            path = f"rule[{index}]"
            rule = self._parse_rule(raw, path, result)
            if rule is None:
                continue
            result = result.merge(self._check_rule(rule, path, source_schema, target_schema, strict))
            sources_used.update(rule.referenced_fields)
            if rule.target_field in targets:
                result.add_warning(
                    path,
                    f"Target field '{rule.target_field}' is mapped multiple times",
                    "duplicate_target",
                    previous_rule=targets[rule.target_field],
                )
            else:
                targets[rule.target_field] = index

        if target_schema is not None:
            for required in target_schema.required_fields:
                if required not in targets and required not in default_values:
                    result.add_error("coverage", f"Required target field '{required}' is not mapped", "unmapped_required")

        if source_schema is not None and not self.allow_unmapped_fields:
            used_roots = {s.split(".")[0] for s in sources_used}
            unused = [f for f in source_schema.field_names if f not in used_roots]
            if unused:
                result.add_warning("coverage", f"Source fields not used in mapping: {', '.join(unused)}", "unused_source")

        result.metadata["ruleCount"] = len(raw_rules)
        result.metadata["mappedTargets"] = sorted(targets)
        return result

    @staticmethod
    def _parse_rule(raw: Any, path: str, result: ValidationResult) -> Rule | None:
        if isinstance(raw, Rule):
            return raw
        if not isinstance(raw, dict):
            result.add_error(path, "Rule must be an object", "invalid_rule")
            return None
        rule_type = raw.get("type")
        if not rule_type:
            result.add_error(path, "Rule type is required", "missing_type")
            return None
        if rule_type not in {t.value for t in RuleType}:
            result.add_error(path, f"Unknown mapping type: {rule_type}", "unknown_type")
            return None
        if not raw.get("targetField") and not raw.get("target_field"):
            result.add_error(path, "Target field is required", "missing_target")
            return None
        try:
            return Rule.model_validate(raw)
        except PydanticValidationError as e:
            for err in e.errors():
                loc = ".".join(str(p) for p in err["loc"])
                result.add_error(f"{path}.{loc}" if loc else path, err["msg"], "invalid_rule")
            return None

    def _check_rule(
        self,
        rule: Rule,
        path: str,
        source_schema: Schema | None,
        target_schema: Schema | None,
        strict: bool,
    ) -> ValidationResult:
        result = ValidationResult()
        kind = rule.type

        if kind in (RuleType.DIRECT, RuleType.TRANSFORM, RuleType.SPLIT, RuleType.LOOKUP, RuleType.CONDITIONAL):
            if not rule.source_field:
                result.add_error(path, f"Source field is required for {kind.value} mapping", "missing_source")
        if kind == RuleType.TRANSFORM and not rule.transform:
            result.add_error(path, "Transform type is required for transform mapping", "missing_transform")
        if kind == RuleType.CONCAT:
            if not rule.source_fields:
                result.add_error(path, "Source fields array is required for concat mapping", "missing_sources")
            elif len(rule.source_fields) < 2:
                result.add_warning(path, "Concat mapping should have at least 2 source fields", "concat_single")
        if kind == RuleType.LOOKUP and not rule.lookup_table:
            result.add_error(path, "Lookup table is required for lookup mapping", "missing_lookup")
        if kind == RuleType.FORMULA:
            if not rule.formula:
                result.add_error(path, "Formula is required for formula mapping", "missing_formula")
            else:
                try:
                    self._formulas.validate(rule.formula)
                except FormulaError as e:
                    message = e.message if e.message.startswith("Invalid formula syntax") else f"Invalid formula syntax: {e.message}"
                    result.add_error(path, message, "invalid_formula")
        if kind == RuleType.CONDITIONAL and rule.operator is None and rule.condition is None:
            result.add_error(path, "Condition is required for conditional mapping", "missing_condition")

        if not FIELD_PATH_RE.match(rule.target_field):
            result.add_error(f"{path}.targetField", f"Invalid target field path: {rule.target_field}", "invalid_target")

        if source_schema is not None and source_schema.columns:
            for source in rule.referenced_fields:
                if not source_schema.has_field(source):
                    result.add_error(
                        f"{path}.sourceField",
                        f"Source field '{source}' does not exist in schema",
                        "unknown_source",
                    )

        self._check_coercion(rule, path, source_schema, target_schema, strict, result)
        return result

    @staticmethod
    def _check_coercion(
        rule: Rule,
        path: str,
        source_schema: Schema | None,
        target_schema: Schema | None,
        strict: bool,
        result: ValidationResult,
    ) -> None:
        if rule.type not in (RuleType.DIRECT, RuleType.TRANSFORM) or not rule.source_field:
            return
        source_type = _as_universal(rule.source_type)
        if source_type is None and source_schema is not None:
            col = source_schema.column(rule.source_field)
            source_type = col.type if col else None
        target_type = _as_universal(rule.target_type)
        if target_type is None and target_schema is not None:
            col = target_schema.column(rule.target_field)
            target_type = col.type if col else None
        if source_type is None or target_type is None or not is_narrowing(source_type, target_type):
            return
        message = f"Suspicious coercion {source_type.value} -> {target_type.value} for '{rule.target_field}'"
        if strict:
            result.add_error(path, message, "narrowing_coercion")
        else:
            result.add_suggestion(path, message, "narrowing_coercion")


# ── Data quality ─────────────────────────────────────────────────────


class QualityDimension(str, Enum):
    COMPLETENESS = "completeness"
    ACCURACY = "accuracy"
    CONSISTENCY = "consistency"
    UNIQUENESS = "uniqueness"
    TIMELINESS = "timeliness"


DIMENSION_WEIGHTS: dict[QualityDimension, float] = {
    QualityDimension.COMPLETENESS: 0.3,
    QualityDimension.ACCURACY: 0.25,
    QualityDimension.CONSISTENCY: 0.2,
    QualityDimension.UNIQUENESS: 0.15,
    QualityDimension.TIMELINESS: 0.1,
}


class QualityRuleType(str, Enum):
    COMPLETENESS = "completeness"
    FORMAT = "format"
    RANGE = "range"
    CONSISTENCY = "consistency"
    UNIQUENESS = "uniqueness"
    TIMELINESS = "timeliness"
    CUSTOM = "custom"


@dataclass
class QualityRule:
    """A weighted check; a failure subtracts ``weight`` from its dimension."""

    name: str
    dimension: QualityDimension
    type: QualityRuleType
    field: str | None = None
    weight: float = 0.1
    pattern: str | None = None
    min: float | None = None
    max: float | None = None
    compare_fields: list[str] | None = None
    max_age_days: float | None = None
    validate: Any = None


def _parse_timestamp(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day, tzinfo=UTC)
    if isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            return None
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
    return None


class DataQualityValidator(BaseValidator):
    """Score a record (or list of records) in [0, 1]; fail below ``threshold``."""

    def __init__(
        self,
        rules: list[QualityRule],
        *,
        threshold: float = 0.8,
        name: str | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(name or "DataQualityValidator", **kwargs)
        self.rules = list(rules)
        self.threshold = threshold

    async def perform_validation(self, data: Any, context: dict[str, Any]) -> ValidationResult:
        records = data if isinstance(data, list) else [data]
        seen: dict[str, set[Any]] = {}
        per_record: list[dict[QualityDimension, float]] = []
        issues: list[dict[str, Any]] = []

        for index, record in enumerate(records):
            scores = {d: 1.0 for d in QualityDimension}
            for rule in self.rules:
                passed, message = await self._apply(rule, record, seen, context)
                if not passed:
                    dim = QualityDimension(rule.dimension)
                    scores[dim] = max(0.0, scores[dim] - rule.weight)
                    issues.append({"index": index, "dimension": dim.value, "rule": rule.name, "message": message})
            per_record.append(scores)

        metrics = {
            d.value: (sum(s[d] for s in per_record) / len(per_record)) if per_record else 0.0
            for d in QualityDimension
        }
        score = self.overall_score(metrics)

        result = ValidationResult()
        if score < self.threshold:
            result.add_error(
                "quality",
                f"Data quality score {score:.2f} is below threshold {self.threshold}",
                "quality_below_threshold",
            )
        result.metadata["qualityMetrics"] = metrics
        result.metadata["qualityScore"] = score
        result.metadata["qualityIssues"] = issues
        return result

    @staticmethod
    def overall_score(metrics: dict[str, float]) -> float:
        weighted = sum(metrics[d.value] * w for d, w in DIMENSION_WEIGHTS.items() if d.value in metrics)
        total = sum(w for d, w in DIMENSION_WEIGHTS.items() if d.value in metrics)
        return weighted / total if total else 0.0

    async def _apply(
        self,
        rule: QualityRule,
        record: Any,
        seen: dict[str, set[Any]],
        context: dict[str, Any],
    ) -> tuple[bool, str]:
        try:
            kind = QualityRuleType(rule.type)
            value = get_path(record, rule.field) if rule.field else None

            if kind == QualityRuleType.COMPLETENESS:
                ok = value is not None and value != ""
                return ok, "" if ok else f"Field {rule.field} is incomplete"

            if kind == QualityRuleType.FORMAT:
                if value is None:
                    return True, ""
                ok = re.search(rule.pattern or "", str(value)) is not None
                return ok, "" if ok else f"Field {rule.field} does not match expected format"

            if kind == QualityRuleType.RANGE:
                try:
                    number = float(value)
                except (TypeError, ValueError):
                    return True, ""
                lo = rule.min if rule.min is not None else float("-inf")
                hi = rule.max if rule.max is not None else float("inf")
                ok = lo <= number <= hi
                return ok, "" if ok else f"Field {rule.field} value {value} is outside range [{rule.min}, {rule.max}]"

            if kind == QualityRuleType.CONSISTENCY:
                if not rule.compare_fields:
                    return True, ""
                values = [get_path(record, f) for f in rule.compare_fields]
                ok = all(v == values[0] for v in values)
                return ok, "" if ok else f"Fields {', '.join(rule.compare_fields)} have inconsistent values"

            if kind == QualityRuleType.UNIQUENESS:
                if value is None:
                    return True, ""
                bucket = seen.setdefault(rule.name, set())
                key = repr(value)
                if key in bucket:
                    return False, f"Field {rule.field} value {value!r} is duplicated"
                bucket.add(key)
                return True, ""

            if kind == QualityRuleType.TIMELINESS:
                if not value:
                    return True, ""
                stamp = _parse_timestamp(value)
                if stamp is None:
                    return False, f"Field {rule.field} is not a valid date"
                age_days = (datetime.now(UTC) - stamp).total_seconds() / 86400
                ok = rule.max_age_days is None or age_days <= rule.max_age_days
                return ok, "" if ok else f"Field {rule.field} data is older than {rule.max_age_days} days"

            # CUSTOM
            if rule.validate is None:
                return True, ""
            outcome = await call_flexible(rule.validate, record, context)
            if isinstance(outcome, tuple):
                return bool(outcome[0]), str(outcome[1]) if len(outcome) > 1 else ""
            if isinstance(outcome, dict):
                return bool(outcome.get("passed")), str(outcome.get("message", ""))
            return bool(outcome), "" if outcome else f"Rule {rule.name} failed"
        except Exception as e:
            return False, f"Rule evaluation error: {e}"


__all__ = [
    "FIELD_PATH_RE",
    "is_narrowing",
    "FieldMappingValidator",
    "QualityDimension",
    "QualityRuleType",
    "QualityRule",
    "DIMENSION_WEIGHTS",
    "DataQualityValidator",
]
