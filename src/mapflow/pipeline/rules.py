"""
Rule evaluation over a single record.

Each rule reads from the *source* record and writes into a fresh *target*
record. Per-rule error policy:

    skip     the rule produces nothing and its target field is omitted
    default  the rule's ``default_value`` is written
    fail     a :class:`TransformationError` propagates to the stage

For one target field the first applicable rule in priority order wins.
Mapping ``default_values`` fill only the fields no rule produced.
"""

from __future__ import annotations

import copy
from typing import Any

from mapflow.core.classifier import ErrorClassifier
from mapflow.core.errors import MapflowError, TransformationError
from mapflow.core.logging import get_logger
from mapflow.mapping.formula import FormulaEvaluator
from mapflow.mapping.models import ErrorPolicy, Mapping, Rule, RuleType, compare
from mapflow.mapping.paths import MISSING, get_path, set_path
from mapflow.pipeline.transforms import TransformLibrary, lookup_value

logger = get_logger(__name__)


class RuleEvaluator:
    """Apply typed rules to records.

    Returns :data:`MISSING` from :meth:`apply` when the rule does not
    produce a value (condition false, or skipped after an error).
    """

    def __init__(
        self,
        transforms: TransformLibrary | None = None,
        lookup_tables: dict[str, Any] | None = None,
        classifier: ErrorClassifier | None = None,
    ) -> None:
        self.transforms = transforms or TransformLibrary(lookup_tables)
        self.lookup_tables = dict(lookup_tables or {})
        self.classifier = classifier or ErrorClassifier()
        self._formulas = FormulaEvaluator()

    async def apply(self, rule: Rule, record: dict[str, Any]) -> Any:
        if rule.condition is not None and not rule.condition.evaluate(record):
            return MISSING

        try:
            value = await self._compute(rule, record)
        except Exception as e:
            return self._handle_failure(rule, e)

        if value is None and rule.default_value is not None:
            value = copy.deepcopy(rule.default_value)
        if value is None and rule.required:
            raise TransformationError(
                f"Required field {rule.target_field} produced no value"
            ).with_context(rule=rule.display_name)
        return value

    def _handle_failure(self, rule: Rule, error: Exception) -> Any:
        if isinstance(error, MapflowError):
            wrapped = error
            if isinstance(error, TransformationError):
                wrapped.retryable = rule.retryable
        else:
            wrapped = TransformationError(
                f"Rule {rule.display_name} failed: {error}",
                retryable=rule.retryable,
                cause=error,
            )
        wrapped.with_context(rule=rule.display_name)
        classification = self.classifier.classify(wrapped, {"retryable": rule.retryable, "rule": rule.display_name})

        policy = ErrorPolicy(rule.on_error)
        logger.debug(
            "rule.failed",
            rule=rule.display_name,
            policy=policy.value,
            error_type=classification.type.value,
            error=str(error),
        )
        if policy == ErrorPolicy.FAIL:
            raise wrapped
        if policy == ErrorPolicy.DEFAULT:
            return copy.deepcopy(rule.default_value)
        return MISSING

    async def _compute(self, rule: Rule, record: dict[str, Any]) -> Any:
        kind = RuleType(rule.type)

        if kind == RuleType.DIRECT:
            return copy.deepcopy(get_path(record, rule.source_field or ""))

        if kind == RuleType.TRANSFORM:
            if not rule.transform:
                raise TransformationError(f"Rule {rule.display_name} has no transform")
            value = get_path(record, rule.source_field or "")
            params = rule.params
            table = params.get("table")
            if isinstance(table, str) and table in self.lookup_tables:
                params = {**params, "table": self.lookup_tables[table]}
            return await self.transforms.apply(rule.transform, value, params, record)

        if kind == RuleType.CONCAT:
            parts = [get_path(record, f) for f in rule.source_fields]
            return rule.separator.join("" if p is None else str(p) for p in parts)

        if kind == RuleType.SPLIT:
            value = get_path(record, rule.source_field or "")
            if value is None:
                return None
            pieces = str(value).split(rule.delimiter)
            if -len(pieces) <= rule.index < len(pieces):
                return pieces[rule.index]
            return None

        if kind == RuleType.LOOKUP:
            table: Any = rule.lookup_table
            if isinstance(table, str):
                if table not in self.lookup_tables:
                    raise TransformationError(f"Unknown lookup table: {table}")
                table = self.lookup_tables[table]
            key = get_path(record, rule.source_field or "")
            return lookup_value(table, key, rule.key_field, rule.value_field)

        if kind == RuleType.FORMULA:
            if not rule.formula:
                raise TransformationError(f"Rule {rule.display_name} has no formula")
            if rule.inputs:
                inputs = {name: get_path(record, path) for name, path in rule.inputs.items()}
            else:
                inputs = dict(record)
            return self._formulas.evaluate(rule.formula, inputs)

        # CONDITIONAL
        operand = get_path(record, rule.source_field or "")
        matched = compare(operand, rule.operator or "==", rule.compare_value)
        if matched:
            return get_path(record, rule.then_field) if rule.then_field else copy.deepcopy(rule.then_value)
        return get_path(record, rule.else_field) if rule.else_field else copy.deepcopy(rule.else_value)


async def map_record(
    mapping: Mapping,
    record: dict[str, Any],
    evaluator: RuleEvaluator | None = None,
) -> dict[str, Any]:
    """Build the target record for ``record`` under ``mapping``."""
    if not isinstance(record, dict):
        raise TransformationError(f"Record must be an object, got {type(record).__name__}")
    evaluator = evaluator or RuleEvaluator(lookup_tables=mapping.lookup_tables)

    output: dict[str, Any] = {}
    produced: set[str] = set()
    for rule in mapping.ordered_rules():
        if rule.target_field in produced:
            continue
        value = await evaluator.apply(rule, record)
        if value is MISSING:
            continue
        set_path(output, rule.target_field, value)
        produced.add(rule.target_field)

    for field, default in mapping.default_values.items():
        if get_path(output, field) is None:
            set_path(output, field, copy.deepcopy(default))
    return output


__all__ = ["RuleEvaluator", "map_record"]
