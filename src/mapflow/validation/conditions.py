"""First-order predicate language for business rules.

A condition is a dict. Logical keys combine sub-conditions; any other key
is a dotted field path whose value is either a literal (equality) or an
operator dict::

    {"$and": [{"status": "active"}, {"age": {"$gte": 18}}]}
    {"$or": [{"country": {"$in": ["DE", "AT"]}}, {"$not": {"vip": True}}]}
    {"email": {"$exists": True, "$regex": "@example\\.com$"}}

Callables are accepted anywhere a condition is and receive the record.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

from mapflow.mapping.paths import MISSING, get_path

Condition = dict[str, Any] | Callable[[Any], bool]


def _cmp(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def apply(actual: Any, expected: Any) -> bool:
        if actual is MISSING or actual is None or expected is None:
            return False
        try:
            return op(actual, expected)
        except TypeError:
            return False
    return apply


def _regex(actual: Any, pattern: Any) -> bool:
    return isinstance(actual, str) and re.search(str(pattern), actual) is not None


_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "$eq": lambda a, e: (None if a is MISSING else a) == e,
    "$ne": lambda a, e: (None if a is MISSING else a) != e,
    "$gt": _cmp(lambda a, e: a > e),
    "$gte": _cmp(lambda a, e: a >= e),
    "$lt": _cmp(lambda a, e: a < e),
    "$lte": _cmp(lambda a, e: a <= e),
    "$in": lambda a, e: a is not MISSING and a in e,
    "$nin": lambda a, e: a is MISSING or a not in e,
    "$exists": lambda a, e: (a is not MISSING) == bool(e),
    "$regex": _regex,
}


def _field_matches(actual: Any, expected: Any) -> bool:
    if isinstance(expected, dict) and expected and all(k.startswith("$") for k in expected):
        for op, operand in expected.items():
            handler = _OPERATORS.get(op)
            if handler is None:
                raise ValueError(f"Unknown condition operator: {op}")
            if not handler(actual, operand):
                return False
        return True
    return (None if actual is MISSING else actual) == expected


def evaluate_condition(condition: Condition, data: Any) -> bool:
    """Return whether ``data`` satisfies ``condition``."""
    if callable(condition):
        return bool(condition(data))
    if not isinstance(condition, dict):
        raise ValueError(f"Condition must be a dict or callable, got {type(condition).__name__}")

    for key, value in condition.items():
        if key == "$and":
            if not all(evaluate_condition(c, data) for c in value):
                return False
        elif key == "$or":
            if not any(evaluate_condition(c, data) for c in value):
                return False
        elif key == "$not":
            if evaluate_condition(value, data):
                return False
        elif key.startswith("$"):
            raise ValueError(f"Unknown logical operator: {key}")
        elif not _field_matches(get_path(data, key, MISSING), value):
            return False
    return True


__all__ = ["Condition", "evaluate_condition"]
