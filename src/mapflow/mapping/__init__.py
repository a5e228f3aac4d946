"""Mapping document models and native type mapping."""

from mapflow.mapping.formula import FormulaEvaluator
from mapflow.mapping.models import (
    Column,
    Condition,
    ConditionOperator,
    ErrorPolicy,
    Mapping,
    Rule,
    RuleType,
    Schema,
    UniversalType,
    compare,
)
from mapflow.mapping.paths import MISSING, get_path, has_path, set_path
from mapflow.mapping.types import TypeMapper, TypeMapping

__all__ = [
    "Column",
    "Condition",
    "ConditionOperator",
    "ErrorPolicy",
    "Mapping",
    "Rule",
    "RuleType",
    "Schema",
    "UniversalType",
    "compare",
    "MISSING",
    "get_path",
    "has_path",
    "set_path",
    "TypeMapper",
    "TypeMapping",
    "FormulaEvaluator",
]
