"""
Composable validators with a mergeable result type.

Modules:
    result              ValidationIssue / ValidationResult
    conditions          ``$and``/``$or``/``$not`` predicate language
    validators          Schema, Type, BusinessRule, Custom, Composite
    mapping_validators  FieldMapping and DataQuality validators
    framework           ValidationFramework (registries, cache, events)
    presets             ValidationPresets
"""

from mapflow.validation.conditions import evaluate_condition
from mapflow.validation.framework import ValidationFramework
from mapflow.validation.mapping_validators import (
    DataQualityValidator,
    FieldMappingValidator,
    QualityDimension,
    QualityRule,
    QualityRuleType,
)
from mapflow.validation.presets import ValidationPresets
from mapflow.validation.result import IssueSeverity, ValidationIssue, ValidationResult
from mapflow.validation.validators import (
    BaseValidator,
    BusinessRule,
    BusinessRuleValidator,
    CompositeMode,
    CompositeValidator,
    CustomValidator,
    RuleSeverity,
    SchemaValidator,
    TypeValidator,
)

__all__ = [
    "evaluate_condition",
    "ValidationFramework",
    "DataQualityValidator",
    "FieldMappingValidator",
    "QualityDimension",
    "QualityRule",
    "QualityRuleType",
    "ValidationPresets",
    "IssueSeverity",
    "ValidationIssue",
    "ValidationResult",
    "BaseValidator",
    "BusinessRule",
    "BusinessRuleValidator",
    "CompositeMode",
    "CompositeValidator",
    "CustomValidator",
    "RuleSeverity",
    "SchemaValidator",
    "TypeValidator",
]
