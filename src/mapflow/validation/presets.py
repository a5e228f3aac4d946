"""Ready-made validators for common record checks."""

from __future__ import annotations

from typing import Any

from mapflow.validation.mapping_validators import (
    DataQualityValidator,
    QualityDimension,
    QualityRule,
    QualityRuleType,
)
from mapflow.validation.validators import BusinessRule, BusinessRuleValidator, SchemaValidator


class ValidationPresets:
    @staticmethod
    def email_record(email_field: str = "email", *, required: bool = True) -> SchemaValidator:
        """Object with a well-formed email address at ``email_field``."""
        schema: dict[str, Any] = {
            "type": "object",
            "properties": {email_field: {"type": "string", "format": "email"}},
        }
        if required:
            schema["required"] = [email_field]
        return SchemaValidator(schema, name="email_record")

    @staticmethod
    def required_fields(fields: list[str]) -> BusinessRuleValidator:
        """Every field in ``fields`` present and not empty."""
        rules = [
            BusinessRule(
                name=f"required_{f}",
                field=f,
                validate="required",
                message=f"Field {f} is required",
            )
            for f in fields
        ]
        return BusinessRuleValidator(rules, name="required_fields")

    @staticmethod
    def numeric_range(field: str, minimum: float | None = None, maximum: float | None = None) -> SchemaValidator:
        prop: dict[str, Any] = {"type": "number"}
        if minimum is not None:
            prop["minimum"] = minimum
        if maximum is not None:
            prop["maximum"] = maximum
        return SchemaValidator({"type": "object", "properties": {field: prop}}, name=f"range_{field}")

    @staticmethod
    def basic_quality(fields: list[str], *, threshold: float = 0.8) -> DataQualityValidator:
        """Completeness over ``fields``, weighted evenly within the dimension."""
        weight = 1.0 / len(fields) if fields else 0.0
        rules = [
            QualityRule(
                name=f"complete_{f}",
                dimension=QualityDimension.COMPLETENESS,
                type=QualityRuleType.COMPLETENESS,
                field=f,
                weight=weight,
            )
            for f in fields
        ]
        return DataQualityValidator(rules, threshold=threshold, name="basic_quality")


__all__ = ["ValidationPresets"]
