"""Mergeable validation outcome.

``ValidationResult()`` is the identity: merging it with any result yields
an equal result. ``merge`` is associative: valid is AND-ed, issue lists
are concatenated in order, metadata is right-biased.
"""

from __future__ import annotations

import dataclasses
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum
from typing import Any


class IssueSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class ValidationIssue:
    """One error, warning or suggestion at a dotted field path."""

    field: str
    message: str
    code: str = "invalid"
    severity: IssueSeverity = IssueSeverity.ERROR
    details: dict[str, Any] = dataclasses.field(default_factory=dict, compare=False)

    def to_dict(self) -> dict[str, Any]:
        data = {
            "field": self.field,
            "message": self.message,
            "code": self.code,
            "severity": self.severity.value,
        }
        if self.details:
            data["details"] = {k: (str(v) if isinstance(v, BaseException) else v) for k, v in self.details.items()}
        return data


@dataclass
class ValidationResult:
    valid: bool = True
    errors: list[ValidationIssue] = dataclasses.field(default_factory=list)
    warnings: list[ValidationIssue] = dataclasses.field(default_factory=list)
    suggestions: list[ValidationIssue] = dataclasses.field(default_factory=list)
    metadata: dict[str, Any] = dataclasses.field(default_factory=dict)

    # ── Building ─────────────────────────────────────────────────────

    def add_error(self, field: str, message: str, code: str = "invalid", **details: Any) -> ValidationResult:
        self.valid = False
        self.errors.append(ValidationIssue(field, message, code, IssueSeverity.ERROR, details))
        return self

    def add_warning(self, field: str, message: str, code: str = "warning", **details: Any) -> ValidationResult:
        self.warnings.append(ValidationIssue(field, message, code, IssueSeverity.WARNING, details))
        return self

    def add_suggestion(self, field: str, message: str, code: str = "suggestion", **details: Any) -> ValidationResult:
        self.suggestions.append(ValidationIssue(field, message, code, IssueSeverity.INFO, details))
        return self

    # ── Combining ────────────────────────────────────────────────────

    def merge(self, other: ValidationResult) -> ValidationResult:
        """Return a new result combining ``self`` then ``other``."""
        return ValidationResult(
            valid=self.valid and other.valid,
            errors=[*self.errors, *other.errors],
            warnings=[*self.warnings, *other.warnings],
            suggestions=[*self.suggestions, *other.suggestions],
            metadata={**self.metadata, **other.metadata},
        )

    @classmethod
    def combine(cls, results: Iterable[ValidationResult]) -> ValidationResult:
        combined = cls()
        for result in results:
            combined = combined.merge(result)
        return combined

    @classmethod
    def failure(cls, field: str, message: str, code: str = "invalid", **details: Any) -> ValidationResult:
        return cls().add_error(field, message, code, **details)

    # ── Reporting ────────────────────────────────────────────────────

    @property
    def error_fields(self) -> list[str]:
        return [e.field for e in self.errors]

    def summary(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errorCount": len(self.errors),
            "warningCount": len(self.warnings),
            "suggestionCount": len(self.suggestions),
        }

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": [w.to_dict() for w in self.warnings],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "metadata": self.metadata,
            "summary": self.summary(),
        }


__all__ = ["IssueSeverity", "ValidationIssue", "ValidationResult"]
