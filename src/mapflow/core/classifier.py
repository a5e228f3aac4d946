"""Error classification: raw exception in, (kind, severity, recovery) out.

WHY
───
Retry, breaker and pipeline code must agree on what a failure *means*.
The classifier is the single place that turns an arbitrary exception
into a :class:`Classification` so those decisions are consistent.

ARCHITECTURE
────────────
::

    classify(error, context)
      1. custom classifiers (registration order, first non-None wins)
      2. stable codes       (MapflowError.kind, error.code, errno names,
                             builtin exception types)
      3. message patterns   (case-insensitive substrings / regexes)
      4. UNKNOWN_ERROR / MEDIUM / SKIP_AND_LOG

    analyze_error_trend([Classification, ...])
      counts by type/severity → recommendation

Example::

    classifier = ErrorClassifier()
    c = classifier.classify(ConnectionRefusedError("refused"))
    c.type        # ErrorType.NETWORK_ERROR
    c.is_retryable  # True
"""

from __future__ import annotations

import builtins
import errno
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mapflow.core.errors import (
    ErrorType,
    MapflowError,
    RecoveryStrategy,
    Severity,
)
from mapflow.core.logging import get_logger

logger = get_logger(__name__)

RETRYABLE_TYPES = frozenset({
    ErrorType.NETWORK_ERROR,
    ErrorType.TIMEOUT_ERROR,
    ErrorType.TRANSFORMATION_ERROR,
    ErrorType.SYSTEM_ERROR,
})

_INTEGRITY_TYPES = frozenset({
    ErrorType.DUPLICATE_KEY_ERROR,
    ErrorType.VALIDATION_ERROR,
    ErrorType.BUSINESS_RULE_VIOLATION,
})


@dataclass
class Classification:
    """Outcome of classifying one error."""

    type: ErrorType
    severity: Severity
    recovery_strategy: RecoveryStrategy
    error: BaseException | None = None
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    source: str = "unknown"
    retryable_override: bool | None = None

    @property
    def is_retryable(self) -> bool:
        if self.retryable_override is not None:
            return self.retryable_override
        return self.type in RETRYABLE_TYPES

    @property
    def is_recoverable(self) -> bool:
        return self.recovery_strategy not in (
            RecoveryStrategy.FAIL,
            RecoveryStrategy.MANUAL_INTERVENTION,
        )

    @property
    def affects_data_integrity(self) -> bool:
        return self.type in _INTEGRITY_TYPES

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "severity": self.severity.value,
            "recovery_strategy": self.recovery_strategy.value,
            "message": str(self.error) if self.error is not None else None,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "is_retryable": self.is_retryable,
            "is_recoverable": self.is_recoverable,
            "affects_data_integrity": self.affects_data_integrity,
        }


@dataclass
class ErrorTrend:
    """Aggregate view over a window of classifications."""

    total: int
    by_type: dict[str, int]
    by_severity: dict[str, int]
    critical_fraction: float
    high_fraction: float
    recommendation: RecoveryStrategy | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "by_type": self.by_type,
            "by_severity": self.by_severity,
            "critical_fraction": self.critical_fraction,
            "high_fraction": self.high_fraction,
            "recommendation": self.recommendation.value if self.recommendation else None,
        }


_Rule = tuple[ErrorType, Severity, RecoveryStrategy]

CustomClassifier = Callable[[BaseException, dict[str, Any]], "Classification | None"]

_DEFAULT_RULES: dict[ErrorType, _Rule] = {
    ErrorType.VALIDATION_ERROR: (ErrorType.VALIDATION_ERROR, Severity.LOW, RecoveryStrategy.SKIP_AND_LOG),
    ErrorType.NETWORK_ERROR: (ErrorType.NETWORK_ERROR, Severity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
    ErrorType.TIMEOUT_ERROR: (ErrorType.TIMEOUT_ERROR, Severity.MEDIUM, RecoveryStrategy.RETRY_WITH_BACKOFF),
    ErrorType.MEMORY_ERROR: (ErrorType.MEMORY_ERROR, Severity.CRITICAL, RecoveryStrategy.CIRCUIT_BREAK),
    ErrorType.DUPLICATE_KEY_ERROR: (ErrorType.DUPLICATE_KEY_ERROR, Severity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
    ErrorType.TRANSFORMATION_ERROR: (ErrorType.TRANSFORMATION_ERROR, Severity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
    ErrorType.SYSTEM_ERROR: (ErrorType.SYSTEM_ERROR, Severity.HIGH, RecoveryStrategy.RETRY_WITH_BACKOFF),
    ErrorType.BUSINESS_RULE_VIOLATION: (ErrorType.BUSINESS_RULE_VIOLATION, Severity.MEDIUM, RecoveryStrategy.MANUAL_INTERVENTION),
    ErrorType.UNKNOWN_ERROR: (ErrorType.UNKNOWN_ERROR, Severity.MEDIUM, RecoveryStrategy.SKIP_AND_LOG),
}

_CODE_RULES: dict[str, _Rule] = {
    "ECONNREFUSED": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "ECONNRESET": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "EHOSTUNREACH": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "ENETUNREACH": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "ENOTFOUND": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "EPIPE": _DEFAULT_RULES[ErrorType.NETWORK_ERROR],
    "ETIMEDOUT": _DEFAULT_RULES[ErrorType.TIMEOUT_ERROR],
    "ENOMEM": _DEFAULT_RULES[ErrorType.MEMORY_ERROR],
    "VALIDATION_ERROR": _DEFAULT_RULES[ErrorType.VALIDATION_ERROR],
    "DUPLICATE_KEY": _DEFAULT_RULES[ErrorType.DUPLICATE_KEY_ERROR],
    "CIRCUIT_OPEN": (ErrorType.SYSTEM_ERROR, Severity.HIGH, RecoveryStrategy.CIRCUIT_BREAK),
    "CANCELLED": (ErrorType.SYSTEM_ERROR, Severity.LOW, RecoveryStrategy.FAIL),
}

_TYPE_RULES: list[tuple[type[BaseException], _Rule]] = [
    (MemoryError, _DEFAULT_RULES[ErrorType.MEMORY_ERROR]),
    (builtins.TimeoutError, _DEFAULT_RULES[ErrorType.TIMEOUT_ERROR]),
    (ConnectionError, _DEFAULT_RULES[ErrorType.NETWORK_ERROR]),
]

_PATTERN_RULES: list[tuple[re.Pattern[str], _Rule]] = [
    (re.compile(r"heap out of memory|out of memory|memory limit"), _DEFAULT_RULES[ErrorType.MEMORY_ERROR]),
    (re.compile(r"timeout|timed out"), _DEFAULT_RULES[ErrorType.TIMEOUT_ERROR]),
    (re.compile(r"duplicate key|unique constraint|already exists"), _DEFAULT_RULES[ErrorType.DUPLICATE_KEY_ERROR]),
    (re.compile(r"validation failed|required field|type mismatch|invalid format"), _DEFAULT_RULES[ErrorType.VALIDATION_ERROR]),
    (re.compile(r"business rule"), _DEFAULT_RULES[ErrorType.BUSINESS_RULE_VIOLATION]),
    (re.compile(r"transform|formula"), _DEFAULT_RULES[ErrorType.TRANSFORMATION_ERROR]),
    (re.compile(r"connection refused|connection reset|network|socket hang up"), _DEFAULT_RULES[ErrorType.NETWORK_ERROR]),
    (re.compile(r"data quality"), _DEFAULT_RULES[ErrorType.VALIDATION_ERROR]),
]


class ErrorClassifier:
    """Classify errors into kind, severity and recovery strategy.

    Parameters
    ----------
    critical_threshold : float
        Fraction of CRITICAL errors in a window above which
        :meth:`analyze_error_trend` recommends CIRCUIT_BREAK.
    """

    def __init__(
        self,
        *,
        critical_threshold: float = 0.5,
        high_threshold: float = 0.3,
        medium_threshold: float = 0.1,
    ) -> None:
        self.critical_threshold = critical_threshold
        self.high_threshold = high_threshold
        self.medium_threshold = medium_threshold
        self._custom: list[CustomClassifier] = []

    # ── Registration ─────────────────────────────────────────────────

    def register_classifier(self, classifier: CustomClassifier) -> None:
        """Add a custom classifier; earlier registrations are consulted first."""
        self._custom.append(classifier)

    # ── Classification ───────────────────────────────────────────────

    def classify(
        self, error: BaseException, context: dict[str, Any] | None = None
    ) -> Classification:
        ctx = dict(context or {})

        for custom in self._custom:
            try:
                result = custom(error, ctx)
            except Exception as e:
                logger.warning("classifier.custom_failed", error=str(e))
                continue
            if result is not None:
                result.source = "custom"
                return self._apply_override(result, ctx)

        rule = self._match_code(error)
        source = "code"
        if rule is None:
            rule = self._match_pattern(error)
            source = "pattern"
        if rule is None:
            rule = _DEFAULT_RULES[ErrorType.UNKNOWN_ERROR]
            source = "unknown"

        error_type, severity, strategy = rule
        classification = Classification(
            type=error_type,
            severity=severity,
            recovery_strategy=strategy,
            error=error,
            context=ctx,
            source=source,
        )
        return self._apply_override(classification, ctx)

    @staticmethod
    def _apply_override(classification: Classification, ctx: dict[str, Any]) -> Classification:
        if isinstance(classification.error, MapflowError) and classification.retryable_override is None:
            classification.retryable_override = classification.error.retryable
        # A rule's own policy decides whether its transformation failures retry.
        if "retryable" in ctx and classification.type == ErrorType.TRANSFORMATION_ERROR:
            classification.retryable_override = bool(ctx["retryable"])
        return classification

    def _match_code(self, error: BaseException) -> _Rule | None:
        if isinstance(error, MapflowError):
            if error.code and error.code in _CODE_RULES:
                return _CODE_RULES[error.code]
            rule = _DEFAULT_RULES[error.kind]
            if error.severity != rule[1]:
                return (rule[0], error.severity, rule[2])
            return rule

        code = getattr(error, "code", None)
        if isinstance(code, str) and code in _CODE_RULES:
            return _CODE_RULES[code]

        err_no = getattr(error, "errno", None)
        if isinstance(err_no, int):
            name = errno.errorcode.get(err_no)
            if name in _CODE_RULES:
                return _CODE_RULES[name]

        for exc_type, rule in _TYPE_RULES:
            if isinstance(error, exc_type):
                return rule
        return None

    @staticmethod
    def _match_pattern(error: BaseException) -> _Rule | None:
        message = str(error).lower()
        if not message:
            return None
        for pattern, rule in _PATTERN_RULES:
            if pattern.search(message):
                return rule
        return None

    # ── Queries ──────────────────────────────────────────────────────

    @staticmethod
    def is_retryable(error_type: ErrorType) -> bool:
        return error_type in RETRYABLE_TYPES

    def analyze_error_trend(
        self, classified: list[Classification], window: int | None = None
    ) -> ErrorTrend:
        """Summarize recent classifications and recommend a reaction.

        Args:
            classified: Classifications in chronological order.
            window: Only consider the last ``window`` entries.
        """
        items = classified[-window:] if window else classified
        total = len(items)
        by_type = Counter(c.type.value for c in items)
        by_severity = Counter(c.severity.value for c in items)

        def fraction(sev: Severity) -> float:
            return by_severity.get(sev.value, 0) / total if total else 0.0

        critical = fraction(Severity.CRITICAL)
        high = fraction(Severity.HIGH)
        medium = fraction(Severity.MEDIUM)

        recommendation: RecoveryStrategy | None = None
        if total:
            if critical > self.critical_threshold:
                recommendation = RecoveryStrategy.CIRCUIT_BREAK
            elif high > self.high_threshold:
                recommendation = RecoveryStrategy.RETRY_WITH_BACKOFF
            elif medium > self.medium_threshold:
                recommendation = RecoveryStrategy.SKIP_AND_LOG

        return ErrorTrend(
            total=total,
            by_type=dict(by_type),
            by_severity=dict(by_severity),
            critical_fraction=critical,
            high_fraction=high,
            recommendation=recommendation,
        )


__all__ = [
    "Classification",
    "ErrorClassifier",
    "ErrorTrend",
    "RETRYABLE_TYPES",
]
