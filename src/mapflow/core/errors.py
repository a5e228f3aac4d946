"""
Structured error types for the mapping runtime.

Every failure that leaves a component is a :class:`MapflowError` (or one of
its subclasses) carrying enough metadata for the classifier, the retry
manager and the circuit breaker to decide what to do with it.

Manifesto:
    - **Typed hierarchy:** a subclass per failure domain
    - **Explicit retry semantics:** every error knows whether it is retryable
    - **Rich context:** execution id, mapping id, record index, stage
    - **Chaining:** the original exception is preserved as ``cause``

Architecture:
    ::

        ┌───────────────────────────────────────────────────────────────┐
        │                        MapflowError                            │
        │      (kind, severity, retryable, code, context, cause)         │
        ├───────────────────────────────────────────────────────────────┤
        │  ValidationError        TransformationError   NetworkError     │
        │   ├ MappingValidation    └ FormulaError       TimeoutError     │
        │   └ BusinessRule                              AcquireTimeout   │
        │                                                                │
        │  MappingExecutionError  RetryExhaustedError   CircuitOpenError │
        │  MemoryPressureError    DuplicateKeyError     CancelledError   │
        │  ConfigError            AdapterError          PoolError        │
        │                         WorkflowEngineError                    │
        └───────────────────────────────────────────────────────────────┘

Examples:
    >>> err = NetworkError("connection refused", code="ECONNREFUSED")
    >>> err.retryable
    True
    >>> err.with_context(system_id="pg-main").context.system_id
    'pg-main'

Tags:
    errors, exceptions, retry, classification, mapflow
"""

from __future__ import annotations

import builtins
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class ErrorType(str, Enum):
    """Closed set of error kinds used for classification and routing."""

    VALIDATION_ERROR = "VALIDATION_ERROR"
    NETWORK_ERROR = "NETWORK_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    MEMORY_ERROR = "MEMORY_ERROR"
    DUPLICATE_KEY_ERROR = "DUPLICATE_KEY_ERROR"
    TRANSFORMATION_ERROR = "TRANSFORMATION_ERROR"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    BUSINESS_RULE_VIOLATION = "BUSINESS_RULE_VIOLATION"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class Severity(str, Enum):
    """Error severity levels, ordered from least to most severe."""

    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class RecoveryStrategy(str, Enum):
    """What the runtime should do about a classified error."""

    SKIP = "SKIP"
    SKIP_AND_LOG = "SKIP_AND_LOG"
    RETRY_WITH_BACKOFF = "RETRY_WITH_BACKOFF"
    CIRCUIT_BREAK = "CIRCUIT_BREAK"
    MANUAL_INTERVENTION = "MANUAL_INTERVENTION"
    FAIL = "FAIL"


@dataclass
class ErrorContext:
    """
    Structured metadata attached to an error.

    Only fields that are set appear in :meth:`to_dict`, so log lines stay
    compact. Anything without a dedicated field goes into ``metadata``.
    """

    execution_id: str | None = None
    mapping_id: str | None = None
    record_index: int | None = None
    stage: str | None = None
    rule: str | None = None
    system_id: str | None = None
    operation: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging."""
        result = {}
        for key in ["execution_id", "mapping_id", "record_index", "stage",
                    "rule", "system_id", "operation"]:
            value = getattr(self, key)
            if value is not None:
                result[key] = value
        if self.metadata:
            result.update(self.metadata)
        return result


class MapflowError(Exception):
    """
    Base exception for all mapping runtime errors.

    All instances carry:

    - **kind:** an :class:`ErrorType` used by the classifier
    - **severity:** a :class:`Severity`
    - **retryable:** whether the retry manager may re-invoke the operation
    - **code:** an optional stable platform code (``ECONNREFUSED``, ...)
    - **context:** :class:`ErrorContext` with run metadata
    - **cause:** the underlying exception, also chained as ``__cause__``

    Subclasses set ``default_kind``, ``default_severity`` and
    ``default_retryable`` for their domain.
    """

    default_kind: ErrorType = ErrorType.SYSTEM_ERROR
    default_severity: Severity = Severity.MEDIUM
    default_retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        kind: ErrorType | None = None,
        severity: Severity | None = None,
        retryable: bool | None = None,
        code: str | None = None,
        context: ErrorContext | None = None,
        cause: BaseException | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind or self.default_kind
        self.severity = severity or self.default_severity
        self.retryable = retryable if retryable is not None else self.default_retryable
        self.code = code
        self.context = context or ErrorContext()
        self.cause = cause

        if cause is not None:
            self.__cause__ = cause

    def with_context(self, **kwargs: Any) -> MapflowError:
        """
        Add context to this error (fluent API).

        Usage:
            raise TransformationError("bad date").with_context(
                rule="parse_created", record_index=7
            )
        """
        for key, value in kwargs.items():
            if key != "metadata" and hasattr(self.context, key):
                setattr(self.context, key, value)
            else:
                self.context.metadata[key] = value
        return self

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary for logging/serialization."""
        result: dict[str, Any] = {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "retryable": self.retryable,
        }
        if self.code:
            result["code"] = self.code
        context_dict = self.context.to_dict()
        if context_dict:
            result["context"] = context_dict
        if self.cause is not None:
            result["cause"] = str(self.cause)
        return result

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.message!r}, kind={self.kind.value})"


# =============================================================================
# VALIDATION
# =============================================================================


class ValidationError(MapflowError):
    """
    Data or definition failed validation.

    Never retryable; the input has to change.
    """

    default_kind = ErrorType.VALIDATION_ERROR
    default_severity = Severity.LOW
    default_retryable = False

    def __init__(
        self,
        message: str,
        *,
        field: str | None = None,
        value: Any = None,
        constraint: str | None = None,
        issues: list[Any] | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("code", "VALIDATION_ERROR")
        super().__init__(message, **kwargs)
        self.field = field
        self.value = value
        self.constraint = constraint
        self.issues = issues or []

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        if self.field:
            result["field"] = self.field
        if self.value is not None:
            result["value"] = repr(self.value)
        if self.constraint:
            result["constraint"] = self.constraint
        if self.issues:
            result["issues"] = [
                i.to_dict() if hasattr(i, "to_dict") else i for i in self.issues
            ]
        return result


class MappingValidationError(ValidationError):
    """The mapping definition or its input arguments are invalid."""


class BusinessRuleViolation(ValidationError):
    """A record violates a business rule."""

    default_kind = ErrorType.BUSINESS_RULE_VIOLATION
    default_severity = Severity.MEDIUM


# =============================================================================
# TRANSFORMATION
# =============================================================================


class TransformationError(MapflowError):
    """A rule or stage failed to transform a record."""

    default_kind = ErrorType.TRANSFORMATION_ERROR
    default_severity = Severity.MEDIUM
    default_retryable = False


class FormulaError(TransformationError):
    """A formula could not be parsed or uses a disallowed construct."""


class MappingExecutionError(MapflowError):
    """A mapping run failed; carries the failing context id and record."""

    default_kind = ErrorType.SYSTEM_ERROR
    default_severity = Severity.HIGH

    @property
    def context_id(self) -> str | None:
        return self.context.execution_id

    @property
    def record_index(self) -> int | None:
        return self.context.record_index


# =============================================================================
# TRANSIENT
# =============================================================================


class NetworkError(MapflowError):
    """Network-level failure talking to an external system."""

    default_kind = ErrorType.NETWORK_ERROR
    default_severity = Severity.HIGH
    default_retryable = True


class TimeoutError(MapflowError, builtins.TimeoutError):
    """An attempt or a run exceeded its time limit."""

    default_kind = ErrorType.TIMEOUT_ERROR
    default_severity = Severity.MEDIUM
    default_retryable = True

    def __init__(self, message: str, *, timeout: float | None = None, **kwargs: Any):
        kwargs.setdefault("code", "ETIMEDOUT")
        super().__init__(message, **kwargs)
        self.timeout = timeout


class AcquireTimeoutError(TimeoutError):
    """No pooled connection became available in time."""


# =============================================================================
# RESOURCE / SYSTEM
# =============================================================================


class MemoryPressureError(MapflowError):
    """The process is running out of memory."""

    default_kind = ErrorType.MEMORY_ERROR
    default_severity = Severity.CRITICAL

    def __init__(self, message: str, **kwargs: Any):
        kwargs.setdefault("code", "ENOMEM")
        super().__init__(message, **kwargs)


class DuplicateKeyError(MapflowError):
    """A write collided with an existing key."""

    default_kind = ErrorType.DUPLICATE_KEY_ERROR
    default_severity = Severity.MEDIUM


class RetryExhaustedError(MapflowError):
    """All retry attempts failed."""

    default_severity = Severity.HIGH

    def __init__(
        self,
        message: str,
        *,
        attempts: int,
        last_error: BaseException | None = None,
        **kwargs: Any,
    ):
        kwargs.setdefault("code", "RETRY_EXHAUSTED")
        kwargs.setdefault("cause", last_error)
        if isinstance(last_error, MapflowError):
            kwargs.setdefault("kind", last_error.kind)
        super().__init__(message, **kwargs)
        self.attempts = attempts
        self.last_error = last_error


class CircuitOpenError(MapflowError):
    """The circuit breaker rejected the call without attempting it."""

    default_severity = Severity.HIGH

    def __init__(self, message: str = "Circuit breaker is open", *, circuit: str | None = None, **kwargs: Any):
        kwargs.setdefault("code", "CIRCUIT_OPEN")
        super().__init__(message, **kwargs)
        self.circuit = circuit


class CancelledError(MapflowError):
    """The operation was cancelled through its cancellation token."""

    default_severity = Severity.LOW

    def __init__(self, message: str = "Operation cancelled", **kwargs: Any):
        kwargs.setdefault("code", "CANCELLED")
        super().__init__(message, **kwargs)


class ConfigError(MapflowError):
    """Invalid or missing configuration. Never retryable."""

    default_severity = Severity.HIGH


class AdapterError(MapflowError):
    """An adapter operation failed."""

    default_severity = Severity.HIGH


class PoolError(MapflowError):
    """The connection pool cannot serve the request."""

    default_severity = Severity.HIGH


class WorkflowEngineError(MapflowError):
    """The external workflow engine returned an error."""

    default_kind = ErrorType.NETWORK_ERROR
    default_severity = Severity.HIGH

    def __init__(self, message: str, *, status_code: int | None = None, **kwargs: Any):
        if status_code is not None and "retryable" not in kwargs:
            kwargs["retryable"] = status_code >= 500 or status_code == 429
        super().__init__(message, **kwargs)
        self.status_code = status_code


# =============================================================================
# UTILITY FUNCTIONS
# =============================================================================


def is_retryable(error: BaseException) -> bool:
    """Check if an error is retryable."""
    if isinstance(error, MapflowError):
        return error.retryable
    return isinstance(error, (ConnectionError, builtins.TimeoutError))


__all__ = [
    "ErrorType",
    "Severity",
    "RecoveryStrategy",
    "ErrorContext",
    "MapflowError",
    "ValidationError",
    "MappingValidationError",
    "BusinessRuleViolation",
    "TransformationError",
    "FormulaError",
    "MappingExecutionError",
    "NetworkError",
    "TimeoutError",
    "AcquireTimeoutError",
    "MemoryPressureError",
    "DuplicateKeyError",
    "RetryExhaustedError",
    "CircuitOpenError",
    "CancelledError",
    "ConfigError",
    "AdapterError",
    "PoolError",
    "WorkflowEngineError",
    "is_retryable",
]
