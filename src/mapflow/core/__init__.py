"""
Core primitives shared by every mapflow component.

Modules:
    errors        Typed error hierarchy and the ErrorType/Severity enums
    classifier    ErrorClassifier (error → kind, severity, recovery)
    result        Ok/Err explicit outcomes
    events        EventEmitter for contractual runtime events
    cache         Bounded CacheManager with hit/miss accounting
    cancellation  Cooperative CancellationToken
    hashing       Deterministic fingerprints for cache keys
    logging       structlog configuration
"""

from mapflow.core.cache import CacheManager
from mapflow.core.cancellation import CancellationToken
from mapflow.core.classifier import Classification, ErrorClassifier, ErrorTrend
from mapflow.core.errors import (
    ErrorContext,
    ErrorType,
    MapflowError,
    RecoveryStrategy,
    Severity,
)
from mapflow.core.events import Event, EventEmitter
from mapflow.core.hashing import fingerprint
from mapflow.core.result import Err, Ok, Result

__all__ = [
    "CacheManager",
    "CancellationToken",
    "Classification",
    "ErrorClassifier",
    "ErrorTrend",
    "ErrorContext",
    "ErrorType",
    "MapflowError",
    "RecoveryStrategy",
    "Severity",
    "Event",
    "EventEmitter",
    "fingerprint",
    "Ok",
    "Err",
    "Result",
]
