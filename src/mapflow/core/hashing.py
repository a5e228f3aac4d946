"""
Deterministic fingerprints for cache keys.

Result, pipeline and validation caches are keyed by content rather than
identity, so the same record and options always produce the same key
regardless of dict ordering.

Examples:
    >>> fingerprint({"b": 1, "a": 2}) == fingerprint({"a": 2, "b": 1})
    True
    >>> len(compute_hash("users", "v2", length=16))
    16

Tags:
    hashing, caching, mapflow
"""

import hashlib
import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any


def compute_hash(*values: Any, length: int = 32) -> str:
    """
    Compute a deterministic hash from values.

    Values are joined with ``|`` after ``str()`` conversion and hashed with
    SHA-256. Order matters: ``compute_hash("a", "b") != compute_hash("b", "a")``.

    Args:
        *values: Values to hash (converted to strings)
        length: Hex digest length (default 32)
    """
    content = "|".join(str(v) for v in values)
    return hashlib.sha256(content.encode()).hexdigest()[:length]


def _default(obj: Any) -> Any:
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, (set, frozenset)):
        return sorted(obj, key=repr)
    if isinstance(obj, bytes):
        return obj.hex()
    if hasattr(obj, "model_dump"):
        return obj.model_dump(mode="json")
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return repr(obj)


def canonical_json(obj: Any) -> str:
    """Serialize ``obj`` to JSON with sorted keys and stable separators."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_default)


def fingerprint(*objs: Any, length: int = 32) -> str:
    """Content hash of one or more JSON-like objects."""
    return compute_hash(*(canonical_json(o) for o in objs), length=length)


__all__ = ["compute_hash", "canonical_json", "fingerprint"]
