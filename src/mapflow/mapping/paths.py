"""Dotted-path access into nested records (``address.city``, ``tags.0``)."""

from __future__ import annotations

from typing import Any


class _Missing:
    """Sentinel for an absent value (distinct from None)."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Any = _Missing()


def get_path(record: Any, path: str, default: Any = None) -> Any:
    """Read ``path`` from ``record``; ``default`` when any segment is absent."""
    if not path:
        return default
    current = record
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, list | tuple) and part.lstrip("-").isdigit():
            index = int(part)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                return default
        else:
            return default
    return current


def has_path(record: Any, path: str) -> bool:
    return get_path(record, path, MISSING) is not MISSING


def set_path(record: dict[str, Any], path: str, value: Any) -> None:
    """Write ``value`` at ``path``, creating intermediate dicts."""
    parts = path.split(".")
    current = record
    for part in parts[:-1]:
        nxt = current.get(part)
        if not isinstance(nxt, dict):
            nxt = {}
            current[part] = nxt
        current = nxt
    current[parts[-1]] = value


__all__ = ["MISSING", "get_path", "has_path", "set_path"]
