"""
Explicit success/failure outcomes.

Retry, breaker and executor code paths can return ``Ok(value)`` or
``Err(error)`` instead of raising, which keeps failure handling visible at
the call site and lets batch code collect per-record outcomes.

Manifesto:
    - **Explicit over implicit:** the return type says an operation can fail
    - **Composable:** ``map`` / ``flat_map`` chain without nested try/except
    - **Batch-friendly:** ``partition_results`` splits successes from failures

Examples:
    >>> result = Ok(10).map(lambda x: x * 2)
    >>> result.unwrap()
    20
    >>> Err(ValueError("boom")).unwrap_or(0)
    0
    >>> match divide(1, 0):
    ...     case Ok(value): print(value)
    ...     case Err(error): print(error)

Tags:
    result-pattern, error-handling, mapflow
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from mapflow.core.errors import MapflowError

T = TypeVar("T")
U = TypeVar("U")


@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """Successful outcome carrying a value."""

    value: T

    def is_ok(self) -> bool:
        return True

    def is_err(self) -> bool:
        return False

    def unwrap(self) -> T:
        """Get the value. Safe for Ok."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        return self.value

    def unwrap_or_else(self, f: Callable[[Exception], T]) -> T:
        return self.value

    def map(self, f: Callable[[T], U]) -> Result[U]:
        """Transform the value."""
        return Ok(f(self.value))

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        """Chain to another Result-returning function."""
        return f(self.value)

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        return self

    def to_dict(self) -> dict[str, Any]:
        return {"ok": True, "value": self.value}

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[T]):
    """Failed outcome carrying the exception that caused it.

    ``error_kind`` and ``message`` are derived from the error so that
    serialized outcomes look like ``{ok: false, errorKind, message, cause}``.
    """

    error: Exception

    def is_ok(self) -> bool:
        return False

    def is_err(self) -> bool:
        return True

    @property
    def error_kind(self) -> str:
        if isinstance(self.error, MapflowError):
            return self.error.kind.value
        return type(self.error).__name__

    @property
    def message(self) -> str:
        return str(self.error)

    def unwrap(self) -> T:
        """Raise the contained error."""
        raise self.error

    def unwrap_or(self, default: T) -> T:
        return default

    def unwrap_or_else(self, f: Callable[[Exception], T]) -> T:
        return f(self.error)

    def map(self, f: Callable[[T], U]) -> Result[U]:
        return self  # type: ignore[return-value]

    def flat_map(self, f: Callable[[T], Result[U]]) -> Result[U]:
        return self  # type: ignore[return-value]

    def map_err(self, f: Callable[[Exception], Exception]) -> Result[T]:
        return Err(f(self.error))

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "ok": False,
            "error_kind": self.error_kind,
            "message": self.message,
        }
        cause = getattr(self.error, "cause", None) or self.error.__cause__
        if cause is not None:
            result["cause"] = str(cause)
        return result

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


Result = Union[Ok[T], Err[T]]


def try_result(f: Callable[[], T]) -> Result[T]:
    """Run ``f`` and capture its outcome."""
    try:
        return Ok(f())
    except Exception as e:
        return Err(e)


async def try_result_async(f: Callable[[], Awaitable[T]]) -> Result[T]:
    """Await ``f()`` and capture its outcome."""
    try:
        return Ok(await f())
    except Exception as e:
        return Err(e)


def partition_results(results: list[Result[T]]) -> tuple[list[T], list[Exception]]:
    """Split outcomes into (values, errors), preserving order within each."""
    values: list[T] = []
    errors: list[Exception] = []
    for r in results:
        if isinstance(r, Ok):
            values.append(r.value)
        else:
            errors.append(r.error)
    return values, errors


__all__ = ["Ok", "Err", "Result", "try_result", "try_result_async", "partition_results"]
