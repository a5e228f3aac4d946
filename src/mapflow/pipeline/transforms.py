"""
Named value transformers used by ``transform`` rules.

Every transformer is called as ``fn(value, params, record)``; registered
callables may accept fewer positional arguments and may be coroutines.

Example:
    >>> library = TransformLibrary()
    >>> await library.apply("formatDate", "2024-03-05T10:20:00", {"format": "DD/MM/YYYY"})
    '05/03/2024'
"""

from __future__ import annotations

import json
import re
from collections.abc import Callable
from datetime import UTC, date, datetime
from typing import Any

from mapflow.core.errors import MapflowError, TransformationError
from mapflow.core.logging import get_logger
from mapflow.mapping.formula import FormulaEvaluator
from mapflow.mapping.paths import get_path
from mapflow.validation.validators import call_flexible

logger = get_logger(__name__)

Transformer = Callable[..., Any]

_DATE_TOKENS = re.compile(r"YYYY|YY|SSS|MM|M|DD|D|HH|H|mm|m|ss|s")
_NUMBER_RE = re.compile(r"^[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?$")
_INPUT_DATE_FORMATS = [
    (re.compile(r"^(\d{4})-(\d{2})-(\d{2})$"), "ymd"),
    (re.compile(r"^(\d{2})/(\d{2})/(\d{4})$"), "mdy"),
    (re.compile(r"^(\d{4})(\d{2})(\d{2})$"), "ymd"),
    (re.compile(r"^(\d{2})-(\d{2})-(\d{4})$"), "dmy"),
]


# ── Coercions ────────────────────────────────────────────────────────


def to_number(value: Any) -> int | float | None:
    """Number from int, float, bool or a numeric string; None passes through."""
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int | float):
        return value
    text = str(value).strip()
    if not _NUMBER_RE.match(text):
        raise TransformationError(f"Cannot convert {value!r} to number")
    number = float(text)
    if number.is_integer() and "." not in text and "e" not in text.lower():
        return int(text)
    return number


def to_boolean(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1", "yes", "y", "on"):
            return True
        if lowered in ("false", "0", "no", "n", "off", ""):
            return False
        raise TransformationError(f"Cannot convert {value!r} to boolean")
    return bool(value)


def parse_date(value: Any, fmt: str | None = None) -> datetime | None:
    """Parse ISO strings, common date layouts, epoch seconds or date objects."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day)
    if isinstance(value, int | float) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=UTC)
    text = str(value).strip()
    try:
        if fmt:
            return datetime.strptime(text, fmt)
        for pattern, order in _INPUT_DATE_FORMATS:
            match = pattern.match(text)
            if match:
                a, b, c = (int(g) for g in match.groups())
                if order == "ymd":
                    return datetime(a, b, c)
                if order == "mdy":
                    return datetime(c, a, b)
                return datetime(c, b, a)
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError as e:
        raise TransformationError(f"Cannot parse date from {value!r}", cause=e) from e


def format_date(value: Any, fmt: str = "YYYY-MM-DD") -> str | None:
    """Format with ``YYYY MM DD HH mm ss SSS`` style tokens."""
    moment = parse_date(value)
    if moment is None:
        return None
    tokens = {
        "YYYY": f"{moment.year:04d}",
        "YY": f"{moment.year % 100:02d}",
        "MM": f"{moment.month:02d}",
        "M": str(moment.month),
        "DD": f"{moment.day:02d}",
        "D": str(moment.day),
        "HH": f"{moment.hour:02d}",
        "H": str(moment.hour),
        "mm": f"{moment.minute:02d}",
        "m": str(moment.minute),
        "ss": f"{moment.second:02d}",
        "s": str(moment.second),
        "SSS": f"{moment.microsecond // 1000:03d}",
    }
    return _DATE_TOKENS.sub(lambda m: tokens[m.group(0)], fmt)


def lookup_value(table: Any, key: Any, key_field: str | None = None, value_field: str | None = None) -> Any:
    """Resolve ``key`` in a ``{key: value}`` dict or a list of row dicts."""
    if key is None or table is None:
        return None
    if isinstance(table, dict):
        if key in table:
            return table[key]
        return table.get(str(key))
    if isinstance(table, list):
        for row in table:
            if not isinstance(row, dict):
                continue
            candidate = row.get(key_field or "key")
            if candidate == key or (candidate is not None and str(candidate) == str(key)):
                if value_field:
                    return row.get(value_field)
                return row.get("value", row)
        return None
    raise TransformationError(f"Lookup table must be a dict or a list of rows, got {type(table).__name__}")


def _words(value: Any) -> list[str]:
    text = re.sub(r"([a-z0-9])([A-Z])", r"\1 \2", str(value))
    return [w for w in re.split(r"[^A-Za-z0-9]+", text) if w]


def _to_json(value: Any, params: dict[str, Any]) -> str:
    return json.dumps(value, default=str, indent=params.get("indent"))


def _from_json(value: Any) -> Any:
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError as e:
        raise TransformationError(f"Invalid JSON: {e}", cause=e) from e


def _round(value: Any, params: dict[str, Any]) -> Any:
    number = to_number(value)
    if number is None:
        return None
    decimals = int(params.get("decimals", 0))
    result = round(number, decimals)
    return int(result) if decimals == 0 else result


def _replace(value: Any, params: dict[str, Any]) -> Any:
    if value is None:
        return None
    search = params.get("search", "")
    replacement = str(params.get("replacement", params.get("replace", "")))
    if params.get("regex", True):
        return re.sub(str(search), replacement, str(value))
    return str(value).replace(str(search), replacement)


def _substring(value: Any, params: dict[str, Any]) -> Any:
    if value is None:
        return None
    start = int(params.get("start", 0))
    end = params.get("end")
    if end is None and "length" in params:
        end = start + int(params["length"])
    return str(value)[start:end]


def _is_blank(value: Any) -> bool:
    return value is None or value == ""


# ── Library ──────────────────────────────────────────────────────────


class TransformLibrary:
    """Registry of named transformers.

    Built-in names are stable; ``register`` adds or overrides entries.
    """

    def __init__(self, lookup_tables: dict[str, Any] | None = None) -> None:
        self.lookup_tables: dict[str, Any] = dict(lookup_tables or {})
        self._formulas = FormulaEvaluator()
        self._transformers: dict[str, Transformer] = {}
        self._register_builtins()

    def _register_builtins(self) -> None:
        builtins: dict[str, Transformer] = {
            "uppercase": lambda v: None if v is None else str(v).upper(),
            "lowercase": lambda v: None if v is None else str(v).lower(),
            "trim": lambda v: None if v is None else str(v).strip(),
            "capitalize": lambda v: None if v is None else str(v)[:1].upper() + str(v)[1:].lower(),
            "titleCase": lambda v: None if v is None else " ".join(w.capitalize() for w in str(v).split()),
            "camelCase": lambda v: None if v is None else "".join(
                w.lower() if i == 0 else w.capitalize() for i, w in enumerate(_words(v))
            ),
            "snakeCase": lambda v: None if v is None else "_".join(w.lower() for w in _words(v)),
            "padLeft": lambda v, p: None if v is None else str(v).rjust(int(p.get("length", 0)), str(p.get("char", " "))),
            "padRight": lambda v, p: None if v is None else str(v).ljust(int(p.get("length", 0)), str(p.get("char", " "))),
            "truncate": lambda v, p: None if v is None else (
                str(v) if len(str(v)) <= int(p.get("length", 0))
                else str(v)[: int(p.get("length", 0))] + str(p.get("suffix", "..."))
            ),
            "substring": _substring,
            "replace": _replace,
            "toString": lambda v: None if v is None else (str(v).lower() if isinstance(v, bool) else str(v)),
            "toNumber": to_number,
            "toInteger": lambda v: None if to_number(v) is None else int(to_number(v)),
            "toBoolean": to_boolean,
            "toArray": lambda v: [] if v is None else (list(v) if isinstance(v, list | tuple) else [v]),
            "toJson": _to_json,
            "fromJson": _from_json,
            "parseDate": lambda v, p: parse_date(v, p.get("format")),
            "formatDate": lambda v, p: format_date(v, p.get("format", "YYYY-MM-DD")),
            "round": _round,
            "abs": lambda v: None if to_number(v) is None else abs(to_number(v)),
            "first": lambda v: v[0] if isinstance(v, list | tuple) and v else None,
            "last": lambda v: v[-1] if isinstance(v, list | tuple) and v else None,
            "join": lambda v, p: str(p.get("separator", ",")).join(str(x) for x in v) if isinstance(v, list | tuple) else v,
            "split": lambda v, p: None if v is None else str(v).split(str(p.get("delimiter", ","))),
            "default": lambda v, p: p.get("value") if _is_blank(v) else v,
            "lookup": self._lookup,
            "formula": self._formula,
        }
        self._transformers.update(builtins)
        self._transformers["upper"] = builtins["uppercase"]
        self._transformers["lower"] = builtins["lowercase"]

    def _lookup(self, value: Any, params: dict[str, Any]) -> Any:
        table = params.get("table")
        if isinstance(table, str):
            if table not in self.lookup_tables:
                raise TransformationError(f"Unknown lookup table: {table}")
            table = self.lookup_tables[table]
        result = lookup_value(table, value, params.get("keyField"), params.get("valueField"))
        return params.get("default") if result is None else result

    def _formula(self, value: Any, params: dict[str, Any], record: Any) -> Any:
        expression = params.get("expression") or params.get("formula")
        if not expression:
            raise TransformationError("formula transform requires an expression")
        inputs: dict[str, Any] = dict(record) if isinstance(record, dict) else {}
        for name, path in (params.get("inputs") or {}).items():
            inputs[name] = get_path(record, path)
        inputs["value"] = value
        return self._formulas.evaluate(expression, inputs)

    # ── Registry ─────────────────────────────────────────────────────

    def register(self, name: str, fn: Transformer) -> None:
        if not callable(fn):
            raise TypeError(f"Transformer {name} must be callable")
        self._transformers[name] = fn
        logger.debug("transform.registered", name=name)

    def get(self, name: str) -> Transformer | None:
        return self._transformers.get(name)

    def has(self, name: str) -> bool:
        return name in self._transformers

    @property
    def names(self) -> list[str]:
        return sorted(self._transformers)

    async def apply(
        self,
        name: str,
        value: Any,
        params: dict[str, Any] | None = None,
        record: Any = None,
    ) -> Any:
        fn = self._transformers.get(name)
        if fn is None:
            raise TransformationError(f"Unknown transform: {name}")
        try:
            return await call_flexible(fn, value, dict(params or {}), record)
        except MapflowError:
            raise
        except Exception as e:
            raise TransformationError(f"Transform {name} failed: {e}", cause=e) from e


__all__ = [
    "Transformer",
    "TransformLibrary",
    "to_number",
    "to_boolean",
    "parse_date",
    "format_date",
    "lookup_value",
]
