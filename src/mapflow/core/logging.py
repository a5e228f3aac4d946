"""
Structured logging for the mapping runtime.

Every module obtains its logger with ``get_logger(__name__)`` and logs
dotted event names with keyword context::

    logger.info("mapping.complete", mapping_id="m-1", records=42)

Manifesto:
    A mapping run touches many components (pipeline, executors, pool,
    breaker). Logs are only useful when they can be correlated, so:

    - **Structured:** key/value context instead of formatted strings
    - **Correlated:** ``execution_id`` / ``mapping_id`` bound per run
    - **Aggregatable:** JSON output with ECS field names in production
    - **Readable:** coloured console output on a TTY

Architecture:
    ::

        configure_logging(level, json_format, service)
            │
            ▼
        TimeStamper(iso) → merge_contextvars → level / logger name
            → service.name
            → (json) ECS field names → JSONRenderer
            → (tty)  ConsoleRenderer

Tags:
    logging, structlog, observability, mapflow
"""

from __future__ import annotations

import logging
import sys
from typing import Any, TextIO

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

_ECS_FIELDS = {
    "timestamp": "@timestamp",
    "level": "log.level",
    "logger": "log.logger",
    "execution_id": "mapflow.execution_id",
    "mapping_id": "mapflow.mapping_id",
}


def _service(name: str) -> Processor:
    def add_service(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("service.name", name)
        return event_dict

    return add_service


def _ecs_fields(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    for field, ecs in _ECS_FIELDS.items():
        if field in event_dict:
            event_dict[ecs] = event_dict.pop(field)
    return event_dict


def configure_logging(
    level: str = "INFO",
    json_format: bool | None = None,
    service: str = "mapflow",
    stream: TextIO | None = None,
) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        level: DEBUG, INFO, WARNING or ERROR
        json_format: JSON when True, console when False, auto (JSON off a TTY) when None
        service: Value of ``service.name`` on every line
        stream: Output stream (stdout when omitted). The CLI passes stderr so
            command output stays machine readable.
    """
    stream = stream or sys.stdout
    if json_format is None:
        json_format = not stream.isatty()
    numeric_level = getattr(logging, level.upper())

    processors: list[Processor] = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        _service(service),
    ]
    if json_format:
        processors += [structlog.processors.format_exc_info, _ecs_fields, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=stream.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(numeric_level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=stream),
        cache_logger_on_first_use=False,
    )
    logging.basicConfig(format="%(message)s", stream=stream, level=numeric_level, force=True)


def get_logger(name: str | None = None) -> Any:
    """Get a structured logger (usually ``get_logger(__name__)``)."""
    return structlog.get_logger(name)


class LogContext:
    """Bind correlation ids for the duration of a block.

    Nested blocks restore the outer values on exit, so a child run logging
    under its own ``execution_id`` hands the parent's id back afterwards.

    Example:
        async with LogContext(execution_id=ctx.id, mapping_id=mapping.id):
            await executor.execute(records, pipeline, ctx)
    """

    def __init__(self, **kwargs: Any):
        self._context = kwargs
        self._tokens: dict[str, Any] = {}

    def __enter__(self) -> LogContext:
        self._tokens = structlog.contextvars.bind_contextvars(**self._context)
        return self

    def __exit__(self, *args: Any) -> None:
        structlog.contextvars.reset_contextvars(**self._tokens)

    async def __aenter__(self) -> LogContext:
        return self.__enter__()

    async def __aexit__(self, *args: Any) -> None:
        self.__exit__()


__all__ = ["LogContext", "configure_logging", "get_logger"]
