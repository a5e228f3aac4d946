"""
In-process event emitter.

Components of the runtime publish named events (``mappingComplete``,
``batchComplete``, ``cacheEviction``, ...) that embedders subscribe to for
progress reporting, metrics and alerting.

Delivery is immediate: synchronous handlers run inline and coroutine
handlers are scheduled on the running loop. A failing handler is logged
and never breaks the emitting component.

Example::

    emitter = EventEmitter(source="engine")

    def on_done(event: Event) -> None:
        print(event.name, event.payload["records"])

    sub_id = emitter.on("mappingComplete", on_done)
    emitter.emit("mappingComplete", records=3)
    emitter.off(sub_id)

Tags:
    events, pubsub, observability, mapflow
"""

from __future__ import annotations

import asyncio
import inspect
import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from mapflow.core.logging import get_logger

logger = get_logger(__name__)

EventHandler = Callable[["Event"], Any]


@dataclass
class Event:
    """Payload delivered to subscribers.

    Attributes:
        name: Contractual event name (``mappingComplete``, ``progress``, ...)
        source: Emitting component
        payload: Event-specific data
        timestamp: When the event occurred (UTC)
        event_id: Unique event identifier
    """

    name: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(UTC))
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def matches(self, pattern: str) -> bool:
        """``*`` matches everything, otherwise exact name match."""
        return pattern == "*" or pattern == self.name

    def __getitem__(self, key: str) -> Any:
        return self.payload[key]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler
    once: bool = False


class EventEmitter:
    """Named-event publish/subscribe.

    Emitters can be chained: ``forward_to`` re-emits every event on a
    parent emitter so an engine sees events raised by its executors and
    optimizer under a single subscription point.
    """

    def __init__(self, source: str = "mapflow") -> None:
        self._source = source
        self._subscriptions: dict[str, Subscription] = {}
        self._forwards: list[EventEmitter] = []
        self._lock = threading.RLock()
        self._pending: set[asyncio.Task] = set()

    @property
    def source(self) -> str:
        return self._source

    def on(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe ``handler`` to events named ``pattern`` (or ``*``).

        Returns:
            Subscription ID for :meth:`off`
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(sub_id, pattern, handler)
        return sub_id

    def once(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe for a single delivery."""
        sub_id = self.on(pattern, handler)
        with self._lock:
            self._subscriptions[sub_id].once = True
        return sub_id

    def off(self, subscription_id: str) -> None:
        """Remove a subscription."""
        with self._lock:
            self._subscriptions.pop(subscription_id, None)

    def forward_to(self, parent: EventEmitter) -> None:
        """Re-emit every event on ``parent`` as well."""
        if parent is self:
            return
        with self._lock:
            if parent not in self._forwards:
                self._forwards.append(parent)

    def emit(self, name: str, **payload: Any) -> Event:
        """Publish an event to matching subscribers and forwarded emitters."""
        event = Event(name=name, source=self._source, payload=payload)
        self.dispatch(event)
        return event

    def dispatch(self, event: Event) -> None:
        with self._lock:
            matching = [s for s in self._subscriptions.values() if event.matches(s.pattern)]
            for sub in matching:
                if sub.once:
                    self._subscriptions.pop(sub.id, None)
            forwards = list(self._forwards)

        for sub in matching:
            self._call(sub, event)

        for parent in forwards:
            parent.dispatch(event)

    def _call(self, sub: Subscription, event: Event) -> None:
        try:
            result = sub.handler(event)
            if inspect.isawaitable(result):
                try:
                    loop = asyncio.get_running_loop()
                except RuntimeError:
                    if inspect.iscoroutine(result):
                        result.close()
                    logger.warning("event.async_handler_without_loop", event_name=event.name)
                    return
                task = loop.create_task(result) if inspect.iscoroutine(result) else asyncio.ensure_future(result)
                self._pending.add(task)
                task.add_done_callback(self._on_task_done(sub, event))
        except Exception as e:
            logger.warning(
                "event.handler_error",
                subscription_id=sub.id,
                event_name=event.name,
                error=str(e),
            )

    def _on_task_done(self, sub: Subscription, event: Event) -> Callable[[asyncio.Task], None]:
        def _done(task: asyncio.Task) -> None:
            self._pending.discard(task)
            if not task.cancelled() and task.exception() is not None:
                logger.warning(
                    "event.handler_error",
                    subscription_id=sub.id,
                    event_name=event.name,
                    error=str(task.exception()),
                )
        return _done

    async def drain(self) -> None:
        """Wait for scheduled async handlers to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def clear(self) -> None:
        """Drop all subscriptions."""
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


__all__ = ["Event", "EventEmitter", "EventHandler"]
