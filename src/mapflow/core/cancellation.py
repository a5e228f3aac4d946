"""Cooperative cancellation tokens.

A token is handed down from the engine through the execution context to
executors, the retry manager and the connection pool. Each suspension
point either checks :meth:`CancellationToken.raise_if_cancelled` or races
its wait against :meth:`CancellationToken.wait`.

Example::

    token = CancellationToken()
    ctx = ExecutionContext(token=token)
    task = asyncio.create_task(engine.execute_mapping(mapping, rows, {"token": token}))
    token.cancel("user abort")
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable
from typing import TypeVar

from mapflow.core.errors import CancelledError

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal; children are cancelled with their parent."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: str | None = None
        self._event: asyncio.Event | None = None
        self._children: list[CancellationToken] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> None:
        """Signal cancellation. Repeated calls keep the first reason."""
        if self._cancelled:
            return
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        for child in self._children:
            child.cancel(reason)

    def child(self) -> CancellationToken:
        """Create a token cancelled whenever this one is."""
        token = CancellationToken()
        if self._cancelled:
            token.cancel(self._reason or "cancelled")
        else:
            self._children.append(token)
        return token

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise CancelledError(f"Operation cancelled: {self._reason}")

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        """Block until the token is cancelled."""
        await self._get_event().wait()

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first (then raise)."""
        self.raise_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._get_event().wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable``; cancel it and raise if the token fires first."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if task in done:
            return task.result()
        raise CancelledError(f"Operation cancelled: {self._reason}")


async def sleep(seconds: float, token: CancellationToken | None = None) -> None:
    """``asyncio.sleep`` that honours an optional token."""
    if token is None:
        await asyncio.sleep(seconds)
    else:
        await token.sleep(seconds)


__all__ = ["CancellationToken", "sleep"]
