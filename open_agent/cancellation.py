"""Shared cancellation flag for in-flight exchanges.

A CancellationToken can be handed to any number of tasks or threads. The
first cancel() wins; later calls are no-ops. Code that waits on the network,
a tool handler or a retry sleep goes through run()/guard() so that a cancel
from another task (or another thread) wakes it up immediately.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import TypeVar

from open_agent.errors import ExchangeInterrupted

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Monotonic, thread-safe cancel flag with wake-up callbacks."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._cancelled = False
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> bool:
        """Set the flag. Returns True only for the call that flipped it."""
        with self._lock:
            if self._cancelled:
                return False
            self._cancelled = True
            callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback %r failed", callback)
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback fired once on cancel. Returns a remover.

        If the token is already cancelled the callback runs right away.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return lambda: self._remove(callback)
        callback()
        return lambda: None

    def _remove(self, callback: Callable[[], None]) -> None:
        with self._lock:
            try:
                self._callbacks.remove(callback)
            except ValueError:
                pass

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise ExchangeInterrupted("Exchange interrupted")

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token is cancelled first.

        On cancellation the inner task is cancelled and ExchangeInterrupted
        is raised. Cancellation of the calling task itself propagates as a
        plain CancelledError.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise ExchangeInterrupted("Exchange interrupted")
        loop = asyncio.get_running_loop()
        task = asyncio.ensure_future(awaitable)

        def _wake() -> None:
            loop.call_soon_threadsafe(task.cancel)

        remove = self.add_callback(_wake)
        try:
            return await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if self._cancelled and (current is None or not current.cancelling()):
                raise ExchangeInterrupted("Exchange interrupted") from None
            raise
        finally:
            remove()

    async def guard(self, source: AsyncIterable[T]) -> AsyncIterator[T]:
        """Iterate ``source`` with a cancellation check on every item."""
        iterator = source.__aiter__()

        async def _next() -> T:
            return await iterator.__anext__()

        while True:
            try:
                item = await self.run(_next())
            except StopAsyncIteration:
                return
            yield item

    def __repr__(self) -> str:
        return f"CancellationToken(cancelled={self._cancelled})"
