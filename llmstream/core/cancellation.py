"""
llmstream - Cancellation

A single token spans a whole retry sequence. It is checked before each
attempt, before each read inside the decode loop, and during backoff.
"""

import asyncio
from typing import Awaitable, Callable, List, Optional, TypeVar

from .errors import RequestAbortedError
from ..observability.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class CancellationToken:
    """Cooperative cancellation signal built on asyncio.Event."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = "Request aborted"
        self._callbacks: List[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "Request aborted"):
        """Signal cancellation and run registered callbacks once."""
        if self._event.is_set():
            return
        self._reason = reason
        self._event.set()

        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Cancellation callback failed")

    def register(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Run ``callback`` on cancellation.

        Runs immediately if already cancelled. Returns a function that
        unregisters the callback.
        """
        if self.cancelled:
            callback()
            return lambda: None

        self._callbacks.append(callback)

        def unregister():
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def raise_if_cancelled(self):
        if self.cancelled:
            raise RequestAbortedError(self._reason)

    async def wait(self):
        await self._event.wait()

    async def sleep(self, delay: float):
        """Sleep for ``delay`` seconds; raise RequestAbortedError if cancelled meanwhile."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise RequestAbortedError(self._reason)

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless the token fires first, in which case cancel it."""
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RequestAbortedError(self._reason)


async def sleep_with_token(delay: float, token: Optional[CancellationToken]):
    if token is None:
        await asyncio.sleep(delay)
    else:
        await token.sleep(delay)
