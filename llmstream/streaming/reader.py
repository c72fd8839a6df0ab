"""
llmstream - Cancellable Byte Reader

Wraps an httpx streaming response so that a pending read can be
interrupted from another task (the idle guard or a cancellation token).
An interrupted read behaves like end of stream; the decode loop then
surfaces whatever error the interrupter recorded.
"""

import asyncio
from typing import AsyncIterator, Optional

import httpx

from ..observability.logging import get_logger

logger = get_logger(__name__)


class StreamReader:
    """One-shot reader over ``response.aiter_bytes()``. Never reused across attempts."""

    def __init__(self, response: httpx.Response):
        self._response = response
        self._iterator: AsyncIterator[bytes] = response.aiter_bytes()
        self._pending: Optional[asyncio.Task] = None
        self._interrupted = False

    @property
    def interrupted(self) -> bool:
        return self._interrupted

    async def _next_chunk(self) -> Optional[bytes]:
        try:
            return await self._iterator.__anext__()
        except StopAsyncIteration:
            return None

    async def read(self) -> Optional[bytes]:
        """Next chunk of bytes, or None at end of stream or after interruption."""
        if self._interrupted:
            return None

        self._pending = asyncio.ensure_future(self._next_chunk())
        try:
            return await self._pending
        except asyncio.CancelledError:
            if self._interrupted:
                return None
            raise
        finally:
            self._pending = None

    def interrupt(self):
        """Abort a pending read without waiting. Safe to call repeatedly."""
        self._interrupted = True
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()

    async def cancel(self):
        """Interrupt and close the underlying response."""
        self.interrupt()
        await self._response.aclose()

    async def aclose(self):
        await self._response.aclose()
