"""
llmstream - Idle-Timeout Guard

Per-attempt liveness watchdog for one stream read loop.

The guard owns the only state that is mutated concurrently: a periodic
task compares the time since the last ``touch()`` against the threshold
and, on first breach, marks the stream abandoned, records a retriable
StreamIdleTimeoutError and cancels the reader. The decode loop must
check ``take_timeout_error()`` on every iteration and discard any data
that arrives once ``is_abandoned()`` is true.

Create a fresh guard for every attempt; never share one across retries.
"""

import asyncio
import inspect
import time
from typing import Any, Callable, Optional

from ..core.errors import StreamIdleTimeoutError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics

logger = get_logger(__name__)

# Fraction of the threshold between checks: 5s for the default 180s
CHECK_DIVISOR = 36

TimeoutCallback = Callable[[StreamIdleTimeoutError], Any]


class IdleTimeoutGuard:
    """
    Watchdog handle: ``touch``, ``is_abandoned``, ``take_timeout_error``,
    ``dispose``.

    Args:
        reader: Object with an async ``cancel()`` (see StreamReader)
        idle_timeout_sec: Inactivity threshold in seconds
        on_timeout: Optional callback invoked with the timeout error. If it
            raises, that exception becomes the stored error.
        provider: Label for logs and metrics
        clock: Monotonic time source, injectable for tests
        check_interval: Seconds between checks (default threshold / 36)
    """

    def __init__(
        self,
        reader,
        idle_timeout_sec: float = 180,
        on_timeout: Optional[TimeoutCallback] = None,
        provider: str = "",
        clock: Callable[[], float] = time.monotonic,
        check_interval: Optional[float] = None,
    ):
        self._reader = reader
        self.idle_timeout = float(idle_timeout_sec)
        self.check_interval = check_interval or self.idle_timeout / CHECK_DIVISOR
        self._on_timeout = on_timeout
        self._provider = provider
        self._clock = clock

        self._last_activity = clock()
        self._abandoned = False
        self._timeout_error: Optional[BaseException] = None
        self._task: Optional[asyncio.Task] = None
        self._disposed = False

    def start(self) -> "IdleTimeoutGuard":
        """Begin periodic checking on the running loop."""
        if self._task is None and not self._disposed:
            self._task = asyncio.ensure_future(self._run())
        return self

    async def _run(self):
        while not self._disposed:
            await asyncio.sleep(self.check_interval)
            if await self.check_idle():
                return

    def touch(self):
        """Reset the stall clock. Call on business-meaningful progress only."""
        self._last_activity = self._clock()

    def is_abandoned(self) -> bool:
        return self._abandoned

    def take_timeout_error(self) -> Optional[BaseException]:
        """The captured error, if any. Not cleared; the caller must raise it."""
        return self._timeout_error

    def abandon(self):
        """Mark abandoned without recording an error (used on cancellation)."""
        self._abandoned = True

    @property
    def idle_seconds(self) -> float:
        return self._clock() - self._last_activity

    async def check_idle(self) -> bool:
        """
        One periodic check. Returns True when this call detected the timeout.

        Nothing raised in here escapes: it runs outside the caller's
        control flow.
        """
        if self._abandoned or self._disposed:
            return False

        idle = self.idle_seconds
        if idle <= self.idle_timeout:
            return False

        self._abandoned = True
        timeout_error = StreamIdleTimeoutError(self.idle_timeout, provider=self._provider or None)
        self._timeout_error = timeout_error

        try:
            await self._reader.cancel()
        except Exception as e:
            # Reader may already be closing
            logger.debug("Reader cancel failed after idle timeout", error=str(e))

        try:
            logger.warning(
                "Stream idle timeout detected",
                idle_seconds=round(idle, 3),
                idle_timeout_sec=self.idle_timeout,
            )
            get_metrics().record_idle_timeout(self._provider)
        except Exception as e:
            logger.debug("Idle timeout bookkeeping failed", error=str(e))

        if self._on_timeout is not None:
            try:
                result = self._on_timeout(timeout_error)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._timeout_error = e

        return True

    def dispose(self):
        """Stop periodic checking. Idempotent."""
        if self._disposed:
            return
        self._disposed = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None
