"""
llmstream - Retry Logic

Exponential backoff (base * 2**attempt, no jitter: 1s, 2s, 4s, 8s, 16s
by default) for single awaited operations and for async generators.

The stream variant adds one rule: once anything has been yielded to the
caller, only a narrow "stream interruption" failure may be retried.
Any other failure after partial output is re-raised as-is, because the
caller cannot know which already-delivered events to keep.
"""

import re
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

from .cancellation import CancellationToken, sleep_with_token
from .errors import (
    LLMStreamException,
    RequestAbortedError,
    StreamIdleTimeoutError,
    StreamTerminatedError,
)
from .models import RetryObserver
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics

logger = get_logger(__name__)

T = TypeVar("T")

DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 1.0

RETRIABLE_MESSAGE_PATTERNS = (
    # Network
    "network",
    "econnrefused",
    "econnreset",
    "etimedout",
    "timeout",
    # Rate limiting
    "rate limit",
    "too many requests",
    "429",
    # Server errors
    "500",
    "502",
    "503",
    "504",
    "internal server error",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
    # Temporary unavailability
    "overloaded",
    "unavailable",
    # Connection dropped by the server
    "terminated",
    "connection reset",
    "socket hang up",
    # Malformed streamed tool calls
    "invalid tool call json",
    "incomplete tool call json",
)

# Keep narrow: broadening this risks duplicating already-emitted output
STREAM_INTERRUPTION_PATTERN = re.compile(
    r"Stream terminated unexpectedly|incomplete data|reader error|^terminated$|idle timeout",
    re.IGNORECASE,
)


def calculate_backoff(attempt: int, base_delay: float = DEFAULT_BASE_DELAY) -> float:
    """Delay in seconds before retry number ``attempt + 1`` (attempt is 0-based)."""
    return base_delay * (2 ** attempt)


def is_retriable_error(error: BaseException) -> bool:
    """
    Classify an error as retriable.

    Typed checks come first so that classification survives message
    wording changes; message substrings cover everything else.
    """
    if isinstance(error, RequestAbortedError):
        return False
    if isinstance(error, StreamIdleTimeoutError):
        return True
    if isinstance(error, LLMStreamException) and error.retryable is not None:
        return error.retryable

    message = str(error).lower()
    return any(pattern in message for pattern in RETRIABLE_MESSAGE_PATTERNS)


def is_stream_interruption(error: BaseException) -> bool:
    """True for the narrow class of failures retriable after partial output."""
    if isinstance(error, (StreamIdleTimeoutError, StreamTerminatedError)):
        return True
    return bool(STREAM_INTERRUPTION_PATTERN.search(str(error)))


def _notify(on_retry: Optional[RetryObserver], error: BaseException, attempt: int, delay: float):
    logger.warning(
        "Retrying after error",
        attempt=attempt,
        next_delay_sec=delay,
        error=str(error),
        error_type=type(error).__name__,
    )
    get_metrics().record_retry(error)
    if on_retry is not None:
        on_retry(error, attempt, delay)


async def _backoff(delay: float, token: Optional[CancellationToken]):
    try:
        await sleep_with_token(delay, token)
    except RequestAbortedError:
        raise RequestAbortedError("Request aborted") from None


def _check_token(token: Optional[CancellationToken]):
    if token is not None and token.cancelled:
        raise RequestAbortedError("Request aborted")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_retry: Optional[RetryObserver] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> T:
    """
    Await ``operation()``, retrying retriable failures with backoff.

    Args:
        operation: Zero-argument callable returning an awaitable
        max_retries: Retries after the first attempt
        base_delay: Delay before the first retry, in seconds
        on_retry: Observer called with (error, attempt number, next delay)
        cancel_token: Checked before each attempt and during backoff

    Raises:
        RequestAbortedError: cancelled before an attempt or during backoff
        The last underlying error when it is not retriable or retries ran out
    """
    attempt = 0
    while True:
        _check_token(cancel_token)

        try:
            return await operation()
        except RequestAbortedError:
            raise
        except Exception as e:
            if attempt >= max_retries or not is_retriable_error(e):
                raise

            delay = calculate_backoff(attempt, base_delay)
            _notify(on_retry, e, attempt + 1, delay)
            await _backoff(delay, cancel_token)
            attempt += 1


async def with_retry_stream(
    producer: Callable[[], AsyncIterator[T]],
    max_retries: int = DEFAULT_MAX_RETRIES,
    base_delay: float = DEFAULT_BASE_DELAY,
    on_retry: Optional[RetryObserver] = None,
    cancel_token: Optional[CancellationToken] = None,
) -> AsyncIterator[T]:
    """
    Re-yield ``producer()``'s items, retrying with the same policy as
    with_retry. After the first yielded item, only stream interruptions
    (see is_stream_interruption) are retried.
    """
    attempt = 0
    has_yielded = False

    while True:
        _check_token(cancel_token)

        stream = producer()
        try:
            async for item in stream:
                has_yielded = True
                yield item
            return
        except RequestAbortedError:
            raise
        except Exception as e:
            if has_yielded and not is_stream_interruption(e):
                raise
            if attempt >= max_retries or not is_retriable_error(e):
                raise

            delay = calculate_backoff(attempt, base_delay)
            _notify(on_retry, e, attempt + 1, delay)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        await _backoff(delay, cancel_token)
        attempt += 1
