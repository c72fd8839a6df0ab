"""
llmstream - Retry Orchestrator Tests

Verifies:
- Backoff schedule and error classification
- with_retry: retries, observer calls, exhaustion, non-retriable errors
- with_retry_stream: the partial-output rule
- Cancellation before attempts and during backoff
"""

import asyncio

import pytest

from llmstream.core.cancellation import CancellationToken
from llmstream.core.errors import (
    ConfigurationError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderStreamError,
    RequestAbortedError,
    StreamIdleTimeoutError,
    StreamTerminatedError,
)
from llmstream.core.retry import (
    calculate_backoff,
    is_retriable_error,
    is_stream_interruption,
    with_retry,
    with_retry_stream,
)


class RecordingObserver:
    def __init__(self):
        self.calls = []

    def __call__(self, error, attempt, delay):
        self.calls.append((error, attempt, delay))


# ============================================================
# Classification Tests
# ============================================================

class TestBackoff:
    """Tests for calculate_backoff."""

    @pytest.mark.parametrize("attempt,expected", [(0, 1.0), (1, 2.0), (2, 4.0), (3, 8.0), (4, 16.0)])
    def test_default_schedule(self, attempt, expected):
        assert calculate_backoff(attempt) == expected

    def test_custom_base(self):
        assert calculate_backoff(2, base_delay=0.5) == 2.0


class TestIsRetriableError:
    """Tests for is_retriable_error."""

    def test_abort_is_never_retriable(self):
        assert is_retriable_error(RequestAbortedError()) is False

    def test_idle_timeout_is_retriable(self):
        assert is_retriable_error(StreamIdleTimeoutError(180)) is True

    def test_terminated_stream_is_retriable(self):
        assert is_retriable_error(StreamTerminatedError("anthropic")) is True

    def test_connection_error_is_retriable(self):
        error = ProviderConnectionError("openai", "https://x", "m", "connection failed")
        assert is_retriable_error(error) is True

    @pytest.mark.parametrize("status,expected", [
        (400, False),
        (401, False),
        (404, False),
        (429, True),
        (500, True),
        (503, True),
        (529, True),
    ])
    def test_http_status(self, status, expected):
        error = ProviderHTTPError("openai", status, "https://x", "m", body="{}")
        assert is_retriable_error(error) is expected

    def test_configuration_error_is_not_retriable(self):
        assert is_retriable_error(ConfigurationError("missing key")) is False

    def test_stream_error_uses_message_table(self):
        assert is_retriable_error(ProviderStreamError("anthropic", "Overloaded")) is True
        assert is_retriable_error(ProviderStreamError("anthropic", "invalid_request_error")) is False

    @pytest.mark.parametrize("message", [
        "ECONNRESET",
        "socket hang up",
        "Rate limit reached",
        "Bad Gateway",
        "Invalid tool call JSON in response",
        "request timeout",
    ])
    def test_plain_exceptions_by_message(self, message):
        assert is_retriable_error(RuntimeError(message)) is True

    def test_unknown_message_is_not_retriable(self):
        assert is_retriable_error(ValueError("model not found")) is False


class TestIsStreamInterruption:
    """The narrow class retriable after partial output."""

    def test_typed_interruptions(self):
        assert is_stream_interruption(StreamTerminatedError("openai")) is True
        assert is_stream_interruption(StreamIdleTimeoutError(10)) is True

    def test_message_signatures(self):
        assert is_stream_interruption(RuntimeError("Gemini stream terminated unexpectedly with incomplete data"))
        assert is_stream_interruption(RuntimeError("terminated"))
        assert is_stream_interruption(RuntimeError("Stream reader error: ReadError"))

    def test_ordinary_retriable_errors_are_not_interruptions(self):
        assert is_stream_interruption(RuntimeError("503 Service Unavailable")) is False
        assert is_stream_interruption(RuntimeError("rate limit")) is False


# ============================================================
# with_retry Tests
# ============================================================

class TestWithRetry:
    """Tests for the awaitable variant."""

    @pytest.mark.asyncio
    async def test_success_first_try(self):
        observer = RecordingObserver()

        async def operation():
            return "ok"

        assert await with_retry(operation, base_delay=0, on_retry=observer) == "ok"
        assert observer.calls == []

    @pytest.mark.asyncio
    async def test_retries_then_succeeds(self):
        observer = RecordingObserver()
        attempts = []

        async def operation():
            attempts.append(1)
            if len(attempts) < 3:
                raise RuntimeError("503 Service Unavailable")
            return "ok"

        result = await with_retry(operation, max_retries=5, base_delay=0.001, on_retry=observer)

        assert result == "ok"
        assert len(attempts) == 3
        assert [(attempt, delay) for _, attempt, delay in observer.calls] == [(1, 0.001), (2, 0.002)]

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_last_error(self):
        """max_retries=2 means three attempts in total."""
        observer = RecordingObserver()
        attempts = []

        async def operation():
            attempts.append(1)
            raise RuntimeError(f"network error #{len(attempts)}")

        with pytest.raises(RuntimeError, match="network error #3"):
            await with_retry(operation, max_retries=2, base_delay=0, on_retry=observer)

        assert len(attempts) == 3
        assert len(observer.calls) == 2

    @pytest.mark.asyncio
    async def test_non_retriable_raises_immediately(self):
        observer = RecordingObserver()
        attempts = []

        async def operation():
            attempts.append(1)
            raise ValueError("invalid api key")

        with pytest.raises(ValueError):
            await with_retry(operation, base_delay=0, on_retry=observer)

        assert len(attempts) == 1
        assert observer.calls == []

    @pytest.mark.asyncio
    async def test_zero_retries(self):
        attempts = []

        async def operation():
            attempts.append(1)
            raise RuntimeError("timeout")

        with pytest.raises(RuntimeError):
            await with_retry(operation, max_retries=0, base_delay=0)

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_cancelled_before_first_attempt(self):
        token = CancellationToken()
        token.cancel()
        attempts = []

        async def operation():
            attempts.append(1)

        with pytest.raises(RequestAbortedError):
            await with_retry(operation, cancel_token=token)

        assert attempts == []

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_aborts_promptly(self):
        token = CancellationToken()
        attempts = []

        async def operation():
            attempts.append(1)
            raise RuntimeError("503 Service Unavailable")

        asyncio.get_running_loop().call_later(0.05, token.cancel)

        with pytest.raises(RequestAbortedError, match="Request aborted"):
            await asyncio.wait_for(
                with_retry(operation, base_delay=30, cancel_token=token),
                timeout=2,
            )

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_abort_from_operation_is_not_retried(self):
        attempts = []

        async def operation():
            attempts.append(1)
            raise RequestAbortedError()

        with pytest.raises(RequestAbortedError):
            await with_retry(operation, base_delay=0)

        assert len(attempts) == 1


# ============================================================
# with_retry_stream Tests
# ============================================================

def failing_stream(plan):
    """
    Producer whose n-th attempt yields ``plan[n][0]`` then raises
    ``plan[n][1]`` (or finishes when it is None).
    """
    attempts = []

    def producer():
        async def run():
            items, error = plan[len(attempts)]
            attempts.append(1)
            for item in items:
                yield item
            if error is not None:
                raise error
        return run()

    return producer, attempts


class TestWithRetryStream:
    """Tests for the async-generator variant."""

    @pytest.mark.asyncio
    async def test_failure_before_first_item_is_retried(self, drain):
        producer, attempts = failing_stream([
            ([], RuntimeError("502 Bad Gateway")),
            (["a", "b"], None),
        ])

        items = await drain(with_retry_stream(producer, base_delay=0))

        assert items == ["a", "b"]
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_retriable_failure_after_output_is_not_retried(self, drain):
        """Only interruptions may be retried once the caller has seen output."""
        producer, attempts = failing_stream([
            (["a"], RuntimeError("503 Service Unavailable")),
            (["a", "b"], None),
        ])
        seen = []

        with pytest.raises(RuntimeError, match="503"):
            async for item in with_retry_stream(producer, base_delay=0):
                seen.append(item)

        assert seen == ["a"]
        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_interruption_after_output_is_retried(self, drain):
        observer = RecordingObserver()
        producer, attempts = failing_stream([
            (["a"], StreamTerminatedError("anthropic")),
            (["a", "b"], None),
        ])

        items = await drain(with_retry_stream(producer, base_delay=0, on_retry=observer))

        assert items == ["a", "a", "b"]
        assert len(attempts) == 2
        assert observer.calls[0][1] == 1

    @pytest.mark.asyncio
    async def test_has_yielded_persists_across_attempts(self):
        """A later attempt that fails before yielding still counts as after output."""
        producer, attempts = failing_stream([
            (["a"], StreamIdleTimeoutError(1)),
            ([], RuntimeError("503 Service Unavailable")),
            (["never"], None),
        ])
        seen = []

        with pytest.raises(RuntimeError, match="503"):
            async for item in with_retry_stream(producer, base_delay=0):
                seen.append(item)

        assert seen == ["a"]
        assert len(attempts) == 2

    @pytest.mark.asyncio
    async def test_exhaustion_raises_last_error(self):
        producer, attempts = failing_stream([([], StreamTerminatedError("openai"))] * 3)

        with pytest.raises(StreamTerminatedError):
            async for _ in with_retry_stream(producer, max_retries=2, base_delay=0):
                pass

        assert len(attempts) == 3

    @pytest.mark.asyncio
    async def test_cancel_during_backoff(self):
        token = CancellationToken()
        producer, attempts = failing_stream([([], RuntimeError("timeout"))] * 2)
        asyncio.get_running_loop().call_later(0.05, token.cancel)

        async def consume():
            async for _ in with_retry_stream(producer, base_delay=30, cancel_token=token):
                pass

        with pytest.raises(RequestAbortedError):
            await asyncio.wait_for(consume(), timeout=2)

        assert len(attempts) == 1

    @pytest.mark.asyncio
    async def test_consumer_break_closes_inner_stream(self):
        closed = []

        def producer():
            async def run():
                try:
                    yield 1
                    yield 2
                finally:
                    closed.append(True)
            return run()

        stream = with_retry_stream(producer, base_delay=0)
        async for _ in stream:
            break
        await stream.aclose()

        assert closed == [True]
