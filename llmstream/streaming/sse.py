"""
llmstream - SSE Frame Decoder

Turns the raw byte stream of one attempt into decoded ``data:`` frames.

Rules shared by all providers:
- ``data:`` and ``data: `` prefixes are equivalent, as are ``event:`` and ``event: ``
- comment lines (leading ``:``) and blank lines are skipped
- ``data: [DONE]`` / ``data:[DONE]`` ends the stream successfully
- a frame whose JSON cannot be repaired is logged and dropped
- a non-empty remainder at end of stream raises StreamTerminatedError
"""

import codecs
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional

import httpx

from .guard import IdleTimeoutGuard
from .json_repair import parse_json_with_fix
from .reader import StreamReader
from ..core.cancellation import CancellationToken
from ..core.errors import StreamTerminatedError
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics

logger = get_logger(__name__)

DONE_SENTINELS = ("data: [DONE]", "data:[DONE]")
BUFFER_PREVIEW_CHARS = 200


@dataclass
class SSEFrame:
    """A decoded ``data:`` payload and the ``event:`` name that preceded it, if any."""
    data: Any
    event: Optional[str] = None


def _raise_if_timed_out(guard: IdleTimeoutGuard):
    error = guard.take_timeout_error()
    if error is not None:
        raise error


async def iter_sse_frames(
    reader: StreamReader,
    guard: IdleTimeoutGuard,
    token: Optional[CancellationToken] = None,
    provider: str = "",
    model: str = "",
) -> AsyncIterator[SSEFrame]:
    """
    Yield decoded SSE frames until ``[DONE]`` or a clean end of stream.

    The guard's captured error is checked on every iteration and before
    every yield, so an idle timeout surfaces promptly even if frames were
    already buffered.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    data_count = 0
    last_event_type: Optional[str] = None
    current_event: Optional[str] = None

    while True:
        _raise_if_timed_out(guard)
        if token is not None:
            token.raise_if_cancelled()

        try:
            chunk = await reader.read()
        except httpx.TransportError as e:
            _raise_if_timed_out(guard)
            if token is not None:
                token.raise_if_cancelled()
            get_metrics().record_stream_termination(provider)
            raise StreamTerminatedError(
                provider=provider,
                model=model,
                message=f"Stream reader error: {type(e).__name__}: {e}",
                context={"data_count": data_count, "last_event_type": last_event_type},
            ) from e

        _raise_if_timed_out(guard)
        if token is not None:
            token.raise_if_cancelled()

        if chunk is None:
            break

        if guard.is_abandoned():
            # Buffered data raced with abandonment: discard it
            break

        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()

        for line in lines:
            trimmed = line.strip()
            if not trimmed:
                current_event = None
                continue
            if trimmed.startswith(":"):
                continue

            if trimmed in DONE_SENTINELS:
                return

            if trimmed.startswith("event:"):
                current_event = trimmed[6:].strip()
                last_event_type = current_event
                continue

            if not trimmed.startswith("data:"):
                continue

            data_str = trimmed[5:].strip()
            data_count += 1

            result = parse_json_with_fix(
                data_str,
                tool_name=f"{provider or 'provider'} SSE frame",
                log_warning=False,
                log_error=False,
            )
            if not result.success:
                logger.warning(
                    "Dropping undecodable SSE frame",
                    frame_preview=data_str[:BUFFER_PREVIEW_CHARS],
                    parse_error=str(result.error),
                )
                continue

            if isinstance(result.data, dict) and "type" in result.data:
                last_event_type = str(result.data["type"])

            _raise_if_timed_out(guard)
            if guard.is_abandoned():
                return
            yield SSEFrame(data=result.data, event=current_event)
            _raise_if_timed_out(guard)

    buffer += decoder.decode(b"", final=True)
    remainder = buffer.strip()
    if not remainder or remainder in DONE_SENTINELS:
        return

    context = {
        "data_count": data_count,
        "last_event_type": last_event_type,
        "buffer_length": len(buffer),
        "buffer_preview": buffer[:BUFFER_PREVIEW_CHARS],
    }
    logger.error("Stream terminated unexpectedly with incomplete data", **context)
    get_metrics().record_stream_termination(provider)
    raise StreamTerminatedError(provider=provider, model=model, context=context)
