"""
llmstream - Provider Adapter Base

Abstract base class for streaming provider adapters.

Every adapter shares one decode-loop shape; subclasses supply only the
wire binding:
- build_request: provider payload, URL and headers
- is_business_delta: which frames count as forward progress
- handle_frame: per-event-type state machine emitting unified events
- build_done: provider extras carried on the terminal event
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, Iterable, Optional

import httpx

from ..core.cancellation import CancellationToken
from ..core.config import ClientContext, ProviderConfig
from ..core.errors import ProviderHTTPError, RequestAbortedError, handle_transport_error
from ..core.models import Provider, RequestMethod, StreamRequest, UsageInfo
from ..core.retry import with_retry_stream
from ..observability.logging import get_logger
from ..observability.metrics import get_metrics
from ..observability.tracing import get_tracing_manager
from ..streaming.events import StreamEvent, StreamEventType
from ..streaming.guard import IdleTimeoutGuard
from ..streaming.reader import StreamReader
from ..streaming.sse import SSEFrame, iter_sse_frames
from ..streaming.tool_calls import ToolCallStreamTracker

logger = get_logger(__name__)


@dataclass
class PreparedRequest:
    """Everything needed to issue one attempt's HTTP POST."""
    url: str
    headers: Dict[str, str]
    body: Dict[str, Any]


@dataclass
class AttemptState:
    """
    Per-attempt accumulators, owned by the decode loop alone.

    Subclasses add provider-specific bookkeeping.
    """
    tool_calls: ToolCallStreamTracker = field(default_factory=ToolCallStreamTracker)
    usage: Optional[UsageInfo] = None
    reasoning_started: bool = False
    reasoning_text: str = ""
    # Set by handle_frame when the provider signals a clean end in-band
    finished: bool = False


class BaseAdapter(ABC):
    """
    Abstract base class for streaming provider adapters.

    The adapter is responsible for:
    1. Converting StreamRequest -> provider-specific payload
    2. Opening the streaming HTTP request
    3. Decoding SSE frames under an idle-timeout guard
    4. Converting provider events -> unified StreamEvents
    5. Classifying failures so the retry orchestrator can act on them
    """

    provider: Provider
    request_method: RequestMethod

    def __init__(self, context: ClientContext):
        self.context = context

    async def stream(self, request: StreamRequest) -> AsyncIterator[StreamEvent]:
        """
        Stream unified events for ``request``, retrying per policy.

        Config-profile overrides are resolved once here, before the first
        attempt, and reused by every retry.
        """
        config = self.context.resolve_config(request.config_profile)
        settings = self.context.settings

        def attempt():
            return self._stream_attempt(request, config)

        async for event in with_retry_stream(
            attempt,
            max_retries=settings.max_retries if request.max_retries is None else request.max_retries,
            base_delay=settings.base_delay if request.base_delay is None else request.base_delay,
            on_retry=request.on_retry,
            cancel_token=request.cancel_token,
        ):
            yield event

    # ============================================================
    # Subclass hooks
    # ============================================================

    @abstractmethod
    def build_request(self, request: StreamRequest, config: ProviderConfig) -> PreparedRequest:
        """Build URL, headers and JSON body for one attempt."""
        pass

    @abstractmethod
    def is_business_delta(self, data: Any) -> bool:
        """True when ``data`` carries text, reasoning or tool-call content."""
        pass

    @abstractmethod
    def handle_frame(self, frame: SSEFrame, state: AttemptState) -> Iterable[StreamEvent]:
        """Update ``state`` from one frame and yield any events it produces."""
        pass

    def new_state(self) -> AttemptState:
        return AttemptState()

    def build_done(self, state: AttemptState) -> StreamEvent:
        return StreamEvent.done()

    def finalize(self, state: AttemptState) -> Iterable[StreamEvent]:
        """Terminal events, always in the order tool-calls, usage, done."""
        if state.tool_calls.has_calls():
            yield StreamEvent.tool_calls_ready(state.tool_calls.finalize())
        if state.usage is not None:
            yield StreamEvent.usage_report(state.usage)
        yield self.build_done(state)

    # ============================================================
    # Shared helpers for subclasses
    # ============================================================

    def resolve_model(self, request: StreamRequest, config: ProviderConfig) -> str:
        return request.model or config.advanced_model

    def merge_headers(
        self,
        base: Dict[str, str],
        config: ProviderConfig,
        request: StreamRequest,
    ) -> Dict[str, str]:
        """Provider defaults, then config custom headers, then per-call headers."""
        headers = dict(base)
        headers.update(config.custom_headers or {})
        headers.update(request.custom_headers or {})
        return headers

    def start_reasoning(self, state: AttemptState) -> Iterable[StreamEvent]:
        if not state.reasoning_started:
            state.reasoning_started = True
            yield StreamEvent.reasoning_started()

    def log_unknown_event(self, event_type: Any):
        logger.debug("Ignoring unknown stream event", provider=self.provider.value, event_type=event_type)

    # ============================================================
    # Attempt body
    # ============================================================

    async def _open(
        self,
        prepared: PreparedRequest,
        model: str,
        token: Optional[CancellationToken],
    ) -> httpx.Response:
        """Send the request; raise typed errors for transport failures and non-2xx."""
        client = self.context.http_client
        provider = self.provider.value
        http_request = client.build_request(
            "POST",
            prepared.url,
            headers=prepared.headers,
            json=prepared.body,
        )

        logger.debug("Opening stream", provider=provider, model=model, url=prepared.url)

        try:
            send = client.send(http_request, stream=True)
            response = await (token.run(send) if token is not None else send)
        except RequestAbortedError:
            raise
        except httpx.HTTPError as e:
            raise handle_transport_error(e, provider, prepared.url, model) from e

        if response.status_code >= 400:
            try:
                body = (await response.aread()).decode("utf-8", errors="replace")
            except httpx.HTTPError as e:
                body = f"<unreadable body: {e}>"
            finally:
                await response.aclose()
            raise ProviderHTTPError(provider, response.status_code, prepared.url, model, body=body)

        return response

    async def _stream_attempt(
        self,
        request: StreamRequest,
        config: ProviderConfig,
    ) -> AsyncIterator[StreamEvent]:
        """
        One attempt: fresh request, reader, guard and state.

        Nothing here outlives the attempt, so residual timer state can
        never fire against the next connection.
        """
        token = request.cancel_token
        prepared = self.build_request(request, config)
        model = self.resolve_model(request, config)
        provider = self.provider.value
        metrics = get_metrics()
        tracing = get_tracing_manager()

        span = tracing.start_client_span(
            "llmstream.attempt",
            {
                "llm.provider": provider,
                "llm.request_method": self.request_method.value,
                "llm.model": model,
                "http.url": prepared.url,
            },
        )
        started = time.monotonic()
        outcome = "incomplete"
        reader: Optional[StreamReader] = None
        guard: Optional[IdleTimeoutGuard] = None
        frames = None
        unregister = None

        try:
            response = await self._open(prepared, model, token)
            reader = StreamReader(response)
            guard = IdleTimeoutGuard(
                reader,
                idle_timeout_sec=self.context.idle_timeout_for(config),
                provider=provider,
            ).start()

            if token is not None:
                attempt_guard, attempt_reader = guard, reader

                def on_cancel():
                    attempt_guard.abandon()
                    attempt_reader.interrupt()

                unregister = token.register(on_cancel)

            state = self.new_state()
            first_event = True
            frames = iter_sse_frames(reader, guard, token, provider=provider, model=model)

            async for frame in frames:
                if self.is_business_delta(frame.data):
                    guard.touch()
                for event in self.handle_frame(frame, state):
                    if first_event:
                        first_event = False
                        metrics.record_time_to_first_event(provider, model, time.monotonic() - started)
                    yield event
                if state.finished:
                    break

            for event in self.finalize(state):
                if event.type == StreamEventType.USAGE and event.usage is not None:
                    metrics.record_tokens(
                        provider,
                        model,
                        event.usage.prompt_tokens,
                        event.usage.completion_tokens,
                    )
                yield event

            outcome = "success"
        except Exception as e:
            outcome = "error"
            tracing.record_exception(span, e)
            logger.info(
                "Stream attempt failed",
                provider=provider,
                model=model,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            if unregister is not None:
                unregister()
            if guard is not None:
                guard.dispose()
            if frames is not None:
                await frames.aclose()
            if reader is not None:
                await reader.aclose()
            metrics.record_attempt(provider, model, outcome)
            span.set_attribute("llm.outcome", outcome)
            span.end()
