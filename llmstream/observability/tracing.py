"""
llmstream - OpenTelemetry Tracing

One CLIENT span per stream attempt, so retries show up as sibling spans
under whatever span the caller has open.

Usage:
    from llmstream.observability.tracing import setup_tracing, get_tracing_manager

    setup_tracing(service_name="my-cli", console_export=True)

    tracing = get_tracing_manager()
    span = tracing.start_client_span("llmstream.attempt", {"llm.provider": "openai"})
    try:
        ...
    finally:
        span.end()
"""

import os
from typing import Any, Dict, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import SERVICE_NAME, SERVICE_VERSION, Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import ConsoleSpanExporter, SimpleSpanProcessor
from opentelemetry.trace import SpanKind, Status, StatusCode

INSTRUMENTATION_NAME = "llmstream"


class TracingManager:
    """
    Tracing manager using OpenTelemetry.

    Without setup_tracing() the global (no-op by default) tracer provider
    is used, so instrumented code costs almost nothing.
    """

    _instance: Optional["TracingManager"] = None

    def __init__(self, provider: Optional[TracerProvider] = None):
        self.provider = provider
        if provider is not None:
            self.tracer = provider.get_tracer(INSTRUMENTATION_NAME)
        else:
            self.tracer = trace.get_tracer(INSTRUMENTATION_NAME)

    @classmethod
    def get_instance(cls) -> "TracingManager":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def reset_instance(cls):
        """Reset singleton (for testing)."""
        cls._instance = None

    def get_tracer(self) -> trace.Tracer:
        return self.tracer

    def start_client_span(self, name: str, attributes: Optional[Dict[str, Any]] = None):
        """
        Start a client span for an outgoing provider request.

        The span is not made current: attempts run inside async generators
        that suspend between events, so the caller must call ``span.end()``.
        """
        clean = {k: v for k, v in (attributes or {}).items() if v is not None}
        return self.tracer.start_span(name, kind=SpanKind.CLIENT, attributes=clean)

    def record_exception(self, span, exception: BaseException):
        span.record_exception(exception)
        span.set_status(Status(StatusCode.ERROR, str(exception)))

    def shutdown(self):
        if self.provider is not None:
            self.provider.shutdown()


def setup_tracing(
    service_name: str = "llmstream",
    service_version: str = "0.1.0",
    console_export: bool = False,
) -> TracingManager:
    """
    Install an SDK tracer provider.

    Call once at application startup. OTEL_CONSOLE_EXPORT=true enables
    the console exporter.
    """
    if os.getenv("OTEL_CONSOLE_EXPORT", "").lower() == "true":
        console_export = True

    resource = Resource.create({
        SERVICE_NAME: service_name,
        SERVICE_VERSION: service_version,
    })
    provider = TracerProvider(resource=resource)

    if console_export:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))

    TracingManager._instance = TracingManager(provider)
    return TracingManager._instance


def get_tracing_manager() -> TracingManager:
    return TracingManager.get_instance()
