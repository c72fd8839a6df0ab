"""
llmstream - Prometheus Metrics

Metrics exposed:
- llmstream_attempts_total: stream attempts by provider, model, outcome
- llmstream_retries_total: retries scheduled by the retry orchestrator
- llmstream_idle_timeouts_total: streams abandoned by the idle guard
- llmstream_stream_terminations_total: streams that ended mid-frame
- llmstream_tokens_total: tokens reported in usage events
- llmstream_time_to_first_event_seconds: latency until the first event

Usage:
    from llmstream.observability.metrics import get_metrics

    metrics = get_metrics()
    metrics.record_attempt(provider="openai", model="gpt-4o", outcome="success")
"""

from typing import Optional

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram


class MetricsCollector:
    """
    Metrics collector using the Prometheus client.

    Singleton per process; tests may build one against a private registry.
    """

    _instance: Optional["MetricsCollector"] = None

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.attempts_total = Counter(
            "llmstream_attempts_total",
            "Stream attempts",
            labelnames=["provider", "model", "outcome"],
            registry=registry,
        )

        self.retries_total = Counter(
            "llmstream_retries_total",
            "Retries scheduled after a retriable failure",
            labelnames=["error_type"],
            registry=registry,
        )

        self.idle_timeouts_total = Counter(
            "llmstream_idle_timeouts_total",
            "Streams abandoned by the idle-timeout guard",
            labelnames=["provider"],
            registry=registry,
        )

        self.stream_terminations_total = Counter(
            "llmstream_stream_terminations_total",
            "Streams terminated with incomplete data",
            labelnames=["provider"],
            registry=registry,
        )

        self.tokens_total = Counter(
            "llmstream_tokens_total",
            "Tokens reported by providers",
            labelnames=["provider", "model", "type"],
            registry=registry,
        )

        # Reasoning models can sit silent for a long time before the first delta
        self.time_to_first_event = Histogram(
            "llmstream_time_to_first_event_seconds",
            "Time from request start to first unified event",
            labelnames=["provider", "model"],
            buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0],
            registry=registry,
        )

    @classmethod
    def get_instance(cls) -> "MetricsCollector":
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    def record_attempt(self, provider: str, model: str, outcome: str):
        self.attempts_total.labels(provider=provider, model=model, outcome=outcome).inc()

    def record_retry(self, error: BaseException):
        self.retries_total.labels(error_type=type(error).__name__).inc()

    def record_idle_timeout(self, provider: str):
        self.idle_timeouts_total.labels(provider=provider or "unknown").inc()

    def record_stream_termination(self, provider: str):
        self.stream_terminations_total.labels(provider=provider or "unknown").inc()

    def record_tokens(self, provider: str, model: str, input_tokens: int, output_tokens: int):
        self.tokens_total.labels(provider=provider, model=model, type="input").inc(input_tokens)
        self.tokens_total.labels(provider=provider, model=model, type="output").inc(output_tokens)

    def record_time_to_first_event(self, provider: str, model: str, seconds: float):
        self.time_to_first_event.labels(provider=provider, model=model).observe(seconds)


def get_metrics() -> MetricsCollector:
    return MetricsCollector.get_instance()
