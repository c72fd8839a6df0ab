"""
llmstream - Observability Module

- Structured JSON logging with per-stream context
- OpenTelemetry spans per stream attempt
- Prometheus counters for retries, idle timeouts and token usage
"""

from .logging import (
    LogContext,
    StructuredLogger,
    get_logger,
    setup_logging,
)
from .metrics import (
    MetricsCollector,
    get_metrics,
)
from .tracing import (
    TracingManager,
    get_tracing_manager,
    setup_tracing,
)

__all__ = [
    # Logging
    "LogContext",
    "StructuredLogger",
    "get_logger",
    "setup_logging",
    # Metrics
    "MetricsCollector",
    "get_metrics",
    # Tracing
    "TracingManager",
    "get_tracing_manager",
    "setup_tracing",
]
