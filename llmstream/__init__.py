"""
llmstream - Streaming Completion Protocol Layer

Talks to OpenAI Chat Completions, OpenAI Responses, Anthropic Messages and
Google Gemini over streaming HTTP, guards every read against stalls,
retries transient failures without duplicating output, and normalizes
all four wire protocols into one event model.
"""

__version__ = "1.0.0"
__author__ = "llmstream"

from .adapters import get_adapter, stream_completion
from .core import (
    CancellationToken,
    ClientContext,
    Message,
    ProviderConfig,
    RequestMethod,
    StreamRequest,
    StreamSettings,
)
from .streaming import StreamEvent, StreamEventType

__all__ = [
    "__version__",
    "get_adapter",
    "stream_completion",
    "CancellationToken",
    "ClientContext",
    "Message",
    "ProviderConfig",
    "RequestMethod",
    "StreamRequest",
    "StreamSettings",
    "StreamEvent",
    "StreamEventType",
]
