"""
llmstream Core Module

Request models, error taxonomy, configuration, cancellation and retry.
"""

from .models import (
    # Enums
    Provider,
    RequestMethod,
    Role,

    # Messages
    Message,
    ImageAttachment,
    ReasoningBlock,

    # Tool calling
    Tool,
    ToolCall,
    FunctionDefinition,
    FunctionCall,

    # Requests / records
    StreamRequest,
    UsageInfo,
)

from .errors import (
    ErrorType,
    ErrorDetails,
    LLMStreamException,

    # Infra errors
    InfraError,
    StreamIdleTimeoutError,
    StreamTerminatedError,
    ProviderConnectionError,
    ProviderHTTPError,
    ProviderStreamError,

    # Semantic errors
    SemanticError,
    ConfigurationError,

    # Cancellation
    RequestAbortedError,
)

from .cancellation import CancellationToken
from .config import ClientContext, ProviderConfig, StreamSettings
from .retry import (
    calculate_backoff,
    is_retriable_error,
    is_stream_interruption,
    with_retry,
    with_retry_stream,
)

__all__ = [
    "Provider",
    "RequestMethod",
    "Role",
    "Message",
    "ImageAttachment",
    "ReasoningBlock",
    "Tool",
    "ToolCall",
    "FunctionDefinition",
    "FunctionCall",
    "StreamRequest",
    "UsageInfo",
    "ErrorType",
    "ErrorDetails",
    "LLMStreamException",
    "InfraError",
    "StreamIdleTimeoutError",
    "StreamTerminatedError",
    "ProviderConnectionError",
    "ProviderHTTPError",
    "ProviderStreamError",
    "SemanticError",
    "ConfigurationError",
    "RequestAbortedError",
    "CancellationToken",
    "ClientContext",
    "ProviderConfig",
    "StreamSettings",
    "calculate_backoff",
    "is_retriable_error",
    "is_stream_interruption",
    "with_retry",
    "with_retry_stream",
]
