"""
llmstream - Error Definitions

Error taxonomy for the streaming completion layer.

Three families:
- Infra errors: transport failures, idle timeouts, abrupt termination,
  HTTP 429/5xx. Usually retryable.
- Semantic errors: request-shape or configuration problems that a retry
  cannot fix.
- Cancellation: the caller aborted. Never retried.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx


class ErrorType(str, Enum):
    """Error classification."""
    INFRA = "infra_error"
    SEMANTIC = "semantic_error"
    CANCELLED = "cancelled"


@dataclass
class ErrorDetails:
    """Full error information carried by every LLMStreamException."""
    code: str
    message: str
    type: ErrorType

    # Context fields
    provider: Optional[str] = None
    model: Optional[str] = None
    url: Optional[str] = None
    status: Optional[int] = None

    # None defers the decision to message-based classification
    retryable: Optional[bool] = False

    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
            "type": self.type.value,
        }

        if self.provider:
            result["provider"] = self.provider
        if self.model:
            result["model"] = self.model
        if self.url:
            result["url"] = self.url
        if self.status is not None:
            result["status"] = self.status
        if self.retryable is not None:
            result["retryable"] = self.retryable
        if self.details:
            result["details"] = self.details

        return {"error": result}


class LLMStreamException(Exception):
    """Base exception for all llmstream errors."""

    def __init__(self, error: ErrorDetails):
        self.error = error
        super().__init__(error.message)

    @property
    def code(self) -> str:
        return self.error.code

    @property
    def retryable(self) -> Optional[bool]:
        return self.error.retryable

    @property
    def provider(self) -> Optional[str]:
        return self.error.provider


# ============================================================
# Infra Errors
# ============================================================

class InfraError(LLMStreamException):
    """Base class for infrastructure errors."""
    pass


class StreamIdleTimeoutError(InfraError):
    """No business-meaningful fragment arrived within the idle window."""

    def __init__(self, idle_timeout_sec: float, provider: Optional[str] = None):
        idle_ms = int(idle_timeout_sec * 1000)
        super().__init__(
            ErrorDetails(
                code="stream_idle_timeout",
                message=f"Stream idle timeout: no data received for {idle_ms}ms",
                type=ErrorType.INFRA,
                provider=provider,
                retryable=True,
                details={"idle_timeout_ms": idle_ms},
            )
        )
        self.idle_timeout_sec = idle_timeout_sec


class StreamTerminatedError(InfraError):
    """
    The byte stream ended (or the reader failed) while a frame was
    still incomplete.
    """

    def __init__(
        self,
        provider: Optional[str] = None,
        message: str = "",
        context: Optional[Dict[str, Any]] = None,
        model: Optional[str] = None,
    ):
        name = (provider or "provider").capitalize()
        super().__init__(
            ErrorDetails(
                code="stream_terminated",
                message=message or f"{name} stream terminated unexpectedly with incomplete data",
                type=ErrorType.INFRA,
                provider=provider,
                model=model,
                retryable=True,
                details=dict(context or {}),
            )
        )
        self.context = dict(context or {})


class ProviderConnectionError(InfraError):
    """Transport-level failure: DNS, refused/reset connection, timeout."""

    def __init__(
        self,
        provider: str,
        url: str,
        model: str,
        reason: str,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(
            ErrorDetails(
                code="network_error",
                message=f"{provider} network error: {reason} (url={url}, model={model})",
                type=ErrorType.INFRA,
                provider=provider,
                model=model,
                url=url,
                retryable=True,
                details={"cause": type(cause).__name__} if cause else {},
            )
        )


class ProviderHTTPError(InfraError):
    """Provider answered with a non-2xx status."""

    def __init__(
        self,
        provider: str,
        status: int,
        url: str,
        model: str,
        body: str = "",
        reason: str = "",
    ):
        reason = reason or _STATUS_TEXT.get(status, "")
        message = f"{provider} API error: {status}"
        if reason:
            message += f" {reason}"
        message += f" (url={url}, model={model})"
        if body:
            message += f" - {body[:500]}"
        super().__init__(
            ErrorDetails(
                code=f"http_{status}",
                message=message,
                type=ErrorType.INFRA if _is_retryable_status(status) else ErrorType.SEMANTIC,
                provider=provider,
                model=model,
                url=url,
                status=status,
                retryable=_is_retryable_status(status),
            )
        )
        self.status = status
        self.body = body


class ProviderStreamError(InfraError):
    """The provider reported an error event inside the stream body."""

    def __init__(self, provider: str, message: str, model: Optional[str] = None, error_type: str = ""):
        super().__init__(
            ErrorDetails(
                code="stream_error",
                message=f"{provider} stream error: {message}",
                type=ErrorType.INFRA,
                provider=provider,
                model=model,
                retryable=None,
                details={"error_type": error_type} if error_type else {},
            )
        )


# ============================================================
# Semantic Errors (Not Retryable)
# ============================================================

class SemanticError(LLMStreamException):
    """Base class for errors the caller must fix."""
    pass


class ConfigurationError(SemanticError):
    """Resolved configuration cannot produce a valid request."""

    def __init__(self, message: str, param: str = ""):
        super().__init__(
            ErrorDetails(
                code="configuration_error",
                message=message,
                type=ErrorType.SEMANTIC,
                retryable=False,
                details={"param": param} if param else {},
            )
        )


# ============================================================
# Cancellation
# ============================================================

class RequestAbortedError(LLMStreamException):
    """The caller cancelled the request. Never retried."""

    def __init__(self, reason: str = "Request aborted"):
        super().__init__(
            ErrorDetails(
                code="request_aborted",
                message=reason,
                type=ErrorType.CANCELLED,
                retryable=False,
            )
        )


# ============================================================
# Error Handlers
# ============================================================

_STATUS_TEXT = {
    400: "Bad Request",
    401: "Unauthorized",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    413: "Payload Too Large",
    422: "Unprocessable Entity",
    429: "Too Many Requests",
    500: "Internal Server Error",
    502: "Bad Gateway",
    503: "Service Unavailable",
    504: "Gateway Timeout",
    529: "Overloaded",
}


def _is_retryable_status(status: int) -> bool:
    return status == 429 or status >= 500


def handle_transport_error(
    error: Exception,
    provider: str,
    url: str,
    model: str,
) -> Exception:
    """
    Convert an httpx exception into a typed llmstream error.

    Errors that are already LLMStreamException, or that do not come from
    httpx, are returned unchanged so the caller can re-raise them.
    """
    if isinstance(error, LLMStreamException):
        return error

    if isinstance(error, httpx.TimeoutException):
        return ProviderConnectionError(provider, url, model, f"timeout ({type(error).__name__})", error)

    if isinstance(error, httpx.ConnectError):
        return ProviderConnectionError(provider, url, model, f"connection failed: {error}", error)

    if isinstance(error, httpx.RemoteProtocolError):
        return ProviderConnectionError(provider, url, model, f"connection reset: {error}", error)

    if isinstance(error, httpx.TransportError):
        return ProviderConnectionError(provider, url, model, str(error) or type(error).__name__, error)

    if isinstance(error, httpx.HTTPStatusError):
        return ProviderHTTPError(provider, error.response.status_code, url, model)

    return error
