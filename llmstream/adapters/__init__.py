"""
llmstream Adapters Module

Provider-specific adapters that translate a StreamRequest into each
provider's native streaming API and its events back into unified
StreamEvents.
"""

from typing import AsyncIterator, Optional, Union

from .base import AttemptState, BaseAdapter, PreparedRequest
from .openai_adapter import OpenAIChatAdapter
from .openai_responses_adapter import OpenAIResponsesAdapter
from .anthropic_adapter import AnthropicAdapter
from .google_adapter import GeminiAdapter
from ..core.config import ClientContext
from ..core.errors import ConfigurationError
from ..core.models import RequestMethod, StreamRequest
from ..streaming.events import StreamEvent

__all__ = [
    "AttemptState",
    "BaseAdapter",
    "PreparedRequest",
    "OpenAIChatAdapter",
    "OpenAIResponsesAdapter",
    "AnthropicAdapter",
    "GeminiAdapter",
    "get_adapter",
    "stream_completion",
]


ADAPTERS = {
    RequestMethod.CHAT: OpenAIChatAdapter,
    RequestMethod.RESPONSES: OpenAIResponsesAdapter,
    RequestMethod.ANTHROPIC: AnthropicAdapter,
    RequestMethod.GEMINI: GeminiAdapter,
}


def get_adapter(method: Union[str, RequestMethod], context: ClientContext) -> BaseAdapter:
    """
    Factory function to get the adapter for a request method.

    Args:
        method: Request method ("chat", "responses", "anthropic", "gemini")
        context: Client context shared by all calls

    Returns:
        Adapter instance bound to ``context``

    Raises:
        ConfigurationError: If the method is not supported
    """
    try:
        key = method if isinstance(method, RequestMethod) else RequestMethod(str(method).lower())
    except ValueError:
        raise ConfigurationError(f"Unsupported request method: {method}", param="request_method")

    return ADAPTERS[key](context)


async def stream_completion(
    request: StreamRequest,
    context: ClientContext,
    method: Optional[Union[str, RequestMethod]] = None,
) -> AsyncIterator[StreamEvent]:
    """
    Stream unified events for ``request``.

    The adapter is picked from ``method`` or, by default, from the request
    method of the resolved config profile.
    """
    if method is None:
        method = context.resolve_config(request.config_profile).request_method

    adapter = get_adapter(method, context)
    async for event in adapter.stream(request):
        yield event
