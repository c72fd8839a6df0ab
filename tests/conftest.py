"""
llmstream - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- SSE body builders and an httpx.MockTransport provider stub
- Client contexts bound to the stub, one per request method
"""

import json
import os
from typing import Any, Callable, Dict, List, Optional, Union

import httpx
import pytest

from llmstream.core.config import ClientContext, ProviderConfig, StreamSettings
from llmstream.core.models import RequestMethod


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))

BUILTIN_PROMPT = "You are a test assistant."


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# SSE Builders
# ============================================================

SSEItem = Union[Dict[str, Any], str]


def build_sse_body(*items: SSEItem, done: bool = False) -> bytes:
    """
    Encode SSE frames.

    Dict items become ``data: {json}`` frames; for dicts with a string
    ``type`` an ``event:`` line is written first, as Anthropic and the
    Responses API do. String items are written verbatim.
    """
    lines: List[str] = []
    for item in items:
        if isinstance(item, str):
            lines.append(item)
            continue
        if isinstance(item.get("type"), str):
            lines.append(f"event: {item['type']}\n")
        lines.append(f"data: {json.dumps(item)}\n\n")
    if done:
        lines.append("data: [DONE]\n\n")
    return "".join(lines).encode("utf-8")


@pytest.fixture
def sse_body():
    """Builder for SSE response bodies."""
    return build_sse_body


# ============================================================
# Mock Provider (httpx.MockTransport)
# ============================================================

class MockProvider:
    """
    Records requests and replays queued responses in order.

    A queued item is an httpx.Response, raw SSE bytes (served as a 200
    event stream), or a callable taking the httpx.Request.
    """

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self._queue: List[Any] = []

    def queue(self, *items: Any) -> "MockProvider":
        self._queue.extend(items)
        return self

    def queue_sse(self, *items: SSEItem, done: bool = False) -> "MockProvider":
        return self.queue(build_sse_body(*items, done=done))

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if not self._queue:
            return httpx.Response(500, text="no response queued")
        item = self._queue.pop(0)
        if callable(item):
            item = item(request)
        if isinstance(item, bytes):
            return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=item)
        return item

    def json_body(self, index: int = -1) -> Dict[str, Any]:
        return json.loads(self.requests[index].content)

    @property
    def call_count(self) -> int:
        return len(self.requests)


@pytest.fixture
def mock_provider():
    """Fresh provider stub for each test."""
    return MockProvider()


@pytest.fixture
def make_context(mock_provider) -> Callable[..., ClientContext]:
    """
    Factory for ClientContexts wired to ``mock_provider``.

    Usage:
        def test_something(make_context):
            context = make_context(RequestMethod.ANTHROPIC, anthropic_beta=True)
    """
    def factory(
        method: RequestMethod = RequestMethod.CHAT,
        profiles: Optional[Dict[str, ProviderConfig]] = None,
        system_prompts: Optional[Dict[str, str]] = None,
        builtin_system_prompt: Optional[str] = BUILTIN_PROMPT,
        settings: Optional[StreamSettings] = None,
        **config_overrides: Any,
    ) -> ClientContext:
        values: Dict[str, Any] = {
            "request_method": method,
            "base_url": "https://provider.test/v1",
            "api_key": "test-key",
            "advanced_model": "test-model",
        }
        values.update(config_overrides)
        return ClientContext(
            config=ProviderConfig(**values),
            profiles=profiles,
            system_prompts=system_prompts,
            builtin_system_prompt=builtin_system_prompt,
            settings=settings,
            user_id="user_test",
            http_client=httpx.AsyncClient(transport=httpx.MockTransport(mock_provider.handler)),
        )

    return factory


async def collect(stream) -> list:
    """Drain an async iterator into a list."""
    return [item async for item in stream]


@pytest.fixture
def drain():
    """Async helper that drains a stream into a list."""
    return collect
