"""
llmstream - Google Gemini Adapter Tests

Verifies:
- streamGenerateContent URL, headers and generationConfig
- functionResponse merging and name lookup
- Thought parts, whole function calls with synthetic ids
- Shared thought signatures and zero-usage suppression
"""

import json

import pytest

from llmstream.adapters import GeminiAdapter
from llmstream.core.errors import ProviderStreamError
from llmstream.core.models import (
    FunctionCall,
    FunctionDefinition,
    ImageAttachment,
    Message,
    RequestMethod,
    StreamRequest,
    Tool,
    ToolCall,
)
from llmstream.streaming.events import StreamEventType

from conftest import BUILTIN_PROMPT


def simple_request(**kwargs) -> StreamRequest:
    values = {"model": "gemini-2.5-pro", "messages": [Message.user("hi")], "base_delay": 0, "max_retries": 0}
    values.update(kwargs)
    return StreamRequest(**values)


def frame(*parts, usage=None):
    data = {"candidates": [{"content": {"role": "model", "parts": list(parts)}, "index": 0}]}
    if usage is not None:
        data["usageMetadata"] = usage
    return data


# ============================================================
# Request Building
# ============================================================

class TestGeminiRequestBuilding:
    """Tests for GeminiAdapter.build_request."""

    def test_url_and_headers(self, make_context):
        context = make_context(RequestMethod.GEMINI)

        prepared = GeminiAdapter(context).build_request(simple_request(), context.config)

        assert prepared.url == "https://provider.test/v1/models/gemini-2.5-pro:streamGenerateContent?alt=sse"
        assert prepared.headers["x-goog-api-key"] == "test-key"

    def test_models_prefix_not_doubled(self, make_context):
        context = make_context(RequestMethod.GEMINI)

        prepared = GeminiAdapter(context).build_request(
            simple_request(model="models/gemini-2.5-flash"), context.config
        )

        assert "/models/gemini-2.5-flash:" in prepared.url
        assert "models/models" not in prepared.url

    def test_generation_config(self, make_context):
        context = make_context(RequestMethod.GEMINI, gemini_thinking={"enabled": True, "budget": 1024})

        body = GeminiAdapter(context).build_request(
            simple_request(temperature=0.3, max_tokens=256), context.config
        ).body

        assert body["generationConfig"] == {
            "temperature": 0.3,
            "maxOutputTokens": 256,
            "thinkingConfig": {"thinkingBudget": 1024},
        }
        assert body["systemInstruction"] == {"parts": [{"text": BUILTIN_PROMPT}]}
        assert body["contents"] == [{"role": "user", "parts": [{"text": "hi"}]}]

    def test_no_generation_config_when_unset(self, make_context):
        context = make_context(RequestMethod.GEMINI)

        body = GeminiAdapter(context).build_request(simple_request(), context.config).body

        assert "generationConfig" not in body

    def test_tools_as_function_declarations(self, make_context):
        context = make_context(RequestMethod.GEMINI)
        tool = Tool(function=FunctionDefinition(
            name="grep",
            description="Search",
            parameters={"type": "object", "properties": {"q": {"type": "string"}}, "required": ["q"]},
        ))

        body = GeminiAdapter(context).build_request(simple_request(tools=[tool]), context.config).body

        declaration = body["tools"][0]["functionDeclarations"][0]
        assert declaration["name"] == "grep"
        assert declaration["parametersJsonSchema"] == {
            "type": "object",
            "properties": {"q": {"type": "string"}},
            "required": ["q"],
        }

    def test_tool_history(self, make_context):
        context = make_context(RequestMethod.GEMINI)
        calls = [
            ToolCall(id="call_0", function=FunctionCall(name="ls", arguments="{}"), thought_signature="sig"),
            ToolCall(id="call_1", function=FunctionCall(name="cat", arguments='{"f":"a"}')),
        ]
        request = simple_request(messages=[
            Message.user("go"),
            Message.assistant("", tool_calls=calls),
            Message.tool("call_0", '"[\\"a.py\\"]"'),
            Message.tool("call_1", "plain text output"),
        ])

        contents = GeminiAdapter(context).build_request(request, context.config).body["contents"]

        model_parts = contents[1]["parts"]
        assert contents[1]["role"] == "model"
        assert model_parts[0] == {"functionCall": {"name": "ls", "args": {}}, "thoughtSignature": "sig"}
        assert model_parts[1] == {"functionCall": {"name": "cat", "args": {"f": "a"}}}

        assert len(contents) == 3
        responses = contents[2]["parts"]
        assert contents[2]["role"] == "user"
        assert responses[0]["functionResponse"]["name"] == "ls"
        assert responses[0]["functionResponse"]["response"] == {"content": ["a.py"]}
        assert responses[1]["functionResponse"] == {"name": "cat", "response": {"content": "plain text output"}}

    def test_images(self, make_context):
        context = make_context(RequestMethod.GEMINI)
        request = simple_request(messages=[
            Message.user("see", images=[
                ImageAttachment(data="QUJD", mime_type="image/webp"),
                ImageAttachment(data="https://img.test/a.png"),
            ]),
        ])

        parts = GeminiAdapter(context).build_request(request, context.config).body["contents"][0]["parts"]

        assert parts[1]["inlineData"]["mimeType"] == "image/webp"
        assert parts[2] == {"fileData": {"mimeType": "image/png", "fileUri": "https://img.test/a.png"}}


# ============================================================
# Stream Decoding
# ============================================================

class TestGeminiStreamDecoding:
    """Tests for decoding Gemini candidate frames."""

    @pytest.mark.asyncio
    async def test_thought_then_text(self, make_context, mock_provider, drain):
        mock_provider.queue_sse(
            frame({"text": "Considering", "thought": True}),
            frame({"text": " options", "thought": True}),
            frame({"text": "Answer"}),
            frame({"text": "."}, usage={"promptTokenCount": 8, "candidatesTokenCount": 3, "totalTokenCount": 11}),
        )
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        events = await drain(adapter.stream(simple_request()))

        assert [e.type for e in events] == [
            StreamEventType.REASONING_STARTED,
            StreamEventType.REASONING_DELTA,
            StreamEventType.REASONING_DELTA,
            StreamEventType.CONTENT_DELTA,
            StreamEventType.CONTENT_DELTA,
            StreamEventType.USAGE,
            StreamEventType.DONE,
        ]
        assert events[-2].usage.total_tokens == 11
        assert events[-1].thinking.text == "Considering options"

    @pytest.mark.asyncio
    async def test_function_calls_get_sequential_ids_and_shared_signature(self, make_context, mock_provider, drain):
        mock_provider.queue_sse(
            frame({"functionCall": {"name": "ls", "args": {"dir": "."}}, "thoughtSignature": "SIG"}),
            frame({"functionCall": {"name": "cat", "args": {"f": "é"}}}),
        )
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        events = await drain(adapter.stream(simple_request()))

        deltas = [e.delta for e in events if e.type == StreamEventType.TOOL_CALL_DELTA]
        assert deltas == ['ls{"dir": "."}', 'cat{"f": "é"}']

        calls = [e for e in events if e.type == StreamEventType.TOOL_CALLS][0].tool_calls
        assert [c.id for c in calls] == ["call_0", "call_1"]
        assert calls[0].function.arguments == '{"dir":"."}'
        assert json.loads(calls[1].function.arguments) == {"f": "é"}
        assert calls[0].thought_signature == "SIG"
        assert calls[1].thought_signature == "SIG"

    @pytest.mark.asyncio
    async def test_zero_usage_dropped(self, make_context, mock_provider, drain):
        mock_provider.queue_sse(
            frame({"text": "hi"}, usage={"promptTokenCount": 0, "totalTokenCount": 0}),
        )
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        events = await drain(adapter.stream(simple_request()))

        assert [e.type for e in events] == [StreamEventType.CONTENT_DELTA, StreamEventType.DONE]
        assert events[-1].thinking is None

    @pytest.mark.asyncio
    async def test_error_frame_raises(self, make_context, mock_provider, drain):
        mock_provider.queue_sse(
            {"error": {"code": 400, "message": "API key not valid", "status": "INVALID_ARGUMENT"}},
        )
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        with pytest.raises(ProviderStreamError) as exc_info:
            await drain(adapter.stream(simple_request()))

        assert str(exc_info.value) == "google stream error: API key not valid"
        assert exc_info.value.error.details["error_type"] == "INVALID_ARGUMENT"

    @pytest.mark.asyncio
    async def test_truncated_final_frame_is_retried(self, make_context, mock_provider, drain):
        truncated = b'data: {"candidates": [{"content": {"parts": [{"text": "Hel'
        mock_provider.queue(truncated)
        mock_provider.queue_sse(frame({"text": "Hello"}))
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        events = await drain(adapter.stream(simple_request(max_retries=1)))

        assert mock_provider.call_count == 2
        assert events[0].delta == "Hello"


# ============================================================
# Stall Detection
# ============================================================

class TestGeminiBusinessDelta:
    """Frames without text or function calls do not reset the idle clock."""

    @pytest.mark.parametrize("chunk", [
        {"candidates": [{"content": {"role": "model", "parts": []}, "index": 0}]},
        {"candidates": [{"content": {"parts": [{"text": ""}]}, "finishReason": "STOP"}]},
        {"usageMetadata": {"promptTokenCount": 4, "totalTokenCount": 4}},
    ])
    def test_structural_frames(self, make_context, chunk):
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        assert adapter.is_business_delta(chunk) is False

    @pytest.mark.parametrize("part", [
        {"text": "hi"},
        {"text": "hmm", "thought": True},
        {"functionCall": {"name": "ls", "args": {}}},
    ])
    def test_content_frames(self, make_context, part):
        adapter = GeminiAdapter(make_context(RequestMethod.GEMINI))

        assert adapter.is_business_delta(frame(part)) is True
