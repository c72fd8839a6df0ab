"""
llmstream - OpenAI Chat Completions Adapter

Streams ``POST {base}/chat/completions`` with ``stream_options.include_usage``.

Wire shape: flat ``choices[0].delta`` chunks. Tool calls are keyed by
their array ``index``; reasoning arrives as a ``reasoning_content``
string with no start/stop events; usage rides on a trailing chunk with
empty ``choices``.
"""

from typing import Any, Dict, Iterable, List

from .base import AttemptState, BaseAdapter, PreparedRequest
from ..core.config import ProviderConfig
from ..core.errors import ConfigurationError
from ..core.models import Message, Provider, RequestMethod, Role, StreamRequest, UsageInfo
from ..streaming.events import StreamEvent
from ..streaming.sse import SSEFrame

DEFAULT_TEMPERATURE = 0.7


class OpenAIChatAdapter(BaseAdapter):
    """
    Adapter for the OpenAI Chat Completions streaming API and compatible
    endpoints (DeepSeek, vLLM, OpenRouter, ...).
    """

    provider = Provider.OPENAI
    request_method = RequestMethod.CHAT

    def build_request(self, request: StreamRequest, config: ProviderConfig) -> PreparedRequest:
        if not config.api_key:
            raise ConfigurationError("OpenAI API key is not configured", param="api_key")

        body: Dict[str, Any] = {
            "model": self.resolve_model(request, config),
            "messages": self._convert_messages(request, config),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": request.temperature if request.temperature is not None else DEFAULT_TEMPERATURE,
        }

        if request.max_tokens:
            body["max_tokens"] = request.max_tokens

        if request.tools:
            body["tools"] = [tool.to_dict() for tool in request.tools]
            body["tool_choice"] = request.tool_choice or "auto"

        headers = self.merge_headers(
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {config.api_key}",
            },
            config,
            request,
        )

        return PreparedRequest(
            url=f"{config.effective_base_url}/chat/completions",
            headers=headers,
            body=body,
        )

    def is_business_delta(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("content") or delta.get("reasoning_content") or delta.get("tool_calls"):
                return True
        return False

    def handle_frame(self, frame: SSEFrame, state: AttemptState) -> Iterable[StreamEvent]:
        chunk = frame.data
        if not isinstance(chunk, dict):
            return

        usage = chunk.get("usage")
        if usage:
            state.usage = self._parse_usage(usage)

        choices = chunk.get("choices") or []
        if not choices:
            return

        choice = choices[0]
        delta = choice.get("delta") or {}

        content = delta.get("content")
        if content:
            yield StreamEvent.content(content)

        reasoning = delta.get("reasoning_content")
        if reasoning:
            state.reasoning_text += reasoning
            yield from self.start_reasoning(state)
            yield StreamEvent.reasoning_delta(reasoning)

        for tool_delta in delta.get("tool_calls") or []:
            index = tool_delta.get("index", 0)
            function = tool_delta.get("function") or {}
            name = function.get("name") or ""
            arguments = function.get("arguments") or ""

            state.tool_calls.update_call(
                index,
                id=tool_delta.get("id"),
                function_name=name,
                arguments_delta=arguments,
            )

            fragment = name + arguments
            if fragment:
                yield StreamEvent.tool_call_delta(fragment)

        # The usage chunk follows finish_reason, so keep reading until [DONE]
        if choice.get("finish_reason"):
            state.tool_calls.mark_all_complete()

    def build_done(self, state: AttemptState) -> StreamEvent:
        return StreamEvent.done(reasoning_content=state.reasoning_text or None)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _parse_usage(self, usage: Dict[str, Any]) -> UsageInfo:
        details = usage.get("prompt_tokens_details") or {}
        cached = details.get("cached_tokens")
        return UsageInfo(
            prompt_tokens=usage.get("prompt_tokens") or 0,
            completion_tokens=usage.get("completion_tokens") or 0,
            total_tokens=usage.get("total_tokens") or 0,
            cached_tokens=cached,
        )

    def _convert_messages(self, request: StreamRequest, config: ProviderConfig) -> List[Dict[str, Any]]:
        """
        Convert history to Chat Completions messages.

        A history that already starts with a system message is sent as is.
        Otherwise a custom system prompt becomes the system message (with
        the built-in prompt demoted to a user message), or the built-in
        prompt becomes the system message.
        """
        result = [self._convert_message(msg) for msg in request.messages]

        if result and result[0]["role"] == "system":
            return result

        prefix: List[Dict[str, Any]] = []
        custom = self.context.resolve_system_prompt(config, request.custom_system_prompt_id)
        builtin = self.context.builtin_system_prompt if request.include_builtin_system_prompt else None

        if custom:
            prefix.append({"role": "system", "content": [{"type": "text", "text": custom}]})
            if builtin:
                prefix.append({"role": "user", "content": builtin})
        elif builtin:
            prefix.append({"role": "system", "content": builtin})

        return prefix + result

    def _convert_message(self, msg: Message) -> Dict[str, Any]:
        if msg.role == Role.USER and msg.images:
            return {"role": "user", "content": self._content_parts(msg)}

        if msg.role == Role.TOOL and msg.tool_call_id:
            return {
                "role": "tool",
                "content": self._content_parts(msg) if msg.images else msg.content,
                "tool_call_id": msg.tool_call_id,
            }

        converted: Dict[str, Any] = {"role": msg.role.value, "content": msg.content}

        if msg.role == Role.ASSISTANT:
            if msg.tool_calls:
                converted["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": call.type,
                        "function": {"name": call.function.name, "arguments": call.function.arguments},
                    }
                    for call in msg.tool_calls
                ]
            if msg.reasoning_content:
                converted["reasoning_content"] = msg.reasoning_content

        return converted

    def _content_parts(self, msg: Message) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        if msg.content:
            parts.append({"type": "text", "text": msg.content})
        for image in msg.images:
            parts.append({"type": "image_url", "image_url": {"url": image.to_data_url()}})
        return parts
