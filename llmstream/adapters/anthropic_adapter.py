"""
llmstream - Anthropic Messages Adapter

Streams ``POST {base}/messages`` (``?beta=true`` when the beta flag is set).

Wire shape: ``content_block_start/delta/stop`` keyed by an integer block
index. Tool-use blocks carry their id on start; arguments arrive as
``input_json_delta`` fragments. Extended thinking arrives as a
``thinking_delta`` / ``signature_delta`` pair. Usage is split across
``message_start`` and ``message_delta``.
"""

import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from .base import AttemptState, BaseAdapter, PreparedRequest
from ..core.config import ProviderConfig
from ..core.errors import ConfigurationError, ProviderStreamError
from ..core.models import (
    ImageAttachment,
    Message,
    Provider,
    ReasoningBlock,
    RequestMethod,
    Role,
    StreamRequest,
    Tool,
    UsageInfo,
)
from ..streaming.events import StreamEvent
from ..streaming.json_repair import parse_json_with_fix
from ..streaming.sse import SSEFrame

ANTHROPIC_VERSION = "2023-06-01"

# Parameter tags the model occasionally leaks into tool JSON
_PARAMETER_TAG = re.compile(r"</?parameter[^>]*>")

_IGNORED_EVENTS = frozenset({"ping", "message_stop"})


@dataclass
class AnthropicAttemptState(AttemptState):
    block_ids: Dict[int, str] = field(default_factory=dict)
    block_types: Dict[int, str] = field(default_factory=dict)
    signature: str = ""


class AnthropicAdapter(BaseAdapter):
    """Adapter for Anthropic Claude models."""

    provider = Provider.ANTHROPIC
    request_method = RequestMethod.ANTHROPIC

    def build_request(self, request: StreamRequest, config: ProviderConfig) -> PreparedRequest:
        if not config.api_key:
            raise ConfigurationError("Anthropic API key is not configured", param="api_key")

        system, messages = self._convert_messages(request, config)

        body: Dict[str, Any] = {
            "model": self.resolve_model(request, config),
            "max_tokens": request.max_tokens or config.max_tokens,
            "messages": messages,
            "metadata": {"user_id": self.context.user_id},
            "stream": True,
        }
        if system:
            body["system"] = system
        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
        if request.temperature is not None:
            body["temperature"] = request.temperature

        # Extended thinking requires temperature 1
        if config.thinking and not request.disable_thinking:
            body["thinking"] = config.thinking
            body["temperature"] = 1

        headers = self.merge_headers(
            {
                "Content-Type": "application/json",
                "x-api-key": config.api_key,
                "Authorization": f"Bearer {config.api_key}",
                "anthropic-version": ANTHROPIC_VERSION,
            },
            config,
            request,
        )

        url = f"{config.effective_base_url}/messages"
        if config.anthropic_beta:
            url += "?beta=true"

        return PreparedRequest(url=url, headers=headers, body=body)

    def new_state(self) -> AnthropicAttemptState:
        return AnthropicAttemptState()

    def is_business_delta(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        event_type = data.get("type")
        if event_type == "content_block_start":
            # The tool name carried on the start counts as content
            return (data.get("content_block") or {}).get("type") == "tool_use"
        if event_type == "content_block_delta":
            delta = data.get("delta") or {}
            kind = delta.get("type")
            return bool(
                (kind == "text_delta" and delta.get("text"))
                or (kind == "thinking_delta" and delta.get("thinking"))
                or (kind == "input_json_delta" and delta.get("partial_json"))
            )
        return False

    def handle_frame(self, frame: SSEFrame, state: AnthropicAttemptState) -> Iterable[StreamEvent]:
        event = frame.data
        if not isinstance(event, dict):
            return
        event_type = event.get("type")
        index = event.get("index", 0)

        if event_type in _IGNORED_EVENTS:
            return

        if event_type == "content_block_start":
            block = event.get("content_block") or {}
            block_type = block.get("type")
            state.block_types[index] = block_type

            if block_type == "tool_use":
                block_id = block.get("id")
                state.block_ids[index] = block_id
                name = block.get("name") or ""
                state.tool_calls.update_call(block_id, id=block_id, function_name=name)
                if name:
                    yield StreamEvent.tool_call_delta(name)
            elif block_type == "thinking":
                yield from self.start_reasoning(state)

        elif event_type == "content_block_delta":
            yield from self._handle_delta(event.get("delta") or {}, index, state)

        elif event_type == "content_block_stop":
            block_id = state.block_ids.get(index)
            if block_id is not None:
                state.tool_calls.mark_complete(block_id)

        elif event_type == "message_start":
            usage = (event.get("message") or {}).get("usage")
            if usage:
                input_tokens = usage.get("input_tokens") or 0
                output_tokens = usage.get("output_tokens") or 0
                state.usage = UsageInfo(
                    prompt_tokens=input_tokens,
                    completion_tokens=output_tokens,
                    total_tokens=input_tokens + output_tokens,
                    cache_creation_input_tokens=usage.get("cache_creation_input_tokens"),
                    cache_read_input_tokens=usage.get("cache_read_input_tokens"),
                )

        elif event_type == "message_delta":
            usage = event.get("usage")
            if usage:
                self._merge_usage(state, usage)

        elif event_type == "error":
            error = event.get("error") or {}
            raise ProviderStreamError(
                "anthropic",
                error.get("message") or "Unknown error",
                error_type=error.get("type") or "",
            )

        else:
            self.log_unknown_event(event_type)

    def build_done(self, state: AnthropicAttemptState) -> StreamEvent:
        thinking = None
        if state.reasoning_text:
            thinking = ReasoningBlock(text=state.reasoning_text, signature=state.signature or None)
        return StreamEvent.done(thinking=thinking)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _handle_delta(self, delta: Dict[str, Any], index: int, state: AnthropicAttemptState) -> Iterable[StreamEvent]:
        kind = delta.get("type")

        if kind == "text_delta":
            text = delta.get("text")
            if text:
                yield StreamEvent.content(text)

        elif kind == "thinking_delta":
            thinking = delta.get("thinking")
            if thinking:
                state.reasoning_text += thinking
                yield StreamEvent.reasoning_delta(thinking)

        elif kind == "signature_delta":
            state.signature += delta.get("signature") or ""

        elif kind == "input_json_delta":
            block_id = state.block_ids.get(index)
            if block_id is None:
                return
            cleaned = _PARAMETER_TAG.sub("", delta.get("partial_json") or "")
            if cleaned:
                state.tool_calls.update_call(block_id, arguments_delta=cleaned)
                yield StreamEvent.tool_call_delta(cleaned)

    def _merge_usage(self, state: AnthropicAttemptState, usage: Dict[str, Any]):
        """Fold ``message_delta`` usage into what ``message_start`` reported."""
        current = state.usage or UsageInfo()
        if usage.get("input_tokens") is not None:
            current.prompt_tokens = usage["input_tokens"]
        current.completion_tokens = usage.get("output_tokens") or 0
        current.total_tokens = current.prompt_tokens + current.completion_tokens
        if usage.get("cache_creation_input_tokens") is not None:
            current.cache_creation_input_tokens = usage["cache_creation_input_tokens"]
        if usage.get("cache_read_input_tokens") is not None:
            current.cache_read_input_tokens = usage["cache_read_input_tokens"]
        state.usage = current

    def _convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        return [
            {
                "name": tool.function.name,
                "description": tool.function.description or "",
                "input_schema": tool.function.parameters,
            }
            for tool in tools
            if tool.type == "function"
        ]

    def _image_block(self, image: ImageAttachment) -> Optional[Dict[str, Any]]:
        if not image.data.strip():
            return None
        if image.is_remote:
            return {"type": "image", "source": {"type": "url", "url": image.data.strip()}}
        mime_type, payload = image.split_base64()
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": mime_type, "data": payload},
        }

    def _text_and_images(self, msg: Message) -> List[Dict[str, Any]]:
        blocks: List[Dict[str, Any]] = []
        if msg.content:
            blocks.append({"type": "text", "text": msg.content})
        for image in msg.images:
            block = self._image_block(image)
            if block is not None:
                blocks.append(block)
        return blocks

    def _thinking_block(self, msg: Message, request: StreamRequest) -> Optional[Dict[str, Any]]:
        if msg.thinking is None or request.disable_thinking:
            return None
        block: Dict[str, Any] = {"type": "thinking", "thinking": msg.thinking.text}
        if msg.thinking.signature:
            block["signature"] = msg.thinking.signature
        return block

    def _convert_message(self, msg: Message, request: StreamRequest) -> Dict[str, Any]:
        if msg.role == Role.TOOL:
            return {
                "role": "user",
                "content": [{
                    "type": "tool_result",
                    "tool_use_id": msg.tool_call_id,
                    "content": self._text_and_images(msg) if msg.images else msg.content,
                }],
            }

        if msg.role == Role.USER:
            if msg.images:
                return {"role": "user", "content": self._text_and_images(msg)}
            return {"role": "user", "content": msg.content}

        # Assistant: thinking block must come first
        thinking = self._thinking_block(msg, request)
        if not msg.tool_calls and thinking is None:
            return {"role": "assistant", "content": msg.content}

        content: List[Dict[str, Any]] = []
        if thinking is not None:
            content.append(thinking)
        if msg.content:
            content.append({"type": "text", "text": msg.content})
        for call in msg.tool_calls:
            arguments = parse_json_with_fix(call.function.arguments, tool_name=call.function.name, fallback={})
            content.append({
                "type": "tool_use",
                "id": call.id,
                "name": call.function.name,
                "input": arguments.data,
            })
        return {"role": "assistant", "content": content}

    def _convert_messages(self, request: StreamRequest, config: ProviderConfig) -> tuple:
        """
        Returns (system blocks, messages).

        The last system message in the history is used as the system
        prompt unless a custom prompt is configured, in which case the
        built-in prompt moves into a leading user message. The last system
        block and the last real user message carry ``cache_control``.
        """
        cache_control = {"type": "ephemeral", "ttl": config.anthropic_cache_ttl}
        system_texts: Optional[List[str]] = None
        messages: List[Dict[str, Any]] = []

        for msg in request.messages:
            if msg.role == Role.SYSTEM:
                system_texts = [msg.content]
                continue
            if msg.role == Role.TOOL and not msg.tool_call_id:
                continue
            messages.append(self._convert_message(msg, request))

        custom = self.context.resolve_system_prompt(config, request.custom_system_prompt_id)
        builtin = self.context.builtin_system_prompt if request.include_builtin_system_prompt else None

        if custom:
            system_texts = [custom]
            if builtin:
                messages.insert(0, {
                    "role": "user",
                    "content": [{"type": "text", "text": builtin, "cache_control": dict(cache_control)}],
                })
        elif system_texts is None and builtin:
            system_texts = [builtin]

        # Skip the injected built-in prompt when looking for the last user turn
        floor = 1 if custom and builtin else 0
        for i in range(len(messages) - 1, floor - 1, -1):
            if messages[i]["role"] != "user":
                continue
            content = messages[i]["content"]
            if isinstance(content, str):
                messages[i]["content"] = [{"type": "text", "text": content, "cache_control": dict(cache_control)}]
            elif content:
                content[-1]["cache_control"] = dict(cache_control)
            break

        system = None
        if system_texts:
            system = [{"type": "text", "text": text} for text in system_texts]
            system[-1]["cache_control"] = dict(cache_control)

        return system, messages
