"""
llmstream - OpenAI Responses Adapter

Streams ``POST {base}/responses`` with ``store: false`` and encrypted
reasoning included, so reasoning items can be replayed statelessly.

Wire shape: typed events. Tool calls open with ``output_item.added``
(keyed by ``call_id``), grow via ``function_call_arguments.delta`` and are
settled by ``function_call_arguments.done`` / ``output_item.done``.
Reasoning is a dedicated output item; usage arrives on
``response.completed``, which also ends the stream.
"""

import copy
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
from ..streaming.sse import SSEFrame

FALLBACK_INSTRUCTIONS = "You are a helpful assistant."

# Events that carry nothing the unified stream needs
_IGNORED_EVENTS = frozenset({
    "response.created",
    "response.in_progress",
    "response.content_part.added",
    "response.content_part.done",
    "response.output_text.done",
    "response.reasoning_summary_part.added",
    "response.reasoning_summary_part.done",
    "response.reasoning_summary_text.done",
})


@dataclass
class ResponsesAttemptState(AttemptState):
    current_call_id: Optional[str] = None
    reasoning_item: Optional[ReasoningBlock] = None
    # output item id -> call_id
    item_calls: Dict[str, str] = field(default_factory=dict)


def ensure_strict_schema(schema: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    """
    Close object schemas (``additionalProperties: false``) at the top level
    and on direct object-typed properties. Drops ``required`` from an
    object with no properties.
    """
    if not schema:
        return {"type": "object", "properties": {}, "additionalProperties": False}

    strict = copy.deepcopy(schema)
    if strict.get("type") != "object":
        return strict

    strict["additionalProperties"] = False
    properties = strict.get("properties") or {}
    for prop in properties.values():
        if not isinstance(prop, dict):
            continue
        prop_type = prop.get("type")
        is_object = prop_type == "object" or (isinstance(prop_type, list) and "object" in prop_type)
        if is_object and "additionalProperties" not in prop:
            prop["additionalProperties"] = False

    if "properties" in strict and not properties and "required" in strict:
        del strict["required"]

    return strict


class OpenAIResponsesAdapter(BaseAdapter):
    """Adapter for the OpenAI Responses streaming API."""

    provider = Provider.OPENAI
    request_method = RequestMethod.RESPONSES

    def build_request(self, request: StreamRequest, config: ProviderConfig) -> PreparedRequest:
        if not config.api_key:
            raise ConfigurationError("OpenAI API key is not configured", param="api_key")

        instructions, items = self._convert_input(request, config)

        body: Dict[str, Any] = {
            "model": self.resolve_model(request, config),
            "instructions": instructions,
            "input": items,
            "parallel_tool_calls": True,
            "store": False,
            "stream": True,
            "include": ["reasoning.encrypted_content"],
        }

        if request.tools:
            body["tools"] = self._convert_tools(request.tools)
            body["tool_choice"] = request.tool_choice or "auto"

        reasoning = self._reasoning_config(request, config)
        if reasoning:
            body["reasoning"] = reasoning

        if request.max_tokens:
            body["max_output_tokens"] = request.max_tokens

        base_headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {config.api_key}",
        }
        if request.prompt_cache_key:
            body["prompt_cache_key"] = request.prompt_cache_key
            base_headers["conversation_id"] = request.prompt_cache_key
            base_headers["session_id"] = request.prompt_cache_key

        return PreparedRequest(
            url=f"{config.effective_base_url}/responses",
            headers=self.merge_headers(base_headers, config, request),
            body=body,
        )

    def new_state(self) -> ResponsesAttemptState:
        return ResponsesAttemptState()

    def is_business_delta(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        event_type = data.get("type")
        if event_type in (
            "response.output_text.delta",
            "response.reasoning_summary_text.delta",
            "response.function_call_arguments.delta",
        ):
            return bool(data.get("delta"))
        if event_type == "response.output_item.added":
            return (data.get("item") or {}).get("type") == "function_call"
        return False

    def handle_frame(self, frame: SSEFrame, state: ResponsesAttemptState) -> Iterable[StreamEvent]:
        event = frame.data
        if not isinstance(event, dict):
            return
        event_type = event.get("type")

        if event_type in _IGNORED_EVENTS:
            return

        if event_type == "response.output_item.added":
            item = event.get("item") or {}
            if item.get("type") == "reasoning":
                yield from self.start_reasoning(state)
            elif item.get("type") == "function_call":
                call_id = item.get("call_id") or item.get("id")
                state.current_call_id = call_id
                if item.get("id"):
                    state.item_calls[item["id"]] = call_id
                state.tool_calls.update_call(call_id, id=call_id, function_name=item.get("name") or "")

        elif event_type == "response.function_call_arguments.delta":
            delta = event.get("delta")
            if delta and state.current_call_id:
                state.tool_calls.update_call(state.current_call_id, arguments_delta=delta)
                yield StreamEvent.tool_call_delta(delta)

        elif event_type == "response.function_call_arguments.done":
            item_id = event.get("item_id")
            call = state.tool_calls.get_call(state.item_calls.get(item_id, item_id))
            if call is not None and event.get("arguments") is not None:
                call.arguments_buffer = event["arguments"]
            state.current_call_id = None

        elif event_type == "response.output_item.done":
            item = event.get("item") or {}
            if item.get("type") == "function_call":
                call = state.tool_calls.get_call(item.get("call_id") or item.get("id"))
                if call is not None:
                    if item.get("name"):
                        call.function_name = item["name"]
                    if item.get("arguments") is not None:
                        call.arguments_buffer = item["arguments"]
                    call.mark_complete()
            elif item.get("type") == "reasoning":
                state.reasoning_item = ReasoningBlock(
                    summary=item.get("summary"),
                    content=item.get("content"),
                    encrypted_content=item.get("encrypted_content"),
                )

        elif event_type == "response.reasoning_summary_text.delta":
            delta = event.get("delta")
            if delta:
                state.reasoning_text += delta
                yield StreamEvent.reasoning_delta(delta)

        elif event_type == "response.output_text.delta":
            delta = event.get("delta")
            if delta:
                yield StreamEvent.content(delta)

        elif event_type == "response.completed":
            usage = (event.get("response") or {}).get("usage")
            if usage:
                state.usage = self._parse_usage(usage)
            state.finished = True

        elif event_type in ("response.failed", "response.cancelled", "error"):
            error = event.get("error") or (event.get("response") or {}).get("error")
            if error:
                message = error.get("message") if isinstance(error, dict) else str(error)
                raise ProviderStreamError(
                    "openai",
                    f"Response failed: {message or 'Unknown error'}",
                    error_type=(error.get("code") or "") if isinstance(error, dict) else "",
                )
            state.finished = True

        else:
            self.log_unknown_event(event_type)

    def build_done(self, state: ResponsesAttemptState) -> StreamEvent:
        return StreamEvent.done(reasoning=state.reasoning_item)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _parse_usage(self, usage: Dict[str, Any]) -> UsageInfo:
        details = usage.get("input_tokens_details") or {}
        return UsageInfo(
            prompt_tokens=usage.get("input_tokens") or 0,
            completion_tokens=usage.get("output_tokens") or 0,
            total_tokens=usage.get("total_tokens") or 0,
            cached_tokens=details.get("cached_tokens"),
        )

    def _reasoning_config(self, request: StreamRequest, config: ProviderConfig) -> Optional[Dict[str, Any]]:
        reasoning = config.responses_reasoning
        if request.disable_thinking or not reasoning or not reasoning.get("enabled"):
            return None
        return {"effort": reasoning.get("effort") or "high", "summary": "auto"}

    def _convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        """Flatten Chat-style tools to the Responses function shape."""
        return [
            {
                "type": "function",
                "name": tool.function.name,
                "description": tool.function.description,
                "strict": False,
                "parameters": ensure_strict_schema(tool.function.parameters),
            }
            for tool in tools
        ]

    def _image_url(self, image: ImageAttachment) -> str:
        return image.to_data_url().strip()

    def _input_content(self, msg: Message) -> List[Dict[str, Any]]:
        parts: List[Dict[str, Any]] = []
        if msg.content:
            parts.append({"type": "input_text", "text": msg.content})
        for image in msg.images:
            parts.append({"type": "input_image", "image_url": self._image_url(image)})
        return parts

    def _convert_input(self, request: StreamRequest, config: ProviderConfig) -> tuple:
        """
        Returns (instructions, input items).

        System messages in the history are dropped: ``instructions`` carries
        the custom prompt if one is configured (with the built-in prompt
        moved into an environment-context user item), else the built-in
        prompt, else a generic fallback.
        """
        items: List[Dict[str, Any]] = []

        for msg in request.messages:
            if msg.role == Role.SYSTEM:
                continue

            if msg.role == Role.USER:
                items.append({"type": "message", "role": "user", "content": self._input_content(msg)})

            elif msg.role == Role.ASSISTANT:
                if msg.reasoning is not None and msg.reasoning.encrypted_content:
                    items.append({
                        "type": "reasoning",
                        "summary": msg.reasoning.summary or [],
                        "encrypted_content": msg.reasoning.encrypted_content,
                    })
                if msg.content or not msg.tool_calls:
                    items.append({
                        "type": "message",
                        "role": "assistant",
                        "content": [{"type": "output_text", "text": msg.content or ""}],
                    })
                for call in msg.tool_calls:
                    items.append({
                        "type": "function_call",
                        "name": call.function.name,
                        "arguments": call.function.arguments,
                        "call_id": call.id,
                    })

            elif msg.role == Role.TOOL and msg.tool_call_id:
                items.append({
                    "type": "function_call_output",
                    "call_id": msg.tool_call_id,
                    "output": self._input_content(msg) if msg.images else msg.content,
                })

        custom = self.context.resolve_system_prompt(config, request.custom_system_prompt_id)
        builtin = self.context.builtin_system_prompt if request.include_builtin_system_prompt else None

        if custom:
            instructions = custom
            if builtin:
                items.insert(0, {
                    "type": "message",
                    "role": "user",
                    "content": [{
                        "type": "input_text",
                        "text": f"<environment_context>{builtin}</environment_context>",
                    }],
                })
        elif builtin:
            instructions = builtin
        else:
            instructions = FALLBACK_INSTRUCTIONS

        return instructions, items
