"""
llmstream - Google Gemini Adapter

Streams ``POST {base}/models/{model}:streamGenerateContent?alt=sse``.

Wire shape: each frame carries ``candidates[0].content.parts[]``. Parts
flagged ``thought: true`` are reasoning; ``functionCall`` parts arrive
whole, with no index, so calls get synthetic sequential ids. Gemini only
attaches a ``thoughtSignature`` to the first call of a turn; later calls
reuse it. ``usageMetadata`` may ride on any frame.
"""

import json
from dataclasses import dataclass
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
from ..streaming.tool_calls import compact_json


@dataclass
class GeminiAttemptState(AttemptState):
    call_index: int = 0
    shared_signature: Optional[str] = None


class GeminiAdapter(BaseAdapter):
    """Adapter for Google Gemini models."""

    provider = Provider.GOOGLE
    request_method = RequestMethod.GEMINI

    def build_request(self, request: StreamRequest, config: ProviderConfig) -> PreparedRequest:
        if not config.api_key:
            raise ConfigurationError("Gemini API key is not configured", param="api_key")

        system, contents = self._convert_messages(request, config)

        body: Dict[str, Any] = {"contents": contents}
        if system:
            body["systemInstruction"] = {"parts": [{"text": text} for text in system]}

        generation_config: Dict[str, Any] = {}
        if request.temperature is not None:
            generation_config["temperature"] = request.temperature
        if request.max_tokens:
            generation_config["maxOutputTokens"] = request.max_tokens
        thinking = config.gemini_thinking
        if thinking and thinking.get("enabled") and not request.disable_thinking:
            generation_config["thinkingConfig"] = {"thinkingBudget": thinking.get("budget")}
        if generation_config:
            body["generationConfig"] = generation_config

        if request.tools:
            body["tools"] = self._convert_tools(request.tools)

        model = self.resolve_model(request, config)
        model_path = model if model.startswith("models/") else f"models/{model}"

        headers = self.merge_headers(
            {
                "Content-Type": "application/json",
                "Authorization": f"Bearer {config.api_key}",
                "x-goog-api-key": config.api_key,
            },
            config,
            request,
        )

        return PreparedRequest(
            url=f"{config.effective_base_url}/{model_path}:streamGenerateContent?alt=sse",
            headers=headers,
            body=body,
        )

    def new_state(self) -> GeminiAttemptState:
        return GeminiAttemptState()

    def is_business_delta(self, data: Any) -> bool:
        if not isinstance(data, dict):
            return False
        for candidate in data.get("candidates") or []:
            for part in (candidate.get("content") or {}).get("parts") or []:
                if part.get("text") or part.get("functionCall"):
                    return True
        return False

    def handle_frame(self, frame: SSEFrame, state: GeminiAttemptState) -> Iterable[StreamEvent]:
        chunk = frame.data
        if not isinstance(chunk, dict):
            return

        error = chunk.get("error")
        if error:
            message = error.get("message") if isinstance(error, dict) else str(error)
            raise ProviderStreamError(
                "google",
                message or "Unknown error",
                error_type=str(error.get("status") or "") if isinstance(error, dict) else "",
            )

        candidates = chunk.get("candidates") or []
        if candidates:
            parts = (candidates[0].get("content") or {}).get("parts") or []
            for part in parts:
                yield from self._handle_part(part, state)

        metadata = chunk.get("usageMetadata")
        if metadata:
            state.usage = UsageInfo(
                prompt_tokens=metadata.get("promptTokenCount") or 0,
                completion_tokens=metadata.get("candidatesTokenCount") or 0,
                total_tokens=metadata.get("totalTokenCount") or 0,
                cached_tokens=metadata.get("cachedContentTokenCount"),
            )

    def finalize(self, state: GeminiAttemptState) -> Iterable[StreamEvent]:
        # Gemini reports zeroed usage on some intermediate frames
        if state.usage is not None and state.usage.total_tokens <= 0:
            state.usage = None
        yield from super().finalize(state)

    def build_done(self, state: GeminiAttemptState) -> StreamEvent:
        thinking = ReasoningBlock(text=state.reasoning_text) if state.reasoning_text else None
        return StreamEvent.done(thinking=thinking)

    # ============================================================
    # Private helper methods
    # ============================================================

    def _handle_part(self, part: Dict[str, Any], state: GeminiAttemptState) -> Iterable[StreamEvent]:
        text = part.get("text")
        if part.get("thought") is True and text:
            yield from self.start_reasoning(state)
            state.reasoning_text += text
            yield StreamEvent.reasoning_delta(text)
        elif text:
            yield StreamEvent.content(text)

        function_call = part.get("functionCall")
        if function_call:
            call_id = f"call_{state.call_index}"
            state.call_index += 1
            name = function_call.get("name") or ""
            args = function_call.get("args") or {}

            call = state.tool_calls.update_call(
                call_id,
                id=call_id,
                function_name=name,
                arguments_delta=compact_json(args),
            )
            call.mark_complete()

            signature = part.get("thoughtSignature") or part.get("thought_signature")
            if signature:
                if state.shared_signature is None:
                    state.shared_signature = signature
                call.thought_signature = signature
            elif state.shared_signature:
                call.thought_signature = state.shared_signature

            yield StreamEvent.tool_call_delta(name + json.dumps(args, ensure_ascii=False))

    def _convert_tools(self, tools: List[Tool]) -> List[Dict[str, Any]]:
        declarations = []
        for tool in tools:
            if tool.type != "function":
                continue
            params = tool.function.parameters or {}
            declarations.append({
                "name": tool.function.name,
                "description": tool.function.description or "",
                "parametersJsonSchema": {
                    "type": "object",
                    "properties": params.get("properties") or {},
                    "required": params.get("required") or [],
                },
            })
        return [{"functionDeclarations": declarations}]

    def _image_part(self, image: ImageAttachment) -> Optional[Dict[str, Any]]:
        data = image.data.strip()
        if not data:
            return None
        if image.is_remote:
            return {"fileData": {"mimeType": image.mime_type, "fileUri": data}}
        mime_type, payload = image.split_base64()
        return {"inlineData": {"mimeType": mime_type, "data": payload}}

    def _tool_response(self, content: str) -> Dict[str, Any]:
        """Tool output as the object Gemini requires; double-encoded JSON is unwrapped once."""
        if not content:
            return {}
        first = parse_json_with_fix(content, tool_name="Gemini tool response", log_warning=False, log_error=False)
        if first.success and isinstance(first.data, str):
            content = first.data
        final = parse_json_with_fix(content, tool_name="Gemini tool response", log_warning=False, log_error=False)
        if not final.success:
            return {"content": content}
        if isinstance(final.data, dict):
            return final.data
        return {"content": final.data}

    def _convert_messages(self, request: StreamRequest, config: ProviderConfig) -> tuple:
        """
        Returns (system instruction texts, contents).

        Consecutive tool messages are merged into one user turn of
        ``functionResponse`` parts, named via the preceding assistant calls.
        """
        system: Optional[List[str]] = None
        contents: List[Dict[str, Any]] = []
        call_names: Dict[str, str] = {}
        messages = request.messages
        i = 0

        while i < len(messages):
            msg = messages[i]

            if msg.role == Role.SYSTEM:
                system = [msg.content]
                i += 1
                continue

            if msg.role == Role.TOOL:
                parts: List[Dict[str, Any]] = []
                while i < len(messages) and messages[i].role == Role.TOOL:
                    tool_msg = messages[i]
                    parts.append({
                        "functionResponse": {
                            "name": call_names.get(tool_msg.tool_call_id or "", "unknown_function"),
                            "response": self._tool_response(tool_msg.content),
                        }
                    })
                    for image in tool_msg.images:
                        image_part = self._image_part(image)
                        if image_part is not None:
                            parts.append(image_part)
                    i += 1
                contents.append({"role": "user", "parts": parts})
                continue

            contents.append(self._convert_message(msg, call_names))
            i += 1

        custom = self.context.resolve_system_prompt(config, request.custom_system_prompt_id)
        builtin = self.context.builtin_system_prompt if request.include_builtin_system_prompt else None

        if custom:
            system = [custom]
            if builtin:
                contents.insert(0, {"role": "user", "parts": [{"text": builtin}]})
        elif system is None and builtin:
            system = [builtin]

        return system, contents

    def _convert_message(self, msg: Message, call_names: Dict[str, str]) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []

        if msg.role == Role.ASSISTANT:
            if msg.tool_calls and msg.thinking is not None:
                parts.append({"thought": True, "text": msg.thinking.text})
            if msg.content:
                parts.append({"text": msg.content})
            for call in msg.tool_calls:
                call_names[call.id] = call.function.name
                args = parse_json_with_fix(
                    call.function.arguments,
                    tool_name=f"Gemini function call: {call.function.name}",
                    fallback={},
                )
                function_part: Dict[str, Any] = {
                    "functionCall": {"name": call.function.name, "args": args.data}
                }
                if call.thought_signature:
                    function_part["thoughtSignature"] = call.thought_signature
                parts.append(function_part)
            return {"role": "model", "parts": parts}

        if msg.content:
            parts.append({"text": msg.content})
        for image in msg.images:
            image_part = self._image_part(image)
            if image_part is not None:
                parts.append(image_part)
        return {"role": "user", "parts": parts}
