"""
llmstream - Tool Call Accumulation

Tool calls are streamed in pieces:
1. An opening fragment with the call id and/or function name
2. Argument fragments (partial JSON strings)
3. A provider-specific terminating signal (finish_reason, block stop,
   output_item.done) or plain end of stream

Each provider keys calls differently (array index, call id, content
block index), so the tracker accepts any hashable key and keeps the
order in which keys were first seen.
"""

import json
import uuid
from dataclasses import dataclass
from typing import Dict, Hashable, List, Optional

from .json_repair import parse_json_with_fix
from ..core.models import FunctionCall, ToolCall
from ..observability.logging import get_logger

logger = get_logger(__name__)


def compact_json(data) -> str:
    return json.dumps(data, separators=(",", ":"), ensure_ascii=False)


@dataclass
class ToolCallAccumulator:
    """Accumulates streaming tool call data for one key."""
    key: Hashable
    id: Optional[str] = None
    function_name: Optional[str] = None
    arguments_buffer: str = ""
    is_complete: bool = False
    thought_signature: Optional[str] = None

    def update(
        self,
        id: Optional[str] = None,
        function_name: Optional[str] = None,
        arguments_delta: str = "",
    ):
        if id:
            self.id = id
        if function_name:
            self.function_name = function_name
        if arguments_delta:
            self.arguments_buffer += arguments_delta

    def mark_complete(self):
        self.is_complete = True

    def finalize(self) -> ToolCall:
        """
        Build the final ToolCall, repairing the argument JSON.

        Completed calls get logged repair; interrupted ones are expected
        to be malformed, so their repair stays quiet unless it fails.
        Unrecoverable arguments become ``{}``.
        """
        raw = self.arguments_buffer.strip() or "{}"
        label = self.function_name or "unknown"

        if self.is_complete:
            result = parse_json_with_fix(raw, tool_name=label, fallback={}, log_warning=True, log_error=True)
        else:
            result = parse_json_with_fix(raw, tool_name=label, fallback={}, log_warning=False, log_error=False)
            if not result.success:
                logger.warning(
                    "Incomplete tool call JSON, using empty arguments",
                    tool_name=label,
                    arguments_preview=raw[:200],
                )

        return ToolCall(
            id=self.id or f"call_{uuid.uuid4().hex[:24]}",
            function=FunctionCall(name=self.function_name or "", arguments=compact_json(result.data)),
            thought_signature=self.thought_signature,
        )


class ToolCallStreamTracker:
    """Tracks every tool call of one attempt. Discarded when the attempt ends."""

    def __init__(self):
        self._calls: Dict[Hashable, ToolCallAccumulator] = {}

    def get_or_create(self, key: Hashable) -> ToolCallAccumulator:
        if key not in self._calls:
            self._calls[key] = ToolCallAccumulator(key=key)
        return self._calls[key]

    def update_call(
        self,
        key: Hashable,
        id: Optional[str] = None,
        function_name: Optional[str] = None,
        arguments_delta: str = "",
    ) -> ToolCallAccumulator:
        call = self.get_or_create(key)
        call.update(id=id, function_name=function_name, arguments_delta=arguments_delta)
        return call

    def get_call(self, key: Hashable) -> Optional[ToolCallAccumulator]:
        return self._calls.get(key)

    def mark_complete(self, key: Hashable):
        call = self._calls.get(key)
        if call is not None:
            call.mark_complete()

    def mark_all_complete(self):
        for call in self._calls.values():
            call.mark_complete()

    def get_all_calls(self) -> List[ToolCallAccumulator]:
        return list(self._calls.values())

    def has_calls(self) -> bool:
        return len(self._calls) > 0

    def finalize(self) -> List[ToolCall]:
        return [call.finalize() for call in self.get_all_calls()]
