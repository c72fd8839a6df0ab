"""
llmstream - Unified Stream Events

The only contract the rest of an application sees, whatever the provider.

Ordering within one successful attempt:
- deltas in wire order
- at most one ``tool-calls`` and at most one ``usage``, both before ``done``
- ``done`` exactly once, last
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from ..core.models import ReasoningBlock, ToolCall, UsageInfo


class StreamEventType(str, Enum):
    """Closed set of unified event kinds."""
    CONTENT_DELTA = "content-delta"
    REASONING_STARTED = "reasoning-started"
    REASONING_DELTA = "reasoning-delta"
    TOOL_CALL_DELTA = "tool-call-delta"
    TOOL_CALLS = "tool-calls"
    USAGE = "usage"
    DONE = "done"


@dataclass
class StreamEvent:
    """
    One unified event.

    Only the fields relevant to ``type`` are set:
    - content-delta / reasoning-delta / tool-call-delta: ``delta``
    - tool-calls: ``tool_calls``
    - usage: ``usage``
    - done: optional ``reasoning_content`` (Chat), ``thinking``
      (Anthropic, Gemini), ``reasoning`` (Responses)
    """
    type: StreamEventType
    delta: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    usage: Optional[UsageInfo] = None
    reasoning_content: Optional[str] = None
    thinking: Optional[ReasoningBlock] = None
    reasoning: Optional[ReasoningBlock] = None

    @classmethod
    def content(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.CONTENT_DELTA, delta=text)

    @classmethod
    def reasoning_started(cls) -> "StreamEvent":
        return cls(type=StreamEventType.REASONING_STARTED)

    @classmethod
    def reasoning_delta(cls, text: str) -> "StreamEvent":
        return cls(type=StreamEventType.REASONING_DELTA, delta=text)

    @classmethod
    def tool_call_delta(cls, fragment: str) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_CALL_DELTA, delta=fragment)

    @classmethod
    def tool_calls_ready(cls, calls: List[ToolCall]) -> "StreamEvent":
        return cls(type=StreamEventType.TOOL_CALLS, tool_calls=list(calls))

    @classmethod
    def usage_report(cls, usage: UsageInfo) -> "StreamEvent":
        return cls(type=StreamEventType.USAGE, usage=usage)

    @classmethod
    def done(cls, **kwargs) -> "StreamEvent":
        return cls(type=StreamEventType.DONE, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"type": self.type.value}
        if self.type in (
            StreamEventType.CONTENT_DELTA,
            StreamEventType.REASONING_DELTA,
            StreamEventType.TOOL_CALL_DELTA,
        ):
            result["delta"] = self.delta
        if self.type == StreamEventType.TOOL_CALLS:
            result["tool_calls"] = [call.to_dict() for call in self.tool_calls]
        if self.usage is not None:
            result["usage"] = self.usage.to_dict()
        if self.reasoning_content:
            result["reasoning_content"] = self.reasoning_content
        if self.thinking is not None:
            result["thinking"] = self.thinking.to_dict()
        if self.reasoning is not None:
            result["reasoning"] = self.reasoning.to_dict()
        return result
