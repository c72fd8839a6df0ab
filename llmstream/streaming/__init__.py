"""
llmstream - Streaming Module

Provider-independent pieces of the decode loop:
- Unified event model
- Idle-timeout guard and cancellable reader
- SSE frame decoding
- Tool call accumulation
- Incremental JSON repair
"""

from .events import StreamEvent, StreamEventType
from .guard import IdleTimeoutGuard
from .json_repair import JsonParseResult, parse_json_with_fix
from .reader import StreamReader
from .sse import SSEFrame, iter_sse_frames
from .tool_calls import ToolCallAccumulator, ToolCallStreamTracker

__all__ = [
    "StreamEvent",
    "StreamEventType",
    "IdleTimeoutGuard",
    "JsonParseResult",
    "parse_json_with_fix",
    "StreamReader",
    "SSEFrame",
    "iter_sse_frames",
    "ToolCallAccumulator",
    "ToolCallStreamTracker",
]
