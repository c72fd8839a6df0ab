"""
llmstream - Core Data Models

Provider-neutral request and record types shared by all adapters.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional

if TYPE_CHECKING:
    from .cancellation import CancellationToken


# ============================================================
# Enums
# ============================================================

class Provider(str, Enum):
    """Supported AI providers."""
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"


class RequestMethod(str, Enum):
    """Wire protocol used to talk to the configured endpoint."""
    CHAT = "chat"
    RESPONSES = "responses"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"

    @property
    def provider(self) -> Provider:
        if self is RequestMethod.ANTHROPIC:
            return Provider.ANTHROPIC
        if self is RequestMethod.GEMINI:
            return Provider.GOOGLE
        return Provider.OPENAI


class Role(str, Enum):
    """Message roles."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


# ============================================================
# Message parts
# ============================================================

@dataclass
class ImageAttachment:
    """
    Image attached to a message.

    ``data`` may be a data URL, an http(s) URL, or bare base64 content
    (in which case ``mime_type`` names the encoding).
    """
    data: str
    mime_type: str = "image/png"

    @property
    def is_remote(self) -> bool:
        return self.data.startswith("http://") or self.data.startswith("https://")

    def to_data_url(self) -> str:
        if self.data.startswith("data:") or self.is_remote:
            return self.data
        return f"data:{self.mime_type};base64,{self.data}"

    def split_base64(self) -> tuple:
        """Return (mime_type, base64_payload) for inline image formats."""
        if self.data.startswith("data:"):
            header, _, payload = self.data.partition(",")
            mime = header[5:].split(";")[0] or self.mime_type
            return mime, payload
        return self.mime_type, self.data


@dataclass
class FunctionCall:
    """Function name and JSON-encoded arguments."""
    name: str
    arguments: str = "{}"


@dataclass
class ToolCall:
    """A fully assembled tool call."""
    id: str
    function: FunctionCall
    type: str = "function"
    # Gemini only: opaque signature replayed on the next turn
    thought_signature: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "id": self.id,
            "type": self.type,
            "function": {
                "name": self.function.name,
                "arguments": self.function.arguments,
            },
        }
        if self.thought_signature:
            result["thought_signature"] = self.thought_signature
        return result


@dataclass
class ReasoningBlock:
    """
    Provider-specific reasoning record.

    Anthropic fills ``text`` and ``signature``. The Responses API fills
    ``summary``, ``content`` and ``encrypted_content``.
    """
    text: str = ""
    signature: Optional[str] = None
    summary: Optional[List[Dict[str, Any]]] = None
    content: Optional[List[Dict[str, Any]]] = None
    encrypted_content: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.text:
            result["text"] = self.text
        if self.signature:
            result["signature"] = self.signature
        if self.summary is not None:
            result["summary"] = self.summary
        if self.content is not None:
            result["content"] = self.content
        if self.encrypted_content:
            result["encrypted_content"] = self.encrypted_content
        return result


@dataclass
class Message:
    """One entry of the conversation history."""
    role: Role
    content: str = ""
    images: List[ImageAttachment] = field(default_factory=list)
    tool_calls: List[ToolCall] = field(default_factory=list)
    tool_call_id: Optional[str] = None
    name: Optional[str] = None
    # Anthropic thinking block to replay before the assistant content
    thinking: Optional[ReasoningBlock] = None
    # Responses API reasoning item to replay before the assistant content
    reasoning: Optional[ReasoningBlock] = None
    # Chat Completions reasoning text (DeepSeek-style reasoning_content)
    reasoning_content: Optional[str] = None

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str, images: Optional[List[ImageAttachment]] = None) -> "Message":
        return cls(role=Role.USER, content=content, images=list(images or []))

    @classmethod
    def assistant(cls, content: str = "", tool_calls: Optional[List[ToolCall]] = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))

    @classmethod
    def tool(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL, content=content, tool_call_id=tool_call_id)


# ============================================================
# Tools
# ============================================================

@dataclass
class FunctionDefinition:
    """Function definition for tool use."""
    name: str
    description: str = ""
    parameters: Dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})


@dataclass
class Tool:
    """Tool definition."""
    function: FunctionDefinition
    type: str = "function"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "function": {
                "name": self.function.name,
                "description": self.function.description,
                "parameters": self.function.parameters,
            },
        }


# ============================================================
# Usage
# ============================================================

@dataclass
class UsageInfo:
    """Token usage reported by the provider."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: Optional[int] = None
    cache_creation_input_tokens: Optional[int] = None
    cache_read_input_tokens: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }
        if self.cached_tokens is not None:
            result["cached_tokens"] = self.cached_tokens
        if self.cache_creation_input_tokens is not None:
            result["cache_creation_input_tokens"] = self.cache_creation_input_tokens
        if self.cache_read_input_tokens is not None:
            result["cache_read_input_tokens"] = self.cache_read_input_tokens
        return result


# ============================================================
# Request
# ============================================================

RetryObserver = Callable[[BaseException, int, float], None]


@dataclass
class StreamRequest:
    """
    Input to an adapter.

    Treated as immutable: every retry attempt rebuilds the provider
    payload from the same instance.
    """
    model: str
    messages: List[Message]
    tools: List[Tool] = field(default_factory=list)
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    tool_choice: Optional[Any] = None

    # Reasoning/thinking is enabled by config unless disabled here
    disable_thinking: bool = False
    include_builtin_system_prompt: bool = True

    # Per-call overrides, resolved once before the first attempt
    config_profile: Optional[str] = None
    custom_system_prompt_id: Optional[str] = None
    custom_headers: Dict[str, str] = field(default_factory=dict)
    prompt_cache_key: Optional[str] = None

    # Retry and cancellation
    cancel_token: Optional["CancellationToken"] = None
    # None falls back to the context's StreamSettings
    max_retries: Optional[int] = None
    base_delay: Optional[float] = None
    on_retry: Optional[RetryObserver] = None
