"""
llmstream - Configuration

Resolved provider configuration and the per-process client context.

Nothing here reads persisted profile files: callers hand in already
resolved values, either directly, from a dict, or from the environment.
"""

import hashlib
import os
import uuid
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Optional

import httpx

from .errors import ConfigurationError
from .models import RequestMethod
from ..observability.logging import get_logger

logger = get_logger(__name__)


DEFAULT_IDLE_TIMEOUT_SEC = 180
DEFAULT_MAX_RETRIES = 5
DEFAULT_BASE_DELAY = 1.0

DEFAULT_BASE_URLS = {
    RequestMethod.CHAT: "https://api.openai.com/v1",
    RequestMethod.RESPONSES: "https://api.openai.com/v1",
    RequestMethod.ANTHROPIC: "https://api.anthropic.com/v1",
    RequestMethod.GEMINI: "https://generativelanguage.googleapis.com/v1beta",
}


def _is_truthy(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


def normalize_idle_timeout(value: Any) -> int:
    """Coerce a configured idle timeout to a positive whole number of seconds."""
    try:
        seconds = int(float(value))
    except (TypeError, ValueError):
        return DEFAULT_IDLE_TIMEOUT_SEC
    return seconds if seconds > 0 else DEFAULT_IDLE_TIMEOUT_SEC


# ============================================================
# Stream settings
# ============================================================

@dataclass
class StreamSettings:
    """Process-wide defaults for streaming calls."""
    idle_timeout_sec: int = DEFAULT_IDLE_TIMEOUT_SEC
    max_retries: int = DEFAULT_MAX_RETRIES
    base_delay: float = DEFAULT_BASE_DELAY

    @classmethod
    def from_env(cls) -> "StreamSettings":
        """
        Read settings from environment.

        LLMSTREAM_IDLE_TIMEOUT_SEC, LLMSTREAM_MAX_RETRIES, LLMSTREAM_BASE_DELAY
        """
        return cls(
            idle_timeout_sec=normalize_idle_timeout(
                os.getenv("LLMSTREAM_IDLE_TIMEOUT_SEC", DEFAULT_IDLE_TIMEOUT_SEC)
            ),
            max_retries=int(os.getenv("LLMSTREAM_MAX_RETRIES", DEFAULT_MAX_RETRIES)),
            base_delay=float(os.getenv("LLMSTREAM_BASE_DELAY", DEFAULT_BASE_DELAY)),
        )


# ============================================================
# Provider configuration
# ============================================================

@dataclass
class ProviderConfig:
    """Credentials, endpoint and generation knobs for one profile."""
    request_method: RequestMethod = RequestMethod.CHAT
    base_url: str = ""
    api_key: str = ""
    advanced_model: str = ""
    basic_model: str = ""
    max_tokens: int = 4096
    # None falls back to the context's StreamSettings
    stream_idle_timeout_sec: Optional[int] = None
    custom_headers: Dict[str, str] = field(default_factory=dict)
    system_prompt_id: Optional[str] = None

    # Anthropic
    anthropic_beta: bool = False
    anthropic_cache_ttl: str = "5m"
    thinking: Optional[Dict[str, Any]] = None

    # Gemini: {"enabled": bool, "budget": int}
    gemini_thinking: Optional[Dict[str, Any]] = None

    # Responses: {"enabled": bool, "effort": "low" | "medium" | "high"}
    responses_reasoning: Optional[Dict[str, Any]] = None

    def __post_init__(self):
        if not isinstance(self.request_method, RequestMethod):
            try:
                self.request_method = RequestMethod(str(self.request_method).lower())
            except ValueError:
                raise ConfigurationError(
                    f"Unknown request method: {self.request_method}",
                    param="request_method",
                )
        if self.stream_idle_timeout_sec is not None:
            self.stream_idle_timeout_sec = normalize_idle_timeout(self.stream_idle_timeout_sec)
        if self.anthropic_cache_ttl not in ("5m", "1h"):
            self.anthropic_cache_ttl = "5m"

    @property
    def effective_base_url(self) -> str:
        return (self.base_url or DEFAULT_BASE_URLS[self.request_method]).rstrip("/")

    # camelCase keys as written by the profile editor
    _ALIASES = {
        "requestMethod": "request_method",
        "baseUrl": "base_url",
        "apiKey": "api_key",
        "advancedModel": "advanced_model",
        "basicModel": "basic_model",
        "maxTokens": "max_tokens",
        "streamIdleTimeoutSec": "stream_idle_timeout_sec",
        "customHeaders": "custom_headers",
        "systemPromptId": "system_prompt_id",
        "anthropicBeta": "anthropic_beta",
        "anthropicCacheTTL": "anthropic_cache_ttl",
        "geminiThinking": "gemini_thinking",
        "responsesReasoning": "responses_reasoning",
    }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        """Build from a profile dict; accepts camelCase or snake_case keys."""
        known = {f.name for f in fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in data.items():
            name = cls._ALIASES.get(key, key)
            if name in known and value is not None:
                kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_env(cls, request_method: Optional[str] = None) -> "ProviderConfig":
        """
        Build from LLMSTREAM_* environment variables.

        The API key falls back to the provider's conventional variable
        (OPENAI_API_KEY, ANTHROPIC_API_KEY, GEMINI_API_KEY).
        """
        method = RequestMethod((request_method or os.getenv("LLMSTREAM_REQUEST_METHOD", "chat")).lower())
        fallback_key = {
            RequestMethod.CHAT: "OPENAI_API_KEY",
            RequestMethod.RESPONSES: "OPENAI_API_KEY",
            RequestMethod.ANTHROPIC: "ANTHROPIC_API_KEY",
            RequestMethod.GEMINI: "GEMINI_API_KEY",
        }[method]

        config = cls(
            request_method=method,
            base_url=os.getenv("LLMSTREAM_BASE_URL", ""),
            api_key=os.getenv("LLMSTREAM_API_KEY") or os.getenv(fallback_key, ""),
            advanced_model=os.getenv("LLMSTREAM_ADVANCED_MODEL", ""),
            basic_model=os.getenv("LLMSTREAM_BASIC_MODEL", ""),
            max_tokens=int(os.getenv("LLMSTREAM_MAX_TOKENS", "4096")),
            stream_idle_timeout_sec=os.getenv("LLMSTREAM_IDLE_TIMEOUT_SEC"),
            anthropic_beta=_is_truthy(os.getenv("LLMSTREAM_ANTHROPIC_BETA")),
            anthropic_cache_ttl=os.getenv("LLMSTREAM_ANTHROPIC_CACHE_TTL", "5m"),
        )

        budget = os.getenv("LLMSTREAM_THINKING_BUDGET")
        if budget:
            if method == RequestMethod.ANTHROPIC:
                config.thinking = {"type": "enabled", "budget_tokens": int(budget)}
            elif method == RequestMethod.GEMINI:
                config.gemini_thinking = {"enabled": True, "budget": int(budget)}

        effort = os.getenv("LLMSTREAM_REASONING_EFFORT")
        if effort and method == RequestMethod.RESPONSES:
            config.responses_reasoning = {"enabled": True, "effort": effort}

        return config


# ============================================================
# Client context
# ============================================================

def _generate_user_id() -> str:
    return "user_" + hashlib.sha256(uuid.uuid4().bytes).hexdigest()


class ClientContext:
    """
    Explicit per-process state handed to every adapter invocation.

    Holds the main config, named profiles, custom system prompts, a
    persistent user id and the shared HTTP client. Create one at startup.
    """

    def __init__(
        self,
        config: ProviderConfig,
        profiles: Optional[Dict[str, ProviderConfig]] = None,
        system_prompts: Optional[Dict[str, str]] = None,
        builtin_system_prompt: Optional[str] = None,
        settings: Optional[StreamSettings] = None,
        user_id: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config
        self.profiles = dict(profiles or {})
        self.system_prompts = dict(system_prompts or {})
        self.builtin_system_prompt = builtin_system_prompt
        self.settings = settings or StreamSettings()
        self.user_id = user_id or _generate_user_id()
        self._http_client = http_client
        self._owns_client = http_client is None

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            # Read timeout stays open: idle detection is the guard's job
            self._http_client = httpx.AsyncClient(
                timeout=httpx.Timeout(connect=30.0, read=None, write=60.0, pool=30.0)
            )
        return self._http_client

    def resolve_config(self, profile: Optional[str] = None) -> ProviderConfig:
        """Return the named profile, falling back to the main config."""
        if not profile:
            return self.config
        config = self.profiles.get(profile)
        if config is None:
            logger.warning(
                "Config profile not found, using main config",
                profile=profile,
            )
            return self.config
        return config

    def idle_timeout_for(self, config: ProviderConfig) -> int:
        """Profile idle timeout, or the process-wide default when unset."""
        if config.stream_idle_timeout_sec is not None:
            return config.stream_idle_timeout_sec
        return self.settings.idle_timeout_sec

    def resolve_system_prompt(
        self,
        config: ProviderConfig,
        custom_system_prompt_id: Optional[str] = None,
    ) -> Optional[str]:
        """Custom system prompt selected by explicit id, then by config."""
        prompt_id = custom_system_prompt_id or config.system_prompt_id
        if not prompt_id:
            return None
        prompt = self.system_prompts.get(prompt_id)
        if prompt is None:
            logger.warning("Custom system prompt not found", system_prompt_id=prompt_id)
        return prompt

    async def aclose(self):
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
        self._http_client = None

    async def __aenter__(self) -> "ClientContext":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
