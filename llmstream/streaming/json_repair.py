"""
llmstream - Incremental JSON Repair

Tolerant parser for JSON produced by streaming providers, where SSE frames
and assembled tool-call arguments are sometimes truncated or slightly
malformed.

Repairs are applied once, in order, each only when its trigger matches:
1. Drop a stray `": "..."` fragment glued after a complete key/value pair
2. Drop trailing commas before `}` or `]`
3. Quote bare object keys
4. Append missing closing braces/brackets (simple tally)
5. Strip excess closing braces/brackets from the tail

One re-parse follows. There is never a second repair pass.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional

from ..observability.logging import get_logger

logger = get_logger(__name__)


_MALFORMED_PAIR = re.compile(r'("[\w]+"\s*:\s*[^,}\]]+)\s*":\s*"[^"]*"')
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")
_BARE_KEY_TRIGGER = re.compile(r"{\s*\w+\s*:")
_BARE_KEY_AFTER_BRACE = re.compile(r"{\s*(\w+)\s*:")
_BARE_KEY_AFTER_COMMA = re.compile(r",\s*(\w+)\s*:")
_LAST_CLOSE_BRACE = re.compile(r"}([^}]*)$")
_LAST_CLOSE_BRACKET = re.compile(r"\]([^\]]*)$")


@dataclass
class JsonParseResult:
    """Outcome of parse_json_with_fix."""
    success: bool
    data: Any = None
    error: Optional[Exception] = None
    was_fixed: bool = False
    original_json: Optional[str] = None
    fixed_json: Optional[str] = None


def _repair(text: str) -> tuple:
    """Apply the single repair pass. Returns (fixed_text, was_fixed)."""
    fixed = text
    was_fixed = False

    if _MALFORMED_PAIR.search(fixed):
        fixed = _MALFORMED_PAIR.sub(r"\1", fixed)
        was_fixed = True

    if _TRAILING_COMMA.search(fixed):
        fixed = _TRAILING_COMMA.sub(r"\1", fixed)
        was_fixed = True

    if _BARE_KEY_TRIGGER.search(fixed):
        fixed = _BARE_KEY_AFTER_BRACE.sub(r'{"\1":', fixed)
        fixed = _BARE_KEY_AFTER_COMMA.sub(r',"\1":', fixed)
        was_fixed = True

    open_braces = fixed.count("{")
    close_braces = fixed.count("}")
    open_brackets = fixed.count("[")
    close_brackets = fixed.count("]")

    if open_braces > close_braces:
        fixed += "}" * (open_braces - close_braces)
        was_fixed = True
    if open_brackets > close_brackets:
        fixed += "]" * (open_brackets - close_brackets)
        was_fixed = True

    if close_braces > open_braces:
        for _ in range(close_braces - open_braces):
            fixed = _LAST_CLOSE_BRACE.sub(r"\1", fixed, count=1)
        was_fixed = True
    if close_brackets > open_brackets:
        for _ in range(close_brackets - open_brackets):
            fixed = _LAST_CLOSE_BRACKET.sub(r"\1", fixed, count=1)
        was_fixed = True

    return fixed, was_fixed


def parse_json_with_fix(
    text: str,
    tool_name: str = "unknown",
    fallback: Any = None,
    log_warning: bool = True,
    log_error: bool = True,
) -> JsonParseResult:
    """
    Parse ``text`` as JSON, repairing common streaming damage if needed.

    Never raises. On failure ``data`` is ``fallback`` (which may be None).

    Args:
        text: Candidate JSON text
        tool_name: Label used in log lines
        fallback: Value returned in ``data`` when parsing fails
        log_warning: Log a warning when a repair was needed and succeeded
        log_error: Log an error when the repaired text still fails
    """
    try:
        return JsonParseResult(success=True, data=json.loads(text))
    except (ValueError, TypeError):
        pass

    if not isinstance(text, str):
        return JsonParseResult(
            success=False,
            data=fallback,
            error=TypeError(f"expected str, got {type(text).__name__}"),
        )

    fixed, was_fixed = _repair(text)

    try:
        data = json.loads(fixed)
    except ValueError as e:
        if log_error:
            logger.error(
                "Failed to parse JSON",
                tool_name=tool_name,
                original_json=text,
                fixed_json=fixed if was_fixed else None,
                parse_error=str(e),
            )
        return JsonParseResult(
            success=False,
            data=fallback,
            error=e,
            was_fixed=was_fixed,
            original_json=text,
            fixed_json=fixed if was_fixed else None,
        )

    if was_fixed and log_warning:
        logger.warning("Fixed malformed JSON", tool_name=tool_name)

    return JsonParseResult(
        success=True,
        data=data,
        was_fixed=was_fixed,
        original_json=text,
        fixed_json=fixed,
    )
