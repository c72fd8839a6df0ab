"""Command line entry point: stream one completion to stdout."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
import signal
import sys
import uuid
from typing import Dict, List, Optional

from .adapters import stream_completion
from .core.cancellation import CancellationToken
from .core.config import ClientContext, ProviderConfig, StreamSettings, normalize_idle_timeout
from .core.errors import LLMStreamException, RequestAbortedError
from .core.models import Message, RequestMethod, StreamRequest
from .observability.logging import LogContext, get_logger, setup_logging
from .streaming.events import StreamEventType

logger = get_logger(__name__)

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llmstream",
        description="Stream a completion from the configured provider.",
    )
    parser.add_argument("prompt", help="User prompt")
    parser.add_argument(
        "--method",
        choices=[method.value for method in RequestMethod],
        help="Wire protocol (default: LLMSTREAM_REQUEST_METHOD or chat)",
    )
    parser.add_argument("--model", help="Model name (default: LLMSTREAM_ADVANCED_MODEL)")
    parser.add_argument("--profile", help="Named config profile from LLMSTREAM_PROFILES_FILE")
    parser.add_argument("--system", help="System message prepended to the conversation")
    parser.add_argument("--max-retries", type=int, help="Retry budget per call")
    parser.add_argument("--idle-timeout", type=float, help="Idle timeout in seconds")
    parser.add_argument("--no-thinking", action="store_true", help="Disable reasoning/thinking")
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "WARNING"))
    parser.add_argument("--json", action="store_true", help="Print raw unified events as JSON lines")
    return parser


def _load_profiles() -> Dict[str, ProviderConfig]:
    path = os.getenv("LLMSTREAM_PROFILES_FILE")
    if not path:
        return {}
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    return {name: ProviderConfig.from_dict(values) for name, values in data.items()}


def _build_context(args: argparse.Namespace) -> ClientContext:
    config = ProviderConfig.from_env(request_method=args.method)
    if args.idle_timeout is not None:
        config.stream_idle_timeout_sec = normalize_idle_timeout(args.idle_timeout)

    settings = StreamSettings.from_env()
    if args.max_retries is not None:
        settings.max_retries = args.max_retries

    return ClientContext(
        config=config,
        profiles=_load_profiles(),
        builtin_system_prompt=os.getenv("LLMSTREAM_SYSTEM_PROMPT"),
        settings=settings,
    )


def _print_retry(error: BaseException, attempt: int, delay: float):
    print(f"[retry {attempt}] {error} (next attempt in {delay:.1f}s)", file=sys.stderr, flush=True)


async def run(args: argparse.Namespace, token: Optional[CancellationToken] = None) -> int:
    token = token or CancellationToken()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "Interrupted by user")
    except NotImplementedError:
        logger.debug("Signal handlers unavailable, relying on KeyboardInterrupt")

    messages: List[Message] = []
    if args.system:
        messages.append(Message.system(args.system))
    messages.append(Message.user(args.prompt))

    log_token = LogContext.set_current(LogContext(request_id=uuid.uuid4().hex[:16]))
    try:
        async with _build_context(args) as context:
            request = StreamRequest(
                model=args.model or "",
                messages=messages,
                disable_thinking=args.no_thinking,
                config_profile=args.profile,
                cancel_token=token,
                on_retry=_print_retry,
            )

            async for event in stream_completion(request, context):
                if args.json:
                    print(json.dumps(event.to_dict(), ensure_ascii=False), flush=True)
                elif event.type == StreamEventType.CONTENT_DELTA:
                    sys.stdout.write(event.delta)
                    sys.stdout.flush()
                elif event.type == StreamEventType.TOOL_CALLS:
                    print()
                    for call in event.tool_calls:
                        print(json.dumps(call.to_dict(), ensure_ascii=False))
                elif event.type == StreamEventType.USAGE and event.usage is not None:
                    usage = event.usage
                    print(
                        f"\n[usage] prompt={usage.prompt_tokens} "
                        f"completion={usage.completion_tokens} total={usage.total_tokens}",
                        file=sys.stderr,
                    )
                elif event.type == StreamEventType.DONE:
                    print()
    except RequestAbortedError as e:
        print(f"\n{e}", file=sys.stderr)
        return EXIT_INTERRUPTED
    except LLMStreamException as e:
        print(f"\nError: {e}", file=sys.stderr)
        return EXIT_ERROR
    except Exception as e:
        logger.exception("Stream failed", error_type=type(e).__name__)
        print(f"\nError: {e}", file=sys.stderr)
        return EXIT_ERROR
    finally:
        LogContext.reset(log_token)
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            logger.debug("Signal handlers unavailable")

    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(level=args.log_level, json_output=os.getenv("LOG_FORMAT", "json").lower() == "json")
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return EXIT_INTERRUPTED


if __name__ == "__main__":
    sys.exit(main())
