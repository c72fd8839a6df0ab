"""
llmstream - CLI Tests
"""

import json

import pytest

from llmstream import cli
from llmstream.core.cancellation import CancellationToken
from llmstream.core.errors import ProviderHTTPError, RequestAbortedError
from llmstream.core.models import FunctionCall, RequestMethod, ToolCall, UsageInfo
from llmstream.streaming.events import StreamEvent


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("LLMSTREAM_REQUEST_METHOD", "LLMSTREAM_PROFILES_FILE", "LLMSTREAM_SYSTEM_PROMPT"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("LLMSTREAM_API_KEY", "cli-key")


def fake_stream(events=(), error=None, captured=None):
    async def stream_completion(request, context, method=None):
        if captured is not None:
            captured.append((request, context))
        for event in events:
            yield event
        if error is not None:
            raise error
    return stream_completion


class TestParser:
    """Tests for build_parser."""

    def test_defaults(self):
        args = cli.build_parser().parse_args(["hello"])

        assert args.prompt == "hello"
        assert args.method is None
        assert args.no_thinking is False
        assert args.json is False

    def test_options(self):
        args = cli.build_parser().parse_args([
            "hello", "--method", "anthropic", "--model", "claude", "--max-retries", "2",
            "--idle-timeout", "30", "--no-thinking", "--json",
        ])

        assert args.method == "anthropic"
        assert args.model == "claude"
        assert args.max_retries == 2
        assert args.idle_timeout == 30.0
        assert args.no_thinking is True
        assert args.json is True

    def test_unknown_method_rejected(self):
        with pytest.raises(SystemExit):
            cli.build_parser().parse_args(["hello", "--method", "grpc"])


class TestRun:
    """Tests for cli.run with a stubbed stream."""

    @pytest.mark.asyncio
    async def test_prints_content_and_usage(self, clean_env, monkeypatch, capsys):
        captured = []
        monkeypatch.setattr(cli, "stream_completion", fake_stream([
            StreamEvent.content("Hello"),
            StreamEvent.content(" world"),
            StreamEvent.usage_report(UsageInfo(prompt_tokens=3, completion_tokens=2, total_tokens=5)),
            StreamEvent.done(),
        ], captured=captured))
        args = cli.build_parser().parse_args(["hi", "--method", "gemini", "--system", "Be terse", "--max-retries", "1"])

        code = await cli.run(args)

        out, err = capsys.readouterr()
        assert code == cli.EXIT_OK
        assert out.startswith("Hello world")
        assert "total=5" in err

        request, context = captured[0]
        assert context.config.request_method == RequestMethod.GEMINI
        assert context.config.api_key == "cli-key"
        assert request.max_retries is None
        assert context.settings.max_retries == 1
        assert [m.content for m in request.messages] == ["Be terse", "hi"]

    @pytest.mark.asyncio
    async def test_json_output(self, clean_env, monkeypatch, capsys):
        call = ToolCall(id="c1", function=FunctionCall(name="ls", arguments="{}"))
        monkeypatch.setattr(cli, "stream_completion", fake_stream([
            StreamEvent.tool_calls_ready([call]),
            StreamEvent.done(),
        ]))
        args = cli.build_parser().parse_args(["hi", "--json"])

        assert await cli.run(args) == cli.EXIT_OK

        lines = capsys.readouterr().out.strip().splitlines()
        assert json.loads(lines[0])["tool_calls"][0]["id"] == "c1"
        assert json.loads(lines[1]) == {"type": "done"}

    @pytest.mark.asyncio
    async def test_provider_error_exit_code(self, clean_env, monkeypatch, capsys):
        error = ProviderHTTPError("openai", 401, "https://x", "m")
        monkeypatch.setattr(cli, "stream_completion", fake_stream(error=error))

        code = await cli.run(cli.build_parser().parse_args(["hi"]))

        assert code == cli.EXIT_ERROR
        assert "401" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_unexpected_error_exit_code(self, clean_env, monkeypatch, capsys):
        monkeypatch.setattr(cli, "stream_completion", fake_stream(
            [StreamEvent.content("part")], error=RuntimeError("decoder exploded"),
        ))

        code = await cli.run(cli.build_parser().parse_args(["hi"]))

        assert code == cli.EXIT_ERROR
        assert "decoder exploded" in capsys.readouterr().err

    @pytest.mark.asyncio
    async def test_abort_exit_code(self, clean_env, monkeypatch):
        monkeypatch.setattr(cli, "stream_completion", fake_stream(error=RequestAbortedError("Interrupted by user")))

        code = await cli.run(cli.build_parser().parse_args(["hi"]), token=CancellationToken())

        assert code == cli.EXIT_INTERRUPTED

    @pytest.mark.asyncio
    async def test_profiles_file(self, clean_env, monkeypatch, tmp_path):
        profiles = tmp_path / "profiles.json"
        profiles.write_text(json.dumps({"fast": {"requestMethod": "anthropic", "apiKey": "p"}}))
        monkeypatch.setenv("LLMSTREAM_PROFILES_FILE", str(profiles))
        captured = []
        monkeypatch.setattr(cli, "stream_completion", fake_stream([StreamEvent.done()], captured=captured))

        await cli.run(cli.build_parser().parse_args(["hi", "--profile", "fast"]))

        request, context = captured[0]
        assert request.config_profile == "fast"
        assert context.resolve_config("fast").request_method == RequestMethod.ANTHROPIC
