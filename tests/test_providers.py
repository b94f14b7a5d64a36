"""
Provider Tests
==============

Model routing, SDK/CLI message conversion, environment building and the
gateway's cancellation and result-termination behaviour.
"""

import asyncio
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.exceptions import (
    AgentExecutionError,
    MaxTurnsReached,
    ProviderTransportError,
    StructuredOutputExhausted,
)
from automode.providers import (
    ERROR_DURING_EXECUTION,
    ERROR_MAX_STRUCTURED_OUTPUT_RETRIES,
    ERROR_MAX_TURNS,
    AssistantText,
    BaseProvider,
    ExecuteOptions,
    ProviderConfig,
    ProviderGateway,
    ResultError,
    ResultSuccess,
    Thinking,
    ToolUse,
    build_query_options,
    require_complete,
    resolve_model,
    simple_query,
)
from automode.providers.ccr import CCRStatus, is_running_output, strip_ansi
from automode.providers.claude_provider import build_env, convert_message
from automode.providers.codex_provider import CodexEventParser


# =============================================================================
# Fakes
# =============================================================================

class ScriptedProvider(BaseProvider):
    """Yields a fixed list of events and records whether it was closed."""

    def __init__(self, events, provider_name="claude", on_yield=None):
        self.events = list(events)
        self.provider_name = provider_name
        self.on_yield = on_yield
        self.closed = False
        self.models_seen: list[str] = []

    @property
    def name(self) -> str:
        return self.provider_name

    async def execute_query(self, options):
        self.models_seen.append(options.model)
        try:
            for event in self.events:
                yield event
                if self.on_yield is not None:
                    self.on_yield(event)
        finally:
            self.closed = True


class FailingProvider(BaseProvider):
    @property
    def name(self) -> str:
        return "claude"

    async def execute_query(self, options):
        yield AssistantText(text="partial")
        raise ProviderTransportError("claude", "connection reset")


def options(**kwargs) -> ExecuteOptions:
    kwargs.setdefault("prompt", "do it")
    kwargs.setdefault("model", "sonnet")
    kwargs.setdefault("cwd", "/tmp")
    return ExecuteOptions(**kwargs)


# SDK message stand-ins; conversion dispatches on the class name
@dataclass
class TextBlock:
    text: str


@dataclass
class ThinkingBlock:
    thinking: str


@dataclass
class ToolUseBlock:
    id: str
    name: str
    input: dict = field(default_factory=dict)


@dataclass
class AssistantMessage:
    content: list


@dataclass
class ResultMessage:
    subtype: str = "success"
    result: str | None = None
    is_error: bool = False
    num_turns: int | None = None
    structured_output: Any = None


class FakeRouter:
    def __init__(self, status: CCRStatus, env: dict | None):
        self.status = status
        self.env = env

    async def get_status(self):
        return self.status

    def env_from_status(self, status):
        return self.env


# =============================================================================
# Model routing
# =============================================================================

class TestResolveModel:
    @pytest.mark.parametrize("model,expected", [
        ("codex-gpt-5", ("codex", "gpt-5")),
        ("gpt-5-codex", ("codex", "gpt-5-codex")),
        ("haiku", ("claude", "claude-haiku-4-5-20251001")),
        ("opus", ("claude", "claude-opus-4-5-20251101")),
        ("claude-sonnet-4-20250514", ("claude", "claude-sonnet-4-20250514")),
        ("some-local-model", ("claude", "some-local-model")),
    ])
    def test_routing(self, model, expected):
        assert resolve_model(model) == expected

    def test_none_uses_default(self):
        provider, model = resolve_model(None)

        assert provider == "claude"
        assert model.startswith("claude-")

    def test_unregistered_provider(self):
        gateway = ProviderGateway(providers={"claude": ScriptedProvider([])})

        with pytest.raises(ValueError) as exc_info:
            gateway.resolve("codex-gpt-5")

        assert "codex" in str(exc_info.value)


# =============================================================================
# Claude SDK conversion and environment
# =============================================================================

class TestConvertMessage:
    def test_assistant_blocks(self):
        msg = AssistantMessage(content=[
            TextBlock("hello"),
            ThinkingBlock("hmm"),
            ToolUseBlock(id="t1", name="Read", input={"file_path": "a.py"}),
            TextBlock(""),
        ])

        events = convert_message(msg)

        assert events == [
            AssistantText(text="hello"),
            Thinking(text="hmm"),
            ToolUse(name="Read", input={"file_path": "a.py"}, tool_use_id="t1"),
        ]

    def test_success_result(self):
        events = convert_message(ResultMessage(result="done", num_turns=3, structured_output={"a": 1}))

        assert events == [ResultSuccess(result="done", structured_output={"a": 1}, num_turns=3)]

    def test_max_turns_result(self):
        [event] = convert_message(ResultMessage(subtype=ERROR_MAX_TURNS, num_turns=10))

        assert isinstance(event, ResultError)
        assert event.is_max_turns

    def test_success_flagged_as_error(self):
        [event] = convert_message(ResultMessage(result="bad", is_error=True))

        assert event == ResultError(subtype=ERROR_DURING_EXECUTION, message="bad", num_turns=None)

    def test_unknown_message_ignored(self):
        assert convert_message(object()) == []


class TestBuildEnv:
    SYSTEM = {"PATH": "/usr/bin", "HOME": "/home/me"}

    @pytest.mark.asyncio
    async def test_direct_api_key_from_process(self):
        env = await build_env(options(), environ={**self.SYSTEM, "ANTHROPIC_API_KEY": "sk-env"})

        assert env["ANTHROPIC_API_KEY"] == "sk-env"
        assert env["PATH"] == "/usr/bin"

    @pytest.mark.asyncio
    async def test_credentials_override_process_key(self):
        opts = options(credentials={"api_keys": {"anthropic": "sk-cred"}})

        env = await build_env(opts, environ={**self.SYSTEM, "ANTHROPIC_API_KEY": "sk-env"})

        assert env["ANTHROPIC_API_KEY"] == "sk-cred"

    @pytest.mark.asyncio
    async def test_alternate_endpoint(self):
        config = ProviderConfig(
            name="zai",
            base_url="https://api.example.com",
            api_key="k",
            use_auth_token=True,
            timeout_ms=1000,
            model_mappings={"sonnet": "glm-4"},
            disable_nonessential_traffic=True,
        )

        env = await build_env(options(provider_config=config), environ=dict(self.SYSTEM))

        assert env["ANTHROPIC_AUTH_TOKEN"] == "k"
        assert "ANTHROPIC_API_KEY" not in env
        assert env["ANTHROPIC_BASE_URL"] == "https://api.example.com"
        assert env["API_TIMEOUT_MS"] == "1000"
        assert env["ANTHROPIC_DEFAULT_SONNET_MODEL"] == "glm-4"
        assert env["CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC"] == "1"

    @pytest.mark.asyncio
    async def test_running_router_wins(self):
        router = FakeRouter(
            CCRStatus(installed=True, running=True, port=3456),
            {"ANTHROPIC_BASE_URL": "http://127.0.0.1:3456", "ANTHROPIC_AUTH_TOKEN": "ccr"},
        )
        opts = options(ccr_enabled=True, credentials={"api_keys": {"anthropic": "sk-cred"}})

        env = await build_env(opts, router=router, environ=dict(self.SYSTEM))

        assert env["ANTHROPIC_BASE_URL"] == "http://127.0.0.1:3456"
        assert "ANTHROPIC_API_KEY" not in env
        assert env["HOME"] == "/home/me"

    @pytest.mark.asyncio
    async def test_unavailable_router_falls_back(self):
        router = FakeRouter(CCRStatus(installed=False, running=False), None)
        opts = options(ccr_enabled=True)

        env = await build_env(opts, router=router, environ={**self.SYSTEM, "ANTHROPIC_API_KEY": "sk"})

        assert env["ANTHROPIC_API_KEY"] == "sk"


class TestClaudeCodeRouterOutput:
    @pytest.mark.parametrize("output,running", [
        ("Status: Running on port 3456", True),
        ("\x1b[32mrunning\x1b[0m", True),
        ("Service is not running", False),
        ("", False),
    ])
    def test_is_running_output(self, output, running):
        assert is_running_output(output) is running

    def test_strip_ansi(self):
        assert strip_ansi("\x1b[1;31mred\x1b[0m") == "red"


# =============================================================================
# Codex stream parsing
# =============================================================================

class TestCodexEventParser:
    def test_command_execution_is_bash_tool_use(self):
        parser = CodexEventParser()

        events = parser.parse_line(
            '{"type": "item.started", "item": {"id": "c1", "type": "command_execution", "command": "ls"}}'
        )

        assert events == [ToolUse(name="Bash", input={"command": "ls"}, tool_use_id="c1")]

    def test_turn_completed_returns_last_message(self):
        parser = CodexEventParser()
        parser.convert({"type": "item.completed", "item": {"type": "agent_message", "text": "all done"}})

        events = parser.convert({"type": "turn.completed"})

        assert events == [ResultSuccess(result="all done")]

    def test_turn_failed(self):
        [event] = CodexEventParser().convert({"type": "turn.failed", "error": {"message": "quota"}})

        assert event == ResultError(subtype=ERROR_DURING_EXECUTION, message="quota")

    def test_reasoning_and_file_change(self):
        parser = CodexEventParser()

        thinking = parser.convert({"type": "item.completed", "item": {"type": "reasoning", "text": "plan"}})
        edit = parser.convert({"type": "item.completed", "item": {"type": "file_change", "changes": [1]}})

        assert thinking == [Thinking(text="plan")]
        assert edit[0].name == "Edit"

    @pytest.mark.parametrize("line", ["", "not json", "[1, 2]", '{"type": "error", "message": "retrying"}'])
    def test_ignored_lines(self, line):
        assert CodexEventParser().parse_line(line) == []


# =============================================================================
# Gateway
# =============================================================================

class TestGatewayExecuteQuery:
    @pytest.mark.asyncio
    async def test_stops_after_result_event(self):
        provider = ScriptedProvider([
            AssistantText(text="a"),
            ResultSuccess(result="a"),
            AssistantText(text="after"),
        ])
        gateway = ProviderGateway(providers={"claude": provider})

        events = [e async for e in gateway.execute_query(options())]

        assert events == [AssistantText(text="a"), ResultSuccess(result="a")]
        assert provider.closed

    @pytest.mark.asyncio
    async def test_bare_model_passed_to_provider(self):
        provider = ScriptedProvider([ResultSuccess()], provider_name="codex")
        gateway = ProviderGateway(providers={"codex": provider})

        [e async for e in gateway.execute_query(options(model="codex-gpt-5"))]

        assert provider.models_seen == ["gpt-5"]

    @pytest.mark.asyncio
    async def test_cancel_event_stops_stream(self):
        cancel = asyncio.Event()
        provider = ScriptedProvider(
            [AssistantText(text="one"), AssistantText(text="two"), ResultSuccess(result="x")],
            on_yield=lambda event: cancel.set(),
        )
        gateway = ProviderGateway(providers={"claude": provider})

        events = [e async for e in gateway.execute_query(options(cancel_event=cancel))]

        assert events == [AssistantText(text="one")]
        assert provider.closed


class TestSimpleQuery:
    @pytest.mark.asyncio
    async def test_collects_text_and_tool_uses(self):
        provider = ScriptedProvider([
            AssistantText(text="Hello "),
            ToolUse(name="Read"),
            AssistantText(text="world"),
            ResultSuccess(result="Hello world", structured_output={"ok": True}),
        ])
        seen = []

        result = await simple_query(ProviderGateway({"claude": provider}), options(), on_event=seen.append)

        assert result.text == "Hello world"
        assert result.structured_output == {"ok": True}
        assert [t.name for t in result.tool_uses] == ["Read"]
        assert len(seen) == 4

    @pytest.mark.asyncio
    async def test_async_callback_awaited(self):
        provider = ScriptedProvider([AssistantText(text="x"), ResultSuccess()])
        seen = []

        async def on_event(event):
            seen.append(event)

        await simple_query(ProviderGateway({"claude": provider}), options(), on_event=on_event)

        assert len(seen) == 2

    @pytest.mark.asyncio
    async def test_max_turns_keeps_partial_output(self):
        provider = ScriptedProvider([AssistantText(text="half"), ResultError(subtype=ERROR_MAX_TURNS)])

        result = await simple_query(ProviderGateway({"claude": provider}), options(max_turns=5))

        assert result.max_turns_reached
        assert result.text == "half"
        with pytest.raises(MaxTurnsReached) as exc_info:
            require_complete(result, 5)
        assert exc_info.value.partial_output == "half"

    @pytest.mark.asyncio
    async def test_structured_output_exhausted(self):
        provider = ScriptedProvider([ResultError(subtype=ERROR_MAX_STRUCTURED_OUTPUT_RETRIES)])

        with pytest.raises(StructuredOutputExhausted):
            await simple_query(ProviderGateway({"claude": provider}), options())

    @pytest.mark.asyncio
    async def test_other_result_error(self):
        provider = ScriptedProvider([ResultError(subtype=ERROR_DURING_EXECUTION, message="broke")])

        with pytest.raises(AgentExecutionError) as exc_info:
            await simple_query(ProviderGateway({"claude": provider}), options())

        assert "broke" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_transport_error_propagates(self):
        with pytest.raises(ProviderTransportError):
            await simple_query(ProviderGateway({"claude": FailingProvider()}), options())

    @pytest.mark.asyncio
    async def test_cancelled_without_result(self):
        cancel = asyncio.Event()
        provider = ScriptedProvider(
            [AssistantText(text="a"), AssistantText(text="b"), ResultSuccess()],
            on_yield=lambda event: cancel.set(),
        )

        result = await simple_query(ProviderGateway({"claude": provider}), options(cancel_event=cancel))

        assert result.cancelled
        assert result.text == "a"

    def test_require_complete_passes_through(self):
        from automode.providers import QueryResult

        result = QueryResult(text="ok")

        assert require_complete(result) is result


class TestBuildQueryOptions:
    def test_one_shot_defaults(self):
        opts = build_query_options("hi", "/work")

        assert opts.max_turns == 1
        assert opts.allowed_tools == []
        assert opts.model

    def test_streaming_defaults(self):
        opts = build_query_options("hi", "/work", streaming=True)

        assert opts.max_turns == 250
        assert opts.allowed_tools == ["Read", "Glob", "Grep"]

    def test_overrides_win(self):
        opts = build_query_options(
            "hi", "/work", model="opus", streaming=True, max_turns=7, allowed_tools=["Bash"]
        )

        assert opts.model == "opus"
        assert opts.max_turns == 7
        assert opts.allowed_tools == ["Bash"]

    def test_prompt_text_flattens_blocks(self):
        opts = build_query_options(
            [{"type": "text", "text": "a"}, {"type": "image", "source": {}}, {"type": "text", "text": "b"}],
            "/work",
        )

        assert opts.prompt_text() == "a\n\nb"
