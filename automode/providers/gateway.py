"""
Provider Gateway
================

Routes a model identifier to the backend that serves it and exposes one
streaming-query entry point for the rest of the engine.

Model routing is a pure prefix lookup:
- "codex-<model>" -> Codex, with the prefix stripped
- "gpt-*"         -> Codex, unchanged
- "haiku" / "sonnet" / "opus" -> Claude, expanded to a full model id
- anything else   -> Claude, unchanged

The gateway never retries. Retry policy belongs to the orchestration loop,
which knows the feature lifecycle around a query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Awaitable, Callable

from automode.exceptions import (
    AgentExecutionError,
    MaxTurnsReached,
    StructuredOutputExhausted,
)
from automode.providers.base import (
    AssistantText,
    BaseProvider,
    ExecuteOptions,
    ProviderEvent,
    ResultError,
    ResultSuccess,
    ToolUse,
)

_logger = logging.getLogger(__name__)

DEFAULT_MODEL = "claude-sonnet-4-20250514"

CLAUDE_MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5-20251001",
    "sonnet": "claude-sonnet-4-20250514",
    "opus": "claude-opus-4-5-20251101",
}

CODEX_PREFIX = "codex-"

# simple_query/streaming defaults
SIMPLE_QUERY_MAX_TURNS = 1
STREAMING_QUERY_MAX_TURNS = 250
STREAMING_QUERY_TOOLS = ["Read", "Glob", "Grep"]


def resolve_model(model: str | None) -> tuple[str, str]:
    """
    Map a model identifier to (provider name, bare model id).

    >>> resolve_model("codex-gpt-5")
    ('codex', 'gpt-5')
    >>> resolve_model("sonnet")
    ('claude', 'claude-sonnet-4-20250514')
    """
    model = (model or DEFAULT_MODEL).strip()
    if model.startswith(CODEX_PREFIX):
        return "codex", model[len(CODEX_PREFIX):]
    if model.startswith("gpt-"):
        return "codex", model
    return "claude", CLAUDE_MODEL_ALIASES.get(model, model)


class ProviderGateway:
    """Registry of providers plus the uniform execute_query entry point."""

    def __init__(self, providers: dict[str, BaseProvider] | None = None):
        if providers is None:
            from automode.providers.claude_provider import ClaudeProvider
            from automode.providers.codex_provider import CodexProvider

            providers = {"claude": ClaudeProvider(), "codex": CodexProvider()}
        self._providers = dict(providers)

    def register(self, name: str, provider: BaseProvider) -> None:
        self._providers[name] = provider

    def get_provider(self, name: str) -> BaseProvider:
        try:
            return self._providers[name]
        except KeyError:
            raise ValueError(
                f"No provider registered for '{name}'. "
                f"Registered: {', '.join(sorted(self._providers))}"
            ) from None

    def resolve(self, model: str | None) -> tuple[BaseProvider, str]:
        """Return the provider instance and the bare model id for ``model``."""
        provider_name, bare_model = resolve_model(model)
        return self.get_provider(provider_name), bare_model

    def available_models(self) -> list[dict[str, Any]]:
        models = []
        for provider in self._providers.values():
            models.extend(provider.available_models())
        return models

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        """
        Yield the events of one query, ending with its result event.

        Iteration stops early, without a result event, once the options'
        cancel_event is set. The provider stream is always closed on exit.
        """
        provider, bare_model = self.resolve(options.model)
        _logger.debug("Routing model %s to %s as %s", options.model, provider.name, bare_model)

        stream = provider.execute_query(replace(options, model=bare_model))
        try:
            async for event in stream:
                if options.is_cancelled:
                    _logger.info("Query on %s cancelled; closing stream", provider.name)
                    return
                yield event
                if isinstance(event, (ResultSuccess, ResultError)):
                    return
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()


@dataclass
class QueryResult:
    """Collected outcome of a non-interactive query."""

    text: str = ""
    structured_output: Any = None
    tool_uses: list[ToolUse] = field(default_factory=list)
    # True when the turn budget ran out; text holds the partial output
    max_turns_reached: bool = False
    cancelled: bool = False


EventCallback = Callable[[ProviderEvent], Awaitable[None] | None]


async def simple_query(
    gateway: ProviderGateway,
    options: ExecuteOptions,
    on_event: EventCallback | None = None,
) -> QueryResult:
    """
    Run a query to completion and collect its text and structured output.

    Max-turns exhaustion returns the partial text with max_turns_reached
    set. Other result errors raise.

    Raises:
        StructuredOutputExhausted: If structured output retries ran out
        ProviderTransportError: If the backend failed
        AgentExecutionError: For any other result error
    """
    result = QueryResult()
    got_result = False

    async for event in gateway.execute_query(options):
        if on_event is not None:
            maybe = on_event(event)
            if maybe is not None:
                await maybe

        if isinstance(event, AssistantText):
            result.text += event.text
        elif isinstance(event, ToolUse):
            result.tool_uses.append(event)
        elif isinstance(event, ResultSuccess):
            got_result = True
            # The final result can be more complete than the streamed text
            if event.result and len(event.result) > len(result.text):
                result.text = event.result
            if event.structured_output is not None:
                result.structured_output = event.structured_output
        elif isinstance(event, ResultError):
            got_result = True
            if event.is_max_turns:
                _logger.info("Query hit max turns (%s); keeping partial output", options.max_turns)
                result.max_turns_reached = True
            elif event.is_structured_output_exhausted:
                raise StructuredOutputExhausted()
            else:
                raise AgentExecutionError(event.subtype, event.message or None)

    if not got_result:
        result.cancelled = options.is_cancelled
    return result


def require_complete(result: QueryResult, max_turns: int | None = None) -> QueryResult:
    """Raise MaxTurnsReached if the query ran out of turns."""
    if result.max_turns_reached:
        raise MaxTurnsReached(max_turns, partial_output=result.text)
    return result


def build_query_options(
    prompt: str | list[dict[str, Any]],
    cwd: str,
    *,
    model: str | None = None,
    streaming: bool = False,
    **overrides: Any,
) -> ExecuteOptions:
    """
    Options with the defaults for one-shot or streaming read-only queries.

    One-shot queries get a single turn and no tools; streaming queries get
    a large turn budget and read-only file tools.
    """
    defaults: dict[str, Any] = {
        "max_turns": STREAMING_QUERY_MAX_TURNS if streaming else SIMPLE_QUERY_MAX_TURNS,
        "allowed_tools": list(STREAMING_QUERY_TOOLS) if streaming else [],
    }
    defaults.update(overrides)
    return ExecuteOptions(prompt=prompt, model=model or DEFAULT_MODEL, cwd=cwd, **defaults)
