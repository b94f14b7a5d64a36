"""
Claude Provider
===============

Runs queries through the Claude Agent SDK and converts SDK messages into
ProviderEvents.

The SDK subprocess gets an explicit environment built in priority order:
1. Claude Code Router, when enabled in settings and its proxy is running
2. An alternate endpoint configuration (base URL + key)
3. Direct Anthropic API variables from this process
System variables (PATH, HOME, ...) are always passed.
"""

from __future__ import annotations

import logging
import os
import shutil
from typing import Any, AsyncIterator

from claude_agent_sdk import ClaudeAgentOptions, query

from automode.exceptions import ProviderTransportError
from automode.providers.base import (
    ERROR_DURING_EXECUTION,
    AssistantText,
    BaseProvider,
    ExecuteOptions,
    ProviderConfig,
    ProviderEvent,
    ResultError,
    ResultSuccess,
    Thinking,
    ToolUse,
)
from automode.providers.ccr import ClaudeCodeRouter

_logger = logging.getLogger(__name__)

SYSTEM_ENV_VARS = ("PATH", "HOME", "SHELL", "TERM", "USER", "LANG", "LC_ALL")

RATE_LIMIT_TIP = (
    "Tip: If several workspaces run in auto mode at once, consider running "
    "fewer loops concurrently to stay under the rate limit."
)

CLAUDE_MODELS = [
    {"id": "claude-opus-4-5-20251101", "name": "Claude Opus 4.5", "tier": "premium"},
    {"id": "claude-sonnet-4-20250514", "name": "Claude Sonnet 4", "tier": "standard"},
    {"id": "claude-haiku-4-5-20251001", "name": "Claude Haiku 4.5", "tier": "basic"},
]


def _system_env(environ: dict[str, str]) -> dict[str, str]:
    return {key: environ[key] for key in SYSTEM_ENV_VARS if environ.get(key)}


def _resolve_api_key(
    config: ProviderConfig,
    credentials: dict[str, Any] | None,
    environ: dict[str, str],
) -> str | None:
    source = config.api_key_source or "inline"
    if source == "env":
        return environ.get("ANTHROPIC_API_KEY")
    if source == "credentials":
        return ((credentials or {}).get("api_keys") or {}).get("anthropic")
    return config.api_key


async def build_env(
    options: ExecuteOptions,
    router: ClaudeCodeRouter | None = None,
    environ: dict[str, str] | None = None,
) -> dict[str, str]:
    """Build the environment passed to the SDK subprocess."""
    environ = dict(os.environ) if environ is None else environ

    if options.ccr_enabled and router is not None:
        status = await router.get_status()
        ccr_env = router.env_from_status(status)
        if ccr_env:
            _logger.debug("Routing Claude query through CCR at %s", ccr_env["ANTHROPIC_BASE_URL"])
            return {**ccr_env, **_system_env(environ)}
        _logger.warning(
            "CCR enabled but not available (installed=%s, running=%s, error=%s)",
            status.installed, status.running, status.error,
        )

    env: dict[str, str] = {}
    config = options.provider_config
    if config is not None:
        api_key = _resolve_api_key(config, options.credentials, environ)
        if not api_key:
            _logger.warning(
                "No API key found for provider '%s' with source '%s'",
                config.name, config.api_key_source,
            )
        else:
            env["ANTHROPIC_AUTH_TOKEN" if config.use_auth_token else "ANTHROPIC_API_KEY"] = api_key
        env["ANTHROPIC_BASE_URL"] = config.base_url
        if config.timeout_ms:
            env["API_TIMEOUT_MS"] = str(config.timeout_ms)
        for alias in ("haiku", "sonnet", "opus"):
            if config.model_mappings.get(alias):
                env[f"ANTHROPIC_DEFAULT_{alias.upper()}_MODEL"] = config.model_mappings[alias]
        if config.disable_nonessential_traffic:
            env["CLAUDE_CODE_DISABLE_NONESSENTIAL_TRAFFIC"] = "1"
    else:
        api_key = ((options.credentials or {}).get("api_keys") or {}).get("anthropic")
        if api_key:
            env["ANTHROPIC_API_KEY"] = api_key
        elif environ.get("ANTHROPIC_API_KEY"):
            env["ANTHROPIC_API_KEY"] = environ["ANTHROPIC_API_KEY"]
        for var in ("ANTHROPIC_AUTH_TOKEN", "ANTHROPIC_BASE_URL", "API_TIMEOUT_MS"):
            if environ.get(var):
                env[var] = environ[var]

    env.update(_system_env(environ))
    return env


def convert_message(msg: Any) -> list[ProviderEvent]:
    """Convert one Claude Agent SDK message into ProviderEvents."""
    msg_type = type(msg).__name__
    events: list[ProviderEvent] = []

    if msg_type == "AssistantMessage" and hasattr(msg, "content"):
        for block in msg.content:
            block_type = type(block).__name__
            if block_type == "TextBlock" and getattr(block, "text", None):
                events.append(AssistantText(text=block.text))
            elif block_type == "ThinkingBlock" and getattr(block, "thinking", None):
                events.append(Thinking(text=block.thinking))
            elif block_type == "ToolUseBlock" and hasattr(block, "name"):
                events.append(ToolUse(
                    name=block.name,
                    input=dict(getattr(block, "input", None) or {}),
                    tool_use_id=getattr(block, "id", None),
                ))

    elif msg_type == "ResultMessage":
        subtype = getattr(msg, "subtype", None) or "success"
        num_turns = getattr(msg, "num_turns", None)
        result = getattr(msg, "result", None)
        if subtype == "success" and not getattr(msg, "is_error", False):
            events.append(ResultSuccess(
                result=result,
                structured_output=getattr(msg, "structured_output", None),
                num_turns=num_turns,
            ))
        else:
            if subtype == "success":
                subtype = ERROR_DURING_EXECUTION
            events.append(ResultError(subtype=subtype, message=result or subtype, num_turns=num_turns))

    return events


def _is_rate_limit(exc: BaseException) -> bool:
    text = str(exc).lower()
    return "rate limit" in text or "rate_limit" in text or "429" in text


def _user_message(exc: BaseException) -> str:
    message = str(exc) or type(exc).__name__
    if _is_rate_limit(exc):
        return f"{message}\n\n{RATE_LIMIT_TIP}"
    return message


async def _multipart_prompt(content: list[dict[str, Any]]):
    yield {
        "type": "user",
        "session_id": "",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
    }


class ClaudeProvider(BaseProvider):
    """Claude Agent SDK backend."""

    supported_features = frozenset({"tools", "text", "vision", "thinking", "structured_output"})

    def __init__(self, router: ClaudeCodeRouter | None = None):
        self.router = router or ClaudeCodeRouter()

    @property
    def name(self) -> str:
        return "claude"

    def available_models(self) -> list[dict[str, Any]]:
        return [dict(m, provider=self.name) for m in CLAUDE_MODELS]

    async def _build_options(self, options: ExecuteOptions) -> ClaudeAgentOptions:
        env = await build_env(options, self.router)
        kwargs: dict[str, Any] = {
            "model": options.model,
            "cwd": options.cwd,
            "max_turns": options.max_turns,
            "env": env,
            # Autonomous mode: the agent never stops for permission prompts
            "permission_mode": "bypassPermissions",
            "setting_sources": ["project"],
        }
        cli_path = shutil.which("claude")
        if cli_path:
            kwargs["cli_path"] = cli_path
        if options.system_prompt:
            kwargs["system_prompt"] = options.system_prompt
        if options.allowed_tools is not None:
            kwargs["allowed_tools"] = list(options.allowed_tools)
        if options.output_format:
            kwargs["output_format"] = options.output_format

        _logger.debug(
            "Claude SDK configuration: model=%s base_url=%s ccr=%s max_turns=%s",
            options.model,
            env.get("ANTHROPIC_BASE_URL", "(default Anthropic API)"),
            options.ccr_enabled,
            options.max_turns,
        )
        return ClaudeAgentOptions(**kwargs)

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        sdk_options = await self._build_options(options)
        prompt = options.prompt if isinstance(options.prompt, str) else _multipart_prompt(options.prompt)

        try:
            async for msg in query(prompt=prompt, options=sdk_options):
                for event in convert_message(msg):
                    yield event
        except ProviderTransportError:
            raise
        except Exception as e:
            _logger.error(
                "Claude query failed (%s): %s%s",
                type(e).__name__, e, " [rate limited]" if _is_rate_limit(e) else "",
            )
            raise ProviderTransportError(self.name, _user_message(e)) from e
