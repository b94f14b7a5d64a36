"""
Codex Provider
==============

Runs queries through the OpenAI Codex CLI (``codex exec --json``) and
converts its JSONL event stream into ProviderEvents.

The CLI is spawned per query inside the workspace directory. If the
consumer stops early or the consuming task is cancelled, the process is
killed before the generator finishes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
from typing import Any, AsyncIterator

from automode.exceptions import ProviderTransportError
from automode.providers.base import (
    ERROR_DURING_EXECUTION,
    AssistantText,
    BaseProvider,
    ExecuteOptions,
    ProviderEvent,
    ResultError,
    ResultSuccess,
    Thinking,
    ToolUse,
)

_logger = logging.getLogger(__name__)

# Codex emits whole file diffs on one line
STREAM_LINE_LIMIT = 16 * 1024 * 1024

CODEX_MODELS = [
    {"id": "gpt-5-codex", "name": "GPT-5 Codex", "tier": "premium"},
    {"id": "gpt-5", "name": "GPT-5", "tier": "standard"},
]


class CodexEventParser:
    """Stateful converter for one ``codex exec --json`` stream."""

    def __init__(self):
        self.last_message = ""

    def parse_line(self, line: str) -> list[ProviderEvent]:
        line = line.strip()
        if not line:
            return []
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            _logger.debug("Ignoring non-JSON codex output: %s", line[:200])
            return []
        if not isinstance(data, dict):
            return []
        return self.convert(data)

    def convert(self, data: dict[str, Any]) -> list[ProviderEvent]:
        event_type = data.get("type")
        item = data.get("item") or {}
        item_type = item.get("type")

        if event_type == "item.started":
            if item_type == "command_execution":
                return [ToolUse(name="Bash", input={"command": item.get("command", "")}, tool_use_id=item.get("id"))]
            if item_type == "mcp_tool_call":
                name = f"{item.get('server', 'mcp')}:{item.get('tool', 'tool')}"
                return [ToolUse(name=name, input=item.get("arguments") or {}, tool_use_id=item.get("id"))]
            if item_type == "web_search":
                return [ToolUse(name="WebSearch", input={"query": item.get("query", "")}, tool_use_id=item.get("id"))]
            return []

        if event_type == "item.completed":
            if item_type == "agent_message" and item.get("text"):
                self.last_message = item["text"]
                return [AssistantText(text=item["text"])]
            if item_type == "reasoning" and item.get("text"):
                return [Thinking(text=item["text"])]
            if item_type == "file_change":
                return [ToolUse(name="Edit", input={"changes": item.get("changes", [])}, tool_use_id=item.get("id"))]
            return []

        if event_type == "turn.completed":
            return [ResultSuccess(result=self.last_message)]

        if event_type == "turn.failed":
            error = data.get("error") or {}
            return [ResultError(subtype=ERROR_DURING_EXECUTION, message=error.get("message") or "Codex turn failed")]

        if event_type == "error":
            # Transient (e.g. reconnecting); a terminal failure arrives as turn.failed
            _logger.warning("Codex reported: %s", data.get("message"))

        return []


class CodexProvider(BaseProvider):
    """OpenAI Codex CLI backend."""

    def __init__(self, executable: str = "codex"):
        self.executable = executable

    @property
    def name(self) -> str:
        return "codex"

    def available_models(self) -> list[dict[str, Any]]:
        return [dict(m, provider=self.name) for m in CODEX_MODELS]

    def build_command(self, options: ExecuteOptions, cli_path: str) -> list[str]:
        cmd = [
            cli_path, "exec", "--json",
            "--dangerously-bypass-approvals-and-sandbox",
            "--skip-git-repo-check",
            "-C", options.cwd,
        ]
        if options.model:
            cmd += ["-m", options.model]
        prompt = options.prompt_text()
        if options.system_prompt:
            prompt = f"{options.system_prompt}\n\n{prompt}"
        cmd.append(prompt)
        return cmd

    def _build_env(self, options: ExecuteOptions) -> dict[str, str]:
        env = dict(os.environ)
        api_key = ((options.credentials or {}).get("api_keys") or {}).get("openai")
        if api_key:
            env["OPENAI_API_KEY"] = api_key
        return env

    async def execute_query(self, options: ExecuteOptions) -> AsyncIterator[ProviderEvent]:
        cli_path = shutil.which(self.executable)
        if cli_path is None:
            raise ProviderTransportError(self.name, f"'{self.executable}' CLI not found on PATH")
        if options.output_format:
            _logger.warning("Codex provider ignores structured output schemas")

        try:
            proc = await asyncio.create_subprocess_exec(
                *self.build_command(options, cli_path),
                cwd=options.cwd,
                env=self._build_env(options),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=STREAM_LINE_LIMIT,
            )
        except OSError as e:
            raise ProviderTransportError(self.name, f"Failed to start codex: {e}") from e

        stderr_task = asyncio.create_task(proc.stderr.read())
        parser = CodexEventParser()
        try:
            async for raw in proc.stdout:
                for event in parser.parse_line(raw.decode("utf-8", errors="replace")):
                    yield event
                    if isinstance(event, (ResultSuccess, ResultError)):
                        return

            returncode = await proc.wait()
            stderr = (await stderr_task).decode("utf-8", errors="replace").strip()
            if returncode != 0:
                raise ProviderTransportError(
                    self.name, f"codex exited with code {returncode}: {stderr[-500:]}"
                )
            # Exited cleanly without a turn event
            yield ResultSuccess(result=parser.last_message)
        finally:
            if proc.returncode is None:
                _logger.info("Killing codex process %s", proc.pid)
                proc.kill()
                await proc.wait()
            if not stderr_task.done():
                stderr_task.cancel()
