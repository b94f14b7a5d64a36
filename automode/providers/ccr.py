"""
Claude Code Router
==================

Detects a local Claude Code Router (``ccr``) install, checks whether its
proxy is running, and derives the environment that routes Claude Agent SDK
traffic through it.

Config is read from ``~/.claude-code-router/config.json``. Status checks
shell out to ``ccr status`` and are cached for a couple of seconds so
several loops starting at once do not each spawn a process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any

_logger = logging.getLogger(__name__)

CCR_CONFIG_FILE = Path.home() / ".claude-code-router" / "config.json"
DEFAULT_PORT = 3456
DEFAULT_API_KEY = "ccr-default-key"
DEFAULT_API_TIMEOUT_MS = 600000
STATUS_CACHE_TTL_SECONDS = 2.0
STATUS_COMMAND_TIMEOUT_SECONDS = 5.0

_ANSI_RE = re.compile(r"[\u001b\u009b][\[()#;?]*(?:[0-9]{1,4}(?:;[0-9]{0,4})*)?[0-9A-ORZcf-nqry=><]")
# "running" not preceded by "not "
_RUNNING_RE = re.compile(r"\b(?<!not\s)running\b", re.IGNORECASE)


@dataclass
class CCRStatus:
    installed: bool
    running: bool
    port: int | None = None
    api_endpoint: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "installed": self.installed,
            "running": self.running,
            "port": self.port,
            "api_endpoint": self.api_endpoint,
            "error": self.error,
        }


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def is_running_output(output: str) -> bool:
    """Interpret ``ccr status`` output."""
    return bool(_RUNNING_RE.search(strip_ansi(output)))


def read_config(config_file: Path | None = None) -> dict[str, Any] | None:
    path = config_file or CCR_CONFIG_FILE
    try:
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        _logger.debug("Failed to read CCR config %s: %s", path, e)
        return None


def _client_host(config: dict[str, Any] | None) -> str:
    host = (config or {}).get("HOST") or "127.0.0.1"
    # A proxy bound to all interfaces is reached over loopback
    return "127.0.0.1" if host == "0.0.0.0" else host


class ClaudeCodeRouter:
    """CCR detection with a short-lived status cache."""

    def __init__(self, config_file: Path | None = None, cache_ttl: float = STATUS_CACHE_TTL_SECONDS):
        self.config_file = config_file or CCR_CONFIG_FILE
        self.cache_ttl = cache_ttl
        self._cache: tuple[CCRStatus, float] | None = None
        self._lock = asyncio.Lock()

    def is_installed(self) -> bool:
        return shutil.which("ccr") is not None

    async def _run_status_command(self) -> str:
        proc = await asyncio.create_subprocess_exec(
            "ccr", "status",
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), STATUS_COMMAND_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise
        return stdout.decode("utf-8", errors="replace")

    async def get_status(self) -> CCRStatus:
        async with self._lock:
            now = time.monotonic()
            if self._cache is not None and now - self._cache[1] < self.cache_ttl:
                return self._cache[0]

            status = await self._probe()
            self._cache = (status, now)
            return status

    async def _probe(self) -> CCRStatus:
        if not self.is_installed():
            return CCRStatus(installed=False, running=False)

        config = read_config(self.config_file)
        port = (config or {}).get("PORT") or DEFAULT_PORT

        try:
            output = await self._run_status_command()
        except (OSError, asyncio.TimeoutError) as e:
            return CCRStatus(installed=True, running=False, port=port, error=str(e) or type(e).__name__)

        if is_running_output(output):
            return CCRStatus(
                installed=True,
                running=True,
                port=port,
                api_endpoint=f"http://{_client_host(config)}:{port}",
            )
        return CCRStatus(installed=True, running=False, port=port)

    def env_from_status(self, status: CCRStatus) -> dict[str, str] | None:
        """Environment for routing through a running CCR, or None."""
        if not (status.installed and status.running):
            return None

        config = read_config(self.config_file) or {}
        port = status.port or config.get("PORT") or DEFAULT_PORT
        return {
            "ANTHROPIC_AUTH_TOKEN": config.get("APIKEY") or DEFAULT_API_KEY,
            "ANTHROPIC_BASE_URL": f"http://{_client_host(config)}:{port}",
            "NO_PROXY": "127.0.0.1",
            "DISABLE_TELEMETRY": "true",
            "DISABLE_COST_WARNINGS": "true",
            "API_TIMEOUT_MS": str(config.get("API_TIMEOUT_MS") or DEFAULT_API_TIMEOUT_MS),
            # Empty disables Bedrock routing inherited from the parent env
            "CLAUDE_CODE_USE_BEDROCK": "",
        }
