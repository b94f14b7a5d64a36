"""
Auto-Mode Configuration
=======================

Configuration object threaded into AutoModeService. Nothing in the engine
reads process-wide settings on its own; everything comes through an
AutoModeConfig instance (and a SettingsProvider for user settings).

Environment variables (read by AutoModeConfig.from_env, after loading a
.env file if present):

    AUTOMODE_DEFAULT_MODEL          Model for features without one
    AUTOMODE_MAX_TURNS              Turn budget for implementation runs
    AUTOMODE_SPEC_MAX_TURNS         Turn budget for plan generation
    AUTOMODE_RUN_TIMEOUT_SECONDS    Wall-clock limit per run (0 = none)
    AUTOMODE_IDLE_POLL_SECONDS      Parked loops re-check this often (0 = only on trigger)
    AUTOMODE_STOP_TIMEOUT_SECONDS   How long stop waits for a run to wind down
    AUTOMODE_WORKTREES_DIR          Worktree directory inside each project
    AUTOMODE_DATA_DIR               Directory holding settings.json

Invalid values log a warning and fall back to the default.
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from automode.providers.gateway import DEFAULT_MODEL
from automode.workspace_manager import DEFAULT_WORKTREES_DIR

_logger = logging.getLogger(__name__)

ENV_PREFIX = "AUTOMODE_"

DEFAULT_MAX_TURNS = 100
DEFAULT_SPEC_MAX_TURNS = 50
DEFAULT_STOP_TIMEOUT_SECONDS = 30.0
DEFAULT_DATA_DIR = Path.home() / ".automaker"

# Tools an implementation run may use
DEFAULT_ALLOWED_TOOLS = [
    "Read", "Write", "Edit", "Glob", "Grep", "Bash", "WebSearch", "WebFetch",
]
# Plan generation only reads the codebase
PLANNING_ALLOWED_TOOLS = ["Read", "Glob", "Grep"]


def _env_raw(name: str) -> str:
    return os.environ.get(ENV_PREFIX + name, "").strip()


def _env_int(name: str, default: int, minimum: int = 0) -> int:
    raw = _env_raw(name)
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        value = None
    if value is None or value < minimum:
        _logger.warning(
            "Invalid value for %s%s: '%s'. Defaulting to %s (must be an integer >= %d)",
            ENV_PREFIX, name, raw, default, minimum,
        )
        return default
    return value


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = _env_raw(name)
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = None
    if value is None or value < minimum:
        _logger.warning(
            "Invalid value for %s%s: '%s'. Defaulting to %s (must be a number >= %s)",
            ENV_PREFIX, name, raw, default, minimum,
        )
        return default
    return value


@dataclass
class AutoModeConfig:
    """Engine configuration. Defaults suit interactive local use."""

    default_model: str = DEFAULT_MODEL
    max_turns: int = DEFAULT_MAX_TURNS
    spec_max_turns: int = DEFAULT_SPEC_MAX_TURNS
    # 0 disables the limit
    run_timeout_seconds: float = 0.0
    # 0 parks idle loops until notify_features_changed/start_next
    idle_poll_seconds: float = 0.0
    stop_timeout_seconds: float = DEFAULT_STOP_TIMEOUT_SECONDS
    worktrees_dir: str = DEFAULT_WORKTREES_DIR
    data_dir: Path = DEFAULT_DATA_DIR
    allowed_tools: list[str] = field(default_factory=lambda: list(DEFAULT_ALLOWED_TOOLS))
    planning_tools: list[str] = field(default_factory=lambda: list(PLANNING_ALLOWED_TOOLS))

    @classmethod
    def from_env(cls, load_env_file: bool = True) -> "AutoModeConfig":
        """Build a config from AUTOMODE_* environment variables."""
        if load_env_file:
            load_dotenv()

        data_dir = _env_raw("DATA_DIR")
        return cls(
            default_model=_env_raw("DEFAULT_MODEL") or DEFAULT_MODEL,
            max_turns=_env_int("MAX_TURNS", DEFAULT_MAX_TURNS, minimum=1),
            spec_max_turns=_env_int("SPEC_MAX_TURNS", DEFAULT_SPEC_MAX_TURNS, minimum=1),
            run_timeout_seconds=_env_float("RUN_TIMEOUT_SECONDS", 0.0),
            idle_poll_seconds=_env_float("IDLE_POLL_SECONDS", 0.0),
            stop_timeout_seconds=_env_float(
                "STOP_TIMEOUT_SECONDS", DEFAULT_STOP_TIMEOUT_SECONDS, minimum=1.0
            ),
            worktrees_dir=_env_raw("WORKTREES_DIR") or DEFAULT_WORKTREES_DIR,
            data_dir=Path(data_dir).expanduser() if data_dir else DEFAULT_DATA_DIR,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["data_dir"] = str(self.data_dir)
        return data
