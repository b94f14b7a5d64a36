"""
Configuration Tests
===================

AUTOMODE_* environment parsing with fallback to defaults.
"""

import logging
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.config import (
    DEFAULT_ALLOWED_TOOLS,
    DEFAULT_MAX_TURNS,
    DEFAULT_SPEC_MAX_TURNS,
    DEFAULT_STOP_TIMEOUT_SECONDS,
    PLANNING_ALLOWED_TOOLS,
    AutoModeConfig,
)
from automode.providers.gateway import DEFAULT_MODEL

ENV_VARS = (
    "DEFAULT_MODEL", "MAX_TURNS", "SPEC_MAX_TURNS", "RUN_TIMEOUT_SECONDS",
    "IDLE_POLL_SECONDS", "STOP_TIMEOUT_SECONDS", "WORKTREES_DIR", "DATA_DIR",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(f"AUTOMODE_{name}", raising=False)


class TestDefaults:
    def test_defaults_without_environment(self):
        config = AutoModeConfig.from_env(load_env_file=False)

        assert config.default_model == DEFAULT_MODEL
        assert config.max_turns == DEFAULT_MAX_TURNS
        assert config.spec_max_turns == DEFAULT_SPEC_MAX_TURNS
        assert config.run_timeout_seconds == 0.0
        assert config.idle_poll_seconds == 0.0
        assert config.stop_timeout_seconds == DEFAULT_STOP_TIMEOUT_SECONDS
        assert config.worktrees_dir == ".worktrees"

    def test_tool_lists_are_copies(self):
        config = AutoModeConfig()
        config.allowed_tools.append("Custom")

        assert "Custom" not in DEFAULT_ALLOWED_TOOLS
        assert AutoModeConfig().planning_tools == PLANNING_ALLOWED_TOOLS


class TestEnvironment:
    def test_values_are_read(self, monkeypatch, tmp_path):
        monkeypatch.setenv("AUTOMODE_DEFAULT_MODEL", "opus")
        monkeypatch.setenv("AUTOMODE_MAX_TURNS", "42")
        monkeypatch.setenv("AUTOMODE_SPEC_MAX_TURNS", "7")
        monkeypatch.setenv("AUTOMODE_RUN_TIMEOUT_SECONDS", "600")
        monkeypatch.setenv("AUTOMODE_IDLE_POLL_SECONDS", "2.5")
        monkeypatch.setenv("AUTOMODE_WORKTREES_DIR", "trees")
        monkeypatch.setenv("AUTOMODE_DATA_DIR", str(tmp_path))

        config = AutoModeConfig.from_env(load_env_file=False)

        assert config.default_model == "opus"
        assert config.max_turns == 42
        assert config.spec_max_turns == 7
        assert config.run_timeout_seconds == 600.0
        assert config.idle_poll_seconds == 2.5
        assert config.worktrees_dir == "trees"
        assert config.data_dir == tmp_path

    @pytest.mark.parametrize("raw", ["abc", "0", "-5", "1.5"])
    def test_invalid_turns_fall_back(self, monkeypatch, caplog, raw):
        monkeypatch.setenv("AUTOMODE_MAX_TURNS", raw)

        with caplog.at_level(logging.WARNING):
            config = AutoModeConfig.from_env(load_env_file=False)

        assert config.max_turns == DEFAULT_MAX_TURNS
        assert "AUTOMODE_MAX_TURNS" in caplog.text

    def test_stop_timeout_has_a_floor(self, monkeypatch):
        monkeypatch.setenv("AUTOMODE_STOP_TIMEOUT_SECONDS", "0.1")

        config = AutoModeConfig.from_env(load_env_file=False)

        assert config.stop_timeout_seconds == DEFAULT_STOP_TIMEOUT_SECONDS

    def test_blank_value_is_default(self, monkeypatch):
        monkeypatch.setenv("AUTOMODE_IDLE_POLL_SECONDS", "   ")

        assert AutoModeConfig.from_env(load_env_file=False).idle_poll_seconds == 0.0

    def test_to_dict_is_serializable(self, tmp_path):
        data = AutoModeConfig(data_dir=tmp_path).to_dict()

        assert data["data_dir"] == str(tmp_path)
        assert data["max_turns"] == DEFAULT_MAX_TURNS
