"""
Settings Tests
==============

JSON-backed settings and notification sources.
"""

import json
import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.settings import (
    GlobalSettings,
    JsonNotificationSource,
    JsonSettingsProvider,
    SettingsProvider,
    StaticSettingsProvider,
)


class TestGlobalSettings:
    def test_from_dict(self):
        settings = GlobalSettings.from_dict({
            "ccr_enabled": True,
            "default_model": "opus",
            "projects": ["/a", {"path": "/b", "name": "Bee"}, {"name": "no path"}, 3],
            "provider_config": {"name": "zai", "base_url": "https://x", "api_key_source": "env"},
        })

        assert settings.ccr_enabled is True
        assert settings.default_model == "opus"
        assert [p.display_name for p in settings.projects] == ["a", "Bee"]
        assert settings.provider_config.name == "zai"
        assert settings.provider_config.api_key_source == "env"

    def test_provider_config_needs_base_url(self):
        settings = GlobalSettings.from_dict({"provider_config": {"name": "broken"}})

        assert settings.provider_config is None

    def test_static_provider_satisfies_protocol(self):
        assert isinstance(StaticSettingsProvider(), SettingsProvider)


class TestJsonSettingsProvider:
    @pytest.mark.asyncio
    async def test_reads_settings_and_credentials(self, tmp_path):
        (tmp_path / "settings.json").write_text(json.dumps({"projects": ["/work/app"]}))
        (tmp_path / "credentials.json").write_text(json.dumps({"api_keys": {"anthropic": "sk"}}))

        settings = await JsonSettingsProvider(tmp_path).get_global_settings()

        assert settings.projects[0].path == "/work/app"
        assert settings.credentials == {"api_keys": {"anthropic": "sk"}}

    @pytest.mark.asyncio
    async def test_missing_or_corrupt_files_give_defaults(self, tmp_path):
        (tmp_path / "settings.json").write_text("{not json")

        settings = await JsonSettingsProvider(tmp_path).get_global_settings()

        assert settings.projects == []
        assert settings.credentials is None


class TestJsonNotificationSource:
    @pytest.mark.asyncio
    async def test_list_or_wrapped_list(self, tmp_path):
        data_dir = tmp_path / ".automaker"
        data_dir.mkdir()
        source = JsonNotificationSource()

        (data_dir / "notifications.json").write_text(json.dumps([{"read": False}, "junk"]))
        assert await source.get_notifications(str(tmp_path)) == [{"read": False}]

        (data_dir / "notifications.json").write_text(json.dumps({"notifications": [{"read": True}]}))
        assert await source.get_notifications(str(tmp_path)) == [{"read": True}]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        assert await JsonNotificationSource().get_notifications(str(tmp_path)) == []
