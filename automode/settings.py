"""
Settings and Notification Sources
=================================

Read-only collaborators the engine consumes:

- SettingsProvider: global user settings (CCR toggle, known projects,
  default model, alternate endpoint, credentials)
- NotificationSource: per-project notifications, read by the overview

JSON-file implementations are provided for the standalone server; tests
and embedders can pass any object with the same methods.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from automode.database import get_data_dir
from automode.providers.base import ProviderConfig

_logger = logging.getLogger(__name__)

SETTINGS_FILENAME = "settings.json"
CREDENTIALS_FILENAME = "credentials.json"
NOTIFICATIONS_FILENAME = "notifications.json"


@dataclass
class ProjectRef:
    path: str
    name: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or Path(self.path).name


@dataclass
class GlobalSettings:
    ccr_enabled: bool = False
    projects: list[ProjectRef] = field(default_factory=list)
    default_model: str | None = None
    provider_config: ProviderConfig | None = None
    credentials: dict[str, Any] | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any], credentials: dict[str, Any] | None = None) -> "GlobalSettings":
        projects = []
        for entry in data.get("projects") or []:
            if isinstance(entry, str):
                projects.append(ProjectRef(path=entry))
            elif isinstance(entry, dict) and entry.get("path"):
                projects.append(ProjectRef(path=entry["path"], name=entry.get("name")))

        provider_config = None
        raw_provider = data.get("provider_config")
        if isinstance(raw_provider, dict) and raw_provider.get("base_url"):
            provider_config = ProviderConfig.from_dict(raw_provider)

        return cls(
            ccr_enabled=bool(data.get("ccr_enabled", False)),
            projects=projects,
            default_model=data.get("default_model"),
            provider_config=provider_config,
            credentials=credentials,
        )


@runtime_checkable
class SettingsProvider(Protocol):
    async def get_global_settings(self) -> GlobalSettings: ...


@runtime_checkable
class NotificationSource(Protocol):
    async def get_notifications(self, project_path: str) -> list[dict[str, Any]]: ...


class StaticSettingsProvider:
    """Settings fixed at construction time."""

    def __init__(self, settings: GlobalSettings | None = None):
        self.settings = settings or GlobalSettings()

    async def get_global_settings(self) -> GlobalSettings:
        return self.settings


def _read_json(path: Path) -> Any:
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        return None
    except (OSError, json.JSONDecodeError) as e:
        _logger.warning("Could not read %s: %s", path, e)
        return None


class JsonSettingsProvider:
    """Reads settings.json and credentials.json from a data directory on every call."""

    def __init__(self, data_dir: Path):
        self.data_dir = Path(data_dir)

    async def get_global_settings(self) -> GlobalSettings:
        data = _read_json(self.data_dir / SETTINGS_FILENAME)
        credentials = _read_json(self.data_dir / CREDENTIALS_FILENAME)
        return GlobalSettings.from_dict(
            data if isinstance(data, dict) else {},
            credentials if isinstance(credentials, dict) else None,
        )


class JsonNotificationSource:
    """Reads ``<project>/.automaker/notifications.json``."""

    async def get_notifications(self, project_path: str) -> list[dict[str, Any]]:
        data = _read_json(get_data_dir(Path(project_path)) / NOTIFICATIONS_FILENAME)
        if isinstance(data, dict):
            data = data.get("notifications")
        if not isinstance(data, list):
            return []
        return [n for n in data if isinstance(n, dict)]
