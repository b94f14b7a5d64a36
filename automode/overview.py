"""
Multi-Project Overview
======================

Aggregates feature counts, loop state and notifications for every project
known to the settings provider. Read-only: building an overview never
starts, stops or mutates anything.

Health status per project:
- error:     at least one feature failed
- active:    features are running, or the loop runs with pending work
- completed: every feature is completed or verified
- idle:      anything else
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Iterable

from automode.database import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_GENERATING_SPEC,
    STATUS_PENDING,
    STATUS_READY,
    STATUS_RUNNING,
    STATUS_VERIFIED,
    STATUS_WAITING_APPROVAL,
)
from automode.settings import NotificationSource, ProjectRef, SettingsProvider

if TYPE_CHECKING:
    from automode.auto_mode_service import AutoModeService
    from automode.feature_store import FeatureStore

_logger = logging.getLogger(__name__)

HEALTH_IDLE = "idle"
HEALTH_ACTIVE = "active"
HEALTH_WAITING = "waiting"
HEALTH_ERROR = "error"
HEALTH_COMPLETED = "completed"

_COUNT_BUCKETS = {
    STATUS_PENDING: "pending",
    STATUS_READY: "pending",
    STATUS_RUNNING: "running",
    STATUS_GENERATING_SPEC: "running",
    STATUS_WAITING_APPROVAL: "running",
    STATUS_COMPLETED: "completed",
    STATUS_FAILED: "failed",
    STATUS_VERIFIED: "verified",
}


def _empty_counts() -> dict[str, int]:
    return {"pending": 0, "running": 0, "completed": 0, "failed": 0, "verified": 0}


def compute_feature_counts(features: Iterable[dict[str, Any]]) -> dict[str, int]:
    """Bucket features by status; unknown statuses count as pending."""
    counts = _empty_counts()
    for feature in features:
        counts[_COUNT_BUCKETS.get(feature.get("status"), "pending")] += 1
    return counts


def compute_health_status(counts: dict[str, int], is_auto_mode_running: bool) -> str:
    total = sum(counts.values())
    if counts["failed"] > 0:
        return HEALTH_ERROR
    if counts["running"] > 0 or (is_auto_mode_running and counts["pending"] > 0):
        return HEALTH_ACTIVE
    if total > 0 and counts["pending"] == 0 and counts["running"] == 0:
        return HEALTH_COMPLETED
    return HEALTH_IDLE


def _parse_timestamp(value: Any) -> datetime | None:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
        except ValueError:
            return None
    # SQLite drops the zone; stored times are UTC
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def get_last_activity_at(features: Iterable[dict[str, Any]]) -> str | None:
    """Latest start or plan timestamp across the features, as ISO text."""
    latest: datetime | None = None
    for feature in features:
        plan = feature.get("plan_spec") or {}
        if not isinstance(plan, dict):
            plan = {}
        for raw in (feature.get("started_at"), plan.get("generated_at"), plan.get("approved_at")):
            ts = _parse_timestamp(raw)
            if ts is not None and (latest is None or ts > latest):
                latest = ts
    return latest.isoformat() if latest else None


async def _project_status(
    ref: ProjectRef,
    service: AutoModeService,
    store: FeatureStore,
    notifications: NotificationSource | None,
) -> dict[str, Any]:
    try:
        if not Path(ref.path).is_dir():
            raise FileNotFoundError(f"project directory {ref.path} does not exist")
        features = await store.list(ref.path)
        counts = compute_feature_counts(features)
        loop_status = service.get_status_for_project(ref.path, None)
        is_running = loop_status["is_auto_loop_running"]

        unread = 0
        if notifications is not None:
            try:
                items = await notifications.get_notifications(ref.path)
                unread = sum(1 for n in items if not n.get("read"))
            except Exception as e:
                _logger.debug("Notifications unavailable for %s: %s", ref.path, e)

        return {
            "project_name": ref.display_name,
            "project_path": ref.path,
            "health_status": compute_health_status(counts, is_running),
            "feature_counts": counts,
            "total_features": len(features),
            "last_activity_at": get_last_activity_at(features),
            "is_auto_mode_running": is_running,
            "active_branch": loop_status.get("branch_name"),
            "unread_notification_count": unread,
        }
    except Exception as e:
        _logger.warning("Could not load project %s for overview: %s", ref.path, e)
        return {
            "project_name": ref.display_name,
            "project_path": ref.path,
            "health_status": HEALTH_ERROR,
            "feature_counts": _empty_counts(),
            "total_features": 0,
            "last_activity_at": None,
            "is_auto_mode_running": False,
            "active_branch": None,
            "unread_notification_count": 0,
        }


def _aggregate(projects: list[dict[str, Any]]) -> dict[str, Any]:
    feature_counts = {"total": 0, **_empty_counts()}
    project_counts = {
        "total": len(projects),
        "active": 0,
        "idle": 0,
        "waiting": 0,
        "with_errors": 0,
        "all_completed": 0,
    }
    health_to_key = {
        HEALTH_ACTIVE: "active",
        HEALTH_IDLE: "idle",
        HEALTH_WAITING: "waiting",
        HEALTH_ERROR: "with_errors",
        HEALTH_COMPLETED: "all_completed",
    }

    for status in projects:
        feature_counts["total"] += status["total_features"]
        for bucket, value in status["feature_counts"].items():
            feature_counts[bucket] += value
        project_counts[health_to_key[status["health_status"]]] += 1

    return {
        "project_counts": project_counts,
        "feature_counts": feature_counts,
        "total_unread_notifications": sum(p["unread_notification_count"] for p in projects),
        "projects_with_auto_mode_running": sum(1 for p in projects if p["is_auto_mode_running"]),
        "computed_at": datetime.now(timezone.utc).isoformat(),
    }


async def build_overview(
    service: AutoModeService,
    store: FeatureStore,
    settings: SettingsProvider,
    notifications: NotificationSource | None = None,
) -> dict[str, Any]:
    """
    Build the overview of all projects listed in the global settings.

    Projects are loaded concurrently; one failing project is reported with
    health "error" and zero counts instead of failing the whole overview.
    """
    global_settings = await settings.get_global_settings()
    projects = await asyncio.gather(
        *(_project_status(ref, service, store, notifications) for ref in global_settings.projects)
    )
    projects = list(projects)
    return {
        "projects": projects,
        "aggregate": _aggregate(projects),
        "generated_at": datetime.now(timezone.utc).isoformat(),
    }
