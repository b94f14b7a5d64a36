"""
Overview Tests
==============

Per-project counts, health derivation and the multi-project aggregate.
"""

import sys
from pathlib import Path

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.auto_mode_service import AutoModeService
from automode.feature_store import FeatureStore
from automode.overview import (
    build_overview,
    compute_feature_counts,
    compute_health_status,
    get_last_activity_at,
)
from automode.settings import GlobalSettings, ProjectRef, StaticSettingsProvider


class FakeNotifications:
    def __init__(self, by_project=None, fail=False):
        self.by_project = by_project or {}
        self.fail = fail

    async def get_notifications(self, project_path):
        if self.fail:
            raise OSError("unreadable")
        return self.by_project.get(project_path, [])


class TestFeatureCounts:
    def test_buckets(self):
        features = [{"status": s} for s in (
            "pending", "ready", "running", "generating_spec", "waiting_approval",
            "completed", "failed", "verified",
        )]

        assert compute_feature_counts(features) == {
            "pending": 2, "running": 3, "completed": 1, "failed": 1, "verified": 1,
        }

    def test_empty(self):
        assert sum(compute_feature_counts([]).values()) == 0


class TestHealthStatus:
    @pytest.mark.parametrize("counts,running,expected", [
        ({"pending": 1, "running": 0, "completed": 0, "failed": 1, "verified": 0}, True, "error"),
        ({"pending": 0, "running": 1, "completed": 0, "failed": 0, "verified": 0}, False, "active"),
        ({"pending": 2, "running": 0, "completed": 0, "failed": 0, "verified": 0}, True, "active"),
        ({"pending": 2, "running": 0, "completed": 0, "failed": 0, "verified": 0}, False, "idle"),
        ({"pending": 0, "running": 0, "completed": 1, "failed": 0, "verified": 2}, False, "completed"),
        ({"pending": 0, "running": 0, "completed": 0, "failed": 0, "verified": 0}, False, "idle"),
    ])
    def test_health(self, counts, running, expected):
        assert compute_health_status(counts, running) == expected


class TestLastActivity:
    def test_latest_of_start_and_plan_times(self):
        features = [
            {"started_at": "2026-01-01T10:00:00"},
            {"started_at": None, "plan_spec": {"generated_at": "2026-01-02T09:00:00+00:00"}},
            {"plan_spec": {"approved_at": "2026-01-01T12:00:00Z"}},
        ]

        assert get_last_activity_at(features) == "2026-01-02T09:00:00+00:00"

    def test_no_activity(self):
        assert get_last_activity_at([{"started_at": None}, {"plan_spec": "garbage"}]) is None


class TestBuildOverview:
    @pytest.mark.asyncio
    async def test_projects_and_aggregate(self, tmp_path):
        store = FeatureStore()
        busy = tmp_path / "busy"
        done = tmp_path / "done"
        busy.mkdir()
        done.mkdir()

        await store.create(busy, feature_id="a", description="a")
        await store.create(busy, feature_id="b", description="b")
        await store.set_status(busy, "b", "running")
        await store.set_status(busy, "b", "failed", error_message="boom")
        await store.create(done, feature_id="c", description="c")
        await store.set_status(done, "c", "running")
        await store.set_status(done, "c", "completed")

        settings = StaticSettingsProvider(GlobalSettings(projects=[
            ProjectRef(path=str(busy), name="Busy"),
            ProjectRef(path=str(done)),
            ProjectRef(path=str(tmp_path / "gone")),
        ]))
        notifications = FakeNotifications({str(busy): [{"read": False}, {"read": True}, {}]})
        service = AutoModeService(store=store, settings=settings)

        overview = await build_overview(service, store, settings, notifications)

        by_name = {p["project_name"]: p for p in overview["projects"]}
        assert by_name["Busy"]["health_status"] == "error"
        assert by_name["Busy"]["feature_counts"]["failed"] == 1
        assert by_name["Busy"]["unread_notification_count"] == 2
        assert by_name["Busy"]["last_activity_at"] is not None
        assert by_name["done"]["health_status"] == "completed"
        assert by_name["done"]["is_auto_mode_running"] is False
        assert by_name["gone"]["health_status"] == "error"
        assert by_name["gone"]["total_features"] == 0
        assert not (tmp_path / "gone").exists()

        aggregate = overview["aggregate"]
        assert aggregate["project_counts"]["total"] == 3
        assert aggregate["project_counts"]["with_errors"] == 2
        assert aggregate["project_counts"]["all_completed"] == 1
        assert aggregate["feature_counts"]["total"] == 3
        assert aggregate["total_unread_notifications"] == 2
        assert aggregate["projects_with_auto_mode_running"] == 0

    @pytest.mark.asyncio
    async def test_notification_failure_is_ignored(self, tmp_path):
        store = FeatureStore()
        project = tmp_path / "p"
        project.mkdir()
        settings = StaticSettingsProvider(GlobalSettings(projects=[ProjectRef(path=str(project))]))

        overview = await build_overview(
            AutoModeService(store=store, settings=settings), store, settings, FakeNotifications(fail=True)
        )

        [status] = overview["projects"]
        assert status["health_status"] == "idle"
        assert status["unread_notification_count"] == 0

    @pytest.mark.asyncio
    async def test_no_projects(self):
        settings = StaticSettingsProvider()

        overview = await build_overview(AutoModeService(settings=settings), FeatureStore(), settings)

        assert overview["projects"] == []
        assert overview["aggregate"]["project_counts"]["total"] == 0
