"""
Server Tests
============

HTTP surface over FastAPI's TestClient with an injected AutoModeService:
routes, the error envelope and engine-error status mapping.
"""

import sys
import time
import warnings
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.auto_mode_service import AutoModeService
from automode.config import AutoModeConfig
from automode.database import Feature, create_database
from automode.git_backend import WorktreeInfo
from automode.providers import AssistantText, BaseProvider, ProviderGateway, ResultSuccess
from automode.settings import GlobalSettings, ProjectRef, StaticSettingsProvider
from automode.workspace_manager import WorkspaceManager
from server.exceptions import ErrorCode, NotFoundError, map_engine_error
from server.main import app


class InstantAgent(BaseProvider):
    @property
    def name(self) -> str:
        return "claude"

    async def execute_query(self, options):
        yield AssistantText(text="Implemented it.")
        yield ResultSuccess(result="Implemented it.")


class FakeGit:
    def is_repo(self, path):
        return True

    def current_branch(self, path):
        return "main"

    def ensure_initial_commit(self, path):
        return False

    def create_worktree(self, project_path, worktree_path, branch_name):
        return True

    def list_worktrees(self, project_path):
        return [WorktreeInfo(path=str(project_path), branch="main", head=None, is_main=True)]

    def list_branches(self, project_path):
        return []


def seed(project: Path, *features: dict) -> None:
    """Insert features straight into the project database."""
    engine, SessionLocal = create_database(project)
    with SessionLocal() as session:
        for position, data in enumerate(features, start=1):
            session.add(Feature(position=position, **data))
        session.commit()
    engine.dispose()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    p = tmp_path / "app"
    p.mkdir()
    return p.resolve()


@pytest.fixture
def client(project):
    settings = StaticSettingsProvider(GlobalSettings(projects=[ProjectRef(path=str(project), name="App")]))
    app.state.auto_mode_service = AutoModeService(
        config=AutoModeConfig(stop_timeout_seconds=5.0),
        workspaces=WorkspaceManager(git=FakeGit()),
        gateway=ProviderGateway({"claude": InstantAgent()}),
        settings=settings,
    )
    app.state.notification_source = None
    try:
        with TestClient(app) as test_client:
            yield test_client
    finally:
        app.state.auto_mode_service = None


def wait_for_feature(client, project, feature_id, status, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        features = client.get("/api/features", params={"project_path": str(project)}).json()
        match = [f for f in features if f["id"] == feature_id]
        if match and match[0]["status"] == status:
            return match[0]
        time.sleep(0.02)
    raise AssertionError(f"{feature_id} never reached {status}")


class TestAutoModeRoutes:
    def test_health(self, client):
        assert client.get("/api/health").json() == {"status": "healthy"}

    def test_start_then_duplicate_is_conflict(self, client, project):
        response = client.post("/api/auto-mode/start", json={"project_path": str(project)})

        assert response.status_code == 200
        body = response.json()
        assert body["is_auto_loop_running"] is True
        assert body["branch_name"] == "main"

        duplicate = client.post("/api/auto-mode/start", json={"project_path": str(project)})

        assert duplicate.status_code == 409
        assert duplicate.json()["error_code"] == ErrorCode.CONFLICT
        assert duplicate.json()["details"]["project_path"] == str(project)

    def test_start_missing_project_is_unprocessable(self, client, tmp_path):
        response = client.post("/api/auto-mode/start", json={"project_path": str(tmp_path / "nope")})

        assert response.status_code == 422
        assert response.json()["error_code"] == ErrorCode.WORKSPACE_UNAVAILABLE

    def test_blank_project_path_is_validation_error(self, client):
        response = client.post("/api/auto-mode/start", json={"project_path": "   "})

        assert response.status_code == 422
        body = response.json()
        assert body["error_code"] == ErrorCode.VALIDATION_ERROR
        assert body["details"]["errors"][0]["field"] == "project_path"

    def test_stop(self, client, project):
        idle = client.post("/api/auto-mode/stop", json={"project_path": str(project)})
        assert idle.json()["stopped"] is False

        client.post("/api/auto-mode/start", json={"project_path": str(project)})
        stopped = client.post("/api/auto-mode/stop", json={"project_path": str(project)})

        assert stopped.status_code == 200
        assert stopped.json()["stopped"] is True
        assert stopped.json()["status"]["is_auto_loop_running"] is False

    def test_status_filters_by_project(self, client, project, tmp_path):
        client.post("/api/auto-mode/start", json={"project_path": str(project), "branch_name": "feat"})

        mine = client.get("/api/auto-mode/status", params={"project_path": str(project)}).json()
        other = client.get("/api/auto-mode/status", params={"project_path": str(tmp_path)}).json()

        assert [loop["branch_name"] for loop in mine["loops"]] == ["feat"]
        assert other["loops"] == []

    def test_start_next_runs_one_feature(self, client, project):
        seed(project, {"id": "a", "description": "alpha"}, {"id": "b", "description": "beta"})

        response = client.post("/api/auto-mode/start-next", json={"project_path": str(project)})

        assert response.status_code == 200
        assert response.json()["continuous"] is False
        feature = wait_for_feature(client, project, "a", "completed")
        assert feature["summary"] == "Implemented it."


class TestFeatureRoutes:
    def test_list_features(self, client, project):
        seed(project, {"id": "a", "description": "alpha", "dependencies": []})

        response = client.get("/api/features", params={"project_path": str(project)})

        assert response.status_code == 200
        assert [f["id"] for f in response.json()] == ["a"]

    def test_missing_project_is_not_found(self, client, tmp_path):
        missing = tmp_path / "missing"

        response = client.get("/api/features", params={"project_path": str(missing)})

        assert response.status_code == 404
        assert response.json()["details"]["resource"] == "project"
        assert not missing.exists()

    def test_approve_missing_feature(self, client, project):
        response = client.post("/api/features/ghost/approve-plan", json={"project_path": str(project)})

        assert response.status_code == 404
        assert response.json()["error_code"] == ErrorCode.NOT_FOUND

    def test_approve_without_plan_is_conflict(self, client, project):
        seed(project, {"id": "a", "description": "alpha"})

        response = client.post("/api/features/a/approve-plan", json={"project_path": str(project)})

        assert response.status_code == 409
        assert response.json()["details"]["current_state"] == "pending"

    def test_approve_generated_plan(self, client, project):
        seed(project, {
            "id": "a",
            "description": "alpha",
            "status": "waiting_approval",
            "planning_mode": "spec",
            "plan_spec": {"status": "generated", "content": "1. Do it"},
        })

        response = client.post("/api/features/a/approve-plan", json={"project_path": str(project)})

        assert response.status_code == 200
        assert response.json()["status"] == "ready"
        assert response.json()["plan_spec"]["status"] == "approved"

    def test_reject_plan(self, client, project):
        seed(project, {
            "id": "a",
            "description": "alpha",
            "status": "waiting_approval",
            "planning_mode": "spec",
            "plan_spec": {"status": "generated", "content": "1. Do it"},
        })

        response = client.post(
            "/api/features/a/reject-plan",
            json={"project_path": str(project), "feedback": "smaller steps"},
        )

        assert response.status_code == 200
        assert response.json()["status"] == "pending"
        assert response.json()["plan_spec"]["feedback"] == "smaller steps"

    def test_verify(self, client, project):
        seed(project, {"id": "a", "description": "alpha", "status": "completed"})

        response = client.post("/api/features/a/verify", json={"project_path": str(project)})

        assert response.status_code == 200
        assert response.json()["status"] == "verified"

    def test_verify_pending_is_conflict(self, client, project):
        seed(project, {"id": "a", "description": "alpha"})

        response = client.post("/api/features/a/verify", json={"project_path": str(project)})

        assert response.status_code == 409
        assert response.json()["details"]["target_state"] == "verified"


class TestProjectsOverview:
    def test_overview(self, client, project):
        seed(project, {"id": "a", "description": "alpha", "status": "completed"})

        response = client.get("/api/projects/overview")

        assert response.status_code == 200
        body = response.json()
        [status] = body["projects"]
        assert status["project_name"] == "App"
        assert status["health_status"] == "completed"
        assert body["aggregate"]["project_counts"]["all_completed"] == 1


class TestErrorMapping:
    def test_unknown_engine_error_is_500(self):
        from automode.exceptions import ProviderTransportError

        status_code, error_code, details = map_engine_error(ProviderTransportError("claude", "down"))

        assert status_code == 500
        assert error_code == ErrorCode.ENGINE_ERROR
        assert details is None

    def test_cycle_is_conflict(self):
        from automode.exceptions import CycleDetected

        status_code, _, details = map_engine_error(CycleDetected(["a", "b"]))

        assert status_code == 409
        assert details == {"cycle": ["a", "b"]}

    def test_workspace_unavailable_is_unprocessable(self):
        from automode.exceptions import WorkspaceUnavailable

        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            status_code, error_code, details = map_engine_error(
                WorkspaceUnavailable("/work/app", "feat", "not a git repository")
            )

        assert not caught
        assert status_code == 422
        assert error_code == ErrorCode.WORKSPACE_UNAVAILABLE
        assert details["branch_name"] == "feat"

    def test_validation_error_uses_no_deprecated_status(self, client):
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            response = client.post("/api/auto-mode/start", json={})

        assert response.status_code == 422
        assert not [w for w in caught if "HTTP_422" in str(w.message)]

    def test_not_found_error_message(self):
        error = NotFoundError("project", "/work/app")

        assert error.status_code == 404
        assert error.to_response().message == "Project '/work/app' not found"
