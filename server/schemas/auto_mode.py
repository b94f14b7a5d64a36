"""
Auto-Mode Schemas
=================

Request and response models for the auto-mode, feature and overview
endpoints.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

LOOP_STATES = Literal["idle", "selecting", "running", "awaiting_approval", "stopping"]
HEALTH_STATUSES = Literal["idle", "active", "waiting", "error", "completed"]


class ProjectRequest(BaseModel):
    project_path: str = Field(..., min_length=1, description="Absolute path of the project")

    @field_validator("project_path")
    @classmethod
    def validate_project_path(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("project_path must not be blank")
        return v.strip()


class AutoModeStartRequest(ProjectRequest):
    branch_name: str | None = Field(
        default=None,
        max_length=255,
        description="Workspace branch; null targets the main checkout",
    )
    continuous: bool = Field(default=True, description="Keep picking features until stopped")


class WorkspaceRequest(ProjectRequest):
    branch_name: str | None = Field(default=None, max_length=255)


class RejectPlanRequest(ProjectRequest):
    feedback: str | None = Field(default=None, max_length=10_000)


class LoopStatusResponse(BaseModel):
    project_path: str
    branch_name: str | None = None
    is_auto_loop_running: bool
    state: LOOP_STATES = "idle"
    continuous: bool = True
    running_feature_id: str | None = None
    last_error: str | None = None


class AutoModeStopResponse(BaseModel):
    stopped: bool
    status: LoopStatusResponse


class RunningAgentResponse(BaseModel):
    feature_id: str
    project_path: str
    branch_name: str | None = None
    workspace_path: str
    model: str
    phase: str
    tool_uses: int = 0
    elapsed_seconds: float = 0.0


class AutoModeStatusResponse(BaseModel):
    loops: list[LoopStatusResponse]
    running_agents: list[RunningAgentResponse]


class FeatureResponse(BaseModel):
    """Feature record as stored."""

    id: str
    position: int | None = None
    category: str | None = None
    title: str | None = None
    description: str = ""
    priority: int | None = None
    status: str
    dependencies: list[str] = Field(default_factory=list)
    branch_name: str | None = None
    model: str | None = None
    skip_tests: bool = False
    planning_mode: str = "skip"
    require_plan_approval: bool = False
    plan_spec: dict[str, Any] | None = None
    started_at: str | None = None
    error: str | None = None
    summary: str | None = None
    archived: bool = False
    created_at: str | None = None
    updated_at: str | None = None


class FeatureCounts(BaseModel):
    pending: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0
    verified: int = 0


class AggregateFeatureCounts(FeatureCounts):
    total: int = 0


class AggregateProjectCounts(BaseModel):
    total: int = 0
    active: int = 0
    idle: int = 0
    waiting: int = 0
    with_errors: int = 0
    all_completed: int = 0


class ProjectStatusResponse(BaseModel):
    project_name: str
    project_path: str
    health_status: HEALTH_STATUSES
    feature_counts: FeatureCounts
    total_features: int
    last_activity_at: str | None = None
    is_auto_mode_running: bool
    active_branch: str | None = None
    unread_notification_count: int = 0


class AggregateStatusResponse(BaseModel):
    project_counts: AggregateProjectCounts
    feature_counts: AggregateFeatureCounts
    total_unread_notifications: int
    projects_with_auto_mode_running: int
    computed_at: str


class ProjectsOverviewResponse(BaseModel):
    projects: list[ProjectStatusResponse]
    aggregate: AggregateStatusResponse
    generated_at: str
