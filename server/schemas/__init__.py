"""
Pydantic Schemas Package
========================

Request and response models for the auto-mode API.
"""

from .auto_mode import (
    AggregateFeatureCounts,
    AggregateProjectCounts,
    AggregateStatusResponse,
    AutoModeStartRequest,
    AutoModeStatusResponse,
    AutoModeStopResponse,
    FeatureCounts,
    FeatureResponse,
    LoopStatusResponse,
    ProjectRequest,
    ProjectsOverviewResponse,
    ProjectStatusResponse,
    RejectPlanRequest,
    RunningAgentResponse,
    WorkspaceRequest,
)

__all__ = [
    "AggregateFeatureCounts",
    "AggregateProjectCounts",
    "AggregateStatusResponse",
    "AutoModeStartRequest",
    "AutoModeStatusResponse",
    "AutoModeStopResponse",
    "FeatureCounts",
    "FeatureResponse",
    "LoopStatusResponse",
    "ProjectRequest",
    "ProjectsOverviewResponse",
    "ProjectStatusResponse",
    "RejectPlanRequest",
    "RunningAgentResponse",
    "WorkspaceRequest",
]
