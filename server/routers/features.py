"""
Features Router
===============

Feature listing and the human sign-off steps of the feature lifecycle.

Endpoints:
- GET  /api/features                    List a project's features
- POST /api/features/{id}/approve-plan  Approve a generated plan
- POST /api/features/{id}/reject-plan   Send a plan back for regeneration
- POST /api/features/{id}/verify        Mark a feature verified
"""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, Query

from automode.auto_mode_service import AutoModeService

from ..dependencies import get_service
from ..exceptions import NotFoundError
from ..schemas import FeatureResponse, ProjectRequest, RejectPlanRequest

router = APIRouter(prefix="/api/features", tags=["features"])


def _require_project(project_path: str) -> str:
    # Opening a store for a missing directory would create it
    if not Path(project_path).is_dir():
        raise NotFoundError("project", project_path)
    return project_path


@router.get("", response_model=list[FeatureResponse])
async def list_features(
    project_path: str = Query(..., min_length=1),
    include_archived: bool = Query(default=False),
    service: AutoModeService = Depends(get_service),
):
    features = await service.store.list(_require_project(project_path), include_archived=include_archived)
    return [FeatureResponse(**f) for f in features]


@router.post("/{feature_id}/approve-plan", response_model=FeatureResponse)
async def approve_plan(
    feature_id: str,
    request: ProjectRequest,
    service: AutoModeService = Depends(get_service),
):
    """
    Approve the feature's generated plan.

    The feature becomes ready and the project's parked loops are woken.
    Returns 409 if no plan is awaiting approval.
    """
    feature = await service.approve_plan(_require_project(request.project_path), feature_id)
    return FeatureResponse(**feature)


@router.post("/{feature_id}/reject-plan", response_model=FeatureResponse)
async def reject_plan(
    feature_id: str,
    request: RejectPlanRequest,
    service: AutoModeService = Depends(get_service),
):
    feature = await service.reject_plan(_require_project(request.project_path), feature_id, request.feedback)
    return FeatureResponse(**feature)


@router.post("/{feature_id}/verify", response_model=FeatureResponse)
async def verify_feature(
    feature_id: str,
    request: ProjectRequest,
    service: AutoModeService = Depends(get_service),
):
    """Mark a completed (or approval-gated) feature verified."""
    feature = await service.verify_feature(_require_project(request.project_path), feature_id)
    return FeatureResponse(**feature)
