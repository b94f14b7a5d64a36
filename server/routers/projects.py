"""
Projects Router
===============

Multi-project overview for dashboards. Read-only.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends

from automode.auto_mode_service import AutoModeService
from automode.overview import build_overview
from automode.settings import NotificationSource

from ..dependencies import get_notification_source, get_service
from ..schemas import ProjectsOverviewResponse

router = APIRouter(prefix="/api/projects", tags=["projects"])


@router.get("/overview", response_model=ProjectsOverviewResponse)
async def get_projects_overview(
    service: AutoModeService = Depends(get_service),
    notifications: NotificationSource | None = Depends(get_notification_source),
):
    """Feature counts, health and loop state for every known project."""
    overview = await build_overview(service, service.store, service.settings, notifications)
    return ProjectsOverviewResponse(**overview)
