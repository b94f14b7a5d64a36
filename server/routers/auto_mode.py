"""
Auto-Mode Router
================

Start, stop and inspect orchestration loops.

Endpoints:
- POST /api/auto-mode/start       Start a (continuous) loop for a workspace
- POST /api/auto-mode/start-next  Run the next eligible feature, then park
- POST /api/auto-mode/stop        Stop a loop and wait for a safe state
- GET  /api/auto-mode/status      Loops and running agents
"""

from __future__ import annotations

from pathlib import Path

from fastapi import APIRouter, Depends, Query

from automode.auto_mode_service import AutoModeService

from ..dependencies import get_service
from ..schemas import (
    AutoModeStartRequest,
    AutoModeStatusResponse,
    AutoModeStopResponse,
    LoopStatusResponse,
    RunningAgentResponse,
    WorkspaceRequest,
)

router = APIRouter(prefix="/api/auto-mode", tags=["auto-mode"])


@router.post("/start", response_model=LoopStatusResponse)
async def start_auto_mode(
    request: AutoModeStartRequest,
    service: AutoModeService = Depends(get_service),
):
    """
    Start the orchestration loop for a project workspace.

    Returns 409 if the workspace already has a loop and 422 if the project
    directory is not usable.
    """
    status = await service.start_auto_loop(
        request.project_path, request.branch_name, continuous=request.continuous
    )
    return LoopStatusResponse(**status.to_dict())


@router.post("/start-next", response_model=LoopStatusResponse)
async def start_next_feature(
    request: WorkspaceRequest,
    service: AutoModeService = Depends(get_service),
):
    """Run the next eligible feature of a workspace."""
    status = await service.start_next(request.project_path, request.branch_name)
    return LoopStatusResponse(**status.to_dict())


@router.post("/stop", response_model=AutoModeStopResponse)
async def stop_auto_mode(
    request: WorkspaceRequest,
    service: AutoModeService = Depends(get_service),
):
    """Stop a workspace loop. Stopping an idle workspace is not an error."""
    stopped = await service.stop_auto_loop(request.project_path, request.branch_name)
    status = service.get_loop_status(request.project_path, request.branch_name)
    return AutoModeStopResponse(stopped=stopped, status=LoopStatusResponse(**status.to_dict()))


@router.get("/status", response_model=AutoModeStatusResponse)
async def get_auto_mode_status(
    project_path: str | None = Query(default=None, description="Only loops of this project"),
    service: AutoModeService = Depends(get_service),
):
    loops = service.list_loop_statuses()
    agents = service.get_running_agents()
    if project_path:
        normalized = str(Path(project_path).resolve())
        loops = [s for s in loops if s.project_path == normalized]
        agents = [a for a in agents if a["project_path"] == normalized]

    return AutoModeStatusResponse(
        loops=[LoopStatusResponse(**s.to_dict()) for s in loops],
        running_agents=[RunningAgentResponse(**a) for a in agents],
    )
