"""
Request Dependencies
====================

FastAPI dependencies handing route handlers the engine objects built in
the application lifespan (see server.main).
"""

from __future__ import annotations

from fastapi import Request

from automode.auto_mode_service import AutoModeService
from automode.settings import NotificationSource


def get_service(request: Request) -> AutoModeService:
    return request.app.state.auto_mode_service


def get_notification_source(request: Request) -> NotificationSource | None:
    return getattr(request.app.state, "notification_source", None)
