"""
API Routers
===========

FastAPI routers for different API endpoints.
"""

from .auto_mode import router as auto_mode_router
from .features import router as features_router
from .projects import router as projects_router

__all__ = [
    "auto_mode_router",
    "features_router",
    "projects_router",
]
