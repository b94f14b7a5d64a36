"""
Auto-Mode Package
=================

Feature orchestration engine: dependency-ordered scheduling of features
onto coding agents running in per-branch git worktrees.
"""

from automode.auto_mode_service import AutoModeService, ProjectLoopStatus, RunContext
from automode.config import AutoModeConfig
from automode.database import Feature, create_database, get_database_path
from automode.dependency_resolver import (
    DependencyResolution,
    are_dependencies_satisfied,
    get_blocking_dependencies,
    get_ready_features,
    resolve_dependencies,
    would_create_circular_dependency,
)
from automode.events import EventEmitter
from automode.exceptions import (
    AutoModeError,
    CycleDetected,
    FeatureNotFound,
    InvalidTransition,
    LoopAlreadyRunning,
    MaxTurnsReached,
    ProviderTransportError,
    StructuredOutputExhausted,
    WorkspaceUnavailable,
)
from automode.feature_store import FeatureStore
from automode.overview import build_overview
from automode.workspace_manager import Workspace, WorkspaceManager

__all__ = [
    "AutoModeService",
    "ProjectLoopStatus",
    "RunContext",
    "AutoModeConfig",
    "Feature",
    "create_database",
    "get_database_path",
    "DependencyResolution",
    "are_dependencies_satisfied",
    "get_blocking_dependencies",
    "get_ready_features",
    "resolve_dependencies",
    "would_create_circular_dependency",
    "EventEmitter",
    "AutoModeError",
    "CycleDetected",
    "FeatureNotFound",
    "InvalidTransition",
    "LoopAlreadyRunning",
    "MaxTurnsReached",
    "ProviderTransportError",
    "StructuredOutputExhausted",
    "WorkspaceUnavailable",
    "FeatureStore",
    "build_overview",
    "Workspace",
    "WorkspaceManager",
]
