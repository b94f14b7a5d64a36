"""
Orphaned Feature Cleanup
========================

When the orchestration engine starts, features left in running or
generating_spec by a previous process have no agent behind them anymore.
A feature can end up like that when:
- The process crashed mid-run
- The process was killed without graceful shutdown
- The machine went down

This module marks those features failed with the 'interrupted_on_restart'
error so they show up for human follow-up instead of looking busy forever.
Accumulated agent output is kept.

Usage:
    from automode.orphaned_feature_cleanup import cleanup_orphaned_features

    result = await store.run_in_session(
        project_path, lambda s: cleanup_orphaned_features(s, project_path)
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session

from automode.database import ACTIVE_STATUSES, STATUS_FAILED, Feature, _utc_now
from automode.exceptions import InvalidTransition

_logger = logging.getLogger(__name__)

ORPHANED_ERROR_MESSAGE = "interrupted_on_restart"


@dataclass
class OrphanedFeatureInfo:
    """A feature that was found orphaned and marked failed."""

    feature_id: str
    original_status: str
    branch_name: str | None
    started_at: datetime | None

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "original_status": self.original_status,
            "branch_name": self.branch_name,
            "started_at": self.started_at.isoformat() if self.started_at else None,
        }


@dataclass
class CleanupResult:
    """Result of the orphaned feature cleanup for one project."""

    project_path: str | None = None
    total_found: int = 0
    cleaned_count: int = 0
    cleaned_features: list[OrphanedFeatureInfo] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    cleanup_timestamp: datetime = field(default_factory=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_path": self.project_path,
            "total_found": self.total_found,
            "cleaned_count": self.cleaned_count,
            "cleaned_features": [f.to_dict() for f in self.cleaned_features],
            "errors": self.errors,
            "cleanup_timestamp": self.cleanup_timestamp.isoformat(),
        }


def get_orphaned_features(session: Session) -> list[Feature]:
    """Query all features marked running or generating_spec."""
    features = (
        session.query(Feature)
        .filter(Feature.status.in_(ACTIVE_STATUSES))
        .order_by(Feature.position)
        .all()
    )
    _logger.debug("Found %d features in %s status", len(features), "/".join(sorted(ACTIVE_STATUSES)))
    return features


def cleanup_orphaned_features(
    session: Session,
    project_path: str | Path | None = None,
) -> CleanupResult:
    """
    Mark every orphaned feature failed.

    Must only be called when no orchestration loop of this process is
    running for the project, otherwise live runs would be failed too.

    Args:
        session: SQLAlchemy session for the project database (the caller commits)
        project_path: Project the session belongs to, for reporting

    Returns:
        CleanupResult with details of every feature cleaned
    """
    result = CleanupResult(project_path=str(project_path) if project_path else None)

    for feature in get_orphaned_features(session):
        result.total_found += 1
        original_status = feature.status
        try:
            feature.transition_to(STATUS_FAILED, error_message=ORPHANED_ERROR_MESSAGE)
        except InvalidTransition as e:
            result.errors.append(str(e))
            _logger.error("Could not clean orphaned feature %s: %s", feature.id, e)
            continue

        result.cleaned_count += 1
        result.cleaned_features.append(OrphanedFeatureInfo(
            feature_id=feature.id,
            original_status=original_status,
            branch_name=feature.branch_name,
            started_at=feature.started_at,
        ))

    session.flush()

    if result.cleaned_count:
        _logger.info(
            "Marked %d orphaned feature(s) failed in %s",
            result.cleaned_count,
            result.project_path or "project",
        )
    return result
