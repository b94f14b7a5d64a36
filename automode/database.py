"""
Database Models and Connection
==============================

Per-project SQLite schema for feature storage using SQLAlchemy.

Each project keeps its features in ``<project>/.automaker/features.db``.
The Feature model carries its own status state machine: only transitions
listed in VALID_STATUS_TRANSITIONS are accepted, everything else raises
InvalidTransition and leaves the row untouched.
"""
from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.types import JSON

from automode.exceptions import InvalidTransition

_logger = logging.getLogger(__name__)

Base = declarative_base()

# Directory inside each project that holds engine state
DATA_DIR_NAME = ".automaker"
DATABASE_FILENAME = "features.db"


def _utc_now() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def generate_feature_id() -> str:
    """Return a new stable feature identifier."""
    return f"feature-{uuid.uuid4().hex[:12]}"


# =============================================================================
# Status State Machine
# =============================================================================

STATUS_PENDING = "pending"
STATUS_READY = "ready"
STATUS_RUNNING = "running"
STATUS_GENERATING_SPEC = "generating_spec"
STATUS_WAITING_APPROVAL = "waiting_approval"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_VERIFIED = "verified"

FEATURE_STATUSES = (
    STATUS_PENDING,
    STATUS_READY,
    STATUS_RUNNING,
    STATUS_GENERATING_SPEC,
    STATUS_WAITING_APPROVAL,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_VERIFIED,
)

# A dependency in one of these stops blocking its dependents
TERMINAL_SUCCESS_STATUSES = frozenset({STATUS_COMPLETED, STATUS_VERIFIED})

# Statuses a feature may be picked up from by the orchestration loop
RUNNABLE_STATUSES = frozenset({STATUS_PENDING, STATUS_READY})

# Statuses that mean an agent is (or was, before a crash) working on the feature
ACTIVE_STATUSES = frozenset({STATUS_RUNNING, STATUS_GENERATING_SPEC})

# Valid status transitions adjacency map
# running/generating_spec -> pending/ready only exist to revert a cancelled run
VALID_STATUS_TRANSITIONS: dict[str, frozenset[str]] = {
    STATUS_PENDING: frozenset({STATUS_READY, STATUS_RUNNING, STATUS_GENERATING_SPEC}),
    STATUS_READY: frozenset({STATUS_PENDING, STATUS_RUNNING, STATUS_GENERATING_SPEC}),
    STATUS_RUNNING: frozenset({
        STATUS_COMPLETED, STATUS_WAITING_APPROVAL, STATUS_FAILED,
        STATUS_PENDING, STATUS_READY,
    }),
    STATUS_GENERATING_SPEC: frozenset({
        STATUS_WAITING_APPROVAL, STATUS_RUNNING, STATUS_FAILED,
        STATUS_PENDING, STATUS_READY,
    }),
    STATUS_WAITING_APPROVAL: frozenset({
        STATUS_COMPLETED, STATUS_VERIFIED, STATUS_RUNNING,
        STATUS_PENDING, STATUS_READY,
    }),
    STATUS_COMPLETED: frozenset({STATUS_VERIFIED, STATUS_PENDING}),
    STATUS_FAILED: frozenset({STATUS_PENDING, STATUS_READY}),
    STATUS_VERIFIED: frozenset(),  # Terminal
}

PLANNING_MODES = ("skip", "spec")
DEFAULT_PRIORITY = 2


class Feature(Base):
    """A unit of work dispatched to a coding agent."""

    __tablename__ = "features"

    __table_args__ = (
        Index("ix_feature_status_branch", "status", "branch_name"),
    )

    id = Column(String(64), primary_key=True, default=generate_feature_id)
    # Insertion order, used as the stable tie-breaker when ordering
    position = Column(Integer, nullable=False, default=0, index=True)
    category = Column(String(100), nullable=False, default="Uncategorized")
    title = Column(String(255), nullable=True)
    description = Column(Text, nullable=False, default="")
    # 1=high .. 3=low, NULL sorts as DEFAULT_PRIORITY
    priority = Column(Integer, nullable=True)
    status = Column(String(32), nullable=False, default=STATUS_PENDING, index=True)
    dependencies = Column(JSON, nullable=True, default=None)
    # NULL = primary workspace
    branch_name = Column(String(255), nullable=True)
    model = Column(String(100), nullable=True)

    # Policy
    skip_tests = Column(Boolean, nullable=False, default=False)
    planning_mode = Column(String(16), nullable=False, default="skip")
    require_plan_approval = Column(Boolean, nullable=False, default=False)
    # {"status": ..., "content": ..., "generated_at": ..., "approved_at": ...}
    plan_spec = Column(JSON, nullable=True, default=None)

    # Execution record
    started_at = Column(DateTime, nullable=True)
    error = Column(Text, nullable=True)
    agent_output = Column(Text, nullable=True)
    summary = Column(Text, nullable=True)

    archived = Column(Boolean, nullable=False, default=False, index=True)
    archived_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=_utc_now)
    updated_at = Column(DateTime, nullable=False, default=_utc_now, onupdate=_utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert feature to dictionary for JSON serialization."""
        return {
            "id": self.id,
            "position": self.position,
            "category": self.category,
            "title": self.title,
            "description": self.description,
            "priority": self.priority,
            "status": self.status,
            "dependencies": self.get_dependencies_safe(),
            "branch_name": self.branch_name,
            "model": self.model,
            "skip_tests": bool(self.skip_tests),
            "planning_mode": self.planning_mode or "skip",
            "require_plan_approval": bool(self.require_plan_approval),
            "plan_spec": self.plan_spec,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "error": self.error,
            "agent_output": self.agent_output,
            "summary": self.summary,
            "archived": bool(self.archived),
            "archived_at": self.archived_at.isoformat() if self.archived_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    def get_dependencies_safe(self) -> list[str]:
        """Safely extract dependencies, handling NULL and malformed data."""
        if not isinstance(self.dependencies, list):
            return []
        return [str(d) for d in self.dependencies if isinstance(d, (str, int))]

    @property
    def is_terminal_success(self) -> bool:
        return self.status in TERMINAL_SUCCESS_STATUSES

    def can_transition_to(self, target_status: str) -> bool:
        """Check if a transition to the target status is valid."""
        return target_status in VALID_STATUS_TRANSITIONS.get(self.status, frozenset())

    def get_valid_transitions(self) -> frozenset[str]:
        return VALID_STATUS_TRANSITIONS.get(self.status, frozenset())

    def transition_to(self, target_status: str, *, error_message: str | None = None) -> datetime:
        """
        Transition the feature to a new status with validation.

        Must be called inside a database transaction; on failure nothing
        on the instance is modified.

        Args:
            target_status: The status to transition to
            error_message: Error to record (only applied for 'failed')

        Returns:
            The timestamp of the transition

        Raises:
            InvalidTransition: If the transition is not allowed
            ValueError: If target_status is not a recognized status
        """
        if target_status not in FEATURE_STATUSES:
            raise ValueError(
                f"Unknown status '{target_status}'. "
                f"Valid statuses: {', '.join(FEATURE_STATUSES)}"
            )

        if not self.can_transition_to(target_status):
            raise InvalidTransition(
                feature_id=self.id,
                current_state=self.status,
                target_state=target_status,
            )

        old_status = self.status
        transition_time = _utc_now()
        self.status = target_status

        if target_status in ACTIVE_STATUSES:
            self.started_at = transition_time

        if target_status == STATUS_FAILED:
            self.error = error_message
        elif old_status == STATUS_FAILED:
            # Retried: the previous failure no longer describes the record
            self.error = None

        _logger.info(
            "Feature %s: status transition '%s' -> '%s' at %s",
            self.id,
            old_status,
            target_status,
            transition_time.isoformat(),
        )
        return transition_time


# =============================================================================
# Connection
# =============================================================================

def get_data_dir(project_dir: Path) -> Path:
    """Return the engine data directory for a project."""
    return Path(project_dir) / DATA_DIR_NAME


def get_database_path(project_dir: Path) -> Path:
    """Return the path to the SQLite database for a project."""
    return get_data_dir(project_dir) / DATABASE_FILENAME


def get_database_url(project_dir: Path) -> str:
    """Return the SQLAlchemy database URL for a project.

    Uses POSIX-style paths (forward slashes) for cross-platform compatibility.
    """
    return f"sqlite:///{get_database_path(project_dir).as_posix()}"


# Columns added after the first schema release, with their DDL
_ADDITIVE_COLUMNS = {
    "title": "VARCHAR(255) DEFAULT NULL",
    "model": "VARCHAR(100) DEFAULT NULL",
    "planning_mode": "VARCHAR(16) DEFAULT 'skip'",
    "require_plan_approval": "BOOLEAN DEFAULT 0",
    "plan_spec": "TEXT DEFAULT NULL",
    "summary": "TEXT DEFAULT NULL",
}


def _migrate_add_missing_columns(engine) -> None:
    """Add columns introduced after a database was first created."""
    with engine.connect() as conn:
        result = conn.execute(text("PRAGMA table_info(features)"))
        columns = {row[1] for row in result.fetchall()}

        for name, ddl in _ADDITIVE_COLUMNS.items():
            if name not in columns:
                _logger.info("Migrating features table: adding column %s", name)
                conn.execute(text(f"ALTER TABLE features ADD COLUMN {name} {ddl}"))
        conn.commit()


def _migrate_fix_null_fields(engine) -> None:
    """Normalize NULLs left behind in non-nullable flag columns."""
    with engine.connect() as conn:
        conn.execute(text("UPDATE features SET archived = 0 WHERE archived IS NULL"))
        conn.execute(text("UPDATE features SET skip_tests = 0 WHERE skip_tests IS NULL"))
        conn.execute(text(
            "UPDATE features SET planning_mode = 'skip' WHERE planning_mode IS NULL"
        ))
        conn.commit()


def _is_network_path(path: Path) -> bool:
    """Detect if path is on a network filesystem.

    WAL mode is unreliable on NFS/SMB/CIFS, so callers fall back to DELETE.
    """
    path_str = str(Path(path).resolve())

    if sys.platform == "win32":
        return path_str.startswith("\\\\")

    try:
        with open("/proc/mounts", "r") as f:
            mounts = f.read()
    except (FileNotFoundError, PermissionError):
        return False

    # Longest matching mount point wins
    best_match = ""
    best_type = ""
    for line in mounts.splitlines():
        parts = line.split()
        if len(parts) < 3:
            continue
        mount_point, fs_type = parts[1], parts[2]
        if path_str.startswith(mount_point) and len(mount_point) > len(best_match):
            best_match, best_type = mount_point, fs_type

    return best_type in ("nfs", "nfs4", "cifs", "smbfs", "fuse.sshfs")


def create_database(project_dir: Path) -> tuple:
    """
    Create database and return engine + session maker.

    Args:
        project_dir: Root directory of the project

    Returns:
        Tuple of (engine, SessionLocal)
    """
    project_dir = Path(project_dir)
    get_data_dir(project_dir).mkdir(parents=True, exist_ok=True)

    engine = create_engine(get_database_url(project_dir), connect_args={
        "check_same_thread": False,
        "timeout": 30,  # Wait up to 30s for locks
    })
    Base.metadata.create_all(bind=engine)

    journal_mode = "DELETE" if _is_network_path(project_dir) else "WAL"

    with engine.connect() as conn:
        conn.execute(text(f"PRAGMA journal_mode={journal_mode}"))
        conn.execute(text("PRAGMA busy_timeout=30000"))
        conn.commit()

    _migrate_add_missing_columns(engine)
    _migrate_fix_null_fields(engine)

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    return engine, SessionLocal
