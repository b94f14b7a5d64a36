"""
Feature Store
=============

Durable, per-project CRUD over feature records with guarded status
transitions.

Every project has its own SQLite database (see automode.database). Writes
for one project are serialized through a per-project asyncio.Lock, and the
blocking SQLAlchemy work runs in a worker thread so a slow disk never stalls
loops that belong to other workspaces. Each write is a single
read-modify-write transaction: the row is loaded, validated against the
status state machine and committed, or the transaction is rolled back and
the row stays untouched.

Usage:
    store = FeatureStore()
    feature = await store.create(project_path, description="Add login form")
    await store.set_status(project_path, feature["id"], "running")
"""

from __future__ import annotations

import asyncio
import logging
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterator

from sqlalchemy import func
from sqlalchemy.orm import Session, sessionmaker

from automode.database import (
    ACTIVE_STATUSES,
    PLANNING_MODES,
    STATUS_COMPLETED,
    STATUS_PENDING,
    STATUS_READY,
    STATUS_VERIFIED,
    Feature,
    _utc_now,
    create_database,
)
from automode.exceptions import FeatureNotFound, InvalidTransition

_logger = logging.getLogger(__name__)

# Fields callers may set through create()/update()/set_status()
MUTABLE_FIELDS = frozenset({
    "category",
    "title",
    "description",
    "priority",
    "dependencies",
    "branch_name",
    "model",
    "skip_tests",
    "planning_mode",
    "require_plan_approval",
    "plan_spec",
    "agent_output",
    "summary",
    "error",
})

ARCHIVABLE_STATUSES = frozenset({STATUS_COMPLETED, STATUS_VERIFIED})


def _normalize_project(project_path: str | Path) -> str:
    return str(Path(project_path).resolve())


def _validate_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown or read-only feature fields: {', '.join(sorted(unknown))}")

    priority = fields.get("priority")
    if priority is not None and (isinstance(priority, bool) or priority not in (1, 2, 3)):
        raise ValueError(f"priority must be 1, 2, 3 or None, got {priority!r}")

    mode = fields.get("planning_mode")
    if mode is not None and mode not in PLANNING_MODES:
        raise ValueError(f"planning_mode must be one of {PLANNING_MODES}, got {mode!r}")

    deps = fields.get("dependencies")
    if deps is not None and not isinstance(deps, (list, tuple)):
        raise ValueError("dependencies must be a list of feature ids")


class FeatureStore:
    """
    Async feature store over per-project SQLite databases.

    Reads return plain dicts (Feature.to_dict()) so callers never hold ORM
    instances across await points.
    """

    def __init__(self, session_factory: Callable[[Path], sessionmaker] | None = None):
        # Factory is injectable so tests can point at in-memory engines
        self._session_factory = session_factory or (lambda p: create_database(p)[1])
        self._session_makers: dict[str, sessionmaker] = {}
        self._makers_lock = threading.Lock()
        self._project_locks: dict[str, asyncio.Lock] = {}

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _get_session_maker(self, project_path: str) -> sessionmaker:
        with self._makers_lock:
            maker = self._session_makers.get(project_path)
            if maker is None:
                _logger.debug("Opening feature database for %s", project_path)
                maker = self._session_factory(Path(project_path))
                self._session_makers[project_path] = maker
            return maker

    def _project_lock(self, project_path: str) -> asyncio.Lock:
        lock = self._project_locks.get(project_path)
        if lock is None:
            lock = asyncio.Lock()
            self._project_locks[project_path] = lock
        return lock

    @contextmanager
    def _session(self, project_path: str) -> Iterator[Session]:
        session = self._get_session_maker(project_path)()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    async def _read(self, project_path: str | Path, fn: Callable[[Session], Any]) -> Any:
        key = _normalize_project(project_path)

        def work():
            with self._session(key) as session:
                return fn(session)

        return await asyncio.to_thread(work)

    async def _write(self, project_path: str | Path, fn: Callable[[Session, str], Any]) -> Any:
        key = _normalize_project(project_path)

        def work():
            with self._session(key) as session:
                return fn(session, key)

        async with self._project_lock(key):
            return await asyncio.to_thread(work)

    @staticmethod
    def _load(session: Session, project_path: str, feature_id: str) -> Feature:
        feature = session.get(Feature, feature_id)
        if feature is None:
            raise FeatureNotFound(project_path, feature_id)
        return feature

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list(self, project_path: str | Path, include_archived: bool = False) -> list[dict]:
        """Return all features of a project in insertion order."""

        def query(session: Session) -> list[dict]:
            q = session.query(Feature)
            if not include_archived:
                q = q.filter(Feature.archived.is_(False))
            return [f.to_dict() for f in q.order_by(Feature.position, Feature.created_at)]

        return await self._read(project_path, query)

    async def get(self, project_path: str | Path, feature_id: str) -> dict | None:
        """Return one feature, or None when it does not exist."""

        def query(session: Session) -> dict | None:
            feature = session.get(Feature, feature_id)
            return feature.to_dict() if feature else None

        return await self._read(project_path, query)

    async def get_running(self, project_path: str | Path) -> list[dict]:
        """Return features currently marked running or generating a plan."""

        def query(session: Session) -> list[dict]:
            rows = session.query(Feature).filter(Feature.status.in_(ACTIVE_STATUSES))
            return [f.to_dict() for f in rows.order_by(Feature.position)]

        return await self._read(project_path, query)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def create(
        self,
        project_path: str | Path,
        *,
        feature_id: str | None = None,
        status: str = STATUS_PENDING,
        **fields: Any,
    ) -> dict:
        """
        Create a feature. New features start in 'pending' or 'ready'.

        Raises:
            ValueError: On unknown fields, bad values or a non-initial status
        """
        if status not in (STATUS_PENDING, STATUS_READY):
            raise ValueError(f"New features must start as pending or ready, not '{status}'")
        _validate_fields(fields)
        if "dependencies" in fields:
            fields["dependencies"] = [str(d) for d in fields["dependencies"]]

        def work(session: Session, key: str) -> dict:
            next_position = (session.query(func.max(Feature.position)).scalar() or 0) + 1
            feature = Feature(status=status, position=next_position, **fields)
            if feature_id:
                if session.get(Feature, feature_id) is not None:
                    raise ValueError(f"Feature '{feature_id}' already exists")
                feature.id = feature_id
            session.add(feature)
            session.flush()
            _logger.info("Created feature %s in %s", feature.id, key)
            return feature.to_dict()

        return await self._write(project_path, work)

    async def update(self, project_path: str | Path, feature_id: str, **fields: Any) -> dict:
        """
        Update non-status fields of a feature.

        Raises:
            FeatureNotFound: If the feature does not exist
            ValueError: On unknown fields or bad values
        """
        _validate_fields(fields)

        def work(session: Session, key: str) -> dict:
            feature = self._load(session, key, feature_id)
            for name, value in fields.items():
                setattr(feature, name, value)
            session.flush()
            return feature.to_dict()

        return await self._write(project_path, work)

    async def set_status(
        self,
        project_path: str | Path,
        feature_id: str,
        new_status: str,
        *,
        error_message: str | None = None,
        **fields: Any,
    ) -> dict:
        """
        Atomically move a feature to ``new_status`` and apply ``fields``.

        Raises:
            InvalidTransition: If the state machine forbids the move; the
                record is left unchanged
            FeatureNotFound: If the feature does not exist
        """
        _validate_fields(fields)

        def work(session: Session, key: str) -> dict:
            feature = self._load(session, key, feature_id)
            feature.transition_to(new_status, error_message=error_message)
            for name, value in fields.items():
                setattr(feature, name, value)
            session.flush()
            return feature.to_dict()

        try:
            return await self._write(project_path, work)
        except InvalidTransition as e:
            _logger.warning("Rejected status write: %s", e)
            raise

    async def archive(self, project_path: str | Path, feature_id: str) -> dict:
        """
        Soft-delete a completed or verified feature.

        Raises:
            InvalidTransition: If the feature has not finished yet
            FeatureNotFound: If the feature does not exist
        """

        def work(session: Session, key: str) -> dict:
            feature = self._load(session, key, feature_id)
            if feature.status not in ARCHIVABLE_STATUSES:
                raise InvalidTransition(
                    feature_id=feature_id,
                    current_state=feature.status,
                    target_state="archived",
                    message=(
                        f"Feature {feature_id} is '{feature.status}'; only completed "
                        f"or verified features can be archived"
                    ),
                )
            if not feature.archived:
                feature.archived = True
                feature.archived_at = _utc_now()
                _logger.info("Archived feature %s in %s", feature_id, key)
            session.flush()
            return feature.to_dict()

        return await self._write(project_path, work)

    async def run_in_session(
        self,
        project_path: str | Path,
        fn: Callable[[Session], Any],
    ) -> Any:
        """Run ``fn`` inside one serialized write transaction for the project."""
        return await self._write(project_path, lambda session, _key: fn(session))
