"""
Workspace Manager
=================

Maps a feature's branch to the git working tree an agent runs in.

- No branch (or the branch checked out in the main checkout) -> the project
  directory itself, the primary workspace.
- Any other branch -> a git worktree, reused if one already exists for the
  branch, otherwise created lazily at ``<project>/.worktrees/<branch>`` with
  "/" replaced by "-".

Worktrees are never removed here. Git work runs in worker threads so a slow
checkout does not hold up loops of other workspaces; any git or filesystem
failure surfaces as WorkspaceUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from git.exc import GitCommandError

from automode.exceptions import GitOperationError, WorkspaceUnavailable
from automode.git_backend import GitBackend

_logger = logging.getLogger(__name__)

DEFAULT_WORKTREES_DIR = ".worktrees"


def worktree_dir_name(branch_name: str) -> str:
    """Directory name used for a branch's worktree."""
    return branch_name.replace("/", "-")


@dataclass(frozen=True)
class Workspace:
    """An isolated working tree bound to one branch."""

    project_path: str
    branch_path: str
    branch_name: str | None
    is_primary: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_path": self.project_path,
            "branch_path": self.branch_path,
            "branch_name": self.branch_name,
            "is_primary": self.is_primary,
        }


class WorkspaceManager:
    """Resolves (project, branch) pairs to workspaces, creating worktrees on demand."""

    def __init__(self, git: GitBackend | None = None, worktrees_dir: str = DEFAULT_WORKTREES_DIR):
        self._git = git or GitBackend()
        self._worktrees_dir = worktrees_dir
        self._creation_locks: dict[tuple[str, str], asyncio.Lock] = {}

    @property
    def git(self) -> GitBackend:
        return self._git

    def worktree_path(self, project_path: str | Path, branch_name: str) -> Path:
        return Path(project_path) / self._worktrees_dir / worktree_dir_name(branch_name)

    async def _call_git(self, project_path: str, branch_name: str | None, fn, *args):
        try:
            return await asyncio.to_thread(fn, *args)
        except (GitOperationError, GitCommandError, OSError) as exc:
            raise WorkspaceUnavailable(project_path, branch_name, str(exc)) from exc

    async def primary_branch(self, project_path: str | Path) -> str | None:
        """Branch checked out in the project's main checkout, if any."""
        project = str(Path(project_path).resolve())
        if not await asyncio.to_thread(self._git.is_repo, project):
            return None
        return await self._call_git(project, None, self._git.current_branch, project)

    async def resolve(self, project_path: str | Path, branch_name: str | None) -> Workspace:
        """
        Return the workspace for ``branch_name``, creating its worktree if needed.

        Raises:
            WorkspaceUnavailable: On any git or filesystem failure
        """
        project = str(Path(project_path).resolve())
        if not Path(project).is_dir():
            raise WorkspaceUnavailable(project, branch_name, "project directory does not exist")

        if branch_name is None:
            current = await self.primary_branch(project)
            return Workspace(project, project, current, True)

        if not await asyncio.to_thread(self._git.is_repo, project):
            raise WorkspaceUnavailable(project, branch_name, "not a git repository")

        current = await self._call_git(project, branch_name, self._git.current_branch, project)
        if current == branch_name:
            return Workspace(project, project, branch_name, True)

        key = (project, branch_name)
        lock = self._creation_locks.setdefault(key, asyncio.Lock())
        async with lock:
            existing = await self._find_worktree(project, branch_name)
            if existing is not None:
                return Workspace(project, existing, branch_name, False)

            path = self.worktree_path(project, branch_name)
            await self._call_git(project, branch_name, self._git.ensure_initial_commit, project)
            created = await self._call_git(
                project, branch_name, self._git.create_worktree, project, path, branch_name
            )
            if not created:
                raise WorkspaceUnavailable(
                    project, branch_name, f"{path} exists but is not a worktree for this branch"
                )
            _logger.info("Workspace for %s ready at %s", branch_name, path)
            return Workspace(project, str(path), branch_name, False)

    async def _find_worktree(self, project: str, branch_name: str) -> str | None:
        worktrees = await self._call_git(project, branch_name, self._git.list_worktrees, project)
        for worktree in worktrees:
            if worktree.branch == branch_name and not worktree.is_main:
                return worktree.path
        return None

    async def list_workspaces(self, project_path: str | Path) -> list[Workspace]:
        """Return the primary workspace plus every existing worktree."""
        project = str(Path(project_path).resolve())
        if not await asyncio.to_thread(self._git.is_repo, project):
            return [Workspace(project, project, None, True)]

        worktrees = await self._call_git(project, None, self._git.list_worktrees, project)
        workspaces = []
        for worktree in worktrees:
            workspaces.append(Workspace(
                project_path=project,
                branch_path=project if worktree.is_main else worktree.path,
                branch_name=worktree.branch,
                is_primary=worktree.is_main,
            ))
        return workspaces or [Workspace(project, project, None, True)]

    async def list_branches(self, project_path: str | Path) -> list[dict]:
        project = str(Path(project_path).resolve())
        branches = await self._call_git(project, None, self._git.list_branches, project)
        return [b.to_dict() for b in branches]
