"""
Git Backend
===========

The handful of git operations the engine needs, built on GitPython:
repository detection, first-commit bootstrap, worktree creation/listing
and branch status (ahead/behind upstream).

All methods are blocking; the workspace manager runs them in worker
threads. Failures raise GitOperationError.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from automode.exceptions import GitOperationError

_logger = logging.getLogger(__name__)

INITIAL_COMMIT_MESSAGE = "chore: automaker initial commit"


@dataclass
class BranchInfo:
    name: str
    is_current: bool
    upstream: str | None = None
    ahead: int = 0
    behind: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "is_current": self.is_current,
            "upstream": self.upstream,
            "ahead": self.ahead,
            "behind": self.behind,
        }


@dataclass
class WorktreeInfo:
    path: str
    branch: str | None
    head: str | None
    is_main: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "branch": self.branch,
            "head": self.head,
            "is_main": self.is_main,
        }


def _open_repo(path: str | Path) -> Repo:
    try:
        return Repo(str(path), search_parent_directories=True)
    except (InvalidGitRepositoryError, NoSuchPathError) as exc:
        raise GitOperationError(str(path), "Not a git repository") from exc


def parse_worktree_porcelain(output: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""
    worktrees: list[WorktreeInfo] = []
    current: dict[str, Any] = {}

    def flush():
        if current.get("path"):
            worktrees.append(WorktreeInfo(
                path=current["path"],
                branch=current.get("branch"),
                head=current.get("head"),
                is_main=not worktrees,
            ))
        current.clear()

    for line in output.splitlines():
        line = line.strip()
        if not line:
            flush()
            continue
        key, _, value = line.partition(" ")
        if key == "worktree":
            flush()
            current["path"] = value
        elif key == "HEAD":
            current["head"] = value
        elif key == "branch":
            current["branch"] = value.removeprefix("refs/heads/")
    flush()
    return worktrees


class GitBackend:
    """Version-control collaborator used by the workspace manager."""

    def is_repo(self, path: str | Path) -> bool:
        """Check whether ``path`` is inside a git work tree."""
        try:
            repo = Repo(str(path), search_parent_directories=True)
        except (InvalidGitRepositoryError, NoSuchPathError):
            return False
        return not repo.bare

    def current_branch(self, path: str | Path) -> str | None:
        """Return the checked-out branch, or None when HEAD is detached or unborn."""
        repo = _open_repo(path)
        try:
            name = repo.git.rev_parse("--abbrev-ref", "HEAD").strip()
        except GitCommandError:
            return None
        return None if name == "HEAD" else name

    def ensure_initial_commit(self, path: str | Path) -> bool:
        """
        Make sure HEAD points at a commit so worktrees can branch from it.

        Returns:
            True if an empty initial commit was created, False if one existed
        """
        repo = _open_repo(path)
        try:
            repo.git.rev_parse("--verify", "HEAD")
            return False
        except GitCommandError:
            pass

        try:
            repo.git.commit("--allow-empty", "-m", INITIAL_COMMIT_MESSAGE)
        except GitCommandError as exc:
            raise GitOperationError(
                str(path),
                "Failed to create initial git commit. Please commit manually and retry.",
            ) from exc

        _logger.info("Created initial commit in %s", path)
        return True

    def create_worktree(
        self,
        project_path: str | Path,
        worktree_path: str | Path,
        branch_name: str,
    ) -> bool:
        """
        Create a worktree for ``branch_name`` at ``worktree_path``.

        A new branch is created from HEAD; if the branch already exists it is
        checked out instead.

        Returns:
            True if created, False if a worktree already exists there
        """
        worktree_path = Path(worktree_path)
        if worktree_path.exists() and any(worktree_path.iterdir()):
            _logger.info("Worktree %s exists, skipping creation", worktree_path)
            return False

        repo = _open_repo(project_path)
        worktree_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            repo.git.worktree("add", str(worktree_path), "-b", branch_name)
        except GitCommandError:
            # Branch may already exist without a worktree
            try:
                repo.git.worktree("add", str(worktree_path), branch_name)
            except GitCommandError as exc:
                raise GitOperationError(
                    str(worktree_path),
                    f"Failed to create worktree for branch '{branch_name}'",
                ) from exc

        _logger.info("Created worktree for %s at %s", branch_name, worktree_path)
        return True

    def list_worktrees(self, project_path: str | Path) -> list[WorktreeInfo]:
        repo = _open_repo(project_path)
        try:
            output = repo.git.worktree("list", "--porcelain")
        except GitCommandError as exc:
            raise GitOperationError(str(project_path), "Failed to list worktrees") from exc
        return parse_worktree_porcelain(output)

    def list_branches(self, project_path: str | Path) -> list[BranchInfo]:
        """List local branches with ahead/behind counts against their upstream."""
        repo = _open_repo(project_path)
        current = self.current_branch(project_path)
        branches = []

        for head in repo.heads:
            info = BranchInfo(name=head.name, is_current=head.name == current)
            tracking = head.tracking_branch()
            if tracking is not None:
                info.upstream = tracking.name
                try:
                    counts = repo.git.rev_list(
                        "--left-right", "--count", f"{head.name}...{tracking.name}"
                    )
                    ahead, behind = counts.split()
                    info.ahead, info.behind = int(ahead), int(behind)
                except (GitCommandError, ValueError):
                    _logger.debug("No ahead/behind info for %s", head.name)
            branches.append(info)

        return branches
