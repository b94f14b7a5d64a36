"""
Auto-Mode Exceptions
====================

Error taxonomy for the feature orchestration engine.

- CycleDetected: dependency resolver found a cycle (non-fatal, node excluded)
- InvalidTransition: feature store rejected a status write
- FeatureNotFound: feature id unknown to the project store
- WorkspaceUnavailable: git/filesystem failure resolving a workspace
- ProviderTransportError: network/process failure talking to an agent backend
- MaxTurnsReached: soft failure, partial output retained
- StructuredOutputExhausted: hard failure for one invocation
- LoopAlreadyRunning: a loop is already active for the workspace
- GitOperationError: a git command failed (wrapped as WorkspaceUnavailable)
- AgentExecutionError: the agent ended its query with an error result
"""

from __future__ import annotations

from typing import Sequence


class AutoModeError(Exception):
    """Base class for all orchestration engine errors."""


class CycleDetected(AutoModeError):
    """
    Raised (or reported) when a feature's dependency chain cycles back to itself.

    The resolver never raises this on its own; it excludes cyclic features
    from the ordering and exposes one instance per cycle so callers can
    decide whether to treat the condition as fatal.
    """

    def __init__(self, cycle: Sequence[str], message: str | None = None):
        self.cycle = list(cycle)

        if message is None:
            path = " -> ".join(str(fid) for fid in self.cycle)
            if self.cycle:
                path = f"{path} -> {self.cycle[0]}"
            message = f"Circular dependency detected: {path}"

        super().__init__(message)


class InvalidTransition(AutoModeError):
    """
    Raised when an illegal status transition is requested for a feature.

    The record is left unchanged; callers should re-read current state.
    """

    def __init__(
        self,
        feature_id: str,
        current_state: str,
        target_state: str,
        message: str | None = None,
    ):
        self.feature_id = feature_id
        self.current_state = current_state
        self.target_state = target_state

        if message is None:
            # Local import avoids a cycle with the models module
            from automode.database import VALID_STATUS_TRANSITIONS

            valid_targets = VALID_STATUS_TRANSITIONS.get(current_state, frozenset())
            if valid_targets:
                valid_str = ", ".join(sorted(valid_targets))
                message = (
                    f"Invalid status transition for feature {feature_id}: "
                    f"'{current_state}' -> '{target_state}'. "
                    f"Valid transitions from '{current_state}': {valid_str}"
                )
            else:
                message = (
                    f"Invalid status transition for feature {feature_id}: "
                    f"'{current_state}' -> '{target_state}'. "
                    f"'{current_state}' is a terminal state with no valid transitions."
                )

        super().__init__(message)


class FeatureNotFound(AutoModeError):
    """Raised when a feature id does not exist in the project store."""

    def __init__(self, project_path: str, feature_id: str):
        self.project_path = project_path
        self.feature_id = feature_id
        super().__init__(f"Feature '{feature_id}' not found in {project_path}")


class WorkspaceUnavailable(AutoModeError):
    """Raised when a workspace (main checkout or worktree) cannot be resolved."""

    def __init__(
        self,
        project_path: str,
        branch_name: str | None,
        reason: str,
    ):
        self.project_path = project_path
        self.branch_name = branch_name
        self.reason = reason
        target = branch_name or "primary workspace"
        super().__init__(f"Workspace unavailable for {target} in {project_path}: {reason}")


class ProviderTransportError(AutoModeError):
    """Raised on network/process failures while talking to an agent backend."""

    def __init__(self, provider: str, message: str):
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class MaxTurnsReached(AutoModeError):
    """Agent exhausted its turn budget. Partial output is still usable."""

    def __init__(self, max_turns: int | None = None, partial_output: str = ""):
        self.max_turns = max_turns
        self.partial_output = partial_output
        if max_turns:
            message = f"Agent reached the maximum number of turns ({max_turns})"
        else:
            message = "Agent reached the maximum number of turns"
        super().__init__(message)


class StructuredOutputExhausted(AutoModeError):
    """Agent could not produce valid structured output after all retries."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message or "Could not produce valid structured output after maximum retries"
        )


class LoopAlreadyRunning(AutoModeError):
    """Raised when starting a loop for a workspace that already has one."""

    def __init__(self, project_path: str, branch_name: str | None):
        self.project_path = project_path
        self.branch_name = branch_name
        target = branch_name or "main"
        super().__init__(f"Auto mode is already running for {project_path} ({target})")


class GitOperationError(AutoModeError):
    """A git command the engine depends on failed."""

    def __init__(self, path: str, message: str):
        self.path = path
        super().__init__(f"{message} ({path})")


class AgentExecutionError(AutoModeError):
    """The agent finished its query with an error result."""

    def __init__(self, subtype: str, message: str | None = None):
        self.subtype = subtype
        super().__init__(message or f"Agent run failed ({subtype})")
