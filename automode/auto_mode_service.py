"""
Auto-Mode Service
=================

Per-workspace scheduling loops that pick eligible features, run them
through an agent and record the outcome.

One WorkspaceLoop exists per (project, workspace) pair. Each loop is its
own asyncio task and works strictly sequentially:

    idle -> selecting -> running -> (awaiting_approval) -> selecting ...
                      \\-> idle (nothing eligible: park until re-triggered)
    any -> stopping -> idle (stop requested)

Loops of different workspaces run concurrently with no shared lock; the
feature store serializes their writes per project.

Per-feature execution:
1. The feature is marked running (or generating_spec) durably before the
   agent starts.
2. Provider events are streamed, accumulated on the RunContext and emitted
   to subscribers.
3. Success -> completed, or waiting_approval when the feature has no tests
4. Max turns -> failed, partial output kept, no automatic retry
5. Any other error -> failed with the error message
6. Stop -> the feature goes back to the status it had before the run

The loop is the failure boundary: errors from the store, the workspace
manager or the gateway are recorded on the feature / loop status and never
escape the loop task.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Optional

from automode import events as ev
from automode.config import AutoModeConfig
from automode.database import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_GENERATING_SPEC,
    STATUS_PENDING,
    STATUS_READY,
    STATUS_RUNNING,
    STATUS_VERIFIED,
    STATUS_WAITING_APPROVAL,
)
from automode.dependency_resolver import get_ready_features, resolve_dependencies
from automode.events import EventEmitter
from automode.exceptions import (
    AgentExecutionError,
    FeatureNotFound,
    InvalidTransition,
    LoopAlreadyRunning,
    MaxTurnsReached,
    StructuredOutputExhausted,
    WorkspaceUnavailable,
)
from automode.feature_store import FeatureStore
from automode.orphaned_feature_cleanup import CleanupResult, cleanup_orphaned_features
from automode.prompts import build_feature_prompt, build_planning_prompt, get_system_prompt
from automode.providers.base import (
    AssistantText,
    ExecuteOptions,
    ProviderEvent,
    ResultError,
    ResultSuccess,
    Thinking,
    ToolUse,
)
from automode.providers.gateway import (
    ProviderGateway,
    QueryResult,
    build_query_options,
    require_complete,
    simple_query,
)
from automode.settings import GlobalSettings, SettingsProvider, StaticSettingsProvider
from automode.workspace_manager import Workspace, WorkspaceManager

_logger = logging.getLogger(__name__)

# Loop states
LOOP_IDLE = "idle"
LOOP_SELECTING = "selecting"
LOOP_RUNNING = "running"
LOOP_AWAITING_APPROVAL = "awaiting_approval"
LOOP_STOPPING = "stopping"

# Run outcomes
OUTCOME_COMPLETED = "completed"
OUTCOME_WAITING_APPROVAL = "waiting_approval"
OUTCOME_FAILED = "failed"
OUTCOME_CANCELLED = "cancelled"
OUTCOME_SKIPPED = "skipped"

# Stored output is capped so one runaway agent cannot bloat the database
MAX_STORED_OUTPUT_CHARS = 200_000
MAX_SUMMARY_CHARS = 2_000

PLAN_GENERATED = "generated"
PLAN_APPROVED = "approved"
PLAN_REJECTED = "rejected"


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _clip(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[-limit:]


LoopKey = tuple[str, Optional[str]]


@dataclass
class RunContext:
    """State of one agent invocation, owned by its loop."""

    feature_id: str
    workspace: Workspace
    model: str
    prior_status: str
    phase: str = "implement"  # or "planning"
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    task: asyncio.Task | None = None
    text: str = ""
    tool_uses: list[ToolUse] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)

    def cancel(self) -> None:
        self.cancel_event.set()
        if self.task is not None and not self.task.done():
            self.task.cancel()

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_id": self.feature_id,
            "project_path": self.workspace.project_path,
            "branch_name": self.workspace.branch_name,
            "workspace_path": self.workspace.branch_path,
            "model": self.model,
            "phase": self.phase,
            "tool_uses": len(self.tool_uses),
            "elapsed_seconds": round(time.monotonic() - self.started_at, 1),
        }


@dataclass
class ProjectLoopStatus:
    """Read-only snapshot of one workspace loop."""

    project_path: str
    branch_name: str | None
    is_auto_loop_running: bool
    state: str = LOOP_IDLE
    continuous: bool = True
    running_feature_id: str | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "project_path": self.project_path,
            "branch_name": self.branch_name,
            "is_auto_loop_running": self.is_auto_loop_running,
            "state": self.state,
            "continuous": self.continuous,
            "running_feature_id": self.running_feature_id,
            "last_error": self.last_error,
        }


@dataclass
class RunOutcome:
    kind: str
    error: str | None = None


class WorkspaceLoop:
    """Scheduling state for one (project, workspace) pair."""

    def __init__(self, project_path: str, branch_name: str | None, continuous: bool):
        self.project_path = project_path
        self.branch_name = branch_name
        self.continuous = continuous
        self.state = LOOP_IDLE
        self.primary_branch: str | None = None
        self.run_context: RunContext | None = None
        self.last_error: str | None = None
        self.stop_requested = False
        self.wake = asyncio.Event()
        self.task: asyncio.Task | None = None

    @property
    def key(self) -> LoopKey:
        return (self.project_path, self.branch_name)

    def request_stop(self) -> None:
        self.stop_requested = True
        self.state = LOOP_STOPPING
        self.wake.set()
        if self.run_context is not None:
            self.run_context.cancel()

    def status(self) -> ProjectLoopStatus:
        return ProjectLoopStatus(
            project_path=self.project_path,
            branch_name=self.branch_name if self.branch_name is not None else self.primary_branch,
            is_auto_loop_running=True,
            state=self.state,
            continuous=self.continuous,
            running_feature_id=self.run_context.feature_id if self.run_context else None,
            last_error=self.last_error,
        )


class AutoModeService:
    """
    Runs and tracks orchestration loops across projects and workspaces.

    All collaborators are injected so the service can run against fakes.
    """

    def __init__(
        self,
        config: AutoModeConfig | None = None,
        store: FeatureStore | None = None,
        workspaces: WorkspaceManager | None = None,
        gateway: ProviderGateway | None = None,
        settings: SettingsProvider | None = None,
        emitter: EventEmitter | None = None,
    ):
        self.config = config or AutoModeConfig()
        self.store = store or FeatureStore()
        self.workspaces = workspaces or WorkspaceManager(worktrees_dir=self.config.worktrees_dir)
        self.gateway = gateway or ProviderGateway()
        self.settings = settings or StaticSettingsProvider()
        self.emitter = emitter or EventEmitter()
        self._loops: dict[LoopKey, WorkspaceLoop] = {}
        # (project, feature id) pairs bound to a live loop
        self._reserved: set[tuple[str, str]] = set()
        self._recovered_projects: set[str] = set()

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _normalize(project_path: str | Path) -> str:
        return str(Path(project_path).resolve())

    def _emit(self, event_type: str, loop: WorkspaceLoop, **fields: Any) -> None:
        self.emitter.emit(
            event_type,
            project_path=loop.project_path,
            branch_name=loop.branch_name,
            **fields,
        )

    async def _primary_branch(self, project: str) -> str | None:
        try:
            return await self.workspaces.primary_branch(project)
        except WorkspaceUnavailable as e:
            _logger.debug("Could not read primary branch of %s: %s", project, e)
            return None

    async def _get_settings(self) -> GlobalSettings:
        try:
            return await self.settings.get_global_settings()
        except Exception as e:
            _logger.warning("Settings unavailable, using defaults: %s", e)
            return GlobalSettings()

    def _find_loop(self, project: str, branch_name: str | None) -> WorkspaceLoop | None:
        loop = self._loops.get((project, branch_name))
        if loop is not None:
            return loop
        if branch_name is not None:
            primary = self._loops.get((project, None))
            if primary is not None and primary.primary_branch == branch_name:
                return primary
        return None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def start_auto_loop(
        self,
        project_path: str | Path,
        branch_name: str | None = None,
        *,
        continuous: bool = True,
    ) -> ProjectLoopStatus:
        """
        Start the loop for a workspace.

        Raises:
            LoopAlreadyRunning: If the workspace already has a loop
            WorkspaceUnavailable: If the project directory does not exist
        """
        project = self._normalize(project_path)
        if not Path(project).is_dir():
            raise WorkspaceUnavailable(project, branch_name, "project directory does not exist")

        primary = await self._primary_branch(project)
        if branch_name is not None and branch_name == primary:
            branch_name = None

        key = (project, branch_name)
        if key in self._loops:
            raise LoopAlreadyRunning(project, branch_name)

        loop = WorkspaceLoop(project, branch_name, continuous)
        loop.primary_branch = primary
        self._loops[key] = loop

        if not any(k[0] == project and k != key for k in self._loops):
            await self._recover_once(project)

        loop.task = asyncio.create_task(
            self._run_loop(loop),
            name=f"auto-mode:{project}:{branch_name or 'main'}",
        )
        _logger.info(
            "Auto mode started for %s (%s, %s)",
            project, branch_name or "main", "continuous" if continuous else "single step",
        )
        return loop.status()

    async def start_next(self, project_path: str | Path, branch_name: str | None = None) -> ProjectLoopStatus:
        """
        Run the next eligible feature of a workspace, then park.

        A parked continuous loop is simply woken instead.

        Raises:
            LoopAlreadyRunning: If the workspace loop is busy running a feature
        """
        project = self._normalize(project_path)
        loop = self._find_loop(project, branch_name)
        if loop is not None:
            if loop.run_context is not None or loop.stop_requested:
                raise LoopAlreadyRunning(project, branch_name)
            loop.wake.set()
            return loop.status()
        return await self.start_auto_loop(project, branch_name, continuous=False)

    async def stop_auto_loop(self, project_path: str | Path, branch_name: str | None = None) -> bool:
        """
        Stop a workspace loop and wait for it to reach a safe state.

        The in-flight run (if any) is cancelled and its feature reverted to
        the status it had before the run.

        Returns:
            True if a loop was running and has been stopped
        """
        project = self._normalize(project_path)
        loop = self._find_loop(project, branch_name)
        if loop is None:
            return False

        _logger.info("Stopping auto mode for %s (%s)", project, loop.branch_name or "main")
        loop.request_stop()

        if loop.task is not None:
            done, _ = await asyncio.wait({loop.task}, timeout=self.config.stop_timeout_seconds)
            if not done:
                _logger.warning(
                    "Loop for %s (%s) did not stop within %ss; cancelling it",
                    project, loop.branch_name or "main", self.config.stop_timeout_seconds,
                )
                loop.task.cancel()
                await asyncio.gather(loop.task, return_exceptions=True)
        return True

    def notify_features_changed(self, project_path: str | Path) -> int:
        """
        Wake the parked loops of a project after features changed.

        Returns:
            Number of loops woken
        """
        project = self._normalize(project_path)
        woken = 0
        for (loop_project, _), loop in list(self._loops.items()):
            if loop_project == project and not loop.stop_requested:
                loop.wake.set()
                woken += 1
        return woken

    async def shutdown(self) -> None:
        """Stop every loop."""
        loops = list(self._loops.values())
        if loops:
            _logger.info("Shutting down %d auto-mode loop(s)", len(loops))
        await asyncio.gather(
            *(self.stop_auto_loop(loop.project_path, loop.branch_name) for loop in loops),
            return_exceptions=True,
        )
        await self.emitter.drain()

    # ------------------------------------------------------------------
    # Human sign-off
    # ------------------------------------------------------------------

    async def approve_plan(self, project_path: str | Path, feature_id: str) -> dict:
        """
        Approve a generated plan; the feature becomes eligible to implement.

        Raises:
            FeatureNotFound: If the feature does not exist
            InvalidTransition: If the feature has no plan awaiting approval
        """
        project = self._normalize(project_path)
        feature = await self._require_feature(project, feature_id)
        plan = feature.get("plan_spec") or {}
        if feature["status"] != STATUS_WAITING_APPROVAL or plan.get("status") != PLAN_GENERATED:
            raise InvalidTransition(
                feature_id, feature["status"], STATUS_READY,
                message=f"Feature {feature_id} has no plan awaiting approval",
            )

        approved = {**plan, "status": PLAN_APPROVED, "approved_at": _utc_now_iso()}
        updated = await self.store.set_status(project, feature_id, STATUS_READY, plan_spec=approved)
        self.emitter.emit(ev.PLAN_APPROVED, project_path=project, feature_id=feature_id)
        self.notify_features_changed(project)
        return updated

    async def reject_plan(self, project_path: str | Path, feature_id: str, feedback: str | None = None) -> dict:
        """Reject a generated plan; the feature goes back to pending for a new plan."""
        project = self._normalize(project_path)
        feature = await self._require_feature(project, feature_id)
        plan = feature.get("plan_spec") or {}
        if feature["status"] != STATUS_WAITING_APPROVAL or plan.get("status") != PLAN_GENERATED:
            raise InvalidTransition(
                feature_id, feature["status"], STATUS_PENDING,
                message=f"Feature {feature_id} has no plan awaiting approval",
            )
        rejected = {**plan, "status": PLAN_REJECTED, "feedback": feedback}
        return await self.store.set_status(project, feature_id, STATUS_PENDING, plan_spec=rejected)

    async def verify_feature(self, project_path: str | Path, feature_id: str) -> dict:
        """Mark a completed or approval-gated feature verified."""
        project = self._normalize(project_path)
        updated = await self.store.set_status(project, feature_id, STATUS_VERIFIED)
        self.notify_features_changed(project)
        return updated

    async def _require_feature(self, project: str, feature_id: str) -> dict:
        feature = await self.store.get(project, feature_id)
        if feature is None:
            raise FeatureNotFound(project, feature_id)
        return feature

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_status_for_project(self, project_path: str | Path, branch_name: str | None = None) -> dict[str, Any]:
        """Whether a loop runs for the workspace. Never starts or stops anything."""
        loop = self._find_loop(self._normalize(project_path), branch_name)
        return {
            "is_auto_loop_running": loop is not None,
            "branch_name": branch_name,
        }

    def get_loop_status(self, project_path: str | Path, branch_name: str | None = None) -> ProjectLoopStatus:
        project = self._normalize(project_path)
        loop = self._find_loop(project, branch_name)
        if loop is None:
            return ProjectLoopStatus(project_path=project, branch_name=branch_name, is_auto_loop_running=False)
        return loop.status()

    def list_loop_statuses(self) -> list[ProjectLoopStatus]:
        return [loop.status() for loop in self._loops.values()]

    def get_running_agents(self) -> list[dict[str, Any]]:
        return [
            loop.run_context.to_dict()
            for loop in self._loops.values()
            if loop.run_context is not None
        ]

    def is_project_running(self, project_path: str | Path) -> bool:
        project = self._normalize(project_path)
        return any(k[0] == project for k in self._loops)

    # ------------------------------------------------------------------
    # Crash recovery
    # ------------------------------------------------------------------

    async def recover_orphaned_features(self, project_path: str | Path) -> CleanupResult:
        """
        Fail features left running by a previous process.

        Skipped (empty result) while any loop of the project is active in
        this service.
        """
        project = self._normalize(project_path)
        if any(k[0] == project and loop.task is not None for k, loop in self._loops.items()):
            return CleanupResult(project_path=project)
        self._recovered_projects.add(project)
        return await self.store.run_in_session(
            project, lambda session: cleanup_orphaned_features(session, project)
        )

    async def _recover_once(self, project: str) -> None:
        if project in self._recovered_projects:
            return
        try:
            await self.recover_orphaned_features(project)
        except Exception as e:
            _logger.error("Orphaned feature recovery failed for %s: %s", project, e)

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    async def _run_loop(self, loop: WorkspaceLoop) -> None:
        self._emit(ev.AUTO_MODE_STARTED, loop, continuous=loop.continuous)
        try:
            while not loop.stop_requested:
                loop.state = LOOP_SELECTING
                # Cleared before selecting so a notify during selection is not lost
                loop.wake.clear()

                try:
                    feature = await self._select_next(loop)
                except Exception as e:
                    _logger.exception("Feature selection failed for %s", loop.project_path)
                    loop.last_error = f"Feature selection failed: {e}"
                    self._emit(ev.AUTO_MODE_ERROR, loop, error=loop.last_error)
                    feature = None

                if loop.stop_requested:
                    if feature is not None:
                        self._reserved.discard((loop.project_path, feature["id"]))
                    break

                if feature is None:
                    loop.state = LOOP_IDLE
                    if not loop.continuous:
                        break
                    self._emit(ev.AUTO_MODE_IDLE, loop)
                    await self._park(loop)
                    continue

                try:
                    outcome = await self._process_feature(loop, feature)
                finally:
                    self._reserved.discard((loop.project_path, feature["id"]))

                if outcome.kind == OUTCOME_WAITING_APPROVAL:
                    loop.state = LOOP_AWAITING_APPROVAL
                if outcome.kind in (OUTCOME_COMPLETED, OUTCOME_WAITING_APPROVAL, OUTCOME_FAILED):
                    # Dependents in other workspaces may have become eligible
                    self.notify_features_changed(loop.project_path)

                if not loop.continuous:
                    break
                if outcome.kind == OUTCOME_SKIPPED and outcome.error:
                    await self._park(loop)
        finally:
            loop.state = LOOP_IDLE
            loop.run_context = None
            if self._loops.get(loop.key) is loop:
                del self._loops[loop.key]
            self._emit(ev.AUTO_MODE_STOPPED, loop, last_error=loop.last_error)
            _logger.info("Auto mode stopped for %s (%s)", loop.project_path, loop.branch_name or "main")

    async def _park(self, loop: WorkspaceLoop) -> None:
        timeout = self.config.idle_poll_seconds or None
        try:
            await asyncio.wait_for(loop.wake.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass

    def _belongs_to(self, loop: WorkspaceLoop, feature: dict) -> bool:
        branch = feature.get("branch_name")
        if loop.branch_name is None:
            return branch is None or (loop.primary_branch is not None and branch == loop.primary_branch)
        return branch == loop.branch_name

    async def _select_next(self, loop: WorkspaceLoop) -> dict | None:
        """Pick the first unblocked feature of this workspace in dependency order."""
        features = await self.store.list(loop.project_path)
        resolution = resolve_dependencies(features)
        for cycle in resolution.cycle_errors():
            _logger.warning("%s in %s", cycle, loop.project_path)

        for feature in get_ready_features(features, resolution):
            if not self._belongs_to(loop, feature):
                continue
            key = (loop.project_path, feature["id"])
            if key in self._reserved:
                continue
            self._reserved.add(key)
            _logger.debug("Selected feature %s for %s", feature["id"], loop.branch_name or "main")
            return feature
        return None

    async def _process_feature(self, loop: WorkspaceLoop, feature: dict) -> RunOutcome:
        """Resolve the workspace and run one feature; never raises except on task cancellation."""
        try:
            workspace = await self.workspaces.resolve(loop.project_path, feature.get("branch_name"))
        except WorkspaceUnavailable as e:
            _logger.error("Workspace unavailable for feature %s: %s", feature["id"], e)
            loop.last_error = str(e)
            loop.state = LOOP_IDLE
            self._emit(ev.AUTO_MODE_ERROR, loop, feature_id=feature["id"], error=str(e))
            return RunOutcome(OUTCOME_SKIPPED, str(e))

        try:
            return await self._execute_feature(loop, feature, workspace)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            _logger.exception("Unexpected error running feature %s", feature["id"])
            loop.last_error = str(e)
            self._emit(ev.AUTO_MODE_ERROR, loop, feature_id=feature["id"], error=str(e))
            return RunOutcome(OUTCOME_SKIPPED, str(e))

    async def _execute_feature(self, loop: WorkspaceLoop, feature: dict, workspace: Workspace) -> RunOutcome:
        settings = await self._get_settings()
        model = feature.get("model") or settings.default_model or self.config.default_model
        plan = feature.get("plan_spec") or {}
        needs_plan = feature.get("planning_mode") == "spec" and plan.get("status") != PLAN_APPROVED

        ctx = RunContext(
            feature_id=feature["id"],
            workspace=workspace,
            model=model,
            prior_status=feature["status"],
            phase="planning" if needs_plan else "implement",
        )

        first_status = STATUS_GENERATING_SPEC if needs_plan else STATUS_RUNNING
        try:
            await self.store.set_status(loop.project_path, feature["id"], first_status)
        except (InvalidTransition, FeatureNotFound) as e:
            # Changed underneath us since selection
            _logger.info("Skipping feature %s: %s", feature["id"], e)
            return RunOutcome(OUTCOME_SKIPPED)

        loop.run_context = ctx
        loop.state = LOOP_RUNNING
        self._emit(ev.FEATURE_STARTED, loop, feature_id=ctx.feature_id, model=model, phase=ctx.phase)

        try:
            if loop.stop_requested:
                return await self._finish_cancelled(loop, ctx)

            plan_text = plan.get("content") if plan.get("status") == PLAN_APPROVED else None
            if needs_plan:
                plan_outcome, plan_text = await self._generate_plan(loop, ctx, feature, settings)
                if plan_outcome is not None:
                    return plan_outcome

            return await self._implement(loop, ctx, feature, settings, plan_text)
        except asyncio.CancelledError:
            # Loop task torn down from outside: never leave the feature running
            await asyncio.shield(self._revert(loop, ctx))
            raise
        except Exception as e:
            _logger.exception("Unexpected error running feature %s", ctx.feature_id)
            loop.last_error = str(e)
            return await self._finish_failed(loop, ctx, e)
        finally:
            loop.run_context = None

    async def _run_cancellable(self, ctx: RunContext, work: Awaitable[Any]) -> tuple[Any, BaseException | None, bool]:
        """
        Run ``work`` as the context's cancellable task.

        Returns:
            (result, error, cancelled)
        """
        task = asyncio.ensure_future(work)
        ctx.task = task
        timeout = self.config.run_timeout_seconds or None
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            ctx.task = None

        if not done:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            return None, AgentExecutionError("timeout", f"Agent run exceeded {timeout}s timeout"), False
        if task.cancelled():
            return None, None, True
        error = task.exception()
        if error is not None:
            return None, error, False
        return task.result(), None, False

    def _forward_event(self, loop: WorkspaceLoop, ctx: RunContext, event: ProviderEvent) -> None:
        if isinstance(event, AssistantText):
            ctx.text += event.text
            self._emit(ev.FEATURE_PROGRESS, loop, feature_id=ctx.feature_id, content=event.text)
        elif isinstance(event, ToolUse):
            ctx.tool_uses.append(event)
            self._emit(ev.FEATURE_TOOL_USE, loop, feature_id=ctx.feature_id, tool=event.name, input=event.input)
        elif isinstance(event, Thinking):
            self._emit(ev.FEATURE_THINKING, loop, feature_id=ctx.feature_id, content=event.text)

    async def _consume(self, loop: WorkspaceLoop, ctx: RunContext, options: ExecuteOptions) -> ProviderEvent | None:
        """Stream one query; returns its result event, or None if it ended without one."""
        result = None
        async for event in self.gateway.execute_query(options):
            if isinstance(event, (ResultSuccess, ResultError)):
                result = event
            else:
                self._forward_event(loop, ctx, event)
        return result

    def _options(self, ctx: RunContext, settings: GlobalSettings, prompt: str, *, planning: bool) -> ExecuteOptions:
        project_dir = Path(ctx.workspace.project_path)
        return build_query_options(
            prompt,
            ctx.workspace.branch_path,
            model=ctx.model,
            streaming=True,
            system_prompt=get_system_prompt(project_dir),
            allowed_tools=list(self.config.planning_tools if planning else self.config.allowed_tools),
            max_turns=self.config.spec_max_turns if planning else self.config.max_turns,
            cancel_event=ctx.cancel_event,
            ccr_enabled=settings.ccr_enabled,
            provider_config=settings.provider_config,
            credentials=settings.credentials,
        )

    async def _generate_plan(
        self,
        loop: WorkspaceLoop,
        ctx: RunContext,
        feature: dict,
        settings: GlobalSettings,
    ) -> tuple[RunOutcome | None, str | None]:
        """
        Generate the feature's plan.

        Returns:
            (outcome, plan text). The outcome is set when the step ends here
            (approval required, failure or cancellation); otherwise the plan
            was auto-approved and the feature is now running.
        """
        prompt = build_planning_prompt(feature, Path(loop.project_path))
        options = self._options(ctx, settings, prompt, planning=True)
        result, error, cancelled = await self._run_cancellable(
            ctx, simple_query(self.gateway, options, on_event=lambda e: self._forward_event(loop, ctx, e))
        )
        if cancelled or (result is not None and result.cancelled):
            return await self._finish_cancelled(loop, ctx), None
        if error is None:
            try:
                require_complete(result, options.max_turns)
            except MaxTurnsReached as e:
                error = e
        if error is not None:
            return await self._finish_failed(loop, ctx, error), None

        assert isinstance(result, QueryResult)
        plan_spec = {"status": PLAN_GENERATED, "content": result.text, "generated_at": _utc_now_iso()}
        self._emit(ev.PLAN_GENERATED, loop, feature_id=ctx.feature_id, content=result.text)

        if feature.get("require_plan_approval"):
            await self.store.set_status(
                loop.project_path, ctx.feature_id, STATUS_WAITING_APPROVAL, plan_spec=plan_spec
            )
            self._emit(ev.FEATURE_WAITING_APPROVAL, loop, feature_id=ctx.feature_id, reason="plan")
            return RunOutcome(OUTCOME_WAITING_APPROVAL), None

        plan_spec.update(status=PLAN_APPROVED, approved_at=_utc_now_iso())
        await self.store.set_status(loop.project_path, ctx.feature_id, STATUS_RUNNING, plan_spec=plan_spec)
        ctx.phase = "implement"
        ctx.text = ""
        return None, result.text

    async def _implement(
        self,
        loop: WorkspaceLoop,
        ctx: RunContext,
        feature: dict,
        settings: GlobalSettings,
        plan_text: str | None,
    ) -> RunOutcome:
        prompt = build_feature_prompt(feature, Path(loop.project_path), plan=plan_text)
        options = self._options(ctx, settings, prompt, planning=False)
        result, error, cancelled = await self._run_cancellable(ctx, self._consume(loop, ctx, options))

        if cancelled or (result is None and error is None and ctx.cancel_event.is_set()):
            return await self._finish_cancelled(loop, ctx)
        if error is not None:
            return await self._finish_failed(loop, ctx, error)
        if result is None:
            return await self._finish_failed(
                loop, ctx, AgentExecutionError("no_result", "Agent stream ended without a result")
            )

        if isinstance(result, ResultError):
            if result.is_max_turns:
                error = MaxTurnsReached(options.max_turns, partial_output=ctx.text)
            elif result.is_structured_output_exhausted:
                error = StructuredOutputExhausted()
            else:
                error = AgentExecutionError(result.subtype, result.message or None)
            return await self._finish_failed(loop, ctx, error)

        if result.result and len(result.result) > len(ctx.text):
            ctx.text = result.result
        summary = _clip((result.result or ctx.text).strip(), MAX_SUMMARY_CHARS)
        target = STATUS_WAITING_APPROVAL if feature.get("skip_tests") else STATUS_COMPLETED
        await self.store.set_status(
            loop.project_path, ctx.feature_id, target,
            agent_output=_clip(ctx.text, MAX_STORED_OUTPUT_CHARS),
            summary=summary,
        )
        if target == STATUS_WAITING_APPROVAL:
            self._emit(ev.FEATURE_WAITING_APPROVAL, loop, feature_id=ctx.feature_id, reason="manual_review")
            return RunOutcome(OUTCOME_WAITING_APPROVAL)

        self._emit(ev.FEATURE_COMPLETED, loop, feature_id=ctx.feature_id, summary=summary)
        loop.last_error = None
        return RunOutcome(OUTCOME_COMPLETED)

    async def _finish_failed(self, loop: WorkspaceLoop, ctx: RunContext, error: BaseException) -> RunOutcome:
        message = str(error) or type(error).__name__
        _logger.warning("Feature %s failed: %s", ctx.feature_id, message)
        try:
            await self.store.set_status(
                loop.project_path, ctx.feature_id, STATUS_FAILED,
                error_message=message,
                agent_output=_clip(ctx.text, MAX_STORED_OUTPUT_CHARS),
            )
        except Exception as e:
            _logger.error("Could not record failure of %s: %s", ctx.feature_id, e)
        self._emit(ev.FEATURE_FAILED, loop, feature_id=ctx.feature_id, error=message)
        return RunOutcome(OUTCOME_FAILED, message)

    async def _revert(self, loop: WorkspaceLoop, ctx: RunContext) -> None:
        try:
            fields = {"agent_output": _clip(ctx.text, MAX_STORED_OUTPUT_CHARS)} if ctx.text else {}
            await self.store.set_status(loop.project_path, ctx.feature_id, ctx.prior_status, **fields)
        except InvalidTransition as e:
            # Already moved on (e.g. finished just before the stop)
            _logger.info("Not reverting feature %s: %s", ctx.feature_id, e)
        except Exception as e:
            _logger.error("Could not revert feature %s: %s", ctx.feature_id, e)

    async def _finish_cancelled(self, loop: WorkspaceLoop, ctx: RunContext) -> RunOutcome:
        _logger.info("Run of %s cancelled; restoring status '%s'", ctx.feature_id, ctx.prior_status)
        await asyncio.shield(self._revert(loop, ctx))
        self._emit(ev.FEATURE_CANCELLED, loop, feature_id=ctx.feature_id, status=ctx.prior_status)
        return RunOutcome(OUTCOME_CANCELLED)
