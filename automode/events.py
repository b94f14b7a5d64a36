"""
Auto-Mode Events
================

Fire-and-forget event emission for observers of the orchestration engine
(UI websockets, session/audit logs, notifications).

Subscribers may be sync or async callables taking one dict message.
Emission never blocks the orchestration loop and never raises: sync
subscribers run inline with their errors logged, async subscribers are
scheduled as tasks whose failures are logged when they finish.

Message shape:
    {
        "type": "feature_progress",
        "project_path": "/path/to/project",
        "branch_name": None,
        "feature_id": "feature-1a2b3c",
        "timestamp": "2026-01-01T00:00:00+00:00",
        ...event specific fields ("content", "tool", "input", "error", ...)
    }
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from datetime import datetime, timezone
from typing import Any, Callable

_logger = logging.getLogger(__name__)

# Loop lifecycle
AUTO_MODE_STARTED = "auto_mode_started"
AUTO_MODE_STOPPED = "auto_mode_stopped"
AUTO_MODE_IDLE = "auto_mode_idle"
AUTO_MODE_ERROR = "auto_mode_error"

# Feature lifecycle
FEATURE_STARTED = "feature_started"
FEATURE_PROGRESS = "feature_progress"
FEATURE_TOOL_USE = "feature_tool_use"
FEATURE_THINKING = "feature_thinking"
FEATURE_COMPLETED = "feature_completed"
FEATURE_WAITING_APPROVAL = "feature_waiting_approval"
FEATURE_FAILED = "feature_failed"
FEATURE_CANCELLED = "feature_cancelled"
PLAN_GENERATED = "plan_generated"
PLAN_APPROVED = "plan_approved"

EventCallback = Callable[[dict[str, Any]], Any]


class EventEmitter:
    """Fans engine events out to registered subscribers."""

    def __init__(self):
        self._subscribers: list[EventCallback] = []
        self._pending: set[asyncio.Task] = set()

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register a subscriber. Returns a function that unsubscribes it."""
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def emit(self, event_type: str, **fields: Any) -> dict[str, Any]:
        """Build a message and hand it to every subscriber."""
        message = {
            "type": event_type,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **fields,
        }

        for callback in list(self._subscribers):
            try:
                result = callback(message)
            except Exception as e:
                _logger.warning("Event subscriber failed on %s: %s", event_type, e)
                continue
            if inspect.isawaitable(result):
                self._schedule(result, event_type)

        return message

    def _schedule(self, awaitable: Any, event_type: str) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError as e:
            # No running loop; the coroutine can never run
            _logger.warning("Dropping async subscriber for %s: %s", event_type, e)
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            return

        self._pending.add(task)

        def done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                _logger.warning("Async event subscriber failed on %s: %s", event_type, exc)

        task.add_done_callback(done)

    async def drain(self) -> None:
        """Wait until every scheduled async delivery has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
