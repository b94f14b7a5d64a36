"""
Event Emitter Tests
===================

Emission never raises into the caller and never blocks on subscribers.
"""

import asyncio
import sys
from pathlib import Path
from unittest.mock import MagicMock

import pytest

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from automode.events import FEATURE_PROGRESS, EventEmitter


class TestEmit:
    def test_sync_subscriber_receives_message(self):
        emitter = EventEmitter()
        callback = MagicMock(return_value=None)
        emitter.subscribe(callback)

        message = emitter.emit(FEATURE_PROGRESS, feature_id="f", content="hi")

        callback.assert_called_once_with(message)
        assert message["type"] == FEATURE_PROGRESS
        assert message["feature_id"] == "f"
        assert "timestamp" in message

    def test_failing_subscriber_does_not_stop_others(self):
        emitter = EventEmitter()
        received = []
        emitter.subscribe(MagicMock(side_effect=RuntimeError("broken")))
        emitter.subscribe(received.append)

        emitter.emit("x")

        assert len(received) == 1

    def test_unsubscribe(self):
        emitter = EventEmitter()
        received = []
        unsubscribe = emitter.subscribe(received.append)

        unsubscribe()
        unsubscribe()
        emitter.emit("x")

        assert received == []
        assert emitter.subscriber_count == 0

class TestAsyncSubscribers:
    @pytest.mark.asyncio
    async def test_async_subscriber_runs_in_background(self):
        emitter = EventEmitter()
        gate = asyncio.Event()
        received = []

        async def subscriber(message):
            await gate.wait()
            received.append(message["type"])

        emitter.subscribe(subscriber)
        emitter.emit("first")

        # emit returned without waiting for the subscriber
        assert received == []
        gate.set()
        await emitter.drain()
        assert received == ["first"]

    @pytest.mark.asyncio
    async def test_async_failure_is_contained(self):
        emitter = EventEmitter()

        async def subscriber(message):
            raise ValueError("bad subscriber")

        emitter.subscribe(subscriber)
        emitter.emit("x")

        await emitter.drain()
