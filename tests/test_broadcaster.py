"""Tests for the execution event broadcaster."""

from __future__ import annotations

import asyncio

import pytest

from models.schemas import EventType, WorkflowEvent
from services.broadcaster import EventBroadcaster


def _event(execution_id="exec-1", event_type=EventType.STEP_STARTED, step_order=1):
    return WorkflowEvent(type=event_type, execution_id=execution_id, step_order=step_order)


class TestDelivery:

    @pytest.mark.asyncio
    async def test_publish_reaches_every_subscriber(self, recorder):
        broadcaster = EventBroadcaster()
        other = []
        broadcaster.subscribe("exec-1", recorder)
        broadcaster.subscribe("exec-1", other.append)

        assert broadcaster.publish("exec-1", _event()) == 2
        await broadcaster.flush()

        assert recorder.types == ["step_started"]
        assert other[0]["executionId"] == "exec-1"
        assert other[0]["stepOrder"] == 1
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_other_executions_not_delivered(self, recorder):
        broadcaster = EventBroadcaster()
        broadcaster.subscribe("exec-1", recorder)
        assert broadcaster.publish("exec-2", _event("exec-2")) == 0
        await broadcaster.flush()
        assert recorder.messages == []
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_no_replay_for_late_subscribers(self, recorder):
        broadcaster = EventBroadcaster()
        broadcaster.publish("exec-1", _event(step_order=1))
        broadcaster.subscribe("exec-1", recorder)
        broadcaster.publish("exec-1", _event(step_order=2))
        await broadcaster.flush()
        assert [m["stepOrder"] for m in recorder.messages] == [2]
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_async_handlers_awaited_in_order(self):
        broadcaster = EventBroadcaster()
        seen = []

        async def handler(message):
            await asyncio.sleep(0)
            seen.append(message["stepOrder"])

        broadcaster.subscribe("exec-1", handler)
        for order in range(1, 6):
            broadcaster.publish("exec-1", _event(step_order=order))
        await broadcaster.flush()
        assert seen == [1, 2, 3, 4, 5]
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_plain_dict_events(self, recorder):
        broadcaster = EventBroadcaster()
        broadcaster.subscribe("exec-1", recorder)
        broadcaster.publish("exec-1", {"type": "custom", "executionId": "exec-1"})
        await broadcaster.flush()
        assert recorder.types == ["custom"]
        await broadcaster.close()


class TestIsolation:

    @pytest.mark.asyncio
    async def test_failing_subscriber_does_not_affect_others(self, recorder, caplog):
        broadcaster = EventBroadcaster()

        def broken(message):
            raise ConnectionError("socket closed")

        broadcaster.subscribe("exec-1", broken)
        broadcaster.subscribe("exec-1", recorder)

        for order in range(1, 4):
            broadcaster.publish("exec-1", _event(step_order=order))
            await broadcaster.flush()

        assert [m["stepOrder"] for m in recorder.messages] == [1, 2, 3]
        assert broadcaster.subscriber_count("exec-1") == 1
        assert "dropping it" in caplog.text
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_slow_subscriber_dropped_without_blocking_publish(self, recorder):
        broadcaster = EventBroadcaster(queue_size=2)
        gate = asyncio.Event()

        async def stuck(message):
            await gate.wait()

        broadcaster.subscribe("exec-1", stuck)
        broadcaster.subscribe("exec-1", recorder)

        for order in range(1, 6):
            broadcaster.publish("exec-1", _event(step_order=order))
            await asyncio.sleep(0)

        assert broadcaster.subscriber_count("exec-1") == 1
        await broadcaster.flush()
        assert [m["stepOrder"] for m in recorder.messages] == [1, 2, 3, 4, 5]
        gate.set()
        await broadcaster.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, recorder):
        broadcaster = EventBroadcaster()
        broadcaster.subscribe("exec-1", recorder)
        assert broadcaster.unsubscribe("exec-1", recorder) is True
        assert broadcaster.unsubscribe("exec-1", recorder) is False
        assert broadcaster.publish("exec-1", _event()) == 0
        await broadcaster.close()
