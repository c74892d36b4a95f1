"""Tests for the notification EventBus."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from flowcore.runtime.event_bus import EventBus, EventType, WorkflowEvent


def make_event(
    event_type: EventType = EventType.STEP_COMPLETED,
    execution_id: str = "exec_1",
    workflow_id: str = "purchase",
    node_id: str | None = "review",
    **data,
) -> WorkflowEvent:
    return WorkflowEvent(
        type=event_type,
        execution_id=execution_id,
        workflow_id=workflow_id,
        node_id=node_id,
        data=data,
    )


class TestSubscriptions:
    @pytest.mark.asyncio
    async def test_handler_receives_the_published_event(self):
        bus = EventBus()
        handler = AsyncMock()
        bus.subscribe([EventType.APPROVAL_REQUESTED], handler)
        event = make_event(EventType.APPROVAL_REQUESTED, approvers=["alice"])

        await bus.publish(event)

        handler.assert_awaited_once_with(event)

    @pytest.mark.asyncio
    async def test_type_based_delivery(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event.type)

        bus.subscribe([EventType.STEP_COMPLETED, EventType.STEP_FAILED], handler)
        await bus.publish(make_event(EventType.STEP_COMPLETED))
        await bus.publish(make_event(EventType.STEP_STARTED))
        await bus.publish(make_event(EventType.STEP_FAILED))

        assert received == [EventType.STEP_COMPLETED, EventType.STEP_FAILED]

    @pytest.mark.asyncio
    async def test_filters(self):
        bus = EventBus()
        by_workflow, by_node, by_execution = [], [], []

        def collect(target):
            async def handler(event):
                target.append(event)

            return handler

        bus.subscribe([EventType.STEP_COMPLETED], collect(by_workflow), filter_workflow="w2")
        bus.subscribe([EventType.STEP_COMPLETED], collect(by_node), filter_node="pay")
        bus.subscribe(
            [EventType.STEP_COMPLETED], collect(by_execution), filter_execution="exec_9"
        )

        await bus.publish(make_event(workflow_id="w2"))
        await bus.publish(make_event(node_id="pay"))
        await bus.publish(make_event(execution_id="exec_9"))

        assert len(by_workflow) == 1
        assert len(by_node) == 1
        assert len(by_execution) == 1

    @pytest.mark.asyncio
    async def test_unsubscribe(self):
        bus = EventBus()
        received = []

        async def handler(event):
            received.append(event)

        sub_id = bus.subscribe([EventType.STEP_COMPLETED], handler)
        assert bus.unsubscribe(sub_id) is True
        assert bus.unsubscribe(sub_id) is False

        await bus.publish(make_event())
        assert received == []

    @pytest.mark.asyncio
    async def test_failing_handler_does_not_affect_others(self):
        bus = EventBus()
        received = []

        broken = AsyncMock(side_effect=RuntimeError("mail server down"))

        async def healthy(event):
            received.append(event)

        bus.subscribe([EventType.STEP_COMPLETED], broken)
        bus.subscribe([EventType.STEP_COMPLETED], healthy)

        await bus.publish(make_event())

        assert len(received) == 1
        broken.assert_awaited_once()


class TestHistory:
    @pytest.mark.asyncio
    async def test_history_is_most_recent_first_and_bounded(self):
        bus = EventBus(max_history=3)
        for i in range(5):
            await bus.publish(make_event(seq=i))

        history = bus.get_history()

        assert [e.data["seq"] for e in history] == [4, 3, 2]

    @pytest.mark.asyncio
    async def test_history_filters_and_stats(self):
        bus = EventBus()
        await bus.publish(make_event(EventType.STEP_STARTED))
        await bus.publish(make_event(EventType.STEP_COMPLETED, execution_id="exec_2"))

        assert len(bus.get_history(event_type=EventType.STEP_STARTED)) == 1
        assert len(bus.get_history(execution_id="exec_2")) == 1
        stats = bus.get_stats()
        assert stats["total_events"] == 2
        assert stats["events_by_type"] == {"step_started": 1, "step_completed": 1}

    def test_to_dict(self):
        event = make_event(decision="approved")

        data = event.to_dict()

        assert data["type"] == "step_completed"
        assert data["data"] == {"decision": "approved"}
        assert "timestamp" in data


class TestWaitFor:
    @pytest.mark.asyncio
    async def test_wait_for_event(self):
        bus = EventBus()

        async def publish_later():
            await asyncio.sleep(0.01)
            await bus.publish(make_event(EventType.EXECUTION_COMPLETED, execution_id="exec_5"))

        publisher = asyncio.create_task(publish_later())
        event = await bus.wait_for(EventType.EXECUTION_COMPLETED, execution_id="exec_5", timeout=1)
        await publisher

        assert event is not None
        assert event.execution_id == "exec_5"

    @pytest.mark.asyncio
    async def test_wait_for_timeout(self):
        bus = EventBus()

        assert await bus.wait_for(EventType.EXECUTION_FAILED, timeout=0.01) is None
        assert bus.get_stats()["subscriptions"] == 0
