"""Tests for events/bus.py -- async pub/sub event bus.

Covers publish/subscribe, buffering, the close_job sentinel, per-job
history for late readers, and subscriber bookkeeping.
"""

import asyncio

from events.bus import EventBus
from events.types import EventType, OrchestrationEvent

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_event(
    job_id: str = "job_test",
    event_type: EventType = EventType.PROGRESS,
) -> OrchestrationEvent:
    return OrchestrationEvent(
        type=event_type,
        job_id=job_id,
        data={"test": True},
    )


# =========================================================================
# Subscribe / Publish basics
# =========================================================================


class TestSubscribePublish:
    """Basic subscribe and async publish."""

    async def test_subscribe_returns_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("job_1")
        assert isinstance(queue, asyncio.Queue)

    async def test_publish_delivers_to_subscriber(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("job_1")
        await event_bus.publish(_make_event("job_1", EventType.PLAN_READY))
        received = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert received.type == EventType.PLAN_READY
        assert received.job_id == "job_1"

    async def test_publish_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("job_1")
        q2 = event_bus.subscribe("job_1")
        await event_bus.publish(_make_event("job_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        r2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert r1.type == r2.type == EventType.PROGRESS

    async def test_publish_does_not_cross_jobs(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("job_1")
        q2 = event_bus.subscribe("job_2")
        await event_bus.publish(_make_event("job_1"))
        r1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        assert r1.job_id == "job_1"
        assert q2.empty()


# =========================================================================
# Event Buffering
# =========================================================================


class TestEventBuffering:
    """Events published before a subscriber connects are buffered."""

    async def test_buffered_events_delivered_on_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1", EventType.JOB_STARTED))
        await event_bus.publish(_make_event("job_1", EventType.CACHE_MISS))

        queue = event_bus.subscribe("job_1")
        r1 = await asyncio.wait_for(queue.get(), timeout=1.0)
        r2 = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert r1.type == EventType.JOB_STARTED
        assert r2.type == EventType.CACHE_MISS

    async def test_buffer_cleared_after_subscribe(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1"))
        q1 = event_bus.subscribe("job_1")
        assert not q1.empty()
        # A second subscriber does not get the already-delivered buffer
        q2 = event_bus.subscribe("job_1")
        assert q2.empty()


# =========================================================================
# Unsubscribe
# =========================================================================


class TestUnsubscribe:
    async def test_unsubscribe_removes_queue(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("job_1")
        event_bus.unsubscribe("job_1", queue)
        assert event_bus.get_subscriber_count("job_1") == 0

    async def test_unsubscribe_unknown_job_is_noop(self, event_bus: EventBus) -> None:
        dummy: asyncio.Queue[OrchestrationEvent] = asyncio.Queue()
        event_bus.unsubscribe("no_such_job", dummy)

    async def test_unsubscribe_wrong_queue_is_noop(self, event_bus: EventBus) -> None:
        event_bus.subscribe("job_1")
        wrong_queue: asyncio.Queue[OrchestrationEvent] = asyncio.Queue()
        event_bus.unsubscribe("job_1", wrong_queue)
        assert event_bus.get_subscriber_count("job_1") == 1

    async def test_after_unsubscribe_events_not_delivered(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("job_1")
        event_bus.unsubscribe("job_1", queue)
        await event_bus.publish(_make_event("job_1"))
        assert queue.empty()


# =========================================================================
# close_job -- sentinel
# =========================================================================


class TestCloseJob:
    """close_job sends a JOB_CLOSED sentinel and cleans up."""

    async def test_close_sends_sentinel(self, event_bus: EventBus) -> None:
        queue = event_bus.subscribe("job_1")
        await event_bus.close_job("job_1")
        sentinel = await asyncio.wait_for(queue.get(), timeout=1.0)
        assert sentinel.type == EventType.JOB_CLOSED
        assert sentinel.job_id == "job_1"

    async def test_close_removes_subscribers(self, event_bus: EventBus) -> None:
        event_bus.subscribe("job_1")
        await event_bus.close_job("job_1")
        assert event_bus.get_subscriber_count("job_1") == 0

    async def test_close_clears_buffer(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1"))
        await event_bus.close_job("job_1")
        queue = event_bus.subscribe("job_1")
        assert queue.empty()

    async def test_close_unknown_job_is_noop(self, event_bus: EventBus) -> None:
        await event_bus.close_job("no_such_job")

    async def test_close_multiple_subscribers(self, event_bus: EventBus) -> None:
        q1 = event_bus.subscribe("job_1")
        q2 = event_bus.subscribe("job_1")
        await event_bus.close_job("job_1")
        s1 = await asyncio.wait_for(q1.get(), timeout=1.0)
        s2 = await asyncio.wait_for(q2.get(), timeout=1.0)
        assert s1.type == s2.type == EventType.JOB_CLOSED


# =========================================================================
# History
# =========================================================================


class TestEventHistory:
    """Every event except the close sentinel is kept for late readers."""

    async def test_history_in_publish_order(self, event_bus: EventBus) -> None:
        for event_type in (EventType.JOB_STARTED, EventType.PROGRESS, EventType.JOB_COMPLETE):
            await event_bus.publish(_make_event("job_1", event_type))

        history = event_bus.get_event_history("job_1")
        assert [e.type for e in history] == [
            EventType.JOB_STARTED,
            EventType.PROGRESS,
            EventType.JOB_COMPLETE,
        ]

    async def test_history_survives_subscribe_and_close(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1"))
        event_bus.subscribe("job_1")
        await event_bus.close_job("job_1")
        assert len(event_bus.get_event_history("job_1")) == 1

    async def test_sentinel_not_in_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1", EventType.JOB_CLOSED))
        assert event_bus.get_event_history("job_1") == []

    async def test_history_is_a_copy(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1"))
        event_bus.get_event_history("job_1").clear()
        assert len(event_bus.get_event_history("job_1")) == 1

    async def test_history_is_bounded(self, event_bus: EventBus) -> None:
        event_bus.MAX_HISTORY_PER_JOB = 3
        for percent in range(5):
            await event_bus.publish(
                OrchestrationEvent(type=EventType.PROGRESS, job_id="job_1", data={"percent": percent})
            )
        history = event_bus.get_event_history("job_1")
        assert [e.data["percent"] for e in history] == [2, 3, 4]

    async def test_clear_history(self, event_bus: EventBus) -> None:
        await event_bus.publish(_make_event("job_1"))
        event_bus.clear_event_history("job_1")
        assert event_bus.get_event_history("job_1") == []

    async def test_unknown_job_has_no_history(self, event_bus: EventBus) -> None:
        assert event_bus.get_event_history("nope") == []


class TestSubscriberInfo:
    async def test_subscriber_count(self, event_bus: EventBus) -> None:
        assert event_bus.get_subscriber_count("job_1") == 0
        event_bus.subscribe("job_1")
        event_bus.subscribe("job_1")
        assert event_bus.get_subscriber_count("job_1") == 2
