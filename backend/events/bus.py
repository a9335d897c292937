"""Async event bus for job progress pub/sub.

This module provides an EventBus class that enables asynchronous
publish/subscribe communication between running jobs and API consumers.

The event bus supports:
- Multiple subscribers per job
- Async event delivery via asyncio.Queue
- Buffering of events published before anyone subscribed
- Per-job history for late readers
- Job lifecycle management (closing a job terminates all subscribers)
"""

import asyncio
import threading
from collections import defaultdict

import structlog

from events.types import EventType, OrchestrationEvent

logger = structlog.get_logger()


class EventBus:
    """Async pub/sub event bus for orchestration events.

    One instance is created at startup and injected into the components that
    publish or read events.

    Event Buffering:
        Events published before any subscriber connects are buffered.
        When the first subscriber connects, all buffered events are
        delivered immediately.

    Usage:
        >>> bus = EventBus()
        >>> queue = bus.subscribe("job_123")
        >>> await bus.publish(OrchestrationEvent(
        ...     type=EventType.PROGRESS,
        ...     job_id="job_123",
        ...     data={"percent": 15, "message": "Planning"},
        ... ))
        >>> event = await queue.get()
        >>> bus.unsubscribe("job_123", queue)
        >>> await bus.close_job("job_123")
    """

    # Maximum number of events to retain per job for replay.
    MAX_HISTORY_PER_JOB = 5000

    def __init__(self) -> None:
        """Initialize an empty event bus."""
        self._subscribers: dict[str, list[asyncio.Queue[OrchestrationEvent]]] = defaultdict(list)
        self._event_buffer: dict[str, list[OrchestrationEvent]] = defaultdict(list)
        self._event_history: dict[str, list[OrchestrationEvent]] = defaultdict(list)
        self._lock = threading.Lock()
        logger.info("event_bus_initialized")

    def subscribe(self, job_id: str) -> asyncio.Queue[OrchestrationEvent]:
        """Subscribe to events for a job.

        Buffered events (published before any subscriber connected) are
        delivered to the new subscriber immediately.

        Args:
            job_id: The job to subscribe to

        Returns:
            An asyncio.Queue that will receive OrchestrationEvent objects
        """
        queue: asyncio.Queue[OrchestrationEvent] = asyncio.Queue()
        buffered_events: list[OrchestrationEvent] = []

        with self._lock:
            self._subscribers[job_id].append(queue)
            subscriber_count = len(self._subscribers[job_id])
            if job_id in self._event_buffer:
                buffered_events = self._event_buffer.pop(job_id)

        for event in buffered_events:
            queue.put_nowait(event)

        logger.info(
            "subscriber_added",
            job_id=job_id,
            subscriber_count=subscriber_count,
            buffered_events_delivered=len(buffered_events),
        )
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[OrchestrationEvent]) -> None:
        """Unsubscribe a queue from job events. Unknown queues are ignored."""
        with self._lock:
            subscribers = self._subscribers.get(job_id)
            if not subscribers or queue not in subscribers:
                logger.warning("unsubscribe_queue_not_found", job_id=job_id)
                return
            subscribers.remove(queue)
            if not subscribers:
                del self._subscribers[job_id]
            logger.info(
                "subscriber_removed",
                job_id=job_id,
                subscriber_count=len(subscribers),
            )

    async def publish(self, event: OrchestrationEvent) -> None:
        """Publish an event to all subscribers for its job.

        If there are no subscribers, the event is buffered until one
        connects. Every event except the close sentinel is also stored in the
        job's history.

        Args:
            event: The OrchestrationEvent to publish
        """
        with self._lock:
            if event.type != EventType.JOB_CLOSED:
                history = self._event_history[event.job_id]
                history.append(event)
                if len(history) > self.MAX_HISTORY_PER_JOB:
                    self._event_history[event.job_id] = history[-self.MAX_HISTORY_PER_JOB:]

            subscribers = list(self._subscribers.get(event.job_id, []))

            if not subscribers:
                self._event_buffer[event.job_id].append(event)
                logger.debug(
                    "event_buffered",
                    job_id=event.job_id,
                    event_type=event.type.value,
                    buffer_size=len(self._event_buffer[event.job_id]),
                )
                return

        # Bounded put so a stalled consumer cannot block the job
        for queue in subscribers:
            try:
                await asyncio.wait_for(queue.put(event), timeout=5.0)
            except TimeoutError:
                logger.warning(
                    "event_delivery_timeout",
                    job_id=event.job_id,
                    event_type=event.type.value,
                )

        logger.debug(
            "event_published",
            job_id=event.job_id,
            event_type=event.type.value,
            subscriber_count=len(subscribers),
        )

    def get_event_history(self, job_id: str) -> list[OrchestrationEvent]:
        """Return all stored events for a job in chronological order."""
        with self._lock:
            return list(self._event_history.get(job_id, []))

    async def close_job(self, job_id: str) -> None:
        """Close a job and notify all subscribers.

        Puts a JOB_CLOSED sentinel into each subscriber queue so consumers can
        stop reading, then removes subscribers and buffered events. History is
        preserved.

        Args:
            job_id: The job to close
        """
        with self._lock:
            queues_to_signal = self._subscribers.pop(job_id, [])
            buffer_count = len(self._event_buffer.pop(job_id, []))

        for queue in queues_to_signal:
            queue.put_nowait(
                OrchestrationEvent(
                    type=EventType.JOB_CLOSED,
                    job_id=job_id,
                    data={"reason": "job_closed"},
                )
            )

        logger.info(
            "job_events_closed",
            job_id=job_id,
            subscribers_removed=len(queues_to_signal),
            buffered_events_cleared=buffer_count,
        )

    def get_subscriber_count(self, job_id: str) -> int:
        """Get the number of subscribers for a job."""
        with self._lock:
            return len(self._subscribers.get(job_id, []))

    def clear_event_history(self, job_id: str) -> None:
        """Drop stored history for a job."""
        with self._lock:
            self._event_history.pop(job_id, None)
