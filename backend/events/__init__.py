"""Event system for job progress reporting.

This package provides the event infrastructure between running jobs and API
consumers, based on an async pub/sub pattern using asyncio.Queue.

Key Components:
    - EventType: Enum of all event types in the system
    - OrchestrationEvent: Pydantic model for events flowing through the system
    - EventBus: Async pub/sub implementation for event distribution
    - LLMMetrics: Token and latency metrics for individual LLM calls

Usage:
    >>> from events import EventBus, EventType, OrchestrationEvent
    >>> bus = EventBus()
    >>> queue = bus.subscribe("job_123")
    >>> await bus.publish(OrchestrationEvent(
    ...     type=EventType.PROGRESS,
    ...     job_id="job_123",
    ...     data={"percent": 30, "message": "Running group 1/2"},
    ... ))
    >>> event = await queue.get()
"""

from events.bus import EventBus
from events.types import EventType, LLMMetrics, OrchestrationEvent

__all__ = [
    "EventType",
    "OrchestrationEvent",
    "LLMMetrics",
    "EventBus",
]
