"""Event type definitions for the orchestration event system.

Every milestone of a job produces an event. Events are published on the
EventBus, kept in per-job history, and served by the API.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types emitted while a job runs.

    Events are categorized by:
    - Job lifecycle: start, completion, error and close
    - Progress: percentage milestones
    - Pipeline stages: cache, plan, groups, tasks, verification, merge
    - Observability: per-call LLM metrics
    """

    # Job lifecycle
    JOB_STARTED = "job_started"
    JOB_COMPLETE = "job_complete"
    JOB_ERROR = "job_error"
    JOB_CANCELLED = "job_cancelled"
    JOB_CLOSED = "job_closed"

    # Progress
    PROGRESS = "progress"

    # Pipeline stages
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    PLAN_READY = "plan_ready"
    GROUP_STARTED = "group_started"
    TASK_COMPLETE = "task_complete"
    TASK_FAILED = "task_failed"
    VERIFICATION_COMPLETE = "verification_complete"
    MERGE_COMPLETE = "merge_complete"

    # Observability
    LLM_CALL_COMPLETE = "llm_call_complete"


class OrchestrationEvent(BaseModel):
    """An event emitted while a job runs.

    Payload schemas by event type:

    PROGRESS:
        - percent: int - 0 to 100
        - message: str - Human-readable milestone

    CACHE_HIT:
        - tier: str - durable, fast or semantic
        - similarity: float - Score of the matching entry

    PLAN_READY:
        - project_name: str
        - tasks: list - Task dicts
        - parallel_groups: list - Task ids per group

    GROUP_STARTED:
        - group_index: int - 1-based
        - task_ids: list

    TASK_COMPLETE / TASK_FAILED:
        - task_id: str
        - agent_kind: str
        - duration_ms: int
        - files: int (complete) / error: str (failed)

    VERIFICATION_COMPLETE:
        - verified: int - Results that passed validation
        - total: int - Results that were checked

    MERGE_COMPLETE:
        - files: int
        - conflicts: int
        - unresolved: int

    LLM_CALL_COMPLETE:
        - model: str
        - input_tokens: int
        - output_tokens: int
        - latency_ms: int
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    job_id: str
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Token and latency metrics for a single LLM call.

    Attributes:
        model: The model identifier (e.g., "groq/llama-3.3-70b-versatile")
        input_tokens: Number of tokens in the prompt
        output_tokens: Number of tokens in the response
        latency_ms: Time taken for the LLM call in milliseconds
    """

    model: str
    input_tokens: int
    output_tokens: int
    latency_ms: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used in this call."""
        return self.input_tokens + self.output_tokens
