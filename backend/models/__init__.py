"""Models module for domain records, API schemas and persistence.

This module exposes the models shared across the orchestration core and API.
"""

from models.schemas import (
    AgentKind,
    ArtifactSet,
    CacheEntry,
    CacheHit,
    CacheTier,
    CreateJobRequest,
    HealthResponse,
    JobDetailResponse,
    JobMode,
    JobResponse,
    JobStatus,
    MergeConflict,
    MergeOutcome,
    OrchestrationResult,
    Task,
    TaskPlan,
    TaskResult,
    VerificationOutcome,
)

__all__ = [
    "AgentKind",
    "ArtifactSet",
    "CacheEntry",
    "CacheHit",
    "CacheTier",
    "CreateJobRequest",
    "HealthResponse",
    "JobDetailResponse",
    "JobMode",
    "JobResponse",
    "JobStatus",
    "MergeConflict",
    "MergeOutcome",
    "OrchestrationResult",
    "Task",
    "TaskPlan",
    "TaskResult",
    "VerificationOutcome",
]
