"""Pydantic models for the orchestration core and the HTTP API.

Domain records (``Task``, ``TaskPlan``, ``TaskResult`` ...) are frozen: a stage
that corrects a result builds a new instance instead of mutating the old one.
API request/response models live at the bottom of the module.
"""

from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

ArtifactSet = dict[str, str]
"""Logical artifact path (e.g. ``/App.tsx``) to file content."""

Priority = Literal["high", "medium", "low"]


class AgentKind(StrEnum):
    """Agent kinds the decomposer is asked to choose from."""

    DESIGN = "design"
    FRONTEND = "frontend"
    BACKEND = "backend"
    DATABASE = "database"
    RESEARCH = "research"


# Kinds whose output is code and goes through the review pass.
REVIEWED_KINDS = frozenset(
    {AgentKind.DESIGN, AgentKind.FRONTEND, AgentKind.BACKEND, AgentKind.DATABASE}
)

# Kinds whose output must also pass runnable-code validation.
VALIDATED_KINDS = frozenset({AgentKind.FRONTEND, AgentKind.BACKEND})


class CacheTier(StrEnum):
    """Cache tier that answered a request."""

    DURABLE = "durable"
    FAST = "fast"
    SEMANTIC = "semantic"


class JobMode(StrEnum):
    """Execution modes for a job."""

    PLANNING = "planning"
    FAST = "fast"


class JobStatus(StrEnum):
    """Job lifecycle status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


# ---------------------------------------------------------------------------
# Domain records
# ---------------------------------------------------------------------------


class Task(BaseModel):
    """One sub-task produced by the decomposer."""

    model_config = ConfigDict(frozen=True)

    id: str
    agent_kind: str
    description: str
    dependencies: tuple[str, ...] = ()
    priority: Priority = "medium"


class TaskPlan(BaseModel):
    """A request split into tasks and ordered into parallel groups.

    Attributes:
        project_name: Short name the decomposer gave the project.
        summary: One-line description of the plan.
        tasks: Tasks in declaration order.
        parallel_groups: Task ids per group. Groups run in order; tasks inside
            a group run concurrently.
    """

    model_config = ConfigDict(frozen=True)

    project_name: str = "project"
    summary: str = ""
    tasks: tuple[Task, ...]
    parallel_groups: tuple[tuple[str, ...], ...]

    def task_by_id(self) -> dict[str, Task]:
        """Map task ids to tasks."""
        return {task.id: task for task in self.tasks}


class TaskResult(BaseModel):
    """Outcome of executing one task, successful or not."""

    model_config = ConfigDict(frozen=True)

    task_id: str
    agent_kind: str
    success: bool
    output: str = ""
    artifacts: ArtifactSet = Field(default_factory=dict)
    duration_ms: int = 0
    verified: bool = False

    def with_artifacts(self, artifacts: ArtifactSet, verified: bool) -> "TaskResult":
        """Return a copy carrying corrected artifacts and a verification tag."""
        return self.model_copy(update={"artifacts": dict(artifacts), "verified": verified})


class CacheEntry(BaseModel):
    """A completed orchestration stored for reuse."""

    request_fingerprint: str
    raw_request_text: str
    result_summary: str = ""
    project_name: str = ""
    artifacts: ArtifactSet = Field(default_factory=dict)
    completed_at: float


class CacheHit(BaseModel):
    """A cache lookup that found a reusable entry."""

    tier: CacheTier
    score: float
    entry: CacheEntry


class MergeConflict(BaseModel):
    """Two or more tasks wrote different content to the same path."""

    path: str
    task_ids: list[str]


class MergeOutcome(BaseModel):
    """Merged artifacts plus the conflicts seen while merging.

    Attributes:
        artifacts: The cleaned, merged artifact set.
        conflicts: Every conflict that was detected.
        unresolved: Conflicts that fell back to last-write-wins.
    """

    artifacts: ArtifactSet = Field(default_factory=dict)
    conflicts: list[MergeConflict] = Field(default_factory=list)
    unresolved: list[MergeConflict] = Field(default_factory=list)


class VerificationOutcome(BaseModel):
    """Result of running one task result through review and self-heal."""

    result: TaskResult
    verified: bool
    attempts: int = 0
    aborted: bool = False
    errors: list[str] = Field(default_factory=list)


class OrchestrationResult(BaseModel):
    """Terminal result of one request.

    A failed request only carries ``success=False`` and a ``summary`` message.
    """

    success: bool
    summary: str
    project_name: str = ""
    artifacts: ArtifactSet = Field(default_factory=dict)
    task_results: list[TaskResult] = Field(default_factory=list)
    conflicts: list[MergeConflict] = Field(default_factory=list)
    cache_tier: CacheTier | None = None
    total_duration_ms: int = 0


# ---------------------------------------------------------------------------
# API models
# ---------------------------------------------------------------------------


class CreateJobRequest(BaseModel):
    """Request body for starting a job."""

    request: str = Field(
        min_length=3,
        max_length=10000,
        description="What to generate",
        examples=["Build a todo app with React and Tailwind CSS"],
    )
    mode: JobMode = Field(
        default=JobMode.PLANNING,
        description="planning runs the full pipeline, fast makes one generation call",
    )
    user_id: str | None = Field(default=None, description="Owner used for quota checks")
    model: str | None = Field(
        default=None,
        description="Override the generation model for this job",
        examples=["groq/llama-3.3-70b-versatile"],
    )


class JobResponse(BaseModel):
    """Response for job creation."""

    job_id: str = Field(description="Unique job identifier", examples=["job_abc123def456"])
    status: JobStatus
    events_url: str = Field(description="Event history endpoint for this job")


class JobDetailResponse(BaseModel):
    """Detailed job information."""

    job_id: str
    request: str
    mode: JobMode
    status: JobStatus
    progress: int = Field(default=0, ge=0, le=100)
    progress_message: str = ""
    created_at: float
    completed_at: float | None = None
    error_message: str | None = None
    result: OrchestrationResult | None = None


class CleanupResponse(BaseModel):
    """Result of a trace retention sweep."""

    deleted: int
    retention_days: int


class HealthResponse(BaseModel):
    """Health check response with infrastructure status."""

    status: Literal["healthy", "unhealthy"]
    timestamp: float
    version: str = "0.1.0"
    shared_rate_limit_store: bool = False
    active_jobs: int = 0
