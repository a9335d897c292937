"""HTTP API routes for the kilatflow backend.

This module defines the control-plane endpoints: job submission and status,
job event history, rate-limiter status, trace maintenance and health checks.
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING, Annotated, Any

import structlog
from fastapi import APIRouter, HTTPException, Path, Query, status

from config import settings
from models.schemas import (
    CleanupResponse,
    CreateJobRequest,
    HealthResponse,
    JobDetailResponse,
    JobMode,
    JobResponse,
    JobStatus,
    OrchestrationResult,
)

if TYPE_CHECKING:
    from job_manager import JobInfo, JobManager

logger = structlog.get_logger(__name__)

router = APIRouter()

_TERMINAL_JOB_STATUSES = {
    JobStatus.COMPLETED,
    JobStatus.FAILED,
    JobStatus.CANCELLED,
}

# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------


def _to_status(raw_status: object) -> JobStatus:
    """Convert an untrusted status value into JobStatus."""
    if isinstance(raw_status, str):
        try:
            return JobStatus(raw_status)
        except ValueError:
            logger.warning("invalid_persisted_status", status=raw_status)
    return JobStatus.PENDING


def _to_mode(raw_mode: object) -> JobMode:
    if isinstance(raw_mode, str):
        try:
            return JobMode(raw_mode)
        except ValueError:
            logger.warning("invalid_persisted_mode", mode=raw_mode)
    return JobMode.PLANNING


def _to_float(value: object) -> float | None:
    if isinstance(value, (int, float)):
        return float(value)
    return None


def _job_detail(job: JobInfo) -> JobDetailResponse:
    return JobDetailResponse(
        job_id=job.job_id,
        request=job.request,
        mode=job.mode,
        status=job.status,
        progress=job.progress,
        progress_message=job.progress_message,
        created_at=job.created_at,
        completed_at=job.completed_at,
        error_message=job.error_message,
        result=job.result,
    )


def _persisted_detail(row: dict[str, Any]) -> JobDetailResponse:
    """Build a detail response from a ``ResultStore`` row."""
    status_value = _to_status(row.get("status"))
    result = None
    if status_value == JobStatus.COMPLETED:
        result = OrchestrationResult(
            success=True,
            summary=row.get("result_summary") or "",
            project_name=row.get("project_name") or "",
            artifacts=row.get("artifacts") or {},
        )
    return JobDetailResponse(
        job_id=row["id"],
        request=row.get("request_text") or "",
        mode=_to_mode(row.get("mode")),
        status=status_value,
        progress=100 if status_value in _TERMINAL_JOB_STATUSES else 0,
        created_at=_to_float(row.get("created_at")) or 0.0,
        completed_at=_to_float(row.get("completed_at")),
        error_message=row.get("error_message"),
        result=result,
    )


# Job manager dependency (set during application startup)
_job_manager: JobManager | None = None


def set_job_manager(manager: JobManager | None) -> None:
    """Set the job manager instance for the routes.

    This should be called during application startup to inject the job
    manager dependency.

    Args:
        manager: The JobManager instance to use for all routes.
    """
    global _job_manager
    _job_manager = manager
    logger.info("job_manager_configured", configured=manager is not None)


def get_job_manager() -> JobManager:
    """Get the job manager instance.

    Raises:
        RuntimeError: If the job manager has not been configured.
    """
    if _job_manager is None:
        logger.error("job_manager_not_configured")
        raise RuntimeError("JobManager not configured. Call set_job_manager() during startup.")
    return _job_manager


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------


@router.post(
    "/api/jobs",
    response_model=JobResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Start a job",
    description="Start a planning or fast-mode job in the background.",
)
async def create_job(request: CreateJobRequest) -> JobResponse:
    """Create a job and start it in the background.

    Raises:
        HTTPException: If the job could not be started.
    """
    job_manager = get_job_manager()

    try:
        job_id = await job_manager.create_job(
            request.request,
            mode=request.mode,
            user_id=request.user_id,
            model=request.model,
        )
    except Exception as e:
        logger.error("job_creation_failed", error=str(e), mode=request.mode.value)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to create job: {e}",
        ) from e

    job = job_manager.get_job(job_id)
    return JobResponse(
        job_id=job_id,
        status=job.status if job else JobStatus.PENDING,
        events_url=f"/api/jobs/{job_id}/events",
    )


@router.get(
    "/api/jobs",
    response_model=list[JobDetailResponse],
    summary="List jobs",
    description="List recent jobs, newest first, including persisted history.",
)
async def list_jobs(
    limit: Annotated[int, Query(description="Maximum jobs to return", ge=1, le=200)] = 25,
) -> list[JobDetailResponse]:
    job_manager = get_job_manager()
    jobs = sorted(job_manager.get_all_jobs(), key=lambda j: j.created_at, reverse=True)[:limit]
    response = [_job_detail(job) for job in jobs]

    if len(response) >= limit or job_manager.store is None:
        return response

    # Fallback to persisted jobs to keep history after process restarts.
    existing = {item.job_id for item in response}
    for row in await job_manager.store.list_jobs(limit=limit):
        if row.get("id") in existing:
            continue
        response.append(_persisted_detail(row))
        if len(response) >= limit:
            break
    return response


@router.get(
    "/api/jobs/{job_id}",
    response_model=JobDetailResponse,
    summary="Get job details",
)
async def get_job(
    job_id: Annotated[str, Path(description="The job ID")],
) -> JobDetailResponse:
    """Get the current state of a job, falling back to persisted history.

    Raises:
        HTTPException: If the job is not found.
    """
    job_manager = get_job_manager()
    job = job_manager.get_job(job_id)
    if job is not None:
        return _job_detail(job)

    row = await job_manager.store.get_job(job_id) if job_manager.store is not None else None
    if row is None:
        logger.warning("job_not_found", job_id=job_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return _persisted_detail(row)


@router.get(
    "/api/jobs/{job_id}/events",
    summary="Get job events",
    description="Return every event recorded for a job so far.",
)
async def get_job_events(
    job_id: Annotated[str, Path(description="The job ID")],
) -> list[dict[str, Any]]:
    job_manager = get_job_manager()
    events = job_manager.event_bus.get_event_history(job_id)
    if not events and job_manager.get_job(job_id) is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    return [event.model_dump(mode="json") for event in events]


@router.post(
    "/api/jobs/{job_id}/cancel",
    status_code=status.HTTP_200_OK,
    summary="Cancel a running job",
)
async def cancel_job(
    job_id: Annotated[str, Path(description="The job ID")],
) -> dict[str, str]:
    """Cancel a running job.

    Raises:
        HTTPException: If the job is not found or already finished.
    """
    job_manager = get_job_manager()
    job = job_manager.get_job(job_id)

    if job is None:
        logger.warning("cancel_job_not_found", job_id=job_id)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Job {job_id} not found",
        )
    if job.status in _TERMINAL_JOB_STATUSES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Job {job_id} is already {job.status.value}",
        )

    await job_manager.cancel_job(job_id)
    logger.info("job_cancelled", job_id=job_id)
    return {"message": f"Job {job_id} cancelled"}


# -----------------------------------------------------------------------------
# Operations
# -----------------------------------------------------------------------------


@router.get(
    "/api/rate-limits",
    summary="Rate limiter status",
    description="Current window and in-flight counters per provider.",
)
async def get_rate_limits() -> dict[str, dict[str, Any]]:
    job_manager = get_job_manager()
    return await job_manager.orchestrator.generation.rate_limiter.get_status()


@router.post(
    "/api/maintenance/cleanup-traces",
    response_model=CleanupResponse,
    summary="Delete old traces",
)
async def cleanup_traces(
    retention_days: Annotated[
        int | None, Query(description="Override the configured retention", ge=1, le=365)
    ] = None,
) -> CleanupResponse:
    job_manager = get_job_manager()
    days = retention_days or settings.trace_retention_days
    deleted = await job_manager.orchestrator.recorder.cleanup(days)
    logger.info("trace_cleanup_requested", retention_days=days, deleted=deleted)
    return CleanupResponse(deleted=deleted, retention_days=days)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Health check endpoint with rate-limit store and job status.",
)
async def health_check() -> HealthResponse:
    """Health check endpoint with infrastructure status.

    Reports unhealthy until the job manager is configured.
    """
    try:
        job_manager = get_job_manager()
    except RuntimeError:
        # JobManager not configured yet (e.g., during startup)
        return HealthResponse(status="unhealthy", timestamp=time.time())

    return HealthResponse(
        status="healthy",
        timestamp=time.time(),
        shared_rate_limit_store=job_manager.orchestrator.generation.rate_limiter.has_shared_store,
        active_jobs=job_manager.active_count(),
    )
