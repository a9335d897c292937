"""Job manager for running orchestrations in the background.

This module provides the JobManager class that owns the lifecycle of jobs:
ID generation, background execution, progress tracking, persistence and
cancellation.

The JobManager coordinates between:
- Orchestrator: runs the planning pipeline or the fast path
- EventBus: carries lifecycle and progress events to API consumers
- ResultStore: persists job status for listing and the durable cache

Usage:
    >>> manager = JobManager(orchestrator, event_bus, store)
    >>> job_id = await manager.create_job("Build a todo app", mode=JobMode.PLANNING)
    >>> manager.get_job(job_id).status
    <JobStatus.RUNNING: 'running'>
    >>> await manager.cleanup_all()
"""

import asyncio
import contextlib
import time
import uuid
from dataclasses import dataclass

import structlog

from agents.orchestrator import Orchestrator
from events import EventBus
from events.types import EventType, OrchestrationEvent
from models.database import ResultStore
from models.schemas import JobMode, JobStatus, OrchestrationResult

logger = structlog.get_logger(__name__)


@dataclass
class JobInfo:
    """In-memory state of one job.

    Attributes:
        job_id: Unique identifier (e.g., "job_abc123def456")
        request: The user's original request
        mode: planning or fast
        status: Current lifecycle status
        user_id: Optional owner
        model: Optional generation model override
        created_at: Unix timestamp of creation
        started_at: Unix timestamp when execution began
        completed_at: Unix timestamp when execution finished
        progress: Last reported percent (0-100)
        progress_message: Last reported milestone
        error_message: Failure message, if any
        result: Terminal orchestration result
    """

    job_id: str
    request: str
    mode: JobMode
    status: JobStatus
    user_id: str | None
    model: str | None
    created_at: float
    started_at: float | None = None
    completed_at: float | None = None
    progress: int = 0
    progress_message: str = ""
    error_message: str | None = None
    result: OrchestrationResult | None = None


class JobManager:
    """Runs jobs as named asyncio tasks and tracks their state.

    Thread Safety:
        Registry mutations go through an asyncio.Lock.
    """

    def __init__(
        self,
        orchestrator: Orchestrator,
        event_bus: EventBus,
        store: ResultStore | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.event_bus = event_bus
        self.store = store
        self._jobs: dict[str, JobInfo] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}
        self._lock = asyncio.Lock()
        logger.info("job_manager_initialized")

    def _generate_job_id(self) -> str:
        return f"job_{uuid.uuid4().hex[:12]}"

    async def _persist_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: str | None = None,
    ) -> None:
        if self.store is None:
            return
        await self.store.update_job_status(job_id, status.value, error_message)

    async def create_job(
        self,
        request: str,
        mode: JobMode = JobMode.PLANNING,
        user_id: str | None = None,
        model: str | None = None,
    ) -> str:
        """Register a job and start it in the background.

        Args:
            request: What to generate
            mode: planning (full pipeline) or fast (single call)
            user_id: Optional owner for quota checks
            model: Optional generation model override

        Returns:
            The new job ID
        """
        job_id = self._generate_job_id()
        job = JobInfo(
            job_id=job_id,
            request=request,
            mode=mode,
            status=JobStatus.PENDING,
            user_id=user_id,
            model=model,
            created_at=time.time(),
        )
        async with self._lock:
            self._jobs[job_id] = job

        if self.store is not None:
            await self.store.save_job(
                job_id,
                request,
                mode.value,
                user_id=user_id,
                status=JobStatus.PENDING.value,
                created_at=job.created_at,
            )

        await self.event_bus.publish(
            OrchestrationEvent(
                type=EventType.JOB_STARTED,
                job_id=job_id,
                data={"mode": mode.value, "request": request},
            )
        )

        async with self._lock:
            task = asyncio.create_task(self._run_job(job), name=f"job_{job_id}")
            self._tasks[job_id] = task

            def _remove_task(t: asyncio.Task[None], jid: str = job_id) -> None:
                self._tasks.pop(jid, None)

            task.add_done_callback(_remove_task)

        logger.info("job_created", job_id=job_id, mode=mode.value, request_length=len(request))
        return job_id

    async def _run_job(self, job: JobInfo) -> None:
        job_id = job.job_id

        async def on_progress(percent: int, message: str) -> None:
            job.progress = percent
            job.progress_message = message

        try:
            async with self._lock:
                job.status = JobStatus.RUNNING
                job.started_at = time.time()
            await self._persist_status(job_id, JobStatus.RUNNING)

            if job.mode == JobMode.FAST:
                result = await self.orchestrator.execute_fast(
                    job.request,
                    user_id=job.user_id,
                    job_id=job_id,
                    model=job.model,
                    on_progress=on_progress,
                )
            else:
                result = await self.orchestrator.orchestrate(
                    job.request,
                    user_id=job.user_id,
                    job_id=job_id,
                    on_progress=on_progress,
                    model=job.model,
                )

            async with self._lock:
                job.result = result
                job.completed_at = time.time()
                if result.success:
                    job.status = JobStatus.COMPLETED
                else:
                    job.status = JobStatus.FAILED
                    job.error_message = result.summary

            if result.success:
                if self.store is not None and result.cache_tier is not None:
                    # A replayed result must not become a fresher durable entry.
                    await self.store.update_job_status(job_id, JobStatus.COMPLETED.value)
                elif self.store is not None:
                    # A cache write may already have upserted the row.
                    await self.store.upsert_completed(
                        job_id,
                        job.request,
                        result.summary,
                        result.artifacts,
                        project_name=result.project_name,
                        mode=job.mode.value,
                        user_id=job.user_id,
                        completed_at=job.completed_at,
                    )
                await self.event_bus.publish(
                    OrchestrationEvent(
                        type=EventType.JOB_COMPLETE,
                        job_id=job_id,
                        data={
                            "summary": result.summary,
                            "files": sorted(result.artifacts),
                            "cache_tier": result.cache_tier.value if result.cache_tier else None,
                            "duration_ms": result.total_duration_ms,
                        },
                    )
                )
            else:
                await self._persist_status(job_id, JobStatus.FAILED, result.summary)
                await self.event_bus.publish(
                    OrchestrationEvent(
                        type=EventType.JOB_ERROR,
                        job_id=job_id,
                        data={"error": result.summary},
                    )
                )

            logger.info("job_complete", job_id=job_id, status=job.status.value)

        except asyncio.CancelledError:
            logger.info("job_cancelled", job_id=job_id)
            async with self._lock:
                job.status = JobStatus.CANCELLED
                job.completed_at = time.time()
            await self._persist_status(job_id, JobStatus.CANCELLED)
            raise

        except Exception as e:
            logger.exception("job_error", job_id=job_id, error=str(e))
            async with self._lock:
                job.status = JobStatus.FAILED
                job.error_message = str(e)
                job.completed_at = time.time()
            await self._persist_status(job_id, JobStatus.FAILED, str(e))
            await self.event_bus.publish(
                OrchestrationEvent(
                    type=EventType.JOB_ERROR,
                    job_id=job_id,
                    data={"error": str(e)},
                )
            )

        finally:
            await self.event_bus.close_job(job_id)

    async def wait_for_job(self, job_id: str, timeout: float | None = None) -> JobInfo:
        """Wait until a job's background task finishes.

        Raises:
            KeyError: If the job doesn't exist
            TimeoutError: If the job is still running after ``timeout``
        """
        job = self._jobs.get(job_id)
        if job is None:
            raise KeyError(f"Job '{job_id}' not found")
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        return job

    async def cancel_job(self, job_id: str) -> None:
        """Cancel a running job. No-op for jobs that already finished.

        Raises:
            KeyError: If the job doesn't exist
        """
        async with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise KeyError(f"Job '{job_id}' not found")
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED):
                logger.info("cancel_job_noop_terminal_state", job_id=job_id, status=job.status.value)
                return
            task = self._tasks.pop(job_id, None)

        # Cancel outside the lock; the task's CancelledError handler takes it.
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            if job.status != JobStatus.CANCELLED:
                job.status = JobStatus.CANCELLED
                job.completed_at = time.time()

        await self.event_bus.publish(
            OrchestrationEvent(
                type=EventType.JOB_CANCELLED,
                job_id=job_id,
                data={"reason": "user_cancelled"},
            )
        )
        logger.info("cancel_job_complete", job_id=job_id)

    def get_job(self, job_id: str) -> JobInfo | None:
        return self._jobs.get(job_id)

    def get_all_jobs(self) -> list[JobInfo]:
        return list(self._jobs.values())

    def active_count(self) -> int:
        """Jobs that are pending or running."""
        return sum(
            1 for job in self._jobs.values() if job.status in (JobStatus.PENDING, JobStatus.RUNNING)
        )

    async def cleanup_all(self) -> None:
        """Cancel every running job. Called at application shutdown."""
        logger.info("cleanup_all_start", job_count=len(self._jobs))

        async with self._lock:
            tasks_to_cancel = list(self._tasks.items())
            self._tasks.clear()

        for job_id, task in tasks_to_cancel:
            if not task.done():
                task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.error("cleanup_task_cancel_failed", job_id=job_id, error=str(e))

        async with self._lock:
            self._jobs.clear()

        logger.info("cleanup_all_complete")
