"""Per-request execution traces.

A ``TraceContext`` is created for each request and passed explicitly through
the call chain. Stages only append steps and bump counters; nothing reads a
trace back to make a decision. When the request ends, ``TraceRecorder``
persists the trace in the background and logs a one-line summary.

Usage:
    >>> recorder = TraceRecorder(store, background)
    >>> trace = recorder.start(job_id="job_1", user_id=None, mode="planning", request=text)
    >>> trace.add_step(STEP_DECOMPOSE, "success", {"tasks": 3}, duration_ms=812)
    >>> recorder.finish(trace, status="success")
"""

import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Literal, Protocol

import structlog

from background import BackgroundTasks

logger = structlog.get_logger(__name__)

STEP_START = "start"
STEP_QUOTA_CHECK = "quota_check"
STEP_CACHE_PERSISTENT = "cache_persistent"
STEP_CACHE_JACCARD = "cache_jaccard"
STEP_CACHE_SEMANTIC = "cache_semantic"
STEP_CACHE_SAVE = "cache_save"
STEP_AI_CALL = "ai_call"
STEP_RATE_LIMIT = "rate_limit"
STEP_DECOMPOSE = "decompose"
STEP_TASK_EXECUTE = "task_execute"
STEP_VERIFY = "verify"
STEP_SELF_HEAL = "self_heal"
STEP_MERGE = "merge"
STEP_COMPLETE = "complete"
STEP_ERROR = "error"

TraceStatus = Literal["success", "error", "cache_hit", "timeout"]


@dataclass(frozen=True)
class TraceStep:
    timestamp: float
    step: str
    result: str
    details: dict[str, Any] = field(default_factory=dict)
    duration_ms: int | None = None


@dataclass
class TraceContext:
    """Append-only record of one request's journey through the pipeline."""

    job_id: str | None
    user_id: str | None
    mode: str
    request_preview: str = ""
    trace_id: str = field(default_factory=lambda: f"trace_{uuid.uuid4().hex[:12]}")
    started_at: float = field(default_factory=time.time)
    steps: list[TraceStep] = field(default_factory=list)
    cache_hits: int = 0
    cache_misses: int = 0
    rate_limit_waits: int = 0

    def add_step(
        self,
        step: str,
        result: str,
        details: dict[str, Any] | None = None,
        duration_ms: int | None = None,
    ) -> None:
        self.steps.append(
            TraceStep(
                timestamp=time.time(),
                step=step,
                result=result,
                details=details or {},
                duration_ms=duration_ms,
            )
        )

    def record_cache(self, hit: bool) -> None:
        if hit:
            self.cache_hits += 1
        else:
            self.cache_misses += 1

    def record_rate_limit_wait(self, waited_ms: int, provider: str) -> None:
        self.rate_limit_waits += 1
        self.add_step(STEP_RATE_LIMIT, "waited", {"provider": provider}, duration_ms=waited_ms)

    def to_record(self, status: str, ended_at: float | None = None) -> dict[str, Any]:
        """Flatten the trace into the shape ``ResultStore.save_trace`` expects."""
        return {
            "trace_id": self.trace_id,
            "job_id": self.job_id,
            "user_id": self.user_id,
            "mode": self.mode,
            "status": status,
            "steps": [
                {
                    "timestamp": s.timestamp,
                    "step": s.step,
                    "result": s.result,
                    "details": s.details,
                    "duration_ms": s.duration_ms,
                }
                for s in self.steps
            ],
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "rate_limit_waits": self.rate_limit_waits,
            "started_at": self.started_at,
            "ended_at": ended_at or time.time(),
        }


class TraceStore(Protocol):
    async def save_trace(self, trace: dict[str, Any]) -> None:
        ...

    async def delete_traces_older_than(self, cutoff: float) -> int:
        ...


class TraceRecorder:
    """Creates traces and persists finished ones without blocking the request."""

    def __init__(self, store: TraceStore | None, background: BackgroundTasks) -> None:
        self.store = store
        self.background = background

    def start(
        self,
        job_id: str | None,
        user_id: str | None,
        mode: str,
        request: str,
    ) -> TraceContext:
        trace = TraceContext(
            job_id=job_id,
            user_id=user_id,
            mode=mode,
            request_preview=request[:200],
        )
        trace.add_step(STEP_START, "initiated", {"mode": mode, "request_length": len(request)})
        return trace

    def finish(self, trace: TraceContext, status: TraceStatus) -> None:
        """Close ``trace`` and persist it in the background."""
        ended_at = time.time()
        trace.add_step(STEP_COMPLETE if status != "error" else STEP_ERROR, status)
        logger.info(
            "trace_finished",
            trace_id=trace.trace_id,
            job_id=trace.job_id,
            status=status,
            steps=len(trace.steps),
            cache_hits=trace.cache_hits,
            cache_misses=trace.cache_misses,
            rate_limit_waits=trace.rate_limit_waits,
            duration_ms=int((ended_at - trace.started_at) * 1000),
        )
        if self.store is not None:
            self.background.spawn(
                self.store.save_trace(trace.to_record(status, ended_at)),
                name=f"save_trace_{trace.trace_id}",
            )

    async def cleanup(self, retention_days: int) -> int:
        """Delete persisted traces older than ``retention_days``."""
        if self.store is None:
            return 0
        cutoff = time.time() - retention_days * 86400
        return await self.store.delete_traces_older_than(cutoff)
