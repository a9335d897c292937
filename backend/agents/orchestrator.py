"""Request orchestration as a LangGraph state machine.

Graph structure:
    START -> cache_lookup -> decompose -> execute_group -> ... -> verify -> merge -> finalize -> END
                 |               |        ^          |
                 |               |        |__________|  (one pass per parallel group)
                 v               v
                END             END    (cache hit / decomposition failure)

``execute_group`` loops until every group ran, then routes to ``verify``, or
straight to ``END`` when no task succeeded.

Progress milestones reported through ``on_progress`` and ``PROGRESS`` events:
0 cache check, 15 decomposition, 30 + 40*i/n per group, 70 verification,
90 merge, 100 completion (also 100 on a cache hit).

Usage:
    >>> orchestrator = Orchestrator(generation, cache, recorder, event_bus=bus)
    >>> result = await orchestrator.orchestrate("Build a todo app", job_id="job_1")
    >>> result.success, sorted(result.artifacts)
"""

import time
from collections.abc import Awaitable, Callable
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.artifacts import clean_artifacts, parse_artifacts
from agents.decomposer import Decomposer, build_single_task_plan
from agents.executor import ParallelExecutor, order_results
from agents.generation import GenerationOptions, GenerationService
from agents.merge import MergeResolver
from agents.prompts import build_fast_prompt
from agents.verification import Verifier
from cache.tiered import TieredCache
from config import settings
from errors import DecompositionError, OrchestrationError
from events.bus import EventBus
from events.types import EventType, OrchestrationEvent
from models.schemas import (
    REVIEWED_KINDS,
    CacheHit,
    JobMode,
    MergeOutcome,
    OrchestrationResult,
    TaskPlan,
    TaskResult,
)
from quota import QuotaChecker, UnlimitedQuota, ensure_within_quota
from tracing import STEP_DECOMPOSE, STEP_QUOTA_CHECK, TraceContext, TraceRecorder

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, str], Awaitable[None]]

PROGRESS_CACHE_CHECK = 0
PROGRESS_DECOMPOSE = 15
PROGRESS_GROUPS_START = 30
PROGRESS_GROUPS_SPAN = 40
PROGRESS_VERIFY = 70
PROGRESS_MERGE = 90
PROGRESS_COMPLETE = 100

# Graph steps per run: five fixed nodes plus one per parallel group.
GRAPH_RECURSION_LIMIT = 100


def group_progress(group_index: int, total_groups: int) -> int:
    """Percent reported when group ``group_index`` (0-based) starts."""
    return PROGRESS_GROUPS_START + int(PROGRESS_GROUPS_SPAN * group_index / max(total_groups, 1))


# -----------------------------------------------------------------------------
# State Definition
# -----------------------------------------------------------------------------


class OrchestrationState(TypedDict):
    """State carried through the orchestration graph.

    Attributes:
        request: The user's request text
        user_id: Owner, used for quota checks and persistence
        job_id: Job identifier for events, traces and cache writes
        model: Optional model override for generation calls
        context: Optional context added to decomposition and task prompts
        trace: Per-request trace (append-only)
        on_progress: Optional progress sink
        started_at: Monotonic start time
        cache_hit: Hit returned by the cache lookup, if any
        plan: Validated task plan
        group_index: Index of the next group to execute
        task_results: Results of every executed task, in plan order
        merge_outcome: Merge outcome
        status: Current graph status
        error_message: Whole-request failure message
        result: Terminal result
    """

    request: str
    user_id: str | None
    job_id: str
    model: str | None
    context: str
    trace: TraceContext
    on_progress: ProgressCallback | None
    started_at: float
    cache_hit: CacheHit | None
    plan: TaskPlan | None
    group_index: int
    task_results: list[TaskResult]
    merge_outcome: MergeOutcome | None
    status: Literal["running", "cached", "complete", "failed"]
    error_message: str | None
    result: OrchestrationResult | None


# -----------------------------------------------------------------------------
# Orchestrator Class
# -----------------------------------------------------------------------------


class Orchestrator:
    """Wires cache, decomposer, executor, verifier and merge resolver together.

    Every collaborator is injected; ``orchestrate`` is safe to call
    concurrently for different jobs since per-request data lives in the graph
    state only.
    """

    def __init__(
        self,
        generation: GenerationService,
        cache: TieredCache,
        recorder: TraceRecorder,
        event_bus: EventBus | None = None,
        quota: QuotaChecker | None = None,
        decomposer: Decomposer | None = None,
        executor: ParallelExecutor | None = None,
        verifier: Verifier | None = None,
        merger: MergeResolver | None = None,
        decomposition_fallback: bool | None = None,
    ) -> None:
        self.generation = generation
        self.cache = cache
        self.recorder = recorder
        self.event_bus = event_bus
        self.quota = quota or UnlimitedQuota()
        self.decomposer = decomposer or Decomposer(generation, model=settings.decomposer_model)
        self.executor = executor or ParallelExecutor(
            generation,
            quota=self.quota,
            task_timeout_seconds=settings.task_timeout_seconds,
            context_preview_chars=settings.context_preview_chars,
            context_summary_max_chars=settings.context_summary_max_chars,
        )
        self.verifier = verifier or Verifier(
            generation,
            max_attempts=settings.verification_max_attempts,
            timeout_seconds=settings.verification_timeout_seconds,
            model=settings.reviewer_model,
        )
        self.merger = merger or MergeResolver(generation, preview_chars=settings.merge_preview_chars)
        self.decomposition_fallback = (
            settings.decomposition_fallback_enabled
            if decomposition_fallback is None
            else decomposition_fallback
        )
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(OrchestrationState)

        graph.add_node("cache_lookup", self._cache_lookup)
        graph.add_node("decompose", self._decompose)
        graph.add_node("execute_group", self._execute_group)
        graph.add_node("verify", self._verify)
        graph.add_node("merge", self._merge)
        graph.add_node("finalize", self._finalize)

        graph.add_edge(START, "cache_lookup")
        graph.add_conditional_edges(
            "cache_lookup",
            self._route_after_cache,
            {"hit": END, "miss": "decompose"},
        )
        graph.add_conditional_edges(
            "decompose",
            self._route_after_decompose,
            {"execute": "execute_group", "end": END},
        )
        graph.add_conditional_edges(
            "execute_group",
            self._route_after_group,
            {"next_group": "execute_group", "verify": "verify", "end": END},
        )
        graph.add_edge("verify", "merge")
        graph.add_edge("merge", "finalize")
        graph.add_edge("finalize", END)

        return graph.compile()

    # -------------------------------------------------------------------------
    # Event Emission Helpers
    # -------------------------------------------------------------------------

    async def _publish(self, job_id: str, event_type: EventType, data: dict[str, Any]) -> None:
        if self.event_bus is None:
            return
        await self.event_bus.publish(
            OrchestrationEvent(type=event_type, job_id=job_id, data=data)
        )

    async def _notify(
        self,
        job_id: str,
        on_progress: ProgressCallback | None,
        percent: int,
        message: str,
    ) -> None:
        """Notify the progress sink. Never consulted for control flow."""
        if on_progress is not None:
            try:
                await on_progress(percent, message)
            except Exception as e:
                logger.warning("progress_callback_failed", job_id=job_id, error=str(e))
        await self._publish(job_id, EventType.PROGRESS, {"percent": percent, "message": message})

    async def _progress(self, state: OrchestrationState, percent: int, message: str) -> None:
        await self._notify(state["job_id"], state.get("on_progress"), percent, message)

    def _elapsed_ms(self, state: OrchestrationState) -> int:
        return int((time.monotonic() - state["started_at"]) * 1000)

    # -------------------------------------------------------------------------
    # Nodes
    # -------------------------------------------------------------------------

    async def _cache_lookup(self, state: OrchestrationState) -> dict[str, Any]:
        await self._progress(state, PROGRESS_CACHE_CHECK, "Checking cache")
        hit = await self.cache.lookup(state["request"], trace=state["trace"])
        job_id = state["job_id"]

        if hit is None:
            await self._publish(job_id, EventType.CACHE_MISS, {})
            return {"cache_hit": None}

        logger.info("cache_hit", job_id=job_id, tier=hit.tier.value, score=round(hit.score, 3))
        await self._publish(job_id, EventType.CACHE_HIT, {"tier": hit.tier.value, "similarity": hit.score})
        result = OrchestrationResult(
            success=True,
            summary=hit.entry.result_summary or "Served from cache",
            project_name=hit.entry.project_name,
            artifacts=dict(hit.entry.artifacts),
            cache_tier=hit.tier,
            total_duration_ms=self._elapsed_ms(state),
        )
        await self._progress(state, PROGRESS_COMPLETE, f"Served from {hit.tier.value} cache")
        return {"cache_hit": hit, "status": "cached", "result": result}

    def _route_after_cache(self, state: OrchestrationState) -> str:
        return "hit" if state.get("cache_hit") is not None else "miss"

    async def _decompose(self, state: OrchestrationState) -> dict[str, Any]:
        await self._progress(state, PROGRESS_DECOMPOSE, "Decomposing request")
        trace = state["trace"]
        started = time.monotonic()
        try:
            plan = await self.decomposer.decompose(
                state["request"],
                context=state.get("context") or None,
                user_id=state.get("user_id"),
                trace=trace,
                job_id=state["job_id"],
                model=state.get("model"),
            )
        except DecompositionError as e:
            trace.add_step(STEP_DECOMPOSE, "error", {"error": str(e)})
            if not self.decomposition_fallback:
                logger.error("decompose_failed", job_id=state["job_id"], error=str(e))
                return {
                    "status": "failed",
                    "error_message": f"Decomposition failed: {e}",
                }
            logger.warning("decompose_fallback_single_task", job_id=state["job_id"], error=str(e))
            plan = build_single_task_plan(state["request"])

        trace.add_step(
            STEP_DECOMPOSE,
            "success",
            {"tasks": len(plan.tasks), "groups": len(plan.parallel_groups)},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        await self._publish(
            state["job_id"],
            EventType.PLAN_READY,
            {
                "project_name": plan.project_name,
                "summary": plan.summary,
                "tasks": [task.model_dump() for task in plan.tasks],
                "parallel_groups": [list(group) for group in plan.parallel_groups],
            },
        )
        return {"plan": plan, "group_index": 0, "task_results": []}

    def _route_after_decompose(self, state: OrchestrationState) -> str:
        return "end" if state.get("status") == "failed" else "execute"

    async def _execute_group(self, state: OrchestrationState) -> dict[str, Any]:
        plan = state["plan"]
        assert plan is not None
        group_index = state["group_index"]
        total_groups = len(plan.parallel_groups)
        job_id = state["job_id"]

        await self._progress(
            state,
            group_progress(group_index, total_groups),
            f"Running group {group_index + 1}/{total_groups}",
        )
        await self._publish(
            job_id,
            EventType.GROUP_STARTED,
            {"group_index": group_index + 1, "task_ids": list(plan.parallel_groups[group_index])},
        )

        group_results = await self.executor.run_group(
            plan,
            group_index,
            completed=state["task_results"],
            shared_context=state.get("context", ""),
            user_id=state.get("user_id"),
            trace=state["trace"],
            job_id=job_id,
            model=state.get("model"),
        )
        for result in group_results:
            await self._publish(
                job_id,
                EventType.TASK_COMPLETE if result.success else EventType.TASK_FAILED,
                {
                    "task_id": result.task_id,
                    "agent_kind": result.agent_kind,
                    "duration_ms": result.duration_ms,
                    **(
                        {"files": len(result.artifacts)}
                        if result.success
                        else {"error": result.output}
                    ),
                },
            )

        task_results = order_results(plan, [*state["task_results"], *group_results])
        update: dict[str, Any] = {"task_results": task_results, "group_index": group_index + 1}

        if group_index + 1 >= total_groups and not any(r.success for r in task_results):
            logger.error("all_tasks_failed", job_id=job_id, tasks=len(task_results))
            update.update(status="failed", error_message="All tasks failed")
        return update

    def _route_after_group(self, state: OrchestrationState) -> str:
        if state.get("status") == "failed":
            return "end"
        plan = state["plan"]
        if plan is not None and state["group_index"] < len(plan.parallel_groups):
            return "next_group"
        return "verify"

    async def _verify(self, state: OrchestrationState) -> dict[str, Any]:
        await self._progress(state, PROGRESS_VERIFY, "Verifying results")
        plan = state["plan"]
        assert plan is not None
        verified = await self.verifier.verify_all(
            plan,
            state["task_results"],
            user_id=state.get("user_id"),
            trace=state["trace"],
            job_id=state["job_id"],
            model=state.get("model"),
        )
        await self._publish(
            state["job_id"],
            EventType.VERIFICATION_COMPLETE,
            {
                "verified": sum(1 for r in verified if r.verified),
                "total": sum(1 for r in verified if r.agent_kind in REVIEWED_KINDS and r.success),
            },
        )
        return {"task_results": verified}

    async def _merge(self, state: OrchestrationState) -> dict[str, Any]:
        await self._progress(state, PROGRESS_MERGE, "Merging results")
        outcome = await self.merger.merge(
            state["task_results"],
            user_id=state.get("user_id"),
            trace=state["trace"],
            job_id=state["job_id"],
            model=state.get("model"),
        )
        await self._publish(
            state["job_id"],
            EventType.MERGE_COMPLETE,
            {
                "files": len(outcome.artifacts),
                "conflicts": len(outcome.conflicts),
                "unresolved": len(outcome.unresolved),
            },
        )
        return {"merge_outcome": outcome}

    async def _finalize(self, state: OrchestrationState) -> dict[str, Any]:
        plan = state["plan"]
        outcome = state["merge_outcome"]
        assert plan is not None and outcome is not None
        results = state["task_results"]
        succeeded = sum(1 for r in results if r.success)

        summary = plan.summary or f"Completed {succeeded} of {len(results)} tasks"
        if succeeded < len(results):
            summary = f"{summary} ({len(results) - succeeded} task(s) failed)"

        result = OrchestrationResult(
            success=True,
            summary=summary,
            project_name=plan.project_name,
            artifacts=outcome.artifacts,
            task_results=results,
            conflicts=outcome.conflicts,
            total_duration_ms=self._elapsed_ms(state),
        )
        self.cache.store(
            state["request"],
            state["job_id"],
            result,
            mode=JobMode.PLANNING.value,
            user_id=state.get("user_id"),
            trace=state["trace"],
        )
        await self._progress(state, PROGRESS_COMPLETE, "Complete")
        return {"status": "complete", "result": result}

    # -------------------------------------------------------------------------
    # Entry Points
    # -------------------------------------------------------------------------

    async def orchestrate(
        self,
        request: str,
        user_id: str | None = None,
        job_id: str | None = None,
        on_progress: ProgressCallback | None = None,
        model: str | None = None,
        context: str = "",
    ) -> OrchestrationResult:
        """Run the full pipeline for ``request``.

        Args:
            request: The user's request.
            user_id: Owner, used for quota checks.
            job_id: Job identifier; generated when omitted.
            on_progress: Optional ``(percent, message)`` sink.
            model: Optional generation model override.
            context: Optional context for decomposition and task prompts.

        Returns:
            The terminal result. Whole-request failures come back as
            ``success=False`` with the message in ``summary``.
        """
        job_id = job_id or f"job_{int(time.time() * 1000)}"
        trace = self.recorder.start(job_id, user_id, JobMode.PLANNING.value, request)
        initial_state = OrchestrationState(
            request=request,
            user_id=user_id,
            job_id=job_id,
            model=model,
            context=context,
            trace=trace,
            on_progress=on_progress,
            started_at=time.monotonic(),
            cache_hit=None,
            plan=None,
            group_index=0,
            task_results=[],
            merge_outcome=None,
            status="running",
            error_message=None,
            result=None,
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state, config={"recursion_limit": GRAPH_RECURSION_LIMIT}
            )
        except Exception:
            self.recorder.finish(trace, "error")
            raise

        result = final_state.get("result")
        if result is None:
            result = OrchestrationResult(
                success=False,
                summary=final_state.get("error_message") or "Orchestration failed",
                total_duration_ms=int((time.monotonic() - initial_state["started_at"]) * 1000),
            )

        status = "cache_hit" if final_state.get("cache_hit") else ("success" if result.success else "error")
        self.recorder.finish(trace, status)
        logger.info(
            "orchestration_complete",
            job_id=job_id,
            success=result.success,
            cache_tier=result.cache_tier.value if result.cache_tier else None,
            files=len(result.artifacts),
            duration_ms=result.total_duration_ms,
        )
        return result

    async def execute_fast(
        self,
        request: str,
        context: str = "",
        user_id: str | None = None,
        job_id: str | None = None,
        model: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> OrchestrationResult:
        """Single-call fast path: cache, quota, one generation call, parse, review.

        Returns:
            The terminal result; provider, quota and rate-limit failures come
            back as ``success=False``.
        """
        job_id = job_id or f"job_{int(time.time() * 1000)}"
        started = time.monotonic()
        trace = self.recorder.start(job_id, user_id, JobMode.FAST.value, request)

        async def progress(percent: int, message: str) -> None:
            await self._notify(job_id, on_progress, percent, message)

        await progress(PROGRESS_CACHE_CHECK, "Checking cache")
        hit = await self.cache.lookup(request, trace=trace)
        if hit is not None:
            await self._publish(job_id, EventType.CACHE_HIT, {"tier": hit.tier.value, "similarity": hit.score})
            await progress(PROGRESS_COMPLETE, f"Served from {hit.tier.value} cache")
            self.recorder.finish(trace, "cache_hit")
            return OrchestrationResult(
                success=True,
                summary=hit.entry.result_summary or "Served from cache",
                project_name=hit.entry.project_name,
                artifacts=dict(hit.entry.artifacts),
                cache_tier=hit.tier,
                total_duration_ms=int((time.monotonic() - started) * 1000),
            )
        await self._publish(job_id, EventType.CACHE_MISS, {})

        try:
            await ensure_within_quota(self.quota, user_id, JobMode.FAST.value)
            trace.add_step(STEP_QUOTA_CHECK, "passed")
            await progress(PROGRESS_GROUPS_START, "Generating")
            reply = await self.generation.invoke(
                build_fast_prompt(request, context),
                GenerationOptions(complexity="heavy", priority="high", model=model, user_id=user_id),
                trace=trace,
                job_id=job_id,
            )
        except OrchestrationError as e:
            logger.warning("fast_path_failed", job_id=job_id, error=str(e))
            self.recorder.finish(trace, "error")
            return OrchestrationResult(
                success=False,
                summary=str(e),
                total_duration_ms=int((time.monotonic() - started) * 1000),
            )

        parsed = parse_artifacts(reply)
        if parsed:
            await progress(PROGRESS_VERIFY, "Verifying results")
            plan = build_single_task_plan(request)
            [checked] = await self.verifier.verify_all(
                plan,
                [
                    TaskResult(
                        task_id=plan.tasks[0].id,
                        agent_kind=plan.tasks[0].agent_kind,
                        success=True,
                        output=reply,
                        artifacts=parsed,
                    )
                ],
                user_id=user_id,
                trace=trace,
                job_id=job_id,
                model=model,
            )
            parsed = checked.artifacts
        artifacts = clean_artifacts(parsed)
        result = OrchestrationResult(
            success=True,
            summary="Generated in fast mode",
            artifacts=artifacts or {"/output.md": reply},
            total_duration_ms=int((time.monotonic() - started) * 1000),
        )
        self.cache.store(request, job_id, result, mode=JobMode.FAST.value, user_id=user_id, trace=trace)
        await progress(PROGRESS_COMPLETE, "Complete")
        self.recorder.finish(trace, "success")
        return result
