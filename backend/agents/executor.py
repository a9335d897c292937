"""Group-by-group execution of a task plan.

Groups run strictly in order. Tasks inside a group run concurrently, each
bounded by its own timeout, and a failing task never affects its siblings or
later groups: it simply produces a failed ``TaskResult``. Tasks in later
groups see a bounded summary of everything that finished before them.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog

from agents.artifacts import parse_artifacts
from agents.generation import GenerationOptions, GenerationService
from agents.prompts import build_task_prompt
from errors import OrchestrationError
from models.schemas import Task, TaskPlan, TaskResult
from quota import QuotaChecker, UnlimitedQuota, ensure_within_quota
from tracing import STEP_TASK_EXECUTE, TraceContext

logger = structlog.get_logger(__name__)

GroupCallback = Callable[[int, int, tuple[str, ...]], Awaitable[None]]

_COMPLEXITY_BY_PRIORITY = {"high": "heavy", "medium": "medium", "low": "light"}


def summarize_results(
    results: list[TaskResult],
    preview_chars: int = 200,
    max_chars: int = 4000,
) -> str:
    """Summarize completed results for prompts of later groups.

    Each successful result contributes one ``[agent_kind]: preview`` line.
    Lines are added in order until the next one would exceed ``max_chars``.
    """
    lines: list[str] = []
    total = 0
    for result in results:
        if not result.success:
            continue
        line = f"[{result.agent_kind}]: {result.output[:preview_chars]}"
        if total + len(line) > max_chars:
            break
        lines.append(line)
        total += len(line) + 1
    return "\n".join(lines)


def order_results(plan: TaskPlan, results: list[TaskResult]) -> list[TaskResult]:
    """Sort ``results`` into plan declaration order."""
    position = {task.id: index for index, task in enumerate(plan.tasks)}
    return sorted(results, key=lambda r: position.get(r.task_id, len(position)))


class ParallelExecutor:
    """Runs a ``TaskPlan`` one parallel group at a time."""

    def __init__(
        self,
        generation: GenerationService,
        quota: QuotaChecker | None = None,
        task_timeout_seconds: float = 60.0,
        context_preview_chars: int = 200,
        context_summary_max_chars: int = 4000,
    ) -> None:
        self.generation = generation
        self.quota = quota or UnlimitedQuota()
        self.task_timeout_seconds = task_timeout_seconds
        self.context_preview_chars = context_preview_chars
        self.context_summary_max_chars = context_summary_max_chars

    async def run(
        self,
        plan: TaskPlan,
        shared_context: str = "",
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        on_group: GroupCallback | None = None,
        model: str | None = None,
    ) -> list[TaskResult]:
        """Execute every group of ``plan``.

        Args:
            plan: A validated task plan.
            shared_context: Context added to every task prompt.
            user_id: Owner, used for quota checks.
            trace: Optional request trace.
            job_id: Optional job ID for logs and metrics events.
            on_group: Awaited before each group with
                ``(group_index, total_groups, task_ids)``.
            model: Optional model override for every task.

        Returns:
            One result per task, in plan declaration order.
        """
        results: list[TaskResult] = []
        total_groups = len(plan.parallel_groups)

        for group_index, group in enumerate(plan.parallel_groups):
            if on_group is not None:
                await on_group(group_index, total_groups, group)
            results.extend(
                await self.run_group(
                    plan,
                    group_index,
                    completed=results,
                    shared_context=shared_context,
                    user_id=user_id,
                    trace=trace,
                    job_id=job_id,
                    model=model,
                )
            )

        return order_results(plan, results)

    async def run_group(
        self,
        plan: TaskPlan,
        group_index: int,
        completed: list[TaskResult] | None = None,
        shared_context: str = "",
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> list[TaskResult]:
        """Run one parallel group concurrently.

        ``completed`` holds the results of every earlier group; only those
        feed the context summary.

        Returns:
            Results in the group's task order.
        """
        task_map = plan.task_by_id()
        group = plan.parallel_groups[group_index]
        context = self._build_context(shared_context, order_results(plan, completed or []))

        logger.info(
            "group_started",
            job_id=job_id,
            group_index=group_index + 1,
            total_groups=len(plan.parallel_groups),
            task_ids=list(group),
        )
        group_results = await asyncio.gather(
            *(
                self.run_task(task_map[task_id], context, user_id, trace, job_id, model)
                for task_id in group
            )
        )
        logger.info(
            "group_complete",
            job_id=job_id,
            group_index=group_index + 1,
            succeeded=sum(1 for r in group_results if r.success),
            failed=sum(1 for r in group_results if not r.success),
        )
        return list(group_results)

    def _build_context(self, shared_context: str, completed: list[TaskResult]) -> str:
        summary = summarize_results(
            completed,
            preview_chars=self.context_preview_chars,
            max_chars=self.context_summary_max_chars,
        )
        return "\n\n".join(part for part in (shared_context.strip(), summary) if part)

    async def run_task(
        self,
        task: Task,
        context: str = "",
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> TaskResult:
        """Run one task under the task timeout. Never raises."""
        start = time.monotonic()
        try:
            result = await asyncio.wait_for(
                self._execute(task, context, user_id, trace, job_id, model),
                timeout=self.task_timeout_seconds,
            )
        except TimeoutError:
            logger.warning(
                "task_timeout",
                job_id=job_id,
                task_id=task.id,
                timeout_seconds=self.task_timeout_seconds,
            )
            result = self._failed(task, f"Task timed out after {self.task_timeout_seconds}s", start)
        except OrchestrationError as e:
            logger.warning("task_failed", job_id=job_id, task_id=task.id, error=str(e))
            result = self._failed(task, str(e), start)
        except Exception as e:
            logger.exception("task_crashed", job_id=job_id, task_id=task.id)
            result = self._failed(task, str(e) or type(e).__name__, start)

        if trace is not None:
            trace.add_step(
                STEP_TASK_EXECUTE,
                "success" if result.success else "error",
                {"task_id": task.id, "agent_kind": task.agent_kind, "files": len(result.artifacts)},
                duration_ms=result.duration_ms,
            )
        return result

    async def _execute(
        self,
        task: Task,
        context: str,
        user_id: str | None,
        trace: TraceContext | None,
        job_id: str | None,
        model: str | None,
    ) -> TaskResult:
        start = time.monotonic()
        await ensure_within_quota(self.quota, user_id, task.agent_kind)

        prompt = build_task_prompt(task.agent_kind, task.description, context)
        options = GenerationOptions(
            complexity=_COMPLEXITY_BY_PRIORITY.get(task.priority, "medium"),
            priority=task.priority,
            model=model,
            user_id=user_id,
        )
        output = await self.generation.invoke(prompt, options, trace=trace, job_id=job_id)
        artifacts = parse_artifacts(output)

        logger.info(
            "task_complete",
            job_id=job_id,
            task_id=task.id,
            agent_kind=task.agent_kind,
            files=sorted(artifacts),
        )
        return TaskResult(
            task_id=task.id,
            agent_kind=task.agent_kind,
            success=True,
            output=output,
            artifacts=artifacts,
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    @staticmethod
    def _failed(task: Task, message: str, start: float) -> TaskResult:
        return TaskResult(
            task_id=task.id,
            agent_kind=task.agent_kind,
            success=False,
            output=f"Error: {message}",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
