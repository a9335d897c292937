"""Tests for agents/executor.py -- group-by-group parallel execution."""

import asyncio

from agents.executor import ParallelExecutor, order_results, summarize_results
from errors import ProviderError
from models.schemas import Task, TaskPlan, TaskResult
from quota import CostBudgetStatus, QuotaStatus
from tests.conftest import RoutingMockLLMClient, file_block, make_generation
from tracing import STEP_AI_CALL, STEP_TASK_EXECUTE, TraceContext


def _task(task_id: str, kind: str, description: str, *deps: str) -> Task:
    return Task(id=task_id, agent_kind=kind, description=description, dependencies=deps)


def _result(task_id: str, kind: str = "frontend", success: bool = True, output: str = "") -> TaskResult:
    return TaskResult(task_id=task_id, agent_kind=kind, success=success, output=output)


TWO_GROUP_PLAN = TaskPlan(
    tasks=(
        _task("task-1", "design", "Design the layout"),
        _task("task-2", "frontend", "Build the list", "task-1"),
        _task("task-3", "research", "Find storage options"),
    ),
    parallel_groups=(("task-1", "task-3"), ("task-2",)),
)


class RefuseResearch:
    """Quota collaborator that refuses research work."""

    async def check_quota(self, user_id: str | None, kind: str) -> QuotaStatus:
        return QuotaStatus(exceeded=kind == "research")

    async def check_cost_budget(self, user_id: str | None, kind: str) -> CostBudgetStatus:
        return CostBudgetStatus(exceeded=False)


# =========================================================================
# Helpers
# =========================================================================


class TestSummarizeResults:
    def test_one_line_per_successful_result(self) -> None:
        results = [
            _result("a", "design", output="Blue header"),
            _result("b", "frontend", success=False, output="Error: boom"),
            _result("c", "research", output="Use localStorage"),
        ]
        assert summarize_results(results) == "[design]: Blue header\n[research]: Use localStorage"

    def test_preview_is_truncated(self) -> None:
        summary = summarize_results([_result("a", output="x" * 500)], preview_chars=10)
        assert summary == "[frontend]: " + "x" * 10

    def test_lines_stop_before_max_chars(self) -> None:
        results = [_result(str(i), output="y" * 50) for i in range(10)]
        summary = summarize_results(results, max_chars=130)
        assert len(summary.splitlines()) == 2
        assert len(summary) <= 130

    def test_order_results_uses_declaration_order(self) -> None:
        results = [_result("task-3"), _result("task-1"), _result("task-2")]
        ordered = order_results(TWO_GROUP_PLAN, results)
        assert [r.task_id for r in ordered] == ["task-1", "task-2", "task-3"]


# =========================================================================
# ParallelExecutor
# =========================================================================


class TestParallelExecutor:
    async def test_runs_groups_in_order_with_context(self) -> None:
        llm = RoutingMockLLMClient({
            "Design the layout": file_block("/Header.tsx", "export function Header() {}"),
            "Find storage options": "Use localStorage for persistence.",
            "Build the list": file_block("/App.tsx", "export default function App() {}"),
        })
        groups: list[tuple[int, int, tuple[str, ...]]] = []

        async def on_group(index: int, total: int, ids: tuple[str, ...]) -> None:
            groups.append((index, total, ids))

        executor = ParallelExecutor(make_generation(llm))
        results = await executor.run(TWO_GROUP_PLAN, shared_context="Keep it simple", on_group=on_group)

        assert [r.task_id for r in results] == ["task-1", "task-2", "task-3"]
        assert all(r.success for r in results)
        assert results[0].artifacts == {"/Header.tsx": "export function Header() {}"}
        assert results[1].artifacts == {"/App.tsx": "export default function App() {}"}
        assert results[2].artifacts == {}
        assert groups == [(0, 2, ("task-1", "task-3")), (1, 2, ("task-2",))]

        [second_group_prompt] = llm.prompts_matching("Build the list")
        assert "Keep it simple" in second_group_prompt
        assert "[research]: Use localStorage for persistence." in second_group_prompt
        assert "[design]: " in second_group_prompt

        [first_group_prompt] = llm.prompts_matching("Design the layout")
        assert "[research]" not in first_group_prompt

    async def test_timeout_fails_only_that_task(self) -> None:
        async def never_finishes(prompt: str) -> str:
            await asyncio.sleep(10)
            return "too late"

        plan = TaskPlan(
            tasks=(_task("slow", "frontend", "Slow task"), _task("quick", "frontend", "Quick task")),
            parallel_groups=(("slow", "quick"),),
        )
        llm = RoutingMockLLMClient({
            "Slow task": never_finishes,
            "Quick task": file_block("/App.tsx", "export default function App() {}"),
        })
        executor = ParallelExecutor(make_generation(llm), task_timeout_seconds=0.05)

        slow, quick = await executor.run(plan)

        assert not slow.success
        assert slow.output == "Error: Task timed out after 0.05s"
        assert slow.artifacts == {}
        assert quick.success
        assert "/App.tsx" in quick.artifacts

    async def test_failed_task_does_not_stop_later_groups(self) -> None:
        llm = RoutingMockLLMClient({
            "Design the layout": ProviderError("503 from groq", provider="groq"),
            "Find storage options": ValueError("boom"),
            "Build the list": file_block("/App.tsx", "export default function App() {}"),
        })
        results = await ParallelExecutor(make_generation(llm)).run(TWO_GROUP_PLAN)

        design, frontend, research = results
        assert not design.success
        assert design.output == "Error: 503 from groq"
        assert not research.success
        assert research.output == "Error: boom"
        assert frontend.success

        # Failed results never feed the context summary.
        [prompt] = llm.prompts_matching("Build the list")
        assert "Context From Other Agents" not in prompt

    async def test_quota_refusal_fails_task_without_a_call(self) -> None:
        llm = RoutingMockLLMClient({
            "Design the layout": "layout",
            "Build the list": "list",
        })
        executor = ParallelExecutor(make_generation(llm), quota=RefuseResearch())
        results = await executor.run(TWO_GROUP_PLAN, user_id="user-1")

        research = results[2]
        assert not research.success
        assert research.output == "Error: Quota exceeded for research"
        assert llm.prompts_matching("Find storage options") == []

    async def test_model_override_and_priority(self) -> None:
        plan = TaskPlan(
            tasks=(Task(id="a", agent_kind="frontend", description="Only task", priority="high"),),
            parallel_groups=(("a",),),
        )
        llm = RoutingMockLLMClient({"Only task": "done"})
        trace = TraceContext(job_id="job-1", user_id=None, mode="planning")

        await ParallelExecutor(make_generation(llm)).run(plan, trace=trace, model="openrouter/x")

        assert llm.call_history[0]["model"] == "openrouter/x"
        ai_step = next(s for s in trace.steps if s.step == STEP_AI_CALL)
        assert ai_step.details["complexity"] == "heavy"
        assert ai_step.details["priority"] == "high"
        task_step = next(s for s in trace.steps if s.step == STEP_TASK_EXECUTE)
        assert task_step.result == "success"
        assert task_step.details["task_id"] == "a"
