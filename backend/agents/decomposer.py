"""Decomposition of a free-form request into a validated task plan.

The decomposer makes exactly one generation call and never retries. Whether
to retry, fall back to ``build_single_task_plan`` or abort is the caller's
decision.

Usage:
    >>> decomposer = Decomposer(generation)
    >>> plan = await decomposer.decompose("Build a todo app")
    >>> plan.parallel_groups
    (('task-1',), ('task-2', 'task-3'))
"""

from typing import Any

import structlog

from agents.generation import GenerationOptions, GenerationService
from agents.prompts import DECOMPOSE_PROMPT, compose_prompt_sections
from agents.utils import extract_json_from_response, topological_sort
from errors import DecompositionError, ProviderError, RateLimitTimeoutError
from models.schemas import AgentKind, Task, TaskPlan
from tracing import TraceContext

logger = structlog.get_logger(__name__)

_PRIORITIES = {"high", "medium", "low"}


def _first_key(data: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def _normalize_task(index: int, raw: Any) -> Task:
    if not isinstance(raw, dict):
        raise DecompositionError(f"Task at index {index} must be an object")

    raw_id = raw.get("id")
    if not isinstance(raw_id, str | int) or not str(raw_id).strip():
        raise DecompositionError(f"Task at index {index} is missing an id")
    task_id = str(raw_id).strip()

    description = raw.get("description", "")
    if not isinstance(description, str) or not description.strip():
        raise DecompositionError(f"Task '{task_id}' is missing a description")

    kind = _first_key(raw, "agent", "agent_kind", "agentKind")
    kind = kind.strip().lower() if isinstance(kind, str) and kind.strip() else AgentKind.FRONTEND.value

    dependencies_raw = raw.get("dependencies") or []
    if not isinstance(dependencies_raw, list):
        raise DecompositionError(f"Task '{task_id}' has an invalid dependencies list")
    dependencies: list[str] = []
    for dep in dependencies_raw:
        dep_id = str(dep).strip()
        if not dep_id or dep_id in dependencies:
            continue
        if dep_id == task_id:
            raise DecompositionError(f"Task '{task_id}' cannot depend on itself")
        dependencies.append(dep_id)

    priority = raw.get("priority", "medium")
    priority = priority.strip().lower() if isinstance(priority, str) else "medium"
    if priority not in _PRIORITIES:
        priority = "medium"

    return Task(
        id=task_id,
        agent_kind=kind,
        description=description.strip(),
        dependencies=tuple(dependencies),
        priority=priority,
    )


def validate_plan(plan: TaskPlan) -> None:
    """Check the task plan invariants.

    - task ids are unique and every dependency names a known task
    - every grouped id exists and each task is in exactly one group
    - all dependencies of a task are in strictly earlier groups

    Raises:
        DecompositionError: On the first violation found.
    """
    if not plan.tasks:
        raise DecompositionError("Plan has no tasks")

    task_map: dict[str, Task] = {}
    for task in plan.tasks:
        if task.id in task_map:
            raise DecompositionError(f"Duplicate task id: {task.id}")
        task_map[task.id] = task

    for task in plan.tasks:
        for dep in task.dependencies:
            if dep not in task_map:
                raise DecompositionError(f"Task '{task.id}' has unknown dependency '{dep}'")

    seen: set[str] = set()
    for group_index, group in enumerate(plan.parallel_groups):
        if not group:
            raise DecompositionError(f"Parallel group {group_index + 1} is empty")
        group_ids: set[str] = set()
        for task_id in group:
            if task_id not in task_map:
                raise DecompositionError(f"Parallel group references unknown task '{task_id}'")
            if task_id in seen or task_id in group_ids:
                raise DecompositionError(f"Task '{task_id}' appears in more than one group")
            missing = [dep for dep in task_map[task_id].dependencies if dep not in seen]
            if missing:
                raise DecompositionError(
                    f"Task '{task_id}' runs before its dependencies: {', '.join(missing)}"
                )
            group_ids.add(task_id)
        seen.update(group_ids)

    ungrouped = [task_id for task_id in task_map if task_id not in seen]
    if ungrouped:
        raise DecompositionError(f"Tasks missing from parallel groups: {', '.join(ungrouped)}")


def parse_plan(data: dict[str, Any]) -> TaskPlan:
    """Build and validate a ``TaskPlan`` from decomposer JSON.

    Accepts camelCase or snake_case keys. When no parallel groups are given,
    they are derived by layering the dependency graph.

    Raises:
        DecompositionError: If the structure or the ordering is invalid.
    """
    raw_tasks = _first_key(data, "subTasks", "subtasks", "tasks")
    if not isinstance(raw_tasks, list) or not raw_tasks:
        raise DecompositionError("Decomposition has no tasks")

    tasks = [_normalize_task(index, raw) for index, raw in enumerate(raw_tasks)]

    raw_groups = _first_key(data, "parallelGroups", "parallel_groups")
    if raw_groups is None:
        ids = [task.id for task in tasks]
        if len(set(ids)) != len(ids):
            raise DecompositionError("Duplicate task ids in decomposition")
        known = set(ids)
        unknown = [(t.id, d) for t in tasks for d in t.dependencies if d not in known]
        if unknown:
            task_id, dep = unknown[0]
            raise DecompositionError(f"Task '{task_id}' has unknown dependency '{dep}'")
        try:
            groups = topological_sort(ids, {task.id: list(task.dependencies) for task in tasks})
        except ValueError as e:
            raise DecompositionError(str(e)) from e
    elif isinstance(raw_groups, list) and all(isinstance(g, list) for g in raw_groups):
        groups = [[str(task_id).strip() for task_id in group] for group in raw_groups]
    else:
        raise DecompositionError("parallelGroups must be a list of lists")

    project_name = _first_key(data, "projectName", "project_name")
    summary = data.get("summary")
    plan = TaskPlan(
        project_name=project_name if isinstance(project_name, str) and project_name else "project",
        summary=summary if isinstance(summary, str) else "",
        tasks=tuple(tasks),
        parallel_groups=tuple(tuple(group) for group in groups),
    )
    validate_plan(plan)
    return plan


def build_single_task_plan(request: str) -> TaskPlan:
    """One frontend task covering the whole request, for callers that fall back."""
    return TaskPlan(
        project_name="project",
        summary=request[:200],
        tasks=(
            Task(id="task-1", agent_kind=AgentKind.FRONTEND.value, description=request, priority="high"),
        ),
        parallel_groups=(("task-1",),),
    )


class Decomposer:
    """Turns a request into a ``TaskPlan`` with one generation call."""

    def __init__(self, generation: GenerationService, model: str | None = None) -> None:
        self.generation = generation
        self.model = model

    async def decompose(
        self,
        request: str,
        context: str | None = None,
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> TaskPlan:
        """Decompose ``request`` into a validated plan.

        Args:
            request: The user's request.
            context: Optional retrieved context to include in the prompt.
            user_id: Owner, passed to the generation call.
            trace: Optional trace for the generation call.
            job_id: Optional job ID for metrics events.
            model: Override for the configured decomposer model.

        Raises:
            DecompositionError: If the call fails or the reply is not a valid plan.
        """
        prompt = compose_prompt_sections(
            DECOMPOSE_PROMPT,
            f"## Reference Context\n{context}" if context else "",
            f'User Request: "{request}"',
        )
        options = GenerationOptions(
            complexity="medium",
            priority="high",
            model=model or self.model,
            user_id=user_id,
            temperature=0.3,
        )

        try:
            reply = await self.generation.invoke(prompt, options, trace=trace, job_id=job_id)
        except (ProviderError, RateLimitTimeoutError) as e:
            raise DecompositionError(f"Decomposition call failed: {e}") from e

        data = extract_json_from_response(reply)
        if data is None:
            logger.warning("decompose_unparseable", reply_preview=reply[:200])
            raise DecompositionError("Failed to parse task decomposition")

        plan = parse_plan(data)
        logger.info(
            "decompose_complete",
            project_name=plan.project_name,
            tasks=len(plan.tasks),
            groups=len(plan.parallel_groups),
        )
        return plan
