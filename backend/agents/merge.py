"""Merging of per-task artifact sets into one project.

Artifacts are unioned in result order. Paths the target runtime cannot use
are dropped first. When two tasks write different content to the same path,
the conflict is recorded and later handed to a single merge-specialist call;
if that call fails, the union's last-write-wins content stands and the
conflicts are reported as unresolved.
"""

from dataclasses import dataclass, field

import structlog

from agents.artifacts import clean_artifacts, is_denied_path, normalize_path
from agents.generation import GenerationOptions, GenerationService
from agents.prompts import build_merge_prompt
from agents.utils import extract_json_from_response
from models.schemas import ArtifactSet, MergeConflict, MergeOutcome, TaskResult
from tracing import STEP_MERGE, TraceContext

logger = structlog.get_logger(__name__)

COMBINED_OUTPUT_PATH = "/output.md"


@dataclass
class _Union:
    artifacts: ArtifactSet = field(default_factory=dict)
    writers: dict[str, str] = field(default_factory=dict)
    # path -> [(task_id, content)] for every path that conflicted
    versions: dict[str, list[tuple[str, str]]] = field(default_factory=dict)

    def add(self, task_id: str, path: str, content: str) -> None:
        existing = self.artifacts.get(path)
        if existing is not None and existing != content and self.writers[path] != task_id:
            sources = self.versions.setdefault(path, [(self.writers[path], existing)])
            sources.append((task_id, content))
        self.artifacts[path] = content
        self.writers[path] = task_id

    def conflicts(self) -> list[MergeConflict]:
        return [
            MergeConflict(path=path, task_ids=list(dict.fromkeys(t for t, _ in sources)))
            for path, sources in self.versions.items()
        ]


def combine_outputs(results: list[TaskResult]) -> str:
    """Markdown document built from every successful output."""
    return "\n\n---\n\n".join(
        f"## {result.agent_kind.upper()}\n\n{result.output}"
        for result in results
        if result.success and result.output
    )


class MergeResolver:
    """Union, conflict resolution and cleanup of task artifacts.

    Usage:
        >>> outcome = await MergeResolver(generation).merge(results)
        >>> outcome.artifacts.keys(), [c.path for c in outcome.unresolved]
    """

    def __init__(
        self,
        generation: GenerationService,
        preview_chars: int = 500,
        model: str | None = None,
    ) -> None:
        self.generation = generation
        self.preview_chars = preview_chars
        self.model = model

    async def merge(
        self,
        results: list[TaskResult],
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> MergeOutcome:
        union = _Union()
        denied: list[str] = []
        for result in results:
            for path, content in result.artifacts.items():
                if is_denied_path(path):
                    denied.append(path)
                    continue
                union.add(result.task_id, path, content)

        if denied:
            logger.info("merge_denied_paths", job_id=job_id, paths=sorted(set(denied)))

        conflicts = union.conflicts()
        unresolved: list[MergeConflict] = []
        artifacts = union.artifacts
        if conflicts:
            conflicted = {c.path for c in conflicts}
            resolved = await self._resolve(union, conflicts, user_id, trace, job_id, model)
            resolved = {p: c for p, c in resolved.items() if p in conflicted}
            artifacts.update(resolved)
            unresolved = [c for c in conflicts if c.path not in resolved]
            for conflict in unresolved:
                logger.warning(
                    "merge_conflict_unresolved",
                    job_id=job_id,
                    path=conflict.path,
                    task_ids=conflict.task_ids,
                    kept=union.writers[conflict.path],
                )

        artifacts = clean_artifacts(artifacts)
        if not artifacts:
            combined = combine_outputs(results)
            if combined:
                artifacts = {COMBINED_OUTPUT_PATH: combined}

        if trace is not None:
            trace.add_step(
                STEP_MERGE,
                "success" if not unresolved else "partial",
                {"files": len(artifacts), "conflicts": len(conflicts), "unresolved": len(unresolved)},
            )
        logger.info(
            "merge_complete",
            job_id=job_id,
            files=len(artifacts),
            conflicts=len(conflicts),
            unresolved=len(unresolved),
        )
        return MergeOutcome(artifacts=artifacts, conflicts=conflicts, unresolved=unresolved)

    def _conflict_sections(self, union: _Union, conflicts: list[MergeConflict]) -> list[str]:
        sections = []
        for conflict in conflicts:
            header = f"File: {conflict.path} ({len(union.versions[conflict.path])} versions)"
            previews = "\n".join(
                f"--- version from {task_id} ---\n{content[: self.preview_chars]}"
                for task_id, content in union.versions[conflict.path]
            )
            sections.append(f"{header}\n{previews}")
        return sections

    async def _resolve(
        self,
        union: _Union,
        conflicts: list[MergeConflict],
        user_id: str | None,
        trace: TraceContext | None,
        job_id: str | None,
        model: str | None,
    ) -> ArtifactSet:
        """One specialist call for all conflicts. Returns {} on any failure."""
        logger.info("merge_conflicts_detected", job_id=job_id, paths=[c.path for c in conflicts])
        prompt = build_merge_prompt(self._conflict_sections(union, conflicts))
        options = GenerationOptions(
            complexity="medium",
            priority="high",
            model=model or self.model,
            user_id=user_id,
            temperature=0.3,
        )
        try:
            reply = await self.generation.invoke(prompt, options, trace=trace, job_id=job_id)
        except Exception as e:
            logger.warning("merge_specialist_failed", job_id=job_id, error=str(e))
            return {}

        parsed = extract_json_from_response(reply)
        files = parsed.get("files") if parsed else None
        if not isinstance(files, dict):
            logger.warning("merge_specialist_unparseable", job_id=job_id, reply_preview=reply[:200])
            return {}

        return {
            normalize_path(path): content
            for path, content in files.items()
            if isinstance(path, str) and isinstance(content, str)
        }
