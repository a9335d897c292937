"""Review and self-heal pass over task results.

Every coding result goes through a review call that strips disallowed
patterns. Results of the kinds in ``VALIDATED_KINDS`` then enter a bounded
validate/fix loop. The loop always hands back the most recent artifact set;
only a provider failure makes it fall back to what the task originally
produced.

Usage:
    >>> verifier = Verifier(generation)
    >>> verified_results = await verifier.verify_all(plan, results)
"""

import asyncio
import time

import structlog

from agents.artifacts import parse_artifacts
from agents.generation import GenerationOptions, GenerationService
from agents.prompts import build_fix_prompt, build_review_prompt
from agents.validation import ArtifactValidator
from errors import OrchestrationError
from models.schemas import (
    REVIEWED_KINDS,
    VALIDATED_KINDS,
    ArtifactSet,
    Task,
    TaskPlan,
    TaskResult,
    VerificationOutcome,
)
from tracing import STEP_SELF_HEAL, STEP_VERIFY, TraceContext

logger = structlog.get_logger(__name__)

NO_CHANGES = "NO_CHANGES"


class Verifier:
    """Runs the review pass and the validate/fix loop."""

    def __init__(
        self,
        generation: GenerationService,
        validator: ArtifactValidator | None = None,
        max_attempts: int = 5,
        timeout_seconds: float = 45.0,
        model: str | None = None,
    ) -> None:
        self.generation = generation
        self.validator = validator or ArtifactValidator()
        self.max_attempts = max_attempts
        self.timeout_seconds = timeout_seconds
        self.model = model

    def _options(self, user_id: str | None, model: str | None) -> GenerationOptions:
        return GenerationOptions(
            complexity="heavy",
            priority="high",
            model=model or self.model,
            user_id=user_id,
            temperature=0.2,
        )

    async def verify(
        self,
        task: Task,
        result: TaskResult,
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> VerificationOutcome:
        """Review ``result`` and, for validated kinds, self-heal it.

        Args:
            task: The task that produced ``result``.
            result: A successful task result.
            user_id: Owner, passed to generation calls.
            trace: Optional request trace.
            job_id: Optional job ID for logs and metrics events.
            model: Optional model override.

        Returns:
            The outcome. ``outcome.result`` is a new ``TaskResult`` carrying
            the final artifacts and verification tag.
        """
        original = dict(result.artifacts)
        if not original:
            # Nothing to review; spend no provider call on it.
            return VerificationOutcome(
                result=result.with_artifacts(original, verified=True),
                verified=True,
            )
        options = self._options(user_id, model)
        attempts = 0
        errors: list[str] = []

        try:
            reply = await self.generation.invoke(
                build_review_prompt(original), options, trace=trace, job_id=job_id
            )
            artifacts = self._apply_reply(original, reply)

            if task.agent_kind not in VALIDATED_KINDS or not artifacts:
                verified = True
            else:
                artifacts, verified, attempts, errors = await self._self_heal(
                    task, artifacts, options, trace, job_id
                )
        except OrchestrationError as e:
            logger.warning(
                "verification_aborted",
                job_id=job_id,
                task_id=task.id,
                error=str(e),
            )
            if trace is not None:
                trace.add_step(STEP_VERIFY, "aborted", {"task_id": task.id, "error": str(e)})
            return VerificationOutcome(
                result=result.with_artifacts(original, verified=False),
                verified=False,
                attempts=attempts,
                aborted=True,
                errors=[str(e)],
            )

        if trace is not None:
            trace.add_step(
                STEP_VERIFY,
                "verified" if verified else "unverified",
                {"task_id": task.id, "attempts": attempts, "files": len(artifacts)},
            )
        return VerificationOutcome(
            result=result.with_artifacts(artifacts, verified=verified),
            verified=verified,
            attempts=attempts,
            errors=errors,
        )

    async def _self_heal(
        self,
        task: Task,
        artifacts: ArtifactSet,
        options: GenerationOptions,
        trace: TraceContext | None,
        job_id: str | None,
    ) -> tuple[ArtifactSet, bool, int, list[str]]:
        errors = self.validator.validate(artifacts)
        attempts = 0

        while errors and attempts < self.max_attempts:
            attempts += 1
            start = time.monotonic()
            logger.info(
                "self_heal_attempt",
                job_id=job_id,
                task_id=task.id,
                attempt=attempts,
                errors=len(errors),
            )
            reply = await self.generation.invoke(
                build_fix_prompt(artifacts, errors, attempts, self.max_attempts),
                options,
                trace=trace,
                job_id=job_id,
            )
            artifacts = self._apply_reply(artifacts, reply)
            errors = self.validator.validate(artifacts)

            if trace is not None:
                trace.add_step(
                    STEP_SELF_HEAL,
                    "fixed" if not errors else "errors_remaining",
                    {"task_id": task.id, "attempt": attempts, "errors": len(errors)},
                    duration_ms=int((time.monotonic() - start) * 1000),
                )

        if errors:
            logger.warning(
                "self_heal_exhausted",
                job_id=job_id,
                task_id=task.id,
                attempts=attempts,
                remaining_errors=errors[:5],
            )
            return artifacts, False, attempts, errors

        if attempts:
            logger.info("self_heal_verified", job_id=job_id, task_id=task.id, attempts=attempts)
        return artifacts, True, attempts, []

    @staticmethod
    def _apply_reply(current: ArtifactSet, reply: str) -> ArtifactSet:
        """Overlay the files found in ``reply`` onto ``current``.

        An empty or ``NO_CHANGES`` reply, or one without any files, leaves the
        set unchanged.
        """
        if not reply.strip() or reply.strip() == NO_CHANGES:
            return dict(current)
        corrected = parse_artifacts(reply)
        if not corrected:
            return dict(current)
        return {**current, **corrected}

    async def verify_all(
        self,
        plan: TaskPlan,
        results: list[TaskResult],
        user_id: str | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
        model: str | None = None,
    ) -> list[TaskResult]:
        """Verify every successful coding result concurrently.

        Research and failed results pass through untouched. If the whole pass
        takes longer than ``timeout_seconds``, the input results are returned.

        Returns:
            Results in input order.
        """
        task_map = plan.task_by_id()
        pending = [
            index
            for index, result in enumerate(results)
            if result.success
            and result.agent_kind in REVIEWED_KINDS
            and result.task_id in task_map
        ]
        if not pending:
            return list(results)

        async def run_all() -> list[VerificationOutcome]:
            return await asyncio.gather(
                *(
                    self.verify(
                        task_map[results[index].task_id],
                        results[index],
                        user_id=user_id,
                        trace=trace,
                        job_id=job_id,
                        model=model,
                    )
                    for index in pending
                )
            )

        try:
            outcomes = await asyncio.wait_for(run_all(), timeout=self.timeout_seconds)
        except TimeoutError:
            logger.warning(
                "verification_timeout",
                job_id=job_id,
                timeout_seconds=self.timeout_seconds,
                pending=len(pending),
            )
            if trace is not None:
                trace.add_step(STEP_VERIFY, "timeout", {"pending": len(pending)})
            return list(results)

        verified = list(results)
        for index, outcome in zip(pending, outcomes, strict=True):
            verified[index] = outcome.result

        logger.info(
            "verification_complete",
            job_id=job_id,
            checked=len(outcomes),
            verified=sum(1 for o in outcomes if o.verified),
            aborted=sum(1 for o in outcomes if o.aborted),
        )
        return verified
