"""Rate-limited generation calls.

``GenerationService.invoke`` is the only way the orchestration core talks to
a provider. Every call holds a distributed rate-limiter slot for its target
provider while the request is in flight, and the slot is released even if
the caller stops waiting because of a timeout.
"""

from dataclasses import dataclass

import structlog

from agents.utils import LLMClient
from rate_limiter import DistributedRateLimiter, provider_for_model
from tracing import STEP_AI_CALL, TraceContext

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class GenerationOptions:
    """Per-call options.

    Attributes:
        complexity: Rough size of the job ("light", "medium", "heavy").
        priority: Scheduling hint carried into logs and traces.
        model: LiteLLM model name; None uses the client default.
        user_id: Owner of the call.
        system_prompt: Optional system message placed before the prompt.
        temperature: Sampling temperature.
        max_tokens: Optional response token cap.
    """

    complexity: str = "medium"
    priority: str = "medium"
    model: str | None = None
    user_id: str | None = None
    system_prompt: str | None = None
    temperature: float = 0.7
    max_tokens: int | None = None


class GenerationService:
    """Prompt in, text out, gated by the distributed rate limiter."""

    def __init__(
        self,
        llm_client: LLMClient,
        rate_limiter: DistributedRateLimiter,
        admission_timeout_seconds: float = 30.0,
    ) -> None:
        self.llm_client = llm_client
        self.rate_limiter = rate_limiter
        self.admission_timeout_ms = int(admission_timeout_seconds * 1000)

    async def invoke(
        self,
        prompt: str,
        options: GenerationOptions | None = None,
        trace: TraceContext | None = None,
        job_id: str | None = None,
    ) -> str:
        """Run one generation call.

        Args:
            prompt: The user-role message.
            options: Call options (defaults to ``GenerationOptions()``).
            trace: Optional trace that records rate-limit waits and the call.
            job_id: Optional job ID for LLM metrics events.

        Returns:
            The response text.

        Raises:
            RateLimitTimeoutError: If no slot was admitted in time.
            ProviderError: If the provider call failed.
        """
        options = options or GenerationOptions()
        model = options.model or self.llm_client.default_model
        provider = provider_for_model(model, self.rate_limiter.limits)

        messages = []
        if options.system_prompt:
            messages.append({"role": "system", "content": options.system_prompt})
        messages.append({"role": "user", "content": prompt})

        async with self.rate_limiter.slot(provider, self.admission_timeout_ms) as decision:
            if decision.waited_ms and trace is not None:
                trace.record_rate_limit_wait(decision.waited_ms, provider)

            response = await self.llm_client.call(
                messages,
                model=model,
                temperature=options.temperature,
                max_tokens=options.max_tokens,
                job_id=job_id,
            )

        if trace is not None:
            trace.add_step(
                STEP_AI_CALL,
                "success",
                {
                    "model": model,
                    "provider": provider,
                    "complexity": options.complexity,
                    "priority": options.priority,
                },
                duration_ms=response.metrics.latency_ms,
            )
        logger.debug(
            "generation_complete",
            provider=provider,
            model=model,
            complexity=options.complexity,
            response_chars=len(response.content),
        )
        return response.content
