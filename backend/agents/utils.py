"""Provider access and small helpers shared by the pipeline stages.

This module provides:
- LLMClient: LiteLLM completion calls with backoff, a fallback model and
  LLM_CALL_COMPLETE events
- MockLLMClient: Scripted client for tests and offline runs
- extract_json_from_response: Tolerant JSON extraction from free-form replies
- topological_sort: Dependency layering for task plans
"""

import asyncio
import json
import re
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    APIConnectionError,
    AuthenticationError,
    BadGatewayError,
    BadRequestError,
    InternalServerError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from errors import ProviderError
from events.bus import EventBus
from events.types import EventType, LLMMetrics, OrchestrationEvent

logger = structlog.get_logger()

# Provider errors worth another attempt with the same model.
TRANSIENT_ERRORS = (
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
    InternalServerError,
    BadGatewayError,
    APIConnectionError,
)

# Provider errors that no retry or fallback will fix.
REJECTED_ERRORS = (AuthenticationError, BadRequestError)

MAX_BACKOFF_SECONDS = 4.0


@dataclass
class LLMResponse:
    """Text reply of one completion call plus its usage metrics."""

    content: str
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Completion calls through LiteLLM.

    Transient provider errors (rate limits, 5xx, dropped connections) are
    retried with exponential backoff; once the retries run out the fallback
    model gets a single attempt. Any other failure skips the retries and goes
    straight to the fallback. Rejections (bad credentials, malformed
    requests) fail immediately. Every failure leaves as ``ProviderError``.
    Rate limiting is
    not done here: ``GenerationService`` holds a limiter slot around every
    call.

    Attributes:
        event_bus: Receives LLM_CALL_COMPLETE events when a job id is given
        default_model: Model used when a call does not name one
        fallback_model: Model tried after the primary exhausts its retries
        retry_attempts: Extra attempts after the first transient failure
        retry_delay: Base backoff delay in seconds
        mock_response: Canned reply handed to LiteLLM instead of calling a
            provider (mock mode)
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
        mock_response: str | None = None,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.default_model
        self.fallback_model = fallback_model or settings.fallback_model
        self.retry_attempts = (
            settings.llm_max_retries if retry_attempts is None else retry_attempts
        )
        self.retry_delay = retry_delay
        self.mock_response = mock_response

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        job_id: str | None = None,
    ) -> LLMResponse:
        """Run one completion.

        Args:
            messages: Chat messages with 'role' and 'content'
            model: Model to use (defaults to ``default_model``)
            temperature: Sampling temperature
            max_tokens: Optional response token cap
            job_id: Job the call belongs to, for the metrics event

        Returns:
            The reply text and its metrics.

        Raises:
            ProviderError: On a rejected request, or when the primary model
                and the fallback both failed.
        """
        primary = model or self.default_model
        started = time.monotonic()
        last_error: Exception | None = None

        for attempt in range(1, self.retry_attempts + 2):
            try:
                raw = await self._complete(primary, messages, temperature, max_tokens)
            except TRANSIENT_ERRORS as exc:
                last_error = exc
                if attempt > self.retry_attempts:
                    logger.error(
                        "llm_retries_exhausted",
                        model=primary,
                        attempts=attempt,
                        error_type=type(exc).__name__,
                        error=str(exc),
                    )
                    break
                delay = min(self.retry_delay * 2 ** (attempt - 1), MAX_BACKOFF_SECONDS)
                logger.warning(
                    "llm_call_retry",
                    model=primary,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    retry_delay=delay,
                )
                await asyncio.sleep(delay)
            except REJECTED_ERRORS as exc:
                logger.error(
                    "llm_call_rejected",
                    model=primary,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise ProviderError(f"{type(exc).__name__}: {exc}", provider=primary) from exc
            except Exception as exc:
                # Unknown provider failure: no retry, but the fallback still gets a turn.
                last_error = exc
                logger.error(
                    "llm_call_failed",
                    model=primary,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                break
            else:
                return await self._finish(raw, primary, started, job_id, attempt)

        fallback = self.fallback_model
        if fallback and fallback != primary:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=primary,
                fallback_model=fallback,
                primary_error=str(last_error),
            )
            try:
                raw = await self._complete(fallback, messages, temperature, max_tokens)
            except Exception as exc:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=fallback,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
            else:
                return await self._finish(raw, fallback, started, job_id, attempt=1)

        raise ProviderError(
            f"LLM call failed after all retries: {last_error}",
            provider=primary,
        ) from last_error

    async def _complete(
        self,
        model: str,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        if self.mock_response is not None:
            kwargs["mock_response"] = self.mock_response
        return await acompletion(**kwargs)

    async def _finish(
        self,
        raw: ModelResponse,
        model: str,
        started: float,
        job_id: str | None,
        attempt: int,
    ) -> LLMResponse:
        """Turn a LiteLLM reply into an ``LLMResponse`` and report its metrics."""
        choice = raw.choices[0]
        usage = getattr(raw, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=int((time.monotonic() - started) * 1000),
        )

        if self.event_bus is not None and job_id:
            await self.event_bus.publish(
                OrchestrationEvent(
                    type=EventType.LLM_CALL_COMPLETE,
                    job_id=job_id,
                    data=metrics.model_dump(),
                )
            )

        logger.info(
            "llm_call_complete",
            model=model,
            input_tokens=metrics.input_tokens,
            output_tokens=metrics.output_tokens,
            latency_ms=metrics.latency_ms,
            attempt=attempt,
        )
        return LLMResponse(
            content=choice.message.content or "",
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=raw,
        )


# ---------------------------------------------------------------------------
# Plan helpers
# ---------------------------------------------------------------------------


def topological_sort(
    task_ids: list[str],
    dependencies: dict[str, list[str]],
) -> list[list[str]]:
    """Sort task ids into dependency layers.

    Groups tasks so that all dependencies in layer N are resolved before
    layer N+1 begins. Layer 0 has no dependencies. Ids inside a layer keep
    their declaration order.

    Args:
        task_ids: Task ids in declaration order
        dependencies: Task id to the ids it depends on

    Returns:
        List of layers, where each layer is a list of task ids that can run
        in parallel

    Raises:
        ValueError: If a circular dependency is detected
    """
    resolved: set[str] = set()
    remaining = list(task_ids)
    layers: list[list[str]] = []

    while remaining:
        ready = [
            task_id for task_id in remaining
            if all(dep in resolved for dep in dependencies.get(task_id, []))
        ]
        if not ready:
            logger.warning("topological_sort_cycle_detected", remaining=remaining)
            raise ValueError(f"Circular dependency among tasks: {', '.join(remaining)}")

        layers.append(ready)
        resolved.update(ready)
        remaining = [task_id for task_id in remaining if task_id not in resolved]

    return layers


# ---------------------------------------------------------------------------
# JSON extraction
# ---------------------------------------------------------------------------

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```", re.IGNORECASE)
_DECODER = json.JSONDecoder()


def _first_object(text: str) -> dict[str, Any] | None:
    """Decode the first JSON object that starts at one of the ``{`` in ``text``."""
    position = text.find("{")
    while position != -1:
        try:
            value, _ = _DECODER.raw_decode(text, position)
        except json.JSONDecodeError:
            position = text.find("{", position + 1)
            continue
        return value
    return None


def extract_json_from_response(response: str) -> dict[str, Any] | None:
    """Pull a JSON object out of a reply that may wrap it in prose or fences.

    The whole reply is tried first, then each fenced block, then the first
    decodable object anywhere in the text.

    Args:
        response: The full LLM response text

    Returns:
        Parsed JSON dict if found, None otherwise
    """
    try:
        parsed = json.loads(response.strip())
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    for match in _FENCE_RE.finditer(response):
        found = _first_object(match.group(1))
        if found is not None:
            return found

    return _first_object(response)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


def make_llm_response(content: str, model: str = "mock-model") -> LLMResponse:
    """Build an ``LLMResponse`` with zeroed metrics."""
    return LLMResponse(
        content=content,
        finish_reason="stop",
        metrics=LLMMetrics(model=model, input_tokens=0, output_tokens=0, latency_ms=0),
    )


class MockLLMClient(LLMClient):
    """Scripted client that replays canned replies and records every call.

    Usage:
        >>> client = MockLLMClient(responses=["first reply", "second reply"])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse | str] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = [
            make_llm_response(r) if isinstance(r, str) else r
            for r in (responses or [])
        ]
        self.call_history: list[dict[str, Any]] = []
        self._next = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        job_id: str | None = None,
    ) -> LLMResponse:
        """Return the next scripted reply.

        Raises:
            IndexError: When the script is used up
        """
        self.call_history.append({
            "messages": messages,
            "model": model or self.default_model,
            "temperature": temperature,
            "max_tokens": max_tokens,
        })
        if self._next >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._next]
        self._next += 1
        logger.debug("mock_llm_call", index=self._next - 1, content_preview=response.content[:50])
        return response

    def reset(self) -> None:
        """Replay the script from the start and forget recorded calls."""
        self._next = 0
        self.call_history.clear()
