"""Distributed admission control for generation provider calls.

Every worker process shares one request budget per provider through Redis.
Each provider has a fixed window that bounds both requests per window
(``max_rpm``) and calls in flight (``max_concurrent``). If Redis is not
configured or a command fails, the limiter switches to a per-process
approximation whose budgets are the shared ones divided by the estimated
instance count. An outage therefore admits fewer requests, never more.

Usage:
    >>> import redis.asyncio as redis
    >>> limiter = DistributedRateLimiter(redis.from_url(url, decode_responses=True))
    >>> async with limiter.slot("groq"):
    ...     text = await llm.call(...)
"""

import asyncio
import contextlib
import time
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, replace
from typing import Any, Literal

import structlog
from redis.exceptions import RedisError

from config import DEFAULT_PROVIDER_LIMITS, ProviderLimit
from errors import RateLimitTimeoutError

logger = structlog.get_logger(__name__)

SlotSource = Literal["shared", "local"]

DEFAULT_PROVIDER = "default"


@dataclass(frozen=True)
class RateLimitDecision:
    """Outcome of one admission check.

    Attributes:
        allowed: Whether the call may proceed now.
        remaining: Requests left in the current window.
        reset_ms: Suggested wait before asking again when denied.
        source: Which counters made the decision.
        waited_ms: Time spent queued before admission (set by ``wait_for_slot``).
    """

    allowed: bool
    remaining: int
    reset_ms: int
    source: SlotSource = "shared"
    waited_ms: int = 0


@dataclass
class RateLimitState:
    """Per-process counters used while the shared store is unavailable."""

    window_start_ms: float = 0.0
    request_count_in_window: int = 0
    concurrent_in_flight: int = 0


def provider_for_model(model: str, known: dict[str, ProviderLimit] | None = None) -> str:
    """Map a LiteLLM model name onto a rate-limited provider name.

    ``groq/llama-3.3-70b`` becomes ``groq``. Models without a prefix, or with a
    prefix that has no configured budget, share the ``default`` budget.
    """
    known = known if known is not None else DEFAULT_PROVIDER_LIMITS
    prefix = model.split("/", 1)[0].lower() if "/" in model else ""
    return prefix if prefix in known else DEFAULT_PROVIDER


class DistributedRateLimiter:
    """Fixed-window request and concurrency limiter shared across processes.

    Every mutation of a shared counter is a single atomic Redis command. The
    limiter increments first and validates the returned value, rolling the
    increment back when it overshoots, so no decision relies on a value read
    in an earlier round trip. The window lives in the count key's TTL: the
    caller whose INCR returns 1 opens it, and the ``window`` key only records
    its start for ``reset_ms``.

    Attributes:
        limits: Provider name to budget mapping. Must include ``default``.
        estimated_instances: Divisor applied to budgets in local fallback.
    """

    def __init__(
        self,
        redis_client: Any | None = None,
        limits: dict[str, ProviderLimit] | None = None,
        estimated_instances: int = 5,
        concurrency_ttl_seconds: int = 300,
        retry_hint_ms: int = 1000,
        max_backoff_ms: int = 5000,
        clock: Callable[[], float] | None = None,
    ) -> None:
        """Initialize the limiter.

        Args:
            redis_client: A ``redis.asyncio`` client created with
                ``decode_responses=True``, or None for local-only limiting.
            limits: Per-provider budgets (defaults to ``DEFAULT_PROVIDER_LIMITS``).
            estimated_instances: How many processes share the budget.
            concurrency_ttl_seconds: Expiry on the in-flight counter, so a crashed
                caller cannot hold slots forever.
            retry_hint_ms: ``reset_ms`` returned when only concurrency is full.
            max_backoff_ms: Upper bound on a single wait between checks.
            clock: Wall-clock source in milliseconds (injectable for tests).
        """
        self._redis = redis_client
        self.limits = dict(limits or DEFAULT_PROVIDER_LIMITS)
        if DEFAULT_PROVIDER not in self.limits:
            self.limits[DEFAULT_PROVIDER] = DEFAULT_PROVIDER_LIMITS[DEFAULT_PROVIDER]
        self.estimated_instances = max(1, estimated_instances)
        self.concurrency_ttl_seconds = concurrency_ttl_seconds
        self.retry_hint_ms = retry_hint_ms
        self.max_backoff_ms = max_backoff_ms
        self._clock = clock or (lambda: time.time() * 1000)

        self._local: dict[str, RateLimitState] = {}
        self._local_lock = asyncio.Lock()
        self._waiters: dict[str, asyncio.Event] = {}

        logger.info(
            "rate_limiter_initialized",
            shared_store=redis_client is not None,
            providers=sorted(self.limits),
            estimated_instances=self.estimated_instances,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def has_shared_store(self) -> bool:
        return self._redis is not None

    def limit_for(self, provider: str) -> ProviderLimit:
        """Return the budget for ``provider``, falling back to ``default``."""
        return self.limits.get(provider, self.limits[DEFAULT_PROVIDER])

    async def check_limit(self, provider: str) -> RateLimitDecision:
        """Try to admit one call to ``provider`` right now.

        An allowed decision holds one concurrency slot which must be returned
        with ``release_slot``.

        Args:
            provider: Provider name (unknown names share the default budget).

        Returns:
            The admission decision.
        """
        limit = self.limit_for(provider)
        if self._redis is not None:
            try:
                return await self._check_shared(provider, limit)
            except RedisError as e:
                logger.warning(
                    "rate_limiter_shared_store_unavailable",
                    provider=provider,
                    error=str(e),
                )
        return await self._check_local(provider, limit)

    async def release_slot(self, provider: str, source: SlotSource | None = None) -> None:
        """Return a concurrency slot and wake queued waiters.

        Args:
            provider: Provider the slot was admitted for.
            source: Counters that admitted the slot. None releases on both,
                clamping each at zero.
        """
        if self._redis is not None and source in (None, "shared"):
            concurrent_key = self._key(provider, "concurrent")
            try:
                value = int(await self._redis.decr(concurrent_key))
                if value < 0:
                    # Undo an unmatched release instead of storing a negative count.
                    await self._redis.incr(concurrent_key)
            except RedisError as e:
                logger.warning(
                    "rate_limiter_release_failed",
                    provider=provider,
                    error=str(e),
                )

        if source in (None, "local"):
            async with self._local_lock:
                state = self._local.get(provider)
                if state is not None and state.concurrent_in_flight > 0:
                    state.concurrent_in_flight -= 1

        self._notify_waiters(provider)

    async def wait_for_slot(
        self,
        provider: str,
        timeout_ms: int = 30_000,
    ) -> RateLimitDecision:
        """Block until ``provider`` admits a call or the deadline passes.

        Between checks the caller sleeps for ``min(reset_ms, max_backoff_ms,
        remaining timeout)``, waking early when another caller releases a slot.

        Args:
            provider: Provider to wait for.
            timeout_ms: Maximum time to wait in milliseconds.

        Returns:
            The allowed decision, with ``waited_ms`` filled in.

        Raises:
            RateLimitTimeoutError: If no slot was admitted before the deadline.
        """
        started = time.monotonic()
        attempts = 0

        while True:
            decision = await self.check_limit(provider)
            elapsed_ms = int((time.monotonic() - started) * 1000)
            if decision.allowed:
                if attempts:
                    logger.info(
                        "rate_limiter_slot_acquired_after_wait",
                        provider=provider,
                        waited_ms=elapsed_ms,
                        attempts=attempts,
                    )
                return replace(decision, waited_ms=elapsed_ms)

            remaining_ms = timeout_ms - elapsed_ms
            if remaining_ms <= 0:
                logger.warning(
                    "rate_limiter_wait_timeout",
                    provider=provider,
                    timeout_ms=timeout_ms,
                    attempts=attempts,
                )
                raise RateLimitTimeoutError(provider, elapsed_ms)

            wait_ms = max(1, min(decision.reset_ms, self.max_backoff_ms, remaining_ms))
            attempts += 1
            logger.debug(
                "rate_limiter_waiting",
                provider=provider,
                wait_ms=wait_ms,
                reset_ms=decision.reset_ms,
            )
            event = self._waiters.setdefault(provider, asyncio.Event())
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(event.wait(), timeout=wait_ms / 1000)

    @contextlib.asynccontextmanager
    async def slot(
        self,
        provider: str,
        timeout_ms: int = 30_000,
    ) -> AsyncIterator[RateLimitDecision]:
        """Hold one admitted slot for the duration of the ``async with`` block.

        The slot is released even when the body raises or the enclosing task is
        cancelled by a timeout.
        """
        decision = await self.wait_for_slot(provider, timeout_ms)
        try:
            yield decision
        finally:
            await self.release_slot(provider, source=decision.source)

    async def get_status(self) -> dict[str, dict[str, Any]]:
        """Return current counters per configured provider for monitoring."""
        status: dict[str, dict[str, Any]] = {}
        for provider, limit in self.limits.items():
            if provider == DEFAULT_PROVIDER:
                continue
            count, concurrent, source = await self._read_counters(provider)
            status[provider] = {
                "count": count,
                "concurrent": concurrent,
                "limit": limit.max_rpm,
                "max_concurrent": limit.max_concurrent,
                "source": source,
            }
        return status

    # ------------------------------------------------------------------
    # Shared counters
    # ------------------------------------------------------------------

    @staticmethod
    def _key(provider: str, field: str) -> str:
        return f"ratelimit:{provider}:{field}"

    async def _check_shared(self, provider: str, limit: ProviderLimit) -> RateLimitDecision:
        r = self._redis
        window_key = self._key(provider, "window")
        count_key = self._key(provider, "count")
        concurrent_key = self._key(provider, "concurrent")

        now = self._clock()
        # The count key's TTL is the window: whoever takes it from 0 to 1 opens one.
        count = int(await r.incr(count_key))
        if count == 1:
            await r.pexpire(count_key, limit.window_ms)
            await r.set(window_key, int(now), px=limit.window_ms)
            window_start = int(now)
            logger.debug("rate_limiter_window_started", provider=provider)
        else:
            # No-op unless an opener died between INCR and PEXPIRE.
            await r.pexpire(count_key, limit.window_ms, nx=True)
            window_start = _as_int(await r.get(window_key))
            if window_start is None:
                window_start = int(now)

        if count > limit.max_rpm:
            await r.decr(count_key)
            reset_ms = max(0, int(limit.window_ms - (now - window_start)))
            return RateLimitDecision(allowed=False, remaining=0, reset_ms=reset_ms)

        concurrent = int(await r.incr(concurrent_key))
        await r.expire(concurrent_key, self.concurrency_ttl_seconds)
        if concurrent > limit.max_concurrent:
            await r.decr(concurrent_key)
            await r.decr(count_key)
            return RateLimitDecision(
                allowed=False,
                remaining=limit.max_rpm - (count - 1),
                reset_ms=self.retry_hint_ms,
            )

        return RateLimitDecision(
            allowed=True,
            remaining=limit.max_rpm - count,
            reset_ms=max(0, int(limit.window_ms - (now - window_start))),
        )

    async def _read_counters(self, provider: str) -> tuple[int, int, SlotSource]:
        if self._redis is not None:
            try:
                count = _as_int(await self._redis.get(self._key(provider, "count"))) or 0
                concurrent = _as_int(await self._redis.get(self._key(provider, "concurrent"))) or 0
                return count, max(0, concurrent), "shared"
            except RedisError as e:
                logger.warning("rate_limiter_status_unavailable", provider=provider, error=str(e))
        state = self._local.get(provider) or RateLimitState()
        return state.request_count_in_window, state.concurrent_in_flight, "local"

    # ------------------------------------------------------------------
    # Local fallback
    # ------------------------------------------------------------------

    def local_budget(self, limit: ProviderLimit) -> tuple[int, int]:
        """Per-process (max_rpm, max_concurrent) used while the store is down."""
        return (
            max(1, limit.max_rpm // self.estimated_instances),
            max(1, limit.max_concurrent // self.estimated_instances),
        )

    async def _check_local(self, provider: str, limit: ProviderLimit) -> RateLimitDecision:
        max_rpm, max_concurrent = self.local_budget(limit)
        async with self._local_lock:
            now = self._clock()
            state = self._local.setdefault(provider, RateLimitState())

            if state.window_start_ms == 0 or now - state.window_start_ms >= limit.window_ms:
                state.window_start_ms = now
                state.request_count_in_window = 0

            if state.request_count_in_window >= max_rpm:
                reset_ms = max(0, int(limit.window_ms - (now - state.window_start_ms)))
                return RateLimitDecision(
                    allowed=False, remaining=0, reset_ms=reset_ms, source="local"
                )

            if state.concurrent_in_flight >= max_concurrent:
                return RateLimitDecision(
                    allowed=False,
                    remaining=max_rpm - state.request_count_in_window,
                    reset_ms=self.retry_hint_ms,
                    source="local",
                )

            state.request_count_in_window += 1
            state.concurrent_in_flight += 1
            return RateLimitDecision(
                allowed=True,
                remaining=max_rpm - state.request_count_in_window,
                reset_ms=max(0, int(limit.window_ms - (now - state.window_start_ms))),
                source="local",
            )

    def _notify_waiters(self, provider: str) -> None:
        event = self._waiters.pop(provider, None)
        if event is not None:
            event.set()


def _as_int(value: Any) -> int | None:
    if value is None:
        return None
    return int(value)
