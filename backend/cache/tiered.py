"""Three-tier lookup chain in front of full generation.

Lookup order, first hit wins:

1. durable tier: recent completed jobs in the result store (token overlap)
2. fast tier: this process's recent results (token overlap)
3. semantic tier: embedding similarity over prior requests

After a successful run the fast tier is written inline, while the durable
write and the semantic embedding each run as a separate detached task, so a
failure in one never affects the other or the request.
"""

import time

import structlog

from background import BackgroundTasks
from cache.durable import DurableTier
from cache.response_cache import ResponseCache
from cache.semantic import SemanticCache
from cache.tokens import request_fingerprint
from models.schemas import CacheEntry, CacheHit, OrchestrationResult
from tracing import (
    STEP_CACHE_JACCARD,
    STEP_CACHE_PERSISTENT,
    STEP_CACHE_SAVE,
    STEP_CACHE_SEMANTIC,
    TraceContext,
)

logger = structlog.get_logger(__name__)


class TieredCache:
    """Ordered lookup over the durable, fast and semantic tiers.

    Any tier may be None, in which case it is skipped.
    """

    def __init__(
        self,
        fast: ResponseCache,
        background: BackgroundTasks,
        durable: DurableTier | None = None,
        semantic: SemanticCache | None = None,
    ) -> None:
        self.fast = fast
        self.durable = durable
        self.semantic = semantic
        self.background = background

    async def lookup(
        self,
        request: str,
        trace: TraceContext | None = None,
        fast_threshold: float | None = None,
        semantic_threshold: float | None = None,
    ) -> CacheHit | None:
        """Return the first hit in tier order, or None when every tier misses.

        Args:
            request: The new request text.
            trace: Optional trace that receives one step per tier consulted.
            fast_threshold: Override for the fast tier threshold at this call site.
            semantic_threshold: Override for the semantic tier threshold.
        """
        if self.durable is not None:
            started = time.monotonic()
            hit = await self.durable.find_cached_response(request)
            self._record(trace, STEP_CACHE_PERSISTENT, hit, started)
            if hit is not None:
                return hit

        started = time.monotonic()
        try:
            hit = self.fast.find_similar(request, fast_threshold)
        except Exception as e:
            logger.warning("response_cache_lookup_failed", error=str(e))
            hit = None
        self._record(trace, STEP_CACHE_JACCARD, hit, started)
        if hit is not None:
            return hit

        if self.semantic is not None:
            started = time.monotonic()
            hit = await self.semantic.find_similar(request, semantic_threshold)
            self._record(trace, STEP_CACHE_SEMANTIC, hit, started)
            if hit is not None:
                return hit

        return None

    def store(
        self,
        request: str,
        job_id: str,
        result: OrchestrationResult,
        mode: str = "planning",
        user_id: str | None = None,
        trace: TraceContext | None = None,
    ) -> CacheEntry:
        """Write a successful result back to every tier.

        Returns:
            The entry that was written.
        """
        entry = CacheEntry(
            request_fingerprint=request_fingerprint(request),
            raw_request_text=request,
            result_summary=result.summary,
            project_name=result.project_name,
            artifacts=result.artifacts,
            completed_at=time.time(),
        )

        try:
            self.fast.set(entry)
        except Exception as e:
            logger.error("response_cache_write_failed", job_id=job_id, error=str(e))

        if self.durable is not None:
            self.background.spawn(
                self.durable.write(job_id, entry, mode=mode, user_id=user_id),
                name=f"durable_cache_write_{job_id}",
            )
        if self.semantic is not None:
            self.background.spawn(
                self.semantic.add(entry),
                name=f"semantic_cache_add_{job_id}",
            )

        if trace is not None:
            trace.add_step(STEP_CACHE_SAVE, "scheduled", {"files": len(entry.artifacts)})
        logger.debug("cache_write_scheduled", job_id=job_id, files=len(entry.artifacts))
        return entry

    async def drain(self, timeout: float | None = None) -> None:
        """Wait for pending durable and semantic writes (shutdown and tests)."""
        await self.background.drain(timeout)

    @staticmethod
    def _record(
        trace: TraceContext | None,
        step: str,
        hit: CacheHit | None,
        started: float,
    ) -> None:
        if trace is None:
            return
        trace.record_cache(hit is not None)
        trace.add_step(
            step,
            "hit" if hit is not None else "miss",
            {"similarity": round(hit.score, 3)} if hit is not None else {},
            duration_ms=int((time.monotonic() - started) * 1000),
        )
