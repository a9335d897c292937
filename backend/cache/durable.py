"""Durable cache tier backed by completed jobs in the result store.

The durable tier survives restarts and is shared by every worker process. It
does not keep an index of its own: on each lookup it scans the most recent
completed jobs within the max age and scores their request text by token
overlap.
"""

import time
from collections.abc import Callable
from typing import Any, Protocol

import structlog

from cache.tokens import jaccard_similarity, request_fingerprint, tokenize
from models.schemas import CacheEntry, CacheHit, CacheTier

logger = structlog.get_logger(__name__)


class CompletedResultStore(Protocol):
    """The slice of ``ResultStore`` the durable tier depends on."""

    async def recent_completed(self, since: float, limit: int = 100) -> list[dict[str, Any]]:
        ...

    async def upsert_completed(
        self,
        job_id: str,
        request_text: str,
        result_summary: str,
        artifacts: dict[str, str],
        project_name: str = "",
        mode: str = "planning",
        user_id: str | None = None,
        completed_at: float | None = None,
    ) -> None:
        ...


class DurableTier:
    """Token-overlap lookup over recently completed jobs.

    Attributes:
        max_age_hours: Completed jobs older than this are never returned.
        scan_limit: How many recent completions a lookup considers.
        threshold: Minimum Jaccard score for a hit.
    """

    def __init__(
        self,
        store: CompletedResultStore,
        max_age_hours: float = 72.0,
        scan_limit: int = 100,
        threshold: float = 0.7,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.max_age_hours = max_age_hours
        self.scan_limit = scan_limit
        self.threshold = threshold
        self._clock = clock

    async def find_cached_response(
        self,
        request: str,
        max_age_hours: float | None = None,
        threshold: float | None = None,
    ) -> CacheHit | None:
        """Return the best-scoring recent completion above ``threshold``.

        Args:
            request: The new request text.
            max_age_hours: Override for the configured max age.
            threshold: Override for the configured similarity threshold.

        Returns:
            The best hit, or None on a miss or a store failure.
        """
        max_age_hours = self.max_age_hours if max_age_hours is None else max_age_hours
        threshold = self.threshold if threshold is None else threshold
        cutoff = self._clock() - max_age_hours * 3600

        try:
            rows = await self.store.recent_completed(since=cutoff, limit=self.scan_limit)
        except Exception as e:
            logger.warning("durable_cache_lookup_failed", error=str(e))
            return None

        query_tokens = tokenize(request)
        best: CacheHit | None = None

        for row in rows:
            completed_at = row.get("completed_at")
            request_text = row.get("request_text")
            if completed_at is None or completed_at < cutoff or not request_text:
                continue
            score = jaccard_similarity(query_tokens, tokenize(request_text))
            if score >= threshold and (best is None or score > best.score):
                best = CacheHit(
                    tier=CacheTier.DURABLE,
                    score=score,
                    entry=CacheEntry(
                        request_fingerprint=request_fingerprint(request_text),
                        raw_request_text=request_text,
                        result_summary=row.get("result_summary") or "",
                        project_name=row.get("project_name") or "",
                        artifacts=row.get("artifacts") or {},
                        completed_at=completed_at,
                    ),
                )

        if best is not None:
            logger.info(
                "durable_cache_hit",
                similarity=round(best.score, 3),
                age_hours=round((self._clock() - best.entry.completed_at) / 3600, 1),
            )
        return best

    async def has_cached_response(self, request: str) -> bool:
        """Quick yes/no check using the configured age and threshold."""
        return await self.find_cached_response(request) is not None

    async def write(
        self,
        job_id: str,
        entry: CacheEntry,
        mode: str = "planning",
        user_id: str | None = None,
    ) -> None:
        """Upsert a completed result keyed by ``job_id``."""
        await self.store.upsert_completed(
            job_id=job_id,
            request_text=entry.raw_request_text,
            result_summary=entry.result_summary,
            artifacts=entry.artifacts,
            project_name=entry.project_name,
            mode=mode,
            user_id=user_id,
            completed_at=entry.completed_at,
        )
