"""Semantic cache tier: nearest prior request by embedding similarity."""

import asyncio

import structlog

from cache.embedder import Embedder, Vector, cosine_similarity
from models.schemas import CacheEntry, CacheHit, CacheTier

logger = structlog.get_logger(__name__)


class SemanticCache:
    """In-process vector store of embedded prior requests.

    Embedding failures never fail a lookup; they are logged and treated as a
    miss.

    Attributes:
        threshold: Default minimum cosine similarity for a hit.
        max_entries: Oldest entries are dropped beyond this size.
    """

    def __init__(
        self,
        embedder: Embedder,
        threshold: float = 0.8,
        max_entries: int = 1000,
    ) -> None:
        self.embedder = embedder
        self.threshold = threshold
        self.max_entries = max_entries
        self._entries: list[tuple[Vector, CacheEntry]] = []
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    async def find_similar(self, request: str, threshold: float | None = None) -> CacheHit | None:
        """Return the closest stored entry with similarity at least ``threshold``."""
        threshold = self.threshold if threshold is None else threshold
        if not self._entries:
            return None

        try:
            [query] = await self.embedder.embed([request])
        except Exception as e:
            logger.warning("semantic_cache_embed_failed", error=str(e))
            return None

        async with self._lock:
            candidates = list(self._entries)

        best: CacheHit | None = None
        for vector, entry in candidates:
            if len(vector) != len(query):
                continue
            score = cosine_similarity(query, vector)
            if score >= threshold and (best is None or score > best.score):
                best = CacheHit(tier=CacheTier.SEMANTIC, score=score, entry=entry)

        if best is not None:
            logger.info("semantic_cache_hit", similarity=round(best.score, 3))
        return best

    async def add(self, entry: CacheEntry) -> None:
        """Embed ``entry.raw_request_text`` and store it.

        Raises whatever the embedder raises; callers running this in the
        background log the failure.
        """
        [vector] = await self.embedder.embed([entry.raw_request_text])
        async with self._lock:
            self._entries.append((vector, entry))
            if len(self._entries) > self.max_entries:
                del self._entries[: len(self._entries) - self.max_entries]
        logger.debug("semantic_cache_added", entries=len(self._entries))
