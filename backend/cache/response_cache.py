"""Fast in-process cache tier.

Holds recent results of this process in memory, indexed by their request
token set. Entries expire after a TTL and the least recently used entry is
evicted once the cache is full. The instance lives for the process lifetime
and is injected where it is needed.
"""

import time
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

import structlog

from cache.tokens import jaccard_similarity, request_fingerprint, tokenize
from models.schemas import CacheEntry, CacheHit, CacheTier

logger = structlog.get_logger(__name__)


@dataclass
class _Slot:
    tokens: frozenset[str]
    entry: CacheEntry
    stored_at: float


class ResponseCache:
    """TTL-bounded, size-bounded token-overlap index of recent results.

    Attributes:
        ttl_seconds: Age after which an entry is ignored and evicted.
        max_entries: Capacity before least recently used entries are evicted.
        threshold: Default minimum Jaccard score for a hit.
    """

    def __init__(
        self,
        ttl_seconds: float = 3600,
        max_entries: int = 500,
        threshold: float = 0.75,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self.threshold = threshold
        self._clock = clock
        self._slots: OrderedDict[str, _Slot] = OrderedDict()

    def __len__(self) -> int:
        return len(self._slots)

    def set(self, entry: CacheEntry) -> None:
        """Store ``entry`` under its request fingerprint, replacing any older one."""
        key = entry.request_fingerprint or request_fingerprint(entry.raw_request_text)
        self._slots.pop(key, None)
        self._slots[key] = _Slot(
            tokens=tokenize(entry.raw_request_text),
            entry=entry,
            stored_at=self._clock(),
        )
        while len(self._slots) > self.max_entries:
            evicted, _ = self._slots.popitem(last=False)
            logger.debug("response_cache_evicted", fingerprint=evicted[:12])

    def find_similar(self, request: str, threshold: float | None = None) -> CacheHit | None:
        """Return the best live entry scoring at least ``threshold``."""
        threshold = self.threshold if threshold is None else threshold
        self._expire()

        query_tokens = tokenize(request)
        best_key: str | None = None
        best_score = 0.0
        for key, slot in self._slots.items():
            score = jaccard_similarity(query_tokens, slot.tokens)
            if score >= threshold and score > best_score:
                best_key, best_score = key, score

        if best_key is None:
            return None

        self._slots.move_to_end(best_key)
        logger.info("response_cache_hit", similarity=round(best_score, 3))
        return CacheHit(
            tier=CacheTier.FAST,
            score=best_score,
            entry=self._slots[best_key].entry,
        )

    def clear(self) -> None:
        self._slots.clear()

    def _expire(self) -> None:
        cutoff = self._clock() - self.ttl_seconds
        expired = [key for key, slot in self._slots.items() if slot.stored_at < cutoff]
        for key in expired:
            del self._slots[key]
