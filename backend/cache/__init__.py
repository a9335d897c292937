"""Cache tiers consulted before running a full generation.

Key Components:
    - DurableTier: token-overlap scan of recent completed jobs
    - ResponseCache: in-process TTL index of recent results
    - SemanticCache: embedding similarity over prior requests
    - TieredCache: ordered lookup chain and background write-back
"""

from cache.durable import DurableTier
from cache.embedder import Embedder, HashingEmbedder, LiteLLMEmbedder, cosine_similarity
from cache.response_cache import ResponseCache
from cache.semantic import SemanticCache
from cache.tiered import TieredCache
from cache.tokens import jaccard_similarity, normalize_request, request_fingerprint, tokenize

__all__ = [
    "DurableTier",
    "Embedder",
    "HashingEmbedder",
    "LiteLLMEmbedder",
    "ResponseCache",
    "SemanticCache",
    "TieredCache",
    "cosine_similarity",
    "jaccard_similarity",
    "normalize_request",
    "request_fingerprint",
    "tokenize",
]
