"""Embedding backends for the semantic cache tier."""

import hashlib
import math
from dataclasses import dataclass
from typing import Protocol

from litellm import aembedding

Vector = list[float]


class Embedder(Protocol):
    """Embedding backend interface."""

    model_name: str

    async def embed(self, texts: list[str]) -> list[Vector]:
        """Encode texts into normalized vectors."""
        ...


def _normalize(vector: Vector) -> Vector:
    norm = math.sqrt(sum(value * value for value in vector))
    if norm == 0:
        return vector
    return [value / norm for value in vector]


@dataclass
class LiteLLMEmbedder:
    """Provider-hosted embeddings through ``litellm.aembedding``."""

    model_name: str
    timeout_seconds: float = 30.0

    async def embed(self, texts: list[str]) -> list[Vector]:
        response = await aembedding(
            model=self.model_name,
            input=texts,
            timeout=self.timeout_seconds,
        )
        vectors: list[Vector] = []
        for item in response.data:
            raw = item["embedding"] if isinstance(item, dict) else item.embedding
            vectors.append(_normalize([float(value) for value in raw]))
        return vectors


@dataclass
class HashingEmbedder:
    """Offline embedder based on hashed character n-grams.

    Used with the mock LLM and in tests; close paraphrases land near each other
    because they share most of their n-grams.
    """

    model_name: str = "hashing"
    dimensions: int = 384
    ngram_size: int = 3

    async def embed(self, texts: list[str]) -> list[Vector]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> Vector:
        normalized = (text or "").lower().strip()
        vector = [0.0] * self.dimensions
        if not normalized:
            return vector

        if len(normalized) < self.ngram_size:
            normalized = normalized.ljust(self.ngram_size)

        for index in range(len(normalized) - self.ngram_size + 1):
            ngram = normalized[index : index + self.ngram_size]
            digest = hashlib.sha1(ngram.encode("utf-8"), usedforsecurity=False).digest()
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        return _normalize(vector)


def cosine_similarity(left: Vector, right: Vector) -> float:
    """Cosine similarity for normalized vectors, clamped to [-1, 1]."""
    if len(left) != len(right):
        raise ValueError("Vectors must have the same size")

    dot = sum(a * b for a, b in zip(left, right, strict=True))
    return max(-1.0, min(1.0, dot))
