"""Request normalization and token-overlap similarity.

Both the durable tier and the fast in-process tier compare requests by
vocabulary: the request is normalized, split into tokens, stop words and
short tokens are dropped, and two token sets are scored with Jaccard
similarity.
"""

import hashlib
import re

MAX_NORMALIZED_LENGTH = 200
MIN_TOKEN_LENGTH = 3

# English and Indonesian filler words.
STOP_WORDS = frozenset({
    "a", "an", "the", "is", "are", "was", "were", "be", "been", "being",
    "have", "has", "had", "do", "does", "did", "will", "would", "could",
    "should", "may", "might", "must", "shall", "can",
    "dengan", "dan", "yang", "untuk", "di", "ke", "dari", "saya", "mau",
    "buatkan", "tolong", "buat", "bikin",
})

_PUNCTUATION = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def normalize_request(text: str) -> str:
    """Lowercase, replace punctuation with spaces, collapse whitespace, truncate."""
    text = _PUNCTUATION.sub(" ", text.lower())
    text = _WHITESPACE.sub(" ", text).strip()
    return text[:MAX_NORMALIZED_LENGTH]


def tokenize(text: str) -> frozenset[str]:
    """Return the set of meaningful tokens in ``text``.

    Example:
        >>> sorted(tokenize("Tolong buatkan a Todo App!"))
        ['app', 'todo']
    """
    return frozenset(
        word
        for word in normalize_request(text).split(" ")
        if len(word) >= MIN_TOKEN_LENGTH and word not in STOP_WORDS
    )


def jaccard_similarity(a: frozenset[str] | set[str], b: frozenset[str] | set[str]) -> float:
    """``|A ∩ B| / |A ∪ B|``, or 0.0 when either set is empty."""
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


def request_fingerprint(text: str) -> str:
    """Stable identifier for a request, derived from its normalized text."""
    return hashlib.sha256(normalize_request(text).encode("utf-8")).hexdigest()
