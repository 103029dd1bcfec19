"""
Approximate string matching with bounded memory.
"""

import logging
from typing import Optional

logger = logging.getLogger(__name__)


def levenshtein_distance(a: str, b: str) -> int:
    """
    Edit distance between a and b.

    Uses two rolling rows sized to the shorter string, so memory is
    O(min(len(a), len(b))) rather than a full matrix.
    """
    if a == b:
        return 0
    # keep the shorter string along the row
    if len(a) < len(b):
        a, b = b, a
    if not b:
        return len(a)

    previous = list(range(len(b) + 1))
    current = [0] * (len(b) + 1)

    for i, char_a in enumerate(a, start=1):
        current[0] = i
        for j, char_b in enumerate(b, start=1):
            substitution = previous[j - 1] + (char_a != char_b)
            insertion = current[j - 1] + 1
            deletion = previous[j] + 1
            current[j] = min(substitution, insertion, deletion)
        previous, current = current, previous

    return previous[len(b)]


def similarity(a: Optional[str], b: Optional[str]) -> float:
    """Similarity in [0, 1]: 1 - distance / max(len(a), len(b), 1)."""
    a = a or ""
    b = b or ""
    longest = max(len(a), len(b), 1)
    return 1.0 - levenshtein_distance(a, b) / longest


class FuzzyMatcher:
    """Threshold-based fuzzy comparison of already-normalized strings."""

    def __init__(self, threshold: float = 0.85):
        if not 0.0 < threshold <= 1.0:
            raise ValueError(f"threshold must be in (0, 1], got {threshold}")
        self.threshold = threshold

    def similarity(self, a: Optional[str], b: Optional[str]) -> float:
        return similarity(a, b)

    def distance(self, a: Optional[str], b: Optional[str]) -> int:
        return levenshtein_distance(a or "", b or "")

    def is_match(self, a: Optional[str], b: Optional[str]) -> bool:
        return self.similarity(a, b) >= self.threshold
