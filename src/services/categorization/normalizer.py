"""
Text normalization for merchant and description matching.
"""

import re
import logging
import threading
import unicodedata
from collections import OrderedDict
from typing import Optional, Dict, Any, Tuple

logger = logging.getLogger(__name__)

# Processor prefixes, legal suffixes and store numbers that carry no merchant identity.
# Only merchant text is stripped of these; keywords and free text keep them.
NOISE_PATTERNS = (
    re.compile(r'^(PAYPAL|SQ|SQUARE|TST|POS|CCD)\s*\*', re.IGNORECASE),
    re.compile(r'\b(INC|LLC|LTD|CORP|CO|S\.A\.|C\.V\.)(?=\W|$)', re.IGNORECASE),
    re.compile(r'\s+#\d+'),
    re.compile(r'\s+\d{4,}$'),
    re.compile(r'\*+'),
)
PUNCTUATION = re.compile(r'[^\w\s]|_')
WHITESPACE = re.compile(r'\s+')


class TextNormalizer:
    """
    Lowercases, strips diacritics and punctuation, and collapses whitespace.
    Merchant noise (processor prefixes, legal suffixes, store numbers) is
    removed unless strip_noise is False.

    Results are memoized in a bounded FIFO cache keyed by the raw text and the
    strip_noise flag. When the cache is full the oldest entry is evicted before
    the new one is inserted.
    """

    def __init__(self, cache_size: int = 1000):
        if cache_size < 1:
            raise ValueError(f"cache_size must be positive, got {cache_size}")
        self.cache_size = cache_size
        self._cache: "OrderedDict[Tuple[str, bool], str]" = OrderedDict()
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def normalize(self, text: Optional[str], strip_noise: bool = True) -> str:
        if not text:
            return ""
        key = (text, strip_noise)

        with self._lock:
            cached = self._cache.get(key)
            if cached is not None:
                self._hits += 1
                return cached
            self._misses += 1

        normalized = normalize_text(text, strip_noise)

        with self._lock:
            if key not in self._cache:
                if len(self._cache) >= self.cache_size:
                    self._cache.popitem(last=False)
                    self._evictions += 1
                self._cache[key] = normalized
        return normalized

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                'size': len(self._cache),
                'capacity': self.cache_size,
                'hits': self._hits,
                'misses': self._misses,
                'evictions': self._evictions,
            }


def normalize_text(text: str, strip_noise: bool = True) -> str:
    """Uncached normalization. Pure function of its input."""
    cleaned = text
    if strip_noise:
        for pattern in NOISE_PATTERNS:
            cleaned = pattern.sub(' ', cleaned)

    decomposed = unicodedata.normalize('NFKD', cleaned)
    without_marks = ''.join(ch for ch in decomposed if not unicodedata.combining(ch))

    lowered = without_marks.lower()
    lowered = PUNCTUATION.sub(' ', lowered)
    return WHITESPACE.sub(' ', lowered).strip()
