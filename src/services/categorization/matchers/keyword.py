"""
Keyword matcher.
"""

import re
import logging
from functools import lru_cache

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.matchers.base import PatternMatcher
from services.categorization.normalizer import TextNormalizer

logger = logging.getLogger(__name__)


@lru_cache(maxsize=512)
def _token_regex(keyword: str) -> "re.Pattern[str]":
    return re.compile(r'(?<!\w)' + re.escape(keyword) + r'(?!\w)')


class KeywordMatcher(PatternMatcher):
    """
    Matches when the normalized keyword appears as whole words in the normalized text.

    Merchant noise stripping is skipped on both sides so keywords such as
    "co" or "pos" stay matchable.
    """

    def __init__(self, normalizer: TextNormalizer):
        self.normalizer = normalizer

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.KEYWORD

    def validate(self, pattern: Pattern) -> None:
        if not self.normalizer.normalize(pattern.value, strip_noise=False):
            raise PatternConfigurationError(
                "Keyword is empty after normalization",
                pattern_id=str(pattern.pattern_id)
            )

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        self.validate(pattern)
        keyword = self.normalizer.normalize(pattern.value, strip_noise=False)
        haystack = self.normalizer.normalize(transaction.text, strip_noise=False)
        if not haystack:
            return 0.0
        return 1.0 if _token_regex(keyword).search(haystack) else 0.0
