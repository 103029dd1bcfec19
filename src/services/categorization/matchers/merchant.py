"""
Merchant name matcher.
"""

import logging
from typing import Optional

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.fuzzy import FuzzyMatcher
from services.categorization.matchers.base import PatternMatcher
from services.categorization.normalizer import TextNormalizer

logger = logging.getLogger(__name__)


class MerchantMatcher(PatternMatcher):
    """
    Matches when the normalized merchant equals the normalized pattern value,
    or when their similarity reaches the fuzzy threshold. The contribution is
    the similarity itself, so exact matches contribute 1.0.
    """

    def __init__(self, normalizer: TextNormalizer, fuzzy_matcher: Optional[FuzzyMatcher] = None):
        self.normalizer = normalizer
        self.fuzzy_matcher = fuzzy_matcher or FuzzyMatcher()

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.MERCHANT

    def validate(self, pattern: Pattern) -> None:
        if not self.normalizer.normalize(pattern.value):
            raise PatternConfigurationError(
                "Merchant value is empty after normalization",
                pattern_id=str(pattern.pattern_id)
            )

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        self.validate(pattern)
        expected = self.normalizer.normalize(pattern.value)
        actual = self.normalizer.normalize(transaction.merchant_text)
        if not actual:
            return 0.0
        if actual == expected:
            return 1.0

        score = self.fuzzy_matcher.similarity(expected, actual)
        if score >= self.fuzzy_matcher.threshold:
            return score
        return 0.0
