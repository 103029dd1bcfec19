"""
Pattern matchers for the categorization engine.

One matcher per PatternType. MatcherRegistry refuses to build unless every
type has exactly one matcher, so adding a PatternType without a matcher fails
at startup rather than at evaluation time.
"""

import uuid
from typing import Dict, Iterable, Mapping, Optional

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from models.categorization import MatchResult
from services.categorization.errors import EngineConfigurationError
from services.categorization.fuzzy import FuzzyMatcher
from services.categorization.normalizer import TextNormalizer
from services.categorization.matchers.base import PatternMatcher
from services.categorization.matchers.merchant import MerchantMatcher
from services.categorization.matchers.keyword import KeywordMatcher
from services.categorization.matchers.regex import RegexMatcher
from services.categorization.matchers.amount_range import AmountRangeMatcher, parse_amount_range
from services.categorization.matchers.time_window import TimeWindowMatcher, parse_time_value
from services.categorization.matchers.composite import CompositeMatcher


class MatcherRegistry:
    """Dispatches each pattern to the matcher registered for its type."""

    def __init__(self, matchers: Iterable[PatternMatcher]):
        self._matchers: Dict[PatternType, PatternMatcher] = {}
        for matcher in matchers:
            if matcher.pattern_type in self._matchers:
                raise EngineConfigurationError(
                    f"Duplicate matcher for pattern type {matcher.pattern_type.value}"
                )
            self._matchers[matcher.pattern_type] = matcher

        missing = [t.value for t in PatternType if t not in self._matchers]
        if missing:
            raise EngineConfigurationError(f"No matcher registered for pattern types: {missing}")
        if not isinstance(self._matchers[PatternType.COMPOSITE], CompositeMatcher):
            raise EngineConfigurationError("Composite patterns need a CompositeMatcher")

    @classmethod
    def default(cls, normalizer: Optional[TextNormalizer] = None,
                fuzzy_threshold: float = 0.85) -> "MatcherRegistry":
        normalizer = normalizer or TextNormalizer()
        return cls([
            MerchantMatcher(normalizer, FuzzyMatcher(fuzzy_threshold)),
            KeywordMatcher(normalizer),
            RegexMatcher(),
            AmountRangeMatcher(),
            TimeWindowMatcher(),
            CompositeMatcher(normalizer),
        ])

    def matcher_for(self, pattern_type: PatternType) -> PatternMatcher:
        return self._matchers[pattern_type]

    def evaluate(self, pattern: Pattern, transaction: Transaction) -> MatchResult:
        return self._matchers[pattern.pattern_type].evaluate(pattern, transaction)

    def evaluate_composite(self, pattern: Pattern, transaction: Transaction,
                           component_results: Mapping[uuid.UUID, MatchResult]) -> MatchResult:
        """Evaluate a composite pattern from the results of the simple patterns."""
        matcher = self._matchers[PatternType.COMPOSITE]
        return matcher.evaluate_components(pattern, transaction, component_results)

    def validate(self, pattern: Pattern) -> None:
        """Raise PatternConfigurationError if the pattern value is malformed."""
        self._matchers[pattern.pattern_type].validate(pattern)


__all__ = [
    'PatternMatcher',
    'MerchantMatcher',
    'KeywordMatcher',
    'RegexMatcher',
    'AmountRangeMatcher',
    'TimeWindowMatcher',
    'CompositeMatcher',
    'MatcherRegistry',
    'parse_amount_range',
    'parse_time_value',
]
