"""
Regular expression matcher.
"""

import re
import logging
from functools import lru_cache

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.matchers.base import PatternMatcher

logger = logging.getLogger(__name__)


@lru_cache(maxsize=256)
def compile_pattern(expression: str) -> "re.Pattern[str]":
    """Compile and memoize a case-insensitive expression. re.error propagates."""
    return re.compile(expression, re.IGNORECASE)


class RegexMatcher(PatternMatcher):
    """Tests the pattern value as a case-insensitive regular expression against the raw text."""

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.REGEX

    def _compiled(self, pattern: Pattern) -> "re.Pattern[str]":
        try:
            return compile_pattern(pattern.value)
        except re.error as e:
            raise PatternConfigurationError(
                f"Invalid regular expression: {str(e)}",
                pattern_id=str(pattern.pattern_id)
            ) from e

    def validate(self, pattern: Pattern) -> None:
        self._compiled(pattern)

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        expression = self._compiled(pattern)
        text = transaction.text
        if not text:
            return 0.0
        return 1.0 if expression.search(text) else 0.0
