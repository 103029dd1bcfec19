"""
Amount range matcher.
"""

import re
import logging
from decimal import Decimal, InvalidOperation
from functools import lru_cache
from typing import Tuple

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.matchers.base import PatternMatcher

logger = logging.getLogger(__name__)

# "min-max"; either bound may be negative, so "-100.00--10.00" is (-100.00, -10.00)
AMOUNT_RANGE_FORMAT = re.compile(r'^\s*(-?\d+(?:\.\d+)?)\s*-\s*(-?\d+(?:\.\d+)?)\s*$')


@lru_cache(maxsize=512)
def parse_amount_range(value: str) -> Tuple[Decimal, Decimal]:
    """
    Parse a "min-max" amount range.

    Raises:
        ValueError: If the value is not a well-formed range or min > max
    """
    match = AMOUNT_RANGE_FORMAT.match(value)
    if not match:
        raise ValueError(f"Expected 'min-max', got '{value}'")
    try:
        lower = Decimal(match.group(1))
        upper = Decimal(match.group(2))
    except InvalidOperation as e:
        raise ValueError(f"Unparseable amount bound in '{value}'") from e
    if lower > upper:
        raise ValueError(f"Range minimum {lower} exceeds maximum {upper}")
    return lower, upper


class AmountRangeMatcher(PatternMatcher):
    """Matches when the signed transaction amount lies within [min, max] inclusive."""

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.AMOUNT_RANGE

    def _bounds(self, pattern: Pattern) -> Tuple[Decimal, Decimal]:
        try:
            return parse_amount_range(pattern.value)
        except ValueError as e:
            raise PatternConfigurationError(str(e), pattern_id=str(pattern.pattern_id)) from e

    def validate(self, pattern: Pattern) -> None:
        self._bounds(pattern)

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        lower, upper = self._bounds(pattern)
        return 1.0 if lower <= transaction.amount <= upper else 0.0
