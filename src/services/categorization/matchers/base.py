"""
Base pattern matcher class.

Defines the interface that every pattern matcher must implement.
"""

import time
import logging
from abc import ABC, abstractmethod
from typing import Callable

from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from models.categorization import MatchResult
from services.categorization.errors import PatternConfigurationError

logger = logging.getLogger(__name__)


class PatternMatcher(ABC):
    """
    Abstract base class for pattern matchers.

    Each subclass handles exactly one PatternType. Evaluation is pure: it reads
    the pattern and the transaction and returns a MatchResult without side effects.
    """

    @property
    @abstractmethod
    def pattern_type(self) -> PatternType:
        """The pattern type this matcher evaluates."""
        pass

    @abstractmethod
    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        """
        Compute the local contribution of pattern for transaction.

        Returns:
            0.0 for no match, otherwise a contribution in (0, 1]

        Raises:
            PatternConfigurationError: If the pattern value is malformed
        """
        pass

    def validate(self, pattern: Pattern) -> None:
        """
        Check that the pattern value can be interpreted.
        Override in subclasses whose values need parsing.

        Raises:
            PatternConfigurationError: If the value is malformed
        """
        pass

    def evaluate(self, pattern: Pattern, transaction: Transaction) -> MatchResult:
        """
        Evaluate one pattern against one transaction.

        Malformed pattern values never match; they are logged as configuration
        warnings and reported on the MatchResult.
        """
        return self._timed(pattern, lambda: self.match(pattern, transaction))

    def _timed(self, pattern: Pattern, compute: Callable[[], float]) -> MatchResult:
        if pattern.pattern_type != self.pattern_type:
            raise ValueError(
                f"{self.__class__.__name__} cannot evaluate {pattern.pattern_type.value} patterns"
            )

        start = time.perf_counter()
        try:
            contribution = compute()
        except PatternConfigurationError as e:
            elapsed_ms = (time.perf_counter() - start) * 1000
            logger.warning(
                f"Pattern {pattern.pattern_id} has an invalid {pattern.pattern_type.value} value "
                f"'{pattern.value}': {str(e)}",
                extra={
                    'pattern_id': str(pattern.pattern_id),
                    'category_id': str(pattern.category_id),
                    'pattern_type': pattern.pattern_type.value,
                }
            )
            return MatchResult.no_match(pattern, elapsed_ms=elapsed_ms, error=str(e))

        elapsed_ms = (time.perf_counter() - start) * 1000
        if contribution <= 0.0:
            return MatchResult.no_match(pattern, elapsed_ms=elapsed_ms)

        return MatchResult(
            pattern=pattern,
            matched=True,
            contribution=min(1.0, contribution),
            elapsed_ms=elapsed_ms
        )
