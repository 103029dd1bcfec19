"""
Composite pattern matcher.

A composite is evaluated after the simple patterns, from their results:

    AND  every component matched      -> mean of the component contributions
    OR   at least one matched         -> strongest component contribution
    NOT  no component matched         -> 1.0

Components missing from the results (inactive, unknown, nested composites or
patterns of another category) are left out of the vote. A composite with no
usable component never matches. Conditions are checked before the components.
"""

import logging
import uuid
from typing import List, Mapping, Optional

from models.categorization import MatchResult
from models.composite_pattern import CompositeConditions, CompositeOperator
from models.pattern import Pattern, PatternType
from models.transaction import Transaction
from services.categorization.errors import PatternConfigurationError
from services.categorization.matchers.base import PatternMatcher
from services.categorization.matchers.time_window import in_window, local_time
from services.categorization.normalizer import TextNormalizer

logger = logging.getLogger(__name__)

ComponentResults = Mapping[uuid.UUID, MatchResult]


class CompositeMatcher(PatternMatcher):
    """Combines component MatchResults with the composite's boolean operator."""

    def __init__(self, normalizer: TextNormalizer):
        self.normalizer = normalizer

    @property
    def pattern_type(self) -> PatternType:
        return PatternType.COMPOSITE

    def validate(self, pattern: Pattern) -> None:
        if pattern.operator is None or not pattern.component_ids:
            raise PatternConfigurationError(
                "Composite pattern needs an operator and components",
                pattern_id=str(pattern.pattern_id)
            )

    def match(self, pattern: Pattern, transaction: Transaction) -> float:
        raise PatternConfigurationError(
            "Composite patterns are evaluated from component results",
            pattern_id=str(pattern.pattern_id)
        )

    def evaluate_components(self, pattern: Pattern, transaction: Transaction,
                            component_results: ComponentResults) -> MatchResult:
        return self._timed(pattern, lambda: self.combine(pattern, transaction, component_results))

    def combine(self, pattern: Pattern, transaction: Transaction,
                component_results: ComponentResults) -> float:
        self.validate(pattern)
        if pattern.conditions is not None and not self.conditions_met(pattern, pattern.conditions, transaction):
            return 0.0

        results = self._usable_results(pattern, component_results)
        if not results:
            logger.debug(f"Composite {pattern.pattern_id} has no active components")
            return 0.0

        matched = [r.contribution for r in results if r.matched]
        operator = pattern.operator
        if operator == CompositeOperator.AND:
            return sum(matched) / len(matched) if len(matched) == len(results) else 0.0
        if operator == CompositeOperator.OR:
            return max(matched) if matched else 0.0
        return 0.0 if matched else 1.0

    def conditions_met(self, pattern: Pattern, conditions: CompositeConditions,
                       transaction: Transaction) -> bool:
        magnitude = abs(transaction.amount)
        if conditions.min_amount is not None and magnitude < conditions.min_amount:
            return False
        if conditions.max_amount is not None and magnitude > conditions.max_amount:
            return False

        if conditions.days_of_week or conditions.time_ranges:
            moment = local_time(pattern, transaction)
            if conditions.days_of_week and moment.strftime('%A').lower() not in conditions.days_of_week:
                return False
            if conditions.time_ranges:
                minute_of_day = moment.hour * 60 + moment.minute
                if not any(in_window(minute_of_day, *window.minutes) for window in conditions.time_ranges):
                    return False

        if conditions.merchant_blacklist and transaction.merchant_name:
            merchant = self.normalizer.normalize(transaction.merchant_name)
            blacklist = {self.normalizer.normalize(name) for name in conditions.merchant_blacklist}
            if merchant in blacklist:
                return False

        return True

    @staticmethod
    def _usable_results(pattern: Pattern, component_results: ComponentResults) -> List[MatchResult]:
        usable: List[MatchResult] = []
        for component_id in pattern.component_ids:
            result: Optional[MatchResult] = component_results.get(component_id)
            if result is None or result.pattern.category_id != pattern.category_id:
                continue
            usable.append(result)
        return usable
