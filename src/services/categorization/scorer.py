"""
Confidence scoring.

Aggregates pattern votes into a single ranked category suggestion.
"""

import math
import logging
import uuid
from collections import defaultdict
from typing import Dict, List, Optional, Sequence, Tuple

from models.transaction import Transaction
from models.categorization import (
    CategorizationResult,
    CategorizationStatus,
    CategoryScore,
    MatchResult,
)
from services.categorization.config import ScoringConfig

logger = logging.getLogger(__name__)

# Confidences are compared at this precision so that float noise cannot break ties
RANKING_PRECISION = 6


class ConfidenceScorer:
    """
    Groups matched patterns by category and scores each category as

        min(1.0, sum(confidence_weight * contribution) / normalization_weight)

    Ties on confidence go to the category holding the heaviest single pattern,
    then to the one whose pattern has the larger usage_count, then to the lower
    category id so the outcome never depends on evaluation order.
    """

    def __init__(self, config: Optional[ScoringConfig] = None):
        self.config = config or ScoringConfig()

    def score(self, transaction: Transaction, match_results: Sequence[MatchResult]) -> CategorizationResult:
        matched = [m for m in match_results if m.matched]
        metadata = {
            'patternsEvaluated': len(match_results),
            'patternsMatched': len(matched),
        }

        if not matched:
            return CategorizationResult.no_match(transaction.transaction_id, metadata=metadata)

        ranked = self.rank_categories(matched)
        best = ranked[0]

        if best.confidence < self.config.min_confidence:
            logger.debug(
                f"Best category {best.category_id} for transaction {transaction.transaction_id} "
                f"scored {best.confidence:.3f}, below floor {self.config.min_confidence}"
            )
            metadata['bestConfidence'] = round(best.confidence, 4)
            return CategorizationResult.no_match(transaction.transaction_id, metadata=metadata)

        contributing = sorted(
            (m for m in matched if m.pattern.category_id == best.category_id),
            key=lambda m: (-m.weighted_score, str(m.pattern.pattern_id))
        )
        alternatives = [
            alt for alt in ranked[1:1 + self.config.max_alternatives]
            if alt.confidence > 0.0
        ]

        return CategorizationResult(
            transaction_id=transaction.transaction_id,
            status=CategorizationStatus.MATCHED,
            category_id=best.category_id,
            confidence=best.confidence,
            match_results=contributing,
            alternatives=alternatives,
            metadata=metadata,
        )

    def rank_categories(self, matched: Sequence[MatchResult]) -> List[CategoryScore]:
        """Score every category with at least one match, best first."""
        by_category: Dict[uuid.UUID, List[MatchResult]] = defaultdict(list)
        for result in matched:
            by_category[result.pattern.category_id].append(result)

        scores = [self._category_score(category_id, results) for category_id, results in by_category.items()]
        scores.sort(key=self._ranking_key)
        return scores

    def _category_score(self, category_id: uuid.UUID, results: List[MatchResult]) -> CategoryScore:
        # fsum is exactly rounded, so the total is independent of dispatch order
        raw = math.fsum(r.weighted_score for r in results)
        confidence = min(1.0, raw / self.config.normalization_weight)
        return CategoryScore(
            category_id=category_id,
            confidence=confidence,
            raw_score=raw,
            max_weight=max(r.pattern.confidence_weight for r in results),
            max_usage_count=max(r.pattern.usage_count for r in results),
        )

    @staticmethod
    def _ranking_key(score: CategoryScore) -> Tuple[float, float, int, str]:
        return (
            -round(score.confidence, RANKING_PRECISION),
            -score.max_weight,
            -score.max_usage_count,
            str(score.category_id),
        )
