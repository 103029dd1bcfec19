"""
Categorization engine.

Orchestrates one transaction through the user's merchant preference,
candidate loading, pattern matching and scoring within a per-item time
budget. Simple patterns are evaluated first and composites are combined from
their results. Pattern and cache problems are turned into result statuses
here; only engine misconfiguration propagates.
"""

import time
import logging
import threading
from collections import Counter
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from models.pattern import Pattern
from models.transaction import Transaction
from models.categorization import CategorizationResult, CategorizationStatus, MatchResult
from services.categorization.config import CategorizationConfig, DEFAULT_CONFIG
from services.categorization.errors import (
    CacheUnavailableError,
    CategorizationTimeoutError,
    EngineConfigurationError,
)
from services.categorization.matchers import MatcherRegistry
from services.categorization.normalizer import TextNormalizer
from services.categorization.pattern_cache import PatternCache
from services.categorization.scorer import ConfidenceScorer

logger = logging.getLogger(__name__)

# Error rate above which the engine reports itself unhealthy, once it has seen enough traffic
UNHEALTHY_ERROR_RATE = 0.5
MIN_REQUESTS_FOR_HEALTH = 10


class CategorizationEngine:
    """Suggests a category for a transaction from its weighted pattern votes."""

    def __init__(
        self,
        pattern_cache: PatternCache,
        config: Optional[CategorizationConfig] = None,
        matchers: Optional[MatcherRegistry] = None,
        scorer: Optional[ConfidenceScorer] = None,
        normalizer: Optional[TextNormalizer] = None,
        clock: Callable[[], float] = time.perf_counter
    ):
        self.config = config or DEFAULT_CONFIG
        self.pattern_cache = pattern_cache
        self.normalizer = normalizer or TextNormalizer(self.config.matching.normalization_cache_size)
        self.matchers = matchers or MatcherRegistry.default(
            self.normalizer, self.config.matching.fuzzy_threshold
        )
        self.scorer = scorer or ConfidenceScorer(self.config.scoring)
        self._clock = clock
        self._lock = threading.Lock()
        self._status_counts: Counter = Counter()
        self._degraded_count = 0
        self._preference_hits = 0
        self._evaluations = 0
        self._total_time_ms = 0.0

    def categorize(self, transaction: Transaction, timeout_ms: Optional[float] = None) -> CategorizationResult:
        """
        Categorize one transaction.

        Never raises for pattern, cache or timeout problems; those come back as
        no_match, error or timeout results.

        Raises:
            EngineConfigurationError: If the engine itself is misconfigured
        """
        budget_ms = timeout_ms if timeout_ms is not None else self.config.processing.item_timeout_ms
        start = self._clock()
        deadline = start + budget_ms / 1000

        try:
            result = self._categorize(transaction, start, deadline)
        except EngineConfigurationError:
            raise
        except CategorizationTimeoutError as e:
            logger.warning(
                f"Categorization of transaction {transaction.transaction_id} timed out after {e.elapsed_ms:.2f}ms",
                extra={'transaction_id': transaction.transaction_id, 'budget_ms': budget_ms}
            )
            result = CategorizationResult.timeout(
                transaction.transaction_id,
                processing_time_ms=e.elapsed_ms,
                reason=str(e)
            )
        except Exception as e:
            elapsed_ms = (self._clock() - start) * 1000
            logger.error(
                f"Unexpected error categorizing transaction {transaction.transaction_id}: {str(e)}",
                exc_info=True,
                extra={'transaction_id': transaction.transaction_id}
            )
            result = CategorizationResult.error_result(
                transaction.transaction_id,
                reason=f"{type(e).__name__}: {str(e)}",
                processing_time_ms=elapsed_ms
            )

        self._record(result)
        return result

    def categorize_many(self, transactions: Sequence[Transaction],
                        max_concurrency: Optional[int] = None) -> List[CategorizationResult]:
        """Categorize a batch on the process-wide worker pool, preserving input order."""
        from services.categorization.concurrent_processor import ConcurrentProcessor

        processor = ConcurrentProcessor(self, config=self.config.processing)
        return processor.categorize_batch(transactions, max_concurrency=max_concurrency)

    def _categorize(self, transaction: Transaction, start: float, deadline: float) -> CategorizationResult:
        preferred = self._preferred_result(transaction)
        if preferred is not None:
            elapsed_ms = (self._clock() - start) * 1000
            logger.debug(
                f"Transaction {transaction.transaction_id}: user preference for "
                f"'{preferred.metadata['merchantKey']}' -> {preferred.category_id}"
            )
            return preferred.model_copy(update={'processing_time_ms': elapsed_ms})

        patterns, degraded = self._candidate_patterns(transaction)
        self._check_deadline(start, deadline, "loading patterns")

        simple = [p for p in patterns if not p.is_composite]
        composites = [p for p in patterns if p.is_composite]

        match_results: List[MatchResult] = []
        for pattern in simple:
            self._check_deadline(start, deadline, f"evaluating pattern {pattern.pattern_id}")
            match_results.append(self.matchers.evaluate(pattern, transaction))

        if composites:
            by_id = {m.pattern.pattern_id: m for m in match_results}
            for pattern in composites:
                self._check_deadline(start, deadline, f"evaluating composite {pattern.pattern_id}")
                match_results.append(self.matchers.evaluate_composite(pattern, transaction, by_id))

        with self._lock:
            self._evaluations += len(match_results)

        result = self.scorer.score(transaction, match_results)
        self._check_deadline(start, deadline, "scoring")

        elapsed_ms = (self._clock() - start) * 1000
        metadata = dict(result.metadata)
        if degraded:
            metadata['degraded'] = True

        logger.debug(
            f"Transaction {transaction.transaction_id}: {result.status.value} "
            f"(confidence {result.confidence:.3f}) in {elapsed_ms:.2f}ms",
            extra={'transaction_id': transaction.transaction_id, 'elapsed_ms': elapsed_ms}
        )
        return result.model_copy(update={'processing_time_ms': elapsed_ms, 'metadata': metadata})

    def _preferred_result(self, transaction: Transaction) -> Optional[CategorizationResult]:
        """
        The user's merchant preference as a result, or None to fall through to patterns.

        Preference lookups that cannot reach the cache or store are skipped.
        """
        if not self.config.scoring.check_user_preferences or not transaction.merchant_name:
            return None
        merchant_key = self.normalizer.normalize(transaction.merchant_name)
        if not merchant_key:
            return None

        try:
            preference = self.pattern_cache.user_preference(merchant_key)
        except CacheUnavailableError as e:
            logger.warning(
                f"Skipping user preference for transaction {transaction.transaction_id}: {str(e)}",
                extra={'transaction_id': transaction.transaction_id}
            )
            return None
        if preference is None:
            return None

        with self._lock:
            self._preference_hits += 1
        return CategorizationResult.from_user_preference(
            transaction.transaction_id,
            preference,
            preference.confidence(self.config.scoring.user_preference_boost)
        )

    def _candidate_patterns(self, transaction: Transaction) -> Tuple[List[Pattern], bool]:
        """
        Active patterns in a stable order, or an empty list when the cache is unavailable.
        """
        try:
            patterns = self.pattern_cache.active_patterns_for()
        except CacheUnavailableError as e:
            logger.warning(
                f"Pattern cache unavailable, categorizing transaction {transaction.transaction_id} "
                f"without patterns: {str(e)}",
                extra={'transaction_id': transaction.transaction_id}
            )
            return [], True

        active = [p for p in patterns if p.active]
        active.sort(key=lambda p: str(p.pattern_id))
        return active, False

    def _check_deadline(self, start: float, deadline: float, stage: str) -> None:
        now = self._clock()
        if now > deadline:
            elapsed_ms = (now - start) * 1000
            raise CategorizationTimeoutError(
                f"Time budget exceeded while {stage}",
                elapsed_ms=elapsed_ms
            )

    def validate_pattern(self, pattern: Pattern) -> None:
        """
        Check a pattern value with its matcher before it is stored.

        Raises:
            PatternConfigurationError: If the value is malformed
        """
        self.matchers.validate(pattern)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def _record(self, result: CategorizationResult) -> None:
        with self._lock:
            self._status_counts[result.status] += 1
            self._total_time_ms += result.processing_time_ms
            if result.metadata.get('degraded'):
                self._degraded_count += 1

    def metrics(self) -> Dict[str, Any]:
        with self._lock:
            total = sum(self._status_counts.values())
            return {
                'total_categorizations': total,
                'matched': self._status_counts[CategorizationStatus.MATCHED],
                'no_match': self._status_counts[CategorizationStatus.NO_MATCH],
                'errors': self._status_counts[CategorizationStatus.ERROR],
                'timeouts': self._status_counts[CategorizationStatus.TIMEOUT],
                'degraded': self._degraded_count,
                'preference_hits': self._preference_hits,
                'pattern_evaluations': self._evaluations,
                'average_processing_time_ms': round(self._total_time_ms / total, 3) if total else 0.0,
                'normalizer': self.normalizer.stats(),
                'cache': self.pattern_cache.metrics(),
            }

    def is_healthy(self) -> bool:
        with self._lock:
            total = sum(self._status_counts.values())
            errors = self._status_counts[CategorizationStatus.ERROR]
        if total >= MIN_REQUESTS_FOR_HEALTH and errors / total > UNHEALTHY_ERROR_RATE:
            return False
        return self.pattern_cache.is_healthy()

    def reset_metrics(self) -> None:
        with self._lock:
            self._status_counts.clear()
            self._degraded_count = 0
            self._preference_hits = 0
            self._evaluations = 0
            self._total_time_ms = 0.0
        self.pattern_cache.reset_metrics()
