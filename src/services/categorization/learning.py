"""
Learning from categorization outcomes.

record_outcome is the only path that mutates pattern statistics. Each pattern
is updated with a single atomic counter increment in the store, so concurrent
workers reporting on the same pattern never lose an update and never need a
shared lock.

Corrections also teach description keywords. A keyword first becomes an
inactive candidate pattern with a deterministic id; every correction naming
it adds one to its correctionCount, and at min_corrections_for_keyword it is
activated. Candidates are never loaded by the cache because they are inactive.
"""

import re
import time
import uuid
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from models.pattern import Pattern, PatternType, MAX_CONFIDENCE_WEIGHT
from models.transaction import Transaction
from services.categorization.config import LearningConfig
from services.categorization.errors import CacheUnavailableError
from services.categorization.fuzzy import similarity
from services.categorization.matchers.amount_range import parse_amount_range
from services.categorization.normalizer import TextNormalizer
from services.categorization.pattern_cache import PatternCache
from utils.db.base import ConflictError, NotFound, current_timestamp
from utils.db.categories import checked_mandatory_category
from utils.db.patterns import (
    activate_pattern_in_db,
    create_pattern_in_db,
    deactivate_pattern_in_db,
    find_pattern_from_db,
    get_pattern_from_db,
    list_active_patterns_from_db,
    list_stale_patterns_from_db,
    merge_pattern_stats_in_db,
    record_pattern_correction_in_db,
    record_pattern_outcome_in_db,
    update_pattern_weight_in_db,
)
from utils.db.preferences import record_user_preference_in_db

logger = logging.getLogger(__name__)

MS_PER_DAY = 24 * 60 * 60 * 1000

Correction = Tuple[Transaction, uuid.UUID, Sequence[uuid.UUID]]

KEYWORD_STOP_WORDS = frozenset(
    ('the', 'a', 'an', 'and', 'or', 'but', 'in', 'on', 'at', 'to', 'for', 'of', 'with', 'from', 'by')
)
WORD_SEPARATOR = re.compile(r'\W+')

# Namespace for candidate keyword pattern ids: uuid5(namespace, "<category_id>:<keyword>")
KEYWORD_CANDIDATE_NAMESPACE = uuid.UUID("6f1c3a52-8d0e-4b7a-9e21-3c5d7f0a4b18")
CANDIDATE_SOURCE = "keyword_candidate"
LEARNED_KEYWORD_SOURCE = "keyword_learning"

MERGEABLE_TYPES = (PatternType.MERCHANT, PatternType.KEYWORD, PatternType.AMOUNT_RANGE)


@dataclass
class LearningResult:
    success: bool
    patterns_created: List[uuid.UUID] = field(default_factory=list)
    patterns_strengthened: List[uuid.UUID] = field(default_factory=list)
    patterns_weakened: List[uuid.UUID] = field(default_factory=list)
    patterns_merged: List[uuid.UUID] = field(default_factory=list)
    keyword_candidates: List[uuid.UUID] = field(default_factory=list)
    preference_recorded: bool = False
    error: Optional[str] = None
    elapsed_ms: float = 0.0

    @classmethod
    def invalid(cls, reason: str) -> "LearningResult":
        return cls(success=False, error=reason)


@dataclass
class BatchLearningResult:
    total: int
    successful: int
    failed: int
    truncated: int = 0
    results: List[LearningResult] = field(default_factory=list)

    @property
    def success_rate(self) -> float:
        return self.successful / self.total if self.total else 0.0


@dataclass
class DecayResult:
    patterns_examined: int = 0
    patterns_decayed: int = 0
    patterns_deactivated: int = 0


def extract_keywords(text: Optional[str], normalizer: TextNormalizer,
                     max_keywords: int = 5, min_length: int = 3) -> List[str]:
    """
    Distinct description words worth learning, in order of appearance.

    Stop words, all-digit words and words shorter than min_length are dropped.
    """
    if not text:
        return []
    keywords: List[str] = []
    for word in WORD_SEPARATOR.split(text.lower()):
        keyword = normalizer.normalize(word, strip_noise=False)
        if (
            len(keyword) < min_length
            or keyword in KEYWORD_STOP_WORDS
            or keyword.isdigit()
            or keyword in keywords
        ):
            continue
        keywords.append(keyword)
        if len(keywords) == max_keywords:
            break
    return keywords


def amount_range_similarity(first: str, second: str) -> float:
    """Overlap of two amount ranges divided by the span they cover together."""
    try:
        lower_a, upper_a = parse_amount_range(first)
        lower_b, upper_b = parse_amount_range(second)
    except ValueError:
        return 0.0
    overlap_start = max(lower_a, lower_b)
    overlap_end = min(upper_a, upper_b)
    if overlap_start > overlap_end:
        return 0.0
    span = max(upper_a, upper_b) - min(lower_a, lower_b)
    if span == 0:
        return 1.0
    return float((overlap_end - overlap_start) / span)


def pattern_similarity(first: Pattern, second: Pattern) -> float:
    if first.pattern_type != second.pattern_type:
        return 0.0
    if first.pattern_type in (PatternType.MERCHANT, PatternType.KEYWORD):
        return similarity(first.value.lower(), second.value.lower())
    if first.pattern_type == PatternType.AMOUNT_RANGE:
        return amount_range_similarity(first.value, second.value)
    return 0.0


def merge_metadata(primary: Dict[str, Any], secondary: Dict[str, Any],
                   secondary_id: uuid.UUID) -> Dict[str, Any]:
    """Primary's entries win; mergedFrom accumulates every absorbed pattern id."""
    merged = {**secondary, **primary}
    merged['mergedFrom'] = list(dict.fromkeys(
        list(primary.get('mergedFrom', [])) + list(secondary.get('mergedFrom', [])) + [str(secondary_id)]
    ))
    return merged


def _merge_rank(pattern: Pattern) -> Tuple[bool, int, float, str]:
    # user patterns first, then the most used
    return (not pattern.user_created, -pattern.usage_count, -pattern.confidence_weight, str(pattern.pattern_id))


class PatternLearner:
    """Feeds user confirmations and corrections back into pattern statistics and weights."""

    def __init__(
        self,
        pattern_cache: Optional[PatternCache] = None,
        config: Optional[LearningConfig] = None,
        normalizer: Optional[TextNormalizer] = None
    ):
        self.pattern_cache = pattern_cache
        self.config = config or LearningConfig()
        self.normalizer = normalizer or TextNormalizer()

    def record_outcome(self, pattern_ids: Iterable[uuid.UUID], accepted: bool) -> List[Pattern]:
        """
        Record that a suggestion built from pattern_ids was accepted or rejected.

        usage_count increments for every pattern, success_count only when
        accepted. Duplicate ids count once. Unknown ids are logged and skipped.
        Patterns that become poor performers are deactivated.

        Returns:
            The updated patterns, in the order given
        """
        updated: List[Pattern] = []
        invalidate: Set[uuid.UUID] = set()

        for pattern_id in dict.fromkeys(pattern_ids):
            try:
                pattern = record_pattern_outcome_in_db(pattern_id, accepted)
            except NotFound:
                logger.warning(f"Outcome reported for unknown pattern {pattern_id}",
                               extra={'pattern_id': str(pattern_id)})
                continue

            updated.append(pattern)
            logger.debug(
                f"Pattern {pattern_id} outcome {'accepted' if accepted else 'rejected'}: "
                f"{pattern.success_count}/{pattern.usage_count} ({pattern.success_rate:.2f})"
            )

            if pattern.active and pattern.is_poor_performer():
                if deactivate_pattern_in_db(pattern.pattern_id):
                    logger.warning(
                        f"Deactivated poorly performing pattern {pattern.pattern_id} "
                        f"(success rate {pattern.success_rate:.2f} over {pattern.usage_count} uses)",
                        extra={'pattern_id': str(pattern.pattern_id), 'category_id': str(pattern.category_id)}
                    )
                    invalidate.add(pattern.category_id)

        self._invalidate(invalidate)
        return updated

    def learn_from_correction(
        self,
        transaction: Transaction,
        correct_category_id: uuid.UUID,
        rejected_pattern_ids: Sequence[uuid.UUID] = ()
    ) -> LearningResult:
        """
        Learn from a user assigning correct_category_id to transaction.

        The merchant pattern for the correct category is strengthened, or created
        as a user pattern if none exists. Description keywords are counted toward
        keyword patterns. Patterns that voted for a different category are
        weakened. New patterns trigger a merge of near-duplicates in the category,
        and the merchant's user preference is recorded.
        """
        start = time.perf_counter()
        try:
            checked_mandatory_category(correct_category_id)
        except NotFound:
            return LearningResult.invalid(f"Category {correct_category_id} not found")

        result = LearningResult(success=True)
        invalidate: Set[uuid.UUID] = {correct_category_id}

        merchant_value = self.normalizer.normalize(transaction.merchant_text)
        if merchant_value:
            existing = find_pattern_from_db(correct_category_id, PatternType.MERCHANT.value, merchant_value)
            if existing is None:
                pattern = Pattern(
                    category_id=correct_category_id,
                    pattern_type=PatternType.MERCHANT,
                    value=merchant_value,
                    confidence_weight=self.config.correction_pattern_weight,
                    user_created=True,
                    metadata={'source': 'user_correction', 'transactionId': transaction.transaction_id},
                )
                create_pattern_in_db(pattern)
                result.patterns_created.append(pattern.pattern_id)
                logger.info(f"Created merchant pattern '{merchant_value}' for category {correct_category_id}")
            else:
                self._strengthen(existing)
                result.patterns_strengthened.append(existing.pattern_id)

        if self.config.learn_keywords:
            self._learn_keywords(transaction, correct_category_id, result)

        for pattern_id in dict.fromkeys(rejected_pattern_ids):
            pattern = get_pattern_from_db(pattern_id)
            if pattern is None or pattern.category_id == correct_category_id:
                continue
            update_pattern_weight_in_db(pattern.pattern_id, pattern.adjusted_weight(self.config.weaken_delta))
            result.patterns_weakened.append(pattern.pattern_id)
            invalidate.add(pattern.category_id)

        if result.patterns_created:
            result.patterns_merged = self._merge_similar(correct_category_id)

        if self.config.record_user_preferences and transaction.merchant_name:
            result.preference_recorded = self._record_preference(transaction.merchant_name, correct_category_id)

        self._invalidate(invalidate)
        result.elapsed_ms = (time.perf_counter() - start) * 1000
        return result

    def batch_learn(self, corrections: Sequence[Correction]) -> BatchLearningResult:
        """Apply up to config.batch_size corrections; the rest are reported as truncated."""
        truncated = max(0, len(corrections) - self.config.batch_size)
        if truncated:
            logger.warning(f"Batch size limited to {self.config.batch_size}, skipping {truncated} corrections")

        results: List[LearningResult] = []
        for transaction, category_id, rejected in corrections[:self.config.batch_size]:
            results.append(self.learn_from_correction(transaction, category_id, rejected))

        successful = sum(1 for r in results if r.success)
        return BatchLearningResult(
            total=len(results),
            successful=successful,
            failed=len(results) - successful,
            truncated=truncated,
            results=results,
        )

    def merge_similar_patterns(self, category_id: uuid.UUID) -> List[uuid.UUID]:
        """
        Merge near-duplicate active patterns of one category.

        Returns:
            Ids of the patterns that were merged away (now inactive)
        """
        merged = self._merge_similar(category_id)
        if merged:
            self._invalidate({category_id})
        return merged

    def decay_unused_patterns(self, now_ms: Optional[int] = None) -> DecayResult:
        """
        Reduce the weight of system patterns untouched for decay_threshold_days.

        User-created patterns never decay. Patterns whose weight falls below
        deactivation_weight are deactivated instead.
        """
        now_ms = now_ms if now_ms is not None else current_timestamp()
        threshold = now_ms - self.config.decay_threshold_days * MS_PER_DAY
        stale = list_stale_patterns_from_db(threshold)

        result = DecayResult(patterns_examined=len(stale))
        invalidate: Set[uuid.UUID] = set()
        for pattern in stale:
            new_weight = max(0.1, round(pattern.confidence_weight * self.config.decay_factor, 3))
            if new_weight < self.config.deactivation_weight:
                deactivate_pattern_in_db(pattern.pattern_id)
                result.patterns_deactivated += 1
            else:
                update_pattern_weight_in_db(pattern.pattern_id, new_weight)
                result.patterns_decayed += 1
            invalidate.add(pattern.category_id)

        self._invalidate(invalidate)
        logger.info(
            f"Pattern decay examined {result.patterns_examined}, decayed {result.patterns_decayed}, "
            f"deactivated {result.patterns_deactivated}"
        )
        return result

    # ------------------------------------------------------------------
    # Keyword learning
    # ------------------------------------------------------------------

    def _learn_keywords(self, transaction: Transaction, category_id: uuid.UUID, result: LearningResult) -> None:
        keywords = extract_keywords(
            transaction.description,
            self.normalizer,
            self.config.max_keywords,
            self.config.min_keyword_length
        )
        for keyword in keywords:
            existing = find_pattern_from_db(category_id, PatternType.KEYWORD.value, keyword)
            if existing is not None and existing.active:
                self._strengthen(existing)
                result.patterns_strengthened.append(existing.pattern_id)
                continue
            if existing is not None and existing.metadata.get('source') != CANDIDATE_SOURCE:
                # retired by decay, merging or poor performance
                continue

            candidate = existing or self._keyword_candidate(category_id, keyword, transaction)
            counted = record_pattern_correction_in_db(candidate)
            result.keyword_candidates.append(counted.pattern_id)
            if counted.correction_count < self.config.min_corrections_for_keyword:
                logger.debug(
                    f"Keyword '{keyword}' seen in {counted.correction_count} corrections for category {category_id}"
                )
                continue

            metadata = {**counted.metadata, 'source': LEARNED_KEYWORD_SOURCE}
            if activate_pattern_in_db(counted.pattern_id, metadata):
                result.patterns_created.append(counted.pattern_id)
                logger.info(
                    f"Activated keyword pattern '{keyword}' for category {category_id} "
                    f"after {counted.correction_count} corrections"
                )

    def _keyword_candidate(self, category_id: uuid.UUID, keyword: str, transaction: Transaction) -> Pattern:
        return Pattern(
            pattern_id=uuid.uuid5(KEYWORD_CANDIDATE_NAMESPACE, f"{category_id}:{keyword}"),
            category_id=category_id,
            pattern_type=PatternType.KEYWORD,
            value=keyword,
            confidence_weight=self.config.correction_pattern_weight,
            active=False,
            user_created=False,
            metadata={'source': CANDIDATE_SOURCE, 'transactionId': transaction.transaction_id},
        )

    # ------------------------------------------------------------------
    # Merging
    # ------------------------------------------------------------------

    def _merge_similar(self, category_id: uuid.UUID) -> List[uuid.UUID]:
        patterns = list_active_patterns_from_db(category_id)
        # deactivating a composite's component would silently change the composite
        in_composites = {cid for p in patterns if p.is_composite for cid in p.component_ids}

        by_type: Dict[PatternType, List[Pattern]] = defaultdict(list)
        for pattern in patterns:
            if pattern.pattern_type in MERGEABLE_TYPES:
                by_type[pattern.pattern_type].append(pattern)

        merged: List[uuid.UUID] = []
        for pattern_type in sorted(by_type, key=lambda t: t.value):
            group = sorted(by_type[pattern_type], key=_merge_rank)
            retired: Set[uuid.UUID] = set()
            for index, primary in enumerate(group):
                if primary.pattern_id in retired:
                    continue
                for secondary in group[index + 1:]:
                    if secondary.pattern_id in retired or secondary.pattern_id in in_composites:
                        continue
                    if pattern_similarity(primary, secondary) < self.config.merge_similarity_threshold:
                        continue
                    updated = self._merge(primary, secondary)
                    if updated is None:
                        continue
                    retired.add(secondary.pattern_id)
                    merged.append(secondary.pattern_id)
                    primary = updated
        return merged

    def _merge(self, primary: Pattern, secondary: Pattern) -> Optional[Pattern]:
        try:
            if not deactivate_pattern_in_db(secondary.pattern_id):
                return None
        except NotFound:
            return None

        total_usage = primary.usage_count + secondary.usage_count
        if total_usage:
            weight = (
                primary.confidence_weight * primary.usage_count
                + secondary.confidence_weight * secondary.usage_count
            ) / total_usage
        else:
            weight = (primary.confidence_weight + secondary.confidence_weight) / 2
        weight = min(MAX_CONFIDENCE_WEIGHT, round(weight, 3))

        updated = merge_pattern_stats_in_db(
            primary.pattern_id,
            secondary.usage_count,
            secondary.success_count,
            weight,
            merge_metadata(primary.metadata, secondary.metadata, secondary.pattern_id)
        )
        logger.info(
            f"Merged {primary.pattern_type.value} pattern {secondary.pattern_id} '{secondary.value}' "
            f"into {primary.pattern_id} '{primary.value}'",
            extra={'category_id': str(primary.category_id)}
        )
        return updated

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _record_preference(self, merchant_name: str, category_id: uuid.UUID) -> bool:
        merchant_key = self.normalizer.normalize(merchant_name)
        if not merchant_key:
            return False
        try:
            preference = record_user_preference_in_db(merchant_key, category_id)
        except ConflictError as e:
            logger.warning(f"User preference for '{merchant_key}' not recorded: {str(e)}")
            return False

        logger.debug(f"Preference '{merchant_key}' -> {category_id} at weight {preference.preference_weight}")
        if self.pattern_cache is not None:
            try:
                self.pattern_cache.invalidate_preference(merchant_key)
            except CacheUnavailableError as e:
                logger.error(f"Failed to invalidate cached preference for '{merchant_key}': {str(e)}")
        return True

    def _strengthen(self, pattern: Pattern) -> Pattern:
        delta = (
            self.config.user_created_strengthen_delta if pattern.user_created
            else self.config.strengthen_delta
        )
        updated = update_pattern_weight_in_db(pattern.pattern_id, pattern.adjusted_weight(delta))
        logger.debug(f"Strengthened pattern {pattern.pattern_id} to {updated.confidence_weight}")
        return updated

    def _invalidate(self, category_ids: Set[uuid.UUID]) -> None:
        if self.pattern_cache is None:
            return
        for category_id in sorted(category_ids, key=str):
            try:
                self.pattern_cache.invalidate_category(category_id)
            except CacheUnavailableError as e:
                # in-process entries were still dropped, shared entries expire on their own
                logger.error(f"Failed to invalidate cache for category {category_id}: {str(e)}")
