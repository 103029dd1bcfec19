"""
Tests for single-transaction categorization.
"""
import uuid
from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from models.categorization import CategorizationStatus
from models.composite_pattern import CompositeConditions
from models.pattern import PatternType
from models.preference import UserPreference
from services.categorization.concurrent_processor import shutdown_worker_pool
from services.categorization.config import (
    CategorizationConfig,
    ProcessingConfig,
    ScoringConfig,
)
from services.categorization.engine import CategorizationEngine
from services.categorization.errors import (
    CacheUnavailableError,
    EngineConfigurationError,
    PatternConfigurationError,
)
from services.categorization.matchers import MatcherRegistry
from services.categorization.pattern_cache import PatternCache
from tests.fixtures.categorization_fixtures import (
    SATURDAY_EVENING,
    InMemorySharedTier,
    StaticPatternLoader,
    StaticPreferenceLoader,
    SteppingClock,
    create_pattern,
    create_transaction,
)

DINING = uuid.UUID("00000000-0000-0000-0000-0000000000d1")
ENTERTAINMENT = uuid.UUID("00000000-0000-0000-0000-0000000000e1")
TRANSPORT = uuid.UUID("00000000-0000-0000-0000-0000000000f1")


def build_engine(patterns, config=None, preferences=None, **kwargs):
    cache = PatternCache(
        shared_tier=InMemorySharedTier(),
        pattern_loader=StaticPatternLoader(patterns),
        preference_loader=preferences
    )
    config = config or CategorizationConfig(processing=ProcessingConfig(item_timeout_ms=5000))
    return CategorizationEngine(cache, config=config, **kwargs)


@pytest.fixture
def patterns():
    return [
        create_pattern(DINING, PatternType.MERCHANT, "Starbucks", 4.0),
        create_pattern(DINING, PatternType.KEYWORD, "coffee", 1.0),
        create_pattern(ENTERTAINMENT, PatternType.TIME, "weekend", 1.5),
        create_pattern(TRANSPORT, PatternType.REGEX, r"uber\s+\*?trip", 2.0),
        create_pattern(TRANSPORT, PatternType.AMOUNT_RANGE, "-100.00--10.00", 0.5),
    ]


@pytest.fixture
def engine(patterns):
    return build_engine(patterns)


class TestCategorize:
    def test_merchant_with_store_number(self, engine, patterns):
        result = engine.categorize(create_transaction("STARBUCKS #4521", amount=Decimal("-5.75")))

        assert result.status == CategorizationStatus.MATCHED
        assert result.category_id == DINING
        assert result.confidence == 1.0
        assert result.contributing_pattern_ids == [patterns[0].pattern_id]
        assert result.processing_time_ms > 0

    def test_weekend_time_pattern(self, engine):
        txn = create_transaction("AMC THEATRES", amount=Decimal("-5.00"), occurred_at=SATURDAY_EVENING)

        result = engine.categorize(txn)

        assert result.status == CategorizationStatus.MATCHED
        assert result.category_id == ENTERTAINMENT
        assert result.confidence == pytest.approx(0.5)

    def test_alternatives_reported(self, engine):
        txn = create_transaction("UBER *TRIP", description="coffee run", amount=Decimal("-25.00"),
                                 occurred_at=SATURDAY_EVENING)

        result = engine.categorize(txn)

        # TRANSPORT 2.5/3, ENTERTAINMENT 1.5/3, DINING 1.0/3
        assert result.category_id == TRANSPORT
        assert result.confidence == pytest.approx(2.5 / 3)
        assert [alt.category_id for alt in result.alternatives] == [ENTERTAINMENT, DINING]

    def test_no_match(self, engine):
        result = engine.categorize(create_transaction("HOME DEPOT", amount=Decimal("-250.00")))

        assert result.status == CategorizationStatus.NO_MATCH
        assert result.category_id is None
        assert result.metadata['patternsEvaluated'] == 5
        assert result.metadata['patternsMatched'] == 0

    def test_inactive_patterns_ignored(self):
        engine = build_engine([create_pattern(DINING, PatternType.MERCHANT, "Starbucks", 4.0, active=False)])
        result = engine.categorize(create_transaction("STARBUCKS"))
        assert result.status == CategorizationStatus.NO_MATCH

    def test_invalid_pattern_does_not_block_others(self, patterns):
        broken = create_pattern(DINING, PatternType.REGEX, "([", 5.0)
        engine = build_engine(patterns + [broken])

        result = engine.categorize(create_transaction("STARBUCKS #4521"))

        assert result.status == CategorizationStatus.MATCHED
        assert broken.pattern_id not in result.contributing_pattern_ids
        assert result.metadata['patternsEvaluated'] == 6

    def test_deterministic(self, patterns):
        txn = create_transaction("UBER *TRIP", description="coffee", amount=Decimal("-25.00"),
                                 occurred_at=SATURDAY_EVENING, transaction_id="t-fixed")

        first = build_engine(patterns).categorize(txn)
        second = build_engine(list(reversed(patterns))).categorize(txn)
        engine = build_engine(patterns)
        repeated = [engine.categorize(txn) for _ in range(3)]

        assert first.without_timing() == second.without_timing()
        assert all(r.without_timing() == first.without_timing() for r in repeated)

    def test_below_configured_floor(self, patterns):
        config = CategorizationConfig(
            scoring=ScoringConfig(min_confidence=0.9),
            processing=ProcessingConfig(item_timeout_ms=5000)
        )
        engine = build_engine(patterns, config=config)

        txn = create_transaction("AMC THEATRES", amount=Decimal("-5.00"), occurred_at=SATURDAY_EVENING)
        result = engine.categorize(txn)

        assert result.status == CategorizationStatus.NO_MATCH
        assert result.metadata['bestConfidence'] == 0.5


class TestCompositePatterns:
    @pytest.fixture
    def components(self):
        return [
            create_pattern(DINING, PatternType.MERCHANT, "Starbucks", 1.0),
            create_pattern(DINING, PatternType.KEYWORD, "coffee", 1.0),
        ]

    def test_and_composite_votes_when_all_components_match(self, components):
        merchant, keyword = components
        composite = create_pattern(DINING, PatternType.COMPOSITE, "and", 1.5,
                                   component_ids=[merchant.pattern_id, keyword.pattern_id])
        engine = build_engine(components + [composite])

        both = engine.categorize(create_transaction("STARBUCKS", description="coffee beans"))
        merchant_only = engine.categorize(create_transaction("STARBUCKS"))

        assert both.category_id == DINING
        assert composite.pattern_id in both.contributing_pattern_ids
        assert both.metadata['patternsEvaluated'] == 3
        assert merchant_only.category_id == DINING
        assert composite.pattern_id not in merchant_only.contributing_pattern_ids
        assert merchant_only.confidence == pytest.approx(1.0 / 3)

    def test_composite_conditions_restrict_matches(self, components):
        keyword = components[1]
        composite = create_pattern(
            DINING, PatternType.COMPOSITE, "OR", 1.5,
            component_ids=[keyword.pattern_id],
            conditions=CompositeConditions(days_of_week=["saturday"])
        )
        engine = build_engine(components + [composite])

        weekday = engine.categorize(create_transaction("CAFE", description="coffee"))
        weekend = engine.categorize(create_transaction("CAFE", description="coffee", occurred_at=SATURDAY_EVENING))

        assert composite.pattern_id not in weekday.contributing_pattern_ids
        assert composite.pattern_id in weekend.contributing_pattern_ids
        assert weekend.confidence > weekday.confidence

    def test_inactive_component_is_left_out(self, components):
        merchant, keyword = components
        inactive = create_pattern(DINING, PatternType.KEYWORD, "beans", 1.0, active=False)
        composite = create_pattern(DINING, PatternType.COMPOSITE, "AND", 1.5,
                                   component_ids=[keyword.pattern_id, inactive.pattern_id])
        engine = build_engine([merchant, keyword, inactive, composite])

        result = engine.categorize(create_transaction("CAFE", description="coffee"))

        assert composite.pattern_id in result.contributing_pattern_ids


class TestUserPreferences:
    @pytest.fixture
    def preferences(self):
        return StaticPreferenceLoader({
            "starbucks": UserPreference(merchant_key="starbucks", category_id=ENTERTAINMENT, preference_weight=2),
        })

    def test_preference_wins_over_patterns(self, patterns, preferences):
        engine = build_engine(patterns, preferences=preferences)

        result = engine.categorize(create_transaction("STARBUCKS"))

        assert result.status == CategorizationStatus.MATCHED
        assert result.category_id == ENTERTAINMENT
        assert result.confidence == pytest.approx(0.35)
        assert result.match_results == []
        assert result.metadata['source'] == 'user_preference'
        assert engine.metrics()['preference_hits'] == 1

    def test_preference_ignores_confidence_floor(self, patterns, preferences):
        config = CategorizationConfig(
            scoring=ScoringConfig(min_confidence=0.9),
            processing=ProcessingConfig(item_timeout_ms=5000)
        )
        engine = build_engine(patterns, config=config, preferences=preferences)

        result = engine.categorize(create_transaction("STARBUCKS"))

        assert result.status == CategorizationStatus.MATCHED
        assert result.category_id == ENTERTAINMENT

    def test_preference_lookup_is_cached(self, patterns, preferences):
        engine = build_engine(patterns, preferences=preferences)

        engine.categorize(create_transaction("STARBUCKS"))
        engine.categorize(create_transaction("STARBUCKS"))
        engine.categorize(create_transaction("HOME DEPOT", amount=Decimal("-500")))
        engine.categorize(create_transaction("HOME DEPOT", amount=Decimal("-500")))

        assert preferences.calls == ["starbucks", "home depot"]

    def test_unreachable_preference_store_falls_back_to_patterns(self, patterns, preferences):
        preferences.fail_with = ConnectionError("preferences table unreachable")
        engine = build_engine(patterns, preferences=preferences)

        result = engine.categorize(create_transaction("STARBUCKS"))

        assert result.category_id == DINING
        assert engine.metrics()['preference_hits'] == 0

    def test_preferences_can_be_disabled(self, patterns, preferences):
        config = CategorizationConfig(
            scoring=ScoringConfig(check_user_preferences=False),
            processing=ProcessingConfig(item_timeout_ms=5000)
        )
        engine = build_engine(patterns, config=config, preferences=preferences)

        result = engine.categorize(create_transaction("STARBUCKS"))

        assert result.category_id == DINING
        assert preferences.calls == []


class TestFailureHandling:
    def test_cache_unavailable_degrades_to_no_match(self):
        cache = MagicMock(spec=PatternCache)
        cache.user_preference.return_value = None
        cache.active_patterns_for.side_effect = CacheUnavailableError("store down")
        engine = CategorizationEngine(cache)

        result = engine.categorize(create_transaction("STARBUCKS"))

        assert result.status == CategorizationStatus.NO_MATCH
        assert result.metadata['degraded'] is True
        assert engine.metrics()['degraded'] == 1

    def test_timeout(self, patterns):
        # every clock read advances 10ms against a 25ms budget
        engine = build_engine(patterns, clock=SteppingClock(0.010))

        result = engine.categorize(create_transaction("STARBUCKS #4521"), timeout_ms=25)

        assert result.status == CategorizationStatus.TIMEOUT
        assert result.category_id is None
        assert result.processing_time_ms > 25
        assert engine.metrics()['timeouts'] == 1

    def test_unexpected_error_becomes_error_result(self, patterns):
        registry = MagicMock(spec=MatcherRegistry)
        registry.evaluate.side_effect = RuntimeError("matcher exploded")
        engine = build_engine(patterns, matchers=registry)

        result = engine.categorize(create_transaction("STARBUCKS", transaction_id="t-err"))

        assert result.status == CategorizationStatus.ERROR
        assert result.transaction_id == "t-err"
        assert result.error == "RuntimeError: matcher exploded"

    def test_configuration_error_propagates(self):
        cache = MagicMock(spec=PatternCache)
        cache.user_preference.return_value = None
        cache.active_patterns_for.side_effect = EngineConfigurationError("no store configured")
        engine = CategorizationEngine(cache)

        with pytest.raises(EngineConfigurationError):
            engine.categorize(create_transaction("STARBUCKS"))

    def test_validate_pattern(self, engine):
        with pytest.raises(PatternConfigurationError):
            engine.validate_pattern(create_pattern(DINING, PatternType.AMOUNT_RANGE, "50-10"))
        engine.validate_pattern(create_pattern(DINING, PatternType.TIME, "08:00-09:30"))


class TestEngineMetrics:
    def test_metrics(self, engine):
        engine.categorize(create_transaction("STARBUCKS"))
        engine.categorize(create_transaction("HOME DEPOT", amount=Decimal("-500")))

        metrics = engine.metrics()
        assert metrics['total_categorizations'] == 2
        assert metrics['matched'] == 1
        assert metrics['no_match'] == 1
        assert metrics['pattern_evaluations'] == 10
        assert metrics['cache']['misses'] >= 1

    def test_unhealthy_on_high_error_rate(self, patterns):
        registry = MagicMock(spec=MatcherRegistry)
        registry.evaluate.side_effect = RuntimeError("boom")
        engine = build_engine(patterns, matchers=registry)

        for _ in range(9):
            engine.categorize(create_transaction("STARBUCKS"))
        assert engine.is_healthy()

        engine.categorize(create_transaction("STARBUCKS"))
        assert not engine.is_healthy()

        engine.reset_metrics()
        assert engine.is_healthy()
        assert engine.metrics()['total_categorizations'] == 0


class TestCategorizeMany:
    def teardown_method(self):
        shutdown_worker_pool()

    def test_preserves_input_order(self, engine):
        transactions = [
            create_transaction("STARBUCKS", transaction_id="t-0"),
            create_transaction("HOME DEPOT", amount=Decimal("-500"), transaction_id="t-1"),
            create_transaction("UBER *TRIP", transaction_id="t-2"),
        ]

        results = engine.categorize_many(transactions)

        assert [r.transaction_id for r in results] == ["t-0", "t-1", "t-2"]
        assert [r.category_id for r in results] == [DINING, None, TRANSPORT]
