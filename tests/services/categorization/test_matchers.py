"""
Tests for the per-type pattern matchers and the matcher registry.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from models.categorization import MatchResult
from models.composite_pattern import CompositeConditions, TimeRange
from models.pattern import PatternType
from services.categorization.errors import EngineConfigurationError, PatternConfigurationError
from services.categorization.fuzzy import FuzzyMatcher
from services.categorization.matchers import (
    AmountRangeMatcher,
    CompositeMatcher,
    KeywordMatcher,
    MatcherRegistry,
    MerchantMatcher,
    RegexMatcher,
    TimeWindowMatcher,
    parse_amount_range,
    parse_time_value,
)
from services.categorization.normalizer import TextNormalizer
from tests.fixtures.categorization_fixtures import (
    SATURDAY_EVENING,
    TUESDAY_MORNING,
    create_pattern,
    create_transaction,
)


@pytest.fixture
def normalizer():
    return TextNormalizer()


class TestMerchantMatcher:
    @pytest.fixture
    def matcher(self, normalizer):
        return MerchantMatcher(normalizer, FuzzyMatcher(0.85))

    def test_exact_after_normalization(self, matcher):
        pattern = create_pattern(value="Starbucks")
        result = matcher.evaluate(pattern, create_transaction("STARBUCKS #4521"))

        assert result.matched
        assert result.contribution == 1.0
        assert result.weighted_score == 1.0

    def test_fuzzy_contribution_is_similarity(self, matcher):
        pattern = create_pattern(value="starbucks")
        result = matcher.evaluate(pattern, create_transaction("STARBUCK"))

        assert result.matched
        assert result.contribution == pytest.approx(8 / 9)

    def test_below_threshold(self, matcher):
        pattern = create_pattern(value="starbucks")
        result = matcher.evaluate(pattern, create_transaction("STAR MARKET"))

        assert not result.matched
        assert result.error is None

    def test_falls_back_to_description(self, matcher):
        pattern = create_pattern(value="netflix com")
        result = matcher.evaluate(pattern, create_transaction(description="NETFLIX.COM"))
        assert result.matched

    def test_empty_normalized_value_is_configuration_error(self, matcher):
        pattern = create_pattern(value="***")
        result = matcher.evaluate(pattern, create_transaction("STARBUCKS"))

        assert not result.matched
        assert "empty after normalization" in result.error
        with pytest.raises(PatternConfigurationError):
            matcher.validate(pattern)

    def test_wrong_pattern_type(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.KEYWORD, value="coffee")
        with pytest.raises(ValueError):
            matcher.evaluate(pattern, create_transaction("STARBUCKS"))


class TestKeywordMatcher:
    @pytest.fixture
    def matcher(self, normalizer):
        return KeywordMatcher(normalizer)

    def test_whole_word_in_description(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.KEYWORD, value="coffee")
        txn = create_transaction("SQ *BLUE BOTTLE", description="Coffee and pastry")
        assert matcher.evaluate(pattern, txn).matched

    def test_partial_word_does_not_match(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.KEYWORD, value="coffee")
        txn = create_transaction("COFFEEHOUSE ROASTERS")
        assert not matcher.evaluate(pattern, txn).matched

    def test_multi_word_keyword(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.KEYWORD, value="Whole Foods")
        txn = create_transaction("WHOLE FOODS MARKET #10234")
        result = matcher.evaluate(pattern, txn)

        assert result.matched
        assert result.contribution == 1.0

    @pytest.mark.parametrize("keyword, text", [
        ("co", "Transfer to savings co op"),
        ("inc", "Monthly inc deposit"),
        ("pos", "POS purchase 4411"),
    ])
    def test_short_keywords_that_look_like_merchant_noise(self, matcher, keyword, text):
        pattern = create_pattern(pattern_type=PatternType.KEYWORD, value=keyword)

        matcher.validate(pattern)
        assert matcher.evaluate(pattern, create_transaction(text)).matched


class TestRegexMatcher:
    @pytest.fixture
    def matcher(self):
        return RegexMatcher()

    def test_case_insensitive_search_on_raw_text(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.REGEX, value=r"^uber\s+\*?trip")
        assert matcher.evaluate(pattern, create_transaction("UBER *TRIP HELP.UBER.COM")).matched

    def test_no_match(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.REGEX, value=r"lyft")
        assert not matcher.evaluate(pattern, create_transaction("UBER TRIP")).matched

    def test_invalid_expression_never_matches(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.REGEX, value="([unclosed")
        result = matcher.evaluate(pattern, create_transaction("([unclosed"))

        assert not result.matched
        assert "Invalid regular expression" in result.error


class TestAmountRangeMatcher:
    @pytest.fixture
    def matcher(self):
        return AmountRangeMatcher()

    def test_parse_negative_bounds(self):
        assert parse_amount_range("-100.00--10.00") == (Decimal("-100.00"), Decimal("-10.00"))
        assert parse_amount_range(" 5 - 20.5 ") == (Decimal("5"), Decimal("20.5"))

    @pytest.mark.parametrize("value", ["20-10", "abc", "10", "1-2-3", "-5--10"])
    def test_parse_rejects_malformed(self, value):
        with pytest.raises(ValueError):
            parse_amount_range(value)

    @pytest.mark.parametrize("amount,expected", [
        ("-50.00", True),
        ("-100.00", True),
        ("-10.00", True),
        ("-100.01", False),
        ("-9.99", False),
        ("50.00", False),
    ])
    def test_bounds_inclusive(self, matcher, amount, expected):
        pattern = create_pattern(pattern_type=PatternType.AMOUNT_RANGE, value="-100.00--10.00")
        txn = create_transaction("ANY", amount=Decimal(amount))
        assert matcher.evaluate(pattern, txn).matched is expected

    def test_inverted_range_is_configuration_error(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.AMOUNT_RANGE, value="100-10")
        result = matcher.evaluate(pattern, create_transaction("ANY", amount=Decimal("50")))

        assert not result.matched
        assert result.error is not None


class TestTimeWindowMatcher:
    @pytest.fixture
    def matcher(self):
        return TimeWindowMatcher()

    def _at(self, hour, minute=0):
        return create_transaction("ANY", occurred_at=datetime(2024, 6, 12, hour, minute, tzinfo=timezone.utc))

    def test_named_weekend(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.TIME, value="Weekend")
        assert matcher.evaluate(pattern, create_transaction("ANY", occurred_at=SATURDAY_EVENING)).matched
        assert not matcher.evaluate(pattern, create_transaction("ANY", occurred_at=TUESDAY_MORNING)).matched

    def test_named_periods(self, matcher):
        evening = create_pattern(pattern_type=PatternType.TIME, value="evening")
        saturday = create_pattern(pattern_type=PatternType.TIME, value="saturday")
        txn = create_transaction("ANY", occurred_at=SATURDAY_EVENING)

        assert matcher.evaluate(evening, txn).matched
        assert matcher.evaluate(saturday, txn).matched

    @pytest.mark.parametrize("hour,minute,expected", [
        (23, 30, True),
        (22, 0, True),
        (1, 0, True),
        (2, 0, True),
        (2, 1, False),
        (12, 0, False),
    ])
    def test_window_wraps_midnight(self, matcher, hour, minute, expected):
        pattern = create_pattern(pattern_type=PatternType.TIME, value="22:00-02:00")
        assert matcher.evaluate(pattern, self._at(hour, minute)).matched is expected

    def test_plain_window(self, matcher):
        pattern = create_pattern(pattern_type=PatternType.TIME, value="11:30-14:00")
        assert matcher.evaluate(pattern, self._at(12, 15)).matched
        assert not matcher.evaluate(pattern, self._at(14, 1)).matched

    def test_utc_offset_from_metadata(self, matcher):
        # 19:30 UTC is 09:30 at UTC-10
        pattern = create_pattern(pattern_type=PatternType.TIME, value="morning",
                                 metadata={'utcOffsetMinutes': -600})
        assert matcher.evaluate(pattern, create_transaction("ANY", occurred_at=SATURDAY_EVENING)).matched

    def test_parse_time_value(self):
        assert parse_time_value("WEEKEND") == "weekend"
        assert parse_time_value("22:00-02:00") == (22 * 60, 2 * 60)

    @pytest.mark.parametrize("value", ["25:00-26:00", "10:00-10:00", "noonish", "10-12"])
    def test_malformed_values(self, matcher, value):
        pattern = create_pattern(pattern_type=PatternType.TIME, value=value)
        with pytest.raises(PatternConfigurationError):
            matcher.validate(pattern)
        assert not matcher.evaluate(pattern, self._at(10)).matched


class TestMatcherRegistry:
    def test_default_covers_every_type(self, normalizer):
        registry = MatcherRegistry.default(normalizer)
        for pattern_type in PatternType:
            assert registry.matcher_for(pattern_type).pattern_type is pattern_type

    def test_missing_matcher_rejected(self, normalizer):
        with pytest.raises(EngineConfigurationError):
            MatcherRegistry([MerchantMatcher(normalizer), RegexMatcher()])

    def test_duplicate_matcher_rejected(self, normalizer):
        with pytest.raises(EngineConfigurationError):
            MatcherRegistry([
                MerchantMatcher(normalizer),
                KeywordMatcher(normalizer),
                RegexMatcher(),
                RegexMatcher(),
                AmountRangeMatcher(),
                TimeWindowMatcher(),
            ])

    def test_evaluate_dispatches_by_type(self, normalizer):
        registry = MatcherRegistry.default(normalizer)
        pattern = create_pattern(pattern_type=PatternType.AMOUNT_RANGE, value="0-100")
        assert registry.evaluate(pattern, create_transaction("ANY", amount=Decimal("42"))).matched

    def test_validate(self, normalizer):
        registry = MatcherRegistry.default(normalizer)
        with pytest.raises(PatternConfigurationError):
            registry.validate(create_pattern(pattern_type=PatternType.REGEX, value="(?P<"))


class TestCompositeMatcher:
    @pytest.fixture
    def matcher(self, normalizer):
        return CompositeMatcher(normalizer)

    @pytest.fixture
    def components(self):
        category_id = uuid.uuid4()
        return [
            create_pattern(category_id, PatternType.MERCHANT, "starbucks"),
            create_pattern(category_id, PatternType.KEYWORD, "coffee"),
        ]

    @staticmethod
    def _results(components, contributions):
        return {
            p.pattern_id: MatchResult(pattern=p, matched=c > 0, contribution=c)
            for p, c in zip(components, contributions)
        }

    @staticmethod
    def _composite(components, operator, **kwargs):
        return create_pattern(
            components[0].category_id, PatternType.COMPOSITE, operator, 1.5,
            component_ids=[p.pattern_id for p in components], **kwargs
        )

    @pytest.mark.parametrize("operator,contributions,expected", [
        ("AND", (1.0, 0.8), 0.9),
        ("AND", (1.0, 0.0), 0.0),
        ("OR", (0.0, 0.8), 0.8),
        ("OR", (0.6, 0.9), 0.9),
        ("OR", (0.0, 0.0), 0.0),
        ("NOT", (0.0, 0.0), 1.0),
        ("NOT", (0.0, 0.7), 0.0),
    ])
    def test_operators(self, matcher, components, operator, contributions, expected):
        composite = self._composite(components, operator)
        result = matcher.evaluate_components(
            composite, create_transaction("ANY"), self._results(components, contributions)
        )

        assert result.contribution == pytest.approx(expected)
        assert result.matched == (expected > 0)

    def test_missing_and_foreign_components_are_ignored(self, matcher, components):
        foreign = create_pattern(uuid.uuid4(), PatternType.KEYWORD, "latte")
        composite = create_pattern(
            components[0].category_id, PatternType.COMPOSITE, "AND", 1.5,
            component_ids=[components[0].pattern_id, components[1].pattern_id, foreign.pattern_id]
        )
        results = self._results(components[:1], (1.0,))
        results[foreign.pattern_id] = MatchResult(pattern=foreign, matched=False)

        assert matcher.combine(composite, create_transaction("ANY"), results) == 1.0

    def test_no_usable_components_never_matches(self, matcher, components):
        composite = self._composite(components, "NOT")
        assert matcher.combine(composite, create_transaction("ANY"), {}) == 0.0

    def test_amount_conditions_use_magnitude(self, matcher, components):
        composite = self._composite(
            components, "OR",
            conditions=CompositeConditions(min_amount=Decimal("10"), max_amount=Decimal("50"))
        )
        results = self._results(components, (1.0, 0.0))

        assert matcher.combine(composite, create_transaction("ANY", amount=Decimal("-25.00")), results) == 1.0
        assert matcher.combine(composite, create_transaction("ANY", amount=Decimal("-5.00")), results) == 0.0
        assert matcher.combine(composite, create_transaction("ANY", amount=Decimal("75.00")), results) == 0.0

    def test_day_and_time_conditions(self, matcher, components):
        composite = self._composite(
            components, "OR",
            conditions=CompositeConditions(
                days_of_week=["Saturday", "sunday"],
                time_ranges=[TimeRange(start="18:00", end="23:00")]
            )
        )
        results = self._results(components, (1.0, 0.0))

        assert matcher.combine(composite, create_transaction("ANY", occurred_at=SATURDAY_EVENING), results) == 1.0
        assert matcher.combine(composite, create_transaction("ANY", occurred_at=TUESDAY_MORNING), results) == 0.0
        saturday_morning = datetime(2024, 6, 15, 9, 0, tzinfo=timezone.utc)
        assert matcher.combine(composite, create_transaction("ANY", occurred_at=saturday_morning), results) == 0.0

    def test_merchant_blacklist_is_normalized(self, matcher, components):
        composite = self._composite(
            components, "OR",
            conditions=CompositeConditions(merchant_blacklist=["Starbucks Reserve"])
        )
        results = self._results(components, (1.0, 0.0))

        assert matcher.combine(composite, create_transaction("STARBUCKS RESERVE #12"), results) == 0.0
        assert matcher.combine(composite, create_transaction("STARBUCKS"), results) == 1.0

    def test_cannot_match_without_component_results(self, matcher, components):
        composite = self._composite(components, "AND")
        with pytest.raises(PatternConfigurationError):
            matcher.match(composite, create_transaction("ANY"))

    def test_registry_evaluates_composites(self, normalizer, components):
        registry = MatcherRegistry.default(normalizer)
        composite = self._composite(components, "AND")
        txn = create_transaction("STARBUCKS", description="coffee")
        results = {p.pattern_id: registry.evaluate(p, txn) for p in components}

        result = registry.evaluate_composite(composite, txn, results)

        assert result.matched
        assert result.contribution == 1.0
        assert result.weighted_score == 1.5

    def test_registry_rejects_non_composite_matcher_for_composites(self, normalizer):
        class FakeComposite(KeywordMatcher):
            @property
            def pattern_type(self):
                return PatternType.COMPOSITE

        with pytest.raises(EngineConfigurationError):
            MatcherRegistry([
                MerchantMatcher(normalizer),
                KeywordMatcher(normalizer),
                RegexMatcher(),
                AmountRangeMatcher(),
                TimeWindowMatcher(),
                FakeComposite(normalizer),
            ])
