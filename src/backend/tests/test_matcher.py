"""
Test suite for the matching engine.

Tests cover:
- MatchResult invariants (is_match iff confidence >= 70, none => 0)
- Strategy priority: merchant, layout, text similarity
- Tie-breaking by success rate, recency and correction state
- Field suggestions only for exactly matching regions
- Applying learned suggestions to an extraction outcome
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from receipt_learning.models.receipt import (
    ExtractionOutcome,
    FieldValues,
    LearnedPattern,
    MatchResult,
    MatchStrategy,
    Region,
)
from receipt_learning.services.matcher import MatchingEngine, layout_agreement
from receipt_learning.services.merchant_registry import MerchantRegistry
from receipt_learning.services.pattern_store import PatternStore
from receipt_learning.services.region_classifier import ReceiptFeatures
from receipt_learning.services.storage import InMemoryPatternRepository
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from pydantic import ValidationError
import pytest


BASE_TIME = datetime(2024, 3, 1, tzinfo=timezone.utc)
REGISTRY = MerchantRegistry()
LIDL = REGISTRY.get('Lidl')

FIELDS = FieldValues(
    amount=Decimal("45.50"),
    date=date(2024, 3, 15),
    category="Groceries",
    subcategory="Supermarket",
)


def _pattern(pattern_id, minutes=0, **kwargs):
    defaults = dict(
        id=pattern_id,
        extracted_fields=FIELDS,
        date_region=Region.TOP_RIGHT,
        amount_region=Region.BOTTOM_RIGHT,
        line_count=8,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
    )
    defaults.update(kwargs)
    return LearnedPattern(**defaults)


def _features(date_region=Region.TOP_RIGHT, amount_region=Region.BOTTOM_RIGHT, line_count=8):
    return ReceiptFeatures(date_region=date_region, amount_region=amount_region, line_count=line_count)


@pytest.fixture
def store():
    store = PatternStore("user-1", InMemoryPatternRepository())
    yield store
    store.close()


@pytest.fixture
def engine(store):
    return MatchingEngine(store)


class TestMatchResultInvariants:
    """The model refuses inconsistent results."""

    def test_no_match_defaults(self):
        result = MatchResult.no_match()
        assert result.strategy == MatchStrategy.NONE
        assert result.confidence == 0
        assert result.is_match is False

    def test_none_strategy_requires_zero_confidence(self):
        with pytest.raises(ValidationError):
            MatchResult(strategy=MatchStrategy.NONE, confidence=60)

    def test_is_match_follows_threshold(self):
        with pytest.raises(ValidationError):
            MatchResult(strategy=MatchStrategy.TEXT_SIMILARITY, confidence=60, is_match=True)
        with pytest.raises(ValidationError):
            MatchResult(strategy=MatchStrategy.LAYOUT, confidence=75, is_match=False)

    def test_every_strategy_result_is_consistent(self, engine, store):
        store.append(_pattern("p1", merchant_name="Lidl", ocr_text="lidl paine lapte"))

        for merchant, features, text in [
            (LIDL, _features(), "lidl"),
            (None, _features(), "x"),
            (None, _features(Region.TOP_LEFT, Region.TOP_LEFT, 40), "lidl paine lapte"),
            (None, _features(Region.TOP_LEFT, Region.TOP_LEFT, 40), "nothing alike here"),
        ]:
            result = engine.match(text, features, merchant)
            assert result.is_match == (result.confidence >= 70)
            if result.strategy == MatchStrategy.NONE:
                assert result.confidence == 0


class TestStrategies:
    """Strategies run in a fixed order; the first with a candidate wins."""

    def test_empty_store(self, engine):
        assert engine.match("lidl", _features(), LIDL) == MatchResult.no_match()

    def test_merchant_strategy(self, engine, store):
        store.append(_pattern("lidl", merchant_name="Lidl"))
        result = engine.match("LIDL", _features(), LIDL)

        assert result.strategy == MatchStrategy.MERCHANT
        assert result.confidence == 85
        assert result.is_match
        assert result.matched_pattern.id == "lidl"

    def test_merchant_prefers_highest_success_rate(self, engine, store):
        """Two Lidl patterns: the 0.9 one wins even though it is older."""
        store.append(_pattern("reliable", minutes=0, merchant_name="Lidl", success_rate=0.9))
        store.append(_pattern("shaky", minutes=5, merchant_name="Lidl", success_rate=0.6))

        result = engine.match("LIDL", _features(), LIDL)

        assert result.matched_pattern.id == "reliable"

    def test_merchant_tie_goes_to_newest(self, engine, store):
        store.append(_pattern("older", minutes=0, merchant_name="Lidl", success_rate=0.8))
        store.append(_pattern("newer", minutes=5, merchant_name="Lidl", success_rate=0.8))

        assert engine.match("LIDL", _features(), LIDL).matched_pattern.id == "newer"

    def test_merchant_beats_layout(self, engine, store):
        store.append(_pattern("layout-twin", minutes=10))
        store.append(_pattern("lidl", minutes=0, merchant_name="Lidl", date_region=Region.MIDDLE_LEFT,
                              amount_region=Region.MIDDLE_LEFT, line_count=40))

        result = engine.match("LIDL", _features(), LIDL)

        assert result.strategy == MatchStrategy.MERCHANT
        assert result.matched_pattern.id == "lidl"

    def test_layout_strategy_needs_two_of_three(self, engine, store):
        store.append(_pattern("one-of-three", date_region=Region.TOP_RIGHT,
                              amount_region=Region.MIDDLE_LEFT, line_count=40))
        assert engine.match("x", _features(), None).strategy == MatchStrategy.NONE

        store.append(_pattern("two-of-three", minutes=1, date_region=Region.TOP_RIGHT,
                              amount_region=Region.BOTTOM_RIGHT, line_count=40))
        result = engine.match("x", _features(), None)

        assert result.strategy == MatchStrategy.LAYOUT
        assert result.confidence == 75
        assert result.matched_pattern.id == "two-of-three"

    def test_layout_prefers_uncorrected(self, engine, store):
        store.append(_pattern("corrected", minutes=5, success_rate=1.0,
                              user_corrections=FieldValues(amount=Decimal("40.00"))))
        store.append(_pattern("clean", minutes=0, success_rate=0.5))

        assert engine.match("x", _features(), None).matched_pattern.id == "clean"

    def test_text_similarity(self, engine, store):
        store.append(_pattern("text", ocr_text="cafenea centrala espresso croissant",
                              date_region=None, amount_region=None, line_count=40))

        result = engine.match("cafenea centrala espresso", _features(line_count=3), None)

        assert result.strategy == MatchStrategy.TEXT_SIMILARITY
        assert result.confidence == 60
        assert result.is_match is False
        assert result.similarity == pytest.approx(0.75)

    def test_text_similarity_threshold(self, engine, store):
        store.append(_pattern("text", ocr_text="cafenea centrala espresso croissant",
                              date_region=None, amount_region=None, line_count=40))

        result = engine.match("cafenea benzina motorina lichid", _features(line_count=3), None)

        assert result.strategy == MatchStrategy.NONE

    def test_deterministic(self, engine, store):
        for i in range(5):
            store.append(_pattern(f"p{i}", minutes=i, success_rate=0.5 + i * 0.1))
        first = engine.match("x", _features(), None)
        assert engine.match("x", _features(), None) == first

    def test_layout_agreement(self):
        pattern = _pattern("p")
        assert layout_agreement(pattern, _features()) == 3
        assert layout_agreement(pattern, _features(line_count=30)) == 2
        assert layout_agreement(pattern, _features(Region.TOP_LEFT, Region.TOP_LEFT, 30)) == 0


class TestSuggestedFields:
    """Amount and date are suggested only for exactly matching regions."""

    def test_all_fields_when_regions_match(self, engine, store):
        store.append(_pattern("lidl", merchant_name="Lidl"))
        suggested = engine.match("LIDL", _features(), LIDL).suggested_fields
        assert suggested == FIELDS

    def test_region_mismatch_omits_field(self, engine, store):
        store.append(_pattern("lidl", merchant_name="Lidl"))
        suggested = engine.match("LIDL", _features(date_region=Region.BOTTOM_LEFT), LIDL).suggested_fields

        assert suggested.date is None
        assert suggested.amount == FIELDS.amount
        assert suggested.category == "Groceries"

    def test_corrections_take_precedence(self, engine, store):
        store.append(_pattern("lidl", merchant_name="Lidl",
                              user_corrections=FieldValues(amount=Decimal("50.00"))))
        suggested = engine.match("LIDL", _features(), LIDL).suggested_fields

        assert suggested.amount == Decimal("50.00")
        assert suggested.date == FIELDS.date


class TestApplyLearnedRules:
    """Suggestions fill gaps and override only above per-field thresholds."""

    def _merchant_match(self, engine, store):
        store.append(_pattern("lidl", merchant_name="Lidl"))
        return engine.match("LIDL", _features(), LIDL)

    def test_fills_missing_fields(self, engine, store):
        match = self._merchant_match(engine, store)
        outcome = ExtractionOutcome(merchant=LIDL, confidence=30)

        enhanced = engine.apply_learned_rules(outcome, match)

        assert enhanced.amount == Decimal("45.50")
        assert enhanced.date == date(2024, 3, 15)
        assert enhanced.category == "Groceries"
        assert enhanced.confidence == 100
        assert enhanced.amount_strategy == 'learned_suggestion'

    def test_replaces_defaulted_date(self, engine, store):
        match = self._merchant_match(engine, store)
        outcome = ExtractionOutcome(date=date(2030, 1, 1), date_defaulted=True)

        enhanced = engine.apply_learned_rules(outcome, match)

        assert enhanced.date == date(2024, 3, 15)
        assert enhanced.date_defaulted is False

    def test_override_thresholds(self, engine, store):
        """At 85: amount (>80) and category (>75) override, date (>85) does not."""
        match = self._merchant_match(engine, store)
        outcome = ExtractionOutcome(
            amount=Decimal("10.00"), date=date(2024, 1, 1), category="Other", confidence=70
        )

        enhanced = engine.apply_learned_rules(outcome, match)

        assert enhanced.amount == Decimal("45.50")
        assert enhanced.date == date(2024, 1, 1)
        assert enhanced.category == "Groceries"

    def test_fill_only_never_overrides(self, engine, store):
        match = self._merchant_match(engine, store)
        outcome = ExtractionOutcome(amount=Decimal("10.00"), category="Other", confidence=40)

        enhanced = engine.apply_learned_rules(outcome, match, fill_only=True)

        assert enhanced.amount == Decimal("10.00")
        assert enhanced.category == "Other"
        assert enhanced.date == date(2024, 3, 15)

    def test_non_match_is_ignored(self, engine):
        outcome = ExtractionOutcome()
        assert engine.apply_learned_rules(outcome, MatchResult.no_match()) is outcome
