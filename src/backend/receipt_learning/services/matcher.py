"""
Similarity matching of a new receipt against learned patterns.

Three strategies are tried in a fixed order and the first one that yields a
candidate decides the result:

1. merchant - a stored pattern from the same detected merchant (85)
2. layout - date region, amount region and line-count bucket agree on at
   least two of three (75)
3. text_similarity - Jaccard similarity of key tokens >= 0.3 (60)

Nothing here is trained; given the same store contents the answer is always
the same.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from receipt_learning.models.receipt import (
    ExtractionOutcome,
    FieldValues,
    LearnedPattern,
    MatchResult,
    MatchStrategy,
    MerchantFingerprint,
)
from receipt_learning.services.pattern_store import PatternStore, as_utc
from receipt_learning.services.region_classifier import ReceiptFeatures, layout_complexity
from receipt_learning.utils.tokens import extract_key_tokens, jaccard

logger = logging.getLogger(__name__)


@dataclass
class RankedCandidate:
    """A pattern picked by one strategy, with its ranking score."""
    pattern: LearnedPattern
    strategy: MatchStrategy
    confidence: int
    similarity: Optional[float] = None


class MatchingEngine:
    """Find the most useful previously learned receipt for a new one."""

    STRATEGY_CONFIDENCE = {
        MatchStrategy.MERCHANT: 85,
        MatchStrategy.LAYOUT: 75,
        MatchStrategy.TEXT_SIMILARITY: 60,
    }
    MATCH_THRESHOLD = 70
    SIMILARITY_THRESHOLD = 0.3

    # Apply a suggestion over an existing value only above these confidences
    OVERRIDE_THRESHOLDS = {
        'amount': 80,
        'date': 85,
        'category': 75,
    }

    def __init__(self, store: PatternStore):
        self.store = store

    def match(
        self,
        ocr_text: str,
        features: ReceiptFeatures,
        merchant: Optional[MerchantFingerprint] = None
    ) -> MatchResult:
        """
        Rank stored patterns against this receipt.

        Args:
            ocr_text: Full OCR text of the new receipt
            features: Layout signature from the region classifier
            merchant: Detected merchant, if any

        Returns:
            MatchResult; strategy `none` with zero confidence when nothing fits
        """
        tokens = extract_key_tokens(ocr_text)
        candidates = self.store.find_candidates(
            merchant.name if merchant else None,
            tokens
        )

        if not candidates:
            logger.debug("No learned patterns to match against")
            return MatchResult.no_match()

        best = (
            self._merchant_match(candidates, merchant)
            or self._layout_match(candidates, features)
            or self._text_match(candidates, tokens)
        )

        if best is None:
            logger.debug("No learned pattern matched", extra={
                "candidates": len(candidates)
            })
            return MatchResult.no_match()

        result = MatchResult(
            is_match=best.confidence >= self.MATCH_THRESHOLD,
            confidence=best.confidence,
            matched_pattern=best.pattern,
            strategy=best.strategy,
            suggested_fields=self._suggest_fields(best.pattern, features),
            similarity=best.similarity,
        )

        logger.info("Matched learned pattern", extra={
            "strategy": result.strategy.value,
            "confidence": result.confidence,
            "pattern_id": best.pattern.id,
            "candidates": len(candidates)
        })
        return result

    def _merchant_match(
        self,
        candidates: Sequence[LearnedPattern],
        merchant: Optional[MerchantFingerprint]
    ) -> Optional[RankedCandidate]:
        if merchant is None:
            return None

        same_merchant = [p for p in candidates if p.merchant_name == merchant.name]
        if not same_merchant:
            return None

        best = max(same_merchant, key=_reliability_key)
        return RankedCandidate(best, MatchStrategy.MERCHANT, self.STRATEGY_CONFIDENCE[MatchStrategy.MERCHANT])

    def _layout_match(
        self,
        candidates: Sequence[LearnedPattern],
        features: ReceiptFeatures
    ) -> Optional[RankedCandidate]:
        matching = [p for p in candidates if layout_agreement(p, features) >= 2]
        if not matching:
            return None

        # Uncorrected receipts are the more trustworthy layout examples
        best = max(
            matching,
            key=lambda p: (0.5 if p.was_corrected else 1.0,) + _reliability_key(p)
        )
        return RankedCandidate(best, MatchStrategy.LAYOUT, self.STRATEGY_CONFIDENCE[MatchStrategy.LAYOUT])

    def _text_match(
        self,
        candidates: Sequence[LearnedPattern],
        tokens: List[str]
    ) -> Optional[RankedCandidate]:
        current = set(tokens)
        if not current:
            return None

        scored: List[Tuple[float, LearnedPattern]] = []
        for pattern in candidates:
            similarity = jaccard(current, set(extract_key_tokens(pattern.ocr_text)))
            if similarity >= self.SIMILARITY_THRESHOLD:
                scored.append((similarity, pattern))

        if not scored:
            return None

        similarity, best = max(scored, key=lambda item: (item[0],) + _reliability_key(item[1]))
        return RankedCandidate(
            best,
            MatchStrategy.TEXT_SIMILARITY,
            self.STRATEGY_CONFIDENCE[MatchStrategy.TEXT_SIMILARITY],
            similarity=round(similarity, 4),
        )

    @staticmethod
    def _suggest_fields(pattern: LearnedPattern, features: ReceiptFeatures) -> FieldValues:
        """
        Field values worth reusing from the matched pattern.

        Amount and date are only suggested when this receipt prints them in
        exactly the region the pattern recorded.
        """
        reference = pattern.final_fields

        amount = None
        if features.amount_region is not None and features.amount_region == pattern.amount_region:
            amount = reference.amount

        date = None
        if features.date_region is not None and features.date_region == pattern.date_region:
            date = reference.date

        return FieldValues(
            amount=amount,
            date=date,
            category=reference.category,
            subcategory=reference.subcategory,
        )

    def apply_learned_rules(
        self,
        outcome: ExtractionOutcome,
        match: MatchResult,
        fill_only: bool = False
    ) -> ExtractionOutcome:
        """
        Fill or override outcome fields from a confident match.

        A suggestion fills a missing (or defaulted) field whenever the result is
        a match, and replaces an existing value only above the per-field
        confidence threshold. With fill_only, existing values are never replaced.
        """
        if not match.is_match or match.matched_pattern is None:
            return outcome

        suggested = match.suggested_fields
        updates = {}

        if suggested.amount is not None and (
            outcome.amount is None or self._may_override(match, 'amount', fill_only)
        ):
            updates['amount'] = suggested.amount
            updates['amount_strategy'] = 'learned_suggestion'

        date_missing = outcome.date is None or outcome.date_defaulted
        if suggested.date is not None and (
            date_missing or self._may_override(match, 'date', fill_only)
        ):
            updates['date'] = suggested.date
            updates['date_defaulted'] = False
            updates['date_strategy'] = 'learned_suggestion'

        if suggested.category is not None and (
            outcome.category is None or self._may_override(match, 'category', fill_only)
        ):
            updates['category'] = suggested.category
            updates['subcategory'] = suggested.subcategory

        if not updates:
            return outcome

        merged = {**outcome.model_dump(), **updates}
        updates['confidence'] = ExtractionOutcome.score(
            merged['amount'] is not None,
            merged['date'] is not None and not merged['date_defaulted'],
            merged['merchant'] is not None,
        )
        enhanced = outcome.model_copy(update=updates)

        logger.info("Applied learned rules", extra={
            "pattern_id": match.matched_pattern.id,
            "fields": sorted(updates)
        })
        return enhanced

    def _may_override(self, match: MatchResult, field: str, fill_only: bool) -> bool:
        return not fill_only and match.confidence > self.OVERRIDE_THRESHOLDS[field]


def layout_agreement(pattern: LearnedPattern, features: ReceiptFeatures) -> int:
    """How many of date region, amount region and complexity bucket agree."""
    agreement = 0
    if pattern.date_region is not None and pattern.date_region == features.date_region:
        agreement += 1
    if pattern.amount_region is not None and pattern.amount_region == features.amount_region:
        agreement += 1
    if layout_complexity(pattern.line_count) == features.complexity:
        agreement += 1
    return agreement


def _reliability_key(pattern: LearnedPattern) -> tuple:
    """Higher success rate first, then the newer pattern."""
    return (pattern.success_rate, as_utc(pattern.timestamp))
