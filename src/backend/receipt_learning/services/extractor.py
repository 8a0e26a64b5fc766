"""
Field extraction with ordered fallback strategies.

Amount and date are each resolved by the first strategy that produces a
value:

Amount:
1. learned_region - largest price in the region a matched pattern recorded
2. merchant_region - largest price inside the merchant's expected window
3. total_keyword - first price labelled by a total/suma/plata keyword
4. largest_price - largest price below the sanity limit
5. text_scan - regex scan of the raw text when there are no words

Date:
1. learned_region - best date token in the matched pattern's date region
2. merchant_region - best date token in the merchant's expected region
3. best_date_token - highest role-confidence date token that validates
4. text_scan - first valid date anywhere in the raw text
5. defaulted - today, flagged as a default
"""

import datetime
import logging
from decimal import Decimal
from typing import Callable, Optional, Sequence, Tuple

from receipt_learning.config import settings
from receipt_learning.models.receipt import (
    ExtractionOutcome,
    MatchResult,
    MatchStrategy,
    MerchantFingerprint,
    Region,
    Role,
    VerticalBand,
)
from receipt_learning.services.region_classifier import (
    TOTAL_KEYWORD_PATTERN,
    RoleTaggedWord,
    normalized_center,
    rank_dates,
    resolve_image_size,
)
from receipt_learning.utils.dates import DATE_ANYWHERE_PATTERN, format_iso, parse_receipt_date
from receipt_learning.utils.money import PRICE_ANYWHERE_PATTERN, parse_price

logger = logging.getLogger(__name__)


# (x, y, width, height) as fractions of the image; totals print on the right
AMOUNT_WINDOWS = {
    VerticalBand.TOP: (0.5, 0.0, 0.5, 0.3),
    VerticalBand.MIDDLE: (0.5, 0.35, 0.5, 0.3),
    VerticalBand.BOTTOM: (0.5, 0.7, 0.5, 0.3),
}
AMOUNT_WINDOW_TOLERANCE = 0.1

LEARNED_REGION_STRATEGIES = (MatchStrategy.MERCHANT, MatchStrategy.LAYOUT)


class ExtractionChain:
    """Resolve amount and date for one receipt from classified words."""

    def __init__(
        self,
        max_amount: Decimal = Decimal(settings.MAX_REASONABLE_AMOUNT),
        min_year: int = settings.MIN_RECEIPT_YEAR
    ):
        self.max_amount = Decimal(max_amount)
        self.min_year = min_year

    def extract(
        self,
        tagged: Sequence[RoleTaggedWord],
        ocr_text: str,
        image_width: float = 0,
        image_height: float = 0,
        merchant: Optional[MerchantFingerprint] = None,
        match: Optional[MatchResult] = None,
        today: Optional[datetime.date] = None
    ) -> ExtractionOutcome:
        """
        Run both strategy chains and score the result.

        Args:
            tagged: Region classifier output for this receipt
            ocr_text: Full OCR text
            image_width: Image width in pixels (<= 0 to infer from the words)
            image_height: Image height in pixels (<= 0 to infer from the words)
            merchant: Detected merchant fingerprint, if any
            match: Matching engine result, if any
            today: Date used for the default (injectable for tests)

        Returns:
            ExtractionOutcome; never raises for malformed OCR input
        """
        ocr_text = ocr_text or ''
        today = today or datetime.date.today()
        ocr_failed = not tagged and not ocr_text.strip()

        if ocr_failed:
            logger.warning("OCR produced no words and no text, manual entry needed")

        image_width, image_height = resolve_image_size(
            [t.word for t in tagged], image_width, image_height
        )

        amount, amount_strategy = self._extract_amount(
            tagged, ocr_text, image_width, image_height, merchant, match
        )
        date, date_strategy = self._extract_date(tagged, ocr_text, merchant, match)

        date_defaulted = False
        if date is None and (ocr_failed or self._has_date_tokens(tagged, ocr_text)):
            date, date_strategy, date_defaulted = today, 'defaulted', True

        outcome = ExtractionOutcome(
            amount=amount,
            date=date,
            date_defaulted=date_defaulted,
            merchant=merchant,
            category=merchant.category if merchant else None,
            confidence=ExtractionOutcome.score(
                amount is not None,
                date is not None and not date_defaulted,
                merchant is not None,
            ),
            amount_strategy=amount_strategy,
            date_strategy=date_strategy,
            ocr_failed=ocr_failed,
        )

        logger.info("Extracted receipt fields", extra={
            "amount": str(amount) if amount is not None else None,
            "amount_strategy": amount_strategy,
            "date": format_iso(date),
            "date_strategy": date_strategy,
            "merchant": merchant.name if merchant else None,
            "confidence": outcome.confidence
        })
        return outcome

    # Amount

    def _extract_amount(
        self,
        tagged: Sequence[RoleTaggedWord],
        ocr_text: str,
        image_width: float,
        image_height: float,
        merchant: Optional[MerchantFingerprint],
        match: Optional[MatchResult]
    ) -> Tuple[Optional[Decimal], Optional[str]]:
        prices = [t for t in tagged if t.is_price and t.value < self.max_amount]

        learned_region = self._learned_region(match, 'amount_region')
        if learned_region is not None:
            amount = self._largest(prices, lambda t: t.region == learned_region)
            if amount is not None:
                return amount, 'learned_region'

        if merchant is not None:
            window = AMOUNT_WINDOWS[merchant.expected_amount_region]
            amount = self._largest(
                prices,
                lambda t: _in_window(t, window, image_width, image_height)
            )
            if amount is not None:
                return amount, 'merchant_region'

        for t in prices:
            if t.role == Role.PRICE_TOTAL:
                return t.value, 'total_keyword'

        amount = self._largest(prices)
        if amount is not None:
            return amount, 'largest_price'

        if not tagged:
            amount = self._scan_text_for_amount(ocr_text)
            if amount is not None:
                return amount, 'text_scan'

        return None, None

    @staticmethod
    def _largest(
        prices: Sequence[RoleTaggedWord],
        accept: Callable[[RoleTaggedWord], bool] = lambda t: True
    ) -> Optional[Decimal]:
        values = [t.value for t in prices if accept(t)]
        return max(values) if values else None

    def _scan_text_for_amount(self, ocr_text: str) -> Optional[Decimal]:
        """Price on a total line, else the largest price in the text."""
        largest = None
        for line in ocr_text.split('\n'):
            line_lower = line.lower()
            values = [
                v for v in (
                    parse_price(m.group(0), max_amount=self.max_amount)
                    for m in PRICE_ANYWHERE_PATTERN.finditer(line)
                )
                if v is not None
            ]
            if not values:
                continue
            if TOTAL_KEYWORD_PATTERN.search(line_lower) and 'subtotal' not in line_lower:
                return values[-1]
            line_max = max(values)
            if largest is None or line_max > largest:
                largest = line_max
        return largest

    # Date

    def _extract_date(
        self,
        tagged: Sequence[RoleTaggedWord],
        ocr_text: str,
        merchant: Optional[MerchantFingerprint],
        match: Optional[MatchResult]
    ) -> Tuple[Optional[datetime.date], Optional[str]]:
        ranked = rank_dates(tagged)

        learned_region = self._learned_region(match, 'date_region')
        if learned_region is not None:
            date = self._first_valid_date(ranked, learned_region)
            if date is not None:
                return date, 'learned_region'

        if merchant is not None:
            date = self._first_valid_date(ranked, merchant.expected_date_region)
            if date is not None:
                return date, 'merchant_region'

        date = self._first_valid_date(ranked)
        if date is not None:
            return date, 'best_date_token'

        for found in DATE_ANYWHERE_PATTERN.finditer(ocr_text):
            date = parse_receipt_date(found.group(0), min_year=self.min_year)
            if date is not None:
                return date, 'text_scan'

        return None, None

    def _first_valid_date(
        self,
        ranked: Sequence[RoleTaggedWord],
        region: Optional[Region] = None
    ) -> Optional[datetime.date]:
        for t in ranked:
            if region is not None and t.region != region:
                continue
            date = parse_receipt_date(t.text, min_year=self.min_year)
            if date is not None:
                return date
        return None

    @staticmethod
    def _has_date_tokens(tagged: Sequence[RoleTaggedWord], ocr_text: str) -> bool:
        return (
            any(t.role == Role.DATE for t in tagged)
            or DATE_ANYWHERE_PATTERN.search(ocr_text) is not None
        )

    @staticmethod
    def _learned_region(match: Optional[MatchResult], attribute: str) -> Optional[Region]:
        if match is None or match.matched_pattern is None:
            return None
        if match.strategy not in LEARNED_REGION_STRATEGIES:
            return None
        return getattr(match.matched_pattern, attribute)


def _in_window(
    word: RoleTaggedWord,
    window: Tuple[float, float, float, float],
    image_width: float,
    image_height: float
) -> bool:
    x, y, width, height = window
    nx, ny = normalized_center(word.bbox, image_width, image_height)
    tolerance = AMOUNT_WINDOW_TOLERANCE
    return (
        x - tolerance <= nx <= x + width + tolerance
        and y - tolerance <= ny <= y + height + tolerance
    )
