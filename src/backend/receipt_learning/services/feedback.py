"""
Feedback loop: turn finalized receipts into learned patterns and move
pattern success rates when users confirm or reject a suggestion.
"""

import datetime
import logging
import uuid
from decimal import Decimal
from typing import List, Optional, Sequence

from receipt_learning.models.receipt import (
    ExtractionOutcome,
    FeedbackQuestion,
    FeedbackSuggestion,
    FieldValues,
    LearnedPattern,
    OCRWord,
    Region,
    Role,
)
from receipt_learning.services.merchant_registry import MerchantRegistry
from receipt_learning.services.pattern_store import PatternStore
from receipt_learning.services.region_classifier import (
    RegionClassifier,
    RoleTaggedWord,
    count_lines,
    rank_dates,
)
from receipt_learning.utils.dates import parse_receipt_date

logger = logging.getLogger(__name__)


UNCORRECTED_CONFIDENCE = 95
CORRECTED_CONFIDENCE = 75
SHORT_LAYOUT_LINES = 5

REGION_OPTIONS = [region.value for region in Region]
STORE_TYPE_OPTIONS = [
    'grocery store', 'supermarket', 'gas station', 'restaurant', 'fast food',
    'pharmacy', 'bakery', 'coffee shop', 'convenience store', 'other'
]
DATE_FORMAT_OPTIONS = ['DD/MM/YYYY', 'MM/DD/YYYY', 'YYYY-MM-DD', 'DD.MM.YYYY', 'DD-MM-YYYY', 'other']


class FeedbackLoop:
    """Record finalized receipts and apply later confirmations."""

    def __init__(
        self,
        store: PatternStore,
        registry: MerchantRegistry,
        classifier: RegionClassifier
    ):
        self.store = store
        self.registry = registry
        self.classifier = classifier

    def finalize(
        self,
        ocr_text: str,
        words: Sequence[OCRWord],
        image_width: float,
        image_height: float,
        final_fields: FieldValues,
        user_corrections: Optional[FieldValues] = None
    ) -> LearnedPattern:
        """
        Save a finalized receipt as a new learned pattern.

        Every call appends, even for a receipt identical to one already
        stored. The date and amount regions are taken from the words that
        carry the final (corrected, if given) values; when a value is not on
        the receipt, the uncorrected field falls back to the layout signature.

        Args:
            ocr_text: Full OCR text
            words: OCR words of the receipt
            image_width: Image width in pixels (<= 0 to infer from the words)
            image_height: Image height in pixels (<= 0 to infer from the words)
            final_fields: Values the receipt was saved with
            user_corrections: Fields the user changed, if any

        Returns:
            The stored LearnedPattern
        """
        ocr_text = ocr_text or ''
        if user_corrections is not None and user_corrections.is_empty():
            user_corrections = None

        tagged = self.classifier.classify(words, image_width, image_height)
        features = self.classifier.features(tagged, ocr_text)
        effective = final_fields.overlay(user_corrections)
        corrected = user_corrections or FieldValues()

        date_region = _locate_date(tagged, effective.date, self.classifier.min_year)
        if date_region is None and corrected.date is None:
            date_region = features.date_region

        amount_region = _locate_amount(tagged, effective.amount)
        if amount_region is None and corrected.amount is None:
            amount_region = features.amount_region

        merchant = self.registry.detect(ocr_text or ' '.join(w.text for w in words))

        pattern = LearnedPattern(
            id=uuid.uuid4().hex,
            merchant_name=merchant.name if merchant else None,
            merchant_type=merchant.merchant_type if merchant else "Other",
            ocr_text=ocr_text,
            extracted_fields=final_fields,
            user_corrections=user_corrections,
            date_region=date_region,
            amount_region=amount_region,
            line_count=features.line_count,
            confidence=CORRECTED_CONFIDENCE if user_corrections else UNCORRECTED_CONFIDENCE,
            success_rate=1.0,
            timestamp=datetime.datetime.now(datetime.timezone.utc),
        )

        self.store.append(pattern)

        logger.info("Finalized receipt", extra={
            "pattern_id": pattern.id,
            "corrected": user_corrections is not None,
            "date_region": date_region.value if date_region else None,
            "amount_region": amount_region.value if amount_region else None
        })
        return pattern

    def report_outcome(
        self,
        pattern_id: str,
        was_correct: bool,
        corrections: Optional[FieldValues] = None
    ) -> Optional[LearnedPattern]:
        """
        Confirm or reject a pattern's suggestion.

        Returns:
            The updated pattern, or None if the id is unknown
        """
        return self.store.apply_feedback(pattern_id, was_correct, corrections)

    def feedback_questions(
        self,
        outcome: ExtractionOutcome,
        ocr_text: str
    ) -> List[FeedbackSuggestion]:
        """
        Questions to ask the user when extraction came back weak.

        Args:
            outcome: Extraction result for the receipt
            ocr_text: Full OCR text of the receipt

        Returns:
            Suggestions grouped by problem; empty when nothing is missing
        """
        suggestions = []

        if outcome.amount is None or outcome.confidence < 70:
            suggestions.append(_suggestion(
                'amount', 'missing_data',
                "I had trouble finding the total amount on this receipt.",
                [
                    ("Where is the total amount located on this receipt?", REGION_OPTIONS),
                    ("What type of store is this from?", STORE_TYPE_OPTIONS),
                    ("Is there a specific format this store uses for totals?", None),
                ]
            ))

        if outcome.date is None or outcome.date_defaulted:
            suggestions.append(_suggestion(
                'date', 'missing_data',
                "I couldn't find the date on this receipt.",
                [
                    ("Where is the date typically located on receipts from this store?", REGION_OPTIONS),
                    ("What format does this store use for dates?", DATE_FORMAT_OPTIONS),
                    ("Is the date near any specific text like \"Data:\" or similar?", None),
                ]
            ))

        if outcome.merchant is None:
            suggestions.append(_suggestion(
                'merchant', 'merchant_unknown',
                "I couldn't identify which store this receipt is from.",
                [
                    ("What store/merchant is this receipt from?", None),
                    ("What type of business is this?", STORE_TYPE_OPTIONS),
                    ("Do you see any specific store names or logos on the receipt?", None),
                ]
            ))

        if count_lines(ocr_text) < SHORT_LAYOUT_LINES:
            suggestions.append(_suggestion(
                'layout', 'layout_issue',
                "This receipt has an unusual layout that's hard for me to understand.",
                [
                    ("Is this a simple receipt with just one item?", None),
                    ("Is this receipt printed in a standard format or handwritten?", None),
                    ("Are there any special formatting elements I should know about?", None),
                ]
            ))

        return suggestions


def _suggestion(key: str, kind: str, message: str, questions) -> FeedbackSuggestion:
    return FeedbackSuggestion(
        type=kind,
        message=message,
        questions=[
            FeedbackQuestion(
                id=f"{key}_{i}",
                question=question,
                input_type='select' if options else 'text',
                options=options,
            )
            for i, (question, options) in enumerate(questions)
        ],
    )


def _locate_amount(tagged: Sequence[RoleTaggedWord], amount: Optional[Decimal]) -> Optional[Region]:
    """Region of the price word carrying `amount`, totals first."""
    if amount is None:
        return None
    carrying = [t for t in tagged if t.is_price and t.value == amount]
    if not carrying:
        return None
    carrying.sort(key=lambda t: (t.role != Role.PRICE_TOTAL, t.index))
    return carrying[0].region


def _locate_date(
    tagged: Sequence[RoleTaggedWord],
    date: Optional[datetime.date],
    min_year: int
) -> Optional[Region]:
    if date is None:
        return None
    for t in rank_dates(tagged):
        if parse_receipt_date(t.text, min_year=min_year) == date:
            return t.region
    return None
