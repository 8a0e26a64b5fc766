"""
Per-user receipt learning service.

Wires the region classifier, merchant registry, pattern store, matching
engine, extraction chain, feedback loop and analytics for one user. Route
handlers get a service from `get_learning_service()`, which builds each user's
store once and keeps the most recently used ones in memory.
"""

import logging
import threading
from collections import OrderedDict
from typing import List, Optional, Sequence, Tuple

from receipt_learning.config import settings
from receipt_learning.models.receipt import (
    AnalyticsSummary,
    ExtractionOutcome,
    FeedbackSuggestion,
    FieldValues,
    LearnedPattern,
    MatchResult,
    OCRResult,
    OCRWord,
)
from receipt_learning.services.analytics import AnalyticsAggregator
from receipt_learning.services.extractor import ExtractionChain
from receipt_learning.services.feedback import FeedbackLoop
from receipt_learning.services.matcher import MatchingEngine
from receipt_learning.services.merchant_registry import MerchantRegistry
from receipt_learning.services.pattern_store import PatternStore
from receipt_learning.services.region_classifier import RegionClassifier, describe_words
from receipt_learning.services.storage import PatternRepository, default_repository

logger = logging.getLogger(__name__)


class ReceiptLearningService:
    """Extraction, learning and analytics for a single user."""

    def __init__(
        self,
        store: PatternStore,
        registry: Optional[MerchantRegistry] = None,
        classifier: Optional[RegionClassifier] = None,
        chain: Optional[ExtractionChain] = None
    ):
        self.store = store
        self.registry = registry or MerchantRegistry()
        self.classifier = classifier or RegionClassifier(self.registry)
        self.chain = chain or ExtractionChain()
        self.matcher = MatchingEngine(store)
        self.feedback = FeedbackLoop(store, self.registry, self.classifier)
        self.analytics_aggregator = AnalyticsAggregator(store)

    @property
    def user_id(self) -> str:
        return self.store.user_id

    def extract(self, ocr: OCRResult) -> Tuple[ExtractionOutcome, MatchResult]:
        """
        Extract amount, date and merchant from one OCR result.

        Learned suggestions only fill fields the receipt itself did not
        yield; values read from this receipt are never replaced.

        Returns:
            (ExtractionOutcome, MatchResult)
        """
        tagged = self.classifier.classify(ocr.words, ocr.image_width, ocr.image_height)
        if logger.isEnabledFor(logging.DEBUG):
            logger.debug("Tagged words for user %s\n%s", self.user_id, describe_words(tagged))

        text = ocr.text or ''
        merchant = self.registry.detect(text if text.strip() else ' '.join(w.text for w in ocr.words))

        features = self.classifier.features(tagged, text)
        match = self.matcher.match(text, features, merchant)

        outcome = self.chain.extract(
            tagged,
            text,
            ocr.image_width,
            ocr.image_height,
            merchant=merchant,
            match=match,
        )
        outcome = self.matcher.apply_learned_rules(outcome, match, fill_only=True)

        if outcome.needs_manual_entry:
            logger.info("Extraction needs manual entry", extra={
                "user_id": self.user_id,
                "confidence": outcome.confidence,
                "ocr_failed": outcome.ocr_failed
            })

        return outcome, match

    def finalize(
        self,
        ocr_text: str,
        words: Sequence[OCRWord],
        image_width: float,
        image_height: float,
        final_fields: FieldValues,
        user_corrections: Optional[FieldValues] = None
    ) -> LearnedPattern:
        return self.feedback.finalize(
            ocr_text, words, image_width, image_height, final_fields, user_corrections
        )

    def report_outcome(
        self,
        pattern_id: str,
        was_correct: bool,
        corrections: Optional[FieldValues] = None
    ) -> Optional[LearnedPattern]:
        return self.feedback.report_outcome(pattern_id, was_correct, corrections)

    def feedback_questions(self, outcome: ExtractionOutcome, ocr_text: str) -> List[FeedbackSuggestion]:
        return self.feedback.feedback_questions(outcome, ocr_text)

    def analytics(self) -> AnalyticsSummary:
        return self.analytics_aggregator.summary()

    def close(self) -> None:
        self.store.close()


# Least recently used first
_services: "OrderedDict[str, ReceiptLearningService]" = OrderedDict()
_services_lock = threading.Lock()
_repository: Optional[PatternRepository] = None
_registry: Optional[MerchantRegistry] = None


def get_learning_service(user_id: str) -> ReceiptLearningService:
    """
    Return the user's service, loading their patterns on first use.

    At most `LEARNING_SERVICE_CACHE_SIZE` services are kept; the least
    recently used one is flushed and closed to make room.
    """
    global _repository, _registry

    evicted = []
    with _services_lock:
        service = _services.get(user_id)
        if service is not None:
            _services.move_to_end(user_id)
        else:
            if _repository is None:
                _repository = default_repository()
            if _registry is None:
                _registry = MerchantRegistry()

            service = ReceiptLearningService(PatternStore(user_id, _repository), registry=_registry)
            _services[user_id] = service
            logger.info("Created learning service", extra={"user_id": user_id})

            while len(_services) > max(settings.LEARNING_SERVICE_CACHE_SIZE, 1):
                _, oldest = _services.popitem(last=False)
                evicted.append(oldest)

    if evicted:
        logger.info("Evicting learning services", extra={
            "user_ids": [s.user_id for s in evicted]
        })
        _close_services(evicted)

    return service


def shutdown_learning_services() -> None:
    """Flush pending writes for every user and drop the cache."""
    global _repository

    with _services_lock:
        services = list(_services.values())
        _services.clear()
        _repository = None

    _close_services(services)


def _close_services(services: List[ReceiptLearningService]) -> None:
    for service in services:
        try:
            service.close()
        except Exception as e:
            logger.error("Error closing learning service", extra={
                "user_id": service.user_id,
                "error": str(e)
            }, exc_info=True)
