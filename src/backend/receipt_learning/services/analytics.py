"""
Read-only rollups over a user's learned patterns.

All rates are percentages of receipts saved without corrections. The
suggestion rules are fixed thresholds so the output is reproducible.
"""

import logging
from collections import Counter, defaultdict
from typing import Dict, List, Sequence

from receipt_learning.models.receipt import (
    AnalyticsSummary,
    ConfidenceTrendPoint,
    LayoutPatternStat,
    LearnedPattern,
    MerchantStat,
)
from receipt_learning.services.pattern_store import PatternStore, as_utc

logger = logging.getLogger(__name__)


UNKNOWN_MERCHANT = "Unknown"
TOP_LAYOUT_PATTERNS = 10
TOP_MERCHANTS = 5

HIGH_CORRECTION_RATE = 30.0
LOW_AVERAGE_CONFIDENCE = 70.0
TYPE_CORRECTION_RATE = 50.0
TYPE_MIN_RECEIPTS = 3


def _success_percent(patterns: Sequence[LearnedPattern]) -> float:
    if not patterns:
        return 0.0
    successful = sum(1 for p in patterns if not p.was_corrected)
    return round(successful / len(patterns) * 100, 2)


class AnalyticsAggregator:
    """Compute an AnalyticsSummary from a pattern store snapshot."""

    def __init__(self, store: PatternStore):
        self.store = store

    def summary(self) -> AnalyticsSummary:
        patterns = self.store.snapshot()

        if not patterns:
            return AnalyticsSummary(next_steps=self._next_steps(0, 0.0))

        total = len(patterns)
        success_rate = _success_percent(patterns)
        average_confidence = round(sum(p.confidence for p in patterns) / total, 2)
        layout_patterns = self._layout_patterns(patterns)

        summary = AnalyticsSummary(
            total_patterns=total,
            success_rate=success_rate,
            average_confidence=average_confidence,
            average_success_rate=round(sum(p.success_rate for p in patterns) / total, 4),
            merchant_distribution=dict(Counter(p.merchant_name or UNKNOWN_MERCHANT for p in patterns)),
            type_distribution=dict(Counter(p.merchant_type for p in patterns)),
            layout_patterns=layout_patterns,
            confidence_trend=self._confidence_trend(patterns),
            top_merchants=self._top_merchants(patterns),
            improvement_suggestions=self._improvement_suggestions(patterns, success_rate, average_confidence),
            focus_areas=self._focus_areas(success_rate, average_confidence, layout_patterns),
            next_steps=self._next_steps(total, success_rate),
        )

        logger.debug("Computed pattern analytics", extra={
            "user_id": self.store.user_id,
            "total_patterns": total,
            "success_rate": success_rate
        })
        return summary

    @staticmethod
    def _layout_patterns(patterns: Sequence[LearnedPattern]) -> List[LayoutPatternStat]:
        groups: Dict[tuple, List[LearnedPattern]] = defaultdict(list)
        for p in patterns:
            key = (
                p.merchant_type,
                p.date_region.value if p.date_region else "unknown",
                p.amount_region.value if p.amount_region else "unknown",
            )
            groups[key].append(p)

        stats = [
            LayoutPatternStat(
                pattern="-".join(key),
                merchant_type=key[0],
                count=len(members),
                success_rate=_success_percent(members),
            )
            for key, members in groups.items()
        ]
        stats.sort(key=lambda s: (-s.count, s.pattern))
        return stats[:TOP_LAYOUT_PATTERNS]

    @staticmethod
    def _confidence_trend(patterns: Sequence[LearnedPattern]) -> List[ConfidenceTrendPoint]:
        months: Dict[str, List[int]] = defaultdict(list)
        for p in patterns:
            months[as_utc(p.timestamp).strftime("%Y-%m")].append(p.confidence)

        return [
            ConfidenceTrendPoint(
                month=month,
                average_confidence=round(sum(values) / len(values), 2),
                count=len(values),
            )
            for month, values in sorted(months.items())
        ]

    @staticmethod
    def _top_merchants(patterns: Sequence[LearnedPattern]) -> List[MerchantStat]:
        groups: Dict[str, List[LearnedPattern]] = defaultdict(list)
        for p in patterns:
            if p.merchant_name:
                groups[p.merchant_name].append(p)

        stats = [
            MerchantStat(name=name, count=len(members), success_rate=_success_percent(members))
            for name, members in groups.items()
        ]
        stats.sort(key=lambda s: (-s.count, s.name))
        return stats[:TOP_MERCHANTS]

    @staticmethod
    def _improvement_suggestions(
        patterns: Sequence[LearnedPattern],
        success_rate: float,
        average_confidence: float
    ) -> List[str]:
        suggestions = []

        if 100 - success_rate > HIGH_CORRECTION_RATE:
            suggestions.append(
                "High correction rate detected. Consider improving image quality before scanning."
            )

        if average_confidence < LOW_AVERAGE_CONFIDENCE:
            suggestions.append(
                "Average confidence is low. Try better lighting and clearer photos."
            )

        by_type: Dict[str, List[LearnedPattern]] = defaultdict(list)
        for p in patterns:
            by_type[p.merchant_type].append(p)

        for merchant_type in sorted(by_type):
            members = by_type[merchant_type]
            correction_rate = 100 - _success_percent(members)
            if correction_rate > TYPE_CORRECTION_RATE and len(members) >= TYPE_MIN_RECEIPTS:
                suggestions.append(
                    f"{merchant_type} receipts often need corrections. "
                    f"Focus on improving detection for this type."
                )

        return suggestions

    @staticmethod
    def _focus_areas(
        success_rate: float,
        average_confidence: float,
        layout_patterns: Sequence[LayoutPatternStat]
    ) -> List[str]:
        areas = []

        if success_rate < 70:
            areas.append("OCR accuracy improvement")

        if average_confidence < 75:
            areas.append("Image preprocessing enhancement")

        problem_types = []
        for stat in layout_patterns:
            if stat.success_rate < 60 and stat.merchant_type not in problem_types:
                problem_types.append(stat.merchant_type)
        if problem_types:
            areas.append(f"Layout detection for: {', '.join(problem_types)}")

        return areas

    @staticmethod
    def _next_steps(total: int, success_rate: float) -> List[str]:
        steps = []

        if total < 50:
            steps.append("Collect more receipt samples for better matching data")

        if success_rate < 80:
            steps.append("Add merchant-specific layout fingerprints")
            steps.append("Review corrected receipts for recurring layout problems")

        return steps
