"""
Pydantic models for OCR input, learned patterns and extraction results.
"""

import datetime
from decimal import Decimal
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator


class Region(str, Enum):
    """3x3 grid cell of the receipt image, from the normalized bbox center."""
    TOP_LEFT = "top-left"
    TOP_CENTER = "top-center"
    TOP_RIGHT = "top-right"
    MIDDLE_LEFT = "middle-left"
    MIDDLE_CENTER = "middle-center"
    MIDDLE_RIGHT = "middle-right"
    BOTTOM_LEFT = "bottom-left"
    BOTTOM_CENTER = "bottom-center"
    BOTTOM_RIGHT = "bottom-right"


class Band(str, Enum):
    """Five named layout bands used for role heuristics."""
    TOP_LEFT = "topLeft"
    TOP_RIGHT = "topRight"
    MIDDLE = "middle"
    BOTTOM_LEFT = "bottomLeft"
    BOTTOM_RIGHT = "bottomRight"


class VerticalBand(str, Enum):
    TOP = "top"
    MIDDLE = "middle"
    BOTTOM = "bottom"


class Role(str, Enum):
    DATE = "date"
    PRICE_ITEM = "price_item"
    PRICE_TOTAL = "price_total"
    MERCHANT = "merchant"
    NOISE = "noise"
    UNCLASSIFIED = "unclassified"


class MatchStrategy(str, Enum):
    MERCHANT = "merchant"
    LAYOUT = "layout"
    TEXT_SIMILARITY = "text_similarity"
    NONE = "none"


class BBox(BaseModel):
    """Pixel bounding box, (x0, y0) top-left and (x1, y1) bottom-right."""
    model_config = ConfigDict(frozen=True)

    x0: float
    y0: float
    x1: float
    y1: float

    @property
    def center(self) -> tuple:
        return ((self.x0 + self.x1) / 2, (self.y0 + self.y1) / 2)


class OCRWord(BaseModel):
    """A single recognized token from the OCR engine."""
    model_config = ConfigDict(frozen=True)

    text: str
    confidence: float = Field(default=0.0, ge=0, le=100)
    bbox: BBox


class OCRResult(BaseModel):
    """Everything the OCR collaborator hands us for one receipt image."""
    text: str = ""
    confidence: float = 0.0
    words: List[OCRWord] = Field(default_factory=list)
    image_width: float = 0
    image_height: float = 0


class FieldValues(BaseModel):
    """Extracted or corrected receipt fields; every field is optional."""
    model_config = ConfigDict(frozen=True)

    amount: Optional[Decimal] = None
    date: Optional[datetime.date] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (self.amount, self.date, self.category, self.subcategory)
        )

    def overlay(self, other: Optional["FieldValues"]) -> "FieldValues":
        """Return a copy where every non-null field of `other` wins."""
        if other is None:
            return self
        return FieldValues(
            amount=other.amount if other.amount is not None else self.amount,
            date=other.date if other.date is not None else self.date,
            category=other.category if other.category is not None else self.category,
            subcategory=other.subcategory if other.subcategory is not None else self.subcategory,
        )


class MerchantFingerprint(BaseModel):
    """Static description of a known store chain's receipts."""
    model_config = ConfigDict(frozen=True)

    name: str
    keywords: FrozenSet[str]
    expected_date_region: Region
    expected_amount_region: VerticalBand
    items_format: str = "name-price"
    confidence: int = Field(default=80, ge=0, le=100)
    merchant_type: str = "Other"
    category: Optional[str] = None


class LearnedPattern(BaseModel):
    """One previously finalized receipt, kept as a matching example."""
    model_config = ConfigDict(frozen=True)

    id: str
    merchant_name: Optional[str] = None
    merchant_type: str = "Other"
    ocr_text: str = ""
    extracted_fields: FieldValues = Field(default_factory=FieldValues)
    user_corrections: Optional[FieldValues] = None
    date_region: Optional[Region] = None
    amount_region: Optional[Region] = None
    line_count: int = 0
    confidence: int = Field(default=95, ge=0, le=100)
    success_rate: float = Field(default=1.0, ge=0.1, le=1.0)
    timestamp: datetime.datetime

    @property
    def was_corrected(self) -> bool:
        return self.user_corrections is not None and not self.user_corrections.is_empty()

    @property
    def final_fields(self) -> FieldValues:
        """Extracted fields with the user's corrections applied on top."""
        return self.extracted_fields.overlay(self.user_corrections)


class MatchResult(BaseModel):
    """Best stored pattern for a new receipt and the fields it suggests."""
    is_match: bool = False
    confidence: int = Field(default=0, ge=0, le=100)
    matched_pattern: Optional[LearnedPattern] = None
    strategy: MatchStrategy = MatchStrategy.NONE
    suggested_fields: FieldValues = Field(default_factory=FieldValues)
    similarity: Optional[float] = None

    @model_validator(mode="after")
    def _check_consistency(self):
        if self.strategy == MatchStrategy.NONE and self.confidence != 0:
            raise ValueError("a result without a strategy must have zero confidence")
        if self.is_match != (self.confidence >= 70):
            raise ValueError("is_match must be true exactly when confidence >= 70")
        return self

    @classmethod
    def no_match(cls) -> "MatchResult":
        return cls()


class ExtractionOutcome(BaseModel):
    """Final answer for one receipt."""
    amount: Optional[Decimal] = None
    date: Optional[datetime.date] = None
    date_defaulted: bool = False
    merchant: Optional[MerchantFingerprint] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    confidence: int = Field(default=0, ge=0, le=100)
    amount_strategy: Optional[str] = None
    date_strategy: Optional[str] = None
    ocr_failed: bool = False

    @staticmethod
    def score(amount_found: bool, date_found: bool, merchant_found: bool) -> int:
        return 40 * amount_found + 30 * date_found + 30 * merchant_found

    @property
    def needs_manual_entry(self) -> bool:
        return self.ocr_failed or self.amount is None or self.confidence < 70


class LayoutPatternStat(BaseModel):
    pattern: str  # <merchant type>-<date region>-<amount region>
    merchant_type: str
    count: int
    success_rate: float


class MerchantStat(BaseModel):
    name: str
    count: int
    success_rate: float


class ConfidenceTrendPoint(BaseModel):
    month: str
    average_confidence: float
    count: int


class AnalyticsSummary(BaseModel):
    """Read-only rollup over a user's learned patterns."""
    total_patterns: int = 0
    success_rate: float = 0.0
    average_confidence: float = 0.0
    average_success_rate: float = 0.0
    merchant_distribution: Dict[str, int] = Field(default_factory=dict)
    type_distribution: Dict[str, int] = Field(default_factory=dict)
    layout_patterns: List[LayoutPatternStat] = Field(default_factory=list)
    confidence_trend: List[ConfidenceTrendPoint] = Field(default_factory=list)
    top_merchants: List[MerchantStat] = Field(default_factory=list)
    improvement_suggestions: List[str] = Field(default_factory=list)
    focus_areas: List[str] = Field(default_factory=list)
    next_steps: List[str] = Field(default_factory=list)


class FeedbackQuestion(BaseModel):
    id: str
    question: str
    input_type: str = "text"  # text or select
    options: Optional[List[str]] = None


class FeedbackSuggestion(BaseModel):
    """A group of questions asked when extraction came back incomplete."""
    type: str  # missing_data, merchant_unknown or layout_issue
    message: str
    questions: List[FeedbackQuestion] = Field(default_factory=list)
