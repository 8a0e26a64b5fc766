"""
Spatial role tagging for receipt OCR words.

Every word gets a position on the receipt (a 3x3 grid cell and one of five
layout bands) and a role guessed from its text and its neighbours: a date,
a line-item price, the receipt total, a merchant keyword, boilerplate noise,
or nothing in particular.

Classification is a pure function of the words and the image size.
"""

import logging
import re
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from receipt_learning.config import settings
from receipt_learning.models.receipt import BBox, Band, OCRWord, Region, Role
from receipt_learning.services.merchant_registry import MerchantRegistry
from receipt_learning.utils.dates import is_date_token, parse_receipt_date
from receipt_learning.utils.money import is_price_token, parse_price

logger = logging.getLogger(__name__)


TOTAL_KEYWORD_PATTERN = re.compile(r'total|suma|plata')
NOISE_KEYWORDS = [
    'tva', 'subtotal', 'rest', 'bon fiscal', 'casa', 'operator',
    'nr bon', 'cod fiscal', 'reg com', 'cui', 'adresa'
]
TIME_PATTERN = re.compile(r'^\d{2}:\d{2}$')
FOUR_DIGIT_YEAR = re.compile(r'\d{4}')

# (x, y, width, height) as fractions of the image; later entries win on overlap
BAND_LAYOUT: Tuple[Tuple[Band, Tuple[float, float, float, float]], ...] = (
    (Band.TOP_LEFT, (0.0, 0.0, 0.5, 0.3)),
    (Band.TOP_RIGHT, (0.5, 0.0, 0.5, 0.3)),
    (Band.MIDDLE, (0.0, 0.3, 1.0, 0.4)),
    (Band.BOTTOM_LEFT, (0.0, 0.7, 0.5, 0.3)),
    (Band.BOTTOM_RIGHT, (0.5, 0.7, 0.5, 0.3)),
)

ROW_NAMES = ('top', 'middle', 'bottom')
COLUMN_NAMES = ('left', 'center', 'right')


@dataclass(frozen=True)
class RoleTaggedWord:
    """An OCR word with its inferred role and position."""
    word: OCRWord
    role: Role
    region: Region
    band: Band
    role_confidence: int
    index: int  # Position in the input sequence
    value: Optional[Decimal] = None  # Parsed price for price roles

    @property
    def text(self) -> str:
        return self.word.text

    @property
    def bbox(self) -> BBox:
        return self.word.bbox

    @property
    def is_price(self) -> bool:
        return self.role in (Role.PRICE_ITEM, Role.PRICE_TOTAL)


@dataclass(frozen=True)
class ReceiptFeatures:
    """Coarse layout signature of one receipt, used for layout matching."""
    date_region: Optional[Region]
    amount_region: Optional[Region]
    line_count: int

    @property
    def complexity(self) -> str:
        return layout_complexity(self.line_count)


def layout_complexity(line_count: int) -> str:
    """Bucket a line count: <=10 simple, <=20 medium, otherwise complex."""
    if line_count > 20:
        return 'complex'
    if line_count > 10:
        return 'medium'
    return 'simple'


def words_from_tesseract(bbox_data: Dict[str, List]) -> List[OCRWord]:
    """
    Convert pytesseract.image_to_data() output into OCRWords.

    Args:
        bbox_data: {'text': [...], 'left': [...], 'top': [...], 'width': [...],
                    'height': [...], 'conf': [...]}

    Returns:
        Words with blank text and negative confidence dropped
    """
    words: List[OCRWord] = []

    if not bbox_data or 'text' not in bbox_data:
        return words

    for i in range(len(bbox_data['text'])):
        text = str(bbox_data['text'][i]).strip()
        if not text:
            continue

        conf = float(bbox_data['conf'][i])
        if conf < 0:
            continue

        left = float(bbox_data['left'][i])
        top = float(bbox_data['top'][i])
        words.append(OCRWord(
            text=text,
            confidence=min(conf, 100.0),
            bbox=BBox(
                x0=left,
                y0=top,
                x1=left + float(bbox_data['width'][i]),
                y1=top + float(bbox_data['height'][i]),
            ),
        ))

    return words


def resolve_image_size(
    words: Sequence[OCRWord],
    image_width: float,
    image_height: float
) -> Tuple[float, float]:
    """Fall back to the words' extent when the caller has no image size."""
    if image_width <= 0:
        image_width = max((w.bbox.x1 for w in words), default=0) or 1.0
    if image_height <= 0:
        image_height = max((w.bbox.y1 for w in words), default=0) or 1.0
    return image_width, image_height


def normalized_center(bbox: BBox, image_width: float, image_height: float) -> Tuple[float, float]:
    cx, cy = bbox.center
    nx = min(max(cx / image_width, 0.0), 1.0)
    ny = min(max(cy / image_height, 0.0), 1.0)
    return nx, ny


def assign_region(bbox: BBox, image_width: float, image_height: float) -> Region:
    """3x3 grid cell containing the bbox center."""
    nx, ny = normalized_center(bbox, image_width, image_height)
    row = ROW_NAMES[min(int(ny * 3), 2)]
    column = COLUMN_NAMES[min(int(nx * 3), 2)]
    return Region(f"{row}-{column}")


def assign_band(bbox: BBox, image_width: float, image_height: float) -> Band:
    """Layout band containing the bbox center, `middle` when none does."""
    nx, ny = normalized_center(bbox, image_width, image_height)

    band = Band.MIDDLE
    for name, (x, y, width, height) in BAND_LAYOUT:
        if x <= nx <= x + width and y <= ny <= y + height:
            band = name
    return band


def group_rows(words: Sequence[OCRWord], tolerance: float = 10) -> List[List[OCRWord]]:
    """
    Group words into printed lines by their top edge.

    Returns:
        Rows sorted top to bottom, each row sorted left to right
    """
    rows: List[Tuple[float, List[OCRWord]]] = []

    for word in sorted(words, key=lambda w: (w.bbox.y0, w.bbox.x0)):
        for row_y, row_words in rows:
            if abs(row_y - word.bbox.y0) <= tolerance:
                row_words.append(word)
                break
        else:
            rows.append((word.bbox.y0, [word]))

    return [sorted(row_words, key=lambda w: w.bbox.x0) for _, row_words in rows]


def count_lines(ocr_text: str, words: Sequence[OCRWord] = ()) -> int:
    """Non-empty text lines, or printed rows when the text is not line-broken."""
    text_lines = len([line for line in (ocr_text or '').split('\n') if line.strip()])
    if text_lines > 1:
        return text_lines
    return max(text_lines, len(group_rows(words)))


class RegionClassifier:
    """Tag OCR words with a role and a receipt region."""

    def __init__(
        self,
        registry: MerchantRegistry,
        total_tolerance_px: float = settings.TOTAL_KEYWORD_TOLERANCE_PX,
        min_year: int = settings.MIN_RECEIPT_YEAR,
        max_amount: Decimal = Decimal(settings.MAX_REASONABLE_AMOUNT)
    ):
        self.registry = registry
        self.total_tolerance_px = total_tolerance_px
        self.min_year = min_year
        self.max_amount = Decimal(max_amount)

    def classify(
        self,
        words: Sequence[OCRWord],
        image_width: float,
        image_height: float
    ) -> List[RoleTaggedWord]:
        """
        Tag every word, keeping input order.

        Args:
            words: OCR words for one receipt
            image_width: Image width in pixels (<= 0 to infer from the words)
            image_height: Image height in pixels (<= 0 to infer from the words)

        Returns:
            One RoleTaggedWord per input word
        """
        if not words:
            return []

        image_width, image_height = resolve_image_size(words, image_width, image_height)

        tagged = []
        for index, word in enumerate(words):
            region = assign_region(word.bbox, image_width, image_height)
            band = assign_band(word.bbox, image_width, image_height)
            role, role_confidence, value = self._infer_role(word, band, words)

            tagged.append(RoleTaggedWord(
                word=word,
                role=role,
                region=region,
                band=band,
                role_confidence=role_confidence,
                index=index,
                value=value,
            ))

        logger.debug("Classified receipt words", extra={
            "word_count": len(tagged),
            "roles": {role.value: sum(1 for t in tagged if t.role == role) for role in Role}
        })

        return tagged

    def features(
        self,
        tagged: Sequence[RoleTaggedWord],
        ocr_text: str
    ) -> ReceiptFeatures:
        """
        Summarize where the date and the total sit on this receipt.

        The date region is taken from the best date token that validates;
        the amount region from the first total, else the largest price.
        Prices at or above `max_amount` are ignored, as in extraction.
        """
        date_region = None
        for date_word in rank_dates(tagged):
            if parse_receipt_date(date_word.text, min_year=self.min_year):
                date_region = date_word.region
                break

        amount_region = None
        prices = [t for t in tagged if t.is_price and t.value < self.max_amount]
        totals = [t for t in prices if t.role == Role.PRICE_TOTAL]
        if totals:
            amount_region = totals[0].region
        elif prices:
            amount_region = max(prices, key=lambda t: (t.value, -t.index)).region

        return ReceiptFeatures(
            date_region=date_region,
            amount_region=amount_region,
            line_count=count_lines(ocr_text, [t.word for t in tagged]),
        )

    def _infer_role(
        self,
        word: OCRWord,
        band: Band,
        all_words: Sequence[OCRWord]
    ) -> Tuple[Role, int, Optional[Decimal]]:
        text = word.text.strip()

        if is_date_token(text):
            return Role.DATE, self._date_confidence(text, band), None

        if is_price_token(text):
            value = parse_price(text)
            if value is not None:
                if self._has_total_keyword_left(word, all_words):
                    return Role.PRICE_TOTAL, 90, value
                return Role.PRICE_ITEM, 70, value

        merchant = self.registry.detect(text)
        if merchant:
            return Role.MERCHANT, merchant.confidence, None

        if self._is_noise(text):
            return Role.NOISE, 0, None

        return Role.UNCLASSIFIED, 0, None

    def _has_total_keyword_left(self, word: OCRWord, all_words: Sequence[OCRWord]) -> bool:
        """A total/suma/plata label on the same line, left of the price."""
        nearby = [
            other.text.lower()
            for other in all_words
            if other is not word
            and abs(other.bbox.y0 - word.bbox.y0) < self.total_tolerance_px
            and other.bbox.x1 < word.bbox.x0
            and 'subtotal' not in other.text.lower()
        ]
        return bool(TOTAL_KEYWORD_PATTERN.search(' '.join(nearby)))

    @staticmethod
    def _is_noise(text: str) -> bool:
        text_lower = text.lower()
        return (
            len(text) < 3
            or bool(TIME_PATTERN.match(text))
            or any(keyword in text_lower for keyword in NOISE_KEYWORDS)
        )

    @staticmethod
    def _date_confidence(text: str, band: Band) -> int:
        confidence = 60

        # Tills print dates in the header or the footer
        if band != Band.MIDDLE:
            confidence += 20

        if FOUR_DIGIT_YEAR.search(text):
            confidence += 15

        return min(confidence, 95)


def rank_dates(tagged: Sequence[RoleTaggedWord]) -> List[RoleTaggedWord]:
    """Date-role words, most confident first (OCR confidence breaks ties)."""
    dates = [t for t in tagged if t.role == Role.DATE]
    return sorted(dates, key=lambda t: (-t.role_confidence, -t.word.confidence, t.index))


def describe_words(tagged: Sequence[RoleTaggedWord], max_words: int = 50) -> str:
    """
    Text dump of tagged words and their positions, for debugging.

    Args:
        tagged: Classifier output
        max_words: Maximum number of words to list

    Returns:
        Multi-line string
    """
    lines = [f"Total words tagged: {len(tagged)}", "-" * 80]

    for t in tagged[:max_words]:
        lines.append(
            f"{t.index:3d}: '{t.text:20s}' @ ({t.bbox.x0:5.0f}, {t.bbox.y0:5.0f}) "
            f"{t.region.value:13s} {t.band.value:11s} {t.role.value:12s} conf={t.role_confidence}"
        )

    if len(tagged) > max_words:
        lines.append(f"... and {len(tagged) - max_words} more words")

    return "\n".join(lines)
