"""
Price parsing for receipt tokens.

Receipts mix separators depending on the till:
- Comma decimal: 45,50 or 1.234,56
- Dot decimal: 45.50 or 1,234.56
"""

from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional
import re


PRICE_TOKEN_PATTERN = re.compile(r'^\d+[.,]\d{2}$')
PRICE_ANYWHERE_PATTERN = re.compile(r'\d+[.,]\d{2}')

CENTS = Decimal('0.01')


class MoneyFormat(Enum):
    """Decimal separator convention of a price string."""
    DOT_DECIMAL = "DOT_DECIMAL"  # 1,234.56
    COMMA_DECIMAL = "COMMA_DECIMAL"  # 1.234,56


def is_price_token(text: str) -> bool:
    """True for a bare price like '45,50' or '12.99'."""
    return bool(PRICE_TOKEN_PATTERN.match(text.strip()))


def detect_money_format(amount_str: str) -> MoneyFormat:
    """
    Guess the decimal separator from the last separator in the string.

    A comma followed by exactly two trailing digits means comma decimal,
    anything else is read as dot decimal.
    """
    if re.search(r',\d{2}$', amount_str):
        return MoneyFormat.COMMA_DECIMAL
    return MoneyFormat.DOT_DECIMAL


def parse_price(
    amount_str: str,
    max_amount: Optional[Decimal] = None
) -> Optional[Decimal]:
    """
    Parse a receipt price into a positive Decimal with two places.

    Args:
        amount_str: Token text (currency symbols and codes are stripped)
        max_amount: Optional exclusive upper bound; larger values are
            treated as OCR misreads and rejected

    Returns:
        Decimal amount, or None when the text is not a positive price

    Examples:
        >>> parse_price("45,50")
        Decimal('45.50')
        >>> parse_price("1.234,56")
        Decimal('1234.56')
        >>> parse_price("0,00") is None
        True
    """
    if not amount_str or not isinstance(amount_str, str):
        return None

    cleaned = re.sub(r'[$£€¥]|\b(?:RON|LEI|EUR|USD)\b', '', amount_str, flags=re.IGNORECASE)
    cleaned = cleaned.strip().replace(' ', '')

    if not cleaned:
        return None

    if detect_money_format(cleaned) == MoneyFormat.COMMA_DECIMAL:
        cleaned = cleaned.replace('.', '').replace(',', '.')
    else:
        cleaned = cleaned.replace(',', '')

    try:
        value = Decimal(cleaned).quantize(CENTS)
    except (InvalidOperation, ValueError):
        return None

    if value <= 0:
        return None

    if max_amount is not None and value >= max_amount:
        return None

    return value
