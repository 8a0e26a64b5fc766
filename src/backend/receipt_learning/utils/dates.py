"""
Receipt date recognition and normalization.

Dates are read day-first, the way European tills print them:
DD.MM.YYYY, DD/MM/YY, and the ISO-like YYYY-MM-DD.
"""

import datetime
import re
from typing import Optional


DATE_TOKEN_PATTERNS = [
    re.compile(r'^\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}$'),
    re.compile(r'^\d{2,4}[/\-.]\d{1,2}[/\-.]\d{1,2}$'),
]

DATE_ANYWHERE_PATTERN = re.compile(
    r'\d{4}[/\-.]\d{1,2}[/\-.]\d{1,2}|\d{1,2}[/\-.]\d{1,2}[/\-.]\d{2,4}'
)

_DAY_FIRST = re.compile(r'(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{2,4})')
_YEAR_FIRST = re.compile(r'(\d{4})[/\-.](\d{1,2})[/\-.](\d{1,2})')


def is_date_token(text: str) -> bool:
    """True when the whole token looks like a date in either order."""
    stripped = text.strip()
    return any(pattern.match(stripped) for pattern in DATE_TOKEN_PATTERNS)


def _expand_year(year_str: str) -> int:
    year = int(year_str)
    if len(year_str) == 2:
        year += 2000 if year < 50 else 1900
    return year


def parse_receipt_date(
    date_text: str,
    min_year: int = 2000,
    max_year: Optional[int] = None
) -> Optional[datetime.date]:
    """
    Validate a date token and return it as a date.

    Range checks: day 1-31, month 1-12, min_year <= year <= max_year
    (default: next calendar year), and the day must exist in that month.

    Args:
        date_text: Token text such as "15.03.2024"
        min_year: Oldest acceptable year
        max_year: Newest acceptable year

    Returns:
        datetime.date, or None if the text does not hold a valid date
    """
    if not date_text:
        return None

    if max_year is None:
        max_year = datetime.date.today().year + 1

    match = _YEAR_FIRST.search(date_text)
    if match:
        year = int(match.group(1))
        month = int(match.group(2))
        day = int(match.group(3))
    else:
        match = _DAY_FIRST.search(date_text)
        if not match or len(match.group(3)) == 3:
            return None
        day = int(match.group(1))
        month = int(match.group(2))
        year = _expand_year(match.group(3))

    if not (1 <= day <= 31 and 1 <= month <= 12 and min_year <= year <= max_year):
        return None

    try:
        return datetime.date(year, month, day)
    except ValueError:
        return None


def format_iso(value: Optional[datetime.date]) -> Optional[str]:
    """YYYY-MM-DD string, or None."""
    return value.isoformat() if value is not None else None
