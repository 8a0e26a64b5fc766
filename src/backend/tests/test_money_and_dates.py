"""
Test suite for price and date token parsing.

Tests cover:
- Comma and dot decimal prices, currency stripping, sanity limit
- Day-first dates, year-first dates, two-digit years
- Calendar and year range validation
- Key token extraction and Jaccard similarity
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from receipt_learning.utils.money import MoneyFormat, detect_money_format, is_price_token, parse_price
from receipt_learning.utils.dates import format_iso, is_date_token, parse_receipt_date
from receipt_learning.utils.tokens import extract_key_tokens, jaccard
from decimal import Decimal
import datetime
import pytest


class TestParsePrice:
    """Receipt price parsing."""

    @pytest.mark.parametrize("text,expected", [
        ("45,50", Decimal("45.50")),
        ("12.99", Decimal("12.99")),
        ("1.234,56", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        ("45,50 RON", Decimal("45.50")),
        ("€ 9,90", Decimal("9.90")),
    ])
    def test_valid_prices(self, text, expected):
        assert parse_price(text) == expected

    @pytest.mark.parametrize("text", ["", "0,00", "abc", "-"])
    def test_rejected(self, text):
        assert parse_price(text) is None

    def test_sanity_limit(self):
        assert parse_price("12000,00", max_amount=Decimal(10000)) is None
        assert parse_price("9999,99", max_amount=Decimal(10000)) == Decimal("9999.99")

    def test_money_format(self):
        assert detect_money_format("1.234,56") == MoneyFormat.COMMA_DECIMAL
        assert detect_money_format("1,234.56") == MoneyFormat.DOT_DECIMAL

    def test_price_token(self):
        assert is_price_token("45,50")
        assert is_price_token(" 7.00 ")
        assert not is_price_token("45,5")
        assert not is_price_token("15.03.2024")


class TestParseReceiptDate:
    """Date validation and normalization."""

    def test_day_first(self):
        assert parse_receipt_date("15.03.2024") == datetime.date(2024, 3, 15)
        assert parse_receipt_date("05/11/2023") == datetime.date(2023, 11, 5)

    def test_year_first(self):
        assert parse_receipt_date("2024-03-15") == datetime.date(2024, 3, 15)

    def test_two_digit_year(self):
        assert parse_receipt_date("15.03.24") == datetime.date(2024, 3, 15)

    def test_old_two_digit_year_is_out_of_range(self):
        """99 reads as 1999, before the minimum receipt year."""
        assert parse_receipt_date("15/03/99") is None

    @pytest.mark.parametrize("text", [
        "31.02.2024",   # no such day
        "15.13.2024",   # month out of range
        "32.01.2024",   # day out of range
        "15.03.1999",   # too old
        "15.03.202",    # three-digit year
        "not a date",
        "",
    ])
    def test_invalid(self, text):
        assert parse_receipt_date(text) is None

    def test_year_bounds(self):
        assert parse_receipt_date("15.03.2024", min_year=2025) is None
        assert parse_receipt_date("15.03.2024", max_year=2023) is None

    def test_far_future_rejected(self):
        future = datetime.date.today().year + 2
        assert parse_receipt_date(f"01.01.{future}") is None

    def test_date_token(self):
        assert is_date_token("15.03.2024")
        assert is_date_token("2024/03/15")
        assert not is_date_token("45,50")
        assert not is_date_token("Data: 15.03.2024")

    def test_format_iso(self):
        assert format_iso(datetime.date(2024, 3, 15)) == "2024-03-15"
        assert format_iso(None) is None


class TestKeyTokens:
    """Tokens used for text-similarity matching."""

    def test_filters_short_price_and_date_tokens(self):
        tokens = extract_key_tokens("Paine alba 4,50 TOTAL 15.03.2024 lapte")
        assert tokens == ["paine", "alba", "total", "lapte"]

    def test_limit(self):
        text = " ".join(f"word{i}" for i in range(30))
        assert len(extract_key_tokens(text)) == 20

    def test_jaccard(self):
        assert jaccard({"a", "b"}, {"b", "c"}) == pytest.approx(1 / 3)
        assert jaccard(set(), set()) == 0.0
        assert jaccard({"a"}, {"a"}) == 1.0
