"""
Test suite for the merchant fingerprint registry.

Tests cover:
- Case-insensitive keyword detection, first match wins
- Lookup by name
- Extending returns a new registry and leaves the original alone
"""

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from receipt_learning.models.receipt import MerchantFingerprint, Region, VerticalBand
from receipt_learning.services.merchant_registry import DEFAULT_FINGERPRINTS, MerchantRegistry
import pytest


CORNER_SHOP = MerchantFingerprint(
    name='Corner Shop',
    keywords=frozenset({'corner shop'}),
    expected_date_region=Region.TOP_LEFT,
    expected_amount_region=VerticalBand.BOTTOM,
    merchant_type='Convenience',
)


@pytest.fixture
def registry():
    return MerchantRegistry()


class TestDetect:

    def test_case_insensitive(self, registry):
        assert registry.detect("S.C. LIDL ROMANIA S.C.S.").name == 'Lidl'
        assert registry.detect("benzinarie mol").name == 'MOL Gas Station'

    def test_first_fingerprint_wins(self, registry):
        # Lidl comes before Kaufland in the table
        assert registry.detect("kaufland lidl").name == 'Lidl'

    def test_no_match(self, registry):
        assert registry.detect("Some Unknown Store") is None
        assert registry.detect("") is None
        assert registry.detect(None) is None


class TestLookup:

    def test_get(self, registry):
        assert registry.get('OMV Petrom').category == 'Transport'
        assert registry.get('omv petrom') is None

    def test_default_table(self, registry):
        assert len(registry) == len(DEFAULT_FINGERPRINTS) == 8
        assert registry.fingerprints == DEFAULT_FINGERPRINTS


class TestExtended:

    def test_extended_is_a_new_registry(self, registry):
        bigger = registry.extended(CORNER_SHOP)

        assert len(bigger) == len(registry) + 1
        assert bigger.detect("CORNER SHOP SRL") == CORNER_SHOP
        assert registry.detect("CORNER SHOP SRL") is None
        assert registry.get('Corner Shop') is None

    def test_extended_keeps_existing_priority(self, registry):
        bigger = registry.extended(CORNER_SHOP)
        assert bigger.detect("lidl corner shop").name == 'Lidl'
