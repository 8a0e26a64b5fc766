"""
Merchant fingerprint registry.

A fixed table of known store chains with the keywords that identify them
and where on the receipt they usually print the date and the total.
"""

import logging
from typing import Iterable, Optional, Tuple

from receipt_learning.models.receipt import MerchantFingerprint, Region, VerticalBand

logger = logging.getLogger(__name__)


DEFAULT_FINGERPRINTS: Tuple[MerchantFingerprint, ...] = (
    MerchantFingerprint(
        name='Lidl',
        keywords=frozenset({'lidl', 'lidl romania'}),
        expected_date_region=Region.BOTTOM_LEFT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-price',
        confidence=95,
        merchant_type='Supermarket',
        category='Groceries',
    ),
    MerchantFingerprint(
        name='Kaufland',
        keywords=frozenset({'kaufland', 'k-card'}),
        expected_date_region=Region.TOP_RIGHT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-qty-price',
        confidence=90,
        merchant_type='Supermarket',
        category='Groceries',
    ),
    MerchantFingerprint(
        name='Mega Image',
        keywords=frozenset({'mega image', 'megaimage'}),
        expected_date_region=Region.TOP_LEFT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-price',
        confidence=90,
        merchant_type='Supermarket',
        category='Groceries',
    ),
    MerchantFingerprint(
        name='Carrefour',
        keywords=frozenset({'carrefour'}),
        expected_date_region=Region.TOP_RIGHT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-qty-price',
        confidence=85,
        merchant_type='Supermarket',
        category='Groceries',
    ),
    MerchantFingerprint(
        name='Profi',
        keywords=frozenset({'profi rom food', 'profi'}),
        expected_date_region=Region.BOTTOM_LEFT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-qty-price',
        confidence=85,
        merchant_type='Supermarket',
        category='Groceries',
    ),
    MerchantFingerprint(
        name='MOL Gas Station',
        keywords=frozenset({'mol romania', 'benzinarie'}),
        expected_date_region=Region.MIDDLE_CENTER,
        expected_amount_region=VerticalBand.MIDDLE,
        items_format='name-price',
        confidence=85,
        merchant_type='Gas Station',
        category='Transport',
    ),
    MerchantFingerprint(
        name='OMV Petrom',
        keywords=frozenset({'omv', 'petrom'}),
        expected_date_region=Region.TOP_RIGHT,
        expected_amount_region=VerticalBand.MIDDLE,
        items_format='name-price',
        confidence=85,
        merchant_type='Gas Station',
        category='Transport',
    ),
    MerchantFingerprint(
        name='Bakery',
        keywords=frozenset({'brutarie', 'panificatie', 'bakery'}),
        expected_date_region=Region.TOP_RIGHT,
        expected_amount_region=VerticalBand.BOTTOM,
        items_format='name-price',
        confidence=75,
        merchant_type='Bakery',
        category='Groceries',
    ),
)


class MerchantRegistry:
    """Immutable lookup table of merchant fingerprints.

    Built once at startup and shared by reference. New merchants are added by
    constructing a new registry with `extended()`, never by mutating this one.
    """

    def __init__(self, fingerprints: Iterable[MerchantFingerprint] = DEFAULT_FINGERPRINTS):
        self._fingerprints: Tuple[MerchantFingerprint, ...] = tuple(fingerprints)
        # Keyword order inside a fingerprint is fixed so detection is reproducible
        self._keywords = tuple(
            (fingerprint, tuple(sorted(k.lower() for k in fingerprint.keywords)))
            for fingerprint in self._fingerprints
        )

    @property
    def fingerprints(self) -> Tuple[MerchantFingerprint, ...]:
        return self._fingerprints

    def __len__(self) -> int:
        return len(self._fingerprints)

    def detect(self, text: str) -> Optional[MerchantFingerprint]:
        """
        Find the first fingerprint with a keyword contained in the text.

        Args:
            text: OCR text (whole receipt or a single word), any case

        Returns:
            MerchantFingerprint if one matches, None otherwise
        """
        if not text:
            return None

        text_lower = text.lower()

        for fingerprint, keywords in self._keywords:
            for keyword in keywords:
                if keyword in text_lower:
                    return fingerprint

        return None

    def get(self, name: str) -> Optional[MerchantFingerprint]:
        """Look up a fingerprint by its exact name."""
        for fingerprint in self._fingerprints:
            if fingerprint.name == name:
                return fingerprint
        return None

    def extended(self, *fingerprints: MerchantFingerprint) -> "MerchantRegistry":
        """Return a new registry with extra fingerprints appended."""
        logger.info("Extending merchant registry", extra={
            "added": [f.name for f in fingerprints],
            "size": len(self._fingerprints) + len(fingerprints)
        })
        return MerchantRegistry(self._fingerprints + tuple(fingerprints))
