"""
Keyword tokens for text-similarity matching.
"""

import re
from typing import List, Set

from receipt_learning.utils.dates import DATE_TOKEN_PATTERNS
from receipt_learning.utils.money import PRICE_TOKEN_PATTERN

MAX_KEY_TOKENS = 20


def extract_key_tokens(text: str, limit: int = MAX_KEY_TOKENS) -> List[str]:
    """
    Lower-cased words longer than 3 characters, prices and dates removed.

    Only the first `limit` qualifying words are kept, in reading order.
    """
    tokens = []
    for word in re.split(r'\s+', (text or '').lower()):
        if len(word) <= 3:
            continue
        if PRICE_TOKEN_PATTERN.match(word):
            continue
        if any(pattern.match(word) for pattern in DATE_TOKEN_PATTERNS):
            continue
        tokens.append(word)
        if len(tokens) >= limit:
            break
    return tokens


def jaccard(tokens_a: Set[str], tokens_b: Set[str]) -> float:
    """|A ∩ B| / |A ∪ B|, 0.0 when both are empty."""
    union = tokens_a | tokens_b
    if not union:
        return 0.0
    return len(tokens_a & tokens_b) / len(union)
