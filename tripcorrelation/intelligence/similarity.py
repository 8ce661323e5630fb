"""
Name similarity used by the customer matcher.

StringSimilarity is the injectable capability: similarity(a, b) returns a value
in [0, 1]. RapidFuzzSimilarity scores whole names, token subsets
("BHP Port Hedland" vs "BHP Billiton Port Hedland") and substrings ("BHP").
"""

import re
from typing import Optional

from rapidfuzz import fuzz

COMPANY_SUFFIXES = {'pty', 'ltd', 'limited', 'inc', 'co', 'the', 'plc', 'llc', 'corp'}

_PUNCT_RX = re.compile(r"[^\w\s]")
_SPACE_RX = re.compile(r"\s+")


def normalize_name(name: Optional[str]) -> str:
    s = (name or "").lower().replace('&', ' and ')
    s = _PUNCT_RX.sub(" ", s)
    tokens = [t for t in _SPACE_RX.split(s) if t and t not in COMPANY_SUFFIXES]
    return " ".join(tokens)


class StringSimilarity:
    def similarity(self, a: Optional[str], b: Optional[str]) -> float:
        raise NotImplementedError


class RapidFuzzSimilarity(StringSimilarity):
    MIN_PARTIAL_LENGTH = 3

    def similarity(self, a: Optional[str], b: Optional[str]) -> float:
        a_norm = normalize_name(a)
        b_norm = normalize_name(b)
        if not a_norm or not b_norm:
            return 0.0
        if a_norm == b_norm:
            return 1.0

        whole = fuzz.token_sort_ratio(a_norm, b_norm)
        subset = fuzz.token_set_ratio(a_norm, b_norm)
        partial = 0.0
        if min(len(a_norm), len(b_norm)) >= self.MIN_PARTIAL_LENGTH:
            partial = fuzz.partial_ratio(a_norm, b_norm)

        return min(1.0, max(whole, subset, partial) / 100.0)
