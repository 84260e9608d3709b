"""
MedGuard - Drug and Allergen Name Matching
Name comparison is a pluggable capability so a coded lookup (RxNorm,
SNOMED) can replace the string heuristics without touching the engine.
"""

from typing import Protocol


class NameMatcher(Protocol):
    """Decide whether a candidate name refers to a reference name"""

    def matches(self, candidate: str, reference: str) -> bool:
        ...


def _normalize(name: str) -> str:
    return (name or "").strip().lower()


class BidirectionalSubstringMatcher:
    """
    Match when either name contains the other, ignoring case

    Over-inclusive: "Penicillin" matches "Amoxicillin-Penicillin" and vice
    versa.
    Blank names never match.
    """

    def matches(self, candidate: str, reference: str) -> bool:
        a, b = _normalize(candidate), _normalize(reference)
        if not a or not b:
            return False
        return a in b or b in a


class ExactNameMatcher:
    """Case-insensitive equality"""

    def matches(self, candidate: str, reference: str) -> bool:
        a, b = _normalize(candidate), _normalize(reference)
        return bool(a) and a == b


class PatternContainsMatcher:
    """Candidate name contains the reference pattern (drug-class membership)"""

    def matches(self, candidate: str, reference: str) -> bool:
        a, b = _normalize(candidate), _normalize(reference)
        if not a or not b:
            return False
        return b in a
