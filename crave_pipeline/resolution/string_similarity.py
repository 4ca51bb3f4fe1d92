"""
String similarity for tier-3 entity resolution.

Two measures are combined:
- Bigram Dice coefficient on normalized names, used as the confidence score
- Levenshtein edit distance (jellyfish), used as a hard gate so that long
  names sharing many bigrams are not merged when they differ substantially

A candidate matches when dice >= threshold and distance <= max_edit_distance.
"""

import unicodedata
from collections import Counter
from dataclasses import dataclass

import jellyfish


def normalize_for_comparison(text: str) -> str:
    """
    Normalize text for exact lookup and similarity comparison.

    Applies:
    - Case folding (ß -> ss, final sigma -> sigma)
    - Unicode normalization (NFKD)
    - Accent/diacritic removal
    - Whitespace collapse
    - Leading/trailing whitespace removal

    Args:
        text: Text to normalize

    Returns:
        Normalized text string
    """
    if not text:
        return ""

    normalized = text.casefold().strip()

    normalized = unicodedata.normalize("NFKD", normalized)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))

    normalized = " ".join(normalized.split())

    return normalized


def _bigrams(text: str) -> Counter:
    return Counter(text[i : i + 2] for i in range(len(text) - 1))


def dice_coefficient(str_a: str, str_b: str) -> float:
    """
    Bigram Dice coefficient between two strings (0.0-1.0).

    Whitespace is ignored and bigrams are counted as a multiset.

    Example:
        >>> dice_coefficient("franklin bbq", "franklin bbq")
        1.0
        >>> round(dice_coefficient("franklin bbq", "franklins bbq"), 3)
        0.857
    """
    a = str_a.replace(" ", "")
    b = str_b.replace(" ", "")

    if a == b:
        return 1.0
    if len(a) < 2 or len(b) < 2:
        return 0.0

    bigrams_a = _bigrams(a)
    bigrams_b = _bigrams(b)
    overlap = sum((bigrams_a & bigrams_b).values())

    return (2.0 * overlap) / (len(a) + len(b) - 2)


def edit_distance(str_a: str, str_b: str) -> int:
    """Levenshtein distance between two strings."""
    return jellyfish.levenshtein_distance(str_a, str_b)


@dataclass(frozen=True)
class FuzzyScore:
    """Similarity between a query name and one candidate."""

    candidate: str
    dice: float
    distance: int

    def accepted(self, threshold: float, max_edit_distance: int) -> bool:
        return self.dice >= threshold and self.distance <= max_edit_distance


def score_candidates(name: str, candidates: list[str]) -> list[FuzzyScore]:
    """Score name against every candidate, best first."""
    scores = [
        FuzzyScore(candidate=c, dice=dice_coefficient(name, c), distance=edit_distance(name, c))
        for c in candidates
    ]
    scores.sort(key=lambda s: (-s.dice, s.distance))
    return scores
