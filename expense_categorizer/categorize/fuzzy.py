"""Edit-distance string similarity.

similarity = 1 - levenshtein(a, b) / max(len(a), len(b)), in [0, 1].
Normalization (case-fold + diacritic strip) is an explicit argument at
every call; with normalize=False the raw code points are compared.
"""

from __future__ import annotations

from dataclasses import dataclass

from rapidfuzz.distance import Levenshtein

from expense_categorizer.categorize.records import prepare_text

DEFAULT_MAX_LENGTH = 1000


@dataclass
class FuzzyResult:
    text: str
    score: float


class FuzzyMatcher:
    """Levenshtein similarity with inputs truncated to ``max_length``."""

    def __init__(self, max_length: int = DEFAULT_MAX_LENGTH):
        self.max_length = max_length

    def similarity(self, a: str | None, b: str | None, normalize: bool = True) -> float:
        left = prepare_text(a, normalize)[: self.max_length]
        right = prepare_text(b, normalize)[: self.max_length]
        if left == right:
            return 1.0
        if not left or not right:
            return 0.0
        distance = Levenshtein.distance(left, right)
        return 1.0 - distance / max(len(left), len(right))

    def match(self, query: str | None, candidates, normalize: bool = True) -> list[FuzzyResult]:
        """Score every candidate against query, best first.

        Zero scores are kept; thresholding is the caller's job. Ties keep
        the candidates' input order.
        """
        results = [
            FuzzyResult(text=c, score=self.similarity(query, c, normalize=normalize))
            for c in candidates
        ]
        results.sort(key=lambda r: r.score, reverse=True)
        return results
