"""Scoring Combiner: merge independent matches per category.

combined = max(scores) + boost * sum(other scores), clamped to [0, 1].
The strongest match dominates; each corroborating match adds a fraction
of its own score.
"""

from __future__ import annotations

from dataclasses import dataclass, field

DEFAULT_BOOST = 0.1


@dataclass
class MatchCandidate:
    category_id: str
    score: float
    method: str
    patterns_used: list[str] = field(default_factory=list)


def combine(candidates: list[MatchCandidate], boost: float = DEFAULT_BOOST) -> list[MatchCandidate]:
    """One candidate per category, best first.

    The combined candidate keeps the method of its strongest match and
    lists every contributing pattern, strongest first. Ties on score
    keep first-seen category order.
    """
    groups: dict[str, list[MatchCandidate]] = {}
    for c in candidates:
        groups.setdefault(c.category_id, []).append(c)

    combined: list[MatchCandidate] = []
    for category_id, group in groups.items():
        group.sort(key=lambda c: c.score, reverse=True)
        scores = [max(0.0, min(1.0, c.score)) for c in group]
        total = scores[0] + boost * sum(scores[1:])
        used: list[str] = []
        for c in group:
            for label in c.patterns_used:
                if label not in used:
                    used.append(label)
        combined.append(MatchCandidate(
            category_id=category_id,
            score=max(0.0, min(1.0, total)),
            method=group[0].method,
            patterns_used=used,
        ))

    combined.sort(key=lambda c: c.score, reverse=True)
    return combined
