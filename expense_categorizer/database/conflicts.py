"""Conflict detection for incoming expense records.

An incoming candidate is compared against existing expenses pre-filtered
by the repository (same scope, date within the window, amount within the
tolerance). Each pair gets a 0-100 weighted score:

  amount       35   exact 100, <=1% 90, <=5% 70, <=10% 50, else 0
  date         25   same day 100, 1 day 80, 2 days 60, 3 days 40, else 0
  merchant     20   edit-distance similarity of lower-cased names
  description  10   edit-distance similarity of lower-cased text
  currency     10   equal 100, else 0

Fields missing from the candidate contribute nothing.
Classification: >= 90 duplicate, >= 70 similar, below that "updated"
when any compared field differs, otherwise "needs_review".
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

from expense_categorizer.categorize.fuzzy import FuzzyMatcher
from expense_categorizer.categorize.records import get_field, record_amount, record_scope
from expense_categorizer.config import Config
from expense_categorizer.database.models import Expense
from expense_categorizer.database.repository import Repository
from expense_categorizer.errors import ValidationError

logger = logging.getLogger(__name__)

WEIGHTS = {
    "amount": 35.0,
    "date": 25.0,
    "merchant": 20.0,
    "description": 10.0,
    "currency": 10.0,
}

_DATE_STEPS = {0: 100, 1: 80, 2: 60, 3: 40}

# Fields reported in Conflict.differences
_DIFF_FIELDS = (
    "amount", "transaction_date", "merchant_name", "description", "currency", "category_id",
)


@dataclass
class Conflict:
    """Best-matching existing expense for one incoming candidate."""
    existing_id: str
    conflict_type: str  # "duplicate", "similar", "updated", "needs_review"
    similarity_score: float
    existing: Expense | None = None
    differences: dict[str, dict] = field(default_factory=dict)
    breakdown: dict[str, float] = field(default_factory=dict)


def amount_score(existing: float, new: float) -> int:
    diff = abs(existing - new)
    if diff == 0:
        return 100
    if existing == 0:
        return 0
    ratio = diff / abs(existing)
    if ratio <= 0.01:
        return 90
    if ratio <= 0.05:
        return 70
    if ratio <= 0.10:
        return 50
    return 0


def _as_date(value) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return datetime.fromisoformat(value.strip()[:10]).date()
        except ValueError:
            return None
    return None


def date_score(existing, new) -> int:
    a, b = _as_date(existing), _as_date(new)
    if a is None or b is None:
        return 0
    return _DATE_STEPS.get(abs((a - b).days), 0)


class ConflictDetector:
    def __init__(self, repo: Repository, config: Config | None = None,
                 fuzzy: FuzzyMatcher | None = None):
        self.repo = repo
        self.config = config or Config.defaults()
        self.fuzzy = fuzzy or FuzzyMatcher()
        settings = self.config.conflicts
        self.window_days = int(settings["window_days"])
        self.amount_tolerance = float(settings["amount_tolerance"])
        self.candidate_limit = int(settings["candidate_limit"])
        self.duplicate_threshold = float(settings["duplicate_threshold"])
        self.similar_threshold = float(settings["similar_threshold"])

    def text_score(self, existing: str | None, new: str | None) -> float:
        """0-100 edit-distance similarity after lower-casing."""
        a = (existing or "").lower()
        b = (new or "").lower()
        return round(self.fuzzy.similarity(a, b, normalize=False) * 100, 2)

    def score(self, existing: Expense, candidate) -> tuple[float, dict[str, float]]:
        """Weighted total and the per-field contribution."""
        breakdown: dict[str, float] = {}
        amount = record_amount(candidate)
        if amount is not None:
            breakdown["amount"] = amount_score(existing.amount, amount) * WEIGHTS["amount"] / 100
        when = get_field(candidate, "transaction_date")
        if when is not None:
            breakdown["date"] = date_score(existing.transaction_date, when) * WEIGHTS["date"] / 100
        merchant = get_field(candidate, "merchant_name")
        if merchant is not None:
            breakdown["merchant"] = (
                self.text_score(existing.merchant_name, str(merchant)) * WEIGHTS["merchant"] / 100
            )
        description = get_field(candidate, "description")
        if description is not None:
            breakdown["description"] = (
                self.text_score(existing.description, str(description))
                * WEIGHTS["description"] / 100
            )
        currency = get_field(candidate, "currency")
        if currency is not None:
            same = str(existing.currency) == str(currency)
            breakdown["currency"] = WEIGHTS["currency"] if same else 0.0
        return round(sum(breakdown.values()), 2), breakdown

    def differences(self, existing: Expense, candidate) -> dict[str, dict]:
        diffs: dict[str, dict] = {}
        for name in _DIFF_FIELDS:
            new = get_field(candidate, name)
            if new is None:
                continue
            old = getattr(existing, name)
            if name == "amount":
                changed = old is None or float(old) != record_amount(candidate)
            elif name == "transaction_date":
                changed = _as_date(old) != _as_date(new)
            else:
                changed = str(old or "") != str(new)
            if changed:
                diffs[name] = {"existing": old, "new": new}
        return diffs

    def classify(self, score: float, differences: dict) -> str:
        if score >= self.duplicate_threshold:
            return "duplicate"
        if score >= self.similar_threshold:
            return "similar"
        raw_changed = any(k != "category_id" for k in differences)
        return "updated" if raw_changed else "needs_review"

    def candidates_for(self, candidate) -> list[Expense]:
        amount = record_amount(candidate)
        when = _as_date(get_field(candidate, "transaction_date"))
        if amount is None or when is None:
            missing = []
            if amount is None:
                missing.append("amount")
            if when is None:
                missing.append("transaction_date")
            raise ValidationError(
                "Conflict detection needs a numeric amount and a valid transaction date",
                context={"fields": missing},
            )
        return self.repo.find_conflict_candidates(
            record_scope(candidate), when.isoformat(), amount,
            window_days=self.window_days,
            amount_tolerance=self.amount_tolerance,
            limit=self.candidate_limit,
            exclude_id=get_field(candidate, "id"),
        )

    def detect_conflict(self, candidate, min_score: float | None = None) -> Conflict | None:
        """Best conflict for one candidate, or None below ``min_score``.

        ``min_score`` defaults to the "similar" threshold. Candidates come
        back oldest first and only a strictly higher score replaces the
        current best, so ties go to the earliest existing record.
        """
        floor = self.similar_threshold if min_score is None else min_score
        best: Expense | None = None
        best_score = -1.0
        best_breakdown: dict[str, float] = {}
        for existing in self.candidates_for(candidate):
            total, breakdown = self.score(existing, candidate)
            if total > best_score:
                best, best_score, best_breakdown = existing, total, breakdown

        if best is None or best_score < floor:
            return None
        diffs = self.differences(best, candidate)
        conflict = Conflict(
            existing_id=best.id,
            conflict_type=self.classify(best_score, diffs),
            similarity_score=best_score,
            existing=best,
            differences=diffs,
            breakdown=best_breakdown,
        )
        logger.info("Conflict %s with expense %s (score %.1f)",
                    conflict.conflict_type, best.id, best_score)
        return conflict

    def detect_conflicts_batch(self, candidates, min_score: float | None = None) -> list[Conflict]:
        """Conflicts for the candidates that have one, in input order.

        Candidates without a usable amount or date are skipped with a warning.
        """
        conflicts: list[Conflict] = []
        for i, candidate in enumerate(candidates):
            try:
                conflict = self.detect_conflict(candidate, min_score)
            except ValidationError as e:
                logger.warning("Skipping candidate %d: %s", i, e)
                continue
            if conflict is not None:
                conflicts.append(conflict)
        return conflicts
