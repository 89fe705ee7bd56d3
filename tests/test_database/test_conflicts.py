"""Tests for weighted conflict detection."""

import pytest

from expense_categorizer.config import Config
from expense_categorizer.database.conflicts import (
    Conflict,
    ConflictDetector,
    amount_score,
    date_score,
)
from expense_categorizer.database.models import Expense
from expense_categorizer.database.repository import Repository
from expense_categorizer.errors import ValidationError
from tests.conftest import FIXTURE_CONFIG_DIR, MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    yield r
    r.close()


@pytest.fixture
def detector(repo):
    return ConflictDetector(repo, Config(FIXTURE_CONFIG_DIR))


def _existing(repo, **kw) -> Expense:
    defaults = dict(
        amount=95000.0, transaction_date="2026-02-01", scope_key="acct-1",
        merchant_name="Supermercado Central", description="Compra semanal",
        currency="CRC",
    )
    defaults.update(kw)
    return repo.insert_expense(Expense(**defaults))


def _candidate(**kw) -> dict:
    defaults = dict(
        amount=95000.0, transaction_date="2026-02-01", scope_key="acct-1",
        merchant_name="Supermercado Central", description="Compra semanal",
        currency="CRC",
    )
    defaults.update(kw)
    return defaults


class TestStepScores:
    @pytest.mark.parametrize("new,expected", [
        (100.0, 100), (100.5, 90), (104.0, 70), (109.0, 50), (112.0, 0), (88.0, 0),
    ])
    def test_amount_steps(self, new, expected):
        assert amount_score(100.0, new) == expected

    def test_amount_twelve_percent_is_zero(self):
        assert amount_score(95000.0, 95000.0 * 1.12) == 0

    def test_amount_zero_existing(self):
        assert amount_score(0.0, 0.0) == 100
        assert amount_score(0.0, 5.0) == 0

    @pytest.mark.parametrize("new,expected", [
        ("2026-02-01", 100), ("2026-02-02", 80), ("2026-01-30", 60),
        ("2026-02-04", 40), ("2026-02-05", 0),
    ])
    def test_date_steps(self, new, expected):
        assert date_score("2026-02-01", new) == expected

    def test_date_ignores_time_of_day(self):
        assert date_score("2026-02-01T23:59:00", "2026-02-01T00:01:00") == 100

    def test_unparseable_date(self):
        assert date_score("garbage", "2026-02-01") == 0


class TestScore:
    def test_identical_scores_100(self, repo, detector):
        e = _existing(repo)
        total, breakdown = detector.score(e, _candidate())
        assert total == 100
        assert breakdown == {
            "amount": 35.0, "date": 25.0, "merchant": 20.0,
            "description": 10.0, "currency": 10.0,
        }

    def test_missing_fields_contribute_nothing(self, repo, detector):
        e = _existing(repo)
        total, breakdown = detector.score(e, {"amount": 95000.0})
        assert total == 35
        assert set(breakdown) == {"amount"}

    def test_text_score_is_case_insensitive(self, detector):
        assert detector.text_score("SHELL", "shell") == 100.0
        assert detector.text_score("", "shell") == 0.0


class TestDetectConflict:
    def test_exact_duplicate(self, repo, detector):
        e = _existing(repo)
        conflict = detector.detect_conflict(_candidate())
        assert isinstance(conflict, Conflict)
        assert conflict.existing_id == e.id
        assert conflict.conflict_type == "duplicate"
        assert conflict.similarity_score >= 90
        assert conflict.differences == {}

    def test_similar(self, repo, detector):
        _existing(repo)
        conflict = detector.detect_conflict(
            _candidate(transaction_date="2026-02-03", description="Otra cosa"),
        )
        # 35 + 15 + 20 + partial description + 10
        assert conflict.conflict_type == "similar"
        assert 70 <= conflict.similarity_score < 90
        assert "transaction_date" in conflict.differences

    def test_no_candidates(self, detector):
        assert detector.detect_conflict(_candidate()) is None

    def test_below_similar_floor_returns_none(self, repo, detector):
        _existing(repo)
        cand = _candidate(amount=95000.0 * 1.08, transaction_date="2026-02-04",
                          merchant_name="Gasolinera", description="Diesel")
        assert detector.detect_conflict(cand) is None

    def test_lower_floor_reports_updated(self, repo, detector):
        _existing(repo)
        cand = _candidate(amount=95000.0 * 1.08, transaction_date="2026-02-04",
                          merchant_name="Gasolinera", description="Diesel")
        conflict = detector.detect_conflict(cand, min_score=0)
        assert conflict.conflict_type == "updated"
        assert set(conflict.differences) >= {"amount", "merchant_name"}

    def test_category_only_difference_needs_review(self, detector):
        assert detector.classify(40.0, {"category_id": {"existing": "a", "new": "b"}}) == "needs_review"
        assert detector.classify(40.0, {}) == "needs_review"

    def test_ties_go_to_earliest_record(self, repo, detector):
        first = _existing(repo, created_at="2026-02-01T08:00:00+00:00")
        _existing(repo, created_at="2026-02-01T09:00:00+00:00")
        conflict = detector.detect_conflict(_candidate())
        assert conflict.existing_id == first.id

    def test_best_score_wins(self, repo, detector):
        _existing(repo, merchant_name="Otro", created_at="2026-02-01T08:00:00+00:00")
        best = _existing(repo, created_at="2026-02-01T09:00:00+00:00")
        conflict = detector.detect_conflict(_candidate())
        assert conflict.existing_id == best.id

    def test_other_scope_ignored(self, repo, detector):
        _existing(repo, scope_key="acct-2")
        assert detector.detect_conflict(_candidate()) is None

    def test_missing_amount_raises_validation(self, detector):
        with pytest.raises(ValidationError):
            detector.detect_conflict({"transaction_date": "2026-02-01"})

    def test_non_numeric_amount_raises_validation(self, detector):
        with pytest.raises(ValidationError) as exc:
            detector.detect_conflict(_candidate(amount="n/a"))
        assert exc.value.context["fields"] == ["amount"]

    def test_accepts_expense_objects(self, repo, detector):
        e = _existing(repo)
        incoming = Expense(amount=95000.0, transaction_date="2026-02-01",
                           scope_key="acct-1", merchant_name="Supermercado Central",
                           description="Compra semanal", currency="CRC")
        conflict = detector.detect_conflict(incoming)
        assert conflict.existing_id == e.id
        assert conflict.conflict_type == "duplicate"


class TestBatch:
    def test_only_conflicting_candidates_returned(self, repo, detector):
        _existing(repo)
        conflicts = detector.detect_conflicts_batch([
            _candidate(),
            _candidate(scope_key="acct-9"),
            {"merchant_name": "no amount"},
            _candidate(transaction_date="2026-02-02"),
        ])
        assert [c.conflict_type for c in conflicts] == ["duplicate", "duplicate"]

    def test_unparseable_amount_skipped(self, repo, detector):
        e = _existing(repo)
        conflicts = detector.detect_conflicts_batch([
            _candidate(amount="n/a"),
            _candidate(transaction_date="not a date"),
            _candidate(),
        ])
        assert [c.existing_id for c in conflicts] == [e.id]
