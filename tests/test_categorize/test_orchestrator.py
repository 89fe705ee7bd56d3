"""Tests for the categorization orchestrator."""

import pytest

from expense_categorizer.categorize.orchestrator import (
    CategorizationResult,
    OrchestratorRegistry,
    build_orchestrator,
)
from expense_categorizer.config import Config
from expense_categorizer.database.models import CategorizationPattern, Category, Expense
from expense_categorizer.database.repository import Repository
from expense_categorizer.errors import (
    CircuitOpenError,
    ContractViolationError,
    TransientInfrastructureError,
)
from tests.conftest import FIXTURE_CONFIG_DIR, MIGRATIONS_DIR


@pytest.fixture
def repo():
    r = Repository(":memory:")
    r.apply_migrations(MIGRATIONS_DIR)
    for cid, name in [("coffee", "Coffee"), ("fuel", "Fuel"), ("groceries", "Groceries")]:
        r.insert_category(Category(name=name, id=cid))
    yield r
    r.close()


@pytest.fixture
def engine(repo):
    orchestrator = build_orchestrator(repo, Config(FIXTURE_CONFIG_DIR))
    yield orchestrator
    orchestrator.shutdown()


@pytest.fixture
def patterns(engine):
    store = engine.store
    store.create_pattern("coffee", "merchant", "starbucks", 2.0)
    store.create_pattern("fuel", "merchant", "shell", 2.0)
    store.create_pattern("groceries", "keyword", "supermarket", 1.0)
    return store


class TestCategorize:
    def test_exact_merchant_match(self, engine, patterns):
        result = engine.categorize({"merchant_name": "STARBUCKS #123"})
        assert result.category_id == "coffee"
        assert result.method == "pattern_match"
        assert result.confidence == 1.0
        assert result.category.name == "Coffee"
        assert result.patterns_used == ["merchant:starbucks"]
        assert result.successful()
        assert result.high_confidence()
        assert result.auto_applicable()

    def test_string_record(self, engine, patterns):
        assert engine.categorize("SHELL OIL 5531").category_id == "fuel"

    def test_fuzzy_merchant_match(self, engine, patterns):
        result = engine.categorize({"merchant_name": "Starbuks"})
        assert result.category_id == "coffee"
        assert result.method == "fuzzy_match"

    def test_raw_mode_needs_exact_case(self, engine):
        engine.store.create_pattern("coffee", "merchant", "Starbucks", 2.0)
        assert engine.categorize({"merchant_name": "STARBUCKS"}, normalize=False).category_id is None
        assert engine.categorize({"merchant_name": "STARBUCKS"}).category_id == "coffee"

    def test_no_patterns_is_no_match(self, engine):
        result = engine.categorize({"merchant_name": "Unknown Shop"})
        assert result.category_id is None
        assert result.method == "no_match"
        assert result.error is None
        assert not result.successful()

    def test_below_threshold_is_no_match_with_alternatives(self, engine):
        engine.store.create_pattern("coffee", "merchant", "starbucks", 0.5)
        result = engine.categorize({"merchant_name": "Starbucks"})
        assert result.category_id is None
        assert [(a.category_id, a.confidence) for a in result.alternatives] == [("coffee", 0.35)]

    def test_alternatives_ranked_and_capped(self, engine):
        store = engine.store
        store.create_pattern("coffee", "merchant", "starbucks", 2.0)
        store.create_pattern("fuel", "keyword", "coffee", 0.8)
        store.create_pattern("groceries", "keyword", "latte", 0.6)
        store.create_pattern("groceries", "keyword", "zzz", 0.6)
        result = engine.categorize({"merchant_name": "Starbucks", "description": "coffee latte"})
        assert result.category_id == "coffee"
        assert [a.category_id for a in result.alternatives] == ["fuel", "groceries"]
        assert result.alternatives[0].confidence == pytest.approx(0.56)

    def test_corroborating_patterns_raise_confidence(self, engine):
        engine.store.create_pattern("coffee", "merchant", "starbucks", 0.8)
        alone = engine.categorize({"merchant_name": "Starbucks"}).confidence
        engine.store.create_pattern("coffee", "keyword", "latte", 0.8)
        both = engine.categorize({"merchant_name": "Starbucks", "description": "latte"})
        assert both.confidence > alone
        assert set(both.patterns_used) == {"merchant:starbucks", "keyword:latte"}

    def test_composite_match(self, engine):
        store = engine.store
        base = store.create_pattern("coffee", "merchant", "starbucks", 0.5)
        store.create_composite("coffee", "small starbucks", "AND",
                               pattern_ids=[base.id], conditions={"max_amount": 10})
        result = engine.categorize({"merchant_name": "Starbucks", "amount": 4.5})
        assert result.category_id == "coffee"
        assert result.method == "composite_match"
        assert engine.categorize({"merchant_name": "Starbucks", "amount": 25}).category_id is None

    def test_scoped_patterns(self, engine):
        engine.store.create_pattern("coffee", "merchant", "corner", 2.0, scope_key="acct-1")
        assert engine.categorize({"merchant_name": "Corner", "scope_key": "acct-1"}).category_id == "coffee"
        assert engine.categorize({"merchant_name": "Corner", "scope_key": "acct-2"}).category_id is None

    def test_amount_only_record_is_valid(self, engine, patterns):
        result = engine.categorize({"amount": 12.0})
        assert result.error is None
        assert result.method == "no_match"

    def test_backtracking_regex_row_is_skipped(self, engine, repo):
        # inserted directly, so creation-time validation never saw it
        repo.insert_pattern(CategorizationPattern("coffee", "regex", r"^(a|a)+$", 2.0))
        result = engine.categorize({"description": "a" * 40 + "!"})
        assert result.category_id is None
        assert result.method == "no_match"

    def test_correlation_id(self, engine, patterns):
        assert engine.categorize("Shell", correlation_id="abc").correlation_id == "abc"
        assert len(engine.categorize("Shell").correlation_id) == 8


class TestPreferences:
    def test_preference_short_circuits_patterns(self, engine, patterns, repo):
        repo.record_preference_choice("acct-1", "merchant", "starbucks", "fuel", 10)
        result = engine.categorize({"merchant_name": "Starbucks", "scope_key": "acct-1"})
        assert result.category_id == "fuel"
        assert result.method == "user_preference"
        assert result.confidence == pytest.approx(0.25)

    def test_preference_confidence_grows_and_caps(self, engine, repo):
        for _ in range(12):
            repo.record_preference_choice("acct-1", "merchant", "starbucks", "coffee", 10)
        result = engine.categorize({"merchant_name": "Starbucks", "scope_key": "acct-1"})
        assert result.confidence == 1.0

    def test_other_scope_unaffected(self, engine, patterns, repo):
        repo.record_preference_choice("acct-1", "merchant", "starbucks", "fuel", 10)
        result = engine.categorize({"merchant_name": "Starbucks", "scope_key": "acct-2"})
        assert result.category_id == "coffee"


class TestWriteBack:
    def test_mapping_updated(self, engine, patterns):
        record = {"merchant_name": "Shell"}
        engine.categorize(record)
        assert record["category_id"] == "fuel"
        assert record["categorization_method"] == "pattern_match"

    def test_expense_persisted(self, engine, patterns, repo):
        expense = repo.insert_expense(Expense(amount=4.5, transaction_date="2026-03-11",
                                              merchant_name="Starbucks"))
        engine.categorize(expense)
        stored = repo.get_expense(expense.id)
        assert stored.category_id == "coffee"
        assert stored.confidence == 1.0
        assert stored.categorized_at is not None
        assert expense.category_id == "coffee"
        assert expense.categorized_at == stored.categorized_at

    def test_failed_save_leaves_expense_untouched(self, engine, patterns, repo, monkeypatch):
        expense = repo.insert_expense(Expense(amount=4.5, transaction_date="2026-03-11",
                                              merchant_name="Starbucks"))
        calls = []

        def down(exp):
            calls.append(exp)
            raise TransientInfrastructureError("database is locked")

        monkeypatch.setattr(repo, "update_expense_categorization", down)
        result = engine.categorize(expense)
        assert result.error_kind == "transient"
        # first attempt plus two retries
        assert len(calls) == 3
        assert calls[0] is not expense
        assert expense.category_id is None
        assert expense.confidence is None
        assert expense.categorization_method is None
        assert repo.get_expense(expense.id).category_id is None

    def test_no_match_leaves_record(self, engine):
        record = {"merchant_name": "Nothing"}
        engine.categorize(record)
        assert "category_id" not in record


class TestErrors:
    @pytest.mark.parametrize("record", [None, {}, {"merchant_name": "  "}, 42])
    def test_invalid_records(self, engine, record):
        result = engine.categorize(record)
        assert result.error_kind == "validation"
        assert result.error == "Invalid input"
        assert result.method == "error"

    def test_transient_error_reported(self, engine, patterns, monkeypatch):
        def down(*args):
            raise TransientInfrastructureError("database is locked")

        monkeypatch.setattr(engine.store.repo, "get_active_patterns_page", down)
        result = engine.categorize({"merchant_name": "Shell"})
        assert result.error_kind == "transient"
        assert result.error == "Database connection error"

    def test_database_circuit_opens(self, engine, patterns, monkeypatch):
        def down(*args):
            raise TransientInfrastructureError("database is locked")

        monkeypatch.setattr(engine.store.repo, "get_active_patterns_page", down)
        # database breaker threshold is 3 in the fixture config
        kinds = [engine.categorize({"merchant_name": "Shell"}).error_kind for _ in range(4)]
        assert kinds == ["transient", "transient", "transient", "circuit_open"]
        result = engine.categorize({"merchant_name": "Shell"})
        assert result.error == "Service temporarily unavailable"
        assert result.retry_after > 0
        assert engine.metrics()["circuit_breakers"]["database"] == "open"

    def test_unexpected_error(self, engine, patterns, monkeypatch):
        def explode(*args, **kwargs):
            raise RuntimeError("boom")

        monkeypatch.setattr(engine.matcher, "text_score", explode)
        result = engine.categorize({"merchant_name": "Shell"})
        assert result.error_kind == "unexpected"
        assert result.error == "Categorization failed"

    def test_shutdown_rejects_calls(self, engine):
        engine.shutdown()
        with pytest.raises(ContractViolationError):
            engine.categorize("Shell")
        with pytest.raises(ContractViolationError):
            engine.batch_categorize(["Shell"])

    def test_context_manager(self, repo):
        with build_orchestrator(repo) as engine:
            engine.categorize("Shell")
        with pytest.raises(ContractViolationError):
            engine.categorize("Shell")

    def test_requires_repository(self):
        with pytest.raises(ContractViolationError):
            build_orchestrator(None)


def _batch():
    merchants = ["Starbucks", "Shell", "Unknown", "Starbuks", "SHELL 12", None]
    records = []
    for i in range(25):
        merchant = merchants[i % len(merchants)]
        records.append({
            "merchant_name": merchant,
            "amount": float(i) if merchant else None,
            "description": "supermarket run" if i % 4 == 0 else None,
        })
    return records


def _summary(results):
    return [(r.category_id, round(r.confidence, 6), r.method, r.error_kind) for r in results]


class TestBatch:
    def test_empty(self, engine):
        assert engine.batch_categorize([]) == []

    def test_order_and_length_preserved(self, engine, patterns):
        results = engine.batch_categorize(["Shell", "Starbucks", None, "Unknown"])
        assert [r.category_id for r in results] == ["fuel", "coffee", None, None]
        assert results[2].error_kind == "validation"

    def test_parallel_matches_sequential(self, engine, patterns):
        sequential = engine.batch_categorize(_batch())
        parallel = engine.batch_categorize(_batch(), parallel=True, max_threads=4)
        assert len(parallel) == 25
        assert _summary(parallel) == _summary(sequential)

    def test_small_parallel_batch_runs_inline(self, engine, patterns):
        results = engine.batch_categorize(_batch()[:10], parallel=True)
        assert engine._executor is None
        assert len(results) == 10

    def test_correlation_ids_per_record(self, engine, patterns):
        results = engine.batch_categorize(["Shell", "Starbucks"], correlation_id="run")
        assert [r.correlation_id for r in results] == ["run-0", "run-1"]

    @pytest.mark.parametrize("parallel", [False, True])
    def test_categories_preloaded_once(self, engine, patterns, repo, monkeypatch, parallel):
        calls = {"find_all_by_ids": 0, "find_by_id": 0}

        def counting(name):
            real = getattr(repo, name)

            def spy(*args):
                calls[name] += 1
                return real(*args)
            return spy

        for name in calls:
            monkeypatch.setattr(repo, name, counting(name))
        records = [{"merchant_name": m} for m in ["Shell", "Starbucks"] * 10]
        results = engine.batch_categorize(records, parallel=parallel, max_threads=4)
        assert [r.category.name for r in results[:2]] == ["Fuel", "Coffee"]
        assert calls == {"find_all_by_ids": 1, "find_by_id": 0}

    def test_one_bad_record_does_not_fail_batch(self, engine, patterns):
        results = engine.batch_categorize(_batch(), parallel=True)
        assert sum(r.error_kind == "validation" for r in results) == 4
        assert sum(r.category_id == "coffee" for r in results) > 0


class TestFeedback:
    def test_record_feedback(self, engine, patterns):
        outcome = engine.record_feedback({"merchant_name": "Shell"}, "fuel", True)
        assert outcome.successful()
        pattern = engine.store.get(outcome.value.patterns_updated[0])
        assert pattern.success_count == 1

    def test_record_feedback_unknown_category(self, engine):
        outcome = engine.record_feedback({"merchant_name": "Shell"}, "nope", True)
        assert not outcome.successful()
        assert outcome.error_kind == "not_found"
        assert outcome.error == "Required data not found"

    def test_correction_then_preference_applies(self, engine, patterns):
        record = {"merchant_name": "Starbucks", "scope_key": "acct-1"}
        assert engine.categorize(dict(record)).category_id == "coffee"
        outcome = engine.learn_from_correction(record, "groceries", predicted_category_id="coffee")
        assert outcome.successful()
        result = engine.categorize(dict(record))
        assert result.category_id == "groceries"
        assert result.method == "user_preference"

    def test_correction_learns_pattern_without_scope(self, engine):
        engine.learn_from_correction({"merchant_name": "Blue Bottle"}, "coffee")
        result = engine.categorize({"merchant_name": "Blue Bottle Coffee"})
        assert result.category_id == "coffee"


class TestMetrics:
    def test_counts(self, engine, patterns):
        engine.categorize("Shell")
        engine.categorize("Unknown")
        engine.categorize(None)
        m = engine.metrics()
        assert (m["total"], m["successful"], m["no_match"], m["failed"]) == (3, 1, 1, 1)
        assert m["by_method"] == {"pattern_match": 1, "no_match": 1, "error": 1}
        assert m["avg_elapsed_ms"] >= 0

    def test_reset(self, engine, patterns):
        engine.categorize("Shell")
        engine.reset_metrics()
        assert engine.metrics()["total"] == 0


class TestResult:
    def test_failure_result(self):
        result = CategorizationResult.failure(CircuitOpenError("database", retry_after=3.0))
        assert result.error_kind == "circuit_open"
        assert result.retry_after == 3.0
        assert not result.high_confidence()

    def test_thresholds_on_result(self):
        result = CategorizationResult(category_id="coffee", confidence=0.84, method="pattern_match",
                                      high_confidence_threshold=0.99,
                                      auto_categorize_threshold=0.99)
        assert not result.auto_applicable()
        assert not result.high_confidence()
        assert result.auto_applicable(threshold=0.8)

    def test_configured_thresholds_reach_result(self, repo, tmp_path):
        (tmp_path / "engine.yaml").write_text(
            "categorization:\n"
            "  high_confidence_threshold: 0.99\n"
            "  auto_categorize_threshold: 0.95\n"
        )
        with build_orchestrator(repo, Config(tmp_path)) as engine:
            engine.store.create_pattern("coffee", "merchant", "starbucks", 2.0)
            result = engine.categorize({"merchant_name": "Starbucks"})
        assert result.high_confidence_threshold == 0.99
        assert result.auto_categorize_threshold == 0.95
        result.confidence = 0.9
        assert not result.auto_applicable()


class TestRegistry:
    def test_lifecycle(self, repo):
        registry = OrchestratorRegistry()
        a = registry.create("a", repo)
        registry.create("b", repo, Config(FIXTURE_CONFIG_DIR))
        assert registry.get("a") is a
        assert registry.names() == ["a", "b"]
        with pytest.raises(ContractViolationError):
            registry.create("a", repo)
        registry.shutdown("a")
        assert registry.get("a") is None
        with pytest.raises(ContractViolationError):
            a.categorize("Shell")
        registry.shutdown_all()
        assert registry.names() == []

    def test_instances_are_independent(self, repo):
        registry = OrchestratorRegistry()
        a = registry.create("a", repo)
        b = registry.create("b", repo)
        a.categorize("Shell")
        assert b.metrics()["total"] == 0
        assert a.breakers is not b.breakers
        registry.shutdown_all()
