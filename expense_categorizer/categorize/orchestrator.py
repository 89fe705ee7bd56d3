"""Orchestrator: the public entry point of the categorization engine.

Resolution order for one record:
1. User preference for the record's scope + merchant (short-circuits)
2. Single-condition patterns and composite patterns
3. Combine per category, accept the best if it clears min_confidence
4. Write the decision back onto the record (and the expenses table when
   the record is a stored Expense)

Expected failures never raise out of categorize/batch_categorize/
record_feedback; they come back on the result as error + error_kind.
Only ContractViolationError propagates.
"""

from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from uuid import uuid4

from expense_categorizer.categorize.circuit_breaker import (
    CircuitBreakerRegistry,
    retry_with_backoff,
)
from expense_categorizer.categorize.fuzzy import FuzzyMatcher
from expense_categorizer.categorize.learner import PatternLearner, preference_context
from expense_categorizer.categorize.pattern_store import PatternStore
from expense_categorizer.categorize.patterns import (
    PatternMatcher,
    RegexGuard,
    clamp,
    composite_effective_confidence,
    effective_confidence,
)
from expense_categorizer.categorize.records import (
    extract_text,
    get_field,
    record_amount,
    record_scope,
    write_categorization,
)
from expense_categorizer.categorize.scoring import MatchCandidate, combine
from expense_categorizer.config import Config
from expense_categorizer.database.models import (
    CategorizationPattern,
    Category,
    CompositePattern,
    Expense,
    _now,
)
from expense_categorizer.database.repository import Repository
from expense_categorizer.errors import (
    CategorizationError,
    CircuitOpenError,
    ContractViolationError,
    NotFoundError,
    TransientInfrastructureError,
    UnexpectedError,
    ValidationError,
)

logger = logging.getLogger(__name__)

METHOD_PREFERENCE = "user_preference"
METHOD_PATTERN = "pattern_match"
METHOD_FUZZY = "fuzzy_match"
METHOD_COMPOSITE = "composite_match"
METHOD_NO_MATCH = "no_match"
METHOD_ERROR = "error"

_EXPENSE_RESULT_FIELDS = (
    "category_id", "confidence", "categorization_method", "categorized_at", "updated_at",
)


def new_correlation_id() -> str:
    return uuid4().hex[:8]


# ── Results ─────────────────────────────────────────────


@dataclass
class Alternative:
    category_id: str
    confidence: float


@dataclass
class CategorizationResult:
    """Outcome of categorizing a single record."""
    category_id: str | None
    confidence: float
    method: str
    alternatives: list[Alternative] = field(default_factory=list)
    patterns_used: list[str] = field(default_factory=list)
    category: Category | None = None
    error: str | None = None
    error_kind: str | None = None
    retry_after: float | None = None
    correlation_id: str | None = None
    elapsed_ms: float = 0.0
    # stamped by the orchestrator from the categorization config
    high_confidence_threshold: float = field(default=0.85, repr=False)
    auto_categorize_threshold: float = field(default=0.70, repr=False)

    def successful(self) -> bool:
        return self.category_id is not None and self.error is None

    def high_confidence(self, threshold: float | None = None) -> bool:
        if threshold is None:
            threshold = self.high_confidence_threshold
        return self.successful() and self.confidence >= threshold

    def auto_applicable(self, threshold: float | None = None) -> bool:
        if threshold is None:
            threshold = self.auto_categorize_threshold
        return self.successful() and self.confidence >= threshold

    @classmethod
    def no_match(cls, alternatives: list[Alternative] | None = None) -> CategorizationResult:
        return cls(category_id=None, confidence=0.0, method=METHOD_NO_MATCH,
                   alternatives=alternatives or [])

    @classmethod
    def failure(cls, error: CategorizationError) -> CategorizationResult:
        return cls(category_id=None, confidence=0.0, method=METHOD_ERROR,
                   error=error.user_message, error_kind=error.kind,
                   retry_after=error.retry_after)


@dataclass
class Outcome:
    """Success value or typed error for feedback/correction calls."""
    value: object = None
    error: str | None = None
    error_kind: str | None = None

    def successful(self) -> bool:
        return self.error is None


class BatchContext:
    """Lookups shared by the records of one batch call, then discarded."""

    def __init__(self):
        self.categories: dict[str, Category] = {}
        self.patterns: dict[str | None, list[CategorizationPattern]] = {}
        self.composites: dict[str | None, list[CompositePattern]] = {}
        self.components: dict[str, CategorizationPattern] = {}
        self.lock = threading.Lock()


# ── Orchestrator ────────────────────────────────────────


class Orchestrator:
    def __init__(
        self,
        store: PatternStore,
        matcher: PatternMatcher,
        breakers: CircuitBreakerRegistry,
        learner: PatternLearner | None = None,
        config: Config | None = None,
        categories: Repository | None = None,
    ):
        if store is None or matcher is None or breakers is None:
            raise ContractViolationError(
                "Orchestrator requires a pattern store, a matcher and a breaker registry"
            )
        self.store = store
        self.matcher = matcher
        self.breakers = breakers
        self.config = config or store.config
        self.repo = categories or store.repo
        self.learner = learner or PatternLearner(store, matcher, self.config)

        opts = self.config.categorization
        self.min_confidence = self.config.min_confidence
        self.high_threshold = float(opts["high_confidence_threshold"])
        self.auto_threshold = float(opts["auto_categorize_threshold"])
        self.max_alternatives = int(opts["max_alternatives"])
        self.boost = float(opts["corroboration_boost"])
        self.check_preferences = bool(opts["check_user_preferences"])
        self.auto_update = bool(opts["auto_update"])
        self.default_normalize = self.config.normalize
        self.min_weight, self.max_weight = self.config.weight_range
        self.min_observations = int(self.config.patterns["min_observations"])

        self._executor: ThreadPoolExecutor | None = None
        self._pool_size = max(1, int(self.config.batch["max_threads"]))
        self._closed = False
        self._lifecycle_lock = threading.Lock()
        self._metrics_lock = threading.Lock()
        self.reset_metrics()

    # ── Lifecycle ───────────────────────────────────────────

    def _ensure_open(self) -> None:
        if self._closed:
            raise ContractViolationError("Orchestrator has been shut down")

    def shutdown(self) -> None:
        """Release the worker pool. The instance rejects calls afterwards."""
        with self._lifecycle_lock:
            self._closed = True
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        logger.info("Orchestrator shut down")

    def __enter__(self) -> Orchestrator:
        return self

    def __exit__(self, *exc) -> None:
        self.shutdown()

    def _pool(self) -> ThreadPoolExecutor:
        with self._lifecycle_lock:
            self._ensure_open()
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._pool_size, thread_name_prefix="categorize",
                )
            return self._executor

    # ── Public operations ───────────────────────────────────

    def categorize(self, record: object, correlation_id: str | None = None,
                   normalize: bool | None = None) -> CategorizationResult:
        self._ensure_open()
        return self._categorize(record, correlation_id or new_correlation_id(),
                                normalize, None)

    def batch_categorize(
        self,
        records,
        parallel: bool = False,
        max_threads: int | None = None,
        correlation_id: str | None = None,
        normalize: bool | None = None,
    ) -> list[CategorizationResult]:
        """Categorize many records; results match input order and length.

        Parallel execution splits the batch into ``max_threads`` contiguous
        chunks (capped by the configured pool size) once it is larger than
        ``batch.parallel_threshold``.
        """
        self._ensure_open()
        records = list(records)
        if not records:
            return []
        base = correlation_id or new_correlation_id()
        context = self._preload(records, base)
        ids = [f"{base}-{i}" for i in range(len(records))]

        threshold = int(self.config.batch["parallel_threshold"])
        threads = min(max_threads or self._pool_size, self._pool_size)
        if not parallel or len(records) <= threshold or threads <= 1:
            return [
                self._categorize(r, cid, normalize, context)
                for r, cid in zip(records, ids)
            ]

        size = math.ceil(len(records) / threads)
        pool = self._pool()
        futures = [
            pool.submit(self._run_chunk, records[i : i + size], ids[i : i + size],
                        normalize, context)
            for i in range(0, len(records), size)
        ]
        logger.info("[%s] Batch of %d split into %d chunks", base, len(records), len(futures))
        results: list[CategorizationResult] = []
        for future in futures:
            results.extend(future.result())
        return results

    def record_feedback(self, record: object, category_id: str, was_correct: bool,
                        normalize: bool | None = None,
                        correlation_id: str | None = None) -> Outcome:
        self._ensure_open()
        cid = correlation_id or new_correlation_id()
        norm = self.default_normalize if normalize is None else normalize
        return self._guarded(cid, "record_feedback", lambda: self.learner.record_feedback(
            record, category_id, was_correct, normalize=norm,
        ))

    def learn_from_correction(self, record: object, correct_category_id: str,
                              predicted_category_id: str | None = None,
                              normalize: bool | None = None,
                              correlation_id: str | None = None) -> Outcome:
        self._ensure_open()
        cid = correlation_id or new_correlation_id()
        norm = self.default_normalize if normalize is None else normalize
        return self._guarded(cid, "learn_from_correction", lambda: self.learner.learn_from_correction(
            record, correct_category_id, predicted_category_id, normalize=norm,
        ))

    def metrics(self) -> dict:
        with self._metrics_lock:
            snapshot = dict(self._metrics)
            snapshot["by_method"] = dict(self._metrics["by_method"])
            elapsed = self._elapsed_total
        total = snapshot["total"]
        snapshot["avg_elapsed_ms"] = elapsed / total if total else 0.0
        snapshot["circuit_breakers"] = self.breakers.states()
        return snapshot

    def reset_metrics(self) -> None:
        with self._metrics_lock:
            self._metrics = {
                "total": 0, "successful": 0, "failed": 0, "no_match": 0,
                "by_method": {},
            }
            self._elapsed_total = 0.0

    # ── Core ────────────────────────────────────────────────

    def _run_chunk(self, records, ids, normalize, context) -> list[CategorizationResult]:
        return [self._categorize(r, cid, normalize, context) for r, cid in zip(records, ids)]

    def _categorize(self, record, cid, normalize, context) -> CategorizationResult:
        start = time.monotonic()
        norm = self.default_normalize if normalize is None else normalize
        try:
            self._validate(record)
            result = self.breakers.get("categorization").call(
                self._resolve, record, cid, norm, context,
            )
        except ValidationError as e:
            logger.info("[%s] Invalid record: %s", cid, e)
            result = CategorizationResult.failure(e)
        except ContractViolationError:
            raise
        except CategorizationError as e:
            result = self._handle_error(e, cid)
        except Exception as e:
            logger.exception("[%s] Unexpected categorization failure", cid)
            result = CategorizationResult.failure(
                UnexpectedError(str(e), context={"correlation_id": cid}),
            )
        result.correlation_id = cid
        result.high_confidence_threshold = self.high_threshold
        result.auto_categorize_threshold = self.auto_threshold
        result.elapsed_ms = (time.monotonic() - start) * 1000
        self._count(result)
        return result

    def _handle_error(self, error: CategorizationError, cid: str) -> CategorizationResult:
        if isinstance(error, CircuitOpenError):
            logger.warning("[%s] Circuit %s open; failing fast", cid, error.operation)
        elif isinstance(error, NotFoundError):
            logger.warning("[%s] Not found: %s", cid, error)
        elif isinstance(error, TransientInfrastructureError):
            logger.error("[%s] Database error: %s", cid, error)
        else:
            logger.error("[%s] Categorization error: %s", cid, error)
        return CategorizationResult.failure(error)

    def _guarded(self, cid: str, operation: str, fn) -> Outcome:
        try:
            return Outcome(value=self.breakers.get("database").call(fn))
        except ContractViolationError:
            raise
        except CategorizationError as e:
            logger.warning("[%s] %s failed: %s", cid, operation, e)
            return Outcome(error=e.user_message, error_kind=e.kind)
        except Exception as e:
            logger.exception("[%s] Unexpected failure in %s", cid, operation)
            err = UnexpectedError(str(e))
            return Outcome(error=err.user_message, error_kind=err.kind)

    def _validate(self, record: object) -> None:
        if record is None:
            raise ValidationError("Record is required")
        if not extract_text(record).strip() and record_amount(record) is None:
            raise ValidationError(
                "Record has no merchant name, description or amount",
                context={"record_type": type(record).__name__},
            )

    def _resolve(self, record, cid, normalize, context) -> CategorizationResult:
        if self.check_preferences:
            result = self._from_preference(record, cid, context)
            if result is not None:
                return result

        candidates = self._match(record, normalize, context)
        ranked = combine(candidates, boost=self.boost)
        alternatives = [
            Alternative(c.category_id, round(c.score, 4))
            for c in ranked[1 : 1 + self.max_alternatives]
        ]
        if not ranked or ranked[0].score < self.min_confidence:
            logger.debug("[%s] No candidate above %.2f", cid, self.min_confidence)
            return CategorizationResult.no_match(
                [Alternative(c.category_id, round(c.score, 4))
                 for c in ranked[: self.max_alternatives]],
            )

        best = ranked[0]
        category = self._category(best.category_id, context)
        result = CategorizationResult(
            category_id=best.category_id,
            confidence=best.score,
            method=best.method,
            alternatives=alternatives,
            patterns_used=best.patterns_used,
            category=category,
        )
        self._apply(record, result, cid)
        logger.debug("[%s] %s → %s (%.2f, %s)", cid, extract_text(record),
                     best.category_id, best.score, best.method)
        return result

    def _from_preference(self, record, cid, context) -> CategorizationResult | None:
        scope = record_scope(record)
        merchant = preference_context(record)
        if scope is None or not merchant:
            return None
        pref = self._db(self.repo.get_preference, scope, "merchant", merchant)
        if pref is None:
            return None
        try:
            category = self._category(pref.category_id, context)
        except NotFoundError:
            logger.warning("[%s] Preference %s points at missing category %s",
                           cid, pref.id, pref.category_id)
            return None
        settings = self.config.preferences
        confidence = min(
            pref.preference_weight / float(settings["max_weight"])
            + float(settings["confidence_bonus"]),
            1.0,
        )
        result = CategorizationResult(
            category_id=pref.category_id,
            confidence=confidence,
            method=METHOD_PREFERENCE,
            patterns_used=[f"preference:merchant:{merchant}"],
            category=category,
        )
        self._apply(record, result, cid)
        return result

    def _match(self, record, normalize, context) -> list[MatchCandidate]:
        scope = record_scope(record)
        patterns, composites, components = self._patterns_for(scope, context)

        candidates: list[MatchCandidate] = []
        for pattern in patterns:
            text_score = self.matcher.text_score(pattern, record, normalize)
            if text_score <= 0:
                continue
            eff = effective_confidence(
                pattern, self.min_weight, self.max_weight, self.min_observations,
            )
            candidates.append(MatchCandidate(
                category_id=pattern.category_id,
                score=clamp(text_score * eff, 0.0, 1.0),
                method=METHOD_PATTERN if text_score >= 1.0 else METHOD_FUZZY,
                patterns_used=[pattern.label],
            ))

        for comp in composites:
            if not self.matcher.composite_matches(comp, components, record, normalize):
                continue
            parts = [
                effective_confidence(components[pid], self.min_weight,
                                     self.max_weight, self.min_observations)
                for pid in comp.pattern_ids if pid in components
            ]
            eff = composite_effective_confidence(
                comp, parts, self.min_weight, self.max_weight, self.min_observations,
            )
            candidates.append(MatchCandidate(
                category_id=comp.category_id,
                score=clamp(eff, 0.0, 1.0),
                method=METHOD_COMPOSITE,
                patterns_used=[comp.label],
            ))
        return candidates

    def _patterns_for(self, scope, context):
        if context is None:
            return self._db(self._load_patterns, scope)
        with context.lock:
            if scope not in context.patterns:
                patterns, composites, components = self._db(self._load_patterns, scope)
                context.patterns[scope] = patterns
                context.composites[scope] = composites
                context.components.update(components)
            return context.patterns[scope], context.composites[scope], context.components

    def _db(self, fn, *args):
        """Run a storage read through the database breaker."""
        return self.breakers.get("database").call(fn, *args)

    def _load_patterns(self, scope):
        patterns = list(self.store.active_patterns(scope))
        composites = list(self.store.active_composites(scope))
        return patterns, composites, self.store.components_of(composites)

    def _category(self, category_id: str, context) -> Category:
        if context is not None:
            with context.lock:
                cached = context.categories.get(category_id)
            if cached is not None:
                return cached
        category = self._db(self.repo.find_by_id, category_id)
        if category is None:
            raise NotFoundError(
                f"Category not found: {category_id}", context={"category_id": category_id},
            )
        if context is not None:
            with context.lock:
                context.categories[category_id] = category
        return category

    def _preload(self, records: list, cid: str) -> BatchContext:
        """Load patterns per scope and every referenced category in one lookup."""
        context = BatchContext()
        try:
            scopes = list(dict.fromkeys(record_scope(r) for r in records))
            referenced: set[str] = set()
            for scope in scopes:
                patterns, composites, _ = self._patterns_for(scope, context)
                referenced.update(p.category_id for p in patterns)
                referenced.update(c.category_id for c in composites)
            for r in records:
                existing = get_field(r, "category_id")
                if existing:
                    referenced.add(str(existing))
            context.categories = self._db(self.repo.find_all_by_ids, referenced)
        except (TransientInfrastructureError, CircuitOpenError) as e:
            logger.warning("[%s] Batch preload failed, falling back to per-record lookups: %s",
                           cid, e)
            return BatchContext()
        logger.debug("[%s] Preloaded %d categories for %d scopes",
                     cid, len(context.categories), len(scopes))
        return context

    def _apply(self, record, result: CategorizationResult, cid: str) -> None:
        if not self.auto_update:
            return
        if not isinstance(record, Expense):
            write_categorization(record, result.category_id, result.confidence,
                                 result.method, _now())
            return
        # the caller's expense only changes once the row is saved
        staged = replace(record)
        staged.apply_categorization(result.category_id, result.confidence, result.method)
        retry = self.config.retry
        self.breakers.get("database").call(
            retry_with_backoff,
            lambda: self.repo.update_expense_categorization(staged),
            max_retries=int(retry["max_retries"]),
            base_delay=float(retry["base_delay"]),
            max_delay=float(retry["max_delay"]),
            jitter=float(retry["jitter"]),
        )
        for name in _EXPENSE_RESULT_FIELDS:
            setattr(record, name, getattr(staged, name))
        logger.debug("[%s] Persisted categorization of expense %s", cid, record.id)

    def _count(self, result: CategorizationResult) -> None:
        with self._metrics_lock:
            m = self._metrics
            m["total"] += 1
            if result.error is not None:
                m["failed"] += 1
            elif result.category_id is None:
                m["no_match"] += 1
            else:
                m["successful"] += 1
            m["by_method"][result.method] = m["by_method"].get(result.method, 0) + 1
            self._elapsed_total += result.elapsed_ms


# ── Factory ─────────────────────────────────────────────


def build_orchestrator(repo: Repository, config: Config | None = None) -> Orchestrator:
    """Wire a fully independent engine instance around ``repo``."""
    if repo is None:
        raise ContractViolationError("build_orchestrator requires a repository")
    config = config or Config.defaults()
    p = config.patterns
    fuzzy = FuzzyMatcher(max_length=int(p["max_text_length"]))
    guard = RegexGuard(
        timeout_ms=float(p["regex_timeout_ms"]),
        max_pattern_length=int(p["max_regex_length"]),
        max_text_length=int(p["max_text_length"]),
    )
    matcher = PatternMatcher(
        fuzzy, guard, fuzzy_threshold=float(config.categorization["fuzzy_threshold"]),
    )
    store = PatternStore(repo, config, guard)
    return Orchestrator(
        store=store,
        matcher=matcher,
        breakers=CircuitBreakerRegistry(config),
        learner=PatternLearner(store, matcher, config),
        config=config,
    )


class OrchestratorRegistry:
    """Named engine instances owned by the caller."""

    def __init__(self):
        self._instances: dict[str, Orchestrator] = {}
        self._lock = threading.Lock()

    def create(self, name: str, repo: Repository, config: Config | None = None) -> Orchestrator:
        with self._lock:
            if name in self._instances:
                raise ContractViolationError(f"Orchestrator '{name}' already exists")
            engine = build_orchestrator(repo, config)
            self._instances[name] = engine
            return engine

    def get(self, name: str) -> Orchestrator | None:
        with self._lock:
            return self._instances.get(name)

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._instances)

    def shutdown(self, name: str) -> None:
        with self._lock:
            engine = self._instances.pop(name, None)
        if engine is not None:
            engine.shutdown()

    def shutdown_all(self) -> None:
        with self._lock:
            engines = list(self._instances.values())
            self._instances.clear()
        for engine in engines:
            engine.shutdown()
