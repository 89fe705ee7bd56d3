"""Pattern Learner: turn feedback and corrections into pattern changes.

Feedback on a categorization adjusts usage counters on every pattern
that matched the record. A correction additionally creates or
strengthens merchant/keyword patterns for the right category, weakens
the patterns that pointed at the wrong one, and remembers the user's
choice as a per-scope preference.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

from expense_categorizer.categorize.patterns import (
    PatternMatcher,
    clamp,
    effective_confidence,
    parse_amount_range,
)
from expense_categorizer.categorize.pattern_store import PatternStore
from expense_categorizer.categorize.records import (
    get_field,
    merchant_text,
    normalize_text,
    record_amount,
    record_ref,
    record_scope,
)
from expense_categorizer.config import Config
from expense_categorizer.database.models import (
    CategorizationPattern,
    PatternLearningEvent,
    UserCategoryPreference,
)
from expense_categorizer.errors import ContractViolationError, NotFoundError, ValidationError

logger = logging.getLogger(__name__)

STOP_WORDS = frozenset(
    "the a an and or but in on at to for of with from by".split()
)
_WORD_SPLIT_RE = re.compile(r"\W+")


@dataclass
class FeedbackResult:
    event: PatternLearningEvent
    patterns_updated: list[str] = field(default_factory=list)


@dataclass
class LearningResult:
    category_id: str
    patterns_created: list[str] = field(default_factory=list)
    patterns_affected: list[str] = field(default_factory=list)
    patterns_merged: list[str] = field(default_factory=list)
    preference: UserCategoryPreference | None = None
    event: PatternLearningEvent | None = None


@dataclass
class DecayResult:
    decayed: int = 0
    deactivated: int = 0


def extract_keywords(text: str | None, limit: int = 5) -> list[str]:
    """First ``limit`` distinct words of 3+ letters, minus stop words and numbers."""
    if not text:
        return []
    keywords: list[str] = []
    for word in _WORD_SPLIT_RE.split(text.lower()):
        if len(word) < 3 or word in STOP_WORDS or word.isdigit():
            continue
        if word not in keywords:
            keywords.append(word)
        if len(keywords) >= limit:
            break
    return keywords


def preference_context(record: object) -> str:
    """Preference key for a record: its merchant name, lower-cased and stripped."""
    return merchant_text(record).lower().strip()


class PatternLearner:
    def __init__(self, store: PatternStore, matcher: PatternMatcher,
                 config: Config | None = None):
        if store is None or matcher is None:
            raise ContractViolationError("PatternLearner requires a store and a matcher")
        self.store = store
        self.repo = store.repo
        self.matcher = matcher
        self.config = config or store.config
        self.settings = self.config.learning

    # ── Matching helpers ────────────────────────────────────

    def matching_patterns(self, record: object, normalize: bool = True,
                          category_id: str | None = None) -> list[CategorizationPattern]:
        return [
            p for p in self.store.active_patterns(record_scope(record))
            if (category_id is None or p.category_id == category_id)
            and self.matcher.matches(p, record, normalize)
        ]

    def _confidence_of(self, pattern: CategorizationPattern | None) -> float:
        if pattern is None:
            return 1.0
        score = effective_confidence(
            pattern, *self.config.weight_range,
            min_observations=int(self.config.patterns["min_observations"]),
        )
        return clamp(score, 0.0, 1.0)

    def _snapshot(self, record: object) -> dict:
        return {
            "merchant": merchant_text(record) or None,
            "description": get_field(record, "description"),
            "amount": record_amount(record),
        }

    def _require_category(self, category_id: str) -> None:
        if not category_id:
            raise ValidationError("Category is required")
        if self.repo.find_by_id(category_id) is None:
            raise NotFoundError(
                f"Category not found: {category_id}", context={"category_id": category_id},
            )

    # ── Feedback ────────────────────────────────────────────

    def record_feedback(self, record: object, category_id: str, was_correct: bool,
                        normalize: bool = True) -> FeedbackResult:
        """Update counters on every matching pattern and log a learning event.

        Patterns for ``category_id`` count a use that succeeded iff
        ``was_correct``. When the category is confirmed correct, patterns
        that matched but point elsewhere count a failed use.
        """
        self._require_category(category_id)
        matched = self.matching_patterns(record, normalize)
        updated: list[str] = []
        for pattern in matched:
            if pattern.category_id == category_id:
                self.store.record_usage(pattern.id, was_correct)
                updated.append(pattern.id)
            elif was_correct:
                self.store.record_usage(pattern.id, False)
                updated.append(pattern.id)

        own = [p for p in matched if p.category_id == category_id]
        top = max(own, key=self._confidence_of, default=None)
        event = self.repo.insert_learning_event(PatternLearningEvent(
            transaction_ref=record_ref(record),
            category_id=category_id,
            was_correct=was_correct,
            pattern_used=top.label if top else "none",
            confidence_score=self._confidence_of(top) if top else 0.0,
            context_snapshot=self._snapshot(record),
        ))
        if was_correct:
            self.remember_preference(record, category_id)
        logger.info("Feedback on %s: category=%s correct=%s patterns=%d",
                    event.transaction_ref, category_id, was_correct, len(updated))
        return FeedbackResult(event=event, patterns_updated=updated)

    def remember_preference(self, record: object, category_id: str) -> UserCategoryPreference | None:
        scope = record_scope(record)
        context = preference_context(record)
        if scope is None or not context:
            return None
        return self.repo.record_preference_choice(
            scope, "merchant", context, category_id,
            max_weight=float(self.config.preferences["max_weight"]),
        )

    # ── Corrections ─────────────────────────────────────────

    def learn_from_correction(self, record: object, correct_category_id: str,
                              predicted_category_id: str | None = None,
                              normalize: bool = True) -> LearningResult:
        self._require_category(correct_category_id)
        result = LearningResult(category_id=correct_category_id)

        merchant_pattern = self._merchant_pattern_for(record, correct_category_id, result)
        self._keyword_patterns_for(record, correct_category_id, result)

        if predicted_category_id and predicted_category_id != correct_category_id:
            for pattern in self.matching_patterns(record, normalize, predicted_category_id):
                self.weaken(pattern)
                result.patterns_affected.append(pattern.id)

        for pattern in self.matching_patterns(record, normalize, correct_category_id):
            if pattern.id in result.patterns_affected or pattern.id in result.patterns_created:
                continue
            self.strengthen(pattern)
            result.patterns_affected.append(pattern.id)

        result.preference = self.remember_preference(record, correct_category_id)

        used = merchant_pattern
        if result.patterns_created:
            used = self.repo.get_pattern(result.patterns_created[0]) or merchant_pattern
        result.event = self.repo.insert_learning_event(PatternLearningEvent(
            transaction_ref=record_ref(record),
            category_id=correct_category_id,
            was_correct=predicted_category_id == correct_category_id,
            pattern_used=used.label if used else "manual",
            confidence_score=self._confidence_of(used),
            context_snapshot=self._snapshot(record),
        ))

        if result.patterns_created:
            result.patterns_merged = self.merge_similar_patterns(correct_category_id)
        logger.info("Learned from correction on %s: %d created, %d affected",
                    result.event.transaction_ref, len(result.patterns_created),
                    len(result.patterns_affected))
        return result

    def _merchant_pattern_for(self, record, category_id, result) -> CategorizationPattern | None:
        merchant = merchant_text(record).lower().strip()
        if not merchant:
            return None
        pattern = self.repo.find_pattern(category_id, "merchant", merchant)
        if pattern is None:
            pattern = self.store.create_pattern(
                category_id, "merchant", merchant,
                confidence_weight=float(self.settings["learned_pattern_weight"]),
                user_created=True,
            )
            result.patterns_created.append(pattern.id)
        else:
            if not pattern.active:
                self.store.activate(pattern)
            pattern = self.strengthen(pattern, user_correction=True)
            result.patterns_affected.append(pattern.id)
        return pattern

    def _keyword_patterns_for(self, record, category_id, result) -> None:
        description = get_field(record, "description")
        keywords = extract_keywords(description, int(self.settings["max_keywords"]))
        if not keywords:
            return
        past = [
            normalize_text(e.context_snapshot.get("description"))
            for e in self.repo.get_learning_events(category_id)
        ]
        for keyword in keywords:
            pattern = self.repo.find_pattern(category_id, "keyword", keyword)
            if pattern is not None:
                self.strengthen(pattern)
                result.patterns_affected.append(pattern.id)
                continue
            # this correction counts as one occurrence
            seen = 1 + sum(1 for d in past if keyword in d)
            if seen >= int(self.settings["min_corrections"]):
                pattern = self.store.create_pattern(
                    category_id, "keyword", keyword,
                    confidence_weight=float(self.settings["learned_pattern_weight"]),
                )
                result.patterns_created.append(pattern.id)

    def strengthen(self, pattern: CategorizationPattern,
                   user_correction: bool = False) -> CategorizationPattern:
        key = "user_created_boost" if user_correction else "correct_boost"
        self.store.adjust_weight(pattern, float(self.settings[key]))
        return self.store.record_usage(pattern.id, True)

    def weaken(self, pattern: CategorizationPattern) -> CategorizationPattern:
        self.store.adjust_weight(pattern, -float(self.settings["incorrect_penalty"]))
        return self.store.record_usage(pattern.id, False)

    # ── Maintenance ─────────────────────────────────────────

    def decay_unused_patterns(self, now: datetime | None = None) -> DecayResult:
        """Decay system patterns idle for longer than the decay window.

        User-created patterns never decay.
        """
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(days=int(self.settings["decay_after_days"]))
        factor = float(self.settings["decay_factor"])
        floor = float(self.settings["deactivation_threshold"])
        used_before = cutoff.isoformat()
        result = DecayResult()

        def decay(p: CategorizationPattern) -> None:
            # usage may have landed since the stale query
            if not p.active or (p.last_used_at or p.created_at) >= used_before:
                return
            p.confidence_weight *= factor
            if p.confidence_weight < floor:
                p.active = False
                result.deactivated += 1
            result.decayed += 1

        for pattern in self.repo.get_stale_patterns(used_before):
            self.store.modify(pattern.id, decay)
        logger.info("Decayed %d patterns (%d deactivated)", result.decayed, result.deactivated)
        return result

    def pattern_similarity(self, a: CategorizationPattern, b: CategorizationPattern) -> float:
        if a.pattern_type != b.pattern_type:
            return 0.0
        if a.pattern_type == "amount_range":
            ra, rb = parse_amount_range(a.pattern_value), parse_amount_range(b.pattern_value)
            if ra is None or rb is None:
                return 0.0
            overlap = min(ra[1], rb[1]) - max(ra[0], rb[0])
            span = max(ra[1], rb[1]) - min(ra[0], rb[0])
            if overlap < 0:
                return 0.0
            return 1.0 if span == 0 else overlap / span
        return self.matcher.fuzzy.similarity(a.pattern_value, b.pattern_value, normalize=True)

    def merge_similar_patterns(self, category_id: str) -> list[str]:
        """Fold near-duplicate patterns of a category into the most used one.

        Returns the ids of the deactivated (merged-away) patterns.
        """
        threshold = float(self.settings["merge_similarity"])
        patterns = sorted(
            self.repo.get_patterns_for_category(category_id),
            key=lambda p: p.usage_count, reverse=True,
        )
        merged: list[str] = []
        for i, primary in enumerate(patterns):
            if primary.id in merged:
                continue
            for secondary in patterns[i + 1:]:
                if secondary.id in merged:
                    continue
                if self.pattern_similarity(primary, secondary) < threshold:
                    continue
                self.store.merge(primary.id, secondary.id)
                merged.append(secondary.id)
        return merged
