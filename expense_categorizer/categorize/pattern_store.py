"""Pattern Store: active patterns, creation, and usage statistics.

Patterns are never deleted, only deactivated. Usage counters are
incremented in SQL under the store lock so concurrent batch workers
never lose an update.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Iterator

from expense_categorizer.categorize.patterns import (
    RegexGuard,
    clamp,
    validate_composite,
    validate_pattern_value,
)
from expense_categorizer.config import Config
from expense_categorizer.database.models import CategorizationPattern, CompositePattern
from expense_categorizer.database.repository import Repository
from expense_categorizer.errors import ContractViolationError, NotFoundError

logger = logging.getLogger(__name__)


class PatternStore:
    def __init__(self, repo: Repository, config: Config | None = None,
                 guard: RegexGuard | None = None):
        if repo is None:
            raise ContractViolationError("PatternStore requires a repository")
        self.repo = repo
        self.config = config or Config.defaults()
        settings = self.config.patterns
        self.min_weight, self.max_weight = self.config.weight_range
        self.chunk_size = int(settings["chunk_size"])
        self.guard = guard or RegexGuard(
            timeout_ms=settings["regex_timeout_ms"],
            max_pattern_length=settings["max_regex_length"],
            max_text_length=settings["max_text_length"],
        )
        learning = self.config.learning
        self._deactivate_after = int(learning["min_usage_for_deactivation"])
        self._min_success_rate = float(learning["min_success_rate"])
        self._lock = threading.Lock()

    # ── Queries ─────────────────────────────────────────────

    def active_patterns(self, scope: str | None = None) -> Iterator[CategorizationPattern]:
        """Lazily yield active patterns visible to ``scope``, page by page."""
        after = ""
        while True:
            page = self.repo.get_active_patterns_page(scope, after, self.chunk_size)
            yield from page
            if len(page) < self.chunk_size:
                return
            after = page[-1].id

    def active_composites(self, scope: str | None = None) -> Iterator[CompositePattern]:
        after = ""
        while True:
            page = self.repo.get_active_composites_page(scope, after, self.chunk_size)
            yield from page
            if len(page) < self.chunk_size:
                return
            after = page[-1].id

    def get(self, pattern_id: str) -> CategorizationPattern:
        pattern = self.repo.get_pattern(pattern_id)
        if pattern is None:
            raise NotFoundError(
                f"Pattern not found: {pattern_id}", context={"pattern_id": pattern_id},
            )
        return pattern

    def components_of(self, composites) -> dict[str, CategorizationPattern]:
        ids = [pid for c in composites for pid in c.pattern_ids]
        return self.repo.get_patterns_by_ids(ids) if ids else {}

    # ── Creation ────────────────────────────────────────────

    def _require_category(self, category_id: str) -> None:
        if self.repo.find_by_id(category_id) is None:
            raise NotFoundError(
                f"Category not found: {category_id}", context={"category_id": category_id},
            )

    def create_pattern(
        self, category_id: str, pattern_type: str, pattern_value: str,
        confidence_weight: float | None = None, user_created: bool = False,
        scope_key: str | None = None,
    ) -> CategorizationPattern:
        """Validate and insert a single-condition pattern.

        Raises ValidationError for a bad type/value and NotFoundError
        for an unknown category. The weight is clamped to the
        configured range.
        """
        validate_pattern_value(pattern_type, pattern_value, self.guard)
        self._require_category(category_id)
        if confidence_weight is None:
            confidence_weight = float(self.config.patterns["default_weight"])
        pattern = CategorizationPattern(
            category_id=category_id,
            pattern_type=pattern_type,
            pattern_value=pattern_value.strip(),
            confidence_weight=clamp(confidence_weight, self.min_weight, self.max_weight),
            user_created=user_created,
            scope_key=scope_key,
        )
        self.repo.insert_pattern(pattern)
        logger.info("Created %s pattern %r for category %s",
                    pattern_type, pattern.pattern_value, category_id)
        return pattern

    def create_composite(
        self, category_id: str, name: str, operator: str,
        pattern_ids: list[str] | None = None, conditions: dict | None = None,
        confidence_weight: float | None = None, user_created: bool = False,
        scope_key: str | None = None,
    ) -> CompositePattern:
        if confidence_weight is None:
            confidence_weight = float(self.config.patterns["composite_default_weight"])
        comp = CompositePattern(
            category_id=category_id, name=name, operator=operator.upper(),
            pattern_ids=list(pattern_ids or []), conditions=dict(conditions or {}),
            confidence_weight=clamp(confidence_weight, self.min_weight, self.max_weight),
            user_created=user_created, scope_key=scope_key,
        )
        validate_composite(comp)
        self._require_category(category_id)
        missing = set(comp.pattern_ids) - set(self.repo.get_patterns_by_ids(comp.pattern_ids))
        if missing:
            raise NotFoundError(
                f"Composite references unknown patterns: {sorted(missing)}",
                context={"pattern_ids": sorted(missing)},
            )
        self.repo.insert_composite(comp)
        logger.info("Created composite %r (%s) for category %s", name, comp.operator, category_id)
        return comp

    # ── Usage & weights ─────────────────────────────────────

    def record_usage(self, pattern_id: str, successful: bool) -> CategorizationPattern:
        """Count one use of a pattern; deactivate chronic failures.

        User-created patterns are never auto-deactivated.
        """
        with self._lock:
            pattern = self.repo.record_pattern_usage(pattern_id, successful)
            if pattern is None:
                raise NotFoundError(
                    f"Pattern not found: {pattern_id}", context={"pattern_id": pattern_id},
                )
            if (
                pattern.active
                and not pattern.user_created
                and pattern.usage_count >= self._deactivate_after
                and pattern.success_rate < self._min_success_rate
            ):
                pattern.active = False
                self.repo.update_pattern(pattern)
                logger.info("Deactivated pattern %s (success rate %.2f over %d uses)",
                            pattern.id, pattern.success_rate, pattern.usage_count)
        return pattern

    def record_composite_usage(self, composite_id: str, successful: bool) -> CompositePattern:
        with self._lock:
            comp = self.repo.record_composite_usage(composite_id, successful)
        if comp is None:
            raise NotFoundError(
                f"Composite pattern not found: {composite_id}",
                context={"composite_id": composite_id},
            )
        return comp

    def modify(
        self, pattern_id: str, change: Callable[[CategorizationPattern], None],
    ) -> CategorizationPattern:
        """Re-read a pattern under the lock, apply ``change`` and persist it.

        Only the weight and active flag are written back; counters are
        always current because the row is read inside the lock.
        """
        with self._lock:
            current = self.get(pattern_id)
            change(current)
            current.confidence_weight = clamp(
                current.confidence_weight, self.min_weight, self.max_weight,
            )
            return self.repo.update_pattern(current)

    def adjust_weight(self, pattern: CategorizationPattern, delta: float) -> CategorizationPattern:
        def bump(p):
            p.confidence_weight += delta
        return self.modify(pattern.id, bump)

    def save(self, pattern: CategorizationPattern) -> CategorizationPattern:
        def copy(p):
            p.confidence_weight = pattern.confidence_weight
            p.active = pattern.active
        return self.modify(pattern.id, copy)

    def deactivate(self, pattern: CategorizationPattern) -> CategorizationPattern:
        pattern.active = False
        return self.save(pattern)

    def activate(self, pattern: CategorizationPattern) -> CategorizationPattern:
        pattern.active = True
        return self.save(pattern)

    def merge(self, primary_id: str, secondary_id: str) -> CategorizationPattern:
        """Fold ``secondary`` into ``primary`` and deactivate it.

        The primary's weight becomes the usage-weighted mean of both;
        counters are added in SQL.
        """
        with self._lock:
            primary = self.get(primary_id)
            secondary = self.get(secondary_id)
            total = primary.usage_count + secondary.usage_count
            if total:
                primary.confidence_weight = clamp(
                    (primary.confidence_weight * primary.usage_count
                     + secondary.confidence_weight * secondary.usage_count) / total,
                    self.min_weight, self.max_weight,
                )
            self.repo.update_pattern(primary)
            merged = self.repo.add_pattern_usage(
                primary_id, secondary.usage_count, secondary.success_count,
            )
            secondary.active = False
            self.repo.update_pattern(secondary)
        logger.info("Merged pattern %s into %s", secondary_id, primary_id)
        return merged
