"""Dataclass models matching the SQLite schema.

Each dataclass corresponds to one table. Fields match column names exactly,
except that JSON columns (pattern_ids, conditions, context_snapshot) are
decoded into Python lists/dicts.
All primary keys are TEXT (UUID strings generated via uuid4()).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from uuid import uuid4

PATTERN_TYPES = ("merchant", "description", "keyword", "regex", "amount_range", "time")
COMPOSITE_OPERATORS = ("AND", "OR", "NOT")


def _new_id() -> str:
    return str(uuid4())


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class Category:
    name: str
    id: str = field(default_factory=_new_id)
    parent_id: str | None = None
    created_at: str = field(default_factory=_now)


@dataclass
class CategorizationPattern:
    category_id: str
    pattern_type: str
    pattern_value: str
    id: str = field(default_factory=_new_id)
    confidence_weight: float = 1.0
    usage_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    active: bool = True
    user_created: bool = False
    scope_key: str | None = None  # None = applies to every scope
    last_used_at: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def label(self) -> str:
        """Identifier used in learning events and ``patterns_used``."""
        return f"{self.pattern_type}:{self.pattern_value}"


@dataclass
class CompositePattern:
    category_id: str
    name: str
    operator: str
    pattern_ids: list[str] = field(default_factory=list)
    conditions: dict = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    confidence_weight: float = 1.5
    usage_count: int = 0
    success_count: int = 0
    success_rate: float = 0.0
    active: bool = True
    user_created: bool = False
    scope_key: str | None = None
    last_used_at: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    @property
    def label(self) -> str:
        return f"composite:{self.name}"


@dataclass
class UserCategoryPreference:
    scope_key: str
    context_type: str
    context_value: str
    category_id: str
    id: str = field(default_factory=_new_id)
    usage_count: int = 1
    preference_weight: float = 1.0
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)


@dataclass(frozen=True)
class PatternLearningEvent:
    transaction_ref: str | None
    category_id: str
    was_correct: bool
    pattern_used: str
    confidence_score: float
    context_snapshot: dict = field(default_factory=dict)
    id: str = field(default_factory=_new_id)
    created_at: str = field(default_factory=_now)


@dataclass
class Expense:
    """A transaction record as stored by the host application."""
    amount: float
    transaction_date: str
    id: str = field(default_factory=_new_id)
    scope_key: str | None = None
    merchant_name: str | None = None
    description: str | None = None
    currency: str = "USD"
    category_id: str | None = None
    confidence: float | None = None
    categorization_method: str | None = None
    categorized_at: str | None = None
    created_at: str = field(default_factory=_now)
    updated_at: str = field(default_factory=_now)

    def apply_categorization(self, category_id: str, confidence: float,
                             method: str) -> None:
        self.category_id = category_id
        self.confidence = confidence
        self.categorization_method = method
        self.categorized_at = _now()
        self.updated_at = self.categorized_at
