"""Repository: CRUD operations against SQLite using raw SQL.

All methods take/return dataclass instances from models.py.
Connection management uses a single connection with WAL mode and
foreign keys enabled. The connection is shared by batch worker threads,
so every statement runs under one re-entrant lock, and counter updates
are done in SQL so concurrent feedback never loses an increment.

sqlite3.OperationalError (locked database, disk I/O, closed connection)
is re-raised as TransientInfrastructureError so callers can route it
through a circuit breaker.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from expense_categorizer.errors import TransientInfrastructureError

from .models import (
    CategorizationPattern,
    Category,
    CompositePattern,
    Expense,
    PatternLearningEvent,
    UserCategoryPreference,
    _now,
)

logger = logging.getLogger(__name__)

MIGRATIONS_DIR = Path(__file__).parent / "migrations"

_CHUNK_SIZE = 500


class Repository:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA foreign_keys = ON")
            self._conn.execute("PRAGMA journal_mode = WAL")
        return self._conn

    def close(self):
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    @contextmanager
    def _guard(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Serialize access and translate storage failures."""
        with self._lock:
            try:
                yield self.conn
            except sqlite3.IntegrityError:
                if self._conn is not None and self._conn.in_transaction:
                    self._conn.rollback()
                raise
            except sqlite3.DatabaseError as e:
                if self._conn is not None and self._conn.in_transaction:
                    self._conn.rollback()
                logger.warning("Database error during %s: %s", operation, e)
                raise TransientInfrastructureError(
                    str(e), context={"operation": operation},
                ) from e

    # ── Migrations ──────────────────────────────────────────

    def apply_migrations(self, migrations_dir: Path = MIGRATIONS_DIR):
        """Apply all pending SQL migrations in order.

        Each migration runs in a transaction: if the SQL fails, the
        schema_version row is not inserted, allowing retry on next startup.
        """
        with self._lock:
            self.conn.execute(
                "CREATE TABLE IF NOT EXISTS schema_version ("
                "  version INTEGER PRIMARY KEY,"
                "  description TEXT,"
                "  applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP"
                ")"
            )
            self.conn.commit()

            row = self.conn.execute(
                "SELECT MAX(version) FROM schema_version"
            ).fetchone()
            current = row[0] or 0

            for sql_file in sorted(migrations_dir.glob("*.sql")):
                version = int(sql_file.name.split("_")[0])
                if version <= current:
                    continue
                try:
                    self.conn.execute("BEGIN")
                    # executescript auto-commits, so we split statements manually
                    for statement in sql_file.read_text().split(";"):
                        statement = statement.strip()
                        if statement:
                            self.conn.execute(statement)
                    self.conn.execute(
                        "INSERT INTO schema_version (version, description) VALUES (?, ?)",
                        (version, sql_file.stem),
                    )
                    self.conn.commit()
                    logger.info("Applied migration %s", sql_file.name)
                except Exception:
                    self.conn.rollback()
                    raise

    # ── Categories ──────────────────────────────────────────

    def insert_category(self, cat: Category) -> Category:
        with self._guard("insert_category") as conn:
            conn.execute(
                "INSERT INTO categories (id, name, parent_id, created_at)"
                " VALUES (?, ?, ?, ?)",
                (cat.id, cat.name, cat.parent_id, cat.created_at),
            )
            conn.commit()
        return cat

    def find_by_id(self, category_id: str) -> Category | None:
        with self._guard("find_category") as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE id = ?", (category_id,)
            ).fetchone()
        return self._row_to_category(row) if row else None

    def find_all_by_ids(self, category_ids) -> dict[str, Category]:
        """Fetch many categories in one pass, keyed by id.

        Chunked to stay within SQLite's variable limit.
        """
        ids = list(dict.fromkeys(i for i in category_ids if i))
        if not ids:
            return {}
        result: dict[str, Category] = {}
        with self._guard("find_categories") as conn:
            for i in range(0, len(ids), _CHUNK_SIZE):
                chunk = ids[i : i + _CHUNK_SIZE]
                ph = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT * FROM categories WHERE id IN ({ph})", chunk,
                ).fetchall()
                for r in rows:
                    cat = self._row_to_category(r)
                    result[cat.id] = cat
        return result

    # ── Patterns ────────────────────────────────────────────

    def insert_pattern(self, pattern: CategorizationPattern) -> CategorizationPattern:
        with self._guard("insert_pattern") as conn:
            conn.execute(
                "INSERT INTO categorization_patterns"
                " (id, category_id, pattern_type, pattern_value, confidence_weight,"
                "  usage_count, success_count, success_rate, active, user_created,"
                "  scope_key, last_used_at, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (pattern.id, pattern.category_id, pattern.pattern_type,
                 pattern.pattern_value, pattern.confidence_weight,
                 pattern.usage_count, pattern.success_count, pattern.success_rate,
                 int(pattern.active), int(pattern.user_created), pattern.scope_key,
                 pattern.last_used_at, pattern.created_at, pattern.updated_at),
            )
            conn.commit()
        return pattern

    def get_pattern(self, pattern_id: str) -> CategorizationPattern | None:
        with self._guard("get_pattern") as conn:
            row = conn.execute(
                "SELECT * FROM categorization_patterns WHERE id = ?", (pattern_id,)
            ).fetchone()
        return self._row_to_pattern(row) if row else None

    def get_patterns_by_ids(self, pattern_ids) -> dict[str, CategorizationPattern]:
        ids = list(dict.fromkeys(pattern_ids))
        result: dict[str, CategorizationPattern] = {}
        with self._guard("get_patterns") as conn:
            for i in range(0, len(ids), _CHUNK_SIZE):
                chunk = ids[i : i + _CHUNK_SIZE]
                ph = ",".join("?" * len(chunk))
                rows = conn.execute(
                    f"SELECT * FROM categorization_patterns WHERE id IN ({ph})",
                    chunk,
                ).fetchall()
                for r in rows:
                    p = self._row_to_pattern(r)
                    result[p.id] = p
        return result

    def find_pattern(
        self, category_id: str, pattern_type: str, pattern_value: str,
    ) -> CategorizationPattern | None:
        """Look up a pattern by its natural key, active or not."""
        with self._guard("find_pattern") as conn:
            row = conn.execute(
                "SELECT * FROM categorization_patterns"
                " WHERE category_id = ? AND pattern_type = ? AND pattern_value = ?"
                " ORDER BY created_at LIMIT 1",
                (category_id, pattern_type, pattern_value),
            ).fetchone()
        return self._row_to_pattern(row) if row else None

    def get_patterns_for_category(
        self, category_id: str, active_only: bool = True,
    ) -> list[CategorizationPattern]:
        sql = "SELECT * FROM categorization_patterns WHERE category_id = ?"
        if active_only:
            sql += " AND active = 1"
        with self._guard("get_patterns_for_category") as conn:
            rows = conn.execute(sql + " ORDER BY created_at, id", (category_id,)).fetchall()
        return [self._row_to_pattern(r) for r in rows]

    def get_active_patterns_page(
        self, scope_key: str | None, after_id: str, limit: int = _CHUNK_SIZE,
    ) -> list[CategorizationPattern]:
        """One keyset page of active patterns visible to a scope.

        Global patterns (scope_key NULL) are visible to every scope.
        """
        with self._guard("active_patterns") as conn:
            rows = conn.execute(
                "SELECT * FROM categorization_patterns"
                " WHERE active = 1 AND (scope_key IS NULL OR scope_key = ?)"
                " AND id > ? ORDER BY id LIMIT ?",
                (scope_key, after_id, limit),
            ).fetchall()
        return [self._row_to_pattern(r) for r in rows]

    def get_stale_patterns(self, used_before: str) -> list[CategorizationPattern]:
        """Active, system-created patterns not used since ``used_before``."""
        with self._guard("stale_patterns") as conn:
            rows = conn.execute(
                "SELECT * FROM categorization_patterns"
                " WHERE active = 1 AND user_created = 0"
                " AND COALESCE(last_used_at, created_at) < ?",
                (used_before,),
            ).fetchall()
        return [self._row_to_pattern(r) for r in rows]

    def record_pattern_usage(
        self, pattern_id: str, successful: bool,
    ) -> CategorizationPattern | None:
        """Atomically bump usage (and success) counters and return the row."""
        now = _now()
        hit = 1 if successful else 0
        with self._guard("record_pattern_usage") as conn:
            conn.execute(
                "UPDATE categorization_patterns SET"
                " usage_count = usage_count + 1,"
                " success_count = success_count + ?,"
                " success_rate = CAST(success_count + ? AS REAL) / (usage_count + 1),"
                " last_used_at = ?, updated_at = ?"
                " WHERE id = ?",
                (hit, hit, now, now, pattern_id),
            )
            conn.commit()
            return self.get_pattern(pattern_id)

    def update_pattern(self, pattern: CategorizationPattern) -> CategorizationPattern:
        """Persist weight and active flag. Counters only move through SQL increments."""
        pattern.updated_at = _now()
        with self._guard("update_pattern") as conn:
            conn.execute(
                "UPDATE categorization_patterns SET"
                " confidence_weight = ?, active = ?, updated_at = ?"
                " WHERE id = ?",
                (pattern.confidence_weight, int(pattern.active),
                 pattern.updated_at, pattern.id),
            )
            conn.commit()
        return pattern

    def add_pattern_usage(
        self, pattern_id: str, usage: int, successes: int,
    ) -> CategorizationPattern | None:
        """Fold another pattern's counters into this one in a single UPDATE."""
        with self._guard("add_pattern_usage") as conn:
            conn.execute(
                "UPDATE categorization_patterns SET"
                " usage_count = usage_count + ?,"
                " success_count = success_count + ?,"
                " success_rate = CASE WHEN usage_count + ? = 0 THEN 0.0"
                "   ELSE CAST(success_count + ? AS REAL) / (usage_count + ?) END,"
                " updated_at = ?"
                " WHERE id = ?",
                (usage, successes, usage, successes, usage, _now(), pattern_id),
            )
            conn.commit()
            return self.get_pattern(pattern_id)

    # ── Composite patterns ──────────────────────────────────

    def insert_composite(self, comp: CompositePattern) -> CompositePattern:
        with self._guard("insert_composite") as conn:
            conn.execute(
                "INSERT INTO composite_patterns"
                " (id, category_id, name, operator, pattern_ids, conditions,"
                "  confidence_weight, usage_count, success_count, success_rate,"
                "  active, user_created, scope_key, last_used_at, created_at,"
                "  updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (comp.id, comp.category_id, comp.name, comp.operator,
                 json.dumps(comp.pattern_ids), json.dumps(comp.conditions),
                 comp.confidence_weight, comp.usage_count, comp.success_count,
                 comp.success_rate, int(comp.active), int(comp.user_created),
                 comp.scope_key, comp.last_used_at, comp.created_at,
                 comp.updated_at),
            )
            conn.commit()
        return comp

    def get_composite(self, composite_id: str) -> CompositePattern | None:
        with self._guard("get_composite") as conn:
            row = conn.execute(
                "SELECT * FROM composite_patterns WHERE id = ?", (composite_id,)
            ).fetchone()
        return self._row_to_composite(row) if row else None

    def get_active_composites_page(
        self, scope_key: str | None, after_id: str, limit: int = _CHUNK_SIZE,
    ) -> list[CompositePattern]:
        with self._guard("active_composites") as conn:
            rows = conn.execute(
                "SELECT * FROM composite_patterns"
                " WHERE active = 1 AND (scope_key IS NULL OR scope_key = ?)"
                " AND id > ? ORDER BY id LIMIT ?",
                (scope_key, after_id, limit),
            ).fetchall()
        return [self._row_to_composite(r) for r in rows]

    def record_composite_usage(
        self, composite_id: str, successful: bool,
    ) -> CompositePattern | None:
        now = _now()
        hit = 1 if successful else 0
        with self._guard("record_composite_usage") as conn:
            conn.execute(
                "UPDATE composite_patterns SET"
                " usage_count = usage_count + 1,"
                " success_count = success_count + ?,"
                " success_rate = CAST(success_count + ? AS REAL) / (usage_count + 1),"
                " last_used_at = ?, updated_at = ?"
                " WHERE id = ?",
                (hit, hit, now, now, composite_id),
            )
            conn.commit()
            return self.get_composite(composite_id)

    def update_composite(self, comp: CompositePattern) -> CompositePattern:
        comp.updated_at = _now()
        with self._guard("update_composite") as conn:
            conn.execute(
                "UPDATE composite_patterns SET"
                " confidence_weight = ?, active = ?, updated_at = ?"
                " WHERE id = ?",
                (comp.confidence_weight, int(comp.active), comp.updated_at, comp.id),
            )
            conn.commit()
        return comp

    # ── User preferences ────────────────────────────────────

    def get_preference(
        self, scope_key: str, context_type: str, context_value: str,
    ) -> UserCategoryPreference | None:
        with self._guard("get_preference") as conn:
            row = conn.execute(
                "SELECT * FROM user_category_preferences"
                " WHERE scope_key = ? AND context_type = ? AND context_value = ?",
                (scope_key, context_type, context_value),
            ).fetchone()
        return self._row_to_preference(row) if row else None

    def record_preference_choice(
        self, scope_key: str, context_type: str, context_value: str,
        category_id: str, max_weight: float,
    ) -> UserCategoryPreference:
        """Create, reinforce, or replace the preference for one context.

        Choosing the same category again bumps usage and weight (weight
        capped at ``max_weight``). Choosing a different category replaces
        the preference and resets its counters.
        """
        now = _now()
        with self._guard("record_preference") as conn:
            existing = self.get_preference(scope_key, context_type, context_value)
            if existing is None:
                pref = UserCategoryPreference(
                    scope_key=scope_key, context_type=context_type,
                    context_value=context_value, category_id=category_id,
                )
                conn.execute(
                    "INSERT INTO user_category_preferences"
                    " (id, scope_key, context_type, context_value, category_id,"
                    "  usage_count, preference_weight, created_at, updated_at)"
                    " VALUES (?,?,?,?,?,?,?,?,?)",
                    (pref.id, pref.scope_key, pref.context_type,
                     pref.context_value, pref.category_id, pref.usage_count,
                     pref.preference_weight, pref.created_at, pref.updated_at),
                )
            elif existing.category_id == category_id:
                conn.execute(
                    "UPDATE user_category_preferences SET"
                    " usage_count = usage_count + 1,"
                    " preference_weight = MIN(preference_weight + 1, ?),"
                    " updated_at = ? WHERE id = ?",
                    (max_weight, now, existing.id),
                )
            else:
                conn.execute(
                    "UPDATE user_category_preferences SET"
                    " category_id = ?, usage_count = 1, preference_weight = 1.0,"
                    " updated_at = ? WHERE id = ?",
                    (category_id, now, existing.id),
                )
            conn.commit()
            return self.get_preference(scope_key, context_type, context_value)

    # ── Learning events ─────────────────────────────────────

    def insert_learning_event(self, event: PatternLearningEvent) -> PatternLearningEvent:
        with self._guard("insert_learning_event") as conn:
            conn.execute(
                "INSERT INTO pattern_learning_events"
                " (id, transaction_ref, category_id, was_correct, pattern_used,"
                "  confidence_score, context_snapshot, created_at)"
                " VALUES (?,?,?,?,?,?,?,?)",
                (event.id, event.transaction_ref, event.category_id,
                 int(event.was_correct), event.pattern_used,
                 event.confidence_score, json.dumps(event.context_snapshot),
                 event.created_at),
            )
            conn.commit()
        return event

    def get_learning_events(
        self, category_id: str | None = None,
    ) -> list[PatternLearningEvent]:
        sql = "SELECT * FROM pattern_learning_events"
        params: tuple = ()
        if category_id is not None:
            sql += " WHERE category_id = ?"
            params = (category_id,)
        with self._guard("get_learning_events") as conn:
            rows = conn.execute(sql + " ORDER BY created_at, id", params).fetchall()
        return [self._row_to_learning_event(r) for r in rows]

    # ── Expenses ────────────────────────────────────────────

    def insert_expense(self, exp: Expense) -> Expense:
        with self._guard("insert_expense") as conn:
            conn.execute(
                "INSERT INTO expenses"
                " (id, scope_key, amount, transaction_date, merchant_name,"
                "  description, currency, category_id, confidence,"
                "  categorization_method, categorized_at, created_at, updated_at)"
                " VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (exp.id, exp.scope_key, exp.amount, exp.transaction_date,
                 exp.merchant_name, exp.description, exp.currency,
                 exp.category_id, exp.confidence, exp.categorization_method,
                 exp.categorized_at, exp.created_at, exp.updated_at),
            )
            conn.commit()
        return exp

    def get_expense(self, expense_id: str) -> Expense | None:
        with self._guard("get_expense") as conn:
            row = conn.execute(
                "SELECT * FROM expenses WHERE id = ?", (expense_id,)
            ).fetchone()
        return self._row_to_expense(row) if row else None

    def update_expense_categorization(self, exp: Expense) -> None:
        with self._guard("update_expense") as conn:
            conn.execute(
                "UPDATE expenses SET category_id = ?, confidence = ?,"
                " categorization_method = ?, categorized_at = ?, updated_at = ?"
                " WHERE id = ?",
                (exp.category_id, exp.confidence, exp.categorization_method,
                 exp.categorized_at, exp.updated_at, exp.id),
            )
            conn.commit()

    def find_conflict_candidates(
        self, scope_key: str | None, transaction_date: str, amount: float,
        window_days: int = 3, amount_tolerance: float = 0.10, limit: int = 20,
        exclude_id: str | None = None,
    ) -> list[Expense]:
        """Coarse pre-filter for conflict detection.

        Same scope, date within +/- window_days, amount within
        +/- amount_tolerance. Oldest records first.
        """
        window = f"{int(window_days)} days"
        with self._guard("conflict_candidates") as conn:
            rows = conn.execute(
                "SELECT * FROM expenses"
                " WHERE scope_key IS ?"
                " AND date(transaction_date) BETWEEN date(?, '-' || ?) AND date(?, '+' || ?)"
                " AND ABS(amount - ?) <= ABS(?) * ?"
                " AND id IS NOT ?"
                " ORDER BY created_at, id LIMIT ?",
                (scope_key, transaction_date, window, transaction_date, window,
                 amount, amount, amount_tolerance, exclude_id, limit),
            ).fetchall()
        return [self._row_to_expense(r) for r in rows]

    # ── Row Converters ──────────────────────────────────────

    @staticmethod
    def _row_to_category(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"], name=row["name"], parent_id=row["parent_id"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_pattern(row: sqlite3.Row) -> CategorizationPattern:
        return CategorizationPattern(
            id=row["id"], category_id=row["category_id"],
            pattern_type=row["pattern_type"],
            pattern_value=row["pattern_value"],
            confidence_weight=row["confidence_weight"],
            usage_count=row["usage_count"],
            success_count=row["success_count"],
            success_rate=row["success_rate"],
            active=bool(row["active"]), user_created=bool(row["user_created"]),
            scope_key=row["scope_key"], last_used_at=row["last_used_at"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_composite(row: sqlite3.Row) -> CompositePattern:
        return CompositePattern(
            id=row["id"], category_id=row["category_id"], name=row["name"],
            operator=row["operator"],
            pattern_ids=json.loads(row["pattern_ids"] or "[]"),
            conditions=json.loads(row["conditions"] or "{}"),
            confidence_weight=row["confidence_weight"],
            usage_count=row["usage_count"],
            success_count=row["success_count"],
            success_rate=row["success_rate"],
            active=bool(row["active"]), user_created=bool(row["user_created"]),
            scope_key=row["scope_key"], last_used_at=row["last_used_at"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_preference(row: sqlite3.Row) -> UserCategoryPreference:
        return UserCategoryPreference(
            id=row["id"], scope_key=row["scope_key"],
            context_type=row["context_type"],
            context_value=row["context_value"],
            category_id=row["category_id"],
            usage_count=row["usage_count"],
            preference_weight=row["preference_weight"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )

    @staticmethod
    def _row_to_learning_event(row: sqlite3.Row) -> PatternLearningEvent:
        return PatternLearningEvent(
            id=row["id"], transaction_ref=row["transaction_ref"],
            category_id=row["category_id"],
            was_correct=bool(row["was_correct"]),
            pattern_used=row["pattern_used"],
            confidence_score=row["confidence_score"],
            context_snapshot=json.loads(row["context_snapshot"] or "{}"),
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_expense(row: sqlite3.Row) -> Expense:
        return Expense(
            id=row["id"], scope_key=row["scope_key"], amount=row["amount"],
            transaction_date=row["transaction_date"],
            merchant_name=row["merchant_name"],
            description=row["description"], currency=row["currency"],
            category_id=row["category_id"], confidence=row["confidence"],
            categorization_method=row["categorization_method"],
            categorized_at=row["categorized_at"],
            created_at=row["created_at"], updated_at=row["updated_at"],
        )
