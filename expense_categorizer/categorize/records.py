"""Field access and text extraction over heterogeneous record shapes.

Callers hand the engine raw strings, plain dicts, or domain objects
(e.g. database.models.Expense). One small reader per shape answers
"what is field X?"; unrecognized shapes read as empty rather than
raising.
"""

from __future__ import annotations

import re
import unicodedata
from collections.abc import Mapping, MutableMapping
from datetime import date, datetime

# Field name → accepted aliases, first hit wins
_ALIASES: dict[str, tuple[str, ...]] = {
    "id": ("id", "transaction_ref", "expense_id"),
    "merchant_name": ("merchant_name", "merchant"),
    "description": ("description", "memo"),
    "amount": ("amount",),
    "transaction_date": ("transaction_date", "date"),
    "scope_key": ("scope_key", "account_id", "email_account_id"),
    "category_id": ("category_id",),
    "currency": ("currency",),
}

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: str | None) -> str:
    """Case-fold, strip diacritics, and collapse whitespace."""
    if not text:
        return ""
    decomposed = unicodedata.normalize("NFKD", str(text))
    stripped = "".join(c for c in decomposed if not unicodedata.combining(c))
    return _WHITESPACE_RE.sub(" ", stripped.casefold()).strip()


def prepare_text(text: str | None, normalize: bool) -> str:
    """Normalized text, or the raw text untouched when normalize is off."""
    if normalize:
        return normalize_text(text)
    return "" if text is None else str(text)


# ── Shape readers ───────────────────────────────────────


class _StringReader:
    """A bare string stands for both merchant name and description."""

    def get(self, record: str, name: str):
        if name in ("merchant_name", "description"):
            return record
        return None


class _MappingReader:
    def get(self, record: Mapping, name: str):
        for alias in _ALIASES.get(name, (name,)):
            value = record.get(alias)
            if value is not None:
                return value
        return None


class _ObjectReader:
    def get(self, record: object, name: str):
        for alias in _ALIASES.get(name, (name,)):
            value = getattr(record, alias, None)
            if value is not None and not callable(value):
                return value
        return None


class _NullReader:
    def get(self, record: object, name: str):
        return None


_STRING = _StringReader()
_MAPPING = _MappingReader()
_OBJECT = _ObjectReader()
_NULL = _NullReader()


def reader_for(record: object):
    if isinstance(record, str):
        return _STRING
    if isinstance(record, Mapping):
        return _MAPPING
    if record is None or isinstance(record, (int, float, bytes, list, tuple, set)):
        return _NULL
    if any(hasattr(record, a) for a in ("merchant_name", "merchant", "description")):
        return _OBJECT
    return _NULL


def get_field(record: object, name: str):
    return reader_for(record).get(record, name)


def merchant_text(record: object) -> str:
    value = get_field(record, "merchant_name")
    return "" if value is None else str(value)


def description_text(record: object) -> str:
    """Description, falling back to the merchant name."""
    value = get_field(record, "description")
    if value is None or str(value).strip() == "":
        return merchant_text(record)
    return str(value)


def extract_text(record: object) -> str:
    """Canonical matching text: merchant name, else description, else ''."""
    merchant = merchant_text(record)
    if merchant.strip():
        return merchant
    value = get_field(record, "description")
    return "" if value is None else str(value)


def record_amount(record: object) -> float | None:
    value = get_field(record, "amount")
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def record_datetime(record: object) -> tuple[datetime | None, bool]:
    """Return (timestamp, has_time_of_day) for the record's date field."""
    value = get_field(record, "transaction_date")
    if isinstance(value, datetime):
        return value, True
    if isinstance(value, date):
        return datetime(value.year, value.month, value.day), False
    if isinstance(value, str) and value.strip():
        text = value.strip()
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None, False
        return parsed, len(text) > 10
    return None, False


def record_scope(record: object) -> str | None:
    value = get_field(record, "scope_key")
    return None if value is None else str(value)


def record_ref(record: object) -> str | None:
    value = get_field(record, "id")
    return None if value is None else str(value)


def write_categorization(record: object, category_id: str, confidence: float,
                         method: str, categorized_at: str) -> bool:
    """Write the decision back onto the record. Returns False if read-only."""
    apply = getattr(record, "apply_categorization", None)
    if callable(apply):
        apply(category_id, confidence, method)
        return True
    if isinstance(record, MutableMapping):
        record["category_id"] = category_id
        record["confidence"] = confidence
        record["categorization_method"] = method
        record["categorized_at"] = categorized_at
        return True
    if reader_for(record) is _OBJECT:
        record.category_id = category_id
        record.confidence = confidence
        record.categorization_method = method
        record.categorized_at = categorized_at
        return True
    return False
