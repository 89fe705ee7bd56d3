"""Per-type pattern matching, composite evaluation, and effective confidence.

Pattern types:
  merchant      substring of the merchant name, or fuzzy similarity at
                or above the configured threshold
  description   substring of the description (falls back to merchant)
  keyword       same text as description
  regex         case-insensitive search over the description
  amount_range  "min-max", negatives allowed ("-50--10")
  time          morning/afternoon/evening/night/weekend/weekday or
                "HH:MM-HH:MM" (may cross midnight)

Text scores are 1.0 for exact/substring hits and the similarity itself
for fuzzy merchant hits; 0.0 means no match.
"""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime

import regex

from expense_categorizer.categorize.fuzzy import FuzzyMatcher
from expense_categorizer.categorize.records import (
    description_text,
    merchant_text,
    prepare_text,
    record_amount,
    record_datetime,
)
from expense_categorizer.database.models import (
    COMPOSITE_OPERATORS,
    PATTERN_TYPES,
    CategorizationPattern,
    CompositePattern,
)
from expense_categorizer.errors import ValidationError

logger = logging.getLogger(__name__)

# Nested quantifiers that can backtrack exponentially: (a+)+, [a*]*, a++, (x.+y)*,
# and quantified alternation groups such as (a|a)+
_DANGEROUS_REGEX = [
    re.compile(r"\([^)]*[+*]\)[+*]"),
    re.compile(r"\[[^\]]*[+*]\][+*]"),
    re.compile(r"(\w+[+*])+[+*]"),
    re.compile(r"\(.+[+*].+\)[+*]"),
    re.compile(r"\([^)]*\|[^)]*\)[+*{]"),
]

# Trial subjects run against every new regex under the timeout
_TRIAL_SUBJECTS = ("a" * 100, "a" * 30 + "!", "1" * 30 + "!")

_AMOUNT_SPLIT_RE = re.compile(r"(?<=\d)-(?=-?\d)")
_TIME_RANGE_RE = re.compile(r"^(\d{1,2}):(\d{2})-(\d{1,2}):(\d{2})$")

# Named periods → inclusive hour ranges
_PERIODS: dict[str, tuple[tuple[int, int], ...]] = {
    "morning": ((6, 11),),
    "afternoon": ((12, 16),),
    "evening": ((17, 20),),
    "night": ((21, 23), (0, 5)),
}


# ── Regex safety ────────────────────────────────────────


class RegexGuard:
    """Validates, caches and runs user regex patterns with a time limit.

    Patterns with nested quantifiers are rejected outright, as are
    patterns whose compilation takes longer than ``timeout_ms`` or that
    fail to finish a trial match within it. Every search runs under the
    same timeout; a search that times out counts as no match. Subject
    text is truncated to ``max_text_length`` before searching. A
    rejected value is cached as None so it is never recompiled.
    """

    def __init__(self, timeout_ms: float = 100, max_pattern_length: int = 500,
                 max_text_length: int = 1000):
        self.timeout_ms = timeout_ms
        self.max_pattern_length = max_pattern_length
        self.max_text_length = max_text_length
        self._cache: dict[str, regex.Pattern | None] = {}
        self._lock = threading.Lock()

    @property
    def timeout(self) -> float:
        return max(self.timeout_ms, 0) / 1000

    def check(self, value: str) -> regex.Pattern:
        """Compile ``value`` or raise ValidationError explaining why not."""
        if not value:
            raise ValidationError("Regex pattern is empty")
        if len(value) > self.max_pattern_length:
            raise ValidationError(
                f"Regex pattern longer than {self.max_pattern_length} characters",
                context={"pattern_value": value[:50]},
            )
        if any(d.search(value) for d in _DANGEROUS_REGEX):
            raise ValidationError(
                "Regex contains nested quantifiers (catastrophic backtracking risk)",
                context={"pattern_value": value},
            )
        start = time.monotonic()
        try:
            compiled = regex.compile(value, regex.IGNORECASE)
        except regex.error as e:
            raise ValidationError(
                f"Invalid regular expression: {e}", context={"pattern_value": value},
            ) from e
        elapsed_ms = (time.monotonic() - start) * 1000
        if elapsed_ms > self.timeout_ms:
            raise ValidationError(
                f"Regex compilation took {elapsed_ms:.1f}ms",
                context={"pattern_value": value},
            )
        try:
            for subject in _TRIAL_SUBJECTS:
                compiled.search(subject, timeout=self.timeout)
        except TimeoutError as e:
            raise ValidationError(
                f"Regex trial match exceeded {self.timeout_ms}ms",
                context={"pattern_value": value},
            ) from e
        return compiled

    def compiled(self, value: str) -> regex.Pattern | None:
        with self._lock:
            if value in self._cache:
                return self._cache[value]
        try:
            compiled = self.check(value)
        except ValidationError as e:
            logger.warning("Rejecting regex pattern %r: %s", value, e)
            compiled = None
        with self._lock:
            self._cache[value] = compiled
        return compiled

    def search(self, value: str, text: str) -> bool:
        compiled = self.compiled(value)
        if compiled is None or not text:
            return False
        try:
            return compiled.search(text[: self.max_text_length], timeout=self.timeout) is not None
        except TimeoutError:
            logger.warning("Regex %r timed out after %sms; treating as no match",
                           value, self.timeout_ms)
            return False


# ── Value parsing ───────────────────────────────────────


def parse_amount_range(value: str) -> tuple[float, float] | None:
    parts = _AMOUNT_SPLIT_RE.split(value.strip())
    if len(parts) != 2:
        return None
    try:
        low, high = float(parts[0]), float(parts[1])
    except ValueError:
        return None
    if low > high:
        return None
    return low, high


def parse_time_range(value: str) -> tuple[int, int] | None:
    """Return (start_minute, end_minute) for "HH:MM-HH:MM"."""
    m = _TIME_RANGE_RE.match(value.strip())
    if not m:
        return None
    sh, sm, eh, em = (int(g) for g in m.groups())
    if sh > 23 or eh > 23 or sm > 59 or em > 59:
        return None
    return sh * 60 + sm, eh * 60 + em


def _in_minute_range(minute: int, start: int, end: int) -> bool:
    if end < start:
        # crosses midnight
        return minute >= start or minute <= end
    return start <= minute <= end


def time_matches(value: str, moment: datetime | None, has_time: bool) -> bool:
    """Calendar predicate. Date-only records only answer weekend/weekday."""
    if moment is None:
        return False
    key = value.strip().lower()
    if key == "weekend":
        return moment.weekday() >= 5
    if key == "weekday":
        return moment.weekday() < 5
    if not has_time:
        return False
    if key in _PERIODS:
        return any(lo <= moment.hour <= hi for lo, hi in _PERIODS[key])
    span = parse_time_range(key)
    if span is None:
        return False
    return _in_minute_range(moment.hour * 60 + moment.minute, *span)


def validate_pattern_value(pattern_type: str, value: str, guard: RegexGuard) -> None:
    """Raise ValidationError if value is not usable for pattern_type."""
    if pattern_type not in PATTERN_TYPES:
        raise ValidationError(
            f"Unknown pattern type: {pattern_type}",
            context={"pattern_type": pattern_type},
        )
    if not value or not value.strip():
        raise ValidationError("Pattern value is empty", context={"pattern_type": pattern_type})
    if pattern_type == "regex":
        guard.check(value)
    elif pattern_type == "amount_range" and parse_amount_range(value) is None:
        raise ValidationError(
            f"Amount range must be 'min-max': {value}", context={"pattern_value": value},
        )
    elif pattern_type == "time":
        key = value.strip().lower()
        if key not in _PERIODS and key not in ("weekend", "weekday") \
                and parse_time_range(key) is None:
            raise ValidationError(
                f"Unrecognized time pattern: {value}", context={"pattern_value": value},
            )


# ── Effective confidence ────────────────────────────────


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def effective_confidence(
    pattern: CategorizationPattern,
    min_weight: float = 0.1,
    max_weight: float = 5.0,
    min_observations: int = 5,
) -> float:
    """Weight scaled by track record, clamped to [min_weight, max_weight].

    With at least ``min_observations`` uses the factor is
    0.5 + 0.5 * success_rate; before that a flat 0.7.
    """
    if pattern.usage_count >= min_observations:
        factor = 0.5 + 0.5 * pattern.success_rate
    else:
        factor = 0.7
    return clamp(pattern.confidence_weight * factor, min_weight, max_weight)


def composite_effective_confidence(
    comp: CompositePattern,
    component_confidences: list[float],
    min_weight: float = 0.1,
    max_weight: float = 5.0,
    min_observations: int = 5,
) -> float:
    if component_confidences:
        avg = sum(component_confidences) / len(component_confidences) / max_weight
    else:
        avg = 0.0
    base = comp.confidence_weight * (0.7 + 0.3 * clamp(avg, 0.0, 1.0))
    if comp.usage_count >= min_observations:
        base *= 0.5 + 0.5 * comp.success_rate
    else:
        base *= 0.8
    return clamp(base, min_weight, max_weight)


# ── Matching ────────────────────────────────────────────


class PatternMatcher:
    """Evaluates patterns and composites against a record."""

    def __init__(self, fuzzy: FuzzyMatcher | None = None,
                 guard: RegexGuard | None = None, fuzzy_threshold: float = 0.8):
        self.fuzzy = fuzzy or FuzzyMatcher()
        self.guard = guard or RegexGuard()
        self.fuzzy_threshold = fuzzy_threshold

    def text_score(self, pattern: CategorizationPattern, record: object,
                   normalize: bool = True) -> float:
        ptype = pattern.pattern_type
        if ptype == "merchant":
            return self._merchant_score(pattern.pattern_value, merchant_text(record), normalize)
        if ptype in ("description", "keyword"):
            return self._substring_score(pattern.pattern_value, description_text(record), normalize)
        if ptype == "regex":
            return 1.0 if self.guard.search(pattern.pattern_value, description_text(record)) else 0.0
        if ptype == "amount_range":
            amount = record_amount(record)
            bounds = parse_amount_range(pattern.pattern_value)
            if amount is None or bounds is None:
                return 0.0
            return 1.0 if bounds[0] <= amount <= bounds[1] else 0.0
        if ptype == "time":
            moment, has_time = record_datetime(record)
            return 1.0 if time_matches(pattern.pattern_value, moment, has_time) else 0.0
        logger.debug("Unknown pattern type %s on pattern %s", ptype, pattern.id)
        return 0.0

    def matches(self, pattern: CategorizationPattern, record: object,
                normalize: bool = True) -> bool:
        return self.text_score(pattern, record, normalize) > 0.0

    def _substring_score(self, value: str, text: str, normalize: bool) -> float:
        needle = prepare_text(value, normalize).strip()
        haystack = prepare_text(text, normalize)[: self.guard.max_text_length]
        if not needle or not haystack:
            return 0.0
        return 1.0 if needle in haystack else 0.0

    def _merchant_score(self, value: str, text: str, normalize: bool) -> float:
        exact = self._substring_score(value, text, normalize)
        if exact:
            return exact
        if not text or not value:
            return 0.0
        score = self.fuzzy.similarity(text, value, normalize=normalize)
        return score if score >= self.fuzzy_threshold else 0.0

    def composite_matches(
        self,
        comp: CompositePattern,
        components: dict[str, CategorizationPattern],
        record: object,
        normalize: bool = True,
    ) -> bool:
        """Apply the composite's operator, then its extra conditions.

        Missing or inactive component patterns count as non-matching, and
        a composite without components never matches.
        """
        if not comp.pattern_ids:
            return False
        hits = []
        for pid in comp.pattern_ids:
            p = components.get(pid)
            hits.append(p is not None and p.active and self.matches(p, record, normalize))

        op = comp.operator.upper()
        if op == "AND":
            ok = bool(hits) and all(hits)
        elif op == "OR":
            ok = any(hits)
        elif op == "NOT":
            ok = not any(hits)
        else:
            logger.warning("Composite %s has unknown operator %s", comp.id, comp.operator)
            return False
        return ok and self.conditions_hold(comp.conditions, record, normalize)

    def conditions_hold(self, conditions: dict, record: object, normalize: bool = True) -> bool:
        if not conditions:
            return True
        amount = record_amount(record)
        if "min_amount" in conditions:
            if amount is None or amount < float(conditions["min_amount"]):
                return False
        if "max_amount" in conditions:
            if amount is None or amount > float(conditions["max_amount"]):
                return False

        moment, has_time = record_datetime(record)
        days = conditions.get("days_of_week")
        if days:
            if moment is None or moment.weekday() not in {int(d) for d in days}:
                return False
        ranges = conditions.get("time_ranges")
        if ranges:
            if moment is None or not has_time:
                return False
            minute = moment.hour * 60 + moment.minute
            in_any = False
            for r in ranges:
                span = parse_time_range(f"{r.get('start', '')}-{r.get('end', '')}")
                if span and _in_minute_range(minute, *span):
                    in_any = True
                    break
            if not in_any:
                return False

        blacklist = conditions.get("merchant_blacklist")
        if blacklist:
            merchant = prepare_text(merchant_text(record), normalize)
            for banned in blacklist:
                needle = prepare_text(banned, normalize).strip()
                if needle and needle in merchant:
                    return False
        return True


def validate_composite(comp: CompositePattern) -> None:
    if comp.operator.upper() not in COMPOSITE_OPERATORS:
        raise ValidationError(
            f"Unknown composite operator: {comp.operator}",
            context={"operator": comp.operator},
        )
    if not comp.pattern_ids:
        raise ValidationError("Composite pattern needs at least one component pattern")
    if not comp.name or not comp.name.strip():
        raise ValidationError("Composite pattern name is empty")
