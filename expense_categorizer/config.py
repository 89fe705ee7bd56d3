"""YAML configuration loader for the categorization engine.

All tunables live in a single engine.yaml inside the config directory.
Every key has a built-in default, so a missing file or a partial file
still yields a complete configuration.
"""

from __future__ import annotations

import copy
from pathlib import Path

import yaml

DEFAULTS: dict = {
    "categorization": {
        "min_confidence": 0.5,
        "auto_categorize_threshold": 0.70,
        "high_confidence_threshold": 0.85,
        "max_alternatives": 2,
        "check_user_preferences": True,
        "auto_update": True,
        "normalize": True,
        "fuzzy_threshold": 0.8,
        "corroboration_boost": 0.1,
    },
    "patterns": {
        "min_weight": 0.1,
        "max_weight": 5.0,
        "default_weight": 1.0,
        "composite_default_weight": 1.5,
        "min_observations": 5,
        "regex_timeout_ms": 100,
        "max_regex_length": 500,
        "max_text_length": 1000,
        "chunk_size": 500,
    },
    "circuit_breakers": {
        "default": {
            "failure_threshold": 5,
            "success_threshold": 1,
            "timeout_seconds": 30,
            "half_open_max_calls": 1,
        },
    },
    "batch": {
        "parallel_threshold": 10,
        "max_threads": 4,
    },
    "retry": {
        "max_retries": 3,
        "base_delay": 0.1,
        "max_delay": 5.0,
        "jitter": 0.1,
    },
    "learning": {
        "correct_boost": 0.15,
        "incorrect_penalty": 0.25,
        "user_created_boost": 0.20,
        "decay_factor": 0.9,
        "decay_after_days": 30,
        "deactivation_threshold": 0.3,
        "min_corrections": 3,
        "merge_similarity": 0.85,
        "learned_pattern_weight": 1.2,
        "max_keywords": 5,
        "min_usage_for_deactivation": 20,
        "min_success_rate": 0.3,
    },
    "preferences": {
        "max_weight": 10.0,
        "confidence_bonus": 0.15,
    },
    "conflicts": {
        "window_days": 3,
        "amount_tolerance": 0.10,
        "candidate_limit": 20,
        "duplicate_threshold": 90,
        "similar_threshold": 70,
    },
}


def _merge(base: dict, override: dict) -> dict:
    """Recursively overlay override onto a copy of base."""
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Loads and provides access to the engine configuration."""

    def __init__(self, config_dir: Path | str = "config"):
        self.config_dir = Path(config_dir)
        if not self.config_dir.is_dir():
            raise FileNotFoundError(f"Config directory not found: {self.config_dir}")

        self._engine: dict | None = None

    @classmethod
    def defaults(cls) -> Config:
        """Build a Config that uses only the built-in defaults."""
        config = cls.__new__(cls)
        config.config_dir = None
        config._engine = copy.deepcopy(DEFAULTS)
        return config

    def _load(self, filename: str) -> dict:
        path = self.config_dir / filename
        if not path.exists():
            return {}
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                raise ValueError(f"Invalid YAML in {path}: {e}") from e
        if data is None:
            raise ValueError(f"Empty config file: {path}")
        if not isinstance(data, dict):
            raise ValueError(f"Expected a mapping at top level of {path}")
        return data

    @property
    def engine(self) -> dict:
        if self._engine is None:
            self._engine = _merge(DEFAULTS, self._load("engine.yaml"))
        return self._engine

    @property
    def categorization(self) -> dict:
        return self.engine["categorization"]

    @property
    def patterns(self) -> dict:
        return self.engine["patterns"]

    @property
    def batch(self) -> dict:
        return self.engine["batch"]

    @property
    def retry(self) -> dict:
        return self.engine["retry"]

    @property
    def learning(self) -> dict:
        return self.engine["learning"]

    @property
    def preferences(self) -> dict:
        return self.engine["preferences"]

    @property
    def conflicts(self) -> dict:
        return self.engine["conflicts"]

    @property
    def min_confidence(self) -> float:
        """Minimum combined score for a candidate to be accepted."""
        return float(self.categorization["min_confidence"])

    @property
    def normalize(self) -> bool:
        """Default normalization mode; callers may override per call."""
        return bool(self.categorization["normalize"])

    @property
    def weight_range(self) -> tuple[float, float]:
        return float(self.patterns["min_weight"]), float(self.patterns["max_weight"])

    def circuit_breaker_for(self, operation: str) -> dict:
        """Return breaker settings for an operation.

        Operation-specific keys override the ``default`` entry, so
        engine.yaml only needs to list what differs.
        """
        breakers = self.engine["circuit_breakers"]
        settings = dict(DEFAULTS["circuit_breakers"]["default"])
        settings.update(breakers.get("default", {}))
        settings.update(breakers.get(operation, {}))
        return settings
