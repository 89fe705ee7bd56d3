"""Logging setup for applications embedding the engine."""

from __future__ import annotations

import logging
import os


def setup_logging(level: str | None = None) -> int:
    """Configure logging based on CATEGORIZER_LOG_LEVEL env var.

    An explicit ``level`` wins over the environment. Returns the numeric
    level applied.
    """
    name = (level or os.environ.get("CATEGORIZER_LOG_LEVEL", "INFO")).upper()
    numeric = getattr(logging, name, logging.INFO)
    if not isinstance(numeric, int):
        numeric = logging.INFO
    logging.basicConfig(
        level=numeric,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    logging.getLogger().setLevel(numeric)
    return numeric
