"""Circuit breaker and retry helpers for protected operations.

States:
  closed     normal operation; consecutive failures are counted
  open       every call fails fast with CircuitOpenError
  half_open  entered once ``timeout`` seconds have passed since opening;
             admits up to ``half_open_max_calls`` concurrent trial calls

``success_threshold`` consecutive successes in half_open close the
circuit; any failure in half_open reopens it. Every transition happens
under the breaker's own lock.
"""

from __future__ import annotations

import logging
import random
import threading
import time
from dataclasses import dataclass
from typing import Callable

from expense_categorizer.config import Config
from expense_categorizer.errors import (
    CircuitOpenError,
    ContractViolationError,
    NotFoundError,
    TransientInfrastructureError,
    ValidationError,
)

logger = logging.getLogger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half_open"

# Raised by the protected call but say nothing about the dependency's health
_NEUTRAL_ERRORS = (ValidationError, NotFoundError, ContractViolationError, CircuitOpenError)


@dataclass
class CircuitBreakerState:
    state: str
    failure_count: int
    last_failure_at: float | None
    opened_at: float | None


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        failure_threshold: int = 5,
        success_threshold: int = 1,
        timeout: float = 30.0,
        half_open_max_calls: int = 1,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.success_threshold = success_threshold
        self.timeout = timeout
        self.half_open_max_calls = half_open_max_calls
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._last_failure_at: float | None = None
        self._opened_at: float | None = None

    # Callers must hold self._lock for the _-prefixed helpers

    def _maybe_half_open(self) -> None:
        if self._state == OPEN and self._clock() - self._opened_at >= self.timeout:
            self._state = HALF_OPEN
            self._success_count = 0
            self._half_open_calls = 0
            logger.info("Circuit %s half-open after %.1fs", self.name, self.timeout)

    def _open(self) -> None:
        self._state = OPEN
        self._opened_at = self._clock()
        self._success_count = 0
        self._half_open_calls = 0
        logger.warning("Circuit %s opened after %d failures", self.name, self._failure_count)

    def _close(self) -> None:
        self._state = CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._half_open_calls = 0
        self._opened_at = None
        logger.info("Circuit %s closed", self.name)

    @property
    def state(self) -> str:
        with self._lock:
            self._maybe_half_open()
            return self._state

    def snapshot(self) -> CircuitBreakerState:
        with self._lock:
            self._maybe_half_open()
            return CircuitBreakerState(
                state=self._state,
                failure_count=self._failure_count,
                last_failure_at=self._last_failure_at,
                opened_at=self._opened_at,
            )

    def _acquire(self) -> bool:
        """Admit a call or raise CircuitOpenError. Returns True for a trial call."""
        with self._lock:
            self._maybe_half_open()
            if self._state == OPEN:
                remaining = max(0.0, self.timeout - (self._clock() - self._opened_at))
                raise CircuitOpenError(self.name, retry_after=remaining)
            if self._state == HALF_OPEN:
                if self._half_open_calls >= self.half_open_max_calls:
                    raise CircuitOpenError(self.name, retry_after=0.0)
                self._half_open_calls += 1
                return True
            return False

    def _release_trial(self) -> None:
        with self._lock:
            if self._state == HALF_OPEN and self._half_open_calls > 0:
                self._half_open_calls -= 1

    def record_success(self) -> None:
        with self._lock:
            if self._state == HALF_OPEN:
                self._success_count += 1
                self._half_open_calls = max(0, self._half_open_calls - 1)
                if self._success_count >= self.success_threshold:
                    self._close()
            elif self._state == CLOSED:
                self._failure_count = 0

    def record_failure(self) -> None:
        with self._lock:
            self._last_failure_at = self._clock()
            self._failure_count += 1
            if self._state == HALF_OPEN:
                self._open()
            elif self._state == CLOSED and self._failure_count >= self.failure_threshold:
                self._open()

    def call(self, fn: Callable, *args, **kwargs):
        """Run fn through the breaker.

        Validation, not-found, contract and downstream circuit-open
        errors pass through without counting as failures.
        """
        trial = self._acquire()
        try:
            result = fn(*args, **kwargs)
        except _NEUTRAL_ERRORS:
            if trial:
                self._release_trial()
            raise
        except Exception:
            self.record_failure()
            raise
        self.record_success()
        return result

    def reset(self) -> None:
        with self._lock:
            self._close()
            self._last_failure_at = None


class CircuitBreakerRegistry:
    """One breaker per protected operation, built from config on first use."""

    def __init__(self, config: Config | None = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or Config.defaults()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    def get(self, operation: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(operation)
            if breaker is None:
                s = self.config.circuit_breaker_for(operation)
                breaker = CircuitBreaker(
                    operation,
                    failure_threshold=int(s["failure_threshold"]),
                    success_threshold=int(s["success_threshold"]),
                    timeout=float(s["timeout_seconds"]),
                    half_open_max_calls=int(s["half_open_max_calls"]),
                    clock=self._clock,
                )
                self._breakers[operation] = breaker
            return breaker

    def states(self) -> dict[str, str]:
        with self._lock:
            breakers = list(self._breakers.values())
        return {b.name: b.state for b in breakers}

    def reset_all(self) -> None:
        with self._lock:
            breakers = list(self._breakers.values())
        for b in breakers:
            b.reset()


def backoff_delay(attempt: int, base_delay: float = 0.1, max_delay: float = 5.0,
                  jitter: float = 0.1, rng: Callable[[], float] = random.random) -> float:
    """Exponential delay for ``attempt`` (0-based) with proportional jitter."""
    delay = min(base_delay * (2 ** attempt), max_delay)
    return min(delay + delay * jitter * rng(), max_delay)


def retry_with_backoff(
    fn: Callable,
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: float = 5.0,
    jitter: float = 0.1,
    retry_on: tuple[type[BaseException], ...] = (TransientInfrastructureError,),
    sleep: Callable[[float], None] = time.sleep,
):
    """Call fn, retrying ``retry_on`` errors up to ``max_retries`` times.

    CircuitOpenError is never retried: the breaker already decided.
    """
    attempt = 0
    while True:
        try:
            return fn()
        except CircuitOpenError:
            raise
        except retry_on as e:
            if attempt >= max_retries:
                raise
            delay = backoff_delay(attempt, base_delay, max_delay, jitter)
            logger.warning("Attempt %d failed (%s); retrying in %.2fs", attempt + 1, e, delay)
            sleep(delay)
            attempt += 1
