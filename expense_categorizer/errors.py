"""Error taxonomy for the categorization engine.

Expected failures are carried on results as ``error``/``error_kind``
rather than raised across the public boundary. Only
ContractViolationError is allowed to escape.
"""

from __future__ import annotations


class CategorizationError(Exception):
    """Base class for expected engine failures."""

    kind = "error"
    user_message = "Categorization failed"

    def __init__(self, message: str, context: dict | None = None,
                 retry_after: float | None = None):
        self.context = context or {}
        self.retry_after = retry_after
        super().__init__(message)


class ValidationError(CategorizationError):
    """Malformed or missing input. Never retried."""

    kind = "validation"
    user_message = "Invalid input"


class NotFoundError(CategorizationError):
    """A referenced category or pattern does not exist."""

    kind = "not_found"
    user_message = "Required data not found"


class TransientInfrastructureError(CategorizationError):
    """Storage hiccup; eligible for breaker-gated retry."""

    kind = "transient"
    user_message = "Database connection error"


class CircuitOpenError(CategorizationError):
    """Raised while a circuit is open so callers can fall back."""

    kind = "circuit_open"
    user_message = "Service temporarily unavailable"

    def __init__(self, operation: str, retry_after: float | None = None):
        self.operation = operation
        super().__init__(
            f"Circuit '{operation}' is open",
            context={"operation": operation},
            retry_after=retry_after,
        )


class UnexpectedError(CategorizationError):
    kind = "unexpected"
    user_message = "Categorization failed"


class ContractViolationError(TypeError):
    """Programming defect, e.g. a required collaborator is missing."""
