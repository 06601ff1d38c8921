"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.

Rate limiting and debouncing have no error types here: a rejected clap is a
normal outcome of the accounting service, not an exception.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    hint: str
    max_length: int
    actual_length: int
    operation: str
    backend: str
    retry_after: float
    resource_id: str
    amount: int
    request_id: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input validation fails, before any store is touched."""


class ForbiddenAppError(AppError):
    """Raised when a caller is not allowed to perform the request."""


class StoreUnavailableError(AppError):
    """Raised when a backing store fails or times out.

    Transient and retryable by the caller. Never interpreted as an admission
    decision.
    """


class InconsistentStateError(AppError):
    """Raised when an admitted increment could not be counted."""
