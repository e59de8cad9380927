"""
Error hierarchy shared by workflows, ports and adapters.

Adapters translate transport failures into these classes so the workflows
can decide per error kind whether to retry, skip an item, or abort a batch.
"""

from __future__ import annotations

from dataclasses import dataclass


class BudgetBridgeError(Exception):
    """Base exception for all pipeline errors."""

    pass


class ValidationError(BudgetBridgeError):
    """Input rejected before any work was done. Never retried automatically."""

    pass


class InvalidDateRange(ValidationError):
    """Import date range is inverted, in the future, or too long."""

    pass


class SubmissionValidationError(ValidationError):
    """Budgeting service rejected the submitted transaction."""

    pass


class AuthenticationError(BudgetBridgeError):
    """External token expired, invalid, or missing."""

    pass


class NetworkError(BudgetBridgeError):
    """Transient transport failure. Eligible for bounded retry."""

    pass


class ServiceUnavailable(NetworkError):
    """External service answered with a 5xx or timed out."""

    pass


class RateLimitError(NetworkError):
    """External service asked us to slow down."""

    def __init__(self, message: str, retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__(message)


class ResponseParsingError(BudgetBridgeError):
    """Provider returned a payload we could not interpret."""

    def __init__(self, message: str, raw_payload: str | None = None):
        self.raw_payload = raw_payload[:500] if raw_payload else None
        super().__init__(message)


class IllegalStateError(BudgetBridgeError):
    """Invariant violation, e.g. an illegal status transition."""

    pass


class TokenDecryptionError(BudgetBridgeError):
    """Stored credential could not be decrypted (wrong key or corrupted blob)."""

    def __init__(self, account_id: str, reason: str):
        self.account_id = account_id
        super().__init__(f"Cannot decrypt token for account '{account_id}': {reason}")


class AccountNotFoundError(BudgetBridgeError):
    """No source account or credential record exists for the given id."""

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"Account not found: {account_id}")


class RetryExhaustedError(NetworkError):
    """All retry attempts (or the overall deadline) were used up."""

    def __init__(self, attempts: int, last_error: Exception | None):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"Gave up after {attempts} attempt(s): {last_error}")


@dataclass(frozen=True)
class ItemFailure:
    """Per-item failure reported in a batch result."""

    transaction_id: str
    reason: str
    raw_payload: str | None = None
