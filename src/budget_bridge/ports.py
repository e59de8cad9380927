"""
Ports: the only contracts the workflows know about external systems.

Adapters (bank_client, ynab_client, categorization.provider) implement these
protocols and translate transport failures into budget_bridge.errors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Protocol

from .schemas.rules import PatternType
from .schemas.transaction import RawTransaction, SourceAccount


@dataclass
class RowFailure:
    """A statement row the provider could not turn into a RawTransaction."""

    reason: str
    provider_transaction_id: str | None = None
    raw_payload: str | None = None


@dataclass
class FetchResult:
    """Parsed statement rows plus the rows that failed to parse."""

    transactions: list[RawTransaction] = field(default_factory=list)
    failures: list[RowFailure] = field(default_factory=list)


class TransactionProvider(Protocol):
    """Bank statement source."""

    def fetch(
        self,
        token: str,
        account: SourceAccount,
        date_from: date,
        date_to: date,
    ) -> FetchResult:
        """
        Rows that cannot be parsed are reported in ``FetchResult.failures``;
        the remaining rows are still returned.

        Raises:
            AuthenticationError, InvalidDateRange, NetworkError
        """
        ...


@dataclass
class RuleSuggestion:
    """A cleanup rule proposed by the categorization provider."""

    pattern: str
    pattern_type: PatternType
    replacement: str
    confidence: float
    category: str | None = None
    explanation: str | None = None


@dataclass
class CleanupResult:
    """Provider answer for one transaction description."""

    original: str
    payee: str | None
    category: str | None
    confidence: float
    memo: str | None = None
    payee_confidence: float | None = None
    rule_suggestion: RuleSuggestion | None = None


class CategorizationProvider(Protocol):
    """AI (or other) fallback for payee cleanup and categorization."""

    def cleanup(self, text: str, context: dict[str, str]) -> CleanupResult:
        """
        Raises:
            AuthenticationError, RateLimitError, ResponseParsingError, ServiceUnavailable
        """
        ...


@dataclass
class SubmissionRequest:
    """Everything the budgeting service needs for one transaction."""

    import_id: str
    date: date
    amount: Decimal
    payee_name: str
    category_name: str
    category_external_id: str | None = None
    memo: str | None = None
    cleared: bool = True
    approved: bool = False
    extra: dict[str, str] = field(default_factory=dict)


class TransactionSubmissionPort(Protocol):
    """Budgeting service sink."""

    def submit(self, external_account_id: str, request: SubmissionRequest) -> str:
        """
        Returns:
            The budgeting service's id for the created transaction

        Raises:
            AuthenticationError, SubmissionValidationError, NetworkError
        """
        ...
