"""
Canonical transaction model (SSOT).

Two records per bank movement:
- Transaction: immutable, what the bank reported. Created once at import.
- ProcessingState: mutable, how far the pipeline got with it.

Both share the composite TransactionId (source account, provider id).
All status changes go through ProcessingState methods so the
transition table is enforced in exactly one place.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..errors import IllegalStateError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass(frozen=True, order=True)
class TransactionId:
    """Composite identity: source account plus the bank-assigned transaction id."""

    source_account_id: str
    provider_transaction_id: str

    @property
    def key(self) -> str:
        """Stable string form used for locking and logging."""
        return f"{self.source_account_id}:{self.provider_transaction_id}"

    def __str__(self) -> str:
        return self.key


# ============================================================================
# Confidence
# ============================================================================


@dataclass(frozen=True)
class ConfidenceScore:
    """Confidence in a categorization decision, always within [0.0, 1.0].

    Construct with ``ConfidenceScore.of(x)``; out-of-range input is clamped.
    """

    value: float

    MIN = 0.0
    MAX = 1.0
    RELIABLE_THRESHOLD = 0.7

    def __post_init__(self) -> None:
        if not (self.MIN <= self.value <= self.MAX):
            raise ValueError(f"Confidence must be in [0, 1], got {self.value}")

    @classmethod
    def of(cls, value: float) -> "ConfidenceScore":
        return cls(clamp_confidence(value))

    def exceeds(self, threshold: float) -> bool:
        return self.value > threshold

    @property
    def is_reliable(self) -> bool:
        return self.exceeds(self.RELIABLE_THRESHOLD)

    @property
    def is_high(self) -> bool:
        return self.value >= 0.8

    @property
    def is_medium(self) -> bool:
        return 0.5 <= self.value < 0.8

    @property
    def is_low(self) -> bool:
        return self.value < 0.5


def clamp_confidence(value: float) -> float:
    """Clamp a raw score into [0.0, 1.0]. NaN maps to 0.0."""
    value = float(value)
    if value != value:
        return ConfidenceScore.MIN
    return max(ConfidenceScore.MIN, min(ConfidenceScore.MAX, value))


# ============================================================================
# Transaction (immutable)
# ============================================================================


@dataclass(frozen=True)
class RawTransaction:
    """A bank movement as returned by a TransactionProvider, before import."""

    provider_transaction_id: str
    date: date
    amount: Decimal
    currency: str
    counter_account: Optional[str] = None
    counter_bank_code: Optional[str] = None
    counter_bank_name: Optional[str] = None
    counterparty_name: Optional[str] = None
    variable_symbol: Optional[str] = None
    constant_symbol: Optional[str] = None
    specific_symbol: Optional[str] = None
    user_identification: Optional[str] = None
    message: Optional[str] = None
    transaction_type: str = ""
    comment: Optional[str] = None


@dataclass(frozen=True)
class Transaction:
    """Immutable record of a single bank movement."""

    id: TransactionId
    date: date
    amount: Decimal  # signed: negative = outflow
    currency: str
    imported_at: datetime
    counter_account: Optional[str] = None
    counter_bank_code: Optional[str] = None
    counter_bank_name: Optional[str] = None
    counterparty_name: Optional[str] = None
    variable_symbol: Optional[str] = None
    constant_symbol: Optional[str] = None
    specific_symbol: Optional[str] = None
    user_identification: Optional[str] = None
    message: Optional[str] = None
    transaction_type: str = ""
    comment: Optional[str] = None

    @classmethod
    def from_raw(
        cls,
        source_account_id: str,
        raw: RawTransaction,
        imported_at: datetime | None = None,
    ) -> "Transaction":
        return cls(
            id=TransactionId(source_account_id, raw.provider_transaction_id),
            date=raw.date,
            amount=raw.amount,
            currency=raw.currency,
            imported_at=imported_at or utcnow(),
            counter_account=raw.counter_account,
            counter_bank_code=raw.counter_bank_code,
            counter_bank_name=raw.counter_bank_name,
            counterparty_name=raw.counterparty_name,
            variable_symbol=raw.variable_symbol,
            constant_symbol=raw.constant_symbol,
            specific_symbol=raw.specific_symbol,
            user_identification=raw.user_identification,
            message=raw.message,
            transaction_type=raw.transaction_type,
            comment=raw.comment,
        )

    @property
    def payee_text(self) -> str:
        """Best free-text description of the counterparty, for rule matching and AI."""
        for candidate in (
            self.counterparty_name,
            self.user_identification,
            self.message,
            self.comment,
            self.counter_account,
        ):
            if candidate and candidate.strip():
                return candidate.strip()
        return ""

    def categorization_context(self) -> dict[str, str]:
        """Context map handed to the categorization provider."""
        context = {
            "amount": f"{self.amount:.2f}",
            "currency": self.currency,
            "date": self.date.isoformat(),
        }
        if self.counter_account:
            context["counter_account"] = self.counter_account
        if self.message:
            context["message"] = self.message
        if self.transaction_type:
            context["transaction_type"] = self.transaction_type
        return context


# ============================================================================
# Processing state (mutable)
# ============================================================================


class TransactionStatus(str, Enum):
    """Processing status. FAILED is left only through an explicit retry."""

    IMPORTED = "IMPORTED"
    CATEGORIZED = "CATEGORIZED"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"


ALLOWED_TRANSITIONS: dict[TransactionStatus, frozenset[TransactionStatus]] = {
    TransactionStatus.IMPORTED: frozenset(
        {TransactionStatus.CATEGORIZED, TransactionStatus.FAILED}
    ),
    TransactionStatus.CATEGORIZED: frozenset(
        {TransactionStatus.SUBMITTED, TransactionStatus.FAILED}
    ),
    TransactionStatus.SUBMITTED: frozenset(),
    TransactionStatus.FAILED: frozenset(),
}


def can_transition(current: TransactionStatus, target: TransactionStatus) -> bool:
    """Check a forward transition against the table (retry is not a transition)."""
    return target in ALLOWED_TRANSITIONS[current]


@dataclass
class ProcessingState:
    """Mutable workflow state attached one-to-one to a Transaction.

    Mutators return a new instance; the stored value is only replaced through
    the store's atomic upsert.
    """

    transaction_id: TransactionId
    status: TransactionStatus = TransactionStatus.IMPORTED
    is_duplicate: bool = False

    suggested_payee: Optional[str] = None
    suggested_category: Optional[str] = None
    suggested_memo: Optional[str] = None
    category_confidence: Optional[ConfidenceScore] = None
    payee_confidence: Optional[ConfidenceScore] = None

    override_payee: Optional[str] = None
    override_category: Optional[str] = None
    override_memo: Optional[str] = None

    external_transaction_id: Optional[str] = None
    external_account_id: Optional[str] = None

    processed_at: Optional[datetime] = None
    submitted_at: Optional[datetime] = None

    last_error: Optional[str] = None
    failure_reason: Optional[str] = None

    @classmethod
    def initial(
        cls, transaction: Transaction, external_account_id: str | None = None
    ) -> "ProcessingState":
        return cls(
            transaction_id=transaction.id,
            status=TransactionStatus.IMPORTED,
            external_account_id=external_account_id,
        )

    # Effective fields: user override wins over suggestion

    @property
    def effective_payee(self) -> Optional[str]:
        return self.override_payee if self.override_payee is not None else self.suggested_payee

    @property
    def effective_category(self) -> Optional[str]:
        return (
            self.override_category
            if self.override_category is not None
            else self.suggested_category
        )

    @property
    def effective_memo(self) -> Optional[str]:
        return self.override_memo if self.override_memo is not None else self.suggested_memo

    @property
    def is_manually_categorized(self) -> bool:
        return self.override_category is not None

    @property
    def has_category_with_reliable_confidence(self) -> bool:
        return self.category_confidence is not None and self.category_confidence.is_reliable

    def submission_blockers(self) -> list[str]:
        """Reasons this state cannot be submitted right now (empty = ready)."""
        reasons = []
        if self.status != TransactionStatus.CATEGORIZED:
            reasons.append(f"invalid status {self.status.value}")
        if not self.effective_category:
            reasons.append("missing category")
        if not self.effective_payee:
            reasons.append("missing payee")
        if self.is_duplicate:
            reasons.append("duplicate transaction")
        if not self.external_account_id:
            reasons.append("missing external account mapping")
        return reasons

    @property
    def is_ready_for_submission(self) -> bool:
        return not self.submission_blockers()

    def _transition(self, target: TransactionStatus) -> TransactionStatus:
        if self.status == target:
            return target
        if not can_transition(self.status, target):
            raise IllegalStateError(
                f"Transaction {self.transaction_id}: cannot move from "
                f"{self.status.value} to {target.value}"
            )
        return target

    def with_categorization(
        self,
        payee: Optional[str],
        category: Optional[str],
        memo: Optional[str],
        category_confidence: Optional[ConfidenceScore] = None,
        payee_confidence: Optional[ConfidenceScore] = None,
        processed_at: datetime | None = None,
    ) -> "ProcessingState":
        """Apply suggestions. Moves to CATEGORIZED only when a category is present."""
        if self.status not in (TransactionStatus.IMPORTED, TransactionStatus.CATEGORIZED):
            raise IllegalStateError(
                f"Transaction {self.transaction_id}: cannot categorize in status "
                f"{self.status.value}"
            )
        status = self.status
        if category:
            status = self._transition(TransactionStatus.CATEGORIZED)
        return replace(
            self,
            status=status,
            suggested_payee=payee,
            suggested_category=category,
            suggested_memo=memo,
            category_confidence=category_confidence,
            payee_confidence=payee_confidence,
            processed_at=processed_at or utcnow(),
            last_error=None,
        )

    def with_overrides(
        self,
        payee: Optional[str] = None,
        category: Optional[str] = None,
        memo: Optional[str] = None,
    ) -> "ProcessingState":
        """Apply user overrides. A category override categorizes an IMPORTED state."""
        if self.status in (TransactionStatus.SUBMITTED, TransactionStatus.FAILED):
            raise IllegalStateError(
                f"Transaction {self.transaction_id}: cannot override in status "
                f"{self.status.value}"
            )
        updated = replace(
            self,
            override_payee=payee if payee is not None else self.override_payee,
            override_category=category if category is not None else self.override_category,
            override_memo=memo if memo is not None else self.override_memo,
        )
        if updated.effective_category and updated.status == TransactionStatus.IMPORTED:
            updated.status = updated._transition(TransactionStatus.CATEGORIZED)
        return updated

    def with_submission(
        self,
        external_transaction_id: str,
        external_account_id: str,
        submitted_at: datetime | None = None,
    ) -> "ProcessingState":
        """Record a successful submission. Fails fast if the state was not eligible."""
        if self.status != TransactionStatus.CATEGORIZED:
            raise IllegalStateError(
                f"Cannot submit transaction with status {self.status.value}, "
                "must be CATEGORIZED"
            )
        if not self.effective_category:
            raise IllegalStateError("Cannot submit transaction without a category")
        if not self.effective_payee:
            raise IllegalStateError("Cannot submit transaction without a payee name")
        return replace(
            self,
            status=self._transition(TransactionStatus.SUBMITTED),
            external_transaction_id=external_transaction_id,
            external_account_id=external_account_id,
            submitted_at=submitted_at or utcnow(),
            last_error=None,
        )

    def with_error(self, reason: str) -> "ProcessingState":
        """Record a retryable failure without changing status."""
        return replace(self, last_error=reason)

    def mark_failed(self, reason: str) -> "ProcessingState":
        return replace(
            self,
            status=self._transition(TransactionStatus.FAILED),
            failure_reason=reason,
            last_error=reason,
        )

    def retry(self) -> "ProcessingState":
        """Leave FAILED, recomputing the last legal status from the state's data."""
        if self.status != TransactionStatus.FAILED:
            raise IllegalStateError(
                f"Only FAILED transactions can be retried (status {self.status.value})"
            )
        status = (
            TransactionStatus.CATEGORIZED
            if self.effective_category
            else TransactionStatus.IMPORTED
        )
        return replace(self, status=status, failure_reason=None, last_error=None)

    def mark_duplicate(self) -> "ProcessingState":
        return replace(self, is_duplicate=True)


# ============================================================================
# Categories, accounts, batches
# ============================================================================


@dataclass(frozen=True)
class Category:
    """Budget category. Categories form a tree through parent_id."""

    id: str
    name: str
    parent_id: Optional[str] = None
    external_id: Optional[str] = None
    active: bool = True


UNCATEGORIZED = Category(id="uncategorized", name="Uncategorized")


@dataclass
class SourceAccount:
    """Bank account transactions are imported from."""

    id: str
    name: str
    account_number: str = ""
    bank_code: str = ""
    currency: str = "CZK"
    active: bool = True
    external_account_id: Optional[str] = None  # budgeting-service account mapping


@dataclass
class CredentialRecord:
    """Encrypted bank token plus import bookkeeping for one account."""

    account_id: str
    encrypted_token: str
    last_fetched_id: Optional[str] = None
    last_sync_at: Optional[datetime] = None


class ImportStatus(str, Enum):
    """Status of an import batch."""

    NOT_STARTED = "NOT_STARTED"
    IN_PROGRESS = "IN_PROGRESS"
    COMPLETED = "COMPLETED"
    ERROR = "ERROR"


@dataclass(frozen=True, order=True)
class ImportBatchId:
    """Sequential per-account batch identifier, rendered ``{account}-{seq}``."""

    account_id: str
    sequence_number: int

    def __post_init__(self) -> None:
        if not self.account_id:
            raise ValueError("Account ID must not be empty")
        if self.sequence_number <= 0:
            raise ValueError("Sequence number must be positive")

    @property
    def value(self) -> str:
        return f"{self.account_id}-{self.sequence_number}"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, value: str) -> "ImportBatchId":
        account_id, sep, seq = value.rpartition("-")
        if not sep or not account_id:
            raise ValueError(
                f"Invalid batch id '{value}', expected 'accountId-sequenceNumber'"
            )
        try:
            sequence = int(seq)
        except ValueError:
            raise ValueError(f"Invalid sequence number in batch id '{value}'") from None
        return cls(account_id, sequence)


@dataclass
class ImportBatch:
    """One invocation of the import workflow for one account and date range."""

    id: ImportBatchId
    date_from: date
    date_to: date
    status: ImportStatus = ImportStatus.NOT_STARTED
    created_at: datetime = field(default_factory=utcnow)
    new_count: int = 0
    duplicate_count: int = 0
    error_message: Optional[str] = None
    finished_at: Optional[datetime] = None

    @property
    def account_id(self) -> str:
        return self.id.account_id

    @property
    def is_success(self) -> bool:
        return self.status == ImportStatus.COMPLETED

    def mark_in_progress(self) -> "ImportBatch":
        if self.status != ImportStatus.NOT_STARTED:
            raise IllegalStateError(f"Cannot start import with status {self.status.value}")
        return replace(self, status=ImportStatus.IN_PROGRESS)

    def mark_completed(self, new_count: int, duplicate_count: int) -> "ImportBatch":
        if self.status != ImportStatus.IN_PROGRESS:
            raise IllegalStateError(f"Cannot complete import with status {self.status.value}")
        return replace(
            self,
            status=ImportStatus.COMPLETED,
            new_count=new_count,
            duplicate_count=duplicate_count,
            finished_at=utcnow(),
        )

    def mark_failed(self, error_message: str) -> "ImportBatch":
        return replace(
            self,
            status=ImportStatus.ERROR,
            error_message=error_message,
            finished_at=utcnow(),
        )
