"""Bank statement import workflow.

Fetches raw transactions for a date range, skips ids the store already
knows (marking their state as duplicate) and creates immutable records plus
an initial IMPORTED processing state for everything new.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import date
from typing import TYPE_CHECKING

from ..errors import (
    AccountNotFoundError,
    AuthenticationError,
    BudgetBridgeError,
    InvalidDateRange,
    ItemFailure,
)
from ..schemas.events import (
    DuplicateTransactionDetected,
    EventSink,
    ImportCompleted,
    TransactionImported,
    log_event,
)
from ..schemas.transaction import (
    ImportBatch,
    ProcessingState,
    RawTransaction,
    Transaction,
    TransactionId,
    utcnow,
)

if TYPE_CHECKING:
    from ..ports import TransactionProvider
    from ..state_store import StateStore
    from ..vault import CredentialVault

logger = logging.getLogger(__name__)

DEFAULT_MAX_IMPORT_DAYS = 90


@dataclass
class ImportResult:
    """Result of one import run."""

    batch: ImportBatch
    new_count: int = 0
    duplicate_count: int = 0
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return self.new_count + self.duplicate_count + len(self.failures)

    @property
    def success(self) -> bool:
        return not self.failures


def validate_date_range(
    date_from: date, date_to: date, today: date, max_days: int = DEFAULT_MAX_IMPORT_DAYS
) -> None:
    """
    Raises:
        InvalidDateRange: Inverted range, range ending in the future, or too long a span
    """
    if date_from > date_to:
        raise InvalidDateRange(f"Start date {date_from} is after end date {date_to}")
    if date_to > today:
        raise InvalidDateRange(f"End date {date_to} is in the future")
    span = (date_to - date_from).days
    if span > max_days:
        raise InvalidDateRange(f"Date range of {span} days exceeds the maximum of {max_days}")


def _latest_provider_id(raws: list[RawTransaction]) -> str | None:
    """Highest provider id in a statement (numeric ids compare numerically)."""
    ids = [r.provider_transaction_id for r in raws if r.provider_transaction_id]
    if not ids:
        return None
    if all(i.isdigit() for i in ids):
        return max(ids, key=int)
    return max(ids)


class ImportWorkflow:
    """Import bank transactions for one source account."""

    def __init__(
        self,
        store: StateStore,
        vault: CredentialVault,
        provider: TransactionProvider,
        max_import_days: int = DEFAULT_MAX_IMPORT_DAYS,
        event_sink: EventSink = log_event,
    ) -> None:
        self.store = store
        self.vault = vault
        self.provider = provider
        self.max_import_days = max_import_days
        self.emit = event_sink

    def import_transactions(
        self,
        account_id: str,
        date_from: date,
        date_to: date,
        today: date | None = None,
    ) -> ImportResult:
        """
        Import one date range for one account.

        The range is validated before any token lookup or network call.

        Raises:
            InvalidDateRange: Bad date range
            AccountNotFoundError: Unknown source account
            AuthenticationError: No token stored, or the bank rejected it
            NetworkError: Bank unreachable (the batch is marked ERROR)
        """
        validate_date_range(date_from, date_to, today or date.today(), self.max_import_days)

        account = self.store.get_account(account_id)
        if account is None:
            raise AccountNotFoundError(account_id)

        token = self.vault.get_token(account_id)
        if not token:
            raise AuthenticationError(f"No bank token stored for account {account_id}")

        batch = self.store.create_batch(account_id, date_from, date_to).mark_in_progress()
        self.store.save_batch(batch)
        logger.info("Import %s started: %s to %s", batch.id, date_from, date_to)

        try:
            fetched = self.provider.fetch(token, account, date_from, date_to)
        except BudgetBridgeError as e:
            batch = batch.mark_failed(str(e))
            self.store.save_batch(batch)
            logger.error("Import %s failed: %s", batch.id, e)
            raise

        result = ImportResult(batch=batch)
        for row in fetched.failures:
            tid = TransactionId(account_id, row.provider_transaction_id or "?")
            result.failures.append(ItemFailure(str(tid), row.reason, row.raw_payload))

        raws = fetched.transactions
        for raw in raws:
            tx = Transaction.from_raw(account_id, raw)
            try:
                created = self.store.create_imported(
                    tx, ProcessingState.initial(tx, account.external_account_id)
                )
                if created:
                    result.new_count += 1
                    self.emit(TransactionImported(tx.id))
                    continue

                self.store.update_processing_state(tx.id, ProcessingState.mark_duplicate)
                result.duplicate_count += 1
                self.emit(DuplicateTransactionDetected(tx.id))
            except (sqlite3.Error, KeyError) as e:
                logger.error("Failed to store transaction %s: %s", tx.id, e)
                result.failures.append(ItemFailure(str(tx.id), str(e)))

        batch = batch.mark_completed(result.new_count, result.duplicate_count)
        self.store.save_batch(batch)
        result.batch = batch

        self.store.update_sync_markers(
            account_id, last_sync_at=utcnow(), last_fetched_id=_latest_provider_id(raws)
        )
        self.emit(ImportCompleted(account_id, result.new_count))

        logger.info(
            "Import %s completed: %d new, %d duplicate, %d failed",
            batch.id,
            result.new_count,
            result.duplicate_count,
            len(result.failures),
        )
        return result
