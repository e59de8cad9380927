"""
SQLite-based state store implementation.

Tables:
- transactions: Immutable bank movements, keyed by (source account, provider id)
- processing_states: Mutable workflow state, one row per transaction
- import_batches: One row per import run, sequence allocated per account
- source_accounts: Bank accounts and their budget account mapping
- credentials: Encrypted bank tokens plus sync markers
- categories: Budget categories and their external ids
- cleanup_rules: Payee cleanup rules (pending / approved / rejected)
- token_audit_log: Append-only credential access trail
"""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any

from ..errors import AccountNotFoundError
from ..schemas.audit import AuditEvent, AuditEventKind
from ..schemas.rules import CleanupRule, PatternType, RuleOrigin, RuleStatus
from ..schemas.transaction import (
    UNCATEGORIZED,
    Category,
    ConfidenceScore,
    CredentialRecord,
    ImportBatch,
    ImportBatchId,
    ImportStatus,
    ProcessingState,
    SourceAccount,
    Transaction,
    TransactionId,
    TransactionStatus,
)
from .locks import KeyedLock


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _from_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _confidence(value: float | None) -> ConfidenceScore | None:
    return ConfidenceScore.of(value) if value is not None else None


@dataclass
class TransactionQuery:
    """Filter for find_transactions. None means "any"."""

    source_account_id: str | None = None
    date_from: date | None = None
    date_to: date | None = None
    limit: int | None = None


@dataclass
class ProcessingStateQuery:
    """Filter for find_processing_states. None means "any"."""

    status: TransactionStatus | None = None
    source_account_id: str | None = None
    is_duplicate: bool | None = None
    limit: int | None = None


def transaction_from_row(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=TransactionId(row["source_account_id"], row["provider_transaction_id"]),
        date=date.fromisoformat(row["tx_date"]),
        amount=Decimal(row["amount"]),
        currency=row["currency"],
        imported_at=_from_iso(row["imported_at"]),
        counter_account=row["counter_account"],
        counter_bank_code=row["counter_bank_code"],
        counter_bank_name=row["counter_bank_name"],
        counterparty_name=row["counterparty_name"],
        variable_symbol=row["variable_symbol"],
        constant_symbol=row["constant_symbol"],
        specific_symbol=row["specific_symbol"],
        user_identification=row["user_identification"],
        message=row["message"],
        transaction_type=row["transaction_type"] or "",
        comment=row["comment"],
    )


def state_from_row(row: sqlite3.Row) -> ProcessingState:
    return ProcessingState(
        transaction_id=TransactionId(row["source_account_id"], row["provider_transaction_id"]),
        status=TransactionStatus(row["status"]),
        is_duplicate=bool(row["is_duplicate"]),
        suggested_payee=row["suggested_payee"],
        suggested_category=row["suggested_category"],
        suggested_memo=row["suggested_memo"],
        category_confidence=_confidence(row["category_confidence"]),
        payee_confidence=_confidence(row["payee_confidence"]),
        override_payee=row["override_payee"],
        override_category=row["override_category"],
        override_memo=row["override_memo"],
        external_transaction_id=row["external_transaction_id"],
        external_account_id=row["external_account_id"],
        processed_at=_from_iso(row["processed_at"]),
        submitted_at=_from_iso(row["submitted_at"]),
        last_error=row["last_error"],
        failure_reason=row["failure_reason"],
    )


def batch_from_row(row: sqlite3.Row) -> ImportBatch:
    return ImportBatch(
        id=ImportBatchId(row["account_id"], row["sequence_number"]),
        date_from=date.fromisoformat(row["date_from"]),
        date_to=date.fromisoformat(row["date_to"]),
        status=ImportStatus(row["status"]),
        created_at=_from_iso(row["created_at"]),
        new_count=row["new_count"],
        duplicate_count=row["duplicate_count"],
        error_message=row["error_message"],
        finished_at=_from_iso(row["finished_at"]),
    )


def rule_from_row(row: sqlite3.Row) -> CleanupRule:
    return CleanupRule(
        id=row["id"],
        pattern=row["pattern"],
        pattern_type=PatternType(row["pattern_type"]),
        replacement=row["replacement"],
        category=row["category"],
        confidence=row["confidence"],
        generated_by=RuleOrigin(row["generated_by"]),
        status=RuleStatus(row["status"]),
        usage_count=row["usage_count"],
        success_rate=row["success_rate"],
        created_at=_from_iso(row["created_at"]),
        updated_at=_from_iso(row["updated_at"]),
        explanation=row["explanation"],
    )


class StateStore:
    """
    SQLite-based state store for the pipeline.

    Every public write is one SQLite transaction. Writes to the same
    transaction key are additionally serialized through a KeyedLock so
    read-modify-write sequences from concurrent workflow runs never lose
    updates.
    """

    SCHEMA_VERSION = 1

    def __init__(self, db_path: Path | str, busy_timeout: float = 30.0):
        """
        Initialize state store.

        Args:
            db_path: Path to SQLite database file
            busy_timeout: Seconds a writer waits for the database lock
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.busy_timeout = busy_timeout
        self._key_locks = KeyedLock()
        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.busy_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self, immediate: bool = False) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            if immediate:
                conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL")

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS source_accounts (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    account_number TEXT NOT NULL DEFAULT '',
                    bank_code TEXT NOT NULL DEFAULT '',
                    currency TEXT NOT NULL,
                    active INTEGER NOT NULL DEFAULT 1,
                    external_account_id TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS transactions (
                    source_account_id TEXT NOT NULL,
                    provider_transaction_id TEXT NOT NULL,
                    tx_date TEXT NOT NULL,
                    amount TEXT NOT NULL,  -- Decimal as string
                    currency TEXT NOT NULL,
                    counter_account TEXT,
                    counter_bank_code TEXT,
                    counter_bank_name TEXT,
                    counterparty_name TEXT,
                    variable_symbol TEXT,
                    constant_symbol TEXT,
                    specific_symbol TEXT,
                    user_identification TEXT,
                    message TEXT,
                    transaction_type TEXT,
                    comment TEXT,
                    imported_at TEXT NOT NULL,
                    PRIMARY KEY (source_account_id, provider_transaction_id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS processing_states (
                    source_account_id TEXT NOT NULL,
                    provider_transaction_id TEXT NOT NULL,
                    status TEXT NOT NULL,
                    is_duplicate INTEGER NOT NULL DEFAULT 0,
                    suggested_payee TEXT,
                    suggested_category TEXT,
                    suggested_memo TEXT,
                    category_confidence REAL,
                    payee_confidence REAL,
                    override_payee TEXT,
                    override_category TEXT,
                    override_memo TEXT,
                    external_transaction_id TEXT,
                    external_account_id TEXT,
                    processed_at TEXT,
                    submitted_at TEXT,
                    last_error TEXT,
                    failure_reason TEXT,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (source_account_id, provider_transaction_id),
                    FOREIGN KEY (source_account_id, provider_transaction_id)
                        REFERENCES transactions(source_account_id, provider_transaction_id)
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_states_status ON processing_states(status)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS import_batches (
                    account_id TEXT NOT NULL,
                    sequence_number INTEGER NOT NULL,
                    date_from TEXT NOT NULL,
                    date_to TEXT NOT NULL,
                    status TEXT NOT NULL,
                    new_count INTEGER NOT NULL DEFAULT 0,
                    duplicate_count INTEGER NOT NULL DEFAULT 0,
                    error_message TEXT,
                    created_at TEXT NOT NULL,
                    finished_at TEXT,
                    PRIMARY KEY (account_id, sequence_number)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS credentials (
                    account_id TEXT PRIMARY KEY,
                    encrypted_token TEXT NOT NULL,
                    last_fetched_id TEXT,
                    last_sync_at TEXT,
                    updated_at TEXT NOT NULL,
                    FOREIGN KEY (account_id) REFERENCES source_accounts(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS categories (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL UNIQUE,
                    parent_id TEXT,
                    external_id TEXT,
                    active INTEGER NOT NULL DEFAULT 1
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS cleanup_rules (
                    id TEXT PRIMARY KEY,
                    pattern TEXT NOT NULL,
                    pattern_type TEXT NOT NULL,
                    replacement TEXT NOT NULL,
                    category TEXT,
                    confidence REAL NOT NULL,
                    generated_by TEXT NOT NULL,
                    status TEXT NOT NULL,
                    usage_count INTEGER NOT NULL DEFAULT 0,
                    success_rate REAL NOT NULL DEFAULT 1.0,
                    explanation TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT
                )
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_rules_status ON cleanup_rules(status)"
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS token_audit_log (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    kind TEXT NOT NULL,
                    account_id TEXT NOT NULL,
                    message TEXT NOT NULL,
                    occurred_at TEXT NOT NULL
                )
            """
            )

            # Sentinel category is always present
            conn.execute(
                """
                INSERT OR IGNORE INTO categories (id, name, parent_id, external_id, active)
                VALUES (?, ?, NULL, NULL, 1)
            """,
                (UNCATEGORIZED.id, UNCATEGORIZED.name),
            )

            conn.execute(
                "INSERT OR IGNORE INTO schema_version (version) VALUES (?)",
                (self.SCHEMA_VERSION,),
            )

    # Locking

    @contextmanager
    def key_lock(self, transaction_id: TransactionId) -> Iterator[None]:
        """Hold the per-transaction lock for a multi-step critical section."""
        with self._key_locks.hold(transaction_id.key):
            yield

    # Transactions (immutable)

    def _insert_transaction(self, conn: sqlite3.Connection, tx: Transaction) -> bool:
        cursor = conn.execute(
            """
            INSERT OR IGNORE INTO transactions
            (source_account_id, provider_transaction_id, tx_date, amount, currency,
             counter_account, counter_bank_code, counter_bank_name, counterparty_name,
             variable_symbol, constant_symbol, specific_symbol, user_identification,
             message, transaction_type, comment, imported_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                tx.id.source_account_id,
                tx.id.provider_transaction_id,
                tx.date.isoformat(),
                str(tx.amount),
                tx.currency,
                tx.counter_account,
                tx.counter_bank_code,
                tx.counter_bank_name,
                tx.counterparty_name,
                tx.variable_symbol,
                tx.constant_symbol,
                tx.specific_symbol,
                tx.user_identification,
                tx.message,
                tx.transaction_type,
                tx.comment,
                _to_iso(tx.imported_at),
            ),
        )
        return cursor.rowcount > 0

    def save_transaction(self, tx: Transaction) -> bool:
        """Insert a transaction. Existing rows are never overwritten.

        Returns:
            True if the row was created, False if the id already existed
        """
        with self.key_lock(tx.id), self._transaction() as conn:
            return self._insert_transaction(conn, tx)

    def create_imported(self, tx: Transaction, state: ProcessingState) -> bool:
        """Insert a transaction and its initial state atomically.

        Returns:
            False (and writes nothing) if the transaction already exists
        """
        with self.key_lock(tx.id), self._transaction() as conn:
            if not self._insert_transaction(conn, tx):
                return False
            self._upsert_state(conn, state)
            return True

    def load_transaction(self, transaction_id: TransactionId) -> Transaction | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM transactions
                WHERE source_account_id = ? AND provider_transaction_id = ?
            """,
                (transaction_id.source_account_id, transaction_id.provider_transaction_id),
            ).fetchone()
            return transaction_from_row(row) if row else None

    def find_transactions(self, query: TransactionQuery | None = None) -> list[Transaction]:
        query = query or TransactionQuery()
        clauses: list[str] = []
        params: list[Any] = []
        if query.source_account_id is not None:
            clauses.append("source_account_id = ?")
            params.append(query.source_account_id)
        if query.date_from is not None:
            clauses.append("tx_date >= ?")
            params.append(query.date_from.isoformat())
        if query.date_to is not None:
            clauses.append("tx_date <= ?")
            params.append(query.date_to.isoformat())

        sql = "SELECT * FROM transactions"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY tx_date, source_account_id, provider_transaction_id"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        with self._transaction() as conn:
            return [transaction_from_row(r) for r in conn.execute(sql, params).fetchall()]

    # Processing states (mutable)

    def _upsert_state(self, conn: sqlite3.Connection, state: ProcessingState) -> None:
        tid = state.transaction_id
        conn.execute(
            """
            INSERT INTO processing_states
            (source_account_id, provider_transaction_id, status, is_duplicate,
             suggested_payee, suggested_category, suggested_memo,
             category_confidence, payee_confidence,
             override_payee, override_category, override_memo,
             external_transaction_id, external_account_id,
             processed_at, submitted_at, last_error, failure_reason, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(source_account_id, provider_transaction_id) DO UPDATE SET
                status = excluded.status,
                is_duplicate = excluded.is_duplicate,
                suggested_payee = excluded.suggested_payee,
                suggested_category = excluded.suggested_category,
                suggested_memo = excluded.suggested_memo,
                category_confidence = excluded.category_confidence,
                payee_confidence = excluded.payee_confidence,
                override_payee = excluded.override_payee,
                override_category = excluded.override_category,
                override_memo = excluded.override_memo,
                external_transaction_id = excluded.external_transaction_id,
                external_account_id = excluded.external_account_id,
                processed_at = excluded.processed_at,
                submitted_at = excluded.submitted_at,
                last_error = excluded.last_error,
                failure_reason = excluded.failure_reason,
                updated_at = excluded.updated_at
        """,
            (
                tid.source_account_id,
                tid.provider_transaction_id,
                state.status.value,
                1 if state.is_duplicate else 0,
                state.suggested_payee,
                state.suggested_category,
                state.suggested_memo,
                state.category_confidence.value if state.category_confidence else None,
                state.payee_confidence.value if state.payee_confidence else None,
                state.override_payee,
                state.override_category,
                state.override_memo,
                state.external_transaction_id,
                state.external_account_id,
                _to_iso(state.processed_at),
                _to_iso(state.submitted_at),
                state.last_error,
                state.failure_reason,
                _now_iso(),
            ),
        )

    def save_processing_state(self, state: ProcessingState) -> None:
        """Atomic upsert of one processing state."""
        with self.key_lock(state.transaction_id), self._transaction() as conn:
            self._upsert_state(conn, state)

    def load_processing_state(self, transaction_id: TransactionId) -> ProcessingState | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM processing_states
                WHERE source_account_id = ? AND provider_transaction_id = ?
            """,
                (transaction_id.source_account_id, transaction_id.provider_transaction_id),
            ).fetchone()
            return state_from_row(row) if row else None

    def update_processing_state(
        self,
        transaction_id: TransactionId,
        fn: Callable[[ProcessingState], ProcessingState],
    ) -> ProcessingState:
        """Atomic read-modify-write of one state under its key lock.

        Raises:
            KeyError: If no state exists for the id
        """
        with self.key_lock(transaction_id):
            current = self.load_processing_state(transaction_id)
            if current is None:
                raise KeyError(f"No processing state for {transaction_id}")
            updated = fn(current)
            self.save_processing_state(updated)
            return updated

    def find_processing_states(
        self, query: ProcessingStateQuery | None = None
    ) -> list[ProcessingState]:
        query = query or ProcessingStateQuery()
        clauses: list[str] = []
        params: list[Any] = []
        if query.status is not None:
            clauses.append("status = ?")
            params.append(query.status.value)
        if query.source_account_id is not None:
            clauses.append("source_account_id = ?")
            params.append(query.source_account_id)
        if query.is_duplicate is not None:
            clauses.append("is_duplicate = ?")
            params.append(1 if query.is_duplicate else 0)

        sql = "SELECT * FROM processing_states"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY source_account_id, provider_transaction_id"
        if query.limit is not None:
            sql += " LIMIT ?"
            params.append(query.limit)

        with self._transaction() as conn:
            return [state_from_row(r) for r in conn.execute(sql, params).fetchall()]

    def find_ready_to_submit(self, source_account_id: str | None = None) -> list[ProcessingState]:
        """Categorized, non-duplicate states with everything submission needs."""
        candidates = self.find_processing_states(
            ProcessingStateQuery(
                status=TransactionStatus.CATEGORIZED,
                source_account_id=source_account_id,
                is_duplicate=False,
            )
        )
        return [s for s in candidates if s.is_ready_for_submission]

    # Import batches

    def next_batch_sequence(self, account_id: str) -> int:
        """Sequence number the next batch for this account would get."""
        with self._transaction() as conn:
            return self._next_sequence(conn, account_id)

    def _next_sequence(self, conn: sqlite3.Connection, account_id: str) -> int:
        row = conn.execute(
            "SELECT MAX(sequence_number) AS seq FROM import_batches WHERE account_id = ?",
            (account_id,),
        ).fetchone()
        return (row["seq"] or 0) + 1

    def create_batch(self, account_id: str, date_from: date, date_to: date) -> ImportBatch:
        """Allocate the next sequence number and persist a NOT_STARTED batch."""
        with self._transaction(immediate=True) as conn:
            batch = ImportBatch(
                id=ImportBatchId(account_id, self._next_sequence(conn, account_id)),
                date_from=date_from,
                date_to=date_to,
            )
            self._upsert_batch(conn, batch)
            return batch

    def _upsert_batch(self, conn: sqlite3.Connection, batch: ImportBatch) -> None:
        conn.execute(
            """
            INSERT INTO import_batches
            (account_id, sequence_number, date_from, date_to, status,
             new_count, duplicate_count, error_message, created_at, finished_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(account_id, sequence_number) DO UPDATE SET
                status = excluded.status,
                new_count = excluded.new_count,
                duplicate_count = excluded.duplicate_count,
                error_message = excluded.error_message,
                finished_at = excluded.finished_at
        """,
            (
                batch.id.account_id,
                batch.id.sequence_number,
                batch.date_from.isoformat(),
                batch.date_to.isoformat(),
                batch.status.value,
                batch.new_count,
                batch.duplicate_count,
                batch.error_message,
                _to_iso(batch.created_at),
                _to_iso(batch.finished_at),
            ),
        )

    def save_batch(self, batch: ImportBatch) -> None:
        with self._transaction() as conn:
            self._upsert_batch(conn, batch)

    def get_batch(self, batch_id: ImportBatchId) -> ImportBatch | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM import_batches WHERE account_id = ? AND sequence_number = ?",
                (batch_id.account_id, batch_id.sequence_number),
            ).fetchone()
            return batch_from_row(row) if row else None

    def list_batches(self, account_id: str | None = None, limit: int = 20) -> list[ImportBatch]:
        """Most recent batches first."""
        with self._transaction() as conn:
            if account_id is None:
                rows = conn.execute(
                    "SELECT * FROM import_batches ORDER BY created_at DESC LIMIT ?",
                    (limit,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM import_batches WHERE account_id = ?
                    ORDER BY sequence_number DESC LIMIT ?
                """,
                    (account_id, limit),
                ).fetchall()
            return [batch_from_row(r) for r in rows]

    # Source accounts

    def save_account(self, account: SourceAccount) -> None:
        now = _now_iso()
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO source_accounts
                (id, name, account_number, bank_code, currency, active,
                 external_account_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    account_number = excluded.account_number,
                    bank_code = excluded.bank_code,
                    currency = excluded.currency,
                    active = excluded.active,
                    external_account_id = excluded.external_account_id,
                    updated_at = excluded.updated_at
            """,
                (
                    account.id,
                    account.name,
                    account.account_number,
                    account.bank_code,
                    account.currency,
                    1 if account.active else 0,
                    account.external_account_id,
                    now,
                    now,
                ),
            )

    def get_account(self, account_id: str) -> SourceAccount | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM source_accounts WHERE id = ?", (account_id,)
            ).fetchone()
            if not row:
                return None
            return SourceAccount(
                id=row["id"],
                name=row["name"],
                account_number=row["account_number"],
                bank_code=row["bank_code"],
                currency=row["currency"],
                active=bool(row["active"]),
                external_account_id=row["external_account_id"],
            )

    def list_accounts(self, active_only: bool = False) -> list[SourceAccount]:
        with self._transaction() as conn:
            sql = "SELECT id FROM source_accounts"
            if active_only:
                sql += " WHERE active = 1"
            ids = [r["id"] for r in conn.execute(sql + " ORDER BY id").fetchall()]
        return [a for a in (self.get_account(i) for i in ids) if a is not None]

    # Credentials

    def save_credential(self, record: CredentialRecord) -> None:
        """Insert or replace the encrypted token, keeping sync markers on update.

        Raises:
            AccountNotFoundError: If the source account does not exist
        """
        with self._transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM source_accounts WHERE id = ?", (record.account_id,)
            ).fetchone()
            if not exists:
                raise AccountNotFoundError(record.account_id)
            conn.execute(
                """
                INSERT INTO credentials
                (account_id, encrypted_token, last_fetched_id, last_sync_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(account_id) DO UPDATE SET
                    encrypted_token = excluded.encrypted_token,
                    updated_at = excluded.updated_at
            """,
                (
                    record.account_id,
                    record.encrypted_token,
                    record.last_fetched_id,
                    _to_iso(record.last_sync_at),
                    _now_iso(),
                ),
            )

    def get_credential(self, account_id: str) -> CredentialRecord | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM credentials WHERE account_id = ?", (account_id,)
            ).fetchone()
            if not row:
                return None
            return CredentialRecord(
                account_id=row["account_id"],
                encrypted_token=row["encrypted_token"],
                last_fetched_id=row["last_fetched_id"],
                last_sync_at=_from_iso(row["last_sync_at"]),
            )

    def update_sync_markers(
        self,
        account_id: str,
        last_sync_at: datetime,
        last_fetched_id: str | None = None,
    ) -> None:
        """Record a finished import. A None marker keeps the previous one."""
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE credentials
                SET last_sync_at = ?,
                    last_fetched_id = COALESCE(?, last_fetched_id),
                    updated_at = ?
                WHERE account_id = ?
            """,
                (_to_iso(last_sync_at), last_fetched_id, _now_iso(), account_id),
            )

    # Categories

    def save_category(self, category: Category) -> None:
        """
        Insert or update a category.

        A category whose name is already taken by another id (for example a
        synced "Uncategorized") updates that row instead of duplicating it.
        """
        with self._transaction() as conn:
            existing = conn.execute(
                "SELECT id FROM categories WHERE lower(name) = lower(?) AND id != ?",
                (category.name, category.id),
            ).fetchone()
            if existing is not None:
                conn.execute(
                    """
                    UPDATE categories
                    SET parent_id = ?, external_id = ?, active = ?
                    WHERE id = ?
                """,
                    (
                        category.parent_id,
                        category.external_id,
                        1 if category.active else 0,
                        existing["id"],
                    ),
                )
                return
            conn.execute(
                """
                INSERT INTO categories (id, name, parent_id, external_id, active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    parent_id = excluded.parent_id,
                    external_id = excluded.external_id,
                    active = excluded.active
            """,
                (
                    category.id,
                    category.name,
                    category.parent_id,
                    category.external_id,
                    1 if category.active else 0,
                ),
            )

    @staticmethod
    def _category_from_row(row: sqlite3.Row) -> Category:
        return Category(
            id=row["id"],
            name=row["name"],
            parent_id=row["parent_id"],
            external_id=row["external_id"],
            active=bool(row["active"]),
        )

    def list_categories(self, active_only: bool = True) -> list[Category]:
        sql = "SELECT * FROM categories"
        if active_only:
            sql += " WHERE active = 1"
        with self._transaction() as conn:
            return [self._category_from_row(r) for r in conn.execute(sql + " ORDER BY name")]

    def find_category_by_name(self, name: str) -> Category | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM categories WHERE lower(name) = lower(?)", (name,)
            ).fetchone()
            return self._category_from_row(row) if row else None

    # Cleanup rules

    def save_rule(self, rule: CleanupRule) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO cleanup_rules
                (id, pattern, pattern_type, replacement, category, confidence,
                 generated_by, status, usage_count, success_rate, explanation,
                 created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    pattern = excluded.pattern,
                    pattern_type = excluded.pattern_type,
                    replacement = excluded.replacement,
                    category = excluded.category,
                    confidence = excluded.confidence,
                    status = excluded.status,
                    usage_count = excluded.usage_count,
                    success_rate = excluded.success_rate,
                    explanation = excluded.explanation,
                    updated_at = excluded.updated_at
            """,
                (
                    rule.id,
                    rule.pattern,
                    rule.pattern_type.value,
                    rule.replacement,
                    rule.category,
                    rule.confidence,
                    rule.generated_by.value,
                    rule.status.value,
                    rule.usage_count,
                    rule.success_rate,
                    rule.explanation,
                    _to_iso(rule.created_at),
                    _to_iso(rule.updated_at),
                ),
            )

    def get_rule(self, rule_id: str) -> CleanupRule | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM cleanup_rules WHERE id = ?", (rule_id,)).fetchone()
            return rule_from_row(row) if row else None

    def list_rules(self, status: RuleStatus | None = None) -> list[CleanupRule]:
        with self._transaction() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM cleanup_rules ORDER BY created_at").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM cleanup_rules WHERE status = ? ORDER BY created_at",
                    (status.value,),
                ).fetchall()
            return [rule_from_row(r) for r in rows]

    def find_pending_rule(self, pattern: str, pattern_type: PatternType) -> CleanupRule | None:
        """Pending rule with the same pattern, used to avoid piling up suggestions."""
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM cleanup_rules
                WHERE lower(pattern) = lower(?) AND pattern_type = ? AND status = ?
            """,
                (pattern, pattern_type.value, RuleStatus.PENDING.value),
            ).fetchone()
            return rule_from_row(row) if row else None

    def increment_rule_usage(self, rule_id: str) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE cleanup_rules SET usage_count = usage_count + 1 WHERE id = ?",
                (rule_id,),
            )

    # Credential audit log

    def append_audit_event(self, event: AuditEvent) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO token_audit_log (kind, account_id, message, occurred_at)
                VALUES (?, ?, ?, ?)
            """,
                (event.kind.value, event.account_id, event.message, _to_iso(event.occurred_at)),
            )

    def list_audit_events(
        self, account_id: str | None = None, limit: int = 100
    ) -> list[AuditEvent]:
        """Most recent events last."""
        with self._transaction() as conn:
            if account_id is None:
                rows = conn.execute(
                    "SELECT * FROM token_audit_log ORDER BY id DESC LIMIT ?", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM token_audit_log WHERE account_id = ?
                    ORDER BY id DESC LIMIT ?
                """,
                    (account_id, limit),
                ).fetchall()
        return [
            AuditEvent(
                kind=AuditEventKind(r["kind"]),
                account_id=r["account_id"],
                message=r["message"],
                occurred_at=_from_iso(r["occurred_at"]),
            )
            for r in reversed(rows)
        ]

    # Statistics

    def get_stats(self) -> dict[str, Any]:
        """Get pipeline statistics."""
        with self._transaction() as conn:
            transactions = conn.execute("SELECT COUNT(*) AS count FROM transactions").fetchone()
            by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM processing_states GROUP BY status"
                ).fetchall()
            }
            duplicates = conn.execute(
                "SELECT COUNT(*) AS count FROM processing_states WHERE is_duplicate = 1"
            ).fetchone()
            pending_rules = conn.execute(
                "SELECT COUNT(*) AS count FROM cleanup_rules WHERE status = ?",
                (RuleStatus.PENDING.value,),
            ).fetchone()
            batches = conn.execute("SELECT COUNT(*) AS count FROM import_batches").fetchone()

            return {
                "transactions_total": transactions["count"] if transactions else 0,
                "imported": by_status.get(TransactionStatus.IMPORTED.value, 0),
                "categorized": by_status.get(TransactionStatus.CATEGORIZED.value, 0),
                "submitted": by_status.get(TransactionStatus.SUBMITTED.value, 0),
                "failed": by_status.get(TransactionStatus.FAILED.value, 0),
                "duplicates": duplicates["count"] if duplicates else 0,
                "pending_rules": pending_rules["count"] if pending_rules else 0,
                "import_batches": batches["count"] if batches else 0,
            }
