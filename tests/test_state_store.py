"""Tests for state store."""

import threading
from datetime import date, datetime, timezone

import pytest

from budget_bridge.errors import AccountNotFoundError
from budget_bridge.schemas import (
    UNCATEGORIZED,
    AuditEvent,
    AuditEventKind,
    Category,
    CleanupRule,
    ConfidenceScore,
    CredentialRecord,
    ImportStatus,
    PatternType,
    ProcessingState,
    RuleStatus,
    Transaction,
    TransactionStatus,
)
from budget_bridge.state_store import ProcessingStateQuery, StateStore, TransactionQuery

from conftest import make_raw


def add_transaction(store, provider_id, account_id="fio-main", **kwargs):
    tx = Transaction.from_raw(account_id, make_raw(provider_id, **kwargs))
    store.create_imported(tx, ProcessingState.initial(tx, "ynab-account-1"))
    return tx


class TestStateStore:
    """Tests for SQLite state store."""

    def test_init_creates_db(self, temp_db):
        """Initializing creates database file."""
        StateStore(temp_db)
        assert temp_db.exists()

    def test_init_creates_tables(self, store):
        """All required tables are created."""
        conn = store._get_connection()
        try:
            tables = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
            table_names = [t[0] for t in tables]

            for table in (
                "transactions",
                "processing_states",
                "import_batches",
                "source_accounts",
                "credentials",
                "categories",
                "cleanup_rules",
                "token_audit_log",
            ):
                assert table in table_names
        finally:
            conn.close()

    def test_reopen_keeps_data(self, temp_db, account):
        store = StateStore(temp_db)
        add_transaction(store, "1")
        assert len(StateStore(temp_db).find_transactions()) == 1


class TestTransactions:
    """Tests for immutable transaction records."""

    def test_save_and_load(self, store, account):
        tx = Transaction.from_raw("fio-main", make_raw("1001", amount="-249.90"))
        assert store.save_transaction(tx) is True

        loaded = store.load_transaction(tx.id)
        assert loaded == tx

    def test_save_never_overwrites(self, store, account):
        tx = Transaction.from_raw("fio-main", make_raw("1001", amount="-1.00"))
        store.save_transaction(tx)
        other = Transaction.from_raw("fio-main", make_raw("1001", amount="-999.00"))

        assert store.save_transaction(other) is False
        assert store.load_transaction(tx.id).amount == tx.amount

    def test_create_imported_writes_state(self, store, account):
        tx = add_transaction(store, "1001")
        state = store.load_processing_state(tx.id)
        assert state.status == TransactionStatus.IMPORTED
        assert state.external_account_id == "ynab-account-1"

    def test_create_imported_existing_is_noop(self, store, account):
        tx = add_transaction(store, "1001")
        store.update_processing_state(tx.id, lambda s: s.with_overrides(payee="Mine"))

        assert store.create_imported(tx, ProcessingState.initial(tx)) is False
        assert store.load_processing_state(tx.id).override_payee == "Mine"

    def test_find_by_account_and_date(self, store, account):
        add_transaction(store, "1", tx_date=date(2025, 3, 1))
        add_transaction(store, "2", tx_date=date(2025, 3, 20))
        add_transaction(store, "3", account_id="other", tx_date=date(2025, 3, 5))

        found = store.find_transactions(
            TransactionQuery(source_account_id="fio-main", date_from=date(2025, 3, 10))
        )
        assert [t.id.provider_transaction_id for t in found] == ["2"]


class TestProcessingStates:
    """Tests for mutable processing state persistence."""

    def test_round_trip_keeps_confidence(self, store, account):
        tx = add_transaction(store, "1")
        state = store.load_processing_state(tx.id).with_categorization(
            "Lidl", "Groceries", "weekly shop", category_confidence=ConfidenceScore.of(0.85)
        )
        store.save_processing_state(state)

        loaded = store.load_processing_state(tx.id)
        assert loaded.status == TransactionStatus.CATEGORIZED
        assert loaded.category_confidence == ConfidenceScore.of(0.85)
        assert loaded.suggested_memo == "weekly shop"
        assert loaded.processed_at is not None

    def test_update_unknown_raises_key_error(self, store, account):
        tx = Transaction.from_raw("fio-main", make_raw("404"))
        with pytest.raises(KeyError):
            store.update_processing_state(tx.id, lambda s: s)

    def test_find_by_status(self, store, account):
        a = add_transaction(store, "1")
        add_transaction(store, "2")
        store.update_processing_state(a.id, lambda s: s.with_overrides(category="Rent"))

        categorized = store.find_processing_states(
            ProcessingStateQuery(status=TransactionStatus.CATEGORIZED)
        )
        assert [s.transaction_id for s in categorized] == [a.id]

    def test_find_ready_to_submit(self, store, account):
        ready = add_transaction(store, "1")
        no_payee = add_transaction(store, "2")
        duplicate = add_transaction(store, "3")
        store.update_processing_state(
            ready.id, lambda s: s.with_overrides(payee="Lidl", category="Groceries")
        )
        store.update_processing_state(no_payee.id, lambda s: s.with_overrides(category="Rent"))
        store.update_processing_state(
            duplicate.id,
            lambda s: s.with_overrides(payee="X", category="Rent").mark_duplicate(),
        )

        assert [s.transaction_id for s in store.find_ready_to_submit()] == [ready.id]

    def test_concurrent_updates_are_not_lost(self, store, account):
        tx = add_transaction(store, "1")
        store.update_processing_state(tx.id, lambda s: s.with_overrides(payee="p0"))

        def bump(_):
            for _ in range(10):
                store.update_processing_state(
                    tx.id, lambda s: s.with_overrides(memo=str(int(s.override_memo or 0) + 1))
                )

        threads = [threading.Thread(target=bump, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.load_processing_state(tx.id).override_memo == "40"


class TestBatches:
    """Tests for import batch persistence."""

    def test_sequence_is_per_account(self, store):
        first = store.create_batch("a", date(2025, 1, 1), date(2025, 1, 31))
        second = store.create_batch("a", date(2025, 2, 1), date(2025, 2, 28))
        other = store.create_batch("b", date(2025, 1, 1), date(2025, 1, 31))

        assert first.id.sequence_number == 1
        assert second.id.sequence_number == 2
        assert other.id.sequence_number == 1
        assert store.next_batch_sequence("a") == 3

    def test_save_and_get(self, store):
        batch = store.create_batch("a", date(2025, 1, 1), date(2025, 1, 31))
        store.save_batch(batch.mark_in_progress().mark_completed(3, 2))

        loaded = store.get_batch(batch.id)
        assert loaded.status == ImportStatus.COMPLETED
        assert (loaded.new_count, loaded.duplicate_count) == (3, 2)
        assert store.list_batches("a")[0].id == batch.id


class TestAccountsAndCredentials:
    """Tests for accounts, credentials and sync markers."""

    def test_credential_requires_account(self, store):
        with pytest.raises(AccountNotFoundError):
            store.save_credential(CredentialRecord("missing", "blob"))

    def test_token_update_keeps_sync_markers(self, store, account):
        store.save_credential(CredentialRecord(account.id, "blob-1"))
        synced = datetime(2025, 3, 14, 12, 0, tzinfo=timezone.utc)
        store.update_sync_markers(account.id, synced, last_fetched_id="1005")
        store.save_credential(CredentialRecord(account.id, "blob-2"))

        record = store.get_credential(account.id)
        assert record.encrypted_token == "blob-2"
        assert record.last_fetched_id == "1005"
        assert record.last_sync_at == synced

    def test_list_accounts(self, store, account):
        assert [a.id for a in store.list_accounts()] == [account.id]


class TestCategoriesAndRules:
    """Tests for category and cleanup rule persistence."""

    def test_find_category_case_insensitive(self, store):
        store.save_category(Category(id="c1", name="Groceries", external_id="ynab-c1"))
        assert store.find_category_by_name("groceries").external_id == "ynab-c1"

    def test_uncategorized_seeded_on_init(self, store):
        assert store.find_category_by_name("uncategorized") == UNCATEGORIZED
        assert [c.id for c in store.list_categories()] == [UNCATEGORIZED.id]

        # Reopening the same database keeps a single sentinel row
        reopened = StateStore(store.db_path)
        assert [c.id for c in reopened.list_categories()] == [UNCATEGORIZED.id]

    def test_synced_uncategorized_maps_sentinel(self, store):
        store.save_category(Category(id="ynab-u", name="Uncategorized", external_id="ynab-u"))

        category = store.find_category_by_name("Uncategorized")
        assert category.id == UNCATEGORIZED.id
        assert category.external_id == "ynab-u"

    def test_rule_round_trip_and_usage(self, store):
        rule = CleanupRule.from_human("lidl", PatternType.CONTAINS, "Lidl", "Groceries")
        store.save_rule(rule)
        store.increment_rule_usage(rule.id)

        loaded = store.get_rule(rule.id)
        assert loaded.pattern_type == PatternType.CONTAINS
        assert loaded.category == "Groceries"
        assert loaded.usage_count == 1

    def test_find_pending_rule(self, store):
        rule = CleanupRule.from_suggestion("LIDL", PatternType.CONTAINS, "Lidl", 0.9)
        store.save_rule(rule)
        assert store.find_pending_rule("lidl", PatternType.CONTAINS).id == rule.id
        assert store.find_pending_rule("lidl", PatternType.EXACT) is None
        assert store.list_rules(RuleStatus.APPROVED) == []

    def test_stats(self, store, account):
        add_transaction(store, "1")
        store.save_rule(CleanupRule.from_suggestion("x", PatternType.EXACT, "X", 0.5))
        stats = store.get_stats()
        assert stats["transactions_total"] == 1
        assert stats["imported"] == 1
        assert stats["pending_rules"] == 1


class TestAuditLog:
    """Tests for the persistent credential audit log."""

    def test_append_and_list_oldest_first(self, store):
        store.append_audit_event(AuditEvent(AuditEventKind.ACCESS, "a", "first"))
        store.append_audit_event(AuditEvent(AuditEventKind.CACHE_HIT, "a", "second"))
        store.append_audit_event(AuditEvent(AuditEventKind.ACCESS, "b", "other"))

        events = store.list_audit_events("a")
        assert [e.message for e in events] == ["first", "second"]
        assert [e.message for e in store.list_audit_events(limit=1)] == ["other"]
