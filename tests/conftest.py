"""Test fixtures and utilities."""

import threading
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

from budget_bridge.ports import CleanupResult, FetchResult, RowFailure, SubmissionRequest
from budget_bridge.schemas.transaction import RawTransaction, SourceAccount
from budget_bridge.state_store import StateStore
from budget_bridge.vault import CredentialVault

ENCRYPTION_KEY = "test-encryption-key"
BANK_TOKEN = "fio-token-abc123"


def make_raw(
    provider_id: str,
    amount: str = "-100.00",
    tx_date: date = date(2025, 3, 14),
    counterparty: str | None = "LIDL DEKUJEME ZA NAKUP",
    message: str | None = None,
) -> RawTransaction:
    """Build a raw bank transaction."""
    return RawTransaction(
        provider_transaction_id=provider_id,
        date=tx_date,
        amount=Decimal(amount),
        currency="CZK",
        counterparty_name=counterparty,
        message=message,
        transaction_type="Platba kartou",
    )


class FakeBankProvider:
    """TransactionProvider returning canned raw transactions."""

    def __init__(
        self,
        transactions: list[RawTransaction] | None = None,
        error=None,
        failures: list[RowFailure] | None = None,
    ):
        self.transactions = transactions or []
        self.failures = failures or []
        self.error = error
        self.calls: list[tuple] = []

    def fetch(self, token, account, date_from, date_to):
        self.calls.append((token, account.id, date_from, date_to))
        if self.error is not None:
            raise self.error
        return FetchResult(list(self.transactions), list(self.failures))


class FakeCategorizationProvider:
    """CategorizationProvider answering from a text -> result map."""

    def __init__(self, results: dict[str, CleanupResult] | None = None, default=None):
        self.results = results or {}
        self.default = default
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def cleanup(self, text, context):
        with self._lock:
            self.calls.append(text)
        result = self.results.get(text, self.default)
        if isinstance(result, Exception):
            raise result
        if result is None:
            return CleanupResult(original=text, payee=None, category=None, confidence=0.0)
        return result


class FakeSubmissionPort:
    """TransactionSubmissionPort recording every request."""

    def __init__(self, fail_with: Exception | None = None):
        self.fail_with = fail_with
        self.requests: list[tuple[str, SubmissionRequest]] = []
        self._lock = threading.Lock()

    def submit(self, external_account_id, request):
        with self._lock:
            self.requests.append((external_account_id, request))
            if self.fail_with is not None:
                raise self.fail_with
            return f"ynab-{len(self.requests)}"


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> StateStore:
    """Fresh state store."""
    return StateStore(temp_db)


@pytest.fixture
def account(store) -> SourceAccount:
    """Registered source account mapped to a budget account."""
    acc = SourceAccount(
        id="fio-main",
        name="Fio main",
        account_number="2800000001",
        bank_code="2010",
        external_account_id="ynab-account-1",
    )
    store.save_account(acc)
    return acc


@pytest.fixture
def vault(store) -> CredentialVault:
    """Vault without persistent audit (keeps audit assertions in memory)."""
    return CredentialVault(store, ENCRYPTION_KEY, persist_audit=False)


@pytest.fixture
def vault_with_token(vault, account) -> CredentialVault:
    """Vault with a stored bank token for the default account."""
    vault.store_token(account.id, BANK_TOKEN)
    return vault
