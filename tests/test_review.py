"""Tests for review actions."""

import pytest

from budget_bridge.errors import IllegalStateError
from budget_bridge.schemas import ProcessingState, Transaction, TransactionId, TransactionStatus
from budget_bridge.services import ReviewService

from conftest import make_raw


@pytest.fixture
def review(store) -> ReviewService:
    return ReviewService(store)


@pytest.fixture
def imported(store, account) -> Transaction:
    tx = Transaction.from_raw(account.id, make_raw("1"))
    store.create_imported(tx, ProcessingState.initial(tx, account.external_account_id))
    return tx


class TestReviewService:
    """Tests for ReviewService."""

    def test_category_override_makes_ready(self, review, imported):
        state = review.override(imported.id, payee="Landlord", category="Rent")
        assert state.status == TransactionStatus.CATEGORIZED
        assert state.is_ready_for_submission

    def test_payee_only_override(self, review, imported):
        state = review.override(imported.id, payee="Landlord")
        assert state.status == TransactionStatus.IMPORTED
        assert state.submission_blockers() == ["invalid status IMPORTED", "missing category"]

    def test_unknown_transaction(self, review):
        with pytest.raises(IllegalStateError):
            review.override(TransactionId("fio-main", "404"), category="Rent")

    def test_retry_failed(self, review, imported, store):
        review.override(imported.id, payee="Landlord", category="Rent")
        review.mark_failed(imported.id, "rejected upstream")
        assert store.load_processing_state(imported.id).status == TransactionStatus.FAILED

        state = review.retry(imported.id)

        assert state.status == TransactionStatus.CATEGORIZED
        assert state.failure_reason is None

    def test_retry_without_category_returns_to_imported(self, review, imported):
        review.mark_failed(imported.id, "boom")
        assert review.retry(imported.id).status == TransactionStatus.IMPORTED

    def test_retry_requires_failed(self, review, imported):
        with pytest.raises(IllegalStateError):
            review.retry(imported.id)

    def test_override_refused_while_failed(self, review, imported):
        review.mark_failed(imported.id, "boom")
        with pytest.raises(IllegalStateError):
            review.override(imported.id, category="Rent")
