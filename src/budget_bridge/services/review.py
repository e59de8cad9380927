"""User review actions: overrides and retrying failed transactions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from ..errors import IllegalStateError
from ..schemas.transaction import ProcessingState, TransactionId

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


class ReviewService:
    """Apply user decisions to processing states."""

    def __init__(self, store: StateStore) -> None:
        self.store = store

    def _update(self, tid: TransactionId, fn) -> ProcessingState:
        try:
            return self.store.update_processing_state(tid, fn)
        except KeyError:
            raise IllegalStateError(f"No processing state for {tid}") from None

    def override(
        self,
        transaction_id: TransactionId,
        payee: str | None = None,
        category: str | None = None,
        memo: str | None = None,
    ) -> ProcessingState:
        """
        Set user overrides. A category override moves an IMPORTED
        transaction to CATEGORIZED.

        Raises:
            IllegalStateError: Unknown id, or the transaction is SUBMITTED/FAILED
        """
        state = self._update(
            transaction_id,
            lambda s: s.with_overrides(payee=payee, category=category, memo=memo),
        )
        logger.info("Override applied to %s (status %s)", transaction_id, state.status.value)
        return state

    def retry(self, transaction_id: TransactionId) -> ProcessingState:
        """
        Leave FAILED. The status becomes CATEGORIZED if an effective
        category exists, otherwise IMPORTED.

        Raises:
            IllegalStateError: Unknown id, or the transaction is not FAILED
        """
        state = self._update(transaction_id, ProcessingState.retry)
        logger.info("Retrying %s, now %s", transaction_id, state.status.value)
        return state

    def mark_failed(self, transaction_id: TransactionId, reason: str) -> ProcessingState:
        """Park a transaction in FAILED until it is explicitly retried."""
        state = self._update(transaction_id, lambda s: s.mark_failed(reason))
        logger.info("Marked %s as FAILED: %s", transaction_id, reason)
        return state
