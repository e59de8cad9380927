"""Submission workflow.

Sends CATEGORIZED transactions to the budgeting service. Each transaction is
handled under its per-key lock from the eligibility check through the port
call to the final save, so two concurrent runs can never submit it twice.
"""

from __future__ import annotations

import logging
import sqlite3
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import BudgetBridgeError, ItemFailure
from ..ports import SubmissionRequest
from ..retry import NO_RETRY, RetryPolicy
from ..schemas.dedupe import generate_import_id
from ..schemas.events import (
    EventSink,
    SubmissionFailed,
    TransactionSubmitted,
    TransactionsSubmitted,
    log_event,
)
from ..schemas.transaction import ProcessingState, Transaction, TransactionId

if TYPE_CHECKING:
    from ..ports import TransactionSubmissionPort
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class SubmissionResult:
    """Result of one submission run."""

    submitted: int = 0
    external_ids: dict[str, str] = field(default_factory=dict)
    failures: list[ItemFailure] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.failures


class SubmissionWorkflow:
    """Submit eligible transactions through the TransactionSubmissionPort."""

    def __init__(
        self,
        store: StateStore,
        port: TransactionSubmissionPort,
        max_concurrent: int = 4,
        retry_policy: RetryPolicy = NO_RETRY,
        cleared: bool = True,
        auto_approve: bool = False,
        event_sink: EventSink = log_event,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be a positive integer")
        self.store = store
        self.port = port
        self.max_concurrent = max_concurrent
        self.retry_policy = retry_policy
        self.cleared = cleared
        self.auto_approve = auto_approve
        self.emit = event_sink

    def submit_ready(self, account_id: str | None = None) -> SubmissionResult:
        """Submit everything the store reports as ready."""
        states = self.store.find_ready_to_submit(account_id)
        return self.submit([s.transaction_id for s in states])

    def submit(self, transaction_ids: list[TransactionId]) -> SubmissionResult:
        """Submit explicit ids; ineligible ones are refused with their reasons."""
        result = SubmissionResult()
        if not transaction_ids:
            logger.info("No transactions to submit")
            return result

        with ThreadPoolExecutor(max_workers=self.max_concurrent) as pool:
            outcomes = list(pool.map(self._submit_one, transaction_ids))

        for tid, outcome in zip(transaction_ids, outcomes):
            if isinstance(outcome, ItemFailure):
                result.failures.append(outcome)
            else:
                result.submitted += 1
                result.external_ids[str(tid)] = outcome

        if result.submitted:
            self.emit(TransactionsSubmitted(result.submitted))
        logger.info(
            "Submission done: %d submitted, %d failed", result.submitted, len(result.failures)
        )
        return result

    def build_request(self, tx: Transaction, state: ProcessingState) -> SubmissionRequest:
        category_name = state.effective_category or ""
        category = self.store.find_category_by_name(category_name) if category_name else None
        return SubmissionRequest(
            import_id=generate_import_id(
                tx.id.source_account_id,
                tx.id.provider_transaction_id,
                tx.amount,
                tx.date,
            ),
            date=tx.date,
            amount=tx.amount,
            payee_name=state.effective_payee or "",
            category_name=category_name,
            category_external_id=category.external_id if category else None,
            memo=state.effective_memo,
            cleared=self.cleared,
            approved=self.auto_approve,
        )

    def _refuse(self, tid: TransactionId, reason: str) -> ItemFailure:
        self.emit(SubmissionFailed(reason=f"{tid}: {reason}", transaction_count=1))
        logger.warning("Refusing to submit %s: %s", tid, reason)
        return ItemFailure(str(tid), reason)

    def _record_error(self, state: ProcessingState, reason: str) -> None:
        try:
            self.store.save_processing_state(state.with_error(reason))
        except sqlite3.Error as e:
            logger.error("Could not record error for %s: %s", state.transaction_id, e)

    def _submit_one(self, tid: TransactionId) -> ItemFailure | str:
        with self.store.key_lock(tid):
            state = self.store.load_processing_state(tid)
            if state is None:
                return self._refuse(tid, "no processing state")

            blockers = state.submission_blockers()
            if blockers:
                return self._refuse(tid, ", ".join(blockers))

            tx = self.store.load_transaction(tid)
            if tx is None:
                return self._refuse(tid, "transaction record missing")

            external_account_id = state.external_account_id or ""
            try:
                request = self.build_request(tx, state)
                external_id = self.retry_policy.call(
                    lambda: self.port.submit(external_account_id, request),
                    description=f"submit {tid}",
                )
            except (BudgetBridgeError, ValueError, sqlite3.Error) as e:
                self._record_error(state, str(e))
                return self._refuse(tid, str(e))

            try:
                self.store.save_processing_state(
                    state.with_submission(external_id, external_account_id)
                )
            except sqlite3.Error as e:
                # The remote copy exists; a resubmit is absorbed by its import_id
                logger.error("Submitted %s as %s but could not save state: %s", tid, external_id, e)
                return self._refuse(tid, f"submitted as {external_id}, state not saved: {e}")

        self.emit(TransactionSubmitted(tid, external_id))
        return external_id
