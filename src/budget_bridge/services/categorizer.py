"""Categorization workflow.

Runs an ordered chain of matchers over IMPORTED, non-duplicate transactions:
approved cleanup rules first, then the AI provider. The first matcher that
produces a category wins. A rule that only cleans the payee hands the
cleaned name on to the next matcher.

Provider calls are retried under a RetryPolicy and fanned out on a bounded
thread pool; results are fanned in before the aggregate event is emitted.
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Optional

from ..errors import BudgetBridgeError, IllegalStateError, ItemFailure
from ..retry import RetryPolicy
from ..schemas.events import (
    EventSink,
    TransactionCategorized,
    TransactionsCategorized,
    log_event,
)
from ..schemas.transaction import (
    ConfidenceScore,
    ProcessingState,
    Transaction,
    TransactionId,
    TransactionStatus,
)
from ..state_store import ProcessingStateQuery

if TYPE_CHECKING:
    from ..categorization.rules import RuleBook
    from ..ports import CategorizationProvider
    from ..state_store import StateStore

logger = logging.getLogger(__name__)


@dataclass
class Match:
    """Outcome of one matcher for one transaction."""

    payee: Optional[str]
    category: Optional[str]
    confidence: float
    memo: Optional[str] = None
    payee_confidence: Optional[float] = None
    by_ai: bool = False


Matcher = Callable[[Transaction, str], Optional[Match]]


@dataclass
class CategorizationResult:
    """Result of one categorization run."""

    categorized: int = 0
    uncategorized: int = 0  # processed, but no matcher produced a category
    failures: list[ItemFailure] = field(default_factory=list)
    confidences: list[float] = field(default_factory=list)

    @property
    def average_confidence(self) -> ConfidenceScore:
        if not self.confidences:
            return ConfidenceScore.of(0.0)
        return ConfidenceScore.of(sum(self.confidences) / len(self.confidences))

    @property
    def success(self) -> bool:
        return not self.failures


def rule_matcher(rulebook: RuleBook) -> Matcher:
    """Matcher applying the most specific approved cleanup rule."""

    def match(tx: Transaction, text: str) -> Optional[Match]:
        rule = rulebook.match(text)
        if rule is None:
            return None
        return Match(
            payee=rule.apply(text),
            category=rule.category,
            confidence=rule.confidence,
            payee_confidence=rule.confidence,
        )

    return match


def ai_matcher(
    provider: CategorizationProvider,
    retry_policy: RetryPolicy,
    rulebook: RuleBook | None = None,
) -> Matcher:
    """Matcher asking the categorization provider. Rule suggestions are stored PENDING."""

    def match(tx: Transaction, text: str) -> Optional[Match]:
        context = tx.categorization_context()
        result = retry_policy.call(
            lambda: provider.cleanup(text, context), description=f"categorize {tx.id}"
        )
        if result.rule_suggestion is not None and rulebook is not None:
            rulebook.suggest(result.rule_suggestion, category=result.category)
        return Match(
            payee=result.payee,
            category=result.category,
            confidence=result.confidence,
            memo=result.memo,
            payee_confidence=result.payee_confidence,
            by_ai=True,
        )

    return match


class CategorizationWorkflow:
    """Suggest payee, category and memo for imported transactions."""

    def __init__(
        self,
        store: StateStore,
        matchers: list[Matcher],
        max_concurrent: int = 4,
        event_sink: EventSink = log_event,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be a positive integer")
        self.store = store
        self.matchers = matchers
        self.max_concurrent = max_concurrent
        self.emit = event_sink

    def categorize_pending(self, account_id: str | None = None) -> CategorizationResult:
        """Categorize every IMPORTED, non-duplicate transaction (optionally one account)."""
        states = self.store.find_processing_states(
            ProcessingStateQuery(
                status=TransactionStatus.IMPORTED,
                source_account_id=account_id,
                is_duplicate=False,
            )
        )
        return self._run([s.transaction_id for s in states], account_id)

    def categorize(self, transaction_ids: list[TransactionId]) -> CategorizationResult:
        """Categorize explicit ids. Ids that are not IMPORTED are reported as failures."""
        return self._run(transaction_ids, None)

    def _run(
        self, transaction_ids: list[TransactionId], account_id: str | None
    ) -> CategorizationResult:
        result = CategorizationResult()
        if not transaction_ids:
            logger.info("No transactions to categorize")
            return result

        logger.info(
            "Categorizing %d transaction(s) with %d worker(s)",
            len(transaction_ids),
            self.max_concurrent,
        )
        with ThreadPoolExecutor(max_workers=self.max_concurrent) as pool:
            outcomes = list(pool.map(self._categorize_one, transaction_ids))

        for tid, outcome in zip(transaction_ids, outcomes):
            if isinstance(outcome, ItemFailure):
                result.failures.append(outcome)
            elif outcome is None:
                result.uncategorized += 1
            else:
                result.categorized += 1
                result.confidences.append(outcome)

        if result.categorized:
            self.emit(
                TransactionsCategorized(
                    transaction_count=result.categorized,
                    source_account_id=account_id,
                    average_confidence=result.average_confidence,
                )
            )
        logger.info(
            "Categorization done: %d categorized, %d without category, %d failed",
            result.categorized,
            result.uncategorized,
            len(result.failures),
        )
        return result

    def _match(self, tx: Transaction) -> Optional[Match]:
        text = tx.payee_text
        partial: Optional[Match] = None
        for matcher in self.matchers:
            match = matcher(tx, text)
            if match is None:
                continue
            if match.category:
                if partial is not None and not match.payee:
                    match.payee = partial.payee
                    match.payee_confidence = partial.payee_confidence
                return match
            partial = match
            if match.payee:
                text = match.payee
        return partial

    def _categorize_one(self, tid: TransactionId) -> ItemFailure | float | None:
        """
        Categorize one transaction under its key lock, so the status check
        and the state update cannot interleave with an override or a submit.

        Returns:
            Category confidence when categorized, None when no category was
            found, or an ItemFailure
        """
        with self.store.key_lock(tid):
            try:
                return self._categorize_locked(tid)
            except (BudgetBridgeError, ValueError, KeyError, sqlite3.Error) as e:
                logger.error("Categorization of %s aborted: %s", tid, e)
                return ItemFailure(str(tid), str(e))

    def _record_error(self, tid: TransactionId, reason: str) -> None:
        try:
            self.store.update_processing_state(tid, lambda s: s.with_error(reason))
        except (KeyError, sqlite3.Error) as e:
            logger.error("Could not record error for %s: %s", tid, e)

    def _categorize_locked(self, tid: TransactionId) -> ItemFailure | float | None:
        state = self.store.load_processing_state(tid)
        if state is None:
            return ItemFailure(str(tid), "no processing state")
        if state.is_duplicate:
            return ItemFailure(str(tid), "duplicate transaction")
        if state.status != TransactionStatus.IMPORTED:
            return ItemFailure(str(tid), f"invalid status {state.status.value}")

        tx = self.store.load_transaction(tid)
        if tx is None:
            reason = "transaction record missing"
            self.store.update_processing_state(tid, lambda s: s.mark_failed(reason))
            logger.error("Transaction %s has state but no record, marked FAILED", tid)
            return ItemFailure(str(tid), reason)

        try:
            match = self._match(tx)
        except (BudgetBridgeError, ValueError, sqlite3.Error) as e:
            reason = str(e)
            self._record_error(tid, reason)
            logger.warning("Categorization of %s failed: %s", tid, reason)
            return ItemFailure(str(tid), reason)

        if match is None:
            logger.debug("No matcher produced a result for %s", tid)
            return None

        confidence = ConfidenceScore.of(match.confidence)
        payee_confidence = (
            ConfidenceScore.of(match.payee_confidence)
            if match.payee_confidence is not None
            else None
        )

        def apply(current: ProcessingState) -> ProcessingState:
            return current.with_categorization(
                payee=match.payee,
                category=match.category,
                memo=match.memo,
                category_confidence=confidence if match.category else None,
                payee_confidence=payee_confidence,
            )

        try:
            updated = self.store.update_processing_state(tid, apply)
        except IllegalStateError as e:
            return ItemFailure(str(tid), str(e))

        if updated.status != TransactionStatus.CATEGORIZED:
            return None

        self.emit(
            TransactionCategorized(
                transaction_id=tid,
                category=match.category or "",
                payee_name=match.payee,
                by_ai=match.by_ai,
            )
        )
        return confidence.value
