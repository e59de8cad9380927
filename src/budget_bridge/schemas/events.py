"""
Domain events emitted by the workflows.

Events are plain frozen dataclasses. Workflows hand them to an ``EventSink``
(any callable taking one event); the default sink logs them through
``describe_event``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Union

from .transaction import ConfidenceScore, TransactionId, utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionImported:
    transaction_id: TransactionId
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class DuplicateTransactionDetected:
    transaction_id: TransactionId
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class ImportCompleted:
    source_account_id: str
    count: int  # newly created records
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TransactionCategorized:
    transaction_id: TransactionId
    category: str
    payee_name: str | None
    by_ai: bool
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TransactionsCategorized:
    transaction_count: int
    source_account_id: str | None
    average_confidence: ConfidenceScore
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TransactionSubmitted:
    transaction_id: TransactionId
    external_transaction_id: str
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class TransactionsSubmitted:
    transaction_count: int
    occurred_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class SubmissionFailed:
    reason: str
    transaction_count: int
    occurred_at: datetime = field(default_factory=utcnow)


DomainEvent = Union[
    TransactionImported,
    DuplicateTransactionDetected,
    ImportCompleted,
    TransactionCategorized,
    TransactionsCategorized,
    TransactionSubmitted,
    TransactionsSubmitted,
    SubmissionFailed,
]

EventSink = Callable[[DomainEvent], None]


def describe_event(event: DomainEvent) -> str:
    """Render an event as a single log line.

    Raises:
        TypeError: For anything that is not a known event type
    """
    if isinstance(event, TransactionImported):
        return f"Imported {event.transaction_id}"
    if isinstance(event, DuplicateTransactionDetected):
        return f"Duplicate detected {event.transaction_id}"
    if isinstance(event, ImportCompleted):
        return f"Import completed for {event.source_account_id}: {event.count} new"
    if isinstance(event, TransactionCategorized):
        source = "AI" if event.by_ai else "rule"
        return (
            f"Categorized {event.transaction_id} as '{event.category}' "
            f"(payee={event.payee_name!r}, by {source})"
        )
    if isinstance(event, TransactionsCategorized):
        return (
            f"Categorized {event.transaction_count} transaction(s), "
            f"avg confidence {event.average_confidence.value:.2f}"
        )
    if isinstance(event, TransactionSubmitted):
        return f"Submitted {event.transaction_id} -> {event.external_transaction_id}"
    if isinstance(event, TransactionsSubmitted):
        return f"Submitted {event.transaction_count} transaction(s)"
    if isinstance(event, SubmissionFailed):
        return f"Submission failed for {event.transaction_count} transaction(s): {event.reason}"
    raise TypeError(f"Unknown event type: {type(event).__name__}")


def log_event(event: DomainEvent) -> None:
    """Default event sink."""
    logger.info(describe_event(event))


class EventRecorder:
    """Event sink that keeps every event, for CLI summaries and tests."""

    def __init__(self) -> None:
        self.events: list[DomainEvent] = []

    def __call__(self, event: DomainEvent) -> None:
        describe_event(event)
        self.events.append(event)

    def of_type(self, event_type: type) -> list:
        return [e for e in self.events if isinstance(e, event_type)]
