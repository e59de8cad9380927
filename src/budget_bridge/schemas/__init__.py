"""
SSOT (Single Source of Truth) schemas for the pipeline.

Transactions, processing state, batches, rules and events are defined here
and nowhere else.
"""

from .audit import AuditEvent, AuditEventKind
from .dedupe import (
    HASH_PREFIX_LENGTH,
    IMPORT_ID_MARKER,
    generate_import_id,
    is_bridge_import_id,
    to_milliunits,
)
from .events import (
    DomainEvent,
    DuplicateTransactionDetected,
    EventRecorder,
    EventSink,
    ImportCompleted,
    SubmissionFailed,
    TransactionCategorized,
    TransactionImported,
    TransactionsCategorized,
    TransactionSubmitted,
    TransactionsSubmitted,
    describe_event,
    log_event,
)
from .rules import CleanupRule, PatternType, RuleOrigin, RuleStatus
from .transaction import (
    ALLOWED_TRANSITIONS,
    UNCATEGORIZED,
    Category,
    ConfidenceScore,
    CredentialRecord,
    ImportBatch,
    ImportBatchId,
    ImportStatus,
    ProcessingState,
    RawTransaction,
    SourceAccount,
    Transaction,
    TransactionId,
    TransactionStatus,
    can_transition,
    clamp_confidence,
)

__all__ = [
    # Audit
    "AuditEvent",
    "AuditEventKind",
    # Dedupe
    "HASH_PREFIX_LENGTH",
    "IMPORT_ID_MARKER",
    "generate_import_id",
    "is_bridge_import_id",
    "to_milliunits",
    # Events
    "DomainEvent",
    "DuplicateTransactionDetected",
    "EventRecorder",
    "EventSink",
    "ImportCompleted",
    "SubmissionFailed",
    "TransactionCategorized",
    "TransactionImported",
    "TransactionsCategorized",
    "TransactionSubmitted",
    "TransactionsSubmitted",
    "describe_event",
    "log_event",
    # Rules
    "CleanupRule",
    "PatternType",
    "RuleOrigin",
    "RuleStatus",
    # Transactions
    "UNCATEGORIZED",
    "ALLOWED_TRANSITIONS",
    "Category",
    "ConfidenceScore",
    "CredentialRecord",
    "ImportBatch",
    "ImportBatchId",
    "ImportStatus",
    "ProcessingState",
    "RawTransaction",
    "SourceAccount",
    "Transaction",
    "TransactionId",
    "TransactionStatus",
    "can_transition",
    "clamp_confidence",
]
