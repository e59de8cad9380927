"""Credential vault audit trail records."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .transaction import utcnow


class AuditEventKind(str, Enum):
    ACCESS = "ACCESS"  # token read from the store and decrypted
    CACHE_HIT = "CACHE_HIT"
    INVALIDATE = "INVALIDATE"
    UPDATE = "UPDATE"  # token stored or replaced


@dataclass(frozen=True)
class AuditEvent:
    """Append-only record of a credential access. Never carries the token."""

    kind: AuditEventKind
    account_id: str
    message: str
    occurred_at: datetime = field(default_factory=utcnow)
