"""
Credential vault for bank API tokens.

Tokens are stored encrypted in the state store. Decrypted tokens are cached
in memory per account for a configurable TTL. Every access, cache hit,
invalidation and update is recorded in an audit trail (bounded in memory,
and appended to the store's token_audit_log table).

The cache check, store read, decrypt and cache fill run under one lock, so
a concurrent invalidate can never be overtaken by a stale refresh.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from ..errors import AccountNotFoundError, TokenDecryptionError
from ..schemas.audit import AuditEvent, AuditEventKind
from ..schemas.transaction import CredentialRecord
from .crypto import CryptoError, TokenCipher

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_SECONDS = 30 * 60
MAX_AUDIT_EVENTS = 1000


@dataclass
class _CacheEntry:
    token: str
    expires_at: float


class CredentialVault:
    """Encrypts, caches and audits bank API tokens."""

    def __init__(
        self,
        store: StateStore,
        encryption_key: str,
        cache_ttl_seconds: float = DEFAULT_CACHE_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
        persist_audit: bool = True,
    ) -> None:
        """
        Args:
            store: State store holding credential records
            encryption_key: Secret used to derive the AES-256 key
            cache_ttl_seconds: Lifetime of a decrypted token in the cache
            clock: Monotonic time source (seconds), injectable for tests
            persist_audit: Also append audit events to the store
        """
        self.store = store
        self.cache_ttl_seconds = cache_ttl_seconds
        self._cipher = TokenCipher(encryption_key)
        self._clock = clock
        self._persist_audit = persist_audit
        self._lock = threading.Lock()
        self._cache: dict[str, _CacheEntry] = {}
        self._audit: deque[AuditEvent] = deque(maxlen=MAX_AUDIT_EVENTS)

    def _record(self, kind: AuditEventKind, account_id: str, message: str) -> None:
        event = AuditEvent(kind=kind, account_id=account_id, message=message)
        self._audit.append(event)
        if self._persist_audit:
            self.store.append_audit_event(event)

    def store_token(self, account_id: str, token: str) -> None:
        """Encrypt and persist a token, replacing any previous one.

        Raises:
            AccountNotFoundError: If the source account does not exist
            ValueError: If the token is empty
        """
        if not token:
            raise ValueError("Token must not be empty")

        if self.store.get_account(account_id) is None:
            raise AccountNotFoundError(account_id)

        encrypted = self._cipher.encrypt(token)
        with self._lock:
            self.store.save_credential(
                CredentialRecord(account_id=account_id, encrypted_token=encrypted)
            )
            self._cache.pop(account_id, None)
            self._record(AuditEventKind.UPDATE, account_id, "Token stored")
        logger.info("Stored token for account %s", account_id)

    def get_token(self, account_id: str) -> str | None:
        """Return the plaintext token, or None if the account has no credential.

        Raises:
            TokenDecryptionError: If the stored blob cannot be decrypted
        """
        with self._lock:
            now = self._clock()
            entry = self._cache.get(account_id)
            if entry is not None and now < entry.expires_at:
                self._record(AuditEventKind.CACHE_HIT, account_id, "Token served from cache")
                return entry.token

            record = self.store.get_credential(account_id)
            if record is None:
                self._cache.pop(account_id, None)
                logger.debug("No credential stored for account %s", account_id)
                return None

            try:
                token = self._cipher.decrypt(record.encrypted_token)
            except CryptoError as e:
                self._cache.pop(account_id, None)
                raise TokenDecryptionError(account_id, str(e)) from e
            if not token:
                self._cache.pop(account_id, None)
                raise TokenDecryptionError(account_id, "decrypted token is empty")

            self._cache[account_id] = _CacheEntry(
                token=token, expires_at=now + self.cache_ttl_seconds
            )
            self._record(AuditEventKind.ACCESS, account_id, "Token read from store")
            return token

    def invalidate_cache(self, account_id: str) -> None:
        """Drop the cached token; the next get_token reads the store."""
        with self._lock:
            self._cache.pop(account_id, None)
            self._record(AuditEventKind.INVALIDATE, account_id, "Cache invalidated")

    def clear_cache(self) -> None:
        """Drop every cached token."""
        with self._lock:
            accounts = list(self._cache)
            self._cache.clear()
            for account_id in accounts:
                self._record(AuditEventKind.INVALIDATE, account_id, "Cache cleared")

    def audit_events(self, account_id: str | None = None, limit: int = 100) -> list[AuditEvent]:
        """Most recent in-memory audit events, oldest first."""
        with self._lock:
            events = [e for e in self._audit if account_id is None or e.account_id == account_id]
        return events[-limit:] if limit else events

    @property
    def cached_accounts(self) -> int:
        with self._lock:
            return sum(1 for e in self._cache.values() if self._clock() < e.expires_at)
