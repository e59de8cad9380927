"""Credential vault: encrypted bank tokens with TTL cache and audit trail."""

from .crypto import CryptoError, TokenCipher, derive_key
from .token_vault import DEFAULT_CACHE_TTL_SECONDS, MAX_AUDIT_EVENTS, CredentialVault

__all__ = [
    "DEFAULT_CACHE_TTL_SECONDS",
    "MAX_AUDIT_EVENTS",
    "CredentialVault",
    "CryptoError",
    "TokenCipher",
    "derive_key",
]
