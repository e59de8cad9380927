"""Tests for token encryption and the credential vault."""

import base64

import pytest

from budget_bridge.errors import AccountNotFoundError, TokenDecryptionError
from budget_bridge.schemas import AuditEventKind, CredentialRecord
from budget_bridge.vault import CredentialVault, CryptoError, TokenCipher, derive_key

from conftest import BANK_TOKEN, ENCRYPTION_KEY


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestTokenCipher:
    """Tests for AES-256-CBC token encryption."""

    def test_round_trip(self):
        cipher = TokenCipher(ENCRYPTION_KEY)
        assert cipher.decrypt(cipher.encrypt("secret-token")) == "secret-token"

    def test_round_trip_unicode(self):
        cipher = TokenCipher(ENCRYPTION_KEY)
        assert cipher.decrypt(cipher.encrypt("žluťoučký kůň")) == "žluťoučký kůň"

    def test_fresh_iv_per_encryption(self):
        cipher = TokenCipher(ENCRYPTION_KEY)
        assert cipher.encrypt("same") != cipher.encrypt("same")

    def test_blob_layout(self):
        blob = base64.b64decode(TokenCipher(ENCRYPTION_KEY).encrypt("abc"))
        # 16-byte IV plus one padded block
        assert len(blob) == 32

    def test_key_derivation_pads_and_truncates(self):
        assert derive_key("abc") == b"abc" + b"\x00" * 29
        assert derive_key("x" * 40) == b"x" * 32

    def test_empty_key_rejected(self):
        with pytest.raises(ValueError):
            derive_key("")

    @pytest.mark.parametrize(
        "blob",
        [
            "not base64 !!",
            base64.b64encode(b"short").decode(),
            base64.b64encode(b"\x00" * 16 + b"\x01" * 7).decode(),
        ],
    )
    def test_malformed_blobs(self, blob):
        with pytest.raises(CryptoError):
            TokenCipher(ENCRYPTION_KEY).decrypt(blob)


class TestCredentialVault:
    """Tests for vault caching and auditing."""

    def test_store_and_get(self, vault, account):
        vault.store_token(account.id, BANK_TOKEN)
        assert vault.get_token(account.id) == BANK_TOKEN

    def test_stored_blob_is_encrypted(self, vault, store, account):
        vault.store_token(account.id, BANK_TOKEN)
        record = store.get_credential(account.id)
        assert BANK_TOKEN not in record.encrypted_token

    def test_unknown_account(self, vault):
        with pytest.raises(AccountNotFoundError):
            vault.store_token("missing", BANK_TOKEN)

    def test_empty_token_rejected(self, vault, account):
        with pytest.raises(ValueError):
            vault.store_token(account.id, "")

    @pytest.mark.parametrize("token", ["  tok-with-spaces  ", " ", "\ttab\n"])
    def test_token_stored_unchanged(self, store, account, token):
        """Whitespace is part of the token and survives the round trip."""
        vault = CredentialVault(store, ENCRYPTION_KEY, persist_audit=False)
        vault.store_token(account.id, token)
        vault.clear_cache()
        assert vault.get_token(account.id) == token

    def test_missing_credential_returns_none(self, vault, account):
        assert vault.get_token(account.id) is None

    def test_undecryptable_blob_raises(self, vault, store, account):
        store.save_credential(CredentialRecord(account.id, "garbage!"))
        with pytest.raises(TokenDecryptionError):
            vault.get_token(account.id)

    def test_second_read_within_ttl_is_cache_hit(self, store, account):
        clock = FakeClock()
        vault = CredentialVault(
            store, ENCRYPTION_KEY, cache_ttl_seconds=60, clock=clock, persist_audit=False
        )
        vault.store_token(account.id, BANK_TOKEN)

        vault.get_token(account.id)
        clock.advance(59)
        vault.get_token(account.id)
        clock.advance(2)
        vault.get_token(account.id)

        kinds = [e.kind for e in vault.audit_events(account.id)]
        assert kinds == [
            AuditEventKind.UPDATE,
            AuditEventKind.ACCESS,
            AuditEventKind.CACHE_HIT,
            AuditEventKind.ACCESS,
        ]

    def test_invalidate_then_get_reads_store(self, vault_with_token, account):
        vault_with_token.invalidate_cache(account.id)
        vault_with_token.get_token(account.id)

        kinds = [e.kind for e in vault_with_token.audit_events(account.id)]
        assert kinds.count(AuditEventKind.ACCESS) == 1
        assert kinds.count(AuditEventKind.CACHE_HIT) == 0
        assert kinds.count(AuditEventKind.INVALIDATE) == 1

    def test_store_token_replaces_cached_value(self, vault_with_token, account):
        vault_with_token.get_token(account.id)
        vault_with_token.store_token(account.id, "rotated-token")
        assert vault_with_token.get_token(account.id) == "rotated-token"

    def test_clear_cache(self, vault_with_token, account):
        vault_with_token.get_token(account.id)
        assert vault_with_token.cached_accounts == 1

        vault_with_token.clear_cache()

        assert vault_with_token.cached_accounts == 0
        assert vault_with_token.audit_events(account.id)[-1].kind == AuditEventKind.INVALIDATE

    def test_audit_persisted_to_store(self, store, account):
        vault = CredentialVault(store, ENCRYPTION_KEY)
        vault.store_token(account.id, BANK_TOKEN)
        vault.get_token(account.id)

        kinds = [e.kind for e in store.list_audit_events(account.id)]
        assert kinds == [AuditEventKind.UPDATE, AuditEventKind.ACCESS]

    def test_token_never_in_audit_messages(self, vault_with_token, account):
        vault_with_token.get_token(account.id)
        for event in vault_with_token.audit_events():
            assert BANK_TOKEN not in event.message
