"""
Token encryption.

Blob format: base64(IV[16] || AES-256-CBC(PKCS7(plaintext)))

The key is the UTF-8 secret zero-padded or truncated to 32 bytes.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

KEY_LENGTH = 32
IV_LENGTH = 16
BLOCK_SIZE_BITS = 128


class CryptoError(ValueError):
    """Blob is malformed or does not decrypt under the configured key."""

    pass


def derive_key(secret: str) -> bytes:
    """Zero-pad or truncate the secret's UTF-8 bytes to 32 bytes."""
    if not secret:
        raise ValueError("Encryption key must not be empty")
    raw = secret.encode("utf-8")
    return raw[:KEY_LENGTH].ljust(KEY_LENGTH, b"\x00")


class TokenCipher:
    """AES-256-CBC with a fresh random IV per encryption."""

    def __init__(self, secret: str):
        self._key = derive_key(secret)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH)
        padder = padding.PKCS7(BLOCK_SIZE_BITS).padder()
        padded = padder.update(plaintext.encode("utf-8")) + padder.finalize()
        encryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).encryptor()
        ciphertext = encryptor.update(padded) + encryptor.finalize()
        return base64.b64encode(iv + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """
        Raises:
            CryptoError: On bad base64, short blob, bad padding or non-UTF-8 result
        """
        try:
            combined = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CryptoError(f"invalid base64: {e}") from e

        if len(combined) <= IV_LENGTH or (len(combined) - IV_LENGTH) % IV_LENGTH:
            raise CryptoError("blob too short or not block aligned")

        iv, ciphertext = combined[:IV_LENGTH], combined[IV_LENGTH:]
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(ciphertext) + decryptor.finalize()

        unpadder = padding.PKCS7(BLOCK_SIZE_BITS).unpadder()
        try:
            plaintext = unpadder.update(padded) + unpadder.finalize()
        except ValueError as e:
            raise CryptoError("bad padding (wrong key?)") from e

        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as e:
            raise CryptoError("decrypted token is not valid UTF-8") from e
