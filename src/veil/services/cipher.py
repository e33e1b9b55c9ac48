"""Authenticated encryption primitives.

AES-256-GCM protects direct messages and vault entries; XChaCha20-Poly1305
protects private-feed content where the longer nonce allows random nonces
under a key shared by many writers.
"""

from __future__ import annotations

import secrets

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from nacl.bindings import (
    crypto_aead_xchacha20poly1305_ietf_ABYTES,
    crypto_aead_xchacha20poly1305_ietf_decrypt,
    crypto_aead_xchacha20poly1305_ietf_encrypt,
    crypto_aead_xchacha20poly1305_ietf_KEYBYTES,
    crypto_aead_xchacha20poly1305_ietf_NPUBBYTES,
)
from nacl.exceptions import CryptoError

from veil.core.errors import AuthenticationFailedError

KEY_SIZE = 32
GCM_NONCE_SIZE = 12
GCM_TAG_SIZE = 16
XCHACHA_NONCE_SIZE = crypto_aead_xchacha20poly1305_ietf_NPUBBYTES
XCHACHA_TAG_SIZE = crypto_aead_xchacha20poly1305_ietf_ABYTES


def generate_nonce(size: int = GCM_NONCE_SIZE) -> bytes:
    """Return ``size`` bytes from the CSPRNG.

    A nonce must never be reused under the same key; callers draw a fresh one
    for every encryption.
    """
    return secrets.token_bytes(size)


class SymmetricCipher:
    """AES-256-GCM encryption that fails closed."""

    @staticmethod
    def encrypt(
        key: bytes,
        nonce: bytes,
        plaintext: bytes,
        associated_data: bytes | None = None,
    ) -> bytes:
        """Encrypt ``plaintext`` and return ``ciphertext || tag``.

        Args:
            key: 32-byte symmetric key.
            nonce: 12-byte nonce, unique per key.
            plaintext: Payload to protect.
            associated_data: Optional data authenticated but not encrypted.

        Raises:
            ValueError: If the key or nonce has the wrong length.
        """
        if len(key) != KEY_SIZE:
            raise ValueError("AES-256-GCM keys must be 32 bytes")
        if len(nonce) != GCM_NONCE_SIZE:
            raise ValueError("AES-GCM nonces must be 12 bytes")
        return AESGCM(key).encrypt(nonce, plaintext, associated_data)

    @staticmethod
    def decrypt(
        key: bytes,
        nonce: bytes,
        data: bytes,
        associated_data: bytes | None = None,
    ) -> bytes:
        """Decrypt ``ciphertext || tag``.

        Raises:
            AuthenticationFailedError: On a tag mismatch, truncated input or any
                malformed length. No partial plaintext is ever returned.
        """
        if len(key) != KEY_SIZE or len(nonce) != GCM_NONCE_SIZE:
            raise AuthenticationFailedError("Invalid key or nonce length")
        if len(data) < GCM_TAG_SIZE:
            raise AuthenticationFailedError("Ciphertext too short")
        try:
            return AESGCM(key).decrypt(nonce, data, associated_data)
        except InvalidTag as err:
            raise AuthenticationFailedError("Authentication tag mismatch") from err


def xchacha_encrypt(key: bytes, nonce: bytes, plaintext: bytes, associated_data: bytes) -> bytes:
    """Encrypt with XChaCha20-Poly1305 and return ``ciphertext || tag``."""
    if len(key) != crypto_aead_xchacha20poly1305_ietf_KEYBYTES:
        raise ValueError("XChaCha20-Poly1305 keys must be 32 bytes")
    if len(nonce) != XCHACHA_NONCE_SIZE:
        raise ValueError("XChaCha20-Poly1305 nonces must be 24 bytes")
    return crypto_aead_xchacha20poly1305_ietf_encrypt(plaintext, associated_data, nonce, key)


def xchacha_decrypt(key: bytes, nonce: bytes, data: bytes, associated_data: bytes) -> bytes:
    """Decrypt XChaCha20-Poly1305 output, failing closed like ``SymmetricCipher``."""
    if len(key) != crypto_aead_xchacha20poly1305_ietf_KEYBYTES or len(nonce) != XCHACHA_NONCE_SIZE:
        raise AuthenticationFailedError("Invalid key or nonce length")
    if len(data) < XCHACHA_TAG_SIZE:
        raise AuthenticationFailedError("Ciphertext too short")
    try:
        return crypto_aead_xchacha20poly1305_ietf_decrypt(data, associated_data, nonce, key)
    except CryptoError as err:
        raise AuthenticationFailedError("Authentication tag mismatch") from err
