"""Exception taxonomy shared by the Veil services.

Decryption failures are recovered locally wherever a best-effort list is being
built; everything raised while encrypting is fatal to the calling operation.
"""

from __future__ import annotations


class VeilError(RuntimeError):
    """Base exception raised by the messaging and private-feed subsystem."""

    user_message = "Something went wrong"


class KeyNotFoundError(VeilError):
    """Raised when no usable key exists for an identity.

    Permanent until an invite record or a registry update supplies one.
    """

    user_message = "Cannot establish a secure channel with this user"


class RegistryUnavailableError(KeyNotFoundError):
    """Raised when the identity registry could not be reached.

    Subclasses ``KeyNotFoundError`` so callers that only care about "no key"
    handle both the same way, while retry-aware callers can tell them apart.
    """

    user_message = "Could not reach the identity registry, please try again"


class AuthenticationFailedError(VeilError):
    """Raised when an AEAD tag does not verify.

    Covers a wrong key, corrupted data and truncated input alike.
    """

    user_message = "Could not decrypt this content"


DecryptionFailed = AuthenticationFailedError


class WrongPasswordError(AuthenticationFailedError):
    """Raised when a password vault entry fails to decrypt."""

    user_message = "Incorrect password"


class EncodingError(VeilError, ValueError):
    """Raised for malformed envelopes or byte layouts."""

    user_message = "Malformed encrypted content"


class RecursionLimitExceededError(VeilError):
    """Raised when encryption-source resolution hits its depth ceiling."""

    user_message = "This thread is too deep to resolve its encryption"


class StorageUnavailableError(VeilError):
    """Raised when local key storage cannot be read or written."""

    user_message = "Could not access secure storage"


class LedgerError(VeilError):
    """Raised by document ledger adapters when a write is rejected."""

    user_message = "The ledger rejected the operation"
