"""Pydantic schemas for ledger documents, identities and vault entries."""

from .documents import (
    Identity,
    IdentityPublicKey,
    KeyPurpose,
    KeyType,
    SecurityLevel,
)
from .vault import StoredCredentials, VaultEntry

__all__ = [
    "Identity",
    "IdentityPublicKey",
    "KeyPurpose",
    "KeyType",
    "SecurityLevel",
    "StoredCredentials",
    "VaultEntry",
]
