"""Schemas persisted by the password-protected key vault."""

from __future__ import annotations

import base64

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

VAULT_SCHEMA_VERSION = 1


class VaultEntry(BaseModel):
    """A private key encrypted under a password-derived key."""

    identity_id: str
    ciphertext: bytes
    nonce: bytes
    salt: bytes
    iterations: int
    created_at: int
    schema_version: int = VAULT_SCHEMA_VERSION

    model_config = ConfigDict(frozen=True)

    @field_validator("ciphertext", "nonce", "salt", mode="before")
    @classmethod
    def _decode_base64(cls, value: bytes | str) -> bytes:
        """Accept base64 text as stored in JSON."""
        if isinstance(value, str):
            return base64.b64decode(value, validate=True)
        return value

    @field_serializer("ciphertext", "nonce", "salt")
    def _encode_base64(self, value: bytes) -> str:
        """Encode binary fields as base64 for JSON storage."""
        return base64.b64encode(value).decode("ascii")


class StoredCredentials(BaseModel):
    """All vault entries plus the identity to pre-fill on the next unlock."""

    credentials: list[VaultEntry] = Field(default_factory=list)
    last_used_identity_id: str | None = None
