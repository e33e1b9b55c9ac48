"""Deterministic conversation identifiers."""

from __future__ import annotations

import hashlib

from veil.core.settings import MIN_BINARY_FIELD_LENGTH, SHA256_DIGEST_SIZE, Settings
from veil.core.settings import settings as default_settings


def derive_conversation_id(
    participant_a: str,
    participant_b: str,
    config: Settings | None = None,
) -> bytes:
    """Return the identifier shared by both participants of a conversation.

    The two identifiers are sorted before hashing, so the result does not
    depend on who initiated. The digest is truncated to the configured length,
    which never drops below the ledger's minimum binary field size.
    """
    length = (config or default_settings).conversation_id_length
    if not MIN_BINARY_FIELD_LENGTH <= length <= SHA256_DIGEST_SIZE:
        raise ValueError("Conversation id length out of range")
    first, second = sorted((participant_a, participant_b))
    digest = hashlib.sha256(f"{first}:{second}".encode()).digest()
    return digest[:length]


def conversation_key(conversation_id: bytes) -> str:
    """Render a conversation id as text for grouping and logging."""
    return bytes(conversation_id).hex()
