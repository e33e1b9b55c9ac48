"""Identity and ledger document schemas."""

from __future__ import annotations

from enum import IntEnum

from pydantic import BaseModel, ConfigDict, Field

# Document types and field names of the direct message contract.
CONVERSATION_INVITE = "conversationInvite"
DIRECT_MESSAGE = "directMessage"
READ_RECEIPT = "readReceipt"

RECIPIENT_ID = "recipientId"
CONVERSATION_ID = "conversationId"
SENDER_PUBKEY = "senderPubKey"
ENCRYPTED_CONTENT = "encryptedContent"

# Document types and field names of the feed contract.
POST = "post"
REPLY = "reply"

CONTENT = "content"
PARENT_ID = "parentId"
PARENT_OWNER_ID = "parentOwnerId"
EPOCH = "epoch"
NONCE = "nonce"

# Follower key grants on the feed contract.
PRIVATE_FEED_GRANT = "privateFeedGrant"
ENCRYPTED_PAYLOAD = "encryptedPayload"


class KeyType(IntEnum):
    """Encoding of an identity public key."""

    ECDSA_SECP256K1 = 0
    BLS12_381 = 1
    ECDSA_HASH160 = 2
    BIP13_SCRIPT_HASH = 3
    EDDSA_25519_HASH160 = 4


class KeyPurpose(IntEnum):
    """What an identity key is registered for."""

    AUTHENTICATION = 0
    ENCRYPTION = 1
    DECRYPTION = 2
    TRANSFER = 3
    SYSTEM = 4
    VOTING = 5


class SecurityLevel(IntEnum):
    """Security level of an identity key; lower values are stronger."""

    MASTER = 0
    CRITICAL = 1
    HIGH = 2
    MEDIUM = 3


class IdentityPublicKey(BaseModel):
    """One public key exposed by an identity in the registry.

    ``data`` is a raw point only for ``ECDSA_SECP256K1`` keys; hash-only key
    types carry a 20-byte hash that cannot take part in key agreement.
    """

    id: int
    type: KeyType
    purpose: KeyPurpose
    security_level: SecurityLevel = Field(alias="securityLevel")
    data: bytes | str | list[int]

    model_config = ConfigDict(frozen=True, populate_by_name=True)


class Identity(BaseModel):
    """Registry view of an identity."""

    id: str
    public_keys: tuple[IdentityPublicKey, ...] = Field(default=(), alias="publicKeys")

    model_config = ConfigDict(frozen=True, populate_by_name=True)
