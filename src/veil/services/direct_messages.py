"""End-to-end encrypted direct messages stored on the public ledger."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any

from veil.core.errors import EncodingError, KeyNotFoundError, VeilError
from veil.core.settings import Settings
from veil.core.settings import settings as default_settings
from veil.ledger.interfaces import (
    CREATED_AT_FIELD,
    OWNER_FIELD,
    DocumentLedger,
    LedgerDocument,
)
from veil.schemas.documents import (
    CONVERSATION_ID,
    CONVERSATION_INVITE,
    DIRECT_MESSAGE,
    ENCRYPTED_CONTENT,
    READ_RECEIPT,
    RECIPIENT_ID,
    SENDER_PUBKEY,
)
from veil.services.cipher import SymmetricCipher, generate_nonce
from veil.services.conversation_id import conversation_key, derive_conversation_id
from veil.services.key_derivation import derive_shared_key, public_key_from_private
from veil.services.key_resolver import PublicKeyResolver
from veil.services.key_vault import SecureKeyStore
from veil.services.message_codec import (
    EncryptedEnvelope,
    decode_envelope,
    encode_envelope,
    ensure_binary_field,
)

logger = logging.getLogger(__name__)

UNDECRYPTABLE_PLACEHOLDER = "[Could not decrypt message]"
LOGGED_OUT_PLACEHOLDER = "[Please log in to decrypt]"


@dataclass(frozen=True)
class DecryptedMessage:
    """A direct message as shown to one of its participants."""

    id: str
    conversation_id: bytes
    sender_id: str
    recipient_id: str
    content: str
    created_at: int
    decrypted: bool = True


def encrypt_message(
    plaintext: str,
    sender_private_key: bytes,
    recipient_public_key: bytes,
    settings: Settings | None = None,
) -> EncryptedEnvelope:
    """Encrypt ``plaintext`` for a recipient with a fresh nonce."""
    key = derive_shared_key(sender_private_key, recipient_public_key, settings)
    nonce = generate_nonce()
    return EncryptedEnvelope(
        ciphertext=SymmetricCipher.encrypt(key, nonce, plaintext.encode("utf-8")),
        nonce=nonce,
        sender_public_key=public_key_from_private(sender_private_key),
    )


def decrypt_message(
    envelope: EncryptedEnvelope,
    private_key: bytes,
    counterpart_public_key: bytes,
    settings: Settings | None = None,
) -> str:
    """Open an envelope with our private key and the other side's public key.

    Raises:
        AuthenticationFailedError: If the tag does not verify.
        EncodingError: If the plaintext is not UTF-8.
    """
    key = derive_shared_key(private_key, counterpart_public_key, settings)
    plaintext = SymmetricCipher.decrypt(key, envelope.nonce, envelope.ciphertext)
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError as err:
        raise EncodingError("Decrypted message is not valid UTF-8") from err


class DirectMessageService:
    """Send, read and acknowledge direct messages between two identities."""

    def __init__(
        self,
        ledger: DocumentLedger,
        resolver: PublicKeyResolver,
        key_store: SecureKeyStore,
        settings: Settings | None = None,
    ) -> None:
        self.ledger = ledger
        self.resolver = resolver
        self.key_store = key_store
        self.settings = settings or default_settings

    @property
    def contract_id(self) -> str:
        return self.settings.dm_contract_id

    def _private_key(self, identity_id: str) -> bytes:
        private_key = self.key_store.get_private_key(identity_id)
        if private_key is None:
            raise KeyNotFoundError(f"No private key stored for {identity_id}")
        return private_key

    async def _find_invite(self, sender_id: str, recipient_id: str) -> LedgerDocument | None:
        invites = await self.ledger.query(
            self.contract_id,
            CONVERSATION_INVITE,
            where=[(OWNER_FIELD, "==", sender_id), (RECIPIENT_ID, "==", recipient_id)],
            limit=1,
        )
        return invites[0] if invites else None

    async def _ensure_invite(
        self,
        sender_id: str,
        recipient_id: str,
        conversation_id: bytes,
        sender_public_key: bytes,
    ) -> None:
        """Create the sender's invite to the recipient unless it already exists."""
        if await self._find_invite(sender_id, recipient_id) is not None:
            return
        fields: dict[str, Any] = {
            RECIPIENT_ID: recipient_id,
            CONVERSATION_ID: ensure_binary_field(conversation_id, CONVERSATION_ID),
        }
        # Recipients can only read legacy messages if they can find our key somewhere.
        if not await self.resolver.has_usable_registry_key(sender_id):
            fields[SENDER_PUBKEY] = ensure_binary_field(sender_public_key, SENDER_PUBKEY)
        await self.ledger.create(self.contract_id, CONVERSATION_INVITE, sender_id, fields)
        logger.info("Created conversation invite from %s to %s", sender_id, recipient_id)

    async def get_or_create_conversation(
        self,
        user_id: str,
        participant_id: str,
    ) -> tuple[bytes, bool]:
        """Return the conversation id and whether nothing has been exchanged yet."""
        conversation_id = derive_conversation_id(user_id, participant_id, self.settings)
        for sender, recipient in ((user_id, participant_id), (participant_id, user_id)):
            if await self._find_invite(sender, recipient) is not None:
                return conversation_id, False
        return conversation_id, True

    async def send_message(
        self,
        sender_id: str,
        recipient_id: str,
        content: str,
    ) -> DecryptedMessage:
        """Encrypt ``content`` for the recipient and write it to the ledger.

        Raises:
            ValueError: If the message is empty.
            KeyNotFoundError: If either side's key is unavailable. Nothing is
                ever written unencrypted.
        """
        if not content.strip():
            raise ValueError("Message content cannot be empty")
        private_key = self._private_key(sender_id)
        recipient_public_key = await self.resolver.resolve(recipient_id, sender_id)

        conversation_id = derive_conversation_id(sender_id, recipient_id, self.settings)
        envelope = encrypt_message(content, private_key, recipient_public_key, self.settings)
        await self._ensure_invite(
            sender_id, recipient_id, conversation_id, envelope.sender_public_key or b""
        )

        document = await self.ledger.create(
            self.contract_id,
            DIRECT_MESSAGE,
            sender_id,
            {
                CONVERSATION_ID: ensure_binary_field(conversation_id, CONVERSATION_ID),
                ENCRYPTED_CONTENT: encode_envelope(envelope),
            },
        )
        logger.info(
            "Sent message %s in conversation %s",
            document.id,
            conversation_key(conversation_id),
        )
        return DecryptedMessage(
            id=document.id,
            conversation_id=conversation_id,
            sender_id=sender_id,
            recipient_id=recipient_id,
            content=content,
            created_at=document.created_at,
        )

    async def decrypt_message(
        self,
        document: LedgerDocument,
        user_id: str,
        counterpart_id: str,
    ) -> DecryptedMessage:
        """Decrypt one message document for ``user_id``.

        The recipient uses the sender key embedded in the envelope. The sender
        reading their own message, and anyone reading a legacy envelope without
        an embedded key, resolves the counterpart's key instead.

        Raises:
            VeilError: Any key, encoding or authentication failure.
        """
        envelope = decode_envelope(document.get(ENCRYPTED_CONTENT))
        private_key = self._private_key(user_id)
        is_own = document.owner_id == user_id
        if not is_own and envelope.sender_public_key is not None:
            peer_key = envelope.sender_public_key
        else:
            peer_key = await self.resolver.resolve(counterpart_id, user_id)

        content = decrypt_message(envelope, private_key, peer_key, self.settings)
        return DecryptedMessage(
            id=document.id,
            conversation_id=bytes(document.get(CONVERSATION_ID)),
            sender_id=document.owner_id,
            recipient_id=counterpart_id if is_own else user_id,
            content=content,
            created_at=document.created_at,
        )

    def placeholder(
        self,
        document: LedgerDocument,
        user_id: str,
        counterpart_id: str,
        content: str,
    ) -> DecryptedMessage:
        """Build the stand-in shown when a message cannot be decrypted."""
        is_own = document.owner_id == user_id
        return DecryptedMessage(
            id=document.id,
            conversation_id=bytes(document.get(CONVERSATION_ID) or b""),
            sender_id=document.owner_id,
            recipient_id=counterpart_id if is_own else user_id,
            content=content,
            created_at=document.created_at,
            decrypted=False,
        )

    async def _decrypt_or_placeholder(
        self,
        document: LedgerDocument,
        user_id: str,
        counterpart_id: str,
    ) -> DecryptedMessage:
        try:
            return await self.decrypt_message(document, user_id, counterpart_id)
        except VeilError as exc:
            logger.warning("Could not decrypt message %s: %s", document.id, exc)
            return self.placeholder(document, user_id, counterpart_id, UNDECRYPTABLE_PLACEHOLDER)

    async def get_conversation_messages(
        self,
        conversation_id: bytes,
        user_id: str,
        counterpart_id: str,
    ) -> list[DecryptedMessage]:
        """Return the conversation's messages, oldest first.

        Messages that fail to decrypt are replaced by a placeholder instead of
        failing the whole list.
        """
        documents = await self.ledger.query(
            self.contract_id,
            DIRECT_MESSAGE,
            where=[(CONVERSATION_ID, "==", bytes(conversation_id))],
            order_by=[(CREATED_AT_FIELD, "asc")],
            limit=self.settings.message_page_size,
        )
        if self.key_store.get_private_key(user_id) is None:
            logger.warning("No private key for %s; messages left encrypted", user_id)
            return [
                self.placeholder(doc, user_id, counterpart_id, LOGGED_OUT_PLACEHOLDER)
                for doc in documents
            ]
        return list(
            await asyncio.gather(
                *(self._decrypt_or_placeholder(doc, user_id, counterpart_id) for doc in documents)
            )
        )

    async def mark_as_read(self, conversation_id: bytes, reader_id: str) -> LedgerDocument | None:
        """Record that ``reader_id`` has read the conversation up to now.

        The reader keeps a single receipt per conversation; its last-modified
        time is the read marker.
        """
        if not self.settings.send_read_receipts:
            return None
        conversation_id = ensure_binary_field(conversation_id, CONVERSATION_ID)
        receipts = await self.ledger.query(
            self.contract_id,
            READ_RECEIPT,
            where=[(OWNER_FIELD, "==", reader_id), (CONVERSATION_ID, "==", conversation_id)],
            limit=1,
        )
        if receipts:
            receipt = receipts[0]
            return await self.ledger.update(
                receipt.id, reader_id, {CONVERSATION_ID: conversation_id}, receipt.revision
            )
        return await self.ledger.create(
            self.contract_id,
            READ_RECEIPT,
            reader_id,
            {CONVERSATION_ID: conversation_id},
        )
