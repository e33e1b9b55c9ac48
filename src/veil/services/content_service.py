"""Service-level helpers for creating posts and replies, optionally private."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Literal

from veil.core.settings import Settings
from veil.core.settings import settings as default_settings
from veil.ledger.interfaces import DocumentLedger, LedgerDocument
from veil.schemas.documents import (
    CONTENT,
    ENCRYPTED_CONTENT,
    EPOCH,
    NONCE,
    PARENT_ID,
    PARENT_OWNER_ID,
    POST,
    REPLY,
)
from veil.services.message_codec import ensure_binary_field
from veil.services.private_feed import (
    EncryptionSource,
    PrivateContentEnvelope,
    PrivateFeedService,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EncryptionOptions:
    """How new content should be encrypted.

    ``owner`` encrypts under the author's own feed, optionally showing a
    public teaser. ``inherited`` encrypts under the feed that owns the thread
    being replied to and never shows a teaser.
    """

    mode: Literal["owner", "inherited"]
    teaser: str | None = None
    source: EncryptionSource | None = None


class ContentService:
    """Write posts and replies to the feed contract."""

    def __init__(
        self,
        ledger: DocumentLedger,
        private_feed: PrivateFeedService,
        settings: Settings | None = None,
    ) -> None:
        self.ledger = ledger
        self.private_feed = private_feed
        self.settings = settings or default_settings

    def _content_fields(
        self,
        owner_id: str,
        content: str,
        encryption: EncryptionOptions | None,
    ) -> dict[str, Any]:
        """Return the document fields carrying ``content``.

        Raises:
            ValueError: For inherited encryption without a source.
            KeyNotFoundError: If the needed feed key is not available.
        """
        if encryption is None:
            return {CONTENT: content}

        envelope: PrivateContentEnvelope
        if encryption.mode == "owner":
            envelope = self.private_feed.prepare_owner_encryption(
                owner_id, content, encryption.teaser
            )
        elif encryption.mode == "inherited":
            if encryption.source is None:
                raise ValueError("Inherited encryption requires an encryption source")
            envelope = self.private_feed.prepare_inherited_encryption(content, encryption.source)
        else:
            raise ValueError(f"Unknown encryption mode: {encryption.mode}")

        return {
            CONTENT: envelope.public_content,
            ENCRYPTED_CONTENT: ensure_binary_field(envelope.ciphertext, ENCRYPTED_CONTENT),
            EPOCH: envelope.epoch,
            NONCE: ensure_binary_field(envelope.nonce, NONCE),
        }

    async def create_post(
        self,
        *,
        owner_id: str,
        content: str,
        encryption: EncryptionOptions | None = None,
    ) -> LedgerDocument:
        """Create a top-level post.

        Args:
            owner_id: Identity publishing the post.
            content: Post text; encrypted when ``encryption`` is given.
            encryption: Private-feed options, or None for a public post.

        Returns:
            The document as stored by the ledger.
        """
        if not content.strip():
            raise ValueError("Post content cannot be empty")
        fields = self._content_fields(owner_id, content, encryption)
        document = await self.ledger.create(self.settings.feed_contract_id, POST, owner_id, fields)
        logger.info("Created %s post %s", "private" if encryption else "public", document.id)
        return document

    async def create_reply(
        self,
        *,
        owner_id: str,
        content: str,
        parent_id: str,
        parent_owner_id: str,
        encryption: EncryptionOptions | None = None,
    ) -> LedgerDocument:
        """Create a reply to a post or another reply."""
        if not content.strip():
            raise ValueError("Reply content cannot be empty")
        fields = self._content_fields(owner_id, content, encryption)
        fields[PARENT_ID] = parent_id
        fields[PARENT_OWNER_ID] = parent_owner_id
        document = await self.ledger.create(self.settings.feed_contract_id, REPLY, owner_id, fields)
        logger.info("Created reply %s to %s", document.id, parent_id)
        return document
