"""Conversation list built from invites, messages and read receipts."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from veil.core.errors import VeilError
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
    READ_RECEIPT,
    RECIPIENT_ID,
)
from veil.services.conversation_id import conversation_key
from veil.services.direct_messages import DecryptedMessage, DirectMessageService

logger = logging.getLogger(__name__)

PREVIEW_PLACEHOLDER = "[Encrypted message]"


@dataclass(frozen=True)
class ConversationSummary:
    """One row of a user's conversation list."""

    conversation_id: bytes
    participant_id: str
    last_message: DecryptedMessage | None
    unread_count: int
    updated_at: int


@dataclass(frozen=True)
class _ConversationRef:
    conversation_id: bytes
    participant_id: str
    started_at: int


class ConversationAggregator:
    """Reconcile the ledger records of a user into conversation summaries."""

    def __init__(
        self,
        ledger: DocumentLedger,
        messages: DirectMessageService,
        settings: Settings | None = None,
    ) -> None:
        self.ledger = ledger
        self.messages = messages
        self.settings = settings or default_settings

    async def _collect(self, user_id: str) -> list[_ConversationRef]:
        contract_id = self.settings.dm_contract_id
        limit = self.settings.conversation_scan_limit
        sent, received = await asyncio.gather(
            self.ledger.query(
                contract_id, CONVERSATION_INVITE, where=[(OWNER_FIELD, "==", user_id)], limit=limit
            ),
            self.ledger.query(
                contract_id, CONVERSATION_INVITE, where=[(RECIPIENT_ID, "==", user_id)], limit=limit
            ),
        )

        refs: dict[str, _ConversationRef] = {}
        pairs = [(invite, invite.get(RECIPIENT_ID)) for invite in sent]
        pairs += [(invite, invite.owner_id) for invite in received]
        for invite, participant_id in pairs:
            conversation_id = invite.get(CONVERSATION_ID)
            if not conversation_id or not participant_id or participant_id == user_id:
                continue
            key = conversation_key(conversation_id)
            existing = refs.get(key)
            if existing is None or invite.created_at < existing.started_at:
                refs[key] = _ConversationRef(bytes(conversation_id), participant_id, invite.created_at)
        return list(refs.values())

    async def _preview(
        self,
        latest: LedgerDocument,
        user_id: str,
        participant_id: str,
    ) -> DecryptedMessage:
        try:
            return await self.messages.decrypt_message(latest, user_id, participant_id)
        except VeilError as exc:
            logger.warning("Preview of message %s unavailable: %s", latest.id, exc)
            return self.messages.placeholder(latest, user_id, participant_id, PREVIEW_PLACEHOLDER)

    async def _summarize(self, user_id: str, ref: _ConversationRef) -> ConversationSummary:
        contract_id = self.settings.dm_contract_id
        documents, receipts = await asyncio.gather(
            self.ledger.query(
                contract_id,
                DIRECT_MESSAGE,
                where=[(CONVERSATION_ID, "==", ref.conversation_id)],
                order_by=[(CREATED_AT_FIELD, "desc")],
                limit=self.settings.message_page_size,
            ),
            self.ledger.query(
                contract_id,
                READ_RECEIPT,
                where=[(OWNER_FIELD, "==", user_id), (CONVERSATION_ID, "==", ref.conversation_id)],
                limit=1,
            ),
        )
        last_read = receipts[0].updated_at if receipts else 0
        unread = sum(
            1 for doc in documents if doc.owner_id != user_id and doc.created_at > last_read
        )
        if not documents:
            return ConversationSummary(
                conversation_id=ref.conversation_id,
                participant_id=ref.participant_id,
                last_message=None,
                unread_count=0,
                updated_at=ref.started_at,
            )
        latest = documents[0]
        return ConversationSummary(
            conversation_id=ref.conversation_id,
            participant_id=ref.participant_id,
            last_message=await self._preview(latest, user_id, ref.participant_id),
            unread_count=unread,
            updated_at=latest.created_at,
        )

    async def _summarize_or_skip(
        self,
        user_id: str,
        ref: _ConversationRef,
    ) -> ConversationSummary | None:
        try:
            return await self._summarize(user_id, ref)
        except Exception as exc:  # noqa: BLE001 - one broken conversation must not hide the rest
            logger.error(
                "Skipping conversation %s: %s", conversation_key(ref.conversation_id), exc
            )
            return None

    async def get_conversations(self, user_id: str) -> list[ConversationSummary]:
        """Return the user's conversations, most recently active first."""
        refs = await self._collect(user_id)
        summaries = await asyncio.gather(*(self._summarize_or_skip(user_id, ref) for ref in refs))
        return sorted(
            (summary for summary in summaries if summary is not None),
            key=lambda summary: summary.updated_at,
            reverse=True,
        )
