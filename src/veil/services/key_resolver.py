"""Public key lookup for direct-message key agreement."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from veil.core.errors import EncodingError, KeyNotFoundError, RegistryUnavailableError
from veil.core.settings import Settings
from veil.core.settings import settings as default_settings
from veil.ledger.interfaces import OWNER_FIELD, DocumentLedger, IdentityRegistry
from veil.schemas.documents import (
    CONVERSATION_INVITE,
    RECIPIENT_ID,
    SENDER_PUBKEY,
    Identity,
    IdentityPublicKey,
    KeyPurpose,
    KeyType,
    SecurityLevel,
)
from veil.services.key_derivation import compress_public_key, load_public_key
from veil.services.message_codec import PUBLIC_KEY_SIZES, decode_bytes

logger = logging.getLogger(__name__)


def _agreement_point(key: IdentityPublicKey) -> bytes | None:
    """Return the compressed point of a raw secp256k1 key, or None if unusable."""
    # Hash-only key types carry no point and cannot take part in ECDH.
    if key.type != KeyType.ECDSA_SECP256K1:
        return None
    try:
        point = load_public_key(decode_bytes(key.data, PUBLIC_KEY_SIZES))
    except EncodingError:
        logger.debug("Skipping key %s: not a valid secp256k1 point", key.id)
        return None
    return compress_public_key(point)


def select_agreement_key(identity: Identity) -> bytes | None:
    """Pick the registry key to use for key agreement.

    An authentication key at HIGH security level is preferred; any other raw
    key at HIGH level is accepted as a fallback.

    Returns:
        The 33-byte compressed key, or None when the identity has no usable key.
    """
    usable = [
        (key, point)
        for key in identity.public_keys
        if (point := _agreement_point(key)) is not None
    ]
    for key, point in usable:
        if key.purpose == KeyPurpose.AUTHENTICATION and key.security_level == SecurityLevel.HIGH:
            return point
    for key, point in usable:
        if key.security_level == SecurityLevel.HIGH:
            return point
    return None


class PublicKeyResolver:
    """Resolve the public key another identity uses for direct messages.

    Lookup order is cache, then an invite the target sent to the asking
    identity with the target's key embedded, then the identity registry.
    """

    def __init__(
        self,
        ledger: DocumentLedger,
        registry: IdentityRegistry,
        settings: Settings | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.registry = registry
        self.settings = settings or default_settings
        self._sleep = sleep
        self._cache: dict[str, bytes] = {}

    async def resolve(self, target_id: str, asking_id: str) -> bytes:
        """Return the compressed public key of ``target_id``.

        Raises:
            KeyNotFoundError: If neither an invite nor the registry yields a key.
            RegistryUnavailableError: If the registry could not be reached.
        """
        cached = self._cache.get(target_id)
        if cached is not None:
            logger.debug("Public key cache hit for %s", target_id)
            return cached

        public_key = await self._key_from_invite(target_id, asking_id)
        if public_key is None:
            identity = await self._fetch_identity(target_id)
            if identity is None:
                raise KeyNotFoundError(f"Identity {target_id} not found")
            public_key = select_agreement_key(identity)
            if public_key is None:
                raise KeyNotFoundError(f"Identity {target_id} has no usable key")

        self._cache[target_id] = public_key
        return public_key

    async def has_usable_registry_key(self, identity_id: str) -> bool:
        """Return True when the registry exposes a raw key for ``identity_id``.

        An unreachable registry counts as no key, so callers err towards
        embedding their own key in invites.
        """
        try:
            identity = await self._fetch_identity(identity_id)
        except RegistryUnavailableError:
            return False
        return identity is not None and select_agreement_key(identity) is not None

    def invalidate(self, target_id: str) -> None:
        """Forget the cached key of one identity."""
        self._cache.pop(target_id, None)

    def clear(self) -> None:
        """Forget every cached key."""
        self._cache.clear()

    async def _key_from_invite(self, target_id: str, asking_id: str) -> bytes | None:
        try:
            invites = await self.ledger.query(
                self.settings.dm_contract_id,
                CONVERSATION_INVITE,
                where=[(OWNER_FIELD, "==", target_id), (RECIPIENT_ID, "==", asking_id)],
                limit=1,
            )
        except Exception as exc:  # noqa: BLE001 - fall back to the registry
            logger.warning("Invite lookup for %s failed: %s", target_id, exc)
            return None
        if not invites:
            return None

        embedded = invites[0].get(SENDER_PUBKEY)
        if not embedded:
            return None
        try:
            return compress_public_key(load_public_key(decode_bytes(embedded, PUBLIC_KEY_SIZES)))
        except EncodingError:
            logger.warning("Ignoring malformed sender key in invite %s", invites[0].id)
            return None

    async def _fetch_identity(self, identity_id: str) -> Identity | None:
        attempts = self.settings.registry_fetch_attempts
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await self.registry.get_identity(identity_id)
            except Exception as exc:  # noqa: BLE001 - retried, then surfaced below
                last_error = exc
                logger.warning(
                    "Registry fetch for %s failed (attempt %s/%s): %s",
                    identity_id,
                    attempt,
                    attempts,
                    exc,
                )
                if attempt < attempts:
                    await self._sleep(self.settings.registry_retry_delay_seconds)
        raise RegistryUnavailableError(
            f"Identity registry unavailable for {identity_id}"
        ) from last_error
