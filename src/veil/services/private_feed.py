"""Private-feed content encryption and encryption-source inheritance.

Each feed owner holds a random seed from which a hash chain of content
encryption keys (CEKs) is derived, one per epoch::

    CEK[MAX_EPOCH] = HKDF(HKDF(seed, "epoch-chain"), "cek" || u32be(MAX_EPOCH))
    CEK[n - 1]     = SHA256(CEK[n])

Anyone holding ``CEK[n]`` can derive every earlier epoch but none of the
later ones, so rotating to a new epoch locks out revoked followers.

Followers receive a CEK through a grant: the owner wraps ``{epoch, CEK}`` to the
follower's secp256k1 key with ephemeral ECDH and XChaCha20-Poly1305.

Replies inside a private thread are encrypted under the key of the thread's
root, found by walking the reply chain. The chain is written by arbitrary
users, so the walk is bounded.
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass
from typing import Any

from veil.core.errors import (
    AuthenticationFailedError,
    EncodingError,
    KeyNotFoundError,
    RecursionLimitExceededError,
)
from veil.core.settings import Settings
from veil.core.settings import settings as default_settings
from veil.ledger.interfaces import ID_FIELD, OWNER_FIELD, DocumentLedger, LedgerDocument
from veil.schemas.documents import (
    CONTENT,
    ENCRYPTED_CONTENT,
    ENCRYPTED_PAYLOAD,
    EPOCH,
    NONCE,
    PARENT_ID,
    POST,
    PRIVATE_FEED_GRANT,
    RECIPIENT_ID,
    REPLY,
)
from veil.services.cipher import (
    KEY_SIZE,
    XCHACHA_NONCE_SIZE,
    XCHACHA_TAG_SIZE,
    generate_nonce,
    xchacha_decrypt,
    xchacha_encrypt,
)
from veil.services.key_derivation import COMPRESSED_POINT_SIZE, KeyPair, agree, hkdf_sha256
from veil.services.message_codec import ensure_binary_field

logger = logging.getLogger(__name__)

MAX_EPOCH = 2000
PROTOCOL_VERSION = 0x01
MAX_PLAINTEXT_BYTES = 999
LOCKED_PLACEHOLDER = "\U0001f512"
GRANT_VERSION = 0x01

_INFO_EPOCH_CHAIN = b"epoch-chain"
_INFO_CEK = b"cek"
_INFO_POST = b"post"
_AAD_POST = b"veil/post/v1"
_AAD_GRANT = b"veil/grant/v1"
_INFO_ECIES = b"veil/ecies/v1"
_GRANT_PAYLOAD_SIZE = 1 + 4 + KEY_SIZE


def _u32be(value: int) -> bytes:
    return value.to_bytes(4, "big")


def _owner_bytes(owner_id: str) -> bytes:
    return owner_id.encode("utf-8")


def is_valid_epoch(value: object) -> bool:
    """Return True for an integer epoch inside the chain, 1 through ``MAX_EPOCH``."""
    return isinstance(value, int) and not isinstance(value, bool) and 1 <= value <= MAX_EPOCH


@dataclass(frozen=True)
class EncryptionSource:
    """The feed owner and epoch whose key encrypts a piece of content."""

    owner_id: str
    epoch: int
    inherited: bool = True


@dataclass(frozen=True)
class PrivateContentEnvelope:
    """Encrypted private content plus the public text stored beside it."""

    ciphertext: bytes
    nonce: bytes
    epoch: int
    public_content: str = LOCKED_PLACEHOLDER


class PrivateFeedCrypto:
    """Stateless key schedule and content encryption for private feeds."""

    @staticmethod
    def generate_feed_seed() -> bytes:
        return generate_nonce(KEY_SIZE)

    @staticmethod
    def _chain_head(seed: bytes, max_epoch: int) -> bytes:
        root = hkdf_sha256(seed, _INFO_EPOCH_CHAIN)
        return hkdf_sha256(root, _INFO_CEK + _u32be(max_epoch))

    @staticmethod
    def generate_epoch_chain(seed: bytes, max_epoch: int = MAX_EPOCH) -> dict[int, bytes]:
        """Return every CEK of the chain keyed by epoch, 1 through ``max_epoch``."""
        chain = {max_epoch: PrivateFeedCrypto._chain_head(seed, max_epoch)}
        for epoch in range(max_epoch - 1, 0, -1):
            chain[epoch] = hashlib.sha256(chain[epoch + 1]).digest()
        return chain

    @staticmethod
    def derive_cek(cek: bytes, from_epoch: int, to_epoch: int) -> bytes:
        """Walk the chain back from ``from_epoch`` to ``to_epoch``.

        Raises:
            ValueError: If asked to walk forward or below epoch 1.
        """
        if to_epoch > from_epoch:
            raise ValueError("Cannot derive forward in the epoch chain")
        if to_epoch < 1:
            raise ValueError("Epoch must be at least 1")
        result = cek
        for _ in range(from_epoch - to_epoch):
            result = hashlib.sha256(result).digest()
        return result

    @staticmethod
    def cek_for_epoch(seed: bytes, epoch: int, max_epoch: int = MAX_EPOCH) -> bytes:
        """Return the CEK of one epoch straight from the owner's seed."""
        head = PrivateFeedCrypto._chain_head(seed, max_epoch)
        return PrivateFeedCrypto.derive_cek(head, max_epoch, epoch)

    @staticmethod
    def encrypt_post_content(
        cek: bytes,
        plaintext: str,
        owner_id: str,
        epoch: int,
    ) -> PrivateContentEnvelope:
        """Encrypt content under a per-post key derived from ``cek``.

        Raises:
            EncodingError: If the plaintext exceeds ``MAX_PLAINTEXT_BYTES``.
        """
        body = plaintext.encode("utf-8")
        if len(body) > MAX_PLAINTEXT_BYTES:
            raise EncodingError(f"Private content is limited to {MAX_PLAINTEXT_BYTES} bytes")
        nonce = generate_nonce(XCHACHA_NONCE_SIZE)
        owner = _owner_bytes(owner_id)
        post_key = hkdf_sha256(cek, _INFO_POST + nonce + owner)
        aad = _AAD_POST + owner + _u32be(epoch) + nonce
        ciphertext = xchacha_encrypt(post_key, nonce, bytes([PROTOCOL_VERSION]) + body, aad)
        return PrivateContentEnvelope(ciphertext=ciphertext, nonce=nonce, epoch=epoch)

    @staticmethod
    def decrypt_post_content(cek: bytes, envelope: PrivateContentEnvelope, owner_id: str) -> str:
        """Decrypt content produced by ``encrypt_post_content``.

        Raises:
            AuthenticationFailedError: If the key, owner or epoch do not match.
            EncodingError: If the plaintext carries an unknown protocol version.
        """
        owner = _owner_bytes(owner_id)
        post_key = hkdf_sha256(cek, _INFO_POST + envelope.nonce + owner)
        aad = _AAD_POST + owner + _u32be(envelope.epoch) + envelope.nonce
        versioned = xchacha_decrypt(post_key, envelope.nonce, envelope.ciphertext, aad)
        if not versioned or versioned[0] != PROTOCOL_VERSION:
            raise EncodingError(f"Unknown private content version: {versioned[:1].hex()}")
        return versioned[1:].decode("utf-8")

    @staticmethod
    def _ecies_key(shared_x: bytes, ephemeral_public_key: bytes) -> tuple[bytes, bytes]:
        derived = hkdf_sha256(
            hashlib.sha256(shared_x).digest(),
            _INFO_ECIES,
            length=KEY_SIZE + XCHACHA_NONCE_SIZE,
            salt=ephemeral_public_key,
        )
        return derived[:KEY_SIZE], derived[KEY_SIZE:]

    @staticmethod
    def ecies_encrypt(recipient_public_key: bytes, plaintext: bytes, aad: bytes) -> bytes:
        """Encrypt to a secp256k1 public key; returns ``ephemeralPub || ciphertext``."""
        ephemeral = KeyPair.generate()
        key, nonce = PrivateFeedCrypto._ecies_key(
            agree(ephemeral.private_bytes, recipient_public_key), ephemeral.public_bytes
        )
        return ephemeral.public_bytes + xchacha_encrypt(key, nonce, plaintext, aad)

    @staticmethod
    def ecies_decrypt(recipient_private_key: bytes, data: bytes, aad: bytes) -> bytes:
        """Reverse ``ecies_encrypt``.

        Raises:
            AuthenticationFailedError: If the data is truncated or does not verify.
            EncodingError: If the embedded ephemeral key is not a curve point.
        """
        if len(data) < COMPRESSED_POINT_SIZE + XCHACHA_TAG_SIZE:
            raise AuthenticationFailedError("ECIES ciphertext too short")
        ephemeral_public_key = data[:COMPRESSED_POINT_SIZE]
        key, nonce = PrivateFeedCrypto._ecies_key(
            agree(recipient_private_key, ephemeral_public_key), ephemeral_public_key
        )
        return xchacha_decrypt(key, nonce, data[COMPRESSED_POINT_SIZE:], aad)

    @staticmethod
    def encode_grant_payload(epoch: int, cek: bytes) -> bytes:
        """Lay out a grant as ``version || u32be(epoch) || CEK``."""
        if not is_valid_epoch(epoch) or len(cek) != KEY_SIZE:
            raise EncodingError("Grant needs an epoch in range and a 32-byte key")
        return bytes([GRANT_VERSION]) + _u32be(epoch) + cek

    @staticmethod
    def decode_grant_payload(payload: bytes) -> tuple[int, bytes]:
        if len(payload) != _GRANT_PAYLOAD_SIZE or payload[0] != GRANT_VERSION:
            raise EncodingError("Malformed grant payload")
        epoch = int.from_bytes(payload[1:5], "big")
        if not is_valid_epoch(epoch):
            raise EncodingError(f"Grant epoch {epoch} is out of range")
        return epoch, payload[5:]

    @staticmethod
    def build_grant_aad(owner_id: str, recipient_id: str, epoch: int) -> bytes:
        return _AAD_GRANT + _owner_bytes(owner_id) + _owner_bytes(recipient_id) + _u32be(epoch)


@dataclass(frozen=True)
class FeedGrant:
    """A feed CEK wrapped to one follower."""

    owner_id: str
    recipient_id: str
    epoch: int
    encrypted_payload: bytes


@dataclass(frozen=True)
class OwnerFeedState:
    seed: bytes
    current_epoch: int


@dataclass(frozen=True)
class CachedFeedKey:
    epoch: int
    cek: bytes


class FeedKeyStore:
    """Feed keys known to one local user.

    Holds the user's own feed seed and epoch, plus the newest CEK received
    for each feed the user follows.
    """

    def __init__(self) -> None:
        self._owned: dict[str, OwnerFeedState] = {}
        self._followed: dict[str, CachedFeedKey] = {}

    def enable_feed(self, owner_id: str, seed: bytes | None = None, epoch: int = 1) -> bytes:
        seed = seed or PrivateFeedCrypto.generate_feed_seed()
        self._owned[owner_id] = OwnerFeedState(seed=seed, current_epoch=epoch)
        return seed

    def owner_state(self, owner_id: str) -> OwnerFeedState | None:
        return self._owned.get(owner_id)

    def advance_epoch(self, owner_id: str) -> int:
        """Move an owned feed to its next epoch, as done on revocation."""
        state = self._owned.get(owner_id)
        if state is None:
            raise KeyNotFoundError(f"No private feed enabled for {owner_id}")
        if state.current_epoch >= MAX_EPOCH:
            raise ValueError("Private feed has exhausted its epochs")
        self._owned[owner_id] = OwnerFeedState(state.seed, state.current_epoch + 1)
        return state.current_epoch + 1

    def store_cached_cek(self, owner_id: str, epoch: int, cek: bytes) -> None:
        existing = self._followed.get(owner_id)
        # Older epochs are derivable from newer ones; never move backwards.
        if existing is not None and existing.epoch > epoch:
            return
        self._followed[owner_id] = CachedFeedKey(epoch=epoch, cek=cek)

    def get_cached_cek(self, owner_id: str) -> CachedFeedKey | None:
        return self._followed.get(owner_id)

    def clear(self) -> None:
        self._owned.clear()
        self._followed.clear()


class PrivateFeedService:
    """Prepare and open private content with keys from a ``FeedKeyStore``."""

    def __init__(self, key_store: FeedKeyStore) -> None:
        self.key_store = key_store

    def _cek_for(self, owner_id: str, epoch: int) -> bytes:
        if not is_valid_epoch(epoch):
            raise EncodingError(f"Epoch {epoch!r} is outside the key chain")
        state = self.key_store.owner_state(owner_id)
        if state is not None:
            if epoch > state.current_epoch:
                raise KeyNotFoundError(f"Epoch {epoch} is ahead of feed {owner_id}")
            return PrivateFeedCrypto.cek_for_epoch(state.seed, epoch)

        cached = self.key_store.get_cached_cek(owner_id)
        if cached is None:
            raise KeyNotFoundError(f"No feed key cached for {owner_id}")
        if cached.epoch < epoch:
            raise KeyNotFoundError(
                f"Cached key for {owner_id} is at epoch {cached.epoch}, need {epoch}"
            )
        return PrivateFeedCrypto.derive_cek(cached.cek, cached.epoch, epoch)

    def prepare_owner_encryption(
        self,
        owner_id: str,
        content: str,
        teaser: str | None = None,
    ) -> PrivateContentEnvelope:
        """Encrypt content under the owner's own feed at its current epoch.

        Raises:
            KeyNotFoundError: If the owner has not enabled a private feed.
        """
        state = self.key_store.owner_state(owner_id)
        if state is None:
            raise KeyNotFoundError(f"No private feed enabled for {owner_id}")
        cek = PrivateFeedCrypto.cek_for_epoch(state.seed, state.current_epoch)
        envelope = PrivateFeedCrypto.encrypt_post_content(cek, content, owner_id, state.current_epoch)
        if teaser:
            return PrivateContentEnvelope(
                envelope.ciphertext, envelope.nonce, envelope.epoch, public_content=teaser
            )
        return envelope

    def prepare_inherited_encryption(
        self,
        content: str,
        source: EncryptionSource,
    ) -> PrivateContentEnvelope:
        """Encrypt a reply under the key of the thread it belongs to.

        Raises:
            KeyNotFoundError: If no key for ``source`` is available locally.
        """
        cek = self._cek_for(source.owner_id, source.epoch)
        return PrivateFeedCrypto.encrypt_post_content(cek, content, source.owner_id, source.epoch)

    def decrypt_content(self, owner_id: str, envelope: PrivateContentEnvelope) -> str:
        """Open private content with a locally known key.

        Raises:
            KeyNotFoundError: If no key covering ``envelope.epoch`` is known.
            EncodingError: If the epoch is outside the chain or the plaintext is malformed.
            AuthenticationFailedError: If the content does not verify.
        """
        return PrivateFeedCrypto.decrypt_post_content(
            self._cek_for(owner_id, envelope.epoch), envelope, owner_id
        )

    def create_grant(
        self,
        owner_id: str,
        recipient_id: str,
        recipient_public_key: bytes,
    ) -> FeedGrant:
        """Wrap the owner's current CEK to an approved follower.

        Raises:
            KeyNotFoundError: If the owner has not enabled a private feed.
            EncodingError: If ``recipient_public_key`` is not a secp256k1 point.
        """
        state = self.key_store.owner_state(owner_id)
        if state is None:
            raise KeyNotFoundError(f"No private feed enabled for {owner_id}")
        epoch = state.current_epoch
        payload = PrivateFeedCrypto.encode_grant_payload(
            epoch, PrivateFeedCrypto.cek_for_epoch(state.seed, epoch)
        )
        aad = PrivateFeedCrypto.build_grant_aad(owner_id, recipient_id, epoch)
        logger.info("Granting feed %s at epoch %s to %s", owner_id, epoch, recipient_id)
        return FeedGrant(
            owner_id=owner_id,
            recipient_id=recipient_id,
            epoch=epoch,
            encrypted_payload=PrivateFeedCrypto.ecies_encrypt(recipient_public_key, payload, aad),
        )

    def accept_grant(self, grant: FeedGrant, recipient_private_key: bytes) -> CachedFeedKey:
        """Unwrap a grant addressed to us and cache its CEK.

        Returns:
            The cached key for the grant's feed, which stays at a newer epoch
            if one was already known.

        Raises:
            AuthenticationFailedError: If the grant is not for this key or was altered.
            EncodingError: If the payload is malformed or disagrees with the grant.
        """
        aad = PrivateFeedCrypto.build_grant_aad(grant.owner_id, grant.recipient_id, grant.epoch)
        payload = PrivateFeedCrypto.ecies_decrypt(recipient_private_key, grant.encrypted_payload, aad)
        epoch, cek = PrivateFeedCrypto.decode_grant_payload(payload)
        if epoch != grant.epoch:
            raise EncodingError("Grant payload epoch does not match the grant")
        self.key_store.store_cached_cek(grant.owner_id, epoch, cek)
        return self.key_store.get_cached_cek(grant.owner_id)


def is_encrypted_document(document: LedgerDocument) -> bool:
    if not is_valid_epoch(document.get(EPOCH)):
        return False
    return bool(document.get(ENCRYPTED_CONTENT)) and bool(document.get(NONCE))


def envelope_from_document(document: LedgerDocument) -> PrivateContentEnvelope:
    """Read the private envelope stored on a post or reply document.

    Raises:
        EncodingError: If the document does not carry valid private content.
    """
    if not is_encrypted_document(document):
        raise EncodingError(f"Document {document.id} has no valid private envelope")
    return PrivateContentEnvelope(
        ciphertext=bytes(document.get(ENCRYPTED_CONTENT)),
        nonce=bytes(document.get(NONCE)),
        epoch=document.get(EPOCH),
        public_content=document.get(CONTENT, LOCKED_PLACEHOLDER),
    )


def grant_fields(grant: FeedGrant) -> dict[str, Any]:
    return {
        RECIPIENT_ID: grant.recipient_id,
        EPOCH: grant.epoch,
        ENCRYPTED_PAYLOAD: ensure_binary_field(grant.encrypted_payload, ENCRYPTED_PAYLOAD),
    }


def grant_from_document(document: LedgerDocument) -> FeedGrant:
    """Rebuild a grant from its ledger document.

    Raises:
        EncodingError: If the stored epoch is outside the chain.
    """
    epoch = document.get(EPOCH)
    if not is_valid_epoch(epoch):
        raise EncodingError(f"Grant {document.id} has an invalid epoch")
    return FeedGrant(
        owner_id=document.owner_id,
        recipient_id=document.get(RECIPIENT_ID),
        epoch=epoch,
        encrypted_payload=bytes(document.get(ENCRYPTED_PAYLOAD)),
    )


class FeedGrantDirectory:
    """Publish and look up follower grants on the feed contract."""

    def __init__(self, ledger: DocumentLedger, settings: Settings | None = None) -> None:
        self.ledger = ledger
        self.settings = settings or default_settings

    async def publish(self, grant: FeedGrant) -> LedgerDocument:
        return await self.ledger.create(
            self.settings.feed_contract_id,
            PRIVATE_FEED_GRANT,
            grant.owner_id,
            grant_fields(grant),
        )

    async def get_grant(self, owner_id: str, recipient_id: str) -> FeedGrant | None:
        """Return the newest grant from ``owner_id`` to ``recipient_id``, if any."""
        documents = await self.ledger.query(
            self.settings.feed_contract_id,
            PRIVATE_FEED_GRANT,
            where=[(OWNER_FIELD, "==", owner_id), (RECIPIENT_ID, "==", recipient_id)],
        )
        grants = [grant_from_document(d) for d in documents if is_valid_epoch(d.get(EPOCH))]
        if not grants:
            return None
        return max(grants, key=lambda grant: grant.epoch)


class EncryptionSourceResolver:
    """Find which feed key a new reply must inherit."""

    def __init__(self, ledger: DocumentLedger, settings: Settings | None = None) -> None:
        self.ledger = ledger
        self.settings = settings or default_settings

    async def _fetch(self, doc_type: str, document_id: str) -> LedgerDocument | None:
        try:
            documents = await self.ledger.query(
                self.settings.feed_contract_id,
                doc_type,
                where=[(ID_FIELD, "==", document_id)],
                limit=1,
            )
        except Exception as exc:  # noqa: BLE001 - a failed fetch reads as missing
            logger.warning("Fetching %s %s failed: %s", doc_type, document_id, exc)
            return None
        return documents[0] if documents else None

    async def resolve_source(self, parent_id: str, strict: bool = False) -> EncryptionSource | None:
        """Return the encryption source for a reply to ``parent_id``.

        An encrypted top-level post ends the walk. Encrypted replies are
        followed upward; if the chain breaks above them, the last encrypted
        reply visited becomes the source. A public or missing direct parent
        means the new reply is public.

        Raises:
            RecursionLimitExceededError: Only with ``strict=True``, when the
                chain is deeper than ``max_inheritance_depth``.
        """
        fallback: EncryptionSource | None = None
        current_id: str | None = parent_id
        steps = 0
        while current_id:
            if steps >= self.settings.max_inheritance_depth:
                logger.warning(
                    "Encryption source walk from %s stopped after %s steps",
                    parent_id,
                    steps,
                )
                if strict:
                    raise RecursionLimitExceededError(
                        f"Reply chain above {parent_id} exceeds {steps} levels"
                    )
                return None
            steps += 1

            post = await self._fetch(POST, current_id)
            if post is not None:
                if is_encrypted_document(post):
                    return EncryptionSource(owner_id=post.owner_id, epoch=post.get(EPOCH))
                return fallback

            reply = await self._fetch(REPLY, current_id)
            if reply is None:
                logger.warning("Parent %s not found", current_id)
                return fallback
            if not is_encrypted_document(reply):
                return fallback

            fallback = EncryptionSource(owner_id=reply.owner_id, epoch=reply.get(EPOCH))
            current_id = reply.get(PARENT_ID)
        return fallback
