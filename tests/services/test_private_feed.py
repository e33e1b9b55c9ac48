"""Tests for private-feed keys, content encryption and inheritance."""

import dataclasses
import hashlib

import pytest

from veil.core.errors import (
    AuthenticationFailedError,
    EncodingError,
    KeyNotFoundError,
    RecursionLimitExceededError,
    VeilError,
)
from veil.schemas.documents import CONTENT, ENCRYPTED_CONTENT, EPOCH, NONCE, PARENT_ID, POST, REPLY
from veil.services.key_derivation import KeyPair
from veil.services.private_feed import (
    LOCKED_PLACEHOLDER,
    MAX_EPOCH,
    MAX_PLAINTEXT_BYTES,
    EncryptionSource,
    EncryptionSourceResolver,
    FeedGrantDirectory,
    FeedKeyStore,
    PrivateContentEnvelope,
    PrivateFeedCrypto,
    PrivateFeedService,
    envelope_from_document,
    is_encrypted_document,
)

OWNER = "owner-identity"
FOLLOWER = "follower-identity"
SEED = bytes(range(32))


def _encrypted_fields(epoch: int = 3, parent_id: str | None = None) -> dict:
    fields = {
        CONTENT: LOCKED_PLACEHOLDER,
        ENCRYPTED_CONTENT: b"\xaa" * 40,
        EPOCH: epoch,
        NONCE: b"\xbb" * 24,
    }
    if parent_id is not None:
        fields[PARENT_ID] = parent_id
    return fields


@pytest.fixture()
def feed_resolver(ledger, test_settings) -> EncryptionSourceResolver:
    return EncryptionSourceResolver(ledger, test_settings)


def test_epoch_chain_hashes_backwards() -> None:
    chain = PrivateFeedCrypto.generate_epoch_chain(SEED, max_epoch=10)

    assert sorted(chain) == list(range(1, 11))
    assert chain[4] == hashlib.sha256(chain[5]).digest()
    assert PrivateFeedCrypto.derive_cek(chain[10], 10, 2) == chain[2]
    assert PrivateFeedCrypto.cek_for_epoch(SEED, 7, max_epoch=10) == chain[7]


def test_epoch_chain_cannot_walk_forward() -> None:
    cek = PrivateFeedCrypto.cek_for_epoch(SEED, 5)
    with pytest.raises(ValueError):
        PrivateFeedCrypto.derive_cek(cek, 5, 6)
    with pytest.raises(ValueError):
        PrivateFeedCrypto.derive_cek(cek, 5, 0)


def test_post_content_round_trip_binds_owner_and_epoch() -> None:
    cek = PrivateFeedCrypto.cek_for_epoch(SEED, 2)
    envelope = PrivateFeedCrypto.encrypt_post_content(cek, "members only", OWNER, 2)

    assert len(envelope.nonce) == 24
    assert PrivateFeedCrypto.decrypt_post_content(cek, envelope, OWNER) == "members only"
    with pytest.raises(AuthenticationFailedError):
        PrivateFeedCrypto.decrypt_post_content(cek, envelope, FOLLOWER)


def test_post_content_size_limit() -> None:
    cek = PrivateFeedCrypto.cek_for_epoch(SEED, 1)
    PrivateFeedCrypto.encrypt_post_content(cek, "x" * MAX_PLAINTEXT_BYTES, OWNER, 1)
    with pytest.raises(EncodingError):
        PrivateFeedCrypto.encrypt_post_content(cek, "x" * (MAX_PLAINTEXT_BYTES + 1), OWNER, 1)


def test_owner_encryption_uses_current_epoch_and_teaser() -> None:
    store = FeedKeyStore()
    store.enable_feed(OWNER, SEED, epoch=3)
    service = PrivateFeedService(store)

    locked = service.prepare_owner_encryption(OWNER, "secret")
    teased = service.prepare_owner_encryption(OWNER, "secret", teaser="A preview")

    assert locked.epoch == 3
    assert locked.public_content == LOCKED_PLACEHOLDER
    assert teased.public_content == "A preview"
    assert service.decrypt_content(OWNER, teased) == "secret"

    with pytest.raises(KeyNotFoundError):
        service.prepare_owner_encryption(FOLLOWER, "no feed")


def test_follower_decrypts_older_epochs_only() -> None:
    owner_store = FeedKeyStore()
    owner_store.enable_feed(OWNER, SEED, epoch=2)
    owner = PrivateFeedService(owner_store)
    old_post = owner.prepare_owner_encryption(OWNER, "epoch two")
    owner_store.advance_epoch(OWNER)
    new_post = owner.prepare_owner_encryption(OWNER, "epoch three")

    follower_store = FeedKeyStore()
    follower_store.store_cached_cek(OWNER, 2, PrivateFeedCrypto.cek_for_epoch(SEED, 2))
    follower = PrivateFeedService(follower_store)

    assert follower.decrypt_content(OWNER, old_post) == "epoch two"
    with pytest.raises(KeyNotFoundError):
        follower.decrypt_content(OWNER, new_post)


def test_inherited_encryption_needs_a_fresh_enough_key() -> None:
    store = FeedKeyStore()
    store.store_cached_cek(OWNER, 4, PrivateFeedCrypto.cek_for_epoch(SEED, 4))
    service = PrivateFeedService(store)

    reply = service.prepare_inherited_encryption("in thread", EncryptionSource(OWNER, 3))
    assert reply.epoch == 3
    assert reply.public_content == LOCKED_PLACEHOLDER
    assert service.decrypt_content(OWNER, reply) == "in thread"

    with pytest.raises(KeyNotFoundError):
        service.prepare_inherited_encryption("too new", EncryptionSource(OWNER, 5))
    with pytest.raises(KeyNotFoundError):
        service.prepare_inherited_encryption("unknown", EncryptionSource(FOLLOWER, 1))


@pytest.mark.asyncio
async def test_reply_to_encrypted_post(feed_resolver, ledger, test_settings) -> None:
    post = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=7))

    assert await feed_resolver.resolve_source(post.id) == EncryptionSource(OWNER, 7, inherited=True)


@pytest.mark.asyncio
async def test_reply_to_public_or_missing_parent_is_public(feed_resolver, ledger, test_settings) -> None:
    post = await ledger.create(test_settings.feed_contract_id, POST, OWNER, {CONTENT: "hello"})
    reply = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, {CONTENT: "hi", PARENT_ID: post.id}
    )

    assert await feed_resolver.resolve_source(post.id) is None
    assert await feed_resolver.resolve_source(reply.id) is None
    assert await feed_resolver.resolve_source("missing-document") is None


@pytest.mark.asyncio
async def test_deep_reply_inherits_root_post(feed_resolver, ledger, test_settings) -> None:
    parent = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=2))
    for _ in range(5):
        parent = await ledger.create(
            test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(epoch=9, parent_id=parent.id)
        )

    assert await feed_resolver.resolve_source(parent.id) == EncryptionSource(OWNER, 2)


@pytest.mark.asyncio
async def test_broken_chain_falls_back_to_last_encrypted_reply(feed_resolver, ledger, test_settings) -> None:
    orphan = await ledger.create(
        test_settings.feed_contract_id, REPLY, "orphan-author", _encrypted_fields(epoch=4, parent_id="deleted")
    )
    child = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(epoch=8, parent_id=orphan.id)
    )

    assert await feed_resolver.resolve_source(child.id) == EncryptionSource("orphan-author", 4)


@pytest.mark.asyncio
async def test_fetch_failure_reads_as_missing(feed_resolver, ledger, test_settings, mocker) -> None:
    reply = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(epoch=5, parent_id="root")
    )
    original_query = ledger.query

    async def flaky_query(contract_id, doc_type, where=(), *args, **kwargs):
        if any(value == "root" for _, _, value in where):
            raise TimeoutError("ledger timeout")
        return await original_query(contract_id, doc_type, where, *args, **kwargs)

    mocker.patch.object(ledger, "query", side_effect=flaky_query)

    assert await feed_resolver.resolve_source(reply.id) == EncryptionSource(FOLLOWER, 5)


@pytest.mark.asyncio
async def test_chain_deeper_than_ceiling_resolves_to_none(feed_resolver, ledger, test_settings) -> None:
    parent = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=1))
    for _ in range(150):
        parent = await ledger.create(
            test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(epoch=1, parent_id=parent.id)
        )

    assert await feed_resolver.resolve_source(parent.id) is None
    with pytest.raises(RecursionLimitExceededError):
        await feed_resolver.resolve_source(parent.id, strict=True)


@pytest.mark.asyncio
async def test_ceiling_is_configurable(ledger, test_settings) -> None:
    shallow = EncryptionSourceResolver(ledger, test_settings.model_copy(update={"max_inheritance_depth": 2}))
    parent = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=1))
    first = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(parent_id=parent.id)
    )
    second = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(parent_id=first.id)
    )

    assert await shallow.resolve_source(first.id) == EncryptionSource(OWNER, 1)
    assert await shallow.resolve_source(second.id) is None


@pytest.mark.parametrize("epoch", [0, -1, MAX_EPOCH + 1, True, "3"])
def test_out_of_range_epoch_is_an_encoding_error(epoch) -> None:
    store = FeedKeyStore()
    store.store_cached_cek(OWNER, 5, PrivateFeedCrypto.cek_for_epoch(SEED, 5))
    service = PrivateFeedService(store)
    envelope = PrivateContentEnvelope(b"\x00" * 40, b"\x00" * 24, epoch=epoch)

    with pytest.raises(EncodingError) as exc_info:
        service.decrypt_content(OWNER, envelope)
    assert isinstance(exc_info.value, VeilError)


@pytest.mark.asyncio
async def test_document_with_bad_epoch_is_not_private_content(ledger, test_settings) -> None:
    good = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=3))
    bad = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=0))

    assert is_encrypted_document(good)
    assert envelope_from_document(good).epoch == 3
    assert not is_encrypted_document(bad)
    with pytest.raises(EncodingError):
        envelope_from_document(bad)


@pytest.mark.asyncio
async def test_bad_epoch_in_chain_breaks_the_walk(feed_resolver, ledger, test_settings) -> None:
    root = await ledger.create(test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch=2))
    corrupt = await ledger.create(
        test_settings.feed_contract_id, REPLY, "mallory", _encrypted_fields(epoch=-1, parent_id=root.id)
    )
    child = await ledger.create(
        test_settings.feed_contract_id, REPLY, FOLLOWER, _encrypted_fields(epoch=6, parent_id=corrupt.id)
    )
    garbled_post = await ledger.create(
        test_settings.feed_contract_id, POST, OWNER, _encrypted_fields(epoch="abc")
    )

    assert await feed_resolver.resolve_source(child.id) == EncryptionSource(FOLLOWER, 6)
    assert await feed_resolver.resolve_source(corrupt.id) is None
    assert await feed_resolver.resolve_source(garbled_post.id) is None


def test_grant_delivers_current_key_to_follower() -> None:
    owner_store = FeedKeyStore()
    owner_store.enable_feed(OWNER, SEED, epoch=3)
    owner = PrivateFeedService(owner_store)
    post = owner.prepare_owner_encryption(OWNER, "for approved followers")
    follower_keys = KeyPair.generate()

    grant = owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes)
    follower = PrivateFeedService(FeedKeyStore())
    cached = follower.accept_grant(grant, follower_keys.private_bytes)

    assert grant.epoch == 3
    assert cached.epoch == 3
    assert follower.decrypt_content(OWNER, post) == "for approved followers"
    reply = follower.prepare_inherited_encryption("me too", EncryptionSource(OWNER, 3))
    assert owner.decrypt_content(OWNER, reply) == "me too"


def test_grant_only_opens_for_its_recipient() -> None:
    owner_store = FeedKeyStore()
    owner_store.enable_feed(OWNER, SEED, epoch=2)
    owner = PrivateFeedService(owner_store)
    follower_keys = KeyPair.generate()
    grant = owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes)
    follower = PrivateFeedService(FeedKeyStore())

    with pytest.raises(AuthenticationFailedError):
        follower.accept_grant(grant, KeyPair.generate().private_bytes)
    with pytest.raises(AuthenticationFailedError):
        follower.accept_grant(dataclasses.replace(grant, recipient_id="someone-else"), follower_keys.private_bytes)
    with pytest.raises(AuthenticationFailedError):
        follower.accept_grant(dataclasses.replace(grant, epoch=1), follower_keys.private_bytes)
    assert follower.key_store.get_cached_cek(OWNER) is None

    with pytest.raises(KeyNotFoundError):
        owner.create_grant(FOLLOWER, OWNER, follower_keys.public_bytes)


def test_older_grant_does_not_downgrade_cached_key() -> None:
    owner_store = FeedKeyStore()
    owner_store.enable_feed(OWNER, SEED, epoch=1)
    owner = PrivateFeedService(owner_store)
    follower_keys = KeyPair.generate()
    old_grant = owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes)
    owner_store.advance_epoch(OWNER)
    new_grant = owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes)

    follower = PrivateFeedService(FeedKeyStore())
    follower.accept_grant(new_grant, follower_keys.private_bytes)
    cached = follower.accept_grant(old_grant, follower_keys.private_bytes)

    assert cached.epoch == 2
    assert cached.cek == PrivateFeedCrypto.cek_for_epoch(SEED, 2)


def test_grant_payload_layout() -> None:
    cek = PrivateFeedCrypto.cek_for_epoch(SEED, 9)
    payload = PrivateFeedCrypto.encode_grant_payload(9, cek)

    assert payload[:5] == b"\x01\x00\x00\x00\x09"
    assert PrivateFeedCrypto.decode_grant_payload(payload) == (9, cek)
    with pytest.raises(EncodingError):
        PrivateFeedCrypto.decode_grant_payload(b"\x02" + payload[1:])
    with pytest.raises(EncodingError):
        PrivateFeedCrypto.decode_grant_payload(b"\x01\x00\x00\x00\x00" + cek)


@pytest.mark.asyncio
async def test_grant_directory_returns_newest_grant(ledger, test_settings) -> None:
    owner_store = FeedKeyStore()
    owner_store.enable_feed(OWNER, SEED, epoch=1)
    owner = PrivateFeedService(owner_store)
    follower_keys = KeyPair.generate()
    directory = FeedGrantDirectory(ledger, test_settings)

    await directory.publish(owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes))
    owner_store.advance_epoch(OWNER)
    await directory.publish(owner.create_grant(OWNER, FOLLOWER, follower_keys.public_bytes))

    grant = await directory.get_grant(OWNER, FOLLOWER)
    assert grant.epoch == 2
    assert await directory.get_grant(OWNER, "stranger") is None

    follower = PrivateFeedService(FeedKeyStore())
    assert follower.accept_grant(grant, follower_keys.private_bytes).epoch == 2
