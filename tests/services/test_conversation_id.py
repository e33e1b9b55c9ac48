"""Tests for deterministic conversation identifiers."""

import hashlib

import pytest

from veil.core.settings import Settings
from veil.services.conversation_id import conversation_key, derive_conversation_id


def test_conversation_id_is_order_independent() -> None:
    assert derive_conversation_id("alice", "bob") == derive_conversation_id("bob", "alice")


def test_conversation_id_matches_sorted_digest() -> None:
    expected = hashlib.sha256(b"alice:bob").digest()
    assert derive_conversation_id("bob", "alice") == expected


def test_conversation_id_length_is_configurable() -> None:
    cid = derive_conversation_id("alice", "bob", Settings(conversation_id_length=10))
    assert len(cid) == 10
    assert cid == derive_conversation_id("alice", "bob")[:10]


def test_conversation_id_length_floor_is_enforced() -> None:
    with pytest.raises(ValueError):
        Settings(conversation_id_length=8)


def test_conversation_key_is_hex() -> None:
    cid = derive_conversation_id("alice", "carol")
    assert conversation_key(cid) == cid.hex()
    assert conversation_key(cid) != conversation_key(derive_conversation_id("alice", "bob"))
