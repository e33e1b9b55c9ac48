# tests/conftest.py
from __future__ import annotations

from collections.abc import Callable, Generator, Iterator
from itertools import count

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from veil.core.settings import Settings
from veil.db.session import Base
from veil.ledger.sql_ledger import SqlDocumentLedger
from veil.schemas.documents import Identity, IdentityPublicKey, KeyPurpose, KeyType, SecurityLevel
from veil.services.conversations import ConversationAggregator
from veil.services.direct_messages import DirectMessageService
from veil.services.key_derivation import KeyPair
from veil.services.key_resolver import PublicKeyResolver
from veil.services.key_vault import MemoryStorageBackend, SecureKeyStore, SqlStorageBackend

TEST_DB_URL = "sqlite://"

ALICE = "alice-identity"
BOB = "bob-identity"


class FakeIdentityRegistry:
    """In-memory identity registry with switchable failure modes."""

    def __init__(self) -> None:
        self.identities: dict[str, Identity] = {}
        self.calls: list[str] = []
        self.failures_remaining = 0

    def register(self, identity_id: str, key_pair: KeyPair, **overrides) -> Identity:
        key = IdentityPublicKey(
            id=overrides.pop("key_id", 1),
            type=overrides.pop("type", KeyType.ECDSA_SECP256K1),
            purpose=overrides.pop("purpose", KeyPurpose.AUTHENTICATION),
            security_level=overrides.pop("security_level", SecurityLevel.HIGH),
            data=overrides.pop("data", key_pair.public_bytes),
        )
        identity = Identity(id=identity_id, public_keys=(key,))
        self.identities[identity_id] = identity
        return identity

    async def get_identity(self, identity_id: str) -> Identity | None:
        self.calls.append(identity_id)
        if self.failures_remaining:
            self.failures_remaining -= 1
            raise ConnectionError("registry timeout")
        return self.identities.get(identity_id)


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def test_settings() -> Settings:
    """Settings with retries that do not slow the suite down."""
    return Settings(registry_retry_delay_seconds=0.0)


@pytest.fixture()
def clock() -> Callable[[], int]:
    """Deterministic millisecond clock advancing by one second per call."""
    ticks = count(1)
    return lambda: 1_700_000_000_000 + next(ticks) * 1000


@pytest.fixture()
def ledger(db_session: Session, clock: Callable[[], int]) -> SqlDocumentLedger:
    return SqlDocumentLedger(db_session, clock=clock)


@pytest.fixture()
def registry() -> FakeIdentityRegistry:
    return FakeIdentityRegistry()


@pytest.fixture()
def alice_keys() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture()
def bob_keys() -> KeyPair:
    return KeyPair.generate()


@pytest.fixture()
def resolver(ledger, registry, test_settings) -> PublicKeyResolver:
    return PublicKeyResolver(ledger, registry, test_settings)


@pytest.fixture()
def key_store(db_session: Session, test_settings: Settings) -> SecureKeyStore:
    return SecureKeyStore(MemoryStorageBackend(), SqlStorageBackend(db_session), test_settings)


@pytest.fixture()
def message_service(ledger, resolver, key_store, test_settings) -> DirectMessageService:
    return DirectMessageService(ledger, resolver, key_store, test_settings)


@pytest.fixture()
def aggregator(ledger, message_service, test_settings) -> ConversationAggregator:
    return ConversationAggregator(ledger, message_service, test_settings)


@pytest.fixture()
def alice_and_bob(
    registry: FakeIdentityRegistry,
    key_store: SecureKeyStore,
    alice_keys: KeyPair,
    bob_keys: KeyPair,
) -> tuple[KeyPair, KeyPair]:
    """Register both identities and log both of them in on this device."""
    registry.register(ALICE, alice_keys)
    registry.register(BOB, bob_keys)
    key_store.store_private_key(ALICE, alice_keys.private_bytes)
    key_store.store_private_key(BOB, bob_keys.private_bytes)
    return alice_keys, bob_keys
