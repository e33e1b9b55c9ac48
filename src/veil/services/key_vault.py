"""Local storage for private keys.

``SecureKeyStore`` keeps keys for the current session, or durably when the
user opted into "remember me". ``PasswordVault`` keeps keys durably, each
encrypted under a key stretched from the user's password.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from veil.core.errors import (
    AuthenticationFailedError,
    StorageUnavailableError,
    WrongPasswordError,
)
from veil.core.settings import Settings
from veil.core.settings import settings as default_settings
from veil.db.time import now_ms
from veil.models.vault_item import VaultItem
from veil.schemas.vault import StoredCredentials, VaultEntry
from veil.services.cipher import SymmetricCipher, generate_nonce
from veil.services.key_derivation import PASSWORD_SALT_SIZE, stretch_password

logger = logging.getLogger(__name__)

PRIVATE_KEY_PREFIX = "pk_"


class StorageBackend(Protocol):
    """String key/value storage."""

    def probe(self) -> bool: ...

    def get_item(self, key: str) -> str | None: ...

    def set_item(self, key: str, value: str) -> None: ...

    def remove_item(self, key: str) -> None: ...

    def keys(self) -> list[str]: ...


class MemoryStorageBackend:
    """Storage that lives as long as the object, used for session scope."""

    def __init__(self) -> None:
        self._items: dict[str, str] = {}
        self.available = True

    def probe(self) -> bool:
        return self.available

    def get_item(self, key: str) -> str | None:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)

    def keys(self) -> list[str]:
        return list(self._items)


class SqlStorageBackend:
    """Durable storage on the ``vault_item`` table."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def probe(self) -> bool:
        try:
            self.session.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.warning("Durable key storage unavailable: %s", exc)
            return False
        return True

    def get_item(self, key: str) -> str | None:
        try:
            item = self.session.get(VaultItem, key)
        except SQLAlchemyError as exc:
            raise StorageUnavailableError(f"Could not read {key}") from exc
        return item.value if item is not None else None

    def set_item(self, key: str, value: str) -> None:
        try:
            item = self.session.get(VaultItem, key)
            if item is None:
                self.session.add(VaultItem(key=key, value=value))
            else:
                item.value = value
            self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageUnavailableError(f"Could not write {key}") from exc

    def remove_item(self, key: str) -> None:
        try:
            item = self.session.get(VaultItem, key)
            if item is not None:
                self.session.delete(item)
                self.session.commit()
        except SQLAlchemyError as exc:
            self.session.rollback()
            raise StorageUnavailableError(f"Could not remove {key}") from exc

    def keys(self) -> list[str]:
        try:
            return list(self.session.execute(select(VaultItem.key)).scalars())
        except SQLAlchemyError as exc:
            raise StorageUnavailableError("Could not list stored keys") from exc


class SecureKeyStore:
    """Prefixed JSON storage split between a session and a durable backend.

    Every operation degrades to a no-op when storage is unavailable, so a
    broken store never takes the caller down with it.
    """

    def __init__(
        self,
        session_backend: StorageBackend,
        durable_backend: StorageBackend,
        settings: Settings | None = None,
    ) -> None:
        self.session_backend = session_backend
        self.durable_backend = durable_backend
        self.settings = settings or default_settings
        self.prefix = self.settings.secure_storage_prefix

    def set_remember_me(self, remember: bool) -> None:
        """Choose whether new entries go to the durable backend."""
        if not self.durable_backend.probe():
            return
        try:
            if remember:
                self.durable_backend.set_item(self.settings.remember_me_key, "true")
            else:
                self.durable_backend.remove_item(self.settings.remember_me_key)
        except StorageUnavailableError as exc:
            logger.error("Could not update remember-me flag: %s", exc)

    def is_remember_me(self) -> bool:
        if not self.durable_backend.probe():
            return False
        try:
            return self.durable_backend.get_item(self.settings.remember_me_key) == "true"
        except StorageUnavailableError:
            return False

    def _backends(self) -> tuple[StorageBackend, StorageBackend]:
        """Return (active, other); the active backend receives writes."""
        if self.is_remember_me():
            return self.durable_backend, self.session_backend
        return self.session_backend, self.durable_backend

    def set(self, key: str, value: Any) -> bool:
        """Store ``value`` as JSON; returns False when nothing was written."""
        active, _ = self._backends()
        if not active.probe():
            return False
        try:
            active.set_item(self.prefix + key, json.dumps(value))
        except StorageUnavailableError as exc:
            logger.error("Failed to store %s: %s", key, exc)
            return False
        return True

    def get(self, key: str) -> Any:
        """Return the stored value, checking the other backend if the mode changed."""
        for backend in self._backends():
            if not backend.probe():
                continue
            try:
                raw = backend.get_item(self.prefix + key)
                if raw is not None:
                    return json.loads(raw)
            except (StorageUnavailableError, ValueError) as exc:
                logger.warning("Failed to read %s: %s", key, exc)
        return None

    def has(self, key: str) -> bool:
        for backend in self._backends():
            if not backend.probe():
                continue
            try:
                if backend.get_item(self.prefix + key) is not None:
                    return True
            except StorageUnavailableError:
                continue
        return False

    def delete(self, key: str) -> bool:
        """Remove ``key`` from both backends; returns whether it existed."""
        existed = self.has(key)
        for backend in (self.durable_backend, self.session_backend):
            if not backend.probe():
                continue
            try:
                backend.remove_item(self.prefix + key)
            except StorageUnavailableError as exc:
                logger.error("Failed to delete %s: %s", key, exc)
        return existed

    def keys(self) -> list[str]:
        """Return stored keys without the prefix, never the values."""
        found: dict[str, None] = {}
        for backend in (self.durable_backend, self.session_backend):
            if not backend.probe():
                continue
            try:
                for key in backend.keys():
                    if key.startswith(self.prefix):
                        found[key[len(self.prefix):]] = None
            except StorageUnavailableError:
                continue
        return list(found)

    def clear(self) -> None:
        """Remove every prefixed entry and the remember-me flag."""
        for key in self.keys():
            self.delete(key)
        self.set_remember_me(False)

    def store_private_key(self, identity_id: str, private_key: bytes) -> bool:
        return self.set(PRIVATE_KEY_PREFIX + identity_id, private_key.hex())

    def get_private_key(self, identity_id: str) -> bytes | None:
        stored = self.get(PRIVATE_KEY_PREFIX + identity_id)
        if not stored:
            return None
        try:
            return bytes.fromhex(stored)
        except (TypeError, ValueError):
            logger.warning("Discarding malformed private key entry for %s", identity_id)
            return None

    def clear_private_key(self, identity_id: str) -> bool:
        return self.delete(PRIVATE_KEY_PREFIX + identity_id)

    def clear_all_private_keys(self) -> None:
        for key in self.keys():
            if key.startswith(PRIVATE_KEY_PREFIX):
                self.delete(key)


class PasswordVault:
    """Private keys encrypted under password-derived keys.

    All entries live in one JSON document in durable storage. Writes replace
    that document whole, so a failed write never leaves an identity without
    its previous entry.
    """

    def __init__(self, backend: StorageBackend, settings: Settings | None = None) -> None:
        self.backend = backend
        self.settings = settings or default_settings

    def _load(self) -> StoredCredentials:
        if not self.backend.probe():
            raise StorageUnavailableError("Credential storage is unavailable")
        raw = self.backend.get_item(self.settings.vault_storage_key)
        if raw is None:
            return StoredCredentials()
        try:
            return StoredCredentials.model_validate_json(raw)
        except ValidationError as exc:
            raise StorageUnavailableError("Stored credentials are unreadable") from exc

    def _save(self, stored: StoredCredentials) -> None:
        if not self.backend.probe():
            raise StorageUnavailableError("Credential storage is unavailable")
        self.backend.set_item(self.settings.vault_storage_key, stored.model_dump_json())

    @staticmethod
    def _find(stored: StoredCredentials, identity_id: str) -> VaultEntry | None:
        return next((c for c in stored.credentials if c.identity_id == identity_id), None)

    def _seal(self, identity_id: str, private_key: bytes, password: str) -> VaultEntry:
        salt = generate_nonce(PASSWORD_SALT_SIZE)
        nonce = generate_nonce()
        iterations = self.settings.vault_pbkdf2_iterations
        key = stretch_password(password, salt, iterations)
        ciphertext = SymmetricCipher.encrypt(key, nonce, private_key, identity_id.encode("utf-8"))
        return VaultEntry(
            identity_id=identity_id,
            ciphertext=ciphertext,
            nonce=nonce,
            salt=salt,
            iterations=iterations,
            created_at=now_ms(),
        )

    def _store(self, stored: StoredCredentials, entry: VaultEntry) -> None:
        others = [c for c in stored.credentials if c.identity_id != entry.identity_id]
        self._save(
            StoredCredentials(
                credentials=[*others, entry],
                last_used_identity_id=entry.identity_id,
            )
        )

    def lock(self, identity_id: str, private_key: bytes, password: str) -> VaultEntry:
        """Encrypt and store ``private_key``, replacing any previous entry."""
        stored = self._load()
        entry = self._seal(identity_id, private_key, password)
        self._store(stored, entry)
        logger.info("Stored password-protected key for %s", identity_id)
        return entry

    def _open(self, identity_id: str, password: str) -> tuple[StoredCredentials, bytes | None]:
        stored = self._load()
        entry = self._find(stored, identity_id)
        if entry is None:
            return stored, None
        key = stretch_password(password, entry.salt, entry.iterations)
        try:
            private_key = SymmetricCipher.decrypt(
                key, entry.nonce, entry.ciphertext, identity_id.encode("utf-8")
            )
        except AuthenticationFailedError as exc:
            raise WrongPasswordError("Incorrect password") from exc
        return stored, private_key

    def unlock(self, identity_id: str, password: str) -> bytes | None:
        """Decrypt the stored key for ``identity_id`` and mark it last used.

        Failing to record last-used is logged and does not fail the unlock.

        Returns:
            The private key, or None when no entry exists.

        Raises:
            WrongPasswordError: If the password does not open the entry.
            StorageUnavailableError: If storage is unreadable.
        """
        stored, private_key = self._open(identity_id, password)
        if private_key is None or stored.last_used_identity_id == identity_id:
            return private_key
        try:
            self._save(stored.model_copy(update={"last_used_identity_id": identity_id}))
        except StorageUnavailableError as exc:
            logger.warning("Could not record last used identity %s: %s", identity_id, exc)
        return private_key

    def verify_password(self, identity_id: str, password: str) -> bool:
        try:
            return self._open(identity_id, password)[1] is not None
        except WrongPasswordError:
            return False

    def change_password(self, identity_id: str, old_password: str, new_password: str) -> bool:
        """Re-encrypt an entry under a new password.

        Returns:
            False when there is no entry for ``identity_id``.

        Raises:
            WrongPasswordError: If ``old_password`` is wrong.
        """
        stored, private_key = self._open(identity_id, old_password)
        if private_key is None:
            return False
        entry = self._seal(identity_id, private_key, new_password)
        self._store(stored, entry)
        return True

    def has_credential(self, identity_id: str) -> bool:
        return self._find(self._load(), identity_id) is not None

    def has_any_credentials(self) -> bool:
        return bool(self._load().credentials)

    def last_used_identity_id(self) -> str | None:
        return self._load().last_used_identity_id

    def remove(self, identity_id: str) -> None:
        """Delete one entry; last-used moves to the most recent remaining one."""
        stored = self._load()
        remaining = [c for c in stored.credentials if c.identity_id != identity_id]
        last_used = stored.last_used_identity_id
        if last_used == identity_id:
            last_used = remaining[-1].identity_id if remaining else None
        self._save(StoredCredentials(credentials=remaining, last_used_identity_id=last_used))

    def clear_all(self) -> None:
        if not self.backend.probe():
            raise StorageUnavailableError("Credential storage is unavailable")
        self.backend.remove_item(self.settings.vault_storage_key)
