"""SQLAlchemy models backing the local ledger adapter and durable key storage."""

from .ledger_document import LedgerDocumentRecord
from .vault_item import VaultItem

__all__ = ["LedgerDocumentRecord", "VaultItem"]
