"""Collaborator contracts for the document ledger and identity registry."""

from .interfaces import (
    DocumentLedger,
    IdentityRegistry,
    LedgerDocument,
    OrderBy,
    WhereClause,
)

__all__ = [
    "DocumentLedger",
    "IdentityRegistry",
    "LedgerDocument",
    "OrderBy",
    "WhereClause",
]
