"""Interfaces of the external collaborators consumed by the Veil services.

The ledger and the registry are owned by other layers; only their call shape
is fixed here. Implementations are expected to apply their own timeouts and
to raise on transport failure.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from veil.schemas.documents import Identity

# System fields addressable in where clauses and ordering.
ID_FIELD = "$id"
OWNER_FIELD = "$ownerId"
CREATED_AT_FIELD = "$createdAt"
UPDATED_AT_FIELD = "$updatedAt"

WhereClause = tuple[str, str, Any]
OrderBy = tuple[str, str]


@dataclass(frozen=True)
class LedgerDocument:
    """Immutable snapshot of a ledger document.

    Timestamps are integer milliseconds. ``updated_at`` equals ``created_at``
    until the document is first updated.
    """

    id: str
    owner_id: str
    doc_type: str
    created_at: int
    updated_at: int
    revision: int
    fields: Mapping[str, Any] = field(default_factory=dict)

    def get(self, name: str, default: Any = None) -> Any:
        """Return a data field or system field by name."""
        system = {
            ID_FIELD: self.id,
            OWNER_FIELD: self.owner_id,
            CREATED_AT_FIELD: self.created_at,
            UPDATED_AT_FIELD: self.updated_at,
        }
        if name in system:
            return system[name]
        return self.fields.get(name, default)


class DocumentLedger(Protocol):
    """Append-only public document store with query-by-field."""

    async def create(
        self,
        contract_id: str,
        doc_type: str,
        owner_id: str,
        fields: Mapping[str, Any],
    ) -> LedgerDocument: ...

    async def query(
        self,
        contract_id: str,
        doc_type: str,
        where: Sequence[WhereClause] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[LedgerDocument]: ...

    async def update(
        self,
        document_id: str,
        owner_id: str,
        fields: Mapping[str, Any],
        revision: int,
    ) -> LedgerDocument: ...

    async def delete(self, document_id: str, owner_id: str) -> None: ...


class IdentityRegistry(Protocol):
    """Lookup of the public keys an identity exposes."""

    async def get_identity(self, identity_id: str) -> Identity | None: ...
