"""Document ledger adapter backed by SQLAlchemy.

Useful for local development, integration tests and offline caches. It keeps
the ledger's semantics (owner-only writes, revision checks, millisecond
timestamps) without attempting to model consensus.
"""

from __future__ import annotations

import base64
import logging
import operator
import secrets
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from veil.core.errors import LedgerError
from veil.db.time import now_ms
from veil.ledger.interfaces import (
    ID_FIELD,
    OWNER_FIELD,
    LedgerDocument,
    OrderBy,
    WhereClause,
)
from veil.models.ledger_document import LedgerDocumentRecord

__all__ = ["SqlDocumentLedger"]

logger = logging.getLogger(__name__)

_BYTES_TAG = "$bytes"
_DOCUMENT_ID_BYTES = 32

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "in": lambda value, options: value in options,
}


def _encode_value(value: Any) -> Any:
    if isinstance(value, bytes | bytearray):
        return {_BYTES_TAG: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, list | tuple):
        return [_encode_value(item) for item in value]
    if isinstance(value, Mapping):
        return {str(key): _encode_value(item) for key, item in value.items()}
    return value


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict):
        if set(value) == {_BYTES_TAG}:
            return base64.b64decode(value[_BYTES_TAG])
        return {key: _decode_value(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_decode_value(item) for item in value]
    return value


def _to_document(record: LedgerDocumentRecord) -> LedgerDocument:
    return LedgerDocument(
        id=record.id,
        owner_id=record.owner_id,
        doc_type=record.doc_type,
        created_at=int(record.created_at),
        updated_at=int(record.updated_at),
        revision=int(record.revision),
        fields=_decode_value(dict(record.fields or {})),
    )


def _matches(document: LedgerDocument, clause: WhereClause) -> bool:
    name, op, expected = clause
    compare = _OPERATORS.get(op)
    if compare is None:
        raise ValueError(f"Unsupported where operator: {op}")
    actual = document.get(name)
    if actual is None:
        return False
    try:
        return bool(compare(actual, expected))
    except TypeError:
        return False


class SqlDocumentLedger:
    """Ledger collaborator implemented over a single ``ledger_document`` table."""

    def __init__(self, session: Session, clock: Callable[[], int] | None = None) -> None:
        """Initialize the ledger with a SQLAlchemy session.

        Args:
            session: Session used for all reads and writes.
            clock: Millisecond clock; defaults to wall-clock UTC.
        """
        self.session = session
        self._clock = clock or now_ms

    async def create(
        self,
        contract_id: str,
        doc_type: str,
        owner_id: str,
        fields: Mapping[str, Any],
    ) -> LedgerDocument:
        """Insert a new document owned by ``owner_id`` and return it."""
        timestamp = self._clock()
        record = LedgerDocumentRecord(
            id=base64.urlsafe_b64encode(secrets.token_bytes(_DOCUMENT_ID_BYTES)).decode().rstrip("="),
            contract_id=contract_id,
            doc_type=doc_type,
            owner_id=owner_id,
            revision=1,
            created_at=timestamp,
            updated_at=timestamp,
            fields=_encode_value(dict(fields)),
        )
        self.session.add(record)
        self.session.commit()
        logger.debug("Created %s document %s for %s", doc_type, record.id, owner_id)
        return _to_document(record)

    async def query(
        self,
        contract_id: str,
        doc_type: str,
        where: Sequence[WhereClause] = (),
        order_by: Sequence[OrderBy] = (),
        limit: int | None = None,
    ) -> list[LedgerDocument]:
        """Return documents matching every clause, ordered and limited."""
        stmt = select(LedgerDocumentRecord).where(
            LedgerDocumentRecord.contract_id == contract_id,
            LedgerDocumentRecord.doc_type == doc_type,
        )
        remaining: list[WhereClause] = []
        for clause in where:
            name, op, expected = clause
            if op == "==" and name == OWNER_FIELD:
                stmt = stmt.where(LedgerDocumentRecord.owner_id == expected)
            elif op == "==" and name == ID_FIELD:
                stmt = stmt.where(LedgerDocumentRecord.id == expected)
            else:
                remaining.append(clause)

        documents = [_to_document(record) for record in self.session.execute(stmt).scalars()]
        documents = [
            doc for doc in documents if all(_matches(doc, clause) for clause in remaining)
        ]
        # Stable sorts applied last-key-first give lexicographic ordering.
        for name, direction in reversed(list(order_by)):
            documents.sort(
                key=lambda doc, field_name=name: doc.get(field_name, 0),
                reverse=direction.lower() == "desc",
            )
        if limit is not None:
            documents = documents[:limit]
        return documents

    async def update(
        self,
        document_id: str,
        owner_id: str,
        fields: Mapping[str, Any],
        revision: int,
    ) -> LedgerDocument:
        """Merge ``fields`` into a document the caller owns.

        Raises:
            LedgerError: If the document is missing, owned by someone else, or
                ``revision`` is stale.
        """
        record = self._get_owned(document_id, owner_id)
        if int(record.revision) != int(revision):
            raise LedgerError(
                f"Revision mismatch for {document_id}: expected {record.revision}, got {revision}"
            )
        merged = dict(record.fields or {})
        merged.update(_encode_value(dict(fields)))
        record.fields = merged
        record.revision = int(record.revision) + 1
        record.updated_at = max(self._clock(), int(record.updated_at))
        self.session.commit()
        return _to_document(record)

    async def delete(self, document_id: str, owner_id: str) -> None:
        """Delete a document the caller owns."""
        record = self._get_owned(document_id, owner_id)
        self.session.delete(record)
        self.session.commit()

    def _get_owned(self, document_id: str, owner_id: str) -> LedgerDocumentRecord:
        record = self.session.get(LedgerDocumentRecord, document_id)
        if record is None:
            raise LedgerError(f"Document {document_id} not found")
        if record.owner_id != owner_id:
            raise LedgerError(f"Document {document_id} is not owned by {owner_id}")
        return record
