"""Model describing a document stored by the SQL ledger adapter."""

from typing import Any

from sqlalchemy import JSON, BigInteger, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from veil.db.session import Base


class LedgerDocumentRecord(Base):
    """A ledger document with its system fields and free-form data fields.

    Byte values inside ``fields`` are stored tagged so they survive the JSON
    round trip (see ``veil.ledger.sql_ledger``).
    """

    __tablename__ = "ledger_document"
    __table_args__ = (
        Index("ix_ledger_document_type", "contract_id", "doc_type"),
        Index("ix_ledger_document_owner", "contract_id", "doc_type", "owner_id"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    contract_id: Mapped[str] = mapped_column(String(64), nullable=False)
    doc_type: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    revision: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    fields: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
