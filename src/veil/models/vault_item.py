"""Model for the durable key/value store used by the key vault."""

from datetime import datetime

from sqlalchemy import String, Text
from sqlalchemy.orm import Mapped, mapped_column

from veil.db.session import Base
from veil.db.time import utcnow


class VaultItem(Base):
    """A single durable entry; survives restarts and is cleared only on logout."""

    __tablename__ = "vault_item"

    key: Mapped[str] = mapped_column(String(255), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=utcnow, onupdate=utcnow)
