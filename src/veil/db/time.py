"""Time utilities for ledger documents and stored records."""

from datetime import UTC, datetime


def utcnow() -> datetime:
    """Return the current UTC time as a timezone-aware datetime."""
    return datetime.now(UTC)


def now_ms() -> int:
    """Return the current UTC time in integer milliseconds since the epoch."""
    return int(utcnow().timestamp() * 1000)
