"""Database configuration and utilities."""

from .session import Base

__all__ = ["Base"]
