"""Durable session store (SQLite via SQLAlchemy async)."""

from runback.storage.database import Database
from runback.storage.repository import SessionRepository

__all__ = ["Database", "SessionRepository"]
