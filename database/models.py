"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite it
serializes to TEXT.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import String, DateTime, JSON
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class StorageItemRow(Base):
    """One key/value record: conversation state, user state or token value."""
    __tablename__ = "storage_items"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    data: Mapped[Any] = mapped_column(JSON, default=dict)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow,
    )

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "data": self.data,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
