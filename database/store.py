"""
SqlStorage — Portable key/value storage for PostgreSQL, MySQL, SQLite.

Each record lives in one row of `storage_items`; a write batch is one
transaction, so multi-key writes (a token record) land together.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any

from sqlalchemy import delete, select

from database.models import StorageItemRow
from database.session import (
    close_db, create_engine_for, create_session_factory, init_db, session_scope,
)
from database.store_base import BaseStorage, flatten, restore

logger = structlog.get_logger()


class SqlStorage(BaseStorage):
    """
    Persistent storage backed by any SQLAlchemy-supported database.
    Tables are created on first use.
    """

    def __init__(self, url: str, debug: bool = False):
        self._engine = create_engine_for(url, debug)
        self._factory = create_session_factory(self._engine)
        self._ready = False
        self._init_lock = asyncio.Lock()

    async def _ensure_schema(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if not self._ready:
                await init_db(self._engine)
                self._ready = True

    async def read(self, keys: list[str]) -> dict[str, Any]:
        if not keys:
            return {}
        await self._ensure_schema()
        async with session_scope(self._factory) as db:
            stmt = select(StorageItemRow).where(StorageItemRow.key.in_(keys))
            result = await db.execute(stmt)
            return {row.key: restore(row.data) for row in result.scalars()}

    async def write(self, changes: dict[str, Any]) -> None:
        if not changes:
            return
        await self._ensure_schema()
        async with session_scope(self._factory) as db:
            for key, record in changes.items():
                data = flatten(record)
                existing = await db.get(StorageItemRow, key)
                if existing:
                    existing.data = data
                else:
                    db.add(StorageItemRow(key=key, data=data))
        logger.debug("sql_storage_written", keys=list(changes))

    async def delete(self, keys: list[str]) -> None:
        if not keys:
            return
        await self._ensure_schema()
        async with session_scope(self._factory) as db:
            await db.execute(delete(StorageItemRow).where(StorageItemRow.key.in_(keys)))

    async def close(self) -> None:
        await close_db(self._engine)
