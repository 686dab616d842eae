"""
MemoryStorage — Dict-backed storage for development and testing.

Features:
  - Zero dependencies (no database, no Redis)
  - Values are copied on the way in and out, so callers never share
    mutable records with the store
  - Batches are applied under one asyncio lock
  - All data lost on process restart

Best for: local development, unit tests, quick prototyping.
"""
from __future__ import annotations

import asyncio
import copy
import structlog
from typing import Any

from database.store_base import BaseStorage

logger = structlog.get_logger()


class MemoryStorage(BaseStorage):

    def __init__(self):
        self._items: dict[str, Any] = {}
        self._lock = asyncio.Lock()
        logger.info("memory_storage_initialized")

    async def read(self, keys: list[str]) -> dict[str, Any]:
        return {
            key: copy.deepcopy(self._items[key])
            for key in keys if key in self._items
        }

    async def write(self, changes: dict[str, Any]) -> None:
        async with self._lock:
            for key, record in changes.items():
                self._items[key] = copy.deepcopy(record)
            self._on_change()

    async def delete(self, keys: list[str]) -> None:
        async with self._lock:
            for key in keys:
                self._items.pop(key, None)
            self._on_change()

    def _on_change(self) -> None:
        """Hook for subclasses that persist the item map."""

    # ── Stats (for debugging) ─────────────────────────────

    def stats(self) -> dict[str, int]:
        return {"items": len(self._items)}
