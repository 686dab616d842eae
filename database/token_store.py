"""
TokenStore — Durable per-instance key/value values.

Holds OAuth artifacts (access / refresh tokens, expiry, the anti-CSRF
state) and any other credential a package needs to keep per instance.
Every value lives under "{instance_id}/values/{key}" in the backing
storage. Writes for one instance are serialized by a lock, so
compare-and-clear and multi-value writes are atomic per instance.
"""
from __future__ import annotations

import asyncio
import hmac
import structlog
from datetime import datetime
from typing import Any, Optional

from database.store_base import BaseStorage
from models.schemas import TokenRecord

logger = structlog.get_logger()

ANTI_CSRF_STATE = "AntiCSRFAttackState"
ACCESS_TOKEN = "accessToken"
REFRESH_TOKEN = "refreshToken"
EXPIRES_ON = "expiresOn"


class TokenStore:

    def __init__(self, storage: BaseStorage):
        self._storage = storage
        self._locks: dict[str, asyncio.Lock] = {}

    @staticmethod
    def _key(instance_id: Any, key: str) -> str:
        return f"{instance_id}/values/{key}"

    def _lock_for(self, instance_id: Any) -> asyncio.Lock:
        return self._locks.setdefault(str(instance_id), asyncio.Lock())

    # ── Single values ─────────────────────────────────────

    async def get_value(self, instance_id: Any, key: str) -> Optional[str]:
        storage_key = self._key(instance_id, key)
        items = await self._storage.read([storage_key])
        item = items.get(storage_key)
        return item["value"] if item else None

    async def set_value(self, instance_id: Any, key: str, value: Optional[str]) -> None:
        """Store a value; None removes it."""
        async with self._lock_for(instance_id):
            await self._put(instance_id, {key: value})

    async def set_values(self, instance_id: Any, values: dict[str, Optional[str]]) -> None:
        """Store several values in one storage batch."""
        async with self._lock_for(instance_id):
            await self._put(instance_id, values)

    async def consume_value(self, instance_id: Any, key: str, expected: Optional[str]) -> bool:
        """
        Clear `key` if it holds `expected` and report whether it did.
        A missing or empty stored value never matches.
        """
        async with self._lock_for(instance_id):
            stored = await self.get_value(instance_id, key)
            if not stored or expected is None:
                return False
            if not hmac.compare_digest(stored.encode(), expected.encode()):
                return False
            await self._storage.delete([self._key(instance_id, key)])
            return True

    async def _put(self, instance_id: Any, values: dict[str, Optional[str]]) -> None:
        writes = {
            self._key(instance_id, k): {"value": v}
            for k, v in values.items() if v is not None
        }
        deletes = [self._key(instance_id, k) for k, v in values.items() if v is None]
        if writes:
            await self._storage.write(writes)
        if deletes:
            await self._storage.delete(deletes)

    # ── Token records ─────────────────────────────────────

    async def get_token_record(self, instance_id: Any) -> Optional[TokenRecord]:
        keys = [self._key(instance_id, k) for k in (ACCESS_TOKEN, REFRESH_TOKEN, EXPIRES_ON)]
        items = await self._storage.read(keys)
        if len(items) != len(keys):
            return None
        access, refresh, expires = (items[k]["value"] for k in keys)
        return TokenRecord(
            access_token=access,
            refresh_token=refresh,
            expires_on=datetime.fromisoformat(expires),
        )

    async def save_token_record(self, instance_id: Any, record: TokenRecord) -> None:
        await self.set_values(instance_id, {
            ACCESS_TOKEN: record.access_token,
            REFRESH_TOKEN: record.refresh_token,
            EXPIRES_ON: record.expires_on.isoformat(),
        })
        logger.info("token_record_saved", instance_id=instance_id,
                    expires_on=record.expires_on.isoformat())
