"""
Per-conversation turn serialization.

Conversation and user state follow a read-at-start / write-at-end
pattern with no atomicity of its own, so two turns of the same
conversation must never overlap. Each conversation key gets a FIFO
asyncio.Lock (turns run in receipt order); the lock is dropped once no
turn holds or awaits it. Different keys never block each other.
"""
from __future__ import annotations

import asyncio
import structlog
from contextlib import asynccontextmanager
from typing import AsyncIterator

logger = structlog.get_logger()


class ConversationLocks:

    def __init__(self):
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def pending(self, key: str) -> int:
        """Turns holding or waiting for `key`."""
        return self._users.get(key, 0)

    def __len__(self) -> int:
        return len(self._locks)
