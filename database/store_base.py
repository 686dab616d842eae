"""
Abstract Storage — Interface for all key/value storage backends.

Implementations:
  - MemoryStorage (dict-based, single-process, no persistence)
  - FileStorage   (JSON file on disk, single-process, durable)
  - SqlStorage    (PostgreSQL / MySQL / SQLite via SQLAlchemy)

Every backend is a botbuilder `Storage`, so ConversationState and
UserState run on it directly; the token store sits on the same contract.
Bot state records hold framework objects (the dialog stack), so the
JSON-backed implementations flatten records with jsonpickle on the way
in and restore them on the way out.
"""
from __future__ import annotations

from abc import abstractmethod
from typing import Any

from botbuilder.core import Storage
from jsonpickle.pickler import Pickler
from jsonpickle.unpickler import Unpickler


def flatten(record: Any) -> Any:
    """Turn a stored record into plain JSON-compatible data."""
    return Pickler().flatten(record)


def restore(data: Any) -> Any:
    return Unpickler().restore(data)


class BaseStorage(Storage):
    """Interface that all storage backends must implement."""

    @abstractmethod
    async def read(self, keys: list[str]) -> dict[str, Any]:
        """Return the stored records for the keys that exist."""
        ...

    @abstractmethod
    async def write(self, changes: dict[str, Any]) -> None:
        """Store every record of the batch, all or nothing."""
        ...

    @abstractmethod
    async def delete(self, keys: list[str]) -> None:
        ...

    async def close(self) -> None:
        """Release connections held by the backend."""
        return None
