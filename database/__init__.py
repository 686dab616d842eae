"""
Database layer — Multi-backend key/value persistence.

Backends:
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)
  - In-memory (dict-based, for development/testing)
  - File (JSON file on disk, for small deployments)

Quick start:
  from database import create_storage, TokenStore
  storage = create_storage({"store_backend": "memory"})
  tokens = TokenStore(storage)
  await tokens.set_value(1, "accessToken", "...")
"""
from database.models import Base, StorageItemRow
from database.session import create_engine_for, create_session_factory, init_db, close_db
from database.store_base import BaseStorage
from database.store import SqlStorage
from database.store_memory import MemoryStorage
from database.store_file import FileStorage
from database.store_factory import create_storage
from database.token_store import TokenStore

__all__ = [
    # ORM models
    "Base", "StorageItemRow",
    # Engine management
    "create_engine_for", "create_session_factory", "init_db", "close_db",
    # Storage interface
    "BaseStorage",
    # Storage backends
    "SqlStorage", "MemoryStorage", "FileStorage",
    # Factory
    "create_storage",
    # Per-instance values
    "TokenStore",
]
