"""
FileStorage — JSON file-backed storage with persistence across restarts.

Data layout:
  {data_dir}/
    {collection}.json     # {key: record}

Features:
  - Survives process restarts (unlike MemoryStorage)
  - No external dependencies (no database server, no Redis)
  - Flushes on every mutation through a temp file + rename
  - Single-process only (no concurrent write safety across processes)

Best for: small deployments, demos, edge devices, air-gapped environments.
"""
from __future__ import annotations

import json
import structlog
from pathlib import Path

from database.store_base import flatten, restore
from database.store_memory import MemoryStorage

logger = structlog.get_logger()


class FileStorage(MemoryStorage):
    """
    Extends MemoryStorage with JSON file persistence.

    On init: loads the collection from disk into memory.
    On every write/delete: flushes the whole collection to disk.
    """

    def __init__(self, data_dir: str = "./data", collection: str = "storage"):
        super().__init__()
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self._data_dir / f"{collection}.json"
        self._load()
        logger.info("file_storage_initialized", path=str(self._path))

    def _load(self):
        if not self._path.exists():
            return
        try:
            with open(self._path, "r") as f:
                data = json.load(f)
            if isinstance(data, dict):
                self._items = {key: restore(record) for key, record in data.items()}
            logger.debug("file_storage_loaded", records=len(self._items))
        except json.JSONDecodeError as e:
            logger.warning("file_storage_load_error", path=str(self._path), error=str(e))

    def _on_change(self) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump({key: flatten(record) for key, record in self._items.items()},
                      f, indent=2, default=str)
        tmp_path.replace(self._path)  # atomic on POSIX
