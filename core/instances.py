"""
Instance Registry — Immutable bot instance records by bot id.

Records come from configuration at startup and are never modified,
so lookups need no locking. The literal "[default]" marker (or an empty
id) resolves to the configured default bot id.
"""
from __future__ import annotations

import structlog
from typing import Any, Iterable, Optional

from config.settings import DEFAULT_BOT_MARKER
from core.errors import InstanceNotFound
from models.schemas import Instance

logger = structlog.get_logger()


class InstanceRegistry:

    def __init__(self, instances: Iterable[Instance] = (), default_bot_id: str = ""):
        self._instances: dict[str, Instance] = {}
        self.default_bot_id = default_bot_id
        instance_ids: set[int] = set()
        for instance in instances:
            if instance.bot_id in self._instances:
                raise ValueError(f"Duplicate bot id '{instance.bot_id}'")
            if instance.instance_id in instance_ids:
                raise ValueError(f"Duplicate instance id '{instance.instance_id}'")
            instance_ids.add(instance.instance_id)
            self._instances[instance.bot_id] = instance
        logger.info("instance_registry_loaded",
                    instances=list(self._instances),
                    default_bot_id=default_bot_id)

    @classmethod
    def from_config(cls, records: list[dict[str, Any]], default_bot_id: str = "") -> "InstanceRegistry":
        return cls((Instance.model_validate(r) for r in records), default_bot_id)

    def resolve_bot_id(self, bot_id: Optional[str]) -> str:
        if not bot_id or bot_id == DEFAULT_BOT_MARKER:
            return self.default_bot_id
        return bot_id

    async def load_instance(self, bot_id: Optional[str]) -> Instance:
        resolved = self.resolve_bot_id(bot_id)
        instance = self._instances.get(resolved)
        if instance is None:
            logger.error("instance_not_found", bot_id=resolved)
            raise InstanceNotFound(resolved)
        return instance

    def list_instances(self) -> list[Instance]:
        return list(self._instances.values())

    def __contains__(self, bot_id: str) -> bool:
        return bot_id in self._instances

    def __len__(self) -> int:
        return len(self._instances)
