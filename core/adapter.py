"""
Bot Framework adapter per instance.

Each instance answers on its own webhook with its own marketplace
credentials. An instance without a marketplace id runs with
authentication disabled (local webchat, emulator); one with an id
rejects activities whose Authorization header does not validate.
"""
from __future__ import annotations

from botbuilder.core import BotFrameworkAdapter, BotFrameworkAdapterSettings

from models.schemas import Instance


def create_adapter(instance: Instance) -> BotFrameworkAdapter:
    settings = BotFrameworkAdapterSettings(
        app_id=instance.marketplace_id or "",
        app_password=instance.marketplace_password or "",
    )
    return BotFrameworkAdapter(settings)
