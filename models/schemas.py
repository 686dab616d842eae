"""
Core data models for the bot host.
These are the universal types shared across all modules.

Conversational activities are botbuilder.schema types; only the host's
own records live here.
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ──────────────────────────────────────────────────────────────
#  Instance — one configured bot deployment
# ──────────────────────────────────────────────────────────────

class Instance(BaseModel):
    """Immutable configuration record of a deployed bot."""
    model_config = ConfigDict(frozen=True)

    instance_id: int
    bot_id: str
    title: str = ""
    engine_name: str = ""
    webchat_key: str = ""
    marketplace_id: str = ""                      # Bot Service app id
    marketplace_password: str = ""
    authenticator_authority_host_url: str = "https://login.microsoftonline.com"
    authenticator_tenant: str = ""
    authenticator_client_id: str = ""
    authenticator_client_secret: str = ""
    bot_endpoint: str = ""                        # public base URL of this host
    speech_key: Optional[str] = None
    theme: Optional[str] = None


class InstanceDescriptor(BaseModel):
    """What a web client receives from GET /instances/{botId}."""
    model_config = ConfigDict(populate_by_name=True)

    instance_id: int = Field(alias="instanceId")
    bot_id: str = Field(alias="botId")
    theme: str
    secret: str
    speech_token: Optional[str] = Field(None, alias="speechToken")
    conversation_id: Optional[str] = Field(None, alias="conversationId")
    authenticator_tenant: str = Field("", alias="authenticatorTenant")
    authenticator_client_id: str = Field("", alias="authenticatorClientId")


# ──────────────────────────────────────────────────────────────
#  OAuth
# ──────────────────────────────────────────────────────────────

class TokenRecord(BaseModel):
    access_token: str
    refresh_token: str
    expires_on: datetime

    @property
    def is_expired(self) -> bool:
        return datetime.now(timezone.utc) >= self.expires_on
