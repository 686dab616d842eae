"""
Orchestrator — The host-level coordinator for every bot instance.

Architecture:
  Startup:  InstanceRegistry → RuntimeBuilder.build() per instance
            (concurrently) → one RuntimeContext + ActivityRouter each

  Inbound:  webhook → resolve bot → per-conversation lock
            → BotFrameworkAdapter.process_activity() (auth, TurnContext)
            → ActivityRouter.route() → replies through the adapter

  OAuth:    /auth → OAuthBroker.begin_authorization()
            /token → OAuthBroker.complete_authorization()

  Client:   /instances → descriptor with webchat (and speech) tokens

An instance whose packages fail to load stays offline; the others come
up regardless. Turns of one conversation run one at a time in receipt
order; everything else runs in parallel.
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Callable, Optional

from botbuilder.core import BotFrameworkAdapter, InvokeResponse, TurnContext
from botbuilder.schema import Activity

from auth.oauth import OAuthBroker
from backend.connector import DirectLineConnector, SpeechTokenConnector
from core.adapter import create_adapter
from core.errors import InstanceNotFound, PackageLoadError
from core.instances import InstanceRegistry
from core.locks import ConversationLocks
from core.router import DEFAULT_THEME, ActivityRouter
from core.runtime import RuntimeBuilder, RuntimeContext
from database.store_base import BaseStorage
from models.schemas import Instance, InstanceDescriptor, TokenRecord

logger = structlog.get_logger()


class Orchestrator:

    def __init__(
        self,
        registry: InstanceRegistry,
        builder: RuntimeBuilder,
        oauth: OAuthBroker,
        directline: DirectLineConnector,
        speech: SpeechTokenConnector,
        default_locale: str = "en-US",
        storage: BaseStorage = None,
        adapter_factory: Callable[[Instance], BotFrameworkAdapter] = create_adapter,
    ):
        self.registry = registry
        self.builder = builder
        self.oauth = oauth
        self.directline = directline
        self.speech = speech
        self.default_locale = default_locale
        self.storage = storage
        self.adapter_factory = adapter_factory
        self.locks = ConversationLocks()
        self._runtimes: dict[str, RuntimeContext] = {}
        self._routers: dict[str, ActivityRouter] = {}
        self._adapters: dict[str, BotFrameworkAdapter] = {}
        self.failed: dict[str, str] = {}

    # ══════════════════════════════════════════════════════════
    #  STARTUP
    # ══════════════════════════════════════════════════════════

    async def start(self) -> None:
        instances = self.registry.list_instances()
        await asyncio.gather(*(self._bring_online(i) for i in instances))
        logger.info("bot_host_started",
                    online=sorted(self._runtimes),
                    offline=sorted(self.failed))

    async def _bring_online(self, instance: Instance) -> None:
        if instance.bot_id in self._runtimes:
            return
        try:
            runtime = await self.builder.build(instance)
        except PackageLoadError as e:
            self.failed[instance.bot_id] = str(e)
            logger.error("instance_offline", bot_id=instance.bot_id, error=str(e))
            return
        self._runtimes[instance.bot_id] = runtime
        self._routers[instance.bot_id] = ActivityRouter(runtime, self.default_locale)
        self._adapters[instance.bot_id] = self.adapter_factory(instance)
        logger.info("instance_online", bot_id=instance.bot_id,
                    url=f"/api/messages/{instance.bot_id}")

    async def stop(self) -> None:
        await self.oauth.close()
        await self.directline.close()
        await self.speech.close()
        if self.storage is not None:
            await self.storage.close()
        logger.info("bot_host_stopped")

    @property
    def online(self) -> list[str]:
        return sorted(self._runtimes)

    def runtime_for(self, bot_id: Optional[str]) -> RuntimeContext:
        resolved = self.registry.resolve_bot_id(bot_id)
        runtime = self._runtimes.get(resolved)
        if runtime is None:
            logger.error("runtime_not_found", bot_id=resolved)
            raise InstanceNotFound(resolved)
        return runtime

    # ══════════════════════════════════════════════════════════
    #  INBOUND — one activity for one bot
    # ══════════════════════════════════════════════════════════

    async def process_activity(
        self, bot_id: str, activity: Activity, auth_header: str = "",
    ) -> Optional[InvokeResponse]:
        """
        Authenticate and route one activity. Returns the adapter's invoke
        response (expectReplies delivery, invoke activities) or None when
        replies went out through the channel.
        """
        runtime = self.runtime_for(bot_id)
        router = self._routers[runtime.bot_id]
        adapter = self._adapters[runtime.bot_id]
        conversation_id = activity.conversation.id if activity.conversation else None
        key = f"{runtime.bot_id}/{activity.channel_id}/{conversation_id}"

        async def on_turn(turn: TurnContext) -> None:
            await router.route(turn)

        async with self.locks.hold(key):
            return await adapter.process_activity(activity, auth_header, on_turn)

    # ══════════════════════════════════════════════════════════
    #  CLIENT — instance descriptor
    # ══════════════════════════════════════════════════════════

    async def instance_descriptor(self, bot_id: Optional[str]) -> InstanceDescriptor:
        instance = await self.registry.load_instance(bot_id)
        webchat = await self.directline.generate_token(instance)
        speech_token = (
            await self.speech.issue_token(instance) if instance.speech_key else None
        )
        return InstanceDescriptor(
            instance_id=instance.instance_id,
            bot_id=instance.bot_id,
            theme=instance.theme or DEFAULT_THEME,
            secret=instance.webchat_key,
            speech_token=speech_token,
            conversation_id=webchat.get("conversationId"),
            authenticator_tenant=instance.authenticator_tenant,
            authenticator_client_id=instance.authenticator_client_id,
        )

    # ══════════════════════════════════════════════════════════
    #  OAUTH
    # ══════════════════════════════════════════════════════════

    async def begin_authorization(self, bot_id: str) -> str:
        instance = await self.registry.load_instance(bot_id)
        return await self.oauth.begin_authorization(instance)

    async def complete_authorization(
        self, bot_id: str, state: Optional[str], code: Optional[str],
    ) -> tuple[Instance, TokenRecord]:
        instance = await self.registry.load_instance(bot_id)
        record = await self.oauth.complete_authorization(instance, state, code)
        return instance, record
