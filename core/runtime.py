"""
Runtime — The isolated execution context of one bot instance.

RuntimeBuilder assembles, per instance:
  1. conversation-state and user-state over the shared storage
     (keys are namespaced by bot id, so instances never see each other)
  2. a dialog set over the "dialogState" property, preloaded with the
     baseline prompts
  3. empty script and sandbox registries
  4. system packages, loaded in configured order
  5. app packages, loaded with the system packages at hand; their
     dialogs are registered as waterfalls

Packages reach instance-scoped values and the OAuth access token through
the runtime (get_value / set_value / get_access_token).

A package hook that fails aborts the build: the instance stays offline.
"""
from __future__ import annotations

import copy
import structlog
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional, Sequence

from botbuilder.core import StatePropertyAccessor, TurnContext
from botbuilder.dialogs import Dialog, DialogContext, DialogSet, WaterfallDialog
from botbuilder.dialogs.prompts import ConfirmPrompt, TextPrompt

from auth.oauth import OAuthBroker
from capabilities.base import CapabilityPackage, PackageFactory
from core.errors import PackageLoadError
from core.state import (
    DIALOG_STATE,
    SESSION,
    InstanceConversationState,
    InstanceUserState,
)
from database.store_base import BaseStorage
from database.token_store import TokenStore
from models.schemas import Instance

logger = structlog.get_logger()

ScriptHandler = Callable[["Sandbox"], Awaitable[None]]


# ──────────────────────────────────────────────────────────────
#  Script / sandbox registries
# ──────────────────────────────────────────────────────────────

class ScriptRegistry:
    """Bidirectional map: trigger text ↔ handler name."""

    def __init__(self):
        self._by_trigger: dict[str, str] = {}
        self._by_handler: dict[str, str] = {}

    def bind(self, handler_name: str, trigger: str) -> None:
        if trigger in self._by_trigger:
            raise ValueError(f"Trigger '{trigger}' is already bound to '{self._by_trigger[trigger]}'")
        if handler_name in self._by_handler:
            raise ValueError(f"Handler '{handler_name}' is already bound to '{self._by_handler[handler_name]}'")
        self._by_trigger[trigger] = handler_name
        self._by_handler[handler_name] = trigger

    def handler_for(self, trigger: Optional[str]) -> Optional[str]:
        if trigger is None:
            return None
        return self._by_trigger.get(trigger)

    def trigger_for(self, handler_name: str) -> Optional[str]:
        return self._by_handler.get(handler_name)

    def __contains__(self, trigger: str) -> bool:
        return trigger in self._by_trigger

    def __len__(self) -> int:
        return len(self._by_trigger)


class Sandbox:
    """
    A script handler plus the turn it runs in.

    The registered sandbox is never mutated while routing; bind() returns a
    copy carrying the current turn, so concurrent conversations cannot see
    each other's context.
    """

    def __init__(self, name: str, handler: ScriptHandler, runtime: "RuntimeContext"):
        self.name = name
        self.handler = handler
        self.runtime = runtime
        self.context: Optional[TurnContext] = None
        self.step: Optional[DialogContext] = None

    def bind(self, turn: TurnContext, step: DialogContext) -> "Sandbox":
        bound = copy.copy(self)
        bound.context = turn
        bound.step = step
        return bound

    async def run(self) -> None:
        if self.context is None:
            raise RuntimeError(f"Sandbox '{self.name}' has no turn attached")
        await self.handler(self)


# ──────────────────────────────────────────────────────────────
#  Runtime context
# ──────────────────────────────────────────────────────────────

@dataclass
class RuntimeContext:
    instance: Instance
    dialogs: DialogSet
    conversation_state: InstanceConversationState
    user_state: InstanceUserState
    dialog_state: StatePropertyAccessor
    session: StatePropertyAccessor
    tokens: TokenStore
    oauth: OAuthBroker
    scripts: ScriptRegistry = field(default_factory=ScriptRegistry)
    sandboxes: dict[str, Sandbox] = field(default_factory=dict)
    packages: list[CapabilityPackage] = field(default_factory=list)
    dialog_ids: set[str] = field(default_factory=set)

    @property
    def bot_id(self) -> str:
        return self.instance.bot_id

    # ── Dialogs ───────────────────────────────────────────

    def add_dialog(self, dialog: Dialog) -> Dialog:
        """Register a dialog; identifiers are unique per runtime."""
        if dialog.id in self.dialog_ids:
            raise ValueError(f"Dialog '{dialog.id}' is already registered")
        self.dialogs.add(dialog)
        self.dialog_ids.add(dialog.id)
        return dialog

    def has_dialog(self, dialog_id: str) -> bool:
        return dialog_id in self.dialog_ids

    # ── Scripts ───────────────────────────────────────────

    def register_script(self, handler_name: str, trigger: str, handler: ScriptHandler) -> Sandbox:
        """Bind `trigger` text to a handler invoked directly by the router."""
        self.scripts.bind(handler_name, trigger)
        sandbox = Sandbox(handler_name, handler, self)
        self.sandboxes[handler_name] = sandbox
        logger.info("script_registered", bot_id=self.bot_id,
                    handler=handler_name, trigger=trigger)
        return sandbox

    def sandbox_for(self, trigger: Optional[str]) -> Optional[Sandbox]:
        handler_name = self.scripts.handler_for(trigger)
        return self.sandboxes.get(handler_name) if handler_name else None

    # ── Instance values / OAuth ───────────────────────────

    async def get_value(self, key: str) -> Optional[str]:
        return await self.tokens.get_value(self.instance.instance_id, key)

    async def set_value(self, key: str, value: Optional[str]) -> None:
        await self.tokens.set_value(self.instance.instance_id, key, value)

    async def get_access_token(self) -> Optional[str]:
        """
        The stored OAuth access token, refreshed first when it has expired.
        None when the instance was never authorized.
        """
        record = await self.tokens.get_token_record(self.instance.instance_id)
        if record is None:
            return None
        if record.is_expired:
            logger.info("access_token_expired", bot_id=self.bot_id)
            record = await self.oauth.refresh_access_token(self.instance)
        return record.access_token


# ──────────────────────────────────────────────────────────────
#  Builder
# ──────────────────────────────────────────────────────────────

class RuntimeBuilder:

    def __init__(
        self,
        storage: BaseStorage,
        system_factories: Sequence[PackageFactory] = (),
        app_factories: Sequence[PackageFactory] = (),
        tokens: TokenStore = None,
        oauth: OAuthBroker = None,
    ):
        self.storage = storage
        self.system_factories = list(system_factories)
        self.app_factories = list(app_factories)
        self.tokens = tokens or TokenStore(storage)
        self.oauth = oauth or OAuthBroker(self.tokens)

    async def build(self, instance: Instance) -> RuntimeContext:
        conversation_state = InstanceConversationState(self.storage, instance.bot_id)
        user_state = InstanceUserState(self.storage, instance.bot_id)
        dialog_state = conversation_state.create_property(DIALOG_STATE)

        runtime = RuntimeContext(
            instance=instance,
            dialogs=DialogSet(dialog_state),
            conversation_state=conversation_state,
            user_state=user_state,
            dialog_state=dialog_state,
            session=conversation_state.create_property(SESSION),
            tokens=self.tokens,
            oauth=self.oauth,
        )
        runtime.add_dialog(TextPrompt("textPrompt"))
        runtime.add_dialog(ConfirmPrompt("confirmPrompt"))

        system_packages: list[CapabilityPackage] = []
        for factory in self.system_factories:
            package = factory()
            await self._load(package, runtime, ())
            system_packages.append(package)

        app_packages: list[CapabilityPackage] = []
        for factory in self.app_factories:
            package = factory()
            await self._load(package, runtime, tuple(system_packages))
            if package.supports_dialogs:
                self._register_dialogs(package, runtime)
            app_packages.append(package)

        runtime.packages = system_packages + app_packages
        logger.info("runtime_built",
                    bot_id=instance.bot_id,
                    packages=[p.package_name for p in runtime.packages],
                    dialogs=len(runtime.dialog_ids),
                    scripts=len(runtime.scripts))
        return runtime

    @staticmethod
    async def _load(package: CapabilityPackage, runtime: RuntimeContext,
                    system_packages: Sequence[CapabilityPackage]) -> None:
        try:
            await package.load_bot(runtime, system_packages)
        except Exception as e:
            logger.error("package_load_failed", bot_id=runtime.bot_id,
                         package=package.package_name, error=str(e))
            raise PackageLoadError(package.package_name, runtime.bot_id, e) from e

    @staticmethod
    def _register_dialogs(package: CapabilityPackage, runtime: RuntimeContext) -> None:
        try:
            for definition in package.get_dialogs(runtime):
                runtime.add_dialog(WaterfallDialog(definition.id, definition.steps))
        except Exception as e:
            logger.error("package_dialogs_failed", bot_id=runtime.bot_id,
                         package=package.package_name, error=str(e))
            raise PackageLoadError(package.package_name, runtime.bot_id, e) from e
