"""
Activity Router — picks exactly one handler for every inbound activity.

Turn procedure:
  1. First turn of a conversation: send the loadInstance event to the
     client and persist the loaded/subjects bookkeeping right away.
  2. Dispatch by activity type:
       conversationUpdate → on_new_session of every package when the bot
                            itself joined, otherwise nothing
       message            → first matching rule of
                            script trigger → "/dialog" → "admin" →
                            menu JSON → continue active → /answer
       event              → fixed name → dialog table, else continue
  3. Persist conversation and user state.
  4. On failure: roll back the dispatch, apologize, begin /ask.
"""
from __future__ import annotations

import json
import structlog
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from botbuilder.core import TurnContext
from botbuilder.dialogs import DialogContext
from botbuilder.schema import Activity, ActivityTypes

from core.errors import TurnProcessingError
from core.runtime import RuntimeContext
from core.state import new_session
from core.strings import get_message

logger = structlog.get_logger()

DEFAULT_THEME = "default.gbtheme"
MENU_PREFIX = '{"title"'
ADMIN_COMMAND = "admin"
ANSWER_DIALOG = "/answer"
FALLBACK_DIALOG = "/ask"

# event name → (dialog id, args built from the event data)
EVENT_DIALOGS: dict[str, Callable[[Any], tuple[str, Any]]] = {
    "whoAmI": lambda data: ("/whoAmI", None),
    "showSubjects": lambda data: ("/menu", None),
    "giveFeedback": lambda data: ("/feedback", {"fromMenu": True}),
    "showFAQ": lambda data: ("/faq", None),
    "answerEvent": lambda data: ("/answerEvent", {"questionId": data, "fromFaq": True}),
    "quality": lambda data: ("/quality", {"score": data}),
    "updateToken": lambda data: ("/adminUpdateToken", {"token": data}),
}


def event_data(activity: Activity) -> Any:
    """Event payload: `value`, or the `data` field webchat clients send."""
    if activity.value is not None:
        return activity.value
    return (getattr(activity, "additional_properties", None) or {}).get("data")


class DispatchKind(str, Enum):
    SCRIPT = "script"
    BEGIN = "begin"
    CONTINUE = "continue"
    NEW_SESSION = "new_session"
    NOOP = "noop"
    RECOVERED = "recovered"


@dataclass
class Dispatch:
    """What the router did with one activity."""
    kind: DispatchKind
    target: Optional[str] = None
    args: Any = None


class ActivityRouter:

    def __init__(self, runtime: RuntimeContext, default_locale: str = "en-US"):
        self.runtime = runtime
        self.default_locale = default_locale

    @property
    def bot_id(self) -> str:
        return self.runtime.bot_id

    async def route(self, turn: TurnContext) -> Dispatch:
        activity = turn.activity
        if not activity.locale:
            activity.locale = self.default_locale
        conversation_id = activity.conversation.id if activity.conversation else None

        try:
            step = await self.runtime.dialogs.create_context(turn)
            await self._ensure_loaded(turn)

            logger.info("activity_received",
                        bot_id=self.bot_id,
                        conversation_id=conversation_id,
                        type=activity.type,
                        name=activity.name,
                        channel=activity.channel_id,
                        text=(activity.text or "")[:100])

            dispatch = await self._dispatch(turn, step)
            await self._save(turn)
            return dispatch
        except Exception as e:
            logger.error("turn_failed",
                         bot_id=self.bot_id,
                         conversation_id=conversation_id,
                         error=str(e),
                         exc_info=True)
            return await self._recover(turn, e)

    # ── Step 1: instance bootstrap for the client ─────────

    async def _ensure_loaded(self, turn: TurnContext) -> None:
        session = await self.runtime.session.get(turn, new_session)
        if session["loaded"]:
            return
        instance = self.runtime.instance
        await turn.send_activity(Activity(
            type=ActivityTypes.event,
            name="loadInstance",
            value={
                "instanceId": instance.instance_id,
                "botId": instance.bot_id,
                "theme": instance.theme or DEFAULT_THEME,
                "secret": instance.webchat_key,
            },
        ))
        session["loaded"] = True
        session["subjects"] = []
        session["pendingCallback"] = None
        await self.runtime.session.set(turn, session)
        await self.runtime.conversation_state.save_changes(turn)

    # ── Step 2: dispatch ──────────────────────────────────

    async def _dispatch(self, turn: TurnContext, step: DialogContext) -> Dispatch:
        activity_type = turn.activity.type
        if activity_type == ActivityTypes.conversation_update:
            return await self._on_conversation_update(turn, step)
        if activity_type == ActivityTypes.message:
            return await self._on_message(turn, step)
        if activity_type == ActivityTypes.event:
            return await self._on_event(turn, step)
        logger.info("activity_ignored", bot_id=self.bot_id, type=activity_type)
        return Dispatch(DispatchKind.NOOP)

    async def _on_conversation_update(self, turn: TurnContext, step: DialogContext) -> Dispatch:
        members = turn.activity.members_added or []
        if not members:
            return Dispatch(DispatchKind.NOOP)

        # An untitled instance has no name to recognize itself by.
        member = members[0]
        title = self.runtime.instance.title
        if not title or member.name != title:
            logger.info("member_added", bot_id=self.bot_id, member=member.name)
            return Dispatch(DispatchKind.NOOP)

        logger.info("bot_added_to_conversation", bot_id=self.bot_id,
                    conversation_id=turn.activity.conversation.id)
        for package in self.runtime.packages:
            if package.supports_new_session:
                await package.on_new_session(self.runtime, step)
        return Dispatch(DispatchKind.NEW_SESSION)

    async def _on_message(self, turn: TurnContext, step: DialogContext) -> Dispatch:
        text = turn.activity.text or ""

        sandbox = self.runtime.sandbox_for(turn.activity.text)
        if sandbox is not None:
            await sandbox.bind(turn, step).run()
            return Dispatch(DispatchKind.SCRIPT, sandbox.name)

        if text.startswith("/"):
            return await self._begin(step, text)

        if text == ADMIN_COMMAND:
            return await self._begin(step, "/admin")

        if text.startswith(MENU_PREFIX):
            return await self._begin(step, "/menu", json.loads(text))

        active = step.active_dialog
        if active is not None:
            await step.continue_dialog()
            return Dispatch(DispatchKind.CONTINUE, active.id)

        return await self._begin(step, ANSWER_DIALOG, {"query": text})

    async def _on_event(self, turn: TurnContext, step: DialogContext) -> Dispatch:
        route = EVENT_DIALOGS.get(turn.activity.name or "")
        if route is None:
            await step.continue_dialog()
            return Dispatch(DispatchKind.CONTINUE)
        dialog_id, args = route(event_data(turn.activity))
        return await self._begin(step, dialog_id, args)

    @staticmethod
    async def _begin(step: DialogContext, dialog_id: str, args: Any = None) -> Dispatch:
        await step.begin_dialog(dialog_id, args)
        return Dispatch(DispatchKind.BEGIN, dialog_id, args)

    # ── Step 3: persistence ───────────────────────────────

    async def _save(self, turn: TurnContext) -> None:
        await self.runtime.conversation_state.save_changes(turn)
        await self.runtime.user_state.save_changes(turn)

    # ── Step 4: recovery ──────────────────────────────────

    async def _recover(self, turn: TurnContext, error: Exception) -> Dispatch:
        """
        Discard what the failed dispatch changed by reloading the stored
        state (the step 1 bookkeeping is already there), apologize and
        restart at /ask.
        """
        args = {"isReturning": True}
        try:
            await self.runtime.conversation_state.load(turn, force=True)
            await self.runtime.user_state.load(turn, force=True)
            await turn.send_activity(get_message(turn.activity.locale, "very_sorry_about_error"))
            step = await self.runtime.dialogs.create_context(turn)
            await step.begin_dialog(FALLBACK_DIALOG, args)
            await self._save(turn)
        except Exception as e:
            logger.error("turn_recovery_failed",
                         bot_id=self.bot_id,
                         conversation_id=turn.activity.conversation.id,
                         error=str(e))
            raise TurnProcessingError(
                f"Turn failed ({error}) and fallback dialog failed ({e})", self.bot_id,
            ) from e
        return Dispatch(DispatchKind.RECOVERED, FALLBACK_DIALOG, args)
