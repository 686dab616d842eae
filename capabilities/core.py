"""
Core system package — the dialogs the host itself relies on.

  /ask     fallback entry point after a failed turn; asks for a question
           and hands the answer to /answer when that dialog exists
  /whoAmI  reports which bot the user is talking to
"""
from __future__ import annotations

import structlog
from typing import TYPE_CHECKING, Sequence

from botbuilder.core import MessageFactory
from botbuilder.dialogs import DialogTurnResult, WaterfallDialog, WaterfallStepContext
from botbuilder.dialogs.prompts import PromptOptions

from capabilities.base import CapabilityPackage
from core.strings import get_message

if TYPE_CHECKING:
    from core.runtime import RuntimeContext

logger = structlog.get_logger()


class CorePackage(CapabilityPackage):

    name = "core"

    async def load_bot(
        self,
        runtime: "RuntimeContext",
        system_packages: Sequence[CapabilityPackage] = (),
    ) -> None:
        instance = runtime.instance

        async def ask_for_question(step: WaterfallStepContext) -> DialogTurnResult:
            locale = step.context.activity.locale
            options = step.options if isinstance(step.options, dict) else {}
            if options.get("isReturning"):
                text = get_message(locale, "welcome_back")
            else:
                text = get_message(locale, "whats_your_question")
            return await step.prompt("textPrompt", PromptOptions(prompt=MessageFactory.text(text)))

        async def hand_over(step: WaterfallStepContext) -> DialogTurnResult:
            if runtime.has_dialog("/answer"):
                return await step.replace_dialog("/answer", {"query": step.result})
            return await step.end_dialog(step.result)

        async def who_am_i(step: WaterfallStepContext) -> DialogTurnResult:
            await step.context.send_activity(
                get_message(step.context.activity.locale, "who_am_i",
                            title=instance.title, bot_id=instance.bot_id)
            )
            return await step.end_dialog()

        runtime.add_dialog(WaterfallDialog("/ask", [ask_for_question, hand_over]))
        runtime.add_dialog(WaterfallDialog("/whoAmI", [who_am_i]))
        logger.debug("core_package_loaded", bot_id=instance.bot_id)


def create_package() -> CorePackage:
    return CorePackage()
