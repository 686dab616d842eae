"""Shared test fixtures for the bot host."""
import pytest
import pytest_asyncio
from typing import Any
from uuid import uuid4

from botbuilder.core import (
    BotFrameworkAdapter,
    BotFrameworkAdapterSettings,
    MessageFactory,
    TurnContext,
)
from botbuilder.core.adapters import TestAdapter
from botbuilder.dialogs.prompts import PromptOptions
from botbuilder.schema import (
    Activity,
    ChannelAccount,
    ConversationAccount,
    ResourceResponse,
)

from capabilities.base import CapabilityPackage, DialogDefinition
from capabilities.core import create_package as create_core_package
from core.runtime import RuntimeBuilder
from database.store_memory import MemoryStorage
from models.schemas import Instance


class RecordingPackage(CapabilityPackage):
    """
    App package that records every dialog it is asked to run.

    Dialogs: /answer /menu /admin /feedback /faq /answerEvent /quality
    /adminUpdateToken end immediately after recording their options;
    /survey prompts for a name and records the reply; /boom raises.
    """

    name = "recording"
    supports_dialogs = True
    supports_new_session = True

    RECORDED = [
        "/answer", "/menu", "/admin", "/feedback", "/faq",
        "/answerEvent", "/quality", "/adminUpdateToken",
    ]

    def __init__(self, log: list = None):
        self.calls: list[tuple[str, Any]] = []
        self.sessions: list[str] = []
        self.log = log if log is not None else []
        self.system_packages = None

    async def load_bot(self, runtime, system_packages=()):
        self.system_packages = tuple(system_packages)

        async def hello(sandbox):
            await sandbox.context.send_activity("hi from script")

        async def scripted(sandbox):
            await sandbox.context.send_activity("scripted slash")

        runtime.register_script("hello_handler", "hello script", hello)
        runtime.register_script("slash_handler", "/scripted", scripted)

    def _recorder(self, dialog_id):
        async def step(step_ctx):
            self.calls.append((dialog_id, step_ctx.options))
            return await step_ctx.end_dialog()
        return step

    def get_dialogs(self, runtime):
        async def ask_name(step_ctx):
            return await step_ctx.prompt(
                "textPrompt", PromptOptions(prompt=MessageFactory.text("What is your name?")),
            )

        async def record_name(step_ctx):
            self.calls.append(("/survey", step_ctx.result))
            return await step_ctx.end_dialog(step_ctx.result)

        async def boom(step_ctx):
            raise RuntimeError("dialog exploded")

        definitions = [DialogDefinition(d, [self._recorder(d)]) for d in self.RECORDED]
        definitions.append(DialogDefinition("/survey", [ask_name, record_name]))
        definitions.append(DialogDefinition("/boom", [boom]))
        return definitions

    async def on_new_session(self, runtime, step):
        self.sessions.append(step.context.activity.conversation.id)
        self.log.append(self.package_name)


class RecordingAdapter(BotFrameworkAdapter):
    """Bot Framework adapter that keeps outbound activities instead of posting them."""

    def __init__(self, app_id: str = "", app_password: str = ""):
        super().__init__(BotFrameworkAdapterSettings(app_id=app_id, app_password=app_password))
        self.sent: list[Activity] = []

    async def send_activities(self, context, activities):
        responses = []
        for activity in activities:
            self.sent.append(activity)
            responses.append(ResourceResponse(id=str(len(self.sent))))
        return responses


@pytest.fixture
def instance() -> Instance:
    return Instance(
        instance_id=1,
        bot_id="generalbot",
        title="GeneralBot",
        engine_name="guaribas",
        webchat_key="webchat-secret",
        authenticator_tenant="contoso.onmicrosoft.com",
        authenticator_client_id="client-123",
        authenticator_client_secret="client-secret",
        bot_endpoint="https://bots.example.com",
    )


@pytest.fixture
def storage() -> MemoryStorage:
    return MemoryStorage()


@pytest.fixture
def recording_package() -> RecordingPackage:
    return RecordingPackage()


@pytest.fixture
def builder(storage, recording_package) -> RuntimeBuilder:
    return RuntimeBuilder(
        storage,
        system_factories=[create_core_package],
        app_factories=[lambda: recording_package],
    )


@pytest_asyncio.fixture
async def runtime(builder, instance):
    return await builder.build(instance)


def make_activity(
    type: str = "message",
    text: str = None,
    name: str = None,
    value: Any = None,
    conversation_id: str = "conv-1",
    user_id: str = "user-1",
    channel_id: str = "webchat",
    locale: str = None,
    members_added: list[str] = None,
) -> Activity:
    return Activity(
        id=uuid4().hex,
        type=type,
        text=text,
        name=name,
        value=value,
        channel_id=channel_id,
        locale=locale,
        service_url="https://channel.example.com",
        conversation=ConversationAccount(id=conversation_id),
        from_property=ChannelAccount(id=user_id, name="Alice"),
        recipient=ChannelAccount(id="bot", name="GeneralBot"),
        members_added=[ChannelAccount(id=m, name=m) for m in members_added] if members_added else None,
    )


@pytest.fixture
def activity_factory():
    return make_activity


@pytest.fixture
def turn_factory():
    def _make(activity: Activity = None, **kwargs) -> TurnContext:
        return TurnContext(TestAdapter(), activity or make_activity(**kwargs))
    return _make


@pytest.fixture
def recording_adapter_factory():
    """Adapter factory for the orchestrator; adapters are kept by bot id."""
    adapters: dict[str, RecordingAdapter] = {}

    def _make(instance: Instance) -> RecordingAdapter:
        adapter = RecordingAdapter(instance.marketplace_id, instance.marketplace_password)
        adapters[instance.bot_id] = adapter
        return adapter

    _make.adapters = adapters
    return _make
