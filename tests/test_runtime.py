"""
Tests for RuntimeBuilder, RuntimeContext, ScriptRegistry and Sandbox.
"""
import asyncio
import pytest
from datetime import datetime, timedelta, timezone

import httpx
from botbuilder.dialogs.prompts import TextPrompt

from capabilities.base import CapabilityPackage, DialogDefinition, load_factories, load_factory
from capabilities.core import CorePackage
from core.errors import PackageLoadError
from auth.oauth import OAuthBroker
from core.router import ActivityRouter
from core.runtime import RuntimeBuilder, ScriptRegistry
from database.token_store import TokenStore
from models.schemas import TokenRecord


class _FailingPackage(CapabilityPackage):
    name = "broken"

    async def load_bot(self, runtime, system_packages=()):
        raise RuntimeError("missing knowledge base")


class _BadDialogsPackage(CapabilityPackage):
    name = "bad-dialogs"
    supports_dialogs = True

    async def load_bot(self, runtime, system_packages=()):
        pass

    def get_dialogs(self, runtime):
        return [DialogDefinition("textPrompt", [])]


# ──────────────────────────────────────────────────────────────
#  ScriptRegistry
# ──────────────────────────────────────────────────────────────

class TestScriptRegistry:
    def test_bidirectional_lookup(self):
        scripts = ScriptRegistry()
        scripts.bind("greet", "hello")
        assert scripts.handler_for("hello") == "greet"
        assert scripts.trigger_for("greet") == "hello"
        assert "hello" in scripts
        assert len(scripts) == 1

    def test_missing_lookups(self):
        scripts = ScriptRegistry()
        assert scripts.handler_for(None) is None
        assert scripts.handler_for("nothing") is None
        assert scripts.trigger_for("nothing") is None

    def test_duplicate_trigger_rejected(self):
        scripts = ScriptRegistry()
        scripts.bind("greet", "hello")
        with pytest.raises(ValueError):
            scripts.bind("other", "hello")

    def test_duplicate_handler_rejected(self):
        scripts = ScriptRegistry()
        scripts.bind("greet", "hello")
        with pytest.raises(ValueError):
            scripts.bind("greet", "hi")


# ──────────────────────────────────────────────────────────────
#  RuntimeBuilder
# ──────────────────────────────────────────────────────────────

class TestRuntimeBuilder:
    @pytest.mark.asyncio
    async def test_baseline_dialogs(self, runtime):
        for dialog_id in ("textPrompt", "confirmPrompt", "/ask", "/whoAmI", "/answer", "/survey"):
            assert runtime.has_dialog(dialog_id)
            assert await runtime.dialogs.find(dialog_id) is not None
        assert not runtime.has_dialog("/missing")

    @pytest.mark.asyncio
    async def test_package_order_and_system_handoff(self, runtime, recording_package):
        names = [p.package_name for p in runtime.packages]
        assert names == ["core", "recording"]
        assert len(recording_package.system_packages) == 1
        assert isinstance(recording_package.system_packages[0], CorePackage)

    @pytest.mark.asyncio
    async def test_scripts_registered(self, runtime):
        assert runtime.scripts.handler_for("hello script") == "hello_handler"
        assert runtime.sandbox_for("hello script").name == "hello_handler"
        assert runtime.sandbox_for("unbound") is None

    @pytest.mark.asyncio
    async def test_runtimes_isolated(self, storage, instance):
        other = instance.model_copy(update={"bot_id": "otherbot", "instance_id": 2})
        builder = RuntimeBuilder(storage, system_factories=[CorePackage])
        first = await builder.build(instance)
        second = await builder.build(other)
        first.register_script("only_here", "ping", _noop)
        assert first.sandbox_for("ping") is not None
        assert second.sandbox_for("ping") is None
        assert first.dialogs is not second.dialogs

    @pytest.mark.asyncio
    async def test_failing_package_aborts_build(self, storage, instance):
        builder = RuntimeBuilder(storage, system_factories=[CorePackage],
                                 app_factories=[_FailingPackage])
        with pytest.raises(PackageLoadError) as exc:
            await builder.build(instance)
        assert exc.value.package == "broken"
        assert exc.value.bot_id == "generalbot"
        assert "missing knowledge base" in str(exc.value)

    @pytest.mark.asyncio
    async def test_conflicting_dialog_aborts_build(self, storage, instance):
        builder = RuntimeBuilder(storage, app_factories=[_BadDialogsPackage])
        with pytest.raises(PackageLoadError):
            await builder.build(instance)

    @pytest.mark.asyncio
    async def test_add_dialog_rejects_duplicate(self, runtime):
        with pytest.raises(ValueError):
            runtime.add_dialog(TextPrompt("textPrompt"))
        assert runtime.has_dialog("textPrompt")

    @pytest.mark.asyncio
    async def test_dialogs_skipped_without_support(self, storage, instance):
        class Silent(_BadDialogsPackage):
            supports_dialogs = False

        runtime = await RuntimeBuilder(storage, app_factories=[Silent]).build(instance)
        assert runtime.packages[0].package_name == "bad-dialogs"


# ──────────────────────────────────────────────────────────────
#  Sandbox
# ──────────────────────────────────────────────────────────────

async def _noop(sandbox):
    return None


class TestSandbox:
    @pytest.mark.asyncio
    async def test_bind_copies(self, runtime, turn_factory):
        sandbox = runtime.sandbox_for("hello script")
        turn = turn_factory(text="hello script")
        bound = sandbox.bind(turn, None)
        assert bound is not sandbox
        assert bound.context is turn
        assert sandbox.context is None

    @pytest.mark.asyncio
    async def test_unbound_sandbox_refuses_to_run(self, runtime):
        with pytest.raises(RuntimeError):
            await runtime.sandbox_for("hello script").run()

    @pytest.mark.asyncio
    async def test_concurrent_turns_keep_their_context(self, runtime, turn_factory):
        seen = []

        async def slow(sandbox):
            await asyncio.sleep(0.01)
            seen.append(sandbox.context.activity.conversation.id)

        sandbox = runtime.register_script("slow", "slow", slow)
        turns = [turn_factory(text="slow", conversation_id=c) for c in ("a", "b")]
        await asyncio.gather(*(sandbox.bind(t, None).run() for t in turns))
        assert sorted(seen) == ["a", "b"]


# ──────────────────────────────────────────────────────────────
#  Factory references
# ──────────────────────────────────────────────────────────────

class TestFactoryReferences:
    def test_load_factory(self):
        factory = load_factory("capabilities.core:create_package")
        assert isinstance(factory(), CorePackage)

    def test_load_factories(self):
        assert len(load_factories(["capabilities.core:create_package"])) == 1

    @pytest.mark.parametrize("reference", ["capabilities.core", ":create_package", "capabilities.core:"])
    def test_malformed_reference(self, reference):
        with pytest.raises(ValueError):
            load_factory(reference)

    def test_not_callable(self):
        with pytest.raises(TypeError):
            load_factory("core.router:DEFAULT_THEME")

    def test_missing_attribute(self):
        with pytest.raises(AttributeError):
            load_factory("capabilities.core:nope")


# ──────────────────────────────────────────────────────────────
#  Instance values / OAuth token
# ──────────────────────────────────────────────────────────────

class _TokenReaderPackage(CapabilityPackage):
    """Registers a script that answers with the instance access token."""

    name = "token-reader"

    async def load_bot(self, runtime, system_packages=()):
        async def show_token(sandbox):
            token = await sandbox.runtime.get_access_token()
            await sandbox.context.send_activity(f"token: {token}")

        runtime.register_script("show_token", "show token", show_token)


def _record(access: str, expires_in: int) -> TokenRecord:
    return TokenRecord(
        access_token=access,
        refresh_token="refresh-1",
        expires_on=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
    )


class TestInstanceValues:
    @pytest.fixture
    def token_endpoint(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={
                "access_token": "access-2", "refresh_token": "refresh-2", "expires_in": 3600,
            })

        handler.calls = calls
        return handler

    @pytest.fixture
    def token_builder(self, storage, token_endpoint):
        tokens = TokenStore(storage)
        oauth = OAuthBroker(tokens, client=httpx.AsyncClient(
            transport=httpx.MockTransport(token_endpoint)))
        return RuntimeBuilder(storage, system_factories=[CorePackage],
                              app_factories=[_TokenReaderPackage], tokens=tokens, oauth=oauth)

    @pytest.mark.asyncio
    async def test_builder_shares_token_store(self, token_builder, instance):
        runtime = await token_builder.build(instance)
        assert runtime.tokens is token_builder.tokens
        assert runtime.oauth is token_builder.oauth

    @pytest.mark.asyncio
    async def test_values_scoped_to_instance(self, token_builder, instance):
        runtime = await token_builder.build(instance)
        await runtime.set_value("kbVersion", "7")
        assert await runtime.get_value("kbVersion") == "7"
        assert await token_builder.tokens.get_value(2, "kbVersion") is None

    @pytest.mark.asyncio
    async def test_no_token_before_authorization(self, token_builder, instance):
        runtime = await token_builder.build(instance)
        assert await runtime.get_access_token() is None

    @pytest.mark.asyncio
    async def test_package_reads_stored_token(self, token_builder, instance, turn_factory, token_endpoint):
        await token_builder.tokens.save_token_record(instance.instance_id, _record("access-1", 3600))
        runtime = await token_builder.build(instance)

        turn = turn_factory(text="show token")
        replies = []

        async def capture(context, activities, next_send):
            replies.extend(activities)
            return await next_send()

        turn.on_send_activities(capture)
        await ActivityRouter(runtime).route(turn)
        assert replies[-1].text == "token: access-1"
        assert token_endpoint.calls == []

    @pytest.mark.asyncio
    async def test_expired_token_refreshed(self, token_builder, instance, token_endpoint):
        await token_builder.tokens.save_token_record(instance.instance_id, _record("access-1", -60))
        runtime = await token_builder.build(instance)

        assert await runtime.get_access_token() == "access-2"
        assert len(token_endpoint.calls) == 1
        stored = await token_builder.tokens.get_token_record(instance.instance_id)
        assert stored.access_token == "access-2"
        assert stored.refresh_token == "refresh-2"
