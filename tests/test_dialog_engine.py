"""
Tests for the dialog definition, the generic engine and the bot registry.
"""
import asyncio

import pytest

from core.dialog import Dialog, TurnContext
from core.engine import DEFAULT_ERROR_MESSAGE, DialogEngine
from core.errors import DialogConfigError, DuplicateRegistrationError, UnknownTenantError
from core.registry import BotRegistry, BotRuntime
from models.schemas import DialogEvent, DialogResponse, LifecycleType


# ──────────────────────────────────────────────────────────────
#  Dialog definition
# ──────────────────────────────────────────────────────────────

class TestDialogDefinition:
    def test_start_state_must_be_declared(self):
        with pytest.raises(DialogConfigError):
            Dialog(name="bad", states=["A"], start_state="B")

    def test_live_chat_state_must_be_declared(self):
        with pytest.raises(ValueError):
            Dialog(name="bad", states=["A"], start_state="A", live_chat_state="LIVE")

    def test_duplicate_state_handler_raises(self, menu_dialog):
        with pytest.raises(DuplicateRegistrationError):
            menu_dialog.register_state("MENU", lambda c, e, a: None)

    def test_duplicate_action_handler_is_a_value_error(self, menu_dialog):
        with pytest.raises(ValueError):
            menu_dialog.register_action("ask_name", lambda c, e, a: None)

    def test_duplicate_lifecycle_handler_raises(self, menu_dialog):
        with pytest.raises(DuplicateRegistrationError):
            menu_dialog.register_lifecycle(LifecycleType.FOLLOW, lambda c, e, a: None)

    def test_handler_for_undeclared_state_raises(self, menu_dialog):
        with pytest.raises(ValueError):
            menu_dialog.register_state("NOWHERE", lambda c, e, a: None)

    def test_describe_lists_unhandled_states(self, menu_dialog):
        info = menu_dialog.describe()
        assert info["start_state"] == "MENU"
        assert "ORPHAN" in info["unhandled_states"]
        assert "LIVE" in info["unhandled_states"]
        assert "ask_name" in info["actions"]
        assert info["intents"] == ["greet", "help"]


# ──────────────────────────────────────────────────────────────
#  Routing
# ──────────────────────────────────────────────────────────────

class TestDialogEngineRouting:
    @pytest.mark.asyncio
    async def test_state_handler(self, engine):
        resp = await engine.route("ASK_NAME", DialogEvent.text_event("Asha"), {})
        assert resp.messages[0].text == "Nice to meet you, Asha"
        assert resp.next_state == "MENU"
        assert resp.attributes == {"name": "Asha"}

    @pytest.mark.asyncio
    async def test_global_action_beats_state_handler(self, engine):
        resp = await engine.route("ASK_NAME", DialogEvent.action_event("ask_name"), {})
        assert resp.next_state == "ASK_NAME"
        assert resp.messages[0].text == "What is your name?"

    @pytest.mark.asyncio
    async def test_unknown_action_falls_to_state_handler(self, engine):
        resp = await engine.route("MENU", DialogEvent.action_event("nope"), {})
        assert resp.messages[0].text == "Choose: ask_name or bye"

    @pytest.mark.asyncio
    async def test_lifecycle_handler(self, engine):
        resp = await engine.route("ASK_NAME", DialogEvent.lifecycle_event(LifecycleType.FOLLOW), {})
        assert resp.messages[0].text == "Welcome!"
        assert resp.next_state == "MENU"

    @pytest.mark.asyncio
    async def test_intent_in_classifying_state(self, engine):
        ctx = TurnContext(tenant_id="acme", user_id="U1", state="MENU")
        resp = await engine.route("MENU", DialogEvent.text_event("HELLO!!"), {"name": "Ravi"}, ctx)
        assert resp.messages[0].text == "Hello Ravi!"
        assert ctx.intent == "greet"

    @pytest.mark.asyncio
    async def test_intent_without_handler_uses_state_handler(self, engine):
        ctx = TurnContext(tenant_id="acme", user_id="U1", state="MENU")
        resp = await engine.route("MENU", DialogEvent.text_event("help me"), {}, ctx)
        assert ctx.intent == "help"
        assert resp.messages[0].text == "Choose: ask_name or bye"

    @pytest.mark.asyncio
    async def test_unmatched_text_redisplays_menu(self, engine):
        resp = await engine.route("MENU", DialogEvent.text_event("weather?"), {})
        assert resp.messages[0].text == "Choose: ask_name or bye"
        assert resp.next_state is None

    @pytest.mark.asyncio
    async def test_no_classification_outside_classifying_state(self, engine):
        resp = await engine.route("ASK_NAME", DialogEvent.text_event("hello"), {})
        assert resp.attributes == {"name": "hello"}

    @pytest.mark.asyncio
    async def test_unknown_state_goes_to_fallback(self, engine):
        resp = await engine.route("DELETED_STATE", DialogEvent.text_event("hi"), {})
        assert resp.next_state == "MENU"
        assert len(resp.messages) == 1

    @pytest.mark.asyncio
    async def test_declared_state_without_handler_goes_to_fallback(self, engine):
        resp = await engine.route("ORPHAN", DialogEvent.text_event("hi"), {})
        assert resp.next_state == "MENU"

    @pytest.mark.asyncio
    async def test_custom_fallback(self, menu_dialog):
        engine = DialogEngine(menu_dialog,
                              fallback_handler=lambda c, e, a: DialogResponse.say("lost", next_state="MENU"))
        resp = await engine.route("ORPHAN", DialogEvent.text_event("x"), {})
        assert resp.messages[0].text == "lost"

    @pytest.mark.asyncio
    async def test_handler_gets_a_copy_of_attributes(self, menu_dialog):
        @menu_dialog.action("mutate")
        def mutate(ctx, event, attributes):
            attributes["nested"]["x"] = 2
            return DialogResponse()

        engine = DialogEngine(menu_dialog)
        stored = {"nested": {"x": 1}}
        await engine.route("MENU", DialogEvent.action_event("mutate"), stored)
        assert stored == {"nested": {"x": 1}}


# ──────────────────────────────────────────────────────────────
#  Failure policy
# ──────────────────────────────────────────────────────────────

class TestDialogEngineFailures:
    @pytest.mark.asyncio
    async def test_raising_handler_gives_one_error_message(self, menu_dialog):
        @menu_dialog.action("explode")
        async def explode(ctx, event, attributes):
            raise RuntimeError("backend exploded")

        engine = DialogEngine(menu_dialog)
        resp = await engine.route("ASK_NAME", DialogEvent.action_event("explode"), {"a": 1})
        assert [m.text for m in resp.messages] == [DEFAULT_ERROR_MESSAGE]
        assert resp.next_state == "MENU"
        assert resp.attributes is None
        assert resp.clear_attributes is False

    @pytest.mark.asyncio
    async def test_sync_raising_handler(self, menu_dialog):
        @menu_dialog.action("explode")
        def explode(ctx, event, attributes):
            raise KeyError("missing")

        resp = await DialogEngine(menu_dialog).route("MENU", DialogEvent.action_event("explode"), {})
        assert resp.messages[0].text == DEFAULT_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_slow_handler_times_out(self, menu_dialog):
        @menu_dialog.action("slow")
        async def slow(ctx, event, attributes):
            await asyncio.sleep(5)
            return DialogResponse.say("too late")

        engine = DialogEngine(menu_dialog, handler_timeout=0.05)
        resp = await engine.route("MENU", DialogEvent.action_event("slow"), {})
        assert [m.text for m in resp.messages] == [DEFAULT_ERROR_MESSAGE]
        assert resp.next_state == "MENU"

    @pytest.mark.asyncio
    async def test_undeclared_next_state_replaced_by_start(self, menu_dialog):
        @menu_dialog.action("wander")
        def wander(ctx, event, attributes):
            return DialogResponse.say("off we go", next_state="NOT_A_STATE")

        resp = await DialogEngine(menu_dialog).route("ASK_NAME", DialogEvent.action_event("wander"), {})
        assert resp.next_state == "MENU"
        assert resp.messages[0].text == "off we go"

    @pytest.mark.asyncio
    async def test_bad_return_type(self, menu_dialog):
        @menu_dialog.action("odd")
        def odd(ctx, event, attributes):
            return "not a response"

        resp = await DialogEngine(menu_dialog).route("MENU", DialogEvent.action_event("odd"), {})
        assert resp.messages[0].text == DEFAULT_ERROR_MESSAGE

    @pytest.mark.asyncio
    async def test_none_return_is_empty_response(self, menu_dialog):
        @menu_dialog.action("quiet")
        def quiet(ctx, event, attributes):
            return None

        resp = await DialogEngine(menu_dialog).route("MENU", DialogEvent.action_event("quiet"), {})
        assert resp.messages == []
        assert resp.next_state is None


# ──────────────────────────────────────────────────────────────
#  Registry
# ──────────────────────────────────────────────────────────────

class TestBotRegistry:
    def test_register_and_get(self, engine):
        registry = BotRegistry()
        runtime = BotRuntime(tenant_id="acme", engine=engine)
        registry.register(runtime)
        assert registry.get("acme") is runtime
        assert "acme" in registry
        assert registry.ids() == ["acme"]

    def test_duplicate_tenant_raises(self, engine):
        registry = BotRegistry()
        registry.register(BotRuntime(tenant_id="acme", engine=engine))
        with pytest.raises(DuplicateRegistrationError):
            registry.register(BotRuntime(tenant_id="acme", engine=engine))

    def test_unknown_tenant_raises(self):
        with pytest.raises(UnknownTenantError):
            BotRegistry().get("ghost")

    def test_unregister(self, engine):
        registry = BotRegistry()
        registry.register(BotRuntime(tenant_id="acme", engine=engine))
        assert registry.unregister("acme") is not None
        assert len(registry) == 0
        assert registry.unregister("acme") is None

    def test_describe(self, engine):
        info = BotRuntime(tenant_id="acme", engine=engine, session_timeout_ms=900_000).describe()
        assert info["session_timeout_ms"] == 900_000
        assert info["live_chat"] is False
        assert info["dialog"]["name"] == "menu_bot"
