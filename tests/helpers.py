"""Plain helpers shared by the test modules (fixtures live in conftest.py)."""
from __future__ import annotations

from typing import Any, Optional

from core.dialog import Dialog
from core.intents import IntentMatcher, IntentRule
from models.schemas import (
    ChannelType, DialogEvent, DialogResponse, InboundEnvelope, LifecycleType, OutboundMessage,
)


def build_menu_dialog() -> Dialog:
    """
    MENU ─ask_name─► ASK_NAME ─text─► MENU (name stored)
    MENU text: "hello" → greet intent, "help" → help intent, else menu prompt
    """
    dialog = Dialog(
        name="menu_bot",
        states=["MENU", "ASK_NAME", "LIVE", "CLOSED", "ORPHAN"],
        start_state="MENU",
        live_chat_state="LIVE",
        closed_state="CLOSED",
        intents=IntentMatcher([
            IntentRule(intent="greet", keywords=["hello", "hi there"]),
            IntentRule(intent="help", keywords=["help"]),
        ]),
    )

    @dialog.state("MENU", classify_text=True)
    def menu(ctx, event, attributes):
        return DialogResponse.say("Choose: ask_name or bye")

    @dialog.intent("greet")
    def greet(ctx, event, attributes):
        name = attributes.get("name", "there")
        return DialogResponse.say(f"Hello {name}!")

    @dialog.action("ask_name")
    def ask_name(ctx, event, attributes):
        return DialogResponse.say("What is your name?", next_state="ASK_NAME")

    @dialog.state("ASK_NAME")
    async def got_name(ctx, event, attributes):
        return DialogResponse.say(
            f"Nice to meet you, {event.text}",
            next_state="MENU",
            attributes={"name": event.text},
        )

    @dialog.action("bye")
    def bye(ctx, event, attributes):
        return DialogResponse.say("Goodbye", end_session=True)

    @dialog.action("reset")
    def reset(ctx, event, attributes):
        return DialogResponse.say("Reset", next_state="MENU", clear_attributes=True)

    @dialog.lifecycle(LifecycleType.FOLLOW)
    def follow(ctx, event, attributes):
        return DialogResponse.say("Welcome!", next_state="MENU")

    @dialog.state("CLOSED")
    def closed(ctx, event, attributes):
        return DialogResponse.say("Session has ended.")

    return dialog


class RecordingAdapter:
    """Channel adapter stand-in that records every send."""

    channel_type = ChannelType.WEB

    def __init__(self, display_name: str = "Test User", fail: bool = False):
        self.sent: list[tuple[str, list[OutboundMessage], Optional[str]]] = []
        self.display_name = display_name
        self.fail = fail

    async def send(self, user_id: str, messages: list[OutboundMessage],
                   reply_token: Optional[str] = None) -> dict[str, Any]:
        if self.fail:
            raise RuntimeError("channel down")
        self.sent.append((user_id, list(messages), reply_token))
        return {"status": "sent", "messages": len(messages)}

    async def get_display_name(self, user_id: str) -> str:
        return self.display_name


def envelope(event: DialogEvent, user_id: str = "U1", tenant_id: str = "acme",
             **kwargs: Any) -> InboundEnvelope:
    return InboundEnvelope(tenant_id=tenant_id, user_id=user_id, event=event, **kwargs)


def texts(messages: list[OutboundMessage]) -> list[str]:
    return [m.text for m in messages]
