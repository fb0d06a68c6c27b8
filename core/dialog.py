"""
Dialog definition — the declarative state → handler registry for one bot.

Each bot supplies a Dialog: its declared states, start state, ordered intent
rules, and the handlers for states, global actions, intents and lifecycle
events. The generic DialogEngine (core/engine.py) does the routing; a bot never
reimplements the routing loop.

Usage:
    dialog = Dialog("fabbank", states=["MAIN_MENU", "CHECK_BALANCE"], start_state="MAIN_MENU")

    @dialog.state("MAIN_MENU", classify_text=True)
    async def main_menu(ctx, event, attributes):
        return DialogResponse.say("Please select an option")

    @dialog.action("check_balance")
    async def start_balance(ctx, event, attributes):
        return DialogResponse.say("Enter your phone number", next_state="CHECK_BALANCE")
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Optional, Union

import structlog

from core.errors import DialogConfigError, DuplicateRegistrationError
from core.intents import IntentMatcher, IntentRule
from models.schemas import ChannelType, DialogEvent, DialogResponse, LifecycleType

logger = structlog.get_logger()


@dataclass
class TurnContext:
    """Per-turn values a handler may need besides the event and attributes."""
    tenant_id: str
    user_id: str
    state: str
    channel: ChannelType = ChannelType.WEB
    display_name: str = ""
    intent: Optional[str] = None


HandlerResult = Union[DialogResponse, Awaitable[DialogResponse]]
Handler = Callable[[TurnContext, DialogEvent, dict[str, Any]], HandlerResult]


@dataclass
class StateHandler:
    handler: Handler
    classify_text: bool = False


@dataclass
class Dialog:
    name: str
    states: Iterable[str]
    start_state: str
    live_chat_state: Optional[str] = None
    closed_state: Optional[str] = None
    intents: IntentMatcher = field(default_factory=IntentMatcher)

    def __post_init__(self):
        self.states = list(dict.fromkeys(self.states))
        self._state_set = set(self.states)
        self._handlers: dict[str, StateHandler] = {}
        self._actions: dict[str, Handler] = {}
        self._intent_handlers: dict[str, Handler] = {}
        self._lifecycle: dict[LifecycleType, Handler] = {}

        errors = []
        if self.start_state not in self._state_set:
            errors.append(f"start_state '{self.start_state}' not in states")
        for label, st in (("live_chat_state", self.live_chat_state),
                          ("closed_state", self.closed_state)):
            if st and st not in self._state_set:
                errors.append(f"{label} '{st}' not in states")
        if errors:
            raise DialogConfigError(f"Invalid dialog '{self.name}': {'; '.join(errors)}")

    # ── Registration ──────────────────────────────────────────

    def state(self, name: str, classify_text: bool = False) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.register_state(name, fn, classify_text=classify_text)
            return fn
        return decorator

    def action(self, name: str) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.register_action(name, fn)
            return fn
        return decorator

    def intent(self, name: str) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.register_intent(name, fn)
            return fn
        return decorator

    def lifecycle(self, kind: LifecycleType) -> Callable[[Handler], Handler]:
        def decorator(fn: Handler) -> Handler:
            self.register_lifecycle(kind, fn)
            return fn
        return decorator

    def register_state(self, name: str, handler: Handler, classify_text: bool = False) -> None:
        if name not in self._state_set:
            raise DialogConfigError(f"Dialog '{self.name}' has no state '{name}'")
        if name in self._handlers:
            raise DuplicateRegistrationError("state handler", name)
        self._handlers[name] = StateHandler(handler=handler, classify_text=classify_text)

    def register_action(self, name: str, handler: Handler) -> None:
        if name in self._actions:
            raise DuplicateRegistrationError("action handler", name)
        self._actions[name] = handler

    def register_intent(self, name: str, handler: Handler) -> None:
        if name in self._intent_handlers:
            raise DuplicateRegistrationError("intent handler", name)
        self._intent_handlers[name] = handler

    def register_lifecycle(self, kind: LifecycleType, handler: Handler) -> None:
        if kind in self._lifecycle:
            raise DuplicateRegistrationError("lifecycle handler", kind.value)
        self._lifecycle[kind] = handler

    def add_intent_rules(self, rules: Iterable[IntentRule]) -> None:
        for rule in rules:
            self.intents.add_rule(rule)

    # ── Lookup ────────────────────────────────────────────────

    def has_state(self, name: Optional[str]) -> bool:
        return name in self._state_set

    def get_state_handler(self, name: str) -> Optional[StateHandler]:
        return self._handlers.get(name)

    def get_action_handler(self, name: str) -> Optional[Handler]:
        return self._actions.get(name)

    def get_intent_handler(self, name: str) -> Optional[Handler]:
        return self._intent_handlers.get(name)

    def get_lifecycle_handler(self, kind: Optional[LifecycleType]) -> Optional[Handler]:
        if kind is None:
            return None
        return self._lifecycle.get(kind)

    def unhandled_states(self) -> list[str]:
        """Declared states without a handler (they route to the fallback)."""
        return [s for s in self.states if s not in self._handlers]

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "start_state": self.start_state,
            "states": list(self.states),
            "actions": sorted(self._actions),
            "intents": self.intents.intents,
            "lifecycle": sorted(k.value for k in self._lifecycle),
            "unhandled_states": self.unhandled_states(),
        }
