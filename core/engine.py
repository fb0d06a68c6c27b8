"""
Dialog Engine — routes one inbound event to the single handler that governs it.

    (state, event, attributes) → DialogResponse

The engine never touches the session store; it works only with the values it
is given, which keeps it independently testable. The orchestrator applies the
returned transition and attribute patch.

Resolution order:
  1. lifecycle event with a lifecycle handler
  2. action event with a global action handler
  3. state handler (text in a classify_text state is first matched against the
     dialog's intent rules; a matched intent with an intent handler wins)
  4. fallback handler (unknown or unhandled state) → back to the start state

Failure policy: a handler that raises or exceeds the handler timeout produces
exactly one generic error message and a transition to the start state. The
conversation always recovers to a navigable state.
"""
from __future__ import annotations

import asyncio
import copy
import inspect
from typing import Any, Optional

import structlog

from core.dialog import Dialog, Handler, TurnContext
from models.schemas import DialogEvent, DialogResponse, EventKind

logger = structlog.get_logger()

DEFAULT_ERROR_MESSAGE = "An error occurred. Please try again."
DEFAULT_FALLBACK_MESSAGE = "Sorry, I lost track of our conversation. Let's start again from the main menu."


class DialogEngine:
    """Generic router over a Dialog's handler registry."""

    def __init__(
        self,
        dialog: Dialog,
        fallback_handler: Optional[Handler] = None,
        handler_timeout: Optional[float] = 20.0,
        error_message: str = DEFAULT_ERROR_MESSAGE,
        fallback_message: str = DEFAULT_FALLBACK_MESSAGE,
    ):
        self.dialog = dialog
        self.handler_timeout = handler_timeout
        self.error_message = error_message
        self.fallback_message = fallback_message
        self._fallback = fallback_handler or self._default_fallback

    @property
    def start_state(self) -> str:
        return self.dialog.start_state

    # ── Routing ───────────────────────────────────────────────

    async def route(
        self,
        state: str,
        event: DialogEvent,
        attributes: dict[str, Any],
        ctx: Optional[TurnContext] = None,
    ) -> DialogResponse:
        ctx = ctx or TurnContext(tenant_id="", user_id="", state=state)
        ctx.state = state
        handler, label = self.resolve(state, event, ctx)

        logger.debug("dialog_route",
                     dialog=self.dialog.name,
                     state=state,
                     kind=event.kind.value,
                     handler=label,
                     intent=ctx.intent)

        # Handlers get their own copy; they must not mutate session storage
        snapshot = copy.deepcopy(attributes or {})

        try:
            response = await self._invoke(handler, ctx, event, snapshot)
        except asyncio.TimeoutError:
            logger.error("dialog_handler_timeout",
                         dialog=self.dialog.name,
                         state=state,
                         handler=label,
                         timeout_s=self.handler_timeout)
            return self.error_response()
        except Exception as e:
            logger.exception("dialog_handler_failed",
                             dialog=self.dialog.name,
                             state=state,
                             handler=label,
                             error=str(e))
            return self.error_response()

        return self._validate(response, state, label)

    def resolve(self, state: str, event: DialogEvent, ctx: TurnContext) -> tuple[Handler, str]:
        """Pick the handler for this (state, event). Sets ctx.intent when text is classified."""
        ctx.intent = None
        if event.kind == EventKind.LIFECYCLE:
            h = self.dialog.get_lifecycle_handler(event.lifecycle)
            if h is not None:
                return h, f"lifecycle:{event.lifecycle.value}"

        if event.kind == EventKind.ACTION and event.action:
            h = self.dialog.get_action_handler(event.action)
            if h is not None:
                return h, f"action:{event.action}"

        entry = self.dialog.get_state_handler(state)
        if entry is None:
            if not self.dialog.has_state(state):
                logger.warning("dialog_unknown_state", dialog=self.dialog.name, state=state)
            return self._fallback, "fallback"

        if entry.classify_text and event.kind == EventKind.TEXT:
            ctx.intent = self.dialog.intents.classify(event.text)
            if ctx.intent:
                h = self.dialog.get_intent_handler(ctx.intent)
                if h is not None:
                    return h, f"intent:{ctx.intent}"

        return entry.handler, f"state:{state}"

    async def _invoke(
        self, handler: Handler, ctx: TurnContext, event: DialogEvent, attributes: dict[str, Any],
    ) -> Any:
        result = handler(ctx, event, attributes)
        if inspect.isawaitable(result):
            if self.handler_timeout:
                return await asyncio.wait_for(result, timeout=self.handler_timeout)
            return await result
        return result

    def _validate(self, response: Any, state: str, label: str) -> DialogResponse:
        if response is None:
            return DialogResponse()
        if not isinstance(response, DialogResponse):
            logger.error("dialog_handler_bad_return",
                         dialog=self.dialog.name,
                         handler=label,
                         returned=type(response).__name__)
            return self.error_response()

        if response.next_state is not None and not self.dialog.has_state(response.next_state):
            logger.warning("dialog_undeclared_next_state",
                           dialog=self.dialog.name,
                           state=state,
                           next_state=response.next_state)
            response = response.model_copy(update={"next_state": self.start_state})
        return response

    # ── Built-in responses ────────────────────────────────────

    def error_response(self) -> DialogResponse:
        return DialogResponse.say(self.error_message, next_state=self.start_state)

    def _default_fallback(self, ctx: TurnContext, event: DialogEvent,
                          attributes: dict[str, Any]) -> DialogResponse:
        return DialogResponse.say(self.fallback_message, next_state=self.start_state)
