"""
Live-Chat Bridge — hands a conversation to a human agent and back.

While a session sits in the dialog's live-chat state, normal routing is
suspended: every inbound event is relayed verbatim to the external agent
middleware, except exit requests which end the handoff.

    NORMAL ──(connect action)──► CONNECTING ──(always)──► LIVE_ACTIVE
    LIVE_ACTIVE ──(exit keyword / exit action)──► NORMAL
    LIVE_ACTIVE ──(close keyword)──► SESSION_CLOSED  (attributes cleared)
    LIVE_ACTIVE ──(anything else)──► LIVE_ACTIVE     (forwarded)

CONNECTING is transient: the start call's result only picks the message, the
session moves to LIVE_ACTIVE either way so the user can keep typing.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Iterable, Optional

import structlog

from backend.live_chat import LiveChatClient
from config.settings import DEFAULT_CLOSE_KEYWORDS, DEFAULT_EXIT_KEYWORDS, LiveChatConfig
from core.dialog import Dialog, TurnContext
from core.intents import KeywordMatcher
from models.schemas import (
    BridgeResult, DialogEvent, DialogResponse, EventKind, OutboundMessage, _utcnow,
)

logger = structlog.get_logger()


@dataclass
class BridgeMessages:
    connected: str = (
        "Please wait while we connect you with an agent. "
        "A team member will assist you shortly."
    )
    connect_failed: str = (
        "Connecting you with an agent... You are now in live chat mode. "
        "Type your message and a representative will reply."
    )
    ended: str = "Your live chat session has ended. Thank you for connecting with us!"
    closed: str = (
        "Thank you. Your session has ended. "
        "Please follow the bot again to start a new conversation."
    )
    delivery_failed: str = (
        "Sorry, we could not deliver your message to the agent. "
        "Type 'menu' to exit live chat."
    )
    # Shown after a return to the bot (usually the main menu)
    resume: list[OutboundMessage] = field(default_factory=list)


class LiveChatBridge:

    def __init__(
        self,
        client: LiveChatClient,
        active_state: str,
        normal_state: str,
        closed_state: Optional[str] = None,
        connect_action: str = "live_chat",
        exit_actions: Iterable[str] = ("end_live_chat",),
        exit_keywords: Iterable[str] = DEFAULT_EXIT_KEYWORDS,
        close_keywords: Iterable[str] = DEFAULT_CLOSE_KEYWORDS,
        messages: Optional[BridgeMessages] = None,
    ):
        self.client = client
        self.active_state = active_state
        self.normal_state = normal_state
        self.closed_state = closed_state or normal_state
        self.connect_action = connect_action
        self.exit_actions = frozenset(exit_actions)
        self.close_keywords = KeywordMatcher(close_keywords)
        # Close keywords always end the handoff, even if missing from the exit set
        self.exit_keywords = KeywordMatcher(list(exit_keywords) + self.close_keywords.keywords)
        self.messages = messages or BridgeMessages()

    @classmethod
    def for_dialog(
        cls, dialog: Dialog, client: LiveChatClient,
        config: Optional[LiveChatConfig] = None,
        messages: Optional[BridgeMessages] = None,
    ) -> "LiveChatBridge":
        if not dialog.live_chat_state:
            raise ValueError(f"Dialog '{dialog.name}' declares no live_chat_state")
        config = config or LiveChatConfig()
        return cls(
            client,
            active_state=dialog.live_chat_state,
            normal_state=dialog.start_state,
            closed_state=dialog.closed_state,
            connect_action=config.connect_action,
            exit_actions=config.exit_actions,
            exit_keywords=config.exit_keywords,
            close_keywords=config.close_keywords,
            messages=messages,
        )

    # ── Predicates ────────────────────────────────────────

    def is_active(self, state: Optional[str]) -> bool:
        return state == self.active_state

    def is_connect(self, event: DialogEvent) -> bool:
        return event.kind == EventKind.ACTION and event.action == self.connect_action

    # ── Transitions ───────────────────────────────────────

    async def connect(self, ctx: TurnContext, event: Optional[DialogEvent] = None) -> DialogResponse:
        """NORMAL → CONNECTING → LIVE_ACTIVE."""
        display_name = ctx.display_name or ctx.user_id
        initial = event.params.get("message", "") if event is not None else ""
        result = await self._guard("start", ctx, self.client.start(ctx.user_id, display_name, initial))

        if result.success:
            logger.info("live_chat_started", tenant_id=ctx.tenant_id, user_id=ctx.user_id)
            text = self.messages.connected
        else:
            logger.warning("live_chat_start_failed", tenant_id=ctx.tenant_id,
                           user_id=ctx.user_id, error=result.error)
            text = self.messages.connect_failed

        return self._go_live(text)

    async def relay(self, ctx: TurnContext, event: DialogEvent) -> DialogResponse:
        """Handle one inbound event while LIVE_ACTIVE."""
        if event.kind == EventKind.TEXT:
            keyword = self.exit_keywords.search(event.text)
            if keyword:
                await self.end(ctx)
                if self.close_keywords.matches(event.text):
                    logger.info("live_chat_closed", tenant_id=ctx.tenant_id,
                                user_id=ctx.user_id, keyword=keyword)
                    return DialogResponse.say(
                        self.messages.closed,
                        next_state=self.closed_state,
                        clear_attributes=True,
                    )
                logger.info("live_chat_exit", tenant_id=ctx.tenant_id,
                            user_id=ctx.user_id, keyword=keyword)
                return self._back_to_bot()

        if event.kind == EventKind.ACTION and event.action in self.exit_actions:
            await self.end(ctx)
            logger.info("live_chat_exit", tenant_id=ctx.tenant_id,
                        user_id=ctx.user_id, action=event.action)
            return self._back_to_bot()

        if event.kind == EventKind.LIFECYCLE:
            return DialogResponse()

        result = await self._guard("message", ctx, self.client.send(
            ctx.user_id, event.forward_payload(), display_name=ctx.display_name,
        ))
        if not result.success:
            logger.warning("live_chat_forward_failed", tenant_id=ctx.tenant_id,
                           user_id=ctx.user_id, error=result.error)
            return DialogResponse.say(self.messages.delivery_failed)

        logger.debug("live_chat_forwarded", tenant_id=ctx.tenant_id,
                     user_id=ctx.user_id, kind=event.kind.value)
        return DialogResponse()

    async def end(self, ctx: TurnContext) -> BridgeResult:
        """Tell the middleware the handoff is over. Failures are logged only."""
        result = await self._guard("end", ctx, self.client.end(ctx.user_id))
        if not result.success:
            logger.warning("live_chat_end_failed", tenant_id=ctx.tenant_id,
                           user_id=ctx.user_id, error=result.error)
        return result

    def timed_out(self, state: Optional[str]) -> DialogResponse:
        """Reply for a relay or connect whose middleware call never returned."""
        if self.is_active(state):
            return DialogResponse.say(self.messages.delivery_failed)
        return self._go_live(self.messages.connect_failed)

    def _go_live(self, text: str) -> DialogResponse:
        return DialogResponse.say(
            text,
            next_state=self.active_state,
            attributes={"live_chat_started_at": _utcnow().isoformat()},
        )

    def _back_to_bot(self) -> DialogResponse:
        return DialogResponse(
            messages=[OutboundMessage.text_message(self.messages.ended), *self.messages.resume],
            next_state=self.normal_state,
            attributes={"live_chat_started_at": None},
        )

    @staticmethod
    async def _guard(op: str, ctx: TurnContext, call: Awaitable[BridgeResult]) -> BridgeResult:
        try:
            return await call
        except Exception as e:
            logger.exception("live_chat_client_error", op=op, tenant_id=ctx.tenant_id,
                             user_id=ctx.user_id, error=str(e))
            return BridgeResult(success=False, error=str(e))
