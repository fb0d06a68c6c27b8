"""
Session Orchestrator — the per-turn coordinator.

Inbound:  adapter → InboundEnvelope
          → load or create session (per-key lock held for the whole turn)
          → live-chat bridge (relay / connect) or dialog engine
          → persist transition + attribute patch
          → adapter renders and sends

Turns for the same (tenant_id, user_id) run strictly one after another;
different users run concurrently on the same event loop.
"""
from __future__ import annotations

import asyncio
from typing import Any, Optional

import structlog

from core.dialog import TurnContext
from core.registry import BotRegistry, BotRuntime
from database.store_base import BaseSessionStore
from models.schemas import (
    DialogEvent, DialogResponse, EventKind, InboundEnvelope, LifecycleType, OutboundMessage,
    Session, TurnResult, session_key,
)
from utils.locks import KeyedLock

logger = structlog.get_logger()


class SessionOrchestrator:
    """
    Generic turn loop. Dialog logic lives in the bot scripts, not here.

    This class:
    1. Resolves the tenant runtime and serializes turns per user
    2. Owns the session lifecycle (create, refresh, update, delete)
    3. Chooses between the live-chat bridge and the dialog engine
    4. Delivers outbound messages through the tenant's channel adapter
    """

    def __init__(self, registry: BotRegistry, store: BaseSessionStore,
                 locks: Optional[KeyedLock] = None):
        self.registry = registry
        self.store = store
        self.locks = locks or KeyedLock()

    # ══════════════════════════════════════════════════════════
    #  INBOUND: one event from one user
    # ══════════════════════════════════════════════════════════

    async def handle_event(self, envelope: InboundEnvelope) -> TurnResult:
        runtime = self.registry.get(envelope.tenant_id)
        key = session_key(envelope.tenant_id, envelope.user_id)

        async with self.locks.hold(key):
            if envelope.event.is_unfollow:
                return await self._handle_unfollow(runtime, envelope)

            session, created = await self._load_or_create(runtime, envelope)
            if created and self._greets_new_sessions(runtime, envelope):
                envelope = envelope.model_copy(
                    update={"event": DialogEvent.lifecycle_event(LifecycleType.START)})
            ctx = TurnContext(
                tenant_id=envelope.tenant_id,
                user_id=envelope.user_id,
                state=session.dialog_state,
                channel=envelope.channel,
                display_name=envelope.display_name_hint or "",
            )
            response = await self._route(runtime, session, envelope, ctx)
            result = await self._persist(runtime, session, response)

        await self._deliver(runtime, envelope, result.messages)
        return result

    async def _handle_unfollow(self, runtime: BotRuntime, envelope: InboundEnvelope) -> TurnResult:
        session = await self.store.get(envelope.tenant_id, envelope.user_id)
        previous = session.dialog_state if session else None
        if session and runtime.bridge and runtime.bridge.is_active(previous):
            await runtime.bridge.end(TurnContext(
                tenant_id=envelope.tenant_id, user_id=envelope.user_id, state=previous,
            ))
        deleted = await self.store.delete(envelope.tenant_id, envelope.user_id)
        logger.info("session_unfollowed", tenant_id=envelope.tenant_id,
                    user_id=envelope.user_id, deleted=deleted, previous_state=previous)
        return TurnResult(
            tenant_id=envelope.tenant_id,
            user_id=envelope.user_id,
            previous_state=previous,
            session_ended=True,
        )

    async def _load_or_create(self, runtime: BotRuntime,
                              envelope: InboundEnvelope) -> tuple[Session, bool]:
        session = await self.store.get(envelope.tenant_id, envelope.user_id)
        if session is not None:
            return session, False
        session = await self.store.create(
            envelope.tenant_id, envelope.user_id,
            dialog_state=runtime.engine.start_state,
            expiry_ms=runtime.session_timeout_ms,
        )
        logger.info("session_started", tenant_id=envelope.tenant_id,
                    user_id=envelope.user_id, state=session.dialog_state)
        return session, True

    @staticmethod
    def _greets_new_sessions(runtime: BotRuntime, envelope: InboundEnvelope) -> bool:
        """A brand-new session opened by plain text starts with the dialog's greeting."""
        return (envelope.event.kind == EventKind.TEXT
                and runtime.engine.dialog.get_lifecycle_handler(LifecycleType.START) is not None)

    async def _route(self, runtime: BotRuntime, session: Session,
                     envelope: InboundEnvelope, ctx: TurnContext) -> DialogResponse:
        event = envelope.event
        bridge = runtime.bridge

        if bridge is not None and (bridge.is_active(session.dialog_state) or bridge.is_connect(event)):
            # Held under the turn lock, so bounded like a dialog handler
            timeout = runtime.engine.handler_timeout or None
            if not ctx.display_name:
                ctx.display_name = (session.attributes.get("display_name")
                                    or await self._display_name(runtime, envelope, timeout))
            try:
                if bridge.is_active(session.dialog_state):
                    return await asyncio.wait_for(bridge.relay(ctx, event), timeout)
                response = await asyncio.wait_for(bridge.connect(ctx, event), timeout)
            except asyncio.TimeoutError:
                logger.error("live_chat_timeout", tenant_id=ctx.tenant_id, user_id=ctx.user_id,
                             state=session.dialog_state, timeout_s=timeout)
                response = bridge.timed_out(session.dialog_state)
                if bridge.is_active(session.dialog_state):
                    return response
            response.attributes = {**(response.attributes or {}), "display_name": ctx.display_name}
            return response

        return await runtime.engine.route(session.dialog_state, event, session.attributes, ctx)

    async def _persist(self, runtime: BotRuntime, session: Session,
                       response: DialogResponse) -> TurnResult:
        previous = session.dialog_state
        result = TurnResult(
            tenant_id=session.tenant_id,
            user_id=session.user_id,
            messages=list(response.messages),
            previous_state=previous,
        )

        if response.end_session:
            await self.store.delete(session.tenant_id, session.user_id)
            result.session_ended = True
            logger.info("session_ended", tenant_id=session.tenant_id,
                        user_id=session.user_id, previous_state=previous)
            return result

        next_state = response.next_state or previous
        if response.clear_attributes:
            attributes: dict[str, Any] = {}
        else:
            attributes = {**session.attributes, **(response.attributes or {})}

        updated = await self.store.update(
            session.tenant_id, session.user_id,
            dialog_state=next_state, attributes=attributes,
        )
        if updated is None:
            # Expired (or deleted) while the handler was running
            logger.info("session_gone_during_turn", tenant_id=session.tenant_id,
                        user_id=session.user_id)
            result.session_ended = True

        result.dialog_state = next_state
        result.live_chat = runtime.bridge is not None and runtime.bridge.is_active(next_state)
        if next_state != previous:
            logger.info("dialog_transition", tenant_id=session.tenant_id,
                        user_id=session.user_id, from_state=previous, to_state=next_state)
        return result

    # ══════════════════════════════════════════════════════════
    #  OUTBOUND: channel delivery
    # ══════════════════════════════════════════════════════════

    async def _deliver(self, runtime: BotRuntime, envelope: InboundEnvelope,
                       messages: list[OutboundMessage]) -> None:
        if not messages or runtime.adapter is None:
            return
        try:
            await runtime.adapter.send(envelope.user_id, messages, reply_token=envelope.reply_token)
        except Exception as e:
            logger.error("channel_send_failed",
                         tenant_id=envelope.tenant_id,
                         user_id=envelope.user_id,
                         channel=envelope.channel.value,
                         messages=len(messages),
                         error=str(e))

    async def _display_name(self, runtime: BotRuntime, envelope: InboundEnvelope,
                            timeout: Optional[float] = None) -> str:
        lookup = getattr(runtime.adapter, "get_display_name", None)
        if lookup is None:
            return envelope.user_id
        try:
            return await asyncio.wait_for(lookup(envelope.user_id), timeout) or envelope.user_id
        except Exception as e:
            logger.warning("display_name_lookup_failed", tenant_id=envelope.tenant_id,
                           user_id=envelope.user_id, error=str(e))
            return envelope.user_id

    # ══════════════════════════════════════════════════════════
    #  ADMIN
    # ══════════════════════════════════════════════════════════

    async def list_sessions(self, tenant_id: str) -> list[Session]:
        self.registry.get(tenant_id)
        return await self.store.list_by_tenant(tenant_id)

    async def end_session(self, tenant_id: str, user_id: str) -> bool:
        """Delete one session, ending any live-chat handoff first."""
        runtime = self.registry.get(tenant_id)
        async with self.locks.hold(session_key(tenant_id, user_id)):
            session = await self.store.get(tenant_id, user_id)
            if session and runtime.bridge and runtime.bridge.is_active(session.dialog_state):
                await runtime.bridge.end(TurnContext(
                    tenant_id=tenant_id, user_id=user_id, state=session.dialog_state,
                ))
            return await self.store.delete(tenant_id, user_id)

    async def clear_tenant(self, tenant_id: str) -> int:
        self.registry.get(tenant_id)
        return await self.store.clear_tenant(tenant_id)
