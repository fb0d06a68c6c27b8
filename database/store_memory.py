"""
InMemorySessionStore — Dict-backed session store with per-session expiry timers.

Features:
  - Zero dependencies (no database)
  - One loop.call_later() handle per session, re-armed on every read/write
  - Single event loop, no locking needed
  - All data lost on process restart

Timer handles are tagged with a generation number. An expiry callback only
deletes the session when its generation is still the armed one and the
session really is past its inactivity window, so a timer left over from an
earlier session can never remove a newer session stored under the same key.

Best for: local development, unit tests, single-process deployments.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Optional

import structlog

from database.store_base import BaseSessionStore, check_update_fields
from models.schemas import DEFAULT_SESSION_TIMEOUT_MS, Session, _utcnow, session_key

logger = structlog.get_logger()


class InMemorySessionStore(BaseSessionStore):

    def __init__(
        self,
        default_expiry_ms: int = DEFAULT_SESSION_TIMEOUT_MS,
        default_state: str = "MAIN_MENU",
    ):
        self.default_expiry_ms = default_expiry_ms
        self.default_state = default_state
        self._sessions: dict[str, Session] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}
        self._armed: dict[str, int] = {}           # key → generation of the live timer
        self._generation = itertools.count(1)
        logger.info("inmemory_session_store_initialized")

    # ── Core operations ───────────────────────────────────

    async def create(
        self, tenant_id: str, user_id: str,
        initial_attributes: Optional[dict[str, Any]] = None,
        *, dialog_state: Optional[str] = None, expiry_ms: Optional[int] = None,
    ) -> Session:
        key = session_key(tenant_id, user_id)
        self._cancel_timer(key)

        session = Session(
            tenant_id=tenant_id,
            user_id=user_id,
            dialog_state=dialog_state or self.default_state,
            attributes=dict(initial_attributes or {}),
            expiry_ms=expiry_ms or self.default_expiry_ms,
        )
        self._sessions[key] = session
        self._arm_timer(key, session)
        self._changed()
        logger.debug("session_created", key=key, state=session.dialog_state,
                     expiry_ms=session.expiry_ms)
        return session.model_copy(deep=True)

    async def get(self, tenant_id: str, user_id: str) -> Optional[Session]:
        key = session_key(tenant_id, user_id)
        session = self._live(key)
        if session is None:
            return None
        session.touch()
        self._arm_timer(key, session)
        self._changed()
        return session.model_copy(deep=True)

    async def update(self, tenant_id: str, user_id: str, **fields: Any) -> Optional[Session]:
        check_update_fields(fields)
        key = session_key(tenant_id, user_id)
        session = self._live(key)
        if session is None:
            logger.debug("session_update_skipped", key=key, reason="absent")
            return None

        if fields.get("dialog_state") is not None:
            session.dialog_state = fields["dialog_state"]
        if fields.get("attributes") is not None:
            session.attributes = dict(fields["attributes"])
        if fields.get("expiry_ms"):
            session.expiry_ms = int(fields["expiry_ms"])
        session.touch()
        self._arm_timer(key, session)
        self._changed()
        logger.debug("session_updated", key=key, fields=sorted(fields))
        return session.model_copy(deep=True)

    async def delete(self, tenant_id: str, user_id: str) -> bool:
        key = session_key(tenant_id, user_id)
        deleted = self._drop(key)
        if deleted:
            logger.debug("session_deleted", key=key)
        return deleted

    # ── Diagnostics ───────────────────────────────────────

    async def list_by_tenant(self, tenant_id: str) -> list[Session]:
        return [
            s.model_copy(deep=True) for s in self._sessions.values()
            if s.tenant_id == tenant_id and not s.is_expired()
        ]

    async def list_all(self) -> list[Session]:
        return [s.model_copy(deep=True) for s in self._sessions.values() if not s.is_expired()]

    async def exists(self, tenant_id: str, user_id: str) -> bool:
        session = self._sessions.get(session_key(tenant_id, user_id))
        return session is not None and not session.is_expired()

    async def clear_tenant(self, tenant_id: str) -> int:
        sessions = [s for s in self._sessions.values() if s.tenant_id == tenant_id]
        live = sum(1 for s in sessions if not s.is_expired())
        for session in sessions:
            self._drop(session.key)
        logger.info("tenant_sessions_cleared", tenant_id=tenant_id, count=live)
        return live

    async def stats(self) -> dict[str, Any]:
        by_tenant: dict[str, int] = {}
        live = [s for s in self._sessions.values() if not s.is_expired()]
        for s in live:
            by_tenant[s.tenant_id] = by_tenant.get(s.tenant_id, 0) + 1
        return {
            "backend": "memory",
            "sessions": len(live),
            "timers": len(self._timers),
            "by_tenant": by_tenant,
        }

    async def close(self) -> None:
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        self._armed.clear()

    # ── Timers ────────────────────────────────────────────

    def _arm_timer(self, key: str, session: Session) -> None:
        self._cancel_timer(key)
        delay = max(0.0, (session.expires_at - _utcnow()).total_seconds())
        generation = next(self._generation)
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._on_timer, key, generation)
        self._armed[key] = generation

    def _cancel_timer(self, key: str) -> None:
        handle = self._timers.pop(key, None)
        if handle is not None:
            handle.cancel()
        self._armed.pop(key, None)

    def _on_timer(self, key: str, generation: int) -> None:
        if self._armed.get(key) != generation:
            return
        session = self._sessions.get(key)
        if session is None:
            self._cancel_timer(key)
            return
        if not session.is_expired():
            # Fired early (clock adjustment); wait out the remainder
            self._arm_timer(key, session)
            return
        self._drop(key)
        logger.info("session_expired", key=key, expiry_ms=session.expiry_ms)

    # ── Helpers ───────────────────────────────────────────

    def _live(self, key: str) -> Optional[Session]:
        """Stored session, or None if absent or past its window (dropped lazily)."""
        session = self._sessions.get(key)
        if session is None:
            return None
        if session.is_expired():
            self._drop(key)
            logger.info("session_expired", key=key, expiry_ms=session.expiry_ms, lazy=True)
            return None
        return session

    def _drop(self, key: str) -> bool:
        self._cancel_timer(key)
        removed = self._sessions.pop(key, None) is not None
        if removed:
            self._changed()
        return removed

    def _changed(self) -> None:
        """Hook for persistent subclasses; called after every mutation."""
