"""
SqlSessionStore — Portable SQL session store for PostgreSQL, MySQL, SQLite.

There are no in-process timers: expiry is lazy on read (an expired row is
deleted and treated as absent) plus a periodic sweep_expired(), normally
driven by database.sweeper.SessionSweeper.
"""
from __future__ import annotations

from typing import Any, Optional

import structlog
from sqlalchemy import delete, func, select

from database.models import SessionRow, to_epoch_ms
from database.session import create_engine_for, init_db, make_session_factory, session_scope
from database.store_base import BaseSessionStore, check_update_fields
from models.schemas import DEFAULT_SESSION_TIMEOUT_MS, Session, _utcnow, session_key

logger = structlog.get_logger()


class SqlSessionStore(BaseSessionStore):
    """
    Persistent session store backed by any SQLAlchemy-supported database.
    Call init() once before use (creates the table if needed).
    """

    def __init__(
        self,
        url: str = "sqlite:///./botflow.db",
        default_expiry_ms: int = DEFAULT_SESSION_TIMEOUT_MS,
        default_state: str = "MAIN_MENU",
        echo: bool = False,
    ):
        self.default_expiry_ms = default_expiry_ms
        self.default_state = default_state
        self._engine = create_engine_for(url, echo=echo)
        self._factory = make_session_factory(self._engine)
        self._initialized = False

    async def init(self) -> None:
        if not self._initialized:
            await init_db(self._engine)
            self._initialized = True

    # ── Core operations ───────────────────────────────────

    async def create(
        self, tenant_id: str, user_id: str,
        initial_attributes: Optional[dict[str, Any]] = None,
        *, dialog_state: Optional[str] = None, expiry_ms: Optional[int] = None,
    ) -> Session:
        await self.init()
        session = Session(
            tenant_id=tenant_id,
            user_id=user_id,
            dialog_state=dialog_state or self.default_state,
            attributes=dict(initial_attributes or {}),
            expiry_ms=expiry_ms or self.default_expiry_ms,
        )
        async with session_scope(self._factory) as db:
            existing = await db.get(SessionRow, session.key)
            if existing is not None:
                await db.delete(existing)
                await db.flush()
            db.add(SessionRow.from_session(session))
        logger.debug("session_created", key=session.key, state=session.dialog_state,
                     expiry_ms=session.expiry_ms)
        return session

    async def get(self, tenant_id: str, user_id: str) -> Optional[Session]:
        await self.init()
        key = session_key(tenant_id, user_id)
        async with session_scope(self._factory) as db:
            row = await self._live_row(db, key)
            if row is None:
                return None
            session = row.to_session()
            session.touch()
            row.apply(session)
            return session

    async def update(self, tenant_id: str, user_id: str, **fields: Any) -> Optional[Session]:
        check_update_fields(fields)
        await self.init()
        key = session_key(tenant_id, user_id)
        async with session_scope(self._factory) as db:
            row = await self._live_row(db, key)
            if row is None:
                logger.debug("session_update_skipped", key=key, reason="absent")
                return None
            session = row.to_session()
            if fields.get("dialog_state") is not None:
                session.dialog_state = fields["dialog_state"]
            if fields.get("attributes") is not None:
                session.attributes = dict(fields["attributes"])
            if fields.get("expiry_ms"):
                session.expiry_ms = int(fields["expiry_ms"])
            session.touch()
            row.apply(session)
        logger.debug("session_updated", key=key, fields=sorted(fields))
        return session

    async def delete(self, tenant_id: str, user_id: str) -> bool:
        await self.init()
        key = session_key(tenant_id, user_id)
        async with session_scope(self._factory) as db:
            result = await db.execute(delete(SessionRow).where(SessionRow.key == key))
            deleted = result.rowcount > 0
        if deleted:
            logger.debug("session_deleted", key=key)
        return deleted

    # ── Diagnostics ───────────────────────────────────────

    async def list_by_tenant(self, tenant_id: str) -> list[Session]:
        await self.init()
        now_ms = to_epoch_ms(_utcnow())
        async with session_scope(self._factory) as db:
            stmt = (
                select(SessionRow)
                .where(SessionRow.tenant_id == tenant_id, SessionRow.expires_at_ms > now_ms)
                .order_by(SessionRow.last_activity_ms.desc())
            )
            result = await db.execute(stmt)
            return [row.to_session() for row in result.scalars()]

    async def list_all(self) -> list[Session]:
        await self.init()
        now_ms = to_epoch_ms(_utcnow())
        async with session_scope(self._factory) as db:
            result = await db.execute(select(SessionRow).where(SessionRow.expires_at_ms > now_ms))
            return [row.to_session() for row in result.scalars()]

    async def exists(self, tenant_id: str, user_id: str) -> bool:
        await self.init()
        now_ms = to_epoch_ms(_utcnow())
        async with session_scope(self._factory) as db:
            stmt = select(func.count()).select_from(SessionRow).where(
                SessionRow.key == session_key(tenant_id, user_id),
                SessionRow.expires_at_ms > now_ms,
            )
            return (await db.execute(stmt)).scalar_one() > 0

    async def clear_tenant(self, tenant_id: str) -> int:
        await self.init()
        async with session_scope(self._factory) as db:
            result = await db.execute(delete(SessionRow).where(SessionRow.tenant_id == tenant_id))
            count = result.rowcount or 0
        logger.info("tenant_sessions_cleared", tenant_id=tenant_id, count=count)
        return count

    async def sweep_expired(self) -> int:
        """Delete every row past its inactivity window. Returns the count."""
        await self.init()
        now_ms = to_epoch_ms(_utcnow())
        async with session_scope(self._factory) as db:
            result = await db.execute(delete(SessionRow).where(SessionRow.expires_at_ms <= now_ms))
            count = result.rowcount or 0
        if count:
            logger.info("sessions_swept", count=count)
        return count

    async def stats(self) -> dict[str, Any]:
        await self.init()
        async with session_scope(self._factory) as db:
            stmt = select(SessionRow.tenant_id, func.count()).group_by(SessionRow.tenant_id)
            by_tenant = {tenant: count for tenant, count in (await db.execute(stmt)).all()}
        return {
            "backend": "sql",
            "dialect": self._engine.dialect.name,
            "sessions": sum(by_tenant.values()),
            "by_tenant": by_tenant,
        }

    async def close(self) -> None:
        await self._engine.dispose()
        logger.info("database_closed")

    # ── Helpers ───────────────────────────────────────────

    @staticmethod
    async def _live_row(db, key: str) -> Optional[SessionRow]:
        row = await db.get(SessionRow, key)
        if row is None:
            return None
        if row.expires_at_ms <= to_epoch_ms(_utcnow()):
            await db.delete(row)
            logger.info("session_expired", key=key, expiry_ms=row.expiry_ms, lazy=True)
            return None
        return row
