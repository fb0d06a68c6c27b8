"""
SQLAlchemy ORM models — Cross-database compatible.

Supports: PostgreSQL, MySQL 8+, SQLite.

  - JSON type instead of PostgreSQL-specific JSONB — on PG the dialect maps
    JSON to jsonb automatically; on MySQL it uses native JSON; on SQLite
    it serializes to TEXT.
  - Timestamps stored as epoch milliseconds (BigInteger) so the expiry sweep
    is a plain integer comparison on every dialect.
  - String primary key "{tenant_id}:{user_id}".
"""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import BigInteger, Index, Integer, JSON, String
from sqlalchemy.ext.asyncio import AsyncAttrs
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from models.schemas import Session


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all ORM models."""
    pass


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def from_epoch_ms(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Sessions
# ──────────────────────────────────────────────────────────────

class SessionRow(Base):
    __tablename__ = "bot_sessions"

    key: Mapped[str] = mapped_column(String(320), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False)
    dialog_state: Mapped[str] = mapped_column(String(64), nullable=False)
    attributes: Mapped[Any] = mapped_column(JSON, default=dict)

    created_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    last_activity_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)
    expiry_ms: Mapped[int] = mapped_column(Integer, nullable=False)
    # last_activity_ms + expiry_ms, kept for the sweep query
    expires_at_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("ix_bot_sessions_expires", "expires_at_ms"),
    )

    @classmethod
    def from_session(cls, session: Session) -> "SessionRow":
        row = cls(key=session.key, tenant_id=session.tenant_id, user_id=session.user_id)
        row.apply(session)
        row.created_at_ms = to_epoch_ms(session.created_at)
        return row

    def apply(self, session: Session) -> None:
        self.dialog_state = session.dialog_state
        self.attributes = dict(session.attributes)
        self.expiry_ms = session.expiry_ms
        self.last_activity_ms = to_epoch_ms(session.last_activity)
        self.expires_at_ms = self.last_activity_ms + self.expiry_ms

    def to_session(self) -> Session:
        return Session(
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            dialog_state=self.dialog_state,
            attributes=dict(self.attributes or {}),
            created_at=from_epoch_ms(self.created_at_ms),
            last_activity=from_epoch_ms(self.last_activity_ms),
            expiry_ms=self.expiry_ms,
        )

    def to_dict(self) -> dict[str, Any]:
        return self.to_session().to_record()
