"""
Abstract Session Store — Interface for all storage backends.

Implementations:
  - InMemorySessionStore (dict + one expiry timer per session, single process)
  - FileSessionStore     (in-memory + sessions.json persistence)
  - SqlSessionStore      (PostgreSQL / MySQL / SQLite via SQLAlchemy, sweep-based expiry)

Every backend keys sessions by "{tenant_id}:{user_id}" and follows the same
rules:
  - get() refreshes last_activity and never returns an expired session
  - update() replaces the given fields (the caller merges attributes),
    refreshes last_activity, is a no-op when absent
  - delete() of a missing session is a no-op
  - returned Session objects are copies; mutating them does not touch storage
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from models.schemas import Session

UPDATABLE_FIELDS = frozenset({"dialog_state", "attributes", "expiry_ms"})


def check_update_fields(fields: dict[str, Any]) -> None:
    unknown = set(fields) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Cannot update session field(s): {', '.join(sorted(unknown))}")


class BaseSessionStore(ABC):
    """Interface that all session store backends must implement."""

    default_expiry_ms: int
    default_state: str

    # ── Core operations ───────────────────────────────────────

    @abstractmethod
    async def create(
        self, tenant_id: str, user_id: str,
        initial_attributes: Optional[dict[str, Any]] = None,
        *, dialog_state: Optional[str] = None, expiry_ms: Optional[int] = None,
    ) -> Session:
        ...

    @abstractmethod
    async def get(self, tenant_id: str, user_id: str) -> Optional[Session]:
        ...

    @abstractmethod
    async def update(self, tenant_id: str, user_id: str, **fields: Any) -> Optional[Session]:
        ...

    @abstractmethod
    async def delete(self, tenant_id: str, user_id: str) -> bool:
        ...

    # ── Diagnostics ───────────────────────────────────────────

    @abstractmethod
    async def list_by_tenant(self, tenant_id: str) -> list[Session]:
        ...

    @abstractmethod
    async def list_all(self) -> list[Session]:
        ...

    @abstractmethod
    async def clear_tenant(self, tenant_id: str) -> int:
        ...

    async def exists(self, tenant_id: str, user_id: str) -> bool:
        return any(s.user_id == user_id for s in await self.list_by_tenant(tenant_id))

    @abstractmethod
    async def stats(self) -> dict[str, Any]:
        ...

    async def close(self) -> None:
        """Release timers / connections. Safe to call more than once."""
