"""
FileSessionStore — JSON file-backed session store with persistence across restarts.

Data layout:
  {data_dir}/
    sessions.json        {"tenant:user": {tenantId, userId, dialogState, attributes,
                                           createdAt, lastActivity, expiryMs}, ...}

Features:
  - Survives process restarts (unlike InMemorySessionStore)
  - No external dependencies (no database server)
  - Flush on every mutation, or batched with flush_interval_s > 0
  - Single-process only (no concurrent write safety)

Sessions already expired when the file is loaded are dropped. init() arms a
timer for every loaded session, and sweep_expired() lets the SessionSweeper
clear sessions nobody touches again.

Best for: small deployments, demos, restarts without losing conversations.
"""
from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError

from database.store_memory import InMemorySessionStore
from models.schemas import DEFAULT_SESSION_TIMEOUT_MS, Session

logger = structlog.get_logger()

SESSIONS_FILE = "sessions.json"


class FileSessionStore(InMemorySessionStore):
    """
    Extends InMemorySessionStore with JSON file persistence.

    On init: loads sessions.json into memory.
    On every write: flushes the whole collection to disk.
    """

    def __init__(
        self,
        data_dir: str = "./data",
        flush_interval_s: float = 0,
        default_expiry_ms: int = DEFAULT_SESSION_TIMEOUT_MS,
        default_state: str = "MAIN_MENU",
    ):
        super().__init__(default_expiry_ms=default_expiry_ms, default_state=default_state)
        self._data_dir = Path(data_dir)
        self._data_dir.mkdir(parents=True, exist_ok=True)
        self._flush_interval = flush_interval_s
        self._dirty = False
        self._flush_task: Optional[asyncio.Task] = None
        self._load()
        logger.info("file_session_store_initialized",
                    data_dir=str(self._data_dir), sessions=len(self._sessions))

    @property
    def path(self) -> Path:
        return self._data_dir / SESSIONS_FILE

    # ── Load / Save ───────────────────────────────────────

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("file_store_load_error", path=str(self.path), error=str(e))
            return

        dropped = 0
        for key, record in (data if isinstance(data, dict) else {}).items():
            try:
                session = Session.from_record(record)
            except ValidationError as e:
                logger.warning("file_store_bad_record", key=key, error=str(e))
                continue
            if session.is_expired():
                dropped += 1
                continue
            self._sessions[session.key] = session
        logger.debug("file_store_loaded", sessions=len(self._sessions), expired_dropped=dropped)

    def _flush(self) -> None:
        """Write all sessions to disk (tmp file + rename)."""
        data = {key: s.to_record() for key, s in self._sessions.items()}
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w") as f:
            json.dump(data, f, indent=2, default=str)
        tmp_path.replace(self.path)

    def _changed(self) -> None:
        if self._flush_interval <= 0:
            self._flush()
            return
        self._dirty = True
        if self._flush_task is None or self._flush_task.done():
            self._flush_task = asyncio.get_running_loop().create_task(self._deferred_flush())

    async def _deferred_flush(self) -> None:
        await asyncio.sleep(self._flush_interval)
        if self._dirty:
            self._dirty = False
            self._flush()

    # ── Expiry for loaded sessions ────────────────────────

    async def init(self) -> None:
        """Arm expiry timers for the sessions loaded from disk."""
        for key, session in list(self._sessions.items()):
            if key not in self._timers:
                self._arm_timer(key, session)

    async def sweep_expired(self) -> int:
        """Drop every session past its window and rewrite the file once."""
        expired = [key for key, s in self._sessions.items() if s.is_expired()]
        for key in expired:
            self._cancel_timer(key)
            del self._sessions[key]
        if expired:
            self._changed()
            logger.info("file_store_swept", expired=len(expired))
        return len(expired)

    def flush_all(self) -> None:
        """Force flush to disk."""
        self._dirty = False
        self._flush()
        logger.info("file_store_flushed_all", sessions=len(self._sessions))

    async def stats(self) -> dict:
        result = await super().stats()
        result.update(backend="file", path=str(self.path))
        return result

    async def close(self) -> None:
        if self._flush_task is not None and not self._flush_task.done():
            self._flush_task.cancel()
        if self._dirty:
            self.flush_all()
        await super().close()
