"""
Session Sweeper — periodic expiry for stores without in-process timers.

Runs as a background task inside the FastAPI lifespan when the configured
store exposes sweep_expired() (the SQL and file backends).
"""
from __future__ import annotations

import asyncio
from typing import Optional

import structlog

from database.store_base import BaseSessionStore

logger = structlog.get_logger()


class SessionSweeper:

    def __init__(self, store: BaseSessionStore, interval_s: float = 30.0):
        self.store = store
        self.interval_s = interval_s
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @staticmethod
    def supports(store: BaseSessionStore) -> bool:
        return callable(getattr(store, "sweep_expired", None))

    async def start(self) -> None:
        """Start the sweep loop as a background task."""
        self._running = True
        self._task = asyncio.create_task(self._sweep_loop(), name="session_sweeper")
        logger.info("session_sweeper_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("session_sweeper_stopped")

    async def _sweep_loop(self) -> None:
        while self._running:
            try:
                await self.sweep_once()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("session_sweep_error", error=str(e))

            await asyncio.sleep(self.interval_s)

    async def sweep_once(self) -> int:
        return await self.store.sweep_expired()
