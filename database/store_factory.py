"""
Builds the process-wide session store from the ``store`` block of settings.yaml.

    store:
      backend: memory        # memory | file | sql
      file_dir: ./data       # file backend
      url: sqlite:///./botflow.db   # sql backend (postgresql://, mysql://, sqlite://)

An unknown backend name falls back to memory with a warning.
"""
from __future__ import annotations

from typing import Optional

import structlog

from config.settings import StoreConfig
from database.store_base import BaseSessionStore

logger = structlog.get_logger()

_instance: Optional[BaseSessionStore] = None


def _build(config: StoreConfig, debug: bool) -> BaseSessionStore:
    if config.backend == "sql":
        from database.store_sql import SqlSessionStore
        return SqlSessionStore(url=config.url, echo=debug)
    if config.backend == "file":
        from database.store_file import FileSessionStore
        return FileSessionStore(data_dir=config.file_dir)
    if config.backend != "memory":
        logger.warning("store_backend_unknown", backend=config.backend, using="memory")
    from database.store_memory import InMemorySessionStore
    return InMemorySessionStore()


def create_store(config: Optional[StoreConfig] = None, debug: bool = False) -> BaseSessionStore:
    """Create the configured store once; later calls return the same instance."""
    global _instance
    if _instance is None:
        _instance = _build(config or StoreConfig(), debug)
        logger.info("store_created", backend=type(_instance).__name__)
    return _instance


def get_store() -> BaseSessionStore:
    return create_store()


def reset_store() -> None:
    """Forget the singleton; the caller closes the old store."""
    global _instance
    _instance = None
