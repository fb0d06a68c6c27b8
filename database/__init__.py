"""
Database layer — Multi-backend session persistence.

Backends:
  - In-memory (dict + expiry timers, for development/testing)
  - File (JSON file on disk, for small deployments)
  - SQL (PostgreSQL / MySQL / SQLite via SQLAlchemy async)

Quick start:
  from database import create_store
  store = create_store(settings.store)
  session = await store.create("fabbank", "U123", dialog_state="MAIN_MENU")
"""
from database.store_base import BaseSessionStore
from database.store_memory import InMemorySessionStore
from database.store_file import FileSessionStore
from database.store_factory import create_store, get_store, reset_store
from database.sweeper import SessionSweeper

__all__ = [
    # Store interface
    "BaseSessionStore",
    # Store backends (SqlSessionStore: database.store_sql, needs SQLAlchemy)
    "InMemorySessionStore", "FileSessionStore",
    # Factory
    "create_store", "get_store", "reset_store",
    "SessionSweeper",
]
