"""
Async SQLAlchemy plumbing for the SQL session store.

Plain URLs from settings.yaml are mapped onto the async driver of their
dialect (asyncpg, aiomysql, aiosqlite); URLs that already name a driver
are used as given.

    engine = create_engine_for("sqlite:///./botflow.db")
    await init_db(engine)
    factory = make_session_factory(engine)
    async with session_scope(factory) as db:
        ...
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

import structlog
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

SERVER_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def async_url(db_url: str) -> URL:
    url = make_url(db_url)
    driver = ASYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def _engine_options(url: URL) -> dict[str, Any]:
    if url.get_backend_name() != "sqlite":
        return dict(SERVER_POOL)
    options: dict[str, Any] = {"connect_args": {"check_same_thread": False}}
    if url.database in (None, "", ":memory:"):
        # in-memory: every connection would get its own empty database
        options["poolclass"] = StaticPool
    return options


def create_engine_for(db_url: str, echo: bool = False) -> AsyncEngine:
    url = async_url(db_url)
    engine = create_async_engine(url, echo=echo, **_engine_options(url))
    logger.info("database_engine_created", dialect=engine.dialect.name,
                url=url.render_as_string(hide_password=True))
    return engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """One transaction: commit on exit, roll back on error."""
    async with factory() as db:
        async with db.begin():
            yield db


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))
