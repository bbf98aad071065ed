from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from loguru import logger
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

DEFAULT_SQLITE_URL = "sqlite+aiosqlite:///./overlord_agent.db"


def _normalized_database_url(raw: str) -> str:
    """
    Normalize DATABASE_URL for SQLAlchemy async drivers.

    Behavior:
    - Production: REQUIRES DATABASE_URL, fails if missing
    - Local development: Falls back to SQLite with warning

    Raises:
        RuntimeError: If DATABASE_URL is missing in production
    """
    raw = (raw or "").strip()

    if not raw:
        is_production = os.getenv("OVERLORD_PRODUCTION", "false").lower() == "true"
        if is_production:
            raise RuntimeError(
                "DATABASE_URL environment variable is required in production "
                "(OVERLORD_PRODUCTION=true). Point it at the database that should hold agent sessions."
            )

        logger.warning(
            "DATABASE_URL not set. Using SQLite for local development "
            f"({DEFAULT_SQLITE_URL})."
        )
        return DEFAULT_SQLITE_URL

    # Hosted Postgres usually hands out postgresql://...; the async driver needs postgresql+asyncpg://...
    if raw.startswith("postgresql://"):
        return raw.replace("postgresql://", "postgresql+asyncpg://", 1)
    if raw.startswith("postgres://"):
        return raw.replace("postgres://", "postgresql+asyncpg://", 1)
    if raw.startswith("sqlite:///"):
        return raw.replace("sqlite:///", "sqlite+aiosqlite:///", 1)

    return raw


def _database_url_from_env() -> str:
    return _normalized_database_url(os.getenv("DATABASE_URL", ""))


def create_engine_for_url(database_url: str) -> AsyncEngine:
    engine = create_async_engine(
        _normalized_database_url(database_url),
        echo=False,
        pool_pre_ping=True,
    )
    if engine.dialect.name == "sqlite":
        # SQLite only honours ON DELETE CASCADE with foreign keys switched on
        @event.listens_for(engine.sync_engine, "connect")
        def _enable_foreign_keys(dbapi_connection, connection_record):
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

    return engine


_ENGINE: Optional[AsyncEngine] = None
_SESSIONMAKER: Optional[async_sessionmaker[AsyncSession]] = None


def get_engine() -> AsyncEngine:
    global _ENGINE
    if _ENGINE is None:
        _ENGINE = create_engine_for_url(_database_url_from_env())
    return _ENGINE


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    global _SESSIONMAKER
    if _SESSIONMAKER is None:
        _SESSIONMAKER = async_sessionmaker(bind=get_engine(), expire_on_commit=False)
    return _SESSIONMAKER


async def reset_engine_for_tests(database_url: str) -> None:
    """Reset the global engine/sessionmaker.

    Useful for pytest where other tests may import modules.api early.
    """

    global _ENGINE, _SESSIONMAKER
    if _ENGINE is not None:
        await _ENGINE.dispose()
    _ENGINE = create_engine_for_url(database_url)
    _SESSIONMAKER = async_sessionmaker(bind=_ENGINE, expire_on_commit=False)


@asynccontextmanager
async def db_session() -> AsyncIterator[AsyncSession]:
    async with get_sessionmaker()() as session:
        yield session
