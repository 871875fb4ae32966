"""Async engine and session wiring.

The module-level ``engine`` is built from settings at import time; tests
build their own with ``build_engine`` and ``build_session_factory``.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from tracker.config import get_settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def _enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """Let SQLAlchemy own BEGIN so SAVEPOINT works on aiosqlite.

    Transactions start IMMEDIATE: a deferred BEGIN that later upgrades to a
    write fails with SQLITE_BUSY instead of waiting for the writer.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    settings = get_settings()
    options: dict[str, Any] = {"echo": settings.app_debug, "future": True}
    if not _is_sqlite(database_url) and "poolclass" not in kwargs:
        options["pool_size"] = settings.db_pool_size
        options["max_overflow"] = settings.db_max_overflow
    options.update(kwargs)

    engine = create_async_engine(database_url, **options)
    if _is_sqlite(database_url):
        _enable_sqlite_savepoints(engine)
    return engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(get_settings().database_url)

async_session_factory = build_session_factory(engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request.

    Services commit their own units of work; anything still pending when
    the request fails is rolled back.
    """
    async with async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create tables that do not exist yet."""
    from tracker.models import Base

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the pool on shutdown."""
    await engine.dispose()
