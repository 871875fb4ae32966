"""Shared test fixtures.

Database tests run against a fresh SQLite file per test (aiosqlite). Point
``TEST_DATABASE_URL`` at PostgreSQL (asyncpg) to run the same suite there.
"""

import os
from collections.abc import AsyncGenerator, Callable
from datetime import date, datetime

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from tracker.config import Settings
from tracker.models import Base, User
from tracker.services.checkin import CheckinService
from tracker.utils.db import build_engine, build_session_factory
from tracker.utils.locks import UserLockManager

TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL")


def get_test_settings(**overrides) -> Settings:
    """Get test-specific settings."""
    values = {
        "app_env": "test",
        "app_debug": False,
        "timezone": "Asia/Shanghai",
        "redis_url": None,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings() -> Settings:
    return get_test_settings()


@pytest.fixture
def local_time(settings) -> Callable[..., datetime]:
    """Build an aware datetime in the reference timezone."""

    def _make(day: date, hour: int = 12, minute: int = 0) -> datetime:
        return datetime(day.year, day.month, day.day, hour, minute, tzinfo=settings.zone)

    return _make


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Create a test database engine with fresh tables for each test."""
    url = TEST_DATABASE_URL or f"sqlite+aiosqlite:///{tmp_path / 'tracker_test.db'}"
    engine = build_engine(url, poolclass=NullPool, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return build_session_factory(test_engine)


@pytest_asyncio.fixture(scope="function")
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a test database session."""
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.rollback()


@pytest.fixture
def locks() -> UserLockManager:
    return UserLockManager(acquire_timeout_ms=2000)


@pytest.fixture
def service(db, settings, locks) -> CheckinService:
    return CheckinService(db, settings=settings, locks=locks)


@pytest.fixture
def make_user(db) -> Callable:
    """Insert a user row directly, bypassing the service."""

    async def _make(
        external_id: str,
        *,
        nickname: str | None = None,
        streak_days: int = 0,
        max_streak: int | None = None,
        last_checkin_date: date | None = None,
        daily_goal: int | None = None,
    ) -> User:
        user = User(
            external_id=external_id,
            nickname=nickname or external_id,
            streak_days=streak_days,
            max_streak=streak_days if max_streak is None else max_streak,
            last_checkin_date=last_checkin_date,
            daily_goal=daily_goal,
        )
        db.add(user)
        await db.commit()
        return user

    return _make
