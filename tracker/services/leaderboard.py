"""Leaderboard aggregation.

Ranks users by normal (non-loan) minutes inside a time window. Loan entries
are excluded outright, not netted against normal minutes.

Ordering: total minutes descending, then external id ascending so equal
totals always come out in the same order. Truncation happens after sorting.
An empty window yields ``NoData``, never an empty ``RankedList``.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any
from zoneinfo import ZoneInfo

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.models.checkin import CheckinEntry
from tracker.models.user import User
from tracker.utils.clock import (
    day_start,
    ensure_utc,
    local_day,
    month_start,
    utcnow,
    week_start,
)
from tracker.utils.errors import ErrorCode, ValidationError


class LeaderboardWindow(str, Enum):
    """Aggregation windows."""

    TODAY = "today"
    WEEK = "week"  # Monday 00:00 local through now
    MONTH = "month"
    ALL_TIME = "all"

    @classmethod
    def parse(cls, value: "str | LeaderboardWindow") -> "LeaderboardWindow":
        try:
            return cls(value)
        except ValueError as exc:
            raise ValidationError(
                f"Unknown leaderboard window: {value}",
                code=ErrorCode.INVALID_WINDOW,
                details={"window": str(value), "allowed": [w.value for w in cls]},
            ) from exc


def window_start(window: LeaderboardWindow, now: datetime, zone: ZoneInfo) -> datetime | None:
    """UTC start of ``window`` relative to ``now``; None when unbounded."""
    today = local_day(now, zone)
    if window is LeaderboardWindow.TODAY:
        return day_start(today, zone)
    if window is LeaderboardWindow.WEEK:
        return day_start(week_start(today), zone)
    if window is LeaderboardWindow.MONTH:
        return day_start(month_start(today), zone)
    return None


@dataclass
class RankedEntry:
    """Single leaderboard row."""

    rank: int
    external_id: str
    nickname: str
    total_minutes: int
    entry_count: int
    streak_days: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "user_id": self.external_id,
            "nickname": self.nickname,
            "total_minutes": self.total_minutes,
            "entry_count": self.entry_count,
            "streak_days": self.streak_days,
        }


@dataclass
class RankedList:
    """Non-empty ranking for a window."""

    window: LeaderboardWindow
    scope: str | None
    entries: list[RankedEntry]
    generated_at: datetime = field(default_factory=utcnow)

    has_data = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_data": True,
            "window": self.window.value,
            "scope": self.scope,
            "generated_at": self.generated_at.isoformat(),
            "entries": [e.to_dict() for e in self.entries],
        }


@dataclass
class NoData:
    """No normal check-ins in the window."""

    window: LeaderboardWindow
    scope: str | None

    has_data = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "has_data": False,
            "window": self.window.value,
            "scope": self.scope,
            "entries": [],
        }


class LeaderboardAggregator:
    """Read-only ranking queries; takes no locks."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.settings.leaderboard_default_limit
        return max(1, min(limit, self.settings.leaderboard_max_limit))

    async def rank(
        self,
        scope: str | None,
        window: LeaderboardWindow | str,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> RankedList | NoData:
        """Rank users of ``scope`` (all scopes when None) within ``window``."""
        window = LeaderboardWindow.parse(window)
        now = ensure_utc(now) if now else utcnow()
        limit = self.clamp_limit(limit)

        total_minutes = func.sum(CheckinEntry.duration).label("total_minutes")
        entry_count = func.count(CheckinEntry.id).label("entry_count")
        stmt = (
            select(
                User.external_id,
                User.nickname,
                User.streak_days,
                total_minutes,
                entry_count,
            )
            .select_from(CheckinEntry)
            .join(User, User.id == CheckinEntry.user_id)
            .where(CheckinEntry.is_loan.is_(False))
        )
        if scope is not None:
            stmt = stmt.where(CheckinEntry.scope == scope)

        start = window_start(window, now, self.settings.zone)
        if start is not None:
            stmt = stmt.where(CheckinEntry.created_at >= start)
            stmt = stmt.where(CheckinEntry.created_at <= now)

        stmt = (
            stmt.group_by(User.id, User.external_id, User.nickname, User.streak_days)
            .order_by(total_minutes.desc(), User.external_id.asc())
            .limit(limit)
        )
        rows = (await self.db.execute(stmt)).all()
        if not rows:
            return NoData(window=window, scope=scope)

        entries = [
            RankedEntry(
                rank=index,
                external_id=row.external_id,
                nickname=row.nickname,
                total_minutes=int(row.total_minutes),
                entry_count=int(row.entry_count),
                streak_days=row.streak_days,
            )
            for index, row in enumerate(rows, start=1)
        ]
        return RankedList(window=window, scope=scope, entries=entries, generated_at=now)
