"""Admin reporting aggregates.

Read-only summaries over the ledger for the admin dashboard: headline
totals, a per-day trend, a category breakdown, the user directory and a CSV
export of entries. Loan entries are left out of activity figures; the
overview reports borrowed minutes separately.
"""

import csv
import io
from datetime import date, datetime, timedelta
from typing import Any

from sqlalchemy import case, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.models.achievement import AchievementGrant
from tracker.models.checkin import CheckinEntry
from tracker.models.user import User
from tracker.schemas.checkin import EntrySnapshot
from tracker.services.leaderboard import LeaderboardWindow, window_start
from tracker.utils.clock import day_bounds, day_start, ensure_utc, local_day, utcnow
from tracker.utils.errors import UserNotFoundError

USER_SORT_COLUMNS = {
    "createdAt": User.created_at,
    "streakDays": User.streak_days,
}

EXPORT_HEADER = (
    "id",
    "nickname",
    "user_id",
    "content",
    "duration",
    "is_loan",
    "category",
    "subcategory",
    "created_at",
)

RECENT_DETAIL_ENTRIES = 10


class ReportService:
    """Aggregates consumed by the admin surface."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    async def _window_stats(self, start: datetime, now: datetime) -> dict[str, int]:
        stmt = (
            select(
                func.count(CheckinEntry.id),
                func.coalesce(func.sum(CheckinEntry.duration), 0),
                func.count(func.distinct(CheckinEntry.user_id)),
            )
            .where(CheckinEntry.is_loan.is_(False))
            .where(CheckinEntry.created_at >= start)
            .where(CheckinEntry.created_at <= now)
        )
        checkins, minutes, users = (await self.db.execute(stmt)).one()
        return {"checkins": int(checkins), "minutes": int(minutes), "users": int(users)}

    async def overview(self, now: datetime | None = None) -> dict[str, Any]:
        """Headline totals plus today / this week / this month."""
        now = ensure_utc(now) if now else utcnow()
        zone = self.settings.zone

        total_users = await self.db.scalar(select(func.count(User.id)))
        totals_stmt = select(
            func.count(CheckinEntry.id),
            func.coalesce(
                func.sum(case((CheckinEntry.is_loan.is_(False), CheckinEntry.duration), else_=0)),
                0,
            ),
            func.coalesce(
                func.sum(case((CheckinEntry.is_loan.is_(True), CheckinEntry.duration), else_=0)),
                0,
            ),
        )
        total_checkins, normal_minutes, loan_minutes = (
            await self.db.execute(totals_stmt)
        ).one()

        windows = {}
        for key, window in (
            ("today", LeaderboardWindow.TODAY),
            ("this_week", LeaderboardWindow.WEEK),
            ("this_month", LeaderboardWindow.MONTH),
        ):
            windows[key] = await self._window_stats(window_start(window, now, zone), now)

        return {
            "total_users": int(total_users or 0),
            "total_checkins": int(total_checkins),
            "total_minutes": int(normal_minutes),
            "total_loan_minutes": int(loan_minutes),
            **windows,
        }

    async def trend(self, days: int = 30, now: datetime | None = None) -> list[dict[str, Any]]:
        """Per local day activity for the last ``days`` days, oldest first.

        Days without activity are included with zeros.
        """
        if days < 1:
            return []
        now = ensure_utc(now) if now else utcnow()
        zone = self.settings.zone
        today = local_day(now, zone)
        first_day = today - timedelta(days=days - 1)

        result = await self.db.execute(
            select(CheckinEntry.created_at, CheckinEntry.duration, CheckinEntry.user_id)
            .where(CheckinEntry.is_loan.is_(False))
            .where(CheckinEntry.created_at >= day_start(first_day, zone))
            .where(CheckinEntry.created_at <= now)
        )

        buckets: dict[date, dict[str, Any]] = {
            first_day + timedelta(days=offset): {"checkins": 0, "minutes": 0, "users": set()}
            for offset in range(days)
        }
        for created_at, duration, user_id in result.all():
            bucket = buckets.get(local_day(created_at, zone))
            if bucket is None:
                continue
            bucket["checkins"] += 1
            bucket["minutes"] += duration
            bucket["users"].add(user_id)

        return [
            {
                "date": day.isoformat(),
                "checkins": stats["checkins"],
                "minutes": stats["minutes"],
                "users": len(stats["users"]),
            }
            for day, stats in sorted(buckets.items())
        ]

    async def category_breakdown(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> dict[str, list[dict[str, Any]]]:
        """Counts and minutes per category and per (category, subcategory).

        Percentages are shares of all categorised entries in the range.
        """
        base = select(CheckinEntry).where(
            CheckinEntry.is_loan.is_(False),
            CheckinEntry.category.is_not(None),
        )
        if start is not None:
            base = base.where(CheckinEntry.created_at >= ensure_utc(start))
        if end is not None:
            base = base.where(CheckinEntry.created_at < ensure_utc(end))
        entries = base.subquery()

        categories = (
            await self.db.execute(
                select(
                    entries.c.category,
                    func.count(entries.c.id),
                    func.coalesce(func.sum(entries.c.duration), 0),
                )
                .group_by(entries.c.category)
                .order_by(func.count(entries.c.id).desc(), entries.c.category)
            )
        ).all()
        total = sum(int(count) for _, count, _ in categories)

        subcategories = (
            await self.db.execute(
                select(
                    entries.c.category,
                    entries.c.subcategory,
                    func.count(entries.c.id),
                    func.coalesce(func.sum(entries.c.duration), 0),
                )
                .where(entries.c.subcategory.is_not(None))
                .group_by(entries.c.category, entries.c.subcategory)
                .order_by(
                    func.count(entries.c.id).desc(),
                    entries.c.category,
                    entries.c.subcategory,
                )
            )
        ).all()

        def percentage(count: int) -> int:
            return round(count * 100 / total) if total else 0

        return {
            "categories": [
                {
                    "category": category,
                    "count": int(count),
                    "minutes": int(minutes),
                    "percentage": percentage(int(count)),
                }
                for category, count, minutes in categories
            ],
            "subcategories": [
                {
                    "category": category,
                    "subcategory": subcategory,
                    "count": int(count),
                    "minutes": int(minutes),
                    "percentage": percentage(int(count)),
                }
                for category, subcategory, count, minutes in subcategories
            ],
        }

    async def list_users(
        self,
        *,
        keyword: str | None = None,
        sort_by: str = "createdAt",
        sort_order: str = "desc",
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[dict[str, Any]], int]:
        """User directory with per-user totals, for the admin list view.

        ``keyword`` matches a substring of the nickname or the chat id.
        Ties on the sort column fall back to the chat id.
        """
        entry_count = (
            select(func.count(CheckinEntry.id))
            .where(CheckinEntry.user_id == User.id)
            .scalar_subquery()
        )
        normal_minutes = (
            select(func.coalesce(func.sum(CheckinEntry.duration), 0))
            .where(CheckinEntry.user_id == User.id)
            .where(CheckinEntry.is_loan.is_(False))
            .scalar_subquery()
        )
        achievement_count = (
            select(func.count(AchievementGrant.id))
            .where(AchievementGrant.user_id == User.id)
            .scalar_subquery()
        )

        stmt = select(User)
        if keyword:
            stmt = stmt.where(
                or_(
                    User.nickname.contains(keyword, autoescape=True),
                    User.external_id.contains(keyword, autoescape=True),
                )
            )
        total = await self.db.scalar(select(func.count()).select_from(stmt.subquery()))

        column = USER_SORT_COLUMNS.get(sort_by, User.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        rows = (
            await self.db.execute(
                stmt.add_columns(
                    entry_count.label("entry_count"),
                    normal_minutes.label("total_minutes"),
                    achievement_count.label("achievement_count"),
                )
                .order_by(ordering, User.external_id.asc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
        ).all()

        items = [
            {
                "user_id": user.external_id,
                "nickname": user.nickname,
                "streak_days": user.streak_days,
                "max_streak": user.max_streak,
                "daily_goal": user.daily_goal,
                "created_at": user.created_at.isoformat(),
                "entry_count": int(entries),
                "total_minutes": int(minutes),
                "achievement_count": int(achievements),
            }
            for user, entries, minutes, achievements in rows
        ]
        return items, int(total or 0)

    async def user_detail(self, external_id: str) -> dict[str, Any]:
        """Profile, lifetime figures and the latest entries of one user."""
        user = await self.db.scalar(select(User).where(User.external_id == external_id))
        if user is None:
            raise UserNotFoundError(external_id)

        entry_count = await self.db.scalar(
            select(func.count(CheckinEntry.id)).where(CheckinEntry.user_id == user.id)
        )
        normal_count, normal_minutes = (
            await self.db.execute(
                select(
                    func.count(CheckinEntry.id),
                    func.coalesce(func.sum(CheckinEntry.duration), 0),
                )
                .where(CheckinEntry.user_id == user.id)
                .where(CheckinEntry.is_loan.is_(False))
            )
        ).one()
        achievement_count = await self.db.scalar(
            select(func.count(AchievementGrant.id)).where(AchievementGrant.user_id == user.id)
        )
        by_category = (
            await self.db.execute(
                select(CheckinEntry.category, func.sum(CheckinEntry.duration))
                .where(CheckinEntry.user_id == user.id)
                .where(CheckinEntry.is_loan.is_(False))
                .where(CheckinEntry.category.is_not(None))
                .group_by(CheckinEntry.category)
                .order_by(CheckinEntry.category)
            )
        ).all()
        recent = (
            await self.db.execute(
                select(CheckinEntry)
                .where(CheckinEntry.user_id == user.id)
                .order_by(CheckinEntry.created_at.desc(), CheckinEntry.id.desc())
                .limit(RECENT_DETAIL_ENTRIES)
            )
        ).scalars().all()

        return {
            "user_id": user.external_id,
            "nickname": user.nickname,
            "streak_days": user.streak_days,
            "max_streak": user.max_streak,
            "last_checkin_date": (
                user.last_checkin_date.isoformat() if user.last_checkin_date else None
            ),
            "daily_goal": user.daily_goal,
            "created_at": user.created_at.isoformat(),
            "stats": {
                "total_minutes": int(normal_minutes),
                "total_checkins": int(entry_count or 0),
                "average_minutes": round(normal_minutes / normal_count) if normal_count else 0,
                "achievement_count": int(achievement_count or 0),
                "category_minutes": {category: int(minutes) for category, minutes in by_category},
            },
            "recent_entries": [EntrySnapshot.from_entry(e).to_dict() for e in recent],
        }

    async def export_entries(
        self,
        *,
        start: date | None = None,
        end: date | None = None,
        user_id: str | None = None,
        category: str | None = None,
    ) -> list[tuple[Any, ...]]:
        """Entry rows for the CSV export, newest first.

        ``start`` and ``end`` are local days, both inclusive. ``user_id`` is
        the chat id. Loans are included and flagged.
        """
        zone = self.settings.zone
        stmt = select(CheckinEntry, User.nickname, User.external_id).join(
            User, User.id == CheckinEntry.user_id
        )
        if start is not None:
            stmt = stmt.where(CheckinEntry.created_at >= day_start(start, zone))
        if end is not None:
            stmt = stmt.where(CheckinEntry.created_at < day_bounds(end, zone)[1])
        if user_id is not None:
            stmt = stmt.where(User.external_id == user_id)
        if category is not None:
            stmt = stmt.where(CheckinEntry.category == category)

        result = await self.db.execute(
            stmt.order_by(CheckinEntry.created_at.desc(), CheckinEntry.id.desc())
        )
        return [
            (
                entry.id,
                nickname,
                external_id,
                entry.content,
                entry.duration,
                "yes" if entry.is_loan else "no",
                entry.category or "",
                entry.subcategory or "",
                ensure_utc(entry.created_at).astimezone(zone).strftime("%Y-%m-%d %H:%M:%S"),
            )
            for entry, nickname, external_id in result.all()
        ]


def render_csv(rows: list[tuple[Any, ...]]) -> str:
    """CSV text with a UTF-8 BOM so spreadsheet tools detect the encoding."""
    buffer = io.StringIO()
    buffer.write("\ufeff")
    writer = csv.writer(buffer)
    writer.writerow(EXPORT_HEADER)
    writer.writerows(rows)
    return buffer.getvalue()
