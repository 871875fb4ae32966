"""Daily goal progress."""

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.models.user import User
from tracker.services.ledger import LedgerFilter, LedgerStore
from tracker.utils.clock import day_bounds, local_day


@dataclass(frozen=True)
class GoalProgress:
    today_normal_minutes: int
    goal: int | None
    percent: int | None
    achieved_just_now: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "today_normal_minutes": self.today_normal_minutes,
            "goal": self.goal,
            "percent": self.percent,
            "achieved_just_now": self.achieved_just_now,
        }


def compute_progress(
    today_minutes: int,
    goal: int | None,
    last_entry_duration: int = 0,
) -> GoalProgress:
    """Progress toward ``goal``.

    ``achieved_just_now`` is True only for the entry that crossed the goal,
    not for later entries on an already-achieved day.
    """
    if not goal:
        return GoalProgress(today_minutes, None, None, False)

    percent = min(100, today_minutes * 100 // goal)
    crossed = today_minutes - last_entry_duration < goal <= today_minutes
    return GoalProgress(today_minutes, goal, percent, crossed)


class GoalProgressCalculator:
    """Compares today's normal minutes with the user's goal."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.ledger = LedgerStore(db)

    async def progress(
        self,
        user: User,
        as_of: datetime,
        last_entry_duration: int = 0,
    ) -> GoalProgress:
        """Progress on the local day containing ``as_of``.

        Pass the normal entry just recorded as ``last_entry_duration``; loans
        pass 0 since they never count toward the goal.
        """
        start, end = day_bounds(local_day(as_of, self.settings.zone), self.settings.zone)
        today = await self.ledger.aggregate(
            user.id, LedgerFilter(is_loan=False, start=start, end=end)
        )
        return compute_progress(today.total_duration, user.daily_goal, last_entry_duration)
