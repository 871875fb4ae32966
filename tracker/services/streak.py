"""Streak tracker.

One streak per user, keyed by calendar day in the reference
timezone. Only normal check-ins move it; loans never reach this module.

Transitions on a normal check-in at day D:
- no previous day            -> 1 (new segment)
- previous day == D          -> unchanged (second check-in the same day)
- previous day == D - 1      -> +1
- previous day <= D - 2      -> 1 (new segment)
- previous day >  D          -> unchanged (late-delivered message)
"""

from dataclasses import dataclass
from datetime import date, timedelta

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from tracker.logging_config import get_logger
from tracker.models.user import User
from tracker.utils.locks import LockManager

logger = get_logger(__name__)


@dataclass(frozen=True)
class StreakState:
    streak_days: int = 0
    max_streak: int = 0
    last_checkin_date: date | None = None


@dataclass(frozen=True)
class StreakTransition:
    before: StreakState
    after: StreakState
    is_new_segment: bool

    @property
    def changed(self) -> bool:
        return self.before != self.after


def advance_streak(state: StreakState, day: date) -> StreakTransition:
    """Apply one normal check-in on ``day`` to ``state``."""
    last = state.last_checkin_date

    if last is not None and day <= last:
        return StreakTransition(before=state, after=state, is_new_segment=False)

    if last is not None and last == day - timedelta(days=1) and state.streak_days > 0:
        new_streak = state.streak_days + 1
        is_new_segment = False
    else:
        new_streak = 1
        is_new_segment = True

    after = StreakState(
        streak_days=new_streak,
        max_streak=max(state.max_streak, new_streak),
        last_checkin_date=day,
    )
    return StreakTransition(before=state, after=after, is_new_segment=is_new_segment)


def state_of(user: User) -> StreakState:
    return StreakState(
        streak_days=user.streak_days or 0,
        max_streak=user.max_streak or 0,
        last_checkin_date=user.last_checkin_date,
    )


class StreakTracker:
    """Applies streak transitions and runs the end-of-day sweep."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def apply(self, user: User, day: date) -> StreakTransition:
        """Advance ``user``'s streak for a normal check-in on ``day``.

        Must run inside the user's critical section.
        """
        transition = advance_streak(state_of(user), day)
        if transition.changed:
            user.streak_days = transition.after.streak_days
            user.max_streak = transition.after.max_streak
            user.last_checkin_date = transition.after.last_checkin_date
            await self.db.flush()

            logger.info(
                "streak_advanced",
                user_id=user.id,
                streak_days=user.streak_days,
                max_streak=user.max_streak,
                new_segment=transition.is_new_segment,
            )
        return transition

    async def find_at_risk(self, today: date) -> list[User]:
        """Users whose streak ends unless they check in ``today``.

        Read-only; the reminder scheduler decides when to call it.
        """
        result = await self.db.execute(
            select(User)
            .where(User.streak_days > 0)
            .where(User.last_checkin_date == today - timedelta(days=1))
            .order_by(User.external_id)
        )
        return list(result.scalars().all())

    async def sweep_missed(self, ended_day: date, locks: LockManager) -> list[str]:
        """Reset streaks of users with no normal check-in on ``ended_day``.

        Each candidate is re-read and reset inside its own per-user lock,
        so a check-in racing the sweep is either fully before or fully
        after the reset. Returns the external ids that were reset.
        """
        result = await self.db.execute(
            select(User.id, User.external_id)
            .where(User.streak_days > 0)
            .where(User.last_checkin_date < ended_day)
            .order_by(User.external_id)
        )
        candidates = list(result.all())
        # End the read transaction before taking per-user locks
        await self.db.commit()

        reset: list[str] = []
        for user_id, external_id in candidates:
            async with locks.hold(external_id):
                try:
                    user = await self.db.get(User, user_id, populate_existing=True)
                    if (
                        user is None
                        or user.streak_days == 0
                        or user.last_checkin_date is None
                        or user.last_checkin_date >= ended_day
                    ):
                        # Checked in while we were waiting for the lock
                        await self.db.commit()
                        continue
                    previous = user.streak_days
                    user.streak_days = 0
                    await self.db.commit()
                except (StaleDataError, IntegrityError) as exc:
                    await self.db.rollback()
                    logger.warning(
                        "user_update_conflict",
                        user_id=user_id,
                        error=type(exc).__name__,
                    )
                    continue
                except Exception:
                    await self.db.rollback()
                    raise

            reset.append(external_id)
            logger.info(
                "streak_reset",
                user_id=user_id,
                previous_streak=previous,
                last_checkin_date=str(user.last_checkin_date),
                ended_day=str(ended_day),
            )
        return reset
