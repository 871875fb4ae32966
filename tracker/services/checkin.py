"""Check-in service.

Entry point for the chat bot and the admin surface. Every write runs the
same way: take the user's lock, run the whole read-modify-write sequence in
one transaction, commit once. For a check-in that sequence is

    ledger append -> debt recompute -> streak transition
    -> achievement grants -> goal progress

so either all of it lands or the ledger append never happened. Lost
updates surface as ``ConcurrencyConflictError`` and are retried a few times
before the caller sees ``TransientFailureError``.
"""

from collections.abc import Awaitable, Callable
from datetime import date, datetime, timedelta
from typing import Any, TypeVar

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tracker.config import Settings, get_settings
from tracker.logging_config import get_logger, user_log_context
from tracker.models.user import User
from tracker.schemas.checkin import (
    AchievementSummary,
    CheckinRequest,
    CheckinResult,
    EntrySnapshot,
    HeldAchievement,
    UserStats,
)
from tracker.services.achievements import AchievementContext, AchievementEngine
from tracker.services.debt import DebtCalculator, repayment
from tracker.services.goals import GoalProgressCalculator
from tracker.services.leaderboard import (
    LeaderboardAggregator,
    LeaderboardWindow,
    NoData,
    RankedList,
)
from tracker.services.ledger import LedgerFilter, LedgerStore
from tracker.services.streak import StreakTracker
from tracker.services.user import UserService
from tracker.utils.clock import day_bounds, local_day, local_hour, utcnow
from tracker.utils.errors import (
    ConcurrencyConflictError,
    EntryNotFoundError,
    ErrorCode,
    TransientFailureError,
    ValidationError,
)
from tracker.utils.locks import LockManager, get_lock_manager

logger = get_logger(__name__)

T = TypeVar("T")

MAX_CONFLICT_RETRIES = 3


class CheckinService:
    """Check-in accounting and gamification facade."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings | None = None,
        locks: LockManager | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.locks = locks or get_lock_manager()

        self.users = UserService(db, self.settings)
        self.ledger = LedgerStore(db)
        self.debt = DebtCalculator(db)
        self.streaks = StreakTracker(db)
        self.achievements = AchievementEngine(db, self.settings)
        self.goals = GoalProgressCalculator(db, self.settings)
        self.leaderboard = LeaderboardAggregator(db, self.settings)

    # ------------------------------------------------------------------
    # Critical section
    # ------------------------------------------------------------------

    @retry(
        retry=retry_if_exception_type(ConcurrencyConflictError),
        stop=stop_after_attempt(MAX_CONFLICT_RETRIES),
        wait=wait_exponential(multiplier=0.05, max=0.5),
        reraise=True,
    )
    async def _run_locked(
        self,
        external_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        async with self.locks.hold(external_id):
            with user_log_context(external_id):
                try:
                    result = await operation()
                    await self.db.commit()
                    return result
                except (StaleDataError, IntegrityError) as exc:
                    await self.db.rollback()
                    logger.warning(
                        "user_update_conflict",
                        error=type(exc).__name__,
                    )
                    raise ConcurrencyConflictError(
                        details={"userId": external_id}
                    ) from exc
                except Exception:
                    await self.db.rollback()
                    raise

    async def _execute(
        self,
        external_id: str,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        try:
            return await self._run_locked(external_id, operation)
        except ConcurrencyConflictError as exc:
            logger.error("user_update_retries_exhausted", user_id=external_id)
            raise TransientFailureError(details={"userId": external_id}) from exc

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    @staticmethod
    def validate(payload: CheckinRequest | dict[str, Any]) -> CheckinRequest:
        """Validate a raw payload before anything touches the database."""
        if isinstance(payload, CheckinRequest):
            return payload
        try:
            return CheckinRequest.model_validate(payload)
        except PydanticValidationError as exc:
            errors = [
                {"loc": list(err["loc"]), "msg": err["msg"], "type": err["type"]}
                for err in exc.errors()
            ]
            code = ErrorCode.INVALID_REQUEST
            if any(err["type"] == "missing" for err in errors):
                code = ErrorCode.MISSING_FIELD
            elif any(err["loc"][:1] == ["duration"] for err in errors):
                code = ErrorCode.INVALID_DURATION
            raise ValidationError(
                "Invalid check-in request",
                code=code,
                details={"errors": errors},
            ) from exc

    async def submit_checkin(
        self,
        payload: CheckinRequest | dict[str, Any],
    ) -> CheckinResult:
        """Record a check-in and update debt, streak, badges and goal."""
        request = self.validate(payload)
        return await self._execute(
            request.user_id, lambda: self._apply_checkin(request)
        )

    async def _apply_checkin(self, request: CheckinRequest) -> CheckinResult:
        zone = self.settings.zone
        timestamp = request.timestamp or utcnow()
        day = local_day(timestamp, zone)

        user = await self.users.get_or_create(request.user_id, request.nickname)
        debt_before = await self.debt.compute_debt(user.id)

        entry = await self.ledger.append(
            user.id,
            request.duration,
            request.content,
            created_at=timestamp,
            scope=request.scope,
            is_loan=request.is_loan,
            category=request.category,
            subcategory=request.subcategory,
            encouragement=request.encouragement,
        )
        debt_after = await self.debt.compute_debt(user.id)

        new_achievements: list[str] = []
        is_new_segment = False
        if not request.is_loan:
            transition = await self.streaks.apply(user, day)
            is_new_segment = transition.is_new_segment

            normal_minutes, _ = await self.ledger.totals(user.id)
            context = AchievementContext(
                streak_days=user.streak_days,
                total_normal_minutes=normal_minutes,
                debt_before=debt_before,
                debt_after=debt_after,
                is_loan_entry=False,
                local_hour=local_hour(timestamp, zone),
            )
            new_achievements = await self.achievements.evaluate(
                user.id, context, timestamp
            )

        last_normal = 0 if request.is_loan else request.duration
        goal_progress = await self.goals.progress(user, timestamp, last_normal)
        start, end = day_bounds(day, zone)
        today = await self.ledger.aggregate(
            user.id, LedgerFilter(is_loan=False, start=start, end=end)
        )

        result = CheckinResult(
            entry_id=entry.id,
            debt_before=debt_before,
            debt_after=debt_after,
            repaid=repayment(request.duration, debt_before, request.is_loan),
            streak_days=user.streak_days,
            max_streak=user.max_streak,
            is_new_streak_segment=is_new_segment,
            new_achievements=new_achievements,
            goal_progress=goal_progress,
            today_normal_minutes=today.total_duration,
            today_entry_count=today.count,
        )

        logger.info(
            "checkin_recorded",
            entry_id=entry.id,
            scope=request.scope,
            duration=request.duration,
            is_loan=request.is_loan,
            debt_before=debt_before,
            debt_after=debt_after,
            streak_days=user.streak_days,
            new_achievements=new_achievements,
        )
        return result

    async def undo_last_entry(
        self,
        external_id: str,
        for_day: date | None = None,
    ) -> EntrySnapshot:
        """Remove the user's most recent entry on ``for_day`` (default today).

        Streak counters are left as they are; debt follows automatically
        because it is derived from the ledger.
        """
        zone = self.settings.zone
        day = for_day or local_day(utcnow(), zone)
        start, end = day_bounds(day, zone)

        async def operation() -> EntrySnapshot:
            user = await self.users.require(external_id, for_update=True)
            entry = await self.ledger.delete_most_recent(user.id, start, end)
            if entry is None:
                raise EntryNotFoundError(external_id, day.isoformat())
            return EntrySnapshot.from_entry(entry)

        removed = await self._execute(external_id, operation)
        logger.info(
            "checkin_undone",
            user_id=external_id,
            entry_id=removed.id,
            duration=removed.duration,
            is_loan=removed.is_loan,
        )
        return removed

    async def register_user(self, external_id: str, nickname: str | None = None) -> User:
        return await self._execute(
            external_id, lambda: self.users.get_or_create(external_id, nickname)
        )

    async def set_daily_goal(self, external_id: str, minutes: int | None) -> User:
        """Set or clear the daily goal; validated before locking."""
        goal = self.users.validate_goal(minutes)

        async def operation() -> User:
            user = await self.users.require(external_id, for_update=True)
            return await self.users.set_daily_goal(user, goal)

        return await self._execute(external_id, operation)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def query_user_stats(self, external_id: str) -> UserStats:
        user = await self.users.require(external_id)
        normal, loan = await self.ledger.totals(user.id)
        everything = await self.ledger.aggregate(user.id)
        recent = await self.ledger.query(
            user.id, limit=self.settings.recent_entries_limit
        )
        return UserStats(
            user_id=user.external_id,
            nickname=user.nickname,
            total_normal_minutes=normal,
            total_loan_minutes=loan,
            debt=await self.debt.compute_debt(user.id),
            streak_days=user.streak_days,
            max_streak=user.max_streak,
            last_checkin_date=user.last_checkin_date,
            daily_goal=user.daily_goal,
            entry_count=everything.count,
            recent_entries=[EntrySnapshot.from_entry(e) for e in recent],
        )

    async def query_leaderboard(
        self,
        scope: str | None,
        window: LeaderboardWindow | str = LeaderboardWindow.WEEK,
        limit: int | None = None,
        now: datetime | None = None,
    ) -> RankedList | NoData:
        return await self.leaderboard.rank(scope, window, limit, now)

    async def query_achievements(
        self,
        external_id: str,
        now: datetime | None = None,
    ) -> AchievementSummary:
        """Held badges and the catalog, after backfilling missed grants."""
        now = now or utcnow()

        async def operation() -> AchievementSummary:
            user = await self.users.require(external_id, for_update=True)
            backfilled = await self.achievements.backfill(user.id, user.max_streak, now)
            held = await self.achievements.held(user.id)
            return AchievementSummary(
                held=[HeldAchievement(g.achievement_id, g.unlocked_at) for g in held],
                catalog=[d.to_dict() for d in self.achievements.catalog()],
                backfilled=backfilled,
            )

        return await self._execute(external_id, operation)

    # ------------------------------------------------------------------
    # Scheduler hooks
    # ------------------------------------------------------------------

    async def find_at_risk_users(self, today: date | None = None) -> list[User]:
        """Users who checked in yesterday but not yet today."""
        today = today or local_day(utcnow(), self.settings.zone)
        return await self.streaks.find_at_risk(today)

    async def sweep_missed_streaks(self, ended_day: date | None = None) -> list[str]:
        """End-of-day reset for users who missed ``ended_day`` (default yesterday)."""
        if ended_day is None:
            ended_day = local_day(utcnow(), self.settings.zone) - timedelta(days=1)
        return await self.streaks.sweep_missed(ended_day, self.locks)
