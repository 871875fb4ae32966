"""Tests for CheckinService, the check-in facade."""

import asyncio
from datetime import date, timedelta

import pytest
import structlog
from sqlalchemy import func, select
from sqlalchemy.orm.exc import StaleDataError

from tracker.models import AchievementGrant, CheckinEntry, User
from tracker.services.checkin import CheckinService
from tracker.services.leaderboard import NoData
from tracker.utils.errors import (
    EntryNotFoundError,
    ErrorCode,
    InvalidGoalError,
    TransientFailureError,
    UserNotFoundError,
    ValidationError,
)
from tracker.utils.locks import UserLockManager

D = date(2024, 3, 11)


@pytest.fixture
def checkin(local_time):
    """Build a check-in payload at a local time on ``day``."""

    def _make(user_id="alice", duration=30, day=D, hour=12, minute=0, **extra):
        payload = {
            "user_id": user_id,
            "duration": duration,
            "content": "studying",
            "scope": "group-1",
            "timestamp": local_time(day, hour, minute),
        }
        payload.update(extra)
        return payload

    return _make


async def grant_count(db, user_id: str, achievement_id: str) -> int:
    return await db.scalar(
        select(func.count(AchievementGrant.id))
        .where(AchievementGrant.user_id == user_id)
        .where(AchievementGrant.achievement_id == achievement_id)
    )


class TestFirstDay:
    @pytest.mark.asyncio
    async def test_first_checkin_then_same_day_again(self, db, service, checkin):
        first = await service.submit_checkin(checkin(duration=30, hour=10))

        assert first.streak_days == 1
        assert first.is_new_streak_segment is True
        assert first.debt_before == 0
        assert first.debt_after == 0
        assert first.new_achievements == ["first_checkin"]
        assert first.today_normal_minutes == 30

        second = await service.submit_checkin(checkin(duration=30, hour=15))

        assert second.streak_days == 1
        assert second.is_new_streak_segment is False
        assert second.today_normal_minutes == 60
        assert second.today_entry_count == 2
        assert "first_checkin" not in second.new_achievements
        # 60 total normal minutes
        assert second.new_achievements == ["minutes_60"]

        user = await service.users.require("alice")
        assert await grant_count(db, user.id, "first_checkin") == 1

    @pytest.mark.asyncio
    async def test_user_created_with_nickname(self, service, checkin):
        await service.submit_checkin(checkin(nickname="Alice"))

        user = await service.users.require("alice")
        assert user.nickname == "Alice"

        await service.submit_checkin(checkin(nickname="Alice W."))

        user = await service.users.require("alice")
        assert user.nickname == "Alice W."


class TestDebt:
    @pytest.mark.asyncio
    async def test_loan_repayment_and_debt_free(self, db, service, checkin):
        loan = await service.submit_checkin(checkin(duration=120, is_loan=True, hour=8))

        assert loan.debt_after == 120
        assert loan.repaid == 0
        assert loan.new_achievements == []
        assert loan.streak_days == 0

        partial = await service.submit_checkin(checkin(duration=50, hour=9))

        assert partial.debt_before == 120
        assert partial.debt_after == 70
        assert partial.repaid == 50
        assert "debt_free" not in partial.new_achievements

        payoff = await service.submit_checkin(checkin(duration=80, hour=10))

        assert payoff.debt_after == 0
        assert payoff.repaid == 70
        assert "debt_free" in payoff.new_achievements

        # Borrow and repay again: no second grant
        await service.submit_checkin(checkin(duration=10, is_loan=True, hour=11))
        again = await service.submit_checkin(checkin(duration=10, hour=12))

        assert again.debt_after == 0
        assert "debt_free" not in again.new_achievements
        user = await service.users.require("alice")
        assert await grant_count(db, user.id, "debt_free") == 1

    @pytest.mark.asyncio
    async def test_loan_does_not_move_streak_or_goal(self, service, make_user, checkin):
        await make_user("alice", streak_days=2, last_checkin_date=D - timedelta(days=1), daily_goal=30)

        result = await service.submit_checkin(checkin(duration=60, is_loan=True))

        assert result.streak_days == 2
        assert result.is_new_streak_segment is False
        assert result.goal_progress.today_normal_minutes == 0
        assert result.goal_progress.achieved_just_now is False

        user = await service.users.require("alice")
        assert user.last_checkin_date == D - timedelta(days=1)


class TestStreakAndGoal:
    @pytest.mark.asyncio
    async def test_seventh_day_reaches_goal(self, service, make_user, checkin):
        await make_user("alice", streak_days=6, last_checkin_date=D - timedelta(days=1), daily_goal=60)

        result = await service.submit_checkin(checkin(duration=60))

        assert result.streak_days == 7
        assert result.max_streak == 7
        assert "streak_7" in result.new_achievements
        assert result.goal_progress.goal == 60
        assert result.goal_progress.percent == 100
        assert result.goal_progress.achieved_just_now is True

    @pytest.mark.asyncio
    async def test_goal_achieved_only_once(self, service, make_user, checkin):
        await make_user("alice", daily_goal=40)

        first = await service.submit_checkin(checkin(duration=30, hour=9))
        crossing = await service.submit_checkin(checkin(duration=20, hour=10))
        after = await service.submit_checkin(checkin(duration=20, hour=11))

        assert first.goal_progress.achieved_just_now is False
        assert first.goal_progress.percent == 75
        assert crossing.goal_progress.achieved_just_now is True
        assert after.goal_progress.achieved_just_now is False

    @pytest.mark.asyncio
    async def test_gap_resets_and_max_is_kept(self, service, make_user, checkin):
        await make_user("alice", streak_days=9, last_checkin_date=D - timedelta(days=3))

        result = await service.submit_checkin(checkin())

        assert result.streak_days == 1
        assert result.max_streak == 9
        assert result.is_new_streak_segment is True

    @pytest.mark.asyncio
    async def test_time_of_day_badges(self, service, checkin):
        early = await service.submit_checkin(checkin(user_id="lark", hour=6))
        late = await service.submit_checkin(checkin(user_id="owl", hour=0, minute=30))

        assert "early_bird" in early.new_achievements
        assert "night_owl" in late.new_achievements


class TestValidation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("duration", [0, -5, 10081])
    async def test_invalid_duration_rejected_before_any_write(self, db, service, checkin, duration):
        with pytest.raises(ValidationError) as exc_info:
            await service.submit_checkin(checkin(duration=duration))

        assert exc_info.value.code == ErrorCode.INVALID_DURATION.value
        assert await db.scalar(select(func.count(User.id))) == 0
        assert await db.scalar(select(func.count(CheckinEntry.id))) == 0

    @pytest.mark.asyncio
    async def test_missing_content(self, service, checkin):
        payload = checkin()
        del payload["content"]

        with pytest.raises(ValidationError) as exc_info:
            await service.submit_checkin(payload)

        assert exc_info.value.code == ErrorCode.MISSING_FIELD.value
        assert exc_info.value.details["errors"][0]["loc"] == ["content"]

    @pytest.mark.asyncio
    async def test_maximum_duration_accepted(self, service, checkin):
        result = await service.submit_checkin(checkin(duration=10080))
        assert result.today_normal_minutes == 10080


class TestUndo:
    @pytest.mark.asyncio
    async def test_removes_latest_entry_and_debt_follows(self, service, checkin):
        await service.submit_checkin(checkin(duration=100, is_loan=True, hour=8))
        await service.submit_checkin(checkin(duration=40, hour=9))

        removed = await service.undo_last_entry("alice", D)

        assert removed.duration == 40
        assert removed.is_loan is False
        stats = await service.query_user_stats("alice")
        assert stats.debt == 100
        assert stats.entry_count == 1
        # Streak counters are not rolled back
        assert stats.streak_days == 1

    @pytest.mark.asyncio
    async def test_nothing_to_undo(self, service, make_user):
        await make_user("alice")

        with pytest.raises(EntryNotFoundError):
            await service.undo_last_entry("alice", D)

    @pytest.mark.asyncio
    async def test_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.undo_last_entry("nobody", D)


class TestQueries:
    @pytest.mark.asyncio
    async def test_user_stats(self, service, settings, checkin):
        for hour in range(8, 15):
            await service.submit_checkin(checkin(duration=10, hour=hour))
        await service.submit_checkin(checkin(duration=25, hour=16, is_loan=True))

        stats = await service.query_user_stats("alice")

        assert stats.total_normal_minutes == 70
        assert stats.total_loan_minutes == 25
        assert stats.debt == 0
        assert stats.entry_count == 8
        assert stats.last_checkin_date == D
        assert len(stats.recent_entries) == settings.recent_entries_limit
        assert stats.recent_entries[0].is_loan is True

    @pytest.mark.asyncio
    async def test_user_stats_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.query_user_stats("nobody")

    @pytest.mark.asyncio
    async def test_leaderboard_no_data_for_empty_scope(self, service):
        result = await service.query_leaderboard("empty-group", "all")

        assert isinstance(result, NoData)

    @pytest.mark.asyncio
    async def test_leaderboard_excludes_loans(self, service, checkin, local_time):
        await service.submit_checkin(checkin(user_id="alice", duration=30))
        await service.submit_checkin(checkin(user_id="bob", duration=300, is_loan=True))

        result = await service.query_leaderboard("group-1", "today", now=local_time(D, 23))

        assert [e.external_id for e in result.entries] == ["alice"]

    @pytest.mark.asyncio
    async def test_achievements_backfill_missing_grants(self, db, service, make_user, local_time):
        user = await make_user("veteran", streak_days=3, max_streak=3)
        db.add(
            CheckinEntry(
                user_id=user.id,
                scope="group-1",
                duration=90,
                content="imported",
                is_loan=False,
                created_at=local_time(D, 12),
            )
        )
        await db.commit()

        summary = await service.query_achievements("veteran", now=local_time(D, 13))

        assert summary.backfilled == ["first_checkin", "streak_3", "minutes_60"]
        assert [h.achievement_id for h in summary.held] == summary.backfilled
        assert len(summary.catalog) == 10

        again = await service.query_achievements("veteran", now=local_time(D, 14))
        assert again.backfilled == []
        assert len(again.held) == 3


class TestUsersAndGoals:
    @pytest.mark.asyncio
    async def test_register_user_is_idempotent(self, db, service):
        first = await service.register_user("alice", "Alice")
        second = await service.register_user("alice", "Ally")

        assert first.id == second.id
        assert second.nickname == "Ally"
        assert await db.scalar(select(func.count(User.id))) == 1

    @pytest.mark.asyncio
    async def test_set_and_clear_goal(self, service):
        await service.register_user("alice")

        user = await service.set_daily_goal("alice", 90)
        assert user.daily_goal == 90

        user = await service.set_daily_goal("alice", None)
        assert user.daily_goal is None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("minutes", [0, -1, 1441])
    async def test_invalid_goal(self, service, minutes):
        await service.register_user("alice")

        with pytest.raises(InvalidGoalError) as exc_info:
            await service.set_daily_goal("alice", minutes)

        assert exc_info.value.code == ErrorCode.INVALID_GOAL.value

    @pytest.mark.asyncio
    async def test_goal_for_unknown_user(self, service):
        with pytest.raises(UserNotFoundError):
            await service.set_daily_goal("nobody", 30)


class TestScheduler:
    @pytest.mark.asyncio
    async def test_at_risk_and_sweep(self, service, make_user):
        await make_user("alice", streak_days=4, last_checkin_date=D - timedelta(days=1))
        await make_user("bob", streak_days=2, last_checkin_date=D)

        at_risk = await service.find_at_risk_users(D)
        assert [u.external_id for u in at_risk] == ["alice"]

        # Day D ended without alice checking in
        reset = await service.sweep_missed_streaks(D)
        assert reset == ["alice"]

        alice = await service.users.require("alice")
        assert alice.streak_days == 0
        assert alice.max_streak == 4

    @pytest.mark.asyncio
    async def test_checkin_after_sweep_starts_new_segment(self, service, make_user, checkin):
        await make_user("alice", streak_days=4, last_checkin_date=D - timedelta(days=2))
        await service.sweep_missed_streaks(D - timedelta(days=1))

        result = await service.submit_checkin(checkin())

        assert result.streak_days == 1
        assert result.is_new_streak_segment is True


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_concurrent_checkins_for_same_user(self, session_factory, settings, checkin):
        locks = UserLockManager(acquire_timeout_ms=5000)

        async def submit(hour: int):
            async with session_factory() as session:
                service = CheckinService(session, settings=settings, locks=locks)
                return await service.submit_checkin(checkin(duration=30, hour=hour))

        results = await asyncio.gather(submit(9), submit(10))

        assert sorted(r.today_normal_minutes for r in results) == [30, 60]
        granted = [a for r in results for a in r.new_achievements]
        assert granted.count("first_checkin") == 1

        async with session_factory() as session:
            user = (
                await session.execute(select(User).where(User.external_id == "alice"))
            ).scalar_one()
            assert user.streak_days == 1
            assert await grant_count(session, user.id, "first_checkin") == 1
            assert await session.scalar(select(func.count(CheckinEntry.id))) == 2

    @pytest.mark.asyncio
    async def test_stale_user_row_detected(self, session_factory, make_user):
        await make_user("alice", streak_days=1)

        async with session_factory() as first, session_factory() as second:
            stale = (
                await second.execute(select(User).where(User.external_id == "alice"))
            ).scalar_one()
            await second.commit()

            fresh = (
                await first.execute(select(User).where(User.external_id == "alice"))
            ).scalar_one()
            fresh.streak_days = 2
            await first.commit()

            stale.streak_days = 5
            with pytest.raises(StaleDataError):
                await second.commit()

    @pytest.mark.asyncio
    async def test_conflict_is_retried(self, service, checkin):
        original = service._apply_checkin
        calls = 0

        async def flaky(request):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise StaleDataError("user row changed")
            return await original(request)

        service._apply_checkin = flaky

        result = await service.submit_checkin(checkin())

        assert calls == 2
        assert result.streak_days == 1

    @pytest.mark.asyncio
    async def test_persistent_conflict_becomes_transient_failure(self, db, service, checkin):
        calls = 0

        async def always_stale(request):
            nonlocal calls
            calls += 1
            raise StaleDataError("user row changed")

        service._apply_checkin = always_stale

        with pytest.raises(TransientFailureError):
            await service.submit_checkin(checkin())

        assert calls == 3
        assert await db.scalar(select(func.count(CheckinEntry.id))) == 0

    @pytest.mark.asyncio
    async def test_lock_timeout_becomes_transient_failure(self, db, settings, checkin):
        locks = UserLockManager(acquire_timeout_ms=10)
        service = CheckinService(db, settings=settings, locks=locks)

        async with locks.hold("alice"):
            with pytest.raises(TransientFailureError) as exc_info:
                await service.submit_checkin(checkin())

        assert exc_info.value.code == ErrorCode.TRANSIENT_FAILURE.value

    @pytest.mark.asyncio
    async def test_failure_rolls_back_ledger_append(self, db, service, checkin):
        async def broken_evaluate(*args, **kwargs):
            raise RuntimeError("rule crashed")

        service.achievements.evaluate = broken_evaluate

        with pytest.raises(RuntimeError):
            await service.submit_checkin(checkin())

        assert await db.scalar(select(func.count(CheckinEntry.id))) == 0
        assert await db.scalar(select(func.count(User.id))) == 0

    @pytest.mark.asyncio
    async def test_checkins_for_different_users_run_in_parallel(
        self, session_factory, settings, checkin
    ):
        locks = UserLockManager(acquire_timeout_ms=5000)

        async def submit(user_id: str):
            async with session_factory() as session:
                service = CheckinService(session, settings=settings, locks=locks)
                return await service.submit_checkin(checkin(user_id=user_id))

        results = await asyncio.gather(*(submit(f"u{i}") for i in range(8)))

        assert all(r.streak_days == 1 for r in results)
        async with session_factory() as session:
            assert await session.scalar(select(func.count(User.id))) == 8
            assert await session.scalar(select(func.count(CheckinEntry.id))) == 8


class TestCriticalSection:
    @pytest.mark.asyncio
    async def test_user_id_bound_to_log_context_while_locked(self, service, checkin):
        seen = {}
        original = service._apply_checkin

        async def recording(request):
            seen.update(structlog.contextvars.get_contextvars())
            return await original(request)

        service._apply_checkin = recording

        await service.submit_checkin(checkin(user_id="carol"))

        assert seen["user_id"] == "carol"
        assert "user_id" not in structlog.contextvars.get_contextvars()

    @pytest.mark.asyncio
    async def test_every_write_path_runs_under_the_lock(self, service, checkin):
        await service.register_user("dave", "Dave")
        await service.submit_checkin(checkin(user_id="dave"))
        await service.set_daily_goal("dave", 60)
        summary = await service.query_achievements("dave")
        removed = await service.undo_last_entry("dave", D)

        assert "first_checkin" in [h.achievement_id for h in summary.held]
        assert removed.duration == 30
