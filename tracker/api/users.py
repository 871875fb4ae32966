"""User API: registration, stats, achievements, daily goal and the admin directory."""

from datetime import date
from typing import Any, Literal

from fastapi import APIRouter, Query, status
from pydantic import BaseModel, Field

from tracker.api.deps import CheckinServiceDep, DbSession
from tracker.models.user import User
from tracker.schemas.checkin import EntrySnapshot
from tracker.schemas.common import PaginationMeta
from tracker.services.ledger import LedgerFilter, LedgerStore
from tracker.services.reports import ReportService
from tracker.services.user import UserService
from tracker.utils.clock import local_day, utcnow

router = APIRouter(prefix="/users", tags=["Users"])


# ============================================================================
# Request / Response Models
# ============================================================================


class RegisterUserRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    nickname: str | None = Field(default=None, max_length=100)


class GoalUpdateRequest(BaseModel):
    """``None`` clears the goal."""

    minutes: int | None = None


class UserResponse(BaseModel):
    user_id: str
    nickname: str
    streak_days: int
    max_streak: int
    last_checkin_date: date | None
    daily_goal: int | None


class AtRiskResponse(BaseModel):
    day: date
    users: list[UserResponse]


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.external_id,
        nickname=user.nickname,
        streak_days=user.streak_days,
        max_streak=user.max_streak,
        last_checkin_date=user.last_checkin_date,
        daily_goal=user.daily_goal,
    )


# ============================================================================
# API Endpoints
# ============================================================================


@router.post("", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register_user(body: RegisterUserRequest, service: CheckinServiceDep):
    """Create the user if needed; an existing user only gets a nickname update."""
    user = await service.register_user(body.user_id, body.nickname)
    return _user_response(user)


@router.get("/at-risk", response_model=AtRiskResponse)
async def list_at_risk_users(
    service: CheckinServiceDep,
    day: date | None = Query(None, description="Local day, defaults to today"),
):
    """Users whose streak ends unless they check in today."""
    day = day or local_day(utcnow(), service.settings.zone)
    users = await service.find_at_risk_users(day)
    return AtRiskResponse(
        day=day,
        users=[_user_response(u) for u in users],
    )


@router.get("/{user_id}/stats")
async def get_user_stats(user_id: str, service: CheckinServiceDep) -> dict[str, Any]:
    stats = await service.query_user_stats(user_id)
    return stats.to_dict()


@router.get("/{user_id}/achievements")
async def get_user_achievements(user_id: str, service: CheckinServiceDep) -> dict[str, Any]:
    """Held badges plus the full catalog; grants anything missed first."""
    summary = await service.query_achievements(user_id)
    return summary.to_dict()


@router.put("/{user_id}/goal", response_model=UserResponse)
async def set_daily_goal(
    user_id: str,
    body: GoalUpdateRequest,
    service: CheckinServiceDep,
):
    user = await service.set_daily_goal(user_id, body.minutes)
    return _user_response(user)


@router.post("/streaks/sweep")
async def sweep_missed_streaks(
    service: CheckinServiceDep,
    ended_day: date | None = Query(None, description="Local day that just ended"),
) -> dict[str, Any]:
    """End-of-day reset, called by the scheduler after local midnight."""
    reset = await service.sweep_missed_streaks(ended_day)
    return {"reset": reset, "count": len(reset)}


# ============================================================================
# Admin Directory
# ============================================================================


@router.get("")
async def list_users(
    db: DbSession,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    keyword: str | None = Query(None, description="Substring of the nickname or chat id"),
    sort_by: Literal["createdAt", "streakDays"] = Query("createdAt", alias="sortBy"),
    sort_order: Literal["asc", "desc"] = Query("desc", alias="sortOrder"),
) -> dict[str, Any]:
    items, total = await ReportService(db).list_users(
        keyword=keyword,
        sort_by=sort_by,
        sort_order=sort_order,
        page=page,
        page_size=page_size,
    )
    return {
        "items": items,
        "pagination": PaginationMeta.build(page, page_size, total).model_dump(by_alias=True),
    }


@router.get("/{user_id}")
async def get_user_detail(user_id: str, db: DbSession) -> dict[str, Any]:
    """Profile, lifetime totals, per-category minutes and the latest entries."""
    return await ReportService(db).user_detail(user_id)


@router.get("/{user_id}/checkins")
async def list_user_checkins(
    user_id: str,
    db: DbSession,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
) -> dict[str, Any]:
    user = await UserService(db).require(user_id)
    items, total = await LedgerStore(db).list_entries(
        LedgerFilter(), user_id=user.id, page=page, page_size=page_size
    )
    return {
        "items": [EntrySnapshot.from_entry(entry).to_dict() for entry in items],
        "pagination": PaginationMeta.build(page, page_size, total).model_dump(by_alias=True),
    }
