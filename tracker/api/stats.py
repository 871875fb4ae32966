"""Leaderboard and admin statistics API."""

from datetime import datetime
from typing import Any

from fastapi import APIRouter, Query

from tracker.api.deps import CheckinServiceDep, DbSession
from tracker.services.leaderboard import LeaderboardWindow
from tracker.services.reports import ReportService

router = APIRouter(tags=["Stats"])


@router.get("/leaderboard")
async def get_leaderboard(
    service: CheckinServiceDep,
    window: str = Query(LeaderboardWindow.WEEK.value, description="today, week, month or all"),
    scope: str | None = Query(None, description="Group id; all scopes when omitted"),
    limit: int | None = Query(None, ge=1),
) -> dict[str, Any]:
    """Rank users by normal minutes in the window.

    Returns ``has_data: false`` when nobody checked in.
    """
    ranking = await service.query_leaderboard(scope, window, limit)
    return ranking.to_dict()


@router.get("/stats/overview")
async def get_overview(db: DbSession) -> dict[str, Any]:
    return await ReportService(db).overview()


@router.get("/stats/trend")
async def get_trend(
    db: DbSession,
    days: int = Query(30, ge=1, le=365),
) -> dict[str, Any]:
    return {"days": days, "items": await ReportService(db).trend(days)}


@router.get("/stats/categories")
async def get_categories(
    db: DbSession,
    start: datetime | None = Query(None),
    end: datetime | None = Query(None),
) -> dict[str, Any]:
    """Category and subcategory breakdown of normal entries in ``[start, end)``."""
    return await ReportService(db).category_breakdown(start, end)
