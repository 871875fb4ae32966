"""Check-in API.

Thin HTTP surface for the chat transport: submit, undo and list entries,
plus the admin CSV export.
Payload validation happens in the service so rejected requests carry the
tracker's error codes rather than FastAPI's generic 422.
"""

from datetime import date
from typing import Any

from fastapi import APIRouter, Body, Query, Response, status

from tracker.api.deps import CheckinServiceDep, DbSession
from tracker.schemas.checkin import EntrySnapshot
from tracker.schemas.common import PaginationMeta
from tracker.services.ledger import LedgerFilter, LedgerStore
from tracker.services.reports import ReportService, render_csv
from tracker.services.user import UserService
from tracker.utils.clock import local_day, utcnow

router = APIRouter(prefix="/checkins", tags=["Checkins"])


@router.post("", status_code=status.HTTP_201_CREATED)
async def submit_checkin(
    service: CheckinServiceDep,
    payload: dict[str, Any] = Body(..., description="Structured check-in"),
) -> dict[str, Any]:
    """Record a check-in.

    - Normal entries repay debt, advance the streak and may unlock badges
    - Loan entries only add to debt
    """
    result = await service.submit_checkin(payload)
    return result.to_dict()


@router.delete("/last")
async def undo_last_checkin(
    service: CheckinServiceDep,
    user_id: str = Query(..., min_length=1, description="Chat account id"),
    day: date | None = Query(None, description="Local day, defaults to today"),
) -> dict[str, Any]:
    """Remove the user's most recent entry of the day."""
    removed = await service.undo_last_entry(user_id, day)
    return {"removed": removed.to_dict()}


@router.get("")
async def list_checkins(
    db: DbSession,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100, alias="pageSize"),
    user_id: str | None = Query(None, description="Only this chat account"),
    scope: str | None = Query(None),
    is_loan: bool | None = Query(None),
    category: str | None = Query(None),
    keyword: str | None = Query(None, description="Substring of the content"),
) -> dict[str, Any]:
    """Paginated entry listing for the admin surface, newest first."""
    internal_id = None
    if user_id is not None:
        user = await UserService(db).get_by_external_id(user_id)
        if user is None:
            return {
                "items": [],
                "pagination": PaginationMeta.build(page, page_size, 0).model_dump(by_alias=True),
            }
        internal_id = user.id

    items, total = await LedgerStore(db).list_entries(
        LedgerFilter(scope=scope, is_loan=is_loan, category=category),
        user_id=internal_id,
        keyword=keyword,
        page=page,
        page_size=page_size,
    )
    return {
        "items": [EntrySnapshot.from_entry(entry).to_dict() for entry in items],
        "pagination": PaginationMeta.build(page, page_size, total).model_dump(by_alias=True),
    }


@router.get("/export")
async def export_checkins(
    db: DbSession,
    start: date | None = Query(None, description="First local day, inclusive"),
    end: date | None = Query(None, description="Last local day, inclusive"),
    user_id: str | None = Query(None, description="Only this chat account"),
    category: str | None = Query(None),
) -> Response:
    """Download matching entries as CSV, newest first."""
    reports = ReportService(db)
    rows = await reports.export_entries(
        start=start, end=end, user_id=user_id, category=category
    )
    filename = f"checkins_{local_day(utcnow(), reports.settings.zone).isoformat()}.csv"
    return Response(
        content=render_csv(rows),
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
