"""Ledger store: append-mostly record of check-in entries."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import Select, case, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.logging_config import get_logger
from tracker.models.checkin import PRIVATE_SCOPE, CheckinEntry
from tracker.utils.clock import ensure_utc

logger = get_logger(__name__)


@dataclass(frozen=True)
class LedgerFilter:
    """Optional filters; ``start`` is inclusive, ``end`` exclusive."""

    scope: str | None = None
    is_loan: bool | None = None
    start: datetime | None = None
    end: datetime | None = None
    category: str | None = None


@dataclass(frozen=True)
class LedgerAggregate:
    count: int
    total_duration: int


def apply_filter(stmt: Select, filters: LedgerFilter) -> Select:
    """Narrow a statement over ``CheckinEntry`` by ``filters``."""
    if filters.scope is not None:
        stmt = stmt.where(CheckinEntry.scope == filters.scope)
    if filters.is_loan is not None:
        stmt = stmt.where(CheckinEntry.is_loan.is_(filters.is_loan))
    if filters.start is not None:
        stmt = stmt.where(CheckinEntry.created_at >= ensure_utc(filters.start))
    if filters.end is not None:
        stmt = stmt.where(CheckinEntry.created_at < ensure_utc(filters.end))
    if filters.category is not None:
        stmt = stmt.where(CheckinEntry.category == filters.category)
    return stmt


class LedgerStore:
    """Reads and writes check-in entries.

    The store never edits an entry. ``append`` flushes a single row so the
    caller's transaction either contains the whole record or nothing.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def append(
        self,
        user_id: str,
        duration: int,
        content: str,
        *,
        created_at: datetime,
        scope: str = PRIVATE_SCOPE,
        is_loan: bool = False,
        category: str | None = None,
        subcategory: str | None = None,
        encouragement: str | None = None,
    ) -> CheckinEntry:
        entry = CheckinEntry(
            user_id=user_id,
            scope=scope,
            duration=duration,
            content=content,
            is_loan=is_loan,
            category=category,
            subcategory=subcategory,
            encouragement=encouragement,
            created_at=ensure_utc(created_at),
        )
        self.db.add(entry)
        await self.db.flush()

        logger.debug(
            "ledger_entry_appended",
            entry_id=entry.id,
            user_id=user_id,
            duration=duration,
            is_loan=is_loan,
        )
        return entry

    async def query(
        self,
        user_id: str,
        filters: LedgerFilter = LedgerFilter(),
        *,
        limit: int | None = None,
        oldest_first: bool = False,
        insertion_order: bool = False,
    ) -> list[CheckinEntry]:
        """Entries of one user, newest first unless ``oldest_first``.

        ``insertion_order`` sorts by id, the order entries were recorded in,
        regardless of their timestamps.
        """
        stmt = apply_filter(
            select(CheckinEntry).where(CheckinEntry.user_id == user_id), filters
        )
        if insertion_order:
            stmt = stmt.order_by(CheckinEntry.id.asc())
        elif oldest_first:
            stmt = stmt.order_by(CheckinEntry.created_at.asc(), CheckinEntry.id.asc())
        else:
            stmt = stmt.order_by(CheckinEntry.created_at.desc(), CheckinEntry.id.desc())
        if limit is not None:
            stmt = stmt.limit(limit)

        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def aggregate(
        self,
        user_id: str,
        filters: LedgerFilter = LedgerFilter(),
    ) -> LedgerAggregate:
        stmt = apply_filter(
            select(
                func.count(CheckinEntry.id),
                func.coalesce(func.sum(CheckinEntry.duration), 0),
            ).where(CheckinEntry.user_id == user_id),
            filters,
        )
        count, total = (await self.db.execute(stmt)).one()
        return LedgerAggregate(count=int(count), total_duration=int(total))

    async def totals(self, user_id: str) -> tuple[int, int]:
        """``(normal_minutes, loan_minutes)`` over the user's full history."""
        stmt = select(
            func.coalesce(
                func.sum(case((CheckinEntry.is_loan.is_(False), CheckinEntry.duration), else_=0)),
                0,
            ),
            func.coalesce(
                func.sum(case((CheckinEntry.is_loan.is_(True), CheckinEntry.duration), else_=0)),
                0,
            ),
        ).where(CheckinEntry.user_id == user_id)
        normal, loan = (await self.db.execute(stmt)).one()
        return int(normal), int(loan)

    async def delete_most_recent(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> CheckinEntry | None:
        """Delete the newest entry in ``[start, end)``; None when there is none."""
        entries = await self.query(
            user_id, LedgerFilter(start=start, end=end), limit=1
        )
        if not entries:
            return None

        entry = entries[0]
        await self.db.delete(entry)
        await self.db.flush()
        logger.info(
            "ledger_entry_deleted",
            entry_id=entry.id,
            user_id=user_id,
            duration=entry.duration,
            is_loan=entry.is_loan,
        )
        return entry

    async def list_entries(
        self,
        filters: LedgerFilter = LedgerFilter(),
        *,
        user_id: str | None = None,
        keyword: str | None = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[CheckinEntry], int]:
        """Paginated listing across users, newest first, with total count."""
        stmt = apply_filter(select(CheckinEntry), filters)
        if user_id is not None:
            stmt = stmt.where(CheckinEntry.user_id == user_id)
        if keyword:
            stmt = stmt.where(CheckinEntry.content.contains(keyword, autoescape=True))

        total = await self.db.scalar(
            select(func.count()).select_from(stmt.order_by(None).subquery())
        )
        result = await self.db.execute(
            stmt.order_by(CheckinEntry.created_at.desc(), CheckinEntry.id.desc())
            .offset((page - 1) * page_size)
            .limit(page_size)
        )
        return list(result.scalars().all()), int(total or 0)
