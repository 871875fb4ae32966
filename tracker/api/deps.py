"""API dependencies."""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.services.checkin import CheckinService
from tracker.utils.db import get_db

DbSession = Annotated[AsyncSession, Depends(get_db)]


def get_checkin_service(db: DbSession) -> CheckinService:
    return CheckinService(db)


CheckinServiceDep = Annotated[CheckinService, Depends(get_checkin_service)]
