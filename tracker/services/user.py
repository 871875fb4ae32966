"""User lookup, registration and goal settings."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tracker.config import Settings, get_settings
from tracker.logging_config import get_logger
from tracker.models.user import User
from tracker.utils.errors import InvalidGoalError, UserNotFoundError

logger = get_logger(__name__)


class UserService:
    """Service for user records."""

    def __init__(self, db: AsyncSession, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()

    async def get_by_external_id(
        self,
        external_id: str,
        *,
        for_update: bool = False,
    ) -> User | None:
        stmt = select(User).where(User.external_id == external_id)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.db.execute(stmt.execution_options(populate_existing=True))
        return result.scalar_one_or_none()

    async def require(self, external_id: str, *, for_update: bool = False) -> User:
        user = await self.get_by_external_id(external_id, for_update=for_update)
        if user is None:
            raise UserNotFoundError(external_id)
        return user

    async def get_or_create(
        self,
        external_id: str,
        nickname: str | None = None,
    ) -> User:
        """Load the user row for update, creating it on first contact.

        A differing ``nickname`` replaces the stored one. Two processes
        creating the same user at once trip the unique index on flush.
        """
        user = await self.get_by_external_id(external_id, for_update=True)
        if user is None:
            user = User(
                external_id=external_id,
                nickname=nickname or external_id,
                streak_days=0,
                max_streak=0,
            )
            self.db.add(user)
            await self.db.flush()
            logger.info("user_created", user_id=user.id, external_id=external_id)
        elif nickname and user.nickname != nickname:
            user.nickname = nickname
            await self.db.flush()
        return user

    def validate_goal(self, minutes: int | None) -> int | None:
        if minutes is None:
            return None
        if minutes <= 0 or minutes > self.settings.max_daily_goal_minutes:
            raise InvalidGoalError(minutes, self.settings.max_daily_goal_minutes)
        return minutes

    async def set_daily_goal(self, user: User, minutes: int | None) -> User:
        """Set or clear (``None``) the daily goal."""
        user.daily_goal = self.validate_goal(minutes)
        await self.db.flush()
        logger.info("daily_goal_set", user_id=user.id, daily_goal=user.daily_goal)
        return user
