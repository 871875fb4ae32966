"""Achievement grant model and the static badge catalog."""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from tracker.models.base import Base, UTCDateTime
from tracker.utils.clock import utcnow


class AchievementGrant(Base):
    """Permanent badge held by a user. Never revoked."""

    __tablename__ = "achievement_grants"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    achievement_id: Mapped[str] = mapped_column(String(32), nullable=False)
    unlocked_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        # A user holds each badge at most once, ever
        UniqueConstraint("user_id", "achievement_id", name="uq_user_achievement"),
    )

    def __repr__(self) -> str:
        return f"<AchievementGrant user={self.user_id} id={self.achievement_id}>"


@dataclass(frozen=True)
class AchievementDefinition:
    id: str
    name: str
    description: str
    icon: str

    def to_dict(self) -> dict[str, str]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
        }


STREAK_THRESHOLDS = (3, 7, 30)
MINUTES_THRESHOLDS = (60, 600, 6000)

ACHIEVEMENT_CATALOG: dict[str, AchievementDefinition] = {
    d.id: d
    for d in (
        AchievementDefinition("first_checkin", "First Step", "Log your first check-in", "🌱"),
        AchievementDefinition("streak_3", "Warming Up", "Check in 3 days in a row", "🔥"),
        AchievementDefinition("streak_7", "One Full Week", "Check in 7 days in a row", "📅"),
        AchievementDefinition("streak_30", "Unstoppable", "Check in 30 days in a row", "🏆"),
        AchievementDefinition("minutes_60", "First Hour", "Log 60 minutes in total", "⏱️"),
        AchievementDefinition("minutes_600", "Ten Hours In", "Log 600 minutes in total", "📚"),
        AchievementDefinition("minutes_6000", "Hundred Hours", "Log 6000 minutes in total", "💎"),
        AchievementDefinition("debt_free", "Debt Free", "Pay back every borrowed minute", "💸"),
        AchievementDefinition("early_bird", "Early Bird", "Check in early in the morning", "🐦"),
        AchievementDefinition("night_owl", "Night Owl", "Check in late at night", "🦉"),
    )
}
