"""Database models."""

from tracker.models.achievement import (
    ACHIEVEMENT_CATALOG,
    MINUTES_THRESHOLDS,
    STREAK_THRESHOLDS,
    AchievementDefinition,
    AchievementGrant,
)
from tracker.models.base import Base, TimestampMixin, UTCDateTime, UUIDMixin
from tracker.models.checkin import MAX_DURATION_MINUTES, PRIVATE_SCOPE, CheckinEntry
from tracker.models.user import User

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "UTCDateTime",
    # User
    "User",
    # Ledger
    "CheckinEntry",
    "MAX_DURATION_MINUTES",
    "PRIVATE_SCOPE",
    # Achievements
    "AchievementGrant",
    "AchievementDefinition",
    "ACHIEVEMENT_CATALOG",
    "STREAK_THRESHOLDS",
    "MINUTES_THRESHOLDS",
]
