"""Check-in request validation and result payloads."""

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

from tracker.models.checkin import MAX_DURATION_MINUTES, PRIVATE_SCOPE, CheckinEntry
from tracker.services.goals import GoalProgress
from tracker.utils.clock import ensure_utc


class CheckinRequest(BaseModel):
    """Structured check-in produced by the chat command parser."""

    model_config = ConfigDict(str_strip_whitespace=True)

    user_id: str = Field(..., min_length=1, max_length=64, description="Chat account id")
    nickname: str | None = Field(default=None, max_length=100)
    scope: str = Field(default=PRIVATE_SCOPE, min_length=1, max_length=64)
    duration: int = Field(..., description="Minutes, 1..10080")
    content: str = Field(..., min_length=1, description="What the user worked on")
    is_loan: bool = False
    timestamp: datetime | None = Field(default=None, description="Defaults to now")
    category: str | None = Field(default=None, max_length=50)
    subcategory: str | None = Field(default=None, max_length=50)
    encouragement: str | None = None

    @field_validator("duration")
    @classmethod
    def validate_duration(cls, v: int) -> int:
        if v <= 0 or v > MAX_DURATION_MINUTES:
            raise ValueError(
                f"duration must be between 1 and {MAX_DURATION_MINUTES} minutes"
            )
        return v

    @field_validator("timestamp")
    @classmethod
    def normalize_timestamp(cls, v: datetime | None) -> datetime | None:
        return ensure_utc(v) if v is not None else None


@dataclass(frozen=True)
class EntrySnapshot:
    """Detached copy of a ledger entry."""

    id: int
    scope: str
    duration: int
    content: str
    is_loan: bool
    category: str | None
    subcategory: str | None
    created_at: datetime

    @classmethod
    def from_entry(cls, entry: CheckinEntry) -> "EntrySnapshot":
        return cls(
            id=entry.id,
            scope=entry.scope,
            duration=entry.duration,
            content=entry.content,
            is_loan=entry.is_loan,
            category=entry.category,
            subcategory=entry.subcategory,
            created_at=entry.created_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "scope": self.scope,
            "duration": self.duration,
            "content": self.content,
            "is_loan": self.is_loan,
            "category": self.category,
            "subcategory": self.subcategory,
            "created_at": self.created_at.isoformat(),
        }


@dataclass(frozen=True)
class CheckinResult:
    entry_id: int
    debt_before: int
    debt_after: int
    repaid: int
    streak_days: int
    max_streak: int
    is_new_streak_segment: bool
    new_achievements: list[str]
    goal_progress: GoalProgress
    today_normal_minutes: int
    today_entry_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "debt_before": self.debt_before,
            "debt_after": self.debt_after,
            "repaid": self.repaid,
            "streak_days": self.streak_days,
            "max_streak": self.max_streak,
            "is_new_streak_segment": self.is_new_streak_segment,
            "new_achievements": list(self.new_achievements),
            "goal_progress": self.goal_progress.to_dict(),
            "today_normal_minutes": self.today_normal_minutes,
            "today_entry_count": self.today_entry_count,
        }


@dataclass(frozen=True)
class UserStats:
    user_id: str
    nickname: str
    total_normal_minutes: int
    total_loan_minutes: int
    debt: int
    streak_days: int
    max_streak: int
    last_checkin_date: date | None
    daily_goal: int | None
    entry_count: int
    recent_entries: list[EntrySnapshot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "user_id": self.user_id,
            "nickname": self.nickname,
            "total_normal_minutes": self.total_normal_minutes,
            "total_loan_minutes": self.total_loan_minutes,
            "debt": self.debt,
            "streak_days": self.streak_days,
            "max_streak": self.max_streak,
            "last_checkin_date": (
                self.last_checkin_date.isoformat() if self.last_checkin_date else None
            ),
            "daily_goal": self.daily_goal,
            "entry_count": self.entry_count,
            "recent_entries": [e.to_dict() for e in self.recent_entries],
        }


@dataclass(frozen=True)
class HeldAchievement:
    achievement_id: str
    unlocked_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.achievement_id,
            "unlocked_at": self.unlocked_at.isoformat(),
        }


@dataclass(frozen=True)
class AchievementSummary:
    held: list[HeldAchievement]
    catalog: list[dict[str, str]]
    backfilled: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "held": [h.to_dict() for h in self.held],
            "catalog": self.catalog,
            "backfilled": list(self.backfilled),
        }
