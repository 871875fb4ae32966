"""User model."""

from datetime import date

from sqlalchemy import Date, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from tracker.models.base import Base, TimestampMixin, UUIDMixin


class User(Base, UUIDMixin, TimestampMixin):
    """Chat account with its streak counters and daily goal."""

    __tablename__ = "users"

    # Stable chat account id (e.g. QQ number)
    external_id: Mapped[str] = mapped_column(
        String(64),
        unique=True,
        nullable=False,
        index=True,
    )
    nickname: Mapped[str] = mapped_column(
        String(100),
        default="",
        nullable=False,
    )

    # Streak state, mutated only inside the per-user critical section
    streak_days: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Current consecutive-day count",
    )
    max_streak: Mapped[int] = mapped_column(
        Integer,
        default=0,
        nullable=False,
        comment="Historical maximum of streak_days",
    )
    last_checkin_date: Mapped[date | None] = mapped_column(
        Date,
        nullable=True,
        comment="Local date of the last normal check-in that moved the streak",
    )

    daily_goal: Mapped[int | None] = mapped_column(
        Integer,
        nullable=True,
        comment="Daily target in minutes",
    )

    # Optimistic lock counter; a lost update raises StaleDataError on flush
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    def __repr__(self) -> str:
        return f"<User {self.external_id} streak={self.streak_days}>"
