"""Check-in ledger model."""

from datetime import datetime

from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from tracker.models.base import Base, UTCDateTime
from tracker.utils.clock import utcnow

# One week
MAX_DURATION_MINUTES = 10080

PRIVATE_SCOPE = "private"


class CheckinEntry(Base):
    """Immutable check-in record. Undo deletes the row, nothing edits it."""

    __tablename__ = "checkin_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
    )

    # Originating group id, or PRIVATE_SCOPE for direct messages
    scope: Mapped[str] = mapped_column(
        String(64),
        default=PRIVATE_SCOPE,
        nullable=False,
    )

    duration: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Minutes, 1..10080",
    )
    content: Mapped[str] = mapped_column(Text, nullable=False)
    is_loan: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        nullable=False,
        comment="Advance check-in that must be repaid by normal minutes",
    )

    # Opaque labels from the external classifier
    category: Mapped[str | None] = mapped_column(String(50), nullable=True)
    subcategory: Mapped[str | None] = mapped_column(String(50), nullable=True)
    encouragement: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_checkin_user_created", "user_id", "created_at"),
        Index("ix_checkin_scope_created", "scope", "created_at"),
    )

    def __repr__(self) -> str:
        kind = "loan" if self.is_loan else "normal"
        return f"<CheckinEntry {self.id} user={self.user_id} {self.duration}m {kind}>"
