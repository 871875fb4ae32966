"""Error taxonomy shared by the services and the HTTP layer.

Services raise these; ``tracker.main`` maps each family to a status code
and renders ``code``, ``message`` and ``details`` into the error envelope.
"""

from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_DURATION = "INVALID_DURATION"
    INVALID_GOAL = "INVALID_GOAL"
    INVALID_WINDOW = "INVALID_WINDOW"
    MISSING_FIELD = "MISSING_FIELD"

    USER_NOT_FOUND = "USER_NOT_FOUND"
    ENTRY_NOT_FOUND = "ENTRY_NOT_FOUND"

    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"
    TRANSIENT_FAILURE = "TRANSIENT_FAILURE"


class TrackerError(Exception):
    """Root of every error the tracker reports to callers.

    ``code`` is always the plain string value so it can be compared and
    serialized without touching the enum.
    """

    default_code: ErrorCode = ErrorCode.INVALID_REQUEST

    def __init__(
        self,
        message: str,
        code: ErrorCode | str | None = None,
        details: dict[str, Any] | None = None,
    ):
        code = code or self.default_code
        self.code = code.value if isinstance(code, ErrorCode) else code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, message={self.message!r})"


class ValidationError(TrackerError):
    """Input rejected before any state change."""


class InvalidGoalError(ValidationError):
    def __init__(self, goal: int, max_goal: int):
        super().__init__(
            f"Daily goal must be between 1 and {max_goal} minutes, got {goal}",
            code=ErrorCode.INVALID_GOAL,
            details={"goal": goal, "maxGoal": max_goal},
        )


class NotFoundError(TrackerError):
    pass


class UserNotFoundError(NotFoundError):
    def __init__(self, external_id: str):
        super().__init__(
            f"User not found: {external_id}",
            code=ErrorCode.USER_NOT_FOUND,
            details={"userId": external_id},
        )


class EntryNotFoundError(NotFoundError):
    """Nothing left to undo for the user on that day."""

    def __init__(self, external_id: str, day: str):
        super().__init__(
            f"No check-in found for {external_id} on {day}",
            code=ErrorCode.ENTRY_NOT_FOUND,
            details={"userId": external_id, "day": day},
        )


class ConcurrencyConflictError(TrackerError):
    """A lost update or lock timeout inside the per-user critical section.

    Retried internally; callers only see it wrapped as ``TransientFailureError``.
    """

    default_code = ErrorCode.CONCURRENCY_CONFLICT

    def __init__(self, message: str = "Concurrent update detected", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)


class TransientFailureError(TrackerError):
    default_code = ErrorCode.TRANSIENT_FAILURE

    def __init__(self, message: str = "Please try again shortly", details: dict[str, Any] | None = None):
        super().__init__(message, details=details)
