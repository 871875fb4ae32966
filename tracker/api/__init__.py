"""API routers."""

from tracker.api.checkins import router as checkins_router
from tracker.api.stats import router as stats_router
from tracker.api.users import router as users_router

__all__ = [
    "checkins_router",
    "stats_router",
    "users_router",
]
