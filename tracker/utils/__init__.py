"""Utility modules."""

from tracker.utils.db import engine, get_db

__all__ = [
    "get_db",
    "engine",
]
