"""SQLite storage for quiz sessions and attribution analytics."""
from .analytics import AnalyticsStore
from .schema import connect, init_database
from .sessions import SessionNotFoundError, SessionStore

__all__ = [
    "AnalyticsStore",
    "SessionStore",
    "SessionNotFoundError",
    "connect",
    "init_database",
]
