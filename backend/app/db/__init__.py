"""Database package."""

from app.db.models import (
    AccessEventRecord,
    AuditConfigurationRecord,
    Base,
    HistoryEntry,
    HistorySubjectHead,
)
from app.db.session import close_db, get_session_factory, init_db

__all__ = [
    "get_session_factory",
    "init_db",
    "close_db",
    "Base",
    "HistorySubjectHead",
    "HistoryEntry",
    "AccessEventRecord",
    "AuditConfigurationRecord",
]
