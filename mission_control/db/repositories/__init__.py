"""Repository package for database access."""

from .phases import SqlitePhaseRepository
from .sync_log import SqliteSyncBaselineRepository, SqliteSyncLogRepository

__all__ = [
    "SqlitePhaseRepository",
    "SqliteSyncLogRepository",
    "SqliteSyncBaselineRepository",
]
