"""Repository factory to abstract DB backend (SQLite vs Postgres)."""
from __future__ import annotations

from typing import Any
import aiosqlite

from mission_control.db.repositories.phases import SqlitePhaseRepository
from mission_control.db.repositories.sync_log import (
    SqliteSyncBaselineRepository,
    SqliteSyncLogRepository,
)


def get_phase_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqlitePhaseRepository(db)
    from mission_control.db.repositories.postgres.phases import PostgresPhaseRepository
    return PostgresPhaseRepository(db)


def get_sync_log_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncLogRepository(db)
    from mission_control.db.repositories.postgres.sync_log import PostgresSyncLogRepository
    return PostgresSyncLogRepository(db)


def get_sync_baseline_repository(db: Any):
    if isinstance(db, aiosqlite.Connection):
        return SqliteSyncBaselineRepository(db)
    from mission_control.db.repositories.postgres.sync_log import PostgresSyncBaselineRepository
    return PostgresSyncBaselineRepository(db)
