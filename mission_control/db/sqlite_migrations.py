"""Database schema creation and versioning.

All CREATE TABLE statements for the lifecycle + sync layer.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("mission_control.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    plan_dir      TEXT,
    workspace_id  TEXT NOT NULL DEFAULT 'default',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

-- ── 2. Lifecycle Phases ────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS lifecycle_phases (
    id              INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    phase           TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'pending',
    agent_id        TEXT,
    started_at      TEXT,
    completed_at    TEXT,
    plan_file_path  TEXT,
    metadata        TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_phases_project ON lifecycle_phases(project_id);
CREATE UNIQUE INDEX IF NOT EXISTS idx_phases_project_phase ON lifecycle_phases(project_id, phase);

-- ── 3. Sync Audit Log (append-only) ────────────────────────────────
CREATE TABLE IF NOT EXISTS sync_log (
    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
    source             TEXT NOT NULL,
    entity_type        TEXT NOT NULL,
    entity_id          TEXT NOT NULL,
    change             TEXT NOT NULL,
    conflict_resolved  INTEGER NOT NULL DEFAULT 0,
    resolution         TEXT,
    timestamp          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_entity ON sync_log(entity_type, entity_id);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except Exception:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # v2: plan_dir on pre-existing projects tables
    await _ensure_column(db, "projects", "plan_dir", "TEXT")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_phases_plan_file ON lifecycle_phases(plan_file_path)")

    # v3: last-agreed field values per phase
    await _ensure_index(
        db,
        """
        CREATE TABLE IF NOT EXISTS sync_baselines (
            phase_id   INTEGER PRIMARY KEY REFERENCES lifecycle_phases(id) ON DELETE CASCADE,
            status     TEXT NOT NULL DEFAULT '',
            agent_id   TEXT NOT NULL DEFAULT '',
            synced_at  TEXT NOT NULL
        )
        """,
    )

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
