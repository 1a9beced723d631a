"""PostgreSQL schema creation for the lifecycle + sync layer."""
from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger("mission_control.db")

SCHEMA_VERSION = 3

_TABLES = """
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TIMESTAMPTZ NOT NULL DEFAULT now()
);

CREATE TABLE IF NOT EXISTS projects (
    id            TEXT PRIMARY KEY,
    name          TEXT NOT NULL,
    plan_dir      TEXT,
    workspace_id  TEXT NOT NULL DEFAULT 'default',
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS lifecycle_phases (
    id              SERIAL PRIMARY KEY,
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
CREATE INDEX IF NOT EXISTS idx_phases_plan_file ON lifecycle_phases(plan_file_path);

CREATE TABLE IF NOT EXISTS sync_log (
    id                 SERIAL PRIMARY KEY,
    source             TEXT NOT NULL,
    entity_type        TEXT NOT NULL,
    entity_id          TEXT NOT NULL,
    change             TEXT NOT NULL,
    conflict_resolved  BOOLEAN NOT NULL DEFAULT FALSE,
    resolution         TEXT,
    timestamp          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sync_log_entity ON sync_log(entity_type, entity_id);

CREATE TABLE IF NOT EXISTS sync_baselines (
    phase_id   INTEGER PRIMARY KEY REFERENCES lifecycle_phases(id) ON DELETE CASCADE,
    status     TEXT NOT NULL DEFAULT '',
    agent_id   TEXT NOT NULL DEFAULT '',
    synced_at  TEXT NOT NULL
);
"""


async def run_migrations(pool: asyncpg.Pool) -> None:
    """Create all tables. Idempotent."""
    async with pool.acquire() as conn:
        await conn.execute(_TABLES)
        current_version = await conn.fetchval("SELECT MAX(version) FROM schema_version") or 0
        if current_version >= SCHEMA_VERSION:
            logger.info(f"Schema is up to date (version {current_version})")
            return
        await conn.execute("INSERT INTO schema_version (version) VALUES ($1)", SCHEMA_VERSION)
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
