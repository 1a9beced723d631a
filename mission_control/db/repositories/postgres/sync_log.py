"""PostgreSQL implementation of the sync audit log and sync baselines."""
from __future__ import annotations

from datetime import datetime, timezone

import asyncpg


class PostgresSyncLogRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def append(self, entry: dict) -> int:
        return await self.db.fetchval(
            """INSERT INTO sync_log (source, entity_type, entity_id, change, conflict_resolved, resolution, timestamp)
               VALUES ($1, $2, $3, $4, $5, $6, $7)
               RETURNING id""",
            entry["source"],
            entry.get("entity_type", "lifecycle_phase"),
            str(entry["entity_id"]),
            entry["change"],
            bool(entry.get("conflict_resolved")),
            entry.get("resolution"),
            entry.get("timestamp") or datetime.now(timezone.utc).isoformat(),
        )

    async def list_recent(self, limit: int = 50, entity_id: str | None = None) -> list[dict]:
        if entity_id is not None:
            rows = await self.db.fetch(
                "SELECT * FROM sync_log WHERE entity_id = $1 ORDER BY id DESC LIMIT $2",
                str(entity_id), limit,
            )
        else:
            rows = await self.db.fetch("SELECT * FROM sync_log ORDER BY id DESC LIMIT $1", limit)
        return [dict(r) for r in rows]


class PostgresSyncBaselineRepository:
    def __init__(self, db: asyncpg.Pool):
        self.db = db

    async def get(self, phase_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM sync_baselines WHERE phase_id = $1", phase_id)
        return dict(row) if row else None

    async def upsert(self, phase_id: int, fields: dict[str, str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO sync_baselines (phase_id, status, agent_id, synced_at)
               VALUES ($1, $2, $3, $4)
               ON CONFLICT(phase_id) DO UPDATE SET
                 status=EXCLUDED.status, agent_id=EXCLUDED.agent_id,
                 synced_at=EXCLUDED.synced_at""",
            phase_id, fields.get("status", ""), fields.get("agent_id", ""), now,
        )
