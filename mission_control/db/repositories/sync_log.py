"""SQLite implementation of the sync audit log and sync baselines."""
from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite


class SqliteSyncLogRepository:
    """Append-only audit trail of sync decisions."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def append(self, entry: dict) -> int:
        cur = await self.db.execute(
            """INSERT INTO sync_log (source, entity_type, entity_id, change, conflict_resolved, resolution, timestamp)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                entry["source"],
                entry.get("entity_type", "lifecycle_phase"),
                str(entry["entity_id"]),
                entry["change"],
                1 if entry.get("conflict_resolved") else 0,
                entry.get("resolution"),
                entry.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            ),
        )
        await self.db.commit()
        return cur.lastrowid

    async def list_recent(self, limit: int = 50, entity_id: str | None = None) -> list[dict]:
        if entity_id is not None:
            query = "SELECT * FROM sync_log WHERE entity_id = ? ORDER BY id DESC LIMIT ?"
            params: tuple = (str(entity_id), limit)
        else:
            query = "SELECT * FROM sync_log ORDER BY id DESC LIMIT ?"
            params = (limit,)
        async with self.db.execute(query, params) as cur:
            rows = [dict(r) for r in await cur.fetchall()]
        for row in rows:
            row["conflict_resolved"] = bool(row.get("conflict_resolved"))
        return rows


class SqliteSyncBaselineRepository:
    """Last field values both sides of a phase were known to agree on."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def get(self, phase_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sync_baselines WHERE phase_id = ?", (phase_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def upsert(self, phase_id: int, fields: dict[str, str]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO sync_baselines (phase_id, status, agent_id, synced_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(phase_id) DO UPDATE SET
                 status=excluded.status, agent_id=excluded.agent_id,
                 synced_at=excluded.synced_at""",
            (phase_id, fields.get("status", ""), fields.get("agent_id", ""), now),
        )
        await self.db.commit()
