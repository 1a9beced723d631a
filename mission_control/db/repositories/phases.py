"""SQLite implementation of the project + lifecycle phase repository."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

# Columns callers may change through update_phase
PHASE_UPDATABLE_COLUMNS = (
    "status",
    "agent_id",
    "plan_file_path",
    "metadata",
    "started_at",
    "completed_at",
)


def _candidate_paths(file_path: str | Path) -> list[str]:
    """Absolute form first, then the path exactly as given."""
    raw = str(file_path)
    absolute = str(Path(raw).resolve(strict=False))
    return [absolute] if absolute == raw else [absolute, raw]


class SqlitePhaseRepository:
    """SQLite-backed projects and lifecycle phases."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    # ── Projects ────────────────────────────────────────────────────

    async def create_project(
        self,
        name: str,
        plan_dir: str | None = None,
        workspace_id: str | None = None,
    ) -> dict:
        project_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        await self.db.execute(
            """INSERT INTO projects (id, name, plan_dir, workspace_id, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (project_id, name, plan_dir or None, workspace_id or "default", now, now),
        )
        await self.db.commit()
        project = await self.get_project(project_id)
        assert project is not None
        return project

    async def get_project(self, project_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_projects(self) -> list[dict]:
        async with self.db.execute("SELECT * FROM projects ORDER BY created_at DESC") as cur:
            return [dict(r) for r in await cur.fetchall()]

    # ── Phases ──────────────────────────────────────────────────────

    async def init_phases(self, project_id: str, phases: list[str] | tuple[str, ...]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.executemany(
            """INSERT INTO lifecycle_phases (project_id, phase, status, created_at, updated_at)
               VALUES (?, ?, 'pending', ?, ?)""",
            [(project_id, phase, now, now) for phase in phases],
        )
        await self.db.commit()

    async def get_phase(self, phase_id: int) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM lifecycle_phases WHERE id = ?", (phase_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_phases(self, project_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM lifecycle_phases WHERE project_id = ? ORDER BY id",
            (project_id,),
        ) as cur:
            return [dict(r) for r in await cur.fetchall()]

    async def find_phase_by_kind(self, project_id: str, phase: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM lifecycle_phases WHERE project_id = ? AND phase = ? LIMIT 1",
            (project_id, phase),
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def find_phase_by_path(self, file_path: str | Path) -> dict | None:
        """Match on plan_file_path, trying the absolute path then the raw one."""
        for candidate in _candidate_paths(file_path):
            async with self.db.execute(
                "SELECT * FROM lifecycle_phases WHERE plan_file_path = ? LIMIT 1",
                (candidate,),
            ) as cur:
                row = await cur.fetchone()
            if row:
                return dict(row)
        return None

    async def update_phase(self, phase_id: int, fields: dict) -> dict | None:
        """Set the given columns and bump updated_at. Unknown keys are ignored."""
        now = datetime.now(timezone.utc).isoformat()
        assignments = ["updated_at = ?"]
        values: list = [now]
        for column in PHASE_UPDATABLE_COLUMNS:
            if column in fields:
                assignments.append(f"{column} = ?")
                values.append(fields[column])
        values.append(phase_id)

        await self.db.execute(
            f"UPDATE lifecycle_phases SET {', '.join(assignments)} WHERE id = ?",
            tuple(values),
        )
        await self.db.commit()
        return await self.get_phase(phase_id)
