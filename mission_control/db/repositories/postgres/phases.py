"""PostgreSQL implementation of the project + lifecycle phase repository."""
from __future__ import annotations

import uuid
from datetime import datetime, timezone
from pathlib import Path

import asyncpg

from mission_control.db.repositories.phases import PHASE_UPDATABLE_COLUMNS, _candidate_paths


class PostgresPhaseRepository:
    """PostgreSQL-backed projects and lifecycle phases."""

    def __init__(self, db: asyncpg.Pool):
        self.db = db

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
               VALUES ($1, $2, $3, $4, $5, $6)""",
            project_id, name, plan_dir or None, workspace_id or "default", now, now,
        )
        project = await self.get_project(project_id)
        assert project is not None
        return project

    async def get_project(self, project_id: str) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM projects WHERE id = $1", project_id)
        return dict(row) if row else None

    async def list_projects(self) -> list[dict]:
        rows = await self.db.fetch("SELECT * FROM projects ORDER BY created_at DESC")
        return [dict(r) for r in rows]

    async def init_phases(self, project_id: str, phases: list[str] | tuple[str, ...]) -> None:
        now = datetime.now(timezone.utc).isoformat()
        await self.db.executemany(
            """INSERT INTO lifecycle_phases (project_id, phase, status, created_at, updated_at)
               VALUES ($1, $2, 'pending', $3, $4)""",
            [(project_id, phase, now, now) for phase in phases],
        )

    async def get_phase(self, phase_id: int) -> dict | None:
        row = await self.db.fetchrow("SELECT * FROM lifecycle_phases WHERE id = $1", phase_id)
        return dict(row) if row else None

    async def list_phases(self, project_id: str) -> list[dict]:
        rows = await self.db.fetch(
            "SELECT * FROM lifecycle_phases WHERE project_id = $1 ORDER BY id", project_id
        )
        return [dict(r) for r in rows]

    async def find_phase_by_kind(self, project_id: str, phase: str) -> dict | None:
        row = await self.db.fetchrow(
            "SELECT * FROM lifecycle_phases WHERE project_id = $1 AND phase = $2 LIMIT 1",
            project_id, phase,
        )
        return dict(row) if row else None

    async def find_phase_by_path(self, file_path: str | Path) -> dict | None:
        for candidate in _candidate_paths(file_path):
            row = await self.db.fetchrow(
                "SELECT * FROM lifecycle_phases WHERE plan_file_path = $1 LIMIT 1", candidate
            )
            if row:
                return dict(row)
        return None

    async def update_phase(self, phase_id: int, fields: dict) -> dict | None:
        now = datetime.now(timezone.utc).isoformat()
        assignments = ["updated_at = $1"]
        values: list = [now]
        for column in PHASE_UPDATABLE_COLUMNS:
            if column in fields:
                values.append(fields[column])
                assignments.append(f"{column} = ${len(values)}")
        values.append(phase_id)

        await self.db.execute(
            f"UPDATE lifecycle_phases SET {', '.join(assignments)} WHERE id = ${len(values)}",
            *values,
        )
        return await self.get_phase(phase_id)
