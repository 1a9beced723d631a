"""Lifecycle pipeline operations.

Owns the phase ordering and the status state machine shared by the
dashboard and the sync engine, plus project creation and phase setup.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mission_control.db.factory import get_phase_repository
from mission_control.errors import InvalidPhaseValueError, PhaseNotFoundError
from mission_control.parsers.frontmatter import scan_plan_dir

logger = logging.getLogger("mission_control.lifecycle")

PHASE_ORDER: tuple[str, ...] = (
    "requirements",
    "planning",
    "research",
    "implementation",
    "testing",
    "review",
    "deploy",
)

PHASE_STATUSES: tuple[str, ...] = ("pending", "active", "blocked", "complete", "skipped")

STATUS_FORWARD: dict[str, str | None] = {
    "pending": "active",
    "active": "complete",
    "complete": None,
    "blocked": "active",
    "skipped": "active",
}

STATUS_BACK: dict[str, str | None] = {
    "active": "pending",
    "complete": "active",
    "pending": None,
    "blocked": "pending",
    "skipped": "pending",
}


def next_status(current: str) -> str | None:
    return STATUS_FORWARD.get(current)


def previous_status(current: str) -> str | None:
    return STATUS_BACK.get(current)


def validate_phase_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Reject a status outside PHASE_STATUSES; blank agent ids clear the owner."""
    cleaned = dict(fields)
    if "status" in cleaned and cleaned["status"] not in PHASE_STATUSES:
        raise InvalidPhaseValueError(f"Invalid phase status: {cleaned['status']!r}")
    if "agent_id" in cleaned and not cleaned["agent_id"]:
        cleaned["agent_id"] = None
    return cleaned


class LifecycleService:
    """Project and phase operations over the phase repository."""

    def __init__(self, db: Any):
        self.db = db
        self.phase_repo = get_phase_repository(db)

    async def list_projects(self) -> list[dict]:
        return await self.phase_repo.list_projects()

    async def list_phases(self, project_id: str) -> list[dict]:
        return await self.phase_repo.list_phases(project_id)

    async def get_phase(self, phase_id: int) -> dict:
        phase = await self.phase_repo.get_phase(phase_id)
        if not phase:
            raise PhaseNotFoundError(f"Phase {phase_id} not found")
        return phase

    async def update_phase_fields(self, phase_id: int, fields: dict[str, Any]) -> dict:
        await self.get_phase(phase_id)
        cleaned = validate_phase_fields(fields)
        updated = await self.phase_repo.update_phase(phase_id, cleaned)
        if updated is None:
            raise PhaseNotFoundError(f"Phase {phase_id} not found")
        return updated

    async def advance_phase(self, phase_id: int) -> str:
        """Move a phase one step forward; terminal states are returned unchanged."""
        phase = await self.get_phase(phase_id)
        target = next_status(phase["status"])
        if not target:
            return phase["status"]

        now = datetime.now(timezone.utc).isoformat()
        fields: dict[str, Any] = {"status": target}
        if target == "active":
            fields["started_at"] = now
        if target == "complete":
            fields["completed_at"] = now
        await self.phase_repo.update_phase(phase_id, fields)
        logger.info("Phase %s advanced %s → %s", phase_id, phase["status"], target)
        return target

    async def rollback_phase(self, phase_id: int) -> str:
        phase = await self.get_phase(phase_id)
        target = previous_status(phase["status"])
        if not target:
            return phase["status"]
        await self.phase_repo.update_phase(phase_id, {"status": target})
        logger.info("Phase %s rolled back %s → %s", phase_id, phase["status"], target)
        return target

    async def skip_phase(self, phase_id: int) -> dict:
        return await self.update_phase_fields(phase_id, {"status": "skipped"})

    async def create_project_with_phases(
        self,
        name: str,
        plan_dir: str | None = None,
        workspace_id: str | None = None,
    ) -> tuple[dict, list[dict]]:
        """Create a project with all seven phases, linking plan files when present."""
        project = await self.phase_repo.create_project(name, plan_dir, workspace_id)
        await self.phase_repo.init_phases(project["id"], PHASE_ORDER)
        if plan_dir:
            await self.link_plan_files(project["id"], plan_dir)
        return project, await self.phase_repo.list_phases(project["id"])

    async def link_plan_files(self, project_id: str, plan_dir: str | Path) -> int:
        """Point each phase at its phase-NN-*.md file and adopt the file's status."""
        plan = scan_plan_dir(plan_dir)
        linked = 0
        for parsed in plan.phases:
            phase = await self.phase_repo.find_phase_by_kind(project_id, parsed.phase)
            if not phase:
                continue
            await self.phase_repo.update_phase(
                phase["id"],
                {
                    "plan_file_path": str(Path(parsed.filePath).resolve(strict=False)),
                    "status": parsed.status,
                },
            )
            linked += 1
        logger.info("Linked %d plan file(s) for project %s from %s", linked, project_id, plan_dir)
        return linked
