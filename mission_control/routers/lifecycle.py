"""API router for lifecycle phases."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field

from mission_control.errors import FileWriteError, InvalidPhaseValueError, PhaseNotFoundError
from mission_control.models import LifecyclePhase, Project
from mission_control.services.lifecycle import LifecycleService

logger = logging.getLogger("mission_control.api.lifecycle")

lifecycle_router = APIRouter(prefix="/api/lifecycle", tags=["lifecycle"])


class CreateProjectRequest(BaseModel):
    name: str = Field(..., min_length=1)
    planDir: Optional[str] = None
    workspaceId: Optional[str] = None


class UpdatePhaseRequest(BaseModel):
    action: Optional[Literal["advance", "rollback", "skip"]] = None
    status: Optional[str] = None
    agent_id: Optional[str] = None
    metadata: Optional[str] = None
    plan_file_path: Optional[str] = None


def _get_lifecycle_service(request: Request) -> LifecycleService:
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    return LifecycleService(db)


@lifecycle_router.get("", response_model=list[LifecyclePhase])
async def list_phases(request: Request, projectId: str = Query("", description="Owning project")):
    """List lifecycle phases for a project."""
    if not projectId:
        raise HTTPException(status_code=400, detail="projectId required")
    service = _get_lifecycle_service(request)
    return await service.list_phases(projectId)


@lifecycle_router.get("/projects", response_model=list[Project])
async def list_projects(request: Request):
    """All projects, newest first."""
    service = _get_lifecycle_service(request)
    return await service.list_projects()


@lifecycle_router.post("", status_code=201)
async def create_project(request: Request, body: CreateProjectRequest):
    """Create a project and initialize its seven lifecycle phases."""
    service = _get_lifecycle_service(request)
    project, phases = await service.create_project_with_phases(body.name, body.planDir, body.workspaceId)
    return {
        "project": Project(**project),
        "phases": [LifecyclePhase(**phase) for phase in phases],
    }


@lifecycle_router.patch("/{phase_id}")
async def update_phase(request: Request, phase_id: int, body: UpdatePhaseRequest):
    """Update or transition a phase, then mirror status/agent into its file."""
    service = _get_lifecycle_service(request)
    try:
        if body.action == "advance":
            updated: dict[str, Any] = {"id": phase_id, "status": await service.advance_phase(phase_id)}
        elif body.action == "rollback":
            updated = {"id": phase_id, "status": await service.rollback_phase(phase_id)}
        elif body.action == "skip":
            updated = await service.skip_phase(phase_id)
        else:
            fields = body.model_dump(exclude_none=True, exclude={"action"})
            updated = await service.update_phase_fields(phase_id, fields)
    except PhaseNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except InvalidPhaseValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    await _write_back(request, service, phase_id, body, updated)
    return updated


async def _write_back(
    request: Request,
    service: LifecycleService,
    phase_id: int,
    body: UpdatePhaseRequest,
    updated: dict[str, Any],
) -> None:
    sync_engine = getattr(request.app.state, "sync_engine", None)
    if not sync_engine or not sync_engine.is_running:
        return

    write_updates: dict[str, Any] = {}
    if body.action:
        write_updates["status"] = updated.get("status")
    elif body.status:
        write_updates["status"] = body.status
    if body.agent_id is not None:
        write_updates["agent_id"] = body.agent_id
    if not write_updates:
        return

    phase = await service.get_phase(phase_id)
    if not phase.get("plan_file_path"):
        return
    try:
        await sync_engine.write_to_file(phase["project_id"], phase["phase"], write_updates)
    except FileWriteError as e:
        # The store change stands; the file catches up on the next edit
        logger.error("Write-back for phase %s failed: %s", phase_id, e)
