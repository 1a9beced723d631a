"""Phase sync status + conflict resolution API."""
from __future__ import annotations

import logging
from typing import Any, Literal, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from pydantic import BaseModel, Field, model_validator

from mission_control.db.factory import get_sync_log_repository
from mission_control.errors import ConflictNotFoundError, FileWriteError, StoreWriteError
from mission_control.models import SyncLogEntry, SyncStatusSnapshot

logger = logging.getLogger("mission_control.api.sync")

sync_router = APIRouter(prefix="/api/sync", tags=["sync"])


class ResolveConflictRequest(BaseModel):
    id: Optional[str] = None
    index: Optional[int] = Field(default=None, ge=0)
    resolution: Literal["use_dashboard", "use_file"]

    @model_validator(mode="after")
    def _require_target(self) -> "ResolveConflictRequest":
        if not self.id and self.index is None:
            raise ValueError("Either id or index is required")
        return self


class WriteBackRequest(BaseModel):
    projectId: str = Field(..., min_length=1)
    phaseKind: str = Field(..., min_length=1)
    updates: dict[str, Any] = Field(default_factory=dict)


def _get_sync_engine(request: Request):
    return getattr(request.app.state, "sync_engine", None)


def _require_running_engine(request: Request):
    sync_engine = _get_sync_engine(request)
    if not sync_engine or not sync_engine.is_running:
        raise HTTPException(status_code=503, detail="Sync engine not running")
    return sync_engine


@sync_router.get("", response_model=SyncStatusSnapshot)
async def get_sync_status(request: Request):
    """Aggregate sync state; a disabled engine reports an idle synced state."""
    sync_engine = _get_sync_engine(request)
    if not sync_engine:
        return {"status": "synced", "lastSync": None, "conflictCount": 0}
    return await sync_engine.get_status()


@sync_router.get("/conflicts")
async def list_conflicts(request: Request):
    """Unresolved conflicts in stable detection order."""
    sync_engine = _get_sync_engine(request)
    if not sync_engine:
        return []
    return await sync_engine.get_conflicts()


@sync_router.post("/conflicts")
async def resolve_conflict(request: Request, body: ResolveConflictRequest):
    """Resolve a conflict by id (preferred) or by position in the listing."""
    sync_engine = _require_running_engine(request)
    try:
        if body.id:
            resolved = await sync_engine.resolve_conflict_by_id(body.id, body.resolution)
        else:
            resolved = await sync_engine.resolve_conflict(body.index, body.resolution)
    except ConflictNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except (StoreWriteError, FileWriteError) as e:
        logger.error("Conflict resolution failed: %s", e)
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "conflict": resolved}


@sync_router.post("/write")
async def write_back(request: Request, body: WriteBackRequest):
    """Push dashboard field values into the phase's backing file."""
    sync_engine = _require_running_engine(request)
    try:
        file_path = await sync_engine.write_to_file(body.projectId, body.phaseKind, body.updates)
    except FileWriteError as e:
        logger.error("Write-back failed: %s", e)
        raise HTTPException(status_code=409, detail=str(e))
    return {"ok": True, "filePath": file_path}


@sync_router.get("/log", response_model=list[SyncLogEntry])
async def list_sync_log(
    request: Request,
    limit: int = Query(50, ge=1, le=500),
    entityId: str = Query("", description="Restrict to one phase id"),
):
    """Most recent sync audit entries, newest first."""
    db = getattr(request.app.state, "db", None)
    if db is None:
        raise HTTPException(status_code=503, detail="Database not initialized")
    repo = get_sync_log_repository(db)
    return await repo.list_recent(limit=limit, entity_id=entityId or None)
