"""Pydantic models matching the frontend TypeScript types."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Literal, Optional

PhaseType = Literal[
    "requirements",
    "planning",
    "research",
    "implementation",
    "testing",
    "review",
    "deploy",
]
PhaseStatus = Literal["pending", "active", "blocked", "complete", "skipped"]
SyncSource = Literal["dashboard", "filesystem"]
SyncStatus = Literal["synced", "syncing", "conflict"]
ConflictResolution = Literal["use_dashboard", "use_file"]

# ── Lifecycle models ────────────────────────────────────────────────

class Project(BaseModel):
    id: str
    name: str
    plan_dir: Optional[str] = None
    workspace_id: str = "default"
    created_at: str = ""
    updated_at: str = ""


class LifecyclePhase(BaseModel):
    id: int
    project_id: str
    phase: PhaseType
    status: PhaseStatus = "pending"
    agent_id: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    plan_file_path: Optional[str] = None
    metadata: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


# ── Sync models ─────────────────────────────────────────────────────

class FieldConflict(BaseModel):
    field: str
    dbValue: str
    fileValue: str
    lastSyncValue: Optional[str] = None


class ActiveConflict(FieldConflict):
    id: str
    phaseId: int
    filePath: str
    detectedAt: str = ""
    resolvedAt: Optional[str] = None
    resolution: Optional[ConflictResolution] = None


class SyncStatusSnapshot(BaseModel):
    status: SyncStatus = "synced"
    lastSync: Optional[str] = None
    conflictCount: int = 0


class SyncLogEntry(BaseModel):
    id: Optional[int] = None
    source: SyncSource
    entity_type: str = "lifecycle_phase"
    entity_id: str
    change: str
    conflict_resolved: bool = False
    resolution: Optional[str] = None
    timestamp: str


class SyncBaseline(BaseModel):
    phase_id: int
    status: str = ""
    agent_id: str = ""
    synced_at: str = ""

    def as_fields(self) -> dict[str, str]:
        return {"status": self.status, "agent_id": self.agent_id}


# ── Plan directory models ───────────────────────────────────────────

class ParsedPhaseFile(BaseModel):
    phase: PhaseType
    status: PhaseStatus = "pending"
    title: Optional[str] = None
    description: Optional[str] = None
    filePath: str
    fileName: str


class ParsedPlan(BaseModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    phases: list[ParsedPhaseFile] = Field(default_factory=list)
