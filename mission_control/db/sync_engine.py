"""Bidirectional phase file ↔ DB synchronization engine.

Watches the plan directory for edits to phase markdown files, compares
their frontmatter against the lifecycle store, and either applies the file's
values or queues field conflicts for manual resolution. Dashboard edits flow
the other way through `write_to_file`, which suppresses the watch event the
write itself produces.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from mission_control import config
from mission_control.conflict_detector import (
    TRACKED_FIELDS,
    detect_conflicts,
    tracked_fields,
    winning_side,
)
from mission_control.db.factory import (
    get_phase_repository,
    get_sync_baseline_repository,
    get_sync_log_repository,
)
from mission_control.db.file_watcher import FileWatcher
from mission_control.errors import (
    ConflictNotFoundError,
    FileParseError,
    FileReadError,
    FileWriteError,
    InvalidPhaseValueError,
    StoreWriteError,
    SuppressedEcho,
    UnmappedFileError,
)
from mission_control.models import ActiveConflict, FieldConflict, SyncBaseline
from mission_control.observability import (
    record_conflicts,
    record_parser_failure,
    record_sync_outcome,
    start_span,
)
from mission_control.parsers.frontmatter import (
    FrontmatterParseError,
    FrontmatterReadError,
    FrontmatterWriteError,
    read_phase_file,
    write_frontmatter_fields,
)
from mission_control.services.lifecycle import validate_phase_fields

logger = logging.getLogger("mission_control.sync")

RESOLUTIONS = ("use_dashboard", "use_file")
_ENTITY_TYPE = "lifecycle_phase"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _path_key(path: Path | str) -> str:
    """Normalised key so watcher paths and stored paths address the same file."""
    return str(Path(path).resolve(strict=False))


class PhaseSyncEngine:
    """Keeps lifecycle phase records and their phase files in agreement.

    One instance per process, held by the application (``app.state``).
    Conflict list, status, lastSync and suppression windows are only mutated
    under ``_state_lock``; the debounce map is only touched synchronously on
    the event loop.
    """

    def __init__(
        self,
        db: Any,  # db is Union[aiosqlite.Connection, asyncpg.Pool]
        plan_dir: Path | str,
        *,
        debounce_seconds: float | None = None,
        suppression_seconds: float | None = None,
        watch_depth: int | None = None,
        file_suffix: str | None = None,
        baseline_enabled: bool | None = None,
        watcher: FileWatcher | None = None,
    ):
        self.db = db
        self.plan_dir = Path(plan_dir)
        self.phase_repo = get_phase_repository(db)
        self.sync_log_repo = get_sync_log_repository(db)
        self.baseline_repo = get_sync_baseline_repository(db)

        self.debounce_seconds = (
            debounce_seconds if debounce_seconds is not None else config.SYNC_DEBOUNCE_MS / 1000
        )
        self.suppression_seconds = (
            suppression_seconds if suppression_seconds is not None else config.SYNC_SUPPRESSION_MS / 1000
        )
        self.watch_depth = watch_depth if watch_depth is not None else config.SYNC_WATCH_DEPTH
        self.file_suffix = file_suffix or config.SYNC_FILE_SUFFIX
        self.baseline_enabled = (
            baseline_enabled if baseline_enabled is not None else config.SYNC_BASELINE_ENABLED
        )

        self._watcher = watcher or FileWatcher()
        self._running = False
        self._state_lock = asyncio.Lock()
        self._status = "synced"
        self._last_sync: str | None = None
        self._conflicts: list[ActiveConflict] = []
        self._resolving: set[str] = set()
        self._max_resolved_history = 200
        self._write_suppression: dict[str, float] = {}
        self._suppression_releases: dict[str, asyncio.TimerHandle] = {}
        self._debounce_tasks: dict[str, asyncio.Task] = {}
        self._path_locks: dict[str, asyncio.Lock] = {}
        self._path_lock_users: dict[str, int] = {}

    # ── Lifecycle ───────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Begin watching the plan directory. No-op when already running."""
        if self._running:
            return
        self._running = True
        await self._watcher.start(
            self.plan_dir,
            self.notify_file_changed,
            suffix=self.file_suffix,
            max_depth=self.watch_depth,
        )
        logger.info(
            "Sync engine watching %s (debounce=%.2fs suppression=%.2fs baseline=%s)",
            self.plan_dir,
            self.debounce_seconds,
            self.suppression_seconds,
            self.baseline_enabled,
        )

    async def stop(self) -> None:
        """Stop watching and drop pending debounce timers without firing them.

        Processing that already started runs to completion.
        """
        was_running = self._running
        self._running = False
        await self._watcher.stop()

        pending = list(self._debounce_tasks.values())
        self._debounce_tasks.clear()
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        async with self._state_lock:
            for handle in self._suppression_releases.values():
                handle.cancel()
            self._suppression_releases.clear()
            self._write_suppression.clear()

        if was_running:
            logger.info("Sync engine stopped (%d pending change(s) dropped)", len(pending))

    # ── Change detection ────────────────────────────────────────────

    def notify_file_changed(self, path: Path | str) -> None:
        """(Re)start the debounce timer for a modified file."""
        if not self._running:
            return
        file_path = Path(path)
        if file_path.suffix != self.file_suffix:
            return

        key = _path_key(file_path)
        existing = self._debounce_tasks.pop(key, None)
        if existing is not None:
            existing.cancel()
        self._debounce_tasks[key] = asyncio.get_running_loop().create_task(
            self._debounce_then_process(key, file_path)
        )

    async def _debounce_then_process(self, key: str, path: Path) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # Past this point stop() can no longer cancel us
        if self._debounce_tasks.get(key) is asyncio.current_task():
            del self._debounce_tasks[key]
        await self._process_file_change(path)

    def _path_lock(self, key: str) -> asyncio.Lock:
        lock = self._path_locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._path_locks[key] = lock
        self._path_lock_users[key] = self._path_lock_users.get(key, 0) + 1
        return lock

    def _release_path_lock(self, key: str) -> None:
        # The last pass holding or waiting on a path drops its lock
        remaining = self._path_lock_users.get(key, 1) - 1
        if remaining > 0:
            self._path_lock_users[key] = remaining
            return
        self._path_lock_users.pop(key, None)
        self._path_locks.pop(key, None)

    async def _process_file_change(self, path: Path | str) -> str:
        """Run one sync pass for a changed file and return its outcome label.

        Never raises: every failure is logged and turned into a status
        reversion so the watch loop keeps running.
        """
        file_path = Path(path)
        key = _path_key(file_path)
        started = time.perf_counter()
        lock = self._path_lock(key)
        try:
            async with lock:
                with start_span("sync.file_change", {"path": str(file_path)}):
                    try:
                        outcome = await self._sync_file_to_store(file_path, key)
                    except Exception:
                        logger.exception("Unexpected error syncing %s", file_path)
                        await self._settle_status()
                        outcome = "error"
        finally:
            self._release_path_lock(key)
        record_sync_outcome("filesystem", outcome, (time.perf_counter() - started) * 1000)
        return outcome

    async def _sync_file_to_store(self, path: Path, key: str) -> str:
        try:
            await self._ensure_not_echo(key)
            async with self._state_lock:
                self._status = "syncing"
            file_state = self._read_file_state(path)
            phase = await self._resolve_phase(path)
        except SuppressedEcho:
            logger.debug("Ignoring echo of our own write: %s", path)
            return "suppressed"
        except FileReadError as exc:
            logger.error("Failed to read phase file %s: %s", path, exc)
            await self._settle_status()
            return "read_error"
        except FileParseError as exc:
            logger.error("Failed to parse phase file %s: %s", path, exc)
            record_parser_failure("frontmatter")
            await self._settle_status()
            return "parse_error"
        except UnmappedFileError:
            logger.debug("No lifecycle phase mapped to %s", path)
            await self._settle_status()
            return "unmapped"

        phase_id = int(phase["id"])
        db_state = tracked_fields(phase)
        baseline = await self._load_baseline(phase_id) if self.baseline_enabled else None
        field_conflicts = detect_conflicts(db_state, file_state, baseline)
        now = _now_iso()

        if field_conflicts:
            await self._queue_conflicts(phase_id, str(path), field_conflicts, now)
            await self._append_log(
                "filesystem",
                phase_id,
                {"conflicts": [fc.model_dump(exclude_none=True) for fc in field_conflicts]},
                conflict_resolved=False,
                timestamp=now,
            )
            record_conflicts([fc.field for fc in field_conflicts], "detected")
            logger.warning(
                "Sync conflict on phase %s (%s): %s",
                phase_id,
                path,
                ", ".join(fc.field for fc in field_conflicts),
            )
            return "conflict"

        store_updates, file_updates = self._plan_application(db_state, file_state, baseline)
        outcome = "applied"
        applied_db = dict(db_state)
        if store_updates:
            try:
                await self.phase_repo.update_phase(phase_id, validate_phase_fields(store_updates))
                applied_db.update(store_updates)
            except Exception as exc:
                # Not transactional with the audit entry below
                logger.error("DB update failed for phase %s from %s: %s", phase_id, path, exc)
                outcome = "store_error"

        applied_file = dict(file_state)
        if file_updates:
            try:
                await self._write_file(path, file_updates)
                applied_file.update(file_updates)
            except FileWriteError as exc:
                logger.error("Write-back to %s failed: %s", path, exc)

        change: dict[str, Any] = {"applied": store_updates}
        if file_updates:
            change["written"] = file_updates
        await self._append_log("filesystem", phase_id, change, conflict_resolved=True, timestamp=now)

        if self.baseline_enabled:
            agreed = {
                field: applied_db[field]
                for field in TRACKED_FIELDS
                if applied_db.get(field, "") == applied_file.get(field, "")
            }
            await self._refresh_baseline(phase_id, agreed)

        async with self._state_lock:
            self._last_sync = now
            self._status = "conflict" if self._has_unresolved() else "synced"
        logger.info("Synced phase %s from %s (%s)", phase_id, path, outcome)
        return outcome

    async def _ensure_not_echo(self, key: str) -> None:
        async with self._state_lock:
            stamp = self._write_suppression.get(key)
        if stamp is not None and time.monotonic() - stamp < self.suppression_seconds:
            raise SuppressedEcho(key)

    def _read_file_state(self, path: Path) -> dict[str, str]:
        try:
            content = read_phase_file(path)
        except FrontmatterReadError as exc:
            raise FileReadError(str(exc)) from exc
        except FrontmatterParseError as exc:
            raise FileParseError(str(exc)) from exc
        return tracked_fields(content.fields)

    async def _resolve_phase(self, path: Path) -> dict:
        phase = await self.phase_repo.find_phase_by_path(path)
        if not phase:
            raise UnmappedFileError(str(path))
        return phase

    def _plan_application(
        self,
        db_state: dict[str, str],
        file_state: dict[str, str],
        baseline: dict[str, str] | None,
    ) -> tuple[dict[str, str], dict[str, str]]:
        """Split a conflict-free comparison into store updates and file updates.

        Without a baseline the file's non-empty values are applied to the
        store. With one, each diverging field goes to whichever side moved
        away from the baseline.
        """
        if baseline is None:
            return {field: value for field, value in file_state.items() if value}, {}

        store_updates: dict[str, str] = {}
        file_updates: dict[str, str] = {}
        for field in TRACKED_FIELDS:
            side = winning_side(db_state.get(field, ""), file_state.get(field, ""), baseline.get(field, ""))
            if side == "file" and file_state.get(field):
                store_updates[field] = file_state[field]
            elif side == "dashboard":
                file_updates[field] = db_state.get(field, "")
        return store_updates, file_updates

    async def _queue_conflicts(
        self,
        phase_id: int,
        file_path: str,
        field_conflicts: list[FieldConflict],
        detected_at: str,
    ) -> None:
        """Add conflicts to the queue, refreshing an open one for the same field in place.

        A conflict that is mid-resolution is never refreshed; the new
        divergence gets its own entry so the resolution cannot swallow it.
        """
        async with self._state_lock:
            for fc in field_conflicts:
                existing = next(
                    (
                        c for c in self._conflicts
                        if c.resolvedAt is None
                        and c.id not in self._resolving
                        and c.phaseId == phase_id
                        and c.field == fc.field
                    ),
                    None,
                )
                if existing is not None:
                    existing.dbValue = fc.dbValue
                    existing.fileValue = fc.fileValue
                    existing.lastSyncValue = fc.lastSyncValue
                    existing.filePath = file_path
                    existing.detectedAt = detected_at
                    continue
                self._conflicts.append(
                    ActiveConflict(
                        **fc.model_dump(),
                        id=f"CF-{uuid.uuid4()}",
                        phaseId=phase_id,
                        filePath=file_path,
                        detectedAt=detected_at,
                    )
                )
            self._status = "conflict"

    # ── Dashboard write-back ────────────────────────────────────────

    async def write_to_file(self, project_id: str, phase_kind: str, updates: dict[str, Any]) -> str | None:
        """Write dashboard changes into the phase's backing file.

        Returns the written path, or None when the phase has no file.
        Raises FileWriteError when the file cannot be rewritten.
        """
        phase = await self.phase_repo.find_phase_by_kind(project_id, phase_kind)
        if not phase or not phase.get("plan_file_path"):
            return None

        file_path = str(phase["plan_file_path"])
        phase_id = int(phase["id"])
        with start_span("sync.write_to_file", {"path": file_path, "phase_id": phase_id}):
            await self._write_file(file_path, updates)

        now = _now_iso()
        await self._append_log(
            "dashboard",
            phase_id,
            {"written": updates},
            conflict_resolved=True,
            timestamp=now,
        )
        if self.baseline_enabled:
            written = tracked_fields({field: updates.get(field) for field in TRACKED_FIELDS})
            await self._refresh_baseline(
                phase_id, {field: written[field] for field in TRACKED_FIELDS if field in updates}
            )

        async with self._state_lock:
            self._last_sync = now
            self._status = "conflict" if self._has_unresolved() else "synced"
        record_sync_outcome("dashboard", "written")
        logger.info("Wrote %s to %s for phase %s", sorted(updates), file_path, phase_id)
        return file_path

    async def _write_file(self, file_path: Path | str, updates: dict[str, Any]) -> None:
        """Open a suppression window for the path, then rewrite its frontmatter.

        The window is released by timer whether or not the write succeeds.
        """
        key = _path_key(file_path)
        async with self._state_lock:
            self._open_suppression_window(key)
        try:
            write_frontmatter_fields(file_path, updates)
        except (FrontmatterReadError, FrontmatterParseError, FrontmatterWriteError) as exc:
            raise FileWriteError(f"Failed to write {file_path}: {exc}") from exc

    def _open_suppression_window(self, key: str) -> None:
        stamp = time.monotonic()
        self._write_suppression[key] = stamp
        previous = self._suppression_releases.pop(key, None)
        if previous is not None:
            previous.cancel()
        self._suppression_releases[key] = asyncio.get_running_loop().call_later(
            self.suppression_seconds, self._release_suppression_window, key, stamp
        )

    def _release_suppression_window(self, key: str, stamp: float) -> None:
        # A newer write on the same path owns the window now
        if self._write_suppression.get(key) == stamp:
            del self._write_suppression[key]
            self._suppression_releases.pop(key, None)

    # ── Status + conflicts ──────────────────────────────────────────

    def _has_unresolved(self) -> bool:
        return any(c.resolvedAt is None for c in self._conflicts)

    async def _settle_status(self) -> None:
        async with self._state_lock:
            self._status = "conflict" if self._has_unresolved() else "synced"

    async def get_status(self) -> dict[str, Any]:
        async with self._state_lock:
            return {
                "status": self._status,
                "lastSync": self._last_sync,
                "conflictCount": sum(1 for c in self._conflicts if c.resolvedAt is None),
            }

    async def get_conflicts(self) -> list[ActiveConflict]:
        """Unresolved conflicts in detection order."""
        async with self._state_lock:
            return [c.model_copy() for c in self._conflicts if c.resolvedAt is None]

    async def resolve_conflict(self, index: int, resolution: str) -> ActiveConflict:
        """Resolve the conflict at `index` of the current unresolved listing.

        Positions shift as conflicts come and go; prefer resolve_conflict_by_id.
        """
        async with self._state_lock:
            unresolved = [c for c in self._conflicts if c.resolvedAt is None]
            if index < 0 or index >= len(unresolved):
                raise ConflictNotFoundError(f"No unresolved conflict at index {index}")
            conflict_id = unresolved[index].id
        return await self.resolve_conflict_by_id(conflict_id, resolution)

    async def resolve_conflict_by_id(self, conflict_id: str, resolution: str) -> ActiveConflict:
        """Settle one conflict by picking the dashboard or the file value.

        The conflict stays unresolved if the store update or file write fails.
        """
        if resolution not in RESOLUTIONS:
            raise ValueError(f"Unknown resolution: {resolution!r}")

        async with self._state_lock:
            conflict = next(
                (c for c in self._conflicts if c.id == conflict_id and c.resolvedAt is None),
                None,
            )
            if conflict is None or conflict_id in self._resolving:
                raise ConflictNotFoundError(f"Conflict {conflict_id} not found or already resolved")
            self._resolving.add(conflict_id)

        try:
            with start_span("sync.resolve_conflict", {"conflict_id": conflict_id, "resolution": resolution}):
                agreed_value = await self._apply_resolution(conflict, resolution)
        finally:
            async with self._state_lock:
                self._resolving.discard(conflict_id)

        now = _now_iso()
        async with self._state_lock:
            conflict.resolvedAt = now
            conflict.resolution = resolution
            self._last_sync = now
            self._prune_resolved()
            self._status = "conflict" if self._has_unresolved() else "synced"
            resolved = conflict.model_copy()

        await self._append_log(
            "dashboard",
            conflict.phaseId,
            {"field": conflict.field, "value": agreed_value},
            conflict_resolved=True,
            resolution=resolution,
            timestamp=now,
        )
        if self.baseline_enabled:
            await self._refresh_baseline(conflict.phaseId, {conflict.field: agreed_value})
        record_conflicts([conflict.field], "resolved")
        logger.info(
            "Resolved conflict %s on phase %s field %s with %s",
            conflict_id,
            conflict.phaseId,
            conflict.field,
            resolution,
        )
        return resolved

    async def _apply_resolution(self, conflict: ActiveConflict, resolution: str) -> str:
        """Push the chosen value to the other side and return it."""
        if resolution == "use_file":
            try:
                fields = validate_phase_fields({conflict.field: conflict.fileValue})
                updated = await self.phase_repo.update_phase(conflict.phaseId, fields)
            except InvalidPhaseValueError as exc:
                raise StoreWriteError(str(exc)) from exc
            except Exception as exc:
                raise StoreWriteError(f"Failed to update phase {conflict.phaseId}: {exc}") from exc
            if updated is None:
                raise StoreWriteError(f"Phase {conflict.phaseId} no longer exists")
            return conflict.fileValue

        try:
            phase = await self.phase_repo.get_phase(conflict.phaseId)
        except Exception as exc:
            raise StoreWriteError(f"Failed to read phase {conflict.phaseId}: {exc}") from exc
        if phase is None:
            raise StoreWriteError(f"Phase {conflict.phaseId} no longer exists")
        current = tracked_fields(phase).get(conflict.field, "")
        await self._write_file(conflict.filePath, {conflict.field: current})
        return current

    def _prune_resolved(self) -> None:
        resolved = [c for c in self._conflicts if c.resolvedAt is not None]
        overflow = len(resolved) - self._max_resolved_history
        if overflow <= 0:
            return
        stale_ids = {c.id for c in resolved[:overflow]}
        self._conflicts = [c for c in self._conflicts if c.id not in stale_ids]

    # ── Store helpers ───────────────────────────────────────────────

    async def _append_log(
        self,
        source: str,
        phase_id: int,
        change: dict[str, Any],
        *,
        conflict_resolved: bool,
        timestamp: str,
        resolution: str | None = None,
    ) -> None:
        try:
            await self.sync_log_repo.append(
                {
                    "source": source,
                    "entity_type": _ENTITY_TYPE,
                    "entity_id": str(phase_id),
                    "change": json.dumps(change),
                    "conflict_resolved": conflict_resolved,
                    "resolution": resolution,
                    "timestamp": timestamp,
                }
            )
        except Exception as exc:
            logger.error("Failed to append sync log for phase %s: %s", phase_id, exc)

    async def _load_baseline(self, phase_id: int) -> dict[str, str] | None:
        try:
            row = await self.baseline_repo.get(phase_id)
        except Exception as exc:
            logger.error("Failed to load sync baseline for phase %s: %s", phase_id, exc)
            return None
        if row is None:
            return None
        return SyncBaseline(**row).as_fields()

    async def _refresh_baseline(self, phase_id: int, agreed: dict[str, str]) -> None:
        """Merge newly agreed field values into the phase's stored baseline."""
        if not agreed:
            return
        try:
            current = await self.baseline_repo.get(phase_id)
            merged = tracked_fields(current or {})
            merged.update(agreed)
            await self.baseline_repo.upsert(phase_id, merged)
        except Exception as exc:
            logger.error("Failed to store sync baseline for phase %s: %s", phase_id, exc)
