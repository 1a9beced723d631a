import asyncio
import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import AsyncMock, patch

import aiosqlite

from mission_control.db.repositories.phases import SqlitePhaseRepository
from mission_control.db.repositories.sync_log import (
    SqliteSyncBaselineRepository,
    SqliteSyncLogRepository,
)
from mission_control.db.sqlite_migrations import run_migrations
from mission_control.db.sync_engine import PhaseSyncEngine
from mission_control.errors import ConflictNotFoundError, FileWriteError, StoreWriteError
from mission_control.parsers.frontmatter import read_phase_file
from mission_control.services.lifecycle import PHASE_ORDER

_BODY = "# Implementation\n\n- [ ] wire the engine\n"


class _FakeWatcher:
    def __init__(self) -> None:
        self.started: list[dict] = []
        self.stop_calls = 0
        self.on_change = None

    async def start(self, root, on_change, *, suffix=".md", max_depth=2) -> None:
        self.started.append({"root": root, "suffix": suffix, "max_depth": max_depth})
        self.on_change = on_change

    async def stop(self) -> None:
        self.stop_calls += 1


def _write_phase_file(path: Path, status: str = "active", agent_id: str = "") -> None:
    agent = agent_id or "''"
    path.write_text(f"---\ntitle: Build\nstatus: {status}\nagent_id: {agent}\n---\n{_BODY}", encoding="utf-8")


class _EngineTestCase(unittest.IsolatedAsyncioTestCase):
    baseline_enabled = False

    async def asyncSetUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.plan_dir = Path(self._tmp.name)

        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqlitePhaseRepository(self.db)
        self.log_repo = SqliteSyncLogRepository(self.db)
        self.baseline_repo = SqliteSyncBaselineRepository(self.db)

        project = await self.repo.create_project("Demo", str(self.plan_dir))
        self.project_id = project["id"]
        await self.repo.init_phases(self.project_id, PHASE_ORDER)

        self.phase_file = self.plan_dir / "phase-04-implementation.md"
        _write_phase_file(self.phase_file)
        phase = await self.repo.find_phase_by_kind(self.project_id, "implementation")
        self.phase_id = phase["id"]
        await self.repo.update_phase(
            self.phase_id, {"status": "active", "plan_file_path": str(self.phase_file.resolve())}
        )

        self.watcher = _FakeWatcher()
        self.engine = PhaseSyncEngine(
            self.db,
            self.plan_dir,
            debounce_seconds=0.05,
            suppression_seconds=0.4,
            baseline_enabled=self.baseline_enabled,
            watcher=self.watcher,
        )

    async def asyncTearDown(self) -> None:
        await self.engine.stop()
        await self.db.close()
        self._tmp.cleanup()

    async def _phase(self) -> dict:
        return await self.repo.get_phase(self.phase_id)

    async def _log(self) -> list[dict]:
        return list(reversed(await self.log_repo.list_recent()))


class FileToStoreTests(_EngineTestCase):
    async def test_agreeing_file_is_applied_and_logged(self) -> None:
        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "applied")
        status = await self.engine.get_status()
        self.assertEqual(status["status"], "synced")
        self.assertEqual(status["conflictCount"], 0)
        self.assertIsNotNone(status["lastSync"])

        log = await self._log()
        self.assertEqual(len(log), 1)
        self.assertEqual(log[0]["source"], "filesystem")
        self.assertTrue(log[0]["conflict_resolved"])
        self.assertEqual(log[0]["entity_id"], str(self.phase_id))

    async def test_divergent_file_queues_conflict_and_leaves_store_alone(self) -> None:
        _write_phase_file(self.phase_file, status="complete")

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "conflict")
        conflicts = await self.engine.get_conflicts()
        self.assertEqual(len(conflicts), 1)
        self.assertTrue(conflicts[0].id.startswith("CF-"))
        self.assertEqual(conflicts[0].field, "status")
        self.assertEqual(conflicts[0].dbValue, "active")
        self.assertEqual(conflicts[0].fileValue, "complete")
        self.assertIsNone(conflicts[0].lastSyncValue)
        self.assertEqual(conflicts[0].phaseId, self.phase_id)

        status = await self.engine.get_status()
        self.assertEqual(status["status"], "conflict")
        self.assertEqual(status["conflictCount"], 1)
        self.assertEqual((await self._phase())["status"], "active")

        log = await self._log()
        self.assertEqual(len(log), 1)
        self.assertFalse(log[0]["conflict_resolved"])
        self.assertEqual(json.loads(log[0]["change"])["conflicts"][0]["field"], "status")

    async def test_repeated_divergence_refreshes_the_open_conflict(self) -> None:
        _write_phase_file(self.phase_file, status="complete")
        await self.engine._process_file_change(self.phase_file)
        first_id = (await self.engine.get_conflicts())[0].id

        _write_phase_file(self.phase_file, status="blocked")
        await self.engine._process_file_change(self.phase_file)

        conflicts = await self.engine.get_conflicts()
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].id, first_id)
        self.assertEqual(conflicts[0].fileValue, "blocked")

    async def test_unmapped_file_is_ignored(self) -> None:
        stray = self.plan_dir / "notes.md"
        stray.write_text("---\nstatus: complete\n---\n", encoding="utf-8")

        outcome = await self.engine._process_file_change(stray)

        self.assertEqual(outcome, "unmapped")
        self.assertEqual((await self.engine.get_status())["status"], "synced")
        self.assertEqual(await self._log(), [])

    async def test_malformed_frontmatter_fails_soft(self) -> None:
        self.phase_file.write_text("---\nstatus: [unclosed\n---\nbody\n", encoding="utf-8")

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "parse_error")
        self.assertEqual((await self.engine.get_status())["status"], "synced")
        self.assertEqual(await self._log(), [])
        self.assertEqual((await self._phase())["status"], "active")

    async def test_failure_with_outstanding_conflict_reverts_to_conflict(self) -> None:
        _write_phase_file(self.phase_file, status="complete")
        await self.engine._process_file_change(self.phase_file)

        self.phase_file.write_text("---\nstatus: [unclosed\n---\n", encoding="utf-8")
        await self.engine._process_file_change(self.phase_file)

        self.assertEqual((await self.engine.get_status())["status"], "conflict")

    async def test_missing_file_reports_read_error(self) -> None:
        self.phase_file.unlink()

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "read_error")
        self.assertEqual((await self.engine.get_status())["status"], "synced")

    async def test_file_agent_is_applied_when_store_agrees_on_status(self) -> None:
        await self.repo.update_phase(self.phase_id, {"agent_id": "agent-7"})
        _write_phase_file(self.phase_file, status="active", agent_id="agent-7")

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "applied")
        self.assertEqual((await self._phase())["agent_id"], "agent-7")

    async def test_path_locks_are_dropped_once_idle(self) -> None:
        outcomes = await asyncio.gather(
            self.engine._process_file_change(self.phase_file),
            self.engine._process_file_change(self.phase_file),
            self.engine._process_file_change(self.plan_dir / "notes.md"),
        )

        self.assertEqual(sorted(outcomes), ["applied", "applied", "read_error"])
        self.assertEqual(self.engine._path_locks, {})
        self.assertEqual(self.engine._path_lock_users, {})

    async def test_store_failure_is_reported_without_raising(self) -> None:
        with patch.object(self.engine.phase_repo, "update_phase", AsyncMock(side_effect=RuntimeError("locked"))):
            outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "store_error")
        self.assertEqual((await self.engine.get_status())["status"], "synced")


class DebounceAndLifecycleTests(_EngineTestCase):
    async def test_start_is_idempotent_and_registers_watch(self) -> None:
        await self.engine.start()
        await self.engine.start()

        self.assertTrue(self.engine.is_running)
        self.assertEqual(len(self.watcher.started), 1)
        self.assertEqual(self.watcher.started[0]["suffix"], ".md")
        self.assertEqual(self.watcher.started[0]["max_depth"], 2)

        await self.engine.stop()
        await self.engine.stop()
        self.assertFalse(self.engine.is_running)

    async def test_burst_of_events_collapses_into_one_pass_with_latest_content(self) -> None:
        await self.engine.start()

        _write_phase_file(self.phase_file, status="blocked")
        self.engine.notify_file_changed(self.phase_file)
        await asyncio.sleep(0.01)
        _write_phase_file(self.phase_file, status="active")
        self.engine.notify_file_changed(self.phase_file)
        self.watcher.on_change(self.phase_file)

        await asyncio.sleep(0.3)

        log = await self._log()
        self.assertEqual(len(log), 1)
        self.assertTrue(log[0]["conflict_resolved"])
        self.assertEqual(await self.engine.get_conflicts(), [])

    async def test_events_are_ignored_when_stopped_or_not_markdown(self) -> None:
        self.engine.notify_file_changed(self.phase_file)
        await self.engine.start()
        self.engine.notify_file_changed(self.plan_dir / "phase-04-implementation.txt")

        await asyncio.sleep(0.15)

        self.assertEqual(await self._log(), [])

    async def test_stop_drops_pending_debounce_timers(self) -> None:
        await self.engine.start()
        self.engine.notify_file_changed(self.phase_file)

        await self.engine.stop()
        await asyncio.sleep(0.15)

        self.assertEqual(await self._log(), [])
        self.assertEqual(self.watcher.stop_calls, 1)


class WriteBackTests(_EngineTestCase):
    async def test_dashboard_write_is_not_echoed_back(self) -> None:
        await self.engine.start()
        await self.repo.update_phase(self.phase_id, {"status": "blocked"})

        written = await self.engine.write_to_file(self.project_id, "implementation", {"status": "blocked"})
        self.engine.notify_file_changed(self.phase_file)
        await asyncio.sleep(0.2)

        self.assertEqual(written, str(self.phase_file.resolve()))
        content = read_phase_file(self.phase_file)
        self.assertEqual(content.fields["status"], "blocked")
        self.assertEqual(content.fields["title"], "Build")
        self.assertEqual(content.body, _BODY)

        log = await self._log()
        self.assertEqual([entry["source"] for entry in log], ["dashboard"])
        self.assertEqual(json.loads(log[0]["change"]), {"written": {"status": "blocked"}})
        self.assertEqual(await self.engine.get_conflicts(), [])
        self.assertEqual((await self._phase())["status"], "blocked")
        self.assertEqual((await self.engine.get_status())["status"], "synced")

    async def test_echo_is_suppressed_inside_window_and_processed_after(self) -> None:
        await self.repo.update_phase(self.phase_id, {"status": "blocked"})
        await self.engine.write_to_file(self.project_id, "implementation", {"status": "blocked"})

        self.assertEqual(await self.engine._process_file_change(self.phase_file), "suppressed")

        await asyncio.sleep(0.5)
        _write_phase_file(self.phase_file, status="complete")
        self.assertEqual(await self.engine._process_file_change(self.phase_file), "conflict")

    async def test_write_keeps_conflict_status_while_conflicts_are_open(self) -> None:
        _write_phase_file(self.phase_file, status="complete")
        await self.engine._process_file_change(self.phase_file)

        await self.engine.write_to_file(self.project_id, "implementation", {"agent_id": "agent-2"})

        status = await self.engine.get_status()
        self.assertEqual(status["status"], "conflict")
        self.assertEqual(status["conflictCount"], 1)

    async def test_phase_without_file_is_a_noop(self) -> None:
        result = await self.engine.write_to_file(self.project_id, "deploy", {"status": "active"})

        self.assertIsNone(result)
        self.assertEqual(await self._log(), [])
        self.assertIsNone(await self.engine.write_to_file(self.project_id, "nope", {"status": "active"}))

    async def test_failed_write_raises_and_window_still_expires(self) -> None:
        missing = self.plan_dir / "phase-05-testing.md"
        phase = await self.repo.find_phase_by_kind(self.project_id, "testing")
        await self.repo.update_phase(phase["id"], {"plan_file_path": str(missing.resolve())})

        with self.assertRaises(FileWriteError):
            await self.engine.write_to_file(self.project_id, "testing", {"status": "active"})

        self.assertEqual(await self._log(), [])
        self.assertEqual((await self.engine.get_status())["status"], "synced")
        await asyncio.sleep(0.5)
        self.assertEqual(self.engine._write_suppression, {})


class ConflictResolutionTests(_EngineTestCase):
    async def _queue_status_conflict(self, file_status: str = "complete", agent_id: str = ""):
        _write_phase_file(self.phase_file, status=file_status, agent_id=agent_id)
        await self.engine._process_file_change(self.phase_file)
        return await self.engine.get_conflicts()

    async def test_use_file_updates_store_and_settles_status(self) -> None:
        conflicts = await self._queue_status_conflict()

        resolved = await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")

        self.assertEqual(resolved.resolution, "use_file")
        self.assertIsNotNone(resolved.resolvedAt)
        self.assertEqual((await self._phase())["status"], "complete")
        self.assertEqual(await self.engine.get_conflicts(), [])
        self.assertEqual((await self.engine.get_status())["status"], "synced")

        last = (await self._log())[-1]
        self.assertEqual(last["source"], "dashboard")
        self.assertEqual(last["resolution"], "use_file")
        self.assertEqual(json.loads(last["change"]), {"field": "status", "value": "complete"})

    async def test_use_dashboard_rewrites_file_without_echo(self) -> None:
        conflicts = await self._queue_status_conflict()

        await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_dashboard")

        content = read_phase_file(self.phase_file)
        self.assertEqual(content.fields["status"], "active")
        self.assertEqual(content.body, _BODY)
        self.assertEqual((await self._phase())["status"], "active")
        self.assertEqual(await self.engine._process_file_change(self.phase_file), "suppressed")
        self.assertEqual((await self.engine.get_status())["status"], "synced")

    async def test_status_stays_conflict_until_every_conflict_is_resolved(self) -> None:
        conflicts = await self._queue_status_conflict(agent_id="agent-7")
        self.assertEqual([c.field for c in conflicts], ["status", "agent_id"])

        await self.engine.resolve_conflict(0, "use_dashboard")
        status = await self.engine.get_status()
        self.assertEqual(status["status"], "conflict")
        self.assertEqual(status["conflictCount"], 1)

        await self.engine.resolve_conflict(0, "use_file")
        self.assertEqual((await self.engine.get_status())["status"], "synced")
        self.assertEqual((await self._phase())["agent_id"], "agent-7")

    async def test_stale_id_and_index_are_rejected(self) -> None:
        conflicts = await self._queue_status_conflict()
        await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")

        with self.assertRaises(ConflictNotFoundError):
            await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")
        with self.assertRaises(ConflictNotFoundError):
            await self.engine.resolve_conflict(0, "use_file")
        with self.assertRaises(ValueError):
            await self.engine.resolve_conflict_by_id(conflicts[0].id, "merge")

    async def test_invalid_file_value_keeps_conflict_open(self) -> None:
        conflicts = await self._queue_status_conflict(file_status="done")

        with self.assertRaises(StoreWriteError):
            await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")

        remaining = await self.engine.get_conflicts()
        self.assertEqual([c.id for c in remaining], [conflicts[0].id])
        self.assertIsNone(remaining[0].resolvedAt)
        self.assertEqual((await self.engine.get_status())["status"], "conflict")

    async def test_store_failure_keeps_conflict_open(self) -> None:
        conflicts = await self._queue_status_conflict()

        with patch.object(self.engine.phase_repo, "update_phase", AsyncMock(side_effect=RuntimeError("locked"))):
            with self.assertRaises(StoreWriteError):
                await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")

        self.assertEqual(len(await self.engine.get_conflicts()), 1)
        # Resolution can be retried once the store recovers
        await self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file")
        self.assertEqual(await self.engine.get_conflicts(), [])

    async def test_edit_during_resolution_is_queued_as_a_new_conflict(self) -> None:
        conflicts = await self._queue_status_conflict()
        gate = asyncio.Event()
        real_update = self.engine.phase_repo.update_phase

        async def _gated_update(phase_id, fields):
            await gate.wait()
            return await real_update(phase_id, fields)

        with patch.object(self.engine.phase_repo, "update_phase", _gated_update):
            resolving = asyncio.create_task(self.engine.resolve_conflict_by_id(conflicts[0].id, "use_file"))
            await asyncio.sleep(0.01)
            _write_phase_file(self.phase_file, status="blocked")
            outcome = await self.engine._process_file_change(self.phase_file)
            gate.set()
            resolved = await resolving

        self.assertEqual(outcome, "conflict")
        self.assertEqual(resolved.fileValue, "complete")
        self.assertEqual((await self._phase())["status"], "complete")

        remaining = await self.engine.get_conflicts()
        self.assertEqual(len(remaining), 1)
        self.assertNotEqual(remaining[0].id, conflicts[0].id)
        self.assertEqual(remaining[0].fileValue, "blocked")
        status = await self.engine.get_status()
        self.assertEqual(status["status"], "conflict")
        self.assertEqual(status["conflictCount"], 1)

    async def test_resolved_history_is_pruned(self) -> None:
        self.engine._max_resolved_history = 1
        first = (await self._queue_status_conflict())[0]
        await self.engine.resolve_conflict_by_id(first.id, "use_dashboard")
        await asyncio.sleep(0.5)
        second = (await self._queue_status_conflict(file_status="blocked"))[0]
        await self.engine.resolve_conflict_by_id(second.id, "use_dashboard")

        self.assertEqual([c.id for c in self.engine._conflicts], [second.id])


class BaselineModeTests(_EngineTestCase):
    baseline_enabled = True

    async def test_file_only_change_is_applied_to_store(self) -> None:
        await self.baseline_repo.upsert(self.phase_id, {"status": "active", "agent_id": ""})
        _write_phase_file(self.phase_file, status="complete")

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "applied")
        self.assertEqual(await self.engine.get_conflicts(), [])
        self.assertEqual((await self._phase())["status"], "complete")
        self.assertEqual((await self.baseline_repo.get(self.phase_id))["status"], "complete")

    async def test_store_only_change_is_written_to_file(self) -> None:
        await self.baseline_repo.upsert(self.phase_id, {"status": "active", "agent_id": ""})
        await self.repo.update_phase(self.phase_id, {"status": "blocked"})

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "applied")
        self.assertEqual(read_phase_file(self.phase_file).fields["status"], "blocked")
        self.assertEqual(read_phase_file(self.phase_file).body, _BODY)
        self.assertEqual((await self._phase())["status"], "blocked")
        self.assertEqual((await self.baseline_repo.get(self.phase_id))["status"], "blocked")

    async def test_both_sides_changed_is_a_conflict_with_baseline_value(self) -> None:
        await self.baseline_repo.upsert(self.phase_id, {"status": "active", "agent_id": ""})
        await self.repo.update_phase(self.phase_id, {"status": "blocked"})
        _write_phase_file(self.phase_file, status="complete")

        outcome = await self.engine._process_file_change(self.phase_file)

        self.assertEqual(outcome, "conflict")
        conflicts = await self.engine.get_conflicts()
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].lastSyncValue, "active")

    async def test_missing_baseline_falls_back_to_plain_comparison(self) -> None:
        _write_phase_file(self.phase_file, status="complete")

        self.assertEqual(await self.engine._process_file_change(self.phase_file), "conflict")
        self.assertIsNone((await self.engine.get_conflicts())[0].lastSyncValue)

    async def test_resolution_records_agreed_value_as_baseline(self) -> None:
        _write_phase_file(self.phase_file, status="complete")
        await self.engine._process_file_change(self.phase_file)
        conflict = (await self.engine.get_conflicts())[0]

        await self.engine.resolve_conflict_by_id(conflict.id, "use_file")

        self.assertEqual((await self.baseline_repo.get(self.phase_id))["status"], "complete")


if __name__ == "__main__":
    unittest.main()
