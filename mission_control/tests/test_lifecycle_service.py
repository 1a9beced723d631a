import tempfile
import unittest
from pathlib import Path

import aiosqlite

from mission_control.db.sqlite_migrations import run_migrations
from mission_control.errors import InvalidPhaseValueError, PhaseNotFoundError
from mission_control.services.lifecycle import (
    LifecycleService,
    next_status,
    previous_status,
    validate_phase_fields,
)


class StatusMachineTests(unittest.TestCase):
    def test_forward_transitions(self) -> None:
        self.assertEqual(next_status("pending"), "active")
        self.assertEqual(next_status("active"), "complete")
        self.assertEqual(next_status("blocked"), "active")
        self.assertEqual(next_status("skipped"), "active")
        self.assertIsNone(next_status("complete"))

    def test_backward_transitions(self) -> None:
        self.assertEqual(previous_status("active"), "pending")
        self.assertEqual(previous_status("complete"), "active")
        self.assertEqual(previous_status("blocked"), "pending")
        self.assertEqual(previous_status("skipped"), "pending")
        self.assertIsNone(previous_status("pending"))

    def test_validate_phase_fields(self) -> None:
        self.assertEqual(validate_phase_fields({"agent_id": ""}), {"agent_id": None})
        self.assertEqual(validate_phase_fields({"status": "blocked"}), {"status": "blocked"})
        with self.assertRaises(InvalidPhaseValueError):
            validate_phase_fields({"status": "done"})


class LifecycleServiceTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.service = LifecycleService(self.db)
        self.project, self.phases = await self.service.create_project_with_phases("Demo")
        self.phase_id = self.phases[0]["id"]

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_advance_stamps_start_and_completion(self) -> None:
        self.assertEqual(await self.service.advance_phase(self.phase_id), "active")
        phase = await self.service.get_phase(self.phase_id)
        self.assertIsNotNone(phase["started_at"])
        self.assertIsNone(phase["completed_at"])

        self.assertEqual(await self.service.advance_phase(self.phase_id), "complete")
        phase = await self.service.get_phase(self.phase_id)
        self.assertIsNotNone(phase["completed_at"])

        # Terminal state stays put
        self.assertEqual(await self.service.advance_phase(self.phase_id), "complete")

    async def test_rollback_and_skip(self) -> None:
        self.assertEqual(await self.service.rollback_phase(self.phase_id), "pending")

        skipped = await self.service.skip_phase(self.phase_id)
        self.assertEqual(skipped["status"], "skipped")
        self.assertEqual(await self.service.rollback_phase(self.phase_id), "pending")

    async def test_update_rejects_invalid_status_without_writing(self) -> None:
        with self.assertRaises(InvalidPhaseValueError):
            await self.service.update_phase_fields(self.phase_id, {"status": "finished"})
        phase = await self.service.get_phase(self.phase_id)
        self.assertEqual(phase["status"], "pending")

    async def test_missing_phase_raises_not_found(self) -> None:
        with self.assertRaises(PhaseNotFoundError):
            await self.service.advance_phase(9999)
        with self.assertRaises(PhaseNotFoundError):
            await self.service.update_phase_fields(9999, {"status": "active"})

    async def test_create_project_links_plan_files(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            plan_dir = Path(tmp)
            (plan_dir / "phase-01-requirements.md").write_text("---\nstatus: complete\n---\n", encoding="utf-8")
            (plan_dir / "phase-04-build.md").write_text("---\nstatus: active\n---\n", encoding="utf-8")

            project, phases = await self.service.create_project_with_phases("Linked", str(plan_dir))

            by_kind = {p["phase"]: p for p in phases}
            self.assertEqual(project["plan_dir"], str(plan_dir))
            self.assertEqual(by_kind["requirements"]["status"], "complete")
            self.assertEqual(
                by_kind["requirements"]["plan_file_path"],
                str((plan_dir / "phase-01-requirements.md").resolve()),
            )
            self.assertEqual(by_kind["implementation"]["status"], "active")
            self.assertIsNone(by_kind["planning"]["plan_file_path"])
            self.assertEqual(len(phases), 7)


if __name__ == "__main__":
    unittest.main()
