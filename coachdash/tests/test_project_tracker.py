import tempfile
import unittest

from coachdash.db.store import open_store
from coachdash.errors import BlockerNotFoundError, InvalidParametersError, ProjectNotFoundError
from coachdash.events import PROJECT_STATUS, PROJECT_VELOCITY
from coachdash.models import CheckpointMetrics, EstimatedScope
from coachdash.services.container import build_services


class ProjectTrackerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=False)
        self.projects = self.services.projects
        self.session = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=400), context_budget=50000,
        )

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    async def test_track_refreshes_aggregates(self) -> None:
        await self.services.sessions.create_checkpoint(
            self.session.id, ["core"], CheckpointMetrics(lines_written=150, context_used_percent=20),
        )
        project = await self.projects.track("alpha", self.session.id)

        self.assertEqual(project.total_sessions, 1)
        self.assertEqual(project.total_lines_written, 150)
        self.assertEqual(self.services.bus.channel(PROJECT_STATUS).value["project"]["name"], "alpha")

    async def test_track_rejects_mismatched_project(self) -> None:
        await self.projects.ensure_project("beta")
        with self.assertRaises(InvalidParametersError):
            await self.projects.track("beta", self.session.id)
        with self.assertRaises(ProjectNotFoundError):
            await self.projects.track("gamma", self.session.id)

    async def test_blocker_lifecycle(self) -> None:
        blocker = await self.projects.report_blocker(self.session.id, "technical", "Flaky CI", 8)
        self.assertIsNone(blocker.resolved_at)

        velocity = await self.projects.analyze_velocity("alpha")
        self.assertIn("1 high-impact blocker(s) slowing progress", velocity.factors)
        self.assertEqual(self.services.bus.channel(PROJECT_VELOCITY).value["metrics"]["project_id"], blocker.project_id)

        resolved = await self.projects.resolve_blocker(blocker.id, "Pinned the runner image")
        self.assertEqual(resolved.resolution, "Pinned the runner image")
        self.assertIsNotNone(resolved.time_to_resolve)
        with self.assertRaises(InvalidParametersError):
            await self.projects.resolve_blocker(blocker.id, "again")
        with self.assertRaises(BlockerNotFoundError):
            await self.projects.resolve_blocker("missing", "done")

        project = (await self.projects.generate_report("alpha")).project
        self.assertEqual(project.common_blockers, ["technical"])

    async def test_blocker_validation(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.projects.report_blocker(self.session.id, "cosmic", "??", 5)
        with self.assertRaises(InvalidParametersError):
            await self.projects.report_blocker(self.session.id, "technical", "Too big", 11)

    async def test_report_with_predictions(self) -> None:
        await self.services.sessions.create_checkpoint(
            self.session.id, ["core"], CheckpointMetrics(lines_written=100, context_used_percent=20),
        )
        report = await self.projects.generate_report(self.session.project_id, include_predictions=True)

        self.assertEqual([s.id for s in report.sessions], [self.session.id])
        self.assertEqual(report.predictions["remaining_lines"], 300)
        self.assertEqual(report.predictions["estimated_sessions_remaining"], 3)
        self.assertEqual(report.velocity.sample_size, 1)


if __name__ == "__main__":
    unittest.main()
