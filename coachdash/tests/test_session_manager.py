import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from coachdash.db.store import open_store
from coachdash.errors import (
    CommitFailedError,
    InvalidParametersError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from coachdash.events import CONTEXT_STATUS, SESSION_STATUS
from coachdash.models import CheckpointMetrics, EstimatedScope
from coachdash.services.container import build_services
from coachdash.services.planning import determine_phase, estimate_budget


class PlanningTests(unittest.TestCase):
    def test_budget_estimate_weights_tests_and_docs(self) -> None:
        scope = EstimatedScope(lines_of_code=500, test_coverage=100, documentation=50)
        self.assertEqual(estimate_budget(scope), 8520)

    def test_phase_follows_context_usage(self) -> None:
        self.assertEqual(determine_phase(5), "planning")
        self.assertEqual(determine_phase(40), "implementation")
        self.assertEqual(determine_phase(70), "testing")
        self.assertEqual(determine_phase(90), "documentation")


class SessionManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=False)
        self.sessions = self.services.sessions

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    async def _start(self, budget: int | None = 100000):
        return await self.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=500, test_coverage=100, documentation=50), budget,
        )

    async def test_start_creates_active_session_and_publishes_it(self) -> None:
        session = await self._start(budget=None)

        self.assertEqual(session.status, "active")
        self.assertEqual(session.current_phase, "planning")
        self.assertEqual(session.context_budget, 8520)
        self.assertEqual(session.context_used, 0)
        self.assertEqual(len(session.checkpoint_plans), 3)
        self.assertEqual(await self.store.context_usage.total_for_session(session.id), 0)
        published = self.services.bus.channel(SESSION_STATUS).value
        self.assertEqual(published["session"]["id"], session.id)
        self.assertEqual((await self.sessions.get_active_session()).id, session.id)

    async def test_start_validates_input(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.sessions.start_session("alpha", "party", EstimatedScope(lines_of_code=10))
        with self.assertRaises(InvalidParametersError):
            await self.sessions.start_session("alpha", "feature", EstimatedScope(lines_of_code=0))
        with self.assertRaises(SessionNotFoundError):
            await self.sessions.start_session(
                "alpha", "feature", EstimatedScope(lines_of_code=10), continuing_from="missing",
            )

    async def test_checkpoint_reconciles_ledger_and_resumes(self) -> None:
        session = await self._start()
        response = await self.sessions.create_checkpoint(
            session.id,
            ["Implemented src/app.py"],
            CheckpointMetrics(lines_written=120, tests_passing=4, context_used_percent=40),
        )

        self.assertEqual(response.checkpoint_number, 1)
        self.assertEqual(response.checkpoint_id, f"{session.id}-checkpoint-1")
        self.assertEqual(response.context_snapshot.important_files, ["src/app.py"])
        self.assertEqual(await self.store.context_usage.total_for_session(session.id), 40000)

        status = await self.sessions.get_session_status(session.id)
        self.assertEqual(status.status, "active")
        self.assertEqual(status.current_phase, "implementation")
        self.assertEqual(status.context_used, 40000)
        self.assertEqual(status.metrics.lines_written, 120)
        self.assertEqual(len(status.checkpoints), 1)

        second = await self.sessions.create_checkpoint(session.id, ["More"], CheckpointMetrics(lines_written=200))
        self.assertEqual(second.checkpoint_number, 2)

    async def test_failed_commit_leaves_no_partial_checkpoint(self) -> None:
        session = await self._start()
        context_version = self.services.bus.channel(CONTEXT_STATUS).version
        metrics = CheckpointMetrics(lines_written=50, context_used_percent=40)

        with patch.object(self.services.inspector, "git_commit", side_effect=RuntimeError("nothing to commit")):
            with self.assertRaises(CommitFailedError):
                await self.sessions.create_checkpoint(session.id, ["WIP"], metrics, commit_message="wip")

        self.assertEqual(await self.store.context_usage.total_for_session(session.id), 0)
        self.assertEqual(await self.store.checkpoints.list_for_session(session.id), [])
        self.assertEqual(self.services.bus.channel(CONTEXT_STATUS).version, context_version)
        status = await self.sessions.get_session_status(session.id)
        self.assertEqual((status.status, status.context_used), ("active", 0))

        with patch.object(self.services.inspector, "git_commit", side_effect=RuntimeError("nothing to commit")):
            forced = await self.sessions.create_checkpoint(
                session.id, ["WIP"], metrics, commit_message="wip", force=True,
            )
        self.assertIsNone(forced.commit_hash)
        self.assertEqual(forced.checkpoint_number, 1)
        self.assertEqual(await self.store.context_usage.total_for_session(session.id), 40000)
        published = self.services.bus.channel(CONTEXT_STATUS).value["status"]
        self.assertEqual(published["used_tokens"], 40000)

    async def test_estimated_budget_is_capped_by_default_window(self) -> None:
        self.sessions.default_budget = 5000
        estimated = await self._start(budget=None)
        self.assertEqual(estimated.context_budget, 5000)

        explicit = await self._start(budget=20000)
        self.assertEqual(explicit.context_budget, 20000)

    async def test_checkpoint_rejects_out_of_range_percent(self) -> None:
        session = await self._start()
        with self.assertRaises(InvalidParametersError):
            await self.sessions.create_checkpoint(session.id, [], CheckpointMetrics(context_used_percent=140))

    async def test_handoff_writes_document_and_ends_session(self) -> None:
        session = await self._start()
        await self.sessions.create_checkpoint(
            session.id, ["Implemented src/app.py"], CheckpointMetrics(lines_written=120, context_used_percent=40),
        )
        handoff = await self.sessions.create_handoff(session.id, ["Add integration tests", "  "])

        self.assertIn("## Next Session Goals", handoff.handoff_document)
        self.assertIn("- Add integration tests", handoff.handoff_document)
        self.assertTrue(handoff.checkpoint_id.endswith("-checkpoint-2"))
        self.assertIsNotNone(handoff.document_path)
        self.assertTrue((Path(self.tmp.name) / handoff.document_path).is_file())
        self.assertEqual(handoff.context_requirements[0].file_path, "src/app.py")
        self.assertEqual(handoff.estimated_next_session.estimated_lines, 480)

        status = await self.sessions.get_session_status(session.id)
        self.assertEqual(status.status, "handoff")
        self.assertIsNotNone(status.end_time)
        self.assertEqual(self.services.bus.channel(SESSION_STATUS).value, {"session": None})
        self.assertIsNone(await self.sessions.get_active_session())

        with self.assertRaises(SessionNotActiveError):
            await self.sessions.create_checkpoint(session.id, [], CheckpointMetrics())

        completed = await self.sessions.complete_session(session.id)
        self.assertEqual(completed.status, "complete")
        with self.assertRaises(SessionNotActiveError):
            await self.sessions.complete_session(session.id)

    async def test_successor_session_records_its_predecessor(self) -> None:
        first = await self._start()
        await self.sessions.create_handoff(first.id)
        second = await self.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=100), continuing_from=first.id,
        )
        self.assertEqual(second.continuing_from, first.id)
        history = await self.sessions.get_session_history("alpha")
        self.assertEqual({s.id for s in history}, {first.id, second.id})

    async def test_suggestions_and_debug_state(self) -> None:
        session = await self._start()
        await self.sessions.create_checkpoint(session.id, ["core"], CheckpointMetrics(context_used_percent=40))

        suggestions = await self.sessions.suggest_actions(session.id)
        self.assertEqual([s.action_id for s in suggestions], ["run-tests", "update-docs"])

        state = await self.sessions.get_debug_state(session.id)
        self.assertTrue(state["ledger_consistent"])
        self.assertEqual(state["checkpoints"], 1)
        self.assertTrue(state["channels"]["session_published"])

    async def test_restore_republishes_active_session(self) -> None:
        session = await self._start()
        self.services.bus.channel(SESSION_STATUS).publish({"session": None})
        await self.sessions.restore()
        self.assertEqual(self.services.bus.channel(SESSION_STATUS).value["session"]["id"], session.id)


if __name__ == "__main__":
    unittest.main()
