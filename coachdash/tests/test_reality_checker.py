import json
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

from coachdash.db.store import open_store
from coachdash.errors import InvalidParametersError, SnapshotNotFoundError
from coachdash.events import REALITY_CHECKS
from coachdash.models import CheckpointMetrics, Discrepancy, EstimatedScope
from coachdash.services.container import build_services
from coachdash.services.reality_checker import confidence_score, metric_status
from coachdash.services.workspace import GitStatus


class ScoringTests(unittest.TestCase):
    def test_confidence_drops_per_severity_and_floors_at_zero(self) -> None:
        def make(severity: str) -> Discrepancy:
            return Discrepancy(type="state_drift", severity=severity, description="x")

        self.assertEqual(confidence_score([]), 1.0)
        self.assertEqual(confidence_score([make("critical"), make("warning")]), 0.75)
        self.assertEqual(confidence_score([make("critical")] * 6), 0.0)

    def test_metric_status_bands(self) -> None:
        self.assertEqual(metric_status(10), "accurate")
        self.assertEqual(metric_status(25), "minor_variance")
        self.assertEqual(metric_status(30.5), "major_variance")


class RealityCheckerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.root = Path(self.tmp.name)
        (self.root / "src").mkdir()
        (self.root / "src" / "app.py").write_text("import os\nprint(os.getcwd())\n", encoding="utf-8")

        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.root, agents_enabled=False)
        self.git_patch = patch.object(self.services.inspector, "git_status", return_value=GitStatus())
        self.git_patch.start()

        self.session = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=500), context_budget=100000,
        )
        await self.services.sessions.create_checkpoint(
            self.session.id,
            ["Implemented src/app.py", "Added src/missing.py"],
            CheckpointMetrics(lines_written=1000, context_used_percent=20),
        )

    async def asyncTearDown(self) -> None:
        self.git_patch.stop()
        await self.store.close()
        self.tmp.cleanup()

    async def test_missing_claimed_file_is_a_critical_discrepancy(self) -> None:
        before = await self.store.sessions.get_by_id(self.session.id)
        snapshot = await self.services.reality.perform_check(self.session.id)

        self.assertEqual(len(snapshot.discrepancies), 1)
        finding = snapshot.discrepancies[0]
        self.assertEqual(finding.type, "file_mismatch")
        self.assertEqual(finding.location, "src/missing.py")
        self.assertEqual(finding.fix_id, "fix_0")
        self.assertEqual(finding.ui_priority, 1)
        self.assertEqual(snapshot.confidence_score, 0.8)

        self.assertEqual(await self.store.sessions.get_by_id(self.session.id), before)
        self.assertEqual(await self.store.context_usage.total_for_session(self.session.id), 20000)
        stored = await self.store.reality.get_by_id(snapshot.snapshot_id)
        self.assertEqual(stored["session_id"], self.session.id)
        published = self.services.bus.channel(REALITY_CHECKS).value
        self.assertEqual(published["snapshot_id"], snapshot.snapshot_id)

    async def test_failing_test_report_is_reported(self) -> None:
        report = self.root / ".coachdash" / "test-report.json"
        report.parent.mkdir()
        report.write_text(json.dumps({"summary": {"passed": 3, "failed": 2, "total": 5}}), encoding="utf-8")

        snapshot = await self.services.reality.perform_check(self.session.id, "specific", ["tests"])
        self.assertEqual([d.type for d in snapshot.discrepancies], ["test_failure"])

    async def test_specific_check_requires_known_focus_areas(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.services.reality.perform_check(self.session.id, "specific")
        with self.assertRaises(InvalidParametersError):
            await self.services.reality.perform_check(self.session.id, "specific", ["vibes"])

    async def test_quick_check_honours_focus_areas(self) -> None:
        report = self.root / ".coachdash" / "test-report.json"
        report.parent.mkdir()
        report.write_text(json.dumps({"summary": {"passed": 1, "failed": 1, "total": 2}}), encoding="utf-8")

        snapshot = await self.services.reality.perform_check(self.session.id, "quick", ["tests"])
        self.assertEqual([d.type for d in snapshot.discrepancies], ["test_failure"])
        with self.assertRaises(InvalidParametersError):
            await self.services.reality.perform_check(self.session.id, "quick", ["documentation"])

    async def test_inflated_line_count_is_a_major_variance(self) -> None:
        metrics = await self.services.reality.validate_metrics(
            self.session.id, {"lines_written": 1000, "files_created": 1},
        )
        by_name = {m.name: m for m in metrics}
        self.assertEqual(by_name["lines_written"].actual_value, 2)
        self.assertEqual(by_name["lines_written"].status, "major_variance")
        self.assertEqual(by_name["files_created"].status, "accurate")

    async def test_validate_metrics_rejects_unknown_names(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.services.reality.validate_metrics(self.session.id, {"happiness": 10})
        with self.assertRaises(InvalidParametersError):
            await self.services.reality.validate_metrics(self.session.id, {})

    async def test_stale_doc_fix_refreshes_front_matter(self) -> None:
        docs = self.root / "docs"
        docs.mkdir()
        (docs / "guide.md").write_text("---\nupdated: 2020-01-01\n---\n# Guide\n", encoding="utf-8")

        snapshot = await self.services.reality.perform_check(self.session.id, "specific", ["documentation"])
        self.assertEqual(len(snapshot.discrepancies), 1)
        stale = snapshot.discrepancies[0]
        self.assertTrue(stale.auto_fixable)

        result = await self.services.reality.apply_fixes(snapshot.snapshot_id, [stale.fix_id, "fix_99"])
        self.assertEqual(result.applied, [stale.fix_id])
        self.assertEqual([f.fix_id for f in result.failed], ["fix_99"])
        self.assertNotIn("2020-01-01", (docs / "guide.md").read_text(encoding="utf-8"))
        stored = await self.store.reality.get_by_id(snapshot.snapshot_id)
        self.assertEqual(stored["auto_fixed_count"], 1)

    async def test_manual_discrepancies_are_not_auto_fixed(self) -> None:
        snapshot = await self.services.reality.perform_check(self.session.id, "quick")
        result = await self.services.reality.apply_fixes(snapshot.snapshot_id, ["fix_0"])
        self.assertEqual(result.applied, [])
        self.assertEqual(result.failed[0].reason, "Fix requires manual intervention")

    async def test_unknown_snapshot(self) -> None:
        with self.assertRaises(SnapshotNotFoundError):
            await self.services.reality.apply_fixes("missing", ["fix_0"])


if __name__ == "__main__":
    unittest.main()
