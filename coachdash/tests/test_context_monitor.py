import tempfile
import unittest

from coachdash.db.store import open_store
from coachdash.errors import ContextExhaustedError, InvalidParametersError, SessionNotFoundError
from coachdash.events import CONTEXT_STATUS
from coachdash.models import EstimatedScope
from coachdash.services.container import build_services
from coachdash.services.context_monitor import classify_trend, estimate_task_tokens


class ClassifyTrendTests(unittest.TestCase):
    def test_fewer_than_three_samples_is_stable(self) -> None:
        self.assertEqual(classify_trend([5000, 1000]), "stable")

    def test_recent_mean_above_critical_ceiling_is_critical(self) -> None:
        self.assertEqual(classify_trend([900, 900, 900]), "critical")

    def test_recent_growth_against_older_window(self) -> None:
        older = [200] * 5
        self.assertEqual(classify_trend([260] * 5 + older), "increasing")
        self.assertEqual(classify_trend([320] * 5 + older), "critical")
        self.assertEqual(classify_trend([210] * 5 + older), "stable")

    def test_small_recent_usage_is_always_stable(self) -> None:
        self.assertEqual(classify_trend([90] * 5 + [10] * 5), "stable")


class TaskEstimateTests(unittest.TestCase):
    def test_known_task_kinds(self) -> None:
        self.assertEqual(estimate_task_tokens("Write the test suite for auth"), 2000)
        self.assertEqual(estimate_task_tokens("Quick bug fix"), 600)
        self.assertEqual(estimate_task_tokens("Something new"), 1000)


class ContextMonitorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=False)
        self.session = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=500), context_budget=100000,
        )

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    async def test_two_records_sum_into_status(self) -> None:
        context = self.services.context
        await context.track_usage(self.session.id, "planning", 1000, "read files")
        status = await context.track_usage(self.session.id, "implementation", 5000, "write module")

        self.assertEqual(status.used_tokens, 6000)
        self.assertAlmostEqual(status.usage_percent, 0.06)
        self.assertEqual(status.trend, "stable")
        self.assertEqual(status.phase_breakdown, {"planning": 1000, "implementation": 5000})
        self.assertFalse(status.alert_shown)

        row = await self.store.sessions.get_by_id(self.session.id)
        self.assertEqual(row["context_used"], 6000)
        published = self.services.bus.channel(CONTEXT_STATUS).value
        self.assertEqual(published["status"]["used_tokens"], 6000)

    async def test_exhaustion_rejects_the_record_and_keeps_the_ledger(self) -> None:
        small = await self.services.sessions.start_session(
            "alpha", "bugfix", EstimatedScope(lines_of_code=50), context_budget=1000,
        )
        await self.services.context.track_usage(small.id, "implementation", 900, "edit")
        with self.assertRaises(ContextExhaustedError):
            await self.services.context.track_usage(small.id, "implementation", 200, "edit")

        self.assertEqual(await self.store.context_usage.total_for_session(small.id), 900)
        row = await self.store.sessions.get_by_id(small.id)
        self.assertEqual(row["context_used"], 900)

    async def test_zero_token_record_is_accepted_even_when_full(self) -> None:
        small = await self.services.sessions.start_session(
            "alpha", "bugfix", EstimatedScope(lines_of_code=50), context_budget=1000,
        )
        await self.services.context.track_usage(small.id, "implementation", 1000, "edit")
        status = await self.services.context.track_usage(small.id, "implementation", 0, "note")
        self.assertEqual(status.used_tokens, 1000)
        self.assertEqual(status.trend, "critical")

    async def test_negative_tokens_and_unknown_sessions_are_rejected(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.services.context.track_usage(self.session.id, "planning", -5, "bad")
        with self.assertRaises(SessionNotFoundError):
            await self.services.context.track_usage("missing", "planning", 5, "bad")

    async def test_thresholds_escalate_trend(self) -> None:
        status = await self.services.context.track_usage(self.session.id, "implementation", 86000, "bulk")
        self.assertEqual(status.trend, "critical")
        self.assertTrue(status.alert_shown)

    async def test_predict_filters_tasks_by_remaining_capacity(self) -> None:
        small = await self.services.sessions.start_session(
            "alpha", "bugfix", EstimatedScope(lines_of_code=50), context_budget=2000,
        )
        prediction = await self.services.context.predict(small.id, ["simple method", "integration work"])
        self.assertEqual(prediction.remaining_capacity, 2000)
        self.assertEqual(prediction.tasks_feasible, ["simple method"])
        self.assertFalse(prediction.recommended_checkpoint)

    async def test_optimize_is_advisory(self) -> None:
        await self.services.context.track_usage(self.session.id, "implementation", 10000, "write")
        result = await self.services.context.optimize(self.session.id, 0.05)
        self.assertEqual(result.optimizations_applied, ["Remove comments"])
        self.assertEqual(result.tokens_saved, 500)
        self.assertEqual(result.new_capacity, 90500)
        self.assertEqual(await self.store.context_usage.total_for_session(self.session.id), 10000)

    async def test_analytics_reports_peaks(self) -> None:
        await self.services.context.track_usage(self.session.id, "planning", 100, "read")
        await self.services.context.track_usage(self.session.id, "planning", 100, "read")
        await self.services.context.track_usage(self.session.id, "implementation", 3000, "write")
        analytics = await self.services.context.get_analytics(self.session.id)
        self.assertEqual(analytics.peak_usage_points[0].tokens, 3000)
        self.assertEqual(analytics.average_per_phase["planning"], 100)
        self.assertTrue(0 <= analytics.efficiency_score <= 100)


if __name__ == "__main__":
    unittest.main()
