import asyncio
import math
import tempfile
import unittest

from coachdash.agents.base import BaseAgent
from coachdash.agents.budget_guardian import BudgetGuardianAgent, classify_pattern, warning_level
from coachdash.agents.memory import AgentMemory
from coachdash.agents.naming import detect_conflicts
from coachdash.agents.orchestrator import AgentOrchestrator, rank_suggestions
from coachdash.db.store import open_store
from coachdash.errors import InvalidParametersError, ProjectNotFoundError
from coachdash.events import ADVISORY_SUGGESTIONS
from coachdash.models import AgentContext, AgentExecutionResult, AgentSuggestion, EstimatedScope
from coachdash.services.container import build_services


def _context(pct: float, phase: str = "implementation") -> AgentContext:
    return AgentContext(session_id="S-1", project_id="P-1", current_phase=phase, context_usage_percent=pct)


def _suggestion(agent: str, priority: str) -> AgentSuggestion:
    return AgentSuggestion(
        id=f"{agent}-{priority}", agent_name=agent, type="quality", priority=priority, title=priority, description="",
    )


class _FakeAgent(BaseAgent):
    def __init__(self, kind: str, allocation: int, priority: str = "low", delay: float = 0.0):
        super().__init__()
        self.name = kind
        self.kind = kind
        self.max_context_allocation = allocation
        self.priority = priority
        self.delay = delay
        self.calls = 0

    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        return AgentExecutionResult(
            agent_name=self.name, success=True, suggestions=[_suggestion(self.name, self.priority)],
        )


class _BrokenAgent(_FakeAgent):
    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        raise RuntimeError("kaput")


class PatternTests(unittest.TestCase):
    def test_classify_pattern_bands(self) -> None:
        self.assertEqual(classify_pattern([40], 40).pattern, "steady")
        self.assertEqual(classify_pattern([40, 40.5, 41], 41).pattern, "plateau")
        self.assertEqual(classify_pattern([40, 42, 44], 44).pattern, "steady")
        spike = classify_pattern([40, 45, 50], 50)
        self.assertEqual(spike.pattern, "spike")
        self.assertEqual(spike.projected_exhaustion, 10)
        self.assertEqual(classify_pattern([40, 50, 60], 60).pattern, "exponential")
        self.assertTrue(math.isinf(classify_pattern([60, 50], 50).projected_exhaustion))

    def test_warning_levels(self) -> None:
        self.assertIsNone(warning_level(39))
        self.assertEqual(warning_level(40), "warning")
        self.assertEqual(warning_level(65), "danger")
        self.assertEqual(warning_level(80), "critical")

    def test_rank_suggestions_is_stable_within_priority(self) -> None:
        ranked = rank_suggestions([
            _suggestion("a", "low"), _suggestion("b", "critical"), _suggestion("c", "low"), _suggestion("d", "high"),
        ])
        self.assertEqual([s.agent_name for s in ranked], ["b", "d", "a", "c"])

    def test_detect_conflicts_picks_most_used_name(self) -> None:
        symbols = [
            {"concept": "user id", "chosen_name": "userId", "usage_count": 8, "context_type": "variable",
             "created_at": "2026-01-01"},
            {"concept": "user id", "chosen_name": "uid", "usage_count": 1, "context_type": "variable",
             "created_at": "2026-01-02"},
        ]
        conflicts = detect_conflicts(symbols)
        self.assertEqual(len(conflicts), 1)
        self.assertEqual(conflicts[0].canonical_name, "userId")
        self.assertEqual(conflicts[0].conflicting_name, "uid")
        self.assertEqual(conflicts[0].severity, "high")


class BudgetGuardianTests(unittest.IsolatedAsyncioTestCase):
    async def test_rapid_growth_predicts_exhaustion(self) -> None:
        agent = BudgetGuardianAgent()
        await agent.run(_context(45))
        result = await agent.run(_context(62))

        titles = [s.title for s in result.suggestions]
        self.assertIn("High context usage detected", titles)
        self.assertIn("Context exhaustion predicted", titles)
        self.assertEqual(agent.history("S-1"), [45, 62])

    async def test_critical_level_suggests_optimizing(self) -> None:
        result = await BudgetGuardianAgent().run(_context(82, phase="testing"))
        critical = result.suggestions[0]
        self.assertEqual(critical.priority, "critical")
        self.assertEqual(critical.suggested_action.tool, "context_optimize")
        optimizations = [s for s in result.suggestions if s.title.startswith("Optimization")]
        self.assertEqual(len(optimizations), 2)


class OrchestratorTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.store = await open_store(":memory:")
        self.memory = AgentMemory(self.store)

    async def asyncTearDown(self) -> None:
        await self.store.close()

    async def test_runs_in_priority_order_and_ranks_suggestions(self) -> None:
        orchestrator = AgentOrchestrator(self.memory, timeout_ms=500, max_context_percent=50)
        orchestrator.register(_FakeAgent("budget_guardian", 10, "critical"))
        orchestrator.register(_FakeAgent("naming", 15, "low"))
        orchestrator.register(_FakeAgent("checkpoint_timing", 20, "high"))

        response = await orchestrator.execute(_context(50))
        self.assertEqual([r.agent_name for r in response.results], ["naming", "checkpoint_timing", "budget_guardian"])
        self.assertEqual([s.priority for s in response.suggestions], ["critical", "high", "low"])
        self.assertEqual(response.skipped, [])

    async def test_allocation_cap_skips_agents_that_do_not_fit(self) -> None:
        orchestrator = AgentOrchestrator(self.memory, timeout_ms=500, max_context_percent=30)
        naming = _FakeAgent("naming", 15)
        timing = _FakeAgent("checkpoint_timing", 20)
        guardian = _FakeAgent("budget_guardian", 10)
        for agent in (naming, timing, guardian):
            orchestrator.register(agent)

        response = await orchestrator.execute(_context(50))
        self.assertEqual(response.skipped, ["checkpoint_timing"])
        self.assertEqual((naming.calls, timing.calls, guardian.calls), (1, 0, 1))

    async def test_timeout_becomes_failed_result(self) -> None:
        orchestrator = AgentOrchestrator(self.memory, timeout_ms=20, max_context_percent=50)
        slow = _FakeAgent("naming", 15, delay=0.5)
        orchestrator.register(slow)

        response = await orchestrator.execute(_context(50))
        self.assertFalse(response.results[0].success)
        self.assertIn("timeout", response.results[0].error)
        self.assertEqual(response.suggestions, [])
        self.assertEqual(slow.health().error_count, 1)

    async def test_agent_errors_are_contained(self) -> None:
        orchestrator = AgentOrchestrator(self.memory, timeout_ms=500, max_context_percent=50)
        orchestrator.register(_BrokenAgent("naming", 15))
        orchestrator.register(_FakeAgent("checkpoint_timing", 20, "medium"))

        response = await orchestrator.execute(_context(50))
        self.assertEqual([r.success for r in response.results], [False, True])
        self.assertEqual(response.results[0].error, "kaput")
        self.assertEqual(len(response.suggestions), 1)

    async def test_duplicate_registration_is_rejected(self) -> None:
        orchestrator = AgentOrchestrator(self.memory)
        orchestrator.register(_FakeAgent("naming", 15))
        with self.assertRaises(ValueError):
            orchestrator.register(_FakeAgent("naming", 15))


class AgentManagerTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=True)
        self.agents = self.services.agents
        self.session = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=500), context_budget=100000,
        )

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    def _checkpoint_titles(self, response) -> list[str]:
        return [s.title for s in response.suggestions if s.agent_name == "checkpoint_timing"]

    async def test_checkpoint_thresholds_fire_once_per_session(self) -> None:
        first = await self.agents.run_agents(self.session.id, "implementation", 35)
        self.assertEqual(len(self._checkpoint_titles(first)), 1)

        repeat = await self.agents.run_agents(self.session.id, "implementation", 40)
        self.assertEqual(self._checkpoint_titles(repeat), [])

        jump = await self.agents.run_agents(self.session.id, "testing", 75)
        self.assertEqual(len(self._checkpoint_titles(jump)), 1)
        self.assertIn("70%", jump.suggestions[[s.agent_name for s in jump.suggestions].index("checkpoint_timing")].description)

        again = await self.agents.run_agents(self.session.id, "testing", 78)
        self.assertEqual(self._checkpoint_titles(again), [])

    async def test_announced_threshold_survives_long_decision_history(self) -> None:
        first = await self.agents.run_agents(self.session.id, "implementation", 35)
        self.assertEqual(len(self._checkpoint_titles(first)), 1)

        for _ in range(60):
            response = await self.agents.run_agents(self.session.id, "implementation", 36)
            self.assertEqual(self._checkpoint_titles(response), [])

    async def test_critical_threshold_requires_action(self) -> None:
        response = await self.agents.run_agents(self.session.id, "documentation", 87)
        timing = [s for s in response.suggestions if s.agent_name == "checkpoint_timing"]
        self.assertEqual(timing[0].priority, "critical")
        self.assertTrue(timing[0].action_required)
        self.assertTrue(timing[0].suggested_action.params["force"])
        self.assertEqual(response.suggestions[0].priority, "critical")

    async def test_usage_defaults_to_the_ledger(self) -> None:
        await self.services.context.track_usage(self.session.id, "implementation", 45000, "write")
        response = await self.agents.run_agents(self.session.id)
        names = [r.agent_name for r in response.results]
        self.assertIn("budget_guardian", names)
        published = self.services.bus.channel(ADVISORY_SUGGESTIONS).value
        self.assertEqual(len(published["suggestions"]), len(response.suggestions))
        self.assertIsNotNone(published["last_run"])

    async def test_guardian_history_is_dropped_when_session_closes(self) -> None:
        await self.agents.run_agents(self.session.id, "implementation", 45)
        self.assertEqual(self.agents.guardian.history(self.session.id), [45])

        await self.services.sessions.complete_session(self.session.id)
        self.assertEqual(self.agents.guardian.history(self.session.id), [])

        successor = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=500), context_budget=100000,
        )
        await self.agents.run_agents(successor.id, "implementation", 50)
        self.assertEqual(self.agents.guardian.history(successor.id), [50])
        await self.services.sessions.create_handoff(successor.id)
        self.assertEqual(self.agents.guardian.history(successor.id), [])

    async def test_disabled_agents_do_nothing(self) -> None:
        self.agents.set_enabled(False)
        response = await self.agents.run_agents(self.session.id, "implementation", 50)
        self.assertFalse(response.enabled)
        self.assertEqual(response.results, [])

    async def test_out_of_range_usage_is_rejected(self) -> None:
        with self.assertRaises(InvalidParametersError):
            await self.agents.run_agents(self.session.id, "implementation", 120)

    async def test_symbol_registry_and_naming_conflicts(self) -> None:
        first = await self.agents.register_symbol("alpha", "user id", "userId")
        self.assertFalse(first["conflict"])
        await self.agents.register_symbol("alpha", "user id", "userId")
        clash = await self.agents.register_symbol("alpha", "user id", "uid")
        self.assertTrue(clash["conflict"])
        self.assertEqual(clash["canonical_name"], "userId")

        found = await self.agents.lookup_symbol(self.session.project_id, "user id")
        self.assertEqual(found["name"], "userId")
        self.assertEqual(found["usage_count"], 3)

        missing = await self.agents.lookup_symbol("alpha", "order total")
        self.assertIsNone(missing["name"])

        symbols = await self.agents.list_symbols("alpha")
        self.assertEqual({s.chosen_name for s in symbols}, {"userId", "uid"})

        response = await self.agents.run_agents(self.session.id, "implementation", 20)
        naming = [s for s in response.suggestions if s.agent_name == "naming"]
        self.assertEqual(len(naming), 1)
        self.assertEqual(naming[0].suggested_action.params["chosen_name"], "userId")

    async def test_unknown_project_and_agent(self) -> None:
        with self.assertRaises(ProjectNotFoundError):
            await self.agents.register_symbol("nope", "user id", "userId")
        with self.assertRaises(InvalidParametersError):
            await self.agents.agent_status("psychic")

    async def test_agent_status_reports_decisions(self) -> None:
        await self.agents.run_agents(self.session.id, "implementation", 35)
        status = await self.agents.agent_status("checkpoint_timing")
        report = status["agents"]["checkpoint_timing"]
        self.assertEqual(report["total_decisions"], 1)
        self.assertEqual(report["success_rate"], 1.0)
        self.assertEqual(report["recent_decisions"][0]["decision_made"]["threshold"], 30)


if __name__ == "__main__":
    unittest.main()
