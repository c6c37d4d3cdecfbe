import tempfile
import unittest

from coachdash.db.store import open_store
from coachdash.errors import InvalidParametersError, ToolExecutionError, UnknownToolError
from coachdash.realtime.tools import TOOLS, ToolRegistry
from coachdash.services.container import build_services


class ToolRegistryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=False)
        self.registry = ToolRegistry(self.services)

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    def test_every_tool_publishes_a_json_schema(self) -> None:
        described = self.registry.describe()
        self.assertEqual(len(described), len(TOOLS))
        self.assertEqual(len({t["name"] for t in described}), len(TOOLS))
        start = next(t for t in described if t["name"] == "session_start")
        self.assertEqual(start["input_schema"]["type"], "object")
        self.assertIn("project_name", start["input_schema"]["required"])
        self.assertIn("session.status", start["affects"])

    async def test_unknown_tool(self) -> None:
        with self.assertRaises(UnknownToolError):
            await self.registry.execute("teleport", {})

    async def test_validation_errors_list_missing_fields(self) -> None:
        with self.assertRaises(InvalidParametersError) as ctx:
            await self.registry.execute("context_track", {"session_id": "S-1"})
        self.assertEqual(sorted(ctx.exception.missing_params), ["phase", "tokens"])

    async def test_session_round_trip_through_tools(self) -> None:
        self.assertIsNone(await self.registry.execute("session_status", {}))
        session = await self.registry.execute("session_start", {
            "project_name": "alpha",
            "session_type": "bugfix",
            "estimated_scope": {"lines_of_code": 80},
            "context_budget": 20000,
        })
        self.assertIsInstance(session, dict)

        status = await self.registry.execute(
            "context_track", {"session_id": session["id"], "phase": "implementation", "tokens": 1500},
        )
        self.assertEqual(status["used_tokens"], 1500)
        active = await self.registry.execute("session_status", {})
        self.assertEqual(active["id"], session["id"])

        health = await self.registry.execute("health_check", {})
        self.assertTrue(health["checks"]["database"])
        self.assertFalse(health["checks"]["websocket"])
        self.assertEqual(health["status"], "degraded")

    async def test_unexpected_failures_are_wrapped(self) -> None:
        async def explode(*args, **kwargs):
            raise KeyError("boom")

        self.services.sessions.get_session_history = explode
        with self.assertRaises(ToolExecutionError) as ctx:
            await self.registry.execute("session_history", {})
        self.assertEqual(ctx.exception.tool_name, "session_history")


if __name__ == "__main__":
    unittest.main()
