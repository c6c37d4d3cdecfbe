import tempfile
import types
import unittest
from unittest.mock import patch

from fastapi import HTTPException
from fastapi.testclient import TestClient

from coachdash import config
from coachdash.db.store import open_store
from coachdash.errors import (
    CommitFailedError,
    ContextExhaustedError,
    InvalidParametersError,
    SessionNotFoundError,
    UnknownToolError,
)
from coachdash.events import SESSION_STATUS
from coachdash.models import EstimatedScope
from coachdash.routers import api as api_router
from coachdash.services.container import build_services

SESSION_PARAMS = {
    "project_name": "alpha",
    "session_type": "feature",
    "estimated_scope": {"lines_of_code": 500},
    "context_budget": 10000,
}


class StatusMappingTests(unittest.TestCase):
    def test_error_kinds_map_to_http_status(self) -> None:
        self.assertEqual(api_router.status_for(SessionNotFoundError("S-1")), 404)
        self.assertEqual(api_router.status_for(UnknownToolError("x")), 404)
        self.assertEqual(api_router.status_for(InvalidParametersError("bad")), 400)
        self.assertEqual(api_router.status_for(ContextExhaustedError(10, 5)), 409)
        self.assertEqual(api_router.status_for(CommitFailedError("no repo")), 500)


class SessionRouteTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.store = await open_store(":memory:")
        self.services = build_services(self.store, workspace_root=self.tmp.name, agents_enabled=False)
        self.request = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace(services=self.services)))

    async def asyncTearDown(self) -> None:
        await self.store.close()
        self.tmp.cleanup()

    async def test_active_session_and_lookups(self) -> None:
        self.assertIsNone(await api_router.get_active_session(self.request))
        session = await self.services.sessions.start_session(
            "alpha", "feature", EstimatedScope(lines_of_code=100), context_budget=5000,
        )
        active = await api_router.get_active_session(self.request)
        self.assertEqual(active.id, session.id)

        context = await api_router.get_session_context(session.id, self.request)
        self.assertEqual(context.total_tokens, 5000)
        self.assertEqual(await api_router.get_session_checkpoints(session.id, self.request), [])

        report = await api_router.get_project_report("alpha", self.request)
        self.assertEqual(report.project.name, "alpha")

    async def test_missing_session_is_404_with_suggestion(self) -> None:
        with self.assertRaises(HTTPException) as ctx:
            await api_router.get_session("missing", self.request)
        self.assertEqual(ctx.exception.status_code, 404)
        self.assertEqual(ctx.exception.detail["type"], "SessionNotFoundError")
        self.assertTrue(ctx.exception.detail["suggestion"])

    async def test_uninitialized_services_are_503(self) -> None:
        bare = types.SimpleNamespace(app=types.SimpleNamespace(state=types.SimpleNamespace()))
        with self.assertRaises(HTTPException) as ctx:
            await api_router.get_active_session(bare)
        self.assertEqual(ctx.exception.status_code, 503)


class AppTests(unittest.TestCase):
    def setUp(self) -> None:
        self.tmp = tempfile.TemporaryDirectory()
        self.patches = [
            patch.object(config, "DB_PATH", ":memory:"),
            patch.object(config, "WATCHER_ENABLED", False),
            patch.object(config, "WORKSPACE_ROOT", self.tmp.name),
        ]
        for p in self.patches:
            p.start()
        from coachdash.main import app

        self.app = app

    def tearDown(self) -> None:
        for p in reversed(self.patches):
            p.stop()
        self.tmp.cleanup()

    def test_health_reports_every_check(self) -> None:
        with TestClient(self.app) as client:
            response = client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["status"], "ok")
        self.assertEqual(payload["checks"], {"database": True, "websocket": True, "filesystem": True})

    def test_tool_endpoints(self) -> None:
        with TestClient(self.app) as client:
            tools = client.get("/api/tools").json()
            self.assertIn("session_start", [t["name"] for t in tools])

            started = client.post("/api/tools/session_start", json=SESSION_PARAMS)
            self.assertEqual(started.status_code, 200)
            session_id = started.json()["result"]["id"]

            self.assertEqual(client.get("/api/sessions/active").json()["id"], session_id)
            self.assertEqual(client.get(f"/api/sessions/{session_id}/checkpoints").json(), [])

            missing = client.post("/api/tools/teleport", json={})
            self.assertEqual(missing.status_code, 404)

            invalid = client.post("/api/tools/context_track", json={"session_id": session_id})
            self.assertEqual(invalid.status_code, 400)
            self.assertIn("phase", invalid.json()["detail"]["suggestion"])

            exhausted = client.post(
                "/api/tools/context_track",
                json={"session_id": session_id, "phase": "implementation", "tokens": 20000},
            )
            self.assertEqual(exhausted.status_code, 409)
            self.assertEqual(exhausted.json()["detail"]["type"], "ContextExhaustedError")

            self.assertEqual(client.get("/api/sessions/unknown").status_code, 404)

    def test_websocket_handshake_and_subscription(self) -> None:
        with TestClient(self.app) as client:
            token = self.app.state.hub.auth_token
            with client.websocket_connect("/ws") as ws:
                welcome = ws.receive_json()
                self.assertEqual(welcome["type"], "auth")
                self.assertFalse(welcome["data"]["authenticated"])

                ws.send_json({"type": "authenticate", "auth": token})
                self.assertTrue(ws.receive_json()["data"]["authenticated"])

                ws.send_json({"type": "subscribe", "topic": SESSION_STATUS})
                event = ws.receive_json()
                self.assertEqual(event, {"type": "event", "topic": SESSION_STATUS, "data": {"session": None}})

                ws.send_json({"type": "execute", "tool": "nope", "params": {}, "requestId": "r-9"})
                error = ws.receive_json()
                self.assertEqual((error["type"], error["requestId"]), ("error", "r-9"))

                ws.send_bytes(b"\x00\x01")
                self.assertEqual(ws.receive_json(), {"type": "error", "error": "Invalid message format"})
                ws.send_json({"type": "ping"})
                self.assertEqual(ws.receive_json()["type"], "pong")


if __name__ == "__main__":
    unittest.main()
