"""Publish/subscribe hub bridging websocket observers to the managers.

Each connection owns a bounded outbound queue drained by its own sender
task; publishing only enqueues, so one slow socket never holds up another.
"""
from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from typing import Any, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect

from coachdash import config
from coachdash.errors import CoachDashError, ToolExecutionError
from coachdash.events import KNOWN_TOPICS, TOOL_EXECUTION, EventBus
from coachdash.realtime.tools import ToolRegistry

logger = logging.getLogger("coachdash.hub")


class Connection:
    def __init__(self, websocket: Any, queue_size: int = config.WS_SEND_QUEUE_SIZE):
        self.id = f"client_{uuid.uuid4().hex[:12]}"
        self.websocket = websocket
        self.authenticated = False
        self.topics: set[str] = set()
        self.queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=max(1, queue_size))
        self.dropped = 0
        self._sender: Optional[asyncio.Task] = None
        self.closed = False

    def enqueue(self, message: dict[str, Any]) -> None:
        if self.closed:
            return
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"Connection {self.id} is slow, {self.dropped} messages dropped")
        self.queue.put_nowait(message)

    def start(self) -> None:
        self._sender = asyncio.create_task(self._send_loop())

    async def _send_loop(self) -> None:
        try:
            while True:
                message = await self.queue.get()
                await self.websocket.send_json(message)
        except asyncio.CancelledError:
            pass
        except (WebSocketDisconnect, RuntimeError, OSError) as e:
            logger.info(f"Sender for {self.id} stopped: {e}")
        finally:
            self.closed = True

    async def flush(self, timeout: float = 1.0) -> None:
        """Wait until queued messages are written (or the sender stops)."""
        deadline = time.monotonic() + timeout
        while not self.queue.empty() and not self.closed and time.monotonic() < deadline:
            await asyncio.sleep(0.01)

    async def close(self) -> None:
        self.closed = True
        if self._sender:
            self._sender.cancel()
            try:
                await self._sender
            except asyncio.CancelledError:
                pass
            self._sender = None


class Hub:
    def __init__(
        self,
        bus: EventBus,
        registry: ToolRegistry,
        auth_token: str = config.WS_AUTH_TOKEN,
        heartbeat_seconds: float = config.WS_HEARTBEAT_SECONDS,
        queue_size: int = config.WS_SEND_QUEUE_SIZE,
    ):
        self.bus = bus
        self.registry = registry
        self.auth_token = auth_token
        self.heartbeat_seconds = heartbeat_seconds
        self.queue_size = queue_size
        self.connections: dict[str, Connection] = {}
        self.running = False
        self._unsubscribers: list[Callable[[], None]] = []

    # ── Lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        if self.running:
            return
        for topic in KNOWN_TOPICS:
            self._unsubscribers.append(self.bus.channel(topic).subscribe(self._fanout(topic)))
        self.running = True
        logger.info(f"Hub started with {len(KNOWN_TOPICS)} topics")

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers.clear()
        for conn in list(self.connections.values()):
            await conn.close()
        self.connections.clear()
        self.running = False
        logger.info("Hub stopped")

    def _fanout(self, topic: str) -> Callable[[Any], None]:
        def _deliver(value: Any) -> None:
            self.broadcast(topic, value)
        return _deliver

    def broadcast(self, topic: str, data: Any) -> int:
        delivered = 0
        for conn in list(self.connections.values()):
            if conn.authenticated and topic in conn.topics:
                conn.enqueue({"type": "event", "topic": topic, "data": data})
                delivered += 1
        return delivered

    # ── Connection handling ─────────────────────────────────────────

    def open(self, websocket: Any) -> Connection:
        conn = Connection(websocket, self.queue_size)
        self.connections[conn.id] = conn
        conn.start()
        conn.enqueue({
            "type": "auth",
            "data": {"authenticated": False, "message": "Welcome to CoachDash. Please authenticate."},
        })
        logger.info(f"Client {conn.id} connected")
        return conn

    async def release(self, conn: Connection) -> None:
        conn.topics.clear()
        self.connections.pop(conn.id, None)
        await conn.flush(timeout=0.5)
        await conn.close()
        logger.info(f"Client {conn.id} disconnected")

    async def _heartbeat(self, conn: Connection) -> None:
        while not conn.closed:
            await asyncio.sleep(self.heartbeat_seconds)
            conn.enqueue({"type": "ping", "timestamp": time.time()})

    async def serve(self, websocket: WebSocket) -> None:
        """Run one accepted websocket until it disconnects."""
        conn = self.open(websocket)
        heartbeat = asyncio.create_task(self._heartbeat(conn))
        try:
            while True:
                frame = await websocket.receive()
                if frame["type"] == "websocket.disconnect":
                    break
                raw = frame.get("text")
                if raw is None:
                    self._send_error(conn, "Invalid message format")
                    continue
                await self.handle_raw(conn, raw)
        except WebSocketDisconnect:
            pass
        finally:
            heartbeat.cancel()
            try:
                await heartbeat
            except asyncio.CancelledError:
                pass
            await self.release(conn)

    async def handle_raw(self, conn: Connection, raw: str) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            self._send_error(conn, "Invalid message format")
            return
        if not isinstance(message, dict):
            self._send_error(conn, "Invalid message format")
            return
        await self.handle_message(conn, message)

    async def handle_message(self, conn: Connection, message: dict[str, Any]) -> None:
        kind = message.get("type")
        if kind == "authenticate":
            self._authenticate(conn, message.get("auth"))
        elif kind == "ping":
            conn.enqueue({"type": "pong", "timestamp": time.time()})
        elif kind in ("subscribe", "unsubscribe", "execute") and not conn.authenticated:
            self._send_error(conn, "Authentication required", message.get("requestId"))
        elif kind == "subscribe":
            self._subscribe(conn, message.get("topic"))
        elif kind == "unsubscribe":
            self._unsubscribe(conn, message.get("topic"))
        elif kind == "execute":
            await self._execute(conn, message)
        else:
            self._send_error(conn, f"Unknown message type: {kind}")

    def _authenticate(self, conn: Connection, auth: Any) -> None:
        conn.authenticated = auth == self.auth_token
        if conn.authenticated:
            logger.info(f"Client {conn.id} authenticated")
            text = "Authentication successful"
        else:
            logger.warning(f"Client {conn.id} failed authentication")
            text = "Authentication failed"
        conn.enqueue({"type": "auth", "data": {"authenticated": conn.authenticated, "message": text}})

    def _subscribe(self, conn: Connection, topic: Any) -> None:
        if topic not in KNOWN_TOPICS:
            self._send_error(conn, f"Unknown topic: {topic}")
            return
        conn.topics.add(topic)
        logger.info(f"Client {conn.id} subscribed to {topic}")
        if topic != TOOL_EXECUTION:
            conn.enqueue({"type": "event", "topic": topic, "data": self.bus.channel(topic).value})

    def _unsubscribe(self, conn: Connection, topic: Any) -> None:
        if topic in conn.topics:
            conn.topics.discard(topic)
            logger.info(f"Client {conn.id} unsubscribed from {topic}")

    def _send_error(
        self, conn: Connection, error: str, request_id: Any = None, suggestion: Optional[str] = None,
    ) -> None:
        payload: dict[str, Any] = {"type": "error", "error": error}
        if request_id is not None:
            payload["requestId"] = request_id
        if suggestion:
            payload["suggestion"] = suggestion
        conn.enqueue(payload)

    async def _execute(self, conn: Connection, message: dict[str, Any]) -> None:
        tool = message.get("tool")
        request_id = message.get("requestId")
        if not tool or request_id is None:
            self._send_error(conn, "execute requires 'tool' and 'requestId'", request_id)
            return
        params = message.get("params") or {}
        if not isinstance(params, dict):
            self._send_error(conn, "params must be an object", request_id)
            return
        await self.execute(conn, str(tool), params, request_id)

    async def execute(
        self,
        conn: Optional[Connection],
        tool: str,
        params: dict[str, Any],
        request_id: Any,
        raise_errors: bool = False,
    ) -> dict:
        """Run a tool, reply to the caller and refresh the topics it affects.

        With ``raise_errors`` the failure is still broadcast on
        ``tool:execution`` and then re-raised for the REST layer to map.
        """
        known = self.registry.find(tool)
        affects = known.affects if known else ()
        versions = {topic: self.bus.channel(topic).version for topic in affects}

        started = time.perf_counter()
        try:
            result = await self.registry.execute(tool, params)
        except Exception as e:
            duration_ms = round((time.perf_counter() - started) * 1000, 3)
            error = e if isinstance(e, ToolExecutionError) else ToolExecutionError(tool, e)
            message = e.message if isinstance(e, CoachDashError) else error.message
            logger.error(f"Tool {tool} failed: {message}")
            if conn is not None:
                self._send_error(conn, message, request_id, error.suggestion)
            self.broadcast(TOOL_EXECUTION, {
                "tool": tool,
                "requestId": request_id,
                "success": False,
                "duration_ms": duration_ms,
                "error": message,
            })
            if raise_errors:
                raise
            return {"tool": tool, "requestId": request_id, "success": False, "error": message}

        duration_ms = round((time.perf_counter() - started) * 1000, 3)
        response = {"tool": tool, "requestId": request_id, "success": True, "result": result}
        if conn is not None:
            conn.enqueue({"type": "result", "requestId": request_id, "data": response})
        self.broadcast(TOOL_EXECUTION, {
            "tool": tool, "requestId": request_id, "success": True, "duration_ms": duration_ms,
        })
        for topic in affects:
            channel = self.bus.channel(topic)
            if channel.version == versions[topic]:
                self.broadcast(topic, channel.value)
        return response
