"""Reconnecting websocket client for the CoachDash hub.

The client authenticates on every (re)connect, restores its topic
subscriptions and correlates ``execute`` replies by ``requestId``.
Connection loss triggers exponential backoff with jitter; once the attempt
budget is spent the state moves to ``failed`` and ``ReconnectExhaustedError``
is surfaced to the caller.
"""
from __future__ import annotations

import asyncio
import json
import logging
import random
import uuid
from typing import Any, Awaitable, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from coachdash import config
from coachdash.errors import CoachDashError, ReconnectExhaustedError

logger = logging.getLogger("coachdash.client")

ConnectFn = Callable[[str], Awaitable[Any]]
EventCallback = Callable[[str, Any], None]
StateCallback = Callable[[str], None]

_RETRYABLE = (OSError, asyncio.TimeoutError, WebSocketException)


def backoff_delay(
    attempt: int,
    base: float = config.WS_RECONNECT_BASE_SECONDS,
    maximum: float = config.WS_RECONNECT_MAX_SECONDS,
) -> float:
    """Delay before retry ``attempt`` (0-based), capped, plus jitter in [0, 1)."""
    return min(base * (2 ** attempt), maximum) + random.random()


class RemoteError(CoachDashError):
    """An ``error`` reply from the hub, carrying the hub's own suggestion."""

    def __init__(self, message: str, suggestion: Optional[str] = None):
        super().__init__(message)
        self._suggestion = suggestion

    @property
    def suggestion(self) -> str:
        return self._suggestion or super().suggestion


class HubClient:
    def __init__(
        self,
        url: str = config.WS_CLIENT_URL,
        auth_token: str = config.WS_AUTH_TOKEN,
        on_event: Optional[EventCallback] = None,
        on_state: Optional[StateCallback] = None,
        max_attempts: int = config.WS_RECONNECT_ATTEMPTS,
        base_delay: float = config.WS_RECONNECT_BASE_SECONDS,
        max_delay: float = config.WS_RECONNECT_MAX_SECONDS,
        connect: Optional[ConnectFn] = None,
    ):
        self.url = url
        self.auth_token = auth_token
        self.on_event = on_event
        self.on_state = on_state
        self.max_attempts = max_attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._connect = connect or websockets.connect
        self._sleep = asyncio.sleep

        self.state = "disconnected"
        self.topics: set[str] = set()
        self.failure: Optional[ReconnectExhaustedError] = None
        self._ws: Any = None
        self._reader: Optional[asyncio.Task] = None
        self._pending: dict[str, asyncio.Future] = {}
        self._closing = False

    def _set_state(self, state: str) -> None:
        if state == self.state:
            return
        logger.info(f"Hub client {self.state} -> {state}")
        self.state = state
        if self.on_state:
            self.on_state(state)

    @property
    def connected(self) -> bool:
        return self.state == "connected"

    # ── Connection management ───────────────────────────────────────

    async def connect(self) -> None:
        """Connect, authenticate and subscribe, retrying with backoff."""
        self._closing = False
        self.failure = None
        await self._establish("connecting")

    async def _establish(self, state: str) -> None:
        self._set_state(state)
        for attempt in range(self.max_attempts):
            if attempt:
                delay = backoff_delay(attempt - 1, self.base_delay, self.max_delay)
                logger.info(f"Retrying hub connection in {delay:.1f}s (attempt {attempt + 1}/{self.max_attempts})")
                await self._sleep(delay)
            try:
                ws = await self._connect(self.url)
            except _RETRYABLE as e:
                logger.warning(f"Hub connection attempt {attempt + 1} failed: {e}")
                continue
            try:
                await self._handshake(ws)
            except _RETRYABLE as e:
                logger.warning(f"Hub handshake failed: {e}")
                await ws.close()
                continue
            except CoachDashError:
                self._set_state("failed")
                raise
            self._ws = ws
            self._reader = asyncio.create_task(self._read_loop(ws))
            self._set_state("connected")
            return

        self.failure = ReconnectExhaustedError(self.max_attempts)
        self._set_state("failed")
        logger.error(self.failure.message)
        raise self.failure

    async def _handshake(self, ws: Any) -> None:
        await ws.send(json.dumps({"type": "authenticate", "auth": self.auth_token}))
        while True:
            message = json.loads(await ws.recv())
            if message.get("type") != "auth":
                continue
            data = message.get("data") or {}
            if data.get("authenticated"):
                break
            # The greeting is also an unauthenticated ``auth`` message.
            if data.get("message") == "Authentication failed":
                await ws.close()
                raise CoachDashError("Hub rejected the authentication token")
        for topic in sorted(self.topics):
            await ws.send(json.dumps({"type": "subscribe", "topic": topic}))
        logger.info(f"Authenticated with hub, {len(self.topics)} subscriptions restored")

    async def _read_loop(self, ws: Any) -> None:
        try:
            async for raw in ws:
                self._dispatch(raw)
        except ConnectionClosed as e:
            logger.warning(f"Hub connection closed: {e}")
        if self._closing or ws is not self._ws:
            return
        self._ws = None
        self._fail_pending(CoachDashError("Connection to hub lost before a reply arrived"))
        try:
            await self._establish("reconnecting")
        except ReconnectExhaustedError:
            # Already recorded in ``failure`` and reported through ``on_state``.
            return

    def _dispatch(self, raw: Any) -> None:
        try:
            message = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring malformed message from hub")
            return
        if not isinstance(message, dict):
            logger.warning("Ignoring non-object message from hub")
            return
        kind = message.get("type")
        request_id = message.get("requestId")
        if kind == "event":
            if self.on_event:
                self.on_event(message.get("topic"), message.get("data"))
        elif kind == "result" and request_id in self._pending:
            future = self._pending.pop(request_id)
            if not future.done():
                future.set_result((message.get("data") or {}).get("result"))
        elif kind == "error":
            error = RemoteError(message.get("error", "Unknown error"), message.get("suggestion"))
            future = self._pending.pop(request_id, None) if request_id is not None else None
            if future is not None and not future.done():
                future.set_exception(error)
            else:
                logger.warning(f"Hub error: {error.message}")

    def _fail_pending(self, error: Exception) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(error)
        self._pending.clear()

    async def close(self) -> None:
        self._closing = True
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
            self._reader = None
        self._fail_pending(CoachDashError("Client closed"))
        self._set_state("disconnected")

    # ── Requests ────────────────────────────────────────────────────

    async def _send(self, message: dict[str, Any]) -> None:
        if self.failure is not None:
            raise self.failure
        if self._ws is None:
            raise CoachDashError("Not connected to the hub")
        await self._ws.send(json.dumps(message))

    async def subscribe(self, topic: str) -> None:
        self.topics.add(topic)
        if self._ws is not None:
            await self._send({"type": "subscribe", "topic": topic})

    async def unsubscribe(self, topic: str) -> None:
        self.topics.discard(topic)
        if self._ws is not None:
            await self._send({"type": "unsubscribe", "topic": topic})

    async def execute(self, tool: str, params: Optional[dict[str, Any]] = None, timeout: float = 30.0) -> Any:
        """Run a tool on the hub and return its result, raising ``RemoteError`` on failure."""
        request_id = f"req_{uuid.uuid4().hex[:12]}"
        future: asyncio.Future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send({"type": "execute", "tool": tool, "params": params or {}, "requestId": request_id})
            return await asyncio.wait_for(future, timeout=timeout)
        finally:
            self._pending.pop(request_id, None)
