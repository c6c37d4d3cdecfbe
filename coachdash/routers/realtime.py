"""Websocket endpoint for the realtime hub."""
from __future__ import annotations

import logging

from fastapi import APIRouter, WebSocket

logger = logging.getLogger("coachdash.hub")

realtime_router = APIRouter(tags=["realtime"])


@realtime_router.websocket("/ws")
async def hub_socket(websocket: WebSocket):
    hub = getattr(websocket.app.state, "hub", None)
    await websocket.accept()
    if hub is None or not hub.running:
        logger.warning("Rejecting websocket connection: hub is not running")
        await websocket.close(code=1013)
        return
    await hub.serve(websocket)
