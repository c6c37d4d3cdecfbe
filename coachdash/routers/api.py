"""REST routers for sessions, projects and tool execution."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, HTTPException, Request

from coachdash.errors import (
    BlockerNotFoundError,
    CoachDashError,
    ContextExhaustedError,
    InvalidParametersError,
    ProjectNotFoundError,
    SessionNotFoundError,
    SnapshotNotFoundError,
    UnknownToolError,
)
from coachdash.models import Checkpoint, ContextStatus, ProgressReport, Session
from coachdash.services.container import Services

logger = logging.getLogger("coachdash.api")

sessions_router = APIRouter(prefix="/api/sessions", tags=["sessions"])
projects_router = APIRouter(prefix="/api/projects", tags=["projects"])
tools_router = APIRouter(prefix="/api/tools", tags=["tools"])

_NOT_FOUND = (
    SessionNotFoundError,
    ProjectNotFoundError,
    BlockerNotFoundError,
    SnapshotNotFoundError,
    UnknownToolError,
)


def status_for(error: CoachDashError) -> int:
    if isinstance(error, _NOT_FOUND):
        return 404
    if isinstance(error, InvalidParametersError):
        return 400
    if isinstance(error, ContextExhaustedError):
        return 409
    return 500


def _http_error(error: CoachDashError) -> HTTPException:
    status = status_for(error)
    if status >= 500:
        logger.error(f"Request failed: {error.message}")
    return HTTPException(status_code=status, detail=error.to_dict())


def _get_services(request: Request) -> Services:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="Services not initialized")
    return services


# ── Sessions ────────────────────────────────────────────────────────


@sessions_router.get("/active", response_model=Session | None)
async def get_active_session(request: Request):
    return await _get_services(request).sessions.get_active_session()


@sessions_router.get("/{session_id}", response_model=Session)
async def get_session(session_id: str, request: Request):
    try:
        return await _get_services(request).sessions.get_session_status(session_id)
    except CoachDashError as e:
        raise _http_error(e) from e


@sessions_router.get("/{session_id}/context", response_model=ContextStatus)
async def get_session_context(session_id: str, request: Request):
    try:
        return await _get_services(request).context.get_status(session_id)
    except CoachDashError as e:
        raise _http_error(e) from e


@sessions_router.get("/{session_id}/checkpoints", response_model=list[Checkpoint])
async def get_session_checkpoints(session_id: str, request: Request):
    try:
        session = await _get_services(request).sessions.get_session_status(session_id)
    except CoachDashError as e:
        raise _http_error(e) from e
    return session.checkpoints


# ── Projects ────────────────────────────────────────────────────────


@projects_router.get("/{project_id}/report", response_model=ProgressReport)
async def get_project_report(project_id: str, request: Request, include_predictions: bool = False):
    try:
        return await _get_services(request).projects.generate_report(project_id, None, include_predictions)
    except CoachDashError as e:
        raise _http_error(e) from e


# ── Tools ───────────────────────────────────────────────────────────


@tools_router.get("")
async def list_tools(request: Request):
    registry = getattr(request.app.state, "registry", None)
    if registry is None:
        raise HTTPException(status_code=503, detail="Tool registry not initialized")
    return registry.describe()


@tools_router.post("/{tool_name}")
async def execute_tool(tool_name: str, request: Request, params: Optional[dict[str, Any]] = Body(default=None)):
    hub = getattr(request.app.state, "hub", None)
    if hub is None:
        raise HTTPException(status_code=503, detail="Realtime hub not initialized")
    request_id = f"rest_{uuid.uuid4().hex[:12]}"
    try:
        response = await hub.execute(None, tool_name, params or {}, request_id, raise_errors=True)
    except CoachDashError as e:
        original = getattr(e, "original", None)
        raise _http_error(original if isinstance(original, CoachDashError) else e) from e
    return response
