"""CoachDash FastAPI backend: main application entry point."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from coachdash import config
from coachdash.db.store import open_store
from coachdash.observability import initialize as initialize_observability, shutdown as shutdown_observability
from coachdash.realtime.hub import Hub
from coachdash.realtime.tools import ToolRegistry
from coachdash.routers.api import projects_router, sessions_router, tools_router
from coachdash.routers.realtime import realtime_router
from coachdash.services.container import build_services
from coachdash.services.workspace_watcher import WorkspaceWatcher

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("coachdash")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup / shutdown lifecycle."""
    logger.info("CoachDash backend starting up")
    config.validate_settings()
    initialize_observability(app)

    # 1. Open the store (runs migrations)
    store = await open_store(config.DB_PATH)

    # 2. Wire managers, registry and hub around one event bus
    services = build_services(store)
    registry = ToolRegistry(services)
    hub = Hub(services.bus, registry)
    hub.start()
    services.hub = hub
    app.state.services = services
    app.state.registry = registry
    app.state.hub = hub

    # 3. Republish the active session, if one survived a restart
    await services.sessions.restore()

    # 4. Start the docs watcher
    watcher = WorkspaceWatcher(services.inspector, services.bus)
    app.state.watcher = watcher
    if config.WATCHER_ENABLED:
        await watcher.start()
    else:
        watcher.publish()

    yield

    logger.info("CoachDash backend shutting down")
    await watcher.stop()
    await hub.stop()
    shutdown_observability(app)
    await store.close()


app = FastAPI(
    title="CoachDash API",
    description="Session, context-budget and reality-check tracking for AI-assisted development",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        config.FRONTEND_ORIGIN,
        "http://localhost:3000",
        "http://127.0.0.1:3000",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sessions_router)
app.include_router(projects_router)
app.include_router(tools_router)
app.include_router(realtime_router)


@app.get("/api/health")
async def health(request: Request):
    """Health check endpoint."""
    return await request.app.state.services.health()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("coachdash.main:app", host=config.HOST, port=config.PORT, reload=False)
