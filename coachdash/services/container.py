"""Wires the managers together around one store and one event bus."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from coachdash import config
from coachdash.agents.manager import AgentManager
from coachdash.db.store import Store
from coachdash.events import EventBus, create_bus
from coachdash.services.context_monitor import ContextMonitor
from coachdash.services.project_tracker import ProjectTracker
from coachdash.services.reality_checker import RealityChecker
from coachdash.services.session_manager import SessionManager
from coachdash.services.workspace import WorkspaceInspector

logger = logging.getLogger("coachdash")


@dataclass
class Services:
    store: Store
    bus: EventBus
    inspector: WorkspaceInspector
    context: ContextMonitor
    projects: ProjectTracker
    sessions: SessionManager
    reality: RealityChecker
    agents: AgentManager
    hub: Optional[Any] = field(default=None)

    async def health(self) -> dict[str, Any]:
        checks = {
            "database": await self.store.ping(),
            "websocket": bool(self.hub is not None and self.hub.running),
            "filesystem": self.inspector.is_writable(),
        }
        return {"status": "ok" if all(checks.values()) else "degraded", "checks": checks}


def build_services(
    store: Store,
    bus: EventBus | None = None,
    workspace_root: Path | str | None = None,
    agents_enabled: bool = config.AGENTS_ENABLED,
) -> Services:
    bus = bus or create_bus()
    inspector = WorkspaceInspector(
        workspace_root or config.WORKSPACE_ROOT,
        docs_dir=config.DOCS_DIR,
        test_report_path=config.TEST_REPORT_PATH,
    )
    context = ContextMonitor(store, bus)
    projects = ProjectTracker(store, bus)
    sessions = SessionManager(store, bus, context, projects, inspector)
    reality = RealityChecker(store, bus, inspector)
    agents = AgentManager(store, bus, context, enabled=agents_enabled)
    sessions.on_session_closed(agents.forget_session)
    logger.info(f"Services wired for workspace {inspector.root}")
    return Services(
        store=store,
        bus=bus,
        inspector=inspector,
        context=context,
        projects=projects,
        sessions=sessions,
        reality=reality,
        agents=agents,
    )
