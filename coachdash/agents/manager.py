"""Entry point the tools use to reach the advisory agents."""
from __future__ import annotations

import logging
import time
from typing import Any, Optional

from coachdash import config
from coachdash.agents.budget_guardian import BudgetGuardianAgent
from coachdash.agents.checkpoint_timing import CheckpointTimingAgent
from coachdash.agents.memory import AgentMemory
from coachdash.agents.naming import NamingAgent
from coachdash.agents.orchestrator import AgentOrchestrator
from coachdash.date_utils import iso_now
from coachdash.db.store import Store
from coachdash.errors import InvalidParametersError, ProjectNotFoundError, SessionNotFoundError
from coachdash.events import ADVISORY_SUGGESTIONS, EventBus
from coachdash.models import AgentContext, AgentRunResponse, SymbolEntry
from coachdash.services.context_monitor import ContextMonitor

logger = logging.getLogger("coachdash.agents")


class AgentManager:
    def __init__(
        self,
        store: Store,
        bus: EventBus,
        context: ContextMonitor,
        enabled: bool = config.AGENTS_ENABLED,
        timeout_ms: int = config.AGENT_TIMEOUT_MS,
        max_context_percent: int = config.AGENT_MAX_CONTEXT_PERCENT,
    ):
        self.store = store
        self.context = context
        self.channel = bus.channel(ADVISORY_SUGGESTIONS)
        self.memory = AgentMemory(store)
        self.orchestrator = AgentOrchestrator(self.memory, timeout_ms, max_context_percent)
        self.naming = NamingAgent(self.memory)
        self.orchestrator.register(self.naming)
        self.orchestrator.register(CheckpointTimingAgent(self.memory))
        self.guardian = BudgetGuardianAgent()
        self.orchestrator.register(self.guardian)
        self.enabled = enabled
        self.last_run: Optional[str] = None

    def forget_session(self, session_id: str) -> None:
        """Drop per-session samples once a session can no longer run."""
        self.guardian.forget(session_id)

    def _publish(self, response: AgentRunResponse) -> None:
        self.channel.publish({
            "suggestions": [s.model_dump() for s in response.suggestions],
            "enabled": self.enabled,
            "last_run": self.last_run,
            "health": self.orchestrator.health(),
        })

    async def _require_project(self, project_ref: str) -> dict:
        project = await self.store.projects.get_by_id(project_ref)
        if not project:
            project = await self.store.projects.get_by_name(project_ref)
        if not project:
            raise ProjectNotFoundError(project_ref)
        return project

    async def run_agents(
        self,
        session_id: str,
        current_phase: Optional[str] = None,
        context_usage_percent: Optional[float] = None,
    ) -> AgentRunResponse:
        session = await self.store.sessions.get_by_id(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        if not self.enabled:
            return AgentRunResponse(enabled=False)

        if context_usage_percent is None:
            status = await self.context.get_status(session_id)
            context_usage_percent = status.usage_percent * 100
        if not 0 <= context_usage_percent <= 100:
            raise InvalidParametersError("context_usage_percent must be between 0 and 100")

        agent_context = AgentContext(
            session_id=session_id,
            project_id=session["project_id"],
            current_phase=current_phase or session.get("current_phase") or "planning",
            context_usage_percent=float(context_usage_percent),
            timestamp=time.time(),
        )
        response = await self.orchestrator.execute(agent_context)
        self.last_run = iso_now()
        self._publish(response)
        return response

    async def register_symbol(
        self,
        project_id: str,
        concept: str,
        chosen_name: str,
        context_type: str = "variable",
        session_id: Optional[str] = None,
    ) -> dict[str, Any]:
        if not concept.strip() or not chosen_name.strip():
            raise InvalidParametersError("concept and chosen_name are required", ["concept", "chosen_name"])
        project = await self._require_project(project_id)
        if session_id and not await self.store.sessions.get_by_id(session_id):
            raise SessionNotFoundError(session_id)

        before = await self.memory.symbol_variants(project["id"], concept.strip())
        stored, conflict = await self.memory.register_symbol(
            project["id"], concept.strip(), chosen_name.strip(), context_type,
            created_by_agent=self.naming.name, session_id=session_id,
        )
        canonical = await self.memory.find_symbol(project["id"], concept.strip())
        return {
            "symbol_id": stored["id"],
            "existing": any(v["chosen_name"] == stored["chosen_name"] for v in before),
            "conflict": conflict,
            "canonical_name": canonical["chosen_name"] if canonical else stored["chosen_name"],
            "usage_count": int(stored["usage_count"]),
        }

    async def lookup_symbol(self, project_id: str, concept: str) -> dict[str, Any]:
        project = await self._require_project(project_id)
        symbol = await self.memory.find_symbol(project["id"], concept.strip())
        if not symbol:
            return {"name": None, "confidence": 0.0, "usage_count": 0}
        await self.memory.increment_usage(symbol["id"])
        return {
            "name": symbol["chosen_name"],
            "confidence": float(symbol["confidence_score"]),
            "usage_count": int(symbol["usage_count"]) + 1,
            "context_type": symbol["context_type"],
        }

    async def list_symbols(self, project_id: str) -> list[SymbolEntry]:
        project = await self._require_project(project_id)
        return [SymbolEntry(**row) for row in await self.memory.project_symbols(project["id"])]

    async def agent_status(self, agent_name: Optional[str] = None, project_id: Optional[str] = None) -> dict[str, Any]:
        agents = self.orchestrator.agents
        if agent_name:
            agent = self.orchestrator.get(agent_name)
            if agent is None:
                names = [a.name for a in agents]
                raise InvalidParametersError(f"Unknown agent '{agent_name}'. Expected one of {names}")
            agents = [agent]

        report: dict[str, Any] = {}
        for agent in agents:
            recent = await self.memory.recent_decisions(agent.name, project_id, 20)
            rate = await self.memory.success_rate(agent.name, project_id)
            report[agent.name] = {
                "allocation_percent": agent.max_context_allocation,
                "total_decisions": await self.memory.total_decisions(agent.name),
                "success_rate": rate if rate is not None else 0.0,
                "recent_decisions": recent,
                "health": agent.health().model_dump(),
            }
        return {"enabled": self.enabled, "last_run": self.last_run, "agents": report}

    def set_enabled(self, enabled: bool) -> dict[str, Any]:
        self.enabled = bool(enabled)
        logger.info(f"Advisory agents {'enabled' if self.enabled else 'disabled'}")
        self._publish(AgentRunResponse(enabled=self.enabled))
        return {"enabled": self.enabled}
