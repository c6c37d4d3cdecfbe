"""Shared decision log and symbol registry used by every agent."""
from __future__ import annotations

import logging
import uuid
from typing import Optional

from coachdash.date_utils import iso_now
from coachdash.db.store import Store
from coachdash.models import AgentContext, AgentDecision

logger = logging.getLogger("coachdash.agents")

CONFLICT_CONFIDENCE = 0.7


class AgentMemory:
    def __init__(self, store: Store):
        self.store = store

    async def record_decision(self, context: AgentContext, decision: AgentDecision, worked: bool = True) -> int:
        async with self.store.transaction("record_agent_decision"):
            return await self.store.agent_memory.record({
                "agent_name": decision.agent_name,
                "action_type": decision.action_type,
                "input_context": decision.input_context,
                "decision_made": decision.decision_made,
                "confidence": decision.confidence,
                "worked": worked,
                "project_id": context.project_id,
                "session_id": context.session_id,
                "created_at": iso_now(),
            })

    async def recent_decisions(
        self, agent_name: str, project_id: Optional[str] = None, limit: int = 10,
    ) -> list[dict]:
        return await self.store.agent_memory.recent(agent_name, project_id, limit)

    async def session_decisions(self, agent_name: str, session_id: str) -> list[dict]:
        """Every decision the agent logged for one session, newest first."""
        return await self.store.agent_memory.recent(agent_name, limit=None, session_id=session_id)

    async def success_rate(self, agent_name: str, project_id: Optional[str] = None) -> Optional[float]:
        return await self.store.agent_memory.success_rate(agent_name, project_id)

    async def total_decisions(self, agent_name: str) -> int:
        return await self.store.agent_memory.count(agent_name)

    async def find_symbol(self, project_id: str, concept: str) -> Optional[dict]:
        """Most-used name for a concept, or ``None``."""
        rows = await self.store.symbols.find_by_concept(project_id, concept)
        return rows[0] if rows else None

    async def symbol_variants(self, project_id: str, concept: str) -> list[dict]:
        return await self.store.symbols.find_by_concept(project_id, concept)

    async def project_symbols(self, project_id: str, limit: int = 500) -> list[dict]:
        return await self.store.symbols.list_for_project(project_id, limit)

    async def register_symbol(
        self,
        project_id: str,
        concept: str,
        chosen_name: str,
        context_type: str,
        created_by_agent: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> tuple[dict, bool]:
        """Upsert a mapping. Returns the stored row and whether it contests an existing name."""
        variants = await self.store.symbols.find_by_concept(project_id, concept)
        conflict = any(v["chosen_name"] != chosen_name for v in variants)
        async with self.store.transaction("register_symbol"):
            await self.store.symbols.upsert({
                "id": str(uuid.uuid4()),
                "concept": concept,
                "chosen_name": chosen_name,
                "context_type": context_type,
                "project_id": project_id,
                "confidence_score": CONFLICT_CONFIDENCE if conflict else 1.0,
                "created_by_agent": created_by_agent,
                "session_id": session_id,
                "created_at": iso_now(),
            })
        if conflict:
            logger.warning(
                f"Naming conflict for '{concept}' in {project_id}: "
                f"{sorted({v['chosen_name'] for v in variants})} vs '{chosen_name}'"
            )
        rows = await self.store.symbols.find_by_concept(project_id, concept)
        stored = next(r for r in rows if r["chosen_name"] == chosen_name)
        return stored, conflict

    async def increment_usage(self, symbol_id: str) -> None:
        async with self.store.transaction("increment_symbol_usage"):
            await self.store.symbols.increment_usage(symbol_id, iso_now())
