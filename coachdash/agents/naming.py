"""Naming-consistency agent backed by the symbol registry."""
from __future__ import annotations

import json
from dataclasses import dataclass

from coachdash.agents.base import BaseAgent, suggestion_id
from coachdash.agents.memory import AgentMemory
from coachdash.models import (
    AgentContext,
    AgentDecision,
    AgentExecutionResult,
    AgentSuggestion,
    SuggestedAction,
)


@dataclass
class NamingConflict:
    concept: str
    canonical_name: str
    conflicting_name: str
    context_type: str
    severity: str


def conflict_severity(canonical_usage: int, total_usage: int) -> str:
    share = canonical_usage / max(total_usage, 1)
    if share > 0.1 or canonical_usage > 10:
        return "high"
    if share > 0.05 or canonical_usage > 5:
        return "medium"
    return "low"


def detect_conflicts(symbols: list[dict]) -> list[NamingConflict]:
    """Concepts mapped to more than one name; the most-used name is canonical."""
    by_concept: dict[str, list[dict]] = {}
    for symbol in symbols:
        by_concept.setdefault(symbol["concept"], []).append(symbol)
    total_usage = sum(int(s["usage_count"]) for s in symbols)

    conflicts: list[NamingConflict] = []
    for concept, variants in sorted(by_concept.items()):
        if len(variants) < 2:
            continue
        ranked = sorted(variants, key=lambda s: (-int(s["usage_count"]), s["created_at"]))
        canonical = ranked[0]
        severity = conflict_severity(int(canonical["usage_count"]), total_usage)
        for other in ranked[1:]:
            conflicts.append(
                NamingConflict(
                    concept=concept,
                    canonical_name=canonical["chosen_name"],
                    conflicting_name=other["chosen_name"],
                    context_type=canonical["context_type"],
                    severity=severity,
                )
            )
    return conflicts


class NamingAgent(BaseAgent):
    name = "naming"
    kind = "naming"
    max_context_allocation = 15

    def __init__(self, memory: AgentMemory):
        super().__init__()
        self.memory = memory

    def should_run(self, context: AgentContext) -> bool:
        if context.current_phase == "implementation":
            return context.context_usage_percent < 85
        return super().should_run(context)

    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        symbols = await self.memory.project_symbols(context.project_id)
        conflicts = detect_conflicts(symbols)
        suggestions = [
            AgentSuggestion(
                id=suggestion_id("naming"),
                agent_name=self.name,
                type="naming",
                priority="high" if c.severity == "high" else "medium",
                title=f"Naming conflict: {c.concept}",
                description=(
                    f'"{c.concept}" is called "{c.canonical_name}" elsewhere '
                    f'but "{c.conflicting_name}" here'
                ),
                action_required=c.severity == "high",
                suggested_action=SuggestedAction(
                    tool="symbol_register",
                    params={
                        "project_id": context.project_id,
                        "concept": c.concept,
                        "chosen_name": c.canonical_name,
                        "context_type": c.context_type,
                    },
                ),
            )
            for c in conflicts
        ]
        decision = AgentDecision(
            agent_name=self.name,
            action_type="naming_check",
            input_context=json.dumps({"project_id": context.project_id, "phase": context.current_phase}),
            decision_made=f"Found {len(conflicts)} naming conflicts",
            confidence=0.8 if conflicts else 1.0,
            reasoning=f"Compared {len(symbols)} registered symbols",
        )
        return AgentExecutionResult(agent_name=self.name, success=True, decision=decision, suggestions=suggestions)
