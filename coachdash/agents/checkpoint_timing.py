"""Suggests checkpoints as a session's context usage crosses fixed thresholds."""
from __future__ import annotations

import json
from typing import Optional

from coachdash.agents.base import BaseAgent, suggestion_id
from coachdash.agents.memory import AgentMemory
from coachdash.models import (
    AgentContext,
    AgentDecision,
    AgentExecutionResult,
    AgentSuggestion,
    SuggestedAction,
)

CHECKPOINT_THRESHOLDS = (30, 50, 70)
CRITICAL_THRESHOLD = 85


class CheckpointTimingAgent(BaseAgent):
    """Fires once per threshold per session.

    Thresholds already announced are recovered from the decision log, so a
    restart does not repeat them.
    """

    name = "checkpoint_timing"
    kind = "checkpoint_timing"
    max_context_allocation = 20

    def __init__(self, memory: AgentMemory):
        super().__init__()
        self.memory = memory

    def should_run(self, context: AgentContext) -> bool:
        return 25 <= context.context_usage_percent < 90

    async def _announced(self, context: AgentContext) -> set[int]:
        fired: set[int] = set()
        for entry in await self.memory.session_decisions(self.name, context.session_id):
            made = entry.get("decision_made")
            if isinstance(made, dict):
                fired.update(int(t) for t in made.get("covers") or [])
        return fired

    def _crossed(self, pct: float, announced: set[int]) -> tuple[Optional[int], list[int]]:
        """Highest newly crossed threshold plus every threshold it supersedes."""
        pending = [t for t in CHECKPOINT_THRESHOLDS + (CRITICAL_THRESHOLD,) if pct >= t and t not in announced]
        if not pending:
            return None, []
        return max(pending), pending

    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        pct = context.context_usage_percent
        threshold, covers = self._crossed(pct, await self._announced(context))
        suggestions: list[AgentSuggestion] = []
        if threshold == CRITICAL_THRESHOLD:
            suggestions.append(
                AgentSuggestion(
                    id=suggestion_id("critical_context"),
                    agent_name=self.name,
                    type="checkpoint",
                    priority="critical",
                    title="Critical context usage, checkpoint now",
                    description=f"Context usage at {pct:.0f}%. Create a checkpoint immediately to avoid exhaustion.",
                    action_required=True,
                    suggested_action=SuggestedAction(
                        tool="session_checkpoint",
                        params={
                            "session_id": context.session_id,
                            "completed_components": ["Emergency checkpoint"],
                            "metrics": {"context_used_percent": pct},
                            "force": True,
                        },
                    ),
                )
            )
        elif threshold is not None:
            suggestions.append(
                AgentSuggestion(
                    id=suggestion_id(f"checkpoint_{threshold}"),
                    agent_name=self.name,
                    type="checkpoint",
                    priority="high" if threshold >= 70 else "medium",
                    title=f"Checkpoint recommended at {pct:.0f}% context usage",
                    description=(
                        f"You've passed {threshold}% context usage. "
                        "Consider creating a checkpoint to preserve progress."
                    ),
                    action_required=False,
                    suggested_action=SuggestedAction(
                        tool="session_checkpoint",
                        params={
                            "session_id": context.session_id,
                            "completed_components": [f"Phase: {context.current_phase}"],
                            "metrics": {"context_used_percent": pct},
                        },
                    ),
                )
            )

        decision = AgentDecision(
            agent_name=self.name,
            action_type="checkpoint_timing",
            input_context=json.dumps({"session_id": context.session_id, "context_percent": pct}),
            decision_made=json.dumps({"threshold": threshold, "covers": covers, "suggestions": len(suggestions)}),
            confidence=0.9,
            reasoning=f"Context usage at {pct:.1f}% in phase {context.current_phase}",
        )
        return AgentExecutionResult(agent_name=self.name, success=True, decision=decision, suggestions=suggestions)
