"""Watches the shape of context consumption and proposes optimizations."""
from __future__ import annotations

import json
import math
from collections import deque
from dataclasses import dataclass
from typing import Optional

from coachdash.agents.base import BaseAgent, suggestion_id
from coachdash.models import (
    AgentContext,
    AgentDecision,
    AgentExecutionResult,
    AgentSuggestion,
    SuggestedAction,
)

HISTORY_WINDOW = 20
PATTERN_SAMPLES = 5
WARNING_LEVELS = ((80, "critical"), (60, "danger"), (40, "warning"))
MAX_OPTIMIZATIONS = 2
RAPID_RATE = 5.0

_WARNINGS = {
    "warning": ("Context usage approaching limits", "low",
                "Consider simplifying the approach or creating a checkpoint."),
    "danger": ("High context usage detected", "medium",
               "Recommend immediate optimization or a checkpoint."),
    "critical": ("Critical context usage", "critical",
                 "Immediate action required to avoid exhaustion."),
}


@dataclass
class UsagePattern:
    pattern: str
    rate_of_change: float  # percent per sample
    projected_exhaustion: float  # samples until 100%


@dataclass
class Optimization:
    strategy: str
    potential_savings: int
    implementation: str


def classify_pattern(history: list[float], current: float) -> UsagePattern:
    if len(history) < 2:
        return UsagePattern("steady", 0.0, math.inf)
    recent = history[-PATTERN_SAMPLES:]
    deltas = [b - a for a, b in zip(recent, recent[1:])]
    avg = sum(deltas) / len(deltas)
    if abs(avg) < 1:
        pattern = "plateau"
    elif avg < 3:
        pattern = "steady"
    elif avg < 8:
        pattern = "spike"
    else:
        pattern = "exponential"
    projected = (100 - current) / avg if avg > 0 else math.inf
    return UsagePattern(pattern, avg, projected)


def warning_level(pct: float) -> Optional[str]:
    for floor, level in WARNING_LEVELS:
        if pct >= floor:
            return level
    return None


class BudgetGuardianAgent(BaseAgent):
    name = "budget_guardian"
    kind = "budget_guardian"
    max_context_allocation = 10

    def __init__(self) -> None:
        super().__init__()
        self._history: dict[str, deque[float]] = {}

    def should_run(self, context: AgentContext) -> bool:
        return 40 <= context.context_usage_percent < 95

    def history(self, session_id: str) -> list[float]:
        return list(self._history.get(session_id, ()))

    def forget(self, session_id: str) -> None:
        self._history.pop(session_id, None)

    def _optimizations(self, context: AgentContext, pattern: UsagePattern) -> list[Optimization]:
        found: list[Optimization] = []
        if context.current_phase == "implementation":
            found.append(Optimization(
                "Focused implementation", 15,
                "Focus on core functionality only. Defer edge cases and polish.",
            ))
        if context.current_phase == "testing":
            found.append(Optimization(
                "Targeted testing", 10,
                "Test critical paths only. Prefer unit tests over integration tests.",
            ))
        if pattern.pattern in ("spike", "exponential"):
            found.append(Optimization(
                "Batch operations", 20,
                "Group similar tasks together to reduce context switching.",
            ))
        if context.context_usage_percent > 60:
            found.append(Optimization(
                "Context pruning", 25,
                "Drop completed file contents from context. Keep only active files.",
            ))
        return found[:MAX_OPTIMIZATIONS]

    async def evaluate(self, context: AgentContext) -> AgentExecutionResult:
        pct = context.context_usage_percent
        samples = self._history.setdefault(context.session_id, deque(maxlen=HISTORY_WINDOW))
        samples.append(pct)
        pattern = classify_pattern(list(samples), pct)

        suggestions: list[AgentSuggestion] = []
        level = warning_level(pct)
        if level:
            title, priority, advice = _WARNINGS[level]
            suggestions.append(
                AgentSuggestion(
                    id=suggestion_id(f"context_{level}"),
                    agent_name=self.name,
                    type="context",
                    priority=priority,
                    title=title,
                    description=f"Context at {pct:.0f}%. {advice}",
                    action_required=level == "critical",
                    suggested_action=SuggestedAction(
                        tool="context_optimize",
                        params={
                            "session_id": context.session_id,
                            "target_reduction": 0.2,
                            "preserve_functionality": True,
                        },
                    ) if level == "critical" else None,
                )
            )
            for opt in self._optimizations(context, pattern):
                suggestions.append(
                    AgentSuggestion(
                        id=suggestion_id("optimization"),
                        agent_name=self.name,
                        type="context",
                        priority="medium",
                        title=f"Optimization: {opt.strategy}",
                        description=f"{opt.implementation} Could save ~{opt.potential_savings}% context.",
                    )
                )

        if pattern.pattern == "exponential" or pattern.rate_of_change > RAPID_RATE:
            suggestions.append(
                AgentSuggestion(
                    id=suggestion_id("exhaustion_prediction"),
                    agent_name=self.name,
                    type="context",
                    priority="high",
                    title="Context exhaustion predicted",
                    description=(
                        f"At the current rate ({pattern.rate_of_change:.1f}% per run) context runs out "
                        f"in ~{math.ceil(pattern.projected_exhaustion)} more runs."
                    ),
                    action_required=True,
                    suggested_action=SuggestedAction(
                        tool="session_checkpoint",
                        params={
                            "session_id": context.session_id,
                            "completed_components": ["Context optimization needed"],
                            "metrics": {"context_used_percent": pct},
                            "force": True,
                        },
                    ),
                )
            )

        decision = AgentDecision(
            agent_name=self.name,
            action_type="context_monitoring",
            input_context=json.dumps({
                "context_percent": pct,
                "pattern": pattern.pattern,
                "rate_of_change": round(pattern.rate_of_change, 3),
            }),
            decision_made=f"Generated {len(suggestions)} suggestions",
            confidence=0.85,
            reasoning=f"Context at {pct:.1f}% with a {pattern.pattern} pattern",
        )
        return AgentExecutionResult(agent_name=self.name, success=True, decision=decision, suggestions=suggestions)
