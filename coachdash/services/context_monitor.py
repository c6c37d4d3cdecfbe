"""Token-budget ledger, trend classification and exhaustion prediction."""
from __future__ import annotations

import logging
from typing import Any

from coachdash import config
from coachdash.date_utils import add_seconds, iso_now, seconds_between, utc_now
from coachdash.db.store import Store
from coachdash.errors import ContextExhaustedError, InvalidParametersError, SessionNotFoundError
from coachdash.events import CONTEXT_STATUS, EventBus
from coachdash.models import (
    ContextAnalytics,
    ContextPrediction,
    ContextStatus,
    OptimizationStrategy,
    OptimizeResponse,
    PeakUsagePoint,
)
from coachdash.observability import record_token_usage

logger = logging.getLogger("coachdash.context")

PHASE_SHARES = {
    "planning": 0.10,
    "implementation": 0.50,
    "testing": 0.25,
    "documentation": 0.15,
}

TASK_ESTIMATES = {
    "simple method": 500,
    "complex method": 1500,
    "test suite": 2000,
    "documentation": 800,
    "refactoring": 1200,
    "bug fix": 600,
    "integration": 2500,
}
DEFAULT_TASK_ESTIMATE = 1000

TREND_WINDOW = 10
TREND_RECENT = 5
TREND_MIN_SAMPLES = 3
TREND_FLOOR = 100
TREND_INCREASING_CEILING = 500
TREND_CRITICAL_CEILING = 800

_RISK_ORDER = {"low": 0, "medium": 1, "high": 2}
_TREND_ORDER = {"stable": 0, "increasing": 1, "critical": 2}


def classify_trend(tokens_newest_first: list[int]) -> str:
    """Compare the mean of the newest five records with the rest of the window."""
    samples = tokens_newest_first[:TREND_WINDOW]
    if len(samples) < TREND_MIN_SAMPLES:
        return "stable"
    recent_count = min(TREND_RECENT, len(samples))
    recent = sum(samples[:recent_count]) / recent_count
    older_samples = samples[recent_count:]

    if recent < TREND_FLOOR:
        return "stable"
    if not older_samples:
        if recent > TREND_CRITICAL_CEILING:
            return "critical"
        if recent > TREND_INCREASING_CEILING:
            return "increasing"
        return "stable"

    older = sum(older_samples) / len(older_samples)
    if recent > older * 1.5 or recent > TREND_CRITICAL_CEILING:
        return "critical"
    if recent > older * 1.2 or recent > TREND_INCREASING_CEILING:
        return "increasing"
    return "stable"


def estimate_task_tokens(task: str) -> int:
    lowered = task.lower()
    for key, estimate in TASK_ESTIMATES.items():
        if key in lowered:
            return estimate
    if "simple" in lowered or "basic" in lowered:
        return 500
    if "complex" in lowered or "advanced" in lowered:
        return 1500
    return DEFAULT_TASK_ESTIMATE


class ContextMonitor:
    """Owns the per-session usage ledger and the ``context.status`` topic."""

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        warning_threshold: float = config.CONTEXT_WARNING_THRESHOLD,
        critical_threshold: float = config.CONTEXT_CRITICAL_THRESHOLD,
    ):
        self.store = store
        self.channel = bus.channel(CONTEXT_STATUS)
        self.warning_threshold = warning_threshold
        self.critical_threshold = critical_threshold

    async def _require_session(self, session_id: str) -> dict:
        session = await self.store.sessions.get_by_id(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        return session

    async def track_usage(self, session_id: str, phase: str, tokens: int, operation: str) -> ContextStatus:
        """Append one ledger record and keep ``sessions.context_used`` equal to the ledger sum."""
        async with self.store.transaction("track_usage"):
            await self.record_usage(session_id, phase, tokens, operation)
        return await self.publish_status(session_id, phase, tokens)

    async def record_usage(self, session_id: str, phase: str, tokens: int, operation: str) -> int:
        """Ledger write only. The caller owns the transaction and publishes afterwards."""
        if tokens is None or int(tokens) < 0:
            raise InvalidParametersError(f"Token count must be non-negative, got {tokens}")
        tokens = int(tokens)

        session = await self._require_session(session_id)
        used = await self.store.context_usage.total_for_session(session_id)
        total = int(session["context_budget"] or 0)
        if tokens > 0 and (used >= total or used + tokens > total):
            logger.warning(
                f"Context exhausted for session {session_id}: {used}+{tokens} > {total}"
            )
            raise ContextExhaustedError(used + tokens, total)

        now = iso_now()
        await self.store.context_usage.add(session_id, phase, tokens, operation, now)
        new_total = await self.store.context_usage.total_for_session(session_id)
        await self.store.sessions.set_context_used(session_id, new_total, now)
        return new_total

    async def publish_status(self, session_id: str, phase: str, tokens: int) -> ContextStatus:
        record_token_usage(session_id, phase, tokens)
        status = await self.get_status(session_id)
        self.channel.publish({"status": status.model_dump()})
        if status.usage_percent >= self.critical_threshold:
            logger.warning(f"Session {session_id} context at {status.usage_percent:.0%}")
        return status

    async def get_status(self, session_id: str) -> ContextStatus:
        session = await self._require_session(session_id)
        used = await self.store.context_usage.total_for_session(session_id)
        total = int(session["context_budget"] or 0)
        usage_percent = used / total if total > 0 else 0.0

        recent = await self.store.context_usage.recent(session_id, limit=TREND_WINDOW)
        trend = classify_trend([int(r["tokens_used"]) for r in recent])
        # Absolute thresholds escalate the ledger trend but never relax it.
        threshold_trend = "stable"
        if usage_percent >= self.critical_threshold:
            threshold_trend = "critical"
        elif usage_percent >= self.warning_threshold:
            threshold_trend = "increasing"
        if _TREND_ORDER[threshold_trend] > _TREND_ORDER[trend]:
            trend = threshold_trend

        projected = None
        if trend != "stable":
            rate = self._tokens_per_minute(recent[:TREND_RECENT])
            if rate > 0:
                projected = add_seconds(utc_now(), (total - used) / rate * 60)

        return ContextStatus(
            session_id=session_id,
            used_tokens=used,
            total_tokens=total,
            usage_percent=usage_percent,
            phase_breakdown=await self.store.context_usage.phase_breakdown(session_id),
            trend=trend,
            projected_exhaustion=projected,
            alert_shown=usage_percent >= self.warning_threshold,
        )

    def _tokens_per_minute(self, recent: list[dict[str, Any]]) -> float:
        if len(recent) < 2:
            return 0.0
        tokens = sum(int(r["tokens_used"]) for r in recent)
        span = seconds_between(recent[-1]["timestamp"], recent[0]["timestamp"])
        return tokens / span * 60 if span > 0 else 0.0

    async def predict(self, session_id: str, planned_tasks: list[str] | None = None) -> ContextPrediction:
        status = await self.get_status(session_id)
        session = await self._require_session(session_id)
        remaining = status.total_tokens - status.used_tokens

        feasible: list[str] = []
        for task in planned_tasks or []:
            if estimate_task_tokens(task) <= remaining * 0.8:
                feasible.append(task)
        if session["current_phase"] == "implementation" and len(feasible) < 3:
            if remaining > 2000:
                feasible.append("Complete core functionality")
            if remaining > 1000:
                feasible.append("Add error handling")
            if remaining > 500:
                feasible.append("Add input validation")

        recommend = (
            status.usage_percent > 0.65
            or status.trend == "critical"
            or (status.trend == "increasing" and status.usage_percent > 0.50)
        )
        return ContextPrediction(
            remaining_capacity=remaining,
            tasks_feasible=feasible,
            recommended_checkpoint=recommend,
            optimization_suggestions=self._suggestions(status, session["current_phase"]),
        )

    def _suggestions(self, status: ContextStatus, phase: str) -> list[str]:
        suggestions: list[str] = []
        if status.usage_percent > self.warning_threshold:
            suggestions.append("Consider creating a checkpoint to preserve progress")
            suggestions.append("Remove completed code from context to free space")
            suggestions.append("Use targeted file reads instead of full file context")
        elif status.usage_percent > 0.5:
            suggestions.append("Monitor context usage closely as you approach capacity")
            suggestions.append("Consider summarizing completed work to reduce context")
        else:
            suggestions.append("Current context usage is healthy")
            suggestions.append("Plan remaining work to stay within budget")

        if phase == "implementation" and status.usage_percent > 0.6:
            suggestions.append("Focus on core functionality, defer nice-to-have features")
        if status.phase_breakdown.get("planning", 0) > status.total_tokens * PHASE_SHARES["planning"] * 1.5:
            suggestions.append("Planning phase is using excessive context; move to implementation")
        return suggestions

    def strategies(
        self, status: ContextStatus, target_tokens: int, preserve_functionality: bool,
    ) -> list[OptimizationStrategy]:
        used = status.used_tokens
        found = [
            OptimizationStrategy(
                name="Remove comments",
                description="Strip non-essential comments from context",
                estimated_savings=int(used * 0.05),
                risk="low",
                implementation="Drop all non-docstring comments",
            ),
            OptimizationStrategy(
                name="Consolidate imports",
                description="Group and minimize import statements",
                estimated_savings=int(used * 0.02),
                risk="low",
                implementation="Combine imports from the same module",
            ),
        ]
        if not preserve_functionality or target_tokens > used * 0.1:
            found.append(
                OptimizationStrategy(
                    name="Remove test code",
                    description="Temporarily drop test files from context",
                    estimated_savings=int(status.phase_breakdown.get("testing", 0)),
                    risk="medium",
                    implementation="Exclude test files from context",
                )
            )
            found.append(
                OptimizationStrategy(
                    name="Summarize completed code",
                    description="Replace completed modules with summaries",
                    estimated_savings=int(used * 0.15),
                    risk="medium",
                    implementation="Write concise summaries of stable modules",
                )
            )
        if not preserve_functionality:
            found.append(
                OptimizationStrategy(
                    name="Remove type annotations",
                    description="Strip type annotations from context",
                    estimated_savings=int(used * 0.10),
                    risk="high",
                    implementation="Elide annotations from code excerpts",
                )
            )
        found.sort(key=lambda s: (_RISK_ORDER[s.risk], -s.estimated_savings))
        return found

    async def optimize(
        self, session_id: str, target_reduction: float, preserve_functionality: bool = True,
    ) -> OptimizeResponse:
        """Pick strategies greedily, lowest risk first, until the target is met.

        Optimization is advisory: the ledger is never rewritten.
        """
        if target_reduction is None or target_reduction < 0:
            raise InvalidParametersError("target_reduction must be non-negative")
        status = await self.get_status(session_id)
        if target_reduction <= 1:
            target_tokens = int(status.used_tokens * target_reduction)
        else:
            target_tokens = int(target_reduction)

        applied: list[str] = []
        side_effects: list[str] = []
        saved = 0
        for strategy in self.strategies(status, target_tokens, preserve_functionality):
            if saved >= target_tokens:
                break
            if strategy.risk == "high" and preserve_functionality:
                continue
            applied.append(strategy.name)
            saved += strategy.estimated_savings
            if strategy.risk != "low":
                side_effects.append(f"{strategy.name}: {strategy.description}")

        logger.info(f"Optimization for {session_id}: {len(applied)} strategies, ~{saved} tokens")
        return OptimizeResponse(
            optimizations_applied=applied,
            tokens_saved=saved,
            new_capacity=status.total_tokens - status.used_tokens + saved,
            side_effects=side_effects,
        )

    async def get_analytics(self, session_id: str) -> ContextAnalytics:
        session = await self._require_session(session_id)
        averages = await self.store.context_usage.phase_averages(session_id)
        peaks = await self.store.context_usage.peaks(session_id, limit=5)
        return ContextAnalytics(
            average_per_phase={phase: round(avg) for phase, avg in averages.items()},
            peak_usage_points=[
                PeakUsagePoint(
                    timestamp=row["timestamp"],
                    tokens=int(row["tokens_used"]),
                    reason=f"{row['operation']} in {row['phase']} phase",
                )
                for row in peaks
            ],
            efficiency_score=await self._efficiency_score(session),
        )

    async def _efficiency_score(self, session: dict) -> int:
        session_id = session["id"]
        average = await self.store.context_usage.average_tokens(session_id)
        avg_per_op = average if average is not None else 100
        score = 100
        if avg_per_op > 200:
            score -= 20
        if avg_per_op > 500:
            score -= 30

        budget = int(session["context_budget"] or 0)
        for phase, used in (await self.store.context_usage.phase_breakdown(session_id)).items():
            allocated = int(budget * PHASE_SHARES.get(phase, 0))
            if used > allocated:
                score -= 10

        recent = await self.store.context_usage.recent(session_id, limit=TREND_WINDOW)
        trend = classify_trend([int(r["tokens_used"]) for r in recent])
        if trend == "stable":
            score += 10
        elif trend == "critical":
            score -= 20
        return max(0, min(100, score))

    def clear(self) -> None:
        self.channel.publish({"status": None})
