"""Pure planning helpers shared by the session manager and project tracker."""
from __future__ import annotations

import math
from typing import Any

from coachdash.date_utils import seconds_between
from coachdash.models import (
    Checkpoint,
    CheckpointMetrics,
    CheckpointPlan,
    ContextPlan,
    ContinuationPlan,
    EstimatedScope,
    Session,
    SessionMetrics,
)

TOKENS_PER_LINE = 10
TEST_OVERHEAD = 1.5
DOC_OVERHEAD = 1.2
BUDGET_BUFFER = 1.2
SMALL_SCOPE_LINES = 500

PHASE_ALLOCATION = {
    "planning": 0.10,
    "implementation": 0.50,
    "testing": 0.25,
    "documentation": 0.15,
}

_CHECKPOINT_STAGES = (
    (0.30, "implementation", ["Core implementation complete", "Basic functionality working"]),
    (0.60, "testing", ["Main features implemented", "Integration points complete"]),
    (0.85, "documentation", ["Tests written and passing", "Documentation updated", "Handoff prepared"]),
)


def estimate_budget(scope: EstimatedScope) -> int:
    code = scope.lines_of_code * TOKENS_PER_LINE
    tests = scope.test_coverage * TOKENS_PER_LINE * TEST_OVERHEAD
    docs = scope.documentation * TOKENS_PER_LINE * DOC_OVERHEAD
    return math.ceil((code + tests + docs) * BUDGET_BUFFER)


def build_context_plan(total_budget: int) -> ContextPlan:
    return ContextPlan(
        total_budget=total_budget,
        phase_allocation={
            phase: math.ceil(total_budget * share) for phase, share in PHASE_ALLOCATION.items()
        },
        checkpoint_triggers=[
            f"{math.ceil(total_budget * 0.35)} tokens (35%)",
            f"{math.ceil(total_budget * 0.60)} tokens (60%)",
            f"{math.ceil(total_budget * 0.70)} tokens (70%)",
            f"{math.ceil(total_budget * 0.85)} tokens (85% - emergency)",
        ],
    )


def build_checkpoint_plans(scope: EstimatedScope, total_budget: int) -> list[CheckpointPlan]:
    """Natural checkpoints proportional to scope; small scopes get one final plan."""
    lines = scope.lines_of_code
    if lines < SMALL_SCOPE_LINES:
        return [
            CheckpointPlan(
                phase="documentation",
                lines_threshold=lines,
                context_threshold=math.ceil(total_budget * 0.85),
                deliverables=["All functionality complete", "Tests passing", "Handoff prepared"],
            )
        ]
    return [
        CheckpointPlan(
            phase=phase,
            lines_threshold=math.ceil(lines * fraction),
            context_threshold=math.ceil(total_budget * fraction),
            deliverables=list(deliverables),
        )
        for fraction, phase, deliverables in _CHECKPOINT_STAGES
    ]


def determine_phase(context_used_percent: float) -> str:
    if context_used_percent < 10:
        return "planning"
    if context_used_percent < 60:
        return "implementation"
    if context_used_percent < 85:
        return "testing"
    return "documentation"


def velocity_score(
    lines_written: int, tests_passing: int, estimated_lines: int, estimated_tests: int,
    elapsed_seconds: float,
) -> int:
    elapsed_hours = max(elapsed_seconds / 3600, 0.1)
    lines_per_hour = lines_written / elapsed_hours
    test_ratio = tests_passing / max(estimated_tests, 1)
    efficiency = lines_written / max(estimated_lines, 1)
    return round(lines_per_hour * 0.4 + test_ratio * 100 * 0.3 + efficiency * 100 * 0.3)


def percent_complete(actual_lines: int, estimated_lines: int) -> float:
    return actual_lines / max(estimated_lines, 1) * 100


def checkpoint_from_row(row: dict[str, Any]) -> Checkpoint:
    plan = row.get("continuation_plan")
    return Checkpoint(
        id=row["id"],
        session_id=row["session_id"],
        checkpoint_number=int(row["checkpoint_number"]),
        timestamp=row["timestamp"],
        context_used=int(row.get("context_used") or 0),
        commit_hash=row.get("commit_hash"),
        completed_components=list(row.get("completed_components") or []),
        metrics=CheckpointMetrics(**(row.get("metrics") or {})),
        continuation_plan=ContinuationPlan(**plan) if isinstance(plan, dict) else None,
    )


def session_from_row(row: dict[str, Any], checkpoints: list[dict[str, Any]] | None = None) -> Session:
    """Assemble a ``Session`` model. Plans are derived, not stored."""
    scope = EstimatedScope(
        lines_of_code=int(row.get("estimated_lines") or 0),
        test_coverage=int(row.get("estimated_tests") or 0),
        documentation=int(row.get("estimated_docs") or 0),
    )
    budget = int(row.get("context_budget") or 0)
    return Session(
        id=row["id"],
        project_id=row["project_id"],
        project_name=row["project_name"],
        session_type=row["session_type"],
        status=row["status"],
        current_phase=row.get("current_phase") or "planning",
        start_time=row["start_time"],
        end_time=row.get("end_time"),
        estimated_completion=row["estimated_completion"],
        estimated_scope=scope,
        context_budget=budget,
        context_used=int(row.get("context_used") or 0),
        context_plan=build_context_plan(budget),
        checkpoint_plans=build_checkpoint_plans(scope, budget),
        checkpoints=[checkpoint_from_row(cp) for cp in checkpoints or []],
        metrics=SessionMetrics(
            lines_written=int(row.get("actual_lines") or 0),
            tests_written=int(row.get("actual_tests") or 0),
            tests_passing=int(row.get("actual_tests") or 0),
            docs_updated=int(row.get("docs_updated") or 0),
            context_used=int(row.get("context_used") or 0),
            velocity_score=float(row.get("velocity_score") or 0),
        ),
        continuing_from=row.get("continuing_from"),
    )


def elapsed_seconds(row: dict[str, Any], now_iso: str) -> float:
    return max(0.0, seconds_between(row["start_time"], row.get("end_time") or now_iso))
