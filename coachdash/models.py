"""Pydantic models shared by the managers, the REST routers and the hub."""
from __future__ import annotations
from pydantic import BaseModel, Field
from typing import Any, Literal, Optional

SessionType = Literal["feature", "bugfix", "refactor", "documentation"]
SessionStatus = Literal["active", "checkpoint", "handoff", "complete"]
UsageTrend = Literal["stable", "increasing", "critical"]
CheckType = Literal["comprehensive", "quick", "specific"]
DiscrepancyType = Literal["file_mismatch", "test_failure", "documentation_gap", "state_drift"]
Severity = Literal["critical", "warning", "info"]
MetricStatus = Literal["accurate", "minor_variance", "major_variance"]
BlockerType = Literal["technical", "context", "external", "unclear_requirement"]
Risk = Literal["low", "medium", "high"]
Priority = Literal["low", "medium", "high", "critical"]

# ── Session-related models ──────────────────────────────────────────


class EstimatedScope(BaseModel):
    lines_of_code: int
    test_coverage: int = 0
    documentation: int = 0


class ContextPlan(BaseModel):
    total_budget: int
    phase_allocation: dict[str, int] = Field(default_factory=dict)
    checkpoint_triggers: list[str] = Field(default_factory=list)


class CheckpointPlan(BaseModel):
    phase: str
    lines_threshold: int
    context_threshold: int
    deliverables: list[str] = Field(default_factory=list)


class SessionMetrics(BaseModel):
    lines_written: int = 0
    tests_written: int = 0
    tests_passing: int = 0
    docs_updated: int = 0
    context_used: int = 0
    velocity_score: float = 0.0


class CheckpointMetrics(BaseModel):
    lines_written: int = 0
    tests_passing: int = 0
    context_used_percent: Optional[float] = None  # 0-100


class ContinuationPlan(BaseModel):
    remaining_tasks: list[str] = Field(default_factory=list)
    context_requirements: int = 0
    prerequisite_checks: list[str] = Field(default_factory=list)
    suggested_approach: str = ""


class Checkpoint(BaseModel):
    id: str
    session_id: str
    checkpoint_number: int
    timestamp: str
    context_used: int = 0
    commit_hash: Optional[str] = None
    completed_components: list[str] = Field(default_factory=list)
    metrics: CheckpointMetrics = Field(default_factory=CheckpointMetrics)
    continuation_plan: Optional[ContinuationPlan] = None


class Session(BaseModel):
    id: str
    project_id: str
    project_name: str
    session_type: SessionType
    status: SessionStatus
    current_phase: str
    start_time: str
    end_time: Optional[str] = None
    estimated_completion: str
    estimated_scope: EstimatedScope
    context_budget: int
    context_used: int = 0
    context_plan: ContextPlan
    checkpoint_plans: list[CheckpointPlan] = Field(default_factory=list)
    checkpoints: list[Checkpoint] = Field(default_factory=list)
    metrics: SessionMetrics = Field(default_factory=SessionMetrics)
    continuing_from: Optional[str] = None


class ContextSnapshot(BaseModel):
    session_id: str
    checkpoint_id: str
    timestamp: str
    context_used: int
    important_files: list[str] = Field(default_factory=list)
    key_decisions: list[str] = Field(default_factory=list)
    next_steps: list[str] = Field(default_factory=list)


class CheckpointResponse(BaseModel):
    checkpoint_id: str
    checkpoint_number: int
    commit_hash: Optional[str] = None
    context_snapshot: ContextSnapshot
    continuation_plan: ContinuationPlan


class ContextRequirement(BaseModel):
    file_path: str
    reason: str
    priority: Literal["critical", "important", "helpful"]


class PrerequisiteCheck(BaseModel):
    check_type: Literal["test", "build", "dependency", "documentation"]
    command: str
    expected_result: str


class SessionEstimate(BaseModel):
    estimated_lines: int
    estimated_duration_seconds: int
    estimated_context: int
    complexity_score: int


class HandoffResponse(BaseModel):
    session_id: str
    checkpoint_id: str
    handoff_document: str
    document_path: Optional[str] = None
    context_requirements: list[ContextRequirement] = Field(default_factory=list)
    prerequisite_checks: list[PrerequisiteCheck] = Field(default_factory=list)
    estimated_next_session: SessionEstimate


class ActionSuggestion(BaseModel):
    action_id: str
    name: str
    confidence: float
    reason: str


# ── Context ledger models ───────────────────────────────────────────


class ContextUsageRecord(BaseModel):
    id: int
    session_id: str
    phase: str
    tokens_used: int
    operation: str
    timestamp: str


class ContextStatus(BaseModel):
    session_id: str
    used_tokens: int
    total_tokens: int
    usage_percent: float
    phase_breakdown: dict[str, int] = Field(default_factory=dict)
    trend: UsageTrend = "stable"
    projected_exhaustion: Optional[str] = None
    alert_shown: bool = False


class ContextPrediction(BaseModel):
    remaining_capacity: int
    tasks_feasible: list[str] = Field(default_factory=list)
    recommended_checkpoint: bool = False
    optimization_suggestions: list[str] = Field(default_factory=list)


class OptimizationStrategy(BaseModel):
    name: str
    description: str
    estimated_savings: int
    risk: Risk
    implementation: str


class OptimizeResponse(BaseModel):
    optimizations_applied: list[str] = Field(default_factory=list)
    tokens_saved: int = 0
    new_capacity: int = 0
    side_effects: list[str] = Field(default_factory=list)


class PeakUsagePoint(BaseModel):
    timestamp: str
    tokens: int
    reason: str


class ContextAnalytics(BaseModel):
    average_per_phase: dict[str, int] = Field(default_factory=dict)
    peak_usage_points: list[PeakUsagePoint] = Field(default_factory=list)
    efficiency_score: int = 0


# ── Reality check models ────────────────────────────────────────────


class Discrepancy(BaseModel):
    fix_id: str = ""
    type: DiscrepancyType
    severity: Severity
    description: str
    location: Optional[str] = None
    suggested_fix: Optional[str] = None
    auto_fixable: bool = False
    fix_action: Optional[Literal["refresh_doc", "recreate_handoff"]] = None
    ui_priority: int = 3


class RealitySnapshot(BaseModel):
    snapshot_id: str
    session_id: str
    timestamp: str
    check_type: CheckType
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    confidence_score: float = 1.0
    recommendations: list[str] = Field(default_factory=list)
    auto_fixed_count: int = 0


class ValidatedMetric(BaseModel):
    name: str
    reported_value: float
    actual_value: float
    variance_percent: float
    status: MetricStatus


class FailedFix(BaseModel):
    fix_id: str
    reason: str


class ApplyFixesResponse(BaseModel):
    snapshot_id: str
    applied: list[str] = Field(default_factory=list)
    failed: list[FailedFix] = Field(default_factory=list)
    side_effects: list[str] = Field(default_factory=list)
    commit_hash: Optional[str] = None


class SuiteResults(BaseModel):
    passed: int = 0
    failed: int = 0
    total: int = 0


# ── Project models ──────────────────────────────────────────────────


class Project(BaseModel):
    id: str
    name: str
    created_at: str
    total_sessions: int = 0
    total_lines_written: int = 0
    average_velocity: float = 0.0
    completion_rate: float = 0.0
    common_blockers: list[str] = Field(default_factory=list)
    tech_stack: list[str] = Field(default_factory=list)


class Blocker(BaseModel):
    id: str
    session_id: str
    project_id: str
    type: BlockerType
    description: str
    impact_score: int
    resolution: Optional[str] = None
    time_to_resolve: Optional[int] = None  # seconds
    created_at: str
    resolved_at: Optional[str] = None


class VelocityMetrics(BaseModel):
    project_id: str
    current_velocity: float = 0.0
    average_velocity: float = 0.0
    trend: Literal["improving", "stable", "declining"] = "stable"
    factors: list[str] = Field(default_factory=list)
    sample_size: int = 0


class ProgressReport(BaseModel):
    project: Project
    generated_at: str
    sessions: list[Session] = Field(default_factory=list)
    open_blockers: list[Blocker] = Field(default_factory=list)
    resolved_blockers: list[Blocker] = Field(default_factory=list)
    velocity: VelocityMetrics
    predictions: Optional[dict[str, Any]] = None


# ── Advisory models ─────────────────────────────────────────────────


class AgentContext(BaseModel):
    session_id: str
    project_id: str
    current_phase: str
    context_usage_percent: float  # 0-100
    timestamp: float = 0.0


class AgentDecision(BaseModel):
    agent_name: str
    action_type: str
    input_context: str
    decision_made: str
    confidence: float = 1.0
    reasoning: Optional[str] = None


class SuggestedAction(BaseModel):
    tool: str
    params: dict[str, Any] = Field(default_factory=dict)


class AgentSuggestion(BaseModel):
    id: str
    agent_name: str
    type: Literal["naming", "checkpoint", "context", "quality"]
    priority: Priority
    title: str
    description: str
    action_required: bool = False
    suggested_action: Optional[SuggestedAction] = None


class AgentExecutionResult(BaseModel):
    agent_name: str
    success: bool
    decision: Optional[AgentDecision] = None
    suggestions: list[AgentSuggestion] = Field(default_factory=list)
    error: Optional[str] = None
    execution_time_ms: float = 0.0


class AgentHealth(BaseModel):
    healthy: bool = True
    last_execution_time: Optional[float] = None
    error_count: int = 0
    average_execution_time_ms: float = 0.0


class AgentMemoryEntry(BaseModel):
    id: int
    agent_name: str
    action_type: str
    input_context: str
    decision_made: str
    worked: bool = True
    project_id: Optional[str] = None
    session_id: Optional[str] = None
    created_at: str


class SymbolEntry(BaseModel):
    id: str
    concept: str
    chosen_name: str
    context_type: str
    project_id: str
    confidence_score: float = 1.0
    usage_count: int = 1
    created_by_agent: Optional[str] = None
    session_id: Optional[str] = None
    created_at: str
    updated_at: str


class AgentRunResponse(BaseModel):
    enabled: bool = True
    suggestions: list[AgentSuggestion] = Field(default_factory=list)
    results: list[AgentExecutionResult] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
