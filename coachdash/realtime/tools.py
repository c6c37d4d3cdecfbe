"""Tool registry shared by the websocket hub and the REST tool endpoint.

Every tool declares a pydantic parameter model (its JSON Schema is the
published ``input_schema``), an async handler and the topics its success
changes.
"""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import BaseModel, Field, ValidationError

from coachdash.errors import CoachDashError, InvalidParametersError, ToolExecutionError, UnknownToolError
from coachdash.events import (
    ADVISORY_SUGGESTIONS,
    CONTEXT_STATUS,
    DOCUMENTATION_STATUS,
    PROJECT_STATUS,
    PROJECT_VELOCITY,
    REALITY_CHECKS,
    SESSION_STATUS,
)
from coachdash.models import BlockerType, CheckpointMetrics, CheckType, EstimatedScope, SessionType
from coachdash.observability import record_tool_result, start_span
from coachdash.services.container import Services

logger = logging.getLogger("coachdash.tools")


# ── Parameter models ────────────────────────────────────────────────


class SessionStartParams(BaseModel):
    project_name: str = Field(min_length=1)
    session_type: SessionType
    estimated_scope: EstimatedScope
    context_budget: Optional[int] = Field(default=None, gt=0)
    continuing_from: Optional[str] = None


class SessionCheckpointParams(BaseModel):
    session_id: str
    completed_components: list[str] = Field(default_factory=list)
    metrics: CheckpointMetrics = Field(default_factory=CheckpointMetrics)
    commit_message: Optional[str] = None
    force: bool = False


class SessionHandoffParams(BaseModel):
    session_id: str
    next_session_goals: list[str] = Field(default_factory=list)
    include_context_dump: bool = False


class SessionRef(BaseModel):
    session_id: str


class OptionalSessionRef(BaseModel):
    session_id: Optional[str] = None


class SessionHistoryParams(BaseModel):
    project_name: Optional[str] = None
    limit: Optional[int] = Field(default=None, gt=0)


class ContextTrackParams(BaseModel):
    session_id: str
    phase: str = Field(min_length=1)
    tokens: int = Field(ge=0)
    operation: str = "manual"


class ContextPredictParams(BaseModel):
    session_id: str
    planned_tasks: list[str] = Field(default_factory=list)


class ContextOptimizeParams(BaseModel):
    session_id: str
    target_reduction: float = Field(gt=0)
    preserve_functionality: bool = True


class RealityCheckParams(BaseModel):
    session_id: str
    check_type: CheckType = "comprehensive"
    focus_areas: Optional[list[str]] = None


class RealityFixParams(BaseModel):
    snapshot_id: str
    fix_ids: list[str] = Field(min_length=1)
    auto_commit: bool = False


class MetricValidateParams(BaseModel):
    session_id: str
    reported_metrics: dict[str, float]


class ProjectTrackParams(BaseModel):
    project_name: str = Field(min_length=1)
    session_id: str


class VelocityAnalyzeParams(BaseModel):
    project_id: str
    time_window: int = Field(default=7, gt=0, description="Window in days")


class BlockerReportParams(BaseModel):
    session_id: str
    blocker_type: BlockerType
    description: str = Field(min_length=1)
    impact_score: int = Field(ge=1, le=10)


class BlockerResolveParams(BaseModel):
    blocker_id: str
    resolution: str = Field(min_length=1)


class TimeRange(BaseModel):
    start: Optional[str] = None
    end: Optional[str] = None


class ProgressReportParams(BaseModel):
    project_id: str
    time_range: Optional[TimeRange] = None
    include_predictions: bool = False


class SuggestActionsParams(BaseModel):
    session_id: str
    limit: int = Field(default=5, gt=0)


class DebugStateParams(BaseModel):
    session_id: str
    include_sensitive: bool = False


class NoParams(BaseModel):
    pass


class AgentRunParams(BaseModel):
    session_id: str
    current_phase: Optional[str] = None
    context_usage_percent: Optional[float] = Field(default=None, ge=0, le=100)


class SymbolRegisterParams(BaseModel):
    project_id: str
    concept: str = Field(min_length=1)
    chosen_name: str = Field(min_length=1)
    context_type: str = "variable"
    session_id: Optional[str] = None


class SymbolLookupParams(BaseModel):
    project_id: str
    concept: str = Field(min_length=1)


class ProjectRef(BaseModel):
    project_id: str


class AgentStatusParams(BaseModel):
    agent_name: Optional[str] = None
    project_id: Optional[str] = None


class AgentToggleParams(BaseModel):
    enabled: bool


# ── Registry ────────────────────────────────────────────────────────

Handler = Callable[[Services, Any], Awaitable[Any]]


@dataclass(frozen=True)
class Tool:
    name: str
    description: str
    params_model: type[BaseModel]
    handler: Handler
    affects: tuple[str, ...] = ()

    @property
    def input_schema(self) -> dict[str, Any]:
        return self.params_model.model_json_schema()

    def describe(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
            "affects": list(self.affects),
        }


def to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump()
    if isinstance(value, list):
        return [to_jsonable(v) for v in value]
    if isinstance(value, dict):
        return {k: to_jsonable(v) for k, v in value.items()}
    return value


def _validation_message(tool: str, exc: ValidationError) -> InvalidParametersError:
    missing = [".".join(str(p) for p in err["loc"]) for err in exc.errors() if err["type"] == "missing"]
    details = "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'params'}: {err['msg']}" for err in exc.errors()
    )
    return InvalidParametersError(f"Invalid parameters for '{tool}': {details}", missing)


async def _session_status(s: Services, p: OptionalSessionRef) -> Any:
    if p.session_id:
        return await s.sessions.get_session_status(p.session_id)
    return await s.sessions.get_active_session()


async def _progress_report(s: Services, p: ProgressReportParams) -> Any:
    time_range = p.time_range.model_dump() if p.time_range else None
    return await s.projects.generate_report(p.project_id, time_range, p.include_predictions)


async def _agent_toggle(s: Services, p: AgentToggleParams) -> Any:
    return s.agents.set_enabled(p.enabled)


TOOLS: tuple[Tool, ...] = (
    # Session
    Tool(
        "session_start", "Start a new work session with scope planning",
        SessionStartParams,
        lambda s, p: s.sessions.start_session(
            p.project_name, p.session_type, p.estimated_scope, p.context_budget, p.continuing_from,
        ),
        (SESSION_STATUS, CONTEXT_STATUS, PROJECT_STATUS),
    ),
    Tool(
        "session_checkpoint", "Record a numbered checkpoint, optionally committing to git",
        SessionCheckpointParams,
        lambda s, p: s.sessions.create_checkpoint(
            p.session_id, p.completed_components, p.metrics, p.commit_message, p.force,
        ),
        (SESSION_STATUS, CONTEXT_STATUS),
    ),
    Tool(
        "session_handoff", "End the session and write a handoff document for the next one",
        SessionHandoffParams,
        lambda s, p: s.sessions.create_handoff(p.session_id, p.next_session_goals, p.include_context_dump),
        (SESSION_STATUS, CONTEXT_STATUS),
    ),
    Tool(
        "session_status", "Get a session, or the active session when no id is given",
        OptionalSessionRef, _session_status,
    ),
    Tool(
        "session_complete", "Mark a session complete",
        SessionRef, lambda s, p: s.sessions.complete_session(p.session_id),
        (SESSION_STATUS, CONTEXT_STATUS, PROJECT_STATUS),
    ),
    Tool(
        "session_history", "List past sessions, newest first",
        SessionHistoryParams, lambda s, p: s.sessions.get_session_history(p.project_name, p.limit),
    ),
    # Context
    Tool(
        "context_track", "Append token usage to the session ledger",
        ContextTrackParams, lambda s, p: s.context.track_usage(p.session_id, p.phase, p.tokens, p.operation),
        (CONTEXT_STATUS,),
    ),
    Tool(
        "context_status", "Current token usage, phase breakdown and trend",
        SessionRef, lambda s, p: s.context.get_status(p.session_id),
    ),
    Tool(
        "context_predict", "Predict which planned tasks still fit in the budget",
        ContextPredictParams, lambda s, p: s.context.predict(p.session_id, p.planned_tasks),
    ),
    Tool(
        "context_optimize", "Propose risk-ranked strategies to cut token usage",
        ContextOptimizeParams,
        lambda s, p: s.context.optimize(p.session_id, p.target_reduction, p.preserve_functionality),
    ),
    Tool(
        "context_analytics", "Per-phase averages, peaks and efficiency score",
        SessionRef, lambda s, p: s.context.get_analytics(p.session_id),
    ),
    # Reality
    Tool(
        "reality_check", "Compare the session's claims against the workspace",
        RealityCheckParams, lambda s, p: s.reality.perform_check(p.session_id, p.check_type, p.focus_areas),
        (REALITY_CHECKS,),
    ),
    Tool(
        "reality_fix", "Apply auto-fixable discrepancies from a snapshot",
        RealityFixParams, lambda s, p: s.reality.apply_fixes(p.snapshot_id, p.fix_ids, p.auto_commit),
        (REALITY_CHECKS, DOCUMENTATION_STATUS),
    ),
    Tool(
        "metric_validate", "Check reported metrics against independently derived values",
        MetricValidateParams, lambda s, p: s.reality.validate_metrics(p.session_id, p.reported_metrics),
    ),
    # Projects and blockers
    Tool(
        "project_track", "Link a session to its project and refresh project aggregates",
        ProjectTrackParams, lambda s, p: s.projects.track(p.project_name, p.session_id),
        (PROJECT_STATUS,),
    ),
    Tool(
        "velocity_analyze", "Compare recent session velocity with earlier sessions",
        VelocityAnalyzeParams, lambda s, p: s.projects.analyze_velocity(p.project_id, p.time_window),
        (PROJECT_VELOCITY,),
    ),
    Tool(
        "blocker_report", "Report a blocker against a session",
        BlockerReportParams,
        lambda s, p: s.projects.report_blocker(p.session_id, p.blocker_type, p.description, p.impact_score),
        (PROJECT_STATUS,),
    ),
    Tool(
        "blocker_resolve", "Resolve an open blocker",
        BlockerResolveParams, lambda s, p: s.projects.resolve_blocker(p.blocker_id, p.resolution),
        (PROJECT_STATUS,),
    ),
    Tool(
        "progress_report", "Sessions, blockers and velocity for a project",
        ProgressReportParams, _progress_report, (PROJECT_VELOCITY,),
    ),
    # Actions and diagnostics
    Tool(
        "suggest_actions", "Next actions for a session",
        SuggestActionsParams, lambda s, p: s.sessions.suggest_actions(p.session_id, p.limit),
    ),
    Tool(
        "debug_state", "Internal state of a session for troubleshooting",
        DebugStateParams, lambda s, p: s.sessions.get_debug_state(p.session_id, p.include_sensitive),
    ),
    Tool("health_check", "Database, websocket and filesystem health", NoParams, lambda s, p: s.health()),
    # Advisory
    Tool(
        "agent_run", "Run the advisory agents against a session",
        AgentRunParams,
        lambda s, p: s.agents.run_agents(p.session_id, p.current_phase, p.context_usage_percent),
        (ADVISORY_SUGGESTIONS,),
    ),
    Tool(
        "symbol_register", "Register the chosen name for a concept",
        SymbolRegisterParams,
        lambda s, p: s.agents.register_symbol(p.project_id, p.concept, p.chosen_name, p.context_type, p.session_id),
    ),
    Tool(
        "symbol_lookup", "Most-used name for a concept",
        SymbolLookupParams, lambda s, p: s.agents.lookup_symbol(p.project_id, p.concept),
    ),
    Tool("symbol_list", "All registered symbols for a project", ProjectRef,
         lambda s, p: s.agents.list_symbols(p.project_id)),
    Tool(
        "agent_status", "Decision history, success rate and health per agent",
        AgentStatusParams, lambda s, p: s.agents.agent_status(p.agent_name, p.project_id),
    ),
    Tool("agent_toggle", "Enable or disable the advisory agents", AgentToggleParams, _agent_toggle,
         (ADVISORY_SUGGESTIONS,)),
)


class ToolRegistry:
    def __init__(self, services: Services, tools: tuple[Tool, ...] = TOOLS):
        self.services = services
        self._tools = {tool.name: tool for tool in tools}

    def names(self) -> list[str]:
        return sorted(self._tools)

    def describe(self) -> list[dict[str, Any]]:
        return [self._tools[name].describe() for name in self.names()]

    def find(self, name: str) -> Optional[Tool]:
        return self._tools.get(name)

    def get(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise UnknownToolError(name)
        return tool

    async def execute(self, name: str, params: dict[str, Any] | None) -> Any:
        """Validate, run and serialize one tool call.

        Typed errors propagate unchanged; anything else is wrapped in
        ``ToolExecutionError``.
        """
        tool = self.get(name)
        try:
            parsed = tool.params_model.model_validate(params or {})
        except ValidationError as e:
            record_tool_result(name, "invalid")
            raise _validation_message(name, e) from e

        started = time.perf_counter()
        status = "success"
        try:
            with start_span(f"tool.{name}", {"tool": name}):
                result = await tool.handler(self.services, parsed)
            return to_jsonable(result)
        except CoachDashError:
            status = "error"
            raise
        except Exception as e:
            status = "error"
            logger.exception(f"Tool {name} failed unexpectedly")
            raise ToolExecutionError(name, e) from e
        finally:
            record_tool_result(name, status, (time.perf_counter() - started) * 1000)
