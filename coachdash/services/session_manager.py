"""Session lifecycle: start, checkpoint, handoff and completion.

State machine::

    active -> checkpoint -> active      (checkpoints never end a session)
    active -> handoff                   (terminal; a successor may continue from it)
    active | checkpoint | handoff -> complete
"""
from __future__ import annotations

import json
import logging
import math
import uuid
from typing import Any, Callable

from coachdash import config
from coachdash.date_utils import add_seconds, format_duration, format_iso, iso_now, utc_now
from coachdash.db.store import Store
from coachdash.errors import (
    CommitFailedError,
    InvalidParametersError,
    SessionNotActiveError,
    SessionNotFoundError,
)
from coachdash.events import SESSION_STATUS, EventBus
from coachdash.models import (
    ActionSuggestion,
    CheckpointMetrics,
    CheckpointResponse,
    ContextRequirement,
    ContextSnapshot,
    ContinuationPlan,
    EstimatedScope,
    HandoffResponse,
    PrerequisiteCheck,
    Session,
    SessionEstimate,
)
from coachdash.services.context_monitor import ContextMonitor
from coachdash.services.planning import (
    build_checkpoint_plans,
    determine_phase,
    elapsed_seconds,
    estimate_budget,
    percent_complete,
    session_from_row,
    velocity_score,
)
from coachdash.services.project_tracker import ProjectTracker
from coachdash.services.workspace import WorkspaceInspector, extract_paths

logger = logging.getLogger("coachdash.session")

DEFAULT_SESSION_HOURS = 4
_COMPLETABLE = {"active", "checkpoint", "handoff"}
_SESSION_TYPES = {"feature", "bugfix", "refactor", "documentation"}


class SessionManager:
    """Owns the session state machine and the ``session.status`` topic."""

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        context: ContextMonitor,
        projects: ProjectTracker,
        inspector: WorkspaceInspector,
        handoff_dir: str = config.HANDOFF_DIR,
        default_budget: int = config.CONTEXT_DEFAULT_BUDGET,
    ):
        self.store = store
        self.channel = bus.channel(SESSION_STATUS)
        self.context = context
        self.projects = projects
        self.inspector = inspector
        self.handoff_dir = handoff_dir
        self.default_budget = default_budget
        self._close_listeners: list[Callable[[str], None]] = []

    def on_session_closed(self, listener: Callable[[str], None]) -> None:
        """Call ``listener(session_id)`` after a handoff or completion."""
        self._close_listeners.append(listener)

    def _closed(self, session_id: str) -> None:
        self._publish(None)
        self.context.clear()
        for listener in self._close_listeners:
            listener(session_id)

    # ── Lookups ─────────────────────────────────────────────────────

    async def _require_session(self, session_id: str) -> dict:
        row = await self.store.sessions.get_by_id(session_id)
        if not row:
            raise SessionNotFoundError(session_id)
        return row

    async def _load(self, session_id: str) -> Session:
        row = await self._require_session(session_id)
        checkpoints = await self.store.checkpoints.list_for_session(session_id)
        return session_from_row(row, checkpoints)

    def _publish(self, session: Session | None) -> None:
        self.channel.publish({"session": session.model_dump() if session else None})

    async def get_session_status(self, session_id: str) -> Session:
        return await self._load(session_id)

    async def get_active_session(self) -> Session | None:
        row = await self.store.sessions.get_active()
        if not row:
            return None
        return await self._load(row["id"])

    async def get_session_history(self, project_name: str | None = None, limit: int | None = None) -> list[Session]:
        if limit is not None and limit <= 0:
            raise InvalidParametersError("limit must be positive")
        rows = await self.store.sessions.list_history(project_name, limit)
        return [session_from_row(row) for row in rows]

    # ── Start ───────────────────────────────────────────────────────

    async def start_session(
        self,
        project_name: str,
        session_type: str,
        estimated_scope: EstimatedScope,
        context_budget: int | None = None,
        continuing_from: str | None = None,
    ) -> Session:
        if session_type not in _SESSION_TYPES:
            raise InvalidParametersError(
                f"Unknown session type '{session_type}'. Expected one of {sorted(_SESSION_TYPES)}"
            )
        if estimated_scope.lines_of_code <= 0:
            raise InvalidParametersError("estimated_scope.lines_of_code must be greater than zero")
        if estimated_scope.test_coverage < 0 or estimated_scope.documentation < 0:
            raise InvalidParametersError("estimated_scope counts cannot be negative")
        if context_budget is not None and context_budget <= 0:
            raise InvalidParametersError("context_budget must be greater than zero")

        # Estimates never exceed the configured default window.
        budget = context_budget or min(estimate_budget(estimated_scope), self.default_budget)
        now = utc_now()
        now_iso = format_iso(now)
        session_id = str(uuid.uuid4())

        async with self.store.transaction("start_session"):
            if continuing_from:
                await self._require_session(continuing_from)
            project = await self.store.projects.ensure(str(uuid.uuid4()), project_name.strip(), now_iso)
            await self.store.sessions.create(
                {
                    "id": session_id,
                    "project_id": project["id"],
                    "project_name": project["name"],
                    "session_type": session_type,
                    "status": "active",
                    "current_phase": "planning",
                    "start_time": now_iso,
                    "end_time": None,
                    "estimated_completion": add_seconds(now, DEFAULT_SESSION_HOURS * 3600),
                    "estimated_lines": estimated_scope.lines_of_code,
                    "estimated_tests": estimated_scope.test_coverage,
                    "estimated_docs": estimated_scope.documentation,
                    "actual_lines": 0,
                    "actual_tests": 0,
                    "docs_updated": 0,
                    "context_budget": budget,
                    "context_used": 0,
                    "velocity_score": 0,
                    "continuing_from": continuing_from,
                    "created_at": now_iso,
                    "updated_at": now_iso,
                }
            )

        session = await self._load(session_id)
        logger.info(
            f"Session {session_id} started for {session.project_name} "
            f"({session_type}, budget {budget} tokens)"
        )
        self._publish(session)
        self.context.channel.publish({"status": (await self.context.get_status(session_id)).model_dump()})
        return session

    # ── Checkpoint ──────────────────────────────────────────────────

    async def create_checkpoint(
        self,
        session_id: str,
        completed_components: list[str],
        metrics: CheckpointMetrics,
        commit_message: str | None = None,
        force: bool = False,
    ) -> CheckpointResponse:
        row = await self._require_session(session_id)
        if row["status"] != "active":
            raise SessionNotActiveError(session_id, row["status"])
        return await self._checkpoint(row, completed_components, metrics, commit_message, force)

    async def _checkpoint(
        self,
        row: dict,
        completed_components: list[str],
        metrics: CheckpointMetrics,
        commit_message: str | None,
        force: bool,
    ) -> CheckpointResponse:
        session_id = row["id"]
        budget = int(row["context_budget"] or 0)

        used = await self.store.context_usage.total_for_session(session_id)
        delta = 0
        if metrics.context_used_percent is not None:
            if not 0 <= metrics.context_used_percent <= 100:
                raise InvalidParametersError("context_used_percent must be between 0 and 100")
            delta = math.floor(budget * metrics.context_used_percent / 100) - used
        reconciled = used + max(0, delta)
        used_percent = reconciled / budget * 100 if budget else 0.0

        # The commit runs before any write so a failed commit leaves no trace.
        commit_hash: str | None = None
        if commit_message:
            try:
                commit_hash = self.inspector.git_commit(commit_message)
            except RuntimeError as e:
                if not force:
                    raise CommitFailedError(str(e)) from e
                logger.warning(f"Checkpoint commit failed for {session_id}, continuing (force): {e}")

        now_iso = iso_now()
        lines = metrics.lines_written
        tests = metrics.tests_passing
        progress_row = {**row, "actual_lines": lines, "actual_tests": tests}
        continuation = ContinuationPlan(
            remaining_tasks=await self._remaining_tasks(row, completed_components),
            context_requirements=max(0, budget - reconciled),
            prerequisite_checks=[c.command for c in self._prerequisite_checks(row)],
            suggested_approach=self._suggest_approach(progress_row),
        )

        async with self.store.transaction("create_checkpoint"):
            # Reconcile the reported percentage into the ledger so the sum invariant holds.
            if delta > 0:
                label = ", ".join(completed_components[:3]) + ("..." if len(completed_components) > 3 else "")
                used = await self.context.record_usage(
                    session_id, row["current_phase"], delta, f"Checkpoint: {label}",
                )
            number = await self.store.checkpoints.next_number(session_id)
            checkpoint_id = f"{session_id}-checkpoint-{number}"
            await self.store.checkpoints.add(
                {
                    "id": checkpoint_id,
                    "session_id": session_id,
                    "checkpoint_number": number,
                    "timestamp": now_iso,
                    "context_used": used,
                    "commit_hash": commit_hash,
                    "completed_components": list(completed_components),
                    "metrics": {
                        "lines_written": lines,
                        "tests_passing": tests,
                        "context_used_percent": round(used_percent, 2),
                    },
                    "continuation_plan": continuation.model_dump(),
                }
            )
            score = velocity_score(
                lines, tests, int(row["estimated_lines"]), int(row["estimated_tests"]),
                elapsed_seconds(row, now_iso),
            )
            await self.store.sessions.update_progress(session_id, lines, tests, score, now_iso)
            phase = determine_phase(used_percent)
            if phase != row["current_phase"]:
                await self.store.sessions.update_phase(session_id, phase, now_iso)
            await self.store.sessions.update_status(session_id, "checkpoint", now_iso)

        if delta > 0:
            await self.context.publish_status(session_id, row["current_phase"], delta)
        # Observers see the checkpoint state before the session resumes.
        self._publish(await self._load(session_id))
        async with self.store.transaction("resume_session"):
            await self.store.sessions.update_status(session_id, "active", iso_now())
        self._publish(await self._load(session_id))

        logger.info(f"Checkpoint {number} created for session {session_id} at {used_percent:.1f}% context")
        snapshot = ContextSnapshot(
            session_id=session_id,
            checkpoint_id=checkpoint_id,
            timestamp=now_iso,
            context_used=used,
            important_files=self._important_files(completed_components),
            key_decisions=[f"Implemented {c}" for c in completed_components],
            next_steps=self._next_steps(progress_row),
        )
        return CheckpointResponse(
            checkpoint_id=checkpoint_id,
            checkpoint_number=number,
            commit_hash=commit_hash,
            context_snapshot=snapshot,
            continuation_plan=continuation,
        )

    def _important_files(self, components: list[str]) -> list[str]:
        files: list[str] = []
        for component in components:
            for path in extract_paths(component):
                if path not in files:
                    files.append(path)
        return files

    def _next_steps(self, row: dict) -> list[str]:
        pct = percent_complete(int(row["actual_lines"] or 0), int(row["estimated_lines"] or 0))
        if pct < 30:
            return ["Continue core implementation"]
        if pct < 60:
            return ["Complete main features", "Begin testing"]
        if pct < 90:
            return ["Finalize implementation", "Complete test coverage", "Update documentation"]
        return ["Final testing and cleanup", "Documentation review"]

    def _suggest_approach(self, row: dict) -> str:
        pct = percent_complete(int(row["actual_lines"] or 0), int(row["estimated_lines"] or 0))
        if pct < 30:
            return "Focus on core functionality and basic structure"
        if pct < 60:
            return "Implement remaining features and begin integration"
        if pct < 90:
            return "Complete testing and ensure all edge cases are handled"
        return "Final polish, documentation, and prepare for deployment"

    async def _remaining_tasks(self, row: dict, completed_now: list[str]) -> list[str]:
        """Plan deliverables not yet claimed by any checkpoint component."""
        done = [c.lower() for c in await self.store.checkpoints.completed_components(row["id"])]
        done.extend(c.lower() for c in completed_now)
        scope = EstimatedScope(
            lines_of_code=int(row["estimated_lines"]),
            test_coverage=int(row["estimated_tests"] or 0),
            documentation=int(row["estimated_docs"] or 0),
        )
        remaining: list[str] = []
        for plan in build_checkpoint_plans(scope, int(row["context_budget"])):
            for deliverable in plan.deliverables:
                needle = deliverable.lower()
                if deliverable in remaining or any(needle in c or c in needle for c in done):
                    continue
                remaining.append(deliverable)
        return remaining

    def _prerequisite_checks(self, row: dict) -> list[PrerequisiteCheck]:
        checks = [
            PrerequisiteCheck(check_type="dependency", command="pip install -e .", expected_result="Dependencies installed"),
        ]
        if int(row.get("actual_tests") or 0) > 0 or int(row.get("estimated_tests") or 0) > 0:
            expected = (
                f"{row['actual_tests']} tests passing" if int(row.get("actual_tests") or 0) > 0
                else "All tests passing"
            )
            checks.append(PrerequisiteCheck(check_type="test", command="pytest", expected_result=expected))
        return checks

    # ── Handoff ─────────────────────────────────────────────────────

    async def create_handoff(
        self,
        session_id: str,
        next_session_goals: list[str] | None = None,
        include_context_dump: bool = False,
    ) -> HandoffResponse:
        row = await self._require_session(session_id)
        if row["status"] != "active":
            raise SessionNotActiveError(session_id, row["status"])
        goals = [g for g in (next_session_goals or []) if g and g.strip()]

        used = await self.store.context_usage.total_for_session(session_id)
        budget = int(row["context_budget"] or 0)
        final = await self._checkpoint(
            row,
            await self.store.checkpoints.completed_components(session_id),
            CheckpointMetrics(
                lines_written=int(row["actual_lines"] or 0),
                tests_passing=int(row["actual_tests"] or 0),
                context_used_percent=(used / budget * 100) if budget else 0,
            ),
            None,
            False,
        )

        row = await self._require_session(session_id)
        checkpoints = await self.store.checkpoints.list_for_session(session_id)
        document = self._render_handoff(row, checkpoints, goals, include_context_dump)
        estimate = self._estimate_next_session(row, goals)
        rel_path = f"{self.handoff_dir.rstrip('/')}/{row['project_name']}-{session_id[:8]}.md"

        document_path: str | None = None
        try:
            self.inspector.write_text(rel_path, document)
            document_path = rel_path
        except (OSError, ValueError) as e:
            logger.warning(f"Could not write handoff document for {session_id}: {e}")

        now_iso = iso_now()
        async with self.store.transaction("create_handoff"):
            await self.store.documentations.add(
                {
                    "id": str(uuid.uuid4()),
                    "session_id": session_id,
                    "doc_type": "handoff",
                    "file_path": document_path or "",
                    "word_count": len(document.split()),
                    "content": document,
                    "sections": [line[3:] for line in document.splitlines() if line.startswith("## ")],
                    "generated_at": now_iso,
                }
            )
            await self.store.sessions.increment_docs_updated(session_id, now_iso)
            await self.store.sessions.update_status(session_id, "handoff", now_iso, end_time=now_iso)

        logger.info(f"Session {session_id} handed off ({len(goals)} goals for next session)")
        self._closed(session_id)
        return HandoffResponse(
            session_id=session_id,
            checkpoint_id=final.checkpoint_id,
            handoff_document=document,
            document_path=document_path,
            context_requirements=self._context_requirements(row, checkpoints),
            prerequisite_checks=self._prerequisite_checks(row),
            estimated_next_session=estimate,
        )

    def _render_handoff(
        self, row: dict, checkpoints: list[dict], goals: list[str], include_dump: bool,
    ) -> str:
        now_iso = iso_now()
        lines_written = int(row["actual_lines"] or 0)
        estimated = int(row["estimated_lines"] or 0)
        budget = int(row["context_budget"] or 0)
        used = int(row["context_used"] or 0)
        parts = [
            "# Session Handoff Document",
            "",
            "## Session Summary",
            f"- **Session ID**: {row['id']}",
            f"- **Project**: {row['project_name']}",
            f"- **Type**: {row['session_type']}",
            f"- **Duration**: {format_duration(elapsed_seconds(row, now_iso))}",
            "",
            "## Progress Metrics",
            f"- **Lines Written**: {lines_written}/{estimated} ({round(percent_complete(lines_written, estimated))}%)",
            f"- **Tests Passing**: {row['actual_tests']}/{row['estimated_tests']}",
            f"- **Context Used**: {round(used / budget * 100) if budget else 0}%",
            f"- **Velocity Score**: {row['velocity_score']}",
            "",
            "## Checkpoints",
        ]
        for cp in checkpoints:
            parts.append("")
            parts.append(f"### Checkpoint {cp['checkpoint_number']} ({cp['timestamp']})")
            parts.append(f"- Context Used: {cp['metrics'].get('context_used_percent', 0)}%")
            parts.append(f"- Components: {', '.join(cp['completed_components']) or 'none'}")
            if cp.get("commit_hash"):
                parts.append(f"- Commit: {cp['commit_hash']}")
        if goals:
            parts.extend(["", "## Next Session Goals"])
            parts.extend(f"- {goal}" for goal in goals)
        parts.extend(
            [
                "",
                "## Continuation Instructions",
                "1. Pull latest changes",
                "2. Run prerequisite checks",
                "3. Review important files",
                f"4. Continue from current phase: {row['current_phase']}",
            ]
        )
        if include_dump:
            dump = json.dumps({"session": row, "checkpoints": checkpoints}, indent=2, default=str)
            parts.extend(["", "## Context Dump", "```json", dump, "```"])
        return "\n".join(parts) + "\n"

    def _context_requirements(self, row: dict, checkpoints: list[dict]) -> list[ContextRequirement]:
        requirements: list[ContextRequirement] = []
        seen: set[str] = set()
        for cp in reversed(checkpoints):
            for component in cp["completed_components"]:
                for path in extract_paths(component):
                    if path in seen:
                        continue
                    seen.add(path)
                    requirements.append(
                        ContextRequirement(file_path=path, reason=f"Touched in: {component}", priority="critical")
                    )
        if int(row["actual_tests"] or 0) < int(row["estimated_tests"] or 0):
            requirements.append(
                ContextRequirement(file_path="tests/", reason="Test implementation needed", priority="important")
            )
        if int(row["docs_updated"] or 0) < int(row["estimated_docs"] or 0):
            requirements.append(
                ContextRequirement(file_path=f"{config.DOCS_DIR}/", reason="Documentation pending", priority="helpful")
            )
        return requirements

    def _estimate_next_session(self, row: dict, goals: list[str]) -> SessionEstimate:
        remaining = max(0, int(row["estimated_lines"] or 0) - int(row["actual_lines"] or 0))
        lines = remaining + 100 * len(goals)
        complexity = min(100, 50 + 10 * len(goals))
        velocity = float(row["velocity_score"] or 0) or 50.0
        hours = lines / max(velocity, 20)
        return SessionEstimate(
            estimated_lines=lines,
            estimated_duration_seconds=math.ceil(hours * 3600),
            estimated_context=math.ceil(lines * 12),
            complexity_score=complexity,
        )

    # ── Completion ──────────────────────────────────────────────────

    async def complete_session(self, session_id: str) -> Session:
        row = await self._require_session(session_id)
        if row["status"] not in _COMPLETABLE:
            raise SessionNotActiveError(session_id, row["status"])
        now_iso = iso_now()
        async with self.store.transaction("complete_session"):
            await self.store.sessions.update_status(
                session_id, "complete", now_iso, end_time=row.get("end_time") or now_iso,
            )
        await self.projects.refresh_stats(row["project_id"])
        logger.info(f"Session {session_id} completed")
        self._closed(session_id)
        return await self._load(session_id)

    # ── Suggestions & diagnostics ───────────────────────────────────

    async def suggest_actions(self, session_id: str, limit: int = 5) -> list[ActionSuggestion]:
        row = await self._require_session(session_id)
        suggestions: list[ActionSuggestion] = []
        if row["current_phase"] == "implementation":
            suggestions.append(
                ActionSuggestion(
                    action_id="run-tests", name="Run Tests", confidence=0.9,
                    reason="Implementation phase - verify your changes",
                )
            )
        budget = int(row["context_budget"] or 0)
        if budget and int(row["context_used"] or 0) / budget > 0.5:
            suggestions.append(
                ActionSuggestion(
                    action_id="create-checkpoint", name="Create Checkpoint", confidence=0.95,
                    reason="Over 50% context used",
                )
            )
        if row["status"] == "active" and int(row["estimated_docs"] or 0) > int(row["docs_updated"] or 0):
            suggestions.append(
                ActionSuggestion(
                    action_id="update-docs", name="Update Documentation", confidence=0.6,
                    reason="Planned documentation not yet written",
                )
            )
        return suggestions[: max(0, limit)]

    async def get_debug_state(self, session_id: str, include_sensitive: bool = False) -> dict[str, Any]:
        row = await self._require_session(session_id)
        checkpoints = await self.store.checkpoints.list_for_session(session_id)
        samples = await self.store.context_usage.recent(session_id, limit=10)
        ledger_total = await self.store.context_usage.total_for_session(session_id)
        channel_value = self.channel.value or {}
        current = channel_value.get("session") if isinstance(channel_value, dict) else None
        state: dict[str, Any] = {
            "session": dict(row),
            "checkpoints": len(checkpoints),
            "last_checkpoint": checkpoints[-1] if checkpoints else None,
            "context_usage_samples": samples,
            "ledger_consistent": ledger_total == int(row["context_used"] or 0),
            "channels": {
                "session_published": bool(current and current.get("id") == session_id),
                "session_listeners": self.channel.listener_count,
                "context_listeners": self.context.channel.listener_count,
            },
        }
        if not include_sensitive:
            if state["last_checkpoint"]:
                state["last_checkpoint"] = {
                    k: v for k, v in state["last_checkpoint"].items() if k != "commit_hash"
                }
        return state

    async def restore(self) -> None:
        """Prime the session topic with whatever session is active on startup."""
        session = await self.get_active_session()
        if session:
            self._publish(session)
            self.context.channel.publish({"status": (await self.context.get_status(session.id)).model_dump()})
