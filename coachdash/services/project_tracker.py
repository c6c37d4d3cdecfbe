"""Project aggregates, blockers and velocity analysis."""
from __future__ import annotations

import logging
import math
import uuid
from datetime import timedelta
from typing import Any

from coachdash.date_utils import format_iso, iso_now, parse_iso, seconds_between, utc_now
from coachdash.db.store import Store
from coachdash.errors import (
    BlockerNotFoundError,
    InvalidParametersError,
    ProjectNotFoundError,
    SessionNotFoundError,
)
from coachdash.events import PROJECT_STATUS, PROJECT_VELOCITY, EventBus
from coachdash.models import Blocker, ProgressReport, Project, VelocityMetrics
from coachdash.services.planning import session_from_row

logger = logging.getLogger("coachdash.project")

_BLOCKER_TYPES = {"technical", "context", "external", "unclear_requirement"}
TREND_BAND = 0.10


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


class ProjectTracker:
    def __init__(self, store: Store, bus: EventBus):
        self.store = store
        self.status_channel = bus.channel(PROJECT_STATUS)
        self.velocity_channel = bus.channel(PROJECT_VELOCITY)

    async def ensure_project(self, name: str) -> dict:
        clean = (name or "").strip()
        if not clean:
            raise InvalidParametersError("project_name is required", ["project_name"])
        async with self.store.transaction("ensure_project"):
            return await self.store.projects.ensure(str(uuid.uuid4()), clean, iso_now())

    async def _require_project(self, project_ref: str) -> dict:
        project = await self.store.projects.get_by_id(project_ref)
        if not project:
            project = await self.store.projects.get_by_name(project_ref)
        if not project:
            raise ProjectNotFoundError(project_ref)
        return project

    async def refresh_stats(self, project_id: str) -> Project:
        """Recompute the stored aggregates from the sessions and blockers tables."""
        async with self.store.transaction("refresh_project_stats"):
            stats = await self.store.projects.session_aggregates(project_id)
            stats["common_blockers"] = await self.store.blockers.top_types(project_id, limit=3)
            await self.store.projects.update_stats(project_id, stats, iso_now())
        project = Project(**await self._require_project(project_id))
        self.status_channel.publish({"project": project.model_dump()})
        return project

    async def track(self, project_name: str, session_id: str) -> Project:
        session = await self.store.sessions.get_by_id(session_id)
        if not session:
            raise SessionNotFoundError(session_id)
        project = await self.store.projects.get_by_name(project_name)
        if not project:
            raise ProjectNotFoundError(project_name)
        if session["project_id"] != project["id"]:
            raise InvalidParametersError(
                f"Session '{session_id}' belongs to project '{session['project_name']}', not '{project_name}'"
            )
        logger.info(f"Tracking session {session_id} under project {project_name}")
        return await self.refresh_stats(project["id"])

    async def analyze_velocity(self, project_id: str, time_window_days: int = 7) -> VelocityMetrics:
        project = await self._require_project(project_id)
        if time_window_days <= 0:
            raise InvalidParametersError("time_window must be a positive number of days")
        sessions = await self.store.sessions.list_for_project(project["id"])
        cutoff = utc_now() - timedelta(days=time_window_days)

        inside: list[float] = []
        before: list[float] = []
        for row in sessions:
            score = float(row.get("velocity_score") or 0)
            if score <= 0:
                continue
            started = parse_iso(row["start_time"])
            if started and started >= cutoff:
                inside.append(score)
            else:
                before.append(score)

        current = _mean(inside)
        baseline = _mean(before)
        overall = _mean(inside + before)

        trend = "stable"
        factors: list[str] = []
        if inside and before and baseline > 0:
            change = (current - baseline) / baseline
            if change > TREND_BAND:
                trend = "improving"
                factors.append(f"Velocity up {change:.0%} versus the previous period")
            elif change < -TREND_BAND:
                trend = "declining"
                factors.append(f"Velocity down {abs(change):.0%} versus the previous period")
        elif not before:
            factors.append("No earlier sessions to compare against")

        open_blockers = await self.store.blockers.list_for_project(project["id"], open_only=True)
        if open_blockers:
            factors.append(f"{len(open_blockers)} open blocker(s)")
            high = [b for b in open_blockers if int(b["impact_score"]) >= 7]
            if high:
                factors.append(f"{len(high)} high-impact blocker(s) slowing progress")

        metrics = VelocityMetrics(
            project_id=project["id"],
            current_velocity=round(current, 2),
            average_velocity=round(overall, 2),
            trend=trend,
            factors=factors,
            sample_size=len(inside) + len(before),
        )
        self.velocity_channel.publish({"metrics": metrics.model_dump()})
        return metrics

    async def report_blocker(
        self, session_id: str, blocker_type: str, description: str, impact_score: int,
    ) -> Blocker:
        if blocker_type not in _BLOCKER_TYPES:
            raise InvalidParametersError(
                f"Unknown blocker type '{blocker_type}'. Expected one of {sorted(_BLOCKER_TYPES)}"
            )
        if not 1 <= int(impact_score) <= 10:
            raise InvalidParametersError("impact_score must be between 1 and 10")
        if not (description or "").strip():
            raise InvalidParametersError("description is required", ["description"])
        session = await self.store.sessions.get_by_id(session_id)
        if not session:
            raise SessionNotFoundError(session_id)

        blocker = {
            "id": str(uuid.uuid4()),
            "session_id": session_id,
            "project_id": session["project_id"],
            "type": blocker_type,
            "description": description.strip(),
            "impact_score": int(impact_score),
            "created_at": iso_now(),
        }
        async with self.store.transaction("report_blocker"):
            await self.store.blockers.add(blocker)
        logger.info(f"Blocker {blocker['id']} reported ({blocker_type}, impact {impact_score})")
        await self.refresh_stats(session["project_id"])
        return Blocker(**blocker)

    async def resolve_blocker(self, blocker_id: str, resolution: str) -> Blocker:
        if not (resolution or "").strip():
            raise InvalidParametersError("resolution is required", ["resolution"])
        blocker = await self.store.blockers.get_by_id(blocker_id)
        if not blocker:
            raise BlockerNotFoundError(blocker_id)
        if blocker.get("resolved_at"):
            raise InvalidParametersError(f"Blocker '{blocker_id}' is already resolved")

        now = iso_now()
        elapsed = max(0, int(seconds_between(blocker["created_at"], now)))
        async with self.store.transaction("resolve_blocker"):
            await self.store.blockers.resolve(blocker_id, resolution.strip(), now, elapsed)
        updated = await self.store.blockers.get_by_id(blocker_id)
        await self.refresh_stats(blocker["project_id"])
        return Blocker(**updated)

    async def generate_report(
        self,
        project_id: str,
        time_range: dict[str, str] | None = None,
        include_predictions: bool = False,
    ) -> ProgressReport:
        project = await self._require_project(project_id)
        start = (time_range or {}).get("start")
        end = (time_range or {}).get("end")
        rows = await self.store.sessions.list_for_project(project["id"], start=start, end=end)
        sessions = [session_from_row(row) for row in rows]

        blockers = [Blocker(**b) for b in await self.store.blockers.list_for_project(project["id"])]
        open_blockers = [b for b in blockers if b.resolved_at is None]
        resolved = [b for b in blockers if b.resolved_at is not None]
        velocity = await self.analyze_velocity(project["id"])

        predictions: dict[str, Any] | None = None
        if include_predictions:
            remaining = sum(
                max(0, s.estimated_scope.lines_of_code - s.metrics.lines_written)
                for s in sessions
                if s.status != "complete"
            )
            completed = [s for s in sessions if s.metrics.lines_written > 0]
            lines_per_session = _mean([float(s.metrics.lines_written) for s in completed])
            predictions = {
                "remaining_lines": remaining,
                "average_lines_per_session": round(lines_per_session, 1),
                "estimated_sessions_remaining": (
                    math.ceil(remaining / lines_per_session) if lines_per_session > 0 else None
                ),
                "open_blocker_impact": sum(b.impact_score for b in open_blockers),
            }

        return ProgressReport(
            project=Project(**project),
            generated_at=format_iso(utc_now()),
            sessions=sessions,
            open_blockers=open_blockers,
            resolved_blockers=resolved,
            velocity=velocity,
            predictions=predictions,
        )
