"""Compare what a session claims against what the workspace actually holds."""
from __future__ import annotations

import logging
import uuid
from typing import Any, Callable

from coachdash import config
from coachdash.date_utils import iso_now
from coachdash.db.store import Store
from coachdash.errors import InvalidParametersError, SessionNotFoundError, SnapshotNotFoundError
from coachdash.events import REALITY_CHECKS, EventBus
from coachdash.models import (
    ApplyFixesResponse,
    Discrepancy,
    FailedFix,
    RealitySnapshot,
    ValidatedMetric,
)
from coachdash.observability import record_reality_check
from coachdash.services.workspace import WorkspaceInspector, extract_paths

logger = logging.getLogger("coachdash.reality")

CHECK_AREAS = ("files", "tests", "documentation", "git")
QUICK_AREAS = ("files", "tests")
SEVERITY_PENALTY = {"critical": 0.2, "warning": 0.05, "info": 0.01}
SEVERITY_PRIORITY = {"critical": 1, "warning": 2, "info": 3}
ACCURATE_VARIANCE = 10.0
MINOR_VARIANCE = 30.0

_RECOMMENDATIONS = {
    "file_mismatch": "Reconcile checkpoint components with the files actually on disk",
    "test_failure": "Fix failing tests before the next checkpoint",
    "documentation_gap": "Bring stale or missing documentation up to date",
    "state_drift": "Commit outstanding changes or record a fresh checkpoint",
}


def confidence_score(discrepancies: list[Discrepancy]) -> float:
    score = 1.0
    for d in discrepancies:
        score -= SEVERITY_PENALTY.get(d.severity, 0.0)
    return round(max(0.0, score), 4)


def metric_status(variance_percent: float) -> str:
    if variance_percent <= ACCURATE_VARIANCE:
        return "accurate"
    if variance_percent <= MINOR_VARIANCE:
        return "minor_variance"
    return "major_variance"


class RealityChecker:
    """Read-only checks plus an explicit, opt-in fix step."""

    def __init__(
        self,
        store: Store,
        bus: EventBus,
        inspector: WorkspaceInspector,
        stale_days: int = config.DOC_STALE_DAYS,
    ):
        self.store = store
        self.channel = bus.channel(REALITY_CHECKS)
        self.inspector = inspector
        self.stale_days = stale_days
        self._checks: dict[str, Callable[[dict, list[dict]], Any]] = {
            "files": self._check_files,
            "tests": self._check_tests,
            "documentation": self._check_documentation,
            "git": self._check_git,
        }

    async def _require_session(self, session_id: str) -> dict:
        row = await self.store.sessions.get_by_id(session_id)
        if not row:
            raise SessionNotFoundError(session_id)
        return row

    def _areas_for(self, check_type: str, focus_areas: list[str] | None) -> list[str]:
        if check_type == "comprehensive":
            return list(CHECK_AREAS)
        if check_type == "quick":
            if not focus_areas:
                return list(QUICK_AREAS)
            outside = [a for a in focus_areas if a not in QUICK_AREAS]
            if outside:
                raise InvalidParametersError(
                    f"Quick checks only cover {list(QUICK_AREAS)}, got {outside}. Use a specific check instead."
                )
            return [a for a in QUICK_AREAS if a in focus_areas]
        if check_type == "specific":
            if not focus_areas:
                raise InvalidParametersError("A specific check needs focus_areas", ["focus_areas"])
            unknown = [a for a in focus_areas if a not in CHECK_AREAS]
            if unknown:
                raise InvalidParametersError(
                    f"Unknown focus areas {unknown}. Expected any of {list(CHECK_AREAS)}"
                )
            return [a for a in CHECK_AREAS if a in focus_areas]
        raise InvalidParametersError(f"Unknown check type '{check_type}'")

    async def perform_check(
        self, session_id: str, check_type: str = "comprehensive", focus_areas: list[str] | None = None,
    ) -> RealitySnapshot:
        session = await self._require_session(session_id)
        areas = self._areas_for(check_type, focus_areas)
        checkpoints = await self.store.checkpoints.list_for_session(session_id)

        found: list[Discrepancy] = []
        for area in areas:
            found.extend(await self._checks[area](session, checkpoints))

        discrepancies = [
            d.model_copy(update={"fix_id": f"fix_{i}", "ui_priority": SEVERITY_PRIORITY[d.severity]})
            for i, d in enumerate(found)
        ]
        recommendations: list[str] = []
        for d in discrepancies:
            text = _RECOMMENDATIONS[d.type]
            if text not in recommendations:
                recommendations.append(text)
        if not recommendations:
            recommendations.append("Workspace matches the session's claims")

        snapshot = RealitySnapshot(
            snapshot_id=str(uuid.uuid4()),
            session_id=session_id,
            timestamp=iso_now(),
            check_type=check_type,
            discrepancies=discrepancies,
            confidence_score=confidence_score(discrepancies),
            recommendations=recommendations,
        )
        async with self.store.transaction("perform_check"):
            await self.store.reality.add(snapshot.model_dump())

        record_reality_check(check_type, [d.severity for d in discrepancies])
        logger.info(
            f"Reality check {snapshot.snapshot_id} ({check_type}) for {session_id}: "
            f"{len(discrepancies)} discrepancies, confidence {snapshot.confidence_score}"
        )
        self.channel.publish(snapshot.model_dump())
        return snapshot

    # ── Individual checks ───────────────────────────────────────────

    def _claimed_paths(self, checkpoints: list[dict]) -> list[str]:
        paths: list[str] = []
        for cp in checkpoints:
            for component in cp["completed_components"]:
                for path in extract_paths(component):
                    if path not in paths:
                        paths.append(path)
        return paths

    async def _check_files(self, session: dict, checkpoints: list[dict]) -> list[Discrepancy]:
        workspace = self.inspector.list_files()
        found: list[Discrepancy] = []
        for path in self._claimed_paths(checkpoints):
            if path in workspace:
                continue
            found.append(
                Discrepancy(
                    type="file_mismatch",
                    severity="critical",
                    description=f"Checkpoint claims '{path}' but it does not exist in the workspace",
                    location=path,
                    suggested_fix=f"Create {path} or remove it from the checkpoint components",
                )
            )
        return found

    async def _check_tests(self, session: dict, checkpoints: list[dict]) -> list[Discrepancy]:
        results = self.inspector.read_test_results()
        claimed = int(session.get("actual_tests") or 0)
        if results is None:
            if claimed > 0:
                return [
                    Discrepancy(
                        type="state_drift",
                        severity="warning",
                        description=f"Session claims {claimed} passing tests but no test report was found",
                        location=self.inspector.test_report_path,
                        suggested_fix="Run the test suite and write its JSON report",
                    )
                ]
            return []

        found: list[Discrepancy] = []
        if results.failed > 0:
            found.append(
                Discrepancy(
                    type="test_failure",
                    severity="critical",
                    description=f"{results.failed} of {results.total} tests failing",
                    location=self.inspector.test_report_path,
                    suggested_fix="Fix the failing tests",
                )
            )
        if claimed > results.passed:
            found.append(
                Discrepancy(
                    type="state_drift",
                    severity="warning",
                    description=f"Session claims {claimed} passing tests, report shows {results.passed}",
                    location=self.inspector.test_report_path,
                    suggested_fix="Record a checkpoint with the real test count",
                )
            )
        return found

    async def _check_documentation(self, session: dict, checkpoints: list[dict]) -> list[Discrepancy]:
        found: list[Discrepancy] = []
        docs = self.inspector.scan_docs(self.stale_days)
        for doc in docs:
            if not doc.stale:
                continue
            found.append(
                Discrepancy(
                    type="documentation_gap",
                    severity="info",
                    description=f"{doc.path} last updated {doc.age_days} days ago",
                    location=doc.path,
                    suggested_fix="Review the document and refresh its front-matter date",
                    auto_fixable=True,
                    fix_action="refresh_doc",
                )
            )
        if session["session_type"] == "documentation" and not docs and not int(session.get("docs_updated") or 0):
            found.append(
                Discrepancy(
                    type="documentation_gap",
                    severity="warning",
                    description="Documentation session has produced no documents",
                    location=self.inspector.docs_dir,
                    suggested_fix="Write the planned documentation",
                )
            )
        for doc in await self.store.documentations.list_for_session(session["id"], doc_type="handoff"):
            path = doc.get("file_path") or ""
            if path and not self.inspector.exists(path):
                found.append(
                    Discrepancy(
                        type="documentation_gap",
                        severity="warning",
                        description=f"Handoff document {path} is missing from the workspace",
                        location=path,
                        suggested_fix="Re-create the handoff document from the stored copy",
                        auto_fixable=True,
                        fix_action="recreate_handoff",
                    )
                )
        return found

    async def _check_git(self, session: dict, checkpoints: list[dict]) -> list[Discrepancy]:
        status = self.inspector.git_status()
        if not status.is_repo or not status.dirty:
            return []
        last_commit = next((cp for cp in reversed(checkpoints) if cp.get("commit_hash")), None)
        if not last_commit:
            return []
        return [
            Discrepancy(
                type="state_drift",
                severity="warning",
                description=(
                    f"{len(status.dirty_paths)} uncommitted change(s) since checkpoint "
                    f"{last_commit['checkpoint_number']} ({last_commit['commit_hash']})"
                ),
                location=", ".join(status.dirty_paths[:5]),
                suggested_fix="Commit the outstanding changes with a new checkpoint",
            )
        ]

    # ── Metrics ─────────────────────────────────────────────────────

    async def validate_metrics(self, session_id: str, reported_metrics: dict[str, float]) -> list[ValidatedMetric]:
        session = await self._require_session(session_id)
        if not reported_metrics:
            raise InvalidParametersError("reported_metrics cannot be empty", ["reported_metrics"])
        sources: dict[str, Callable[[], Any]] = {
            "lines_written": lambda: self._actual_lines(session_id),
            "tests_passing": self._actual_tests,
            "files_created": lambda: self._actual_files(session_id),
            "context_used": lambda: self.store.context_usage.total_for_session(session_id),
            "docs_updated": lambda: self._actual_docs(session),
        }
        unknown = [name for name in reported_metrics if name not in sources]
        if unknown:
            raise InvalidParametersError(
                f"Cannot validate metrics {unknown}. Supported: {sorted(sources)}"
            )

        validated: list[ValidatedMetric] = []
        for name, reported in reported_metrics.items():
            actual = sources[name]()
            if hasattr(actual, "__await__"):
                actual = await actual
            actual = float(actual)
            variance = abs(float(reported) - actual) / max(actual, 1) * 100
            validated.append(
                ValidatedMetric(
                    name=name,
                    reported_value=float(reported),
                    actual_value=actual,
                    variance_percent=round(variance, 2),
                    status=metric_status(variance),
                )
            )
        return validated

    async def _actual_lines(self, session_id: str) -> int:
        checkpoints = await self.store.checkpoints.list_for_session(session_id)
        return sum(self.inspector.count_lines(p) for p in self._claimed_paths(checkpoints) if self.inspector.exists(p))

    async def _actual_files(self, session_id: str) -> int:
        checkpoints = await self.store.checkpoints.list_for_session(session_id)
        return sum(1 for p in self._claimed_paths(checkpoints) if self.inspector.exists(p))

    def _actual_tests(self) -> int:
        results = self.inspector.read_test_results()
        return results.passed if results else 0

    async def _actual_docs(self, session: dict) -> int:
        return len(await self.store.documentations.list_for_session(session["id"]))

    # ── Fixes ───────────────────────────────────────────────────────

    async def apply_fixes(
        self, snapshot_id: str, fix_ids: list[str], auto_commit: bool = False,
    ) -> ApplyFixesResponse:
        snapshot = await self.store.reality.get_by_id(snapshot_id)
        if not snapshot:
            raise SnapshotNotFoundError(snapshot_id)
        by_id = {d["fix_id"]: Discrepancy(**d) for d in snapshot["discrepancies"]}

        response = ApplyFixesResponse(snapshot_id=snapshot_id)
        for fix_id in fix_ids:
            discrepancy = by_id.get(fix_id)
            if discrepancy is None:
                response.failed.append(FailedFix(fix_id=fix_id, reason="Unknown fix id for this snapshot"))
                continue
            if not discrepancy.auto_fixable or not discrepancy.fix_action:
                response.failed.append(FailedFix(fix_id=fix_id, reason="Fix requires manual intervention"))
                continue
            try:
                effect = await self._apply(snapshot["session_id"], discrepancy)
            except (OSError, ValueError) as e:
                logger.warning(f"Fix {fix_id} on snapshot {snapshot_id} failed: {e}")
                response.failed.append(FailedFix(fix_id=fix_id, reason=str(e)))
                continue
            response.applied.append(fix_id)
            response.side_effects.append(effect)

        if response.applied:
            async with self.store.transaction("apply_fixes"):
                await self.store.reality.add_auto_fixed(snapshot_id, len(response.applied))
            if auto_commit:
                try:
                    response.commit_hash = self.inspector.git_commit(
                        f"Apply reality-check fixes ({', '.join(response.applied)})"
                    )
                except RuntimeError as e:
                    logger.warning(f"Commit after fixes failed: {e}")
                    response.side_effects.append(f"Commit failed: {e}")
        logger.info(f"Applied {len(response.applied)} fixes, {len(response.failed)} failed for {snapshot_id}")
        return response

    async def _apply(self, session_id: str, discrepancy: Discrepancy) -> str:
        location = discrepancy.location or ""
        if discrepancy.fix_action == "refresh_doc":
            self.inspector.touch_frontmatter_date(location)
            return f"Refreshed front-matter date in {location}"
        if discrepancy.fix_action == "recreate_handoff":
            for doc in await self.store.documentations.list_for_session(session_id, doc_type="handoff"):
                if doc.get("file_path") == location and doc.get("content"):
                    self.inspector.write_text(location, doc["content"])
                    return f"Re-created {location} from the stored handoff"
            raise ValueError(f"No stored handoff content for {location}")
        raise ValueError(f"Unsupported fix action {discrepancy.fix_action}")
