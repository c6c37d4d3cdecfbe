"""SQLite repositories for sessions and their checkpoints."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite

_SESSION_COLUMNS = (
    "id", "project_id", "project_name", "session_type", "status", "current_phase",
    "start_time", "end_time", "estimated_completion",
    "estimated_lines", "estimated_tests", "estimated_docs",
    "actual_lines", "actual_tests", "docs_updated",
    "context_budget", "context_used", "velocity_score",
    "continuing_from", "created_at", "updated_at",
)


def _loads(raw: str | None, default: Any) -> Any:
    if not raw:
        return default
    try:
        return json.loads(raw)
    except (TypeError, ValueError):
        return default


class SqliteSessionRepository:
    """Session rows. Callers own the surrounding transaction."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def create(self, session_data: dict) -> None:
        values = tuple(session_data.get(col) for col in _SESSION_COLUMNS)
        placeholders = ", ".join("?" for _ in _SESSION_COLUMNS)
        await self.db.execute(
            f"INSERT INTO sessions ({', '.join(_SESSION_COLUMNS)}) VALUES ({placeholders})",
            values,
        )

    async def get_by_id(self, session_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def get_active(self) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM sessions WHERE status = 'active' ORDER BY start_time DESC LIMIT 1"
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def list_history(self, project_name: str | None = None, limit: int | None = None) -> list[dict]:
        query = "SELECT * FROM sessions"
        params: list[Any] = []
        if project_name:
            query += " WHERE project_name = ?"
            params.append(project_name)
        query += " ORDER BY start_time DESC"
        if limit:
            query += " LIMIT ?"
            params.append(int(limit))
        async with self.db.execute(query, tuple(params)) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def list_for_project(
        self, project_id: str, start: str | None = None, end: str | None = None,
    ) -> list[dict]:
        query = "SELECT * FROM sessions WHERE project_id = ?"
        params: list[Any] = [project_id]
        if start:
            query += " AND start_time >= ?"
            params.append(start)
        if end:
            query += " AND start_time <= ?"
            params.append(end)
        query += " ORDER BY start_time ASC"
        async with self.db.execute(query, tuple(params)) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def update_progress(
        self, session_id: str, actual_lines: int, actual_tests: int,
        velocity_score: float, updated_at: str,
    ) -> None:
        await self.db.execute(
            """UPDATE sessions SET
                actual_lines = ?, actual_tests = ?, velocity_score = ?, updated_at = ?
            WHERE id = ?""",
            (actual_lines, actual_tests, velocity_score, updated_at, session_id),
        )

    async def update_phase(self, session_id: str, phase: str, updated_at: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET current_phase = ?, updated_at = ? WHERE id = ?",
            (phase, updated_at, session_id),
        )

    async def update_status(
        self, session_id: str, status: str, updated_at: str, end_time: str | None = None,
    ) -> None:
        if end_time:
            await self.db.execute(
                "UPDATE sessions SET status = ?, end_time = ?, updated_at = ? WHERE id = ?",
                (status, end_time, updated_at, session_id),
            )
        else:
            await self.db.execute(
                "UPDATE sessions SET status = ?, updated_at = ? WHERE id = ?",
                (status, updated_at, session_id),
            )

    async def set_context_used(self, session_id: str, context_used: int, updated_at: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET context_used = ?, updated_at = ? WHERE id = ?",
            (context_used, updated_at, session_id),
        )

    async def increment_docs_updated(self, session_id: str, updated_at: str) -> None:
        await self.db.execute(
            "UPDATE sessions SET docs_updated = docs_updated + 1, updated_at = ? WHERE id = ?",
            (updated_at, session_id),
        )


class SqliteCheckpointRepository:
    """Append-only checkpoint history."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def next_number(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT MAX(checkpoint_number) FROM checkpoints WHERE session_id = ?",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return (row[0] or 0) + 1 if row else 1

    async def add(self, checkpoint: dict) -> None:
        await self.db.execute(
            """INSERT INTO checkpoints (
                id, session_id, checkpoint_number, timestamp, context_used, commit_hash,
                completed_components_json, metrics_json, continuation_plan_json, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                checkpoint["id"],
                checkpoint["session_id"],
                checkpoint["checkpoint_number"],
                checkpoint["timestamp"],
                checkpoint.get("context_used", 0),
                checkpoint.get("commit_hash"),
                json.dumps(checkpoint.get("completed_components", [])),
                json.dumps(checkpoint.get("metrics", {})),
                json.dumps(checkpoint["continuation_plan"]) if checkpoint.get("continuation_plan") else None,
                checkpoint["timestamp"],
            ),
        )

    async def list_for_session(self, session_id: str) -> list[dict]:
        async with self.db.execute(
            "SELECT * FROM checkpoints WHERE session_id = ? ORDER BY checkpoint_number ASC",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
            return [self._row_to_dict(r) for r in rows]

    async def completed_components(self, session_id: str) -> list[str]:
        seen: list[str] = []
        for checkpoint in await self.list_for_session(session_id):
            for component in checkpoint["completed_components"]:
                if component not in seen:
                    seen.append(component)
        return seen

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        d["completed_components"] = _loads(d.pop("completed_components_json", None), [])
        d["metrics"] = _loads(d.pop("metrics_json", None), {})
        d["continuation_plan"] = _loads(d.pop("continuation_plan_json", None), None)
        return d
