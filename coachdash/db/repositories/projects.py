"""SQLite repositories for projects and their blockers."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite


class SqliteProjectRepository:
    """Project rows keyed by id, unique by name."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def ensure(self, project_id: str, name: str, now: str) -> dict:
        """Insert the project if its name is new; return the stored row."""
        await self.db.execute(
            """INSERT INTO projects (id, name, created_at, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(name) DO UPDATE SET updated_at = excluded.updated_at""",
            (project_id, name, now, now),
        )
        row = await self.get_by_name(name)
        assert row is not None
        return row

    async def get_by_id(self, project_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE id = ?", (project_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def get_by_name(self, name: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM projects WHERE name = ?", (name,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def update_stats(self, project_id: str, stats: dict[str, Any], now: str) -> None:
        await self.db.execute(
            """UPDATE projects SET
                total_sessions = ?, total_lines_written = ?, average_velocity = ?,
                completion_rate = ?, common_blockers_json = ?, updated_at = ?
            WHERE id = ?""",
            (
                int(stats.get("total_sessions", 0)),
                int(stats.get("total_lines_written", 0)),
                float(stats.get("average_velocity", 0.0)),
                float(stats.get("completion_rate", 0.0)),
                json.dumps(stats.get("common_blockers", [])),
                now,
                project_id,
            ),
        )

    async def session_aggregates(self, project_id: str) -> dict[str, Any]:
        async with self.db.execute(
            """SELECT
                COUNT(*) AS total_sessions,
                COALESCE(SUM(actual_lines), 0) AS total_lines,
                AVG(CASE WHEN velocity_score > 0 THEN velocity_score END) AS avg_velocity,
                AVG(CASE WHEN status = 'complete' AND estimated_lines > 0
                         THEN CAST(actual_lines AS REAL) / estimated_lines END) AS completion_rate
            FROM sessions WHERE project_id = ?""",
            (project_id,),
        ) as cur:
            row = await cur.fetchone()
        return {
            "total_sessions": int(row["total_sessions"] or 0),
            "total_lines_written": int(row["total_lines"] or 0),
            "average_velocity": float(row["avg_velocity"] or 0.0),
            "completion_rate": float(row["completion_rate"] or 0.0),
        }

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        d["tech_stack"] = json.loads(d.pop("tech_stack_json", None) or "[]")
        d["common_blockers"] = json.loads(d.pop("common_blockers_json", None) or "[]")
        d.pop("updated_at", None)
        return d


class SqliteBlockerRepository:
    """Blockers are created and resolved, never deleted."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def add(self, blocker: dict) -> None:
        await self.db.execute(
            """INSERT INTO blockers (
                id, session_id, project_id, type, description, impact_score, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                blocker["id"],
                blocker["session_id"],
                blocker["project_id"],
                blocker["type"],
                blocker["description"],
                blocker["impact_score"],
                blocker["created_at"],
            ),
        )

    async def get_by_id(self, blocker_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM blockers WHERE id = ?", (blocker_id,)
        ) as cur:
            row = await cur.fetchone()
            return dict(row) if row else None

    async def resolve(self, blocker_id: str, resolution: str, resolved_at: str, time_to_resolve: int) -> None:
        await self.db.execute(
            """UPDATE blockers SET resolution = ?, resolved_at = ?, time_to_resolve = ?
            WHERE id = ?""",
            (resolution, resolved_at, time_to_resolve, blocker_id),
        )

    async def list_for_project(self, project_id: str, open_only: bool = False) -> list[dict]:
        query = "SELECT * FROM blockers WHERE project_id = ?"
        if open_only:
            query += " AND resolved_at IS NULL"
        query += " ORDER BY created_at DESC"
        async with self.db.execute(query, (project_id,)) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def top_types(self, project_id: str, limit: int = 3) -> list[str]:
        async with self.db.execute(
            """SELECT type, COUNT(*) AS n FROM blockers WHERE project_id = ?
            GROUP BY type ORDER BY n DESC, type ASC LIMIT ?""",
            (project_id, limit),
        ) as cur:
            rows = await cur.fetchall()
        return [row["type"] for row in rows]
