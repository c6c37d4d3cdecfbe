"""SQLite repositories for advisory-agent memory and the symbol registry."""
from __future__ import annotations

import json
from typing import Any

import aiosqlite


def _dump(value: Any) -> str:
    """Strings are stored verbatim so plain-text decisions stay readable."""
    if isinstance(value, str):
        return value
    return json.dumps(value)


class SqliteAgentMemoryRepository:
    """Decision log written by the advisory agents."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def record(self, entry: dict) -> int:
        cursor = await self.db.execute(
            """INSERT INTO agent_memory (
                agent_name, action_type, input_context, decision_made,
                confidence, worked, project_id, session_id, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                entry["agent_name"],
                entry["action_type"],
                _dump(entry.get("input_context", {})),
                _dump(entry.get("decision_made", {})),
                float(entry.get("confidence", 1.0)),
                1 if entry.get("worked", True) else 0,
                entry.get("project_id"),
                entry.get("session_id"),
                entry["created_at"],
            ),
        )
        return cursor.lastrowid or 0

    async def recent(
        self,
        agent_name: str,
        project_id: str | None = None,
        limit: int | None = 10,
        session_id: str | None = None,
    ) -> list[dict]:
        """Newest first. ``limit=None`` returns the whole history."""
        query = "SELECT * FROM agent_memory WHERE agent_name = ?"
        params: list[Any] = [agent_name]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        if session_id:
            query += " AND session_id = ?"
            params.append(session_id)
        query += " ORDER BY created_at DESC, id DESC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        async with self.db.execute(query, tuple(params)) as cur:
            rows = await cur.fetchall()
            return [self._row_to_dict(r) for r in rows]

    async def success_rate(self, agent_name: str, project_id: str | None = None) -> float | None:
        query = "SELECT AVG(worked) FROM agent_memory WHERE agent_name = ?"
        params: list[Any] = [agent_name]
        if project_id:
            query += " AND project_id = ?"
            params.append(project_id)
        async with self.db.execute(query, tuple(params)) as cur:
            row = await cur.fetchone()
        if not row or row[0] is None:
            return None
        return float(row[0])

    async def count(self, agent_name: str) -> int:
        async with self.db.execute(
            "SELECT COUNT(*) FROM agent_memory WHERE agent_name = ?", (agent_name,)
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        for key in ("input_context", "decision_made"):
            try:
                d[key] = json.loads(d.get(key) or "{}")
            except (TypeError, ValueError):
                pass
        d["worked"] = bool(d.get("worked"))
        return d


class SqliteSymbolRepository:
    """Concept to chosen-name mappings, one row per (project, concept, name)."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def upsert(self, symbol: dict) -> None:
        """Insert a mapping or bump its usage count when it already exists."""
        await self.db.execute(
            """INSERT INTO symbol_registry (
                id, concept, chosen_name, context_type, project_id,
                confidence_score, usage_count, created_by_agent, session_id,
                created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, 1, ?, ?, ?, ?)
            ON CONFLICT(project_id, concept, chosen_name) DO UPDATE SET
                usage_count = usage_count + 1,
                confidence_score = MAX(confidence_score, excluded.confidence_score),
                updated_at = excluded.updated_at""",
            (
                symbol["id"],
                symbol["concept"],
                symbol["chosen_name"],
                symbol.get("context_type", "variable"),
                symbol["project_id"],
                float(symbol.get("confidence_score", 1.0)),
                symbol.get("created_by_agent"),
                symbol.get("session_id"),
                symbol["created_at"],
                symbol["created_at"],
            ),
        )

    async def find_by_concept(self, project_id: str, concept: str) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM symbol_registry WHERE project_id = ? AND concept = ?
            ORDER BY usage_count DESC, created_at ASC""",
            (project_id, concept),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def list_for_project(self, project_id: str, limit: int = 100) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM symbol_registry WHERE project_id = ?
            ORDER BY concept ASC, usage_count DESC LIMIT ?""",
            (project_id, limit),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def increment_usage(self, symbol_id: str, updated_at: str) -> None:
        await self.db.execute(
            "UPDATE symbol_registry SET usage_count = usage_count + 1, updated_at = ? WHERE id = ?",
            (updated_at, symbol_id),
        )
