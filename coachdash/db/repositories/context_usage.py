"""SQLite repository for the per-session token ledger."""
from __future__ import annotations

import aiosqlite


class SqliteContextUsageRepository:
    """Append-only usage ledger. Rows are never updated or deleted here."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def add(self, session_id: str, phase: str, tokens: int, operation: str, timestamp: str) -> int:
        cursor = await self.db.execute(
            """INSERT INTO context_usage (session_id, phase, tokens_used, operation, timestamp)
            VALUES (?, ?, ?, ?, ?)""",
            (session_id, phase, tokens, operation, timestamp),
        )
        return cursor.lastrowid or 0

    async def total_for_session(self, session_id: str) -> int:
        async with self.db.execute(
            "SELECT COALESCE(SUM(tokens_used), 0) FROM context_usage WHERE session_id = ?",
            (session_id,),
        ) as cur:
            row = await cur.fetchone()
        return int(row[0]) if row else 0

    async def phase_breakdown(self, session_id: str) -> dict[str, int]:
        async with self.db.execute(
            """SELECT phase, SUM(tokens_used) AS tokens FROM context_usage
            WHERE session_id = ? GROUP BY phase""",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
        return {row["phase"]: int(row["tokens"] or 0) for row in rows}

    async def phase_averages(self, session_id: str) -> dict[str, float]:
        async with self.db.execute(
            """SELECT phase, AVG(tokens_used) AS avg_tokens FROM context_usage
            WHERE session_id = ? GROUP BY phase""",
            (session_id,),
        ) as cur:
            rows = await cur.fetchall()
        return {row["phase"]: float(row["avg_tokens"] or 0) for row in rows}

    async def average_tokens(self, session_id: str) -> float | None:
        async with self.db.execute(
            "SELECT AVG(tokens_used) FROM context_usage WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
        if not row or row[0] is None:
            return None
        return float(row[0])

    async def recent(self, session_id: str, limit: int = 10) -> list[dict]:
        """Newest first. Ties on timestamp fall back to insertion order."""
        async with self.db.execute(
            """SELECT * FROM context_usage WHERE session_id = ?
            ORDER BY timestamp DESC, id DESC LIMIT ?""",
            (session_id, limit),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]

    async def peaks(self, session_id: str, limit: int = 5) -> list[dict]:
        async with self.db.execute(
            """SELECT * FROM context_usage
            WHERE session_id = ?
              AND tokens_used > (SELECT AVG(tokens_used) * 2 FROM context_usage WHERE session_id = ?)
            ORDER BY tokens_used DESC LIMIT ?""",
            (session_id, session_id, limit),
        ) as cur:
            rows = await cur.fetchall()
            return [dict(r) for r in rows]
