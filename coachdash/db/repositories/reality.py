"""SQLite repository for reality-check snapshots."""
from __future__ import annotations

import json

import aiosqlite


class SqliteRealitySnapshotRepository:
    """Snapshots are written once; only ``auto_fixed_count`` moves afterwards."""

    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def add(self, snapshot: dict) -> None:
        await self.db.execute(
            """INSERT INTO reality_snapshots (
                id, session_id, timestamp, check_type, discrepancies_json,
                confidence_score, recommendations_json, auto_fixed_count, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                snapshot["snapshot_id"],
                snapshot["session_id"],
                snapshot["timestamp"],
                snapshot["check_type"],
                json.dumps(snapshot.get("discrepancies", [])),
                snapshot["confidence_score"],
                json.dumps(snapshot.get("recommendations", [])),
                snapshot.get("auto_fixed_count", 0),
                snapshot["timestamp"],
            ),
        )

    async def get_by_id(self, snapshot_id: str) -> dict | None:
        async with self.db.execute(
            "SELECT * FROM reality_snapshots WHERE id = ?", (snapshot_id,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_dict(row) if row else None

    async def add_auto_fixed(self, snapshot_id: str, count: int) -> None:
        await self.db.execute(
            "UPDATE reality_snapshots SET auto_fixed_count = auto_fixed_count + ? WHERE id = ?",
            (count, snapshot_id),
        )

    def _row_to_dict(self, row: aiosqlite.Row) -> dict:
        d = dict(row)
        d["snapshot_id"] = d.pop("id")
        d["discrepancies"] = json.loads(d.pop("discrepancies_json") or "[]")
        d["recommendations"] = json.loads(d.pop("recommendations_json") or "[]")
        d.pop("created_at", None)
        return d
