"""SQLite repository for generated documentation records."""
from __future__ import annotations

import json

import aiosqlite


class SqliteDocumentationRepository:
    def __init__(self, db: aiosqlite.Connection):
        self.db = db

    async def add(self, doc: dict) -> None:
        await self.db.execute(
            """INSERT INTO documentations (
                id, session_id, doc_type, file_path, word_count, content,
                sections_json, generated_at, created_at, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                doc["id"],
                doc["session_id"],
                doc["doc_type"],
                doc.get("file_path", ""),
                int(doc.get("word_count", 0)),
                doc.get("content", ""),
                json.dumps(doc.get("sections", [])),
                doc["generated_at"],
                doc["generated_at"],
                doc["generated_at"],
            ),
        )

    async def list_for_session(self, session_id: str, doc_type: str | None = None) -> list[dict]:
        query = "SELECT * FROM documentations WHERE session_id = ?"
        params: tuple = (session_id,)
        if doc_type:
            query += " AND doc_type = ?"
            params = (session_id, doc_type)
        query += " ORDER BY generated_at DESC"
        async with self.db.execute(query, params) as cur:
            rows = await cur.fetchall()
        result = []
        for row in rows:
            d = dict(row)
            d["sections"] = json.loads(d.pop("sections_json", None) or "[]")
            result.append(d)
        return result
