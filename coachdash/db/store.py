"""Store: one connection plus the repositories bound to it."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

from coachdash.db import connection
from coachdash.db.repositories import (
    SqliteAgentMemoryRepository,
    SqliteBlockerRepository,
    SqliteCheckpointRepository,
    SqliteContextUsageRepository,
    SqliteDocumentationRepository,
    SqliteProjectRepository,
    SqliteRealitySnapshotRepository,
    SqliteSessionRepository,
    SqliteSymbolRepository,
)
from coachdash.db.sqlite_migrations import run_migrations
from coachdash.errors import DatabaseError

logger = logging.getLogger("coachdash.db")


class Store:
    """Owns the connection and hands out repositories.

    Repositories never commit. Writes go through :meth:`transaction`, which
    nests: only the outermost block commits or rolls back.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.sessions = SqliteSessionRepository(db)
        self.checkpoints = SqliteCheckpointRepository(db)
        self.context_usage = SqliteContextUsageRepository(db)
        self.reality = SqliteRealitySnapshotRepository(db)
        self.projects = SqliteProjectRepository(db)
        self.blockers = SqliteBlockerRepository(db)
        self.documentations = SqliteDocumentationRepository(db)
        self.agent_memory = SqliteAgentMemoryRepository(db)
        self.symbols = SqliteSymbolRepository(db)
        self._depth = 0

    @asynccontextmanager
    async def transaction(self, operation: str = "write") -> AsyncIterator["Store"]:
        outermost = self._depth == 0
        self._depth += 1
        try:
            yield self
        except sqlite3.Error as exc:
            self._depth -= 1
            if outermost:
                await self.db.rollback()
            logger.error(f"Transaction '{operation}' failed: {exc}")
            raise DatabaseError(operation, exc) from exc
        except BaseException:
            self._depth -= 1
            if outermost:
                await self.db.rollback()
            raise
        else:
            self._depth -= 1
            if outermost:
                try:
                    await self.db.commit()
                except sqlite3.Error as exc:
                    await self.db.rollback()
                    raise DatabaseError(operation, exc) from exc

    async def ping(self) -> bool:
        try:
            async with self.db.execute("SELECT 1") as cur:
                await cur.fetchone()
            return True
        except (sqlite3.Error, ValueError) as exc:
            logger.warning(f"Database ping failed: {exc}")
            return False

    async def close(self) -> None:
        await connection.close(self.db)


async def open_store(db_path: str | Path) -> Store:
    """Connect, migrate and wrap the connection in a :class:`Store`."""
    db = await connection.connect(db_path)
    await run_migrations(db)
    return Store(db)
