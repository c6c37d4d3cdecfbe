"""Database connection factory.

Opens an aiosqlite connection with WAL mode and foreign keys enabled. The
caller owns the returned connection; there is no process-wide singleton.
"""
from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

logger = logging.getLogger("coachdash.db")

MEMORY_PATH = ":memory:"


async def connect(db_path: str | Path) -> aiosqlite.Connection:
    """Open a configured connection to ``db_path`` (or ``:memory:``)."""
    path = str(db_path)
    if path != MEMORY_PATH:
        Path(path).parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(path)
    conn.row_factory = aiosqlite.Row
    if path != MEMORY_PATH:
        # Enable WAL mode for better concurrent read performance
        await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA foreign_keys=ON")
    await conn.execute("PRAGMA busy_timeout=5000")
    logger.info(f"Database connection established: {path}")
    return conn


async def close(conn: aiosqlite.Connection | None) -> None:
    """Close a connection opened by :func:`connect`."""
    if conn is None:
        return
    await conn.close()
    logger.info("Database connection closed")
