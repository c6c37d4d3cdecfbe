"""Database schema creation and versioning.

All CREATE TABLE statements for the session tracking store.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("coachdash.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Projects ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS projects (
    id                   TEXT PRIMARY KEY,
    name                 TEXT NOT NULL UNIQUE,
    total_sessions       INTEGER DEFAULT 0,
    total_lines_written  INTEGER DEFAULT 0,
    average_velocity     REAL DEFAULT 0,
    completion_rate      REAL DEFAULT 0,
    tech_stack_json      TEXT DEFAULT '[]',
    common_blockers_json TEXT DEFAULT '[]',
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

-- ── 2. Sessions ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id                   TEXT PRIMARY KEY,
    project_id           TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    project_name         TEXT NOT NULL,
    session_type         TEXT NOT NULL CHECK(session_type IN ('feature', 'bugfix', 'refactor', 'documentation')),
    status               TEXT NOT NULL CHECK(status IN ('active', 'checkpoint', 'handoff', 'complete')),
    current_phase        TEXT NOT NULL DEFAULT 'planning',
    start_time           TEXT NOT NULL,
    end_time             TEXT,
    estimated_completion TEXT NOT NULL,
    estimated_lines      INTEGER NOT NULL,
    estimated_tests      INTEGER NOT NULL DEFAULT 0,
    estimated_docs       INTEGER NOT NULL DEFAULT 0,
    actual_lines         INTEGER DEFAULT 0,
    actual_tests         INTEGER DEFAULT 0,
    docs_updated         INTEGER DEFAULT 0,
    context_budget       INTEGER NOT NULL,
    context_used         INTEGER DEFAULT 0,
    velocity_score       REAL DEFAULT 0,
    continuing_from      TEXT REFERENCES sessions(id) ON DELETE SET NULL,
    created_at           TEXT NOT NULL,
    updated_at           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_project ON sessions(project_id, start_time DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_status  ON sessions(status, start_time DESC);

-- ── 3. Checkpoints ─────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS checkpoints (
    id                     TEXT PRIMARY KEY,
    session_id             TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    checkpoint_number      INTEGER NOT NULL,
    timestamp              TEXT NOT NULL,
    context_used           INTEGER NOT NULL DEFAULT 0,
    commit_hash            TEXT,
    completed_components_json TEXT NOT NULL DEFAULT '[]',
    metrics_json           TEXT NOT NULL DEFAULT '{}',
    continuation_plan_json TEXT,
    created_at             TEXT NOT NULL,
    UNIQUE(session_id, checkpoint_number)
);

CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON checkpoints(session_id, checkpoint_number);

-- ── 4. Context usage ledger ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS context_usage (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id  TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    phase       TEXT NOT NULL,
    tokens_used INTEGER NOT NULL CHECK(tokens_used >= 0),
    operation   TEXT NOT NULL,
    timestamp   TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_context_usage_session ON context_usage(session_id, timestamp DESC);

-- ── 5. Reality snapshots ───────────────────────────────────────────
CREATE TABLE IF NOT EXISTS reality_snapshots (
    id                   TEXT PRIMARY KEY,
    session_id           TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    timestamp            TEXT NOT NULL,
    check_type           TEXT NOT NULL CHECK(check_type IN ('comprehensive', 'quick', 'specific')),
    discrepancies_json   TEXT NOT NULL DEFAULT '[]',
    confidence_score     REAL NOT NULL,
    recommendations_json TEXT DEFAULT '[]',
    auto_fixed_count     INTEGER DEFAULT 0,
    created_at           TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_reality_snapshots_session ON reality_snapshots(session_id, timestamp DESC);

-- ── 6. Blockers ────────────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS blockers (
    id              TEXT PRIMARY KEY,
    session_id      TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    project_id      TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    type            TEXT NOT NULL CHECK(type IN ('technical', 'context', 'external', 'unclear_requirement')),
    description     TEXT NOT NULL,
    impact_score    INTEGER NOT NULL,
    resolution      TEXT,
    time_to_resolve INTEGER,
    created_at      TEXT NOT NULL,
    resolved_at     TEXT
);

CREATE INDEX IF NOT EXISTS idx_blockers_session ON blockers(session_id);
CREATE INDEX IF NOT EXISTS idx_blockers_project ON blockers(project_id, resolved_at);

-- ── 7. Documentation tracking ──────────────────────────────────────
CREATE TABLE IF NOT EXISTS documentations (
    id            TEXT PRIMARY KEY,
    session_id    TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    doc_type      TEXT NOT NULL CHECK(doc_type IN ('readme', 'api', 'architecture', 'handoff')),
    file_path     TEXT NOT NULL DEFAULT '',
    word_count    INTEGER NOT NULL DEFAULT 0,
    content       TEXT NOT NULL DEFAULT '',
    sections_json TEXT DEFAULT '[]',
    generated_at  TEXT NOT NULL,
    created_at    TEXT NOT NULL,
    updated_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_documentations_session ON documentations(session_id);
CREATE INDEX IF NOT EXISTS idx_documentations_type    ON documentations(doc_type);

-- ── 8. Advisory memory ─────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS agent_memory (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_name    TEXT NOT NULL,
    action_type   TEXT NOT NULL,
    input_context TEXT NOT NULL,
    decision_made TEXT NOT NULL,
    confidence    REAL DEFAULT 1.0,
    worked        INTEGER DEFAULT 1,
    project_id    TEXT,
    session_id    TEXT REFERENCES sessions(id) ON DELETE CASCADE,
    created_at    TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_agent_memory_agent   ON agent_memory(agent_name, project_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_agent_memory_session ON agent_memory(session_id);

CREATE TABLE IF NOT EXISTS symbol_registry (
    id               TEXT PRIMARY KEY,
    concept          TEXT NOT NULL,
    chosen_name      TEXT NOT NULL,
    context_type     TEXT NOT NULL,
    project_id       TEXT NOT NULL REFERENCES projects(id) ON DELETE CASCADE,
    confidence_score REAL DEFAULT 1.0,
    usage_count      INTEGER DEFAULT 1,
    created_by_agent TEXT,
    session_id       TEXT REFERENCES sessions(id) ON DELETE SET NULL,
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    UNIQUE(project_id, concept, chosen_name)
);

CREATE INDEX IF NOT EXISTS idx_symbol_registry_concept ON symbol_registry(project_id, concept);
CREATE INDEX IF NOT EXISTS idx_symbol_registry_name    ON symbol_registry(project_id, chosen_name);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables. Idempotent."""
    try:
        async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
            row = await cur.fetchone()
            current_version = row[0] if row and row[0] else 0
    except aiosqlite.OperationalError:
        current_version = 0

    if current_version >= SCHEMA_VERSION:
        logger.info(f"Schema is up to date (version {current_version})")
        return

    logger.info(f"Running migrations: {current_version} → {SCHEMA_VERSION}")

    await db.executescript(_TABLES)

    # Columns added after the first release.
    await _ensure_column(db, "sessions", "continuing_from", "TEXT REFERENCES sessions(id) ON DELETE SET NULL")
    await _ensure_column(db, "agent_memory", "confidence", "REAL DEFAULT 1.0")
    await _ensure_column(db, "documentations", "content", "TEXT NOT NULL DEFAULT ''")

    await db.execute(
        "INSERT INTO schema_version (version) VALUES (?)",
        (SCHEMA_VERSION,),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
