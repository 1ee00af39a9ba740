"""Database schema creation and versioning.

All CREATE statements for the canonical store and its full-text index.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("agentlog.db")

SCHEMA_VERSION = 3

_TABLES = """
-- ── Schema version tracking ────────────────────────────────────────
CREATE TABLE IF NOT EXISTS schema_version (
    version   INTEGER NOT NULL,
    applied   TEXT NOT NULL DEFAULT (datetime('now'))
);

-- ── 1. Canonical sessions ──────────────────────────────────────────
CREATE TABLE IF NOT EXISTS sessions (
    id           TEXT PRIMARY KEY,
    source       TEXT NOT NULL,
    external_id  TEXT NOT NULL,
    project      TEXT,
    title        TEXT,
    created_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL,
    artifact     TEXT DEFAULT '',
    raw_payload  TEXT NOT NULL DEFAULT '{}',
    UNIQUE(source, external_id)
);
CREATE INDEX IF NOT EXISTS idx_sessions_updated ON sessions(updated_at DESC);
CREATE INDEX IF NOT EXISTS idx_sessions_source_project ON sessions(source, project);

-- ── 2. Canonical events ────────────────────────────────────────────
CREATE TABLE IF NOT EXISTS events (
    id           TEXT PRIMARY KEY,
    session_id   TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    fingerprint  TEXT NOT NULL UNIQUE,
    seq          INTEGER NOT NULL DEFAULT 0,
    kind         TEXT NOT NULL,
    role         TEXT,
    content      TEXT,
    timestamp    TEXT NOT NULL,
    native_id    TEXT,
    attributes   TEXT NOT NULL DEFAULT '{}',
    raw_payload  TEXT NOT NULL DEFAULT '{}'
);
CREATE INDEX IF NOT EXISTS idx_events_session_order ON events(session_id, timestamp, seq);
CREATE INDEX IF NOT EXISTS idx_events_kind_time ON events(kind, timestamp);

-- ── 3. Full-text index (kept in sync by triggers) ──────────────────
CREATE VIRTUAL TABLE IF NOT EXISTS events_fts USING fts5(
    content,
    content='events',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS events_ai AFTER INSERT ON events BEGIN
    INSERT INTO events_fts(rowid, content) VALUES (new.rowid, COALESCE(new.content, ''));
END;

CREATE TRIGGER IF NOT EXISTS events_ad AFTER DELETE ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, content) VALUES ('delete', old.rowid, COALESCE(old.content, ''));
END;

CREATE TRIGGER IF NOT EXISTS events_au AFTER UPDATE ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, content) VALUES ('delete', old.rowid, COALESCE(old.content, ''));
    INSERT INTO events_fts(rowid, content) VALUES (new.rowid, COALESCE(new.content, ''));
END;

CREATE VIRTUAL TABLE IF NOT EXISTS sessions_fts USING fts5(
    title,
    project,
    content='sessions',
    content_rowid='rowid',
    tokenize='porter unicode61'
);

CREATE TRIGGER IF NOT EXISTS sessions_ai AFTER INSERT ON sessions BEGIN
    INSERT INTO sessions_fts(rowid, title, project)
    VALUES (new.rowid, COALESCE(new.title, ''), COALESCE(new.project, ''));
END;

CREATE TRIGGER IF NOT EXISTS sessions_ad AFTER DELETE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, title, project)
    VALUES ('delete', old.rowid, COALESCE(old.title, ''), COALESCE(old.project, ''));
END;

CREATE TRIGGER IF NOT EXISTS sessions_au AFTER UPDATE ON sessions BEGIN
    INSERT INTO sessions_fts(sessions_fts, rowid, title, project)
    VALUES ('delete', old.rowid, COALESCE(old.title, ''), COALESCE(old.project, ''));
    INSERT INTO sessions_fts(rowid, title, project)
    VALUES (new.rowid, COALESCE(new.title, ''), COALESCE(new.project, ''));
END;

-- ── 4. Derived per-session metrics ─────────────────────────────────
CREATE TABLE IF NOT EXISTS session_metrics (
    session_id          TEXT PRIMARY KEY REFERENCES sessions(id) ON DELETE CASCADE,
    total_events        INTEGER DEFAULT 0,
    message_count       INTEGER DEFAULT 0,
    tool_call_count     INTEGER DEFAULT 0,
    tool_result_count   INTEGER DEFAULT 0,
    error_count         INTEGER DEFAULT 0,
    system_count        INTEGER DEFAULT 0,
    user_messages       INTEGER DEFAULT 0,
    assistant_messages  INTEGER DEFAULT 0,
    duration_seconds    REAL DEFAULT 0,
    files_touched       INTEGER DEFAULT 0,
    lines_added         INTEGER DEFAULT 0,
    lines_removed       INTEGER DEFAULT 0,
    model               TEXT,
    provider            TEXT,
    input_tokens        INTEGER DEFAULT 0,
    output_tokens       INTEGER DEFAULT 0,
    tokens_estimated    INTEGER DEFAULT 0,
    estimated_cost      REAL,
    total_latency_ms    INTEGER DEFAULT 0,
    avg_latency_ms      REAL,
    p50_latency_ms      INTEGER,
    p95_latency_ms      INTEGER,
    computed_at         TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS tool_calls (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id     TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    event_id       TEXT NOT NULL,
    tool_name      TEXT NOT NULL,
    call_id        TEXT,
    started_at     TEXT NOT NULL,
    completed_at   TEXT,
    duration_ms    INTEGER,
    success        INTEGER,
    error_message  TEXT
);
CREATE INDEX IF NOT EXISTS idx_tool_calls_session ON tool_calls(session_id);
CREATE INDEX IF NOT EXISTS idx_tool_calls_name ON tool_calls(tool_name);

CREATE TABLE IF NOT EXISTS files_touched (
    id             INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id     TEXT NOT NULL REFERENCES sessions(id) ON DELETE CASCADE,
    event_id       TEXT NOT NULL,
    file_path      TEXT NOT NULL,
    operation      TEXT NOT NULL,
    lines_added    INTEGER DEFAULT 0,
    lines_removed  INTEGER DEFAULT 0,
    touched_at     TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_files_touched_session ON files_touched(session_id);
CREATE INDEX IF NOT EXISTS idx_files_touched_path ON files_touched(file_path);

-- ── 5. Ingest checkpoints (incremental change detection) ───────────
CREATE TABLE IF NOT EXISTS ingest_checkpoints (
    source            TEXT NOT NULL,
    artifact          TEXT NOT NULL,
    change_marker     TEXT NOT NULL,
    cursor            TEXT DEFAULT '',
    session_id        TEXT,
    last_ingested_at  TEXT NOT NULL,
    parse_ms          INTEGER DEFAULT 0,
    PRIMARY KEY (source, artifact)
);
"""


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    return any(row[1] == column for row in rows)


async def _ensure_column(db: aiosqlite.Connection, table: str, column: str, definition: str) -> None:
    if await _column_exists(db, table, column):
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {definition}")


async def _ensure_index(db: aiosqlite.Connection, ddl: str) -> None:
    await db.execute(ddl)


async def _current_version(db: aiosqlite.Connection) -> int:
    async with db.execute("SELECT MAX(version) FROM schema_version") as cur:
        row = await cur.fetchone()
    return int(row[0] or 0) if row else 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create or upgrade the schema to ``SCHEMA_VERSION``."""
    await db.executescript(_TABLES)

    # Columns added after the first schema revision.
    await _ensure_column(db, "sessions", "artifact", "TEXT DEFAULT ''")
    await _ensure_column(db, "session_metrics", "system_count", "INTEGER DEFAULT 0")
    await _ensure_column(db, "session_metrics", "tokens_estimated", "INTEGER DEFAULT 0")
    await _ensure_column(db, "tool_calls", "call_id", "TEXT")

    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_events_native ON events(session_id, native_id)")
    await _ensure_index(db, "CREATE INDEX IF NOT EXISTS idx_checkpoints_session ON ingest_checkpoints(session_id)")

    if await _current_version(db) < SCHEMA_VERSION:
        await db.execute(
            "INSERT INTO schema_version (version) VALUES (?)",
            (SCHEMA_VERSION,),
        )
    await db.commit()
    logger.info(f"Migrations complete: schema version {SCHEMA_VERSION}")
