"""SQLite persistence for evaluation runs, scores, audit logs and agent policy.

The conversation store tables (agents, channels, channel_members, messages)
are owned by the surrounding chat app; they are declared here so the
pipeline, the CLI and the tests can run against a single database file.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path

import structlog

logger = structlog.get_logger(__name__)

DB_PATH = Path("data/evaluation.db")

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS agents (
    id              TEXT PRIMARY KEY,
    display_name    TEXT NOT NULL,
    persona         TEXT NOT NULL DEFAULT '',
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channels (
    id              TEXT PRIMARY KEY,
    name            TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS channel_members (
    channel_id      TEXT NOT NULL REFERENCES channels(id) ON DELETE CASCADE,
    agent_id        TEXT NOT NULL REFERENCES agents(id) ON DELETE CASCADE,
    PRIMARY KEY (channel_id, agent_id)
);

CREATE TABLE IF NOT EXISTS messages (
    id              TEXT PRIMARY KEY,
    channel_id      TEXT REFERENCES channels(id) ON DELETE CASCADE,
    user_id         TEXT NOT NULL,
    text            TEXT NOT NULL,
    created_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_user_created
    ON messages (user_id, created_at);
CREATE INDEX IF NOT EXISTS idx_messages_channel_created
    ON messages (channel_id, created_at);

CREATE TABLE IF NOT EXISTS evaluation_runs (
    id              TEXT PRIMARY KEY,
    agent_id        TEXT,
    channel_id      TEXT,
    status          TEXT NOT NULL DEFAULT 'pending',
    dimensions      TEXT NOT NULL DEFAULT '[]',
    sample_size     INTEGER NOT NULL DEFAULT 0,
    overall_score   REAL,
    is_baseline     INTEGER NOT NULL DEFAULT 0,
    input_tokens    INTEGER NOT NULL DEFAULT 0,
    output_tokens   INTEGER NOT NULL DEFAULT 0,
    error           TEXT,
    created_at      TEXT NOT NULL,
    completed_at    TEXT
);

CREATE TABLE IF NOT EXISTS evaluation_scores (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    evaluation_run_id   TEXT NOT NULL REFERENCES evaluation_runs(id) ON DELETE CASCADE,
    dimension           TEXT NOT NULL,
    proposition_id      TEXT NOT NULL,
    score               REAL NOT NULL,
    reasoning           TEXT NOT NULL DEFAULT '',
    context_snippet     TEXT,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS correction_logs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id            TEXT NOT NULL,
    run_id              TEXT,
    channel_id          TEXT,
    original_text       TEXT NOT NULL,
    final_text          TEXT,
    stage               TEXT NOT NULL,
    attempt_number      INTEGER NOT NULL,
    outcome             TEXT NOT NULL,
    dimension_scores    TEXT NOT NULL DEFAULT '[]',
    similarity_score    REAL,
    total_score         REAL,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    duration_ms         INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS intervention_logs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    agent_id            TEXT NOT NULL,
    channel_id          TEXT,
    intervention_type   TEXT NOT NULL,
    textual_claim       TEXT,
    textual_result      INTEGER,
    functional_result   INTEGER,
    propositional_result INTEGER,
    fired               INTEGER NOT NULL DEFAULT 0,
    nudge_text          TEXT,
    input_tokens        INTEGER NOT NULL DEFAULT 0,
    output_tokens       INTEGER NOT NULL DEFAULT 0,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS agent_evaluation_config (
    agent_id        TEXT PRIMARY KEY,
    config          TEXT NOT NULL,
    updated_at      TEXT NOT NULL
);
"""


# ---------------------------------------------------------------------------
# Connection factory
# ---------------------------------------------------------------------------


def get_connection(db_path: str | Path | None = None) -> sqlite3.Connection:
    """Get or create a SQLite connection. Auto-creates tables on first use.

    ``":memory:"`` is accepted for throwaway databases.
    """
    if str(db_path) == ":memory:":
        conn = sqlite3.connect(":memory:", check_same_thread=False)
    else:
        path = Path(db_path) if db_path else DB_PATH
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(str(path), check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL")
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys=ON")
    _ensure_tables(conn)
    return conn


def _ensure_tables(conn: sqlite3.Connection) -> None:
    """Create tables if they don't exist. Runs migrations for schema changes."""
    conn.executescript(SCHEMA_SQL)
    # Migration: error column was added after the first release
    columns = {
        row[1] for row in conn.execute("PRAGMA table_info(evaluation_runs)").fetchall()
    }
    if "error" not in columns:
        conn.execute("ALTER TABLE evaluation_runs ADD COLUMN error TEXT")
    conn.commit()
    logger.debug("sqlite_tables_ensured")
