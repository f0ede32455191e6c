"""Repository functions for evaluation persistence.

Each function takes a sqlite3.Connection and performs a single operation.
Connections are opened/closed by callers (CLI, API lifespan or tests).
sqlite3 errors surface as PersistenceError.
"""

from __future__ import annotations

import json
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

import structlog

from src.evals.errors import PersistenceError
from src.schemas.evaluation import (
    CorrectionLog,
    DimensionScore,
    EvaluationRun,
    InterventionLog,
    Message,
    PropositionResult,
    TimeWindow,
    TokenUsage,
)

logger = structlog.get_logger(__name__)


def _now() -> str:
    """Return current UTC time in ISO 8601 format."""
    return datetime.now(timezone.utc).isoformat()


def _iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def _new_id() -> str:
    return uuid.uuid4().hex


@contextmanager
def _storage(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as exc:
        logger.error("persistence_failed", operation=operation, error=str(exc))
        raise PersistenceError(f"{operation} failed: {exc}") from exc


def _window_clause(column: str, window: TimeWindow | None) -> tuple[str, list]:
    clauses: list[str] = []
    params: list = []
    if window is not None and window.start is not None:
        clauses.append(f"{column} >= ?")
        params.append(_iso(window.start))
    if window is not None and window.end is not None:
        clauses.append(f"{column} < ?")
        params.append(_iso(window.end))
    return "".join(f" AND {c}" for c in clauses), params


# ---------------------------------------------------------------------------
# Conversation store (agents, channels, messages)
# ---------------------------------------------------------------------------


def upsert_agent(
    conn: sqlite3.Connection,
    agent_id: str,
    display_name: str,
    persona: str = "",
) -> None:
    with _storage("upsert_agent"):
        conn.execute(
            """INSERT INTO agents (id, display_name, persona, created_at)
               VALUES (?, ?, ?, ?)
               ON CONFLICT(id) DO UPDATE SET
                   display_name = excluded.display_name,
                   persona = excluded.persona""",
            (agent_id, display_name, persona, _now()),
        )
        conn.commit()


def get_agent(conn: sqlite3.Connection, agent_id: str) -> dict | None:
    with _storage("get_agent"):
        row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
    return dict(row) if row else None


def list_agent_ids(conn: sqlite3.Connection) -> list[str]:
    with _storage("list_agent_ids"):
        rows = conn.execute("SELECT id FROM agents ORDER BY id").fetchall()
    return [row["id"] for row in rows]


def create_channel(
    conn: sqlite3.Connection,
    channel_id: str,
    name: str,
    member_ids: list[str] | None = None,
) -> None:
    with _storage("create_channel"):
        conn.execute(
            "INSERT OR IGNORE INTO channels (id, name, created_at) VALUES (?, ?, ?)",
            (channel_id, name, _now()),
        )
        for agent_id in member_ids or []:
            conn.execute(
                "INSERT OR IGNORE INTO channel_members (channel_id, agent_id) VALUES (?, ?)",
                (channel_id, agent_id),
            )
        conn.commit()


def get_channel(conn: sqlite3.Connection, channel_id: str) -> dict | None:
    with _storage("get_channel"):
        row = conn.execute("SELECT * FROM channels WHERE id = ?", (channel_id,)).fetchone()
    return dict(row) if row else None


def get_agent_channel_ids(conn: sqlite3.Connection, agent_id: str) -> list[str]:
    with _storage("get_agent_channel_ids"):
        rows = conn.execute(
            "SELECT channel_id FROM channel_members WHERE agent_id = ? ORDER BY channel_id",
            (agent_id,),
        ).fetchall()
    return [row["channel_id"] for row in rows]


def add_message(
    conn: sqlite3.Connection,
    user_id: str,
    text: str,
    channel_id: str | None = None,
    created_at: datetime | None = None,
    message_id: str | None = None,
) -> str:
    """Append a chat message. Returns the message id."""
    message_id = message_id or _new_id()
    stamp = _iso(created_at) if created_at else _now()
    with _storage("add_message"):
        conn.execute(
            """INSERT INTO messages (id, channel_id, user_id, text, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (message_id, channel_id, user_id, text, stamp),
        )
        conn.commit()
    return message_id


def _to_message(row: sqlite3.Row) -> Message:
    return Message(
        id=row["id"],
        channel_id=row["channel_id"],
        user_id=row["user_id"],
        text=row["text"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


def get_agent_messages(
    conn: sqlite3.Connection,
    agent_id: str,
    window: TimeWindow | None = None,
) -> list[Message]:
    """Messages authored by an agent, oldest first."""
    extra, params = _window_clause("created_at", window)
    with _storage("get_agent_messages"):
        rows = conn.execute(
            f"SELECT * FROM messages WHERE user_id = ?{extra} ORDER BY created_at",
            [agent_id, *params],
        ).fetchall()
    return [_to_message(r) for r in rows]


def get_channel_messages(
    conn: sqlite3.Connection,
    channel_id: str,
    window: TimeWindow | None = None,
) -> list[Message]:
    """Messages posted in a channel, oldest first."""
    extra, params = _window_clause("created_at", window)
    with _storage("get_channel_messages"):
        rows = conn.execute(
            f"SELECT * FROM messages WHERE channel_id = ?{extra} ORDER BY created_at",
            [channel_id, *params],
        ).fetchall()
    return [_to_message(r) for r in rows]


def get_recent_agent_messages(
    conn: sqlite3.Connection,
    agent_id: str,
    limit: int,
    channel_id: str | None = None,
) -> list[Message]:
    """The agent's ``limit`` most recent messages, oldest first."""
    query = "SELECT * FROM messages WHERE user_id = ?"
    params: list = [agent_id]
    if channel_id is not None:
        query += " AND channel_id = ?"
        params.append(channel_id)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    with _storage("get_recent_agent_messages"):
        rows = conn.execute(query, params).fetchall()
    return [_to_message(r) for r in reversed(rows)]


# ---------------------------------------------------------------------------
# Evaluation runs and scores
# ---------------------------------------------------------------------------


def create_evaluation_run(
    conn: sqlite3.Connection,
    dimensions: list[str],
    agent_id: str | None = None,
    channel_id: str | None = None,
    is_baseline: bool = False,
    run_id: str | None = None,
) -> str:
    """Create a pending evaluation run. Returns run_id."""
    run_id = run_id or _new_id()
    with _storage("create_evaluation_run"):
        conn.execute(
            """INSERT INTO evaluation_runs (id, agent_id, channel_id, status,
               dimensions, is_baseline, created_at)
               VALUES (?, ?, ?, 'pending', ?, ?, ?)""",
            (run_id, agent_id, channel_id, json.dumps(dimensions), int(is_baseline), _now()),
        )
        conn.commit()
    logger.info("evaluation_run_created", run_id=run_id, agent_id=agent_id,
                channel_id=channel_id, dimensions=dimensions)
    return run_id


def start_evaluation_run(conn: sqlite3.Connection, run_id: str) -> None:
    with _storage("start_evaluation_run"):
        conn.execute(
            "UPDATE evaluation_runs SET status = 'running' WHERE id = ? AND status = 'pending'",
            (run_id,),
        )
        conn.commit()


def complete_evaluation_run(
    conn: sqlite3.Connection,
    run_id: str,
    overall_score: float | None,
    sample_size: int,
    token_usage: TokenUsage,
) -> None:
    """Mark a running run completed. Completed runs are never updated again."""
    with _storage("complete_evaluation_run"):
        conn.execute(
            """UPDATE evaluation_runs
               SET status = 'completed', overall_score = ?, sample_size = ?,
                   input_tokens = ?, output_tokens = ?, completed_at = ?
               WHERE id = ? AND status IN ('pending', 'running')""",
            (overall_score, sample_size, token_usage.input_tokens,
             token_usage.output_tokens, _now(), run_id),
        )
        conn.commit()
    logger.info("evaluation_run_completed", run_id=run_id,
                overall_score=overall_score, sample_size=sample_size)


def fail_evaluation_run(
    conn: sqlite3.Connection,
    run_id: str,
    error: str,
    sample_size: int = 0,
    token_usage: TokenUsage | None = None,
) -> None:
    token_usage = token_usage or TokenUsage()
    with _storage("fail_evaluation_run"):
        conn.execute(
            """UPDATE evaluation_runs
               SET status = 'failed', error = ?, sample_size = ?,
                   input_tokens = ?, output_tokens = ?, completed_at = ?
               WHERE id = ? AND status IN ('pending', 'running')""",
            (error, sample_size, token_usage.input_tokens,
             token_usage.output_tokens, _now(), run_id),
        )
        conn.commit()
    logger.warning("evaluation_run_failed", run_id=run_id, error=error)


def save_evaluation_scores(
    conn: sqlite3.Connection,
    run_id: str,
    dimension: str,
    results: list[PropositionResult],
) -> None:
    """Append one score row per proposition result."""
    stamp = _now()
    with _storage("save_evaluation_scores"):
        conn.executemany(
            """INSERT INTO evaluation_scores (evaluation_run_id, dimension,
               proposition_id, score, reasoning, context_snippet, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            [
                (run_id, dimension, r.proposition_id, r.score, r.reasoning,
                 r.context_snippet, stamp)
                for r in results
            ],
        )
        conn.commit()


def save_count_score(
    conn: sqlite3.Connection,
    run_id: str,
    dimension: str,
    proposition_id: str,
    count: int,
    reasoning: str,
) -> None:
    """Append a count-valued score row (not bounded to the 0..9 scale)."""
    with _storage("save_count_score"):
        conn.execute(
            """INSERT INTO evaluation_scores (evaluation_run_id, dimension,
               proposition_id, score, reasoning, created_at)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (run_id, dimension, proposition_id, float(count), reasoning, _now()),
        )
        conn.commit()


def _to_run(row: sqlite3.Row) -> EvaluationRun:
    return EvaluationRun(
        id=row["id"],
        agent_id=row["agent_id"],
        channel_id=row["channel_id"],
        status=row["status"],
        dimensions=json.loads(row["dimensions"]),
        sample_size=row["sample_size"],
        overall_score=row["overall_score"],
        is_baseline=bool(row["is_baseline"]),
        token_usage=TokenUsage(
            input_tokens=row["input_tokens"], output_tokens=row["output_tokens"]
        ),
        created_at=row["created_at"],
        completed_at=row["completed_at"],
    )


def get_evaluation_run(conn: sqlite3.Connection, run_id: str) -> EvaluationRun | None:
    with _storage("get_evaluation_run"):
        row = conn.execute("SELECT * FROM evaluation_runs WHERE id = ?", (run_id,)).fetchone()
    return _to_run(row) if row else None


def get_evaluation_scores(conn: sqlite3.Connection, run_id: str) -> list[dict]:
    with _storage("get_evaluation_scores"):
        rows = conn.execute(
            """SELECT dimension, proposition_id, score, reasoning, context_snippet
               FROM evaluation_scores WHERE evaluation_run_id = ? ORDER BY id""",
            (run_id,),
        ).fetchall()
    return [dict(r) for r in rows]


def list_evaluation_runs(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    limit: int = 50,
) -> list[EvaluationRun]:
    query = "SELECT * FROM evaluation_runs"
    params: list = []
    if agent_id is not None:
        query += " WHERE agent_id = ?"
        params.append(agent_id)
    query += " ORDER BY created_at DESC LIMIT ?"
    params.append(limit)
    with _storage("list_evaluation_runs"):
        rows = conn.execute(query, params).fetchall()
    return [_to_run(r) for r in rows]


def delete_evaluation_run(conn: sqlite3.Connection, run_id: str) -> bool:
    """Delete a run and (via cascade) its scores. Returns True if it existed."""
    with _storage("delete_evaluation_run"):
        cur = conn.execute("DELETE FROM evaluation_runs WHERE id = ?", (run_id,))
        conn.commit()
    return cur.rowcount > 0


def clear_baseline_runs(conn: sqlite3.Connection, agent_id: str) -> int:
    with _storage("clear_baseline_runs"):
        cur = conn.execute(
            "DELETE FROM evaluation_runs WHERE agent_id = ? AND is_baseline = 1",
            (agent_id,),
        )
        conn.commit()
    logger.info("baseline_runs_cleared", agent_id=agent_id, deleted=cur.rowcount)
    return cur.rowcount


def get_baseline_runs(conn: sqlite3.Connection, agent_id: str | None = None) -> list[EvaluationRun]:
    """Completed baseline runs, newest first."""
    query = "SELECT * FROM evaluation_runs WHERE is_baseline = 1 AND status = 'completed'"
    params: list = []
    if agent_id is not None:
        query += " AND agent_id = ?"
        params.append(agent_id)
    query += " ORDER BY created_at DESC"
    with _storage("get_baseline_runs"):
        rows = conn.execute(query, params).fetchall()
    return [_to_run(r) for r in rows]


# ---------------------------------------------------------------------------
# Correction and intervention logs (append-only)
# ---------------------------------------------------------------------------


def save_correction_log(conn: sqlite3.Connection, log: CorrectionLog) -> int:
    with _storage("save_correction_log"):
        cur = conn.execute(
            """INSERT INTO correction_logs (agent_id, run_id, channel_id,
               original_text, final_text, stage, attempt_number, outcome,
               dimension_scores, similarity_score, total_score, input_tokens,
               output_tokens, duration_ms, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                log.agent_id, log.run_id, log.channel_id, log.original_text,
                log.final_text, log.stage, log.attempt_number, log.outcome,
                json.dumps([d.model_dump() for d in log.dimension_scores]),
                log.similarity_score, log.total_score,
                log.token_usage.input_tokens, log.token_usage.output_tokens,
                log.duration_ms, log.created_at or _now(),
            ),
        )
        conn.commit()
    logger.debug("correction_logged", agent_id=log.agent_id, stage=log.stage,
                 attempt=log.attempt_number, outcome=log.outcome)
    return cur.lastrowid


def _log_filter(
    agent_id: str | None,
    start: datetime | None,
    end: datetime | None,
) -> tuple[str, list]:
    clauses = ["1 = 1"]
    params: list = []
    if agent_id is not None:
        clauses.append("agent_id = ?")
        params.append(agent_id)
    if start is not None:
        clauses.append("created_at >= ?")
        params.append(_iso(start))
    if end is not None:
        clauses.append("created_at <= ?")
        params.append(_iso(end))
    return " AND ".join(clauses), params


def list_correction_logs(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[CorrectionLog]:
    where, params = _log_filter(agent_id, start, end)
    with _storage("list_correction_logs"):
        rows = conn.execute(
            f"SELECT * FROM correction_logs WHERE {where} ORDER BY id", params
        ).fetchall()
    return [
        CorrectionLog(
            agent_id=r["agent_id"],
            run_id=r["run_id"],
            channel_id=r["channel_id"],
            original_text=r["original_text"],
            final_text=r["final_text"],
            stage=r["stage"],
            attempt_number=r["attempt_number"],
            outcome=r["outcome"],
            dimension_scores=[DimensionScore(**d) for d in json.loads(r["dimension_scores"])],
            similarity_score=r["similarity_score"],
            total_score=r["total_score"],
            token_usage=TokenUsage(
                input_tokens=r["input_tokens"], output_tokens=r["output_tokens"]
            ),
            duration_ms=r["duration_ms"],
            created_at=r["created_at"],
        )
        for r in rows
    ]


def _opt_bool(value: bool | None) -> int | None:
    return None if value is None else int(value)


def _read_bool(value: int | None) -> bool | None:
    return None if value is None else bool(value)


def save_intervention_log(conn: sqlite3.Connection, log: InterventionLog) -> int:
    with _storage("save_intervention_log"):
        cur = conn.execute(
            """INSERT INTO intervention_logs (agent_id, channel_id,
               intervention_type, textual_claim, textual_result,
               functional_result, propositional_result, fired, nudge_text,
               input_tokens, output_tokens, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                log.agent_id, log.channel_id, log.intervention_type,
                log.textual_claim, _opt_bool(log.textual_result),
                _opt_bool(log.functional_result),
                _opt_bool(log.propositional_result), int(log.fired),
                log.nudge_text, log.token_usage.input_tokens,
                log.token_usage.output_tokens, log.created_at or _now(),
            ),
        )
        conn.commit()
    return cur.lastrowid


def list_intervention_logs(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> list[InterventionLog]:
    where, params = _log_filter(agent_id, start, end)
    with _storage("list_intervention_logs"):
        rows = conn.execute(
            f"SELECT * FROM intervention_logs WHERE {where} ORDER BY id", params
        ).fetchall()
    return [
        InterventionLog(
            agent_id=r["agent_id"],
            channel_id=r["channel_id"],
            intervention_type=r["intervention_type"],
            textual_claim=r["textual_claim"],
            textual_result=_read_bool(r["textual_result"]),
            functional_result=_read_bool(r["functional_result"]),
            propositional_result=_read_bool(r["propositional_result"]),
            fired=bool(r["fired"]),
            nudge_text=r["nudge_text"],
            token_usage=TokenUsage(
                input_tokens=r["input_tokens"], output_tokens=r["output_tokens"]
            ),
            created_at=r["created_at"],
        )
        for r in rows
    ]


def sum_log_tokens(
    conn: sqlite3.Connection,
    table: str,
    agent_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> TokenUsage:
    """Total token usage over ``correction_logs`` or ``intervention_logs``."""
    if table not in ("correction_logs", "intervention_logs"):
        raise ValueError(f"Not a log table: {table}")
    where, params = _log_filter(agent_id, start, end)
    with _storage("sum_log_tokens"):
        row = conn.execute(
            f"""SELECT COALESCE(SUM(input_tokens), 0) AS input_tokens,
                       COALESCE(SUM(output_tokens), 0) AS output_tokens
                FROM {table} WHERE {where}""",
            params,
        ).fetchone()
    return TokenUsage(input_tokens=row["input_tokens"], output_tokens=row["output_tokens"])


# ---------------------------------------------------------------------------
# Per-agent evaluation config
# ---------------------------------------------------------------------------


def get_agent_eval_config(conn: sqlite3.Connection, agent_id: str) -> dict | None:
    with _storage("get_agent_eval_config"):
        row = conn.execute(
            "SELECT config FROM agent_evaluation_config WHERE agent_id = ?", (agent_id,)
        ).fetchone()
    return json.loads(row["config"]) if row else None


def upsert_agent_eval_config(conn: sqlite3.Connection, agent_id: str, config: dict) -> None:
    with _storage("upsert_agent_eval_config"):
        conn.execute(
            """INSERT INTO agent_evaluation_config (agent_id, config, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(agent_id) DO UPDATE SET
                   config = excluded.config, updated_at = excluded.updated_at""",
            (agent_id, json.dumps(config), _now()),
        )
        conn.commit()
    logger.info("agent_eval_config_updated", agent_id=agent_id)
