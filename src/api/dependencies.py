"""FastAPI dependency injection for the evaluation API.

The database connection and the judge are created once at startup and
injected into route handlers via FastAPI's Depends(). Tests install their own
with ``init_dependencies()``.
"""

from __future__ import annotations

import sqlite3

from fastapi import HTTPException

from src.api.metrics import record_judge_call
from src.evals.errors import JudgeError
from src.evals.judge import Judge
from src.schemas.evaluation import CheckVerdict, IdeasVerdict, JudgeVerdict, TrajectoryEntry

# ---------------------------------------------------------------------------
# Judge wrapper
# ---------------------------------------------------------------------------


class MeteredJudge(Judge):
    """Counts every judge call (and its failures) in Prometheus."""

    def __init__(self, inner: Judge) -> None:
        self.inner = inner

    async def score(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
        proposition_id: str | None = None,
    ) -> JudgeVerdict:
        try:
            verdict = await self.inner.score(claim, trajectory, persona, proposition_id)
        except JudgeError:
            record_judge_call("score", "error")
            raise
        record_judge_call("score", "ok")
        return verdict

    async def check(
        self,
        claim: str,
        trajectory: list[TrajectoryEntry],
        persona: str | None = None,
    ) -> CheckVerdict:
        try:
            verdict = await self.inner.check(claim, trajectory, persona)
        except JudgeError:
            record_judge_call("check", "error")
            raise
        record_judge_call("check", "ok")
        return verdict

    async def enumerate_ideas(self, trajectory: list[TrajectoryEntry]) -> IdeasVerdict:
        try:
            verdict = await self.inner.enumerate_ideas(trajectory)
        except JudgeError:
            record_judge_call("enumerate_ideas", "error")
            raise
        record_judge_call("enumerate_ideas", "ok")
        return verdict


# ---------------------------------------------------------------------------
# Singleton instances (initialized in app lifespan)
# ---------------------------------------------------------------------------

_conn: sqlite3.Connection | None = None
_judge: Judge | None = None


def init_dependencies(conn: sqlite3.Connection, judge: Judge) -> None:
    """Initialize shared dependency instances. Called once at app startup."""
    global _conn, _judge
    _conn = conn
    _judge = judge if isinstance(judge, MeteredJudge) else MeteredJudge(judge)


def reset_dependencies() -> sqlite3.Connection | None:
    """Forget the shared instances and hand back the connection for closing."""
    global _conn, _judge
    conn = _conn
    _conn = None
    _judge = None
    return conn


# ---------------------------------------------------------------------------
# FastAPI dependencies
# ---------------------------------------------------------------------------


def get_db() -> sqlite3.Connection:
    """Get the shared SQLite connection."""
    if _conn is None:
        raise HTTPException(status_code=500, detail="Database not initialized")
    return _conn


def get_judge() -> Judge:
    """Get the shared judge instance."""
    if _judge is None:
        raise HTTPException(status_code=500, detail="Judge not initialized")
    return _judge
