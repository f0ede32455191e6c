"""Ideas quantity: how many distinct ideas did a channel produce?

Not a 0-9 score. The judge enumerates the ideas; the run is persisted for
auditability with a single ``enumerate-ideas`` score row (score = count,
reasoning = JSON idea list) and ``overall_score`` stored as NULL.
"""

from __future__ import annotations

import json
import sqlite3

import structlog

from src.config import get_agent_settings
from src.evals.judge import Judge
from src.evals.scorers.base import ScorerOptions, require_channel
from src.evals.scorers.convergence import channel_trajectory
from src.persistence import repository as repo
from src.schemas.evaluation import IdeasResult, TimeWindow, TokenUsage

logger = structlog.get_logger(__name__)

IDEAS_PROPOSITION_ID = "enumerate-ideas"


async def score_ideas_quantity(
    conn: sqlite3.Connection,
    channel_id: str,
    judge: Judge,
    options: ScorerOptions | None = None,
    agent_id: str | None = None,
) -> IdeasResult:
    """Count the distinct ideas in a channel's recent messages (default: last 7 days)."""
    options = options or ScorerOptions()
    require_channel(conn, channel_id)
    window = options.window or TimeWindow.last_days(get_agent_settings().scoring.recent_days)
    messages = repo.get_channel_messages(conn, channel_id, window)

    run_id = repo.create_evaluation_run(
        conn,
        dimensions=["ideas_quantity"],
        agent_id=agent_id,
        channel_id=channel_id,
        is_baseline=options.is_baseline,
    )
    repo.start_evaluation_run(conn, run_id)

    if not messages:
        repo.complete_evaluation_run(conn, run_id, None, 0, TokenUsage())
        logger.info("evaluation_insufficient_data", run_id=run_id, dimension="ideas_quantity")
        return IdeasResult(evaluation_run_id=run_id, dimension="ideas_quantity")

    try:
        verdict = await judge.enumerate_ideas(channel_trajectory(conn, messages))
        count = max(verdict.count, len(verdict.ideas))
        repo.save_count_score(
            conn,
            run_id,
            "ideas_quantity",
            IDEAS_PROPOSITION_ID,
            count,
            json.dumps([idea.model_dump() for idea in verdict.ideas]),
        )
        repo.complete_evaluation_run(conn, run_id, None, len(messages), verdict.token_usage)
    except Exception as exc:
        repo.fail_evaluation_run(conn, run_id, str(exc), len(messages))
        raise

    logger.info("ideas_enumerated", run_id=run_id, channel_id=channel_id, count=count)
    return IdeasResult(
        evaluation_run_id=run_id,
        dimension="ideas_quantity",
        overall_score=None,
        sample_size=len(messages),
        token_usage=verdict.token_usage,
        count=count,
        ideas=verdict.ideas,
    )
