"""Persona adherence: does the agent behave like its character?"""

from __future__ import annotations

import sqlite3

import structlog

from src.config import get_agent_settings
from src.evals.judge import Judge
from src.evals.propositions import load_propositions
from src.evals.scorers.base import (
    ScorerOptions,
    actions,
    apply_window,
    default_template_vars,
    persona_for,
    record_run,
    require_agent,
    sample_messages,
)
from src.persistence import repository as repo
from src.schemas.evaluation import ScoreResult

logger = structlog.get_logger(__name__)


async def score_adherence(
    conn: sqlite3.Connection,
    agent_id: str,
    judge: Judge,
    options: ScorerOptions | None = None,
) -> ScoreResult:
    """Score an agent's sampled messages against its adherence propositions.

    The message history is trimmed to the proposition set's first/last window,
    then randomly sampled down to ``[scoring].max_sample_size`` messages.
    """
    options = options or ScorerOptions()
    agent = require_agent(conn, agent_id)
    cfg = get_agent_settings().scoring

    prop_set = load_propositions(
        "adherence", agent_id, default_template_vars(agent, options.template_vars)
    )
    messages = repo.get_agent_messages(conn, agent_id, options.window)
    messages = apply_window(
        messages,
        prop_set.first_n if prop_set.first_n is not None else cfg.first_n,
        prop_set.last_n if prop_set.last_n is not None else cfg.last_n,
    )
    sampled = sample_messages(messages, cfg.max_sample_size, options.rng)
    logger.info("adherence_sampled", agent_id=agent_id, available=len(messages), sampled=len(sampled))

    return await record_run(
        conn,
        judge,
        dimension="adherence",
        prop_set=prop_set,
        trajectory=actions(sampled, agent["display_name"]),
        sample_size=len(sampled),
        result_cls=ScoreResult,
        agent_id=agent_id,
        persona=persona_for(prop_set, agent),
        options=options,
    )
