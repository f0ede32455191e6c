"""Linguistic fluency, with n-gram repetition statistics as supplementary evidence.

The repetition stats are shown to the judge and returned to the caller, but
they never enter the weighted aggregate.
"""

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
from src.evals.text_stats import corpus_repetition
from src.persistence import repository as repo
from src.schemas.evaluation import FluencyResult, NgramStats, TimeWindow, TrajectoryEntry

logger = structlog.get_logger(__name__)


def compute_ngram_stats(texts: list[str]) -> NgramStats:
    return NgramStats(
        trigram=corpus_repetition(texts, 3),
        fivegram=corpus_repetition(texts, 5),
    )


def supplementary_evidence(stats: NgramStats) -> TrajectoryEntry:
    return TrajectoryEntry(
        kind="stimulus",
        agent_name="system",
        text=(
            "[Supplementary Evidence] N-gram repetition analysis: "
            f"3-gram repetition: {stats.trigram:.2f}, "
            f"5-gram repetition: {stats.fivegram:.2f}"
        ),
    )


async def score_fluency(
    conn: sqlite3.Connection,
    agent_id: str,
    judge: Judge,
    options: ScorerOptions | None = None,
) -> FluencyResult:
    """Score an agent's recent messages (default: last 7 days) for fluency."""
    options = options or ScorerOptions()
    agent = require_agent(conn, agent_id)
    cfg = get_agent_settings().scoring
    window = options.window or TimeWindow.last_days(cfg.recent_days)

    prop_set = load_propositions(
        "fluency", agent_id, default_template_vars(agent, options.template_vars)
    )
    messages = apply_window(
        repo.get_agent_messages(conn, agent_id, window), prop_set.first_n, prop_set.last_n
    )
    sampled = sample_messages(messages, cfg.max_sample_size, options.rng)
    stats = compute_ngram_stats([m.text for m in sampled])
    logger.debug("fluency_ngram_stats", agent_id=agent_id, trigram=stats.trigram, fivegram=stats.fivegram)

    trajectory = actions(sampled, agent["display_name"])
    if sampled:
        trajectory.append(supplementary_evidence(stats))

    return await record_run(
        conn,
        judge,
        dimension="fluency",
        prop_set=prop_set,
        trajectory=trajectory,
        sample_size=len(sampled),
        result_cls=FluencyResult,
        agent_id=agent_id,
        persona=persona_for(prop_set, agent),
        options=options,
        ngram_stats=stats,
    )
