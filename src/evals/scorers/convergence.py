"""Channel-level convergence: are the agents starting to sound (and think) alike?"""

from __future__ import annotations

import sqlite3
from collections import defaultdict

import structlog

from src.config import get_agent_settings
from src.evals.judge import Judge
from src.evals.propositions import load_propositions
from src.evals.scorers.base import (
    ScorerOptions,
    apply_window,
    record_run,
    require_channel,
)
from src.evals.text_stats import pairwise_similarity, vocabulary_stats
from src.persistence import repository as repo
from src.schemas.evaluation import (
    ConvergenceResult,
    Message,
    TimeWindow,
    TrajectoryEntry,
    VocabularyStats,
)

logger = structlog.get_logger(__name__)


def channel_trajectory(conn: sqlite3.Connection, messages: list[Message]) -> list[TrajectoryEntry]:
    """Every message as an action by its author (display name when known)."""
    names: dict[str, str] = {}
    for msg in messages:
        if msg.user_id not in names:
            agent = repo.get_agent(conn, msg.user_id)
            names[msg.user_id] = agent["display_name"] if agent else msg.user_id
    return [
        TrajectoryEntry(kind="action", agent_name=names[m.user_id], text=m.text) for m in messages
    ]


def _evidence_text(stats: dict[str, VocabularyStats], similarity: dict[str, float]) -> str:
    lines = ["[Supplementary Evidence] Vocabulary analysis per agent:"]
    for agent_id, s in sorted(stats.items()):
        lines.append(
            f"- {agent_id}: unique word ratio {s.unique_word_ratio:.2f}, "
            f"avg sentence length {s.avg_sentence_length:.1f}, "
            f"punctuation density {s.punctuation_density:.3f}"
        )
    if similarity:
        lines.append("Pairwise vocabulary overlap (Jaccard):")
        lines.extend(f"- {pair}: {value:.2f}" for pair, value in sorted(similarity.items()))
    return "\n".join(lines)


async def score_convergence(
    conn: sqlite3.Connection,
    channel_id: str,
    judge: Judge,
    options: ScorerOptions | None = None,
    agent_id: str | None = None,
) -> ConvergenceResult:
    """Score a channel's recent messages (default: last 7 days) for convergence.

    ``agent_id`` optionally attributes the run to an agent (baseline capture).

    Needs at least two distinct speakers; otherwise the run completes with
    ``overall_score=None``.
    """
    options = options or ScorerOptions()
    channel = require_channel(conn, channel_id)
    cfg = get_agent_settings().scoring
    window = options.window or TimeWindow.last_days(cfg.recent_days)

    template_vars = {"channel_name": channel["name"], **options.template_vars}
    prop_set = load_propositions("convergence", None, template_vars)
    messages = apply_window(
        repo.get_channel_messages(conn, channel_id, window), prop_set.first_n, prop_set.last_n
    )

    texts_by_agent: dict[str, list[str]] = defaultdict(list)
    for msg in messages:
        texts_by_agent[msg.user_id].append(msg.text)
    stats = {agent_id: vocabulary_stats(texts) for agent_id, texts in texts_by_agent.items()}
    similarity = pairwise_similarity(dict(texts_by_agent))

    trajectory = channel_trajectory(conn, messages)
    if messages:
        trajectory.append(
            TrajectoryEntry(kind="stimulus", agent_name="system", text=_evidence_text(stats, similarity))
        )
    logger.info("convergence_sampled", channel_id=channel_id, messages=len(messages),
                agents=len(texts_by_agent))

    return await record_run(
        conn,
        judge,
        dimension="convergence",
        prop_set=prop_set,
        trajectory=trajectory,
        sample_size=len(messages),
        result_cls=ConvergenceResult,
        agent_id=agent_id,
        channel_id=channel_id,
        options=options,
        sufficient=len(texts_by_agent) >= 2,
        agent_count=len(texts_by_agent),
        vocabulary_stats=stats,
        pairwise_similarity=similarity,
    )
