"""Self-consistency: do recent messages match the agent's earlier self?

Recent messages are paired with historical messages from the same channel
(falling back to any historical message) and shown to the judge as
"[Earlier message]" / "[Recent message]" pairs.

With no historical messages the propositions are still scored against the
current window alone, but the run's overall score is None: there is nothing
to be consistent with.
"""

from __future__ import annotations

import random
import sqlite3
from collections import defaultdict

import structlog

from src.config import get_agent_settings
from src.evals.judge import Judge
from src.evals.propositions import load_propositions
from src.evals.scorers.base import (
    ScorerOptions,
    actions,
    default_template_vars,
    persona_for,
    record_run,
    require_agent,
    sample_messages,
)
from src.persistence import repository as repo
from src.schemas.evaluation import ConsistencyResult, Message, TimeWindow, TrajectoryEntry

logger = structlog.get_logger(__name__)


def pair_messages(
    current: list[Message],
    historical: list[Message],
    max_pairs: int,
    rng: random.Random | None = None,
) -> list[tuple[Message, Message]]:
    """Pair recent messages with historical ones, preferring the same channel."""
    rng = rng or random.Random()
    by_channel: dict[str | None, list[Message]] = defaultdict(list)
    for msg in historical:
        by_channel[msg.channel_id].append(msg)
    for pool in by_channel.values():
        rng.shuffle(pool)
    leftovers = list(historical)
    rng.shuffle(leftovers)
    used: set[str] = set()

    shuffled = list(current)
    rng.shuffle(shuffled)
    pairs: list[tuple[Message, Message]] = []
    for recent in shuffled:
        if len(pairs) >= max_pairs:
            break
        candidates = [m for m in by_channel.get(recent.channel_id, []) if m.id not in used]
        if not candidates:
            candidates = [m for m in leftovers if m.id not in used]
        if not candidates:
            break
        earlier = candidates[0]
        used.add(earlier.id)
        pairs.append((earlier, recent))
    return pairs


async def score_consistency(
    conn: sqlite3.Connection,
    agent_id: str,
    judge: Judge,
    options: ScorerOptions | None = None,
    historical_window: TimeWindow | None = None,
) -> ConsistencyResult:
    """Compare the agent's current window against its historical window.

    ``options.window`` is the current window (default: last 7 days);
    ``historical_window`` defaults to 30 to 7 days ago.
    """
    options = options or ScorerOptions()
    agent = require_agent(conn, agent_id)
    cfg = get_agent_settings().scoring
    current_window = options.window or TimeWindow.last_days(cfg.recent_days)
    historical_window = historical_window or TimeWindow.days_ago(cfg.historical_days, cfg.recent_days)

    prop_set = load_propositions(
        "consistency", agent_id, default_template_vars(agent, options.template_vars)
    )
    current = repo.get_agent_messages(conn, agent_id, current_window)
    historical = repo.get_agent_messages(conn, agent_id, historical_window)
    name = agent["display_name"]

    if historical:
        pairs = pair_messages(current, historical, cfg.max_pairs, options.rng)
        trajectory: list[TrajectoryEntry] = []
        for earlier, recent in pairs:
            trajectory.append(
                TrajectoryEntry(kind="stimulus", agent_name=name, text=f"[Earlier message] {earlier.text}")
            )
            trajectory.append(
                TrajectoryEntry(kind="action", agent_name=name, text=f"[Recent message] {recent.text}")
            )
        sample_size = len(pairs) * 2
    else:
        sampled = sample_messages(current, cfg.max_sample_size, options.rng)
        trajectory = actions(sampled, name)
        sample_size = len(sampled)
        logger.info("consistency_no_history", agent_id=agent_id, current=len(current))

    return await record_run(
        conn,
        judge,
        dimension="consistency",
        prop_set=prop_set,
        trajectory=trajectory,
        sample_size=sample_size,
        result_cls=ConsistencyResult,
        agent_id=agent_id,
        persona=persona_for(prop_set, agent),
        options=options,
        aggregate=bool(historical),
        current_sample_size=len(current),
        historical_sample_size=len(historical),
    )
