"""Evaluate the configured interventions for one agent in one channel.

Interventions run in fixed priority order (anti-convergence, variety, then
any custom ones) and the first one that fires wins: its nudge is returned
and the rest are not evaluated. Every evaluated intervention writes an
``InterventionLog`` row. Direct messages (no channel) are skipped.
"""

from __future__ import annotations

import sqlite3
from dataclasses import dataclass, field
from pathlib import Path

import structlog

from src.evals.interventions.builtin import (
    create_anti_convergence_intervention,
    create_variety_intervention,
)
from src.evals.interventions.intervention import Intervention, InterventionContext
from src.evals.interventions.nudges import require_nudges
from src.evals.judge import Judge
from src.evals.policy import ResolvedConfig, resolve_config
from src.evals.scorers.base import require_agent
from src.schemas.evaluation import Message, TokenUsage, TrajectoryEntry

logger = structlog.get_logger(__name__)


@dataclass
class InterventionOutcome:
    nudge_text: str | None = None
    fired_type: str | None = None
    evaluated: list[str] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)


def build_trajectory(agent_id: str, messages: list[Message]) -> list[TrajectoryEntry]:
    """The agent's own messages are actions; everyone else's are stimuli."""
    return [
        TrajectoryEntry(
            kind="action" if m.user_id == agent_id else "stimulus",
            agent_name=m.user_id,
            text=m.text,
        )
        for m in messages
    ]


def configured_interventions(
    agent_id: str,
    config: ResolvedConfig,
    custom: list[Intervention] | None = None,
    nudges_path: Path | None = None,
) -> list[Intervention]:
    settings = config.interventions
    interventions: list[Intervention] = []
    if settings.anti_convergence_enabled:
        interventions.append(
            create_anti_convergence_intervention(agent_id, settings.convergence_threshold, nudges_path)
        )
    if settings.variety_intervention_enabled:
        interventions.append(
            create_variety_intervention(agent_id, settings.variety_message_threshold, nudges_path)
        )
    interventions.extend(custom or [])
    return interventions


async def evaluate_interventions(
    conn: sqlite3.Connection,
    agent_id: str,
    channel_id: str | None,
    messages: list[Message],
    judge: Judge,
    config: ResolvedConfig | None = None,
    custom: list[Intervention] | None = None,
    nudges_path: Path | None = None,
) -> InterventionOutcome:
    """Return the nudge of the first intervention that fires, or none.

    Raises:
        ConfigError: a built-in intervention is enabled but the agent has no
            nudge templates.
    """
    if channel_id is None:
        logger.info("interventions_skipped", agent_id=agent_id, reason="dm")
        return InterventionOutcome()

    agent = require_agent(conn, agent_id)
    config = config or resolve_config(conn, agent_id)
    interventions = configured_interventions(agent_id, config, custom, nudges_path)
    if not interventions:
        return InterventionOutcome()
    if any(i.intervention_type != "custom" for i in interventions):
        require_nudges(agent_id, nudges_path)

    context = InterventionContext(
        agent_id=agent_id,
        channel_id=channel_id,
        trajectory=build_trajectory(agent_id, messages),
        persona=agent.get("persona") or None,
    )
    outcome = InterventionOutcome()
    for intervention in interventions:
        outcome.evaluated.append(intervention.intervention_type)
        result = await intervention.evaluate(context, judge, conn)
        outcome.token_usage = outcome.token_usage + result.token_usage
        if result.fired:
            outcome.nudge_text = result.nudge_text
            outcome.fired_type = intervention.intervention_type
            break

    logger.info(
        "interventions_evaluated",
        agent_id=agent_id,
        channel_id=channel_id,
        evaluated=outcome.evaluated,
        fired=outcome.fired_type,
        input_tokens=outcome.token_usage.input_tokens,
        output_tokens=outcome.token_usage.output_tokens,
    )
    return outcome
