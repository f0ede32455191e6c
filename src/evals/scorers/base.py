"""Shared machinery for dimension scorers.

Every scorer follows the same lifecycle:

1. validate the target and load its proposition set
2. build a trajectory from the sampled messages
3. fan out one judge call per proposition (``score_propositions``)
4. persist the run + score rows and aggregate (``record_run``)

Judge failures drop the single proposition. A run where every proposition
failed is marked failed and the JudgeError reaches the caller.
"""

from __future__ import annotations

import asyncio
import random
import sqlite3
from dataclasses import dataclass, field
from typing import TypeVar

import structlog

from src.evals.aggregation import adjust_score, aggregate_results
from src.evals.errors import JudgeError, NotFoundError, ValidationError
from src.evals.judge import Judge
from src.persistence import repository as repo
from src.schemas.evaluation import (
    Message,
    Proposition,
    PropositionResult,
    PropositionSet,
    ScoreResult,
    TimeWindow,
    TokenUsage,
    TrajectoryEntry,
)

logger = structlog.get_logger(__name__)

R = TypeVar("R", bound=ScoreResult)

SNIPPET_LENGTH = 280


@dataclass
class ScorerOptions:
    """Per-request knobs shared by every scorer."""

    window: TimeWindow | None = None
    hard: bool | None = None          # overrides the proposition file's hard flag
    is_baseline: bool = False
    rng: random.Random | None = None  # seeded for deterministic sampling
    template_vars: dict[str, str] = field(default_factory=dict)


@dataclass
class PropositionScoring:
    results: list[PropositionResult]
    token_usage: TokenUsage
    failed: list[str]


# ---------------------------------------------------------------------------
# Targets and evidence
# ---------------------------------------------------------------------------


def require_agent(conn: sqlite3.Connection, agent_id: str) -> dict:
    if not agent_id or not agent_id.strip():
        raise ValidationError("agent_id is required")
    agent = repo.get_agent(conn, agent_id)
    if agent is None:
        raise NotFoundError("agent", agent_id)
    return agent


def require_channel(conn: sqlite3.Connection, channel_id: str) -> dict:
    if not channel_id or not channel_id.strip():
        raise ValidationError("channel_id is required")
    channel = repo.get_channel(conn, channel_id)
    if channel is None:
        raise NotFoundError("channel", channel_id)
    return channel


def apply_window(items: list, first_n: int | None, last_n: int | None) -> list:
    """Keep the first ``first_n`` and last ``last_n`` items (no duplicates)."""
    if first_n is None and last_n is None:
        return list(items)
    first_n = first_n or 0
    last_n = last_n or 0
    if len(items) <= first_n + last_n:
        return list(items)
    tail = items[len(items) - last_n :] if last_n else []
    return list(items[:first_n]) + list(tail)


def sample_messages(
    messages: list[Message],
    size: int,
    rng: random.Random | None = None,
) -> list[Message]:
    """Random sample of at most ``size`` messages, returned in chronological order."""
    if len(messages) <= size:
        return list(messages)
    picked = (rng or random).sample(messages, size)
    return sorted(picked, key=lambda m: m.created_at)


def actions(messages: list[Message], agent_name: str) -> list[TrajectoryEntry]:
    return [TrajectoryEntry(kind="action", agent_name=agent_name, text=m.text) for m in messages]


def persona_for(prop_set: PropositionSet, agent: dict | None) -> str | None:
    if agent is None or not prop_set.include_personas:
        return None
    return agent.get("persona") or None


def default_template_vars(agent: dict | None, extra: dict[str, str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    if agent is not None:
        variables["agent_name"] = agent["display_name"]
    variables.update(extra)
    return variables


# ---------------------------------------------------------------------------
# Judge fan-out
# ---------------------------------------------------------------------------


async def _score_one(
    judge: Judge,
    proposition: Proposition,
    trajectory: list[TrajectoryEntry],
    persona: str | None,
    hard: bool,
) -> tuple[PropositionResult | None, TokenUsage]:
    try:
        verdict = await judge.score(
            proposition.claim, trajectory, persona=persona, proposition_id=proposition.id
        )
    except JudgeError as exc:
        logger.warning("judge_call_failed", proposition_id=proposition.id, error=str(exc))
        return None, TokenUsage()

    snippet = verdict.evidence[:SNIPPET_LENGTH] if verdict.evidence else None
    return (
        PropositionResult(
            proposition_id=proposition.id,
            score=adjust_score(verdict.score, proposition, hard),
            reasoning=verdict.reasoning,
            context_snippet=snippet,
        ),
        verdict.token_usage,
    )


async def score_propositions(
    judge: Judge,
    propositions: list[Proposition],
    trajectory: list[TrajectoryEntry],
    persona: str | None = None,
    hard: bool = False,
) -> PropositionScoring:
    """Score every proposition concurrently against one trajectory.

    Each result keeps its proposition id, so completion order is irrelevant.
    """
    outcomes = await asyncio.gather(
        *(_score_one(judge, p, trajectory, persona, hard) for p in propositions)
    )
    results: list[PropositionResult] = []
    failed: list[str] = []
    usage = TokenUsage()
    for proposition, (result, call_usage) in zip(propositions, outcomes):
        usage = usage + call_usage
        if result is None:
            failed.append(proposition.id)
        else:
            results.append(result)
    return PropositionScoring(results=results, token_usage=usage, failed=failed)


# ---------------------------------------------------------------------------
# Run lifecycle
# ---------------------------------------------------------------------------


async def record_run(
    conn: sqlite3.Connection,
    judge: Judge,
    *,
    dimension: str,
    prop_set: PropositionSet,
    trajectory: list[TrajectoryEntry],
    sample_size: int,
    result_cls: type[R],
    agent_id: str | None = None,
    channel_id: str | None = None,
    persona: str | None = None,
    options: ScorerOptions | None = None,
    aggregate: bool = True,
    sufficient: bool = True,
    **extras,
) -> R:
    """Create, score, persist and complete one evaluation run.

    Args:
        sample_size: Number of evidence messages. Zero short-circuits to an
            "insufficient data" result with ``overall_score=None``.
        aggregate: When False the proposition scores are kept but the run's
            overall score is stored as None.
        sufficient: False when the evidence exists but cannot support a
            score (e.g. a single speaker for convergence).
        extras: Dimension-specific fields passed to ``result_cls``.
    """
    options = options or ScorerOptions()
    hard = prop_set.hard if options.hard is None else options.hard
    run_id = repo.create_evaluation_run(
        conn,
        dimensions=[dimension],
        agent_id=agent_id,
        channel_id=channel_id,
        is_baseline=options.is_baseline,
    )
    repo.start_evaluation_run(conn, run_id)

    if not sufficient or sample_size == 0 or not prop_set.propositions:
        repo.complete_evaluation_run(conn, run_id, None, sample_size, TokenUsage())
        logger.info("evaluation_insufficient_data", run_id=run_id, dimension=dimension)
        return result_cls(
            evaluation_run_id=run_id,
            dimension=dimension,
            overall_score=None,
            sample_size=sample_size,
            **extras,
        )

    try:
        scoring = await score_propositions(judge, prop_set.propositions, trajectory, persona, hard)
        if not scoring.results:
            raise JudgeError(
                f"All {len(scoring.failed)} propositions failed for {dimension}"
            )
        repo.save_evaluation_scores(conn, run_id, dimension, scoring.results)
        overall = aggregate_results(scoring.results, prop_set.propositions) if aggregate else None
        repo.complete_evaluation_run(conn, run_id, overall, sample_size, scoring.token_usage)
    except Exception as exc:
        repo.fail_evaluation_run(conn, run_id, str(exc), sample_size)
        raise

    if scoring.failed:
        logger.warning(
            "propositions_dropped",
            run_id=run_id,
            dimension=dimension,
            dropped=scoring.failed,
        )

    return result_cls(
        evaluation_run_id=run_id,
        dimension=dimension,
        overall_score=overall,
        proposition_scores=scoring.results,
        sample_size=sample_size,
        token_usage=scoring.token_usage,
        **extras,
    )
