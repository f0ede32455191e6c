"""Dynamic baselines: live scorer runs flagged ``is_baseline`` in storage.

Distinct from the curated golden baselines in ``baselines/*.json``
(see ``src.evals.harness.golden``), which captures never touch.
"""

from __future__ import annotations

import sqlite3
from dataclasses import replace
from datetime import datetime, timezone

import structlog
from pydantic import BaseModel, Field

from src.evals.errors import EvaluationError, NotFoundError, ValidationError
from src.evals.judge import Judge
from src.evals.scorers.adherence import score_adherence
from src.evals.scorers.base import ScorerOptions, require_agent
from src.evals.scorers.consistency import score_consistency
from src.evals.scorers.convergence import score_convergence
from src.evals.scorers.fluency import score_fluency
from src.evals.scorers.ideas_quantity import IDEAS_PROPOSITION_ID, score_ideas_quantity
from src.persistence import repository as repo
from src.schemas.evaluation import DIMENSIONS, EvaluationRun, TimeWindow

logger = structlog.get_logger(__name__)

BASELINE_WINDOW_DAYS = 30


class BaselineResult(BaseModel):
    agent_id: str
    scores: dict[str, float | None] = Field(default_factory=dict)
    evaluation_run_ids: list[str] = Field(default_factory=list)
    captured_at: str


class BaselineDelta(BaseModel):
    dimension: str
    baseline: float | None = None
    current: float | None = None
    delta: float | None = None


def validate_dimensions(dimensions: list[str] | None) -> list[str]:
    if not dimensions:
        return list(DIMENSIONS)
    unknown = [d for d in dimensions if d not in DIMENSIONS]
    if unknown:
        raise ValidationError(f"Unknown dimension(s): {', '.join(unknown)}")
    return list(dimensions)


def _run_score(conn: sqlite3.Connection, run: EvaluationRun) -> float | None:
    """Overall score of a run; for ideas_quantity, the idea count."""
    if "ideas_quantity" in run.dimensions:
        for row in repo.get_evaluation_scores(conn, run.id):
            if row["proposition_id"] == IDEAS_PROPOSITION_ID:
                return row["score"]
        return None
    return run.overall_score


async def _run_dimension(
    conn: sqlite3.Connection,
    agent_id: str,
    dimension: str,
    judge: Judge,
    options: ScorerOptions,
) -> tuple[float | None, str] | None:
    if dimension == "adherence":
        result = await score_adherence(conn, agent_id, judge, options)
        return result.overall_score, result.evaluation_run_id
    if dimension == "consistency":
        # consistency keeps its own current/historical windows
        result = await score_consistency(conn, agent_id, judge, replace(options, window=None))
        return result.overall_score, result.evaluation_run_id
    if dimension == "fluency":
        result = await score_fluency(conn, agent_id, judge, options)
        return result.overall_score, result.evaluation_run_id

    channel_ids = repo.get_agent_channel_ids(conn, agent_id)
    if not channel_ids:
        logger.info("baseline_no_channel", agent_id=agent_id, dimension=dimension)
        return None
    if dimension == "convergence":
        result = await score_convergence(conn, channel_ids[0], judge, options, agent_id=agent_id)
        return result.overall_score, result.evaluation_run_id
    ideas = await score_ideas_quantity(conn, channel_ids[0], judge, options, agent_id=agent_id)
    return float(ideas.count), ideas.evaluation_run_id


async def capture_baseline(
    conn: sqlite3.Connection,
    agent_id: str,
    judge: Judge,
    dimensions: list[str] | None = None,
    window: TimeWindow | None = None,
) -> BaselineResult:
    """Run the requested scorers sequentially and store them as the agent's baseline.

    Previous baseline runs for the agent are deleted first. A dimension that
    fails is logged and skipped; environment dimensions use the agent's first
    channel and are skipped when it has none.
    """
    require_agent(conn, agent_id)
    dimensions = validate_dimensions(dimensions)
    repo.clear_baseline_runs(conn, agent_id)

    options = ScorerOptions(
        window=window or TimeWindow.last_days(BASELINE_WINDOW_DAYS),
        is_baseline=True,
    )
    scores: dict[str, float | None] = {}
    run_ids: list[str] = []
    for dimension in dimensions:
        try:
            outcome = await _run_dimension(conn, agent_id, dimension, judge, options)
        except EvaluationError as exc:
            logger.error("baseline_dimension_failed", agent_id=agent_id, dimension=dimension, error=str(exc))
            continue
        if outcome is None:
            continue
        scores[dimension], run_id = outcome
        run_ids.append(run_id)

    logger.info("baseline_captured", agent_id=agent_id, runs=len(run_ids))
    return BaselineResult(
        agent_id=agent_id,
        scores=scores,
        evaluation_run_ids=run_ids,
        captured_at=datetime.now(timezone.utc).isoformat(),
    )


def _baseline_from_runs(
    conn: sqlite3.Connection,
    agent_id: str,
    runs: list[EvaluationRun],
) -> BaselineResult:
    # runs are newest first: keep the first run seen per dimension
    scores: dict[str, float | None] = {}
    run_ids: list[str] = []
    for run in runs:
        fresh = [d for d in run.dimensions if d not in scores]
        if not fresh:
            continue
        score = _run_score(conn, run)
        for dim in fresh:
            scores[dim] = score
        run_ids.append(run.id)
    return BaselineResult(
        agent_id=agent_id,
        scores=scores,
        evaluation_run_ids=run_ids,
        captured_at=max(r.completed_at or r.created_at for r in runs),
    )


def get_baseline(conn: sqlite3.Connection, agent_id: str) -> BaselineResult:
    """Latest completed baseline run per dimension.

    Raises:
        NotFoundError: the agent has no baseline.
    """
    runs = repo.get_baseline_runs(conn, agent_id)
    if not runs:
        raise NotFoundError("baseline", agent_id)
    return _baseline_from_runs(conn, agent_id, runs)


def list_baselines(conn: sqlite3.Connection) -> list[BaselineResult]:
    by_agent: dict[str, list[EvaluationRun]] = {}
    for run in repo.get_baseline_runs(conn):
        if run.agent_id is not None:
            by_agent.setdefault(run.agent_id, []).append(run)
    return [_baseline_from_runs(conn, a, runs) for a, runs in sorted(by_agent.items())]


def compare_to_baseline(
    conn: sqlite3.Connection,
    agent_id: str,
    current_scores: dict[str, float | None],
) -> list[BaselineDelta]:
    """Per-dimension delta (current - baseline) over the union of dimensions."""
    baseline = get_baseline(conn, agent_id)
    deltas: list[BaselineDelta] = []
    for dimension in sorted(set(baseline.scores) | set(current_scores)):
        base = baseline.scores.get(dimension)
        current = current_scores.get(dimension)
        delta = round(current - base, 4) if base is not None and current is not None else None
        deltas.append(BaselineDelta(dimension=dimension, baseline=base, current=current, delta=delta))
    return deltas

