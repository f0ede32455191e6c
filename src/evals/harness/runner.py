"""Evaluation harness: score a roster of agents and gate CI on the results.

Each agent is scored on the requested dimensions against either its recent
messages (when a database connection is given) or a fixed sample
trajectory. An agent passes when its overall score reaches the threshold
and no dimension regressed against its golden baseline.
"""

from __future__ import annotations

import asyncio
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

from src.config import get_agent_settings
from src.evals.aggregation import aggregate_results
from src.evals.baseline import validate_dimensions
from src.evals.errors import EvaluationError, ValidationError
from src.evals.harness.golden import detect_regressions, load_golden_baseline, save_golden_baseline
from src.evals.judge import Judge, MockJudge, get_judge
from src.evals.propositions import load_propositions
from src.evals.scorers.base import persona_for, score_propositions
from src.persistence import repository as repo
from src.schemas.evaluation import Regression, TrajectoryEntry

logger = structlog.get_logger(__name__)

ALL_AGENTS: tuple[str, ...] = (
    "michael",
    "dwight",
    "jim",
    "pam",
    "ryan",
    "stanley",
    "kevin",
    "angela",
    "oscar",
    "andy",
    "toby",
    "creed",
    "kelly",
    "phyllis",
    "meredith",
    "darryl",
)

SAMPLE_MESSAGE = "Sample message for evaluation"
RECENT_MESSAGE_LIMIT = 20


class DimensionOutcome(BaseModel):
    score: float | None = None
    count: int | None = None          # ideas_quantity only
    passed: bool = False
    proposition_scores: dict[str, float] = Field(default_factory=dict)


class AgentResult(BaseModel):
    overall: float | None = None
    passed: bool = False
    dimensions: dict[str, DimensionOutcome] = Field(default_factory=dict)
    baseline_delta: dict[str, float] | None = None
    regressions: list[Regression] | None = None
    error: str | None = None


class HarnessSummary(BaseModel):
    total: int
    passed: int
    failed: int
    failed_agents: list[str] = Field(default_factory=list)


class HarnessResult(BaseModel):
    timestamp: str
    agents: dict[str, AgentResult]
    summary: HarnessSummary

    def to_json_dict(self) -> dict:
        """JSON-ready dict; absent baseline fields are omitted rather than null."""
        return self.model_dump(exclude_none=True)


# ---------------------------------------------------------------------------
# Per-agent evaluation
# ---------------------------------------------------------------------------


def _agent_trajectory(
    conn: sqlite3.Connection | None,
    agent_id: str,
) -> tuple[list[TrajectoryEntry], dict | None]:
    agent = repo.get_agent(conn, agent_id) if conn is not None else None
    if agent is not None:
        messages = repo.get_recent_agent_messages(conn, agent_id, RECENT_MESSAGE_LIMIT)
        if messages:
            return (
                [TrajectoryEntry(kind="action", agent_name=agent_id, text=m.text) for m in messages],
                agent,
            )
    return [TrajectoryEntry(kind="action", agent_name=agent_id, text=SAMPLE_MESSAGE)], agent


async def _score_dimension(
    judge: Judge,
    agent_id: str,
    dimension: str,
    trajectory: list[TrajectoryEntry],
    agent: dict | None,
    threshold: float,
    propositions_dir: Path | None,
) -> DimensionOutcome:
    if dimension == "ideas_quantity":
        verdict = await judge.enumerate_ideas(trajectory)
        return DimensionOutcome(count=max(verdict.count, len(verdict.ideas)), passed=True)

    prop_set = load_propositions(
        dimension,
        agent_id,
        template_vars={"agent_name": agent_id},
        propositions_dir=propositions_dir,
    )
    scoring = await score_propositions(
        judge,
        prop_set.propositions,
        trajectory,
        persona=persona_for(prop_set, agent),
        hard=prop_set.hard,
    )
    score = aggregate_results(scoring.results, prop_set.propositions)
    return DimensionOutcome(
        score=score,
        passed=score is not None and score >= threshold,
        proposition_scores={r.proposition_id: r.score for r in scoring.results},
    )


def overall_score(dimensions: dict[str, DimensionOutcome]) -> float | None:
    """Mean of the scored dimensions; idea counts are not scores."""
    scores = [d.score for d in dimensions.values() if d.score is not None]
    if not scores:
        return None
    return sum(scores) / len(scores)


async def evaluate_agent(
    agent_id: str,
    dimensions: list[str],
    threshold: float,
    judge: Judge,
    *,
    update_baseline: bool = False,
    regression_delta: float = 1.0,
    conn: sqlite3.Connection | None = None,
    baselines_dir: Path | None = None,
    propositions_dir: Path | None = None,
) -> AgentResult:
    trajectory, agent = _agent_trajectory(conn, agent_id)
    outcomes: dict[str, DimensionOutcome] = {}
    for dimension in dimensions:
        outcomes[dimension] = await _score_dimension(
            judge, agent_id, dimension, trajectory, agent, threshold, propositions_dir
        )

    overall = overall_score(outcomes)
    result = AgentResult(
        overall=overall,
        passed=overall is not None and overall >= threshold,
        dimensions=outcomes,
    )
    scores = {dim: o.score for dim, o in outcomes.items() if o.score is not None}

    if update_baseline:
        proposition_scores: dict[str, float] = {}
        for outcome in outcomes.values():
            proposition_scores.update(outcome.proposition_scores)
        save_golden_baseline(agent_id, scores, proposition_scores, baselines_dir)
        return result

    golden = load_golden_baseline(agent_id, baselines_dir)
    if golden is not None:
        result.baseline_delta = {
            dim: round(score - golden.dimensions[dim], 4)
            for dim, score in scores.items()
            if dim in golden.dimensions
        }
        result.regressions = detect_regressions(scores, golden.dimensions, regression_delta)
        if result.regressions:
            result.passed = False
    return result


# ---------------------------------------------------------------------------
# Roster
# ---------------------------------------------------------------------------


def resolve_agents(agents: list[str] | None, conn: sqlite3.Connection | None = None) -> list[str]:
    """Expand ``["all"]`` (or nothing) to the roster and reject unknown ids.

    Known ids are the roster plus, with ``conn``, every agent in the store.
    Duplicates are dropped, first occurrence wins.
    """
    if not agents or "all" in agents:
        return list(ALL_AGENTS)
    resolved = list(dict.fromkeys(a.strip() for a in agents))
    known = set(ALL_AGENTS)
    if conn is not None:
        known.update(repo.list_agent_ids(conn))
    unknown = [a for a in resolved if a not in known]
    if unknown:
        raise ValidationError(f"Unknown agent id(s): {', '.join(unknown)}")
    return resolved


async def run_evaluation(
    agents: list[str] | None = None,
    dimensions: list[str] | None = None,
    threshold: float | None = None,
    judge: Judge | None = None,
    *,
    mock_judge: bool = False,
    update_baseline: bool = False,
    regression_delta: float | None = None,
    conn: sqlite3.Connection | None = None,
    baselines_dir: Path | None = None,
    propositions_dir: Path | None = None,
    max_concurrency: int | None = None,
) -> HarnessResult:
    """Evaluate every agent and summarize.

    Agents run concurrently, at most ``max_concurrency`` at a time. An agent
    whose evaluation raises is reported as failed with its error; the rest
    of the roster still runs.
    """
    harness_cfg = get_agent_settings().harness
    agents = resolve_agents(agents, conn)
    dimensions = validate_dimensions(dimensions)
    threshold = harness_cfg.threshold if threshold is None else threshold
    regression_delta = harness_cfg.regression_delta if regression_delta is None else regression_delta
    if judge is None:
        judge = MockJudge() if mock_judge else get_judge()
    semaphore = asyncio.Semaphore(max_concurrency or harness_cfg.max_concurrency)

    async def _one(agent_id: str) -> AgentResult:
        async with semaphore:
            try:
                result = await evaluate_agent(
                    agent_id,
                    dimensions,
                    threshold,
                    judge,
                    update_baseline=update_baseline,
                    regression_delta=regression_delta,
                    conn=conn,
                    baselines_dir=baselines_dir,
                    propositions_dir=propositions_dir,
                )
            except EvaluationError as exc:
                logger.error("harness_agent_failed", agent_id=agent_id, error=str(exc))
                return AgentResult(passed=False, error=str(exc))
        logger.info(
            "harness_agent_evaluated",
            agent_id=agent_id,
            overall=round(result.overall, 3) if result.overall is not None else None,
            passed=result.passed,
        )
        return result

    logger.info("harness_started", agents=len(agents), dimensions=dimensions, threshold=threshold)
    results = await asyncio.gather(*(_one(a) for a in agents))
    by_agent = dict(zip(agents, results))

    failed_agents = [a for a, r in by_agent.items() if not r.passed]
    summary = HarnessSummary(
        total=len(by_agent),
        passed=len(by_agent) - len(failed_agents),
        failed=len(failed_agents),
        failed_agents=failed_agents,
    )
    logger.info("harness_completed", total=summary.total, passed=summary.passed, failed=summary.failed)
    return HarnessResult(
        timestamp=datetime.now(timezone.utc).isoformat(),
        agents=by_agent,
        summary=summary,
    )
