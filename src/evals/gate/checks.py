"""Per-action quality check for the action gate.

Each enabled gate dimension is one built-in proposition scored by the judge
against a small trajectory: the conversation context as stimuli followed by
the candidate message as the agent's action. The optional similarity check
is purely lexical (no judge call).
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field

import structlog

from src.evals.aggregation import adjust_score
from src.evals.errors import JudgeError
from src.evals.judge import Judge
from src.evals.policy import DimensionCheck, PipelineConfig
from src.evals.text_stats import word_similarity
from src.schemas.evaluation import DimensionScore, Proposition, TokenUsage, TrajectoryEntry

logger = structlog.get_logger(__name__)


GATE_PROPOSITIONS: dict[str, Proposition] = {
    "persona_adherence": Proposition(
        id="gate-persona-adherence",
        claim=(
            "The agent's next action adheres to the agent's persona description: "
            "personality traits, style, beliefs, behaviors, and skills."
        ),
    ),
    "self_consistency": Proposition(
        id="gate-self-consistency",
        claim=(
            "The agent's next action is self-consistent: it does not contradict the "
            "agent's previous actions in this conversation. Ignore the agent's persona; "
            "self-consistency concerns ONLY the actions observed."
        ),
    ),
    "fluency": Proposition(
        id="gate-fluency",
        claim=(
            "The agent's next action is fluent: it is natural and human-like, avoids "
            "repetition of thoughts or words, and avoids formulaic language patterns."
        ),
    ),
    "suitability": Proposition(
        id="gate-suitability",
        claim=(
            "The agent's next action is suitable. It is a reasonable step toward a goal, "
            "produces relevant information, OR is a reasonable response to incoming "
            "stimuli. Meeting ANY ONE of these conditions means FULLY suitable."
        ),
    ),
}

# Dimensions judged with the persona in the system prompt
PERSONA_DIMENSIONS = frozenset({"persona_adherence", "suitability"})


@dataclass
class SimilarityResult:
    score: float
    passed: bool
    threshold: float
    most_similar: str | None = None


@dataclass
class QualityCheck:
    """Outcome of one gate evaluation of one candidate text."""

    passed: bool
    dimension_scores: list[DimensionScore] = field(default_factory=list)
    thresholds: dict[str, float] = field(default_factory=dict)
    similarity: SimilarityResult | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    @property
    def total_score(self) -> float:
        return sum(d.score for d in self.dimension_scores)

    @property
    def failed_dimensions(self) -> list[DimensionScore]:
        return [d for d in self.dimension_scores if not d.passed]


def build_gate_trajectory(
    agent_name: str,
    candidate: str,
    context_messages: list[str],
) -> list[TrajectoryEntry]:
    entries = [TrajectoryEntry(kind="stimulus", agent_name="other", text=t) for t in context_messages]
    entries.append(TrajectoryEntry(kind="action", agent_name=agent_name, text=candidate))
    return entries


def compute_action_similarity(
    candidate: str,
    recent_messages: list[str],
    threshold: float = 0.6,
) -> SimilarityResult:
    """Max word-set Jaccard similarity against the agent's recent messages.

    Fails when the candidate is at least ``threshold`` similar to any of them.
    """
    if not recent_messages:
        return SimilarityResult(score=0.0, passed=True, threshold=threshold)

    best, most_similar = 0.0, None
    for text in recent_messages:
        similarity = word_similarity(candidate, text)
        if similarity > best:
            best, most_similar = similarity, text
    return SimilarityResult(
        score=best,
        passed=best < threshold,
        threshold=threshold,
        most_similar=most_similar,
    )


async def _score_dimension(
    judge: Judge,
    dimension: str,
    check: DimensionCheck,
    trajectory: list[TrajectoryEntry],
    persona: str | None,
) -> tuple[DimensionScore, TokenUsage]:
    proposition = GATE_PROPOSITIONS[dimension]
    try:
        verdict = await judge.score(
            proposition.claim,
            trajectory,
            persona=persona if dimension in PERSONA_DIMENSIONS else None,
            proposition_id=proposition.id,
        )
    except JudgeError as exc:
        logger.warning("gate_judge_failed", dimension=dimension, error=str(exc))
        return (
            DimensionScore(dimension=dimension, score=0.0, passed=False, reasoning=f"Judge error: {exc}"),
            TokenUsage(),
        )
    score = adjust_score(verdict.score, proposition, hard=False)
    return (
        DimensionScore(
            dimension=dimension,
            score=score,
            passed=score >= check.threshold,
            reasoning=verdict.reasoning,
        ),
        verdict.token_usage,
    )


async def check_action_quality(
    judge: Judge,
    config: PipelineConfig,
    agent_name: str,
    candidate: str,
    context_messages: list[str] | None = None,
    recent_messages: list[str] | None = None,
    persona: str | None = None,
) -> QualityCheck:
    """Score every enabled gate dimension (concurrently) plus the similarity check.

    Passes iff every enabled check passes; with nothing enabled it passes
    without calling the judge.
    """
    enabled = config.dimensions.enabled()
    if not enabled and not config.similarity.enabled:
        return QualityCheck(passed=True)

    trajectory = build_gate_trajectory(agent_name, candidate, context_messages or [])
    outcomes = await asyncio.gather(
        *(_score_dimension(judge, name, check, trajectory, persona) for name, check in enabled)
    )
    dimension_scores = [score for score, _ in outcomes]
    usage = TokenUsage.sum([u for _, u in outcomes])

    similarity = None
    if config.similarity.enabled:
        similarity = compute_action_similarity(
            candidate, recent_messages or [], config.similarity.threshold
        )

    passed = all(d.passed for d in dimension_scores) and (similarity is None or similarity.passed)
    logger.debug(
        "gate_quality_checked",
        agent_name=agent_name,
        passed=passed,
        dimensions=len(dimension_scores),
        similarity=similarity.score if similarity else None,
    )
    return QualityCheck(
        passed=passed,
        dimension_scores=dimension_scores,
        thresholds={name: check.threshold for name, check in enabled},
        similarity=similarity,
        token_usage=usage,
    )
