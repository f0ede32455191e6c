"""Data model for the evaluation pipeline: propositions, judge verdicts, runs and logs."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

Dimension = Literal["adherence", "consistency", "fluency", "convergence", "ideas_quantity"]
DIMENSIONS: tuple[str, ...] = (
    "adherence",
    "consistency",
    "fluency",
    "convergence",
    "ideas_quantity",
)
# Dimensions that score a channel rather than a single agent
ENVIRONMENT_DIMENSIONS: tuple[str, ...] = ("convergence", "ideas_quantity")

RunStatus = Literal["pending", "running", "completed", "failed"]
TargetType = Literal["agent", "environment"]
PropositionSource = Literal["default", "agent"]


# ---------------------------------------------------------------------------
# Token accounting
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    input_tokens: int = Field(default=0, ge=0)
    output_tokens: int = Field(default=0, ge=0)

    def __add__(self, other: TokenUsage) -> TokenUsage:
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
        )

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    @classmethod
    def sum(cls, usages: list[TokenUsage]) -> TokenUsage:
        total = cls()
        for usage in usages:
            total = total + usage
        return total


# ---------------------------------------------------------------------------
# Propositions
# ---------------------------------------------------------------------------


class Proposition(BaseModel):
    """A single weighted, possibly inverted scoring claim."""

    id: str = Field(..., min_length=1)
    claim: str = Field(..., min_length=1)
    weight: float = Field(default=1.0, gt=0)
    inverted: bool = False
    recommendations_for_improvement: str | None = None
    source: PropositionSource = "default"


class PropositionSet(BaseModel):
    """Merged propositions for one dimension (and optionally one agent)."""

    dimension: str
    propositions: list[Proposition] = Field(default_factory=list)
    include_personas: bool = True
    hard: bool = False
    target_type: TargetType = "agent"
    first_n: int | None = Field(default=None, ge=0)
    last_n: int | None = Field(default=None, ge=0)

    def get(self, proposition_id: str) -> Proposition | None:
        for prop in self.propositions:
            if prop.id == proposition_id:
                return prop
        return None


class PropositionResult(BaseModel):
    """Immutable outcome of scoring one proposition (after inversion / hard mode)."""

    model_config = ConfigDict(frozen=True)

    proposition_id: str
    score: float = Field(..., ge=0, le=9)
    reasoning: str = ""
    context_snippet: str | None = None


# ---------------------------------------------------------------------------
# Judge I/O
# ---------------------------------------------------------------------------


class TrajectoryEntry(BaseModel):
    """One line of evidence shown to the judge."""

    kind: Literal["action", "stimulus"]
    agent_name: str
    text: str

    def render(self) -> str:
        if self.kind == "action":
            return f"{self.agent_name} acts: {self.text}"
        return f"--> {self.agent_name}: {self.text}"


class JudgeVerdict(BaseModel):
    score: int = Field(..., ge=0, le=9)
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0, le=1)
    evidence: str | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class CheckVerdict(BaseModel):
    result: bool
    reasoning: str = ""
    confidence: float = Field(default=0.5, ge=0, le=1)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class Idea(BaseModel):
    id: int
    description: str


class IdeasVerdict(BaseModel):
    count: int = Field(default=0, ge=0)
    ideas: list[Idea] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


# ---------------------------------------------------------------------------
# Conversation store
# ---------------------------------------------------------------------------


class Message(BaseModel):
    id: str
    channel_id: str | None = None
    user_id: str
    text: str
    created_at: datetime


class TimeWindow(BaseModel):
    """Half-open [start, end) time window. Either bound may be open."""

    start: datetime | None = None
    end: datetime | None = None

    @classmethod
    def last_days(cls, days: float, now: datetime | None = None) -> TimeWindow:
        now = now or datetime.now(timezone.utc)
        return cls(start=now - timedelta(days=days), end=now)

    @classmethod
    def days_ago(cls, start_days: float, end_days: float, now: datetime | None = None) -> TimeWindow:
        """Window from ``start_days`` ago up to ``end_days`` ago."""
        now = now or datetime.now(timezone.utc)
        return cls(start=now - timedelta(days=start_days), end=now - timedelta(days=end_days))


# ---------------------------------------------------------------------------
# Scorer results
# ---------------------------------------------------------------------------


class ScoreResult(BaseModel):
    evaluation_run_id: str
    dimension: str
    status: RunStatus = "completed"
    overall_score: float | None = None
    proposition_scores: list[PropositionResult] = Field(default_factory=list)
    sample_size: int = 0
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class ConsistencyResult(ScoreResult):
    current_sample_size: int = 0
    historical_sample_size: int = 0


class NgramStats(BaseModel):
    trigram: float = 0.0
    fivegram: float = 0.0


class FluencyResult(ScoreResult):
    ngram_stats: NgramStats = Field(default_factory=NgramStats)


class VocabularyStats(BaseModel):
    unique_word_ratio: float = 0.0
    avg_sentence_length: float = 0.0
    punctuation_density: float = 0.0


class ConvergenceResult(ScoreResult):
    agent_count: int = 0
    vocabulary_stats: dict[str, VocabularyStats] = Field(default_factory=dict)
    pairwise_similarity: dict[str, float] = Field(default_factory=dict)


class IdeasResult(ScoreResult):
    count: int = 0
    ideas: list[Idea] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------


class EvaluationRun(BaseModel):
    id: str
    agent_id: str | None = None
    channel_id: str | None = None
    status: RunStatus
    dimensions: list[str] = Field(default_factory=list)
    sample_size: int = 0
    overall_score: float | None = None
    is_baseline: bool = False
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: str
    completed_at: str | None = None


CorrectionStage = Literal["original", "regenerated", "direct-corrected"]
CorrectionOutcome = Literal["passed", "failed", "exhausted"]
InterventionType = Literal["anti_convergence", "variety", "custom"]
NudgeType = Literal[
    "devils_advocate",
    "change_subject",
    "personal_story",
    "challenging_question",
    "new_ideas",
]
NUDGE_TYPES: tuple[str, ...] = (
    "devils_advocate",
    "change_subject",
    "personal_story",
    "challenging_question",
    "new_ideas",
)


class DimensionScore(BaseModel):
    dimension: str
    score: float
    passed: bool
    reasoning: str = ""


class CorrectionLog(BaseModel):
    agent_id: str
    run_id: str | None = None
    channel_id: str | None = None
    original_text: str
    final_text: str | None = None
    stage: CorrectionStage
    attempt_number: int = Field(..., ge=1)
    outcome: CorrectionOutcome
    dimension_scores: list[DimensionScore] = Field(default_factory=list)
    similarity_score: float | None = None
    total_score: float | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    duration_ms: int = 0
    created_at: str | None = None


class InterventionLog(BaseModel):
    agent_id: str
    channel_id: str | None = None
    intervention_type: InterventionType
    textual_claim: str | None = None
    textual_result: bool | None = None
    functional_result: bool | None = None
    propositional_result: bool | None = None
    fired: bool = False
    nudge_text: str | None = None
    token_usage: TokenUsage = Field(default_factory=TokenUsage)
    created_at: str | None = None


class Regression(BaseModel):
    dimension: str
    baseline: float
    current: float
    delta: float


class GoldenBaseline(BaseModel):
    agent_id: str
    captured_at: str
    dimensions: dict[str, float] = Field(default_factory=dict)
    proposition_scores: dict[str, float] = Field(default_factory=dict)
