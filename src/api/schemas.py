"""Request/response Pydantic models for the API layer."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from src.schemas.evaluation import DimensionScore, TokenUsage

# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class ScoreRequest(BaseModel):
    """Request body shared by the scorer endpoints."""

    start: datetime | None = Field(default=None, description="Window start (defaults per dimension).")
    end: datetime | None = Field(default=None, description="Window end (defaults to now).")
    hard: bool | None = Field(default=None, description="Override the proposition set's hard mode.")


class GateRequest(BaseModel):
    """Request body for gating one candidate message."""

    agent_id: str = Field(..., min_length=1)
    candidate: str = Field(..., min_length=1, max_length=10_000)
    channel_id: str | None = None
    run_id: str | None = None
    context_messages: list[str] | None = Field(
        default=None,
        description="Conversation context; defaults to the channel's last messages.",
    )


class InterventionRequest(BaseModel):
    """Request body for evaluating interventions in a channel."""

    agent_id: str = Field(..., min_length=1)
    channel_id: str | None = Field(default=None, description="None for direct messages (skipped).")
    message_limit: int = Field(default=50, ge=1, le=500)


class BaselineCaptureRequest(BaseModel):
    dimensions: list[str] | None = None
    start: datetime | None = None
    end: datetime | None = None


class BaselineCompareRequest(BaseModel):
    scores: dict[str, float | None]


class HarnessRequest(BaseModel):
    """Request body for an on-demand harness run."""

    agents: list[str] | None = None
    dimensions: list[str] | None = None
    threshold: float | None = Field(default=None, ge=0, le=9)
    regression_delta: float | None = Field(default=None, ge=0)
    mock_judge: bool = False


# ---------------------------------------------------------------------------
# Response models
# ---------------------------------------------------------------------------


class GateAttemptResponse(BaseModel):
    stage: str
    text: str
    passed: bool
    total_score: float
    dimension_scores: list[DimensionScore] = Field(default_factory=list)
    similarity_score: float | None = None


class GateResponse(BaseModel):
    """Gate decision for one candidate message."""

    agent_id: str
    passed: bool
    blocked: bool
    final_text: str | None = None
    outcome: str = Field(description="passed | failed | exhausted")
    attempts: list[GateAttemptResponse] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class InterventionResponse(BaseModel):
    agent_id: str
    channel_id: str | None = None
    nudge_text: str | None = None
    fired_type: str | None = None
    evaluated: list[str] = Field(default_factory=list)
    token_usage: TokenUsage = Field(default_factory=TokenUsage)


class RepetitionResponse(BaseModel):
    agent_id: str
    detected: bool = False
    overlap_score: float = 0.0
    repeated_ngrams: list[str] = Field(default_factory=list)
    context: str | None = None


class RunDetailResponse(BaseModel):
    """One evaluation run with its stored proposition scores."""

    run: dict[str, Any]
    scores: list[dict[str, Any]] = Field(default_factory=list)


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "healthy"
    judge_mode: str = "live"
    db_connected: bool = True
    version: str = "0.1.0"


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str
    detail: str | None = None
