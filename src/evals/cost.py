"""Token cost accounting over the correction and intervention logs.

Pure aggregation over persisted rows; nothing here calls the judge.
"""

from __future__ import annotations

import sqlite3
from datetime import datetime

import structlog
from pydantic import BaseModel, Field

from src.evals.errors import ValidationError
from src.persistence import repository as repo
from src.schemas.evaluation import TokenUsage

logger = structlog.get_logger(__name__)

# Judge model rates (USD per token)
INPUT_COST_PER_TOKEN = 0.25 / 1_000_000
OUTPUT_COST_PER_TOKEN = 1.25 / 1_000_000


class CostSummary(BaseModel):
    agent_id: str | None = None
    correction_tokens: TokenUsage = Field(default_factory=TokenUsage)
    intervention_tokens: TokenUsage = Field(default_factory=TokenUsage)
    total_tokens: TokenUsage = Field(default_factory=TokenUsage)
    estimated_cost_usd: float = 0.0


def estimate_cost(usage: TokenUsage) -> float:
    return usage.input_tokens * INPUT_COST_PER_TOKEN + usage.output_tokens * OUTPUT_COST_PER_TOKEN


def get_cost_summary(
    conn: sqlite3.Connection,
    agent_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
) -> CostSummary:
    """Token totals and estimated spend, optionally for one agent and date range."""
    if start is not None and end is not None and start > end:
        raise ValidationError("start must not be after end")

    correction = repo.sum_log_tokens(conn, "correction_logs", agent_id, start, end)
    intervention = repo.sum_log_tokens(conn, "intervention_logs", agent_id, start, end)
    total = correction + intervention
    summary = CostSummary(
        agent_id=agent_id,
        correction_tokens=correction,
        intervention_tokens=intervention,
        total_tokens=total,
        estimated_cost_usd=estimate_cost(total),
    )
    logger.info(
        "cost_summary_computed",
        agent_id=agent_id or "all",
        input_tokens=total.input_tokens,
        output_tokens=total.output_tokens,
        estimated_cost_usd=round(summary.estimated_cost_usd, 6),
    )
    return summary
