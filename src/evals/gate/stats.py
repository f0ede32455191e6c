"""Aggregate statistics over correction logs (gate pass rates, correction success)."""

from __future__ import annotations

import math
import sqlite3
from datetime import datetime

from pydantic import BaseModel, Field

from src.evals.policy import GATE_DIMENSIONS
from src.persistence import repository as repo
from src.schemas.evaluation import CorrectionLog


class GateStats(BaseModel):
    total_attempts: int = 0
    original_count: int = 0
    original_pass_count: int = 0
    original_pass_rate: float = 0.0
    regeneration_count: int = 0
    regeneration_success_count: int = 0
    regeneration_failure_rate: float = 0.0
    regeneration_mean_score: float = 0.0
    regeneration_sd_score: float = 0.0
    direct_correction_count: int = 0
    direct_correction_success_count: int = 0
    direct_correction_failure_rate: float = 0.0
    direct_correction_mean_score: float = 0.0
    direct_correction_sd_score: float = 0.0
    exhausted_count: int = 0
    similarity_failure_count: int = 0
    per_dimension_failure_counts: dict[str, int] = Field(default_factory=dict)
    per_dimension_mean_scores: dict[str, float] = Field(default_factory=dict)


def _mean(values: list[float]) -> float:
    return sum(values) / len(values) if values else 0.0


def _sample_sd(values: list[float]) -> float:
    if len(values) < 2:
        return 0.0
    m = _mean(values)
    return math.sqrt(sum((v - m) ** 2 for v in values) / (len(values) - 1))


def _failure_rate(total: int, successes: int) -> float:
    return (total - successes) / total if total else 0.0


def compute_gate_stats(logs: list[CorrectionLog], similarity_threshold: float = 0.6) -> GateStats:
    """Pure aggregation over a list of correction logs."""
    originals = [log for log in logs if log.stage == "original"]
    original_passed = [log for log in originals if log.outcome == "passed"]
    regenerations = [log for log in logs if log.stage == "regenerated"]
    corrections = [log for log in logs if log.stage == "direct-corrected"]

    failure_counts = {d: 0 for d in GATE_DIMENSIONS}
    score_lists: dict[str, list[float]] = {d: [] for d in GATE_DIMENSIONS}
    for log in logs:
        for ds in log.dimension_scores:
            if ds.dimension not in score_lists:
                continue
            score_lists[ds.dimension].append(ds.score)
            if not ds.passed:
                failure_counts[ds.dimension] += 1

    regen_successes = sum(1 for log in regenerations if log.outcome == "passed")
    dc_successes = sum(1 for log in corrections if log.outcome == "passed")
    regen_scores = [log.total_score for log in regenerations if log.total_score is not None]
    dc_scores = [log.total_score for log in corrections if log.total_score is not None]

    return GateStats(
        total_attempts=len(logs),
        original_count=len(originals),
        original_pass_count=len(original_passed),
        original_pass_rate=len(original_passed) / len(originals) if originals else 0.0,
        regeneration_count=len(regenerations),
        regeneration_success_count=regen_successes,
        regeneration_failure_rate=_failure_rate(len(regenerations), regen_successes),
        regeneration_mean_score=_mean(regen_scores),
        regeneration_sd_score=_sample_sd(regen_scores),
        direct_correction_count=len(corrections),
        direct_correction_success_count=dc_successes,
        direct_correction_failure_rate=_failure_rate(len(corrections), dc_successes),
        direct_correction_mean_score=_mean(dc_scores),
        direct_correction_sd_score=_sample_sd(dc_scores),
        exhausted_count=sum(1 for log in logs if log.outcome == "exhausted"),
        similarity_failure_count=sum(
            1
            for log in logs
            if log.similarity_score is not None and log.similarity_score >= similarity_threshold
        ),
        per_dimension_failure_counts=failure_counts,
        per_dimension_mean_scores={d: _mean(s) for d, s in score_lists.items()},
    )


def get_gate_stats(
    conn: sqlite3.Connection,
    agent_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
) -> GateStats:
    return compute_gate_stats(repo.list_correction_logs(conn, agent_id, start, end))
