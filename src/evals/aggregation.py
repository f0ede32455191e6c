"""Shared score transforms and weighted aggregation.

Every scorer, the action gate and the harness go through these functions;
none of them re-implements the weighted mean.
"""

from __future__ import annotations

from typing import Iterable

from src.schemas.evaluation import Proposition, PropositionResult

MIN_SCORE = 0.0
MAX_SCORE = 9.0
HARD_MODE_FACTOR = 0.8


def clamp_score(score: float) -> float:
    return max(MIN_SCORE, min(MAX_SCORE, score))


def apply_inverted_score(raw: float, inverted: bool) -> float:
    """Reflect an anti-pattern score: ``9 - raw`` when inverted."""
    return MAX_SCORE - raw if inverted else raw


def apply_hard_mode_penalty(score: float, hard: bool) -> float:
    """Stricter scoring for hard-mode proposition sets.

    A perfect 9 survives; anything below is scaled by 0.8, which pushes
    mid-range scores down. Monotonic and bounded to [0, 9].
    """
    if not hard or score >= MAX_SCORE:
        return score
    return clamp_score(score * HARD_MODE_FACTOR)


def adjust_score(raw: float, proposition: Proposition, hard: bool) -> float:
    """Full pipeline for one raw judge score: clamp, invert, then hard mode."""
    return apply_hard_mode_penalty(
        apply_inverted_score(clamp_score(raw), proposition.inverted), hard
    )


def weighted_mean(pairs: Iterable[tuple[float, float]]) -> float | None:
    """Weighted mean over ``(score, weight)`` pairs.

    Returns None when the total weight is zero (nothing scorable).
    """
    weighted_sum = 0.0
    weight_sum = 0.0
    for score, weight in pairs:
        weighted_sum += score * weight
        weight_sum += weight
    if weight_sum <= 0:
        return None
    return weighted_sum / weight_sum


def aggregate_results(
    results: Iterable[PropositionResult],
    propositions: Iterable[Proposition],
) -> float | None:
    """Weighted overall score for a set of proposition results.

    Results are matched to propositions by id, so completion order does not
    matter. Results for unknown proposition ids are ignored.
    """
    weights = {p.id: p.weight for p in propositions}
    return weighted_mean(
        (r.score, weights[r.proposition_id])
        for r in results
        if r.proposition_id in weights
    )
