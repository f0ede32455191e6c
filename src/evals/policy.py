"""Per-agent evaluation policy (``ResolvedConfig``).

Stored as a JSON document in ``agent_evaluation_config``. Agents without a
row get the permissive defaults: every gate check disabled, interventions
and repetition suppression off.

Callers read the policy once at the start of a gate/intervention invocation
and pass the resolved object down; it is never re-read mid-invocation.
"""

from __future__ import annotations

import sqlite3
from typing import Any

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.evals.errors import ValidationError
from src.persistence import repository as repo

logger = structlog.get_logger(__name__)

GATE_DIMENSIONS: tuple[str, ...] = (
    "persona_adherence",
    "self_consistency",
    "fluency",
    "suitability",
)


class DimensionCheck(BaseModel):
    enabled: bool = False
    threshold: float = Field(default=7.0, ge=0, le=9)


class SimilarityCheck(BaseModel):
    enabled: bool = False
    threshold: float = Field(default=0.6, ge=0, le=1)


class GateDimensions(BaseModel):
    persona_adherence: DimensionCheck = Field(default_factory=DimensionCheck)
    self_consistency: DimensionCheck = Field(default_factory=DimensionCheck)
    fluency: DimensionCheck = Field(default_factory=DimensionCheck)
    suitability: DimensionCheck = Field(default_factory=DimensionCheck)

    def enabled(self) -> list[tuple[str, DimensionCheck]]:
        return [(name, getattr(self, name)) for name in GATE_DIMENSIONS if getattr(self, name).enabled]


class PipelineConfig(BaseModel):
    """Action gate and correction pipeline policy."""

    dimensions: GateDimensions = Field(default_factory=GateDimensions)
    similarity: SimilarityCheck = Field(default_factory=SimilarityCheck)
    enable_regeneration: bool = True
    enable_direct_correction: bool = False
    max_correction_attempts: int = Field(default=2, ge=0, le=10)
    continue_on_failure: bool = True
    minimum_required_qty_of_actions: int = Field(default=0, ge=0)


class InterventionSettings(BaseModel):
    anti_convergence_enabled: bool = False
    convergence_threshold: float = Field(default=0.6, ge=0, le=1)
    variety_intervention_enabled: bool = False
    variety_message_threshold: int = Field(default=7, ge=1)


class RepetitionSettings(BaseModel):
    enabled: bool = False
    threshold: float = Field(default=0.3, ge=0, le=1)


class ResolvedConfig(BaseModel):
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    interventions: InterventionSettings = Field(default_factory=InterventionSettings)
    repetition: RepetitionSettings = Field(default_factory=RepetitionSettings)


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def resolve_config(conn: sqlite3.Connection, agent_id: str) -> ResolvedConfig:
    """The agent's stored policy, or the defaults when none is stored."""
    stored = repo.get_agent_eval_config(conn, agent_id)
    if stored is None:
        logger.debug("resolve_config_defaults", agent_id=agent_id)
        return ResolvedConfig()
    logger.debug("resolve_config_loaded", agent_id=agent_id)
    return ResolvedConfig.model_validate(stored)


def update_config(
    conn: sqlite3.Connection,
    agent_id: str,
    partial: dict[str, Any],
) -> ResolvedConfig:
    """Deep-merge ``partial`` into the agent's policy and persist the result.

    Raises:
        ValidationError: the merged document is not a valid policy.
    """
    if not agent_id or not agent_id.strip():
        raise ValidationError("agent_id is required")
    current = resolve_config(conn, agent_id).model_dump()
    try:
        updated = ResolvedConfig.model_validate(_deep_merge(current, partial))
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid evaluation config: {exc}") from exc
    repo.upsert_agent_eval_config(conn, agent_id, updated.model_dump())
    return updated
