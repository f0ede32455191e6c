"""Golden baselines: curated, version-controlled reference scores.

One JSON file per agent under ``baselines/`` (``Settings.baselines_dir``).
Only the harness ``--update-baseline`` path writes them.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import structlog
from pydantic import ValidationError as PydanticValidationError

from src.config import get_settings
from src.evals.errors import ConfigError
from src.schemas.evaluation import GoldenBaseline, Regression

logger = structlog.get_logger(__name__)


def _baselines_dir(baselines_dir: Path | None) -> Path:
    return baselines_dir or get_settings().baselines_dir


def _read(path: Path) -> GoldenBaseline:
    try:
        return GoldenBaseline.model_validate_json(path.read_text(encoding="utf-8"))
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid golden baseline {path.name}: {exc}") from exc


def load_golden_baseline(agent_id: str, baselines_dir: Path | None = None) -> GoldenBaseline | None:
    """The agent's golden baseline, or None when it has none."""
    path = _baselines_dir(baselines_dir) / f"{agent_id}.json"
    if not path.exists():
        return None
    return _read(path)


def list_golden_baselines(baselines_dir: Path | None = None) -> list[GoldenBaseline]:
    directory = _baselines_dir(baselines_dir)
    if not directory.is_dir():
        return []
    return [_read(path) for path in sorted(directory.glob("*.json"))]


def save_golden_baseline(
    agent_id: str,
    dimensions: dict[str, float],
    proposition_scores: dict[str, float] | None = None,
    baselines_dir: Path | None = None,
) -> GoldenBaseline:
    directory = _baselines_dir(baselines_dir)
    directory.mkdir(parents=True, exist_ok=True)
    baseline = GoldenBaseline(
        agent_id=agent_id,
        captured_at=datetime.now(timezone.utc).isoformat(),
        dimensions=dimensions,
        proposition_scores=proposition_scores or {},
    )
    path = directory / f"{agent_id}.json"
    path.write_text(json.dumps(baseline.model_dump(), indent=2) + "\n", encoding="utf-8")
    logger.info("golden_baseline_saved", agent_id=agent_id, path=str(path))
    return baseline


def detect_regressions(
    current: dict[str, float],
    baseline: dict[str, float],
    delta: float,
) -> list[Regression]:
    """Dimensions where ``current - baseline < -delta``.

    Improvements and dimensions missing from ``current`` are never flagged.
    """
    regressions: list[Regression] = []
    for dimension, base in baseline.items():
        if dimension not in current:
            continue
        diff = current[dimension] - base
        if diff < -delta:
            regressions.append(
                Regression(dimension=dimension, baseline=base, current=current[dimension], delta=diff)
            )
    return regressions
