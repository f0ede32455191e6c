"""Character-aware nudge templates (``nudges.toml``).

Every agent table must define all five nudge types. The file is validated
eagerly on load; asking for an agent without a table is a ConfigError.
There is no generic fallback text.
"""

from __future__ import annotations

import tomllib
from pathlib import Path

import structlog

from src.config import get_settings
from src.evals.errors import ConfigError
from src.schemas.evaluation import NUDGE_TYPES

logger = structlog.get_logger(__name__)

_NUDGES_CACHE: dict[Path, dict[str, dict[str, str]]] = {}


def load_nudges(path: Path | None = None) -> dict[str, dict[str, str]]:
    """Load and validate the nudge templates. Cached per path."""
    path = path or get_settings().nudges_path
    if path in _NUDGES_CACHE:
        return _NUDGES_CACHE[path]
    if not path.exists():
        raise ConfigError(f"Nudge templates not found: {path}")

    with open(path, "rb") as f:
        try:
            raw = tomllib.load(f)
        except tomllib.TOMLDecodeError as exc:
            raise ConfigError(f"Invalid nudge templates {path}: {exc}") from exc

    templates: dict[str, dict[str, str]] = {}
    for agent_id, table in raw.items():
        if not isinstance(table, dict):
            raise ConfigError(f"Nudge entry for {agent_id} must be a table")
        missing = [t for t in NUDGE_TYPES if not isinstance(table.get(t), str) or not table[t].strip()]
        if missing:
            raise ConfigError(f"Nudge templates for {agent_id} missing: {', '.join(missing)}")
        templates[agent_id] = {t: table[t] for t in NUDGE_TYPES}

    logger.debug("nudges_loaded", path=str(path), agents=len(templates))
    _NUDGES_CACHE[path] = templates
    return templates


def require_nudges(agent_id: str, path: Path | None = None) -> dict[str, str]:
    templates = load_nudges(path)
    if agent_id not in templates:
        raise ConfigError(f"No nudge templates defined for agent {agent_id}")
    return templates[agent_id]


def get_nudge_text(agent_id: str, nudge_type: str, path: Path | None = None) -> str:
    if nudge_type not in NUDGE_TYPES:
        raise ConfigError(f"Unknown nudge type: {nudge_type}")
    return require_nudges(agent_id, path)[nudge_type]
