"""Proposition library: load and merge weighted scoring claims from TOML files.

Layout::

    propositions/<dimension>/_default.toml   # always applied
    propositions/<dimension>/<agent_id>.toml # merged in for that agent

The merge is default ∪ agent-specific. An id present in both sets is a
ConfigError, never a silent overwrite.
"""

from __future__ import annotations

import re
import tomllib
from pathlib import Path
from typing import Literal

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from src.config import get_settings
from src.evals.errors import ConfigError
from src.schemas.evaluation import Proposition, PropositionSet

logger = structlog.get_logger(__name__)

DEFAULT_FILE = "_default.toml"
TEMPLATE_VAR = re.compile(r"\{\{(\w+)\}\}")


class _PropositionEntry(BaseModel):
    id: str = Field(..., min_length=1)
    claim: str = Field(..., min_length=1)
    weight: float = Field(default=1.0, gt=0)
    inverted: bool = False
    recommendations_for_improvement: str | None = None


class _PropositionFile(BaseModel):
    """Schema of one TOML proposition file."""

    dimension: str
    agent_id: str | None = None
    include_personas: bool | None = None
    hard: bool | None = None
    target_type: Literal["agent", "environment"] | None = None
    first_n: int | None = Field(default=None, ge=0)
    last_n: int | None = Field(default=None, ge=0)
    propositions: list[_PropositionEntry] = Field(default_factory=list)


def fill_template_variables(text: str, variables: dict[str, str] | None) -> str:
    """Replace ``{{name}}`` placeholders. Unknown placeholders are left as-is."""
    if not variables:
        return text

    def _sub(match: re.Match) -> str:
        key = match.group(1)
        return str(variables[key]) if key in variables else match.group(0)

    return TEMPLATE_VAR.sub(_sub, text)


def _read_file(path: Path) -> _PropositionFile:
    try:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        return _PropositionFile.model_validate(data)
    except (tomllib.TOMLDecodeError, PydanticValidationError) as exc:
        raise ConfigError(f"Invalid proposition file {path}: {exc}") from exc


def _resolve_dir(propositions_dir: Path | None) -> Path:
    return Path(propositions_dir) if propositions_dir else get_settings().propositions_dir


def load_propositions(
    dimension: str,
    agent_id: str | None = None,
    template_vars: dict[str, str] | None = None,
    propositions_dir: Path | None = None,
) -> PropositionSet:
    """Load the merged proposition set for a dimension.

    Args:
        dimension: Dimension directory name (e.g. "adherence").
        agent_id: Optional agent whose override file is merged in.
        template_vars: Values for ``{{agent_name}}``-style placeholders.
        propositions_dir: Root directory; defaults to ``Settings.propositions_dir``.

    Raises:
        ConfigError: missing default file, invalid file, or duplicate ids.
    """
    root = _resolve_dir(propositions_dir) / dimension
    default_path = root / DEFAULT_FILE
    if not default_path.exists():
        raise ConfigError(f"No default propositions for dimension '{dimension}' ({default_path})")

    default_file = _read_file(default_path)
    agent_file: _PropositionFile | None = None
    if agent_id:
        agent_path = root / f"{agent_id}.toml"
        if agent_path.exists():
            agent_file = _read_file(agent_path)

    tagged: list[Proposition] = []
    seen: dict[str, str] = {}
    sources = [("default", default_file)]
    if agent_file is not None:
        sources.append(("agent", agent_file))
    for source, prop_file in sources:
        for entry in prop_file.propositions:
            if entry.id in seen:
                raise ConfigError(
                    f"Duplicate proposition id '{entry.id}' in dimension '{dimension}' "
                    f"({seen[entry.id]} and {source} sets)"
                )
            seen[entry.id] = source
            tagged.append(
                Proposition(
                    id=entry.id,
                    claim=fill_template_variables(entry.claim, template_vars),
                    weight=entry.weight,
                    inverted=entry.inverted,
                    recommendations_for_improvement=(
                        fill_template_variables(entry.recommendations_for_improvement, template_vars)
                        if entry.recommendations_for_improvement
                        else None
                    ),
                    source=source,
                )
            )

    def _pick(field: str, fallback):  # noqa: ANN001, ANN202
        if agent_file is not None and getattr(agent_file, field) is not None:
            return getattr(agent_file, field)
        value = getattr(default_file, field)
        return fallback if value is None else value

    prop_set = PropositionSet(
        dimension=dimension,
        propositions=tagged,
        include_personas=_pick("include_personas", True),
        hard=_pick("hard", False),
        target_type=_pick("target_type", "agent"),
        first_n=_pick("first_n", None),
        last_n=_pick("last_n", None),
    )
    logger.debug(
        "propositions_loaded",
        dimension=dimension,
        agent_id=agent_id,
        count=len(tagged),
        agent_specific=sum(1 for p in tagged if p.source == "agent"),
    )
    return prop_set


def list_proposition_agents(dimension: str, propositions_dir: Path | None = None) -> list[str]:
    """Agent ids that have an override file for a dimension."""
    root = _resolve_dir(propositions_dir) / dimension
    if not root.exists():
        return []
    return sorted(p.stem for p in root.glob("*.toml") if p.name != DEFAULT_FILE)
