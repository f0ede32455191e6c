"""Built-in interventions: anti-convergence and variety."""

from __future__ import annotations

from pathlib import Path

from src.evals.interventions.intervention import Intervention, InterventionContext
from src.evals.interventions.nudges import get_nudge_text
from src.schemas.evaluation import Proposition

ANTI_CONVERGENCE_CLAIM = (
    "The agents in this conversation are converging on the same opinions and agreeing "
    "with each other too readily, without meaningful pushback or diverse perspectives."
)

VARIETY_CLAIM = (
    "The agent is recycling the same ideas and not proposing anything genuinely new or different."
)

DIVERSE_PERSPECTIVES = Proposition(
    id="intervention-diverse-perspectives",
    claim=(
        "The participants in this conversation express distinct opinions and push back "
        "on each other where they disagree."
    ),
)


def create_anti_convergence_intervention(
    agent_id: str,
    convergence_threshold: float | None = None,
    nudges_path: Path | None = None,
) -> Intervention:
    """Devil's-advocate nudge when the channel is converging.

    ``convergence_threshold`` (0..1) adds a propositional layer: the diverse
    perspectives proposition must score below ``threshold * 9``.
    """
    intervention = (
        Intervention("anti_convergence")
        .set_textual_precondition(ANTI_CONVERGENCE_CLAIM)
        .set_effect(lambda ctx: get_nudge_text(agent_id, "devils_advocate", nudges_path))
        .set_trajectory_window(5, 15)
    )
    if convergence_threshold is not None:
        intervention.set_propositional_precondition(DIVERSE_PERSPECTIVES, convergence_threshold * 9)
    return intervention


def create_variety_intervention(
    agent_id: str,
    message_threshold: int = 7,
    nudges_path: Path | None = None,
) -> Intervention:
    """New-ideas nudge once the conversation is long enough and the agent is recycling ideas."""

    def _long_enough(ctx: InterventionContext) -> bool:
        return len(ctx.trajectory) >= message_threshold

    return (
        Intervention("variety")
        .set_functional_precondition(_long_enough)
        .set_textual_precondition(VARIETY_CLAIM)
        .set_effect(lambda ctx: get_nudge_text(agent_id, "new_ideas", nudges_path))
        .set_trajectory_window(5, 20)
    )
