"""Intervention builder.

An intervention evaluates up to three precondition layers against a windowed
trajectory and, when every configured layer holds, fires its effect (a nudge).
Layers are evaluated cheapest first and short-circuit:

1. functional: a plain predicate, no judge call
2. textual: a boolean judge ``check`` of a free-text claim
3. propositional: a scored proposition (holds when the score is below the
   threshold) or, without a threshold, a boolean ``check`` of its claim

A layer that is not configured stays ``None`` in the log row. Every
evaluation is logged, fired or not.
"""

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from typing import Callable

import structlog

from src.evals.aggregation import adjust_score
from src.evals.errors import JudgeError, PersistenceError
from src.evals.judge import Judge
from src.evals.scorers.base import apply_window
from src.persistence import repository as repo
from src.schemas.evaluation import (
    InterventionLog,
    InterventionType,
    Proposition,
    TokenUsage,
    TrajectoryEntry,
)

logger = structlog.get_logger(__name__)

FunctionalPrecondition = Callable[["InterventionContext"], bool]
Effect = Callable[["InterventionContext"], "str | None"]


@dataclass
class InterventionContext:
    agent_id: str
    channel_id: str | None
    trajectory: list[TrajectoryEntry]
    persona: str | None = None


@dataclass
class InterventionResult:
    intervention_type: InterventionType
    fired: bool
    nudge_text: str | None = None
    textual_result: bool | None = None
    functional_result: bool | None = None
    propositional_result: bool | None = None
    propositional_score: float | None = None
    token_usage: TokenUsage = field(default_factory=TokenUsage)
    error: str | None = None


class Intervention:
    """Fluent builder; every ``set_*`` returns ``self``."""

    def __init__(self, intervention_type: InterventionType = "custom") -> None:
        self.intervention_type = intervention_type
        self.textual_claim: str | None = None
        self.functional: FunctionalPrecondition | None = None
        self.proposition: Proposition | None = None
        self.threshold: float | None = None
        self.effect: Effect | None = None
        self.first_n = 10
        self.last_n = 100

    def set_textual_precondition(self, claim: str) -> Intervention:
        self.textual_claim = claim
        return self

    def set_functional_precondition(self, fn: FunctionalPrecondition) -> Intervention:
        self.functional = fn
        return self

    def set_propositional_precondition(
        self,
        proposition: Proposition,
        threshold: float | None = None,
    ) -> Intervention:
        self.proposition = proposition
        self.threshold = threshold
        return self

    def set_effect(self, fn: Effect) -> Intervention:
        self.effect = fn
        return self

    def set_trajectory_window(self, first_n: int, last_n: int) -> Intervention:
        self.first_n = first_n
        self.last_n = last_n
        return self

    async def evaluate(
        self,
        context: InterventionContext,
        judge: Judge,
        conn: sqlite3.Connection | None = None,
    ) -> InterventionResult:
        """Evaluate the preconditions, fire the effect and log the outcome.

        A judge failure in any layer means the intervention does not fire;
        the layers resolved before it are kept. With ``conn`` the result is
        written to ``intervention_logs`` (best-effort) in every case.
        """
        trajectory = apply_window(context.trajectory, self.first_n, self.last_n)
        result = InterventionResult(intervention_type=self.intervention_type, fired=False)
        try:
            holds = await self._evaluate_layers(context, trajectory, judge, result)
        except JudgeError as exc:
            logger.warning(
                "intervention_judge_failed",
                agent_id=context.agent_id,
                intervention_type=self.intervention_type,
                error=str(exc),
            )
            result.error = str(exc)
            holds = False

        if holds and self.effect is not None:
            result.nudge_text = self.effect(context)
        result.fired = holds

        logger.info(
            "intervention_evaluated",
            agent_id=context.agent_id,
            intervention_type=self.intervention_type,
            fired=result.fired,
            functional=result.functional_result,
            textual=result.textual_result,
            propositional=result.propositional_result,
        )
        if conn is not None:
            self._log(conn, context, result)
        return result

    async def _evaluate_layers(
        self,
        context: InterventionContext,
        trajectory: list[TrajectoryEntry],
        judge: Judge,
        result: InterventionResult,
    ) -> bool:
        if self.functional is not None:
            result.functional_result = bool(self.functional(context))
            if not result.functional_result:
                return False

        if self.textual_claim is not None:
            verdict = await judge.check(self.textual_claim, trajectory, persona=context.persona)
            result.token_usage = result.token_usage + verdict.token_usage
            result.textual_result = verdict.result
            if not verdict.result:
                return False

        if self.proposition is not None:
            if self.threshold is not None:
                verdict = await judge.score(
                    self.proposition.claim,
                    trajectory,
                    persona=context.persona,
                    proposition_id=self.proposition.id,
                )
                result.propositional_score = adjust_score(verdict.score, self.proposition, hard=False)
                result.propositional_result = result.propositional_score < self.threshold
            else:
                verdict = await judge.check(self.proposition.claim, trajectory, persona=context.persona)
                result.propositional_result = verdict.result
            result.token_usage = result.token_usage + verdict.token_usage
            return result.propositional_result
        return True

    def _log(
        self,
        conn: sqlite3.Connection,
        context: InterventionContext,
        result: InterventionResult,
    ) -> None:
        try:
            repo.save_intervention_log(
                conn,
                InterventionLog(
                    agent_id=context.agent_id,
                    channel_id=context.channel_id,
                    intervention_type=self.intervention_type,
                    textual_claim=self.textual_claim,
                    textual_result=result.textual_result,
                    functional_result=result.functional_result,
                    propositional_result=result.propositional_result,
                    fired=result.fired,
                    nudge_text=result.nudge_text,
                    token_usage=result.token_usage,
                ),
            )
        except PersistenceError as exc:
            logger.error("intervention_log_failed", agent_id=context.agent_id, error=str(exc))


class InterventionBatch:
    """The same intervention configuration applied to several agents."""

    def __init__(self, interventions: dict[str, Intervention]) -> None:
        self.interventions = interventions

    @classmethod
    def create_for_each(
        cls,
        agent_ids: list[str],
        factory: Callable[[str], Intervention],
    ) -> InterventionBatch:
        return cls({agent_id: factory(agent_id) for agent_id in agent_ids})

    async def evaluate_all(
        self,
        contexts: dict[str, InterventionContext],
        judge: Judge,
        conn: sqlite3.Connection | None = None,
    ) -> dict[str, InterventionResult]:
        """Evaluate every intervention that has a context; agents without one are skipped."""
        agent_ids = [a for a in self.interventions if a in contexts]
        skipped = set(self.interventions) - set(agent_ids)
        if skipped:
            logger.info("intervention_batch_skipped", agents=sorted(skipped))
        results = await asyncio.gather(
            *(self.interventions[a].evaluate(contexts[a], judge, conn) for a in agent_ids)
        )
        return dict(zip(agent_ids, results))
