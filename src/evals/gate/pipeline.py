"""Action gate: quality-check a candidate message and correct it if needed.

Per candidate the pipeline is a strictly sequential loop::

    original -> regenerated x N -> direct-corrected

Regeneration needs a ``regenerate`` callback. When direct correction is
also enabled, the last of the ``max_correction_attempts`` corrections is
reserved for it; otherwise every correction uses the one enabled stage.

Every attempt (original included) is logged as one ``CorrectionLog`` row, so
a single candidate never produces more than ``max_correction_attempts + 1``
rows. Log writes are best-effort: a storage failure is logged and never
changes the decision already computed.

When the attempts run out the best-scoring attempt is returned if
``continue_on_failure`` is set; otherwise the action is blocked, unless the
agent has produced fewer than ``minimum_required_qty_of_actions`` passing
actions recently (a silent agent is never starved).
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

import structlog

from src.evals.errors import GateBlocked, PersistenceError, ValidationError
from src.evals.gate.checks import QualityCheck, check_action_quality
from src.evals.gate.correction import direct_correct, format_regeneration_feedback
from src.evals.judge import Judge
from src.evals.policy import ResolvedConfig, resolve_config
from src.evals.scorers.base import require_agent
from src.persistence import repository as repo
from src.schemas.evaluation import CorrectionLog, CorrectionOutcome, CorrectionStage, TokenUsage

logger = structlog.get_logger(__name__)

Regenerator = Callable[[str], Awaitable[str]]

CONTEXT_MESSAGES = 10
SIMILARITY_HISTORY = 5
RECENT_ACTIONS_WINDOW = timedelta(hours=24)


@dataclass
class Attempt:
    stage: CorrectionStage
    text: str
    check: QualityCheck


@dataclass
class GateResult:
    """Explicit gate decision for one candidate message.

    ``final_text`` is None only when the action is blocked.
    """

    agent_id: str
    passed: bool
    blocked: bool
    final_text: str | None
    outcome: CorrectionOutcome
    attempts: list[Attempt] = field(default_factory=list)
    logs: list[CorrectionLog] = field(default_factory=list)
    token_usage: TokenUsage = field(default_factory=TokenUsage)

    def raise_if_blocked(self) -> None:
        if self.blocked:
            raise GateBlocked(
                self.agent_id,
                len(self.attempts),
                "quality checks failed and continue_on_failure is off",
            )


def select_best_attempt(attempts: list[Attempt]) -> Attempt:
    """Highest total score; the earliest attempt wins ties."""
    best = attempts[0]
    for attempt in attempts[1:]:
        if attempt.check.total_score > best.check.total_score:
            best = attempt
    return best


def count_recent_passing_actions(
    conn: sqlite3.Connection,
    agent_id: str,
    now: datetime | None = None,
) -> int:
    now = now or datetime.now(timezone.utc)
    logs = repo.list_correction_logs(conn, agent_id, start=now - RECENT_ACTIONS_WINDOW)
    return sum(1 for log in logs if log.outcome == "passed")


def _log_attempt(conn: sqlite3.Connection, log: CorrectionLog) -> None:
    try:
        repo.save_correction_log(conn, log)
    except PersistenceError as exc:
        logger.error("correction_log_failed", agent_id=log.agent_id, error=str(exc))


async def run_action_gate(
    conn: sqlite3.Connection,
    agent_id: str,
    candidate: str,
    judge: Judge,
    context_messages: list[str] | None = None,
    regenerate: Regenerator | None = None,
    corrector: Any | None = None,
    run_id: str | None = None,
    channel_id: str | None = None,
    config: ResolvedConfig | None = None,
    prior_action_count: int | None = None,
) -> GateResult:
    """Gate a candidate message before delivery.

    Args:
        context_messages: Conversation context shown to the judge. Defaults to
            the channel's last few messages when ``channel_id`` is given.
        regenerate: Async callback receiving the JSON feedback document and
            returning a new candidate. Regeneration is skipped without it.
        corrector: Chat model for direct correction (the ``corrector`` role
            by default).
        config: Policy override; read once from storage when omitted.
        prior_action_count: Recent passing actions for the minimum-actions
            override; counted from the correction logs when omitted.
    """
    if not candidate or not candidate.strip():
        raise ValidationError("candidate text is required")
    agent = require_agent(conn, agent_id)
    config = config or resolve_config(conn, agent_id)
    pipeline = config.pipeline
    agent_name = agent["display_name"]
    persona = agent.get("persona") or None

    if context_messages is None:
        context_messages = []
        if channel_id is not None:
            context_messages = [
                m.text for m in repo.get_channel_messages(conn, channel_id)[-CONTEXT_MESSAGES:]
            ]
    recent_own = [
        m.text
        for m in repo.get_recent_agent_messages(conn, agent_id, SIMILARITY_HISTORY, channel_id)
    ]

    started = time.monotonic()
    attempts: list[Attempt] = []
    logs: list[CorrectionLog] = []
    usage = TokenUsage()
    text, stage = candidate, "original"
    regenerations = 0
    can_regenerate = pipeline.enable_regeneration and regenerate is not None
    can_correct = can_regenerate or pipeline.enable_direct_correction
    regeneration_budget = pipeline.max_correction_attempts
    if can_regenerate and pipeline.enable_direct_correction:
        # the final correction is always a direct edit
        regeneration_budget -= 1
    correction_usage = TokenUsage()

    while True:
        check = await check_action_quality(
            judge, pipeline, agent_name, text, context_messages, recent_own, persona
        )
        usage = usage + check.token_usage
        attempts.append(Attempt(stage=stage, text=text, check=check))
        budget_left = len(attempts) <= pipeline.max_correction_attempts

        if check.passed:
            outcome: CorrectionOutcome = "passed"
        elif budget_left and can_correct:
            outcome = "failed"
        else:
            outcome = "exhausted"

        log = CorrectionLog(
            agent_id=agent_id,
            run_id=run_id,
            channel_id=channel_id,
            original_text=candidate,
            final_text=text,
            stage=stage,
            attempt_number=len(attempts),
            outcome=outcome,
            dimension_scores=check.dimension_scores,
            similarity_score=check.similarity.score if check.similarity else None,
            total_score=check.total_score,
            token_usage=check.token_usage + correction_usage,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        logs.append(log)
        _log_attempt(conn, log)
        correction_usage = TokenUsage()

        if outcome != "failed":
            break

        if can_regenerate and regenerations < regeneration_budget:
            regenerations += 1
            feedback = format_regeneration_feedback(
                text, check, regenerations, regeneration_budget
            )
            logger.info("gate_regeneration_requested", agent_id=agent_id, attempt=regenerations)
            text, stage = await regenerate(feedback), "regenerated"
        else:
            text, correction_usage = await direct_correct(
                text, check, agent_name, persona, context_messages, llm=corrector
            )
            usage = usage + correction_usage
            stage = "direct-corrected"

    last = attempts[-1]
    if last.check.passed:
        logger.info("gate_passed", agent_id=agent_id, stage=last.stage, attempts=len(attempts))
        return GateResult(
            agent_id=agent_id,
            passed=True,
            blocked=False,
            final_text=last.text,
            outcome="passed",
            attempts=attempts,
            logs=logs,
            token_usage=usage,
        )

    best = select_best_attempt(attempts)
    blocked = not pipeline.continue_on_failure
    if blocked and pipeline.minimum_required_qty_of_actions > 0:
        if prior_action_count is None:
            prior_action_count = count_recent_passing_actions(conn, agent_id)
        if prior_action_count < pipeline.minimum_required_qty_of_actions:
            logger.info(
                "gate_block_overridden",
                agent_id=agent_id,
                prior_actions=prior_action_count,
                minimum=pipeline.minimum_required_qty_of_actions,
            )
            blocked = False

    logger.info(
        "gate_exhausted",
        agent_id=agent_id,
        attempts=len(attempts),
        best_score=best.check.total_score,
        blocked=blocked,
    )
    return GateResult(
        agent_id=agent_id,
        passed=False,
        blocked=blocked,
        final_text=None if blocked else best.text,
        outcome="exhausted",
        attempts=attempts,
        logs=logs,
        token_usage=usage,
    )
