"""Error taxonomy for the evaluation and correction pipeline.

ValidationError and NotFoundError are raised at the boundary before any
scoring work starts. JudgeError is contained inside the scorers (the failing
proposition is dropped). ConfigError is fatal to the load or evaluation that
hit it. PersistenceError wraps storage failures.

GateBlocked is not an EvaluationError: it is the control-flow
signal for "the correction pipeline gave up and policy says block".
"""

from __future__ import annotations


class EvaluationError(Exception):
    """Base class for evaluation pipeline errors."""


class ValidationError(EvaluationError):
    """Malformed request shape or out-of-range parameter."""


class NotFoundError(EvaluationError):
    """Referenced agent, channel, run or baseline does not exist."""

    def __init__(self, kind: str, identifier: str) -> None:
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} not found: {identifier}")


class JudgeError(EvaluationError):
    """The LLM judge failed or timed out for a single call."""

    def __init__(self, message: str, proposition_id: str | None = None) -> None:
        self.proposition_id = proposition_id
        super().__init__(message)


class ConfigError(EvaluationError):
    """Ambiguous or missing configuration (duplicate IDs, missing templates)."""


class PersistenceError(EvaluationError):
    """Storage read or write failure."""


class GateBlocked(Exception):
    """The action gate exhausted its attempts and policy blocks the action."""

    def __init__(self, agent_id: str, attempts: int, reason: str = "") -> None:
        self.agent_id = agent_id
        self.attempts = attempts
        self.reason = reason
        super().__init__(
            f"Action blocked for {agent_id} after {attempts} attempt(s)"
            + (f": {reason}" if reason else "")
        )
