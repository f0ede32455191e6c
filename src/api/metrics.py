"""Prometheus metrics for the evaluation API.

Tracks scorer runs, judge calls, gate decisions, correction attempts and intervention
firings. Exposed via the /api/v1/metrics endpoint in Prometheus format.
"""

from __future__ import annotations

from prometheus_client import Counter, Histogram, generate_latest

# ---------------------------------------------------------------------------
# Metric definitions
# ---------------------------------------------------------------------------

EVALUATION_RUNS = Counter(
    "persona_eval_runs_total",
    "Evaluation runs requested through the API",
    ["dimension", "status"],
)
EVALUATION_DURATION = Histogram(
    "persona_eval_run_duration_seconds",
    "Wall-clock time of one scorer run",
    ["dimension"],
)
GATE_DECISIONS = Counter(
    "persona_eval_gate_decisions_total",
    "Action gate decisions",
    ["outcome", "blocked"],
)
CORRECTION_ATTEMPTS = Counter(
    "persona_eval_correction_attempts_total",
    "Quality-checked attempts, by correction stage",
    ["stage"],
)
INTERVENTIONS_FIRED = Counter(
    "persona_eval_interventions_fired_total",
    "Interventions that produced a nudge",
    ["intervention_type"],
)
JUDGE_CALLS = Counter(
    "persona_eval_judge_calls_total",
    "Judge calls made on behalf of API requests",
    ["method", "status"],
)
HARNESS_AGENTS = Counter(
    "persona_eval_harness_agents_total",
    "Agents evaluated by the harness",
    ["passed"],
)


# ---------------------------------------------------------------------------
# Helper functions
# ---------------------------------------------------------------------------


def record_evaluation_run(dimension: str, status: str, duration_s: float | None = None) -> None:
    EVALUATION_RUNS.labels(dimension=dimension, status=status).inc()
    if duration_s is not None:
        EVALUATION_DURATION.labels(dimension=dimension).observe(duration_s)


def record_gate_decision(outcome: str, blocked: bool, stages: list[str]) -> None:
    GATE_DECISIONS.labels(outcome=outcome, blocked=str(blocked).lower()).inc()
    for stage in stages:
        CORRECTION_ATTEMPTS.labels(stage=stage).inc()


def record_judge_call(method: str, status: str) -> None:
    JUDGE_CALLS.labels(method=method, status=status).inc()


def record_intervention_fired(intervention_type: str) -> None:
    INTERVENTIONS_FIRED.labels(intervention_type=intervention_type).inc()


def record_harness_agent(passed: bool) -> None:
    HARNESS_AGENTS.labels(passed=str(passed).lower()).inc()


def get_metrics_text() -> str:
    """Generate Prometheus metrics text output."""
    return generate_latest().decode("utf-8")
