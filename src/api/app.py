"""FastAPI application for the persona evaluation pipeline.

Exposes the dimension scorers, the action gate, interventions, baselines,
the harness, cost summaries and per-agent policy to the chat app and CI.

Usage:
    uvicorn src.api.app:app --reload          # Development
    uvicorn src.api.app:app --host 0.0.0.0    # Production (behind reverse proxy)
"""

from __future__ import annotations

import os
import sqlite3
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import structlog
from fastapi import Body, Depends, FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from src.api.dependencies import get_db, get_judge, init_dependencies, reset_dependencies
from src.api.metrics import (
    get_metrics_text,
    record_evaluation_run,
    record_gate_decision,
    record_harness_agent,
    record_intervention_fired,
)
from src.api.schemas import (
    BaselineCaptureRequest,
    BaselineCompareRequest,
    ErrorResponse,
    GateAttemptResponse,
    GateRequest,
    GateResponse,
    HarnessRequest,
    HealthResponse,
    InterventionRequest,
    InterventionResponse,
    RepetitionResponse,
    RunDetailResponse,
    ScoreRequest,
)
from src.config import get_settings
from src.evals import baseline as baselines
from src.evals.cost import CostSummary, get_cost_summary
from src.evals.errors import (
    ConfigError,
    JudgeError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from src.evals.gate.pipeline import run_action_gate
from src.evals.gate.stats import GateStats, get_gate_stats
from src.evals.harness.golden import detect_regressions, list_golden_baselines, load_golden_baseline
from src.evals.harness.runner import run_evaluation
from src.evals.interventions.evaluate import evaluate_interventions
from src.evals.interventions.repetition import check_repetition_suppression
from src.evals.judge import Judge
from src.evals.judge import get_judge as build_judge
from src.evals.policy import ResolvedConfig, resolve_config, update_config
from src.evals.scorers.adherence import score_adherence
from src.evals.scorers.base import ScorerOptions, require_agent, require_channel
from src.evals.scorers.consistency import score_consistency
from src.evals.scorers.convergence import score_convergence
from src.evals.scorers.fluency import score_fluency
from src.evals.scorers.ideas_quantity import score_ideas_quantity
from src.logging_config import setup_logging
from src.persistence import repository as repo
from src.persistence.db import get_connection
from src.schemas.evaluation import GoldenBaseline, Regression, ScoreResult, TimeWindow

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# App lifespan (startup / shutdown)
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Open the database and build the judge on startup, close on shutdown."""
    settings = get_settings()
    setup_logging(settings.log_level, json_logs=settings.json_logs)
    init_dependencies(get_connection(settings.database_url), build_judge(settings))
    logger.info("api_started", judge_mode=settings.judge_mode, database=settings.database_url)

    yield

    conn = reset_dependencies()
    if conn is not None:
        conn.close()
    logger.info("api_shutdown")


# ---------------------------------------------------------------------------
# FastAPI app
# ---------------------------------------------------------------------------

app = FastAPI(
    title="Persona Evaluation API",
    description=(
        "Proposition-based scoring, action gating and interventions "
        "for persona-driven chat agents."
    ),
    version="0.1.0",
    lifespan=lifespan,
)

# CORS: configurable via EVAL_CORS_ORIGINS env var
cors_origins = os.environ.get("EVAL_CORS_ORIGINS", "").split(",")
cors_origins = [o.strip() for o in cors_origins if o.strip()]
if cors_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


# ---------------------------------------------------------------------------
# Error mapping
# ---------------------------------------------------------------------------


def _error(status_code: int, error: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=error, detail=detail).model_dump(),
    )


@app.exception_handler(ValidationError)
async def _validation_error(request: Request, exc: ValidationError) -> JSONResponse:
    return _error(422, "validation_error", str(exc))


@app.exception_handler(NotFoundError)
async def _not_found(request: Request, exc: NotFoundError) -> JSONResponse:
    return _error(404, "not_found", str(exc))


@app.exception_handler(JudgeError)
async def _judge_error(request: Request, exc: JudgeError) -> JSONResponse:
    logger.error("judge_error", path=request.url.path, error=str(exc))
    return _error(502, "judge_error", str(exc))


@app.exception_handler(ConfigError)
async def _config_error(request: Request, exc: ConfigError) -> JSONResponse:
    logger.error("config_error", path=request.url.path, error=str(exc))
    return _error(500, "config_error", str(exc))


@app.exception_handler(PersistenceError)
async def _persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
    logger.error("persistence_error", path=request.url.path, error=str(exc))
    return _error(500, "persistence_error", "Storage failure")


# ---------------------------------------------------------------------------
# Scorers
# ---------------------------------------------------------------------------


def _options(request: ScoreRequest | None) -> ScorerOptions:
    if request is None:
        return ScorerOptions()
    window = None
    if request.start is not None or request.end is not None:
        window = TimeWindow(start=request.start, end=request.end)
    return ScorerOptions(window=window, hard=request.hard)


async def _timed(dimension: str, scorer) -> Any:  # noqa: ANN001
    started = time.perf_counter()
    try:
        result = await scorer
    except JudgeError:
        record_evaluation_run(dimension, "failed")
        raise
    record_evaluation_run(dimension, result.status, time.perf_counter() - started)
    return result


@app.post("/api/v1/agents/{agent_id}/scores/adherence", response_model=ScoreResult,
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def adherence(
    agent_id: str,
    request: ScoreRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Score how well the agent's recent messages fit its persona."""
    return await _timed("adherence", score_adherence(conn, agent_id, judge, _options(request)))


@app.post("/api/v1/agents/{agent_id}/scores/consistency",
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def consistency(
    agent_id: str,
    request: ScoreRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Compare the agent's current window against its own history."""
    result = await _timed("consistency", score_consistency(conn, agent_id, judge, _options(request)))
    return result.model_dump()


@app.post("/api/v1/agents/{agent_id}/scores/fluency",
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def fluency(
    agent_id: str,
    request: ScoreRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    result = await _timed("fluency", score_fluency(conn, agent_id, judge, _options(request)))
    return result.model_dump()


@app.post("/api/v1/channels/{channel_id}/scores/convergence",
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def convergence(
    channel_id: str,
    request: ScoreRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Score whether the channel's speakers are blending into one voice."""
    result = await _timed("convergence", score_convergence(conn, channel_id, judge, _options(request)))
    return result.model_dump()


@app.post("/api/v1/channels/{channel_id}/scores/ideas-quantity",
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def ideas_quantity(
    channel_id: str,
    request: ScoreRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    result = await _timed(
        "ideas_quantity", score_ideas_quantity(conn, channel_id, judge, _options(request))
    )
    return result.model_dump()


# ---------------------------------------------------------------------------
# Evaluation runs
# ---------------------------------------------------------------------------


@app.get("/api/v1/runs")
async def list_runs(
    agent_id: str | None = None,
    limit: int = 50,
    conn: sqlite3.Connection = Depends(get_db),
):
    if not 1 <= limit <= 500:
        raise ValidationError("limit must be between 1 and 500")
    return [run.model_dump() for run in repo.list_evaluation_runs(conn, agent_id, limit)]


@app.get("/api/v1/runs/{run_id}", response_model=RunDetailResponse,
         responses={404: {"model": ErrorResponse}})
async def get_run(run_id: str, conn: sqlite3.Connection = Depends(get_db)):
    run = repo.get_evaluation_run(conn, run_id)
    if run is None:
        raise NotFoundError("evaluation run", run_id)
    return RunDetailResponse(run=run.model_dump(), scores=repo.get_evaluation_scores(conn, run_id))


@app.delete("/api/v1/runs/{run_id}", responses={404: {"model": ErrorResponse}})
async def delete_run(run_id: str, conn: sqlite3.Connection = Depends(get_db)):
    """Delete a run together with its proposition scores."""
    if not repo.delete_evaluation_run(conn, run_id):
        raise NotFoundError("evaluation run", run_id)
    return {"run_id": run_id, "deleted": True}


# ---------------------------------------------------------------------------
# Action gate
# ---------------------------------------------------------------------------


@app.post("/api/v1/gate", response_model=GateResponse,
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def gate(
    request: GateRequest,
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Quality-check a candidate message before delivery.

    Regeneration needs the agent runtime, so over HTTP only direct
    correction applies (when the agent's policy enables it).
    """
    result = await run_action_gate(
        conn,
        request.agent_id,
        request.candidate,
        judge,
        context_messages=request.context_messages,
        run_id=request.run_id,
        channel_id=request.channel_id,
    )
    record_gate_decision(result.outcome, result.blocked, [a.stage for a in result.attempts])
    return GateResponse(
        agent_id=result.agent_id,
        passed=result.passed,
        blocked=result.blocked,
        final_text=result.final_text,
        outcome=result.outcome,
        attempts=[
            GateAttemptResponse(
                stage=a.stage,
                text=a.text,
                passed=a.check.passed,
                total_score=a.check.total_score,
                dimension_scores=a.check.dimension_scores,
                similarity_score=a.check.similarity.score if a.check.similarity else None,
            )
            for a in result.attempts
        ],
        token_usage=result.token_usage,
    )


@app.get("/api/v1/agents/{agent_id}/gate/stats", response_model=GateStats)
async def gate_stats(
    agent_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    """Pass rates and score statistics per correction stage."""
    return get_gate_stats(conn, agent_id, start, end)


@app.get("/api/v1/agents/{agent_id}/correction-logs")
async def correction_logs(
    agent_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    return [log.model_dump() for log in repo.list_correction_logs(conn, agent_id, start, end)]


# ---------------------------------------------------------------------------
# Interventions
# ---------------------------------------------------------------------------


@app.post("/api/v1/interventions/evaluate", response_model=InterventionResponse,
          responses={404: {"model": ErrorResponse}, 500: {"model": ErrorResponse}})
async def interventions(
    request: InterventionRequest,
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Evaluate the agent's interventions against the channel's recent messages."""
    messages = []
    if request.channel_id is not None:
        require_channel(conn, request.channel_id)
        messages = repo.get_channel_messages(conn, request.channel_id)[-request.message_limit :]
    outcome = await evaluate_interventions(conn, request.agent_id, request.channel_id, messages, judge)
    if outcome.fired_type is not None:
        record_intervention_fired(outcome.fired_type)
    return InterventionResponse(
        agent_id=request.agent_id,
        channel_id=request.channel_id,
        nudge_text=outcome.nudge_text,
        fired_type=outcome.fired_type,
        evaluated=outcome.evaluated,
        token_usage=outcome.token_usage,
    )


@app.get("/api/v1/agents/{agent_id}/intervention-logs")
async def intervention_logs(
    agent_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    return [log.model_dump() for log in repo.list_intervention_logs(conn, agent_id, start, end)]


@app.get("/api/v1/agents/{agent_id}/repetition", response_model=RepetitionResponse)
async def repetition(agent_id: str, conn: sqlite3.Connection = Depends(get_db)):
    require_agent(conn, agent_id)
    check = check_repetition_suppression(conn, agent_id)
    return RepetitionResponse(
        agent_id=agent_id,
        detected=check.detected,
        overlap_score=check.overlap_score,
        repeated_ngrams=check.repeated_ngrams,
        context=check.context,
    )


# ---------------------------------------------------------------------------
# Baselines
# ---------------------------------------------------------------------------


@app.post("/api/v1/agents/{agent_id}/baseline", response_model=baselines.BaselineResult,
          responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def capture_baseline(
    agent_id: str,
    request: BaselineCaptureRequest | None = Body(default=None),
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Re-run the scorers and store the results as the agent's baseline."""
    request = request or BaselineCaptureRequest()
    window = None
    if request.start is not None or request.end is not None:
        window = TimeWindow(start=request.start, end=request.end)
    return await baselines.capture_baseline(conn, agent_id, judge, request.dimensions, window)


@app.get("/api/v1/agents/{agent_id}/baseline", response_model=baselines.BaselineResult,
         responses={404: {"model": ErrorResponse}})
async def get_baseline(agent_id: str, conn: sqlite3.Connection = Depends(get_db)):
    return baselines.get_baseline(conn, agent_id)


@app.get("/api/v1/baselines", response_model=list[baselines.BaselineResult])
async def list_baselines(conn: sqlite3.Connection = Depends(get_db)):
    return baselines.list_baselines(conn)


@app.post("/api/v1/agents/{agent_id}/baseline/compare", response_model=list[baselines.BaselineDelta],
          responses={404: {"model": ErrorResponse}})
async def compare_baseline(
    agent_id: str,
    request: BaselineCompareRequest,
    conn: sqlite3.Connection = Depends(get_db),
):
    return baselines.compare_to_baseline(conn, agent_id, request.scores)


@app.get("/api/v1/golden-baselines", response_model=list[GoldenBaseline])
async def golden_baselines():
    return list_golden_baselines()


@app.get("/api/v1/golden-baselines/{agent_id}", response_model=GoldenBaseline,
         responses={404: {"model": ErrorResponse}})
async def golden_baseline(agent_id: str):
    golden = load_golden_baseline(agent_id)
    if golden is None:
        raise NotFoundError("golden baseline", agent_id)
    return golden


@app.post("/api/v1/golden-baselines/{agent_id}/regressions", response_model=list[Regression],
          responses={404: {"model": ErrorResponse}})
async def golden_regressions(agent_id: str, request: BaselineCompareRequest, delta: float = 1.0):
    """Dimensions of ``scores`` that dropped more than ``delta`` below the golden baseline."""
    if delta < 0:
        raise ValidationError("delta must be non-negative")
    golden = load_golden_baseline(agent_id)
    if golden is None:
        raise NotFoundError("golden baseline", agent_id)
    current = {dim: score for dim, score in request.scores.items() if score is not None}
    return detect_regressions(current, golden.dimensions, delta)


# ---------------------------------------------------------------------------
# Harness
# ---------------------------------------------------------------------------


@app.post("/api/v1/harness", responses={422: {"model": ErrorResponse}})
async def harness(
    request: HarnessRequest,
    conn: sqlite3.Connection = Depends(get_db),
    judge: Judge = Depends(get_judge),
):
    """Run the evaluation harness on demand (never updates golden baselines)."""
    result = await run_evaluation(
        request.agents,
        request.dimensions,
        request.threshold,
        judge=None if request.mock_judge else judge,
        mock_judge=request.mock_judge,
        regression_delta=request.regression_delta,
        conn=conn,
    )
    for agent in result.agents.values():
        record_harness_agent(agent.passed)
    return result.to_json_dict()


# ---------------------------------------------------------------------------
# Cost and config
# ---------------------------------------------------------------------------


@app.get("/api/v1/costs", response_model=CostSummary)
async def costs(
    agent_id: str | None = None,
    start: datetime | None = None,
    end: datetime | None = None,
    conn: sqlite3.Connection = Depends(get_db),
):
    return get_cost_summary(conn, agent_id, start, end)


@app.get("/api/v1/agents/{agent_id}/config", response_model=ResolvedConfig)
async def get_config(agent_id: str, conn: sqlite3.Connection = Depends(get_db)):
    """The agent's effective gate/intervention policy (defaults when unset)."""
    require_agent(conn, agent_id)
    return resolve_config(conn, agent_id)


@app.put("/api/v1/agents/{agent_id}/config", response_model=ResolvedConfig,
         responses={404: {"model": ErrorResponse}, 422: {"model": ErrorResponse}})
async def put_config(
    agent_id: str,
    partial: dict[str, Any] = Body(...),
    conn: sqlite3.Connection = Depends(get_db),
):
    """Deep-merge ``partial`` into the agent's stored policy."""
    require_agent(conn, agent_id)
    return update_config(conn, agent_id, partial)


# ---------------------------------------------------------------------------
# Health & Metrics
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint for load balancers and monitoring."""
    settings = get_settings()
    try:
        get_db().execute("SELECT 1")
        connected = True
    except Exception:  # any failure means unhealthy, never a 500
        connected = False
    return HealthResponse(
        status="healthy" if connected else "degraded",
        judge_mode=settings.judge_mode,
        db_connected=connected,
    )


@app.get("/api/v1/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(
        content=get_metrics_text(),
        media_type="text/plain; charset=utf-8",
    )
