"""Tests for the action gate: quality checks, correction strategies, stats."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from src.evals.errors import GateBlocked, ValidationError
from src.evals.gate.checks import (
    QualityCheck,
    check_action_quality,
    compute_action_similarity,
)
from src.evals.gate.correction import (
    ESCALATION,
    build_correction_prompt,
    direct_correct,
    format_regeneration_feedback,
)
from src.evals.gate.pipeline import run_action_gate
from src.evals.gate.stats import compute_gate_stats, get_gate_stats
from src.evals.judge import Judge, MockJudge
from src.evals.policy import ResolvedConfig
from src.persistence import repository as repo
from src.schemas.evaluation import (
    CheckVerdict,
    CorrectionLog,
    DimensionScore,
    IdeasVerdict,
    JudgeVerdict,
)


class ScriptedJudge(Judge):
    """Returns scores keyed by the text of the candidate being gated."""

    def __init__(self, scores: dict[str, int], default: int = 2) -> None:
        self._scores = scores
        self._default = default
        self.calls = 0

    async def score(self, claim, trajectory, persona=None, proposition_id=None):
        self.calls += 1
        return JudgeVerdict(score=self._scores.get(trajectory[-1].text, self._default))

    async def check(self, claim, trajectory, persona=None):
        return CheckVerdict(result=False)

    async def enumerate_ideas(self, trajectory):
        return IdeasVerdict()


def _config(**pipeline) -> ResolvedConfig:
    base = {"dimensions": {"fluency": {"enabled": True, "threshold": 7}}}
    base.update(pipeline)
    return ResolvedConfig.model_validate({"pipeline": base})


def _corrector(text: str) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(
        return_value=AIMessage(
            content=json.dumps({"corrected_text": text}),
            usage_metadata={"input_tokens": 50, "output_tokens": 10, "total_tokens": 60},
        )
    )
    return llm


# ---------------------------------------------------------------------------
# Quality checks
# ---------------------------------------------------------------------------


class TestQualityCheck:
    @pytest.mark.asyncio
    async def test_nothing_enabled_passes_without_judge(self):
        judge = MockJudge()
        check = await check_action_quality(judge, ResolvedConfig().pipeline, "Michael", "Hi")
        assert check.passed is True
        assert judge.calls == []

    @pytest.mark.asyncio
    async def test_dimension_threshold(self):
        config = _config().pipeline
        passing = await check_action_quality(MockJudge(default_score=7), config, "Michael", "Hi")
        failing = await check_action_quality(MockJudge(scores={}, default_score=6), config, "Michael", "Hi")
        assert passing.passed is True
        assert failing.passed is False
        assert failing.failed_dimensions[0].dimension == "fluency"

    @pytest.mark.asyncio
    async def test_similarity_only(self):
        config = ResolvedConfig.model_validate({"pipeline": {"similarity": {"enabled": True}}}).pipeline
        check = await check_action_quality(
            MockJudge(), config, "Jim", "Bears beets Battlestar", recent_messages=["bears beets battlestar"]
        )
        assert check.passed is False
        assert check.similarity.score == 1.0

    def test_similarity_without_history_passes(self):
        assert compute_action_similarity("anything", []).passed is True

    def test_similarity_reports_most_similar(self):
        result = compute_action_similarity("a b c", ["x y z", "a b d"], threshold=0.9)
        assert result.most_similar == "a b d"
        assert result.passed is True


# ---------------------------------------------------------------------------
# Correction helpers
# ---------------------------------------------------------------------------


def _failed_check() -> QualityCheck:
    return QualityCheck(
        passed=False,
        dimension_scores=[DimensionScore(dimension="fluency", score=3, passed=False, reasoning="Robotic")],
        thresholds={"fluency": 7},
    )


class TestCorrectionHelpers:
    def test_feedback_document(self):
        feedback = json.loads(format_regeneration_feedback("Greetings.", _failed_check(), 1, 2))
        assert feedback["type"] == "quality_check_failed"
        assert feedback["tentativeAction"] == "Greetings."
        assert feedback["failedDimensions"][0]["dimension"] == "fluency"
        assert "Attempt 1 of 2" in feedback["instruction"]
        assert ESCALATION not in feedback["instruction"]

    def test_feedback_escalates_after_first_attempt(self):
        feedback = json.loads(format_regeneration_feedback("Greetings.", _failed_check(), 2, 2))
        assert ESCALATION in feedback["instruction"]

    def test_correction_prompt_mentions_rules(self):
        prompt = build_correction_prompt("Greetings.", _failed_check(), "Michael", persona="Boss")
        assert '"Greetings."' in prompt
        assert "Robotic" in prompt
        assert "Boss" in prompt

    @pytest.mark.asyncio
    async def test_direct_correct_parses_json(self):
        text, usage = await direct_correct("Greetings.", _failed_check(), "Michael", llm=_corrector("Hey gang!"))
        assert text == "Hey gang!"
        assert usage.input_tokens == 50

    @pytest.mark.asyncio
    async def test_direct_correct_fails_open(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("provider down"))
        text, usage = await direct_correct("Greetings.", _failed_check(), "Michael", llm=llm)
        assert text == "Greetings."
        assert usage.total == 0


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TestActionGate:
    @pytest.mark.asyncio
    async def test_auto_pass_when_nothing_enabled(self, seeded_conn):
        judge = MockJudge()
        result = await run_action_gate(seeded_conn, "michael", "Hi everyone!", judge)
        assert result.passed is True
        assert result.final_text == "Hi everyone!"
        assert judge.calls == []
        [log] = repo.list_correction_logs(seeded_conn, "michael")
        assert log.stage == "original"
        assert log.outcome == "passed"

    @pytest.mark.asyncio
    async def test_regeneration_fixes_candidate(self, seeded_conn):
        judge = ScriptedJudge({"Good one": 8})
        regenerate = AsyncMock(return_value="Good one")

        result = await run_action_gate(
            seeded_conn, "michael", "Bad one", judge, regenerate=regenerate, config=_config()
        )

        assert result.passed is True
        assert result.final_text == "Good one"
        assert [a.stage for a in result.attempts] == ["original", "regenerated"]
        feedback = json.loads(regenerate.await_args.args[0])
        assert feedback["tentativeAction"] == "Bad one"

    @pytest.mark.asyncio
    async def test_attempts_bounded(self, seeded_conn):
        regenerate = AsyncMock(side_effect=["Bad two", "Bad three", "Bad four"])
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({}),
            regenerate=regenerate,
            config=_config(max_correction_attempts=2),
        )
        assert len(result.attempts) == 3
        assert regenerate.await_count == 2
        logs = repo.list_correction_logs(seeded_conn, "michael")
        assert [log.attempt_number for log in logs] == [1, 2, 3]
        assert [log.outcome for log in logs] == ["failed", "failed", "exhausted"]

    @pytest.mark.asyncio
    async def test_second_regeneration_escalates(self, seeded_conn):
        regenerate = AsyncMock(side_effect=["Bad two", "Bad three"])
        await run_action_gate(
            seeded_conn, "michael", "Bad one", ScriptedJudge({}), regenerate=regenerate, config=_config()
        )
        first, second = (json.loads(c.args[0]) for c in regenerate.await_args_list)
        assert ESCALATION not in first["instruction"]
        assert ESCALATION in second["instruction"]

    @pytest.mark.asyncio
    async def test_continue_on_failure_returns_best(self, seeded_conn):
        judge = ScriptedJudge({"Bad one": 3, "Better": 5, "Worse": 1})
        regenerate = AsyncMock(side_effect=["Better", "Worse"])
        result = await run_action_gate(
            seeded_conn, "michael", "Bad one", judge, regenerate=regenerate, config=_config()
        )
        assert result.passed is False
        assert result.blocked is False
        assert result.final_text == "Better"
        assert result.outcome == "exhausted"

    @pytest.mark.asyncio
    async def test_block_when_continue_disabled(self, seeded_conn):
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({}),
            config=_config(continue_on_failure=False, enable_regeneration=False),
        )
        assert result.blocked is True
        assert result.final_text is None
        with pytest.raises(GateBlocked):
            result.raise_if_blocked()

    @pytest.mark.asyncio
    async def test_minimum_actions_overrides_block(self, seeded_conn):
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({}),
            config=_config(continue_on_failure=False, minimum_required_qty_of_actions=3),
        )
        assert result.blocked is False
        assert result.final_text == "Bad one"

    @pytest.mark.asyncio
    async def test_minimum_actions_met_still_blocks(self, seeded_conn):
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({}),
            config=_config(continue_on_failure=False, minimum_required_qty_of_actions=3),
            prior_action_count=5,
        )
        assert result.blocked is True

    @pytest.mark.asyncio
    async def test_direct_correction_path(self, seeded_conn):
        judge = ScriptedJudge({"Hey gang!": 8})
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Greetings, colleagues.",
            judge,
            corrector=_corrector("Hey gang!"),
            config=_config(enable_regeneration=False, enable_direct_correction=True),
        )
        assert result.passed is True
        assert result.attempts[-1].stage == "direct-corrected"
        assert result.token_usage.input_tokens == 50
        logs = repo.list_correction_logs(seeded_conn, "michael")
        assert logs[-1].token_usage.input_tokens == 50

    @pytest.mark.asyncio
    async def test_regeneration_then_direct_correction(self, seeded_conn):
        regenerate = AsyncMock(side_effect=["Bad two", "Bad three"])
        corrector = _corrector("Still bad")
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({}),
            regenerate=regenerate,
            corrector=corrector,
            config=_config(enable_direct_correction=True, max_correction_attempts=3),
        )
        assert [a.stage for a in result.attempts] == [
            "original",
            "regenerated",
            "regenerated",
            "direct-corrected",
        ]
        assert regenerate.await_count == 2
        assert corrector.ainvoke.await_count == 1
        assert len(repo.list_correction_logs(seeded_conn, "michael")) == 4

    @pytest.mark.asyncio
    async def test_single_attempt_goes_to_direct_correction(self, seeded_conn):
        regenerate = AsyncMock(return_value="Bad two")
        result = await run_action_gate(
            seeded_conn,
            "michael",
            "Bad one",
            ScriptedJudge({"Hey gang!": 8}),
            regenerate=regenerate,
            corrector=_corrector("Hey gang!"),
            config=_config(enable_direct_correction=True, max_correction_attempts=1),
        )
        assert [a.stage for a in result.attempts] == ["original", "direct-corrected"]
        assert result.passed is True
        regenerate.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_no_strategy_exhausts_immediately(self, seeded_conn):
        result = await run_action_gate(
            seeded_conn, "michael", "Bad one", ScriptedJudge({}), config=_config(enable_regeneration=False)
        )
        assert len(result.attempts) == 1
        assert result.outcome == "exhausted"

    @pytest.mark.asyncio
    async def test_empty_candidate_rejected(self, seeded_conn):
        with pytest.raises(ValidationError):
            await run_action_gate(seeded_conn, "michael", "   ", MockJudge())

    @pytest.mark.asyncio
    async def test_stored_policy_used(self, seeded_conn):
        repo.upsert_agent_eval_config(seeded_conn, "michael", _config().model_dump())
        result = await run_action_gate(seeded_conn, "michael", "Bad one", ScriptedJudge({}))
        assert result.passed is False


# ---------------------------------------------------------------------------
# Stats
# ---------------------------------------------------------------------------


def _log(stage: str, outcome: str, score: float, attempt: int = 1) -> CorrectionLog:
    return CorrectionLog(
        agent_id="michael",
        original_text="x",
        stage=stage,
        attempt_number=attempt,
        outcome=outcome,
        dimension_scores=[DimensionScore(dimension="fluency", score=score, passed=outcome == "passed")],
        total_score=score,
    )


class TestGateStats:
    def test_empty(self):
        stats = compute_gate_stats([])
        assert stats.total_attempts == 0
        assert stats.original_pass_rate == 0.0

    def test_rates(self):
        logs = [
            _log("original", "passed", 8),
            _log("original", "failed", 3),
            _log("regenerated", "passed", 8, 2),
            _log("original", "failed", 2),
            _log("regenerated", "exhausted", 4, 2),
        ]
        stats = compute_gate_stats(logs)
        assert stats.original_count == 3
        assert stats.original_pass_rate == pytest.approx(1 / 3)
        assert stats.regeneration_count == 2
        assert stats.regeneration_failure_rate == pytest.approx(0.5)
        assert stats.regeneration_mean_score == pytest.approx(6.0)
        assert stats.regeneration_sd_score == pytest.approx(2.828427, rel=1e-4)
        assert stats.exhausted_count == 1
        assert stats.per_dimension_failure_counts["fluency"] == 3

    @pytest.mark.asyncio
    async def test_from_storage(self, seeded_conn):
        await run_action_gate(seeded_conn, "michael", "Hello", MockJudge())
        stats = get_gate_stats(seeded_conn, "michael")
        assert stats.original_pass_count == 1
