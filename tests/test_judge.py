"""Tests for the judge client: output parsing, LLMJudge with a mocked model, MockJudge."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from src.config import Settings
from src.evals.errors import JudgeError
from src.evals.judge import (
    LLMJudge,
    MockJudge,
    build_judge_system_prompt,
    get_judge,
    parse_check_output,
    parse_ideas_output,
    parse_score_output,
    render_trajectory,
)
from src.evals.mock_scores import MockScore, get_mock_scores
from src.schemas.evaluation import TrajectoryEntry

TRAJECTORY = [
    TrajectoryEntry(kind="stimulus", agent_name="jim", text="Who wants cake?"),
    TrajectoryEntry(kind="action", agent_name="michael", text="Me! That's what she said."),
]


def _ai(content: str, input_tokens: int = 10, output_tokens: int = 5) -> AIMessage:
    return AIMessage(
        content=content,
        usage_metadata={
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "total_tokens": input_tokens + output_tokens,
        },
    )


def _llm(*responses) -> MagicMock:
    llm = MagicMock()
    llm.ainvoke = AsyncMock(side_effect=list(responses))
    return llm


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseScore:
    def test_plain_json(self):
        verdict = parse_score_output('{"score": 7, "reasoning": "Mostly in character", "confidence": 0.8}')
        assert verdict.score == 7
        assert verdict.reasoning == "Mostly in character"
        assert verdict.confidence == 0.8

    def test_markdown_fenced(self):
        verdict = parse_score_output('```json\n{"score": 3, "reasoning": "Weak"}\n```')
        assert verdict.score == 3

    def test_score_clamped_and_rounded(self):
        assert parse_score_output('{"score": 12}').score == 9
        assert parse_score_output('{"score": -2}').score == 0
        assert parse_score_output('{"score": 6.6}').score == 7

    def test_confidence_clamped(self):
        assert parse_score_output('{"score": 5, "confidence": 4}').confidence == 1.0

    def test_evidence_kept(self):
        verdict = parse_score_output('{"score": 5, "evidence": "that\'s what she said"}')
        assert verdict.evidence == "that's what she said"

    def test_missing_score_raises(self):
        with pytest.raises(JudgeError):
            parse_score_output('{"reasoning": "no score"}')

    def test_non_json_raises(self):
        with pytest.raises(JudgeError):
            parse_score_output("I think it's about a seven")

    def test_empty_raises(self):
        with pytest.raises(JudgeError):
            parse_score_output("")


class TestParseCheckAndIdeas:
    def test_check_bool(self):
        assert parse_check_output('{"result": true, "reasoning": "yes"}').result is True

    def test_check_string_bool(self):
        assert parse_check_output('{"result": "False"}').result is False

    def test_check_missing_result_raises(self):
        with pytest.raises(JudgeError):
            parse_check_output('{"reasoning": "?"}')

    def test_ideas_count_from_list(self):
        verdict = parse_ideas_output(
            '{"count": 5, "ideas": [{"id": 1, "description": "Party"}, {"id": 2, "description": "Cake"}]}'
        )
        assert verdict.count == 2
        assert [i.description for i in verdict.ideas] == ["Party", "Cake"]

    def test_ideas_count_without_list(self):
        assert parse_ideas_output('{"count": 3}').count == 3


class TestPrompts:
    def test_system_prompt_includes_persona(self):
        assert "Regional manager" in build_judge_system_prompt("Regional manager")

    def test_system_prompt_without_persona(self):
        assert "evaluating the following character" not in build_judge_system_prompt(None)

    def test_render_trajectory(self):
        rendered = render_trajectory(TRAJECTORY)
        assert rendered.splitlines() == [
            "--> jim: Who wants cake?",
            "michael acts: Me! That's what she said.",
        ]


# ---------------------------------------------------------------------------
# LLMJudge
# ---------------------------------------------------------------------------


class TestLLMJudge:
    @pytest.mark.asyncio
    async def test_score_returns_verdict_with_usage(self):
        llm = _llm(_ai('{"score": 8, "reasoning": "Very Michael"}', 120, 30))
        judge = LLMJudge(llm=llm, double_check=False)

        verdict = await judge.score("Michael seeks approval", TRAJECTORY, persona="Boss")

        assert verdict.score == 8
        assert verdict.token_usage.input_tokens == 120
        assert verdict.token_usage.output_tokens == 30
        messages = llm.ainvoke.await_args.args[0]
        assert "Boss" in messages[0].content
        assert "CLAIM: Michael seeks approval" in messages[1].content

    @pytest.mark.asyncio
    async def test_double_check_uses_revised_answer(self):
        llm = _llm(_ai('{"score": 8}', 10, 2), _ai('{"score": 6}', 20, 3))
        judge = LLMJudge(llm=llm, double_check=True)

        verdict = await judge.score("claim", TRAJECTORY)

        assert verdict.score == 6
        assert verdict.token_usage.input_tokens == 30
        assert llm.ainvoke.await_count == 2

    @pytest.mark.asyncio
    async def test_double_check_unparseable_keeps_first(self):
        llm = _llm(_ai('{"score": 8}'), _ai("hmm"))
        judge = LLMJudge(llm=llm, double_check=True)
        assert (await judge.score("claim", TRAJECTORY)).score == 8

    @pytest.mark.asyncio
    async def test_provider_error_becomes_judge_error(self):
        llm = MagicMock()
        llm.ainvoke = AsyncMock(side_effect=RuntimeError("502 from provider"))
        judge = LLMJudge(llm=llm, double_check=False)
        with pytest.raises(JudgeError, match="502"):
            await judge.score("claim", TRAJECTORY, proposition_id="p1")

    @pytest.mark.asyncio
    async def test_timeout_becomes_judge_error(self):
        async def _hang(_messages):
            await asyncio.sleep(1)

        llm = MagicMock()
        llm.ainvoke = _hang
        judge = LLMJudge(llm=llm, timeout=0.01, double_check=False)
        with pytest.raises(JudgeError, match="timed out"):
            await judge.score("claim", TRAJECTORY)

    @pytest.mark.asyncio
    async def test_check(self):
        judge = LLMJudge(llm=_llm(_ai('{"result": true, "reasoning": "converging"}')))
        verdict = await judge.check("They agree too much", TRAJECTORY)
        assert verdict.result is True
        assert verdict.token_usage.input_tokens == 10

    @pytest.mark.asyncio
    async def test_enumerate_ideas_uses_ideas_model(self):
        ideas_llm = _llm(_ai('{"ideas": [{"id": 1, "description": "Throw a party"}]}'))
        judge = LLMJudge(llm=_llm(), ideas_llm=ideas_llm)
        verdict = await judge.enumerate_ideas(TRAJECTORY)
        assert verdict.count == 1
        ideas_llm.ainvoke.assert_awaited_once()


# ---------------------------------------------------------------------------
# MockJudge and selection
# ---------------------------------------------------------------------------


class TestMockJudge:
    @pytest.mark.asyncio
    async def test_known_proposition(self):
        judge = MockJudge()
        verdict = await judge.score("claim", TRAJECTORY, proposition_id="michael-needs-to-be-liked")
        assert verdict.score == 8
        assert verdict.token_usage.input_tokens == 0

    @pytest.mark.asyncio
    async def test_unknown_proposition_uses_default(self):
        judge = MockJudge(scores={}, default_score=4)
        assert (await judge.score("claim", TRAJECTORY, proposition_id="nope")).score == 4

    @pytest.mark.asyncio
    async def test_records_calls(self):
        judge = MockJudge(scores={"a": MockScore(5, "ok")})
        await judge.score("claim", TRAJECTORY, proposition_id="a")
        assert judge.calls == ["a"]

    @pytest.mark.asyncio
    async def test_ideas(self):
        judge = MockJudge(ideas=["Party", "Cake"])
        verdict = await judge.enumerate_ideas(TRAJECTORY)
        assert verdict.count == 2

    def test_character_scores_merge_defaults(self):
        scores = get_mock_scores("dwight")
        assert "adheres-to-persona" in scores
        assert "dwight-beet-farming" in scores
        assert "michael-malapropisms" not in scores


class TestGetJudge:
    def test_mock_mode(self):
        assert isinstance(get_judge(Settings(judge_mode="mock")), MockJudge)

    def test_live_mode(self):
        assert isinstance(get_judge(Settings(judge_mode="live")), LLMJudge)
