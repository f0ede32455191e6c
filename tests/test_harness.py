"""Tests for the evaluation harness: golden baselines, the runner, and reports."""

from __future__ import annotations

import json
from io import StringIO

import pytest
from rich.console import Console

from src.evals.errors import ConfigError, ValidationError
from src.evals.harness.golden import (
    detect_regressions,
    list_golden_baselines,
    load_golden_baseline,
    save_golden_baseline,
)
from src.evals.harness.report import (
    COMMENT_MARKER,
    format_human_report,
    format_pr_comment,
    generate_json_report,
    print_human_report,
)
from src.evals.harness.runner import (
    ALL_AGENTS,
    SAMPLE_MESSAGE,
    AgentResult,
    DimensionOutcome,
    HarnessResult,
    HarnessSummary,
    overall_score,
    resolve_agents,
    run_evaluation,
)
from src.evals.judge import MockJudge
from src.persistence import repository as repo
from src.schemas.evaluation import Regression

DWIGHT_HARD_ADHERENCE = 75.6 / 13


def _result(agents: dict[str, AgentResult]) -> HarnessResult:
    failed = [a for a, r in agents.items() if not r.passed]
    return HarnessResult(
        timestamp="2026-10-01T00:00:00+00:00",
        agents=agents,
        summary=HarnessSummary(
            total=len(agents), passed=len(agents) - len(failed), failed=len(failed), failed_agents=failed
        ),
    )


# ---------------------------------------------------------------------------
# Golden baselines
# ---------------------------------------------------------------------------


class TestGoldenBaselines:
    def test_shipped_baselines_load(self):
        michael = load_golden_baseline("michael")
        assert michael.dimensions["adherence"] == pytest.approx(7.16)
        assert {b.agent_id for b in list_golden_baselines()} >= {"michael", "dwight"}

    def test_missing_is_none(self, tmp_path):
        assert load_golden_baseline("michael", tmp_path) is None
        assert list_golden_baselines(tmp_path / "nowhere") == []

    def test_save_then_load(self, tmp_path):
        save_golden_baseline("jim", {"adherence": 7.5}, {"jim-sarcasm-dry-wit": 8.0}, tmp_path)
        raw = (tmp_path / "jim.json").read_text(encoding="utf-8")
        assert raw.endswith("}\n")
        baseline = load_golden_baseline("jim", tmp_path)
        assert baseline.dimensions == {"adherence": 7.5}
        assert baseline.proposition_scores["jim-sarcasm-dry-wit"] == 8.0

    def test_invalid_file_is_config_error(self, tmp_path):
        (tmp_path / "kevin.json").write_text('{"dimensions": "chili"}', encoding="utf-8")
        with pytest.raises(ConfigError):
            load_golden_baseline("kevin", tmp_path)


class TestDetectRegressions:
    def test_drop_beyond_delta(self):
        [reg] = detect_regressions({"adherence": 6.0}, {"adherence": 7.5}, 1.0)
        assert reg.dimension == "adherence"
        assert reg.delta == pytest.approx(-1.5)

    def test_drop_within_delta(self):
        assert detect_regressions({"adherence": 6.6}, {"adherence": 7.5}, 1.0) == []

    def test_improvement_not_flagged(self):
        assert detect_regressions({"adherence": 9.0}, {"adherence": 5.0}, 1.0) == []

    def test_missing_dimension_skipped(self):
        assert detect_regressions({}, {"fluency": 8.0}, 1.0) == []


# ---------------------------------------------------------------------------
# Runner
# ---------------------------------------------------------------------------


class TestOverallScore:
    def test_mean_of_scores(self):
        dims = {"adherence": DimensionOutcome(score=8.0), "fluency": DimensionOutcome(score=6.0)}
        assert overall_score(dims) == 7.0

    def test_counts_excluded(self):
        dims = {"adherence": DimensionOutcome(score=8.0), "ideas_quantity": DimensionOutcome(count=12)}
        assert overall_score(dims) == 8.0

    def test_nothing_scored(self):
        assert overall_score({"ideas_quantity": DimensionOutcome(count=3)}) is None


class TestRunEvaluation:
    @pytest.mark.asyncio
    async def test_mock_scores_match_shipped_baselines(self):
        result = await run_evaluation(["michael", "dwight"], ["adherence"], 5.0, mock_judge=True)

        michael = result.agents["michael"]
        assert michael.overall == pytest.approx(7.16)
        assert michael.passed is True
        assert michael.regressions == []
        assert michael.baseline_delta == {"adherence": 0.0}
        assert result.agents["dwight"].overall == pytest.approx(DWIGHT_HARD_ADHERENCE)
        assert result.summary.failed == 0

    @pytest.mark.asyncio
    async def test_high_threshold_fails(self):
        result = await run_evaluation(["michael", "dwight"], ["adherence"], 9.0, mock_judge=True)
        assert result.summary.failed == 2
        assert result.summary.failed_agents == ["michael", "dwight"]

    @pytest.mark.asyncio
    async def test_summary_invariant(self, tmp_path):
        result = await run_evaluation(
            ["michael", "dwight", "jim"], ["adherence"], 7.0, mock_judge=True, baselines_dir=tmp_path
        )
        summary = result.summary
        assert summary.total == summary.passed + summary.failed == 3
        assert len(summary.failed_agents) == summary.failed

    @pytest.mark.asyncio
    async def test_duplicate_agents_evaluated_once(self, tmp_path):
        result = await run_evaluation(
            ["michael", "michael"], ["adherence"], 5.0, mock_judge=True, baselines_dir=tmp_path
        )
        assert result.summary.total == 1

    @pytest.mark.asyncio
    async def test_all_resolves_to_roster(self, tmp_path):
        result = await run_evaluation(["all"], ["adherence"], 5.0, mock_judge=True, baselines_dir=tmp_path)
        assert result.summary.total == len(ALL_AGENTS) == 16
        assert list(result.agents) == list(ALL_AGENTS)

    @pytest.mark.asyncio
    async def test_unknown_agent_rejected(self, tmp_path):
        with pytest.raises(ValidationError, match="nobody"):
            await run_evaluation(["michael", "nobody"], ["adherence"], 5.0, mock_judge=True, baselines_dir=tmp_path)

    @pytest.mark.asyncio
    async def test_baseline_fields_omitted_without_golden(self, tmp_path):
        result = await run_evaluation(["michael"], ["adherence"], 5.0, mock_judge=True, baselines_dir=tmp_path)
        agent = result.to_json_dict()["agents"]["michael"]
        assert "baseline_delta" not in agent
        assert "regressions" not in agent

    @pytest.mark.asyncio
    async def test_regression_fails_agent(self, tmp_path):
        save_golden_baseline("michael", {"adherence": 8.5}, baselines_dir=tmp_path)
        result = await run_evaluation(["michael"], ["adherence"], 5.0, mock_judge=True, baselines_dir=tmp_path)
        michael = result.agents["michael"]
        assert michael.passed is False
        assert michael.regressions[0].dimension == "adherence"
        assert michael.baseline_delta["adherence"] == pytest.approx(-1.34)

    @pytest.mark.asyncio
    async def test_update_baseline_writes_file(self, tmp_path):
        await run_evaluation(
            ["michael"], ["adherence", "fluency"], 5.0, mock_judge=True, update_baseline=True, baselines_dir=tmp_path
        )
        baseline = load_golden_baseline("michael", tmp_path)
        assert baseline.dimensions["adherence"] == pytest.approx(7.16)
        assert "michael-needs-to-be-liked" in baseline.proposition_scores

    @pytest.mark.asyncio
    async def test_ideas_counted_not_scored(self, tmp_path):
        judge = MockJudge(ideas=["Dundies", "Fun run"])
        result = await run_evaluation(
            ["michael"], ["adherence", "ideas_quantity"], 5.0, judge, baselines_dir=tmp_path
        )
        michael = result.agents["michael"]
        assert michael.dimensions["ideas_quantity"].count == 2
        assert michael.overall == pytest.approx(7.16)

    @pytest.mark.asyncio
    async def test_uses_recent_messages_when_connected(self, seeded_conn, tmp_path):
        seen: dict[str, list[str]] = {}

        class RecordingJudge(MockJudge):
            async def score(self, claim, trajectory, persona=None, proposition_id=None):
                seen[trajectory[0].agent_name] = [e.text for e in trajectory]
                return await super().score(claim, trajectory, persona, proposition_id)

        judge = RecordingJudge()
        await run_evaluation(
            ["michael", "ryan"], ["adherence"], 5.0, judge, conn=seeded_conn, baselines_dir=tmp_path
        )
        assert len(seen["michael"]) == 2
        # ryan is not in the store
        assert seen["ryan"] == [SAMPLE_MESSAGE]

    @pytest.mark.asyncio
    async def test_agent_error_reported(self, tmp_path):
        result = await run_evaluation(
            ["michael"], ["adherence"], 5.0, mock_judge=True, propositions_dir=tmp_path
        )
        michael = result.agents["michael"]
        assert michael.passed is False
        assert michael.error
        assert result.summary.failed_agents == ["michael"]

    @pytest.mark.asyncio
    async def test_unknown_dimension(self):
        with pytest.raises(ValidationError):
            await run_evaluation(["michael"], ["charisma"], mock_judge=True)

    def test_roster(self):
        assert len(ALL_AGENTS) == 16
        assert len(set(ALL_AGENTS)) == 16


# ---------------------------------------------------------------------------
# Reports
# ---------------------------------------------------------------------------


def _passing() -> HarnessResult:
    return _result(
        {
            "michael": AgentResult(
                overall=7.16,
                passed=True,
                dimensions={"adherence": DimensionOutcome(score=7.16, passed=True)},
                baseline_delta={"adherence": 0.0},
                regressions=[],
            ),
            "dwight": AgentResult(
                overall=5.82,
                passed=True,
                dimensions={"adherence": DimensionOutcome(score=5.82, passed=True)},
            ),
        }
    )


class TestPrComment:
    def test_all_passed(self):
        comment = format_pr_comment(_passing())
        lines = comment.splitlines()
        assert lines[0] == COMMENT_MARKER
        assert "| Agent | Adherence | Overall | Status |" in lines
        assert "| michael | 7.2 (=) | 7.2 | PASS |" in lines
        assert "| dwight | 5.8 | 5.8 | PASS |" in lines
        assert lines[-1] == "**Result**: All 2 agents passed. No regressions detected."

    def test_failures_without_regressions(self):
        result = _passing()
        result.agents["dwight"].passed = False
        result.summary = HarnessSummary(total=2, passed=1, failed=1, failed_agents=["dwight"])
        assert format_pr_comment(result).splitlines()[-1] == (
            "**Result**: 1/2 agents passed. No regressions detected."
        )

    def test_regression_detail(self):
        agent = AgentResult(
            overall=6.0,
            passed=False,
            dimensions={
                "adherence": DimensionOutcome(score=6.0),
                "ideas_quantity": DimensionOutcome(count=4, passed=True),
            },
            baseline_delta={"adherence": -1.5},
            regressions=[Regression(dimension="adherence", baseline=7.5, current=6.0, delta=-1.5)],
        )
        comment = format_pr_comment(_result({"michael": agent}))
        assert "| michael | 6.0 (-1.5) | 4 | 6.0 | FAIL |" in comment
        assert comment.splitlines()[-1] == (
            "**Result**: 1 regression detected. Michael's adherence dropped 1.5 points (7.5 → 6.0)."
        )

    def test_missing_dimension_cell(self):
        result = _passing()
        result.agents["dwight"].dimensions = {"fluency": DimensionOutcome(score=6.0)}
        assert "| michael | 7.2 (=) | - | 7.2 | PASS |" in format_pr_comment(result)


class TestOtherReports:
    def test_json_report(self):
        data = json.loads(generate_json_report(_passing()))
        assert data["summary"]["total"] == 2
        assert "baseline_delta" not in data["agents"]["dwight"]

    def test_human_report(self):
        text = format_human_report(_passing())
        assert "Summary: 2/2 passed, 0 failed" in text
        assert "michael" in text

    def test_rich_table(self):
        buffer = StringIO()
        print_human_report(_passing(), Console(file=buffer, width=120))
        assert "Persona Evaluation Results" in buffer.getvalue()
        assert "2/2 passed" in buffer.getvalue()


class TestResolveAgents:
    def test_empty_means_roster(self):
        assert resolve_agents(None) == list(ALL_AGENTS)
        assert resolve_agents([]) == list(ALL_AGENTS)

    def test_dedupes_in_order(self):
        assert resolve_agents(["jim", "michael", "jim"]) == ["jim", "michael"]

    def test_unknown_lists_every_offender(self):
        with pytest.raises(ValidationError) as exc_info:
            resolve_agents(["jim", "nobody", "bob"])
        assert "nobody, bob" in str(exc_info.value)

    def test_stored_agent_accepted_with_connection(self, db_conn):
        repo.upsert_agent(db_conn, "holly", "Holly Flax")
        assert resolve_agents(["holly"], db_conn) == ["holly"]
        with pytest.raises(ValidationError):
            resolve_agents(["holly"])
