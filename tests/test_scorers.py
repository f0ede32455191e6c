"""Tests for the dimension scorers against a seeded SQLite store and the mock judge."""

from __future__ import annotations

import json
import random
from datetime import datetime, timedelta, timezone

import pytest

from src.evals.errors import JudgeError, NotFoundError, ValidationError
from src.evals.judge import Judge, MockJudge
from src.evals.scorers.adherence import score_adherence
from src.evals.scorers.base import ScorerOptions, apply_window, sample_messages
from src.evals.scorers.consistency import pair_messages, score_consistency
from src.evals.scorers.convergence import score_convergence
from src.evals.scorers.fluency import score_fluency
from src.evals.scorers.ideas_quantity import IDEAS_PROPOSITION_ID, score_ideas_quantity
from src.persistence import repository as repo
from src.schemas.evaluation import Message


class FailingJudge(Judge):
    """Every call fails the way a provider outage would."""

    async def score(self, claim, trajectory, persona=None, proposition_id=None):
        raise JudgeError("provider unavailable")

    async def check(self, claim, trajectory, persona=None):
        raise JudgeError("provider unavailable")

    async def enumerate_ideas(self, trajectory):
        raise JudgeError("provider unavailable")


def _msg(i: int, channel: str | None = "general", days_ago: float = 0) -> Message:
    return Message(
        id=f"m{i}",
        channel_id=channel,
        user_id="michael",
        text=f"message {i}",
        created_at=datetime.now(timezone.utc) - timedelta(days=days_ago, minutes=i),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestWindowing:
    def test_no_window_keeps_everything(self):
        assert apply_window([1, 2, 3], None, None) == [1, 2, 3]

    def test_first_and_last(self):
        assert apply_window(list(range(10)), 2, 3) == [0, 1, 7, 8, 9]

    def test_short_list_not_duplicated(self):
        assert apply_window([1, 2, 3], 2, 2) == [1, 2, 3]

    def test_only_last(self):
        assert apply_window(list(range(5)), 0, 2) == [3, 4]

    def test_sample_keeps_chronological_order(self):
        messages = sorted((_msg(i) for i in range(30)), key=lambda m: m.created_at)
        sampled = sample_messages(messages, 5, random.Random(7))
        assert len(sampled) == 5
        assert sampled == sorted(sampled, key=lambda m: m.created_at)

    def test_sample_under_size_returns_all(self):
        messages = [_msg(i) for i in range(3)]
        assert sample_messages(messages, 10) == messages


class TestPairing:
    def test_prefers_same_channel(self):
        current = [_msg(1, "general")]
        historical = [_msg(2, "sales", 10), _msg(3, "general", 10)]
        pairs = pair_messages(current, historical, 5, random.Random(1))
        assert [(e.id, r.id) for e, r in pairs] == [("m3", "m1")]

    def test_falls_back_to_any_channel(self):
        pairs = pair_messages([_msg(1, "general")], [_msg(2, "sales", 10)], 5, random.Random(1))
        assert pairs[0][0].id == "m2"

    def test_historical_messages_not_reused(self):
        current = [_msg(i, "general") for i in range(3)]
        pairs = pair_messages(current, [_msg(9, "general", 10)], 5, random.Random(1))
        assert len(pairs) == 1

    def test_max_pairs(self):
        current = [_msg(i) for i in range(5)]
        historical = [_msg(10 + i, days_ago=10) for i in range(5)]
        assert len(pair_messages(current, historical, 2, random.Random(1))) == 2


# ---------------------------------------------------------------------------
# Agent-level scorers
# ---------------------------------------------------------------------------


class TestAdherence:
    @pytest.mark.asyncio
    async def test_scores_and_persists(self, seeded_conn, mock_judge):
        result = await score_adherence(seeded_conn, "michael", mock_judge)

        assert result.sample_size == 2
        assert result.overall_score == pytest.approx(7.16)
        run = repo.get_evaluation_run(seeded_conn, result.evaluation_run_id)
        assert run.status == "completed"
        assert run.overall_score == pytest.approx(7.16)
        rows = repo.get_evaluation_scores(seeded_conn, result.evaluation_run_id)
        assert {r["proposition_id"] for r in rows} == {p.proposition_id for p in result.proposition_scores}

    @pytest.mark.asyncio
    async def test_inverted_propositions_are_flipped(self, seeded_conn, mock_judge):
        result = await score_adherence(seeded_conn, "michael", mock_judge)
        scores = {p.proposition_id: p.score for p in result.proposition_scores}
        # raw mock score 2 on an anti-pattern
        assert scores["generic-corporate-response"] == 7
        assert scores["michael-dry-corporate-antipattern"] == 7

    @pytest.mark.asyncio
    async def test_hard_override(self, seeded_conn, mock_judge):
        soft = await score_adherence(seeded_conn, "michael", mock_judge)
        hard = await score_adherence(seeded_conn, "michael", mock_judge, ScorerOptions(hard=True))
        assert hard.overall_score < soft.overall_score

    @pytest.mark.asyncio
    async def test_no_messages_is_insufficient_data(self, db_conn, mock_judge):
        repo.upsert_agent(db_conn, "michael", "Michael Scott", "Boss")
        result = await score_adherence(db_conn, "michael", mock_judge)
        assert result.overall_score is None
        assert result.sample_size == 0
        assert mock_judge.calls == []
        assert repo.get_evaluation_run(db_conn, result.evaluation_run_id).status == "completed"

    @pytest.mark.asyncio
    async def test_unknown_agent(self, seeded_conn, mock_judge):
        with pytest.raises(NotFoundError):
            await score_adherence(seeded_conn, "toby", mock_judge)

    @pytest.mark.asyncio
    async def test_blank_agent_id(self, seeded_conn, mock_judge):
        with pytest.raises(ValidationError):
            await score_adherence(seeded_conn, "  ", mock_judge)

    @pytest.mark.asyncio
    async def test_all_propositions_failing_fails_run(self, seeded_conn):
        with pytest.raises(JudgeError):
            await score_adherence(seeded_conn, "michael", FailingJudge())
        runs = repo.list_evaluation_runs(seeded_conn, agent_id="michael")
        assert runs[0].status == "failed"

    @pytest.mark.asyncio
    async def test_baseline_flag_persisted(self, seeded_conn, mock_judge):
        result = await score_adherence(
            seeded_conn, "michael", mock_judge, ScorerOptions(is_baseline=True)
        )
        assert repo.get_evaluation_run(seeded_conn, result.evaluation_run_id).is_baseline is True


class TestConsistency:
    @pytest.mark.asyncio
    async def test_without_history_has_no_overall(self, seeded_conn, mock_judge):
        result = await score_consistency(seeded_conn, "michael", mock_judge)
        assert result.overall_score is None
        assert result.proposition_scores
        assert result.current_sample_size == 2
        assert result.historical_sample_size == 0

    @pytest.mark.asyncio
    async def test_with_history_pairs_messages(self, seeded_conn, mock_judge):
        earlier = datetime.now(timezone.utc) - timedelta(days=10)
        repo.add_message(seeded_conn, "michael", "I declare bankruptcy!", "general", created_at=earlier)

        result = await score_consistency(seeded_conn, "michael", mock_judge)

        assert result.historical_sample_size == 1
        assert result.sample_size == 2  # one pair
        assert result.overall_score is not None


class TestFluency:
    @pytest.mark.asyncio
    async def test_scores_with_ngram_stats(self, seeded_conn, mock_judge):
        result = await score_fluency(seeded_conn, "dwight", mock_judge)
        # (1.5*7 + 1*7 + 1*(9-7)) / 3.5
        assert result.overall_score == pytest.approx(19.5 / 3.5)
        assert 0 <= result.ngram_stats.trigram <= 1

    @pytest.mark.asyncio
    async def test_repeated_messages_raise_ngram_repetition(self, db_conn, mock_judge):
        repo.upsert_agent(db_conn, "dwight", "Dwight Schrute")
        for _ in range(3):
            repo.add_message(db_conn, "dwight", "Bears eat beets. Bears. Beets. Battlestar Galactica.")
        result = await score_fluency(db_conn, "dwight", mock_judge)
        assert result.ngram_stats.trigram > 0.5

    @pytest.mark.asyncio
    async def test_stats_never_enter_aggregate(self, db_conn, mock_judge):
        repo.upsert_agent(db_conn, "dwight", "Dwight Schrute")
        for _ in range(3):
            repo.add_message(db_conn, "dwight", "Identity theft is not a joke, Jim.")
        result = await score_fluency(db_conn, "dwight", mock_judge)
        assert result.overall_score == pytest.approx(19.5 / 3.5)


# ---------------------------------------------------------------------------
# Channel-level scorers
# ---------------------------------------------------------------------------


class TestConvergence:
    @pytest.mark.asyncio
    async def test_scores_channel(self, seeded_conn, mock_judge):
        result = await score_convergence(seeded_conn, "general", mock_judge)
        assert result.agent_count == 3
        assert result.sample_size == 6
        assert result.overall_score is not None
        assert set(result.pairwise_similarity) == {"dwight-jim", "dwight-michael", "jim-michael"}
        assert set(result.vocabulary_stats) == {"michael", "dwight", "jim"}

    @pytest.mark.asyncio
    async def test_single_speaker_is_insufficient(self, db_conn, mock_judge):
        repo.upsert_agent(db_conn, "michael", "Michael Scott")
        repo.create_channel(db_conn, "solo", "Solo", ["michael"])
        repo.add_message(db_conn, "michael", "Is anybody there?", "solo")
        result = await score_convergence(db_conn, "solo", mock_judge)
        assert result.overall_score is None
        assert mock_judge.calls == []

    @pytest.mark.asyncio
    async def test_unknown_channel(self, seeded_conn, mock_judge):
        with pytest.raises(NotFoundError):
            await score_convergence(seeded_conn, "annex", mock_judge)

    @pytest.mark.asyncio
    async def test_run_attributed_to_agent(self, seeded_conn, mock_judge):
        result = await score_convergence(seeded_conn, "general", mock_judge, agent_id="michael")
        run = repo.get_evaluation_run(seeded_conn, result.evaluation_run_id)
        assert run.agent_id == "michael"
        assert run.channel_id == "general"


class TestIdeasQuantity:
    @pytest.mark.asyncio
    async def test_counts_ideas(self, seeded_conn):
        judge = MockJudge(ideas=["Party", "Security detail", "Feats of strength", "Card"])
        result = await score_ideas_quantity(seeded_conn, "general", judge)

        assert result.count == 4
        assert result.overall_score is None
        rows = repo.get_evaluation_scores(seeded_conn, result.evaluation_run_id)
        assert len(rows) == 1
        assert rows[0]["proposition_id"] == IDEAS_PROPOSITION_ID
        assert rows[0]["score"] == 4
        assert [i["description"] for i in json.loads(rows[0]["reasoning"])][0] == "Party"

    @pytest.mark.asyncio
    async def test_empty_channel(self, db_conn, mock_judge):
        repo.create_channel(db_conn, "quiet", "Quiet", [])
        result = await score_ideas_quantity(db_conn, "quiet", mock_judge)
        assert result.count == 0
        assert result.sample_size == 0

    @pytest.mark.asyncio
    async def test_judge_failure_fails_run(self, seeded_conn):
        with pytest.raises(JudgeError):
            await score_ideas_quantity(seeded_conn, "general", FailingJudge())
        runs = repo.list_evaluation_runs(seeded_conn)
        assert runs[0].status == "failed"
