"""Tests for token cost accounting."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from src.evals.cost import estimate_cost, get_cost_summary
from src.evals.errors import ValidationError
from src.persistence import repository as repo
from src.schemas.evaluation import CorrectionLog, InterventionLog, TokenUsage


def _seed_logs(conn) -> None:
    repo.save_correction_log(
        conn,
        CorrectionLog(
            agent_id="michael",
            original_text="Hi",
            stage="original",
            attempt_number=1,
            outcome="passed",
            token_usage=TokenUsage(input_tokens=1_000_000, output_tokens=0),
        ),
    )
    repo.save_intervention_log(
        conn,
        InterventionLog(
            agent_id="michael",
            channel_id="general",
            intervention_type="anti_convergence",
            token_usage=TokenUsage(input_tokens=0, output_tokens=1_000_000),
        ),
    )
    repo.save_intervention_log(
        conn,
        InterventionLog(
            agent_id="jim",
            channel_id="general",
            intervention_type="variety",
            token_usage=TokenUsage(input_tokens=500, output_tokens=100),
        ),
    )


class TestEstimateCost:
    def test_rates(self):
        assert estimate_cost(TokenUsage(input_tokens=1_000_000)) == pytest.approx(0.25)
        assert estimate_cost(TokenUsage(output_tokens=1_000_000)) == pytest.approx(1.25)

    def test_zero(self):
        assert estimate_cost(TokenUsage()) == 0.0


class TestCostSummary:
    def test_per_agent(self, seeded_conn):
        _seed_logs(seeded_conn)
        summary = get_cost_summary(seeded_conn, "michael")
        assert summary.correction_tokens.input_tokens == 1_000_000
        assert summary.intervention_tokens.output_tokens == 1_000_000
        assert summary.total_tokens.total == 2_000_000
        assert summary.estimated_cost_usd == pytest.approx(1.5)

    def test_all_agents(self, seeded_conn):
        _seed_logs(seeded_conn)
        summary = get_cost_summary(seeded_conn)
        assert summary.agent_id is None
        assert summary.intervention_tokens.input_tokens == 500

    def test_empty_store(self, db_conn):
        summary = get_cost_summary(db_conn)
        assert summary.total_tokens.total == 0
        assert summary.estimated_cost_usd == 0.0

    def test_date_range(self, seeded_conn):
        _seed_logs(seeded_conn)
        future = datetime.now(timezone.utc) + timedelta(days=1)
        assert get_cost_summary(seeded_conn, start=future).total_tokens.total == 0

    def test_inverted_range_rejected(self, seeded_conn):
        now = datetime.now(timezone.utc)
        with pytest.raises(ValidationError):
            get_cost_summary(seeded_conn, start=now, end=now - timedelta(days=1))
