"""Tests for per-agent evaluation policy resolution and partial updates."""

from __future__ import annotations

import pytest

from src.evals.errors import ValidationError
from src.evals.policy import ResolvedConfig, resolve_config, update_config


class TestResolveConfig:
    def test_defaults_are_permissive(self, db_conn):
        config = resolve_config(db_conn, "michael")
        assert config == ResolvedConfig()
        assert config.pipeline.dimensions.enabled() == []
        assert config.pipeline.similarity.enabled is False
        assert config.pipeline.continue_on_failure is True
        assert config.interventions.anti_convergence_enabled is False
        assert config.repetition.enabled is False

    def test_stored_policy_loaded(self, db_conn):
        update_config(db_conn, "michael", {"pipeline": {"max_correction_attempts": 4}})
        assert resolve_config(db_conn, "michael").pipeline.max_correction_attempts == 4


class TestUpdateConfig:
    def test_partial_update_keeps_siblings(self, db_conn):
        update_config(
            db_conn,
            "dwight",
            {"pipeline": {"dimensions": {"fluency": {"enabled": True, "threshold": 6}}}},
        )
        config = update_config(
            db_conn,
            "dwight",
            {"pipeline": {"dimensions": {"persona_adherence": {"enabled": True}}}},
        )
        enabled = dict(config.pipeline.dimensions.enabled())
        assert set(enabled) == {"persona_adherence", "fluency"}
        assert enabled["fluency"].threshold == 6
        assert enabled["persona_adherence"].threshold == 7.0

    def test_enabled_dimensions_keep_canonical_order(self, db_conn):
        config = update_config(
            db_conn,
            "jim",
            {
                "pipeline": {
                    "dimensions": {
                        "suitability": {"enabled": True},
                        "persona_adherence": {"enabled": True},
                    }
                }
            },
        )
        assert [name for name, _ in config.pipeline.dimensions.enabled()] == [
            "persona_adherence",
            "suitability",
        ]

    def test_out_of_range_threshold_rejected(self, db_conn):
        with pytest.raises(ValidationError):
            update_config(db_conn, "jim", {"pipeline": {"dimensions": {"fluency": {"threshold": 12}}}})

    def test_rejected_update_not_persisted(self, db_conn):
        with pytest.raises(ValidationError):
            update_config(db_conn, "jim", {"repetition": {"threshold": 2}})
        assert resolve_config(db_conn, "jim").repetition.threshold == 0.3

    def test_blank_agent_rejected(self, db_conn):
        with pytest.raises(ValidationError):
            update_config(db_conn, "", {})
