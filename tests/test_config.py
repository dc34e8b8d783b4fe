"""
Module: tests/test_config.py
Description: Test configuration loading and escalation rule validation
Test: pytest tests/test_config.py
"""

import importlib

import pytest
from datetime import timedelta

from arbiter.config import (
    ArbiterConfig,
    DEFAULT_ESCALATION_RULES,
    EscalationRules,
    load_rules,
)
from arbiter.errors import ConfigurationError, DisputeError


class TestArbiterConfig:
    """Test ARBITER_* settings."""

    def test_default_config(self):
        """Test default configuration values."""
        config = ArbiterConfig(_env_file=None)

        assert config.AUTO_RESOLVE_THRESHOLD == 90.0
        assert config.COMMUNITY_VOTE_THRESHOLD == 70.0
        assert config.VOTING_DURATION_HOURS == 72.0
        assert config.QUORUM_PERCENT == 25.0
        assert config.ESCALATION_TIMEOUT_HOURS == 168.0
        assert config.APPEAL_WINDOW_HOURS == 48.0
        assert config.STORE_BACKEND == "memory"

    def test_environment_override(self, monkeypatch):
        """Test settings are read from prefixed environment variables."""
        monkeypatch.setenv("ARBITER_QUORUM_PERCENT", "40")
        monkeypatch.setenv("ARBITER_STORE_BACKEND", "redis")

        config = ArbiterConfig(_env_file=None)

        assert config.QUORUM_PERCENT == 40.0
        assert config.STORE_BACKEND == "redis"

    def test_rules_from_config(self):
        config = ArbiterConfig(_env_file=None, VOTING_DURATION_HOURS=24, APPEAL_WINDOW_HOURS=0)
        rules = load_rules(config)

        assert rules.voting_duration == timedelta(hours=24)
        assert rules.appeal_window == timedelta(0)
        assert rules.auto_resolve_threshold == 90.0


class TestEscalationRules:
    """Test rule validation."""

    def test_defaults(self):
        rules = DEFAULT_ESCALATION_RULES

        assert rules.auto_resolve_threshold == 90.0
        assert rules.community_vote_threshold == 70.0
        assert rules.voting_duration == timedelta(hours=72)
        assert rules.quorum_percent == 25.0
        assert rules.escalation_timeout == timedelta(hours=168)
        assert rules.appeal_window == timedelta(hours=48)

    def test_rules_are_frozen(self):
        with pytest.raises(Exception):
            DEFAULT_ESCALATION_RULES.quorum_percent = 50

    @pytest.mark.parametrize("field,value", [
        ("auto_resolve_threshold", 101),
        ("community_vote_threshold", -1),
        ("quorum_percent", 150),
    ])
    def test_percent_out_of_range(self, field, value):
        with pytest.raises(ConfigurationError):
            EscalationRules(**{field: value})

    def test_community_above_auto_rejected(self):
        with pytest.raises(ConfigurationError):
            EscalationRules(auto_resolve_threshold=60, community_vote_threshold=70)

    def test_non_positive_durations_rejected(self):
        with pytest.raises(ConfigurationError):
            EscalationRules(voting_duration=timedelta(0))
        with pytest.raises(ConfigurationError):
            EscalationRules(escalation_timeout=timedelta(hours=-1))
        with pytest.raises(ConfigurationError):
            EscalationRules(appeal_window=timedelta(hours=-1))

    def test_rule_errors_share_dispute_taxonomy(self):
        with pytest.raises(DisputeError) as exc_info:
            EscalationRules(auto_resolve_threshold=101)

        assert isinstance(exc_info.value, ConfigurationError)
        assert exc_info.value.to_dict()["error"] == "configuration_error"
        assert exc_info.value.dispute_id is None

    def test_to_dict(self):
        data = DEFAULT_ESCALATION_RULES.to_dict()

        assert data["voting_duration_hours"] == 72
        assert data["appeal_window_hours"] == 48


class TestLogging:
    """Test module logger naming."""

    @pytest.mark.parametrize("module_name", [
        "arbiter.config",
        "arbiter.delivery",
        "arbiter.engine",
        "arbiter.persistence",
        "arbiter.server",
        "arbiter.dispute_store.dispute_store",
        "arbiter.escalation.escalation",
        "arbiter.evidence_ledger.evidence_ledger",
        "arbiter.resolution.resolution",
        "arbiter.timeline.timeline",
        "arbiter.voting.voting",
    ])
    def test_logger_named_after_module(self, module_name):
        module = importlib.import_module(module_name)
        assert module.logger.name == module_name
