"""Tests for settings validation and the decision policy built from them."""

import pytest
from pydantic import ValidationError

from patchwatch.config import Settings
from patchwatch.detect.policy import DecisionPolicy, PolicyError


class TestSettings:
    """Settings validators."""

    @pytest.mark.parametrize("threshold", [0.4, 1.2])
    def test_auto_approval_threshold_bounds(self, threshold):
        with pytest.raises(ValidationError):
            Settings(auto_approval_threshold=threshold)

    def test_ai_scorer_is_normalized(self):
        assert Settings(ai_scorer="LLM").ai_scorer == "llm"

    def test_unknown_ai_scorer(self):
        with pytest.raises(ValidationError):
            Settings(ai_scorer="oracle")

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("SWEEP_INTERVAL_MINUTES", "5")
        monkeypatch.setenv("REVIEWER_IDS", '["alice", "bob"]')

        config = Settings()

        assert config.sweep_interval_minutes == 5
        assert config.reviewer_ids == ["alice", "bob"]


class TestDecisionPolicy:
    """Policy consistency checks."""

    def test_from_settings(self):
        policy = DecisionPolicy.from_settings(Settings(
            auto_approval_threshold=0.9, similarity_weight=0.6, ai_confidence_weight=0.4,
        ))

        assert policy.auto_approval_threshold == 0.9
        assert policy.similarity_weight == 0.6
        assert policy.ai_weight == 0.4

    def test_weights_must_sum_to_one(self):
        with pytest.raises(PolicyError):
            DecisionPolicy(similarity_weight=0.7, ai_weight=0.4)

    def test_thresholds_must_be_ordered(self):
        with pytest.raises(PolicyError):
            DecisionPolicy(uncertain_min=0.97)

    def test_auto_approval_outside_range(self):
        with pytest.raises(ValueError):
            DecisionPolicy(auto_approval_threshold=0.3)

    def test_uncertain_band(self):
        policy = DecisionPolicy()
        assert policy.is_uncertain(0.8)
        assert policy.is_uncertain(0.94)
        assert not policy.is_uncertain(0.95)
        assert not policy.is_uncertain(0.79)
