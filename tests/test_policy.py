"""Tests for the policy decision table."""

from __future__ import annotations

import pytest

from decision_os.errors import ValidationFailure
from decision_os.schemas import PolicySignals
from decision_os.store.policy import check_policy


class TestOptionsComparison:
    @pytest.mark.parametrize(
        "signals",
        [
            {"reversibility": "HARD"},
            {"risk_level": "HIGH"},
            {"repo_scope": "CROSS_REPO"},
            {"affected_surface": ["CORE_DOMAIN"]},
            {"affected_surface": ["UI_UX", "DATA_MODEL"]},
            {"affected_surface": ["SECURITY_BOUNDARY"]},
            {"uncertainty": "HIGH"},
        ],
    )
    def test_required(self, signals):
        result = check_policy(signals)
        assert result.require_options_comparison is True
        assert result.warnings

    def test_not_required_for_low_risk(self):
        result = check_policy({"risk_level": "LOW", "affected_surface": ["UI_UX"]})
        assert result.require_options_comparison is False
        assert result.warnings == []


class TestValidationLevel:
    @pytest.mark.parametrize(
        "signals",
        [
            {"risk_level": "HIGH"},
            {"reversibility": "HARD"},
            {"affected_surface": ["SECURITY_BOUNDARY"]},
            {"affected_surface": ["INFRA_DEPLOY"]},
            {"affected_surface": ["PERFORMANCE_CRITICAL"]},
            {"affected_surface": ["DATA_MODEL"]},
            {"uncertainty": "HIGH", "risk_level": "MEDIUM"},
        ],
    )
    def test_strict(self, signals):
        assert check_policy(signals).validation_level == "STRICT"

    @pytest.mark.parametrize(
        "signals",
        [
            {"risk_level": "MEDIUM"},
            {"repo_scope": "CROSS_REPO"},
            {"affected_surface": ["INTEGRATION"]},
            {"affected_surface": ["CORE_DOMAIN"]},
        ],
    )
    def test_standard(self, signals):
        assert check_policy(signals).validation_level == "STANDARD"

    def test_basic(self):
        assert check_policy({"risk_level": "LOW"}).validation_level == "BASIC"
        assert check_policy({}).validation_level == "BASIC"

    def test_unknown_surface_is_not_an_error(self):
        result = check_policy({"affected_surface": ["GIS_SPATIAL"]})
        assert result.validation_level == "BASIC"


class TestInputs:
    def test_accepts_model(self):
        result = check_policy(PolicySignals(risk_level="HIGH"))
        assert result.validation_level == "STRICT"

    def test_rejects_empty_signal(self):
        with pytest.raises(ValidationFailure):
            check_policy({"risk_level": ""})
