"""
Tests for Settings defaults and startup guardrails.
"""

import pytest

from core.config import Settings, _enforce_guardrails


class TestDefaults:
    def test_monitor_defaults(self):
        s = Settings(_env_file=None)
        assert s.monitor_accuracy_min == 0.8
        assert s.monitor_latency_max_ms == 1000.0
        assert s.monitor_error_rate_max == 0.05
        assert s.monitor_throughput_min == 10.0
        assert s.monitor_anomaly_min_samples == 10
        assert s.monitor_anomaly_z_threshold == 3.0

    def test_step_budget_defaults(self):
        s = Settings(_env_file=None)
        assert s.step_max_retries == 3
        assert s.step_timeout_seconds == 300.0
        assert s.step_backoff_seconds == 1.0

    def test_drift_defaults(self):
        s = Settings(_env_file=None)
        assert s.drift_accuracy_delta == 0.05
        assert s.drift_latency_relative_delta == 0.20
        assert s.drift_error_rate_delta == 0.02
        assert s.feature_drift_threshold == 0.1
        assert s.feature_psi_floor == 0.0001

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("STEP_MAX_RETRIES", "5")
        assert Settings(_env_file=None).step_max_retries == 5


class TestGuardrails:
    def test_local_debug_allowed(self):
        _enforce_guardrails(Settings(_env_file=None, app_env="local", debug=True))

    def test_production_debug_rejected(self):
        with pytest.raises(ValueError, match="debug"):
            _enforce_guardrails(Settings(_env_file=None, app_env="production", debug=True))

    def test_production_plain_http_provider_rejected(self):
        with pytest.raises(ValueError, match="plain HTTP"):
            _enforce_guardrails(
                Settings(_env_file=None, app_env="production", literature_provider_url="http://llm.internal")
            )

    def test_zero_retries_rejected(self):
        with pytest.raises(ValueError, match="step_max_retries"):
            _enforce_guardrails(Settings(_env_file=None, step_max_retries=0))
