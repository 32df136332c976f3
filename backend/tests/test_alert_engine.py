"""
Tests for the Alert Engine — Severity Classification and Alert Lifecycle.

Covers:
  - Anomaly severity classification (z-score)
  - Threshold breach severity (relative magnitude)
  - Drift severity
  - Deduplication, filtering, resolution
"""

from datetime import datetime, timedelta, timezone

import pytest

from alerts.engine import (
    AlertEngine,
    classify_anomaly_severity,
    classify_breach_severity,
    classify_drift_severity,
    relative_breach,
)
from core.errors import NotFoundError
from db.models import AlertSeverity, AlertType, TimeWindow

# ── Anomaly Severity ──────────────────────────────────────────────────


class TestAnomalySeverity:
    def test_critical_high_z(self):
        assert classify_anomaly_severity(4.5) == AlertSeverity.CRITICAL

    def test_critical_exact_threshold(self):
        assert classify_anomaly_severity(4.0) == AlertSeverity.CRITICAL

    def test_high_z(self):
        assert classify_anomaly_severity(3.5) == AlertSeverity.HIGH

    def test_medium_z(self):
        assert classify_anomaly_severity(2.7) == AlertSeverity.MEDIUM

    def test_low_z(self):
        assert classify_anomaly_severity(2.0) == AlertSeverity.LOW

    def test_negative_z_uses_absolute(self):
        assert classify_anomaly_severity(-4.5) == AlertSeverity.CRITICAL
        assert classify_anomaly_severity(-3.0) == AlertSeverity.HIGH


# ── Breach Severity ───────────────────────────────────────────────────


class TestBreachSeverity:
    def test_relative_breach(self):
        assert relative_breach(0.6, 0.8) == pytest.approx(0.25)
        assert relative_breach(1500, 1000) == pytest.approx(0.5)

    def test_zero_threshold(self):
        assert relative_breach(0.1, 0.0) == 1.0
        assert relative_breach(0.0, 0.0) == 0.0

    def test_levels(self):
        assert classify_breach_severity(0.78, 0.8) == AlertSeverity.LOW
        assert classify_breach_severity(0.70, 0.8) == AlertSeverity.MEDIUM
        assert classify_breach_severity(1300, 1000) == AlertSeverity.HIGH
        assert classify_breach_severity(0.2, 0.05) == AlertSeverity.CRITICAL


class TestDriftSeverity:
    def test_high_above_limit(self):
        assert classify_drift_severity(0.16) == AlertSeverity.HIGH

    def test_medium_at_or_below_limit(self):
        assert classify_drift_severity(0.15) == AlertSeverity.MEDIUM
        assert classify_drift_severity(0.06) == AlertSeverity.MEDIUM


# ── Lifecycle ─────────────────────────────────────────────────────────


class TestAlertLifecycle:
    def test_raise_and_list_newest_first(self):
        engine = AlertEngine()
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        first = engine.raise_alert("m1", AlertType.PERFORMANCE, AlertSeverity.LOW, "a", timestamp=t0)
        second = engine.raise_alert(
            "m1", AlertType.ERROR, AlertSeverity.HIGH, "b", timestamp=t0 + timedelta(minutes=1)
        )
        assert [a.id for a in engine.get_alerts("m1")] == [second.id, first.id]
        assert first.id.startswith("alert_")

    def test_dedup_key_suppresses_repeat(self):
        engine = AlertEngine()
        assert engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.HIGH, "x", dedup_key="k") is not None
        assert engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.HIGH, "x", dedup_key="k") is None
        # same key on another model is independent
        assert engine.raise_alert("m2", AlertType.ERROR, AlertSeverity.HIGH, "x", dedup_key="k") is not None
        assert len(engine.get_alerts()) == 2

    def test_filters(self):
        engine = AlertEngine()
        t0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
        engine.raise_alert("m1", AlertType.DRIFT, AlertSeverity.HIGH, "d", timestamp=t0)
        low = engine.raise_alert("m1", AlertType.PERFORMANCE, AlertSeverity.LOW, "p", timestamp=t0 + timedelta(hours=2))
        engine.raise_alert("m2", AlertType.ANOMALY, AlertSeverity.HIGH, "a", timestamp=t0)

        assert len(engine.get_alerts(severity=AlertSeverity.HIGH)) == 2
        assert len(engine.get_alerts(model_id="m1", severity=AlertSeverity.HIGH)) == 1
        window = TimeWindow(start=t0 + timedelta(hours=1), end=t0 + timedelta(hours=3))
        assert [a.id for a in engine.get_alerts(model_id="m1", window=window)] == [low.id]

    def test_resolve(self):
        engine = AlertEngine()
        alert = engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.MEDIUM, "x")
        engine.resolve_alert(alert.id)
        assert engine.get_alerts(resolved=False) == []
        assert [a.id for a in engine.get_alerts(resolved=True)] == [alert.id]

    def test_resolve_unknown(self):
        with pytest.raises(NotFoundError):
            AlertEngine().resolve_alert("alert_missing")

    def test_count_by_severity(self):
        engine = AlertEngine()
        engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.HIGH, "x")
        engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.HIGH, "y")
        engine.raise_alert("m1", AlertType.ERROR, AlertSeverity.LOW, "z")
        counts = engine.count_by_severity(engine.get_alerts())
        assert counts == {"low": 1, "medium": 0, "high": 2, "critical": 0}
