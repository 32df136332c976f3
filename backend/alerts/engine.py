"""
Alert Engine — Severity rules, alert deduplication, and alert lifecycle.

Alert Types:
  - performance: A per-minute metric bucket breached a model threshold
  - error: Bucket error rate above the model's error_rate_max
  - anomaly: Numeric prediction far outside the recent prediction window
  - drift: Period-over-period performance drift (see ModelMonitor.detect_model_drift)

Alerts are recorded, never raised. Each (model, dedup key) pair produces at
most one alert, so a breached bucket is reported once per metric.
"""

from datetime import datetime
from typing import Any

import structlog

from db.models import Alert, AlertSeverity, AlertType, TimeWindow
from db.repositories import InMemoryRepository, Repository

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────────────────
# Severity Rules
# ──────────────────────────────────────────────────────────────────────────

SEVERITY_THRESHOLDS = {
    "anomaly_z_score": {
        "critical": 4.0,
        "high": 3.0,
        "medium": 2.5,
        "low": 2.0,
    },
    # Relative breach: |value - threshold| / threshold
    "threshold_breach": {
        "critical": 0.5,
        "high": 0.25,
        "medium": 0.1,
    },
    "drift_score": {
        "high": 0.15,
    },
}


def classify_anomaly_severity(z_score: float) -> AlertSeverity:
    """Classify anomaly severity based on z-score."""
    thresholds = SEVERITY_THRESHOLDS["anomaly_z_score"]
    z = abs(z_score)
    if z >= thresholds["critical"]:
        return AlertSeverity.CRITICAL
    elif z >= thresholds["high"]:
        return AlertSeverity.HIGH
    elif z >= thresholds["medium"]:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def relative_breach(value: float, threshold: float) -> float:
    """Breach magnitude relative to the threshold. A zero threshold counts as a full breach."""
    if threshold == 0:
        return 1.0 if value != 0 else 0.0
    return abs(value - threshold) / abs(threshold)


def classify_breach_severity(value: float, threshold: float) -> AlertSeverity:
    """Classify a threshold breach by how far past the threshold the value lies."""
    thresholds = SEVERITY_THRESHOLDS["threshold_breach"]
    breach = relative_breach(value, threshold)
    if breach >= thresholds["critical"]:
        return AlertSeverity.CRITICAL
    elif breach >= thresholds["high"]:
        return AlertSeverity.HIGH
    elif breach >= thresholds["medium"]:
        return AlertSeverity.MEDIUM
    return AlertSeverity.LOW


def classify_drift_severity(drift_score: float) -> AlertSeverity:
    if drift_score > SEVERITY_THRESHOLDS["drift_score"]["high"]:
        return AlertSeverity.HIGH
    return AlertSeverity.MEDIUM


# ──────────────────────────────────────────────────────────────────────────
# Alert Lifecycle
# ──────────────────────────────────────────────────────────────────────────


class AlertEngine:
    """Stores alerts, suppresses duplicates, and resolves them."""

    def __init__(self, repository: Repository[Alert] | None = None):
        self.alerts: Repository[Alert] = repository or InMemoryRepository("Alert")
        self._seen: set[tuple[str, str]] = set()

    def raise_alert(
        self,
        model_id: str,
        alert_type: AlertType,
        severity: AlertSeverity,
        message: str,
        metadata: dict[str, Any] | None = None,
        dedup_key: str | None = None,
        timestamp: datetime | None = None,
    ) -> Alert | None:
        """
        Record an alert. Returns None when `dedup_key` was already used for
        this model.
        """
        if dedup_key is not None:
            key = (model_id, dedup_key)
            if key in self._seen:
                return None
            self._seen.add(key)

        alert = Alert(
            model_id=model_id,
            type=alert_type,
            severity=severity,
            message=message,
            metadata=metadata or {},
        )
        if timestamp is not None:
            alert.timestamp = timestamp
        self.alerts.put(alert.id, alert)

        logger.info(
            "alerts.raised",
            alert_id=alert.id,
            model_id=model_id,
            alert_type=alert_type.value,
            severity=severity.value,
            message=message,
        )
        return alert

    def get_alerts(
        self,
        model_id: str | None = None,
        severity: AlertSeverity | None = None,
        resolved: bool | None = None,
        window: TimeWindow | None = None,
    ) -> list[Alert]:
        def matches(alert: Alert) -> bool:
            if model_id is not None and alert.model_id != model_id:
                return False
            if severity is not None and alert.severity != severity:
                return False
            if resolved is not None and alert.resolved != resolved:
                return False
            if window is not None and not window.contains(alert.timestamp):
                return False
            return True

        return sorted(self.alerts.filter(matches), key=lambda a: a.timestamp, reverse=True)

    def resolve_alert(self, alert_id: str) -> Alert:
        alert = self.alerts.require(alert_id)
        if not alert.resolved:
            alert.resolved = True
            logger.info("alerts.resolved", alert_id=alert_id, model_id=alert.model_id)
        return alert

    def count_by_severity(self, alerts: list[Alert]) -> dict[str, int]:
        counts = {s.value: 0 for s in AlertSeverity}
        for alert in alerts:
            counts[alert.severity.value] += 1
        return counts
