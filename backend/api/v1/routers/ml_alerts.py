"""
Model Monitoring API — Predictions, rolling metrics, alerts, drift.

Endpoints:
  POST /api/v1/ml/monitoring/{model_id}/predictions — Record one prediction (returns triggered alerts)
  POST /api/v1/ml/monitoring/{model_id}/metrics — Backfill aggregated per-minute buckets
  POST /api/v1/ml/monitoring/{model_id}/custom-metrics — Record a named metric value
  GET  /api/v1/ml/monitoring/{model_id}/metrics — Buckets in a time range
  GET  /api/v1/ml/monitoring/{model_id}/realtime — Latest bucket
  GET/PUT /api/v1/ml/monitoring/{model_id}/thresholds — Alert thresholds
  POST /api/v1/ml/monitoring/{model_id}/drift — Compare two periods
  GET  /api/v1/ml/monitoring/{model_id}/report — Performance report for a period
  GET  /api/v1/ml/monitoring/alerts — List alerts (model, severity, resolved)
  GET  /api/v1/ml/monitoring/alerts/stats — Alert counts by severity
  POST /api/v1/ml/monitoring/alerts/{id}/resolve — Resolve an alert
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from api.deps import get_monitor
from db.models import (
    Alert,
    AlertSeverity,
    DriftReport,
    MonitorThresholds,
    PerformanceBucket,
    PerformanceReport,
    TimeWindow,
)
from ml.monitoring import ModelMonitor

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ml/monitoring", tags=["monitoring"])


# ── Request Models ──────────────────────────────────────────────────────────


class PredictionRequest(BaseModel):
    input: Any = None
    prediction: Any
    actual: Any = None
    latency: float | None = Field(default=None, ge=0)
    error: bool = False
    timestamp: datetime | None = None


class MetricRecordsRequest(BaseModel):
    records: list[dict[str, Any]]


class CustomMetricRequest(BaseModel):
    name: str = Field(min_length=1)
    value: float
    timestamp: datetime | None = None


class ThresholdsRequest(BaseModel):
    accuracy_min: float | None = None
    latency_max: float | None = None
    error_rate_max: float | None = None
    throughput_min: float | None = None


class DriftRequest(BaseModel):
    baseline: TimeWindow
    comparison: TimeWindow


# ── Alerts ──────────────────────────────────────────────────────────────────


@router.get("/alerts")
async def list_alerts(
    model_id: str | None = None,
    severity: AlertSeverity | None = None,
    resolved: bool | None = None,
    monitor: ModelMonitor = Depends(get_monitor),
) -> list[Alert]:
    return await monitor.get_alerts(model_id=model_id, severity=severity, resolved=resolved)


@router.get("/alerts/stats")
async def alert_stats(
    model_id: str | None = None,
    monitor: ModelMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    """
    Unresolved alert counts by severity.

    Returns:
        {"total_unresolved": 3, "by_severity": {"low": 0, "medium": 1, "high": 2, "critical": 0}}
    """
    open_alerts = await monitor.get_alerts(model_id=model_id, resolved=False)
    return {
        "total_unresolved": len(open_alerts),
        "by_severity": monitor.alert_engine.count_by_severity(open_alerts),
    }


@router.post("/alerts/{alert_id}/resolve")
async def resolve_alert(alert_id: str, monitor: ModelMonitor = Depends(get_monitor)) -> Alert:
    return await monitor.resolve_alert(alert_id)


# ── Recording ───────────────────────────────────────────────────────────────


@router.post("/{model_id}/predictions")
async def record_prediction(
    model_id: str,
    body: PredictionRequest,
    monitor: ModelMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    alerts = await monitor.record_prediction(
        model_id,
        body.input,
        body.prediction,
        actual=body.actual,
        latency=body.latency,
        error=body.error,
        timestamp=body.timestamp,
    )
    return {"recorded": True, "alerts": alerts}


@router.post("/{model_id}/metrics")
async def ingest_metrics(
    model_id: str,
    body: MetricRecordsRequest,
    monitor: ModelMonitor = Depends(get_monitor),
) -> dict[str, Any]:
    buckets = await monitor.ingest_metrics(model_id, body.records)
    return {"ingested": len(buckets)}


@router.post("/{model_id}/custom-metrics")
async def record_custom_metric(
    model_id: str,
    body: CustomMetricRequest,
    monitor: ModelMonitor = Depends(get_monitor),
) -> PerformanceBucket:
    return await monitor.record_custom_metric(model_id, body.name, body.value, timestamp=body.timestamp)


# ── Queries ─────────────────────────────────────────────────────────────────


@router.get("/{model_id}/metrics")
async def get_model_metrics(
    model_id: str,
    start: datetime | None = None,
    end: datetime | None = None,
    monitor: ModelMonitor = Depends(get_monitor),
) -> list[PerformanceBucket]:
    return await monitor.get_model_metrics(model_id, start, end)


@router.get("/{model_id}/realtime")
async def get_realtime_metrics(
    model_id: str,
    monitor: ModelMonitor = Depends(get_monitor),
) -> PerformanceBucket | None:
    return await monitor.get_realtime_metrics(model_id)


@router.get("/{model_id}/thresholds")
async def get_thresholds(model_id: str, monitor: ModelMonitor = Depends(get_monitor)) -> MonitorThresholds:
    return monitor.get_thresholds(model_id)


@router.put("/{model_id}/thresholds")
async def set_thresholds(
    model_id: str,
    body: ThresholdsRequest,
    monitor: ModelMonitor = Depends(get_monitor),
) -> MonitorThresholds:
    return await monitor.set_thresholds(model_id, **body.model_dump(exclude_none=True))


@router.post("/{model_id}/drift")
async def detect_model_drift(
    model_id: str,
    body: DriftRequest,
    monitor: ModelMonitor = Depends(get_monitor),
) -> DriftReport:
    return await monitor.detect_model_drift(model_id, body.baseline, body.comparison)


@router.get("/{model_id}/report")
async def performance_report(
    model_id: str,
    start: datetime,
    end: datetime,
    monitor: ModelMonitor = Depends(get_monitor),
) -> PerformanceReport:
    return await monitor.generate_performance_report(model_id, TimeWindow(start=start, end=end))
