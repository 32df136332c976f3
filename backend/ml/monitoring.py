"""
Model Monitor — Per-minute performance buckets, threshold alerts, drift.

Every recorded prediction lands in the model's bucket for its wall-clock
minute. After the bucket is updated:
  1. Anomaly check: numeric predictions far outside the recent window
  2. Threshold check: accuracy / latency / error rate on the live bucket,
     throughput on the bucket that just closed

Drift and threshold conditions are recorded as Alerts, never raised.
"""

from collections import deque
from datetime import datetime
from typing import Any

import numpy as np
import structlog
from pydantic import TypeAdapter

from alerts.engine import (
    AlertEngine,
    classify_anomaly_severity,
    classify_breach_severity,
    classify_drift_severity,
)
from core.config import Settings, get_settings
from core.errors import ValidationError
from core.locks import KeyedLock
from db.models import (
    Alert,
    AlertSeverity,
    AlertType,
    DriftReport,
    MonitorThresholds,
    PerformanceBucket,
    PerformanceReport,
    PerformanceSummary,
    TimeWindow,
    as_utc,
    utcnow,
)
from db.repositories import InMemoryRepository, Repository
from ml.metrics import is_correct_prediction, is_number

logger = structlog.get_logger()

NO_DATA_RECOMMENDATION = "No data available for this period"
HIGH_SEVERITY_ALERT_LIMIT = 5

_TIMESTAMP = TypeAdapter(datetime)


def _minute(ts: datetime) -> datetime:
    return as_utc(ts).replace(second=0, microsecond=0)


def _bucket_key(model_id: str, minute: datetime) -> str:
    return f"{model_id}@{minute.isoformat()}"


class ModelMonitor:
    """Per-tenant prediction monitor."""

    def __init__(
        self,
        settings: Settings | None = None,
        alert_engine: AlertEngine | None = None,
        buckets: Repository[PerformanceBucket] | None = None,
    ):
        self.settings = settings or get_settings()
        self.alert_engine = alert_engine or AlertEngine()
        self.buckets: Repository[PerformanceBucket] = buckets or InMemoryRepository("Performance bucket")
        self.default_thresholds = MonitorThresholds(
            accuracy_min=self.settings.monitor_accuracy_min,
            latency_max=self.settings.monitor_latency_max_ms,
            error_rate_max=self.settings.monitor_error_rate_max,
            throughput_min=self.settings.monitor_throughput_min,
        )
        self._thresholds: dict[str, MonitorThresholds] = {}
        self._windows: dict[str, deque[float]] = {}
        self._current_minute: dict[str, datetime] = {}
        self._locks = KeyedLock()

    # ─── Thresholds ────────────────────────────────────────────────────────

    async def set_thresholds(self, model_id: str, **overrides: float) -> MonitorThresholds:
        unknown = set(overrides) - set(MonitorThresholds.model_fields)
        if unknown:
            raise ValidationError(f"Unknown threshold(s): {', '.join(sorted(unknown))}", errors=sorted(unknown))

        base = self._thresholds.get(model_id, self.default_thresholds)
        thresholds = base.model_copy(update={k: float(v) for k, v in overrides.items() if v is not None})
        self._thresholds[model_id] = MonitorThresholds.model_validate(thresholds.model_dump())
        logger.info("monitor.thresholds_set", model_id=model_id, **self._thresholds[model_id].model_dump())
        return self._thresholds[model_id]

    def get_thresholds(self, model_id: str) -> MonitorThresholds:
        return self._thresholds.get(model_id, self.default_thresholds)

    # ─── Recording ─────────────────────────────────────────────────────────

    async def record_prediction(
        self,
        model_id: str,
        input: Any,
        prediction: Any,
        actual: Any = None,
        latency: float | None = None,
        error: bool = False,
        timestamp: datetime | None = None,
    ) -> list[Alert]:
        """
        Record one prediction. Returns the alerts it triggered.

        `input` is accepted for auditing but not stored.
        """
        ts = as_utc(timestamp) if timestamp else utcnow()
        minute = _minute(ts)
        raised: list[Alert] = []

        async with self._locks(model_id):
            closed = self._roll_minute(model_id, minute)
            bucket = self._bucket(model_id, minute)

            bucket.predictions += 1
            if actual is not None:
                bucket.labeled += 1
                if is_correct_prediction(prediction, actual):
                    bucket.correct += 1
                bucket.accuracy = bucket.correct / bucket.labeled
            if latency is not None:
                bucket.latency_samples += 1
                bucket.latency += (float(latency) - bucket.latency) / bucket.latency_samples
            if error:
                bucket.errors += 1
            bucket.error_rate = bucket.errors / bucket.predictions
            bucket.throughput = bucket.predictions / 60

            anomaly = self._check_anomaly(model_id, prediction, ts)
            if anomaly:
                raised.append(anomaly)
            raised.extend(self._check_thresholds(bucket, ts))
            if closed is not None:
                raised.extend(self._check_throughput(closed, ts))

        return raised

    async def record_custom_metric(
        self,
        model_id: str,
        name: str,
        value: float,
        timestamp: datetime | None = None,
    ) -> PerformanceBucket:
        minute = _minute(timestamp or utcnow())
        async with self._locks(model_id):
            bucket = self._bucket(model_id, minute)
            bucket.custom = {**bucket.custom, name: float(value)}
        return bucket

    async def ingest_metrics(self, model_id: str, records: list[dict[str, Any]]) -> list[PerformanceBucket]:
        """
        Backfill aggregated buckets (e.g. from an offline prediction log).

        Each record needs a `timestamp`; `predictions` defaults to 1. Counts
        the record omits are derived from its rates. A record replaces any
        existing bucket for the same minute. The batch is validated in full
        before anything is written.
        """
        built: list[PerformanceBucket] = []
        errors: list[str] = []
        for idx, record in enumerate(records):
            if "timestamp" not in record:
                errors.append(f"record {idx}: missing timestamp")
                continue
            try:
                built.append(self._bucket_from_record(model_id, record))
            except ValueError as exc:
                errors.append(f"record {idx}: {exc}")
        if errors:
            raise ValidationError("Invalid metric records", errors=errors, model_id=model_id)

        async with self._locks(model_id):
            for bucket in built:
                self.buckets.put(_bucket_key(model_id, bucket.timestamp), bucket)

        logger.info("monitor.metrics_ingested", model_id=model_id, buckets=len(built))
        return built

    def _bucket_from_record(self, model_id: str, record: dict[str, Any]) -> PerformanceBucket:
        predictions = int(record.get("predictions", 1))
        if predictions < 1:
            raise ValueError("predictions must be positive")
        data: dict[str, Any] = {"model_id": model_id, "predictions": predictions}
        data["timestamp"] = _minute(_TIMESTAMP.validate_python(record["timestamp"]))

        if record.get("accuracy") is not None:
            accuracy = float(record["accuracy"])
            if not 0 <= accuracy <= 1:
                raise ValueError("accuracy must be within [0, 1]")
            labeled = int(record.get("labeled", predictions))
            data.update(accuracy=accuracy, labeled=labeled, correct=round(accuracy * labeled))
        if record.get("latency") is not None:
            data.update(latency=float(record["latency"]), latency_samples=predictions)
        error_rate = float(record.get("error_rate", 0.0))
        data.update(
            error_rate=error_rate,
            errors=round(error_rate * predictions),
            throughput=float(record.get("throughput", predictions / 60)),
            custom=dict(record.get("custom", {})),
        )
        return PerformanceBucket(**data)

    def _bucket(self, model_id: str, minute: datetime) -> PerformanceBucket:
        key = _bucket_key(model_id, minute)
        bucket = self.buckets.get(key)
        if bucket is None:
            bucket = PerformanceBucket(model_id=model_id, timestamp=minute)
            self.buckets.put(key, bucket)
        return bucket

    def _roll_minute(self, model_id: str, minute: datetime) -> PerformanceBucket | None:
        """Advance the model's live minute. Returns the bucket that just closed, if any."""
        current = self._current_minute.get(model_id)
        if current is not None and minute <= current:
            return None
        self._current_minute[model_id] = minute
        if current is None:
            return None
        return self.buckets.get(_bucket_key(model_id, current))

    # ─── Checks ────────────────────────────────────────────────────────────

    def _check_anomaly(self, model_id: str, prediction: Any, ts: datetime) -> Alert | None:
        if not is_number(prediction):
            return None

        value = float(prediction)
        window = self._windows.setdefault(model_id, deque(maxlen=self.settings.monitor_anomaly_window))
        alert = None
        if len(window) >= self.settings.monitor_anomaly_min_samples:
            samples = np.asarray(window, dtype=float)
            mean = float(samples.mean())
            std = float(samples.std())
            deviation = abs(value - mean)
            if deviation > self.settings.monitor_anomaly_z_threshold * std:
                z_score = deviation / std if std > 0 else None
                severity = classify_anomaly_severity(z_score) if z_score is not None else AlertSeverity.CRITICAL
                alert = self.alert_engine.raise_alert(
                    model_id,
                    AlertType.ANOMALY,
                    severity,
                    f"Anomalous prediction detected: {value:.4g} (window mean {mean:.4g}, std {std:.4g})",
                    metadata={"prediction": value, "mean": mean, "std": std, "z_score": z_score},
                    timestamp=ts,
                )
        window.append(value)
        return alert

    def _check_thresholds(self, bucket: PerformanceBucket, ts: datetime) -> list[Alert]:
        thresholds = self.get_thresholds(bucket.model_id)
        minute = bucket.timestamp.isoformat()
        raised = []

        if bucket.labeled > 0 and bucket.accuracy < thresholds.accuracy_min:
            raised.append(
                self._breach(
                    bucket, "accuracy", bucket.accuracy, thresholds.accuracy_min, AlertType.PERFORMANCE, ts,
                    f"Accuracy below threshold: {bucket.accuracy:.3f} < {thresholds.accuracy_min}",
                )
            )
        if bucket.latency_samples > 0 and bucket.latency > thresholds.latency_max:
            raised.append(
                self._breach(
                    bucket, "latency", bucket.latency, thresholds.latency_max, AlertType.PERFORMANCE, ts,
                    f"Latency above threshold: {bucket.latency:.0f}ms > {thresholds.latency_max:.0f}ms",
                )
            )
        if bucket.error_rate > thresholds.error_rate_max:
            raised.append(
                self._breach(
                    bucket, "error_rate", bucket.error_rate, thresholds.error_rate_max, AlertType.ERROR, ts,
                    f"Error rate above threshold: {bucket.error_rate:.1%} > {thresholds.error_rate_max:.1%}",
                )
            )
        logger.debug("monitor.thresholds_checked", model_id=bucket.model_id, minute=minute, alerts=len(raised))
        return [a for a in raised if a is not None]

    def _check_throughput(self, closed: PerformanceBucket, ts: datetime) -> list[Alert]:
        thresholds = self.get_thresholds(closed.model_id)
        if closed.throughput >= thresholds.throughput_min:
            return []
        alert = self._breach(
            closed, "throughput", closed.throughput, thresholds.throughput_min, AlertType.PERFORMANCE, ts,
            f"Throughput below threshold: {closed.throughput:.2f}/s < {thresholds.throughput_min}/s",
        )
        return [alert] if alert else []

    def _breach(
        self,
        bucket: PerformanceBucket,
        metric: str,
        value: float,
        threshold: float,
        alert_type: AlertType,
        ts: datetime,
        message: str,
    ) -> Alert | None:
        return self.alert_engine.raise_alert(
            bucket.model_id,
            alert_type,
            classify_breach_severity(value, threshold),
            message,
            metadata={"metric": metric, "value": value, "threshold": threshold, "bucket": bucket.timestamp.isoformat()},
            dedup_key=f"{bucket.timestamp.isoformat()}:{metric}",
            timestamp=ts,
        )

    # ─── Queries ───────────────────────────────────────────────────────────

    async def get_model_metrics(
        self,
        model_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[PerformanceBucket]:
        lo = as_utc(start) if start else None
        hi = as_utc(end) if end else None

        def in_range(bucket: PerformanceBucket) -> bool:
            if bucket.model_id != model_id:
                return False
            if lo is not None and bucket.timestamp < lo:
                return False
            if hi is not None and bucket.timestamp > hi:
                return False
            return True

        return sorted(self.buckets.filter(in_range), key=lambda b: b.timestamp)

    async def get_realtime_metrics(self, model_id: str) -> PerformanceBucket | None:
        buckets = await self.get_model_metrics(model_id)
        return buckets[-1] if buckets else None

    async def get_alerts(
        self,
        model_id: str | None = None,
        severity: AlertSeverity | None = None,
        resolved: bool | None = None,
    ) -> list[Alert]:
        return self.alert_engine.get_alerts(model_id=model_id, severity=severity, resolved=resolved)

    async def resolve_alert(self, alert_id: str) -> Alert:
        return self.alert_engine.resolve_alert(alert_id)

    # ─── Drift ─────────────────────────────────────────────────────────────

    async def detect_model_drift(
        self,
        model_id: str,
        baseline: TimeWindow,
        comparison: TimeWindow,
    ) -> DriftReport:
        """
        Compare period averages of accuracy, latency and error rate.

        Drift score is the mean of the deltas that breached their limits.
        An empty period yields `insufficient_data=True` instead of raising.
        """
        base = await self.get_model_metrics(model_id, baseline.start, baseline.end)
        cmp_ = await self.get_model_metrics(model_id, comparison.start, comparison.end)
        log = logger.bind(model_id=model_id, baseline_buckets=len(base), comparison_buckets=len(cmp_))

        if not base or not cmp_:
            log.info("monitor.drift_insufficient_data")
            return DriftReport(model_id=model_id, is_drift=False, drift_score=0.0, insufficient_data=True)

        base_avg = _period_averages(base)
        cmp_avg = _period_averages(cmp_)

        deltas: dict[str, float] = {}
        if base_avg["accuracy"] is not None and cmp_avg["accuracy"] is not None:
            deltas["accuracy"] = abs(base_avg["accuracy"] - cmp_avg["accuracy"])
        if base_avg["latency"] is not None and cmp_avg["latency"] is not None:
            deltas["latency"] = _relative_delta(base_avg["latency"], cmp_avg["latency"])
        deltas["error_rate"] = abs(base_avg["error_rate"] - cmp_avg["error_rate"])

        limits = {
            "accuracy": self.settings.drift_accuracy_delta,
            "latency": self.settings.drift_latency_relative_delta,
            "error_rate": self.settings.drift_error_rate_delta,
        }
        affected = [metric for metric, delta in deltas.items() if delta > limits[metric]]
        score = float(np.mean([deltas[m] for m in affected])) if affected else 0.0

        report = DriftReport(
            model_id=model_id,
            is_drift=bool(affected),
            drift_score=score,
            affected_metrics=affected,
            deltas=deltas,
        )
        if affected:
            alert = self.alert_engine.raise_alert(
                model_id,
                AlertType.DRIFT,
                classify_drift_severity(score),
                f"Model drift detected. Affected metrics: {', '.join(affected)}",
                metadata={
                    "drift_score": score,
                    "affected_metrics": affected,
                    "baseline": baseline.model_dump(mode="json"),
                    "comparison": comparison.model_dump(mode="json"),
                },
            )
            report.alert_id = alert.id if alert else None

        log.info("monitor.drift_checked", is_drift=report.is_drift, drift_score=round(score, 4), affected=affected)
        return report

    # ─── Reporting ─────────────────────────────────────────────────────────

    async def generate_performance_report(self, model_id: str, period: TimeWindow) -> PerformanceReport:
        buckets = await self.get_model_metrics(model_id, period.start, period.end)
        alerts = self.alert_engine.get_alerts(model_id=model_id, window=period)

        if not buckets:
            return PerformanceReport(
                model_id=model_id,
                period=period,
                summary=PerformanceSummary(),
                trends={"accuracy": [], "latency": [], "throughput": []},
                alerts=alerts,
                recommendations=[NO_DATA_RECOMMENDATION],
            )

        averages = _period_averages(buckets)
        total = sum(b.predictions for b in buckets)
        summary = PerformanceSummary(
            total_predictions=total,
            average_accuracy=averages["accuracy"] or 0.0,
            average_latency=averages["latency"] or 0.0,
            error_rate=sum(b.errors for b in buckets) / total if total else 0.0,
            uptime=_uptime(len(buckets), period),
        )
        trends = {
            "accuracy": [b.accuracy for b in buckets],
            "latency": [b.latency for b in buckets],
            "throughput": [b.throughput for b in buckets],
        }
        return PerformanceReport(
            model_id=model_id,
            period=period,
            summary=summary,
            trends=trends,
            alerts=alerts,
            recommendations=self._recommendations(model_id, summary, averages, alerts),
        )

    def _recommendations(
        self,
        model_id: str,
        summary: PerformanceSummary,
        averages: dict[str, float | None],
        alerts: list[Alert],
    ) -> list[str]:
        thresholds = self.get_thresholds(model_id)
        recommendations = []

        if averages["accuracy"] is not None and summary.average_accuracy < thresholds.accuracy_min:
            recommendations.append(
                f"Model accuracy is below {thresholds.accuracy_min:.0%}. Consider retraining with more recent data."
            )
        if averages["latency"] is not None and summary.average_latency > thresholds.latency_max:
            recommendations.append("High latency detected. Consider model optimization or infrastructure scaling.")
        if summary.error_rate > thresholds.error_rate_max:
            recommendations.append(
                f"Error rate is above {thresholds.error_rate_max:.0%}. Review input data quality and model robustness."
            )
        severe = [a for a in alerts if a.severity in (AlertSeverity.HIGH, AlertSeverity.CRITICAL)]
        if len(severe) > HIGH_SEVERITY_ALERT_LIMIT:
            recommendations.append("Multiple high-severity alerts detected. Immediate investigation recommended.")
        return recommendations


def _period_averages(buckets: list[PerformanceBucket]) -> dict[str, float | None]:
    """Bucket-level means. Accuracy and latency only count buckets that observed them."""
    labeled = [b.accuracy for b in buckets if b.labeled > 0]
    timed = [b.latency for b in buckets if b.latency_samples > 0]
    return {
        "accuracy": float(np.mean(labeled)) if labeled else None,
        "latency": float(np.mean(timed)) if timed else None,
        "error_rate": float(np.mean([b.error_rate for b in buckets])),
        "throughput": float(np.mean([b.throughput for b in buckets])),
    }


def _relative_delta(baseline: float, comparison: float) -> float:
    if baseline == 0:
        return 0.0 if comparison == 0 else 1.0
    return abs(comparison - baseline) / abs(baseline)


def _uptime(active_minutes: int, period: TimeWindow) -> float:
    if period.minutes <= 0:
        return 1.0 if active_minutes else 0.0
    return min(active_minutes / period.minutes, 1.0)
