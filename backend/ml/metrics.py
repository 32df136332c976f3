"""Canonical model metric definitions used by training, evaluation and registry comparison."""

from __future__ import annotations

from typing import Any

import numpy as np
import pandas as pd
from sklearn import metrics as skm

from db.models import ModelMetrics, ModelType

# Metrics where a smaller value is the better model.
LOWER_IS_BETTER = frozenset({"mse", "rmse", "mae"})


def _to_numeric(values: Any) -> np.ndarray:
    series = pd.Series(list(values))
    return pd.to_numeric(series, errors="coerce").fillna(0.0).to_numpy(dtype=float)


def _to_labels(values: Any) -> list[str]:
    return [str(v) for v in values]


def confusion_matrix(y_true: Any, y_pred: Any) -> pd.DataFrame:
    """Rows are actual labels, columns predicted labels, over the union of both."""
    actual, pred = _to_labels(y_true), _to_labels(y_pred)
    labels = sorted(set(actual) | set(pred))
    matrix = skm.confusion_matrix(actual, pred, labels=labels) if labels else np.zeros((0, 0), dtype=int)
    return pd.DataFrame(matrix, index=labels, columns=labels)


def classification_metrics(y_true: Any, y_pred: Any) -> ModelMetrics:
    """Accuracy plus macro-averaged precision / recall / F1."""
    actual, pred = _to_labels(y_true), _to_labels(y_pred)
    if not actual:
        return ModelMetrics(accuracy=0.0)
    return ModelMetrics(
        accuracy=float(skm.accuracy_score(actual, pred)),
        precision=float(skm.precision_score(actual, pred, average="macro", zero_division=0)),
        recall=float(skm.recall_score(actual, pred, average="macro", zero_division=0)),
        f1_score=float(skm.f1_score(actual, pred, average="macro", zero_division=0)),
    )


def within_tolerance(y_true: Any, y_pred: Any, tolerance: float = 0.05) -> float:
    """Share of predictions within `tolerance` relative error of the actual value."""
    actual, pred = _to_numeric(y_true), _to_numeric(y_pred)
    if not len(actual):
        return 0.0
    denom = np.where(actual != 0, np.abs(actual), 1.0)
    return float((np.abs(pred - actual) / denom <= tolerance).mean())


def regression_metrics(y_true: Any, y_pred: Any) -> ModelMetrics:
    """
    Error metrics plus an accuracy proxy: the share of predictions within 5%
    of the actual value, matching how the monitor scores live predictions.
    """
    actual, pred = _to_numeric(y_true), _to_numeric(y_pred)
    if not len(actual):
        return ModelMetrics(accuracy=0.0)
    error = float(skm.mean_squared_error(actual, pred))
    # r2 is undefined for a constant target
    r2 = float(skm.r2_score(actual, pred)) if len(actual) > 1 and np.ptp(actual) > 0 else 0.0
    return ModelMetrics(
        accuracy=within_tolerance(actual, pred),
        mse=error,
        rmse=float(np.sqrt(error)),
        mae=float(skm.mean_absolute_error(actual, pred)),
        r2_score=r2,
    )


def calculate_metrics(y_true: Any, y_pred: Any, model_type: ModelType) -> ModelMetrics:
    if model_type == ModelType.REGRESSION:
        return regression_metrics(y_true, y_pred)
    return classification_metrics(y_true, y_pred)


def is_correct_prediction(prediction: Any, actual: Any) -> bool:
    """Numeric predictions count as correct within 5% relative error; anything else by equality."""
    if is_number(prediction) and is_number(actual):
        if actual == 0:
            return prediction == 0
        return abs(prediction - actual) / abs(actual) <= 0.05
    return prediction == actual


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float, np.number)) and not isinstance(value, bool)
