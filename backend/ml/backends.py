"""
Model Backend — Abstract Base Class

Training and inference sit behind this interface so the registry, monitor
and orchestrator never depend on a specific training library. Artifacts
leave a backend as opaque bytes and come back the same way.

LinearBaselineBackend is the built-in deterministic backend:
  - regression: ordinary or ridge least squares (sklearn)
  - classification: nearest centroid on standardised features
Its artifacts are joblib dumps of {"estimator", "features", "kind"}.
"""

import io
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import joblib
import numpy as np
import pandas as pd
import structlog
from sklearn.linear_model import LinearRegression, Ridge
from sklearn.neighbors import NearestCentroid
from sklearn.pipeline import make_pipeline
from sklearn.preprocessing import StandardScaler

from core.errors import ValidationError
from db.models import HistoricalDataset, ModelMetrics, ModelType
from ml.metrics import calculate_metrics

logger = structlog.get_logger()


# ── Containers ────────────────────────────────────────────────────────────


@dataclass
class TrainingConfig:
    """What to train and on which columns."""

    model_type: ModelType
    target: str
    feature_columns: list[str] | None = None
    hyperparameters: dict[str, Any] = field(default_factory=dict)


@dataclass
class TrainedArtifact:
    """Standardized return from every backend train call."""

    artifact: bytes
    metrics: ModelMetrics
    metadata: dict[str, Any] = field(default_factory=dict)


def dataset_to_frame(dataset: HistoricalDataset) -> pd.DataFrame:
    """Flatten feature vectors into one row per vector."""
    rows = [{"entity_id": v.entity_id, "timestamp": v.timestamp, **v.features} for v in dataset.vectors]
    return pd.DataFrame(rows)


# ── Abstract backend ──────────────────────────────────────────────────────


class ModelBackend(ABC):
    """Base class for model training services."""

    framework: str = "custom"

    @abstractmethod
    def train(self, config: TrainingConfig, dataset: pd.DataFrame) -> TrainedArtifact:
        """Fit a model and return its serialized artifact with validation metrics."""

    @abstractmethod
    def predict(self, artifact: bytes, inputs: dict[str, Any] | list[dict[str, Any]]) -> Any:
        """Score one input row or a list of rows."""


# ── Built-in backend ──────────────────────────────────────────────────────


class LinearBaselineBackend(ModelBackend):
    framework = "sklearn-linear"

    SUPPORTED = (ModelType.REGRESSION, ModelType.CLASSIFICATION)

    def train(self, config: TrainingConfig, dataset: pd.DataFrame) -> TrainedArtifact:
        if config.model_type not in self.SUPPORTED:
            raise ValidationError(
                f"{self.framework} cannot train {config.model_type.value} models",
                model_type=config.model_type.value,
            )
        if config.target not in dataset.columns:
            raise ValidationError(f"Target column '{config.target}' not in dataset", target=config.target)

        frame = dataset.dropna(subset=[config.target]).reset_index(drop=True)
        if len(frame) < 2:
            raise ValidationError("At least two labelled rows are required to train", rows=len(frame))

        features = config.feature_columns or _numeric_columns(frame, exclude={config.target})
        if not features:
            raise ValidationError("No numeric feature columns available", target=config.target)

        train_df, val_df = _holdout_split(frame, float(config.hyperparameters.get("validation_split", 0.2)))
        X_train = _matrix(train_df, features)
        X_val = _matrix(val_df, features)

        if config.model_type == ModelType.REGRESSION:
            kind = "linear_regression"
            estimator = _regressor(config.hyperparameters)
            estimator.fit(X_train, train_df[config.target].astype(float).to_numpy())
        else:
            kind = "nearest_centroid"
            labels = train_df[config.target].to_numpy()
            if len(pd.unique(labels)) < 2:
                raise ValidationError("At least two classes are required to train a classifier", target=config.target)
            estimator = make_pipeline(StandardScaler(), NearestCentroid())
            estimator.fit(X_train, labels)

        predictions = estimator.predict(X_val).tolist()
        metrics = calculate_metrics(val_df[config.target].tolist(), predictions, config.model_type)

        logger.info(
            "backend.trained",
            framework=self.framework,
            model_type=config.model_type.value,
            rows=len(frame),
            features=len(features),
            accuracy=round(metrics.accuracy, 4),
        )
        return TrainedArtifact(
            artifact=dump_artifact({"kind": kind, "estimator": estimator, "features": features}),
            metrics=metrics,
            metadata={"features": features, "rows": len(frame), "validation_rows": len(val_df), "kind": kind},
        )

    def predict(self, artifact: bytes, inputs: dict[str, Any] | list[dict[str, Any]]) -> Any:
        model = load_artifact(artifact)
        single = isinstance(inputs, dict)
        rows = [inputs] if single else list(inputs)
        X = _matrix(pd.DataFrame(rows), model["features"])
        predictions = model["estimator"].predict(X).tolist()
        return predictions[0] if single else predictions


# ── Serialization ─────────────────────────────────────────────────────────


def dump_artifact(model: dict[str, Any]) -> bytes:
    buffer = io.BytesIO()
    joblib.dump(model, buffer)
    return buffer.getvalue()


def load_artifact(artifact: bytes) -> dict[str, Any]:
    """Only load artifacts this backend produced; joblib unpickles arbitrary objects."""
    return joblib.load(io.BytesIO(artifact))


# ── Fitting helpers ───────────────────────────────────────────────────────


def _numeric_columns(frame: pd.DataFrame, exclude: set[str]) -> list[str]:
    return [
        col
        for col in frame.columns
        if col not in exclude and col not in {"entity_id", "timestamp"} and pd.api.types.is_numeric_dtype(frame[col])
        and not pd.api.types.is_bool_dtype(frame[col])
    ]


def _holdout_split(frame: pd.DataFrame, validation_split: float) -> tuple[pd.DataFrame, pd.DataFrame]:
    """Time-ordered split: the last rows validate. Small frames validate in-sample."""
    n_val = int(len(frame) * validation_split)
    if n_val < 1 or len(frame) - n_val < 2:
        return frame, frame
    return frame.iloc[: len(frame) - n_val], frame.iloc[len(frame) - n_val :]


def _matrix(frame: pd.DataFrame, features: list[str]) -> np.ndarray:
    cols = {}
    for name in features:
        series = frame[name] if name in frame.columns else pd.Series([0.0] * len(frame))
        cols[name] = pd.to_numeric(series, errors="coerce").fillna(0.0).to_numpy(dtype=float)
    return np.column_stack([cols[name] for name in features]) if features else np.zeros((len(frame), 0))


def _regressor(hyperparameters: dict[str, Any]):
    l2 = float(hyperparameters.get("l2", 0.0))
    if l2 < 0:
        raise ValidationError("l2 must be non-negative", l2=l2)
    # the intercept is never penalised
    return Ridge(alpha=l2) if l2 > 0 else LinearRegression()
