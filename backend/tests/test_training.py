"""
Tests for model training — the built-in backend, hyperparameter search,
and background training jobs.
"""

import asyncio
import threading

import pandas as pd
import pytest

from core.errors import ValidationError
from db.models import FeatureDefinition, FeatureType, FeatureVector, HistoricalDataset, JobStatus, ModelStatus, ModelType
from ml.backends import LinearBaselineBackend, TrainingConfig, dataset_to_frame, load_artifact
from ml.registry import ModelRegistry
from ml.training import HyperparameterOptimizer, TrainingPipeline


@pytest.fixture
def backend() -> LinearBaselineBackend:
    return LinearBaselineBackend()


@pytest.fixture
def pipeline() -> TrainingPipeline:
    return TrainingPipeline(ModelRegistry())


# ── Backend ───────────────────────────────────────────────────────────


class TestLinearBaselineBackend:
    def test_regression_fit(self, backend, regression_frame):
        trained = backend.train(TrainingConfig(model_type=ModelType.REGRESSION, target="y"), regression_frame)

        assert trained.metrics.accuracy == pytest.approx(1.0)
        assert trained.metrics.r2_score > 0.99
        assert trained.metadata["features"] == ["x1", "x2"]
        assert trained.metadata["validation_rows"] == 8
        assert backend.predict(trained.artifact, {"x1": 3.0, "x2": 1.0}) == pytest.approx(6.0, abs=0.05)

    def test_classification_fit(self, backend, classification_frame):
        trained = backend.train(
            TrainingConfig(model_type=ModelType.CLASSIFICATION, target="label"), classification_frame
        )

        assert trained.metrics.accuracy == pytest.approx(1.0)
        assert load_artifact(trained.artifact)["kind"] == "nearest_centroid"
        assert backend.predict(trained.artifact, [{"a": 11.0, "b": 21.0}, {"a": 0.0, "b": 1.0}]) == ["high", "low"]

    def test_explicit_feature_columns(self, backend, regression_frame):
        config = TrainingConfig(model_type=ModelType.REGRESSION, target="y", feature_columns=["x1"])
        trained = backend.train(config, regression_frame)
        assert load_artifact(trained.artifact)["features"] == ["x1"]

    def test_ridge_penalty_shrinks_coefficients(self, backend, regression_frame):
        config = TrainingConfig(model_type=ModelType.REGRESSION, target="y")
        plain = load_artifact(backend.train(config, regression_frame).artifact)["estimator"]
        config.hyperparameters = {"l2": 1000.0}
        ridge = load_artifact(backend.train(config, regression_frame).artifact)["estimator"]

        assert type(plain).__name__ == "LinearRegression"
        assert type(ridge).__name__ == "Ridge"
        assert abs(ridge.coef_[0]) < abs(plain.coef_[0])

    def test_negative_penalty_rejected(self, backend, regression_frame):
        config = TrainingConfig(model_type=ModelType.REGRESSION, target="y", hyperparameters={"l2": -1.0})
        with pytest.raises(ValidationError):
            backend.train(config, regression_frame)

    def test_single_class_rejected(self, backend):
        frame = pd.DataFrame({"a": [1.0, 2.0, 3.0], "label": ["x", "x", "x"]})
        with pytest.raises(ValidationError):
            backend.train(TrainingConfig(model_type=ModelType.CLASSIFICATION, target="label"), frame)

    def test_unsupported_model_type(self, backend, regression_frame):
        with pytest.raises(ValidationError):
            backend.train(TrainingConfig(model_type=ModelType.CLUSTERING, target="y"), regression_frame)

    def test_missing_target(self, backend, regression_frame):
        with pytest.raises(ValidationError):
            backend.train(TrainingConfig(model_type=ModelType.REGRESSION, target="z"), regression_frame)

    def test_too_few_labelled_rows(self, backend):
        frame = pd.DataFrame({"x": [1.0, 2.0, 3.0], "y": [1.0, None, None]})
        with pytest.raises(ValidationError):
            backend.train(TrainingConfig(model_type=ModelType.REGRESSION, target="y"), frame)

    def test_no_numeric_features(self, backend):
        frame = pd.DataFrame({"name": ["a", "b", "c"], "y": [1.0, 2.0, 3.0]})
        with pytest.raises(ValidationError):
            backend.train(TrainingConfig(model_type=ModelType.REGRESSION, target="y"), frame)

    def test_dataset_to_frame(self):
        dataset = HistoricalDataset(
            name="d",
            features=[FeatureDefinition(name="x", type=FeatureType.NUMERICAL)],
            vectors=[FeatureVector(entity_id="e1", features={"x": 1.0}), FeatureVector(entity_id="e2", features={"x": 2.0})],
            samples=2,
        )
        frame = dataset_to_frame(dataset)
        assert list(frame.columns) == ["entity_id", "timestamp", "x"]
        assert frame["x"].tolist() == [1.0, 2.0]


# ── Hyperparameter Search ─────────────────────────────────────────────


class TestHyperparameterOptimizer:
    def test_rejects_unknown_mode(self):
        with pytest.raises(ValidationError):
            HyperparameterOptimizer({"l2": [0.0]}, mode="bayesian")

    def test_rejects_empty_values(self):
        with pytest.raises(ValidationError):
            HyperparameterOptimizer({"l2": []})

    def test_grid_covers_every_combination(self):
        optimizer = HyperparameterOptimizer({"l2": [0.0, 1.0], "validation_split": [0.2, 0.3]}, mode="grid")
        candidates = optimizer.candidates()
        assert len(candidates) == 4
        assert {(c["l2"], c["validation_split"]) for c in candidates} == {
            (0.0, 0.2),
            (0.0, 0.3),
            (1.0, 0.2),
            (1.0, 0.3),
        }

    def test_random_is_seeded(self):
        space = {"l2": [0.0, 0.1, 1.0, 10.0]}
        first = HyperparameterOptimizer(space, n_trials=5, seed=7).candidates()
        second = HyperparameterOptimizer(space, n_trials=5, seed=7).candidates()
        assert first == second
        assert len(first) == 5

    def test_error_metric_is_minimised(self, backend, regression_frame):
        optimizer = HyperparameterOptimizer({"l2": [0.0, 1000.0]}, mode="grid", metric="mse")
        best, trials = optimizer.optimize(
            backend, TrainingConfig(model_type=ModelType.REGRESSION, target="y"), regression_frame
        )
        assert len(trials) == 2
        assert best.params == {"l2": 0.0}

    def test_unreported_metric(self, backend, classification_frame):
        optimizer = HyperparameterOptimizer({"validation_split": [0.2]}, mode="grid", metric="mse")
        with pytest.raises(ValidationError):
            optimizer.optimize(
                backend, TrainingConfig(model_type=ModelType.CLASSIFICATION, target="label"), classification_frame
            )


# ── Pipeline ──────────────────────────────────────────────────────────


class _BlockingBackend(LinearBaselineBackend):
    def __init__(self):
        self.release = threading.Event()

    def train(self, config, dataset):
        self.release.wait(timeout=5)
        return super().train(config, dataset)


@pytest.mark.asyncio
class TestTrainingPipeline:
    async def test_background_job_registers_model(self, pipeline, regression_frame):
        job = await pipeline.start_training_job("yield", ModelType.REGRESSION, regression_frame, target="y")
        assert job.status in (JobStatus.PENDING, JobStatus.RUNNING)

        done = await pipeline.wait_for_job(job.id)

        assert done.status == JobStatus.COMPLETED
        assert done.progress == 1.0
        model = await pipeline.registry.get_model(done.model_id)
        assert model.status == ModelStatus.VALIDATION
        assert model.framework == "sklearn-linear"
        assert model.metadata["training_job_id"] == job.id
        assert any("fewer than 100 samples" in line for line in done.logs)

    async def test_failed_job_records_error(self, pipeline, regression_frame):
        job = await pipeline.start_training_job("yield", ModelType.REGRESSION, regression_frame, target="missing")

        with pytest.raises(ValidationError):
            await pipeline.wait_for_job(job.id)

        failed = pipeline.get_job(job.id)
        assert failed.status == JobStatus.FAILED
        assert "missing" in failed.error
        assert failed.end_time is not None
        assert pipeline.list_jobs(JobStatus.FAILED) == [failed]

    async def test_empty_dataset_fails(self, pipeline):
        job = await pipeline.create_training_job("yield", ModelType.REGRESSION)
        with pytest.raises(ValidationError):
            await pipeline.run_training_job(job.id, pd.DataFrame(), target="y")
        assert pipeline.get_job(job.id).status == JobStatus.FAILED

    async def test_optimizer_updates_hyperparameters(self, pipeline, regression_frame):
        optimizer = HyperparameterOptimizer({"l2": [0.0, 1000.0]}, mode="grid", metric="mse")
        job = await pipeline.create_training_job("yield", ModelType.REGRESSION, {"validation_split": 0.25})

        done = await pipeline.run_training_job(job.id, regression_frame, target="y", optimizer=optimizer)

        assert done.hyperparameters == {"validation_split": 0.25, "l2": 0.0}
        assert any("Hyperparameter search finished after 2 trials" in line for line in done.logs)

    async def test_versions_accumulate(self, pipeline, regression_frame):
        for _ in range(2):
            job = await pipeline.create_training_job("yield", ModelType.REGRESSION)
            await pipeline.run_training_job(job.id, regression_frame, target="y")
        versions = await pipeline.registry.get_models_by_name("yield")
        assert [v.version for v in versions] == ["2.0.0", "1.0.0"]

    async def test_cancelled_job_marked_failed(self, regression_frame):
        backend = _BlockingBackend()
        pipeline = TrainingPipeline(ModelRegistry(), backend=backend)
        job = await pipeline.start_training_job("yield", ModelType.REGRESSION, regression_frame, target="y")
        await asyncio.sleep(0.05)

        pipeline._tasks[job.id].cancel()
        with pytest.raises(asyncio.CancelledError):
            await pipeline.wait_for_job(job.id)
        backend.release.set()

        cancelled = pipeline.get_job(job.id)
        assert cancelled.status == JobStatus.FAILED
        assert cancelled.error == "cancelled"
