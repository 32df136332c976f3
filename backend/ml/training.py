"""
Training Pipeline — Background training jobs with progress and logs.

Job lifecycle:
  1. create_training_job → status='pending'
  2. run_training_job → 'running'; stages report progress:
       0.1 data validated → 0.3 frame prepared → 0.8 model trained
       → 1.0 registered in the model registry (status='validation')
  3. 'completed' with metrics, or 'failed' with the error recorded

start_training_job wraps step 2 in an asyncio task and returns at once.
HyperparameterOptimizer runs grid or seeded random search over a backend.
"""

import asyncio
import itertools
import random
from dataclasses import dataclass
from typing import Any

import pandas as pd
import structlog

from core.errors import ValidationError
from db.models import HistoricalDataset, JobStatus, ModelMetrics, ModelType, TrainingJob, utcnow
from db.repositories import InMemoryRepository, Repository
from ml.backends import LinearBaselineBackend, ModelBackend, TrainedArtifact, TrainingConfig, dataset_to_frame
from ml.metrics import LOWER_IS_BETTER
from ml.registry import ModelRegistry

logger = structlog.get_logger()

MIN_RECOMMENDED_SAMPLES = 100


# ─── Hyperparameter search ──────────────────────────────────────────────────


@dataclass
class TrialResult:
    params: dict[str, Any]
    metrics: ModelMetrics
    score: float


class HyperparameterOptimizer:
    """
    Modes:
      - grid: every combination of the search space, shuffled by seed
      - random: n_trials independent draws from the search space
    Trials are scored on `metric`; error metrics are minimised.
    """

    def __init__(
        self,
        search_space: dict[str, list[Any]],
        mode: str = "random",
        n_trials: int = 10,
        seed: int = 42,
        metric: str = "accuracy",
    ):
        if mode not in {"grid", "random"}:
            raise ValidationError(f"Unknown search mode '{mode}'")
        if not search_space or any(not values for values in search_space.values()):
            raise ValidationError("Search space needs at least one value per parameter")
        self.search_space = search_space
        self.mode = mode
        self.n_trials = n_trials
        self.seed = seed
        self.metric = metric

    def candidates(self) -> list[dict[str, Any]]:
        rng = random.Random(self.seed)
        keys = list(self.search_space)
        if self.mode == "grid":
            combos = [dict(zip(keys, combo)) for combo in itertools.product(*(self.search_space[k] for k in keys))]
            rng.shuffle(combos)
            return combos[: self.n_trials]
        return [{k: rng.choice(self.search_space[k]) for k in keys} for _ in range(self.n_trials)]

    def _score(self, metrics: ModelMetrics) -> float:
        value = getattr(metrics, self.metric, None)
        if value is None:
            raise ValidationError(f"Backend did not report metric '{self.metric}'")
        return -float(value) if self.metric in LOWER_IS_BETTER else float(value)

    def optimize(
        self,
        backend: ModelBackend,
        config: TrainingConfig,
        frame: pd.DataFrame,
    ) -> tuple[TrialResult, list[TrialResult]]:
        """Returns (best trial, all trials). Base hyperparameters are overridden per trial."""
        trials = []
        for params in self.candidates():
            trial_config = TrainingConfig(
                model_type=config.model_type,
                target=config.target,
                feature_columns=config.feature_columns,
                hyperparameters={**config.hyperparameters, **params},
            )
            trained = backend.train(trial_config, frame)
            trials.append(TrialResult(params=params, metrics=trained.metrics, score=self._score(trained.metrics)))

        best = max(trials, key=lambda t: t.score)
        logger.info("training.search_completed", mode=self.mode, trials=len(trials), best_params=best.params)
        return best, trials


# ─── Pipeline ───────────────────────────────────────────────────────────────


class TrainingPipeline:
    def __init__(
        self,
        registry: ModelRegistry,
        backend: ModelBackend | None = None,
        jobs: Repository[TrainingJob] | None = None,
    ):
        self.registry = registry
        self.backend = backend or LinearBaselineBackend()
        self.jobs: Repository[TrainingJob] = jobs or InMemoryRepository("Training job")
        self._tasks: dict[str, asyncio.Task] = {}

    async def create_training_job(
        self,
        model_name: str,
        model_type: ModelType,
        hyperparameters: dict[str, Any] | None = None,
    ) -> TrainingJob:
        job = TrainingJob(model_name=model_name, model_type=model_type, hyperparameters=dict(hyperparameters or {}))
        self.jobs.put(job.id, job)
        logger.info("training.job_created", job_id=job.id, model_name=model_name, model_type=model_type.value)
        return job

    def get_job(self, job_id: str) -> TrainingJob:
        return self.jobs.require(job_id)

    def list_jobs(self, status: JobStatus | None = None) -> list[TrainingJob]:
        return self.jobs.filter(lambda j: status is None or j.status == status)

    async def start_training_job(
        self,
        model_name: str,
        model_type: ModelType,
        dataset: pd.DataFrame | HistoricalDataset,
        target: str,
        hyperparameters: dict[str, Any] | None = None,
        optimizer: HyperparameterOptimizer | None = None,
    ) -> TrainingJob:
        """Create a job and train it in the background. Poll `get_job` or await `wait_for_job`."""
        job = await self.create_training_job(model_name, model_type, hyperparameters)
        task = asyncio.create_task(
            self.run_training_job(job.id, dataset, target, optimizer=optimizer),
            name=f"training-{job.id}",
        )
        # failure is recorded on the job; keep asyncio from reporting it as unretrieved
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._tasks[job.id] = task
        return job

    async def wait_for_job(self, job_id: str) -> TrainingJob:
        task = self._tasks.get(job_id)
        if task is not None:
            try:
                await task
            finally:
                self._tasks.pop(job_id, None)
        return self.get_job(job_id)

    async def run_training_job(
        self,
        job_id: str,
        dataset: pd.DataFrame | HistoricalDataset,
        target: str,
        optimizer: HyperparameterOptimizer | None = None,
    ) -> TrainingJob:
        job = self.jobs.require(job_id)
        log = logger.bind(job_id=job.id, model_name=job.model_name)

        job.status = JobStatus.RUNNING
        job.start_time = utcnow()
        self._progress(job, 0.0, "Training started")

        try:
            frame = dataset_to_frame(dataset) if isinstance(dataset, HistoricalDataset) else dataset
            self._validate_frame(job, frame, target)
            self._progress(job, 0.1, f"Data validated: {len(frame)} rows, {len(frame.columns)} columns")

            config = TrainingConfig(model_type=job.model_type, target=target, hyperparameters=dict(job.hyperparameters))
            if optimizer is not None:
                best, trials = await asyncio.to_thread(optimizer.optimize, self.backend, config, frame)
                config.hyperparameters = {**config.hyperparameters, **best.params}
                job.hyperparameters = config.hyperparameters
                self._progress(job, 0.3, f"Hyperparameter search finished after {len(trials)} trials")
            else:
                self._progress(job, 0.3, "Training frame prepared")

            trained: TrainedArtifact = await asyncio.to_thread(self.backend.train, config, frame)
            self._progress(job, 0.8, f"Model trained with {self.backend.framework}")

            version = await self.registry.register_model(
                name=job.model_name,
                model_type=job.model_type,
                framework=self.backend.framework,
                artifact=trained.artifact,
                metrics=trained.metrics,
                metadata={**trained.metadata, "training_job_id": job.id, "hyperparameters": config.hyperparameters},
            )
        except asyncio.CancelledError:
            job.status = JobStatus.FAILED
            job.error = "cancelled"
            job.end_time = utcnow()
            self._progress(job, job.progress, "Training cancelled")
            log.warning("training.job_cancelled")
            raise
        except Exception as exc:
            job.status = JobStatus.FAILED
            job.error = str(exc)
            job.end_time = utcnow()
            self._progress(job, job.progress, f"Training failed: {exc}")
            log.error("training.job_failed", error=str(exc))
            raise

        job.model_id = version.id
        job.metrics = trained.metrics
        job.status = JobStatus.COMPLETED
        job.end_time = utcnow()
        self._progress(job, 1.0, f"Training completed: registered {version.name} v{version.version}")
        log.info("training.job_completed", model_id=version.id, version=version.version, accuracy=trained.metrics.accuracy)
        return job

    @staticmethod
    def _validate_frame(job: TrainingJob, frame: pd.DataFrame, target: str) -> None:
        if frame.empty:
            raise ValidationError("Training dataset is empty", job_id=job.id)
        if target not in frame.columns:
            raise ValidationError(f"Target column '{target}' not in dataset", job_id=job.id)
        if len(frame) < MIN_RECOMMENDED_SAMPLES:
            job.logs.append(f"Dataset has fewer than {MIN_RECOMMENDED_SAMPLES} samples; model performance may be limited")

    @staticmethod
    def _progress(job: TrainingJob, progress: float, message: str) -> None:
        job.progress = progress
        job.logs.append(f"[{utcnow().isoformat()}] {message}")
