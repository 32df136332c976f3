"""
Workflow Orchestrator — DAG execution over the ML components.

Execution model:
  1. create_workflow validates step ids and dependency references → 'draft'
  2. execute_workflow orders steps by depth-first search (white/gray/black);
     a cycle raises CircularDependencyError before any step runs
  3. each step runs inside a budget: asyncio.wait_for per attempt, tenacity
     retries with linear backoff, structural errors never retried
  4. a failure marks step and workflow 'failed'; later steps never start
  5. pause_workflow cancels the in-flight step (back to 'pending');
     resume_workflow continues, skipping steps already 'completed'

Step types delegate to the components:
  data_preparation → FeatureStore.get_historical_features or inline rows
  training         → TrainingPipeline (+ ModelRegistry registration)
  evaluation       → ModelRegistry metrics, optional accuracy gate
  deployment       → deploy_model
  monitoring       → ModelMonitor.set_thresholds
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

import pandas as pd
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_incrementing,
)

from core.config import Settings, get_settings
from core.errors import (
    CircularDependencyError,
    NotFoundError,
    StepExecutionError,
    StepTimeoutError,
    ValidationError,
)
from core.locks import KeyedLock
from db.models import (
    Deployment,
    Environment,
    HistoricalDataset,
    MLWorkflow,
    ModelType,
    ModelVersion,
    MonitoringConfig,
    ScalingConfig,
    StepStatus,
    StepType,
    TimeWindow,
    TrainingJob,
    WorkflowStatus,
    WorkflowStep,
    new_id,
    utcnow,
)
from db.repositories import InMemoryRepository, Repository
from ml.backends import dataset_to_frame
from ml.drift import feature_drift
from ml.feature_store import FeatureStore
from ml.monitoring import ModelMonitor
from ml.registry import ModelRegistry
from ml.training import HyperparameterOptimizer, TrainingPipeline

logger = structlog.get_logger()

StepHandler = Callable[[WorkflowStep, dict[str, Any]], Awaitable[dict[str, Any]]]

DEFAULT_SEARCH_SPACE: dict[ModelType, dict[str, list[Any]]] = {
    ModelType.REGRESSION: {"l2": [0.0, 0.01, 0.1, 1.0, 10.0], "validation_split": [0.2, 0.3]},
    ModelType.CLASSIFICATION: {"validation_split": [0.2, 0.3]},
}
MAX_NULL_RATIO = 0.1
NOT_RETRIED = (ValidationError, NotFoundError)


# ─── Ordering ───────────────────────────────────────────────────────────────


def execution_order(steps: list[WorkflowStep]) -> list[WorkflowStep]:
    """
    Dependency-first order via DFS with three-colour marking.
    Raises CircularDependencyError naming the cycle.
    """
    by_id = {step.id: step for step in steps}
    white, gray, black = 0, 1, 2
    colour = {step.id: white for step in steps}
    order: list[WorkflowStep] = []

    def visit(step_id: str, trail: list[str]) -> None:
        if colour[step_id] == black:
            return
        if colour[step_id] == gray:
            raise CircularDependencyError(trail[trail.index(step_id):] + [step_id])
        colour[step_id] = gray
        for dep in by_id[step_id].dependencies:
            visit(dep, trail + [step_id])
        colour[step_id] = black
        order.append(by_id[step_id])

    for step in steps:
        visit(step.id, [])
    return order


def _coerce_steps(steps: list[WorkflowStep | dict[str, Any]]) -> list[WorkflowStep]:
    coerced = []
    for step in steps:
        if isinstance(step, WorkflowStep):
            coerced.append(step.model_copy(deep=True))
        else:
            coerced.append(WorkflowStep.model_validate(step))
    for step in coerced:
        step.status = StepStatus.PENDING
        step.outputs = {}
        step.attempts = 0
        step.error = None
    return coerced


class WorkflowOrchestrator:
    """Per-tenant workflow engine; components are injected, never global."""

    def __init__(
        self,
        registry: ModelRegistry,
        feature_store: FeatureStore,
        monitor: ModelMonitor,
        training: TrainingPipeline,
        settings: Settings | None = None,
        workflows: Repository[MLWorkflow] | None = None,
        deployments: Repository[Deployment] | None = None,
        datasets: Repository[pd.DataFrame] | None = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.feature_store = feature_store
        self.monitor = monitor
        self.training = training
        self.workflows: Repository[MLWorkflow] = workflows or InMemoryRepository("Workflow")
        self.deployments: Repository[Deployment] = deployments or InMemoryRepository("Deployment")
        self.datasets: Repository[pd.DataFrame] = datasets or InMemoryRepository("Dataset")
        self._locks = KeyedLock()
        self._inflight: dict[str, asyncio.Task] = {}
        self._runs: dict[str, asyncio.Task] = {}
        self._handlers: dict[StepType, StepHandler] = {
            StepType.DATA_PREPARATION: self._data_preparation_step,
            StepType.TRAINING: self._training_step,
            StepType.EVALUATION: self._evaluation_step,
            StepType.DEPLOYMENT: self._deployment_step,
            StepType.MONITORING: self._monitoring_step,
        }

    # ─── Workflow management ───────────────────────────────────────────────

    async def create_workflow(
        self,
        name: str,
        steps: list[WorkflowStep | dict[str, Any]],
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> MLWorkflow:
        coerced = _coerce_steps(steps)
        ids = [step.id for step in coerced]

        errors = []
        duplicates = sorted({sid for sid in ids if ids.count(sid) > 1})
        if duplicates:
            errors.append(f"duplicate step id(s): {', '.join(duplicates)}")
        known = set(ids)
        for step in coerced:
            for dep in step.dependencies:
                if dep not in known:
                    errors.append(f"{step.id}: unknown dependency '{dep}'")
        if errors:
            raise ValidationError(f"Invalid workflow '{name}'", errors=errors)

        workflow = MLWorkflow(name=name, description=description, steps=coerced, metadata=metadata or {})
        self.workflows.put(workflow.id, workflow)
        logger.info("workflow.created", workflow_id=workflow.id, name=name, steps=len(coerced))
        return workflow

    def get_workflow(self, workflow_id: str) -> MLWorkflow:
        return self.workflows.require(workflow_id)

    def list_workflows(self, status: WorkflowStatus | None = None) -> list[MLWorkflow]:
        return self.workflows.filter(lambda w: status is None or w.status == status)

    async def execute_workflow(self, workflow_id: str) -> MLWorkflow:
        """Run every non-completed step in dependency order and return the workflow."""
        workflow = self.workflows.require(workflow_id)
        if workflow.status == WorkflowStatus.PAUSED:
            raise ValidationError(f"Workflow {workflow_id} is paused; resume it instead", workflow_id=workflow_id)
        order = self._prepare(workflow)
        return await self._execute(workflow, order)

    def start_workflow(self, workflow_id: str) -> MLWorkflow:
        """Run the workflow as a background task; poll get_workflow for progress."""
        workflow = self.workflows.require(workflow_id)
        if workflow.status == WorkflowStatus.PAUSED:
            raise ValidationError(f"Workflow {workflow_id} is paused; resume it instead", workflow_id=workflow_id)
        order = self._prepare(workflow)

        task = asyncio.create_task(self._execute(workflow, order), name=f"workflow-{workflow_id}")
        # failures land on the workflow and step records
        task.add_done_callback(lambda t: t.cancelled() or t.exception())
        self._runs[workflow_id] = task
        return workflow

    async def wait_for_workflow(self, workflow_id: str) -> MLWorkflow:
        task = self._runs.get(workflow_id)
        if task is not None:
            try:
                await task
            finally:
                self._runs.pop(workflow_id, None)
        return self.workflows.require(workflow_id)

    async def pause_workflow(self, workflow_id: str) -> MLWorkflow:
        workflow = self.workflows.require(workflow_id)
        if workflow.status not in {WorkflowStatus.RUNNING, WorkflowStatus.DRAFT}:
            raise ValidationError(f"Cannot pause workflow in status: {workflow.status.value}", workflow_id=workflow_id)

        workflow.status = WorkflowStatus.PAUSED
        workflow.updated_at = utcnow()
        task = self._inflight.get(workflow_id)
        if task is not None and not task.done():
            task.cancel()
        logger.info("workflow.paused", workflow_id=workflow_id, cancelled_step=task is not None)
        return workflow

    async def resume_workflow(self, workflow_id: str) -> MLWorkflow:
        workflow = self.workflows.require(workflow_id)
        if workflow.status != WorkflowStatus.PAUSED:
            raise ValidationError(f"Cannot resume workflow in status: {workflow.status.value}", workflow_id=workflow_id)
        order = self._prepare(workflow)
        logger.info("workflow.resumed", workflow_id=workflow_id)
        return await self._execute(workflow, order)

    def _prepare(self, workflow: MLWorkflow) -> list[WorkflowStep]:
        """Order the steps and mark the workflow running. Nothing runs if the DAG has a cycle."""
        run = self._runs.get(workflow.id)
        if self._locks.locked(workflow.id) or (run is not None and not run.done()):
            raise ValidationError(f"Workflow {workflow.id} is already running", workflow_id=workflow.id)
        order = execution_order(workflow.steps)
        workflow.status = WorkflowStatus.RUNNING
        workflow.updated_at = utcnow()
        return order

    async def _execute(self, workflow: MLWorkflow, order: list[WorkflowStep]) -> MLWorkflow:
        log = logger.bind(workflow_id=workflow.id, workflow=workflow.name)
        async with self._locks(workflow.id):
            log.info("workflow.started", steps=len(order))

            for step in order:
                if workflow.status == WorkflowStatus.PAUSED:
                    log.info("workflow.paused_between_steps", next_step=step.id)
                    return workflow
                if step.status == StepStatus.COMPLETED:
                    continue

                inputs: dict[str, Any] = {}
                for dep in step.dependencies:
                    inputs.update(workflow.step(dep).outputs)

                task = asyncio.create_task(self._run_step(workflow, step, inputs), name=f"step-{step.id}")
                self._inflight[workflow.id] = task
                try:
                    await task
                except asyncio.CancelledError:
                    if workflow.status == WorkflowStatus.PAUSED and not asyncio.current_task().cancelling():
                        log.info("workflow.step_cancelled", step_id=step.id)
                        return workflow
                    # caller went away; the step is back to pending so the run can resume
                    workflow.status = WorkflowStatus.PAUSED
                    workflow.updated_at = utcnow()
                    log.warning("workflow.interrupted", step_id=step.id)
                    raise
                except Exception as exc:
                    workflow.status = WorkflowStatus.FAILED
                    workflow.updated_at = utcnow()
                    log.error("workflow.failed", step_id=step.id, error=str(exc))
                    raise
                finally:
                    self._inflight.pop(workflow.id, None)

            workflow.status = WorkflowStatus.COMPLETED
            workflow.updated_at = utcnow()
            log.info("workflow.completed")
            return workflow

    # ─── Step execution ────────────────────────────────────────────────────

    async def _run_step(self, workflow: MLWorkflow, step: WorkflowStep, inputs: dict[str, Any]) -> None:
        log = logger.bind(workflow_id=workflow.id, step_id=step.id, step_type=step.type.value)
        step.status = StepStatus.RUNNING
        step.start_time = utcnow()
        step.end_time = None
        step.attempts = 0
        step.error = None
        log.info("workflow.step_started")

        try:
            outputs = await self._run_with_budget(step, inputs)
        except asyncio.CancelledError:
            step.status = StepStatus.PENDING
            step.start_time = None
            raise
        except Exception as exc:
            step.status = StepStatus.FAILED
            step.error = str(exc)
            step.end_time = utcnow()
            log.error("workflow.step_failed", attempts=step.attempts, error=str(exc))
            raise

        step.outputs = outputs
        step.status = StepStatus.COMPLETED
        step.end_time = utcnow()
        log.info("workflow.step_completed", attempts=step.attempts, outputs=sorted(outputs))

    async def _run_with_budget(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        """
        Up to step_max_retries attempts of step_timeout_seconds each, waiting
        backoff × attempt between them. CancelledError is not an Exception,
        so tenacity re-raises it at once.
        """
        handler = self._handlers[step.type]
        timeout = self.settings.step_timeout_seconds
        backoff = self.settings.step_backoff_seconds

        def log_retry(state: RetryCallState) -> None:
            logger.warning(
                "workflow.step_retry",
                step_id=step.id,
                attempt=state.attempt_number,
                error=str(state.outcome.exception()),
            )

        async def attempt() -> dict[str, Any]:
            step.attempts += 1
            return await asyncio.wait_for(handler(step, inputs), timeout=timeout)

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.settings.step_max_retries),
            wait=wait_incrementing(start=backoff, increment=backoff),
            retry=retry_if_exception_type(Exception) & retry_if_not_exception_type(NOT_RETRIED),
            before_sleep=log_retry,
            reraise=True,
        )
        try:
            return await retrying(attempt)
        except NOT_RETRIED:
            raise
        except TimeoutError as exc:
            raise StepTimeoutError(step.id, timeout, step.attempts) from exc
        except Exception as exc:
            raise StepExecutionError(step.id, step.attempts, str(exc)) from exc

    # ─── Step handlers ─────────────────────────────────────────────────────

    async def _data_preparation_step(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        params = {**inputs, **step.config}
        if "view_id" in params:
            dataset = await self.feature_store.get_historical_features(
                params["view_id"],
                params.get("entity_ids"),
                params.get("start") or datetime(1970, 1, 1, tzinfo=timezone.utc),
                params.get("end") or utcnow(),
            )
            dataset_id = self.register_dataset(dataset)
        elif "rows" in params:
            dataset_id = self.register_dataset(pd.DataFrame(params["rows"]))
        elif "dataset_id" in params:
            dataset_id = params["dataset_id"]
        else:
            raise ValidationError("data_preparation needs 'view_id', 'rows' or 'dataset_id'", step_id=step.id)

        frame = self.datasets.require(dataset_id)
        if frame.empty:
            raise ValidationError("Prepared dataset is empty", step_id=step.id, dataset_id=dataset_id)
        return {"dataset_id": dataset_id, "samples": len(frame), "columns": list(map(str, frame.columns))}

    async def _training_step(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        params = {**inputs, **step.config}
        missing = [key for key in ("model_name", "model_type", "target", "dataset_id") if key not in params]
        if missing:
            raise ValidationError(f"training step missing: {', '.join(missing)}", errors=missing, step_id=step.id)

        job, model = await self.train_model(
            name=params["model_name"],
            model_type=ModelType(params["model_type"]),
            dataset=params["dataset_id"],
            target=params["target"],
            hyperparameters=params.get("hyperparameters"),
            auto_optimize=bool(params.get("auto_optimize", False)),
        )
        return {
            "model_id": model.id,
            "model_name": model.name,
            "version": model.version,
            "job_id": job.id,
            "metrics": model.metrics.model_dump(exclude_none=True),
        }

    async def _evaluation_step(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        params = {**inputs, **step.config}
        if "model_id" not in params:
            raise ValidationError("evaluation step needs 'model_id'", step_id=step.id)

        model = await self.registry.get_model(params["model_id"])
        metrics = model.metrics.model_dump(exclude_none=True)
        outputs: dict[str, Any] = {"model_id": model.id, "metrics": metrics}

        min_accuracy = params.get("min_accuracy")
        if min_accuracy is not None and model.metrics.accuracy < float(min_accuracy):
            raise ValidationError(
                f"Model {model.id} accuracy {model.metrics.accuracy:.3f} below gate {float(min_accuracy):.3f}",
                step_id=step.id,
            )

        incumbent = [m for m in await self.registry.get_production_models(model.name) if m.id != model.id]
        if incumbent:
            report = await self.registry.compare_models(model.id, incumbent[0].id)
            outputs["compared_with"] = incumbent[0].id
            outputs["comparison"] = report["comparison"]
        return outputs

    async def _deployment_step(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        params = {**inputs, **step.config}
        if "model_id" not in params:
            raise ValidationError("deployment step needs 'model_id'", step_id=step.id)

        deployment = await self.deploy_model(
            params["model_id"],
            environment=Environment(params.get("environment", Environment.STAGING.value)),
            scaling=params.get("scaling"),
            monitoring=params.get("monitoring"),
        )
        return {
            "model_id": deployment.model_id,
            "deployment_id": deployment.id,
            "environment": deployment.environment.value,
        }

    async def _monitoring_step(self, step: WorkflowStep, inputs: dict[str, Any]) -> dict[str, Any]:
        params = {**inputs, **step.config}
        if "model_id" not in params:
            raise ValidationError("monitoring step needs 'model_id'", step_id=step.id)

        await self.registry.get_model(params["model_id"])
        thresholds = await self.monitor.set_thresholds(params["model_id"], **params.get("thresholds", {}))
        return {"model_id": params["model_id"], "monitoring_enabled": True, "thresholds": thresholds.model_dump()}

    # ─── Model lifecycle ───────────────────────────────────────────────────

    def register_dataset(self, dataset: pd.DataFrame | HistoricalDataset) -> str:
        if isinstance(dataset, HistoricalDataset):
            dataset_id, frame = dataset.id, dataset_to_frame(dataset)
        else:
            dataset_id, frame = new_id(), dataset
        self.datasets.put(dataset_id, frame)
        logger.info("workflow.dataset_registered", dataset_id=dataset_id, rows=len(frame))
        return dataset_id

    async def train_model(
        self,
        name: str,
        model_type: ModelType,
        dataset: str | pd.DataFrame | HistoricalDataset,
        target: str,
        hyperparameters: dict[str, Any] | None = None,
        auto_optimize: bool = False,
    ) -> tuple[TrainingJob, ModelVersion]:
        """Train synchronously through the pipeline and return (job, registered version)."""
        frame = self.datasets.require(dataset) if isinstance(dataset, str) else dataset
        optimizer = None
        if auto_optimize:
            optimizer = HyperparameterOptimizer(DEFAULT_SEARCH_SPACE[model_type], mode="grid")

        job = await self.training.create_training_job(name, model_type, hyperparameters)
        job = await self.training.run_training_job(job.id, frame, target, optimizer=optimizer)
        model = await self.registry.get_model(job.model_id)
        return job, model

    async def deploy_model(
        self,
        model_id: str,
        environment: Environment = Environment.STAGING,
        scaling: ScalingConfig | dict[str, Any] | None = None,
        monitoring: MonitoringConfig | dict[str, Any] | None = None,
    ) -> Deployment:
        model = await self.registry.get_model(model_id)
        deployment = Deployment(
            model_id=model.id,
            environment=environment,
            scaling=ScalingConfig.model_validate(scaling or {}),
            monitoring=MonitoringConfig.model_validate(monitoring or {}),
        )

        overrides = deployment.monitoring.alert_thresholds.model_dump(exclude_unset=True)
        if overrides:
            await self.monitor.set_thresholds(model.id, **overrides)
        if environment == Environment.PRODUCTION:
            await self.registry.promote_to_production(model.id)

        self.deployments.put(deployment.id, deployment)
        logger.info(
            "workflow.model_deployed",
            deployment_id=deployment.id,
            model_id=model.id,
            environment=environment.value,
        )
        return deployment

    def get_deployment(self, deployment_id: str) -> Deployment:
        return self.deployments.require(deployment_id)

    def list_deployments(self) -> list[Deployment]:
        return self.deployments.values()

    async def rollback_deployment(self, deployment_id: str, target_model_id: str) -> Deployment:
        async with self._locks(f"deployment:{deployment_id}"):
            deployment = self.deployments.require(deployment_id)
            target = await self.registry.get_model(target_model_id)
            previous = deployment.model_id

            if deployment.environment == Environment.PRODUCTION:
                await self.registry.promote_to_production(target.id)
            overrides = deployment.monitoring.alert_thresholds.model_dump(exclude_unset=True)
            if overrides:
                await self.monitor.set_thresholds(target.id, **overrides)
            deployment.model_id = target.id
            deployment.updated_at = utcnow()

        logger.info(
            "workflow.deployment_rolled_back",
            deployment_id=deployment_id,
            from_model=previous,
            to_model=target.id,
        )
        return deployment

    # ─── Automated checks ──────────────────────────────────────────────────

    async def run_data_quality_checks(self, feature_group_id: str) -> dict[str, Any]:
        """
        Two checks over a feature group's stored vectors:
          - null ratio per feature above MAX_NULL_RATIO
          - drift of the newer half of the vectors against the older half
        """
        group = await self.feature_store.get_feature_group(feature_group_id)
        vectors = sorted(await self.feature_store.get_features(feature_group_id), key=lambda v: v.timestamp)
        issues: list[str] = []
        recommendations: list[str] = []

        if not vectors:
            issues.append("No feature vectors ingested")
            recommendations.append("Ingest feature data before training")
            return {"passed": False, "issues": issues, "recommendations": recommendations}

        stats = await self.feature_store.compute_feature_statistics(feature_group_id)
        sparse = [
            name for name, entry in stats.items()
            if entry["null_count"] / len(vectors) > MAX_NULL_RATIO
        ]
        if sparse:
            issues.append(f"Missing values above {MAX_NULL_RATIO:.0%} in: {', '.join(sorted(sparse))}")
            recommendations.append("Implement data imputation or collect additional data")

        half = len(vectors) // 2
        older, newer = vectors[:half], vectors[half:]
        drifted = []
        for feature in group.features:
            result = feature_drift(
                feature.type,
                [v.features.get(feature.name) for v in older],
                [v.features.get(feature.name) for v in newer],
                threshold=self.settings.feature_drift_threshold,
                psi_floor=self.settings.feature_psi_floor,
            )
            if result.is_drift and result.baseline_count and result.comparison_count:
                drifted.append(feature.name)
        if drifted:
            issues.append(f"Data drift between older and newer vectors in: {', '.join(sorted(drifted))}")
            recommendations.append("Consider retraining model with recent data")

        logger.info("workflow.data_quality_checked", group_id=feature_group_id, issues=len(issues))
        return {"passed": not issues, "issues": issues, "recommendations": recommendations}

    async def generate_model_comparison_report(self, model_ids: list[str]) -> dict[str, Any]:
        models = [await self.registry.get_model(mid) for mid in dict.fromkeys(model_ids)]
        if len(models) < 2:
            raise ValidationError("At least 2 models required for comparison")

        comparisons = []
        for i, first in enumerate(models):
            for second in models[i + 1:]:
                comparisons.append(await self.registry.compare_models(first.id, second.id))

        best = max(models, key=lambda m: m.metrics.accuracy)
        return {
            "models": models,
            "comparisons": comparisons,
            "best_model_id": best.id,
            "recommendation": (
                f"Model {best.id} ({best.name} v{best.version}) has the highest accuracy: "
                f"{best.metrics.accuracy:.3f}"
            ),
        }

    async def detect_deployment_drift(
        self,
        deployment_id: str,
        baseline: TimeWindow,
        comparison: TimeWindow,
    ) -> dict[str, Any]:
        deployment = self.deployments.require(deployment_id)
        if not deployment.monitoring.enable_drift_detection:
            return {"deployment_id": deployment_id, "enabled": False, "report": None}
        report = await self.monitor.detect_model_drift(deployment.model_id, baseline, comparison)
        return {"deployment_id": deployment_id, "enabled": True, "report": report}
