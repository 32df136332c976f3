"""
Model Registry API — Versions, promotion, comparison, training.

Endpoints:
  GET  /api/v1/ml/models — Search versions (name, type, framework, status, min_accuracy)
  POST /api/v1/ml/models — Register a version from a base64 artifact
  GET  /api/v1/ml/models/production — Production versions (optionally by name)
  GET  /api/v1/ml/models/compare — Per-metric winner and margin for two versions
  POST /api/v1/ml/models/comparison-report — Pairwise report over ≥2 versions
  POST /api/v1/ml/models/train — Train on inline rows and register the result
  GET  /api/v1/ml/models/training-jobs — Training jobs (optionally by status)
  GET  /api/v1/ml/models/{id} — Version details
  POST /api/v1/ml/models/{id}/promote — Promote (deprecates the previous production version)
  POST /api/v1/ml/models/{id}/deprecate — Deprecate
  PATCH /api/v1/ml/models/{id}/metrics — Merge metric updates
  GET  /api/v1/ml/models/{id}/export — Artifact as raw bytes or JSON document
"""

import base64
import binascii
from typing import Any, Literal

import pandas as pd
import structlog
from fastapi import APIRouter, Depends, Response
from pydantic import BaseModel, Field

from api.deps import get_orchestrator, get_platform, get_registry
from core.errors import ValidationError
from db.models import JobStatus, ModelMetrics, ModelStatus, ModelType, ModelVersion, TrainingJob
from ml.orchestrator import WorkflowOrchestrator
from ml.platform import MLOpsPlatform
from ml.registry import ModelRegistry

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ml/models", tags=["models"])


# ── Request Models ──────────────────────────────────────────────────────────


class RegisterModelRequest(BaseModel):
    name: str = Field(min_length=1)
    model_type: ModelType
    framework: str = Field(min_length=1)
    metrics: ModelMetrics
    artifact_base64: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)


class TrainModelRequest(BaseModel):
    name: str = Field(min_length=1)
    model_type: ModelType
    target: str
    rows: list[dict[str, Any]] = Field(min_length=1)
    hyperparameters: dict[str, Any] = Field(default_factory=dict)
    auto_optimize: bool = False


class ComparisonReportRequest(BaseModel):
    model_ids: list[str]


# ── Registry ────────────────────────────────────────────────────────────────


@router.get("")
async def search_models(
    name: str | None = None,
    model_type: ModelType | None = None,
    framework: str | None = None,
    status: ModelStatus | None = None,
    min_accuracy: float | None = None,
    registry: ModelRegistry = Depends(get_registry),
) -> list[ModelVersion]:
    return await registry.search_models(
        name=name,
        model_type=model_type,
        framework=framework,
        status=status,
        min_accuracy=min_accuracy,
    )


@router.post("", status_code=201)
async def register_model(
    body: RegisterModelRequest,
    registry: ModelRegistry = Depends(get_registry),
) -> ModelVersion:
    try:
        artifact = base64.b64decode(body.artifact_base64, validate=True)
    except binascii.Error as exc:
        raise ValidationError("artifact_base64 is not valid base64") from exc
    return await registry.register_model(
        name=body.name,
        model_type=body.model_type,
        framework=body.framework,
        artifact=artifact,
        metrics=body.metrics,
        metadata=body.metadata,
    )


@router.get("/production")
async def get_production_models(
    name: str | None = None,
    registry: ModelRegistry = Depends(get_registry),
) -> list[ModelVersion]:
    return await registry.get_production_models(name)


@router.get("/compare")
async def compare_models(
    model_id_1: str,
    model_id_2: str,
    registry: ModelRegistry = Depends(get_registry),
) -> dict[str, Any]:
    return await registry.compare_models(model_id_1, model_id_2)


@router.post("/comparison-report")
async def comparison_report(
    body: ComparisonReportRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.generate_model_comparison_report(body.model_ids)


# ── Training ────────────────────────────────────────────────────────────────


@router.post("/train", status_code=201)
async def train_model(
    body: TrainModelRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Synchronous training on inline rows; returns the finished job and the registered version."""
    job, model = await orchestrator.train_model(
        name=body.name,
        model_type=body.model_type,
        dataset=pd.DataFrame(body.rows),
        target=body.target,
        hyperparameters=body.hyperparameters,
        auto_optimize=body.auto_optimize,
    )
    return {"job": job, "model": model}


@router.get("/training-jobs")
async def list_training_jobs(
    status: JobStatus | None = None,
    platform: MLOpsPlatform = Depends(get_platform),
) -> list[TrainingJob]:
    return platform.training.list_jobs(status)


@router.get("/training-jobs/{job_id}")
async def get_training_job(
    job_id: str,
    platform: MLOpsPlatform = Depends(get_platform),
) -> TrainingJob:
    return platform.training.get_job(job_id)


# ── Single version ──────────────────────────────────────────────────────────


@router.get("/{model_id}")
async def get_model(model_id: str, registry: ModelRegistry = Depends(get_registry)) -> ModelVersion:
    return await registry.get_model(model_id)


@router.post("/{model_id}/promote")
async def promote_model(model_id: str, registry: ModelRegistry = Depends(get_registry)) -> ModelVersion:
    model = await registry.promote_to_production(model_id)
    logger.info("api.model_promoted", model_id=model_id, model_name=model.name)
    return model


@router.post("/{model_id}/deprecate")
async def deprecate_model(model_id: str, registry: ModelRegistry = Depends(get_registry)) -> ModelVersion:
    return await registry.deprecate_model(model_id)


@router.patch("/{model_id}/metrics")
async def update_model_metrics(
    model_id: str,
    updates: dict[str, float],
    registry: ModelRegistry = Depends(get_registry),
) -> ModelVersion:
    return await registry.update_model_metrics(model_id, updates)


@router.get("/{model_id}/export")
async def export_model(
    model_id: str,
    format: Literal["raw", "json"] = "raw",
    registry: ModelRegistry = Depends(get_registry),
) -> Response:
    payload = await registry.export_model(model_id, format=format)
    media_type = "application/json" if format == "json" else "application/octet-stream"
    return Response(content=payload, media_type=media_type)
