"""
Workflow & Deployment API — DAG workflows over the ML components.

Endpoints:
  POST /api/v1/ml/workflows — Create a draft workflow
  GET  /api/v1/ml/workflows — List workflows (?status=)
  GET  /api/v1/ml/workflows/{id} — Workflow with per-step status and outputs
  POST /api/v1/ml/workflows/{id}/execute — Run now (?background=true returns 202 at once)
  POST /api/v1/ml/workflows/{id}/pause — Pause; cancels the in-flight step
  POST /api/v1/ml/workflows/{id}/resume — Continue with non-completed steps
  POST /api/v1/ml/datasets — Register inline rows as a dataset for training steps
  POST /api/v1/ml/deployments — Deploy a model version
  GET  /api/v1/ml/deployments — List deployments
  GET  /api/v1/ml/deployments/{id} — Deployment details
  POST /api/v1/ml/deployments/{id}/rollback — Point the deployment at another version
  POST /api/v1/ml/deployments/{id}/drift — Drift check for the deployed model
"""

from typing import Any

import pandas as pd
import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel, Field

from api.deps import get_orchestrator
from db.models import (
    Deployment,
    Environment,
    MLWorkflow,
    MonitoringConfig,
    ScalingConfig,
    TimeWindow,
    WorkflowStatus,
    WorkflowStep,
)
from ml.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ml", tags=["workflows"])


# ── Request Models ──────────────────────────────────────────────────────────


class CreateWorkflowRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    steps: list[WorkflowStep] = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)


class DatasetRequest(BaseModel):
    rows: list[dict[str, Any]] = Field(min_length=1)


class DeployRequest(BaseModel):
    model_id: str
    environment: Environment = Environment.STAGING
    scaling: ScalingConfig | None = None
    monitoring: MonitoringConfig | None = None


class RollbackRequest(BaseModel):
    target_model_id: str


class DriftRequest(BaseModel):
    baseline: TimeWindow
    comparison: TimeWindow


# ── Workflows ───────────────────────────────────────────────────────────────


@router.post("/workflows", status_code=201)
async def create_workflow(
    body: CreateWorkflowRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> MLWorkflow:
    return await orchestrator.create_workflow(body.name, body.steps, body.description, body.metadata)


@router.get("/workflows")
async def list_workflows(
    status: WorkflowStatus | None = None,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> list[MLWorkflow]:
    return orchestrator.list_workflows(status)


@router.get("/workflows/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> MLWorkflow:
    return orchestrator.get_workflow(workflow_id)


@router.post("/workflows/{workflow_id}/execute", response_model=MLWorkflow)
async def execute_workflow(
    workflow_id: str,
    background: bool = False,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
):
    if background:
        workflow = orchestrator.start_workflow(workflow_id)
        return JSONResponse(status_code=202, content=jsonable_encoder(workflow))
    return await orchestrator.execute_workflow(workflow_id)


@router.post("/workflows/{workflow_id}/pause")
async def pause_workflow(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> MLWorkflow:
    return await orchestrator.pause_workflow(workflow_id)


@router.post("/workflows/{workflow_id}/resume")
async def resume_workflow(
    workflow_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> MLWorkflow:
    return await orchestrator.resume_workflow(workflow_id)


@router.post("/datasets", status_code=201)
async def register_dataset(
    body: DatasetRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    dataset_id = orchestrator.register_dataset(pd.DataFrame(body.rows))
    return {"dataset_id": dataset_id, "rows": len(body.rows)}


# ── Deployments ─────────────────────────────────────────────────────────────


@router.post("/deployments", status_code=201)
async def deploy_model(
    body: DeployRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> Deployment:
    return await orchestrator.deploy_model(
        body.model_id,
        environment=body.environment,
        scaling=body.scaling,
        monitoring=body.monitoring,
    )


@router.get("/deployments")
async def list_deployments(orchestrator: WorkflowOrchestrator = Depends(get_orchestrator)) -> list[Deployment]:
    return orchestrator.list_deployments()


@router.get("/deployments/{deployment_id}")
async def get_deployment(
    deployment_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> Deployment:
    return orchestrator.get_deployment(deployment_id)


@router.post("/deployments/{deployment_id}/rollback")
async def rollback_deployment(
    deployment_id: str,
    body: RollbackRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> Deployment:
    deployment = await orchestrator.rollback_deployment(deployment_id, body.target_model_id)
    logger.info("api.deployment_rolled_back", deployment_id=deployment_id, model_id=body.target_model_id)
    return deployment


@router.post("/deployments/{deployment_id}/drift")
async def deployment_drift(
    deployment_id: str,
    body: DriftRequest,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.detect_deployment_drift(deployment_id, body.baseline, body.comparison)
