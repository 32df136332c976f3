"""
Feature Store API — Groups, views, vectors, statistics, drift.

Endpoints:
  POST  /api/v1/ml/features/groups — Create a feature group
  GET   /api/v1/ml/features/groups — List groups (any of ?tag=...)
  GET   /api/v1/ml/features/groups/{id} — Group details
  PATCH /api/v1/ml/features/groups/{id} — Update name/description/features/owner/tags
  POST  /api/v1/ml/features/groups/{id}/vectors — Ingest a batch (all-or-nothing)
  GET   /api/v1/ml/features/groups/{id}/vectors — Vectors, newest first
  GET   /api/v1/ml/features/groups/{id}/statistics — Per-feature statistics
  POST  /api/v1/ml/features/groups/{id}/drift — KS / PSI drift between two windows
  GET   /api/v1/ml/features/groups/{id}/quality — Null-ratio and drift checks
  POST  /api/v1/ml/features/views — Create a view over groups
  GET   /api/v1/ml/features/views/{id} — View details
  POST  /api/v1/ml/features/views/{id}/online — Latest merged vector per entity
  POST  /api/v1/ml/features/views/{id}/historical — Windowed training dataset
"""

from datetime import datetime
from typing import Any

import structlog
from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from api.deps import get_feature_store, get_orchestrator
from db.models import (
    FeatureDefinition,
    FeatureDriftResult,
    FeatureGroup,
    FeatureVector,
    FeatureView,
    HistoricalDataset,
    TimeWindow,
)
from ml.feature_store import FeatureStore
from ml.orchestrator import WorkflowOrchestrator

logger = structlog.get_logger()

router = APIRouter(prefix="/api/v1/ml/features", tags=["features"])


# ── Request Models ──────────────────────────────────────────────────────────


class CreateGroupRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    features: list[FeatureDefinition] = Field(min_length=1)
    owner: str
    tags: list[str] = Field(default_factory=list)


class IngestRequest(BaseModel):
    vectors: list[FeatureVector]


class CreateViewRequest(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    feature_groups: list[str] = Field(min_length=1)
    query: str = ""


class OnlineRequest(BaseModel):
    entity_ids: list[str]


class HistoricalRequest(BaseModel):
    entity_ids: list[str] | None = None
    start: datetime
    end: datetime


class DriftRequest(BaseModel):
    baseline: TimeWindow
    comparison: TimeWindow


# ── Groups ──────────────────────────────────────────────────────────────────


@router.post("/groups", status_code=201)
async def create_feature_group(
    body: CreateGroupRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> FeatureGroup:
    return await store.create_feature_group(body.name, body.description, body.features, body.owner, body.tags)


@router.get("/groups")
async def list_feature_groups(
    tag: list[str] | None = Query(default=None),
    store: FeatureStore = Depends(get_feature_store),
) -> list[FeatureGroup]:
    return await store.list_feature_groups(tag)


@router.get("/groups/{group_id}")
async def get_feature_group(group_id: str, store: FeatureStore = Depends(get_feature_store)) -> FeatureGroup:
    return await store.get_feature_group(group_id)


@router.patch("/groups/{group_id}")
async def update_feature_group(
    group_id: str,
    updates: dict[str, Any],
    store: FeatureStore = Depends(get_feature_store),
) -> FeatureGroup:
    return await store.update_feature_group(group_id, updates)


@router.post("/groups/{group_id}/vectors")
async def ingest_features(
    group_id: str,
    body: IngestRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> dict[str, int]:
    return {"ingested": await store.ingest_features(group_id, body.vectors)}


@router.get("/groups/{group_id}/vectors")
async def get_features(
    group_id: str,
    entity_id: list[str] | None = Query(default=None),
    start: datetime | None = None,
    end: datetime | None = None,
    store: FeatureStore = Depends(get_feature_store),
) -> list[FeatureVector]:
    return await store.get_features(group_id, entity_id, start, end)


@router.get("/groups/{group_id}/statistics")
async def feature_statistics(
    group_id: str,
    store: FeatureStore = Depends(get_feature_store),
) -> dict[str, dict[str, Any]]:
    return await store.compute_feature_statistics(group_id)


@router.post("/groups/{group_id}/drift")
async def detect_feature_drift(
    group_id: str,
    body: DriftRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> dict[str, FeatureDriftResult]:
    return await store.detect_feature_drift(group_id, body.baseline, body.comparison)


@router.get("/groups/{group_id}/quality")
async def data_quality(
    group_id: str,
    orchestrator: WorkflowOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    return await orchestrator.run_data_quality_checks(group_id)


# ── Views ───────────────────────────────────────────────────────────────────


@router.post("/views", status_code=201)
async def create_feature_view(
    body: CreateViewRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> FeatureView:
    return await store.create_feature_view(body.name, body.description, body.feature_groups, body.query)


@router.get("/views/{view_id}")
async def get_feature_view(view_id: str, store: FeatureStore = Depends(get_feature_store)) -> FeatureView:
    return await store.get_feature_view(view_id)


@router.post("/views/{view_id}/online")
async def get_online_features(
    view_id: str,
    body: OnlineRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> list[FeatureVector]:
    return await store.get_online_features(view_id, body.entity_ids)


@router.post("/views/{view_id}/historical")
async def get_historical_features(
    view_id: str,
    body: HistoricalRequest,
    store: FeatureStore = Depends(get_feature_store),
) -> HistoricalDataset:
    return await store.get_historical_features(view_id, body.entity_ids, body.start, body.end)
