"""
Model Registry — Version lifecycle, promotion, comparison, artifact storage.

Lifecycle:
  1. register_model → status='validation', version = next major for the name
  2. promote_to_production → previous production version of the name is
     deprecated and the target promoted in one locked region
  3. deprecate_model → retire a version (never deleted)

Artifacts are opaque bytes; the registry stores and returns them unchanged.
"""

import base64
import json
from typing import Any

import pydantic
import structlog

from core.errors import NotFoundError, ValidationError
from core.locks import KeyedLock
from db.models import ModelArtifact, ModelMetrics, ModelStatus, ModelType, ModelVersion, utcnow
from db.repositories import InMemoryRepository, Repository
from ml.metrics import LOWER_IS_BETTER

logger = structlog.get_logger()

TIE = "tie"
EXPORT_FORMATS = ("raw", "json")


class ModelRegistry:
    """Per-tenant registry of model versions and their artifacts."""

    def __init__(
        self,
        models: Repository[ModelVersion] | None = None,
        artifacts: Repository[ModelArtifact] | None = None,
    ):
        self.models: Repository[ModelVersion] = models or InMemoryRepository("Model")
        self.artifacts: Repository[ModelArtifact] = artifacts or InMemoryRepository("Model artifact")
        self._locks = KeyedLock()

    # ─── Registration ──────────────────────────────────────────────────────

    async def register_model(
        self,
        name: str,
        model_type: ModelType,
        framework: str,
        artifact: bytes,
        metrics: ModelMetrics,
        metadata: dict[str, Any] | None = None,
    ) -> ModelVersion:
        if not name:
            raise ValidationError("Model name must not be empty")

        async with self._locks(f"model-name:{name}"):
            version = ModelVersion(
                name=name,
                version=self._next_version(name),
                model_type=model_type,
                framework=framework,
                status=ModelStatus.VALIDATION,
                metrics=metrics,
                metadata=dict(metadata or {}),
            )
            self.artifacts.put(version.id, ModelArtifact(model_id=version.id, payload=artifact, metadata=dict(metadata or {})))
            self.models.put(version.id, version)

        logger.info(
            "registry.model_registered",
            model_id=version.id,
            model_name=name,
            version=version.version,
            model_type=model_type.value,
            framework=framework,
            accuracy=metrics.accuracy,
        )
        return version

    def _next_version(self, name: str) -> str:
        majors = [m.major for m in self.models.values() if m.name == name]
        return f"{max(majors, default=0) + 1}.0.0"

    # ─── Lookup ────────────────────────────────────────────────────────────

    async def get_model(self, model_id: str) -> ModelVersion:
        return self.models.require(model_id)

    async def get_models_by_name(self, name: str) -> list[ModelVersion]:
        """All versions of a name, newest first."""
        versions = [m for m in self.models.values() if m.name == name]
        return sorted(versions, key=lambda m: (m.major, m.created_at), reverse=True)

    async def get_latest_model(self, name: str) -> ModelVersion | None:
        versions = await self.get_models_by_name(name)
        return versions[0] if versions else None

    async def get_production_models(self, name: str | None = None) -> list[ModelVersion]:
        return [
            m
            for m in self.models.values()
            if m.status == ModelStatus.PRODUCTION and (name is None or m.name == name)
        ]

    async def search_models(
        self,
        name: str | None = None,
        model_type: ModelType | None = None,
        framework: str | None = None,
        status: ModelStatus | None = None,
        min_accuracy: float | None = None,
    ) -> list[ModelVersion]:
        """AND of every provided filter; `name` matches as a substring."""

        def matches(model: ModelVersion) -> bool:
            if name and name not in model.name:
                return False
            if model_type is not None and model.model_type != model_type:
                return False
            if framework and model.framework != framework:
                return False
            if status is not None and model.status != status:
                return False
            if min_accuracy is not None and model.metrics.accuracy < min_accuracy:
                return False
            return True

        return self.models.filter(matches)

    # ─── Lifecycle ─────────────────────────────────────────────────────────

    async def promote_to_production(self, model_id: str) -> ModelVersion:
        """
        Promote `model_id` and deprecate every other production version of
        the same name. Both transitions happen inside the name's lock, so two
        concurrent promotions of one name cannot both end in production.
        """
        target = self.models.require(model_id)

        async with self._locks(f"model-name:{target.name}"):
            now = utcnow()
            demoted = []
            for other in await self.get_production_models(target.name):
                if other.id == target.id:
                    continue
                other.status = ModelStatus.DEPRECATED
                other.updated_at = now
                demoted.append(other.id)

            target.status = ModelStatus.PRODUCTION
            target.updated_at = now

        logger.info(
            "registry.model_promoted",
            model_id=model_id,
            model_name=target.name,
            version=target.version,
            deprecated=demoted,
        )
        return target

    async def deprecate_model(self, model_id: str) -> ModelVersion:
        model = self.models.require(model_id)
        async with self._locks(f"model-name:{model.name}"):
            model.status = ModelStatus.DEPRECATED
            model.updated_at = utcnow()

        logger.info("registry.model_deprecated", model_id=model_id, model_name=model.name, version=model.version)
        return model

    # ─── Comparison ────────────────────────────────────────────────────────

    async def compare_models(self, model_id_1: str, model_id_2: str) -> dict[str, Any]:
        """
        Per-metric winner and margin for every metric both models report.
        Error metrics (mse, rmse, mae) are lower-is-better.
        """
        first = self.models.require(model_id_1)
        second = self.models.require(model_id_2)

        left = first.metrics.model_dump(exclude_none=True)
        right = second.metrics.model_dump(exclude_none=True)

        comparison: dict[str, dict[str, Any]] = {}
        for metric in left:
            if metric not in right:
                continue
            a, b = float(left[metric]), float(right[metric])
            if a == b:
                winner = TIE
            elif (a < b) if metric in LOWER_IS_BETTER else (a > b):
                winner = first.id
            else:
                winner = second.id
            comparison[metric] = {"winner": winner, "margin": abs(a - b)}

        return {"model_1": first, "model_2": second, "comparison": comparison}

    # ─── Metrics ───────────────────────────────────────────────────────────

    async def get_model_metrics(self, model_id: str) -> ModelMetrics:
        return self.models.require(model_id).metrics

    async def update_model_metrics(self, model_id: str, updates: dict[str, Any]) -> ModelVersion:
        model = self.models.require(model_id)
        try:
            merged = ModelMetrics.model_validate({**model.metrics.model_dump(), **updates})
        except pydantic.ValidationError as exc:
            raise ValidationError(
                "Invalid model metrics",
                errors=[f"{'.'.join(map(str, e['loc']))}: {e['msg']}" for e in exc.errors()],
                model_id=model_id,
            ) from exc

        model.metrics = merged
        model.updated_at = utcnow()
        logger.info("registry.metrics_updated", model_id=model_id, fields=sorted(updates))
        return model

    # ─── Artifacts ─────────────────────────────────────────────────────────

    async def load_artifact(self, model_id: str) -> ModelArtifact:
        self.models.require(model_id)
        artifact = self.artifacts.get(model_id)
        if artifact is None:
            raise NotFoundError("Model artifact", model_id)
        return artifact

    async def export_model(self, model_id: str, format: str = "raw") -> bytes:
        """
        raw:  the stored artifact bytes
        json: a self-describing document with version info and base64 payload
        """
        if format not in EXPORT_FORMATS:
            raise ValidationError(f"Unsupported export format '{format}'", errors=[f"format must be one of {EXPORT_FORMATS}"])

        model = self.models.require(model_id)
        artifact = await self.load_artifact(model_id)
        if format == "raw":
            return artifact.payload

        document = {
            "model": model.model_dump(mode="json"),
            "artifact_metadata": artifact.metadata,
            "payload_b64": base64.b64encode(artifact.payload).decode("ascii"),
        }
        return json.dumps(document).encode("utf-8")
