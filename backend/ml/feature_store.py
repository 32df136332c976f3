"""
Feature Store — Feature groups, views, append-only vectors, drift.

Data flow:
  create_feature_group → ingest_features (validated, all-or-nothing)
  create_feature_view  → get_online_features (latest per group, merged)
                       → get_historical_features (windowed, for training)
  detect_feature_drift → KS for numerical features, PSI for the rest
"""

from collections import Counter
from datetime import datetime
from typing import Any

import pandas as pd
import structlog

from core.config import Settings, get_settings
from core.errors import ValidationError
from core.locks import KeyedLock
from db.models import (
    FeatureDefinition,
    FeatureDriftResult,
    FeatureGroup,
    FeatureType,
    FeatureVector,
    FeatureView,
    HistoricalDataset,
    TimeWindow,
    as_utc,
    utcnow,
)
from db.repositories import AppendOnlyLog, InMemoryAppendOnlyLog, InMemoryRepository, Repository
from ml.drift import feature_drift
from ml.metrics import is_number

logger = structlog.get_logger()

UPDATABLE_GROUP_FIELDS = frozenset({"name", "description", "features", "owner", "tags"})


def validate_feature_vector(vector: FeatureVector, schema: list[FeatureDefinition]) -> list[str]:
    """Return every schema violation in `vector`. None values always pass."""
    errors = []
    for feature in schema:
        value = vector.features.get(feature.name)
        if value is None:
            continue
        if feature.type == FeatureType.NUMERICAL and not is_number(value):
            errors.append(
                f"{vector.entity_id}.{feature.name}: expected number, got {type(value).__name__}"
            )
        elif feature.type == FeatureType.CATEGORICAL and not isinstance(value, str):
            errors.append(
                f"{vector.entity_id}.{feature.name}: expected string, got {type(value).__name__}"
            )
    return errors


class FeatureStore:
    """Per-tenant feature store."""

    def __init__(
        self,
        settings: Settings | None = None,
        groups: Repository[FeatureGroup] | None = None,
        views: Repository[FeatureView] | None = None,
        vectors: AppendOnlyLog[FeatureVector] | None = None,
    ):
        self.settings = settings or get_settings()
        self.groups: Repository[FeatureGroup] = groups or InMemoryRepository("Feature group")
        self.views: Repository[FeatureView] = views or InMemoryRepository("Feature view")
        self.vectors: AppendOnlyLog[FeatureVector] = vectors or InMemoryAppendOnlyLog()
        self._locks = KeyedLock()

    # ─── Groups ────────────────────────────────────────────────────────────

    async def create_feature_group(
        self,
        name: str,
        description: str,
        features: list[FeatureDefinition],
        owner: str,
        tags: list[str] | None = None,
    ) -> FeatureGroup:
        _check_unique_names(features)
        group = FeatureGroup(name=name, description=description, features=features, owner=owner, tags=tags or [])
        self.groups.put(group.id, group)
        logger.info("feature_store.group_created", group_id=group.id, name=name, features=len(features), owner=owner)
        return group

    async def get_feature_group(self, group_id: str) -> FeatureGroup:
        return self.groups.require(group_id)

    async def list_feature_groups(self, tags: list[str] | None = None) -> list[FeatureGroup]:
        """All groups, or those carrying any of `tags`."""
        if not tags:
            return self.groups.values()
        wanted = set(tags)
        return self.groups.filter(lambda g: bool(wanted & set(g.tags)))

    async def update_feature_group(self, group_id: str, updates: dict[str, Any]) -> FeatureGroup:
        unknown = set(updates) - UPDATABLE_GROUP_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update field(s): {', '.join(sorted(unknown))}", errors=sorted(unknown))

        async with self._locks(group_id):
            group = self.groups.require(group_id)
            candidate = FeatureGroup.model_validate({**group.model_dump(), **updates, "updated_at": utcnow()})
            _check_unique_names(candidate.features)
            self.groups.put(group_id, candidate)

        logger.info("feature_store.group_updated", group_id=group_id, fields=sorted(updates))
        return candidate

    # ─── Views ─────────────────────────────────────────────────────────────

    async def create_feature_view(
        self,
        name: str,
        description: str,
        feature_groups: list[str],
        query: str = "",
    ) -> FeatureView:
        for group_id in feature_groups:
            self.groups.require(group_id)
        view = FeatureView(name=name, description=description, feature_groups=list(feature_groups), query=query)
        self.views.put(view.id, view)
        logger.info("feature_store.view_created", view_id=view.id, name=name, groups=len(feature_groups))
        return view

    async def get_feature_view(self, view_id: str) -> FeatureView:
        return self.views.require(view_id)

    # ─── Ingestion ─────────────────────────────────────────────────────────

    async def ingest_features(self, group_id: str, vectors: list[FeatureVector]) -> int:
        """
        Validate the whole batch against the group schema, then append it.
        Any violation rejects the batch; the error lists every violation.
        """
        async with self._locks(group_id):
            group = self.groups.require(group_id)
            errors = [err for vector in vectors for err in validate_feature_vector(vector, group.features)]
            if errors:
                logger.warning(
                    "feature_store.ingest_rejected", group_id=group_id, vectors=len(vectors), violations=len(errors)
                )
                raise ValidationError(
                    f"{len(errors)} schema violation(s) in batch for feature group {group.name}",
                    errors=errors,
                    group_id=group_id,
                )
            self.vectors.append_many(group_id, list(vectors))

        logger.info("feature_store.ingested", group_id=group_id, group=group.name, vectors=len(vectors))
        return len(vectors)

    # ─── Retrieval ─────────────────────────────────────────────────────────

    async def get_features(
        self,
        group_id: str,
        entity_ids: list[str] | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[FeatureVector]:
        """Vectors of one group, newest first."""
        self.groups.require(group_id)
        wanted = set(entity_ids) if entity_ids else None
        lo = as_utc(start) if start else None
        hi = as_utc(end) if end else None

        selected = [
            v
            for v in self.vectors.read(group_id)
            if (wanted is None or v.entity_id in wanted)
            and (lo is None or v.timestamp >= lo)
            and (hi is None or v.timestamp <= hi)
        ]
        # stable sort keeps later ingests first among equal timestamps
        return sorted(reversed(selected), key=lambda v: v.timestamp, reverse=True)

    async def get_online_features(self, view_id: str, entity_ids: list[str]) -> list[FeatureVector]:
        """
        One merged vector per entity: the latest vector of each group, applied
        in view order so later groups win on shared field names. Entities with
        no values are omitted.
        """
        view = self.views.require(view_id)
        latest_by_group: dict[str, dict[str, FeatureVector]] = {}
        for group_id in view.feature_groups:
            latest: dict[str, FeatureVector] = {}
            for vector in await self.get_features(group_id, entity_ids):
                latest.setdefault(vector.entity_id, vector)
            latest_by_group[group_id] = latest

        results = []
        for entity_id in entity_ids:
            combined: dict[str, Any] = {}
            newest: datetime | None = None
            for group_id in view.feature_groups:
                vector = latest_by_group[group_id].get(entity_id)
                if vector is None:
                    continue
                combined.update(vector.features)
                if newest is None or vector.timestamp > newest:
                    newest = vector.timestamp
            if combined and newest is not None:
                results.append(FeatureVector(entity_id=entity_id, features=combined, timestamp=newest))
        return results

    async def get_historical_features(
        self,
        view_id: str,
        entity_ids: list[str] | None,
        start: datetime,
        end: datetime,
    ) -> HistoricalDataset:
        view = self.views.require(view_id)
        window = TimeWindow(start=start, end=end)

        vectors: list[FeatureVector] = []
        definitions: dict[str, FeatureDefinition] = {}
        for group_id in view.feature_groups:
            vectors.extend(await self.get_features(group_id, entity_ids, window.start, window.end))
            for feature in self.groups.require(group_id).features:
                definitions.setdefault(feature.name, feature)

        dataset = HistoricalDataset(
            name=f"historical_{view.name}",
            description=f"Historical features for {view.name}",
            features=list(definitions.values()),
            vectors=vectors,
            samples=len(vectors),
        )
        logger.info(
            "feature_store.historical_built",
            view_id=view_id,
            samples=dataset.samples,
            features=len(dataset.features),
        )
        return dataset

    # ─── Statistics & drift ────────────────────────────────────────────────

    async def compute_feature_statistics(self, group_id: str) -> dict[str, dict[str, Any]]:
        group = self.groups.require(group_id)
        vectors = self.vectors.read(group_id)
        frame = pd.DataFrame([v.features for v in vectors]) if vectors else pd.DataFrame()

        stats: dict[str, dict[str, Any]] = {}
        for feature in group.features:
            column = frame[feature.name] if feature.name in frame.columns else pd.Series([None] * len(vectors), dtype=object)
            present = column.dropna()
            entry: dict[str, Any] = {"count": int(len(present)), "null_count": int(len(vectors) - len(present))}
            if present.empty:
                stats[feature.name] = entry
                continue

            if feature.type == FeatureType.NUMERICAL:
                values = pd.to_numeric(present, errors="coerce").dropna().astype(float)
                entry.update(
                    mean=float(values.mean()),
                    min=float(values.min()),
                    max=float(values.max()),
                    std=float(values.std(ddof=0)),
                )
            else:
                hashable = present.map(lambda v: v if isinstance(v, (str, int, float)) else repr(v))
                counts = hashable.value_counts()
                entry.update(unique_count=int(counts.size), most_common=counts.index[0])
            stats[feature.name] = entry
        return stats

    async def detect_feature_drift(
        self,
        group_id: str,
        baseline: TimeWindow,
        comparison: TimeWindow,
    ) -> dict[str, FeatureDriftResult]:
        """Per-feature drift between two windows of the group's vectors."""
        group = self.groups.require(group_id)
        base = await self.get_features(group_id, start=baseline.start, end=baseline.end)
        cmp_ = await self.get_features(group_id, start=comparison.start, end=comparison.end)

        results = {
            feature.name: feature_drift(
                feature.type,
                [v.features.get(feature.name) for v in base],
                [v.features.get(feature.name) for v in cmp_],
                threshold=self.settings.feature_drift_threshold,
                psi_floor=self.settings.feature_psi_floor,
            )
            for feature in group.features
        }
        drifted = sorted(name for name, result in results.items() if result.is_drift)
        logger.info(
            "feature_store.drift_checked",
            group_id=group_id,
            baseline_vectors=len(base),
            comparison_vectors=len(cmp_),
            drifted=drifted,
        )
        return results


def _check_unique_names(features: list[FeatureDefinition]) -> None:
    counts = Counter(f.name for f in features)
    duplicates = sorted(name for name, count in counts.items() if count > 1)
    if duplicates:
        raise ValidationError(f"Duplicate feature name(s): {', '.join(duplicates)}", errors=duplicates)
