"""
Tests for the Feature Store.

Covers:
  - Group schema validation and updates
  - All-or-nothing ingestion
  - Online merge across groups, historical windows
  - Statistics and per-feature drift
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.errors import NotFoundError, ValidationError
from db.models import DriftMethod, FeatureDefinition, FeatureType, FeatureVector, TimeWindow
from ml.feature_store import FeatureStore, validate_feature_vector

T0 = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


def _schema() -> list[FeatureDefinition]:
    return [
        FeatureDefinition(name="power_density", type=FeatureType.NUMERICAL),
        FeatureDefinition(name="anode", type=FeatureType.CATEGORICAL),
    ]


@pytest.fixture
def store(settings) -> FeatureStore:
    return FeatureStore(settings)


@pytest.fixture
async def group(store):
    return await store.create_feature_group("reactor", "Reactor readings", _schema(), owner="lab", tags=["mfc"])


# ── Schema ────────────────────────────────────────────────────────────


class TestValidation:
    def test_type_mismatches_are_all_reported(self):
        vector = FeatureVector(entity_id="r1", features={"power_density": "high", "anode": 3})
        errors = validate_feature_vector(vector, _schema())
        assert len(errors) == 2
        assert errors[0].startswith("r1.power_density")

    def test_none_and_unknown_fields_pass(self):
        vector = FeatureVector(entity_id="r1", features={"power_density": None, "extra": [1, 2]})
        assert validate_feature_vector(vector, _schema()) == []

    def test_bool_is_not_numerical(self):
        vector = FeatureVector(entity_id="r1", features={"power_density": True})
        assert validate_feature_vector(vector, _schema()) != []


@pytest.mark.asyncio
class TestGroups:
    async def test_duplicate_feature_names_rejected(self, store):
        features = _schema() + [FeatureDefinition(name="anode", type=FeatureType.TEXT)]
        with pytest.raises(ValidationError) as exc_info:
            await store.create_feature_group("dup", "", features, owner="lab")
        assert exc_info.value.errors == ["anode"]

    async def test_list_by_tag(self, store, group):
        await store.create_feature_group("other", "", _schema(), owner="lab", tags=["algae"])
        assert [g.id for g in await store.list_feature_groups(["mfc"])] == [group.id]
        assert len(await store.list_feature_groups()) == 2

    async def test_update(self, store, group):
        updated = await store.update_feature_group(group.id, {"description": "Updated", "tags": ["x"]})
        assert updated.description == "Updated"
        assert updated.updated_at >= group.updated_at
        assert (await store.get_feature_group(group.id)).tags == ["x"]

    async def test_update_rejects_unknown_fields(self, store, group):
        with pytest.raises(ValidationError):
            await store.update_feature_group(group.id, {"id": "other"})

    async def test_view_requires_known_groups(self, store, group):
        with pytest.raises(NotFoundError):
            await store.create_feature_view("v", "", [group.id, "missing"])


# ── Ingestion ─────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestIngestion:
    async def test_valid_batch(self, store, group):
        vectors = [
            FeatureVector(entity_id="r1", features={"power_density": 1.5, "anode": "carbon"}, timestamp=_at(0)),
            FeatureVector(entity_id="r2", features={"power_density": 2.0, "anode": "graphite"}, timestamp=_at(1)),
        ]
        assert await store.ingest_features(group.id, vectors) == 2
        stored = await store.get_features(group.id)
        assert [v.entity_id for v in stored] == ["r2", "r1"]

    async def test_one_bad_vector_rejects_batch(self, store, group):
        vectors = [
            FeatureVector(entity_id="r1", features={"power_density": 1.5}),
            FeatureVector(entity_id="r2", features={"power_density": "oops"}),
        ]
        with pytest.raises(ValidationError) as exc_info:
            await store.ingest_features(group.id, vectors)
        assert len(exc_info.value.errors) == 1
        assert await store.get_features(group.id) == []

    async def test_unknown_group(self, store):
        with pytest.raises(NotFoundError):
            await store.ingest_features("missing", [])

    async def test_filters(self, store, group):
        await store.ingest_features(
            group.id,
            [FeatureVector(entity_id=f"r{i % 2}", features={"power_density": float(i)}, timestamp=_at(i)) for i in range(6)],
        )
        hits = await store.get_features(group.id, entity_ids=["r0"], start=_at(1), end=_at(4))
        assert [v.features["power_density"] for v in hits] == [4.0, 2.0]


# ── Views ─────────────────────────────────────────────────────────────


@pytest.mark.asyncio
class TestViews:
    async def test_online_merges_latest_per_group(self, store, group):
        env = await store.create_feature_group(
            "environment",
            "",
            [
                FeatureDefinition(name="temperature", type=FeatureType.NUMERICAL),
                FeatureDefinition(name="anode", type=FeatureType.CATEGORICAL),
            ],
            owner="lab",
        )
        await store.ingest_features(
            group.id,
            [
                FeatureVector(entity_id="r1", features={"power_density": 1.0, "anode": "carbon"}, timestamp=_at(0)),
                FeatureVector(entity_id="r1", features={"power_density": 2.0, "anode": "carbon"}, timestamp=_at(5)),
            ],
        )
        await store.ingest_features(
            env.id,
            [FeatureVector(entity_id="r1", features={"temperature": 30.0, "anode": "felt"}, timestamp=_at(2))],
        )
        view = await store.create_feature_view("reactor_env", "", [group.id, env.id])

        online = await store.get_online_features(view.id, ["r1", "r9"])

        assert len(online) == 1
        merged = online[0]
        assert merged.features == {"power_density": 2.0, "anode": "felt", "temperature": 30.0}
        assert merged.timestamp == _at(5)

    async def test_historical_window(self, store, group):
        await store.ingest_features(
            group.id,
            [FeatureVector(entity_id="r1", features={"power_density": float(i)}, timestamp=_at(i)) for i in range(10)],
        )
        view = await store.create_feature_view("reactor_view", "", [group.id])

        dataset = await store.get_historical_features(view.id, None, _at(2), _at(5))

        assert dataset.samples == 4
        assert dataset.name == "historical_reactor_view"
        assert {f.name for f in dataset.features} == {"power_density", "anode"}

    async def test_historical_rejects_inverted_window(self, store, group):
        view = await store.create_feature_view("reactor_view", "", [group.id])
        with pytest.raises(ValueError):
            await store.get_historical_features(view.id, None, _at(5), _at(0))


# ── Statistics & Drift ────────────────────────────────────────────────


@pytest.mark.asyncio
class TestStatisticsAndDrift:
    async def test_statistics(self, store, group):
        await store.ingest_features(
            group.id,
            [
                FeatureVector(entity_id="r1", features={"power_density": 1.0, "anode": "carbon"}),
                FeatureVector(entity_id="r2", features={"power_density": 3.0, "anode": "carbon"}),
                FeatureVector(entity_id="r3", features={"anode": "felt"}),
            ],
        )
        stats = await store.compute_feature_statistics(group.id)
        assert stats["power_density"]["count"] == 2
        assert stats["power_density"]["null_count"] == 1
        assert stats["power_density"]["mean"] == pytest.approx(2.0)
        assert stats["power_density"]["std"] == pytest.approx(1.0)
        assert stats["anode"]["most_common"] == "carbon"
        assert stats["anode"]["unique_count"] == 2

    async def test_statistics_without_vectors(self, store, group):
        stats = await store.compute_feature_statistics(group.id)
        assert stats["power_density"] == {"count": 0, "null_count": 0}

    async def test_identical_windows_do_not_drift(self, store, group):
        vectors = []
        for i in range(20):
            features = {"power_density": float(i % 5), "anode": "carbon" if i % 2 else "felt"}
            vectors.append(FeatureVector(entity_id=f"r{i}", features=features, timestamp=_at(i % 10 + (0 if i < 10 else 60))))
        await store.ingest_features(group.id, vectors)

        results = await store.detect_feature_drift(
            group.id,
            TimeWindow(start=_at(0), end=_at(9)),
            TimeWindow(start=_at(60), end=_at(69)),
        )
        assert results["power_density"].drift_score == pytest.approx(0.0)
        assert results["anode"].drift_score == pytest.approx(0.0)
        assert not results["power_density"].is_drift

    async def test_shifted_window_drifts(self, store, group):
        await store.ingest_features(
            group.id,
            [FeatureVector(entity_id="r", features={"power_density": float(i)}, timestamp=_at(i)) for i in range(10)]
            + [FeatureVector(entity_id="r", features={"power_density": 50.0 + i}, timestamp=_at(60 + i)) for i in range(10)],
        )
        results = await store.detect_feature_drift(
            group.id,
            TimeWindow(start=_at(0), end=_at(9)),
            TimeWindow(start=_at(60), end=_at(69)),
        )
        assert results["power_density"].method == DriftMethod.KOLMOGOROV_SMIRNOV
        assert results["power_density"].drift_score == pytest.approx(1.0)
        assert results["power_density"].is_drift
        # no anode values at all
        assert results["anode"].method == DriftMethod.INSUFFICIENT_DATA

    async def test_empty_windows_are_insufficient(self, store, group):
        results = await store.detect_feature_drift(
            group.id,
            TimeWindow(start=_at(0), end=_at(1)),
            TimeWindow(start=_at(2), end=_at(3)),
        )
        assert all(r.drift_score == 1.0 and r.is_drift for r in results.values())
