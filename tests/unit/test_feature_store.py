from datetime import datetime, timezone

import pandas as pd
import pytest

from featureplane import (
    BatchEngineConfig,
    DataSource,
    Entity,
    FeatureStore,
    FeatureView,
    Field,
    ObjectKind,
    ObjectNotFoundError,
    ObjectRef,
    OfflineStoreConfig,
    OnlineStoreConfig,
    RegistryConfig,
    RepoConfig,
    ValueType,
)
from featureplane.infra.passthrough import PassthroughProvider
from featureplane.registry import FileRegistryStore, InMemoryRegistryStore, SqlRegistryStore
from featureplane.store import build_registry

START = datetime(2024, 1, 1, tzinfo=timezone.utc)
END = datetime(2024, 1, 4, tzinfo=timezone.utc)


@pytest.fixture()
def repo_config(tmp_path) -> RepoConfig:
    pd.DataFrame(
        {
            "driver_id": [1, 2, 1, 2],
            "conv_rate": [0.1, 0.5, 0.3, 0.9],
            "trips": [4, 7, 6, 9],
            "event_timestamp": pd.to_datetime(
                [
                    "2024-01-01T10:00:00Z",
                    "2024-01-01T11:00:00Z",
                    "2024-01-02T10:00:00Z",
                    "2024-01-05T00:00:00Z",
                ],
                utc=True,
            ),
        }
    ).to_parquet(tmp_path / "driver_stats.parquet", index=False)
    return RepoConfig(
        project="drivers",
        registry=RegistryConfig(registry_type="file", path=tmp_path / "registry.json"),
        offline_store=OfflineStoreConfig(base_path=tmp_path),
        online_store=OnlineStoreConfig(backend="sqlite", sqlite_path=tmp_path / "online.db"),
        batch_engine=BatchEngineConfig(max_workers=2, poll_interval_seconds=0.01),
    )


@pytest.fixture()
def store(repo_config):
    feature_store = FeatureStore(repo_config)
    yield feature_store
    feature_store.close()


def _declarations():
    return [
        Entity(name="driver", join_key="driver_id"),
        DataSource(name="driver_stats", path="driver_stats.parquet", timestamp_field="event_timestamp"),
        FeatureView(
            name="driver_hourly",
            entities=("driver",),
            features=(Field(name="conv_rate"), Field(name="trips")),
            source="driver_stats",
        ),
    ]


def test_local_apply_materialize_and_serve(store) -> None:
    assert isinstance(store.provider, PassthroughProvider)

    result = store.apply(_declarations())
    assert result.changed and result.version == 1

    view = store.get_feature_view("driver_hourly")
    assert [f.dtype for f in view.features] == [ValueType.FLOAT64, ValueType.INT64]
    assert store.get_registry_snapshot().entities["driver"].value_type is ValueType.INT64

    report = store.materialize(START, END)
    assert report.succeeded == ["driver_hourly"]
    [interval] = store.get_registry_snapshot().intervals_for("driver_hourly")
    assert interval.end_time == END

    served = store.get_online_features("driver_hourly", [{"driver_id": 1}, {"driver_id": 2}, {"driver_id": 3}])
    assert served["conv_rate"].tolist()[:2] == pytest.approx([0.3, 0.5])
    assert pd.isna(served.loc[2, "conv_rate"])


def test_reapply_and_incremental_are_idempotent(store) -> None:
    store.apply(_declarations())
    store.materialize(START, END)

    assert not store.apply(_declarations()).changed
    report = store.materialize_incremental(END)
    assert report.skipped == ["driver_hourly"]
    assert len(store.get_registry_snapshot().intervals_for("driver_hourly")) == 1


def test_plan_renders_pending_changes(store) -> None:
    assert store.plan(_declarations()).render().splitlines() == [
        "+ entity driver",
        "+ data_source driver_stats",
        "+ feature_view driver_hourly",
    ]
    assert store.list_feature_views() == []


def test_teardown_drops_tables_and_registry(store, repo_config) -> None:
    store.apply(_declarations())
    store.materialize(START, END)

    store.teardown()

    assert store.get_registry_snapshot().is_empty
    assert not store.provider.online_store.table_exists("drivers", "driver_hourly")
    with pytest.raises(ObjectNotFoundError):
        store.get_feature_view("driver_hourly")


def test_registry_backend_follows_config(tmp_path) -> None:
    assert isinstance(build_registry(RegistryConfig(registry_type="memory")), InMemoryRegistryStore)
    assert isinstance(
        build_registry(RegistryConfig(registry_type="file", path=tmp_path / "r.json")), FileRegistryStore
    )
    assert isinstance(
        build_registry(RegistryConfig(registry_type="sql", url=f"sqlite:///{tmp_path / 'r.db'}")),
        SqlRegistryStore,
    )


def test_partial_delete_keeps_online_table(store) -> None:
    store.apply(_declarations())
    store.materialize(START, END)

    result = store.apply([], [ObjectRef(ObjectKind.FEATURE_VIEW, "driver_hourly")])

    assert result.changed
    assert store.list_feature_views() == []
    assert store.provider.online_store.table_exists("drivers", "driver_hourly")


def test_file_registry_without_path_is_rejected() -> None:
    with pytest.raises(ValueError):
        build_registry(RegistryConfig.model_construct(registry_type="file", path=None))
