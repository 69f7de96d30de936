# SPDX-License-Identifier: MIT
from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd
import pytest

from featureplane.definitions import (
    DataSource,
    Entity,
    FeatureDefinitionSet,
    FeatureView,
    Field,
    ValueType,
)
from featureplane.infra.base import (
    InfraProvider,
    JobStatus,
    MaterializationJob,
    MaterializationTask,
)
from featureplane.registry.memory import InMemoryRegistryStore

DRIVER_COLUMNS = {
    "driver_id": ValueType.INT64,
    "conv_rate": ValueType.FLOAT64,
    "trips": ValueType.INT64,
    "event_timestamp": ValueType.UNIX_TIMESTAMP,
}


class FakeJob(MaterializationJob):
    """Job replaying a scripted sequence of statuses, one per poll."""

    def __init__(self, name: str, statuses: Sequence[JobStatus], error: Optional[BaseException] = None):
        self._job_id = f"job-{name}"
        self._statuses = list(statuses)
        self._error = error
        self.polls = 0

    @property
    def job_id(self) -> str:
        return self._job_id

    def status(self) -> JobStatus:
        self.polls += 1
        if len(self._statuses) > 1:
            return self._statuses.pop(0)
        return self._statuses[0]

    def error(self) -> Optional[BaseException]:
        return self._error


class FakeProvider(InfraProvider):
    """Provider recording every call; job outcomes are scripted per feature view."""

    def __init__(self, schemas: Optional[Mapping[str, Mapping[str, ValueType]]] = None) -> None:
        self.schemas = dict(schemas or {})
        self.outcomes: Dict[str, Any] = {}
        self.update_calls: List[Dict[str, Any]] = []
        self.teardown_calls: List[List[str]] = []
        self.submitted: List[List[MaterializationTask]] = []
        self.update_error: Optional[BaseException] = None
        self.submit_error: Optional[BaseException] = None

    def update_infra(
        self,
        project,
        tables_to_delete,
        tables_to_keep,
        entities_to_delete,
        entities_to_keep,
        full_sync,
    ) -> None:
        if self.update_error is not None:
            raise self.update_error
        self.update_calls.append(
            {
                "project": project,
                "tables_to_delete": [view.name for view in tables_to_delete],
                "tables_to_keep": [view.name for view in tables_to_keep],
                "entities_to_delete": [entity.name for entity in entities_to_delete],
                "entities_to_keep": [entity.name for entity in entities_to_keep],
                "full_sync": full_sync,
            }
        )

    def teardown_infra(self, project, tables, entities) -> None:
        self.teardown_calls.append([view.name for view in tables])

    def materialize(self, registry, tasks) -> list[MaterializationJob]:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(list(tasks))
        jobs: list[MaterializationJob] = []
        for task in tasks:
            name = task.feature_view.name
            outcome = self.outcomes.get(name, [JobStatus.SUCCEEDED])
            if isinstance(outcome, MaterializationJob):
                jobs.append(outcome)
            elif isinstance(outcome, BaseException):
                jobs.append(FakeJob(name, [JobStatus.RUNNING, JobStatus.ERROR], error=outcome))
            else:
                jobs.append(FakeJob(name, outcome))
        return jobs

    def source_schema(self, source: DataSource) -> Mapping[str, ValueType]:
        try:
            return self.schemas[source.name]
        except KeyError:
            raise FileNotFoundError(f"no such source: {source.path}") from None

    def online_read(self, project, feature_view, join_keys, entity_rows) -> pd.DataFrame:
        return pd.DataFrame(list(entity_rows))


@pytest.fixture()
def driver() -> Entity:
    return Entity(name="driver", join_key="driver_id", value_type=ValueType.INT64)


@pytest.fixture()
def driver_source() -> DataSource:
    return DataSource(
        name="driver_stats",
        path="driver_stats.parquet",
        timestamp_field="event_timestamp",
        columns=DRIVER_COLUMNS,
    )


@pytest.fixture()
def driver_view() -> FeatureView:
    return FeatureView(
        name="driver_hourly",
        entities=("driver",),
        features=(Field(name="conv_rate", dtype=ValueType.FLOAT64), Field(name="trips", dtype=ValueType.INT64)),
        source="driver_stats",
        ttl=timedelta(days=1),
    )


@pytest.fixture()
def make_view():
    def _make(name: str, *, online: bool = True, ttl: Optional[timedelta] = timedelta(days=1), **kwargs):
        return FeatureView(
            name=name,
            entities=kwargs.pop("entities", ("driver",)),
            features=kwargs.pop("features", (Field(name="conv_rate", dtype=ValueType.FLOAT64),)),
            source=kwargs.pop("source", "driver_stats"),
            ttl=ttl,
            online=online,
            **kwargs,
        )

    return _make


@pytest.fixture()
def driver_definitions(driver, driver_source, driver_view) -> FeatureDefinitionSet:
    return FeatureDefinitionSet.from_objects([driver, driver_source, driver_view])


@pytest.fixture()
def registry() -> InMemoryRegistryStore:
    return InMemoryRegistryStore()


@pytest.fixture()
def provider() -> FakeProvider:
    return FakeProvider()
