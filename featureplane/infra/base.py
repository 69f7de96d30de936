"""Interfaces of pluggable infrastructure providers and batch engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Mapping, Optional, Sequence

import pandas as pd

from ..definitions import DataSource, Entity, FeatureView, ValueType
from ..registry.base import RegistrySnapshot

__all__ = [
    "BatchEngine",
    "InfraProvider",
    "JobStatus",
    "MaterializationJob",
    "MaterializationTask",
]


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    ERROR = "error"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.SUCCEEDED, JobStatus.ERROR)

    @property
    def rank(self) -> int:
        return _RANKS[self]


_RANKS = {
    JobStatus.PENDING: 0,
    JobStatus.RUNNING: 1,
    JobStatus.SUCCEEDED: 2,
    JobStatus.ERROR: 2,
}


@dataclass(frozen=True, slots=True)
class MaterializationTask:
    """Work order copying ``[start_time, end_time)`` of one feature view."""

    project: str
    feature_view: FeatureView
    start_time: datetime
    end_time: datetime


class MaterializationJob(ABC):
    """Handle to an asynchronously executing materialization.

    Status only moves forward and stays fixed once SUCCEEDED or ERROR.
    """

    @property
    @abstractmethod
    def job_id(self) -> str:
        ...

    @abstractmethod
    def status(self) -> JobStatus:
        ...

    @abstractmethod
    def error(self) -> Optional[BaseException]:
        """Failure cause, defined only when :meth:`status` is ERROR."""


class BatchEngine(ABC):
    """Executes materialization tasks outside the control loop."""

    @abstractmethod
    def materialize(
        self, registry: RegistrySnapshot, tasks: Sequence[MaterializationTask]
    ) -> list[MaterializationJob]:
        """Start one job per task, returned in task order."""

    def close(self) -> None:  # pragma: no cover - default no-op
        """Release engine resources."""


class InfraProvider(ABC):
    """Manages physical online-store resources and delegates materialization."""

    @abstractmethod
    def update_infra(
        self,
        project: str,
        tables_to_delete: Sequence[FeatureView],
        tables_to_keep: Sequence[FeatureView],
        entities_to_delete: Sequence[Entity],
        entities_to_keep: Sequence[Entity],
        full_sync: bool,
    ) -> None:
        """Create resources for kept views and drop those of deleted ones.

        Must be a no-op when every sequence is empty.
        """

    @abstractmethod
    def teardown_infra(
        self, project: str, tables: Sequence[FeatureView], entities: Sequence[Entity]
    ) -> None:
        ...

    @abstractmethod
    def materialize(
        self, registry: RegistrySnapshot, tasks: Sequence[MaterializationTask]
    ) -> list[MaterializationJob]:
        ...

    @abstractmethod
    def source_schema(self, source: DataSource) -> Mapping[str, ValueType]:
        """Column types of ``source`` as read from the offline store."""

    @abstractmethod
    def online_read(
        self,
        project: str,
        feature_view: FeatureView,
        join_keys: Sequence[str],
        entity_rows: Sequence[Mapping[str, Any]],
    ) -> pd.DataFrame:
        ...

    def close(self) -> None:  # pragma: no cover - default no-op
        ...
