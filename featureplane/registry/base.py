"""Registry snapshots, buffered transactions and the store interface."""

from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, Iterator, List, Mapping, Optional

from pydantic import BaseModel, Field, field_validator

from ..definitions import (
    DataSource,
    Definition,
    Entity,
    FeatureView,
    ObjectKind,
    ObjectRef,
)
from ..errors import ConcurrentModificationError, ObjectNotFoundError

__all__ = [
    "MaterializationInterval",
    "RegistrySnapshot",
    "RegistryStore",
    "RegistryTransaction",
    "utc",
]


def utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime; naive values are taken as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class MaterializationInterval(BaseModel):
    """A window successfully copied into the online store."""

    model_config = {"frozen": True}

    start_time: datetime
    end_time: datetime
    recorded_at: datetime

    @field_validator("start_time", "end_time", "recorded_at")
    @classmethod
    def _as_utc(cls, value: datetime) -> datetime:
        return utc(value)


class RegistrySnapshot(BaseModel):
    """Committed registry state of one project.

    ``version`` increases with every commit that changes definitions; interval
    appends leave it untouched.
    """

    project: str
    version: int = 0
    entities: Dict[str, Entity] = Field(default_factory=dict)
    data_sources: Dict[str, DataSource] = Field(default_factory=dict)
    feature_views: Dict[str, FeatureView] = Field(default_factory=dict)
    intervals: Dict[str, List[MaterializationInterval]] = Field(default_factory=dict)
    last_updated: Optional[datetime] = None

    def objects(self, kind: ObjectKind) -> Mapping[str, Definition]:
        if kind is ObjectKind.ENTITY:
            return self.entities
        if kind is ObjectKind.DATA_SOURCE:
            return self.data_sources
        return self.feature_views

    def get(self, ref: ObjectRef) -> Optional[Definition]:
        return self.objects(ref.kind).get(ref.name)

    def get_feature_view(self, name: str) -> FeatureView:
        try:
            return self.feature_views[name]
        except KeyError:
            raise ObjectNotFoundError(
                f"Feature view '{name}' is not registered in project '{self.project}'",
                ref=ObjectRef(ObjectKind.FEATURE_VIEW, name),
                rule="exists",
            ) from None

    def list_entities(self) -> List[Entity]:
        return list(self.entities.values())

    def list_data_sources(self) -> List[DataSource]:
        return list(self.data_sources.values())

    def list_feature_views(self) -> List[FeatureView]:
        return list(self.feature_views.values())

    def intervals_for(self, feature_view: str) -> List[MaterializationInterval]:
        return list(self.intervals.get(feature_view, ()))

    def latest_interval_end(self, feature_view: str) -> Optional[datetime]:
        history = self.intervals.get(feature_view)
        if not history:
            return None
        return max(interval.end_time for interval in history)

    @property
    def is_empty(self) -> bool:
        return not (self.entities or self.data_sources or self.feature_views)


@dataclass
class RegistryTransaction:
    """Change set buffered against the snapshot at ``base_version``.

    Nothing is visible to readers until :meth:`RegistryStore.commit` persists
    the whole change set in one storage call.
    """

    project: str
    base_version: int
    upserts: Dict[ObjectRef, Definition] = field(default_factory=dict)
    deletes: set[ObjectRef] = field(default_factory=set)
    interval_appends: List[tuple[str, MaterializationInterval]] = field(default_factory=list)

    def upsert(self, definition: Definition) -> None:
        self.deletes.discard(definition.ref)
        self.upserts[definition.ref] = definition

    def delete(self, ref: ObjectRef) -> None:
        self.upserts.pop(ref, None)
        self.deletes.add(ref)

    def append_interval(self, feature_view: str, interval: MaterializationInterval) -> None:
        self.interval_appends.append((feature_view, interval))

    @property
    def has_definition_changes(self) -> bool:
        return bool(self.upserts or self.deletes)

    @property
    def is_empty(self) -> bool:
        return not (self.has_definition_changes or self.interval_appends)

    def apply_to(self, snapshot: RegistrySnapshot, *, now: datetime | None = None) -> RegistrySnapshot:
        """Return the snapshot that results from committing this change set."""

        entities = dict(snapshot.entities)
        sources = dict(snapshot.data_sources)
        views = dict(snapshot.feature_views)
        intervals = {name: list(history) for name, history in snapshot.intervals.items()}
        tables = {
            ObjectKind.ENTITY: entities,
            ObjectKind.DATA_SOURCE: sources,
            ObjectKind.FEATURE_VIEW: views,
        }
        for ref in self.deletes:
            tables[ref.kind].pop(ref.name, None)
            if ref.kind is ObjectKind.FEATURE_VIEW:
                intervals.pop(ref.name, None)
        for ref, definition in self.upserts.items():
            tables[ref.kind][ref.name] = definition
        for feature_view, interval in self.interval_appends:
            if feature_view not in views:
                raise ConcurrentModificationError(
                    f"Feature view '{feature_view}' was removed before its materialization "
                    "interval could be recorded",
                    detail={"project": self.project, "feature_view": feature_view},
                )
            intervals.setdefault(feature_view, []).append(interval)
        version = snapshot.version + 1 if self.has_definition_changes else snapshot.version
        return RegistrySnapshot(
            project=snapshot.project,
            version=version,
            entities=entities,
            data_sources=sources,
            feature_views=views,
            intervals=intervals,
            last_updated=now or datetime.now(timezone.utc),
        )


class RegistryStore(ABC):
    """Project-scoped persistent registry with an explicit commit boundary."""

    def __init__(self) -> None:
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @abstractmethod
    def snapshot(self, project: str) -> RegistrySnapshot:
        """Return the committed state of ``project`` (empty when unknown)."""

    @abstractmethod
    def commit(self, transaction: RegistryTransaction) -> RegistrySnapshot:
        """Persist ``transaction`` atomically and return the new snapshot.

        Raises :class:`ConcurrentModificationError` when the transaction carries
        definition changes and the project moved past ``base_version``.
        """

    @abstractmethod
    def delete_project(self, project: str) -> None:
        """Remove every object and interval recorded for ``project``."""

    @abstractmethod
    def list_projects(self) -> List[str]:
        """Return the names of projects with committed state."""

    def begin(self, snapshot: RegistrySnapshot) -> RegistryTransaction:
        return RegistryTransaction(project=snapshot.project, base_version=snapshot.version)

    def check(self, transaction: RegistryTransaction) -> None:
        """Fail early when the transaction could no longer commit."""

        current = self.snapshot(transaction.project)
        self._verify_version(transaction, current.version)

    @contextmanager
    def lock(self, project: str) -> Iterator[None]:
        """Serialize writers of ``project`` within this process."""

        with self._locks_guard:
            project_lock = self._locks.setdefault(project, threading.RLock())
        with project_lock:
            yield

    @staticmethod
    def _verify_version(transaction: RegistryTransaction, current_version: int) -> None:
        if transaction.has_definition_changes and current_version != transaction.base_version:
            raise ConcurrentModificationError(
                f"Registry for project '{transaction.project}' changed concurrently "
                f"(expected version {transaction.base_version}, found {current_version})",
                detail={
                    "project": transaction.project,
                    "expected_version": transaction.base_version,
                    "current_version": current_version,
                },
            )
