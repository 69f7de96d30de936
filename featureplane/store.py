"""Entry points exposed to the CLI and serving layers."""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import pandas as pd

from .apply import ApplyOrchestrator, ApplyResult, DeleteTarget
from .config import RegistryConfig, RepoConfig
from .definitions import ALL_KINDS, Definition, FeatureDefinitionSet, FeatureView, ObjectKind
from .diff import RegistryDiff
from .infra.base import InfraProvider
from .infra.local_engine import LocalBatchEngine
from .infra.offline import FileOfflineStore
from .infra.online import OnlineStore, RedisOnlineStore, SQLiteOnlineStore
from .infra.passthrough import PassthroughProvider
from .materialization import MaterializationOrchestrator, MaterializationReport
from .registry.base import RegistrySnapshot, RegistryStore
from .registry.cache import CachedRegistryReader
from .registry.file import FileRegistryStore
from .registry.memory import InMemoryRegistryStore
from .registry.sql import SqlRegistryStore
from .utils.logging import get_logger

__all__ = ["FeatureStore", "build_online_store", "build_provider", "build_registry"]

_logger = get_logger(__name__)


def build_registry(config: RegistryConfig) -> RegistryStore:
    if config.registry_type == "memory":
        return InMemoryRegistryStore()
    if config.registry_type == "file":
        if config.path is None:
            raise ValueError("File registry requires a path")
        return FileRegistryStore(config.path)
    if config.registry_type == "sql":
        return SqlRegistryStore(config.url)
    raise ValueError(f"Unsupported registry type: {config.registry_type}")


def build_online_store(config: RepoConfig) -> OnlineStore:
    if config.online_store.backend == "sqlite":
        return SQLiteOnlineStore(config.online_store)
    if config.online_store.backend == "redis":
        return RedisOnlineStore(config.online_store)
    raise ValueError(f"Unsupported online store backend: {config.online_store.backend}")


def build_provider(config: RepoConfig) -> InfraProvider:
    if config.provider != "local":
        raise ValueError(f"Unsupported provider: {config.provider}")
    offline = FileOfflineStore(config.offline_store)
    online = build_online_store(config)
    engine = LocalBatchEngine(offline, online, max_workers=config.batch_engine.max_workers)
    return PassthroughProvider(offline, online, engine)


def _as_definition_set(definitions: FeatureDefinitionSet | Iterable[Definition]) -> FeatureDefinitionSet:
    if isinstance(definitions, FeatureDefinitionSet):
        return definitions
    return FeatureDefinitionSet.from_objects(definitions)


class FeatureStore:
    """Facade bound to one project.

    Backends are chosen from ``config`` once, at construction, unless a
    registry or provider is injected directly.
    """

    def __init__(
        self,
        config: RepoConfig,
        *,
        registry: Optional[RegistryStore] = None,
        provider: Optional[InfraProvider] = None,
    ) -> None:
        self.config = config
        self.project = config.project
        self.registry = registry or build_registry(config.registry)
        self.provider = provider or build_provider(config)
        self._reader = CachedRegistryReader(self.registry, ttl_seconds=config.registry.cache_ttl_seconds)
        self._applier = ApplyOrchestrator(self.registry, self.provider)
        self._materializer = MaterializationOrchestrator(
            self.registry,
            self.provider,
            poll_interval_seconds=config.batch_engine.poll_interval_seconds,
        )

    def plan(
        self,
        definitions: FeatureDefinitionSet | Iterable[Definition],
        explicit_deletes: Iterable[DeleteTarget] = (),
        *,
        full_sync: bool = False,
        managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
    ) -> RegistryDiff:
        return self._applier.plan(
            self.project,
            _as_definition_set(definitions),
            explicit_deletes,
            full_sync=full_sync,
            managed_kinds=managed_kinds,
        )

    def apply(
        self,
        definitions: FeatureDefinitionSet | Iterable[Definition],
        explicit_deletes: Iterable[DeleteTarget] = (),
        *,
        full_sync: bool = False,
        managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
    ) -> ApplyResult:
        result = self._applier.apply(
            self.project,
            _as_definition_set(definitions),
            explicit_deletes,
            full_sync=full_sync,
            managed_kinds=managed_kinds,
        )
        if result.changed:
            self._reader.invalidate(self.project)
        return result

    def materialize(
        self,
        start_time: datetime,
        end_time: datetime,
        feature_views: Optional[Sequence[str]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> MaterializationReport:
        try:
            return self._materializer.materialize(
                self.project, start_time, end_time, feature_views, cancel_event=cancel_event
            )
        finally:
            self._reader.invalidate(self.project)

    def materialize_incremental(
        self,
        end_time: datetime,
        feature_views: Optional[Sequence[str]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> MaterializationReport:
        try:
            return self._materializer.materialize_incremental(
                self.project, end_time, feature_views, cancel_event=cancel_event
            )
        finally:
            self._reader.invalidate(self.project)

    def teardown(self) -> None:
        """Drop online resources of every registered view and forget the project."""

        with self.registry.lock(self.project):
            snapshot = self.registry.snapshot(self.project)
            self.provider.teardown_infra(
                self.project, snapshot.list_feature_views(), snapshot.list_entities()
            )
            self.registry.delete_project(self.project)
        self._reader.invalidate(self.project)
        _logger.info("Project torn down", project=self.project)

    def get_registry_snapshot(self) -> RegistrySnapshot:
        """Registry read accessor for the serving layer (cached per config)."""

        return self._reader.snapshot(self.project)

    def refresh_registry(self) -> RegistrySnapshot:
        return self._reader.refresh(self.project)

    def list_feature_views(self) -> List[FeatureView]:
        return self.get_registry_snapshot().list_feature_views()

    def get_feature_view(self, name: str) -> FeatureView:
        return self.get_registry_snapshot().get_feature_view(name)

    def get_online_features(
        self, feature_view: str, entity_rows: Sequence[Mapping[str, Any]]
    ) -> pd.DataFrame:
        snapshot = self.get_registry_snapshot()
        view = snapshot.get_feature_view(feature_view)
        join_keys = [snapshot.entities[name].join_key or name for name in view.entities]
        return self.provider.online_read(self.project, view, join_keys, entity_rows)

    def close(self) -> None:
        self.provider.close()
