"""Provider forwarding to configured offline/online stores and batch engine."""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import pandas as pd

from ..definitions import DataSource, Entity, FeatureView, ValueType
from ..registry.base import RegistrySnapshot
from ..utils.logging import get_logger
from .base import BatchEngine, InfraProvider, MaterializationJob, MaterializationTask
from .offline import FileOfflineStore
from .online import OnlineStore

__all__ = ["PassthroughProvider"]

_logger = get_logger(__name__)


class PassthroughProvider(InfraProvider):
    """Provider that delegates every concern to an injected backend."""

    def __init__(
        self,
        offline_store: FileOfflineStore,
        online_store: OnlineStore,
        batch_engine: BatchEngine,
    ) -> None:
        self.offline_store = offline_store
        self.online_store = online_store
        self.batch_engine = batch_engine

    def update_infra(
        self,
        project: str,
        tables_to_delete: Sequence[FeatureView],
        tables_to_keep: Sequence[FeatureView],
        entities_to_delete: Sequence[Entity],
        entities_to_keep: Sequence[Entity],
        full_sync: bool,
    ) -> None:
        if not (tables_to_delete or tables_to_keep):
            return
        keep = [view for view in tables_to_keep if view.online]
        _logger.info(
            "Updating online store tables",
            project=project,
            create=[view.name for view in keep],
            drop=[view.name for view in tables_to_delete],
            full_sync=full_sync,
        )
        self.online_store.update(project, tables_to_delete=tables_to_delete, tables_to_keep=keep)

    def teardown_infra(
        self, project: str, tables: Sequence[FeatureView], entities: Sequence[Entity]
    ) -> None:
        _logger.info("Tearing down online store tables", project=project, tables=[t.name for t in tables])
        self.online_store.teardown(project, tables)

    def materialize(
        self, registry: RegistrySnapshot, tasks: Sequence[MaterializationTask]
    ) -> list[MaterializationJob]:
        return self.batch_engine.materialize(registry, tasks)

    def source_schema(self, source: DataSource) -> Mapping[str, ValueType]:
        return self.offline_store.source_schema(source)

    def online_read(
        self,
        project: str,
        feature_view: FeatureView,
        join_keys: Sequence[str],
        entity_rows: Sequence[Mapping[str, Any]],
    ) -> pd.DataFrame:
        return self.online_store.read(project, feature_view, join_keys, entity_rows)

    def close(self) -> None:
        self.batch_engine.close()
        self.online_store.close()
