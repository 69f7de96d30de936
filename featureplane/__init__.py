"""Reconciliation and materialization engine of a feature-store control plane."""

from .apply import ApplyOrchestrator, ApplyResult
from .config import (
    BatchEngineConfig,
    LoggingSettings,
    OfflineStoreConfig,
    OnlineStoreConfig,
    RegistryConfig,
    RepoConfig,
)
from .definitions import (
    DataSource,
    Entity,
    FeatureDefinitionSet,
    FeatureView,
    Field,
    ObjectKind,
    ObjectRef,
    ValueType,
)
from .diff import ChangeAction, ObjectChange, RegistryDiff, compute_diff
from .errors import (
    ConcurrentModificationError,
    FeaturePlaneError,
    InconsistencyError,
    InvalidRangeError,
    MaterializationError,
    ObjectNotFoundError,
    ProviderError,
    ValidationError,
)
from .materialization import MaterializationOrchestrator, MaterializationReport
from .registry import MaterializationInterval, RegistrySnapshot
from .store import FeatureStore

__all__ = [
    "ApplyOrchestrator",
    "ApplyResult",
    "BatchEngineConfig",
    "ChangeAction",
    "ConcurrentModificationError",
    "DataSource",
    "Entity",
    "FeatureDefinitionSet",
    "FeaturePlaneError",
    "FeatureStore",
    "FeatureView",
    "Field",
    "InconsistencyError",
    "InvalidRangeError",
    "LoggingSettings",
    "MaterializationError",
    "MaterializationInterval",
    "MaterializationOrchestrator",
    "MaterializationReport",
    "ObjectChange",
    "ObjectKind",
    "ObjectNotFoundError",
    "ObjectRef",
    "OfflineStoreConfig",
    "OnlineStoreConfig",
    "ProviderError",
    "RegistryConfig",
    "RegistryDiff",
    "RegistrySnapshot",
    "RepoConfig",
    "ValidationError",
    "ValueType",
    "compute_diff",
]
