"""Pluggable infrastructure: providers, batch engines, offline and online stores."""

from .base import BatchEngine, InfraProvider, JobStatus, MaterializationJob, MaterializationTask
from .local_engine import LocalBatchEngine, LocalMaterializationJob
from .offline import FileOfflineStore
from .online import OnlineStore, RedisOnlineStore, SQLiteOnlineStore
from .passthrough import PassthroughProvider

__all__ = [
    "BatchEngine",
    "FileOfflineStore",
    "InfraProvider",
    "JobStatus",
    "LocalBatchEngine",
    "LocalMaterializationJob",
    "MaterializationJob",
    "MaterializationTask",
    "OnlineStore",
    "PassthroughProvider",
    "RedisOnlineStore",
    "SQLiteOnlineStore",
]
