"""Configuration models for the feature store control plane."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_PROJECT_NAME = re.compile(r"^[A-Za-z0-9_]+$")


class OfflineStoreConfig(BaseModel):
    """Configuration for the historical store read during materialization."""

    type: Literal["file"] = "file"
    base_path: Path = Field(..., description="Root directory that data source paths are resolved against.")


class OnlineStoreConfig(BaseModel):
    """Configuration for online feature serving stores."""

    backend: Literal["redis", "sqlite"]
    sqlite_path: Optional[Path] = Field(None, description="Path to the SQLite database used for online serving.")
    redis_host: str = Field("localhost", description="Redis host name.")
    redis_port: int = Field(6379, description="Redis port.")
    redis_db: int = Field(0, description="Redis database index.")
    redis_username: Optional[str] = Field(None, description="Optional Redis username.")
    redis_password: Optional[str] = Field(None, description="Optional Redis password.")
    redis_ssl: bool = Field(False, description="Whether to use TLS when connecting to Redis.")
    key_ttl_seconds: Optional[int] = Field(
        None,
        description="Optional TTL in seconds applied to materialized rows in Redis.",
    )

    @model_validator(mode="after")
    def _validate_backend(self) -> "OnlineStoreConfig":
        if self.backend == "sqlite" and self.sqlite_path is None:
            raise ValueError("sqlite_path must be provided when backend is 'sqlite'")
        if self.backend == "redis" and self.sqlite_path is not None:
            raise ValueError("sqlite_path should not be provided when backend is 'redis'")
        return self

    @field_validator("key_ttl_seconds")
    @classmethod
    def _ttl_positive(cls, ttl: Optional[int]) -> Optional[int]:
        if ttl is not None and ttl <= 0:
            raise ValueError("key_ttl_seconds must be positive when provided")
        return ttl


class RegistryConfig(BaseModel):
    """Location and caching policy of the registry."""

    registry_type: Literal["memory", "file", "sql"] = "file"
    path: Optional[Path] = Field(None, description="JSON document used by the file registry.")
    url: Optional[str] = Field(None, description="SQLAlchemy database URL used by the sql registry.")
    cache_ttl_seconds: float = Field(
        0.0,
        ge=0.0,
        description="How long registry snapshots served to readers may be reused; 0 disables caching.",
    )

    @model_validator(mode="after")
    def _validate_location(self) -> "RegistryConfig":
        if self.registry_type == "file" and self.path is None:
            raise ValueError("path must be provided when registry_type is 'file'")
        if self.registry_type == "sql" and not self.url:
            raise ValueError("url must be provided when registry_type is 'sql'")
        return self


class BatchEngineConfig(BaseModel):
    """Settings for the engine executing materialization jobs."""

    type: Literal["local"] = "local"
    max_workers: int = Field(4, gt=0, description="Concurrent materialization jobs.")
    poll_interval_seconds: float = Field(
        1.0, gt=0.0, description="Delay between job status polls."
    )


class RepoConfig(BaseModel):
    """Resolved per-project configuration handed over by the CLI layer."""

    project: str
    provider: Literal["local"] = "local"
    registry: RegistryConfig
    offline_store: OfflineStoreConfig
    online_store: OnlineStoreConfig
    batch_engine: BatchEngineConfig = Field(default_factory=BatchEngineConfig)

    @field_validator("project")
    @classmethod
    def _project_name(cls, value: str) -> str:
        if not _PROJECT_NAME.match(value):
            raise ValueError(
                f"Project name '{value}' may only contain letters, digits and underscores"
            )
        return value


class LoggingSettings(BaseSettings):
    """Logging options read from ``FEATUREPLANE_LOG_*`` environment variables."""

    model_config = SettingsConfigDict(env_prefix="FEATUREPLANE_LOG_", extra="ignore")

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    json_format: bool = True


__all__ = [
    "BatchEngineConfig",
    "LoggingSettings",
    "OfflineStoreConfig",
    "OnlineStoreConfig",
    "RegistryConfig",
    "RepoConfig",
]
