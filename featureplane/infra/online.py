"""Online feature store implementations."""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

import pandas as pd

from ..config import OnlineStoreConfig
from ..definitions import FeatureView

if TYPE_CHECKING:  # pragma: no cover
    from redis import Redis

__all__ = ["OnlineStore", "RedisOnlineStore", "SQLiteOnlineStore", "entity_key"]

EVENT_TIMESTAMP = "event_timestamp"


def entity_key(row: Mapping[str, Any], join_keys: Sequence[str]) -> str:
    """Deterministic key of an entity row."""

    return "|".join(str(row[key]) for key in join_keys)


def _micros(value: Any) -> int:
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        stamp = stamp.tz_localize("UTC")
    return int(stamp.value // 1000)


def _encode_rows(
    frame: pd.DataFrame, join_keys: Sequence[str], feature_names: Sequence[str], timestamp_field: str
) -> List[tuple[str, str, int]]:
    rows = []
    for record in frame.to_dict(orient="records"):
        event_ts = pd.Timestamp(record[timestamp_field])
        payload = {name: record.get(name) for name in feature_names}
        payload[EVENT_TIMESTAMP] = event_ts.isoformat()
        rows.append((entity_key(record, join_keys), json.dumps(payload, default=str), _micros(event_ts)))
    return rows


def _decode_rows(
    entity_rows: Sequence[Mapping[str, Any]],
    join_keys: Sequence[str],
    feature_names: Sequence[str],
    payloads: Mapping[str, str],
) -> pd.DataFrame:
    records = []
    for row in entity_rows:
        record: Dict[str, Any] = {key: row[key] for key in join_keys}
        stored = payloads.get(entity_key(row, join_keys))
        values = json.loads(stored) if stored else {}
        for name in feature_names:
            record[name] = values.get(name)
        record[EVENT_TIMESTAMP] = pd.to_datetime(values.get(EVENT_TIMESTAMP), utc=True)
        records.append(record)
    return pd.DataFrame(records, columns=[*join_keys, *feature_names, EVENT_TIMESTAMP])


class OnlineStore(ABC):
    """Latest feature values per entity key, one table per feature view."""

    def __init__(self, config: OnlineStoreConfig) -> None:
        self.config = config

    @abstractmethod
    def update(
        self, project: str, tables_to_delete: Sequence[FeatureView], tables_to_keep: Sequence[FeatureView]
    ) -> None:
        """Create tables for kept views and drop those of deleted views."""

    def teardown(self, project: str, tables: Sequence[FeatureView]) -> None:
        self.update(project, tables_to_delete=tables, tables_to_keep=())

    @abstractmethod
    def write(
        self,
        project: str,
        feature_view: FeatureView,
        frame: pd.DataFrame,
        join_keys: Sequence[str],
        timestamp_field: str,
    ) -> int:
        """Upsert rows keyed by entity; older event timestamps never replace newer ones."""

    @abstractmethod
    def read(
        self,
        project: str,
        feature_view: FeatureView,
        join_keys: Sequence[str],
        entity_rows: Sequence[Mapping[str, Any]],
    ) -> pd.DataFrame:
        """Return one row per requested entity, with nulls for unknown keys."""

    def close(self) -> None:  # pragma: no cover - default no-op
        ...


class SQLiteOnlineStore(OnlineStore):
    """SQLite-backed online store suited for lightweight serving."""

    def __init__(self, config: OnlineStoreConfig) -> None:
        if config.backend != "sqlite":
            raise ValueError("SQLiteOnlineStore requires backend='sqlite'")
        if config.sqlite_path is None:
            raise ValueError("sqlite_path must be configured for SQLiteOnlineStore")
        super().__init__(config)
        self._db_path = Path(config.sqlite_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = sqlite3.connect(self._db_path, check_same_thread=False)
        self._connection.execute("PRAGMA journal_mode=WAL;")
        self._lock = threading.Lock()

    @staticmethod
    def _table_name(project: str, feature_view: str) -> str:
        # ":" never occurs in project or definition names.
        return f"{project}:{feature_view}"

    @classmethod
    def _table(cls, project: str, feature_view: str) -> str:
        return f'"{cls._table_name(project, feature_view)}"'

    def update(
        self, project: str, tables_to_delete: Sequence[FeatureView], tables_to_keep: Sequence[FeatureView]
    ) -> None:
        with self._lock, self._connection:
            for view in tables_to_delete:
                self._connection.execute(f"DROP TABLE IF EXISTS {self._table(project, view.name)}")
            for view in tables_to_keep:
                self._connection.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self._table(project, view.name)} (
                        entity_key TEXT PRIMARY KEY,
                        payload TEXT NOT NULL,
                        event_ts INTEGER NOT NULL
                    )
                    """
                )

    def write(
        self,
        project: str,
        feature_view: FeatureView,
        frame: pd.DataFrame,
        join_keys: Sequence[str],
        timestamp_field: str,
    ) -> int:
        if frame.empty:
            return 0
        table = self._table(project, feature_view.name)
        rows = _encode_rows(frame, join_keys, feature_view.feature_names, timestamp_field)
        with self._lock, self._connection:
            self._connection.executemany(
                f"""
                INSERT INTO {table} (entity_key, payload, event_ts)
                VALUES (?, ?, ?)
                ON CONFLICT(entity_key) DO UPDATE SET
                    payload=excluded.payload,
                    event_ts=excluded.event_ts
                WHERE excluded.event_ts >= {table}.event_ts
                """,
                rows,
            )
        return len(rows)

    def read(
        self,
        project: str,
        feature_view: FeatureView,
        join_keys: Sequence[str],
        entity_rows: Sequence[Mapping[str, Any]],
    ) -> pd.DataFrame:
        table = self._table(project, feature_view.name)
        keys = [entity_key(row, join_keys) for row in entity_rows]
        payloads: Dict[str, str] = {}
        if keys and self._table_exists(project, feature_view.name):
            placeholders = ",".join("?" for _ in keys)
            with self._lock:
                cursor = self._connection.execute(
                    f"SELECT entity_key, payload FROM {table} WHERE entity_key IN ({placeholders})",
                    keys,
                )
                payloads = dict(cursor.fetchall())
        return _decode_rows(entity_rows, join_keys, feature_view.feature_names, payloads)

    def table_exists(self, project: str, feature_view: str) -> bool:
        return self._table_exists(project, feature_view)

    def _table_exists(self, project: str, feature_view: str) -> bool:
        with self._lock:
            cursor = self._connection.execute(
                "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
                (self._table_name(project, feature_view),),
            )
            return cursor.fetchone() is not None

    def close(self) -> None:
        with self._lock:
            self._connection.close()


class RedisOnlineStore(OnlineStore):
    """Redis-backed online store optimised for low-latency feature serving."""

    def __init__(self, config: OnlineStoreConfig, client: Optional["Redis"] = None) -> None:
        if config.backend != "redis":
            raise ValueError("RedisOnlineStore requires backend='redis'")
        super().__init__(config)
        if client is not None:
            self._client = client
        else:  # pragma: no cover - exercised against a live server
            from redis import Redis

            self._client = Redis(
                host=config.redis_host,
                port=config.redis_port,
                db=config.redis_db,
                username=config.redis_username,
                password=config.redis_password,
                ssl=config.redis_ssl,
                decode_responses=True,
            )
        self._ttl_seconds = config.key_ttl_seconds

    @staticmethod
    def _key(project: str, feature_view: str, key: str) -> str:
        return f"featureplane:{project}:{feature_view}:{key}"

    def update(
        self, project: str, tables_to_delete: Sequence[FeatureView], tables_to_keep: Sequence[FeatureView]
    ) -> None:
        for view in tables_to_delete:
            keys = list(self._client.scan_iter(match=self._key(project, view.name, "*")))
            if keys:
                self._client.delete(*keys)

    def write(
        self,
        project: str,
        feature_view: FeatureView,
        frame: pd.DataFrame,
        join_keys: Sequence[str],
        timestamp_field: str,
    ) -> int:
        if frame.empty:
            return 0
        rows = _encode_rows(frame, join_keys, feature_view.feature_names, timestamp_field)
        keys = [self._key(project, feature_view.name, key) for key, _, _ in rows]
        lookup = self._client.pipeline()
        for key in keys:
            lookup.hget(key, "event_ts")
        existing = lookup.execute()

        pipeline = self._client.pipeline()
        written = 0
        for key, (_, payload, event_ts), current in zip(keys, rows, existing, strict=True):
            if current is not None and int(current) > event_ts:
                continue
            pipeline.hset(key, mapping={"payload": payload, "event_ts": event_ts})
            if self._ttl_seconds:
                pipeline.expire(key, int(self._ttl_seconds))
            written += 1
        pipeline.execute()
        return written

    def read(
        self,
        project: str,
        feature_view: FeatureView,
        join_keys: Sequence[str],
        entity_rows: Sequence[Mapping[str, Any]],
    ) -> pd.DataFrame:
        keys = [entity_key(row, join_keys) for row in entity_rows]
        pipeline = self._client.pipeline()
        for key in keys:
            pipeline.hget(self._key(project, feature_view.name, key), "payload")
        payloads = {key: value for key, value in zip(keys, pipeline.execute(), strict=True) if value}
        return _decode_rows(entity_rows, join_keys, feature_view.feature_names, payloads)
