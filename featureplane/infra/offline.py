"""Offline store reading historical feature rows from files."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Sequence

import pandas as pd
import pyarrow as pa
import pyarrow.dataset as ds
from pandas.api import types as pd_types

from ..config import OfflineStoreConfig
from ..definitions import DataSource, ValueType

__all__ = ["FileOfflineStore", "arrow_to_value_type", "pandas_to_value_type"]


def _utc_timestamp(value: datetime) -> pd.Timestamp:
    stamp = pd.Timestamp(value)
    if stamp.tzinfo is None:
        return stamp.tz_localize("UTC")
    return stamp.tz_convert("UTC")


def arrow_to_value_type(arrow_type: pa.DataType) -> Optional[ValueType]:
    if pa.types.is_string(arrow_type) or pa.types.is_large_string(arrow_type):
        return ValueType.STRING
    if pa.types.is_binary(arrow_type) or pa.types.is_large_binary(arrow_type):
        return ValueType.BYTES
    if pa.types.is_boolean(arrow_type):
        return ValueType.BOOL
    if pa.types.is_int8(arrow_type) or pa.types.is_int16(arrow_type) or pa.types.is_int32(arrow_type):
        return ValueType.INT32
    if pa.types.is_integer(arrow_type):
        return ValueType.INT64
    if pa.types.is_float16(arrow_type) or pa.types.is_float32(arrow_type):
        return ValueType.FLOAT32
    if pa.types.is_floating(arrow_type):
        return ValueType.FLOAT64
    if pa.types.is_timestamp(arrow_type) or pa.types.is_date(arrow_type):
        return ValueType.UNIX_TIMESTAMP
    if pa.types.is_dictionary(arrow_type):
        return arrow_to_value_type(arrow_type.value_type)
    return None


def pandas_to_value_type(dtype) -> Optional[ValueType]:
    if pd_types.is_bool_dtype(dtype):
        return ValueType.BOOL
    if pd_types.is_integer_dtype(dtype):
        return ValueType.INT64
    if pd_types.is_float_dtype(dtype):
        return ValueType.FLOAT64
    if pd_types.is_datetime64_any_dtype(dtype):
        return ValueType.UNIX_TIMESTAMP
    if pd_types.is_object_dtype(dtype) or pd_types.is_string_dtype(dtype):
        return ValueType.STRING
    return None


class FileOfflineStore:
    """Reads parquet (file or directory dataset) and csv data sources."""

    def __init__(self, config: OfflineStoreConfig) -> None:
        self.config = config

    def resolve_path(self, source: DataSource) -> Path:
        path = Path(source.path).expanduser()
        if not path.is_absolute():
            path = self.config.base_path / path
        return path

    def source_schema(self, source: DataSource) -> Dict[str, ValueType]:
        path = self.resolve_path(source)
        if not path.exists():
            raise FileNotFoundError(f"Data source '{source.name}' not found at {path}")
        if source.file_format == "csv":
            sample = pd.read_csv(path, nrows=100)
            types = {column: pandas_to_value_type(dtype) for column, dtype in sample.dtypes.items()}
        else:
            schema = ds.dataset(path, format="parquet").schema
            types = {f.name: arrow_to_value_type(f.type) for f in schema}
        return {column: value for column, value in types.items() if value is not None}

    def pull_latest(
        self,
        source: DataSource,
        join_keys: Sequence[str],
        feature_names: Sequence[str],
        start_time: datetime,
        end_time: datetime,
    ) -> pd.DataFrame:
        """Return the newest row per entity key with event time in ``[start_time, end_time)``.

        Rows sharing an event timestamp are ordered by the created timestamp
        column when the source declares one.
        """

        ts_column = source.timestamp_field
        order_columns = [ts_column]
        if source.created_timestamp_column:
            order_columns.append(source.created_timestamp_column)
        columns = list(dict.fromkeys([*join_keys, *feature_names, *order_columns]))

        frame = self._read(source, columns)
        if frame.empty:
            return frame
        for column in order_columns:
            frame[column] = pd.to_datetime(frame[column], utc=True, errors="coerce")
        start, end = _utc_timestamp(start_time), _utc_timestamp(end_time)
        window = frame[(frame[ts_column] >= start) & (frame[ts_column] < end)]
        if window.empty:
            return window.reset_index(drop=True)
        ordered = window.sort_values(by=order_columns, kind="mergesort")
        latest = ordered.drop_duplicates(subset=list(join_keys), keep="last")
        return latest.reset_index(drop=True)

    def _read(self, source: DataSource, columns: Sequence[str]) -> pd.DataFrame:
        path = self.resolve_path(source)
        if not path.exists():
            raise FileNotFoundError(f"Data source '{source.name}' not found at {path}")
        if source.file_format == "csv":
            return pd.read_csv(path, usecols=list(columns))
        dataset = ds.dataset(path, format="parquet")
        return dataset.to_table(columns=list(columns)).to_pandas()
