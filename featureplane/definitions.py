"""Immutable feature definitions declared by callers.

Definitions are frozen pydantic models, so two declarations compare equal
exactly when all of their fields do. The diff engine relies on that value
equality to decide whether a registered object changed.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import ClassVar, Dict, Iterable, Iterator, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field as PydanticField, field_validator, model_validator

__all__ = [
    "ALL_KINDS",
    "DataSource",
    "Definition",
    "Entity",
    "FeatureDefinitionSet",
    "FeatureView",
    "Field",
    "ObjectKind",
    "ObjectRef",
    "ValueType",
]


_NAME = re.compile(r"^[A-Za-z0-9_]+$")


class ValueType(str, Enum):
    STRING = "string"
    BYTES = "bytes"
    INT32 = "int32"
    INT64 = "int64"
    FLOAT32 = "float32"
    FLOAT64 = "float64"
    BOOL = "bool"
    UNIX_TIMESTAMP = "unix_timestamp"


class ObjectKind(str, Enum):
    """Kinds of registry objects, in dependency order."""

    ENTITY = "entity"
    DATA_SOURCE = "data_source"
    FEATURE_VIEW = "feature_view"


ALL_KINDS: Tuple[ObjectKind, ...] = (
    ObjectKind.ENTITY,
    ObjectKind.DATA_SOURCE,
    ObjectKind.FEATURE_VIEW,
)


@dataclass(frozen=True, slots=True, order=True)
class ObjectRef:
    kind: ObjectKind
    name: str

    def __str__(self) -> str:
        return f"{self.kind.value} '{self.name}'"


class _Definition(BaseModel):
    kind: ClassVar[ObjectKind]

    model_config = {"frozen": True, "extra": "forbid"}

    name: str = PydanticField(..., min_length=1)
    description: str = ""
    tags: Dict[str, str] = PydanticField(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _plain_name(cls, value: str) -> str:
        if not _NAME.match(value):
            raise ValueError(f"Name '{value}' may only contain letters, digits and underscores")
        return value

    @property
    def ref(self) -> ObjectRef:
        return ObjectRef(self.kind, self.name)


class Entity(_Definition):
    """Key identifying the subject of a feature (a user, a driver, a device)."""

    kind: ClassVar[ObjectKind] = ObjectKind.ENTITY

    join_key: Optional[str] = None
    value_type: Optional[ValueType] = None

    @model_validator(mode="before")
    @classmethod
    def _default_join_key(cls, data):
        if isinstance(data, dict) and not data.get("join_key"):
            data = {**data, "join_key": data.get("name")}
        return data


class DataSource(_Definition):
    """File-based historical source of feature rows.

    ``path`` is resolved against the offline store root unless absolute.
    ``columns`` optionally declares the source schema; when omitted it is read
    from the files themselves during apply.
    """

    kind: ClassVar[ObjectKind] = ObjectKind.DATA_SOURCE

    path: str
    timestamp_field: str
    created_timestamp_column: Optional[str] = None
    file_format: Literal["parquet", "csv"] = "parquet"
    columns: Dict[str, ValueType] = PydanticField(default_factory=dict)


class Field(BaseModel):
    model_config = {"frozen": True, "extra": "forbid"}

    name: str = PydanticField(..., min_length=1)
    dtype: Optional[ValueType] = None


class FeatureView(_Definition):
    """Named group of features keyed by entities and backed by one data source."""

    kind: ClassVar[ObjectKind] = ObjectKind.FEATURE_VIEW

    entities: Tuple[str, ...] = ()
    features: Tuple[Field, ...] = ()
    source: str
    ttl: Optional[timedelta] = None
    online: bool = True

    @property
    def feature_names(self) -> list[str]:
        return [feature.name for feature in self.features]


Definition = Union[Entity, DataSource, FeatureView]


@dataclass(frozen=True)
class FeatureDefinitionSet:
    """Declared objects for one project, immutable within a single call."""

    entities: Tuple[Entity, ...] = ()
    data_sources: Tuple[DataSource, ...] = ()
    feature_views: Tuple[FeatureView, ...] = field(default=())

    @classmethod
    def from_objects(cls, objects: Iterable[Definition]) -> "FeatureDefinitionSet":
        entities: list[Entity] = []
        sources: list[DataSource] = []
        views: list[FeatureView] = []
        for obj in objects:
            if isinstance(obj, Entity):
                entities.append(obj)
            elif isinstance(obj, DataSource):
                sources.append(obj)
            elif isinstance(obj, FeatureView):
                views.append(obj)
            else:
                raise TypeError(f"Unsupported definition type: {type(obj).__name__}")
        return cls(tuple(entities), tuple(sources), tuple(views))

    def of_kind(self, kind: ObjectKind) -> Tuple[Definition, ...]:
        if kind is ObjectKind.ENTITY:
            return self.entities
        if kind is ObjectKind.DATA_SOURCE:
            return self.data_sources
        return self.feature_views

    def objects(self) -> Iterator[Definition]:
        for kind in ALL_KINDS:
            yield from self.of_kind(kind)

    def refs(self) -> set[ObjectRef]:
        return {obj.ref for obj in self.objects()}
