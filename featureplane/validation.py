"""Referential integrity checks and schema inference run before apply."""

from __future__ import annotations

from collections import Counter
from typing import Callable, Dict, Iterable, Mapping, Sequence

from .definitions import (
    ALL_KINDS,
    DataSource,
    Entity,
    FeatureDefinitionSet,
    FeatureView,
    Field,
    ObjectKind,
    ObjectRef,
    ValueType,
)
from .diff import ChangeAction, RegistryDiff
from .errors import ValidationError
from .registry.base import RegistrySnapshot

__all__ = ["SchemaResolver", "resolve_definitions", "validate_projected_state"]

SchemaResolver = Callable[[DataSource], Mapping[str, ValueType]]


def resolve_definitions(
    definitions: FeatureDefinitionSet,
    snapshot: RegistrySnapshot,
    *,
    full_sync: bool,
    explicit_deletes: Sequence[ObjectRef] = (),
    schema_resolver: SchemaResolver | None = None,
    managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
) -> FeatureDefinitionSet:
    """Validate ``definitions`` and return them with unspecified types inferred.

    In partial mode references may point at objects already committed to the
    registry, except those named in ``explicit_deletes``. Full-sync mode only
    keeps registered objects of kinds outside ``managed_kinds`` visible, since
    every other undeclared object is about to be deleted.
    """

    _check_duplicates(definitions)
    deleted = set(explicit_deletes)
    for ref in sorted(definitions.refs() & deleted):
        raise ValidationError(
            f"{ref} is both declared and scheduled for deletion",
            ref=ref,
            rule="declared-and-deleted",
        )

    def visible(kind: ObjectKind) -> bool:
        return not full_sync or kind not in managed_kinds

    entities: Dict[str, Entity] = {}
    sources: Dict[str, DataSource] = {}
    if visible(ObjectKind.ENTITY):
        entities.update((n, e) for n, e in snapshot.entities.items() if e.ref not in deleted)
    if visible(ObjectKind.DATA_SOURCE):
        sources.update((n, s) for n, s in snapshot.data_sources.items() if s.ref not in deleted)
    entities.update((e.name, e) for e in definitions.entities)
    sources.update((s.name, s) for s in definitions.data_sources)

    for view in definitions.feature_views:
        _check_feature_view(view, entities, sources)

    schemas = _SchemaCache(schema_resolver)
    views = tuple(
        _infer_features(view, sources[view.source], schemas) for view in definitions.feature_views
    )
    declared_entities = tuple(
        _infer_entity(entity, views, sources, schemas) for entity in definitions.entities
    )
    return FeatureDefinitionSet(
        entities=declared_entities,
        data_sources=definitions.data_sources,
        feature_views=views,
    )


def validate_projected_state(snapshot: RegistrySnapshot, diff: RegistryDiff) -> None:
    """Ensure no surviving feature view references a removed entity or source."""

    entities = set(snapshot.entities)
    sources = set(snapshot.data_sources)
    views: Dict[str, FeatureView] = dict(snapshot.feature_views)
    names = {ObjectKind.ENTITY: entities, ObjectKind.DATA_SOURCE: sources}
    for change in diff.changes:
        kind, name = change.ref.kind, change.ref.name
        if kind is ObjectKind.FEATURE_VIEW:
            if change.action is ChangeAction.DELETE:
                views.pop(name, None)
            else:
                views[name] = change.definition  # type: ignore[assignment]
        elif change.action is ChangeAction.DELETE:
            names[kind].discard(name)
        else:
            names[kind].add(name)

    for view in views.values():
        for entity in view.entities:
            if entity not in entities:
                raise ValidationError(
                    f"Feature view '{view.name}' references entity '{entity}' which would be deleted",
                    ref=view.ref,
                    rule="dangling-reference",
                    related=ObjectRef(ObjectKind.ENTITY, entity),
                )
        if view.source not in sources:
            raise ValidationError(
                f"Feature view '{view.name}' references data source '{view.source}' which would be deleted",
                ref=view.ref,
                rule="dangling-reference",
                related=ObjectRef(ObjectKind.DATA_SOURCE, view.source),
            )


def _check_duplicates(definitions: FeatureDefinitionSet) -> None:
    for kind in ALL_KINDS:
        counts = Counter(obj.name for obj in definitions.of_kind(kind))
        for name, count in sorted(counts.items()):
            if count > 1:
                raise ValidationError(
                    f"{kind.value} '{name}' is declared {count} times",
                    ref=ObjectRef(kind, name),
                    rule="unique-name",
                )


def _check_feature_view(
    view: FeatureView, entities: Mapping[str, Entity], sources: Mapping[str, DataSource]
) -> None:
    for entity in view.entities:
        if entity not in entities:
            raise ValidationError(
                f"Feature view '{view.name}' references unknown entity '{entity}'",
                ref=view.ref,
                rule="entity-exists",
                related=ObjectRef(ObjectKind.ENTITY, entity),
            )
    source = sources.get(view.source)
    if source is None:
        raise ValidationError(
            f"Feature view '{view.name}' references unknown data source '{view.source}'",
            ref=view.ref,
            rule="source-exists",
            related=ObjectRef(ObjectKind.DATA_SOURCE, view.source),
        )
    if view.ttl is not None and view.ttl.total_seconds() < 0:
        raise ValidationError(
            f"Feature view '{view.name}' has a negative ttl", ref=view.ref, rule="ttl"
        )
    counts = Counter(view.feature_names)
    for name, count in sorted(counts.items()):
        if count > 1:
            raise ValidationError(
                f"Feature '{name}' is declared {count} times in feature view '{view.name}'",
                ref=view.ref,
                rule="unique-feature",
            )
    reserved = {entities[e].join_key for e in view.entities} | {source.timestamp_field}
    if source.created_timestamp_column:
        reserved.add(source.created_timestamp_column)
    for name in view.feature_names:
        if name in reserved:
            raise ValidationError(
                f"Feature '{name}' in feature view '{view.name}' collides with a key or timestamp column",
                ref=view.ref,
                rule="reserved-column",
            )


class _SchemaCache:
    def __init__(self, resolver: SchemaResolver | None) -> None:
        self._resolver = resolver
        self._schemas: Dict[str, Mapping[str, ValueType]] = {}

    def get(self, source: DataSource, requester: ObjectRef) -> Mapping[str, ValueType]:
        if source.columns:
            return source.columns
        if source.name in self._schemas:
            return self._schemas[source.name]
        if self._resolver is None:
            raise ValidationError(
                f"Cannot infer types for {requester}: data source '{source.name}' declares no columns",
                ref=requester,
                rule="schema-inference",
                related=source.ref,
            )
        try:
            schema = dict(self._resolver(source))
        except Exception as exc:
            raise ValidationError(
                f"Cannot read schema of data source '{source.name}': {exc}",
                ref=requester,
                rule="schema-inference",
                related=source.ref,
            ) from exc
        self._schemas[source.name] = schema
        return schema


def _infer_features(view: FeatureView, source: DataSource, schemas: _SchemaCache) -> FeatureView:
    if all(feature.dtype is not None for feature in view.features):
        return view
    schema = schemas.get(source, view.ref)
    features = []
    for feature in view.features:
        if feature.dtype is not None:
            features.append(feature)
            continue
        dtype = schema.get(feature.name)
        if dtype is None:
            raise ValidationError(
                f"Feature '{feature.name}' of feature view '{view.name}' is not a column of "
                f"data source '{source.name}'",
                ref=view.ref,
                rule="schema-inference",
                related=source.ref,
            )
        features.append(Field(name=feature.name, dtype=dtype))
    return view.model_copy(update={"features": tuple(features)})


def _infer_entity(
    entity: Entity,
    views: Iterable[FeatureView],
    sources: Mapping[str, DataSource],
    schemas: _SchemaCache,
) -> Entity:
    if entity.value_type is not None:
        return entity
    for view in views:
        if entity.name not in view.entities:
            continue
        try:
            schema = schemas.get(sources[view.source], entity.ref)
        except ValidationError:
            continue
        value_type = schema.get(entity.join_key or entity.name)
        if value_type is not None:
            return entity.model_copy(update={"value_type": value_type})
    return entity
