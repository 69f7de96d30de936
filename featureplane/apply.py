"""Reconcile declared definitions with the registry and online infrastructure."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Sequence

from .definitions import (
    ALL_KINDS,
    Definition,
    Entity,
    FeatureDefinitionSet,
    FeatureView,
    ObjectKind,
    ObjectRef,
)
from .diff import ChangeAction, RegistryDiff, compute_diff
from .errors import FeaturePlaneError, InconsistencyError, ProviderError
from .infra.base import InfraProvider
from .registry.base import RegistrySnapshot, RegistryStore
from .utils.logging import get_logger
from .validation import resolve_definitions, validate_projected_state

__all__ = ["ApplyOrchestrator", "ApplyResult"]

_logger = get_logger(__name__)

DeleteTarget = Definition | ObjectRef


@dataclass(frozen=True)
class ApplyResult:
    diff: RegistryDiff
    version: int
    changed: bool


class ApplyOrchestrator:
    """Drive validation, diffing, infra updates and the registry commit.

    One :meth:`apply` call is strictly sequential and holds the project lock
    throughout. A failure before the commit leaves the registry untouched, so
    retrying the same call is always safe.
    """

    def __init__(self, registry: RegistryStore, provider: InfraProvider) -> None:
        self._registry = registry
        self._provider = provider

    def plan(
        self,
        project: str,
        definitions: FeatureDefinitionSet,
        explicit_deletes: Iterable[DeleteTarget] = (),
        *,
        full_sync: bool = False,
        managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
    ) -> RegistryDiff:
        """Return the changes :meth:`apply` would make, without side effects."""

        snapshot = self._registry.snapshot(project)
        return self._compute(snapshot, definitions, list(explicit_deletes), full_sync, managed_kinds)

    def apply(
        self,
        project: str,
        definitions: FeatureDefinitionSet,
        explicit_deletes: Iterable[DeleteTarget] = (),
        *,
        full_sync: bool = False,
        managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
    ) -> ApplyResult:
        deletes = list(explicit_deletes)
        log = _logger.bind(project=project)
        with log.operation("apply", full_sync=full_sync) as op, self._registry.lock(project):
            snapshot = self._registry.snapshot(project)
            diff = self._compute(snapshot, definitions, deletes, full_sync, managed_kinds)
            op["changes"] = len(diff.changes)
            if diff.is_empty:
                op["status"] = "unchanged"
                return ApplyResult(diff=diff, version=snapshot.version, changed=False)

            transaction = self._registry.begin(snapshot)
            for definition in diff.to_apply:
                transaction.upsert(definition)
            for definition in diff.to_delete:
                transaction.delete(definition.ref)
            self._registry.check(transaction)

            self._update_infra(project, diff, full_sync)

            try:
                committed = self._registry.commit(transaction)
            except Exception as exc:
                log.critical(
                    "Registry commit failed after infrastructure was updated",
                    changes=diff.render(),
                    error_type=type(exc).__name__,
                )
                raise InconsistencyError(
                    f"Online infrastructure for project '{project}' was updated but the registry "
                    f"commit failed: {exc}",
                    detail={"project": project, "changes": [str(c.ref) for c in diff.changes]},
                ) from exc
            op["version"] = committed.version
            return ApplyResult(diff=diff, version=committed.version, changed=True)

    def _compute(
        self,
        snapshot: RegistrySnapshot,
        definitions: FeatureDefinitionSet,
        explicit_deletes: Sequence[DeleteTarget],
        full_sync: bool,
        managed_kinds: Sequence[ObjectKind],
    ) -> RegistryDiff:
        delete_refs = [_as_ref(target) for target in explicit_deletes]
        resolved = resolve_definitions(
            definitions,
            snapshot,
            full_sync=full_sync,
            explicit_deletes=delete_refs,
            schema_resolver=self._provider.source_schema,
            managed_kinds=managed_kinds,
        )
        diff = compute_diff(resolved, snapshot, full_sync=full_sync, managed_kinds=managed_kinds)
        registered = []
        for ref in delete_refs:
            current = snapshot.get(ref)
            if current is None:
                _logger.warning(
                    "Ignoring deletion of unregistered object", project=snapshot.project, object=str(ref)
                )
                continue
            registered.append(current)
        diff.merge_deletes(registered)
        validate_projected_state(snapshot, diff)
        return diff

    def _update_infra(self, project: str, diff: RegistryDiff, full_sync: bool) -> None:
        tables_to_keep = diff.of_kind(ObjectKind.FEATURE_VIEW, ChangeAction.ADD) + diff.of_kind(
            ObjectKind.FEATURE_VIEW, ChangeAction.UPDATE
        )
        tables_to_delete = diff.of_kind(ObjectKind.FEATURE_VIEW, ChangeAction.DELETE)
        entities_to_keep = diff.of_kind(ObjectKind.ENTITY, ChangeAction.ADD) + diff.of_kind(
            ObjectKind.ENTITY, ChangeAction.UPDATE
        )
        entities_to_delete = diff.of_kind(ObjectKind.ENTITY, ChangeAction.DELETE)
        if not full_sync and (tables_to_delete or entities_to_delete):
            # Partial applies never tear down online resources.
            _logger.info(
                "Keeping online resources of deleted objects",
                project=project,
                feature_views=[view.name for view in tables_to_delete],
            )
            tables_to_delete, entities_to_delete = [], []
        try:
            self._provider.update_infra(
                project,
                tables_to_delete=_typed(tables_to_delete, FeatureView),
                tables_to_keep=_typed(tables_to_keep, FeatureView),
                entities_to_delete=_typed(entities_to_delete, Entity),
                entities_to_keep=_typed(entities_to_keep, Entity),
                full_sync=full_sync,
            )
        except FeaturePlaneError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Infrastructure update for project '{project}' failed: {exc}",
                detail={"project": project},
            ) from exc


def _as_ref(target: DeleteTarget) -> ObjectRef:
    if isinstance(target, ObjectRef):
        return target
    return target.ref


def _typed(definitions: Sequence[Definition], cls: type) -> list:
    return [definition for definition in definitions if isinstance(definition, cls)]
