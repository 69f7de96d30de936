"""Compute registry changes implied by a declared set of definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from .definitions import ALL_KINDS, Definition, FeatureDefinitionSet, ObjectKind, ObjectRef
from .registry.base import RegistrySnapshot

__all__ = ["ChangeAction", "ObjectChange", "RegistryDiff", "compute_diff"]

_SYMBOLS = {"add": "+", "update": "~", "delete": "-"}


class ChangeAction(str, Enum):
    ADD = "add"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class ObjectChange:
    ref: ObjectRef
    action: ChangeAction
    before: Optional[Definition] = None
    after: Optional[Definition] = None

    @property
    def definition(self) -> Definition:
        """The object to write for add/update, or the one removed for delete."""

        resolved = self.after if self.action is not ChangeAction.DELETE else self.before
        assert resolved is not None
        return resolved


@dataclass
class RegistryDiff:
    changes: List[ObjectChange] = field(default_factory=list)

    @property
    def to_apply(self) -> List[Definition]:
        return [c.definition for c in self.changes if c.action is not ChangeAction.DELETE]

    @property
    def to_delete(self) -> List[Definition]:
        return [c.definition for c in self.changes if c.action is ChangeAction.DELETE]

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def of_kind(self, kind: ObjectKind, action: ChangeAction | None = None) -> List[Definition]:
        return [
            c.definition
            for c in self.changes
            if c.ref.kind is kind and (action is None or c.action is action)
        ]

    def merge_deletes(self, definitions: Iterable[Definition]) -> None:
        """Add delete changes for ``definitions`` not already scheduled for removal."""

        scheduled = {c.ref for c in self.changes if c.action is ChangeAction.DELETE}
        for definition in definitions:
            if definition.ref in scheduled:
                continue
            self.changes.append(ObjectChange(definition.ref, ChangeAction.DELETE, before=definition))
            scheduled.add(definition.ref)
        self.changes.sort(key=_change_order)

    def render(self) -> str:
        if not self.changes:
            return "No changes to registry"
        return "\n".join(
            f"{_SYMBOLS[c.action.value]} {c.ref.kind.value} {c.ref.name}" for c in self.changes
        )


def _change_order(change: ObjectChange) -> tuple[int, str]:
    return ALL_KINDS.index(change.ref.kind), change.ref.name


def compute_diff(
    definitions: FeatureDefinitionSet,
    snapshot: RegistrySnapshot,
    *,
    full_sync: bool,
    managed_kinds: Sequence[ObjectKind] = ALL_KINDS,
) -> RegistryDiff:
    """Compare declared ``definitions`` with the committed ``snapshot``.

    Objects missing from the registry are added and objects whose value differs
    are updated; identical objects produce no change. Deletions are computed
    only when ``full_sync`` is set, and only for ``managed_kinds``.
    """

    changes: List[ObjectChange] = []
    for kind in ALL_KINDS:
        registered = snapshot.objects(kind)
        declared = {obj.name: obj for obj in definitions.of_kind(kind)}
        for name in sorted(declared):
            desired = declared[name]
            current = registered.get(name)
            if current is None:
                changes.append(ObjectChange(desired.ref, ChangeAction.ADD, after=desired))
            elif current != desired:
                changes.append(ObjectChange(desired.ref, ChangeAction.UPDATE, before=current, after=desired))
        if full_sync and kind in managed_kinds:
            for name in sorted(set(registered) - set(declared)):
                current = registered[name]
                changes.append(ObjectChange(current.ref, ChangeAction.DELETE, before=current))
    changes.sort(key=_change_order)
    return RegistryDiff(changes)
