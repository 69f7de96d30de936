"""In-memory registry used in tests and ephemeral deployments."""

from __future__ import annotations

import threading
from typing import Dict, List

from .base import RegistrySnapshot, RegistryStore, RegistryTransaction

__all__ = ["InMemoryRegistryStore"]


class InMemoryRegistryStore(RegistryStore):
    def __init__(self) -> None:
        super().__init__()
        self._state: Dict[str, RegistrySnapshot] = {}
        self._commit_lock = threading.Lock()

    def snapshot(self, project: str) -> RegistrySnapshot:
        with self._commit_lock:
            current = self._state.get(project)
        return current if current is not None else RegistrySnapshot(project=project)

    def commit(self, transaction: RegistryTransaction) -> RegistrySnapshot:
        with self._commit_lock:
            current = self._state.get(transaction.project) or RegistrySnapshot(project=transaction.project)
            self._verify_version(transaction, current.version)
            updated = transaction.apply_to(current)
            self._state[transaction.project] = updated
            return updated

    def delete_project(self, project: str) -> None:
        with self._commit_lock:
            self._state.pop(project, None)

    def list_projects(self) -> List[str]:
        with self._commit_lock:
            return sorted(self._state)
