"""File-backed registry storing every project in one JSON document."""

from __future__ import annotations

import fcntl
import os
import tempfile
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Iterator, List

from pydantic import BaseModel, Field

from .base import RegistrySnapshot, RegistryStore, RegistryTransaction

__all__ = ["FileRegistryStore"]


class _RegistryDocument(BaseModel):
    projects: Dict[str, RegistrySnapshot] = Field(default_factory=dict)


class FileRegistryStore(RegistryStore):
    """Registry persisted as JSON at ``path``.

    Commits replace the document through a temporary file and ``os.replace`` so
    readers observe either the previous or the new state, never a partial one.
    Writers take an exclusive ``flock`` on a sibling ``.lock`` file around
    load, version check and save, so several processes (POSIX only) can share
    one document and a stale writer fails the version check instead of
    overwriting a newer commit.
    """

    def __init__(self, path: Path) -> None:
        super().__init__()
        self._path = Path(path).expanduser()
        self._lock_path = self._path.with_name(f"{self._path.name}.lock")
        self._io_lock = threading.RLock()

    @property
    def path(self) -> Path:
        return self._path

    def snapshot(self, project: str) -> RegistrySnapshot:
        with self._io_lock:
            document = self._load()
        return document.projects.get(project) or RegistrySnapshot(project=project)

    def commit(self, transaction: RegistryTransaction) -> RegistrySnapshot:
        with self._exclusive():
            return self._commit_locked(transaction)

    def _commit_locked(self, transaction: RegistryTransaction) -> RegistrySnapshot:
        document = self._load()
        current = document.projects.get(transaction.project) or RegistrySnapshot(
            project=transaction.project
        )
        self._verify_version(transaction, current.version)
        updated = transaction.apply_to(current)
        document.projects[transaction.project] = updated
        self._save(document)
        return updated

    def delete_project(self, project: str) -> None:
        with self._exclusive():
            document = self._load()
            if document.projects.pop(project, None) is not None:
                self._save(document)

    def list_projects(self) -> List[str]:
        with self._io_lock:
            return sorted(self._load().projects)

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._io_lock, open(self._lock_path, "a+") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _load(self) -> _RegistryDocument:
        if not self._path.exists():
            return _RegistryDocument()
        return _RegistryDocument.model_validate_json(self._path.read_text(encoding="utf-8"))

    def _save(self, document: _RegistryDocument) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self._path.name}.", dir=self._path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(document.model_dump_json(indent=2))
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
