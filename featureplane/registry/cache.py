"""Read-through snapshot cache used by serving-time lookups."""

from __future__ import annotations

import threading
import time
from typing import Callable, Dict, Tuple

from .base import RegistrySnapshot, RegistryStore

__all__ = ["CachedRegistryReader"]


class CachedRegistryReader:
    """Serve registry snapshots, re-reading the store at most every ``ttl_seconds``.

    A TTL of zero always reads through. Writers never go through this class.
    """

    def __init__(
        self,
        store: RegistryStore,
        *,
        ttl_seconds: float = 0.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if ttl_seconds < 0:
            raise ValueError("ttl_seconds must not be negative")
        self._store = store
        self._ttl = ttl_seconds
        self._clock = clock
        self._cache: Dict[str, Tuple[float, RegistrySnapshot]] = {}
        self._lock = threading.Lock()

    def snapshot(self, project: str) -> RegistrySnapshot:
        if self._ttl == 0:
            return self._store.snapshot(project)
        now = self._clock()
        with self._lock:
            cached = self._cache.get(project)
            if cached is not None and now - cached[0] < self._ttl:
                return cached[1]
        return self.refresh(project)

    def refresh(self, project: str) -> RegistrySnapshot:
        snapshot = self._store.snapshot(project)
        with self._lock:
            self._cache[project] = (self._clock(), snapshot)
        return snapshot

    def invalidate(self, project: str | None = None) -> None:
        with self._lock:
            if project is None:
                self._cache.clear()
            else:
                self._cache.pop(project, None)
