"""Thread-pool batch engine copying offline rows into the online store."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Optional, Sequence
from uuid import uuid4

from ..registry.base import RegistrySnapshot
from ..utils.logging import get_logger
from .base import BatchEngine, JobStatus, MaterializationJob, MaterializationTask
from .offline import FileOfflineStore
from .online import OnlineStore

__all__ = ["LocalBatchEngine", "LocalMaterializationJob"]

_logger = get_logger(__name__)


class LocalMaterializationJob(MaterializationJob):
    """Job whose state is advanced by a worker thread."""

    def __init__(self, task: MaterializationTask) -> None:
        self._job_id = uuid4().hex
        self.task = task
        self.rows_written = 0
        self._status = JobStatus.PENDING
        self._error: Optional[BaseException] = None
        self._lock = threading.Lock()

    @property
    def job_id(self) -> str:
        return self._job_id

    def status(self) -> JobStatus:
        with self._lock:
            return self._status

    def error(self) -> Optional[BaseException]:
        with self._lock:
            return self._error if self._status is JobStatus.ERROR else None

    def _advance(self, status: JobStatus, error: Optional[BaseException] = None) -> None:
        with self._lock:
            if self._status.is_terminal or status.rank <= self._status.rank:
                raise RuntimeError(
                    f"Illegal job transition {self._status.value} -> {status.value} for job {self._job_id}"
                )
            self._status = status
            self._error = error


class LocalBatchEngine(BatchEngine):
    """Runs each task on a worker thread of a shared executor.

    A task selects the latest row per entity key inside its window and upserts
    it into the online store, so re-running a window rewrites identical values.
    """

    def __init__(
        self,
        offline_store: FileOfflineStore,
        online_store: OnlineStore,
        *,
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._offline_store = offline_store
        self._online_store = online_store
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="featureplane-mat")

    def materialize(
        self, registry: RegistrySnapshot, tasks: Sequence[MaterializationTask]
    ) -> list[MaterializationJob]:
        jobs: list[MaterializationJob] = []
        for task in tasks:
            job = LocalMaterializationJob(task)
            future = self._executor.submit(self._run, registry, job)
            future.add_done_callback(lambda done, job=job: self._on_done(done, job))
            jobs.append(job)
        return jobs

    def _run(self, registry: RegistrySnapshot, job: LocalMaterializationJob) -> None:
        task = job.task
        view = task.feature_view
        log = _logger.bind(project=task.project, feature_view=view.name, job_id=job.job_id)
        job._advance(JobStatus.RUNNING)
        try:
            source = registry.data_sources[view.source]
            join_keys = [registry.entities[name].join_key or name for name in view.entities]
            frame = self._offline_store.pull_latest(
                source, join_keys, view.feature_names, task.start_time, task.end_time
            )
            job.rows_written = self._online_store.write(
                task.project, view, frame, join_keys, source.timestamp_field
            )
        except Exception as exc:
            log.error("Materialization job failed", error_type=type(exc).__name__, error_message=str(exc))
            job._advance(JobStatus.ERROR, exc)
            return
        log.info("Materialization job succeeded", rows_written=job.rows_written)
        job._advance(JobStatus.SUCCEEDED)

    @staticmethod
    def _on_done(future: Future, job: LocalMaterializationJob) -> None:
        # Cancelled futures never run, so their jobs would otherwise stay PENDING.
        if future.cancelled():
            job._advance(
                JobStatus.ERROR, RuntimeError(f"Batch engine closed before job {job.job_id} started")
            )

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
