"""Dispatch materialization jobs and record the intervals they complete."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .definitions import FeatureView
from .errors import (
    FeaturePlaneError,
    InvalidRangeError,
    MaterializationError,
    ProviderError,
    ValidationError,
)
from .infra.base import InfraProvider, JobStatus, MaterializationJob, MaterializationTask
from .registry.base import MaterializationInterval, RegistrySnapshot, RegistryStore, utc
from .utils.logging import StructuredLogger, get_logger

__all__ = ["MaterializationOrchestrator", "MaterializationReport"]

_logger = get_logger(__name__)

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


@dataclass
class MaterializationReport:
    """Per-feature-view outcome of one materialize call."""

    project: str
    succeeded: List[str] = field(default_factory=list)
    failed: Dict[str, BaseException] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    pending: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed and not self.cancelled


class MaterializationOrchestrator:
    """Copy time windows of feature views from the offline to the online store.

    Tasks for every requested view are submitted as a single batch. Each job is
    then polled independently: a success is recorded and committed right away,
    so views that finished stay recorded whatever happens to the others.
    """

    def __init__(
        self,
        registry: RegistryStore,
        provider: InfraProvider,
        *,
        poll_interval_seconds: float = 1.0,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        if poll_interval_seconds <= 0:
            raise ValueError("poll_interval_seconds must be positive")
        self._registry = registry
        self._provider = provider
        self._poll_interval = poll_interval_seconds
        self._clock = clock

    def materialize(
        self,
        project: str,
        start_time: datetime,
        end_time: datetime,
        feature_views: Optional[Sequence[str]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> MaterializationReport:
        """Materialize ``[start_time, end_time)`` for the named (default: all online) views.

        Raises :class:`MaterializationError` listing every view whose job failed.
        """

        start, end = utc(start_time), utc(end_time)
        if start >= end:
            raise InvalidRangeError(
                f"start_time {start.isoformat()} must be before end_time {end.isoformat()}",
                detail={"start_time": start.isoformat(), "end_time": end.isoformat()},
            )
        snapshot = self._registry.snapshot(project)
        views = self._resolve_views(snapshot, feature_views)
        tasks = [MaterializationTask(project, view, start, end) for view in views]
        return self._execute(snapshot, tasks, cancel_event, report=MaterializationReport(project))

    def materialize_incremental(
        self,
        project: str,
        end_time: datetime,
        feature_views: Optional[Sequence[str]] = None,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> MaterializationReport:
        """Materialize each view from where its recorded history ends up to ``end_time``.

        Views without history start at ``end_time - ttl``, or at the Unix epoch
        when they have no ttl. Views already covered up to ``end_time`` are skipped.
        """

        end = utc(end_time)
        snapshot = self._registry.snapshot(project)
        report = MaterializationReport(project)
        tasks = []
        for view in self._resolve_views(snapshot, feature_views):
            start = snapshot.latest_interval_end(view.name)
            if start is None:
                start = end - view.ttl if view.ttl else _EPOCH
            if start >= end:
                report.skipped.append(view.name)
                continue
            tasks.append(MaterializationTask(project, view, start, end))
        return self._execute(snapshot, tasks, cancel_event, report=report)

    def _resolve_views(
        self, snapshot: RegistrySnapshot, names: Optional[Sequence[str]]
    ) -> List[FeatureView]:
        if names is None:
            return [view for view in snapshot.list_feature_views() if view.online]
        views = []
        for name in dict.fromkeys(names):
            view = snapshot.get_feature_view(name)
            if not view.online:
                raise ValidationError(
                    f"Feature view '{name}' is not served online and cannot be materialized",
                    ref=view.ref,
                    rule="online",
                )
            views.append(view)
        return views

    def _execute(
        self,
        snapshot: RegistrySnapshot,
        tasks: List[MaterializationTask],
        cancel_event: Optional[threading.Event],
        *,
        report: MaterializationReport,
    ) -> MaterializationReport:
        log = _logger.bind(project=snapshot.project)
        if not tasks:
            log.info("Nothing to materialize", skipped=report.skipped)
            return report
        cancel = cancel_event or threading.Event()
        with log.operation("materialize", feature_views=[t.feature_view.name for t in tasks]) as op:
            jobs = self._submit(snapshot, tasks)
            pending: Dict[str, tuple[MaterializationTask, MaterializationJob]] = {
                task.feature_view.name: (task, job) for task, job in zip(tasks, jobs)
            }
            while pending and not cancel.is_set():
                for name, (task, job) in list(pending.items()):
                    try:
                        status = job.status()
                        cause = job.error() if status is JobStatus.ERROR else None
                    except Exception as exc:
                        del pending[name]
                        self._fail(report, log, name, job, f"polling job status failed: {exc}", exc)
                        continue
                    if not status.is_terminal:
                        continue
                    del pending[name]
                    if status is JobStatus.SUCCEEDED:
                        self._record(task, job, report, log)
                    else:
                        self._fail(report, log, name, job, str(cause), cause)
                if pending and cancel.wait(self._poll_interval):
                    break
            if pending:
                report.cancelled = True
                report.pending = sorted(pending)
                log.warning("Materialization cancelled", pending=report.pending)
            op.update(
                succeeded=len(report.succeeded), failed=sorted(report.failed), cancelled=report.cancelled
            )
            if report.failed:
                raise MaterializationError(report)
        return report

    def _submit(
        self, snapshot: RegistrySnapshot, tasks: List[MaterializationTask]
    ) -> List[MaterializationJob]:
        try:
            jobs = list(self._provider.materialize(snapshot, tasks))
        except FeaturePlaneError:
            raise
        except Exception as exc:
            raise ProviderError(
                f"Submitting materialization tasks failed: {exc}",
                detail={"project": snapshot.project},
            ) from exc
        if len(jobs) != len(tasks):
            raise ProviderError(
                f"Provider returned {len(jobs)} jobs for {len(tasks)} tasks",
                detail={"project": snapshot.project},
            )
        return jobs

    @staticmethod
    def _fail(
        report: MaterializationReport,
        log: StructuredLogger,
        name: str,
        job: MaterializationJob,
        reason: str,
        cause: Optional[BaseException],
    ) -> None:
        log.error("Materialization job failed", feature_view=name, job_id=job.job_id, error=reason)
        error = ProviderError(
            f"Materialization of feature view '{name}' failed: {reason}",
            detail={"feature_view": name, "job_id": job.job_id},
        )
        error.__cause__ = cause
        report.failed[name] = error

    def _record(
        self,
        task: MaterializationTask,
        job: MaterializationJob,
        report: MaterializationReport,
        log: StructuredLogger,
    ) -> None:
        name = task.feature_view.name
        interval = MaterializationInterval(
            start_time=task.start_time, end_time=task.end_time, recorded_at=self._clock()
        )
        try:
            transaction = self._registry.begin(self._registry.snapshot(task.project))
            transaction.append_interval(name, interval)
            self._registry.commit(transaction)
        except Exception as exc:
            log.error("Recording materialization interval failed", feature_view=name, error=str(exc))
            report.failed[name] = exc
            return
        log.info(
            "Recorded materialization interval",
            feature_view=name,
            job_id=job.job_id,
            start_time=interval.start_time.isoformat(),
            end_time=interval.end_time.isoformat(),
        )
        report.succeeded.append(name)
