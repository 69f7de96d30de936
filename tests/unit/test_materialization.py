import threading
from datetime import datetime, timedelta, timezone

import pytest

from featureplane.apply import ApplyOrchestrator
from featureplane.definitions import FeatureDefinitionSet
from featureplane.errors import (
    InvalidRangeError,
    MaterializationError,
    ObjectNotFoundError,
    ProviderError,
    ValidationError,
)
from featureplane.infra.base import JobStatus, MaterializationJob
from featureplane.materialization import MaterializationOrchestrator

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)
T1 = datetime(2024, 1, 2, tzinfo=timezone.utc)
T2 = datetime(2024, 1, 3, tzinfo=timezone.utc)
RECORDED_AT = datetime(2024, 2, 1, tzinfo=timezone.utc)


@pytest.fixture()
def registered(registry, provider, driver, driver_source, driver_view, make_view):
    definitions = FeatureDefinitionSet.from_objects(
        [driver, driver_source, driver_view, make_view("driver_daily"), make_view("driver_archive", online=False)]
    )
    ApplyOrchestrator(registry, provider).apply("drivers", definitions)
    return registry


@pytest.fixture()
def materializer(registered, provider) -> MaterializationOrchestrator:
    return MaterializationOrchestrator(
        registered, provider, poll_interval_seconds=0.001, clock=lambda: RECORDED_AT
    )


@pytest.mark.parametrize("start,end", [(T1, T1), (T2, T1)])
def test_invalid_range_is_rejected_before_submission(materializer, provider, start, end) -> None:
    with pytest.raises(InvalidRangeError):
        materializer.materialize("drivers", start, end)
    assert provider.submitted == []


def test_successful_run_records_interval(materializer, registered, provider) -> None:
    report = materializer.materialize("drivers", T0, T1, ["driver_hourly"])

    assert report.ok
    assert report.succeeded == ["driver_hourly"]
    [[task]] = provider.submitted
    assert (task.start_time, task.end_time) == (T0, T1)
    [interval] = registered.snapshot("drivers").intervals_for("driver_hourly")
    assert (interval.start_time, interval.end_time, interval.recorded_at) == (T0, T1, RECORDED_AT)


def test_default_selection_is_every_online_view(materializer, provider) -> None:
    report = materializer.materialize("drivers", T0, T1)

    assert sorted(report.succeeded) == ["driver_daily", "driver_hourly"]
    assert len(provider.submitted) == 1
    assert sorted(task.feature_view.name for task in provider.submitted[0]) == ["driver_daily", "driver_hourly"]


def test_naming_offline_view_is_rejected(materializer, provider) -> None:
    with pytest.raises(ValidationError) as excinfo:
        materializer.materialize("drivers", T0, T1, ["driver_archive"])
    assert excinfo.value.rule == "online"
    assert provider.submitted == []


def test_unknown_view_is_rejected(materializer) -> None:
    with pytest.raises(ObjectNotFoundError):
        materializer.materialize("drivers", T0, T1, ["driver_weekly"])


def test_repeated_window_appends_another_interval(materializer, registered) -> None:
    materializer.materialize("drivers", T0, T1, ["driver_hourly"])
    materializer.materialize("drivers", T0, T1, ["driver_hourly"])

    snapshot = registered.snapshot("drivers")
    history = snapshot.intervals_for("driver_hourly")
    assert [(i.start_time, i.end_time) for i in history] == [(T0, T1), (T0, T1)]
    assert snapshot.version == 1


def test_failed_view_does_not_undo_successful_ones(materializer, registered, provider) -> None:
    provider.outcomes["driver_daily"] = RuntimeError("executor lost")

    with pytest.raises(MaterializationError) as excinfo:
        materializer.materialize("drivers", T0, T1)

    report = excinfo.value.report
    assert report.succeeded == ["driver_hourly"]
    assert set(excinfo.value.failures) == {"driver_daily"}
    assert isinstance(excinfo.value.failures["driver_daily"].__cause__, RuntimeError)
    snapshot = registered.snapshot("drivers")
    assert len(snapshot.intervals_for("driver_hourly")) == 1
    assert snapshot.intervals_for("driver_daily") == []


def test_jobs_are_polled_until_terminal(materializer, provider) -> None:
    provider.outcomes["driver_hourly"] = [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.RUNNING, JobStatus.SUCCEEDED]

    report = materializer.materialize("drivers", T0, T1, ["driver_hourly"])

    assert report.succeeded == ["driver_hourly"]


def test_submission_failure_is_a_provider_error(materializer, registered, provider) -> None:
    provider.submit_error = ConnectionError("engine unreachable")

    with pytest.raises(ProviderError):
        materializer.materialize("drivers", T0, T1)
    assert registered.snapshot("drivers").intervals == {}


def test_cancellation_keeps_finished_views(materializer, registered, provider) -> None:
    provider.outcomes["driver_daily"] = [JobStatus.RUNNING]
    cancel = threading.Event()
    timer = threading.Timer(0.05, cancel.set)
    timer.start()
    try:
        report = materializer.materialize("drivers", T0, T1, cancel_event=cancel)
    finally:
        timer.cancel()

    assert report.cancelled
    assert not report.ok
    assert report.succeeded == ["driver_hourly"]
    assert report.pending == ["driver_daily"]
    snapshot = registered.snapshot("drivers")
    assert len(snapshot.intervals_for("driver_hourly")) == 1
    assert snapshot.intervals_for("driver_daily") == []


def test_incremental_resumes_from_last_interval(materializer, provider) -> None:
    materializer.materialize("drivers", T0, T1, ["driver_hourly"])

    report = materializer.materialize_incremental("drivers", T2, ["driver_hourly"])

    assert report.succeeded == ["driver_hourly"]
    task = provider.submitted[-1][0]
    assert (task.start_time, task.end_time) == (T1, T2)


def test_incremental_without_history_starts_at_ttl(materializer, provider) -> None:
    materializer.materialize_incremental("drivers", T2, ["driver_hourly"])

    task = provider.submitted[-1][0]
    assert task.start_time == T2 - timedelta(days=1)


def test_incremental_skips_views_already_covered(materializer, provider) -> None:
    materializer.materialize("drivers", T0, T2, ["driver_hourly"])

    report = materializer.materialize_incremental("drivers", T1, ["driver_hourly"])

    assert report.skipped == ["driver_hourly"]
    assert report.ok
    assert len(provider.submitted) == 1


def test_naive_datetimes_are_treated_as_utc(materializer, provider) -> None:
    materializer.materialize("drivers", datetime(2024, 1, 1), datetime(2024, 1, 2), ["driver_hourly"])

    task = provider.submitted[-1][0]
    assert (task.start_time, task.end_time) == (T0, T1)


def test_poll_interval_must_be_positive(registry, provider) -> None:
    with pytest.raises(ValueError):
        MaterializationOrchestrator(registry, provider, poll_interval_seconds=0)


class UnreachableJob(MaterializationJob):
    job_id = "job-unreachable"

    def status(self) -> JobStatus:
        raise ConnectionError("engine status endpoint unreachable")

    def error(self):
        return None


def test_status_poll_failure_is_isolated_per_view(materializer, registered, provider) -> None:
    provider.outcomes["driver_daily"] = UnreachableJob()

    with pytest.raises(MaterializationError) as excinfo:
        materializer.materialize("drivers", T0, T1)

    report = excinfo.value.report
    assert report.succeeded == ["driver_hourly"]
    assert not report.pending
    failure = excinfo.value.failures["driver_daily"]
    assert isinstance(failure, ProviderError)
    assert isinstance(failure.__cause__, ConnectionError)
    snapshot = registered.snapshot("drivers")
    assert len(snapshot.intervals_for("driver_hourly")) == 1
    assert snapshot.intervals_for("driver_daily") == []
