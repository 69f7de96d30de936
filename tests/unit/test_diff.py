from datetime import timedelta

from featureplane.definitions import FeatureDefinitionSet, ObjectKind
from featureplane.diff import ChangeAction, compute_diff
from featureplane.registry.base import RegistrySnapshot


def _snapshot(*objects) -> RegistrySnapshot:
    definitions = FeatureDefinitionSet.from_objects(objects)
    return RegistrySnapshot(
        project="drivers",
        version=1,
        entities={e.name: e for e in definitions.entities},
        data_sources={s.name: s for s in definitions.data_sources},
        feature_views={v.name: v for v in definitions.feature_views},
    )


def test_new_objects_are_added_in_dependency_order(driver_definitions) -> None:
    diff = compute_diff(driver_definitions, RegistrySnapshot(project="drivers"), full_sync=False)

    assert [change.action for change in diff.changes] == [ChangeAction.ADD] * 3
    assert diff.render() == "\n".join(
        ["+ entity driver", "+ data_source driver_stats", "+ feature_view driver_hourly"]
    )


def test_identical_definitions_produce_empty_diff(driver, driver_source, driver_view, driver_definitions) -> None:
    diff = compute_diff(driver_definitions, _snapshot(driver, driver_source, driver_view), full_sync=True)

    assert diff.is_empty
    assert diff.render() == "No changes to registry"


def test_changed_field_is_an_update(driver, driver_source, driver_view) -> None:
    changed = driver_view.model_copy(update={"ttl": timedelta(hours=6)})
    diff = compute_diff(
        FeatureDefinitionSet.from_objects([driver, driver_source, changed]),
        _snapshot(driver, driver_source, driver_view),
        full_sync=False,
    )

    [change] = diff.changes
    assert change.action is ChangeAction.UPDATE
    assert change.before == driver_view
    assert change.after == changed
    assert diff.render() == "~ feature_view driver_hourly"


def test_deletions_only_computed_in_full_sync(driver, driver_source, driver_view, make_view) -> None:
    extra = make_view("driver_daily")
    snapshot = _snapshot(driver, driver_source, driver_view, extra)
    declared = FeatureDefinitionSet.from_objects([driver, driver_source, driver_view])

    assert compute_diff(declared, snapshot, full_sync=False).is_empty

    diff = compute_diff(declared, snapshot, full_sync=True)
    assert diff.to_delete == [extra]
    assert diff.of_kind(ObjectKind.FEATURE_VIEW, ChangeAction.DELETE) == [extra]


def test_full_sync_leaves_unmanaged_kinds_alone(driver, driver_source, driver_view) -> None:
    snapshot = _snapshot(driver, driver_source, driver_view)
    diff = compute_diff(
        FeatureDefinitionSet(),
        snapshot,
        full_sync=True,
        managed_kinds=(ObjectKind.FEATURE_VIEW,),
    )

    assert [change.ref for change in diff.changes] == [driver_view.ref]


def test_merge_deletes_skips_already_scheduled(driver, driver_source, driver_view, make_view) -> None:
    extra = make_view("driver_daily")
    diff = compute_diff(
        FeatureDefinitionSet.from_objects([driver, driver_source]),
        _snapshot(driver, driver_source, driver_view, extra),
        full_sync=True,
    )

    diff.merge_deletes([extra, driver_view])

    assert [change.ref.name for change in diff.changes] == ["driver_daily", "driver_hourly"]
    assert diff.render().splitlines() == ["- feature_view driver_daily", "- feature_view driver_hourly"]
