import pytest

from featureplane.registry import CachedRegistryReader, InMemoryRegistryStore


class CountingStore(InMemoryRegistryStore):
    def __init__(self) -> None:
        super().__init__()
        self.reads = 0

    def snapshot(self, project):
        self.reads += 1
        return super().snapshot(project)


class FakeClock:
    def __init__(self) -> None:
        self.now = 100.0

    def __call__(self) -> float:
        return self.now


def _bump(store, definition) -> None:
    transaction = store.begin(store.snapshot("drivers"))
    transaction.upsert(definition)
    store.commit(transaction)


def test_zero_ttl_reads_through(driver) -> None:
    store = CountingStore()
    reader = CachedRegistryReader(store)

    reader.snapshot("drivers")
    reader.snapshot("drivers")

    assert store.reads == 2


def test_snapshot_reused_within_ttl(driver) -> None:
    store = CountingStore()
    clock = FakeClock()
    reader = CachedRegistryReader(store, ttl_seconds=30, clock=clock)

    first = reader.snapshot("drivers")
    _bump(store, driver)
    clock.now += 10
    assert reader.snapshot("drivers") is first

    clock.now += 30
    assert reader.snapshot("drivers").version == 1


def test_invalidate_forces_reread(driver) -> None:
    store = CountingStore()
    reader = CachedRegistryReader(store, ttl_seconds=30, clock=FakeClock())
    reader.snapshot("drivers")
    _bump(store, driver)

    reader.invalidate("drivers")

    assert reader.snapshot("drivers").version == 1
    assert reader.refresh("drivers").version == 1


def test_negative_ttl_is_rejected() -> None:
    with pytest.raises(ValueError):
        CachedRegistryReader(InMemoryRegistryStore(), ttl_seconds=-1)
