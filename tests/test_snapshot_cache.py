"""Tests for SnapshotCache: capacity, LRU order and TTL expiry."""

from emd.analyzer.snapshot_cache import SnapshotCache

from conftest import FakeClock, make_job


def test_insert_beyond_capacity_evicts_exactly_one_lru_entry(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=3, ttl_seconds=900, clock=clock)
    for i in range(4):
        cache.put(f"J{i}", make_job(f"J{i}"))

    assert len(cache) == 3
    assert cache.evictions == 1
    assert "J0" not in cache
    assert cache.all_ids() == {"J1", "J2", "J3"}


def test_get_refreshes_recency(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=2, ttl_seconds=900, clock=clock)
    cache.put("A", make_job("A"))
    cache.put("B", make_job("B"))
    assert cache.get("A") is not None

    cache.put("C", make_job("C"))

    assert "A" in cache
    assert "B" not in cache


def test_peek_does_not_refresh_recency(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=2, ttl_seconds=900, clock=clock)
    cache.put("A", make_job("A"))
    cache.put("B", make_job("B"))
    cache.peek("A")

    cache.put("C", make_job("C"))

    assert "A" not in cache


def test_replacing_existing_id_never_evicts(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=2, ttl_seconds=900, clock=clock)
    cache.put("A", make_job("A"))
    cache.put("B", make_job("B"))
    cache.put("A", make_job("A", truck_id="T9"))

    assert cache.evictions == 0
    assert cache.peek("A").truck_id == "T9"


def test_expired_entry_is_absent(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=10, ttl_seconds=60, clock=clock)
    cache.put("A", make_job("A"))
    clock.advance(seconds=61)

    assert cache.get("A") is None
    assert "A" not in cache
    assert cache.expirations == 1


def test_evict_expired_counts_removed(clock: FakeClock) -> None:
    cache = SnapshotCache(max_size=10, ttl_seconds=60, clock=clock)
    cache.put("A", make_job("A"))
    clock.advance(seconds=30)
    cache.put("B", make_job("B"))
    clock.advance(seconds=31)

    assert cache.evict_expired() == 1
    assert cache.all_ids() == {"B"}


def test_missing_id_is_a_miss_not_an_error(clock: FakeClock) -> None:
    cache = SnapshotCache(clock=clock)
    assert cache.get("nope") is None
    assert cache.discard("nope") is False
    assert cache.stats()["misses"] == 1
