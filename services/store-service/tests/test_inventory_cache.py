import threading

import pytest

from app.inventory_cache import NOT_FOUND, InventoryCache, InventorySnapshot


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return InventoryCache(default_ttl=300, check_period=60, clock=clock)


def test_miss_returns_not_found(cache):
    assert cache.get(1, "M") is NOT_FOUND
    assert cache.get(1) is NOT_FOUND
    assert not NOT_FOUND


def test_size_entry_round_trip(cache):
    cache.set(1, "M", 4)
    assert cache.get(1, "M") == 4
    assert cache.get("1", "M") == 4


def test_zero_is_a_hit(cache):
    cache.set(1, "M", 0)
    assert cache.get(1, "M") == 0


def test_size_lookup_falls_back_to_snapshot(cache):
    cache.set(1, None, InventorySnapshot(total_stock=7, size_inventory={"S": 3, "M": 4}))
    assert cache.get(1, "M") == 4
    # the nested value is now cached under its own key as well
    assert cache.stats()["entries"] == 2
    assert cache.get(1, "L") is NOT_FOUND


def test_disagreeing_entries_are_dropped(cache):
    cache.set(1, None, InventorySnapshot(total_stock=7, size_inventory={"S": 3, "M": 4}))
    cache.set(1, "M", 9)
    assert cache.get(1, "M") is NOT_FOUND
    assert cache.get(1) is NOT_FOUND


def test_entries_expire(cache, clock):
    cache.set(1, "M", 4)
    cache.set(1, "S", 2, ttl=10)
    clock.now += 11
    assert cache.get(1, "S") is NOT_FOUND
    assert cache.get(1, "M") == 4
    clock.now += 300
    assert cache.get(1, "M") is NOT_FOUND


def test_sweep_removes_expired_entries(cache, clock):
    cache.set(1, "M", 4, ttl=5)
    cache.set(2, "M", 4)
    clock.now += 6
    assert cache.sweep() == 1
    assert cache.stats()["entries"] == 1


def test_invalidate_one_size(cache):
    cache.set(1, "M", 4)
    cache.set(1, "S", 2)
    assert cache.invalidate(1, "M") == 1
    assert cache.get(1, "M") is NOT_FOUND
    assert cache.get(1, "S") == 2
    assert cache.invalidate(1, "M") == 0


def test_invalidate_product_leaves_other_products(cache):
    cache.set(1, "M", 4)
    cache.set(1, None, InventorySnapshot(4, {"M": 4}))
    cache.set(12, "M", 8)
    assert cache.invalidate(1) == 2
    assert cache.get(12, "M") == 8


def test_invalidate_everything(cache):
    cache.set(1, "M", 4)
    cache.set(2, "M", 4)
    assert cache.invalidate() == 2
    assert cache.stats()["entries"] == 0


def test_adjust_without_entry_is_a_no_op(cache):
    assert cache.adjust(1, "M", -1) is None
    assert cache.get(1, "M") is NOT_FOUND


def test_adjust_clamps_at_zero(cache):
    cache.set(1, "M", 2)
    assert cache.adjust(1, "M", -5) == 0
    assert cache.get(1, "M") == 0


def test_adjust_keeps_snapshot_in_step(cache):
    cache.set(1, None, InventorySnapshot(total_stock=7, size_inventory={"S": 3, "M": 4}))
    cache.set(1, "M", 4)
    assert cache.adjust(1, "M", -2) == 2
    snapshot = cache.get(1)
    assert snapshot.size_inventory == {"S": 3, "M": 2}
    assert snapshot.total_stock == 5
    assert cache.get(1, "M") == 2


def test_adjust_refreshes_ttl(cache, clock):
    cache.set(1, "M", 4)
    clock.now += 200
    cache.adjust(1, "M", 1)
    clock.now += 200
    assert cache.get(1, "M") == 5


def test_concurrent_adjusts_are_not_lost(cache):
    cache.set(1, "M", 100)

    def worker():
        for _ in range(10):
            cache.adjust(1, "M", -1)

    threads = [threading.Thread(target=worker) for _ in range(5)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert cache.get(1, "M") == 50


def test_stats_count_hits_and_misses(cache):
    cache.get(1, "M")
    cache.set(1, "M", 1)
    cache.get(1, "M")
    stats = cache.stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_dispose_stops_sweeper_and_clears():
    cache = InventoryCache(default_ttl=300, check_period=0.05)
    cache.start()
    cache.start()
    cache.set(1, "M", 4)
    cache.dispose()
    assert cache.stats()["entries"] == 0
    assert not any(t.name == "inventory-cache-sweeper" and t.is_alive() for t in threading.enumerate())


def test_warm_stores_entries_while_product_is_unchanged(cache):
    generation = cache.generation(1)
    snapshot = InventorySnapshot(total_stock=4, size_inventory={"M": 4})
    assert cache.warm(1, {"M": 4, None: snapshot}, generation) is True
    assert cache.get(1, "M") == 4
    assert cache.get(1) is snapshot


@pytest.mark.parametrize("change", [
    lambda c: c.adjust(1, "M", -1),
    lambda c: c.invalidate(1),
    lambda c: c.invalidate(1, "M"),
    lambda c: c.invalidate(),
])
def test_warm_is_skipped_after_a_change(cache, change):
    generation = cache.generation(1)
    change(cache)
    assert cache.warm(1, {"M": 4}, generation) is False
    assert cache.get(1, "M") is NOT_FOUND


def test_other_products_do_not_block_warm(cache):
    generation = cache.generation(1)
    cache.adjust(2, "M", -1)
    assert cache.warm(1, {"M": 4}, generation) is True
