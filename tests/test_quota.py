import pytest

from seckillsvc.kvstore import MemoryStore
from seckillsvc.quota import (
    KEY_PREFIX_QUOTA_REAPER_LOCK,
    KEY_QUOTA_PRODUCTS_SET,
    QuotaManager,
    quota_bucket_key,
    quota_lease_key,
)
from seckillsvc.seckill_store import SeckillOutcome, SeckillRequest, SeckillStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def seckill_store(clock):
    return SeckillStore(MemoryStore(clock=clock))


@pytest.fixture
def manager(seckill_store):
    return QuotaManager(seckill_store)


def test_key_formats():
    assert quota_bucket_key(5, "host:1") == "seckill:quota:bucket:5:host:1"
    assert quota_lease_key(5) == "seckill:quota:lease:zset:5"


def test_ensure_quota_moves_stock_into_bucket(manager, seckill_store):
    seckill_store.init_stock(7, 10)
    allocated, bucket = manager.ensure_quota(7, "inst", 4, 15)
    assert allocated == 4
    assert bucket == 4
    assert seckill_store.get_stock(7) + bucket == 10
    assert manager.store.zcard(quota_lease_key(7)) == 1
    assert "7" in manager.store.smembers(KEY_QUOTA_PRODUCTS_SET)


def test_ensure_quota_capped_by_global(manager, seckill_store):
    seckill_store.init_stock(7, 3)
    allocated, bucket = manager.ensure_quota(7, "inst", 5, 15)
    assert allocated == 3
    assert bucket == 3
    assert seckill_store.get_stock(7) == 0


def test_ensure_quota_empty_global_clears_lease(manager, seckill_store):
    seckill_store.init_stock(7, 0)
    assert manager.ensure_quota(7, "inst", 5, 15) == (0, 0)
    assert manager.store.zcard(quota_lease_key(7)) == 0
    assert "7" not in manager.store.smembers(KEY_QUOTA_PRODUCTS_SET)


def _request(order_id, user_id=1, quantity=1, start=0, end=0):
    return SeckillRequest(seckill_product_id=7, user_id=user_id, quantity=quantity,
                          order_id=order_id, ttl=300, start_time=start, end_time=end,
                          order_status_ttl=86400)


def test_do_seckill_with_quota_success_and_duplicate(manager, seckill_store):
    seckill_store.init_stock(7, 5)
    _, bucket = manager.ensure_quota(7, "inst", 5, 15)
    result = manager.do_seckill_with_quota(_request("S1"), "inst")
    assert result.code == SeckillOutcome.SUCCESS
    assert result.stock == bucket - 1
    assert seckill_store.get_order_status("S1") == "pending:S1"
    again = manager.do_seckill_with_quota(_request("S2"), "inst")
    assert again.code == SeckillOutcome.ALREADY_BOUGHT
    assert again.stock == result.stock


def test_do_seckill_with_quota_not_enough(manager, seckill_store):
    result = manager.do_seckill_with_quota(_request("S1", quantity=2), "inst")
    assert result.code == SeckillOutcome.STOCK_NOT_ENOUGH
    assert seckill_store.get_order_status("S1") is None


def test_do_seckill_with_quota_time_window(manager, clock):
    early = manager.do_seckill_with_quota(_request("S1", start=clock.now + 100), "inst")
    assert early.code == SeckillOutcome.NOT_STARTED
    late = manager.do_seckill_with_quota(_request("S2", end=clock.now - 100), "inst")
    assert late.code == SeckillOutcome.ENDED


def test_reap_returns_expired_quota(manager, seckill_store, clock):
    seckill_store.init_stock(7, 10)
    manager.ensure_quota(7, "inst", 4, 10)
    clock.now += 11
    assert manager.reap_expired_quota_for_product(7) == 4
    assert seckill_store.get_stock(7) == 10
    assert manager.store.get(quota_bucket_key(7, "inst")) is None
    assert "7" not in manager.store.smembers(KEY_QUOTA_PRODUCTS_SET)


def test_reap_keeps_live_leases(manager, seckill_store, clock):
    seckill_store.init_stock(7, 10)
    _, bucket = manager.ensure_quota(7, "inst", 4, 10)
    clock.now += 5
    assert manager.reap_expired_quota_for_product(7) == 0
    assert seckill_store.get_stock(7) + bucket == 10


def test_reap_skips_when_locked(manager, seckill_store, clock):
    seckill_store.init_stock(7, 10)
    manager.ensure_quota(7, "inst", 4, 10)
    clock.now += 11
    manager.store.set_nx(KEY_PREFIX_QUOTA_REAPER_LOCK + "7", "1", 5)
    assert manager.reap_expired_quota_for_product(7) == 0
    assert manager.store.zcard(quota_lease_key(7)) == 1


def test_reap_all_products(manager, seckill_store, clock):
    seckill_store.init_stock(7, 10)
    seckill_store.init_stock(8, 10)
    a, _ = manager.ensure_quota(7, "inst", 3, 10)
    b, _ = manager.ensure_quota(8, "inst", 2, 10)
    clock.now += 11
    assert manager.reap_expired_quota_for_all_products() == a + b
    assert manager.store.smembers(KEY_QUOTA_PRODUCTS_SET) == set()


def test_renew_lease_drops_empty_bucket(manager, seckill_store):
    seckill_store.init_stock(7, 10)
    manager.ensure_quota(7, "inst", 2, 10)
    manager.store.set(quota_bucket_key(7, "inst"), 0)
    manager.renew_lease(7, "inst", 10)
    assert manager.store.zcard(quota_lease_key(7)) == 0


def test_renew_all_active_leases_extends(manager, seckill_store, clock):
    seckill_store.init_stock(7, 10)
    allocated, _ = manager.ensure_quota(7, "inst", 4, 10)
    seckill_store.get_or_init_local_stock_with_value(7, allocated)
    clock.now += 8
    manager.renew_all_active_leases("inst", 10)
    clock.now += 8
    assert manager.reap_expired_quota_for_product(7) == 0
    assert manager.store.zcard(quota_lease_key(7)) == 1