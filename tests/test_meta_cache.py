from seckillsvc.meta_cache import DEFAULT_META_REFRESH_SECONDS, ProductMetaCache
from seckillsvc.seckill_store import SeckillProductMeta, SeckillStore


def _store_with_products():
    store = SeckillStore()
    store.set_seckill_product_info(11, 101, 990, "Phone", 1000, 2000, 3600)
    store.set_seckill_product_info(12, 102, 1990, "Laptop", 1000, 2000, 3600)
    return store


def test_refresh_loads_all_products():
    cache = ProductMetaCache(True, _store_with_products())
    assert cache.refresh() == 2
    meta = cache.get(11)
    assert meta.product_id == 101
    assert meta.seckill_price == 990
    assert meta.product_name == "Phone"
    assert sorted(cache.product_ids()) == [11, 12]


def test_disabled_cache_is_inert():
    cache = ProductMetaCache(False, _store_with_products())
    assert cache.refresh() == 0
    assert cache.get(11) is None
    assert cache.product_ids() == []
    cache.upsert(SeckillProductMeta(11, 101, 990, "Phone", 0, 0))
    assert cache.get(11) is None


def test_refresh_without_store_returns_zero():
    cache = ProductMetaCache(True, None)
    assert cache.refresh() == 0
    assert cache.get(11) is None


def test_upsert_adds_and_replaces():
    cache = ProductMetaCache(True, SeckillStore())
    cache.upsert(SeckillProductMeta(5, 50, 100, "Cup", 0, 0))
    assert cache.get(5).product_name == "Cup"
    cache.upsert(SeckillProductMeta(5, 50, 80, "Mug", 0, 0))
    assert cache.get(5).product_name == "Mug"
    assert cache.product_ids() == [5]


def test_refresh_replaces_upserted_entries():
    cache = ProductMetaCache(True, _store_with_products())
    cache.upsert(SeckillProductMeta(99, 1, 1, "Gone", 0, 0))
    cache.refresh()
    assert cache.get(99) is None
    assert cache.get(12).product_name == "Laptop"


def test_product_ids_skip_non_positive():
    cache = ProductMetaCache(True, SeckillStore())
    cache.upsert(SeckillProductMeta(0, 1, 1, "Zero", 0, 0))
    cache.upsert(SeckillProductMeta(3, 1, 1, "Three", 0, 0))
    assert cache.product_ids() == [3]


def test_default_refresh_interval():
    cache = ProductMetaCache(True, SeckillStore(), refresh_seconds=0)
    assert cache.refresh_interval == DEFAULT_META_REFRESH_SECONDS
    custom = ProductMetaCache(True, SeckillStore(), refresh_seconds=7)
    assert custom.refresh_interval == 7