import pytest

from seckillsvc.product_filter import (
    BloomFilter,
    CuckooFilter,
    ProductIDFilter,
    ProductIDFilterConfig,
    bloom_hashes,
    calc_bloom_params,
    normalize_filter_type,
    split_mix64,
)


class FakeClock:
    def __init__(self):
        self.t = 0.0

    def __call__(self):
        return self.t


def test_rebuild_and_add():
    f = ProductIDFilter(ProductIDFilterConfig(
        enabled=True, expected_items=1024, false_positive_rate=0.000001,
        negative_cache_ttl_seconds=1, fallback_verify_enabled=True,
    ))
    f.rebuild([1001, 1002, 1003])
    assert f.may_contain(1001)
    assert f.may_contain(1002)
    f.add(2001)
    assert f.may_contain(2001)


def test_negative_cache_ttl():
    clock = FakeClock()
    f = ProductIDFilter(ProductIDFilterConfig(
        enabled=True, expected_items=128, false_positive_rate=0.001,
        negative_cache_ttl_seconds=1, fallback_verify_enabled=True,
    ), clock=clock)
    f.mark_not_exist(9999)
    assert f.is_known_not_exist(9999)
    clock.t += 1.1
    assert not f.is_known_not_exist(9999)


def test_disabled_bypass():
    f = ProductIDFilter(ProductIDFilterConfig(enabled=False))
    assert f.may_contain(12345)


def test_cuckoo_rebuild_and_add():
    f = ProductIDFilter(ProductIDFilterConfig(type="cuckoo", enabled=True, fallback_verify_enabled=True))
    f.rebuild([3001, 3002, 3003])
    assert f.may_contain(3001)
    f.add(4001)
    assert f.may_contain(4001)
    assert f.filter_type == "cuckoo"


def test_invalid_type_falls_back_to_bloom():
    f = ProductIDFilter(ProductIDFilterConfig(
        type="unknown-filter", enabled=True, expected_items=128, false_positive_rate=0.001,
    ))
    assert f.filter_type == "bloom"


@pytest.mark.parametrize("raw,expected", [
    ("  CUCKOO ", "cuckoo"), ("bloom", "bloom"), ("", "bloom"), (None, "bloom"), ("xyz", "bloom"),
])
def test_normalize_filter_type(raw, expected):
    assert normalize_filter_type(raw) == expected


def test_non_positive_ids_rejected_when_enabled():
    f = ProductIDFilter(ProductIDFilterConfig(enabled=True))
    f.add(0)
    assert not f.may_contain(0)
    assert not f.may_contain(-5)
    f.mark_not_exist(-1)
    assert not f.is_known_not_exist(-1)


def test_disabled_filter_ignores_negative_cache():
    f = ProductIDFilter(ProductIDFilterConfig(enabled=False))
    f.mark_not_exist(7)
    assert not f.is_known_not_exist(7)


def test_add_and_rebuild_clear_negative_cache():
    f = ProductIDFilter(ProductIDFilterConfig(enabled=True))
    f.mark_not_exist(10)
    f.mark_not_exist(11)
    f.add(10)
    assert not f.is_known_not_exist(10)
    assert f.is_known_not_exist(11)
    f.rebuild([12])
    assert not f.is_known_not_exist(11)


def test_default_negative_ttl_applies():
    clock = FakeClock()
    f = ProductIDFilter(ProductIDFilterConfig(enabled=True), clock=clock)
    f.mark_not_exist(5)
    clock.t += f.negative_ttl - 0.5
    assert f.is_known_not_exist(5)
    clock.t += 1
    assert not f.is_known_not_exist(5)


def test_calc_bloom_params_defaults_and_minimum():
    assert calc_bloom_params(0, 0) == calc_bloom_params(50000, 0.001)
    m, k = calc_bloom_params(1, 0.5)
    assert m >= 64
    assert k >= 1


def test_split_mix64_known_value():
    assert split_mix64(0) == 0xE220A8397B1DCDAF
    assert 0 <= split_mix64(2**64 - 1) < 2**64


def test_bloom_hashes_in_range_and_nonzero_second():
    for v in (0, 1, -1, 2**63):
        h1, h2 = bloom_hashes(v)
        assert 0 <= h1 < 2**64
        assert 0 < h2 < 2**64


def test_bloom_no_false_negatives_and_low_false_positive_rate():
    bloom = BloomFilter(1000, 0.01)
    members = range(1, 1001)
    for v in members:
        bloom.add(v)
    assert all(bloom.may_contain(v) for v in members)
    false_positives = sum(bloom.may_contain(v) for v in range(100000, 110000))
    assert false_positives < 500


def test_cuckoo_insert_unique_and_growth():
    cuckoo = CuckooFilter(capacity=16)
    assert cuckoo.insert_unique(42) is True
    assert cuckoo.insert_unique(42) is False
    values = list(range(1000, 1600))
    for v in values:
        cuckoo.insert_unique(v)
    assert all(cuckoo.lookup(v) for v in values)
    assert cuckoo.lookup(42)