"""Seckill product id pre-filter backed by a bloom or cuckoo filter."""

import hashlib
import math
import random
import threading
import time
from dataclasses import dataclass

MASK64 = (1 << 64) - 1

FILTER_TYPE_BLOOM = "bloom"
FILTER_TYPE_CUCKOO = "cuckoo"

DEFAULT_EXPECTED_ITEMS = 50000
DEFAULT_FALSE_POSITIVE_RATE = 0.001
DEFAULT_NEGATIVE_CACHE_TTL = 5
DEFAULT_MIN_BITS = 64

_GOLDEN = 0x9E3779B97F4A7C15


def normalize_filter_type(filter_type) -> str:
    """Map a configured type to 'cuckoo' or 'bloom' (the fallback)."""
    if (filter_type or "").strip().lower() == FILTER_TYPE_CUCKOO:
        return FILTER_TYPE_CUCKOO
    return FILTER_TYPE_BLOOM


def calc_bloom_params(expected, false_positive_rate):
    """Return (bit count m, hash count k) for the given capacity and error rate."""
    if expected <= 0:
        expected = DEFAULT_EXPECTED_ITEMS
    if not 0 < false_positive_rate < 1:
        false_positive_rate = DEFAULT_FALSE_POSITIVE_RATE
    m_float = -expected * math.log(false_positive_rate) / (math.log(2) ** 2)
    m_float = max(m_float, float(DEFAULT_MIN_BITS))
    m = math.ceil(m_float)
    k = max(math.ceil((m / expected) * math.log(2)), 1)
    return m, k


def split_mix64(x) -> int:
    z = (x + _GOLDEN) & MASK64
    z = ((z ^ (z >> 30)) * 0xBF58476D1CE4E5B9) & MASK64
    z = ((z ^ (z >> 27)) * 0x94D049BB133111EB) & MASK64
    return z ^ (z >> 31)


def bloom_hashes(value):
    """Two independent 64-bit hashes for double hashing."""
    v = value & MASK64
    h1 = split_mix64((v + _GOLDEN) & MASK64)
    h2 = split_mix64((v + 0x243F6A8885A308D3) & MASK64)
    if h2 == 0:
        h2 = _GOLDEN
    return h1, h2


class BloomFilter:
    """A fixed-size bloom filter over 64-bit integers."""

    def __init__(self, expected_items=DEFAULT_EXPECTED_ITEMS,
                 false_positive_rate=DEFAULT_FALSE_POSITIVE_RATE):
        self.bit_count, self.hash_count = calc_bloom_params(expected_items, false_positive_rate)
        self._bits = bytearray((self.bit_count + 7) // 8)
        self._lock = threading.Lock()

    def _indexes(self, value):
        h1, h2 = bloom_hashes(value)
        for i in range(self.hash_count):
            yield ((h1 + i * h2) & MASK64) % self.bit_count

    def add(self, value) -> None:
        with self._lock:
            for idx in self._indexes(value):
                self._bits[idx >> 3] |= 1 << (idx & 7)

    def may_contain(self, value) -> bool:
        with self._lock:
            return all(self._bits[idx >> 3] & (1 << (idx & 7)) for idx in self._indexes(value))


def _filter_key(value) -> bytes:
    return (value & MASK64).to_bytes(8, "little")


def _hash64(data: bytes) -> int:
    return int.from_bytes(hashlib.blake2b(data, digest_size=8).digest(), "little")


class _CuckooTable:
    BUCKET_SIZE = 4
    MAX_KICKS = 500

    def __init__(self, capacity, rng):
        buckets = 1
        while buckets * self.BUCKET_SIZE < capacity:
            buckets <<= 1
        self._mask = buckets - 1
        self._buckets = [[] for _ in range(buckets)]
        self._rng = rng
        self.capacity = buckets * self.BUCKET_SIZE
        self.count = 0

    def _alt(self, index, fp):
        return (index ^ _hash64(bytes([fp]))) & self._mask

    def _locate(self, key):
        h = _hash64(key)
        fp = (h >> 56) & 0xFF or 1
        i1 = h & self._mask
        return fp, i1, self._alt(i1, fp)

    def lookup(self, key) -> bool:
        fp, i1, i2 = self._locate(key)
        return fp in self._buckets[i1] or fp in self._buckets[i2]

    def insert(self, key) -> bool:
        fp, i1, i2 = self._locate(key)
        for idx in (i1, i2):
            if len(self._buckets[idx]) < self.BUCKET_SIZE:
                self._buckets[idx].append(fp)
                self.count += 1
                return True
        idx = self._rng.choice((i1, i2))
        swaps = []
        for _ in range(self.MAX_KICKS):
            bucket = self._buckets[idx]
            slot = self._rng.randrange(len(bucket))
            swaps.append((idx, slot, bucket[slot]))
            bucket[slot], fp = fp, bucket[slot]
            idx = self._alt(idx, fp)
            if len(self._buckets[idx]) < self.BUCKET_SIZE:
                self._buckets[idx].append(fp)
                self.count += 1
                return True
        for idx, slot, old in reversed(swaps):
            self._buckets[idx][slot] = old
        return False


class CuckooFilter:
    """A scalable cuckoo filter: grows by adding larger tables when full."""

    LOAD_FACTOR = 0.9
    SCALE_FACTOR = 2

    def __init__(self, capacity=10000):
        self._rng = random.Random()
        self._tables = [_CuckooTable(max(capacity, 1), self._rng)]
        self._lock = threading.RLock()

    def lookup(self, value) -> bool:
        key = _filter_key(value)
        with self._lock:
            return any(t.lookup(key) for t in self._tables)

    def insert_unique(self, value) -> bool:
        """Insert unless already (probably) present; return whether inserted."""
        key = _filter_key(value)
        with self._lock:
            if any(t.lookup(key) for t in self._tables):
                return False
            table = self._tables[-1]
            if table.count < table.capacity * self.LOAD_FACTOR and table.insert(key):
                return True
            capacity = table.capacity
            while True:
                capacity *= self.SCALE_FACTOR
                table = _CuckooTable(capacity, self._rng)
                self._tables.append(table)
                if table.insert(key):
                    return True


@dataclass
class ProductIDFilterConfig:
    type: str = ""
    enabled: bool = False
    expected_items: int = 0
    false_positive_rate: float = 0.0
    negative_cache_ttl_seconds: int = 0
    fallback_verify_enabled: bool = False


class ProductIDFilter:
    """Pre-filter for seckill product ids with a short-lived negative cache."""

    def __init__(self, config=None, *, clock=time.monotonic):
        config = config or ProductIDFilterConfig()
        expected = config.expected_items if config.expected_items > 0 else DEFAULT_EXPECTED_ITEMS
        fpr = config.false_positive_rate
        if not 0 < fpr < 1:
            fpr = DEFAULT_FALSE_POSITIVE_RATE
        negative_ttl = config.negative_cache_ttl_seconds
        if negative_ttl <= 0:
            negative_ttl = DEFAULT_NEGATIVE_CACHE_TTL

        self.filter_type = normalize_filter_type(config.type)
        self.enabled = bool(config.enabled)
        self.fallback_verify_enabled = bool(config.fallback_verify_enabled)
        self.negative_ttl = float(negative_ttl)
        self._expected = expected
        self._fpr = fpr
        self._clock = clock
        self._lock = threading.Lock()
        self._negative = {}
        self._engine = self._new_engine(expected) if self.enabled else None

    def _new_engine(self, expected):
        if self.filter_type == FILTER_TYPE_CUCKOO:
            return CuckooFilter()
        return BloomFilter(expected, self._fpr)

    @staticmethod
    def _engine_add(engine, product_id):
        if isinstance(engine, CuckooFilter):
            engine.insert_unique(product_id)
        else:
            engine.add(product_id)

    def rebuild(self, product_ids) -> None:
        """Replace the filter contents and clear the negative cache."""
        if not self.enabled or self._engine is None:
            return
        ids = list(product_ids)
        engine = self._new_engine(max(self._expected, len(ids)))
        for pid in ids:
            if pid > 0:
                self._engine_add(engine, pid)
        with self._lock:
            self._engine = engine
            self._negative.clear()

    def add(self, product_id) -> None:
        if not self.enabled or product_id <= 0 or self._engine is None:
            return
        with self._lock:
            engine = self._engine
            self._negative.pop(product_id, None)
        self._engine_add(engine, product_id)

    def may_contain(self, product_id) -> bool:
        if not self.enabled:
            return True
        if product_id <= 0:
            return False
        engine = self._engine
        if engine is None:
            return True
        if isinstance(engine, CuckooFilter):
            return engine.lookup(product_id)
        return engine.may_contain(product_id)

    def mark_not_exist(self, product_id) -> None:
        if not self.enabled or product_id <= 0 or self.negative_ttl <= 0:
            return
        with self._lock:
            self._negative[product_id] = self._clock() + self.negative_ttl

    def is_known_not_exist(self, product_id) -> bool:
        if not self.enabled or product_id <= 0:
            return False
        with self._lock:
            expire_at = self._negative.get(product_id)
            if expire_at is None:
                return False
            if self._clock() > expire_at:
                del self._negative[product_id]
                return False
            return True