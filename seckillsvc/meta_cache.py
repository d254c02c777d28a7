"""Local copy of seckill product metadata, refreshed from the store."""

import threading

from seckillsvc.seckill_store import SeckillStore

DEFAULT_META_REFRESH_SECONDS = 3
DEFAULT_META_SCAN_COUNT = 500


class ProductMetaCache:
    """Copy-on-write map of seckill product id to metadata."""

    def __init__(self, enabled=False, store=None, refresh_seconds=0, scan_count=0):
        if refresh_seconds <= 0:
            refresh_seconds = DEFAULT_META_REFRESH_SECONDS
        if scan_count <= 0:
            scan_count = DEFAULT_META_SCAN_COUNT
        self.enabled = bool(enabled)
        self.store = store
        self.refresh_interval = float(refresh_seconds)
        self.scan_count = int(scan_count)
        self._lock = threading.Lock()
        self._data = {}

    def refresh(self) -> int:
        """Reload everything from the store; return how many entries were loaded."""
        if not self.enabled or self.store is None:
            return 0
        with self._lock:
            loaded = self.store.load_all_seckill_product_meta()
            self._data = dict(loaded)
            return len(self._data)

    def get(self, seckill_product_id):
        """Cached metadata, or None when disabled or absent."""
        if not self.enabled:
            return None
        return self._data.get(seckill_product_id)

    def product_ids(self) -> list:
        """Positive ids currently cached."""
        if not self.enabled:
            return []
        return [pid for pid in self._data if pid > 0]

    def upsert(self, meta) -> None:
        if not self.enabled or meta is None:
            return
        with self._lock:
            data = dict(self._data)
            data[meta.seckill_product_id] = meta
            self._data = data


__all__ = ["ProductMetaCache", "SeckillStore"]