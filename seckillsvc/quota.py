"""Batch quota allocation: per-instance stock buckets with leases and a reaper."""

from seckillsvc.seckill_store import (
    KEY_PREFIX_SECKILL_ORDER,
    KEY_PREFIX_SECKILL_STOCK,
    KEY_PREFIX_SECKILL_USER,
    ORDER_STATUS_PENDING,
    SeckillOutcome,
    SeckillResult,
    SeckillStore,
    format_seckill_user_key,
)

KEY_PREFIX_QUOTA_BUCKET = "seckill:quota:bucket:"
KEY_PREFIX_QUOTA_LEASE_ZSET = "seckill:quota:lease:zset:"
KEY_PREFIX_QUOTA_REAPER_LOCK = "seckill:quota:reaper:lock:"
KEY_QUOTA_PRODUCTS_SET = "seckill:quota:products"

REAPER_LOCK_TTL_SECONDS = 1.2


def _bucket_prefix(seckill_product_id) -> str:
    return f"{KEY_PREFIX_QUOTA_BUCKET}{seckill_product_id}:"


def quota_bucket_key(seckill_product_id, instance_id) -> str:
    """Key of one instance's quota bucket for a seckill product."""
    return _bucket_prefix(seckill_product_id) + instance_id


def quota_lease_key(seckill_product_id) -> str:
    """Key of the sorted set of instance leases for a seckill product."""
    return f"{KEY_PREFIX_QUOTA_LEASE_ZSET}{seckill_product_id}"


def _read_int(raw, key) -> int:
    if raw is None:
        return 0
    try:
        return int(raw.strip())
    except ValueError:
        raise ValueError(f"value at {key!r} is not an integer") from None


class QuotaManager:
    """Moves stock between the global counter and per-instance buckets."""

    def __init__(self, seckill_store=None):
        self.seckill_store = SeckillStore() if seckill_store is None else seckill_store

    @property
    def store(self):
        return self.seckill_store.store

    def _now(self) -> int:
        return int(self.store.now())

    def ensure_quota(self, seckill_product_id, instance_id, batch_size, lease_ttl_seconds):
        """Take up to batch_size from global stock into the instance bucket.

        Returns (allocated, current bucket).
        """
        st = self.store
        global_key = KEY_PREFIX_SECKILL_STOCK + str(seckill_product_id)
        bucket_key = quota_bucket_key(seckill_product_id, instance_id)
        lease_key = quota_lease_key(seckill_product_id)
        product = str(seckill_product_id)
        now = self._now()
        with st.atomic():
            allocated = 0
            if batch_size > 0:
                global_stock = _read_int(st.get(global_key), global_key)
                if global_stock > 0:
                    allocated = min(int(batch_size), global_stock)
                    st.incr_by(global_key, -allocated)
                    st.incr_by(bucket_key, allocated)
            current_bucket = _read_int(st.get(bucket_key), bucket_key)
            if current_bucket > 0:
                st.zadd(lease_key, instance_id, now + lease_ttl_seconds)
                st.sadd(KEY_QUOTA_PRODUCTS_SET, product)
            else:
                st.zrem(lease_key, instance_id)
            if st.zcard(lease_key) == 0:
                st.srem(KEY_QUOTA_PRODUCTS_SET, product)
            return allocated, current_bucket

    def do_seckill_with_quota(self, request, instance_id) -> SeckillResult:
        """Decide a seckill atomically against the instance bucket."""
        st = self.store
        bucket_key = quota_bucket_key(request.seckill_product_id, instance_id)
        user_key = KEY_PREFIX_SECKILL_USER + format_seckill_user_key(
            request.seckill_product_id, request.user_id)
        order_key = KEY_PREFIX_SECKILL_ORDER + request.order_id
        quantity = int(request.quantity)
        now = self._now()
        with st.atomic():
            def bucket():
                return _read_int(st.get(bucket_key), bucket_key)

            if request.start_time > 0 and now < request.start_time:
                return SeckillResult(SeckillOutcome.NOT_STARTED, bucket())
            if request.end_time > 0 and now > request.end_time:
                return SeckillResult(SeckillOutcome.ENDED, bucket())
            if st.exists(user_key):
                return SeckillResult(SeckillOutcome.ALREADY_BOUGHT, bucket())
            current = bucket()
            if current < quantity:
                return SeckillResult(SeckillOutcome.STOCK_NOT_ENOUGH, current)
            new_bucket = st.incr_by(bucket_key, -quantity)
            if new_bucket < 0:
                st.incr_by(bucket_key, quantity)
                return SeckillResult(SeckillOutcome.STOCK_NOT_ENOUGH, current)
            st.set(user_key, request.order_id, request.ttl)
            ttl = request.order_status_ttl if request.order_status_ttl > 0 else None
            st.set(order_key, f"{ORDER_STATUS_PENDING}:{request.order_id}", ttl)
            return SeckillResult(SeckillOutcome.SUCCESS, new_bucket)

    def renew_lease(self, seckill_product_id, instance_id, lease_ttl_seconds) -> None:
        """Extend this instance's lease while its bucket holds quota; drop it otherwise."""
        st = self.store
        bucket_key = quota_bucket_key(seckill_product_id, instance_id)
        lease_key = quota_lease_key(seckill_product_id)
        left = _read_int(st.get(bucket_key), bucket_key)
        if left <= 0:
            st.zrem(lease_key, instance_id)
            return
        st.zadd(lease_key, instance_id, self._now() + lease_ttl_seconds)

    def renew_all_active_leases(self, instance_id, lease_ttl_seconds) -> None:
        """Renew leases for every locally tracked product with a positive counter.

        All products are attempted; the first error is raised afterwards.
        """
        first_error = None
        for spid, counter in self.seckill_store.local_stock_items():
            if counter.load() <= 0:
                continue
            try:
                self.renew_lease(spid, instance_id, lease_ttl_seconds)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error

    def reap_expired_quota_for_product(self, seckill_product_id) -> int:
        """Return quota of expired leases to global stock; 0 if another reaper holds the lock."""
        st = self.store
        lock_key = KEY_PREFIX_QUOTA_REAPER_LOCK + str(seckill_product_id)
        if not st.set_nx(lock_key, "1", REAPER_LOCK_TTL_SECONDS):
            return 0
        try:
            global_key = KEY_PREFIX_SECKILL_STOCK + str(seckill_product_id)
            lease_key = quota_lease_key(seckill_product_id)
            prefix = _bucket_prefix(seckill_product_id)
            now = self._now()
            reclaimed = 0
            with st.atomic():
                for inst in st.zrange_by_score(lease_key, now):
                    bucket_key = prefix + inst
                    left = _read_int(st.get(bucket_key), bucket_key)
                    if left > 0:
                        st.incr_by(global_key, left)
                        reclaimed += left
                    st.delete(bucket_key)
                    st.zrem(lease_key, inst)
                if st.zcard(lease_key) == 0:
                    st.srem(KEY_QUOTA_PRODUCTS_SET, str(seckill_product_id))
            return reclaimed
        finally:
            st.delete(lock_key)

    def reap_expired_quota_for_all_products(self) -> int:
        """Reap every product with leases; the first error is raised after all attempts."""
        total = 0
        first_error = None
        for item in sorted(self.store.smembers(KEY_QUOTA_PRODUCTS_SET)):
            try:
                spid = int(item)
            except ValueError:
                continue
            try:
                total += self.reap_expired_quota_for_product(spid)
            except Exception as exc:
                if first_error is None:
                    first_error = exc
        if first_error is not None:
            raise first_error
        return total