"""Seckill state kept in the key/value store: stock, orders, user marks and local counters."""

import re
import threading
from dataclasses import dataclass
from enum import IntEnum

from seckillsvc.kvstore import MemoryStore

KEY_PREFIX_SECKILL_STOCK = "seckill:stock:"
KEY_PREFIX_SECKILL_USER = "seckill:user:"
KEY_PREFIX_SECKILL_ORDER = "seckill:order:"
KEY_PREFIX_SECKILL_INFO = "seckill:info:"
KEY_PREFIX_SECKILL_PRODUCT_NAME = "seckill:product_name:"

ORDER_STATUS_PENDING = "pending"
ORDER_STATUS_SUCCESS = "success"
ORDER_STATUS_FAILED = "failed"
ORDER_STATUS_NOT_START = "not_started"
ORDER_STATUS_ENDED = "ended"

DEFAULT_PRODUCT_NAME = "秒杀商品"

_INT64_MAX = (1 << 63) - 1
_INT64_MIN = -(1 << 63)
_INT_RE = re.compile(r"[+-]?[0-9]+")


class SeckillOutcome(IntEnum):
    """Result codes of an atomic seckill attempt."""

    SUCCESS = 1
    STOCK_NOT_ENOUGH = 0
    ALREADY_BOUGHT = -1
    NOT_STARTED = -3
    ENDED = -4


class CompensateResult(IntEnum):
    """Result codes of a failed-order compensation."""

    COMPENSATED = 0
    ALREADY_FAILED = 1
    ALREADY_SUCCESS = 2
    INVALID_STATUS = 3
    ORDER_NOT_FOUND = -1


@dataclass
class SeckillRequest:
    seckill_product_id: int
    user_id: int
    quantity: int
    order_id: str
    ttl: int = 0
    start_time: int = 0
    end_time: int = 0
    order_status_ttl: int = 0


@dataclass
class SeckillResult:
    code: int
    stock: int


@dataclass
class SeckillProductMeta:
    seckill_product_id: int
    product_id: int
    seckill_price: int
    product_name: str
    start_time: int
    end_time: int


@dataclass
class OrderInfo:
    """Order state; either minimal (status:orderId) or with full details."""

    status: str
    order_id: str = ""
    product_id: int = 0
    quantity: int = 0
    amount: int = 0
    product_name: str = ""


class AtomicCounter:
    """A thread-safe integer."""

    def __init__(self, value: int = 0):
        self._value = int(value)
        self._lock = threading.Lock()

    def load(self) -> int:
        with self._lock:
            return self._value

    def store(self, value) -> None:
        with self._lock:
            self._value = int(value)

    def add(self, delta) -> int:
        """Add delta and return the new value."""
        with self._lock:
            self._value += int(delta)
            return self._value


def format_seckill_user_key(seckill_product_id, user_id) -> str:
    """The suffix of a user key: '{seckillProductId}:{userId}'."""
    return f"{seckill_product_id}:{user_id}"


def _stock_key(seckill_product_id) -> str:
    return KEY_PREFIX_SECKILL_STOCK + str(seckill_product_id)


def _user_key(seckill_product_id, user_id) -> str:
    return KEY_PREFIX_SECKILL_USER + format_seckill_user_key(seckill_product_id, user_id)


def _order_key(order_id) -> str:
    return KEY_PREFIX_SECKILL_ORDER + order_id


def _parse_int(text):
    """Parse a signed decimal int64; None when the text is not one."""
    if not _INT_RE.fullmatch(text):
        return None
    return max(_INT64_MIN, min(_INT64_MAX, int(text)))


def _parse_int_or_zero(text) -> int:
    value = _parse_int(text)
    return 0 if value is None else value


def _number(raw, key) -> int:
    """A stored counter, treating a missing key as 0."""
    if raw is None:
        return 0
    value = _parse_int(raw.strip())
    if value is None:
        raise ValueError(f"value at {key!r} is not an integer")
    return value


class SeckillStore:
    """Seckill operations over a MemoryStore, each atomic where it must be."""

    def __init__(self, store=None):
        self.store = MemoryStore() if store is None else store
        self._local_stock = {}
        self._local_lock = threading.Lock()

    def _now(self) -> int:
        return int(self.store.now())

    # ----- seckill decision -----

    def do_seckill(self, request) -> SeckillResult:
        """Check time window, duplicate purchase and stock, then reserve atomically."""
        stock_key = _stock_key(request.seckill_product_id)
        user_key = _user_key(request.seckill_product_id, request.user_id)
        order_key = _order_key(request.order_id)
        quantity = int(request.quantity)
        now = self._now()
        st = self.store
        with st.atomic():
            def current():
                return _number(st.get(stock_key), stock_key)

            if request.start_time > 0 and now < request.start_time:
                return SeckillResult(SeckillOutcome.NOT_STARTED, current())
            if request.end_time > 0 and now > request.end_time:
                return SeckillResult(SeckillOutcome.ENDED, current())
            if st.exists(user_key):
                return SeckillResult(SeckillOutcome.ALREADY_BOUGHT, current())
            stock = current()
            if stock < quantity:
                return SeckillResult(SeckillOutcome.STOCK_NOT_ENOUGH, stock)
            new_stock = st.incr_by(stock_key, -quantity)
            if new_stock < 0:
                st.incr_by(stock_key, quantity)
                return SeckillResult(SeckillOutcome.STOCK_NOT_ENOUGH, stock)
            st.set(user_key, request.order_id, request.ttl)
            order_value = f"{ORDER_STATUS_PENDING}:{request.order_id}"
            ttl = request.order_status_ttl if request.order_status_ttl > 0 else None
            st.set(order_key, order_value, ttl)
            return SeckillResult(SeckillOutcome.SUCCESS, new_stock)

    # ----- stock -----

    def init_stock(self, seckill_product_id, stock) -> None:
        self.store.set(_stock_key(seckill_product_id), int(stock), None)

    def get_stock(self, seckill_product_id) -> int:
        """Global stock; 0 when the key is missing."""
        key = _stock_key(seckill_product_id)
        return _number(self.store.get(key), key)

    def rollback_stock(self, seckill_product_id, quantity) -> None:
        self.store.incr_by(_stock_key(seckill_product_id), int(quantity))

    # ----- order status -----

    def set_order_status(self, order_id, status, ttl) -> None:
        self.store.set(_order_key(order_id), status, ttl)

    def get_order_status(self, order_id):
        """Raw order value, or None when missing."""
        return self.store.get(_order_key(order_id))

    def delete_user_key(self, seckill_product_id, user_id) -> None:
        self.store.delete(_user_key(seckill_product_id, user_id))

    # ----- product info -----

    def set_seckill_product_info(self, seckill_product_id, product_id, seckill_price,
                                 product_name, start_time, end_time, ttl_seconds) -> None:
        """Store 'productId:seckillPrice:startTime:endTime' and the name separately."""
        info_value = f"{product_id}:{seckill_price}:{start_time}:{end_time}"
        self.store.set(KEY_PREFIX_SECKILL_INFO + str(seckill_product_id), info_value, ttl_seconds)
        self.store.set(KEY_PREFIX_SECKILL_PRODUCT_NAME + str(seckill_product_id),
                       product_name, ttl_seconds)

    def _read_product_info(self, seckill_product_id):
        raw = self.store.get(KEY_PREFIX_SECKILL_INFO + str(seckill_product_id))
        if raw is None:
            return 0, 0, "", 0, 0
        parts = raw.split(":")
        numbers = [_parse_int_or_zero(p) for p in parts[:4]]
        numbers += [0] * (4 - len(numbers))
        product_id, seckill_price, start_time, end_time = numbers
        try:
            name = self.store.get(KEY_PREFIX_SECKILL_PRODUCT_NAME + str(seckill_product_id))
        except TypeError:
            name = None
        return product_id, seckill_price, name or DEFAULT_PRODUCT_NAME, start_time, end_time

    def get_seckill_product_meta(self, seckill_product_id):
        """Product metadata, or None when nothing is stored for the id."""
        product_id, price, name, start, end = self._read_product_info(seckill_product_id)
        if product_id == 0 and price == 0 and start == 0 and end == 0:
            return None
        return SeckillProductMeta(seckill_product_id, product_id, price, name, start, end)

    def load_all_seckill_product_meta(self) -> dict:
        """All stored product metadata keyed by seckill product id."""
        result = {}
        for key in self.store.scan_prefix(KEY_PREFIX_SECKILL_INFO):
            spid = _parse_int(key[len(KEY_PREFIX_SECKILL_INFO):])
            if spid is None:
                continue
            meta = self.get_seckill_product_meta(spid)
            if meta is not None:
                result[spid] = meta
        return result

    # ----- user keys and order info -----

    def check_user_key_exists(self, user_key) -> bool:
        return self.store.exists(user_key)

    def get_user_order_id(self, user_key):
        """The order id held by a user key, or None when missing."""
        return self.store.get(user_key)

    def set_order_info(self, order_id, info, ttl) -> None:
        """Write full details when any are set, else the minimal 'status:orderId'."""
        if info is None:
            raise ValueError("order info is required")
        if info.product_id > 0 or info.quantity > 0 or info.amount > 0 or info.product_name:
            value = (f"{info.status}:{info.product_id}:{info.quantity}:"
                     f"{info.amount}:{info.product_name}")
        else:
            value = f"{info.status}:{info.order_id or order_id}"
        self.store.set(_order_key(order_id), value, ttl)

    def get_order_info(self, order_id):
        """Parse the stored order value; None when missing or expired."""
        raw = self.store.get(_order_key(order_id))
        if raw is None:
            return None
        if raw in (ORDER_STATUS_PENDING, ORDER_STATUS_SUCCESS, ORDER_STATUS_FAILED):
            return OrderInfo(status=raw, order_id=order_id)
        parts = raw.split(":", 4)
        info = OrderInfo(status=parts[0], order_id=order_id)
        if len(parts) == 2:
            info.order_id = parts[1]
            return info
        if len(parts) >= 2:
            info.product_id = _parse_int_or_zero(parts[1])
        if len(parts) >= 3:
            info.quantity = _parse_int_or_zero(parts[2])
        if len(parts) >= 4:
            info.amount = _parse_int_or_zero(parts[3])
        if len(parts) >= 5:
            info.product_name = parts[4]
        return info

    def compensate_failed_order(self, order_id, seckill_product_id, user_id, quantity,
                                order_status_ttl):
        """Move a pending order to failed, return stock and free the user key.

        Returns (CompensateResult, current stock).
        """
        order_key = _order_key(order_id)
        stock_key = _stock_key(seckill_product_id)
        user_key = _user_key(seckill_product_id, user_id)
        st = self.store
        with st.atomic():
            def current():
                return _number(st.get(stock_key), stock_key)

            value = st.get(order_key)
            if value is None:
                return CompensateResult.ORDER_NOT_FOUND, current()
            idx = value.find(":")
            status = value if idx < 0 else value[:idx]
            if status == ORDER_STATUS_FAILED:
                return CompensateResult.ALREADY_FAILED, current()
            if status == ORDER_STATUS_SUCCESS:
                return CompensateResult.ALREADY_SUCCESS, current()
            if status != ORDER_STATUS_PENDING:
                return CompensateResult.INVALID_STATUS, current()
            failed_value = ORDER_STATUS_FAILED if idx < 0 else ORDER_STATUS_FAILED + value[idx:]
            st.set(order_key, failed_value, order_status_ttl if order_status_ttl > 0 else None)
            new_stock = st.incr_by(stock_key, int(quantity))
            st.delete(user_key)
            return CompensateResult.COMPENSATED, new_stock

    # ----- local counters -----

    def get_or_init_local_stock(self, seckill_product_id) -> AtomicCounter:
        """The local counter, created from the stored stock on first use."""
        with self._local_lock:
            counter = self._local_stock.get(seckill_product_id)
        if counter is not None:
            return counter
        stock = self.get_stock(seckill_product_id)
        with self._local_lock:
            return self._local_stock.setdefault(seckill_product_id, AtomicCounter(stock))

    def get_or_init_local_stock_with_value(self, seckill_product_id, initial) -> AtomicCounter:
        with self._local_lock:
            return self._local_stock.setdefault(seckill_product_id, AtomicCounter(initial))

    def get_local_stock(self, seckill_product_id) -> int:
        """Local counter value; 0 when not initialised."""
        with self._local_lock:
            counter = self._local_stock.get(seckill_product_id)
        return 0 if counter is None else counter.load()

    def decr_local_stock(self, seckill_product_id, quantity) -> int:
        """Subtract from the local counter; 1 (let through) when not initialised."""
        with self._local_lock:
            counter = self._local_stock.get(seckill_product_id)
        if counter is None:
            return 1
        return counter.add(-int(quantity))

    def incr_local_stock(self, seckill_product_id, quantity) -> None:
        with self._local_lock:
            counter = self._local_stock.get(seckill_product_id)
        if counter is not None:
            counter.add(int(quantity))

    def local_stock_items(self) -> list:
        """Snapshot of (seckill product id, counter) pairs."""
        with self._local_lock:
            return list(self._local_stock.items())