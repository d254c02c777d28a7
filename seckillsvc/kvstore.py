"""A thread-safe in-memory key/value store with Redis-like semantics."""

import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass


@dataclass
class _Entry:
    value: object
    expire_at: float = None


class MemoryStore:
    """Strings, sorted sets and sets with expiry; atomic() groups operations."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._data = {}
        self._lock = threading.RLock()

    @contextmanager
    def atomic(self):
        """Hold the store lock so a sequence of operations runs as one."""
        with self._lock:
            yield self

    def now(self) -> float:
        """Current time in seconds, from the store's clock."""
        return self._clock()

    def _live(self, key):
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expire_at is not None and self._clock() > entry.expire_at:
            del self._data[key]
            return None
        return entry

    def _typed(self, key, kind):
        entry = self._live(key)
        if entry is not None and not isinstance(entry.value, kind):
            raise TypeError(f"WRONGTYPE operation against key {key!r}")
        return entry

    def _expiry(self, ttl):
        if ttl is None or ttl <= 0:
            return None
        return self._clock() + ttl

    def get(self, key):
        """Return the string at key, or None."""
        with self._lock:
            entry = self._typed(key, str)
            return None if entry is None else entry.value

    def set(self, key, value, ttl=None) -> None:
        """Store a string; ttl in seconds, None or <= 0 means no expiry."""
        with self._lock:
            self._data[key] = _Entry(str(value), self._expiry(ttl))

    def set_nx(self, key, value, ttl=None) -> bool:
        """Set only if the key does not exist; return whether it was set."""
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = _Entry(str(value), self._expiry(ttl))
            return True

    def delete(self, *args) -> int:
        """Delete keys; return how many existed."""
        with self._lock:
            removed = 0
            for key in args:
                if self._live(key) is not None:
                    del self._data[key]
                    removed += 1
            return removed

    def exists(self, key) -> bool:
        with self._lock:
            return self._live(key) is not None

    def incr_by(self, key, amount) -> int:
        """Add to the integer at key (missing counts as 0); keeps its expiry."""
        with self._lock:
            entry = self._typed(key, str)
            if entry is None:
                current, expire_at = 0, None
            else:
                try:
                    current = int(entry.value)
                except ValueError:
                    raise ValueError(f"value at {key!r} is not an integer") from None
                expire_at = entry.expire_at
            new_value = current + int(amount)
            self._data[key] = _Entry(str(new_value), expire_at)
            return new_value

    def zadd(self, key, member, score) -> int:
        """Add or update a sorted-set member; return 1 if it was new."""
        with self._lock:
            entry = self._typed(key, dict)
            if entry is None:
                entry = _Entry({})
                self._data[key] = entry
            added = 0 if member in entry.value else 1
            entry.value[str(member)] = float(score)
            return added

    def zrem(self, key, member) -> int:
        with self._lock:
            entry = self._typed(key, dict)
            if entry is None or member not in entry.value:
                return 0
            del entry.value[member]
            if not entry.value:
                del self._data[key]
            return 1

    def zrange_by_score(self, key, max_score) -> list:
        """Members with score <= max_score, ordered by score then member."""
        with self._lock:
            entry = self._typed(key, dict)
            if entry is None:
                return []
            matches = [(s, m) for m, s in entry.value.items() if s <= max_score]
            return [m for _, m in sorted(matches)]

    def zcard(self, key) -> int:
        with self._lock:
            entry = self._typed(key, dict)
            return 0 if entry is None else len(entry.value)

    def sadd(self, key, member) -> int:
        with self._lock:
            entry = self._typed(key, set)
            if entry is None:
                entry = _Entry(set())
                self._data[key] = entry
            member = str(member)
            if member in entry.value:
                return 0
            entry.value.add(member)
            return 1

    def srem(self, key, member) -> int:
        with self._lock:
            entry = self._typed(key, set)
            member = str(member)
            if entry is None or member not in entry.value:
                return 0
            entry.value.discard(member)
            if not entry.value:
                del self._data[key]
            return 1

    def smembers(self, key) -> set:
        with self._lock:
            entry = self._typed(key, set)
            return set() if entry is None else set(entry.value)

    def scan_prefix(self, prefix) -> list:
        """Sorted live keys starting with prefix."""
        with self._lock:
            return sorted(k for k in list(self._data) if k.startswith(prefix) and self._live(k))