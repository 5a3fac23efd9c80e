"""Result cache with per-entry TTL and LRU eviction, plus a daily quota counter."""

import datetime
import time
from collections import OrderedDict
from typing import Any, Callable


class TTLCache:
    """TTL cache with max size enforcement via LRU eviction.

    Each entry carries its own lifetime, so catalog-derived results (24h) and
    personalized results (6h) can share one store. A ttl of 0 means the entry
    is already stale on the next read.

    Thread-safe for single-threaded asyncio (no await between check and set).
    """

    def __init__(self, max_size: int = 5000, clock: Callable[[], float] = time.time):
        self._max_size = max_size
        self._clock = clock
        self._data: OrderedDict[str, tuple[float, Any]] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, key: str) -> Any | None:
        """Get a cached value, or None if missing/expired."""
        entry = self._data.get(key)
        if entry is not None:
            expires_at, value = entry
            if self._clock() < expires_at:
                self._data.move_to_end(key)
                self.hits += 1
                return value
            del self._data[key]
        self.misses += 1
        return None

    def set(self, key: str, value: Any, ttl_hours: float) -> None:
        """Cache a value for ttl_hours. Evicts expired entries first, then least recently used."""
        self._data[key] = (self._clock() + ttl_hours * 3600, value)
        self._data.move_to_end(key)
        if len(self._data) > self._max_size:
            self._evict()

    def delete(self, key: str) -> None:
        self._data.pop(key, None)

    def clear(self) -> None:
        self._data.clear()

    def _evict(self) -> None:
        """Remove expired entries, then least recently used if still over max_size."""
        now = self._clock()
        expired = [k for k, (expires_at, _) in self._data.items() if now >= expires_at]
        for k in expired:
            del self._data[k]
        while len(self._data) > self._max_size:
            self._data.popitem(last=False)

    def stats(self) -> dict[str, int]:
        return {"size": len(self._data), "max_size": self._max_size, "hits": self.hits, "misses": self.misses}

    def __len__(self) -> int:
        return len(self._data)


def _utc_today() -> datetime.date:
    return datetime.datetime.now(datetime.timezone.utc).date()


class DailyQuota:
    """Per-day call budget for a paid dependency, reset at UTC midnight.

    ``check()`` counts the call before comparing, so a rejected call still
    uses up a slot for that day.
    """

    def __init__(self, name: str, limit: int, today: Callable[[], datetime.date] = _utc_today):
        self._name = name
        self._limit = limit
        self._today = today
        self._count = 0
        self._date = today()

    def _roll_over(self) -> None:
        today = self._today()
        if today != self._date:
            self._count = 0
            self._date = today

    def check(self) -> str | None:
        """Count one call. Returns an error message once the day's budget is spent."""
        self._roll_over()
        self._count += 1
        if self._count > self._limit:
            return f"{self._name} daily quota exceeded ({self._limit} requests/day)"
        return None

    @property
    def remaining(self) -> int:
        self._roll_over()
        return max(0, self._limit - self._count)
