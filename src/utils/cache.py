"""TTL key-value store used for short-lived caches (grade CMVs, comps searches).

Callers depend on the ``TTLStore`` protocol only, so the in-process store can be
swapped for a shared backend without touching them. Entries are best effort:
a miss only costs a recompute.
"""

import threading
import time
from typing import Any, Callable, Dict, Optional, Protocol, Tuple


class TTLStore(Protocol):
    def get(self, key: str) -> Optional[Any]: ...

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None: ...

    def expire(self, key: str, ttl_seconds: float) -> bool: ...

    def delete(self, key: str) -> None: ...


class InMemoryTTLStore:
    """Single-process TTL store. Expired entries are evicted lazily on read and on write."""

    def __init__(
        self,
        default_ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.default_ttl_seconds = default_ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._data: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._data.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if expires_at <= self._clock():
                del self._data[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl_seconds: Optional[float] = None) -> None:
        ttl = self.default_ttl_seconds if ttl_seconds is None else ttl_seconds
        with self._lock:
            self._evict_expired()
            if key not in self._data and len(self._data) >= self.max_entries:
                # drop the entry closest to expiry
                oldest = min(self._data, key=lambda k: self._data[k][1])
                del self._data[oldest]
            self._data[key] = (value, self._clock() + ttl)

    def expire(self, key: str, ttl_seconds: float) -> bool:
        """Reset the TTL of a live key. Returns False when the key is absent or expired."""
        with self._lock:
            entry = self._data.get(key)
            if entry is None or entry[1] <= self._clock():
                self._data.pop(key, None)
                return False
            self._data[key] = (entry[0], self._clock() + ttl_seconds)
            return True

    def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            self._evict_expired()
            return len(self._data)

    def _evict_expired(self):
        now = self._clock()
        for k in [k for k, (_, exp) in self._data.items() if exp <= now]:
            del self._data[k]


GRADE_CMV_TTL_SECONDS = 24 * 60 * 60
COMPS_TTL_SECONDS = 15 * 60

grade_cmv_cache = InMemoryTTLStore(default_ttl_seconds=GRADE_CMV_TTL_SECONDS)
comps_cache = InMemoryTTLStore(default_ttl_seconds=COMPS_TTL_SECONDS)
