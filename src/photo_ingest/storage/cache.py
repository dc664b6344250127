"""TTL cache component owned by the image catalog."""

import threading
import time
from typing import Any, Callable, Dict, Optional, Tuple


class TTLCache:
    """
    Explicit get/put/invalidate cache with a single TTL policy.

    `invalidate(prefix)` drops every key starting with `prefix`;
    `invalidate()` clears everything. Each invalidation bumps `generation`;
    a `put` tagged with an older generation is dropped, so a value computed
    before an invalidation never lands after it.
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self._ttl = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, Tuple[float, Any]] = {}
        self._lock = threading.Lock()
        self._generation = 0
        self.hits = 0
        self.misses = 0

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or self._clock() >= entry[0]:
                if entry is not None:
                    del self._entries[key]
                self.misses += 1
                return None
            self.hits += 1
            return entry[1]

    def put(self, key: str, value: Any, generation: Optional[int] = None) -> bool:
        if self._ttl <= 0:
            return False
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entries[key] = (self._clock() + self._ttl, value)
            return True

    def invalidate(self, prefix: Optional[str] = None) -> int:
        with self._lock:
            self._generation += 1
            if prefix is None:
                removed = len(self._entries)
                self._entries.clear()
                return removed
            keys = [key for key in self._entries if key.startswith(prefix)]
            for key in keys:
                del self._entries[key]
            return len(keys)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [key for key, (deadline, _) in self._entries.items() if now >= deadline]
            for key in expired:
                del self._entries[key]
            return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
