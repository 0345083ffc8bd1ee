"""
TTL cache used for user/entity existence checks.
One instance per app, passed to the services that need it.
"""

import logging
import threading
import time

logger = logging.getLogger(__name__)


class TTLCache:
    """Thread-safe in-memory cache with per-entry expiry."""

    def __init__(self, default_ttl=300, clock=time.monotonic):
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries = {}
        self._lock = threading.Lock()
        self.stats = {"hits": 0, "misses": 0, "sets": 0, "evictions": 0}

    def get(self, key, default=None):
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self.stats["misses"] += 1
                return default

            value, expires_at = entry
            if expires_at <= self._clock():
                del self._entries[key]
                self.stats["evictions"] += 1
                self.stats["misses"] += 1
                return default

            self.stats["hits"] += 1
            return value

    def set(self, key, value, ttl=None):
        if ttl is None:
            ttl = self.default_ttl
        if ttl <= 0:
            return
        with self._lock:
            self._entries[key] = (value, self._clock() + ttl)
            self.stats["sets"] += 1

    def delete(self, key):
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self):
        with self._lock:
            self._entries.clear()

    def purge_expired(self):
        now = self._clock()
        with self._lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
            self.stats["evictions"] += len(expired)
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))
        return len(expired)

    def __len__(self):
        with self._lock:
            return len(self._entries)
