"""
TTL- and size-bounded cache used for tool definitions and detection decisions.

Entries expire lazily on access; ``prune()`` drops expired entries and, if the
store is still over ``max_entries``, the oldest ones.  ``put`` prunes
automatically once the bound is exceeded.

Typical usage::

    cache: TTLCache[list[ToolDefinition]] = TTLCache(ttl=60.0)
    tools = cache.get("tools")
    if tools is None:
        tools = await backend.list_tools()
        cache.put("tools", tools)
"""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

V = TypeVar("V")


class TTLCache(Generic[V]):
    """Thread-safe key/value store with a time-to-live and an entry bound.

    Args:
        ttl: Seconds before an entry expires.  ``0.0`` or a negative value
            disables caching (every ``get`` returns ``None``).
        max_entries: Size above which ``put`` prunes.  ``None`` means unbounded.
    """

    def __init__(self, ttl: float = 300.0, max_entries: int | None = None) -> None:
        self._ttl = ttl
        self._max_entries = max_entries
        # key -> (value, created_at), insertion ordered (oldest first)
        self._store: OrderedDict[str, tuple[V, float]] = OrderedDict()
        self._lock = threading.Lock()

    @property
    def ttl(self) -> float:
        return self._ttl

    def configure(self, ttl: float, max_entries: int | None = None) -> None:
        with self._lock:
            self._ttl = ttl
            self._max_entries = max_entries

    def _expired(self, created_at: float, now: float) -> bool:
        return now - created_at >= self._ttl

    # ------------------------------------------------------------------
    # Public interface
    # ------------------------------------------------------------------

    def get(self, key: str) -> V | None:
        """Return the value for *key*, or ``None`` if absent or expired.

        Expired entries are evicted on access (lazy expiry).
        """
        if self._ttl <= 0:
            return None
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, created_at = entry
            if self._expired(created_at, time.monotonic()):
                del self._store[key]
                logger.debug("Cache expired: %s", key)
                return None
        logger.debug("Cache hit: %s", key)
        return value

    def put(self, key: str, value: V) -> None:
        """Store *value* under *key* with the configured TTL."""
        if self._ttl <= 0:
            return
        with self._lock:
            self._store.pop(key, None)
            self._store[key] = (value, time.monotonic())
            if self._max_entries is not None and len(self._store) > self._max_entries:
                self._prune_locked()
        logger.debug("Cache stored: %s (ttl=%.1fs)", key, self._ttl)

    def invalidate(self, key: str) -> bool:
        """Remove *key*; return True if it was present."""
        with self._lock:
            return self._store.pop(key, None) is not None

    def prune(self) -> int:
        """Drop expired entries, then the oldest ones past the bound.

        Returns:
            Number of entries removed.
        """
        with self._lock:
            return self._prune_locked()

    def _prune_locked(self) -> int:
        now = time.monotonic()
        expired = [k for k, (_v, created) in self._store.items() if self._expired(created, now)]
        for key in expired:
            del self._store[key]
        removed = len(expired)
        if self._max_entries is not None:
            while len(self._store) > self._max_entries:
                self._store.popitem(last=False)
                removed += 1
        if removed:
            logger.debug("Cache pruned %d entry/entries", removed)
        return removed

    def clear(self) -> None:
        """Remove all cached entries."""
        with self._lock:
            count = len(self._store)
            self._store.clear()
        logger.debug("Cache cleared (%d entries removed)", count)

    def __len__(self) -> int:
        """Return the number of entries currently in the cache (including expired)."""
        with self._lock:
            return len(self._store)
