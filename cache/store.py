"""
cache/store.py -- In-process TTL cache for read-mostly lookups.

Used by the authorization engine to hold role -> permission sets for a
short, bounded time (default 30 seconds). Entries expire on read; there is
no background sweeper. Catalog edits call invalidate() so the change is
visible on the next request instead of after the TTL.

The lock only guards dict mutation and is never held across a loader call,
so a slow store read cannot block other readers.

Usage:
    cache = TTLCache(ttl=30)
    perms = cache.get("moderator")            # value or None
    cache.set("moderator", frozenset({...}))
    cache.invalidate("moderator")             # one key
    cache.invalidate()                        # everything
"""

import threading
import time
from typing import Any, Callable, Hashable, Optional

_DEFAULT_TTL = 30.0  # seconds


class TTLCache:
    def __init__(self, ttl: float = _DEFAULT_TTL, timer: Callable[[], float] = time.monotonic) -> None:
        self.ttl = ttl
        self._timer = timer
        self._entries: dict = {}
        self._lock = threading.Lock()

    def get(self, key: Hashable) -> Optional[Any]:
        """Return the cached value for key if present and not expired."""
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            value, stored_at = entry
            if self._timer() - stored_at >= self.ttl:
                del self._entries[key]
                return None
            return value

    def set(self, key: Hashable, value: Any) -> None:
        """Store value for key, replacing any existing entry."""
        with self._lock:
            self._entries[key] = (value, self._timer())

    def get_or_load(self, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value, or call loader() outside the lock and cache its result."""
        value = self.get(key)
        if value is None:
            value = loader()
            self.set(key, value)
        return value

    def invalidate(self, key: Optional[Hashable] = None) -> None:
        """Drop one key, or every entry when key is None."""
        with self._lock:
            if key is None:
                self._entries.clear()
            else:
                self._entries.pop(key, None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)
