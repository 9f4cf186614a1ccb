"""
Expansion cache

In-memory LRU of recurrence expansions keyed by event and window. Purely a
performance hint: a miss just re-expands, and change notices drop every
entry of the changed event.
"""

import time
from collections import OrderedDict
from datetime import datetime
from typing import Any, Optional, Tuple

from config.logging_config import get_module_logger

logger = get_module_logger(__name__)


class LRUCache:
    """LRU cache with optional per-entry TTL"""

    def __init__(self, maxsize: int = 1000):
        self.cache: "OrderedDict[str, Tuple[Any, Optional[float]]]" = OrderedDict()
        self.maxsize = maxsize

    def get(self, key: str) -> Optional[Any]:
        if key not in self.cache:
            return None

        value, expiry = self.cache[key]

        if expiry and time.time() > expiry:
            del self.cache[key]
            return None

        self.cache.move_to_end(key)
        return value

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        expiry = time.time() + ttl if ttl else None

        if key in self.cache:
            self.cache.move_to_end(key)

        self.cache[key] = (value, expiry)

        if len(self.cache) > self.maxsize:
            self.cache.popitem(last=False)

    def delete(self, key: str) -> None:
        if key in self.cache:
            del self.cache[key]

    def clear(self) -> None:
        self.cache.clear()

    def invalidate_prefix(self, prefix: str) -> int:
        """Drop every key starting with prefix, returning how many went"""
        keys_to_delete = [key for key in self.cache if key.startswith(prefix)]
        for key in keys_to_delete:
            del self.cache[key]
        return len(keys_to_delete)

    def __len__(self) -> int:
        return len(self.cache)


class ExpansionCache:
    """Expansion results per (event id, version, window)"""

    def __init__(self, maxsize: int = 5000, ttl: Optional[float] = None):
        self._lru = LRUCache(maxsize=maxsize)
        self._ttl = ttl
        self.hits = 0
        self.misses = 0

    @staticmethod
    def build_key(event_id: str, version: Optional[datetime], window_start: datetime, window_end: datetime) -> str:
        stamp = version.isoformat() if version else "-"
        return f"{event_id}|{stamp}|{window_start.isoformat()}|{window_end.isoformat()}"

    def get(self, event_id, version, window_start, window_end):
        value = self._lru.get(self.build_key(event_id, version, window_start, window_end))
        if value is None:
            self.misses += 1
        else:
            self.hits += 1
        return value

    def put(self, event_id, version, window_start, window_end, value) -> None:
        self._lru.set(self.build_key(event_id, version, window_start, window_end), value, self._ttl)

    def invalidate_event(self, event_id: str) -> int:
        """Idempotent: invalidating an unknown id removes nothing"""
        removed = self._lru.invalidate_prefix(f"{event_id}|")
        if removed:
            logger.debug("Dropped %d cached expansions of event %s", removed, event_id)
        return removed

    def clear(self) -> None:
        self._lru.clear()

    def __len__(self) -> int:
        return len(self._lru)
