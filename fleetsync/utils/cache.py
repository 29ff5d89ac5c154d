"""In-memory LRU cache with per-entry TTL and namespaces"""

import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Tuple

logger = logging.getLogger(__name__)


@dataclass
class _Entry:
    value: Any
    expires_at: float
    created_at: float = field(default_factory=time.monotonic)


class CacheManager:
    """LRU cache keyed by (namespace, key).

    Expired entries are dropped lazily on access and in bulk by ``cleanup()``.
    Safe to share between the event loop and worker threads.
    """

    def __init__(self, max_size: int = 100, default_ttl: float = 60.0, clock: Callable[[], float] = time.monotonic):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self.max_size = max_size
        self.default_ttl = default_ttl
        self._clock = clock
        self._entries: "OrderedDict[Tuple[str, str], _Entry]" = OrderedDict()
        self._lock = threading.Lock()
        self.stats = {
            'hits': 0,
            'misses': 0,
            'sets': 0,
            'deletes': 0,
            'evictions': 0,
        }

    def get(self, namespace: str, key: str, default: Any = None) -> Any:
        cache_key = (namespace, key)
        with self._lock:
            entry = self._entries.get(cache_key)
            if entry is None:
                self.stats['misses'] += 1
                return default
            if self._clock() >= entry.expires_at:
                del self._entries[cache_key]
                self.stats['misses'] += 1
                self.stats['evictions'] += 1
                return default
            self._entries.move_to_end(cache_key)
            self.stats['hits'] += 1
            return entry.value

    def set(self, namespace: str, key: str, value: Any, ttl: Optional[float] = None):
        cache_key = (namespace, key)
        effective_ttl = self.default_ttl if ttl is None else ttl
        with self._lock:
            if cache_key not in self._entries and len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self.stats['evictions'] += 1
                logger.debug(f"Evicted least recently used entry {evicted[0]}:{evicted[1]}")
            self._entries[cache_key] = _Entry(value=value, expires_at=self._clock() + effective_ttl)
            self._entries.move_to_end(cache_key)
            self.stats['sets'] += 1

    def get_or_set(self, namespace: str, key: str, factory: Callable[[], Any], ttl: Optional[float] = None) -> Any:
        """Return the cached value or compute, store and return it"""
        sentinel = object()
        value = self.get(namespace, key, sentinel)
        if value is sentinel:
            value = factory()
            self.set(namespace, key, value, ttl)
        return value

    def delete(self, namespace: str, key: str) -> bool:
        with self._lock:
            if self._entries.pop((namespace, key), None) is None:
                return False
            self.stats['deletes'] += 1
            return True

    def invalidate_namespace(self, namespace: str) -> int:
        with self._lock:
            keys = [k for k in self._entries if k[0] == namespace]
            for k in keys:
                del self._entries[k]
            self.stats['deletes'] += len(keys)
            return len(keys)

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
            self.stats['deletes'] += size
            return size

    def cleanup(self) -> int:
        """Drop every expired entry; returns how many were removed"""
        now = self._clock()
        with self._lock:
            expired = [k for k, entry in self._entries.items() if now >= entry.expires_at]
            for k in expired:
                del self._entries[k]
            self.stats['evictions'] += len(expired)
            return len(expired)

    def __len__(self) -> int:
        return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            lookups = self.stats['hits'] + self.stats['misses']
            hit_rate = (self.stats['hits'] / lookups * 100) if lookups else 0.0
            return {
                **self.stats,
                'size': len(self._entries),
                'max_size': self.max_size,
                'hit_rate_percent': round(hit_rate, 2),
                'approx_bytes': self._estimate_bytes(),
            }

    def _estimate_bytes(self) -> int:
        total = 0
        for (namespace, key), entry in self._entries.items():
            try:
                payload = json.dumps(entry.value, default=str)
            except (TypeError, ValueError):
                payload = repr(entry.value)
            total += len(namespace) + len(key) + len(payload) + 100
        return total
