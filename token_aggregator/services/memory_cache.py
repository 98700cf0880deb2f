"""
Bounded in-process cache tier.
Short-lived, insertion-ordered, evicts the oldest entry when full.
"""

import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, Generic, List, Optional, TypeVar, Any

from ..core.logging_config import create_logger

logger = create_logger(__name__)

V = TypeVar("V")


@dataclass
class _Entry(Generic[V]):
    value: V
    stored_at: float


class MemoryCache(Generic[V]):
    """TTL cache with a hard entry limit.

    Entries are kept in insertion order. Storing past ``max_entries`` evicts the
    single oldest-inserted entry; re-storing a key counts as a fresh insertion.
    """

    def __init__(self, ttl_seconds: float = 30.0, max_entries: int = 100,
                 clock: Callable[[], float] = time.monotonic):
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.ttl_seconds = ttl_seconds
        self.max_entries = max_entries
        self._clock = clock
        self._entries: "OrderedDict[str, _Entry[V]]" = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            if self._clock() - entry.stored_at >= self.ttl_seconds:
                # Expired entries are dropped on read
                del self._entries[key]
                return None
            return entry.value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = _Entry(value=value, stored_at=self._clock())

            if len(self._entries) > self.max_entries:
                evicted, _ = self._entries.popitem(last=False)
                logger.debug("Evicted oldest memory cache entry", extra={"key": evicted})

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        with self._lock:
            size = len(self._entries)
            self._entries.clear()
        logger.info("Cleared memory cache", extra={"entries": size})
        return size

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "size": len(self._entries),
                "max_entries": self.max_entries,
                "ttl_seconds": self.ttl_seconds,
                "entries": list(self._entries.keys())
            }
