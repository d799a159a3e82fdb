"""
Response cache for deterministic calls.

Content-addressed store with lazy TTL expiry and LRU eviction bounded by the
total payload size.
"""

import hashlib
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from .models import CallRequest
from .token_counter import TokenUsage, payload_bytes

logger = logging.getLogger(__name__)


def fingerprint(request: CallRequest) -> Optional[str]:
    """Deterministic cache key for a request.

    Only deterministic requests get a key; for everything else the result is
    None and the request is never cached or served from cache.
    """
    if not request.deterministic:
        return None
    canonical = json.dumps(
        {
            "task_kind": request.task_kind,
            "prompt": request.prompt,
            "parameters": request.parameters.as_dict(),
        },
        sort_keys=True,
        separators=(",", ":"),
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CacheEntry:
    """Cached response. Never mutated once inserted."""
    payload: str
    usage: TokenUsage
    provider_id: str
    model_id: str
    created_at: float
    ttl: float

    @property
    def size(self) -> int:
        return payload_bytes(self.payload)

    def expired(self, now: float) -> bool:
        return now - self.created_at >= self.ttl


class ResponseCache:
    """Thread-safe LRU cache bounded by total payload bytes.

    Usage:
        cache = ResponseCache(max_size=1_000_000)
        cache.insert(key, CacheEntry(...))
        entry = cache.lookup(key)
    """

    def __init__(self, max_size: int, clock: Callable[[], float] = time.monotonic):
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._size = 0
        self._lock = threading.Lock()
        self._stats = {"hits": 0, "misses": 0, "evictions": 0, "expirations": 0}

    def now(self) -> float:
        return self._clock()

    def lookup(self, key: Optional[str]) -> Optional[CacheEntry]:
        """Get a live entry, or None.

        Expired entries are removed and reported as absent.
        """
        if key is None:
            return None
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._stats["misses"] += 1
                return None
            if entry.expired(self._clock()):
                self._remove(key)
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None
            self._entries.move_to_end(key)
            self._stats["hits"] += 1
            return entry

    def insert(self, key: Optional[str], entry: CacheEntry) -> bool:
        """Insert or replace an entry.

        Returns:
            False if the key is None or the entry alone exceeds max_size
        """
        if key is None:
            return False
        size = entry.size
        if size > self.max_size:
            logger.debug("Entry of %d bytes exceeds cache bound, not cached", size)
            return False
        with self._lock:
            if key in self._entries:
                self._remove(key)
            self._entries[key] = entry
            self._size += size
            self._evict()
        return True

    def _remove(self, key: str) -> None:
        entry = self._entries.pop(key)
        self._size -= entry.size

    def _evict(self) -> None:
        """Drop expired entries first, then least recently used."""
        if self._size <= self.max_size:
            return
        now = self._clock()
        for key in [k for k, e in self._entries.items() if e.expired(now)]:
            self._remove(key)
            self._stats["expirations"] += 1
        while self._size > self.max_size and self._entries:
            oldest = next(iter(self._entries))
            self._remove(oldest)
            self._stats["evictions"] += 1

    def resize(self, max_size: int) -> None:
        if max_size <= 0:
            raise ValueError("max_size must be > 0")
        with self._lock:
            self.max_size = max_size
            self._evict()

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._size = 0
            return count

    def stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        with self._lock:
            total = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "entries": len(self._entries),
                "size": self._size,
                "max_size": self.max_size,
                "hit_rate": self._stats["hits"] / total if total > 0 else 0.0,
            }

    def __len__(self) -> int:
        return len(self._entries)
