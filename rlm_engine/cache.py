"""
Result cache for worker and environment queries.

Keyed by a hash of (query, bounded context prefix). Entries expire after a
TTL and the least-recently-used entry is evicted at capacity. One instance
is constructed at process start and injected wherever it is needed.
"""

from __future__ import annotations

import hashlib
import logging
import threading
import time
from collections import OrderedDict
from collections.abc import Callable
from typing import Any

from .types import CachedResult, WorkerResult

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 60 * 60
DEFAULT_MAX_SIZE = 100
DEFAULT_PREFIX_CHARS = 2000


class RLMCache:
    """
    TTL + LRU cache of worker results.

    Safe for concurrent use: every read, touch and write happens under one
    lock, so operations on the same key are serialized.
    """

    def __init__(
        self,
        max_size: int = DEFAULT_MAX_SIZE,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        prefix_chars: int = DEFAULT_PREFIX_CHARS,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize cache.

        Args:
            max_size: Maximum number of entries before LRU eviction
            ttl_seconds: Time-to-live of an entry
            prefix_chars: How much of a context slice participates in the hash
            clock: Time source (seconds), injectable for tests
        """
        if max_size < 1:
            raise ValueError(f"max_size must be >= 1, got {max_size}")
        self.max_size = max_size
        self.ttl_seconds = ttl_seconds
        self.prefix_chars = prefix_chars
        self._clock = clock
        self._entries: OrderedDict[str, CachedResult] = OrderedDict()
        self._lock = threading.Lock()
        self._stats = {
            "hits": 0,
            "misses": 0,
            "evictions": 0,
            "expirations": 0,
        }

    def generate_hash(self, query: str, context_slice: str) -> str:
        """Deterministic hash of a query and a bounded prefix of its context."""
        payload = f"{query}::{context_slice[: self.prefix_chars]}"
        digest = hashlib.sha256(payload.encode("utf-8")).hexdigest()
        return f"rlm_{digest[:32]}"

    def _is_expired(self, entry: CachedResult) -> bool:
        return self._clock() - entry.timestamp > self.ttl_seconds

    def get(self, query_hash: str) -> WorkerResult | None:
        """Return a copy marked ``from_cache`` or None; refreshes recency."""
        with self._lock:
            entry = self._entries.get(query_hash)
            if entry is None:
                self._stats["misses"] += 1
                return None

            if self._is_expired(entry):
                del self._entries[query_hash]
                self._stats["expirations"] += 1
                self._stats["misses"] += 1
                return None

            self._entries.move_to_end(query_hash)
            self._stats["hits"] += 1
            return entry.result.as_cached()

    def set(self, query_hash: str, result: WorkerResult) -> None:
        """Insert or replace; evicts the LRU entry first when full."""
        with self._lock:
            if query_hash in self._entries:
                del self._entries[query_hash]
            elif len(self._entries) >= self.max_size:
                evicted, _ = self._entries.popitem(last=False)
                self._stats["evictions"] += 1
                logger.debug(f"Evicted cache entry {evicted}")

            self._entries[query_hash] = CachedResult(
                result=result,
                timestamp=self._clock(),
                hash=query_hash,
            )

    def has(self, query_hash: str) -> bool:
        """TTL-aware existence check; does not touch recency."""
        with self._lock:
            entry = self._entries.get(query_hash)
            return entry is not None and not self._is_expired(entry)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            lookups = self._stats["hits"] + self._stats["misses"]
            return {
                **self._stats,
                "size": len(self._entries),
                "max_size": self.max_size,
                "hit_rate": self._stats["hits"] / lookups if lookups > 0 else 0.0,
            }

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


__all__ = ["RLMCache", "DEFAULT_TTL_SECONDS", "DEFAULT_MAX_SIZE"]
