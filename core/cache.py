"""
TTL cache for storing search payloads.

This module implements a simple in-memory cache with TTL (Time To Live)
semantics.

Features:
- Lazy expiry: validity is decided when an entry is read
- Per-entry TTL overrides (short-lived negative results)
- Optional single periodic sweep task that only removes expired entries
- Cache key generation from a normalized query and its parameters
"""

import asyncio
import hashlib
import json
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from core.logger import get_logger

logger = get_logger("mobile_gateway.cache")

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class CacheEntry:
    """A cached value with the time it was written and the TTL it was written with."""

    value: Any
    timestamp: float
    ttl: float

    def is_valid(self, now: float) -> bool:
        return now - self.timestamp < self.ttl


def normalize_query(text: str) -> str:
    """Case-fold and collapse whitespace so equivalent queries share a key."""
    return _WHITESPACE_RE.sub(" ", text.casefold()).strip()


class TTLCache:
    """
    Simple in-memory cache with TTL expiration.

    Attributes:
        ttl: Default time to live in seconds
        max_entries: Optional bound; the oldest entry is evicted when full
    """

    def __init__(
        self,
        ttl: float = 3600,
        max_entries: Optional[int] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """
        Initialize cache.

        Args:
            ttl: Default time to live in seconds. Default is 3600 (1 hour).
            max_entries: Maximum number of entries kept (None = unbounded)
            clock: Monotonic time source, injectable for tests
        """
        if ttl <= 0:
            raise ValueError("ttl must be positive")
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._sweeper: Optional["asyncio.Task[None]"] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.get_entry(key) is not None

    @staticmethod
    def make_key(namespace: str, query: str, params: Dict[str, Any]) -> str:
        """
        Generate cache key from namespace, normalized query and parameters.

        Format before hashing: namespace:normalized-query:sorted-params-json

        Returns:
            MD5 hex digest of the key string
        """
        params_str = json.dumps(params, sort_keys=True, default=str)
        key_str = f"{namespace}:{normalize_query(query)}:{params_str}"
        return hashlib.md5(key_str.encode("utf-8")).hexdigest()

    def get_entry(self, key: str) -> Optional[CacheEntry]:
        """
        Get the entry for `key` if it is still inside its TTL window.

        Expired entries are removed on the way out.
        """
        entry = self._entries.get(key)
        if entry is None:
            return None
        if entry.is_valid(self._clock()):
            return entry
        del self._entries[key]
        return None

    def get(self, key: str) -> Optional[Any]:
        """
        Get cached value if it exists and hasn't expired.

        Returns:
            Cached value if found and not expired, None otherwise
        """
        entry = self.get_entry(key)
        return entry.value if entry is not None else None

    def set(self, key: str, value: Any, ttl: Optional[float] = None) -> None:
        """
        Store `value` under `key`.

        The entry (value, timestamp, ttl) is replaced in one assignment.

        Args:
            key: Cache key
            value: Value to cache
            ttl: Per-entry TTL in seconds (default: cache TTL)
        """
        if self.max_entries is not None and key not in self._entries:
            while self._entries and len(self._entries) >= self.max_entries:
                oldest = min(self._entries, key=lambda k: self._entries[k].timestamp)
                del self._entries[oldest]
        self._entries[key] = CacheEntry(
            value=value,
            timestamp=self._clock(),
            ttl=self.ttl if ttl is None else ttl,
        )

    def delete(self, key: str) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        """Clear all cache entries."""
        self._entries.clear()

    def sweep(self) -> int:
        """
        Remove every expired entry.

        Returns:
            Number of entries removed
        """
        now = self._clock()
        expired = [key for key, entry in self._entries.items() if not entry.is_valid(now)]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug(f"Cache sweep removed {len(expired)} expired entries")
        return len(expired)

    def start_sweeper(self, interval: float = 60.0) -> None:
        """Start the periodic sweep task on the running loop (no-op if running)."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.create_task(self._sweep_loop(interval))

    async def stop_sweeper(self) -> None:
        """Cancel the periodic sweep task and wait for it to finish."""
        if self._sweeper is None:
            return
        self._sweeper.cancel()
        try:
            await self._sweeper
        except asyncio.CancelledError:
            pass
        self._sweeper = None

    async def _sweep_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep()
