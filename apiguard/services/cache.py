"""
CacheStore - In-memory store of successful read responses with TTL.

Features:
- Deterministic keys from method, path, query parameters and body
- TTL validity: an entry is valid iff now - stored_at < ttl
- Path-prefix invalidation for read-after-write consistency
- Periodic sweep of expired entries (see CacheSweeper)
- Oldest-first eviction once max_size is reached
"""

import hashlib
import json
import time
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Mapping
from urllib.parse import parse_qsl

from loguru import logger

# Keys longer than this have their canonical part replaced by a digest
_MAX_CANONICAL_LENGTH = 200
_PREFIX_BOUNDARIES = ("/", "|")


@dataclass(frozen=True)
class CachedPayload:
    """Snapshot of a successful response."""

    status: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class CacheEntry:
    """A single cache entry with metadata."""

    key: str
    payload: CachedPayload
    stored_at: float
    ttl: timedelta

    def is_valid(self, now: float) -> bool:
        """Check if entry is still within its TTL."""
        return now - self.stored_at < self.ttl.total_seconds()

    def age(self, now: float) -> float:
        return now - self.stored_at


def canonicalize(value: Any) -> str:
    """Stable serialization so equal parameter objects produce equal text."""
    return json.dumps(
        value,
        sort_keys=True,
        separators=(",", ":"),
        default=str,
        ensure_ascii=False,
    )


def resource_path(url: str) -> str:
    """Strip query string and fragment from a URL."""
    return url.split("#", 1)[0].split("?", 1)[0]


def merge_query(url: str, params: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge the URL's own query string with explicit params.

    A name repeated in the query string keeps every value, in order, as a
    list. Explicit params replace URL values of the same name, as httpx
    does when it sends them; list or tuple values stay multi-valued.
    """
    merged: dict[str, Any] = {}
    _, _, query = url.split("#", 1)[0].partition("?")
    for name, value in parse_qsl(query, keep_blank_values=True):
        if name not in merged:
            merged[name] = value
        elif isinstance(merged[name], list):
            merged[name].append(value)
        else:
            merged[name] = [merged[name], value]
    for name, value in (params or {}).items():
        merged[name] = list(value) if isinstance(value, (list, tuple)) else value
    return merged


class CacheStore:
    """
    TTL cache for read responses.

    All operations are synchronous: each check-then-mutate runs in a single
    turn of the event loop. A multi-threaded caller must add its own lock.

    Usage:
        cache = CacheStore(default_ttl=timedelta(minutes=5))

        key = cache.generate_key("GET", "/venues", params={"page": 1})
        entry = cache.lookup(key)
        if entry:
            return entry.payload

        payload = await fetch()
        cache.store(key, payload)
    """

    def __init__(
        self,
        default_ttl: timedelta = timedelta(minutes=5),
        max_size: int = 500,
        clock: Callable[[], float] = time.monotonic,
        debug: bool = False,
    ):
        self._memory: dict[str, CacheEntry] = {}
        self._default_ttl = default_ttl
        self._max_size = max_size
        self._clock = clock
        self._debug = debug
        self._stats = CacheStats()

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    @property
    def size(self) -> int:
        return len(self._memory)

    def generate_key(
        self,
        method: str,
        url: str,
        params: Mapping[str, Any] | None = None,
        body: Any = None,
    ) -> str:
        """Generate a cache key from method, path, params and body.

        The resource path leads the key so path-prefix invalidation works.
        """
        path = resource_path(url)
        query = merge_query(url, params)
        canonical = canonicalize({"params": query, "body": body})

        if len(canonical) > _MAX_CANONICAL_LENGTH:
            canonical = hashlib.md5(canonical.encode()).hexdigest()[:16]

        return f"{path}|{method.upper()}|{canonical}"

    def lookup(self, key: str) -> CacheEntry | None:
        """
        Get a valid entry.

        Returns None when the key is missing or past its TTL. Expired
        entries are logically absent even before the next sweep.
        """
        entry = self._memory.get(key)
        if entry is None:
            self._stats.misses += 1
            self._log(f"MISS: {key[:50]}...")
            return None

        if not entry.is_valid(self._clock()):
            self._stats.misses += 1
            self._log(f"EXPIRED: {key[:50]}...")
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key[:50]}...")
        return entry

    def peek(self, key: str) -> CacheEntry | None:
        """Return the stored entry regardless of TTL, for on-demand stale fallback."""
        entry = self._memory.get(key)
        if entry is not None:
            self._stats.stale_hits += 1
            self._log(f"PEEK: {key[:50]}...")
        return entry

    def store(
        self,
        key: str,
        payload: CachedPayload,
        ttl: timedelta | None = None,
    ) -> CacheEntry:
        """
        Store a payload, replacing any previous entry for the key.

        Args:
            key: Cache key
            payload: Response snapshot to cache
            ttl: Time to live (uses default if not specified)
        """
        ttl = ttl or self._default_ttl

        if len(self._memory) >= self._max_size and key not in self._memory:
            self._evict_oldest()

        entry = CacheEntry(key=key, payload=payload, stored_at=self._clock(), ttl=ttl)
        self._memory[key] = entry
        self._log(f"SET: {key[:50]}... (TTL: {ttl.total_seconds()}s)")
        return entry

    def invalidate(self, key_or_prefix: str) -> int:
        """
        Remove an exact key and every key under a resource path prefix.

        A prefix only matches at a path boundary, so "/venues/1" removes
        "/venues/1|GET|..." and "/venues/1/courts|GET|..." but not
        "/venues/10|GET|...".

        Returns:
            Number of entries invalidated
        """
        keys_to_delete = [
            k for k in self._memory if self._matches_prefix(k, key_or_prefix)
        ]
        for key in keys_to_delete:
            del self._memory[key]

        if keys_to_delete:
            self._log(
                f"INVALIDATE: {len(keys_to_delete)} entries under '{key_or_prefix}'"
            )

        return len(keys_to_delete)

    def sweep(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        now = self._clock()
        expired_keys = [k for k, v in self._memory.items() if not v.is_valid(now)]
        for key in expired_keys:
            del self._memory[key]

        if expired_keys:
            self._log(f"SWEEP: {len(expired_keys)} expired entries removed")

        return len(expired_keys)

    def clear(self) -> int:
        """Clear all cache entries. Returns count of removed entries."""
        count = len(self._memory)
        self._memory.clear()
        self._log(f"CLEAR: {count} entries removed")
        return count

    def keys(self) -> list[str]:
        return list(self._memory)

    @staticmethod
    def _matches_prefix(key: str, prefix: str) -> bool:
        if not prefix:
            return False
        if key == prefix:
            return True
        if not key.startswith(prefix):
            return False
        if prefix.endswith(_PREFIX_BOUNDARIES):
            return True
        return key[len(prefix)] in _PREFIX_BOUNDARIES

    def _evict_oldest(self) -> None:
        """Evict the oldest entry."""
        if not self._memory:
            return

        oldest_key = min(
            self._memory.keys(),
            key=lambda k: self._memory[k].stored_at,
        )
        del self._memory[oldest_key]
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key[:50]}...")

    def get_stats(self) -> "CacheStats":
        """Get cache statistics."""
        self._stats.size = len(self._memory)
        self._stats.max_size = self._max_size
        return self._stats

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheStore] {message}")


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    stale_hits: int = 0
    evictions: int = 0
    size: int = 0
    max_size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.stale_hits + self.misses
        if total == 0:
            return 0.0
        return (self.hits + self.stale_hits) / total

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "stale_hits": self.stale_hits,
            "evictions": self.evictions,
            "size": self.size,
            "max_size": self.max_size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }
