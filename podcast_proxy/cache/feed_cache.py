"""Feed cache implementation for the podcast proxy.

This module provides a thread-safe cache for rewritten feeds with:
- Per-entry TTL, checked on every read
- A background sweep that evicts expired entries nobody reads again
- LRU eviction once the size bound is reached
- Hit, miss, and eviction metrics
"""

import hashlib
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

import structlog
from cachetools import TLRUCache

from podcast_proxy.metrics import metrics

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    """A single rewritten feed.

    Attributes:
        payload: The rewritten feed bytes
        expires_at: Clock reading after which the entry is invisible
    """

    payload: bytes
    expires_at: float


def _entry_expiry(_key: str, entry: CacheEntry, _now: float) -> float:
    return entry.expires_at


def normalize_url(url: str) -> str:
    """Normalize a feed URL for fingerprinting.

    Scheme and host are lower-cased and the fragment is dropped; path and
    query are kept as given.
    """
    parts = urlsplit(url.strip())
    return urlunsplit((parts.scheme.lower(), parts.netloc.lower(), parts.path, parts.query, ""))


def cache_key(source_url: str, variant: str = "") -> str:
    """Fingerprint a source URL as a SHA-256 hex digest.

    Args:
        source_url: The upstream feed URL
        variant: Extra material the cached bytes depend on, e.g. the
            public base URL and token embedded in rewritten links

    Returns:
        Hex digest that is stable for the same inputs
    """
    material = normalize_url(source_url)
    if variant:
        material = f"{material}\n{variant}"
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class FeedCache:
    """Thread-safe expiring cache for rewritten feeds.

    Expiry is enforced lazily on read and actively by a sweep thread that
    starts with the cache and runs until :meth:`close`. One lock covers
    reads, writes, and sweeps.
    """

    def __init__(
        self,
        max_entries: int = 1024,
        sweep_interval: float = 300.0,
        clock: Callable[[], float] = time.monotonic,
        start_sweeper: bool = True,
    ) -> None:
        """Initialize the feed cache.

        Args:
            max_entries: Maximum number of feeds held at once
            sweep_interval: Seconds between background sweeps
            clock: Monotonic time source, replaceable in tests
            start_sweeper: Start the background sweep thread
        """
        self._clock = clock
        self._sweep_interval = sweep_interval
        self._store = TLRUCache(maxsize=max_entries, ttu=_entry_expiry, timer=clock)
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._sweeper: Optional[threading.Thread] = None

        self._hits = metrics.register_counter("feed_cache_hits", "Number of feed cache hits")
        self._misses = metrics.register_counter("feed_cache_misses", "Number of feed cache misses")
        self._evictions = metrics.register_counter(
            "feed_cache_evictions", "Number of expired entries removed by the sweep"
        )
        self._size = metrics.register_gauge(
            "feed_cache_entries", "Number of entries held by the feed cache"
        )

        if start_sweeper:
            self._sweeper = threading.Thread(
                target=self._run_sweeper, name="feed-cache-sweeper", daemon=True
            )
            self._sweeper.start()

    def get(self, key: str) -> Optional[bytes]:
        """Get a feed from the cache.

        Args:
            key: Cache key to look up

        Returns:
            The cached payload if present and unexpired, None otherwise
        """
        with self._lock:
            entry = self._store.get(key)

        if entry is None:
            self._misses.inc()
            return None

        self._hits.inc()
        return entry.payload

    def set(self, key: str, payload: bytes, ttl: float) -> None:
        """Store or overwrite a feed.

        Args:
            key: Cache key
            payload: Rewritten feed bytes
            ttl: Seconds the entry stays visible
        """
        with self._lock:
            if ttl <= 0:
                # Already-expired values are never stored; drop the old one
                self._store.pop(key, None)
            else:
                self._store[key] = CacheEntry(payload=payload, expires_at=self._clock() + ttl)
            self._size.set(len(self._store))

    def sweep(self) -> int:
        """Evict every expired entry.

        Returns:
            Number of entries removed
        """
        with self._lock:
            removed = len(self._store.expire())
            self._size.set(len(self._store))

        if removed:
            self._evictions.inc(removed)
            logger.debug("feed_cache_swept", removed=removed)
        return removed

    def close(self) -> None:
        """Stop the background sweep thread."""
        self._stop.set()
        if self._sweeper is not None:
            self._sweeper.join(timeout=5)
            self._sweeper = None

    def _run_sweeper(self) -> None:
        while not self._stop.wait(self._sweep_interval):
            self.sweep()

    def __len__(self) -> int:
        """Number of unexpired entries."""
        with self._lock:
            return len(self._store)
