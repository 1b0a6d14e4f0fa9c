"""Feed caching package for the podcast proxy.

This package provides caching functionality with:
- Per-entry TTL support
- Periodic background sweep of expired entries
- Metrics tracking
"""

from podcast_proxy.cache.feed_cache import CacheEntry, FeedCache, cache_key, normalize_url

__all__ = ["CacheEntry", "FeedCache", "cache_key", "normalize_url"]
