"""Cache, fetch, rewrite: the flow behind the feed endpoint."""

import hashlib
from dataclasses import dataclass, field
from typing import Callable, Dict

import structlog

from podcast_proxy.cache import FeedCache, cache_key
from podcast_proxy.core.errors import redact_secrets
from podcast_proxy.fetcher import FeedFetcher, validate_target_url
from podcast_proxy.rewriter import ProxyContext, URLRewriter

logger = structlog.get_logger(__name__)

FEED_CONTENT_TYPE = "application/xml"


@dataclass
class FeedResponse:
    """A rewritten feed ready to be returned to the caller."""

    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    cache_hit: bool = False


def context_fingerprint(context: ProxyContext) -> str:
    """Identify the rewritten variant a context produces without storing the token."""
    token_digest = hashlib.sha256(context.auth_token.encode("utf-8")).hexdigest()
    return f"{context.base_url}|{context.auth_param}|{token_digest}"


class FeedProxyService:
    """Serves rewritten feeds from the cache, filling it on a miss.

    Fetching and rewriting run outside the cache lock; two concurrent misses
    for one feed both do the work and the later write wins.
    """

    def __init__(
        self,
        cache: FeedCache,
        fetcher: FeedFetcher,
        cache_ttl: float = 600.0,
        rewriter_factory: Callable[[ProxyContext], URLRewriter] = URLRewriter,
    ):
        self.cache = cache
        self.fetcher = fetcher
        self.cache_ttl = cache_ttl
        self.rewriter_factory = rewriter_factory

    def get_feed(self, source_url: str, context: ProxyContext) -> FeedResponse:
        """Return the rewritten feed for ``source_url``.

        Raises:
            ClientInputError: If the source URL is invalid
            UpstreamUnavailable: If the feed could not be fetched
            ProcessingError: If the feed could not be read or rewritten
        """
        validate_target_url(source_url, self.fetcher.allowed_hosts)
        key = cache_key(source_url, context_fingerprint(context))
        log = logger.bind(url=redact_secrets(source_url))

        cached = self.cache.get(key)
        if cached is not None:
            log.info("feed_cache_hit")
            return FeedResponse(
                body=cached, headers={"Content-Type": FEED_CONTENT_TYPE}, cache_hit=True
            )

        log.info("feed_cache_miss")
        result = self.fetcher.fetch(source_url)
        body = self.rewriter_factory(context).transform(result.body)
        self.cache.set(key, body, self.cache_ttl)

        headers = dict(result.headers)
        for name in [name for name in headers if name.lower() == "content-type"]:
            del headers[name]
        headers["Content-Type"] = FEED_CONTENT_TYPE
        log.info("feed_served", attempts=result.attempts, size=len(body))
        return FeedResponse(body=body, headers=headers)
