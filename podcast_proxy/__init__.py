"""Podcast feed proxy.

Rewrites podcast feeds so their media and artwork are served through the
proxy, caches the rewritten feeds, and relays the media bytes.
"""

from .api import create_app
from .auth import AccessGate
from .cache import FeedCache
from .config import ProxyConfig
from .fetcher import FeedFetcher
from .relay import MediaRelay
from .rewriter import ProxyContext, URLRewriter
from .service import FeedProxyService

__version__ = "1.0.0"

__all__ = [
    "AccessGate",
    "FeedCache",
    "FeedFetcher",
    "FeedProxyService",
    "MediaRelay",
    "ProxyConfig",
    "ProxyContext",
    "URLRewriter",
    "create_app",
]
