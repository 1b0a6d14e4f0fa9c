"""Upstream feed retrieval with linear backoff."""

import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Mapping, Optional, Sequence
from urllib.parse import SplitResult, urlsplit

import requests
import structlog

from podcast_proxy.core.errors import (
    ClientInputError,
    ProcessingError,
    UpstreamUnavailable,
    redact_secrets,
)
from podcast_proxy.metrics import metrics

logger = structlog.get_logger(__name__)

USER_AGENT = "PodcastProxy/1.0 (podcast feed rewriting proxy)"

REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/rss+xml, application/xml;q=0.9, */*;q=0.8",
}

ALLOWED_SCHEMES = ("http", "https")

# Crude request-forgery guard: literal hostname substrings, no DNS resolution.
BLOCKED_HOST_MARKERS = ("localhost", "127.0.0.1", "::1")

# Framing headers that no longer describe the body once it has been rewritten.
EXCLUDED_HEADERS = frozenset(
    {
        "content-length",
        "transfer-encoding",
        "content-encoding",
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "upgrade",
    }
)

# Errors requests raises before anything goes on the wire.
_REQUEST_BUILD_ERRORS = (
    requests.exceptions.InvalidURL,
    requests.exceptions.MissingSchema,
    requests.exceptions.InvalidSchema,
    requests.exceptions.InvalidHeader,
)


def _host_allowed(host: str, allowed_hosts: Iterable[str]) -> bool:
    return any(host == allowed or host.endswith("." + allowed) for allowed in allowed_hosts)


def validate_target_url(url: Optional[str], allowed_hosts: Sequence[str] = ()) -> SplitResult:
    """Validate an absolute URL before it is fetched.

    Args:
        url: The URL supplied by the caller
        allowed_hosts: Optional allow-list; empty allows every host

    Returns:
        The split URL

    Raises:
        ClientInputError: If the URL is missing, not http(s), has no host,
            names a loopback host, or is outside the allow-list
    """
    if not url or not url.strip():
        raise ClientInputError("Missing 'url' query parameter")

    try:
        parts = urlsplit(url.strip())
        host = (parts.hostname or "").lower()
    except ValueError as e:
        raise ClientInputError(f"Malformed URL: {e}", details={"url": url})

    if parts.scheme.lower() not in ALLOWED_SCHEMES:
        raise ClientInputError(
            "Only http and https URLs can be proxied", details={"url": url}
        )
    if not host:
        raise ClientInputError("URL has no host", details={"url": url})
    if any(marker in host for marker in BLOCKED_HOST_MARKERS):
        raise ClientInputError("Loopback hosts are not allowed", details={"url": url})
    if allowed_hosts and not _host_allowed(host, allowed_hosts):
        raise ClientInputError(f"Host '{host}' is not allowed", details={"url": url})

    return parts


def filter_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    """Drop the framing and hop-by-hop headers from an upstream response."""
    return {name: value for name, value in headers.items() if name.lower() not in EXCLUDED_HEADERS}


@dataclass
class FetchResult:
    """A successfully fetched feed."""

    url: str
    body: bytes
    headers: Dict[str, str] = field(default_factory=dict)
    status_code: int = 200
    attempts: int = 1


class FeedFetcher:
    """Fetches feeds over HTTP, retrying failures with linear backoff."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        max_retries: int = 5,
        retry_backoff: float = 1.0,
        timeout: float = 60.0,
        allowed_hosts: Sequence[str] = (),
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the fetcher.

        Args:
            session: HTTP session; a new one is created when omitted
            max_retries: Maximum number of attempts per fetch
            retry_backoff: Backoff unit; retry n waits n units
            timeout: Per-attempt timeout in seconds
            allowed_hosts: Optional allow-list of feed hosts
            sleep: Function used to wait between attempts
        """
        self.session = session or requests.Session()
        self.max_retries = max(1, max_retries)
        self.retry_backoff = retry_backoff
        self.timeout = timeout
        self.allowed_hosts = [host.lower() for host in allowed_hosts]
        self._sleep = sleep

        self.attempt_counter = metrics.register_counter(
            "feed_fetch_attempts_total", "Total number of upstream feed fetch attempts", ["status"]
        )
        self.retry_counter = metrics.register_counter(
            "feed_fetch_retries_total", "Total number of upstream feed fetch retries"
        )

    def fetch(self, url: str) -> FetchResult:
        """Fetch a feed.

        Args:
            url: Absolute http(s) URL of the feed

        Returns:
            FetchResult with the body and forwardable headers

        Raises:
            ClientInputError: If the URL fails validation
            UpstreamUnavailable: If every attempt failed
            ProcessingError: If the request cannot be built or the body read
        """
        validate_target_url(url, self.allowed_hosts)
        log = logger.bind(url=redact_secrets(url))

        last_error: Optional[UpstreamUnavailable] = None
        for attempt in range(1, self.max_retries + 1):
            if attempt > 1:
                delay = (attempt - 1) * self.retry_backoff
                self.retry_counter.inc()
                log.info("feed_fetch_backoff", attempt=attempt, delay=delay)
                self._sleep(delay)

            try:
                response = self.session.get(
                    url,
                    headers=REQUEST_HEADERS,
                    timeout=self.timeout,
                    stream=True,
                )
            except _REQUEST_BUILD_ERRORS as e:
                self.attempt_counter.labels(status="invalid").inc()
                raise ProcessingError(
                    f"Failed to create request for feed: {e}",
                    details={"url": url, "attempts": attempt},
                )
            except requests.exceptions.RequestException as e:
                self.attempt_counter.labels(status="network_error").inc()
                log.warning("feed_fetch_attempt_failed", attempt=attempt, error=str(e))
                last_error = UpstreamUnavailable(
                    f"Failed to fetch original feed: {e}",
                    details={"url": url, "attempts": attempt},
                )
                continue

            if response.status_code != 200:
                response.close()
                self.attempt_counter.labels(status="bad_status").inc()
                log.warning(
                    "feed_fetch_attempt_failed", attempt=attempt, status=response.status_code
                )
                last_error = UpstreamUnavailable(
                    f"Original feed returned status: {response.status_code}",
                    details={"url": url, "attempts": attempt, "status": response.status_code},
                )
                continue

            try:
                body = response.content
            except requests.exceptions.RequestException as e:
                self.attempt_counter.labels(status="read_error").inc()
                raise ProcessingError(
                    f"Failed to read original feed body: {e}",
                    details={"url": url, "attempts": attempt},
                )
            finally:
                response.close()

            self.attempt_counter.labels(status="success").inc()
            log.info("feed_fetched", attempt=attempt, size=len(body))
            return FetchResult(
                url=url,
                body=body,
                headers=filter_headers(response.headers),
                status_code=response.status_code,
                attempts=attempt,
            )

        log.error("feed_fetch_exhausted", attempts=self.max_retries)
        raise last_error
