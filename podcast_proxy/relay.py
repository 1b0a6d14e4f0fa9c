"""Pass-through relay for media and images behind rewritten URLs."""

from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Tuple

import requests
import structlog
from urllib3.exceptions import HTTPError as Urllib3HTTPError

from podcast_proxy.core.errors import ProcessingError, UpstreamUnavailable, redact_secrets
from podcast_proxy.fetcher import USER_AGENT, validate_target_url
from podcast_proxy.metrics import metrics

logger = structlog.get_logger(__name__)

# Connection-level headers a WSGI application may not set.
WSGI_HOP_BY_HOP = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "te",
        "trailer",
        "trailers",
        "transfer-encoding",
        "upgrade",
    }
)


@dataclass
class RelayResponse:
    """An upstream response ready to be streamed to the caller."""

    status_code: int
    headers: List[Tuple[str, str]] = field(default_factory=list)
    body: Iterable[bytes] = field(default_factory=tuple)


class MediaRelay:
    """Streams a target URL's bytes to the caller without rewriting them."""

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
        chunk_size: int = 64 * 1024,
    ):
        """Initialize the relay.

        Args:
            session: HTTP session; a new one is created when omitted
            timeout: Connect and read timeout in seconds
            chunk_size: Bytes read from upstream per chunk
        """
        self.session = session or requests.Session()
        self.timeout = timeout
        self.chunk_size = chunk_size
        self.request_counter = metrics.register_counter(
            "relay_requests_total", "Total number of relayed media requests", ["status"]
        )

    def open(
        self, target_url: str, range_header: Optional[str] = None, user_agent: Optional[str] = None
    ) -> RelayResponse:
        """Open the upstream target and return a streaming response.

        Args:
            target_url: Absolute http(s) URL to relay
            range_header: Caller's Range header, forwarded for seeking
            user_agent: Caller's User-Agent, forwarded when present

        Returns:
            RelayResponse whose body closes the upstream when exhausted or closed

        Raises:
            ClientInputError: If the URL fails validation
            UpstreamUnavailable: If the upstream cannot be reached
            ProcessingError: If the request cannot be built
        """
        validate_target_url(target_url)
        log = logger.bind(url=redact_secrets(target_url))

        headers = {"User-Agent": user_agent or USER_AGENT}
        if range_header:
            headers["Range"] = range_header

        try:
            upstream = self.session.get(
                target_url, headers=headers, timeout=self.timeout, stream=True
            )
        except (requests.exceptions.InvalidURL, requests.exceptions.InvalidHeader) as e:
            self.request_counter.labels(status="invalid").inc()
            raise ProcessingError(
                f"Failed to create request for target URL: {e}", details={"url": target_url}
            )
        except requests.exceptions.RequestException as e:
            self.request_counter.labels(status="network_error").inc()
            log.warning("relay_upstream_failed", error=str(e))
            raise UpstreamUnavailable(
                f"Failed to fetch target URL: {e}", details={"url": target_url, "attempts": 1}
            )

        self.request_counter.labels(status=f"{upstream.status_code // 100}xx").inc()
        log.info("relay_started", status=upstream.status_code, range=range_header)

        forwarded = [
            (name, value)
            for name, value in upstream.headers.items()
            if name.lower() not in WSGI_HOP_BY_HOP
        ]
        return RelayResponse(
            status_code=upstream.status_code,
            headers=forwarded,
            body=RelayBody(upstream, self.chunk_size, log),
        )


class RelayBody:
    """Iterable over raw upstream chunks.

    The WSGI server calls :meth:`close` when the response ends or the
    client goes away; either way the upstream connection is released and
    nothing more is read from it.
    """

    def __init__(self, upstream: requests.Response, chunk_size: int, log=None):
        self._upstream = upstream
        self._chunk_size = chunk_size
        self._log = log or logger
        self._closed = False
        self._finished = False
        self.bytes_sent = 0

    def __iter__(self) -> Iterator[bytes]:
        try:
            for chunk in self._upstream.raw.stream(self._chunk_size, decode_content=False):
                if self._closed:
                    break
                self.bytes_sent += len(chunk)
                yield chunk
            self._finished = True
        except (Urllib3HTTPError, requests.exceptions.RequestException) as e:
            # Status and headers are already sent; the body just ends here.
            self._log.warning(
                "relay_stream_interrupted", error=str(e), bytes_sent=self.bytes_sent
            )
            self._finished = True
        finally:
            self.close()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._upstream.close()
        if not self._finished:
            self._log.info("relay_client_disconnected", bytes_sent=self.bytes_sent)
