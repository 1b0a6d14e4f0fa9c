"""HTTP API for the podcast feed proxy."""

import threading
import time
from dataclasses import dataclass
from typing import Optional

import requests
import structlog
from flask import Flask, Response, g, jsonify, request
from werkzeug.serving import make_server

from podcast_proxy.auth import AccessGate, Credentials
from podcast_proxy.cache import FeedCache
from podcast_proxy.config import ProxyConfig
from podcast_proxy.core.errors import BaseError, redact_secrets
from podcast_proxy.fetcher import FeedFetcher
from podcast_proxy.relay import MediaRelay
from podcast_proxy.rewriter import ProxyContext
from podcast_proxy.service import FeedProxyService

logger = structlog.get_logger(__name__)

INDEX_HTML = """<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Podcast RSS Proxy</title></head>
<body>
<h1>Podcast RSS Proxy</h1>
<p>Rewrites a podcast feed so that its audio and artwork are served through this server.</p>
<h2>Usage</h2>
<pre>GET /feed?url=&lt;podcast feed URL&gt;&amp;apikey=&lt;your API key&gt;</pre>
<p>The key may also be sent as <code>Authorization: Bearer &lt;key&gt;</code>,
or as HTTP Basic credentials when a username and password are configured.</p>
<p>Media links in the returned feed point at <code>/proxy</code> and carry the key,
so podcast players can follow them directly.</p>
</body>
</html>
"""


@dataclass
class ProxyComponents:
    """The collaborators an application instance was built with."""

    config: ProxyConfig
    gate: AccessGate
    cache: FeedCache
    fetcher: FeedFetcher
    relay: MediaRelay
    service: FeedProxyService


def proxy_context(credentials: Credentials) -> ProxyContext:
    """Derive the public address of this server from the current request."""
    forwarded_proto = request.headers.get("X-Forwarded-Proto", "").split(",")[0].strip().lower()
    scheme = "https" if request.is_secure or forwarded_proto == "https" else "http"
    return ProxyContext(scheme=scheme, host=request.host, auth_token=credentials.token)


def build_components(
    config: ProxyConfig,
    cache: Optional[FeedCache] = None,
    fetcher: Optional[FeedFetcher] = None,
    relay: Optional[MediaRelay] = None,
    gate: Optional[AccessGate] = None,
    session: Optional[requests.Session] = None,
) -> ProxyComponents:
    """Build every collaborator not supplied by the caller from ``config``."""
    session = session or requests.Session()
    gate = gate or AccessGate(config.api_key, config.username, config.password)
    cache = cache or FeedCache(
        max_entries=config.cache_max_entries, sweep_interval=config.sweep_interval
    )
    fetcher = fetcher or FeedFetcher(
        session=session,
        max_retries=config.max_retries,
        retry_backoff=config.retry_backoff,
        timeout=config.request_timeout,
        allowed_hosts=config.allowed_hosts,
    )
    relay = relay or MediaRelay(
        session=session, timeout=config.request_timeout, chunk_size=config.relay_chunk_size
    )
    service = FeedProxyService(cache, fetcher, cache_ttl=config.cache_ttl)
    return ProxyComponents(config, gate, cache, fetcher, relay, service)


def create_app(config: ProxyConfig, components: Optional[ProxyComponents] = None) -> Flask:
    """Create the Flask application.

    Args:
        config: Proxy configuration
        components: Pre-built collaborators; built from ``config`` when omitted

    Returns:
        The configured Flask application
    """
    components = components or build_components(config)
    gate = components.gate
    started_at = time.monotonic()

    app = Flask(__name__)
    app.extensions["podcast_proxy"] = components

    @app.errorhandler(BaseError)
    def handle_proxy_error(error: BaseError):
        log = logger.warning if error.status_code < 500 else logger.error
        log(
            "request_failed",
            error_id=error.error_id,
            status=error.status_code,
            category=error.category.value,
            error=redact_secrets(error.message),
            url=redact_secrets(str(error.details.get("url", ""))) or None,
            attempts=error.details.get("attempts"),
            remote_addr=request.remote_addr,
        )
        return jsonify(error.to_dict()), error.status_code

    @app.route("/", methods=["GET"])
    def index():
        """Informational page."""
        return Response(INDEX_HTML, mimetype="text/html")

    @app.route("/health", methods=["GET"])
    def health():
        """Liveness report."""
        return jsonify(
            {
                "status": "ok",
                "cache_entries": len(components.cache),
                "uptime_seconds": round(time.monotonic() - started_at, 3),
            }
        )

    @app.route("/feed", methods=["GET"])
    @gate.require_auth
    def feed():
        """Rewritten feed."""
        context = proxy_context(g.credentials)
        result = components.service.get_feed(request.args.get("url", ""), context)
        response = Response(result.body, status=200, headers=result.headers)
        response.headers["X-Cache"] = "HIT" if result.cache_hit else "MISS"
        return response

    @app.route("/proxy", methods=["GET"])
    @app.route("/proxy/audio", methods=["GET"], endpoint="proxy_audio")
    @app.route("/proxy/image", methods=["GET"], endpoint="proxy_image")
    @gate.require_auth
    def proxy():
        """Relayed media bytes."""
        relayed = components.relay.open(
            request.args.get("url", ""),
            range_header=request.headers.get("Range"),
            user_agent=request.headers.get("User-Agent"),
        )
        response = Response(
            relayed.body,
            status=relayed.status_code,
            headers=relayed.headers,
            direct_passthrough=True,
        )
        if not any(name.lower() == "content-type" for name, _ in relayed.headers):
            # werkzeug adds a default; the upstream sent none
            del response.headers["Content-Type"]
        return response

    return app


class ServerThread(threading.Thread):
    """Threaded werkzeug server running in the background."""

    def __init__(self, app, host, port):
        threading.Thread.__init__(self, name="podcast-proxy-server")
        self.server = make_server(host, port, app, threaded=True)
        self.ctx = app.app_context()
        self.ctx.push()

    def run(self):
        self.server.serve_forever()

    def shutdown(self):
        self.server.shutdown()


def start_api_server(app: Flask, host: str = "0.0.0.0", port: int = 8080) -> ServerThread:
    """Start the API server in a daemon thread."""
    server = ServerThread(app, host, port)
    server.daemon = True
    server.start()
    logger.info("server_started", host=host, port=port)
    return server
