"""Tests for the HTTP API."""

import base64
import xml.etree.ElementTree as ET
from urllib.parse import urlsplit

import pytest
import requests

from podcast_proxy.api import build_components, create_app
from podcast_proxy.cache import FeedCache
from tests.conftest import API_KEY, decode_proxy_url, make_response

FEED_URL = "https://feeds.example.com/show.xml"
MEDIA_URL = "https://cdn.example.com/ep1.mp3?sig=abc"
FEED = (
    b'<?xml version="1.0" encoding="UTF-8"?>\n'
    b'<rss version="2.0" xmlns:itunes="http://www.itunes.com/dtds/podcast-1.0.dtd">'
    b"<channel><title>Show</title>"
    b'<itunes:image href="https://cdn.example.com/art.jpg"/>'
    b'<item><enclosure url="https://cdn.example.com/ep1.mp3?sig=abc" type="audio/mpeg"/></item>'
    b"</channel></rss>"
)


@pytest.fixture
def components(config, mock_session):
    components = build_components(
        config, cache=FeedCache(start_sweeper=False), session=mock_session
    )
    yield components
    components.cache.close()


@pytest.fixture
def app(config, components):
    app = create_app(config, components)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    return app.test_client()


def feed_upstream(mock_session, *responses):
    mock_session.get.side_effect = list(responses)


def enclosure_url(body: bytes) -> str:
    return ET.fromstring(body).find("channel/item/enclosure").get("url")


class TestPublicRoutes:
    """Test suite for routes that need no credentials."""

    def test_index(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.mimetype == "text/html"
        assert b"Podcast RSS Proxy" in response.data

    def test_health(self, client, components):
        components.cache.set("k", b"feed", ttl=60)

        response = client.get("/health")

        assert response.status_code == 200
        assert response.json["status"] == "ok"
        assert response.json["cache_entries"] == 1
        assert response.json["uptime_seconds"] >= 0


class TestFeedRoute:
    """Test suite for /feed."""

    def test_rewrites_feed(self, client, mock_session):
        feed_upstream(
            mock_session,
            make_response(200, FEED, headers={"Content-Type": "application/rss+xml"}),
        )

        response = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert response.status_code == 200
        assert response.headers["Content-Type"] == "application/xml"
        assert response.headers["X-Cache"] == "MISS"
        path, params = decode_proxy_url(enclosure_url(response.data))
        assert path == "/proxy/audio"
        assert params == {"url": MEDIA_URL, "apikey": API_KEY}

    def test_second_request_hits_cache(self, client, mock_session):
        feed_upstream(mock_session, make_response(200, FEED))

        first = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})
        second = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert second.status_code == 200
        assert second.headers["X-Cache"] == "HIT"
        assert second.data == first.data
        assert mock_session.get.call_count == 1

    def test_bearer_token(self, client, mock_session):
        feed_upstream(mock_session, make_response(200, FEED))

        response = client.get(
            "/feed",
            query_string={"url": FEED_URL},
            headers={"Authorization": f"Bearer {API_KEY}"},
        )

        assert response.status_code == 200

    def test_basic_auth_embeds_api_key(self, client, mock_session):
        feed_upstream(mock_session, make_response(200, FEED))
        token = base64.b64encode(b"alice:wonderland").decode("ascii")

        response = client.get(
            "/feed", query_string={"url": FEED_URL}, headers={"Authorization": f"Basic {token}"}
        )

        assert response.status_code == 200
        _, params = decode_proxy_url(enclosure_url(response.data))
        assert params["apikey"] == API_KEY

    def test_forwarded_proto_sets_scheme(self, client, mock_session):
        feed_upstream(mock_session, make_response(200, FEED))

        response = client.get(
            "/feed",
            query_string={"url": FEED_URL, "apikey": API_KEY},
            headers={"X-Forwarded-Proto": "https"},
            base_url="http://podcasts.example.org",
        )

        assert enclosure_url(response.data).startswith("https://podcasts.example.org/proxy/audio?")

    @pytest.mark.parametrize("apikey", [None, "", "wrong", API_KEY[:-1] + "X"])
    def test_unauthorized(self, client, mock_session, apikey):
        query = {"url": FEED_URL}
        if apikey is not None:
            query["apikey"] = apikey

        response = client.get("/feed", query_string=query)

        assert response.status_code == 401
        assert response.json["error"] == "Unauthorized: invalid or missing credentials"
        assert response.json["error_id"].startswith("ERR-")
        mock_session.get.assert_not_called()

    def test_missing_url(self, client):
        response = client.get("/feed", query_string={"apikey": API_KEY})

        assert response.status_code == 400
        assert response.json["error"] == "Missing 'url' query parameter"

    def test_loopback_source_rejected(self, client, mock_session):
        response = client.get(
            "/feed", query_string={"url": "http://localhost/feed.xml", "apikey": API_KEY}
        )

        assert response.status_code == 400
        mock_session.get.assert_not_called()

    def test_upstream_failure_after_retries(self, client, mock_session):
        feed_upstream(mock_session, make_response(503), make_response(503), make_response(503))

        response = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert response.status_code == 502
        assert "503" in response.json["error"]
        assert mock_session.get.call_count == 3

    def test_retry_recovers(self, client, mock_session):
        feed_upstream(mock_session, make_response(503), make_response(200, FEED))

        response = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert response.status_code == 200

    def test_malformed_feed_is_not_cached(self, client, components, mock_session):
        feed_upstream(mock_session, make_response(200, FEED[:-20]))

        response = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert response.status_code == 500
        assert len(components.cache) == 0

    def test_unsupported_feed_encoding_is_a_json_error(self, client, components, mock_session):
        feed_upstream(
            mock_session,
            make_response(200, b'<?xml version="1.0" encoding="GBK"?><rss><channel/></rss>'),
        )

        response = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})

        assert response.status_code == 500
        assert response.json["error"].startswith("Unsupported feed encoding")
        assert len(components.cache) == 0

    def test_error_body_does_not_echo_secret(self, client, mock_session):
        error = requests.exceptions.ConnectionError(f"cannot reach {FEED_URL}?token=hidden")
        feed_upstream(mock_session, error, error, error)

        response = client.get(
            "/feed",
            query_string={"url": FEED_URL + "?token=hidden", "apikey": API_KEY},
        )

        assert response.status_code == 502
        assert "token=[REDACTED]" in response.json["error"]
        assert "hidden" not in response.get_data(as_text=True)


class TestProxyRoute:
    """Test suite for /proxy and its kind-specific aliases."""

    def test_follows_rewritten_link(self, client, mock_session):
        feed_upstream(
            mock_session,
            make_response(200, FEED),
            make_response(
                200,
                headers={"Content-Type": "audio/mpeg", "Content-Length": "8"},
                chunks=[b"ID3\x04", b"\x00\x00\x00\x00"],
            ),
        )
        feed = client.get("/feed", query_string={"url": FEED_URL, "apikey": API_KEY})
        link = urlsplit(enclosure_url(feed.data))

        response = client.get(f"{link.path}?{link.query}")

        assert response.status_code == 200
        assert response.headers["Content-Type"] == "audio/mpeg"
        assert response.data == b"ID3\x04\x00\x00\x00\x00"
        args, _ = mock_session.get.call_args
        assert args == (MEDIA_URL,)

    @pytest.mark.parametrize("path", ["/proxy", "/proxy/audio", "/proxy/image"])
    def test_range_request(self, client, mock_session, path):
        mock_session.get.return_value = make_response(
            206, headers={"Content-Range": "bytes 0-3/8"}, chunks=[b"ID3\x04"]
        )

        response = client.get(
            path,
            query_string={"url": MEDIA_URL, "apikey": API_KEY},
            headers={"Range": "bytes=0-3", "User-Agent": "Overcast/3.0"},
        )

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 0-3/8"
        assert response.data == b"ID3\x04"
        _, kwargs = mock_session.get.call_args
        assert kwargs["headers"] == {"User-Agent": "Overcast/3.0", "Range": "bytes=0-3"}

    def test_requires_auth(self, client, mock_session):
        response = client.get("/proxy/audio", query_string={"url": MEDIA_URL})

        assert response.status_code == 401
        mock_session.get.assert_not_called()

    def test_upstream_status_is_mirrored(self, client, mock_session):
        mock_session.get.return_value = make_response(404, chunks=[b"gone"])

        response = client.get("/proxy", query_string={"url": MEDIA_URL, "apikey": API_KEY})

        assert response.status_code == 404
        assert response.data == b"gone"

    def test_upstream_unreachable(self, client, mock_session):
        mock_session.get.side_effect = requests.exceptions.ConnectionError("refused")

        response = client.get("/proxy", query_string={"url": MEDIA_URL, "apikey": API_KEY})

        assert response.status_code == 502

    def test_invalid_target(self, client):
        response = client.get(
            "/proxy", query_string={"url": "file:///etc/passwd", "apikey": API_KEY}
        )

        assert response.status_code == 400

    def test_missing_upstream_content_type_is_not_invented(self, client, mock_session):
        mock_session.get.return_value = make_response(200, chunks=[b"\xff\xd8\xff"])

        response = client.get("/proxy/image", query_string={"url": MEDIA_URL, "apikey": API_KEY})

        assert response.status_code == 200
        assert "Content-Type" not in response.headers
        assert response.data == b"\xff\xd8\xff"
