from unittest.mock import Mock
from urllib.parse import parse_qs, urlsplit

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from podcast_proxy.config import ProxyConfig
from podcast_proxy.rewriter import ProxyContext

API_KEY = "s3cret-key"

ENV_VARS = ("API_KEY", "USERNAME", "PASSWORD", "HOST", "PORT", "ALLOWED_HOSTS", "METRICS_PORT")


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_response(status_code=200, content=b"", headers=None, chunks=None):
    """Build a mock requests.Response."""
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.content = content
    response.headers = CaseInsensitiveDict(headers or {})
    response.raw = Mock()
    response.raw.stream.return_value = iter(chunks if chunks is not None else [content])
    return response


def decode_proxy_url(url: str):
    """Split a proxied URL into its path and decoded query parameters."""
    parts = urlsplit(url)
    query = parse_qs(parts.query, keep_blank_values=True)
    params = {key: values[0] for key, values in query.items()}
    return parts.path, params


@pytest.fixture(autouse=True)
def mock_env_vars(monkeypatch):
    """Keep the host environment out of configuration tests."""
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def proxy_context():
    """Context of a proxy reachable at http://proxy.local."""
    return ProxyContext(scheme="http", host="proxy.local", auth_token=API_KEY)


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def config():
    """Configuration with fast retries for tests."""
    return ProxyConfig(
        api_key=API_KEY,
        username="alice",
        password="wonderland",
        max_retries=3,
        retry_backoff=0.0,
        request_timeout=5.0,
    )


@pytest.fixture
def mock_session():
    """A requests.Session stand-in whose get() is configured per test."""
    return Mock(spec=requests.Session)
