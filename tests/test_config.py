"""Tests for proxy configuration loading."""

import pytest

from podcast_proxy.config import ProxyConfig


def test_from_env_defaults(monkeypatch):
    monkeypatch.setenv("API_KEY", "key")

    config = ProxyConfig.from_env()

    assert config.api_key == "key"
    assert config.username is None
    assert config.password is None
    assert config.host == "0.0.0.0"
    assert config.port == 8080
    assert config.cache_ttl == 600.0
    assert config.cache_max_entries == 1024
    assert config.sweep_interval == 300.0
    assert config.max_retries == 5
    assert config.retry_backoff == 1.0
    assert config.request_timeout == 60.0
    assert config.allowed_hosts == []
    assert config.metrics_port is None
    assert config.basic_auth_enabled is False


def test_from_env_overrides(monkeypatch):
    for name, value in {
        "API_KEY": "key",
        "USERNAME": "alice",
        "PASSWORD": "wonderland",
        "HOST": "127.0.0.1",
        "PORT": "9000",
        "CACHE_TTL": "30",
        "CACHE_MAX_ENTRIES": "16",
        "CACHE_SWEEP_INTERVAL": "5",
        "MAX_RETRIES": "2",
        "RETRY_BACKOFF": "0.5",
        "REQUEST_TIMEOUT": "10",
        "ALLOWED_HOSTS": " Feeds.Example.com, ,cdn.example.org ",
        "METRICS_PORT": "9100",
    }.items():
        monkeypatch.setenv(name, value)

    config = ProxyConfig.from_env()

    assert config.basic_auth_enabled is True
    assert config.host == "127.0.0.1"
    assert config.port == 9000
    assert config.cache_ttl == 30.0
    assert config.cache_max_entries == 16
    assert config.sweep_interval == 5.0
    assert config.max_retries == 2
    assert config.retry_backoff == 0.5
    assert config.request_timeout == 10.0
    assert config.allowed_hosts == ["feeds.example.com", "cdn.example.org"]
    assert config.metrics_port == 9100


def test_from_env_requires_api_key():
    with pytest.raises(ValueError, match="API_KEY"):
        ProxyConfig.from_env()


def test_empty_credentials_disable_basic_auth(monkeypatch):
    monkeypatch.setenv("API_KEY", "key")
    monkeypatch.setenv("USERNAME", "alice")
    monkeypatch.setenv("PASSWORD", "")

    config = ProxyConfig.from_env()

    assert config.password is None
    assert config.basic_auth_enabled is False


def test_from_dict_ignores_unknown_keys():
    config = ProxyConfig.from_dict({"api_key": "key", "port": 1234, "unknown": True})

    assert config.api_key == "key"
    assert config.port == 1234
