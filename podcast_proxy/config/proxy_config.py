"""Configuration settings for the feed proxy server."""

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


def _split_hosts(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    return [host.strip().lower() for host in raw.split(",") if host.strip()]


@dataclass
class ProxyConfig:
    """Configuration for the feed proxy.

    Attributes:
        api_key: Shared secret callers present as a token
        username: Optional username for the username/password path
        password: Optional password for the username/password path
        host: Interface the HTTP server binds to
        port: Port the HTTP server listens on
        cache_ttl: Seconds a rewritten feed stays cached
        cache_max_entries: Maximum number of cached feeds
        sweep_interval: Seconds between background cache sweeps
        max_retries: Maximum fetch attempts per feed request
        retry_backoff: Backoff unit in seconds (retry n waits n units)
        request_timeout: Per-attempt upstream timeout in seconds
        allowed_hosts: Feed source hosts that may be fetched (empty allows all)
        metrics_port: Optional port for the Prometheus metrics server
        relay_chunk_size: Bytes per chunk when relaying media
    """

    api_key: str
    username: Optional[str] = None
    password: Optional[str] = None
    host: str = "0.0.0.0"
    port: int = 8080
    cache_ttl: float = 600.0
    cache_max_entries: int = 1024
    sweep_interval: float = 300.0
    max_retries: int = 5
    retry_backoff: float = 1.0
    request_timeout: float = 60.0
    allowed_hosts: List[str] = field(default_factory=list)
    metrics_port: Optional[int] = None
    relay_chunk_size: int = 64 * 1024

    @property
    def basic_auth_enabled(self) -> bool:
        """Whether the username/password path is configured."""
        return bool(self.username and self.password)

    @classmethod
    def from_dict(cls, config_dict: Dict[str, Any]) -> "ProxyConfig":
        """Create a ProxyConfig instance from a dictionary.

        Args:
            config_dict: Dictionary containing configuration values

        Returns:
            ProxyConfig instance with values from dictionary
        """
        return cls(**{k: v for k, v in config_dict.items() if k in cls.__dataclass_fields__})

    @classmethod
    def from_env(cls) -> "ProxyConfig":
        """Create config from environment variables.

        Environment Variables:
            API_KEY: Required shared secret
            USERNAME: Optional username
            PASSWORD: Optional password
            HOST: Optional bind address
            PORT: Optional listening port
            CACHE_TTL: Optional cache TTL in seconds
            CACHE_MAX_ENTRIES: Optional cache size bound
            CACHE_SWEEP_INTERVAL: Optional sweep interval in seconds
            MAX_RETRIES: Optional maximum fetch attempts
            RETRY_BACKOFF: Optional backoff unit in seconds
            REQUEST_TIMEOUT: Optional per-attempt timeout in seconds
            ALLOWED_HOSTS: Optional comma-separated host allow-list
            METRICS_PORT: Optional Prometheus metrics port

        Returns:
            ProxyConfig instance

        Raises:
            ValueError: If required API_KEY is missing
        """
        api_key = os.getenv("API_KEY")
        if not api_key:
            raise ValueError("API_KEY environment variable is required")

        metrics_port = os.getenv("METRICS_PORT")

        return cls(
            api_key=api_key,
            username=os.getenv("USERNAME") or None,
            password=os.getenv("PASSWORD") or None,
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "8080")),
            cache_ttl=float(os.getenv("CACHE_TTL", "600")),
            cache_max_entries=int(os.getenv("CACHE_MAX_ENTRIES", "1024")),
            sweep_interval=float(os.getenv("CACHE_SWEEP_INTERVAL", "300")),
            max_retries=int(os.getenv("MAX_RETRIES", "5")),
            retry_backoff=float(os.getenv("RETRY_BACKOFF", "1.0")),
            request_timeout=float(os.getenv("REQUEST_TIMEOUT", "60")),
            allowed_hosts=_split_hosts(os.getenv("ALLOWED_HOSTS")),
            metrics_port=int(metrics_port) if metrics_port else None,
        )
