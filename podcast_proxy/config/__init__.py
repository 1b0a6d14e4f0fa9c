"""Configuration management for the feed proxy."""

from .proxy_config import ProxyConfig

__all__ = ["ProxyConfig"]
