"""Core building blocks shared by the proxy components."""

from podcast_proxy.core.errors import (
    AuthError,
    BaseError,
    ClientInputError,
    ErrorCategory,
    ErrorSeverity,
    ProcessingError,
    UpstreamUnavailable,
    redact_secrets,
)

__all__ = [
    "AuthError",
    "BaseError",
    "ClientInputError",
    "ErrorCategory",
    "ErrorSeverity",
    "ProcessingError",
    "UpstreamUnavailable",
    "redact_secrets",
]
