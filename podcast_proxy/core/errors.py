"""Error definitions for the podcast feed proxy.

Every error a request can end in derives from :class:`BaseError`, which
carries the HTTP status the API layer answers with.
"""

import random
import re
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCategory(Enum):
    """Categories of errors that can occur in the system."""

    CLIENT_INPUT_ERROR = "client_input_error"
    AUTH_ERROR = "auth_error"
    UPSTREAM_ERROR = "upstream_error"
    PROCESSING_ERROR = "processing_error"


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_SECRET_PATTERN = re.compile(r"(apikey|api_key|token|password)=([^&\s'\"]+)", re.IGNORECASE)


def redact_secrets(message: str) -> str:
    """Redact credential values embedded in URLs or messages."""
    return _SECRET_PATTERN.sub(r"\1=[REDACTED]", message)


def generate_error_id() -> str:
    """Generate a unique error ID."""
    timestamp = int(time.time() * 1000)
    return f"ERR-{timestamp}-{random.randint(1000, 9999)}"


class BaseError(Exception):
    """Base error class for all proxy errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        category: ErrorCategory,
        severity: ErrorSeverity,
        error_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize base error.

        Args:
            message: Human-readable error message
            category: Error category
            severity: Error severity
            error_id: Optional unique error ID, generated when omitted
            details: Optional error details (URL, attempt count, ...)
        """
        super().__init__(message)
        self.message = message
        self.category = category
        self.severity = severity
        self.error_id = error_id or generate_error_id()
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Client-facing representation of the error."""
        return {"error": redact_secrets(self.message), "error_id": self.error_id}


class ClientInputError(BaseError):
    """Raised for a missing or invalid URL, or a blocked host."""

    status_code = 400

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        error_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize client input error."""
        super().__init__(
            message,
            ErrorCategory.CLIENT_INPUT_ERROR,
            severity,
            error_id,
            details,
        )


class AuthError(BaseError):
    """Raised when credentials are missing or invalid."""

    status_code = 401

    def __init__(
        self,
        message: str = "Unauthorized: invalid or missing credentials",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize auth error."""
        super().__init__(
            message,
            ErrorCategory.AUTH_ERROR,
            severity,
            error_id,
            details,
        )


class UpstreamUnavailable(BaseError):
    """Raised when the upstream fails or keeps answering non-200."""

    status_code = 502

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.HIGH,
        error_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize upstream error."""
        super().__init__(
            message,
            ErrorCategory.UPSTREAM_ERROR,
            severity,
            error_id,
            details,
        )


class ProcessingError(BaseError):
    """Raised when a request cannot be built, a body cannot be read, or a
    feed cannot be decoded or rewritten."""

    status_code = 500

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        error_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Initialize processing error."""
        super().__init__(
            message,
            ErrorCategory.PROCESSING_ERROR,
            severity,
            error_id,
            details,
        )
