"""Access control for the feed and relay endpoints."""

import base64
import binascii
import hmac
from dataclasses import dataclass
from functools import wraps
from typing import List, Mapping, Optional, Tuple

import structlog
from flask import g, request

from podcast_proxy.core.errors import AuthError
from podcast_proxy.metrics import metrics

logger = structlog.get_logger(__name__)

TOKEN_PARAM = "apikey"
USERNAME_PARAM = "username"
PASSWORD_PARAM = "password"


@dataclass(frozen=True)
class Credentials:
    """The outcome of a successful authentication.

    Attributes:
        method: Which path succeeded (bearer, apikey, basic or query_basic)
        token: Token to embed in URLs handed back to this caller
    """

    method: str
    token: str


def secure_compare(presented: str, expected: str) -> bool:
    """Compare a presented secret with the configured one.

    The length check short-circuits before the constant-time comparison,
    which leaks the secret's length through timing.
    """
    presented_bytes = presented.encode("utf-8")
    expected_bytes = expected.encode("utf-8")
    if len(presented_bytes) != len(expected_bytes):
        return False
    return hmac.compare_digest(presented_bytes, expected_bytes)


def _parse_authorization(header: Optional[str]) -> Tuple[Optional[str], Optional[Tuple[str, str]]]:
    """Split an Authorization header into a bearer token or a basic pair."""
    if not header:
        return None, None
    scheme, _, value = header.strip().partition(" ")
    scheme = scheme.lower()
    value = value.strip()
    if scheme == "bearer" and value:
        return value, None
    if scheme == "basic" and value:
        try:
            decoded = base64.b64decode(value, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None, None
        username, sep, password = decoded.partition(":")
        if sep:
            return None, (username, password)
    return None, None


class AccessGate:
    """Validates caller credentials against the configured secrets."""

    def __init__(
        self, api_key: str, username: Optional[str] = None, password: Optional[str] = None
    ):
        """Initialize the gate.

        Args:
            api_key: Shared secret accepted as a bearer token or ``apikey``
            username: Optional username for the username/password path
            password: Optional password for the username/password path
        """
        if not api_key:
            raise ValueError("AccessGate requires an API key")
        self.api_key = api_key
        self.username = username
        self.password = password
        self.failure_counter = metrics.register_counter(
            "auth_failures_total", "Total number of rejected requests"
        )

    @property
    def basic_enabled(self) -> bool:
        return bool(self.username and self.password)

    def _check_pair(self, username: str, password: str) -> bool:
        # Both comparisons always run
        user_ok = secure_compare(username, self.username)
        password_ok = secure_compare(password, self.password)
        return user_ok and password_ok

    def authenticate(
        self,
        headers: Mapping[str, str],
        args: Mapping[str, str],
        remote_addr: Optional[str] = None,
    ) -> Credentials:
        """Authenticate a request.

        Paths are tried in order: bearer header, ``apikey`` parameter, basic
        header, ``username``/``password`` parameters. The first that
        succeeds wins.

        Args:
            headers: Request headers
            args: Query parameters
            remote_addr: Caller address, used for logging only

        Returns:
            Credentials describing the successful path

        Raises:
            AuthError: If no path succeeds
        """
        bearer, basic_pair = _parse_authorization(headers.get("Authorization"))
        query_token = args.get(TOKEN_PARAM)
        presented: List[str] = []

        if bearer is not None:
            presented.append("bearer")
            if secure_compare(bearer, self.api_key):
                return Credentials("bearer", bearer)

        if query_token:
            presented.append(TOKEN_PARAM)
            if secure_compare(query_token, self.api_key):
                return Credentials(TOKEN_PARAM, query_token)

        if self.basic_enabled:
            if basic_pair is not None:
                presented.append("basic")
                if self._check_pair(*basic_pair):
                    return Credentials("basic", self.api_key)

            query_user = args.get(USERNAME_PARAM)
            query_password = args.get(PASSWORD_PARAM)
            if query_user is not None and query_password is not None:
                presented.append("query_basic")
                if self._check_pair(query_user, query_password):
                    return Credentials("query_basic", self.api_key)

        self.failure_counter.inc()
        logger.warning(
            "unauthorized_access_attempt",
            remote_addr=remote_addr,
            presented=presented or ["none"],
        )
        raise AuthError(details={"remote_addr": remote_addr})

    def require_auth(self, view):
        """Decorate a Flask view so it only runs for authenticated callers.

        The credentials are stored on ``flask.g.credentials``.
        """

        @wraps(view)
        def wrapped(*args, **kwargs):
            g.credentials = self.authenticate(request.headers, request.args, request.remote_addr)
            return view(*args, **kwargs)

        return wrapped
