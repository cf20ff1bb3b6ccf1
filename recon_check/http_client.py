"""Thin HTTP abstraction shared by the token, directory, and profile store clients.

Key behaviors:
- Automatic 429 Too Many Requests retry with Retry-After header support
- Bearer token and HTTP Basic authentication
- TLS option to skip certificate verification
- ``redact_auth()`` helper for safe logging of headers

Non-2xx responses are returned, not raised.  Transport failures propagate as
``requests.RequestException`` so each client can map them onto its own error
type.
"""

import base64
import json
import logging
import time
from typing import Any, Dict, Optional

import requests

logger = logging.getLogger(__name__)

# Retry policy for 429 Too Many Requests (RFC 6585)
_MAX_RETRIES = 3
_DEFAULT_RETRY_AFTER = 2  # seconds, used when Retry-After header is missing


class HTTPResponse:
    """Normalized HTTP response wrapper."""

    def __init__(self, status_code: int, headers: Dict[str, str], body: str):
        self.status_code = status_code
        self.headers = headers
        self.body = body
        self._json = None

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    def json(self) -> Any:
        """Parse and cache the response body as JSON."""
        if self._json is None:
            self._json = json.loads(self.body) if self.body else None
        return self._json

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lower = name.lower()
        for k, v in self.headers.items():
            if k.lower() == lower:
                return v
        return None


class HTTPClient:
    """HTTP client for the identity services a validation run talks to.

    Args:
        base_url:       Root URL that request paths are appended to.  Paths that
                        are already absolute URLs are used as-is.
        token:          Bearer token for authentication
        username:       Username for HTTP Basic authentication
        password:       Password for HTTP Basic authentication
        tls_no_verify:  Skip TLS certificate verification (for self-signed certs)
        timeout:        Per-request timeout in seconds
    """

    def __init__(
        self,
        base_url: str = "",
        token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        tls_no_verify: bool = False,
        timeout: int = 30,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.username = username
        self.password = password
        self.tls_no_verify = tls_no_verify
        self.timeout = timeout

    # -- Public API ----------------------------------------------------------

    def get(self, path: str, params: Optional[Dict[str, str]] = None,
            extra_headers: Optional[Dict[str, str]] = None,
            token: Optional[str] = None) -> HTTPResponse:
        """Send a GET request with optional query parameters."""
        return self._request("GET", path, params=params,
                             extra_headers=extra_headers, token=token)

    def post_form(self, path: str, data: Dict[str, str],
                  extra_headers: Optional[Dict[str, str]] = None,
                  token: Optional[str] = None) -> HTTPResponse:
        """Send a POST request with an ``application/x-www-form-urlencoded`` body."""
        return self._request("POST", path, form=data,
                             extra_headers=extra_headers, token=token)

    # -- Internals -----------------------------------------------------------

    def _url(self, path: str) -> str:
        if path.startswith("http://") or path.startswith("https://"):
            return path
        return f"{self.base_url}{path}"

    def _build_headers(self, extra: Optional[Dict[str, str]] = None,
                       token: Optional[str] = None) -> Dict[str, str]:
        """Build the default request headers with auth credentials.

        A per-call ``token`` wins over the client's own, since bearer tokens
        rotate during long runs while the client object does not.
        """
        headers = {"Accept": "application/json"}
        bearer = token or self.token
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        elif self.username and self.password:
            creds = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            headers["Authorization"] = f"Basic {creds}"
        if extra:
            headers.update(extra)
        return headers

    def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, str]] = None,
        form: Optional[Dict[str, str]] = None,
        extra_headers: Optional[Dict[str, str]] = None,
        token: Optional[str] = None,
    ) -> HTTPResponse:
        """Execute an HTTP request with automatic 429 retry.

        Retries up to ``_MAX_RETRIES`` times when the server responds with
        429 Too Many Requests, sleeping for the duration specified by the
        ``Retry-After`` header (or ``_DEFAULT_RETRY_AFTER`` if absent).
        """
        url = self._url(path)
        headers = self._build_headers(extra_headers, token=token)
        logger.debug("%s %s headers=%s", method, url, redact_auth(headers))

        for attempt in range(_MAX_RETRIES + 1):
            resp = self._send(method, url, headers, params, form)

            if resp.status_code == 429 and attempt < _MAX_RETRIES:
                retry_after = _parse_retry_after(resp.header("Retry-After"))
                logger.debug("%s %s throttled, retrying in %.1fs", method, url, retry_after)
                time.sleep(retry_after)
                continue

            return resp

        return resp  # Return last response if all retries exhausted

    def _send(
        self,
        method: str,
        url: str,
        headers: Dict[str, str],
        params: Optional[Dict[str, str]],
        form: Optional[Dict[str, str]],
    ) -> HTTPResponse:
        kwargs: Dict[str, Any] = {
            "headers": headers,
            "timeout": self.timeout,
            "verify": not self.tls_no_verify,
        }

        if params is not None:
            kwargs["params"] = params
        if form is not None:
            kwargs["data"] = form

        resp = requests.request(method, url, **kwargs)
        return HTTPResponse(resp.status_code, dict(resp.headers), resp.text)


def _parse_retry_after(value: Optional[str]) -> float:
    """Parse a Retry-After header value into seconds to wait.

    Handles integer-second values per RFC 7231 Section 7.1.3.
    Returns ``_DEFAULT_RETRY_AFTER`` if the header is missing or unparseable.
    """
    if not value:
        return _DEFAULT_RETRY_AFTER
    try:
        return max(0.0, float(value))
    except ValueError:
        return _DEFAULT_RETRY_AFTER


def redact_auth(headers: Dict[str, str]) -> Dict[str, str]:
    """Return a copy of headers with Authorization values replaced by ``***REDACTED***``."""
    redacted = dict(headers)
    for key in list(redacted.keys()):
        if key.lower() == "authorization":
            redacted[key] = "***REDACTED***"
    return redacted
