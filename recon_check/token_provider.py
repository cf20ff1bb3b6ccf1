"""OAuth2 client-credentials token issuance for the Directory service.

The client authenticates with HTTP Basic (client id and secret) and posts
``grant_type=client_credentials`` plus the requested scopes as a form body.
"""

import logging
import time
from typing import Optional

import requests

from .errors import AuthError
from .http_client import HTTPClient

logger = logging.getLogger(__name__)

# Refresh this many seconds before the issuer-reported expiry
REFRESH_BUFFER_SECONDS = 60


class AccessToken:
    """A bearer token plus the bookkeeping needed to refresh it in time."""

    def __init__(self, access_token: str, expires_in: int, obtained_at: Optional[float] = None):
        self.access_token = access_token
        self.expires_in = expires_in
        self.obtained_at = obtained_at if obtained_at is not None else time.monotonic()

    def needs_refresh(self, now: Optional[float] = None,
                      buffer: int = REFRESH_BUFFER_SECONDS) -> bool:
        """True once the token is within ``buffer`` seconds of expiring."""
        now = time.monotonic() if now is None else now
        return now - self.obtained_at > self.expires_in - buffer

    def __repr__(self):
        return f"AccessToken(expires_in={self.expires_in!r})"


def fetch_token(
    token_endpoint: str,
    client_id: str,
    client_secret: str,
    scopes: str = "",
    timeout: int = 30,
    tls_no_verify: bool = False,
) -> AccessToken:
    """Request a token from ``token_endpoint`` using the client-credentials grant.

    Raises:
        AuthError: on transport failure, a non-2xx response, or a body that
            carries no ``access_token``.
    """
    client = HTTPClient(username=client_id, password=client_secret,
                        timeout=timeout, tls_no_verify=tls_no_verify)
    form = {"grant_type": "client_credentials"}
    if scopes:
        form["scope"] = scopes

    try:
        resp = client.post_form(token_endpoint, form)
    except requests.RequestException as exc:
        raise AuthError("Token request failed", str(exc)) from exc

    try:
        body = resp.json() or {}
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        if resp.ok:
            raise AuthError("Token response is not a JSON object", resp.body[:200])
        body = {}

    if not resp.ok:
        detail = body.get("error_description") or body.get("error") or resp.body[:200]
        raise AuthError(f"Token endpoint returned {resp.status_code}", detail)

    access_token = body.get("access_token")
    if not access_token:
        raise AuthError("Token response did not include an access_token")

    try:
        expires_in = int(body.get("expires_in", 3600))
    except (TypeError, ValueError):
        raise AuthError("Token response has a malformed expires_in",
                        repr(body.get("expires_in")))

    logger.info("Obtained access token, expires_in=%ss", expires_in)
    return AccessToken(access_token, expires_in)
