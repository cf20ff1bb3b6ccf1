"""Profile Store lookups: chunked batch search with individual fallback.

Most Directory records have a profile, so each page is resolved with a few
``accounts.search`` calls (``UID IN (...)``, 50 ids per query).  Ids missing
from the batch result are looked up one at a time with
``accounts.getAccountInfo``, which distinguishes "not found" (a record with a
nonzero ``errorCode``) from a failed call (``ProfileLookupError``).

Batch failures are logged and swallowed here; absence from the result map is
what triggers the individual fallback.
"""

import logging
import os
from typing import Any, Dict, Iterable, List, Mapping, Optional

import requests

from .errors import ConfigError, ProfileLookupError
from .http_client import HTTPClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 50

SEARCH_COLUMNS = "UID, profile, isActive, isRegistered, isVerified, created, lastUpdated, lastLogin"

# Environment variables holding the profile store credentials
ENV_API_KEY = "RECON_PROFILE_API_KEY"
ENV_SECRET = "RECON_PROFILE_SECRET"
ENV_USER_KEY = "RECON_PROFILE_USER_KEY"
ENV_DATA_CENTER = "RECON_PROFILE_DATA_CENTER"
ENV_BASE_URL = "RECON_PROFILE_BASE_URL"


class ProfileStoreSettings:
    """Credentials and endpoint for the Profile Store.

    Either ``data_center`` (``us1``, ``eu1``, ...) or an explicit ``base_url``
    must be given.
    """

    def __init__(self, api_key: str, secret: str, data_center: str = "",
                 user_key: str = "", base_url: str = ""):
        self.api_key = api_key
        self.secret = secret
        self.data_center = data_center
        self.user_key = user_key
        self.base_url = base_url or (
            f"https://accounts.{data_center}.gigya.com" if data_center else ""
        )

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "ProfileStoreSettings":
        """Read settings from the ``RECON_PROFILE_*`` environment variables.

        Raises:
            ConfigError: if the API key, secret, or endpoint is missing.
        """
        env = os.environ if environ is None else environ
        settings = cls(
            api_key=env.get(ENV_API_KEY, ""),
            secret=env.get(ENV_SECRET, ""),
            data_center=env.get(ENV_DATA_CENTER, ""),
            user_key=env.get(ENV_USER_KEY, ""),
            base_url=env.get(ENV_BASE_URL, ""),
        )
        missing = []
        if not settings.api_key:
            missing.append(ENV_API_KEY)
        if not settings.secret:
            missing.append(ENV_SECRET)
        if not settings.base_url:
            missing.append(f"{ENV_DATA_CENTER} or {ENV_BASE_URL}")
        if missing:
            raise ConfigError("Profile store is not configured",
                              "missing " + ", ".join(missing))
        return settings

    def credentials(self) -> Dict[str, str]:
        """Form fields that authenticate every request."""
        form = {"apiKey": self.api_key, "secret": self.secret}
        if self.user_key:
            form["userKey"] = self.user_key
        return form


class ProfileRecord:
    """One account from the Profile Store.

    ``error_code`` is 0 when the account was found.  Any other value means
    the store answered but had no usable account for the id.
    """

    def __init__(
        self,
        external_id: str,
        error_code: int = 0,
        error_message: str = "",
        email: str = "",
        first_name: str = "",
        last_name: str = "",
        is_active: Optional[bool] = None,
        is_registered: Optional[bool] = None,
        is_verified: Optional[bool] = None,
        created_at: str = "",
        updated_at: str = "",
        last_login_at: str = "",
    ):
        self.external_id = external_id
        self.error_code = error_code
        self.error_message = error_message
        self.email = email
        self.first_name = first_name
        self.last_name = last_name
        self.is_active = is_active
        self.is_registered = is_registered
        self.is_verified = is_verified
        self.created_at = created_at
        self.updated_at = updated_at
        self.last_login_at = last_login_at

    @property
    def found(self) -> bool:
        return self.error_code == 0

    @property
    def activity_date(self) -> str:
        """Most recent known activity timestamp, used as a resume anchor."""
        return self.updated_at or self.last_login_at or self.created_at

    @classmethod
    def from_dict(cls, data: Dict[str, Any], fallback_id: str = "") -> "ProfileRecord":
        """Build a record from a search result or a getAccountInfo response."""
        profile = data.get("profile") or {}
        try:
            error_code = int(data.get("errorCode") or 0)
        except (TypeError, ValueError):
            error_code = -1
        return cls(
            external_id=data.get("UID") or fallback_id,
            error_code=error_code,
            error_message=data.get("errorMessage") or "",
            email=profile.get("email") or "",
            first_name=profile.get("firstName") or "",
            last_name=profile.get("lastName") or "",
            is_active=data.get("isActive"),
            is_registered=data.get("isRegistered"),
            is_verified=data.get("isVerified"),
            created_at=data.get("created") or "",
            updated_at=data.get("lastUpdated") or "",
            last_login_at=data.get("lastLogin") or "",
        )

    def __repr__(self):
        return f"ProfileRecord({self.external_id!r}, error_code={self.error_code!r})"


def chunked(items: List[str], size: int = CHUNK_SIZE) -> Iterable[List[str]]:
    """Yield consecutive slices of ``items`` no longer than ``size``."""
    for i in range(0, len(items), size):
        yield items[i:i + size]


def build_in_query(ids: List[str]) -> str:
    """Build the ``accounts.search`` query selecting the given UIDs."""
    uid_list = ",".join(f'"{uid}"' for uid in ids)
    return f"SELECT {SEARCH_COLUMNS} FROM accounts WHERE UID IN ({uid_list})"


class ProfileStoreClient:
    """Resolves raw UIDs to ``ProfileRecord`` objects.

    Args:
        settings:  Credentials and endpoint.
        timeout:   Per-request timeout in seconds.
    """

    def __init__(self, settings: ProfileStoreSettings, timeout: int = 30,
                 tls_no_verify: bool = False):
        self.settings = settings
        self.http = HTTPClient(settings.base_url, timeout=timeout, tls_no_verify=tls_no_verify)

    # -- Batch ---------------------------------------------------------------

    def batch_lookup(self, ids: List[str]) -> Dict[str, ProfileRecord]:
        """Look up ``ids`` in chunks of 50, keyed by lowercased UID.

        Continuation cursors are followed until the store stops returning one.
        A chunk that fails is skipped; its ids are simply absent from the map.
        """
        results: Dict[str, ProfileRecord] = {}
        for index, chunk in enumerate(chunked(list(ids))):
            try:
                self._search_chunk(chunk, results)
            except ProfileLookupError as exc:
                logger.warning("Batch search failed for chunk %d (%d ids): %s",
                               index, len(chunk), exc)
        return results

    def _search_chunk(self, chunk: List[str], results: Dict[str, ProfileRecord]):
        form = self.settings.credentials()
        form["query"] = build_in_query(chunk)
        form["format"] = "json"
        data = self._call("/accounts.search", form)

        while True:
            error_code = data.get("errorCode") or 0
            if error_code:
                raise ProfileLookupError(f"accounts.search error {error_code}",
                                         data.get("errorMessage") or "")
            for entry in data.get("results") or []:
                uid = entry.get("UID")
                if not uid:
                    continue
                record = ProfileRecord.from_dict(entry)
                record.error_code = 0
                results[uid.lower()] = record

            cursor_id = data.get("nextCursorId")
            if not cursor_id:
                return
            form = self.settings.credentials()
            form["cursorId"] = cursor_id
            form["format"] = "json"
            data = self._call("/accounts.search", form)

    # -- Individual ----------------------------------------------------------

    def individual_lookup(self, uid: str) -> ProfileRecord:
        """Fetch a single account.

        Returns a record with a nonzero ``error_code`` when the store reports
        the account as missing.

        Raises:
            ProfileLookupError: when the call itself fails.
        """
        form = self.settings.credentials()
        form["UID"] = uid
        form["include"] = "profile"
        form["format"] = "json"
        data = self._call("/accounts.getAccountInfo", form)
        return ProfileRecord.from_dict(data, fallback_id=uid)

    # -- Internals -----------------------------------------------------------

    def _call(self, path: str, form: Dict[str, str]) -> Dict[str, Any]:
        try:
            resp = self.http.post_form(path, form)
        except requests.RequestException as exc:
            raise ProfileLookupError(f"{path} request failed", str(exc)) from exc
        try:
            data = resp.json()
        except ValueError as exc:
            raise ProfileLookupError(f"{path} returned invalid JSON", str(exc)) from exc
        if not isinstance(data, dict):
            raise ProfileLookupError(f"{path} returned an unexpected body", resp.body[:200])
        # 4xx answers that carry an errorCode are store verdicts, not failures
        if resp.status_code >= 500 or (not resp.ok and not data.get("errorCode")):
            raise ProfileLookupError(f"{path} returned {resp.status_code}", resp.body[:200])
        return data
