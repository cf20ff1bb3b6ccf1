"""Cursor-paginated search against the IDM managed-user endpoint.

Every request asks for the same minimal field projection: the identifier,
login and mail attributes, names, account status, and the two indexed
strings that carry the raw profile store identifier.
"""

import logging
from typing import Any, Dict, List, Optional

import requests

from .errors import SearchError
from .http_client import HTTPClient

logger = logging.getLogger(__name__)

# Indexed string holding the raw profile store UID, and its dashes flag
RAW_ID_FIELD = "frIndexedString16"
HAS_DASHES_FIELD = "frIndexedString20"

SEARCH_FIELDS = ",".join([
    "_id", "userName", "mail", "givenName", "sn", "accountStatus",
    RAW_ID_FIELD, HAS_DASHES_FIELD,
])

DEFAULT_MANAGED_OBJECT = "alpha_user"


class DirectoryRecord:
    """One managed user as returned by the Directory.

    Attributes:
        id:                     Stable Directory identifier (``_id``).
        username:               ``userName``, usually an email address.
        email:                  ``mail``.
        given_name:             ``givenName``.
        surname:                ``sn``.
        account_status:         ``accountStatus`` (e.g. ``active``/``inactive``).
        external_raw_id:        Raw profile store UID, if provisioned.
        external_id_has_dashes: Whether the stored UID was dashed, if known.
    """

    __slots__ = ("id", "username", "email", "given_name", "surname",
                 "account_status", "external_raw_id", "external_id_has_dashes")

    def __init__(
        self,
        id: str,
        username: str = "",
        email: str = "",
        given_name: str = "",
        surname: str = "",
        account_status: str = "",
        external_raw_id: str = "",
        external_id_has_dashes: Optional[bool] = None,
    ):
        self.id = id
        self.username = username
        self.email = email
        self.given_name = given_name
        self.surname = surname
        self.account_status = account_status
        self.external_raw_id = external_raw_id
        self.external_id_has_dashes = external_id_has_dashes

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DirectoryRecord":
        """Build a record from a raw search result entry."""
        flag = data.get(HAS_DASHES_FIELD)
        has_dashes = None
        if isinstance(flag, str) and flag:
            has_dashes = flag.lower() == "true"
        elif isinstance(flag, bool):
            has_dashes = flag
        return cls(
            id=data.get("_id") or "",
            username=data.get("userName") or "",
            email=data.get("mail") or "",
            given_name=data.get("givenName") or "",
            surname=data.get("sn") or "",
            account_status=data.get("accountStatus") or "",
            external_raw_id=data.get(RAW_ID_FIELD) or "",
            external_id_has_dashes=has_dashes,
        )

    @property
    def login(self) -> str:
        """The email-like identity used in reports: ``userName``, else ``mail``."""
        return self.username or self.email

    def __repr__(self):
        return f"DirectoryRecord({self.id!r})"


class DirectoryPage:
    """One page of search results plus the cursor for the next page."""

    def __init__(self, records: List[DirectoryRecord],
                 next_cursor: Optional[str] = None,
                 total_count: Optional[int] = None):
        self.records = records
        self.next_cursor = next_cursor
        self.total_count = total_count

    @property
    def is_last(self) -> bool:
        """An empty page or a missing cursor both end pagination."""
        return not self.records or not self.next_cursor


class DirectoryClient:
    """Searches managed users under ``{tenant_url}/openidm/managed/{managed_object}``.

    Args:
        tenant_url:      Tenant root URL; trailing slashes are stripped.
        managed_object:  Managed object type to page through.
        timeout:         Per-request timeout in seconds.
    """

    def __init__(self, tenant_url: str, managed_object: str = DEFAULT_MANAGED_OBJECT,
                 timeout: int = 30, tls_no_verify: bool = False):
        self.http = HTTPClient(tenant_url, timeout=timeout, tls_no_verify=tls_no_verify)
        self.path = f"/openidm/managed/{managed_object}"

    def search(
        self,
        token: str,
        query_filter: str = "true",
        page_size: int = 100,
        cursor: Optional[str] = None,
    ) -> DirectoryPage:
        """Fetch one page of records.

        Raises:
            SearchError: on transport failure, a non-2xx response, or a body
                that is not a search result.
        """
        params = {
            "_queryFilter": query_filter,
            "_fields": SEARCH_FIELDS,
            "_pageSize": str(page_size),
        }
        if cursor:
            params["_pagedResultsCookie"] = cursor

        try:
            resp = self.http.get(self.path, params=params, token=token,
                                 extra_headers={"Accept-API-Version": "resource=1.0"})
        except requests.RequestException as exc:
            raise SearchError("Directory search request failed", str(exc)) from exc

        if not resp.ok:
            logger.error("Directory search error %s: %s", resp.status_code, resp.body[:500])
            raise SearchError(f"Directory search failed ({resp.status_code})", resp.body[:500])

        try:
            data = resp.json() or {}
        except ValueError as exc:
            raise SearchError("Directory search returned invalid JSON", str(exc)) from exc
        if not isinstance(data, dict):
            raise SearchError("Directory search response is not a JSON object", resp.body[:500])

        records = [DirectoryRecord.from_dict(r) for r in data.get("result") or []]
        page = DirectoryPage(
            records,
            next_cursor=data.get("pagedResultsCookie") or None,
            total_count=data.get("totalPagedResults"),
        )
        logger.debug("Directory search returned %d records, more=%s",
                     len(records), bool(page.next_cursor))
        return page
