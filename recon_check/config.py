"""Validation run configuration.

``RunConfig.from_dict`` accepts the camelCase JSON body of a start-validation
request; the CLI builds ``RunConfig`` directly from its options.
"""

from typing import Any, Dict, List, Optional

from .errors import ConfigError
from .limiter import DEFAULT_CONCURRENCY, clamp_concurrency
from .models import RunProgress

DEFAULT_SCOPES = "fr:idm:*"
DEFAULT_PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
DEFAULT_QUERY_FILTER = "true"

# Fraction of each page's eligible records drawn in spot-check mode
DEFAULT_SAMPLE_RATIO = 0.3

REQUIRED_FIELDS = ("tenantUrl", "clientId", "clientSecret", "tokenEndpoint")


class SpotCheckConfig:
    """Randomized sampling instead of a full scan.

    Args:
        sample_size:   Total records to sample across the run.
        exclude_ids:   Directory ids sampled by earlier runs; never re-sampled.
        ratio:         Fraction of each page's eligible records to draw.
    """

    def __init__(self, sample_size: int, exclude_ids: Optional[List[str]] = None,
                 ratio: float = DEFAULT_SAMPLE_RATIO):
        if sample_size < 1:
            raise ConfigError("spotCheck.sampleSize must be at least 1")
        if not 0 < ratio <= 1:
            raise ConfigError("spot check ratio must be in (0, 1]")
        self.sample_size = sample_size
        self.exclude_ids = {i.lower() for i in (exclude_ids or [])}
        self.ratio = ratio


class RunConfig:
    """Everything one validation run needs besides profile store credentials."""

    def __init__(
        self,
        tenant_url: str,
        client_id: str,
        client_secret: str,
        token_endpoint: str,
        scopes: str = DEFAULT_SCOPES,
        concurrency: int = DEFAULT_CONCURRENCY,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_users: Optional[int] = None,
        query_filter: str = DEFAULT_QUERY_FILTER,
        resume_from_cookie: Optional[str] = None,
        resume_progress: Optional[RunProgress] = None,
        resume_last_processed_date: Optional[str] = None,
        spot_check: Optional[SpotCheckConfig] = None,
        tls_no_verify: bool = False,
    ):
        missing = [name for name, value in (
            ("tenantUrl", tenant_url), ("clientId", client_id),
            ("clientSecret", client_secret), ("tokenEndpoint", token_endpoint),
        ) if not value]
        if missing:
            raise ConfigError("Missing required connection parameters", ", ".join(missing))
        if page_size < 1:
            raise ConfigError("pageSize must be at least 1")

        self.tenant_url = tenant_url.rstrip("/")
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_endpoint = token_endpoint
        self.scopes = scopes
        self.concurrency = clamp_concurrency(concurrency)
        self.page_size = min(page_size, MAX_PAGE_SIZE)
        self.query_filter = query_filter or DEFAULT_QUERY_FILTER
        self.resume_from_cookie = resume_from_cookie or None
        self.resume_progress = resume_progress
        self.resume_last_processed_date = resume_last_processed_date or None
        self.spot_check = spot_check
        self.tls_no_verify = tls_no_verify
        # A spot check never processes more than its sample
        if max_users is None and spot_check is not None:
            max_users = spot_check.sample_size
        self.max_users = max_users if max_users and max_users > 0 else None

    @property
    def is_resume(self) -> bool:
        return bool(self.resume_from_cookie)

    @classmethod
    def from_dict(cls, body: Dict[str, Any]) -> "RunConfig":
        """Parse a start-validation request body.

        Raises:
            ConfigError: if a required connection parameter is missing or a
                numeric field is malformed.
        """
        if not isinstance(body, dict):
            raise ConfigError("Request body must be a JSON object")
        missing = [f for f in REQUIRED_FIELDS if not body.get(f)]
        if missing:
            raise ConfigError("Missing required connection parameters", ", ".join(missing))

        spot_check = None
        raw_spot = body.get("spotCheck")
        if raw_spot:
            if not isinstance(raw_spot, dict):
                raise ConfigError("spotCheck must be an object", repr(raw_spot))
            spot_check = SpotCheckConfig(
                sample_size=_int(raw_spot, "sampleSize", 0),
                exclude_ids=list(raw_spot.get("excludeUids") or []),
            )

        resume_progress = None
        if body.get("resumeProgress"):
            resume_progress = RunProgress.from_dict(body["resumeProgress"])

        return cls(
            tenant_url=body["tenantUrl"],
            client_id=body["clientId"],
            client_secret=body["clientSecret"],
            token_endpoint=body["tokenEndpoint"],
            scopes=body.get("scopes") or DEFAULT_SCOPES,
            concurrency=_int(body, "concurrency", DEFAULT_CONCURRENCY),
            page_size=_int(body, "pageSize", DEFAULT_PAGE_SIZE),
            max_users=_int(body, "maxUsers", 0) or None,
            query_filter=body.get("queryFilter") or DEFAULT_QUERY_FILTER,
            resume_from_cookie=body.get("resumeFromCookie"),
            resume_progress=resume_progress,
            resume_last_processed_date=body.get("resumeLastProcessedDate"),
            spot_check=spot_check,
            tls_no_verify=bool(body.get("tlsNoVerify", False)),
        )


def _int(body: Dict[str, Any], key: str, default: int) -> int:
    value = body.get(key)
    if value is None or value == "":
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{key} must be an integer", repr(value))
