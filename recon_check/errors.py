"""Exception taxonomy for validation runs.

``AuthError`` and ``SearchError`` end a run.  ``ProfileLookupError`` is
recovered locally by the orchestrator.  ``ValidationAbort`` is the clean
cancellation path, and ``ArtifactNotFound`` only surfaces on download.
"""

from typing import Optional


class ReconError(Exception):
    """Base class for all recon-check errors.

    Args:
        message: Human-readable summary shown to operators.
        details: Optional extended detail (upstream status, response body).
    """

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self):
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigError(ReconError):
    """Required connection or profile store settings are missing or invalid."""


class AuthError(ReconError):
    """Token issuance or refresh failed."""


class SearchError(ReconError):
    """A Directory page fetch failed."""


class ProfileLookupError(ReconError):
    """A Profile Store lookup failed at the transport or protocol level."""


class ValidationAbort(ReconError):
    """The run was cancelled by the caller."""


class ArtifactNotFound(ReconError):
    """The requested job artifact is unknown or has expired."""
