"""Classifies discrepancies between a Directory record and its profile.

``compare()`` is pure: for the same record, profile, and id sequence it
always returns the same mismatches in the same order.  Checks run in a fixed
order and accumulate, except that a failed lookup or a not-found profile
stops evaluation for that record.

Mismatch kinds:

- ``missing_external_id``        — the Directory has no raw profile UID stored
- ``profile_lookup_error``       — the profile could not be retrieved at all
- ``orphaned_directory_record``  — the profile store has no account for the UID
- ``id_mismatch``                — Directory id != dashed form of the profile UID
- ``raw_id_mismatch``            — stored raw UID != profile UID
- ``email_mismatch``             — neither userName nor mail equals profile email
- ``status_mismatch``            — accountStatus disagrees with isActive
- ``name_mismatch``              — "first last" names differ
"""

import re
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from .directory import DirectoryRecord
from .profile_store import ProfileRecord

MISSING_EXTERNAL_ID = "missing_external_id"
PROFILE_LOOKUP_ERROR = "profile_lookup_error"
ORPHANED_RECORD = "orphaned_directory_record"
ID_MISMATCH = "id_mismatch"
RAW_ID_MISMATCH = "raw_id_mismatch"
EMAIL_MISMATCH = "email_mismatch"
STATUS_MISMATCH = "status_mismatch"
NAME_MISMATCH = "name_mismatch"

MISMATCH_TYPES = (
    MISSING_EXTERNAL_ID,
    PROFILE_LOOKUP_ERROR,
    ORPHANED_RECORD,
    ID_MISMATCH,
    RAW_ID_MISMATCH,
    EMAIL_MISMATCH,
    STATUS_MISMATCH,
    NAME_MISMATCH,
)

# Provisioning writes this when the profile had no first name
UNKNOWN_NAME = "unknown"

# Outcome buckets for progress counting
MATCH = "match"
MISMATCH = "mismatch"
ERROR = "error"

_UUID_PARTS = re.compile(
    r"([0-9a-fA-F]{8})([0-9a-fA-F]{4})([0-9a-fA-F]{4})([0-9a-fA-F]{4})([0-9a-fA-F]{12})"
)


def to_dashed(uid: str) -> str:
    """Format a raw 32-hex UID as 8-4-4-4-12.  Already-dashed values pass through."""
    if "-" in uid:
        return uid
    return _UUID_PARTS.sub(r"\1-\2-\3-\4-\5", uid, count=1)


def strip_dashes(value: str) -> str:
    return value.replace("-", "")


def lookup_id(record: DirectoryRecord) -> str:
    """The raw UID to resolve a record by: the stored one, else its undashed id."""
    return record.external_raw_id or strip_dashes(record.id)


class Mismatch:
    """A single discrepancy found for one Directory record.

    Attributes:
        id:                   Run-unique id (``m-<n>``).
        directory_record_id:  Directory ``_id`` of the record.
        email:                The record's login (userName, else mail).
        external_id:          Profile store UID involved, if any.
        mismatch_type:        One of ``MISMATCH_TYPES``.
        source_value:         What the Directory holds.
        target_value:         What the Profile Store holds.
        timestamp:            ISO-8601 UTC detection time.
        details:              Human-readable explanation.
    """

    def __init__(
        self,
        id: str,
        directory_record_id: str,
        email: str,
        external_id: str,
        mismatch_type: str,
        source_value: str,
        target_value: str,
        timestamp: str,
        details: str = "",
    ):
        self.id = id
        self.directory_record_id = directory_record_id
        self.email = email
        self.external_id = external_id
        self.mismatch_type = mismatch_type
        self.source_value = source_value
        self.target_value = target_value
        self.timestamp = timestamp
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase wire form used in ``mismatch`` events."""
        return {
            "id": self.id,
            "directoryRecordId": self.directory_record_id,
            "email": self.email,
            "externalId": self.external_id,
            "mismatchType": self.mismatch_type,
            "sourceValue": self.source_value,
            "targetValue": self.target_value,
            "timestamp": self.timestamp,
            "details": self.details,
        }

    def csv_row(self) -> List[str]:
        """Columns in artifact order (see ``artifacts.CSV_HEADER``)."""
        return [
            self.directory_record_id, self.external_id, self.email, self.mismatch_type,
            self.source_value, self.target_value, self.timestamp, self.details,
        ]

    def __eq__(self, other):
        if not isinstance(other, Mismatch):
            return NotImplemented
        return self.to_dict() == other.to_dict()

    def __repr__(self):
        return f"Mismatch({self.id!r}, {self.mismatch_type!r}, record={self.directory_record_id!r})"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def compare(
    record: DirectoryRecord,
    profile: Optional[ProfileRecord],
    next_id: Callable[[], str],
    now: Optional[str] = None,
) -> List[Mismatch]:
    """Run every check for one record and return the mismatches found.

    Args:
        record:   The Directory record.
        profile:  Its Profile Store account, or None if the lookup failed.
        next_id:  Produces the next run-wide mismatch id; called once per mismatch.
        now:      Timestamp stamped on every mismatch (defaults to the current time).
    """
    timestamp = now or utc_now_iso()
    login = record.login
    raw_id = lookup_id(record)
    found: List[Mismatch] = []

    def add(kind: str, external_id: str, source: str, target: str, details: str):
        found.append(Mismatch(next_id(), record.id, login, external_id, kind,
                              source, target, timestamp, details))

    if not record.external_raw_id:
        add(MISSING_EXTERNAL_ID, "", "(empty)", "N/A",
            "Raw profile UID is empty or missing; cannot verify the UID mapping")

    if profile is None:
        add(PROFILE_LOOKUP_ERROR, raw_id, record.id, "retrieval failed",
            f"Could not retrieve profile store account for UID {raw_id}")
        return found

    if profile.error_code != 0:
        add(ORPHANED_RECORD, raw_id, record.id,
            f"{profile.error_code}: {profile.error_message}",
            f"No profile store account found for UID {raw_id}. "
            f"Error: {profile.error_message}")
        return found

    profile_uid = profile.external_id or ""
    dashed = to_dashed(profile_uid)

    if dashed.lower() != record.id.lower():
        add(ID_MISMATCH, profile_uid, record.id, dashed,
            f'Directory id "{record.id}" does not match dashed profile UID '
            f'"{dashed}" (raw: {profile_uid})')

    if record.external_raw_id and record.external_raw_id.lower() != profile_uid.lower():
        add(RAW_ID_MISMATCH, profile_uid, record.external_raw_id, profile_uid,
            f'Stored raw UID "{record.external_raw_id}" does not match profile UID '
            f'"{profile_uid}"')

    if profile.email and login:
        wanted = profile.email.lower()
        if wanted not in (record.username.lower(), record.email.lower()):
            add(EMAIL_MISMATCH, profile_uid,
                f"userName: {record.username}, mail: {record.email}", profile.email,
                f'Directory email fields do not match profile email "{profile.email}"')

    if record.account_status and profile.is_active is not None:
        expected = "active" if profile.is_active else "inactive"
        if record.account_status.lower() != expected:
            add(STATUS_MISMATCH, profile_uid, record.account_status, expected,
                f'Directory accountStatus "{record.account_status}" does not match '
                f'expected "{expected}" from isActive={str(profile.is_active).lower()}')

    if profile.first_name and record.given_name and record.given_name.lower() != UNKNOWN_NAME:
        source = f"{record.given_name} {record.surname}".strip()
        target = f"{profile.first_name} {profile.last_name}".strip()
        if record.surname.lower() == UNKNOWN_NAME:
            source_key, target_key = record.given_name, profile.first_name
        else:
            source_key, target_key = source, target
        if source_key.lower() != target_key.lower():
            add(NAME_MISMATCH, profile_uid, source, target,
                f'Name mismatch: Directory "{source}" vs profile "{target}"')

    return found


def classify(mismatches: List[Mismatch]) -> str:
    """Bucket a record's outcome: ``error`` beats ``mismatch`` beats ``match``."""
    if any(m.mismatch_type == PROFILE_LOOKUP_ERROR for m in mismatches):
        return ERROR
    if mismatches:
        return MISMATCH
    return MATCH
