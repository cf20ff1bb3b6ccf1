"""Keyed in-memory store for downloadable mismatch tables.

One store is built per process and handed to both the start and download
handlers.  Each run owns exactly one key.  Entries live for ``ARTIFACT_TTL``
seconds after their run completes and are swept lazily whenever a new job is
created; ``get`` also refuses entries past their TTL so expiry never depends
on sweep timing.  An artifact still being written never expires.
"""

import csv
import io
import random
import string
import threading
import time
from typing import Callable, Dict, Iterable, List, Optional

from .errors import ArtifactNotFound

ARTIFACT_TTL = 3600  # seconds

CSV_HEADER = [
    "DirectoryID", "ExternalID", "Email", "MismatchType",
    "SourceValue", "TargetValue", "Timestamp", "Details",
]

_BASE36 = string.digits + string.ascii_lowercase


def csv_line(fields: Iterable[str]) -> str:
    """Encode one row; fields with a comma, quote, or newline are quoted."""
    buf = io.StringIO()
    csv.writer(buf, lineterminator="\n").writerow(fields)
    return buf.getvalue()


def new_job_id(now: Optional[float] = None) -> str:
    """``recon-<epoch ms>-<6 base36 chars>``."""
    ts = int((time.time() if now is None else now) * 1000)
    suffix = "".join(random.choice(_BASE36) for _ in range(6))
    return f"recon-{ts}-{suffix}"


class JobArtifact:
    """The CSV produced by one run."""

    def __init__(self, job_id: str, created_at: float):
        self.job_id = job_id
        self.created_at = created_at
        self.complete = False
        self._lines: List[str] = [csv_line(CSV_HEADER)]

    @property
    def content(self) -> str:
        return "".join(self._lines)

    @property
    def row_count(self) -> int:
        return len(self._lines) - 1

    def append(self, rows: Iterable[Iterable[str]]):
        self._lines.extend(csv_line(row) for row in rows)


class JobArtifactStore:
    """Thread-safe ``job_id -> JobArtifact`` map with TTL eviction.

    Args:
        ttl:    Seconds an artifact stays downloadable.
        clock:  Returns the current time in seconds; injectable for tests.
    """

    def __init__(self, ttl: float = ARTIFACT_TTL, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.clock = clock
        self._entries: Dict[str, JobArtifact] = {}
        self._lock = threading.Lock()

    def create(self, job_id: Optional[str] = None) -> JobArtifact:
        """Sweep expired entries, then register an empty artifact for a new job."""
        self.sweep_expired()
        now = self.clock()
        artifact = JobArtifact(job_id or new_job_id(now), now)
        with self._lock:
            self._entries[artifact.job_id] = artifact
        return artifact

    def append(self, job_id: str, rows: Iterable[Iterable[str]]):
        with self._lock:
            artifact = self._entries.get(job_id)
            if artifact is None:
                raise ArtifactNotFound(f"Unknown job {job_id}")
            artifact.append(rows)

    def finalize(self, job_id: str):
        """Mark the job complete; its TTL starts now."""
        now = self.clock()
        with self._lock:
            artifact = self._entries.get(job_id)
            if artifact is not None:
                artifact.complete = True
                artifact.created_at = now

    def discard(self, job_id: str):
        """Forget an unfinished job (aborted or failed runs)."""
        with self._lock:
            self._entries.pop(job_id, None)

    def get(self, job_id: str) -> JobArtifact:
        """Return a live artifact.

        Raises:
            ArtifactNotFound: if the job is unknown or its TTL has passed.
        """
        with self._lock:
            artifact = self._entries.get(job_id)
        if artifact is None or self._expired(artifact, self.clock()):
            raise ArtifactNotFound(
                "Job not found or CSV data has expired. Results expire after 1 hour.")
        return artifact

    def sweep_expired(self) -> int:
        """Drop every expired entry and return how many were removed."""
        now = self.clock()
        with self._lock:
            stale = [k for k, a in self._entries.items() if self._expired(a, now)]
            for key in stale:
                del self._entries[key]
        return len(stale)

    def __len__(self):
        with self._lock:
            return len(self._entries)

    def _expired(self, artifact: JobArtifact, now: float) -> bool:
        return artifact.complete and now - artifact.created_at > self.ttl
