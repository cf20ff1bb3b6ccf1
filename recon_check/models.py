"""Run state shared between the orchestrator, the transport, and the CLI.

``RunProgress`` and ``Checkpoint`` are serialized in camelCase because they
travel inside stream events and are fed back verbatim to resume a run.
"""

import json
import time
from typing import Any, Dict, List, Optional


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


class RunProgress:
    """Counters for one run.

    Every processed record lands in exactly one bucket, so
    ``total_processed == matches + mismatches + errors``.  ``mismatches``
    counts records with at least one mismatch, not individual mismatches.
    """

    def __init__(
        self,
        total_processed: int = 0,
        matches: int = 0,
        mismatches: int = 0,
        errors: int = 0,
        is_running: bool = False,
        start_time: Optional[int] = None,
        last_update_time: Optional[int] = None,
        rate: int = 0,
    ):
        self.total_processed = total_processed
        self.matches = matches
        self.mismatches = mismatches
        self.errors = errors
        self.is_running = is_running
        self.start_time = start_time if start_time is not None else now_ms()
        self.last_update_time = last_update_time if last_update_time is not None else self.start_time
        self.rate = rate

    def record(self, outcome: str):
        """Count one processed record in the ``match``/``mismatch``/``error`` bucket."""
        self.total_processed += 1
        if outcome == "error":
            self.errors += 1
        elif outcome == "mismatch":
            self.mismatches += 1
        else:
            self.matches += 1

    def touch(self, now: Optional[int] = None):
        """Refresh ``last_update_time`` and the derived records/second rate."""
        self.last_update_time = now if now is not None else now_ms()
        elapsed = (self.last_update_time - self.start_time) / 1000
        self.rate = round(self.total_processed / elapsed) if elapsed > 0 else 0

    def copy(self) -> "RunProgress":
        return RunProgress(**self._fields())

    def _fields(self) -> Dict[str, Any]:
        return {
            "total_processed": self.total_processed,
            "matches": self.matches,
            "mismatches": self.mismatches,
            "errors": self.errors,
            "is_running": self.is_running,
            "start_time": self.start_time,
            "last_update_time": self.last_update_time,
            "rate": self.rate,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalProcessed": self.total_processed,
            "matches": self.matches,
            "mismatches": self.mismatches,
            "errors": self.errors,
            "isRunning": self.is_running,
            "startTime": self.start_time,
            "lastUpdateTime": self.last_update_time,
            "rate": self.rate,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "RunProgress":
        """Rebuild saved progress.  Missing counters default to zero."""
        data = data or {}
        return cls(
            total_processed=int(data.get("totalProcessed") or 0),
            matches=int(data.get("matches") or 0),
            mismatches=int(data.get("mismatches") or 0),
            errors=int(data.get("errors") or 0),
            is_running=bool(data.get("isRunning", False)),
            start_time=data.get("startTime") or None,
            last_update_time=data.get("lastUpdateTime") or None,
            rate=int(data.get("rate") or 0),
        )

    def __repr__(self):
        return (f"RunProgress(total={self.total_processed}, matches={self.matches}, "
                f"mismatches={self.mismatches}, errors={self.errors})")


class Checkpoint:
    """Where to resume an interrupted run.

    Attributes:
        cursor:               Directory paging cursor for the next page.
        progress:             Counters as of the page that produced ``cursor``.
        last_processed_date:  Latest profile activity date seen, a fallback
                              anchor for a fresh run once the cursor expires.
        timestamp:            When the checkpoint was taken (epoch ms).
    """

    def __init__(self, cursor: str, progress: RunProgress,
                 last_processed_date: Optional[str] = None,
                 timestamp: Optional[int] = None):
        self.cursor = cursor
        self.progress = progress
        self.last_processed_date = last_processed_date
        self.timestamp = timestamp if timestamp is not None else now_ms()

    def to_event_data(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "pagedResultsCookie": self.cursor,
            "progress": self.progress.to_dict(),
        }
        if self.last_processed_date:
            data["lastProcessedDate"] = self.last_processed_date
        return data

    def to_dict(self) -> Dict[str, Any]:
        data = self.to_event_data()
        data["timestamp"] = self.timestamp
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Checkpoint":
        return cls(
            cursor=data.get("pagedResultsCookie") or "",
            progress=RunProgress.from_dict(data.get("progress")),
            last_processed_date=data.get("lastProcessedDate") or None,
            timestamp=data.get("timestamp"),
        )


class ValidationEvent:
    """One message on a run's event stream: a ``type`` tag plus its payload.

    Payload shapes by type:

    - ``progress``   — ``RunProgress.to_dict()``, optionally with ``message``
    - ``mismatch``   — ``Mismatch.to_dict()``
    - ``checkpoint`` — ``Checkpoint.to_event_data()``
    - ``complete``   — ``{jobId, summary, sampledUserIds?}``
    - ``error``      — ``{message, details?}``
    """

    PROGRESS = "progress"
    MISMATCH = "mismatch"
    CHECKPOINT = "checkpoint"
    COMPLETE = "complete"
    ERROR = "error"

    TYPES = (PROGRESS, MISMATCH, CHECKPOINT, COMPLETE, ERROR)

    def __init__(self, type: str, data: Dict[str, Any]):
        if type not in self.TYPES:
            raise ValueError(f"unknown event type: {type!r}")
        self.type = type
        self.data = data

    @property
    def is_terminal(self) -> bool:
        return self.type in (self.COMPLETE, self.ERROR)

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type, "data": self.data}

    def to_sse(self) -> str:
        """Encode as one server-sent event frame."""
        return f"data: {json.dumps(self.to_dict())}\n\n"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ValidationEvent":
        return cls(data["type"], data.get("data") or {})

    @classmethod
    def error(cls, message: str, details: Optional[str] = None) -> "ValidationEvent":
        data: Dict[str, Any] = {"message": message}
        if details:
            data["details"] = details
        return cls(cls.ERROR, data)

    @classmethod
    def complete(cls, job_id: str, summary: RunProgress,
                 sampled_ids: Optional[List[str]] = None) -> "ValidationEvent":
        data: Dict[str, Any] = {"jobId": job_id, "summary": summary.to_dict()}
        if sampled_ids is not None:
            data["sampledUserIds"] = sampled_ids
        return cls(cls.COMPLETE, data)

    def __repr__(self):
        return f"ValidationEvent({self.type!r})"
