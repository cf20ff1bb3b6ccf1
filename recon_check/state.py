"""Local run state for the command line: checkpoint, spot-check and run history.

Stored as one JSON document, by default ``~/.recon-check/state.json``
(override with ``RECON_STATE_FILE``).  Client secrets are never written.

Checkpoint aging: a checkpoint older than 24 hours is assumed to hold an
expired Directory cursor.  If it recorded a ``lastProcessedDate`` the cursor is
dropped and the date kept as a hint for a fresh run; otherwise the checkpoint
is discarded.
"""

import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import Checkpoint, now_ms

logger = logging.getLogger(__name__)

ENV_STATE_FILE = "RECON_STATE_FILE"
DEFAULT_STATE_FILE = Path.home() / ".recon-check" / "state.json"

CHECKPOINT_MAX_AGE_MS = 24 * 60 * 60 * 1000
MAX_HISTORY = 50

FULL_RUN = "full"
SPOT_CHECK_RUN = "spot_check"


def default_state_path() -> Path:
    override = os.environ.get(ENV_STATE_FILE)
    return Path(override) if override else DEFAULT_STATE_FILE


class StateStore:
    """Reads and writes the state document.

    Every mutating call rewrites the file, so an interrupted run leaves the
    last checkpoint on disk.
    """

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_state_path()

    # -- Checkpoint ----------------------------------------------------------

    def save_checkpoint(self, checkpoint: Checkpoint, tenant_url: str):
        data = self._load()
        entry = checkpoint.to_dict()
        entry["tenantUrl"] = tenant_url
        data["checkpoint"] = entry
        self._save(data)

    def load_checkpoint(self, tenant_url: Optional[str] = None,
                        now: Optional[int] = None) -> Optional[Checkpoint]:
        """Return the saved checkpoint after applying the 24-hour aging rule.

        A checkpoint saved for a different tenant is ignored.
        """
        data = self._load()
        entry = data.get("checkpoint")
        if not entry:
            return None
        if tenant_url and entry.get("tenantUrl") and entry["tenantUrl"] != tenant_url.rstrip("/"):
            return None

        checkpoint = Checkpoint.from_dict(entry)
        now = now if now is not None else now_ms()
        if now - (checkpoint.timestamp or 0) < CHECKPOINT_MAX_AGE_MS:
            return checkpoint
        if checkpoint.last_processed_date:
            checkpoint.cursor = ""
            return checkpoint
        logger.info("Discarding checkpoint older than 24h with no date anchor")
        self.clear_checkpoint()
        return None

    def clear_checkpoint(self):
        data = self._load()
        if data.pop("checkpoint", None) is not None:
            self._save(data)

    # -- Spot-check history --------------------------------------------------

    def record_spot_check(self, job_id: str, sample_size: int, checked_ids: List[str],
                          matches: int, mismatches: int):
        data = self._load()
        history = data.setdefault("spotChecks", [])
        history.insert(0, {
            "id": job_id,
            "timestamp": now_ms(),
            "sampleSize": sample_size,
            "checkedUids": list(checked_ids),
            "matchCount": matches,
            "mismatchCount": mismatches,
        })
        del history[MAX_HISTORY:]
        self._save(data)

    def spot_check_history(self) -> List[Dict[str, Any]]:
        return list(self._load().get("spotChecks", []))

    def previously_checked_ids(self) -> List[str]:
        """Every Directory id sampled by a recorded spot check, without duplicates."""
        seen: Dict[str, None] = {}
        for entry in self.spot_check_history():
            for uid in entry.get("checkedUids", []):
                seen.setdefault(uid, None)
        return list(seen)

    # -- Run history ---------------------------------------------------------

    def record_run(self, entry: Dict[str, Any]):
        data = self._load()
        history = data.setdefault("runs", [])
        history.insert(0, entry)
        del history[MAX_HISTORY:]
        self._save(data)

    def run_history(self) -> List[Dict[str, Any]]:
        return list(self._load().get("runs", []))

    # -- Internals -----------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, Any]):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_suffix(".tmp")
        with open(tmp, "w") as f:
            json.dump(data, f, indent=2)
        os.replace(tmp, self.path)
