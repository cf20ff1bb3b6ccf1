"""Formats validation runs as colored terminal output or structured JSON.

Two output modes are supported:

- **Terminal** — a live line per page while the run streams, followed by a
  summary with counts, a per-kind mismatch breakdown, and a verdict.
- **JSON** — one object with ``summary``, ``breakdown``, ``jobId``, and the
  terminal event, suitable for CI pipelines.
"""

import json
import sys
from typing import Any, Dict, List, Optional, Tuple

from . import compare
from .models import ValidationEvent

# ---------------------------------------------------------------------------
# What each mismatch kind usually means.
# Each entry: (kind, title, likely cause)
# ---------------------------------------------------------------------------
_KIND_NOTES: List[Tuple[str, str, str]] = [
    (
        compare.PROFILE_LOOKUP_ERROR,
        "Profile lookups failed",
        "The profile store could not be reached for these records; rerun before acting on them.",
    ),
    (
        compare.ORPHANED_RECORD,
        "Directory records without a profile",
        "The account was deleted from the profile store or never created there.",
    ),
    (
        compare.MISSING_EXTERNAL_ID,
        "Raw profile UID not provisioned",
        "The sync mapping did not write the raw UID into the indexed attribute.",
    ),
    (
        compare.ID_MISMATCH,
        "Directory id differs from the profile UID",
        "The record was created outside the sync or the UID conversion differs.",
    ),
    (
        compare.RAW_ID_MISMATCH,
        "Stored raw UID differs from the profile UID",
        "The indexed attribute was overwritten or points at another account.",
    ),
    (
        compare.EMAIL_MISMATCH,
        "Email drift",
        "An email change reached one system but not the other.",
    ),
    (
        compare.STATUS_MISMATCH,
        "Account status drift",
        "Activation or deactivation was not propagated.",
    ),
    (
        compare.NAME_MISMATCH,
        "Name drift",
        "A profile name change was not propagated.",
    ),
]


def _colorize(text: str, color: str) -> str:
    """Apply ANSI color codes.  Returns plain text when stdout is not a TTY."""
    colors = {
        "red": "\033[91m",
        "green": "\033[92m",
        "yellow": "\033[93m",
        "bold": "\033[1m",
        "dim": "\033[2m",
        "reset": "\033[0m",
    }
    if not sys.stdout.isatty():
        return text
    return f"{colors.get(color, '')}{text}{colors['reset']}"


class RunReport:
    """Accumulates the events of one run for the final report."""

    def __init__(self):
        self.by_kind: Dict[str, int] = {}
        self.progress: Dict[str, Any] = {}
        self.last_checkpoint: Optional[Dict[str, Any]] = None
        self.final: Optional[ValidationEvent] = None

    def add(self, event: ValidationEvent):
        if event.type == ValidationEvent.MISMATCH:
            kind = event.data.get("mismatchType", "")
            self.by_kind[kind] = self.by_kind.get(kind, 0) + 1
        elif event.type == ValidationEvent.PROGRESS:
            self.progress = event.data
        elif event.type == ValidationEvent.CHECKPOINT:
            self.last_checkpoint = event.data
        elif event.is_terminal:
            self.final = event
            if event.type == ValidationEvent.COMPLETE:
                self.progress = event.data.get("summary", self.progress)

    @property
    def succeeded(self) -> bool:
        return self.final is not None and self.final.type == ValidationEvent.COMPLETE

    @property
    def clean(self) -> bool:
        """Completed with every record matching."""
        return (self.succeeded
                and not self.progress.get("mismatches")
                and not self.progress.get("errors"))

    @property
    def job_id(self) -> Optional[str]:
        if self.final is not None:
            return self.final.data.get("jobId")
        return None

    def breakdown(self) -> List[Dict[str, Any]]:
        """Mismatch counts per kind, in severity order, with likely causes."""
        rows = []
        for kind, title, cause in _KIND_NOTES:
            count = self.by_kind.get(kind, 0)
            if count:
                rows.append({"kind": kind, "title": title, "cause": cause, "count": count})
        return rows


def print_progress_line(event: ValidationEvent):
    """Print a one-line status for ``progress`` and ``error`` events."""
    if event.type == ValidationEvent.PROGRESS:
        data = event.data
        if data.get("message"):
            print(_colorize(f"  {data['message']}", "dim"))
            return
        print(
            f"  processed {data.get('totalProcessed', 0)}"
            f"  matches {data.get('matches', 0)}"
            f"  mismatches {_colorize(str(data.get('mismatches', 0)), 'yellow')}"
            f"  errors {_colorize(str(data.get('errors', 0)), 'red')}"
            f"  ({data.get('rate', 0)}/s)"
        )
    elif event.type == ValidationEvent.ERROR:
        details = event.data.get("details")
        suffix = f": {details}" if details else ""
        print(_colorize(f"  {event.data.get('message', 'Error')}{suffix}", "red"))


def print_report(report: RunReport, json_output: bool = False,
                 mode: str = "full", version: str = ""):
    """Print the final run report in terminal or JSON format."""
    if json_output:
        _print_json(report, mode=mode, version=version)
    else:
        _print_terminal(report, mode=mode, version=version)


def _print_terminal(report: RunReport, mode: str, version: str):
    p = report.progress
    print()
    print(_colorize("Directory / Profile Store Reconciliation", "bold"))
    print(_colorize("=" * 50, "dim"))
    meta_parts = []
    if version:
        meta_parts.append(f"recon-check {version}")
    meta_parts.append(f"mode: {mode}")
    if report.job_id:
        meta_parts.append(f"job: {report.job_id}")
    print(_colorize("  " + "  |  ".join(meta_parts), "dim"))
    print()
    print(f"  {p.get('totalProcessed', 0)} processed, "
          f"{_colorize(str(p.get('matches', 0)) + ' matched', 'green')}, "
          f"{_colorize(str(p.get('mismatches', 0)) + ' with mismatches', 'yellow')}, "
          f"{_colorize(str(p.get('errors', 0)) + ' errors', 'red')}")

    rows = report.breakdown()
    if rows:
        print()
        print(_colorize("  Mismatch Breakdown", "bold"))
        print(_colorize("  " + "-" * 40, "dim"))
        for row in rows:
            print(f"  {row['count']:>7}  {row['title']} {_colorize('(' + row['kind'] + ')', 'dim')}")
            print(f"           {_colorize(row['cause'], 'dim')}")

    print()
    print(_colorize("  " + "-" * 40, "dim"))
    if report.final is None:
        print(_colorize("  Result: stream ended without a final event.", "red"))
    elif not report.succeeded:
        details = report.final.data.get("details")
        print(_colorize(f"  Result: {report.final.data.get('message')}"
                        + (f" ({details})" if details else ""), "red"))
        if report.last_checkpoint:
            print(_colorize("  A checkpoint was saved; rerun with --resume to continue.", "dim"))
    elif report.clean:
        print(_colorize("  Result: all records match.", "bold"))
    else:
        print(_colorize("  Result: discrepancies found. Download the CSV for details.", "yellow"))
    print()


def _print_json(report: RunReport, mode: str, version: str):
    output = {
        "recon_check_version": version,
        "mode": mode,
        "jobId": report.job_id,
        "summary": report.progress,
        "breakdown": report.breakdown(),
        "result": report.final.to_dict() if report.final is not None else None,
    }
    print(json.dumps(output, indent=2))
