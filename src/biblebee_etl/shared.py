"""biblebee_etl.shared

Shared utilities used by every CLI mode.
Includes the engine's precondition exceptions, RejectWriter, RunCounters,
and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class PreconditionError(Exception):
    """Raised when a required record (competition year, child) does not exist."""


class InvalidUploadError(ValueError):
    """Raised when a JSON text bundle fails validation."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("Invalid JSON text upload: " + "; ".join(self.errors))


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, row: dict[str, Any], reason: str) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            fieldnames = list(row.keys()) + ["_reject_reason"]
            self._writer = csv.DictWriter(
                self._fh, fieldnames=fieldnames, extrasaction="ignore"
            )
            self._writer.writeheader()
        out = dict(row)
        out["_reject_reason"] = reason
        self._writer.writerow(out)
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    # Import counters
    rows_read: int = 0
    rows_rejected: int = 0
    scriptures_inserted: int = 0
    scriptures_updated: int = 0
    texts_merged: int = 0
    json_only_items: int = 0
    csv_only_rows: int = 0
    matches: int = 0
    # Year-config counters
    competition_years_upserted: int = 0
    divisions_upserted: int = 0
    grade_rules_upserted: int = 0
    essay_prompts_upserted: int = 0
    # Enrollment counters
    children_processed: int = 0
    children_enrolled: int = 0
    children_without_requirement: int = 0
    scripture_assignments_created: int = 0
    essay_assignments_created: int = 0
    assignments_already_present: int = 0
    shortfalls: int = 0
    # Auto-enrollment counters
    enrollments_created: int = 0
    enrollments_updated: int = 0
    enrollments_unchanged: int = 0
    overrides_applied: int = 0
    unassigned_children: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_read": self.rows_read,
            "rows_rejected": self.rows_rejected,
            "scriptures_inserted": self.scriptures_inserted,
            "scriptures_updated": self.scriptures_updated,
            "texts_merged": self.texts_merged,
            "json_only_items": self.json_only_items,
            "csv_only_rows": self.csv_only_rows,
            "matches": self.matches,
            "competition_years_upserted": self.competition_years_upserted,
            "divisions_upserted": self.divisions_upserted,
            "grade_rules_upserted": self.grade_rules_upserted,
            "essay_prompts_upserted": self.essay_prompts_upserted,
            "children_processed": self.children_processed,
            "children_enrolled": self.children_enrolled,
            "children_without_requirement": self.children_without_requirement,
            "scripture_assignments_created": self.scripture_assignments_created,
            "essay_assignments_created": self.essay_assignments_created,
            "assignments_already_present": self.assignments_already_present,
            "shortfalls": self.shortfalls,
            "enrollments_created": self.enrollments_created,
            "enrollments_updated": self.enrollments_updated,
            "enrollments_unchanged": self.enrollments_unchanged,
            "overrides_applied": self.overrides_applied,
            "unassigned_children": self.unassigned_children,
            "warnings": self.warnings,
        }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict with header keys whitespace-stripped and lowercased."""
    return {k.strip().lower(): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: RunCounters,
    extra: dict[str, Any] | None = None,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    if extra:
        report.update(extra)
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
