"""parlor_etl.shared

Shared utilities used by every ingestion mode.
Includes RejectWriter, RunCounters, the structured IngestResult returned
to callers, and report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

MAX_REPORTED_ERRORS = 10


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class RowNormalizationError(ValueError):
    """Raised by a field transform when a cell cannot be converted."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected rows."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None

    def write(self, row: dict[str, str], reason: str) -> None:
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

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# Row errors + structured result
# ---------------------------------------------------------------------------

@dataclass
class RowError:
    row_index: int  # 1-based, data rows only
    message: str

    def __str__(self) -> str:
        return f"row {self.row_index}: {self.message}"


@dataclass
class IngestResult:
    """What a caller (CLI, upload handler) sees after one file is ingested."""

    dialect: str
    processed: int = 0
    errored: int = 0
    errors: list[RowError] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        # Partial success is success: at least one usable record, or nothing wrong.
        return self.processed > 0 or self.errored == 0

    def add_error(self, row_index: int, message: str) -> None:
        self.errored += 1
        self.errors.append(RowError(row_index, message))

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "dialect": self.dialect,
            "processed": self.processed,
            "errored": self.errored,
            "errors": [str(e) for e in self.errors[:MAX_REPORTED_ERRORS]],
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# RunCounters
# ---------------------------------------------------------------------------

@dataclass
class RunCounters:
    rows_read: int = 0
    rows_rejected: int = 0
    db_phase_errors: int = 0
    # Master data
    stores_upserted: int = 0
    store_details_upserted: int = 0
    machines_upserted: int = 0
    machine_details_upserted: int = 0
    events_upserted: int = 0
    events_defaulted_date: int = 0
    # Performance
    performance_days_inserted: int = 0
    performance_days_overwritten: int = 0
    performance_days_skipped_existing: int = 0
    performance_enrichments_applied: int = 0
    performance_enrichments_unanchored: int = 0
    payload_decode_failures: int = 0
    # Admin
    machines_rescored: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        d = {k: v for k, v in self.__dict__.items() if k != "warnings"}
        d["warnings"] = self.warnings[:50]
        return d


# ---------------------------------------------------------------------------
# Run report
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    counters: Any,
    result: IngestResult | None = None,
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.utcnow().isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "counters": counters.to_dict(),
    }
    if result is not None:
        report["result"] = result.to_dict()
    report_path = Path(f"./artifacts/reports/{run_id}.json")
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str, ensure_ascii=False))
    return report_path
