"""macro_etl.shared

Shared pieces used by both the upload and sync modes.
Includes the exception taxonomy, ImportResult, RejectWriter, and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

MAX_REPORTED_LIST = 50


# ---------------------------------------------------------------------------
# Error detail records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FieldError:
    field: str
    message: str

    def __str__(self) -> str:
        return f"{self.field}: {self.message}"


@dataclass(frozen=True)
class RowError:
    """All validation failures for one input row.

    row is 1-based and counts the header line, so the first data row of a
    spreadsheet is row 2.
    """

    row: int
    errors: tuple[FieldError, ...]
    source: str | None = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {
            "row": self.row,
            "errors": [str(e) for e in self.errors],
        }
        if self.source is not None:
            out["source"] = self.source
        return out


@dataclass(frozen=True)
class WriteOutcome:
    """Result of one planned write.  Exactly one of id/error is meaningful."""

    entity: str
    operation: str
    key: str
    id: str | None
    ok: bool
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "entity": self.entity,
            "operation": self.operation,
            "key": self.key,
            "id": self.id,
            "ok": self.ok,
            "error": self.error,
        }


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ReconcileError(Exception):
    """Base class for errors that stop a reconciliation run."""


class BatchValidationError(ReconcileError):
    """One or more rows failed validation; nothing was written.

    errors is the reported (possibly capped) list; failures holds every
    failed row, for reject files.
    """

    def __init__(
        self,
        errors: list[RowError],
        total: int,
        failures: list[RowError] | None = None,
    ) -> None:
        self.errors = errors
        self.total = total
        self.failures = list(failures) if failures is not None else list(errors)
        super().__init__(f"Validation failed for {total} row(s)")


class StoreError(Exception):
    """A storage call failed."""


class ConstraintViolationError(StoreError):
    """The store rejected a write on a constraint (foreign key, unique, not-null)."""


class ResolutionError(ReconcileError):
    """An existing-record lookup failed; nothing was written."""


class WriteError(ReconcileError):
    """An insert or update failed.  Earlier writes in the run may have applied."""

    def __init__(self, message: str, outcomes: list[WriteOutcome] | None = None) -> None:
        self.outcomes = list(outcomes or [])
        super().__init__(message)

    @property
    def failed(self) -> list[WriteOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def succeeded(self) -> list[WriteOutcome]:
        return [o for o in self.outcomes if o.ok]


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

    @property
    def path(self) -> Path:
        return self._path

    @property
    def opened(self) -> bool:
        return self._fh is not None

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# ImportResult
# ---------------------------------------------------------------------------

@dataclass
class ImportResult:
    run_id: str = ""
    mode: str = "upload"
    status: str = "ok"
    records_seen: int = 0
    unique_indicators: int = 0
    unique_releases: int = 0
    indicators_created: int = 0
    indicators_updated: int = 0
    releases_created: int = 0
    releases_updated: int = 0
    skipped: int = 0
    lookup_queries: int = 0
    total_errors: int = 0
    error_message: str | None = None
    errors: list[RowError] = field(default_factory=list)
    write_outcomes: list[WriteOutcome] = field(default_factory=list)
    schedule_changes: list[Any] = field(default_factory=list)
    schedule_statuses: dict[str, str] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def indicators_upserted(self) -> int:
        return self.indicators_created + self.indicators_updated

    @property
    def releases_upserted(self) -> int:
        return self.releases_created + self.releases_updated

    @property
    def schedule_status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for status in self.schedule_statuses.values():
            counts[status] = counts.get(status, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "mode": self.mode,
            "status": self.status,
            "records_seen": self.records_seen,
            "unique_indicators": self.unique_indicators,
            "unique_releases": self.unique_releases,
            "indicators_created": self.indicators_created,
            "indicators_updated": self.indicators_updated,
            "indicators_upserted": self.indicators_upserted,
            "releases_created": self.releases_created,
            "releases_updated": self.releases_updated,
            "releases_upserted": self.releases_upserted,
            "skipped": self.skipped,
            "lookup_queries": self.lookup_queries,
            "total_errors": self.total_errors,
            "error_message": self.error_message,
            "errors": [e.to_dict() for e in self.errors],
            "write_failures": [
                o.to_dict() for o in self.write_outcomes if not o.ok
            ][:MAX_REPORTED_LIST],
            "schedule_changes": [
                c.to_dict() for c in self.schedule_changes
            ][:MAX_REPORTED_LIST],
            "schedule_status_counts": self.schedule_status_counts,
            "schedule_statuses": dict(
                list(self.schedule_statuses.items())[:MAX_REPORTED_LIST]
            ),
            "warnings": self.warnings[:MAX_REPORTED_LIST],
        }


# ---------------------------------------------------------------------------
# Header normalization
# ---------------------------------------------------------------------------

def normalize_headers(raw: dict[str, str]) -> dict[str, str]:
    """Return a new dict with header keys whitespace-stripped."""
    return {k.strip(): v for k, v in raw.items() if k is not None}


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    dry_run: bool,
    source_paths: dict[str, str],
    result: ImportResult,
    reports_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "dry_run": dry_run,
        **source_paths,
        "result": result.to_dict(),
    }
    report_path = reports_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(json.dumps(report, indent=2, default=str))
    return report_path
