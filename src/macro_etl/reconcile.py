"""macro_etl.reconcile

Reconciliation engine.

Entry points:
  run_upload : one spreadsheet's rows (mode=upload)
  run_sync   : several scheduled feeds, deduplicated first (mode=sync)

Both go through the same core, reconcile_rows():

  1. index     : unique indicators and releases, last occurrence wins
  2. resolve   : chunked lookup of existing ids (indicators, then releases;
                 in sync mode also releases moved within their day)
  3. plan      : insert vs update per key
  4. write     : indicators (updates fan-out, one bulk insert), then
                 releases using the indicator ids created just before

Lookups all finish before the first write, so a failed lookup leaves the
store untouched.  A failed write does not: earlier writes of the same run
stay applied and the result lists which keys succeeded.

Neither entry point raises for bad input, lookup failures, or write
failures; they return an ImportResult whose status is "ok", "rejected"
(validation, nothing written) or "failed" (store error).
"""

from __future__ import annotations

import logging
import uuid
from typing import Any, Mapping, Sequence

from macro_etl.audit import AuditSink, record_audit
from macro_etl.dedupe import (
    ScheduleChange,
    ScheduleStatus,
    build_candidates,
    deduplicate,
    fingerprint,
)
from macro_etl.indexer import build_index
from macro_etl.planner import build_plan
from macro_etl.records import ExistingRelease, ReleaseKey, ReleaseRow
from macro_etl.resolver import DEFAULT_CHUNK_SIZE, resolve
from macro_etl.revisions import RevisionBus
from macro_etl.shared import (
    BatchValidationError,
    ImportResult,
    RejectWriter,
    ResolutionError,
    RowError,
    WriteError,
)
from macro_etl.source_priority import SourcePriority
from macro_etl.store import ReleaseStore
from macro_etl.validate import HEADER_ROW_OFFSET, MAX_REPORTED_ERRORS, validate_rows
from macro_etl.writer import DEFAULT_MAX_WORKERS, BatchWriter

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Core
# ---------------------------------------------------------------------------

def reconcile_rows(
    store: ReleaseStore,
    rows: Sequence[ReleaseRow],
    result: ImportResult,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
    revisions: RevisionBus | None = None,
    dry_run: bool = False,
    track_moves: bool = False,
) -> ImportResult:
    """Index, resolve, plan and write validated rows into result.

    With track_moves, a row matching a stored release of the same indicator
    and period on the same UTC day at another time updates that release in
    place, moving it, and is reported as a schedule change.
    """
    index = build_index(rows)
    result.unique_indicators = len(index.indicators)
    result.unique_releases = len(index.releases)
    result.skipped = result.records_seen - result.unique_releases

    try:
        resolution = resolve(
            store, index.indicators, index.releases, chunk_size, track_moves=track_moves
        )
    except ResolutionError as exc:
        log.error("[%s] %s", result.run_id, exc)
        result.status = "failed"
        result.error_message = str(exc)
        return result
    result.lookup_queries = resolution.queries
    if resolution.moved:
        _report_moves(result, rows, resolution.moved)

    plan = build_plan(
        index.indicators,
        index.releases,
        resolution.indicator_ids,
        resolution.releases,
    )

    if dry_run:
        result.indicators_created = len(plan.indicators.inserts)
        result.indicators_updated = len(plan.indicators.updates)
        result.releases_created = len(plan.releases.inserts)
        result.releases_updated = len(plan.releases.updates)
        return result

    writer = BatchWriter(store, max_workers=max_workers, revisions=revisions)
    indicator_ids = dict(resolution.indicator_ids)
    try:
        summary = writer.write_indicators(plan.indicators, indicator_ids)
        result.write_outcomes.extend(summary.outcomes)
        result.indicators_created = summary.created
        result.indicators_updated = summary.updated

        summary = writer.write_releases(plan.releases, indicator_ids)
        result.write_outcomes.extend(summary.outcomes)
        result.releases_created = summary.created
        result.releases_updated = summary.updated
    except WriteError as exc:
        log.error("[%s] %s", result.run_id, exc)
        result.status = "failed"
        result.error_message = str(exc)
        result.write_outcomes.extend(exc.outcomes)
        _count_partial_writes(result)
    return result


def _note_schedule_change(result: ImportResult, change: ScheduleChange) -> None:
    result.schedule_changes.append(change)
    result.warnings.append(
        f"schedule changed for {change.fingerprint}: "
        f"{change.old_release_at.isoformat()} -> {change.new_release_at.isoformat()} "
        f"({change.previous_source} -> {change.source})"
    )


def _report_moves(
    result: ImportResult,
    rows: Sequence[ReleaseRow],
    moved: Mapping[ReleaseKey, ExistingRelease],
) -> None:
    by_key = {row.release_key: row for row in rows}
    for key, existing in moved.items():
        row = by_key[key]
        fp = fingerprint(row)
        log.warning(
            "[%s] %s moved from %s to %s",
            result.run_id, fp, existing.release_at.isoformat(), key.release_at.isoformat(),
        )
        _note_schedule_change(result, ScheduleChange(
            fingerprint=fp,
            indicator_name=row.indicator_name,
            country_code=row.country_code,
            previous_source="store",
            source=row.source or result.mode,
            old_release_at=existing.release_at,
            new_release_at=key.release_at,
        ))
        # A moved timestamp is no longer confirmed.
        result.schedule_statuses[str(fp)] = ScheduleStatus.SCHEDULED.value


def _count_partial_writes(result: ImportResult) -> None:
    counts = {
        ("indicator", "insert"): 0,
        ("indicator", "update"): 0,
        ("release", "insert"): 0,
        ("release", "update"): 0,
    }
    for outcome in result.write_outcomes:
        if outcome.ok:
            counts[(outcome.entity, outcome.operation)] += 1
    result.indicators_created = counts[("indicator", "insert")]
    result.indicators_updated = counts[("indicator", "update")]
    result.releases_created = counts[("release", "insert")]
    result.releases_updated = counts[("release", "update")]


def _reject(result: ImportResult, exc: BatchValidationError) -> ImportResult:
    result.status = "rejected"
    result.errors = list(exc.errors)
    result.total_errors = exc.total
    result.error_message = "Validation failed"
    return result


def _write_rejects(
    rejects: RejectWriter | None,
    raw_rows: Sequence[Mapping[str, Any]],
    failures: list[RowError],
    header_offset: int = HEADER_ROW_OFFSET,
) -> None:
    if rejects is None:
        return
    for failure in failures:
        raw = raw_rows[failure.row - 1 - header_offset]
        row = {k: "" if v is None else str(v) for k, v in raw.items()}
        if failure.source is not None:
            row = {"_source": failure.source, **row}
        rejects.write(row, "; ".join(str(e) for e in failure.errors))


# ---------------------------------------------------------------------------
# Upload mode
# ---------------------------------------------------------------------------

def run_upload(
    store: ReleaseStore,
    raw_rows: Sequence[Mapping[str, Any]],
    actor_id: str | None = None,
    filename: str | None = None,
    run_id: str | None = None,
    audit: AuditSink | None = None,
    rejects: RejectWriter | None = None,
    revisions: RevisionBus | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
    max_reported_errors: int = MAX_REPORTED_ERRORS,
    dry_run: bool = False,
) -> ImportResult:
    result = ImportResult(
        run_id=run_id or str(uuid.uuid4()),
        mode="upload",
        records_seen=len(raw_rows),
    )
    if not raw_rows:
        result.status = "rejected"
        result.error_message = "CSV file contains no data rows"
        return result

    try:
        rows = validate_rows(raw_rows, max_reported=max_reported_errors)
    except BatchValidationError as exc:
        _write_rejects(rejects, raw_rows, exc.failures)
        return _reject(result, exc)

    reconcile_rows(
        store, rows, result,
        chunk_size=chunk_size,
        max_workers=max_workers,
        revisions=revisions,
        dry_run=dry_run,
    )

    if result.ok and not dry_run and actor_id:
        record_audit(audit, actor_id, "upload", "release", None, {
            "run_id": result.run_id,
            "filename": filename,
            "rowCount": len(rows),
            "indicatorsUpserted": result.indicators_upserted,
            "releasesUpserted": result.releases_upserted,
        })
    return result


# ---------------------------------------------------------------------------
# Sync mode
# ---------------------------------------------------------------------------

def run_sync(
    store: ReleaseStore,
    feeds: Mapping[str, Sequence[Mapping[str, Any]]],
    priority: SourcePriority,
    actor_id: str | None = None,
    run_id: str | None = None,
    audit: AuditSink | None = None,
    rejects: RejectWriter | None = None,
    revisions: RevisionBus | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    max_workers: int = DEFAULT_MAX_WORKERS,
    max_reported_errors: int = MAX_REPORTED_ERRORS,
    dry_run: bool = False,
) -> ImportResult:
    """Reconcile several feeds at once.

    feeds maps source name to that feed's raw rows; mapping order is arrival
    order.  Every source must be ranked in priority.
    """
    result = ImportResult(
        run_id=run_id or str(uuid.uuid4()),
        mode="sync",
        records_seen=sum(len(r) for r in feeds.values()),
    )

    unknown = [s for s in feeds if not priority.knows(s)]
    if unknown:
        result.status = "rejected"
        result.error_message = (
            f"Sources not ranked in source priority {priority.version}: {sorted(unknown)}"
        )
        return result

    all_failures: list[RowError] = []
    validated: dict[str, list[ReleaseRow]] = {}
    for source, raw_rows in feeds.items():
        try:
            validated[source] = validate_rows(raw_rows, source=source)
        except BatchValidationError as exc:
            _write_rejects(rejects, raw_rows, exc.failures)
            all_failures.extend(exc.failures)
    if all_failures:
        return _reject(result, BatchValidationError(
            all_failures[:max_reported_errors],
            total=len(all_failures),
            failures=all_failures,
        ))

    candidates = []
    for source, raw_rows in feeds.items():
        candidates.extend(
            build_candidates(source, raw_rows, validated[source], arrival_start=len(candidates))
        )
    dedup = deduplicate(candidates, priority)
    for change in dedup.schedule_changes:
        _note_schedule_change(result, change)
    result.schedule_statuses = {str(fp): s.value for fp, s in dedup.statuses.items()}

    reconcile_rows(
        store, dedup.rows, result,
        chunk_size=chunk_size,
        max_workers=max_workers,
        revisions=revisions,
        dry_run=dry_run,
        track_moves=True,
    )
    result.skipped = result.records_seen - result.unique_releases

    if result.ok and not dry_run and actor_id:
        record_audit(audit, actor_id, "sync", "release", None, {
            "run_id": result.run_id,
            "sources": dedup.seen_by_source,
            "keptBySource": dedup.kept_by_source,
            "dedupDropped": dedup.dropped,
            "scheduleChanges": len(result.schedule_changes),
            "scheduleStatuses": result.schedule_status_counts,
            "priorityVersion": priority.version,
            "priorityHash": priority.yaml_hash,
            "indicatorsUpserted": result.indicators_upserted,
            "releasesUpserted": result.releases_upserted,
        })
    return result
