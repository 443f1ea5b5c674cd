"""macro_etl.cli

Unified CLI entrypoint for release ingestion.

Modes (--mode):
  upload: reconcile one spreadsheet (CSV) export (default)
  sync:   reconcile several scheduled feed snapshots, deduplicated by
          source priority

Usage (upload):
    python -m macro_etl.cli \\
        --mode upload \\
        --db-dsn "$DB_DSN" \\
        --csv-path "uploads/releases_2026-01.csv" \\
        --actor-id "$ACTOR_ID"

Usage (sync):
    python -m macro_etl.cli \\
        --mode sync \\
        --db-dsn "$DB_DSN" \\
        --feed cme=snapshots/cme.json \\
        --feed fmp=https://feeds.example.test/fmp/upcoming.json \\
        --priority-file config/source_priority.yml

Exit status: 0 ok, 1 input rejected (nothing written), 2 store failure
(writes may be partially applied; see the run report's write_failures).
"""

from __future__ import annotations

import logging
import sys
import uuid
from datetime import datetime, timezone
from pathlib import Path

import click
import requests

from macro_etl.audit import PostgresAuditLog
from macro_etl.feeds import FeedFormatError, load_feed, parse_feed_option, read_upload_csv
from macro_etl.reconcile import run_sync, run_upload
from macro_etl.resolver import DEFAULT_CHUNK_SIZE
from macro_etl.revisions import RevisionBus, RevisionCollector
from macro_etl.shared import ImportResult, RejectWriter, write_run_report
from macro_etl.source_priority import SourcePriorityValidationError, load_source_priority
from macro_etl.store import PostgresStore
from macro_etl.validate import MAX_REPORTED_ERRORS
from macro_etl.writer import DEFAULT_MAX_WORKERS

EXIT_OK = 0
EXIT_REJECTED = 1
EXIT_FAILED = 2


@click.command()
@click.option(
    "--mode",
    default="upload",
    type=click.Choice(["upload", "sync"]),
    show_default=True,
    help="Ingestion mode",
)
@click.option("--db-dsn", required=True, envvar="DB_DSN", help="PostgreSQL DSN (env: DB_DSN)")
# upload flags
@click.option("--csv-path", default=None, type=click.Path(), help="[upload] Input CSV")
# sync flags
@click.option(
    "--feed",
    "feeds",
    multiple=True,
    help="[sync] SOURCE=PATH_OR_URL of a JSON feed snapshot; repeat per source, in arrival order",
)
@click.option(
    "--priority-file",
    default="config/source_priority.yml",
    show_default=True,
    type=click.Path(),
    help="[sync] YAML source-priority tiers",
)
@click.option("--feed-timeout", default=30.0, type=float, show_default=True, help="[sync] HTTP timeout per feed in seconds")
# shared flags
@click.option("--actor-id", default=None, envvar="MACRO_ETL_ACTOR_ID", help="Identity recorded in the audit log")
@click.option("--chunk-size", default=DEFAULT_CHUNK_SIZE, type=click.IntRange(min=1), show_default=True, help="Keys per lookup query")
@click.option("--max-workers", default=DEFAULT_MAX_WORKERS, type=click.IntRange(min=1), show_default=True, help="Concurrent update calls")
@click.option("--max-reported-errors", default=MAX_REPORTED_ERRORS, type=click.IntRange(min=1), show_default=True)
@click.option("--dry-run", is_flag=True, default=False, help="Validate, resolve and plan only; write nothing")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/release_rejects.csv",
    show_default=True,
)
@click.option("--reports-dir", default="./artifacts/reports", show_default=True, type=click.Path())
@click.option("--run-id", default=None, help="Override UUID for log correlation")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    show_default=True,
)
def main(
    mode: str,
    db_dsn: str,
    csv_path: str | None,
    feeds: tuple[str, ...],
    priority_file: str,
    feed_timeout: float,
    actor_id: str | None,
    chunk_size: int,
    max_workers: int,
    max_reported_errors: int,
    dry_run: bool,
    rejects_path: str,
    reports_dir: str,
    run_id: str | None,
    log_level: str,
) -> None:
    """Unified release ingestion CLI."""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()
    rejects = RejectWriter(Path(rejects_path))
    revision_log = RevisionCollector(only_changed=True)
    revisions = RevisionBus()
    revisions.subscribe(revision_log)
    audit = PostgresAuditLog(db_dsn)

    click.echo(f"[{run_id}] Starting {mode} run (dry_run={dry_run})")

    store = PostgresStore(db_dsn)
    try:
        if mode == "upload":
            _validate_upload_flags(csv_path, run_id)
            try:
                raw_rows = read_upload_csv(Path(csv_path))  # type: ignore[arg-type]
            except (OSError, FeedFormatError) as exc:
                click.echo(f"[{run_id}] FATAL: {exc}", err=True)
                sys.exit(EXIT_REJECTED)
            click.echo(f"[{run_id}] Read {len(raw_rows)} rows from {csv_path}")
            result = run_upload(
                store, raw_rows,
                actor_id=actor_id,
                filename=Path(csv_path).name,  # type: ignore[arg-type]
                run_id=run_id,
                audit=audit,
                rejects=rejects,
                revisions=revisions,
                chunk_size=chunk_size,
                max_workers=max_workers,
                max_reported_errors=max_reported_errors,
                dry_run=dry_run,
            )
            source_paths = {"csv_path": csv_path}
        else:
            _validate_sync_flags(feeds, run_id)
            try:
                priority = load_source_priority(Path(priority_file))
            except (OSError, SourcePriorityValidationError) as exc:
                click.echo(f"[{run_id}] FATAL: source priority: {exc}", err=True)
                sys.exit(EXIT_REJECTED)
            feed_rows = {}
            session = requests.Session()
            for value in feeds:
                try:
                    source, location = parse_feed_option(value)
                    feed_rows[source] = load_feed(location, session=session, timeout=feed_timeout)
                except (OSError, ValueError, requests.RequestException) as exc:
                    click.echo(f"[{run_id}] FATAL: feed {value!r}: {exc}", err=True)
                    sys.exit(EXIT_REJECTED)
                click.echo(f"[{run_id}] Loaded {len(feed_rows[source])} events from {source}")
            result = run_sync(
                store, feed_rows, priority,
                actor_id=actor_id,
                run_id=run_id,
                audit=audit,
                rejects=rejects,
                revisions=revisions,
                chunk_size=chunk_size,
                max_workers=max_workers,
                max_reported_errors=max_reported_errors,
                dry_run=dry_run,
            )
            source_paths = {
                "feeds": ",".join(feeds),
                "priority_file": priority_file,
                "priority_hash": priority.yaml_hash,
            }
    finally:
        store.close()
        rejects.close()

    _echo_result(result, revision_log, rejects)
    report_path = write_run_report(
        run_id, started_at, mode, dry_run, source_paths, result,
        reports_dir=Path(reports_dir),
    )
    click.echo(f"[{run_id}] Run report: {report_path}")

    if result.status == "rejected":
        sys.exit(EXIT_REJECTED)
    if result.status == "failed":
        sys.exit(EXIT_FAILED)


def _echo_result(
    result: ImportResult,
    revision_log: RevisionCollector,
    rejects: RejectWriter,
) -> None:
    run_id = result.run_id
    if result.status == "rejected":
        click.echo(f"[{run_id}] REJECTED: {result.error_message}", err=True)
        for err in result.errors:
            where = f"{err.source} row {err.row}" if err.source else f"row {err.row}"
            for field_error in err.errors:
                click.echo(f"[{run_id}]   {where}: {field_error}", err=True)
        if result.total_errors > len(result.errors):
            click.echo(
                f"[{run_id}]   ... and {result.total_errors - len(result.errors)} more",
                err=True,
            )
        if rejects.opened:
            click.echo(f"[{run_id}] Rejected rows written to {rejects.path}", err=True)
        return

    if result.status == "failed":
        failed = [o for o in result.write_outcomes if not o.ok]
        click.echo(f"[{run_id}] FAILED: {result.error_message}", err=True)
        if failed:
            click.echo(
                f"[{run_id}] {len(failed)} write(s) failed; "
                "other writes in this run may already be applied",
                err=True,
            )

    for warning in result.warnings[:5]:
        click.echo(f"[{run_id}] WARNING: {warning}")
    if len(result.warnings) > 5:
        click.echo(f"[{run_id}]   ... and {len(result.warnings) - 5} more warnings")

    click.echo(
        f"[{run_id}] Done: {result.records_seen} rows read, "
        f"{result.unique_releases} unique releases, "
        f"{result.indicators_created} indicators created, "
        f"{result.indicators_updated} updated, "
        f"{result.releases_created} releases created, "
        f"{result.releases_updated} updated, "
        f"{result.skipped} skipped, "
        f"{result.lookup_queries} lookup queries, "
        f"{len(revision_log.events)} actual value(s) revised"
    )
    if result.schedule_statuses:
        counts = ", ".join(
            f"{status} {n}" for status, n in sorted(result.schedule_status_counts.items())
        )
        click.echo(f"[{run_id}] Schedule status: {counts}")


def _validate_upload_flags(csv_path: str | None, run_id: str) -> None:
    if not csv_path:
        click.echo(f"[{run_id}] FATAL: upload mode requires: --csv-path", err=True)
        sys.exit(EXIT_REJECTED)


def _validate_sync_flags(feeds: tuple[str, ...], run_id: str) -> None:
    if not feeds:
        click.echo(f"[{run_id}] FATAL: sync mode requires at least one --feed", err=True)
        sys.exit(EXIT_REJECTED)
    seen: set[str] = set()
    for value in feeds:
        try:
            source, _ = parse_feed_option(value)
        except FeedFormatError as exc:
            click.echo(f"[{run_id}] FATAL: feed {value!r}: {exc}", err=True)
            sys.exit(EXIT_REJECTED)
        if source in seen:
            click.echo(
                f"[{run_id}] FATAL: --feed given more than once for source {source!r}",
                err=True,
            )
            sys.exit(EXIT_REJECTED)
        seen.add(source)


if __name__ == "__main__":
    main()
