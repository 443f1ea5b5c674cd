"""macro_etl.writer

Batch Writer.

Applies a Plan.  Per entity type:
  - updates are dispatched together on a thread pool and awaited together;
    a release the batch moved within its day gets its new release_at too;
  - inserts go out as one bulk call whose generated ids are merged into the
    indicator id map, so releases of brand-new indicators can be written in
    the same run.

Indicators are always written before Releases.

Every planned write yields a WriteOutcome.  When any update in a fan-out
fails, the writer still waits for the rest, then raises WriteError carrying
the first failure's message (in plan order) plus the full outcome list.
Updates that succeeded before the failure was seen stay applied.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, MutableMapping, Sequence

from macro_etl.planner import IndicatorPlan, ReleasePlan, ReleaseUpdate
from macro_etl.records import IndicatorKey, ReleaseKey, StoredReleaseKey
from macro_etl.revisions import ReleaseRevision, RevisionBus
from macro_etl.shared import StoreError, WriteError, WriteOutcome
from macro_etl.store import ReleaseStore

log = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 8


def format_indicator_key(key: IndicatorKey) -> str:
    return f"{key.name}|{key.country_code}"


def format_release_key(key: ReleaseKey) -> str:
    return (
        f"{format_indicator_key(key.indicator)}|"
        f"{key.release_at.isoformat()}|{key.period}"
    )


@dataclass
class WriteSummary:
    created: int = 0
    updated: int = 0
    outcomes: list[WriteOutcome] = field(default_factory=list)


class BatchWriter:
    def __init__(
        self,
        store: ReleaseStore,
        max_workers: int = DEFAULT_MAX_WORKERS,
        revisions: RevisionBus | None = None,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self.store = store
        self.max_workers = max_workers
        self.revisions = revisions

    # -- fan-out / fan-in ----------------------------------------------------

    def _run_updates(
        self,
        entity: str,
        calls: Sequence[tuple[str, str, Callable[[], None]]],
    ) -> list[WriteOutcome]:
        """Run (key, id, fn) calls concurrently; one outcome per call, in order."""
        if not calls:
            return []
        workers = min(self.max_workers, len(calls))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"update-{entity}") as pool:
            futures = [pool.submit(fn) for _, _, fn in calls]
            wait(futures)
        outcomes: list[WriteOutcome] = []
        for (key, record_id, _), future in zip(calls, futures):
            exc = future.exception()
            if exc is None:
                outcomes.append(WriteOutcome(entity, "update", key, record_id, ok=True))
            elif isinstance(exc, StoreError):
                outcomes.append(
                    WriteOutcome(entity, "update", key, record_id, ok=False, error=str(exc))
                )
            else:
                raise exc
        return outcomes

    # -- indicators ----------------------------------------------------------

    def write_indicators(
        self,
        plan: IndicatorPlan,
        indicator_ids: MutableMapping[IndicatorKey, str],
    ) -> WriteSummary:
        summary = WriteSummary()

        summary.outcomes.extend(self._run_updates("indicator", [
            (
                format_indicator_key(u.key),
                u.id,
                lambda u=u: self.store.update_indicator(u.id, u.fields),
            )
            for u in plan.updates
        ]))
        failed = [o for o in summary.outcomes if not o.ok]
        summary.updated = len(summary.outcomes) - len(failed)
        if failed:
            raise WriteError(
                f"Failed to update indicators: {failed[0].error}", summary.outcomes
            )

        if plan.inserts:
            try:
                inserted = self.store.insert_indicators(
                    [(i.key, i.fields) for i in plan.inserts]
                )
            except StoreError as exc:
                summary.outcomes.extend(
                    WriteOutcome("indicator", "insert", format_indicator_key(i.key),
                                 None, ok=False, error=str(exc))
                    for i in plan.inserts
                )
                raise WriteError(
                    f"Failed to insert new indicators: {exc}", summary.outcomes
                ) from exc
            for new_id, key in inserted:
                indicator_ids[key] = new_id
                summary.outcomes.append(
                    WriteOutcome("indicator", "insert", format_indicator_key(key), new_id, ok=True)
                )
            summary.created = len(inserted)
        return summary

    # -- releases ------------------------------------------------------------

    def write_releases(
        self,
        plan: ReleasePlan,
        indicator_ids: MutableMapping[IndicatorKey, str],
    ) -> WriteSummary:
        summary = WriteSummary()

        summary.outcomes.extend(self._run_updates("release", [
            (
                format_release_key(u.key),
                u.id,
                lambda u=u: self._update_release(u),
            )
            for u in plan.updates
        ]))
        self._publish_revisions(plan, summary.outcomes)
        failed = [o for o in summary.outcomes if not o.ok]
        summary.updated = len(summary.outcomes) - len(failed)
        if failed:
            raise WriteError(
                f"Failed to update releases: {failed[0].error}", summary.outcomes
            )

        if plan.inserts:
            rows = []
            by_stored: dict[StoredReleaseKey, ReleaseKey] = {}
            for ins in plan.inserts:
                indicator_id = indicator_ids.get(ins.key.indicator)
                if indicator_id is None:
                    # Leave it to the store's foreign key to reject.
                    log.warning(
                        "No indicator id for %s; insert will violate the foreign key",
                        format_indicator_key(ins.key.indicator),
                    )
                stored = StoredReleaseKey(indicator_id, ins.key.release_at, ins.key.period)
                by_stored[stored] = ins.key
                rows.append((stored, ins.fields))
            try:
                inserted = self.store.insert_releases(rows)
            except StoreError as exc:
                summary.outcomes.extend(
                    WriteOutcome("release", "insert", format_release_key(i.key),
                                 None, ok=False, error=str(exc))
                    for i in plan.inserts
                )
                raise WriteError(
                    f"Failed to insert new releases: {exc}", summary.outcomes
                ) from exc
            for new_id, stored in inserted:
                key = by_stored.get(stored)
                label = format_release_key(key) if key is not None else str(stored)
                summary.outcomes.append(
                    WriteOutcome("release", "insert", label, new_id, ok=True)
                )
            summary.created = len(inserted)
        return summary

    def _update_release(self, update: ReleaseUpdate) -> None:
        if update.moved_from is None:
            self.store.update_release(update.id, update.fields)
        else:
            self.store.update_release(
                update.id, update.fields, release_at=update.key.release_at
            )

    def _publish_revisions(
        self,
        plan: ReleasePlan,
        outcomes: Sequence[WriteOutcome],
    ) -> None:
        if self.revisions is None:
            return
        now = datetime.now(timezone.utc)
        for update, outcome in zip(plan.updates, outcomes):
            if not outcome.ok:
                continue
            self.revisions.publish(ReleaseRevision(
                release_id=update.id,
                key=update.key,
                previous_actual=update.previous_actual,
                new_actual=update.fields.actual,
                observed_at=now,
            ))
