"""macro_etl.dedupe

Event Deduplicator for the multi-source sync path.

Several feeds report the same real-world release with small differences:
name casing and spacing, and often the minute of publication.  Events are
grouped by a fingerprint of

    folded indicator name | upper-cased country code | UTC calendar day

(the time of day is left out on purpose) and one event per fingerprint
survives:

  - a source in a higher tier always beats a lower tier, whatever the
    arrival order; a lower tier never overwrites a higher one;
  - within the same tier the later arrival wins, and if it moves the
    timestamp the move is reported as a ScheduleChange.

Schedule status per fingerprint follows

    unscheduled -> scheduled -> time_confirmed

and any move of an already known timestamp drops it back to scheduled.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Mapping, NamedTuple, Sequence

from macro_etl.normalize import fold_name, normalize_country, parse_flag, release_day
from macro_etl.records import ReleaseRow
from macro_etl.source_priority import SourcePriority

log = logging.getLogger(__name__)


class Fingerprint(NamedTuple):
    name: str
    country: str
    day: date

    def __str__(self) -> str:
        return f"{self.country}:{self.name}:{self.day.isoformat()}"


class ScheduleStatus(str, Enum):
    UNSCHEDULED = "unscheduled"
    SCHEDULED = "scheduled"
    TIME_CONFIRMED = "time_confirmed"


@dataclass(frozen=True)
class CandidateEvent:
    row: ReleaseRow
    source: str
    arrival: int
    time_confirmed: bool = False

    @property
    def fingerprint(self) -> Fingerprint:
        return fingerprint(self.row)


@dataclass(frozen=True)
class ScheduleChange:
    fingerprint: Fingerprint
    indicator_name: str
    country_code: str
    previous_source: str
    source: str
    old_release_at: datetime
    new_release_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "fingerprint": str(self.fingerprint),
            "indicator_name": self.indicator_name,
            "country_code": self.country_code,
            "change_type": "time_changed",
            "previous_source": self.previous_source,
            "source": self.source,
            "old_value": self.old_release_at.isoformat(),
            "new_value": self.new_release_at.isoformat(),
        }


@dataclass
class DedupResult:
    kept: list[CandidateEvent] = field(default_factory=list)
    statuses: dict[Fingerprint, ScheduleStatus] = field(default_factory=dict)
    schedule_changes: list[ScheduleChange] = field(default_factory=list)
    dropped: int = 0
    seen_by_source: dict[str, int] = field(default_factory=dict)
    kept_by_source: dict[str, int] = field(default_factory=dict)

    @property
    def rows(self) -> list[ReleaseRow]:
        return [event.row for event in self.kept]


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

def fingerprint(row: ReleaseRow) -> Fingerprint:
    return Fingerprint(
        name=fold_name(row.indicator_name) or "",
        country=normalize_country(row.country_code) or "",
        day=release_day(row.release_at),
    )


# ---------------------------------------------------------------------------
# Schedule status state machine
# ---------------------------------------------------------------------------

def next_status(
    current: ScheduleStatus,
    known_at: datetime | None,
    observed_at: datetime,
    time_confirmed: bool,
) -> tuple[ScheduleStatus, bool]:
    """Return (new status, moved) after observing an event at observed_at."""
    if current is ScheduleStatus.UNSCHEDULED or known_at is None:
        if time_confirmed:
            return ScheduleStatus.TIME_CONFIRMED, False
        return ScheduleStatus.SCHEDULED, False
    if observed_at != known_at:
        return ScheduleStatus.SCHEDULED, True
    if time_confirmed:
        return ScheduleStatus.TIME_CONFIRMED, False
    return current, False


# ---------------------------------------------------------------------------
# Candidate construction
# ---------------------------------------------------------------------------

def _has_time_part(value: Any) -> bool:
    text = str(value or "").strip()
    return "T" in text or " " in text


def build_candidates(
    source: str,
    raw_rows: Sequence[Mapping[str, Any]],
    rows: Sequence[ReleaseRow],
    arrival_start: int = 0,
) -> list[CandidateEvent]:
    """Pair validated rows with their raw maps to build candidate events.

    raw_rows and rows must line up one to one (a validated feed).  An
    explicit time_confirmed flag wins; otherwise a release_at that carries a
    time of day counts as confirmed.
    """
    if len(raw_rows) != len(rows):
        raise ValueError(
            f"{source}: {len(raw_rows)} raw rows but {len(rows)} validated rows"
        )
    events: list[CandidateEvent] = []
    for offset, (raw, row) in enumerate(zip(raw_rows, rows)):
        flag = parse_flag(raw.get("time_confirmed"))
        if flag is None:
            flag = _has_time_part(raw.get("release_at"))
        events.append(CandidateEvent(
            row=row,
            source=source,
            arrival=arrival_start + offset,
            time_confirmed=flag,
        ))
    return events


# ---------------------------------------------------------------------------
# Deduplication
# ---------------------------------------------------------------------------

def deduplicate(
    events: Iterable[CandidateEvent],
    priority: SourcePriority,
) -> DedupResult:
    """Collapse events describing the same release.

    Raises UnknownSourceError if an event's source is not in the priority
    config.
    """
    result = DedupResult()
    winners: dict[Fingerprint, CandidateEvent] = {}

    for event in sorted(events, key=lambda e: e.arrival):
        tier = priority.tier_of(event.source)
        fp = event.fingerprint
        result.seen_by_source[event.source] = result.seen_by_source.get(event.source, 0) + 1

        current = winners.get(fp)
        if current is None:
            winners[fp] = event
            result.statuses[fp], _ = next_status(
                ScheduleStatus.UNSCHEDULED, None, event.row.release_at, event.time_confirmed
            )
            continue

        current_tier = priority.tier_of(current.source)
        result.dropped += 1
        if tier > current_tier:
            log.debug("Dropping %s event %s: lower priority than %s", event.source, fp, current.source)
            continue

        if tier < current_tier:
            winners[fp] = event
            result.statuses[fp], _ = next_status(
                ScheduleStatus.UNSCHEDULED, None, event.row.release_at, event.time_confirmed
            )
            continue

        status, moved = next_status(
            result.statuses[fp],
            current.row.release_at,
            event.row.release_at,
            event.time_confirmed,
        )
        if moved:
            result.schedule_changes.append(ScheduleChange(
                fingerprint=fp,
                indicator_name=event.row.indicator_name,
                country_code=event.row.country_code,
                previous_source=current.source,
                source=event.source,
                old_release_at=current.row.release_at,
                new_release_at=event.row.release_at,
            ))
        result.statuses[fp] = status
        winners[fp] = event

    result.kept = list(winners.values())
    for event in result.kept:
        result.kept_by_source[event.source] = result.kept_by_source.get(event.source, 0) + 1
    return result
