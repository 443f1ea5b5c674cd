"""macro_etl.planner

Reconciliation Planner.

Pure decision step: every key in the batch becomes an insert (not in the
store) or an update (in the store).  Updates carry the full mutable field set
from the batch, so a blank value in the input clears the stored one.  The
planner never deletes and never looks at stored field values except the
previous `actual`, which it forwards for revision events, and the stored
`release_at` of a release the batch moves within its day.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Mapping

from macro_etl.records import (
    ExistingRelease,
    IndicatorFields,
    IndicatorKey,
    ReleaseFields,
    ReleaseKey,
)


@dataclass(frozen=True)
class IndicatorInsert:
    key: IndicatorKey
    fields: IndicatorFields


@dataclass(frozen=True)
class IndicatorUpdate:
    id: str
    key: IndicatorKey
    fields: IndicatorFields


@dataclass(frozen=True)
class ReleaseInsert:
    key: ReleaseKey
    fields: ReleaseFields


@dataclass(frozen=True)
class ReleaseUpdate:
    id: str
    key: ReleaseKey
    fields: ReleaseFields
    previous_actual: str | None = None
    moved_from: datetime | None = None


@dataclass
class IndicatorPlan:
    inserts: list[IndicatorInsert] = field(default_factory=list)
    updates: list[IndicatorUpdate] = field(default_factory=list)


@dataclass
class ReleasePlan:
    inserts: list[ReleaseInsert] = field(default_factory=list)
    updates: list[ReleaseUpdate] = field(default_factory=list)


@dataclass
class Plan:
    indicators: IndicatorPlan
    releases: ReleasePlan


def plan_indicators(
    incoming: Mapping[IndicatorKey, IndicatorFields],
    existing_ids: Mapping[IndicatorKey, str],
) -> IndicatorPlan:
    plan = IndicatorPlan()
    for key, fields in incoming.items():
        existing_id = existing_ids.get(key)
        if existing_id is not None:
            plan.updates.append(IndicatorUpdate(id=existing_id, key=key, fields=fields))
        else:
            plan.inserts.append(IndicatorInsert(key=key, fields=fields))
    return plan


def plan_releases(
    incoming: Mapping[ReleaseKey, ReleaseFields],
    existing: Mapping[ReleaseKey, ExistingRelease],
) -> ReleasePlan:
    plan = ReleasePlan()
    for key, fields in incoming.items():
        found = existing.get(key)
        if found is not None:
            moved_from = None
            if found.release_at is not None and found.release_at != key.release_at:
                moved_from = found.release_at
            plan.updates.append(ReleaseUpdate(
                id=found.id,
                key=key,
                fields=fields,
                previous_actual=found.actual,
                moved_from=moved_from,
            ))
        else:
            plan.inserts.append(ReleaseInsert(key=key, fields=fields))
    return plan


def build_plan(
    indicators: Mapping[IndicatorKey, IndicatorFields],
    releases: Mapping[ReleaseKey, ReleaseFields],
    existing_indicator_ids: Mapping[IndicatorKey, str],
    existing_releases: Mapping[ReleaseKey, ExistingRelease],
) -> Plan:
    return Plan(
        indicators=plan_indicators(indicators, existing_indicator_ids),
        releases=plan_releases(releases, existing_releases),
    )
