"""macro_etl.records

Typed, immutable records passed through the reconciliation pipeline.

A raw field map is turned into a ReleaseRow once, by the validator; every
later stage (dedupe, indexer, planner, writer) works on these records and
never goes back to the string-keyed map.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import NamedTuple

RELEASE_VALUE_FIELDS = ("actual", "forecast", "previous", "revised", "unit", "notes")


class IndicatorKey(NamedTuple):
    """Natural key of an Indicator."""

    name: str
    country_code: str


class ReleaseKey(NamedTuple):
    """Natural key of a Release, expressed through its indicator's key."""

    indicator: IndicatorKey
    release_at: datetime
    period: str


class StoredReleaseKey(NamedTuple):
    """Natural key of a Release as the store sees it (indicator id, not key)."""

    indicator_id: str
    release_at: datetime
    period: str


class ReleaseDayKey(NamedTuple):
    """An indicator id and a UTC calendar day: where a moved release is looked for."""

    indicator_id: str
    day: date


@dataclass(frozen=True)
class IndicatorFields:
    """Mutable attributes of an Indicator."""

    category: str
    source_name: str
    source_url: str


@dataclass(frozen=True)
class ReleaseFields:
    """Mutable attributes of a Release.  None means empty/unknown."""

    actual: str | None = None
    forecast: str | None = None
    previous: str | None = None
    revised: str | None = None
    unit: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class ReleaseRow:
    """One validated input record: an indicator plus one of its releases."""

    row_number: int
    indicator_name: str
    country_code: str
    indicator: IndicatorFields
    release_at: datetime
    period: str
    values: ReleaseFields
    source: str | None = None

    @property
    def indicator_key(self) -> IndicatorKey:
        return IndicatorKey(self.indicator_name, self.country_code)

    @property
    def release_key(self) -> ReleaseKey:
        return ReleaseKey(self.indicator_key, self.release_at, self.period)


@dataclass(frozen=True)
class ExistingRelease:
    """What the resolver learns about a stored Release."""

    id: str
    actual: str | None
    release_at: datetime | None = None
