"""macro_etl.indexer

Natural-Key Indexer.

Collapses a validated batch into unique Indicators keyed by
(name, country_code) and unique Releases keyed by
(indicator key, release_at, period).  A later row with the same key replaces
the earlier one, so a correction row further down a file wins.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterable

from macro_etl.records import (
    IndicatorFields,
    IndicatorKey,
    ReleaseFields,
    ReleaseKey,
    ReleaseRow,
)


@dataclass
class BatchIndex:
    indicators: dict[IndicatorKey, IndicatorFields] = field(default_factory=dict)
    releases: dict[ReleaseKey, ReleaseFields] = field(default_factory=dict)
    rows_seen: int = 0

    @property
    def duplicates_collapsed(self) -> int:
        return self.rows_seen - len(self.releases)


def build_index(rows: Iterable[ReleaseRow]) -> BatchIndex:
    index = BatchIndex()
    for row in rows:
        index.rows_seen += 1
        # Keys keep their first-seen position; values are the last seen.
        index.indicators[row.indicator_key] = row.indicator
        index.releases[row.release_key] = row.values
    return index
