"""macro_etl.resolver

Existing-Record Resolver.

Finds which natural keys already exist in the store.  Keys are sent in
fixed-size chunks, one OR-of-ANDs query per chunk, so a batch of K unique
keys costs ceil(K / chunk_size) round trips however many rows it came from.
A failed chunk aborts the whole resolution; nothing is written at this
stage, so there is nothing to undo.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Iterable, Iterator, Mapping, Sequence, TypeVar

from macro_etl.normalize import release_day
from macro_etl.records import (
    ExistingRelease,
    IndicatorKey,
    ReleaseDayKey,
    ReleaseKey,
    StoredReleaseKey,
)
from macro_etl.shared import ResolutionError, StoreError
from macro_etl.store import ReleaseStore

log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 50

T = TypeVar("T")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most size items."""
    if size < 1:
        raise ValueError(f"chunk size must be >= 1, got {size}")
    for start in range(0, len(items), size):
        yield items[start:start + size]


@dataclass
class Resolution:
    indicator_ids: dict[IndicatorKey, str] = field(default_factory=dict)
    releases: dict[ReleaseKey, ExistingRelease] = field(default_factory=dict)
    moved: dict[ReleaseKey, ExistingRelease] = field(default_factory=dict)
    queries: int = 0


def resolve_indicators(
    store: ReleaseStore,
    keys: Iterable[IndicatorKey],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> tuple[dict[IndicatorKey, str], int]:
    """Return ({key: id} for keys that exist, number of queries issued)."""
    wanted = list(dict.fromkeys(keys))
    found: dict[IndicatorKey, str] = {}
    queries = 0
    for chunk in chunked(wanted, chunk_size):
        queries += 1
        try:
            rows = store.find_indicators(chunk)
        except StoreError as exc:
            raise ResolutionError(f"Failed to fetch existing indicators: {exc}") from exc
        for indicator_id, key in rows:
            found[key] = indicator_id
    return found, queries


def resolve_releases(
    store: ReleaseStore,
    keys: Iterable[ReleaseKey],
    indicator_ids: Mapping[IndicatorKey, str],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> tuple[dict[ReleaseKey, ExistingRelease], int]:
    """Return ({key: existing release}, number of queries issued).

    Only keys whose indicator already has an id are looked up: a release
    cannot exist for an indicator the store has never seen.
    """
    by_stored: dict[StoredReleaseKey, ReleaseKey] = {}
    for key in keys:
        indicator_id = indicator_ids.get(key.indicator)
        if indicator_id is None:
            continue
        by_stored[StoredReleaseKey(indicator_id, key.release_at, key.period)] = key

    wanted = list(by_stored)
    found: dict[ReleaseKey, ExistingRelease] = {}
    queries = 0
    for chunk in chunked(wanted, chunk_size):
        queries += 1
        try:
            rows = store.find_releases(chunk)
        except StoreError as exc:
            raise ResolutionError(f"Failed to fetch existing releases: {exc}") from exc
        for release_id, stored_key, actual in rows:
            key = by_stored.get(stored_key)
            if key is None:
                log.warning("Lookup returned unrequested release %s", release_id)
                continue
            found[key] = ExistingRelease(id=release_id, actual=actual)
    return found, queries


def resolve_moved_releases(
    store: ReleaseStore,
    keys: Iterable[ReleaseKey],
    indicator_ids: Mapping[IndicatorKey, str],
    taken: Iterable[str] = (),
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> tuple[dict[ReleaseKey, ExistingRelease], int]:
    """Find stored releases that a key moves to another time of the same day.

    keys are releases with no exact match.  A stored release counts as moved
    when it has the same indicator and period, falls on the same UTC day, and
    has a different release_at.  The earliest such release wins, and a stored
    release is claimed by at most one key; ids in taken are never claimed.
    Returns ({key: stored release with its old release_at}, queries issued).
    """
    wanted: dict[ReleaseDayKey, list[ReleaseKey]] = {}
    for key in keys:
        indicator_id = indicator_ids.get(key.indicator)
        if indicator_id is None:
            continue
        day_key = ReleaseDayKey(indicator_id, release_day(key.release_at))
        wanted.setdefault(day_key, []).append(key)

    on_day: dict[ReleaseDayKey, list[tuple[str, StoredReleaseKey, str | None]]] = {}
    queries = 0
    for chunk in chunked(list(wanted), chunk_size):
        queries += 1
        try:
            rows = store.find_releases_on_days(chunk)
        except StoreError as exc:
            raise ResolutionError(f"Failed to fetch same-day releases: {exc}") from exc
        for row in rows:
            stored = row[1]
            day_key = ReleaseDayKey(stored.indicator_id, release_day(stored.release_at))
            on_day.setdefault(day_key, []).append(row)

    claimed = set(taken)
    moved: dict[ReleaseKey, ExistingRelease] = {}
    for day_key, day_keys in wanted.items():
        candidates = sorted(on_day.get(day_key, []), key=lambda r: r[1].release_at)
        for key in day_keys:
            for release_id, stored, actual in candidates:
                if (
                    release_id in claimed
                    or stored.period != key.period
                    or stored.release_at == key.release_at
                ):
                    continue
                claimed.add(release_id)
                moved[key] = ExistingRelease(
                    id=release_id, actual=actual, release_at=stored.release_at
                )
                break
    return moved, queries


def resolve(
    store: ReleaseStore,
    indicator_keys: Iterable[IndicatorKey],
    release_keys: Iterable[ReleaseKey],
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    track_moves: bool = False,
) -> Resolution:
    """Resolve both entity types before anything is written.

    With track_moves, keys without an exact match are also looked up as
    same-day moves; a moved release is returned both in releases (so it is
    planned as an update) and in moved.
    """
    release_keys = list(release_keys)
    indicator_ids, ind_queries = resolve_indicators(store, indicator_keys, chunk_size)
    releases, rel_queries = resolve_releases(store, release_keys, indicator_ids, chunk_size)
    moved: dict[ReleaseKey, ExistingRelease] = {}
    move_queries = 0
    if track_moves:
        moved, move_queries = resolve_moved_releases(
            store,
            [k for k in release_keys if k not in releases],
            indicator_ids,
            taken=[r.id for r in releases.values()],
            chunk_size=chunk_size,
        )
        releases.update(moved)
    return Resolution(
        indicator_ids=indicator_ids,
        releases=releases,
        moved=moved,
        queries=ind_queries + rel_queries + move_queries,
    )
