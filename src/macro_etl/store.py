"""macro_etl.store

Storage boundary for Indicators and Releases.

ReleaseStore is the contract the engine depends on; PostgresStore is the
psycopg implementation.  Lookups take the whole key list they are given and
issue one query for it (the resolver decides the chunking).  Bulk inserts are
one statement each.  Updates touch one row by id and may be called from
worker threads: every thread gets its own autocommit connection.

Integrity failures (foreign key, unique, not-null, check) are raised as
ConstraintViolationError; any other driver failure as StoreError.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator, Protocol, Sequence

import psycopg

from macro_etl.records import (
    IndicatorFields,
    IndicatorKey,
    ReleaseDayKey,
    ReleaseFields,
    StoredReleaseKey,
)
from macro_etl.shared import ConstraintViolationError, StoreError

log = logging.getLogger(__name__)


class ReleaseStore(Protocol):
    def find_indicators(
        self, keys: Sequence[IndicatorKey]
    ) -> list[tuple[str, IndicatorKey]]: ...

    def find_releases(
        self, keys: Sequence[StoredReleaseKey]
    ) -> list[tuple[str, StoredReleaseKey, str | None]]: ...

    def find_releases_on_days(
        self, keys: Sequence[ReleaseDayKey]
    ) -> list[tuple[str, StoredReleaseKey, str | None]]: ...

    def insert_indicators(
        self, rows: Sequence[tuple[IndicatorKey, IndicatorFields]]
    ) -> list[tuple[str, IndicatorKey]]: ...

    def insert_releases(
        self, rows: Sequence[tuple[StoredReleaseKey, ReleaseFields]]
    ) -> list[tuple[str, StoredReleaseKey]]: ...

    def update_indicator(self, indicator_id: str, fields: IndicatorFields) -> None: ...

    def update_release(
        self,
        release_id: str,
        fields: ReleaseFields,
        release_at: datetime | None = None,
    ) -> None: ...


# ---------------------------------------------------------------------------
# Error translation
# ---------------------------------------------------------------------------

@contextmanager
def _translate_errors() -> Iterator[None]:
    try:
        yield
    except psycopg.errors.IntegrityError as exc:
        raise ConstraintViolationError(str(exc).strip()) from exc
    except psycopg.Error as exc:
        raise StoreError(str(exc).strip()) from exc


def _utc(ts: datetime) -> datetime:
    return ts.astimezone(timezone.utc)


def _day_bounds(day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(day, time.min, tzinfo=timezone.utc)
    return start, start + timedelta(days=1)


# ---------------------------------------------------------------------------
# PostgresStore
# ---------------------------------------------------------------------------

class PostgresStore:
    """ReleaseStore backed by PostgreSQL (see migrations/)."""

    def __init__(self, db_dsn: str) -> None:
        self._dsn = db_dsn
        self._local = threading.local()
        self._lock = threading.Lock()
        self._conns: list[psycopg.Connection] = []

    def __enter__(self) -> PostgresStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _conn(self) -> psycopg.Connection:
        conn = getattr(self._local, "conn", None)
        if conn is None or conn.closed:
            with _translate_errors():
                conn = psycopg.connect(self._dsn, autocommit=True)
            log.debug("Opened store connection for %s", threading.current_thread().name)
            self._local.conn = conn
            with self._lock:
                self._conns.append(conn)
        return conn

    def close(self) -> None:
        with self._lock:
            conns, self._conns = self._conns, []
        for conn in conns:
            if not conn.closed:
                conn.close()

    # -- lookups -------------------------------------------------------------

    def find_indicators(
        self, keys: Sequence[IndicatorKey]
    ) -> list[tuple[str, IndicatorKey]]:
        if not keys:
            return []
        where = " OR ".join(["(name = %s AND country_code = %s)"] * len(keys))
        params: list[object] = []
        for key in keys:
            params.extend((key.name, key.country_code))
        with _translate_errors():
            rows = self._conn().execute(
                f"SELECT id, name, country_code FROM indicators WHERE {where}",
                params,
            ).fetchall()
        return [(str(r[0]), IndicatorKey(r[1], r[2])) for r in rows]

    def find_releases(
        self, keys: Sequence[StoredReleaseKey]
    ) -> list[tuple[str, StoredReleaseKey, str | None]]:
        if not keys:
            return []
        where = " OR ".join(
            ["(indicator_id = %s::uuid AND release_at = %s AND period = %s)"] * len(keys)
        )
        params: list[object] = []
        for key in keys:
            params.extend((key.indicator_id, key.release_at, key.period))
        with _translate_errors():
            rows = self._conn().execute(
                "SELECT id, indicator_id, release_at, period, actual "
                f"FROM releases WHERE {where}",
                params,
            ).fetchall()
        return [
            (str(r[0]), StoredReleaseKey(str(r[1]), _utc(r[2]), r[3]), r[4])
            for r in rows
        ]

    def find_releases_on_days(
        self, keys: Sequence[ReleaseDayKey]
    ) -> list[tuple[str, StoredReleaseKey, str | None]]:
        """Every release of the given indicators on the given UTC days."""
        if not keys:
            return []
        where = " OR ".join(
            ["(indicator_id = %s::uuid AND release_at >= %s AND release_at < %s)"] * len(keys)
        )
        params: list[object] = []
        for key in keys:
            params.extend((key.indicator_id, *_day_bounds(key.day)))
        with _translate_errors():
            rows = self._conn().execute(
                "SELECT id, indicator_id, release_at, period, actual "
                f"FROM releases WHERE {where} ORDER BY release_at",
                params,
            ).fetchall()
        return [
            (str(r[0]), StoredReleaseKey(str(r[1]), _utc(r[2]), r[3]), r[4])
            for r in rows
        ]

    # -- bulk inserts --------------------------------------------------------

    def insert_indicators(
        self, rows: Sequence[tuple[IndicatorKey, IndicatorFields]]
    ) -> list[tuple[str, IndicatorKey]]:
        if not rows:
            return []
        with _translate_errors():
            out = self._conn().execute(
                """
                INSERT INTO indicators
                  (name, country_code, category, source_name, source_url)
                SELECT * FROM unnest(
                  %s::text[], %s::text[], %s::text[], %s::text[], %s::text[]
                )
                RETURNING id, name, country_code
                """,
                (
                    [k.name for k, _ in rows],
                    [k.country_code for k, _ in rows],
                    [f.category for _, f in rows],
                    [f.source_name for _, f in rows],
                    [f.source_url for _, f in rows],
                ),
            ).fetchall()
        return [(str(r[0]), IndicatorKey(r[1], r[2])) for r in out]

    def insert_releases(
        self, rows: Sequence[tuple[StoredReleaseKey, ReleaseFields]]
    ) -> list[tuple[str, StoredReleaseKey]]:
        if not rows:
            return []
        with _translate_errors():
            out = self._conn().execute(
                """
                INSERT INTO releases
                  (indicator_id, release_at, period,
                   actual, forecast, previous, revised, unit, notes)
                SELECT * FROM unnest(
                  %s::uuid[], %s::timestamptz[], %s::text[],
                  %s::text[], %s::text[], %s::text[], %s::text[], %s::text[], %s::text[]
                )
                RETURNING id, indicator_id, release_at, period
                """,
                (
                    [k.indicator_id for k, _ in rows],
                    [k.release_at for k, _ in rows],
                    [k.period for k, _ in rows],
                    [f.actual for _, f in rows],
                    [f.forecast for _, f in rows],
                    [f.previous for _, f in rows],
                    [f.revised for _, f in rows],
                    [f.unit for _, f in rows],
                    [f.notes for _, f in rows],
                ),
            ).fetchall()
        return [
            (str(r[0]), StoredReleaseKey(str(r[1]), _utc(r[2]), r[3]))
            for r in out
        ]

    # -- single-row updates --------------------------------------------------

    def update_indicator(self, indicator_id: str, fields: IndicatorFields) -> None:
        with _translate_errors():
            cur = self._conn().execute(
                """
                UPDATE indicators
                SET category = %s, source_name = %s, source_url = %s
                WHERE id = %s::uuid
                """,
                (fields.category, fields.source_name, fields.source_url, indicator_id),
            )
        if cur.rowcount == 0:
            raise StoreError(f"indicator {indicator_id} not found")

    def update_release(
        self,
        release_id: str,
        fields: ReleaseFields,
        release_at: datetime | None = None,
    ) -> None:
        """Overwrite the values of one release; release_at, when given, moves it."""
        with _translate_errors():
            cur = self._conn().execute(
                """
                UPDATE releases
                SET actual = %s, forecast = %s, previous = %s,
                    revised = %s, unit = %s, notes = %s,
                    release_at = COALESCE(%s::timestamptz, release_at)
                WHERE id = %s::uuid
                """,
                (
                    fields.actual, fields.forecast, fields.previous,
                    fields.revised, fields.unit, fields.notes,
                    release_at, release_id,
                ),
            )
        if cur.rowcount == 0:
            raise StoreError(f"release {release_id} not found")
