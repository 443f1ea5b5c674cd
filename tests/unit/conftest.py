"""Unit test fixtures.

InMemoryStore implements the ReleaseStore contract with dicts, counts every
call, and enforces the same constraints as the SQL schema (natural-key
uniqueness, release -> indicator foreign key).  Failures can be injected per
method or per record id.
"""

from __future__ import annotations

import threading
import uuid
from typing import Any

import pytest

from macro_etl.normalize import release_day
from macro_etl.records import IndicatorKey, StoredReleaseKey
from macro_etl.shared import ConstraintViolationError, StoreError


class InMemoryStore:
    def __init__(self) -> None:
        self.indicators: dict[IndicatorKey, dict[str, Any]] = {}
        self.releases: dict[StoredReleaseKey, dict[str, Any]] = {}
        self.calls: dict[str, int] = {
            "find_indicators": 0,
            "find_releases": 0,
            "find_releases_on_days": 0,
            "insert_indicators": 0,
            "insert_releases": 0,
            "update_indicator": 0,
            "update_release": 0,
        }
        self.lookup_sizes: list[int] = []
        self.fail_methods: dict[str, Exception] = {}
        self.fail_ids: set[str] = set()
        self._lock = threading.Lock()

    # -- helpers -------------------------------------------------------------

    @property
    def lookup_queries(self) -> int:
        return (
            self.calls["find_indicators"]
            + self.calls["find_releases"]
            + self.calls["find_releases_on_days"]
        )

    def _enter(self, method: str) -> None:
        with self._lock:
            self.calls[method] += 1
        exc = self.fail_methods.get(method)
        if exc is not None:
            raise exc

    def _indicator_ids(self) -> set[str]:
        return {rec["id"] for rec in self.indicators.values()}

    def release(self, name: str, country: str, release_at, period: str) -> dict[str, Any] | None:
        ind = self.indicators.get(IndicatorKey(name, country))
        if ind is None:
            return None
        return self.releases.get(StoredReleaseKey(ind["id"], release_at, period))

    # -- ReleaseStore ----------------------------------------------------------

    def find_indicators(self, keys):
        self._enter("find_indicators")
        self.lookup_sizes.append(len(keys))
        return [
            (self.indicators[k]["id"], k) for k in keys if k in self.indicators
        ]

    def find_releases(self, keys):
        self._enter("find_releases")
        self.lookup_sizes.append(len(keys))
        return [
            (self.releases[k]["id"], k, self.releases[k]["fields"].actual)
            for k in keys
            if k in self.releases
        ]

    def find_releases_on_days(self, keys):
        self._enter("find_releases_on_days")
        self.lookup_sizes.append(len(keys))
        wanted = set(keys)
        return sorted(
            (
                (rec["id"], k, rec["fields"].actual)
                for k, rec in self.releases.items()
                if (k.indicator_id, release_day(k.release_at)) in wanted
            ),
            key=lambda r: r[1].release_at,
        )

    def insert_indicators(self, rows):
        self._enter("insert_indicators")
        with self._lock:
            for key, _ in rows:
                if key in self.indicators:
                    raise ConstraintViolationError(
                        f"duplicate key value violates unique constraint: {key}"
                    )
            out = []
            for key, fields in rows:
                new_id = str(uuid.uuid4())
                self.indicators[key] = {"id": new_id, "fields": fields}
                out.append((new_id, key))
        return out

    def insert_releases(self, rows):
        self._enter("insert_releases")
        with self._lock:
            known = self._indicator_ids()
            for key, _ in rows:
                if key.indicator_id is None or key.indicator_id not in known:
                    raise ConstraintViolationError(
                        f"insert on releases violates foreign key: {key.indicator_id}"
                    )
                if key in self.releases:
                    raise ConstraintViolationError(
                        f"duplicate key value violates unique constraint: {key}"
                    )
            out = []
            for key, fields in rows:
                new_id = str(uuid.uuid4())
                self.releases[key] = {"id": new_id, "fields": fields, "revision_history": []}
                out.append((new_id, key))
        return out

    def update_indicator(self, indicator_id, fields):
        self._enter("update_indicator")
        if indicator_id in self.fail_ids:
            raise StoreError(f"indicator {indicator_id} update failed")
        with self._lock:
            for rec in self.indicators.values():
                if rec["id"] == indicator_id:
                    rec["fields"] = fields
                    return
        raise StoreError(f"indicator {indicator_id} not found")

    def update_release(self, release_id, fields, release_at=None):
        self._enter("update_release")
        if release_id in self.fail_ids:
            raise StoreError(f"release {release_id} update failed")
        with self._lock:
            for key, rec in list(self.releases.items()):
                if rec["id"] == release_id:
                    if release_at is not None and release_at != key.release_at:
                        moved = key._replace(release_at=release_at)
                        if moved in self.releases:
                            raise ConstraintViolationError(
                                f"duplicate key value violates unique constraint: {moved}"
                            )
                        self.releases[moved] = self.releases.pop(key)
                    old = rec["fields"].actual
                    if old is not None and fields.actual != old:
                        rec["revision_history"].append(
                            {"previous_actual": old, "new_actual": fields.actual}
                        )
                    rec["fields"] = fields
                    return
        raise StoreError(f"release {release_id} not found")


class RecordingAudit:
    def __init__(self, fail: bool = False) -> None:
        self.records: list[dict[str, Any]] = []
        self.fail = fail

    def record(self, actor_id, action, resource_type, resource_id, metadata):
        if self.fail:
            raise RuntimeError("audit sink unavailable")
        self.records.append({
            "actor_id": actor_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": metadata,
        })


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def audit() -> RecordingAudit:
    return RecordingAudit()


@pytest.fixture
def failing_audit() -> RecordingAudit:
    return RecordingAudit(fail=True)


@pytest.fixture
def raw_row():
    """Factory for a valid raw release row; keyword overrides replace fields."""

    def _make(**overrides: Any) -> dict[str, Any]:
        row = {
            "indicator_name": "CPI YoY",
            "country_code": "US",
            "category": "Inflation",
            "source_name": "BLS",
            "source_url": "https://www.bls.gov/cpi/",
            "release_at": "2026-01-10T13:30:00Z",
            "period": "Dec 2025",
            "actual": "3.1%",
            "forecast": "3.0%",
            "previous": "2.9%",
            "revised": "",
            "unit": "%",
            "notes": "",
        }
        row.update(overrides)
        return row

    return _make
