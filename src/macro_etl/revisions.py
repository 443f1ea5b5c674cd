"""macro_etl.revisions

Revision events published after each successful Release update.

The engine does not record revision history (a database trigger does, see
migrations/0002_revision_history.sql).  It only announces what it wrote so
that any interested subscriber can react.  Subscriber failures are logged
and never reach the reconciliation.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from macro_etl.records import ReleaseKey

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseRevision:
    release_id: str
    key: ReleaseKey
    previous_actual: str | None
    new_actual: str | None
    observed_at: datetime

    @property
    def changed(self) -> bool:
        return self.previous_actual != self.new_actual

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_id": self.release_id,
            "indicator_name": self.key.indicator.name,
            "country_code": self.key.indicator.country_code,
            "release_at": self.key.release_at.isoformat(),
            "period": self.key.period,
            "previous_actual": self.previous_actual,
            "new_actual": self.new_actual,
            "observed_at": self.observed_at.isoformat(),
        }


Subscriber = Callable[[ReleaseRevision], None]


class RevisionBus:
    """Fan-out of ReleaseRevision events to registered callables."""

    def __init__(self) -> None:
        self._subscribers: list[Subscriber] = []
        self._lock = threading.Lock()

    def subscribe(self, fn: Subscriber) -> None:
        with self._lock:
            self._subscribers.append(fn)

    def publish(self, event: ReleaseRevision) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
        for fn in subscribers:
            try:
                fn(event)
            except Exception as exc:
                log.warning(
                    "Revision subscriber %r failed for release %s: %s",
                    fn, event.release_id, exc,
                )


class RevisionCollector:
    """Subscriber that keeps every event it sees; handy for reports and tests."""

    def __init__(self, only_changed: bool = False) -> None:
        self.only_changed = only_changed
        self.events: list[ReleaseRevision] = []
        self._lock = threading.Lock()

    def __call__(self, event: ReleaseRevision) -> None:
        if self.only_changed and not event.changed:
            return
        with self._lock:
            self.events.append(event)
