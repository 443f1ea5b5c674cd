"""macro_etl.audit

Audit boundary.

record_audit() is fire-and-forget: a failing sink is logged and ignored so
that auditing can never fail a reconciliation that already happened.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import psycopg
from psycopg.types.json import Jsonb

log = logging.getLogger(__name__)

VALID_ACTIONS = frozenset({"upload", "sync"})


class AuditSink(Protocol):
    def record(
        self,
        actor_id: str | None,
        action: str,
        resource_type: str,
        resource_id: str | None,
        metadata: dict[str, Any],
    ) -> None: ...


class PostgresAuditLog:
    """Writes one audit_log row per call on a short-lived connection."""

    def __init__(self, db_dsn: str) -> None:
        self._dsn = db_dsn

    def record(
        self,
        actor_id: str | None,
        action: str,
        resource_type: str,
        resource_id: str | None,
        metadata: dict[str, Any],
    ) -> None:
        with psycopg.connect(self._dsn, autocommit=True) as conn:
            conn.execute(
                """
                INSERT INTO audit_log
                  (actor_id, action, resource_type, resource_id, metadata)
                VALUES (%s, %s, %s, %s, %s)
                """,
                (actor_id, action, resource_type, resource_id, Jsonb(metadata)),
            )


def record_audit(
    sink: AuditSink | None,
    actor_id: str | None,
    action: str,
    resource_type: str,
    resource_id: str | None,
    metadata: dict[str, Any],
) -> bool:
    """Send one audit record.  Returns False (after logging) if it failed."""
    if sink is None:
        return False
    if action not in VALID_ACTIONS:
        log.warning("Skipping audit record with unknown action %r", action)
        return False
    try:
        sink.record(actor_id, action, resource_type, resource_id, metadata)
    except Exception as exc:
        log.warning("Audit record for %s/%s failed: %s", action, resource_type, exc)
        return False
    return True
