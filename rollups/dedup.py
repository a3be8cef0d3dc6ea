"""Dedup gate: the unique (site_id, event_id) constraint on raw_events is the
single authority on whether an event was already processed."""

from __future__ import annotations
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from rollups.errors import ConflictError
from rollups.planner import EventRecord
from rollups.raw_log import insert_event

UNIQUE_VIOLATION = "23505"


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = getattr(exc, "orig", None)
    if getattr(orig, "pgcode", None) == UNIQUE_VIOLATION:
        return True
    return "unique" in str(orig).lower()


def record_raw_event(conn: Connection, record: EventRecord) -> None:
    """Insert the raw event, or raise ConflictError if its event id was seen.

    Must run inside the transaction that applies the event's rollup deltas so
    the two commit or roll back together.
    """
    try:
        insert_event(conn, record)
    except IntegrityError as exc:
        if record.event_id and is_unique_violation(exc):
            raise ConflictError(record.site_id, record.event_id) from exc
        raise
