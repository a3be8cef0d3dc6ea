from __future__ import annotations
from typing import Dict, Iterable, Iterator, List, Optional

from sqlalchemy import insert, select, text
from sqlalchemy.engine import Connection

from rollups.models import RawEvent
from rollups.planner import EventRecord
from rollups.sessions import Pageview, SessionKey

raw_events = RawEvent.__table__


def insert_event(conn: Connection, record: EventRecord) -> None:
    conn.execute(insert(raw_events).values(**{
        "id": record.id,
        "site_id": record.site_id,
        "event_id": record.event_id,
        "type": record.type,
        "name": record.name,
        "visitor_id": record.visitor_id,
        "session_id": record.session_id,
        "timestamp": record.timestamp,
        "metadata": record.metadata or {},
        "normalized": record.normalized or {},
        "bot": bool(record.bot),
        "created_at": record.created_at,
    }))


def _record(row) -> EventRecord:
    return EventRecord.from_row(dict(row))


def advisory_lock(conn: Connection, name: str) -> None:
    """Transaction-scoped lock on postgres; a no-op elsewhere (sqlite serializes writers)."""
    if conn.dialect.name == "postgresql":
        conn.execute(text("SELECT pg_advisory_xact_lock(hashtext(:name))"), {"name": name})


def lock_session(conn: Connection, key: SessionKey) -> None:
    advisory_lock(conn, f"session:{key.site_id}:{key.session_id}:{key.visitor_id}")


def _session_pageviews_stmt():
    return (
        select(raw_events.c.site_id, raw_events.c.session_id, raw_events.c.visitor_id,
               raw_events.c.timestamp, raw_events.c.normalized)
        .where(raw_events.c.type == "pageview")
        .where(raw_events.c.bot.is_(False))
        .order_by(raw_events.c.created_at, raw_events.c.id)
    )


def session_pageviews(conn: Connection, key: SessionKey,
                      exclude_id: Optional[str] = None) -> List[Pageview]:
    stmt = (
        _session_pageviews_stmt()
        .where(raw_events.c.site_id == key.site_id)
        .where(raw_events.c.session_id == key.session_id)
        .where(raw_events.c.visitor_id == key.visitor_id)
    )
    if exclude_id is not None:
        stmt = stmt.where(raw_events.c.id != exclude_id)
    return [(int(r.timestamp), r.normalized or {}) for r in conn.execute(stmt)]


def session_histories(conn: Connection, keys: Iterable[SessionKey],
                      chunk_size: int = 500) -> Dict[SessionKey, List[Pageview]]:
    """Every stored non-bot pageview of each session, whatever its event time."""
    wanted = set(keys)
    by_site: Dict[str, List[str]] = {}
    for key in wanted:
        by_site.setdefault(key.site_id, []).append(key.session_id)

    out: Dict[SessionKey, List[Pageview]] = {key: [] for key in wanted}
    for site_id, session_ids in by_site.items():
        session_ids = sorted(set(session_ids))
        for i in range(0, len(session_ids), chunk_size):
            stmt = (
                _session_pageviews_stmt()
                .where(raw_events.c.site_id == site_id)
                .where(raw_events.c.session_id.in_(session_ids[i:i + chunk_size]))
            )
            for r in conn.execute(stmt):
                key = SessionKey(r.site_id, r.session_id, r.visitor_id)
                if key in out:
                    out[key].append((int(r.timestamp), r.normalized or {}))
    return out


def has_pageview(conn: Connection, site_id: str, visitor_id: str) -> bool:
    stmt = (
        select(raw_events.c.id)
        .where(raw_events.c.site_id == site_id)
        .where(raw_events.c.visitor_id == visitor_id)
        .where(raw_events.c.type == "pageview")
        .limit(1)
    )
    return conn.execute(stmt).first() is not None


def scan_events(conn: Connection, site_id: Optional[str], start_ms: int, end_ms: int,
                chunk_size: int = 500) -> Iterator[EventRecord]:
    """Raw events with start_ms <= timestamp < end_ms, in receipt order."""
    stmt = (
        select(raw_events)
        .where(raw_events.c.timestamp >= start_ms)
        .where(raw_events.c.timestamp < end_ms)
        .order_by(raw_events.c.created_at, raw_events.c.id)
    )
    if site_id:
        stmt = stmt.where(raw_events.c.site_id == site_id)
    result = conn.execute(stmt.execution_options(yield_per=chunk_size))
    for row in result.mappings():
        yield _record(row)


def get_event(conn: Connection, site_id: str, event_id: str) -> Optional[EventRecord]:
    row = conn.execute(
        select(raw_events).where(raw_events.c.site_id == site_id).where(raw_events.c.event_id == event_id)
    ).mappings().first()
    return _record(row) if row else None
