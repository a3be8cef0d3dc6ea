from __future__ import annotations
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from rollups.buckets import datetime_to_ms
from rollups.dedup import record_raw_event
from rollups.errors import ConflictError, StorageError
from rollups.normalize import build_normalized
from rollups.planner import EventRecord, RollupPlan, plan_event
from rollups.raw_log import lock_session, session_pageviews
from rollups.sessions import advance, state_from_pageviews
from rollups.store import RollupStore
from rollups.validation import IngestPayload

logger = logging.getLogger(__name__)


@dataclass
class IngestResult:
    ok: bool = True
    deduped: bool = False
    id: Optional[str] = None
    rows_touched: int = 0

    def to_body(self) -> Dict[str, Any]:
        if self.deduped:
            return {"ok": True, "deduped": True}
        return {"ok": True}


def build_record(site_id: str, payload: IngestPayload, user_agent: Optional[str] = None,
                 headers: Optional[Mapping[str, str]] = None,
                 received_at: Optional[datetime] = None) -> EventRecord:
    received_at = received_at or datetime.now(timezone.utc)
    normalized = build_normalized(payload.model_dump(), user_agent, headers)
    return EventRecord(
        id=str(uuid.uuid4()),
        site_id=site_id,
        type=payload.type,
        visitor_id=payload.visitorId,
        timestamp=payload.event_time_ms(datetime_to_ms(received_at)),
        name=payload.name,
        session_id=payload.session,
        event_id=payload.eventId,
        metadata=dict(payload.metadata or {}),
        normalized=normalized,
        bot=bool(normalized.get("bot")),
        created_at=received_at,
    )


class IngestService:
    """Live path: one validated event, one transaction.

    Raw insert (the dedup gate), visitor presence, session bookkeeping and
    every rollup delta commit together or not at all.
    """

    def __init__(self, engine: Engine, store: Optional[RollupStore] = None):
        self.engine = engine
        self.store = store or RollupStore()

    def ingest(self, site_id: str, payload: IngestPayload, user_agent: Optional[str] = None,
               headers: Optional[Mapping[str, str]] = None,
               received_at: Optional[datetime] = None) -> IngestResult:
        return self.ingest_record(build_record(site_id, payload, user_agent, headers, received_at))

    def ingest_record(self, record: EventRecord) -> IngestResult:
        try:
            with self.engine.begin() as conn:
                record_raw_event(conn, record)
                plan = self._plan_live(conn, record)
                touched = self.store.apply_plan(conn, plan)
        except ConflictError as exc:
            logger.debug("duplicate event ignored", extra={"site_id": exc.site_id, "event_id": exc.event_id})
            return IngestResult(ok=True, deduped=True)
        except SQLAlchemyError as exc:
            logger.exception("ingest storage failure", extra={"site_id": record.site_id, "type": record.type})
            raise StorageError() from exc
        return IngestResult(ok=True, id=record.id, rows_touched=touched)

    def _plan_live(self, conn, record: EventRecord) -> RollupPlan:
        if record.bot:
            return RollupPlan()

        first_day = first_hour = False
        if record.type == "pageview":
            first_day, first_hour = self.store.mark_visitor(conn, record.site_id, record.timestamp,
                                                            record.visitor_id)

        session_deltas = []
        key = record.session_key
        if key is not None:
            lock_session(conn, key)
            prior = state_from_pageviews(session_pageviews(conn, key, exclude_id=record.id))
            _, session_deltas = advance(prior, record.timestamp, record.normalized)

        return plan_event(record, first_day, first_hour, session_deltas)
