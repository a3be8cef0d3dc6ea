from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from rollups.buckets import (
    DAILY, DIMENSION_DAILY, DIMENSION_HOURLY, HOURLY, TABLES, BucketKey, DimensionKey, daily_key, hourly_key,
)
from rollups.dimensions import extract_dimensions
from rollups.metrics import DIMENSION_FIELDS, Metrics, metrics_for_event
from rollups.sessions import SessionDelta, SessionKey

Key = Union[BucketKey, DimensionKey]


@dataclass
class EventRecord:
    """A stored raw event, as both ingestion paths see it."""

    id: str
    site_id: str
    type: str
    visitor_id: str
    timestamp: int
    name: Optional[str] = None
    session_id: Optional[str] = None
    event_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    normalized: Dict[str, Any] = field(default_factory=dict)
    bot: bool = False
    created_at: Optional[datetime] = None

    @property
    def session_key(self) -> Optional[SessionKey]:
        if self.type != "pageview" or not self.session_id:
            return None
        return SessionKey(self.site_id, self.session_id, self.visitor_id)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "EventRecord":
        normalized = row.get("normalized") if isinstance(row.get("normalized"), dict) else {}
        metadata = row.get("metadata") if isinstance(row.get("metadata"), dict) else {}
        return cls(
            id=str(row["id"]),
            site_id=str(row["site_id"]),
            type=str(row["type"]),
            visitor_id=str(row["visitor_id"]),
            timestamp=int(row["timestamp"]),
            name=row.get("name"),
            session_id=row.get("session_id"),
            event_id=row.get("event_id"),
            metadata=metadata,
            normalized=normalized,
            bot=bool(row.get("bot")) or normalized.get("bot") is True,
            created_at=row.get("created_at"),
        )


class RollupPlan:
    """Signed deltas for one event, coalesced per (table, key).

    Applied as a unit: live ingestion writes it in one transaction, the
    rebuild arena adds it to its accumulators in one call.
    """

    def __init__(self):
        self.deltas: Dict[str, Dict[Key, Metrics]] = {t: {} for t in TABLES}

    def add(self, table: str, key: Key, delta: Metrics) -> None:
        if delta.is_zero():
            return
        bucket = self.deltas[table]
        if key in bucket:
            bucket[key].add(delta)
        else:
            bucket[key] = Metrics() + delta

    def items(self) -> Iterator[Tuple[str, Key, Metrics]]:
        for table in TABLES:
            for key, delta in self.deltas[table].items():
                if not delta.is_zero():
                    yield table, key, delta


def plan_event(event: EventRecord, first_in_day: bool = False, first_in_hour: bool = False,
               session_deltas: Optional[List[SessionDelta]] = None) -> RollupPlan:
    plan = RollupPlan()
    if event.bot:
        return plan

    metrics = metrics_for_event(event.type, event.metadata)
    day = daily_key(event.site_id, event.timestamp)
    hour = hourly_key(event.site_id, event.timestamp)
    visit_day = Metrics(visitors=1 if first_in_day else 0)
    visit_hour = Metrics(visitors=1 if first_in_hour else 0)

    plan.add(DAILY, day, metrics + visit_day)
    plan.add(HOURLY, hour, metrics + visit_hour)

    for delta in session_deltas or []:
        plan.add(DAILY, daily_key(event.site_id, delta.timestamp), delta.metrics)
        plan.add(HOURLY, hourly_key(event.site_id, delta.timestamp), delta.metrics)

    dim_metrics = metrics.only(DIMENSION_FIELDS)
    for dimension, value in extract_dimensions(event.type, event.name, event.normalized):
        plan.add(DIMENSION_DAILY, DimensionKey(event.site_id, day.date, None, dimension, value),
                 dim_metrics + visit_day)
        plan.add(DIMENSION_HOURLY, DimensionKey(event.site_id, hour.date, hour.hour, dimension, value),
                 dim_metrics + visit_hour)
    return plan
