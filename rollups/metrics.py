"""Counter vector shared by every rollup table, and the per-event extractor.

Every rollup mutation is a signed `Metrics` delta. Visitors and session
counters are never produced here: they depend on what was seen before the
event and are added by the planner (see `rollups.planner`).
"""

from __future__ import annotations
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Mapping, Optional

PLAIN_FIELDS = (
    "visitors",
    "sessions",
    "bounced_sessions",
    "avg_session_duration_ms",
    "pageviews",
    "goals",
    "revenue",
    "revenue_new",
    "revenue_renewal",
    "revenue_refund",
)
SESSION_FIELDS = ("sessions", "bounced_sessions", "avg_session_duration_ms")
DIMENSION_FIELDS = tuple(f for f in PLAIN_FIELDS if f not in SESSION_FIELDS)

REVENUE_TYPES = ("new", "renewal", "refund")


@dataclass
class Metrics:
    visitors: int = 0
    sessions: int = 0
    bounced_sessions: int = 0
    avg_session_duration_ms: int = 0
    pageviews: int = 0
    goals: int = 0
    revenue: int = 0
    revenue_new: int = 0
    revenue_renewal: int = 0
    revenue_refund: int = 0

    def __add__(self, other: "Metrics") -> "Metrics":
        return Metrics(**{f: getattr(self, f) + getattr(other, f) for f in PLAIN_FIELDS})

    def __neg__(self) -> "Metrics":
        return Metrics(**{f: -getattr(self, f) for f in PLAIN_FIELDS})

    def add(self, other: "Metrics") -> None:
        for f in PLAIN_FIELDS:
            setattr(self, f, getattr(self, f) + getattr(other, f))

    def is_zero(self) -> bool:
        return all(getattr(self, f) == 0 for f in PLAIN_FIELDS)

    def only(self, names: Iterable[str]) -> "Metrics":
        return Metrics(**{f: getattr(self, f) for f in names})

    def as_dict(self, names: Iterable[str] = PLAIN_FIELDS) -> Dict[str, int]:
        return {f: int(getattr(self, f)) for f in names}

    @property
    def revenue_by_type(self) -> Dict[str, int]:
        return {
            "new": self.revenue_new,
            "renewal": self.revenue_renewal,
            "refund": self.revenue_refund,
        }

    @classmethod
    def from_row(cls, row: Mapping[str, Any], names: Iterable[str] = PLAIN_FIELDS) -> "Metrics":
        return cls(**{f: int(row.get(f) or 0) for f in names})


_LEADING_INT = re.compile(r"^\s*([+-]?\d+)")


def parse_amount(metadata: Optional[Mapping[str, Any]]) -> Optional[int]:
    """Integer amount in minor units, or None when missing or unusable."""
    if not metadata:
        return None
    amount = metadata.get("amount")
    if isinstance(amount, bool):
        return None
    if isinstance(amount, int):
        value = amount
    elif isinstance(amount, float):
        if amount != amount or amount in (float("inf"), float("-inf")):
            return None
        value = int(round(amount))
    elif isinstance(amount, str):
        # leading integer prefix, so "1999.50" and "1999 usd" both read as 1999
        match = _LEADING_INT.match(amount)
        if not match:
            return None
        value = int(match.group(1))
    else:
        return None
    if value < 0:
        return None
    return value


def payment_type(metadata: Optional[Mapping[str, Any]]) -> str:
    raw = str((metadata or {}).get("event_type") or "").strip().lower()
    return raw if raw in REVENUE_TYPES else "new"


def metrics_for_event(event_type: str, metadata: Optional[Mapping[str, Any]] = None) -> Metrics:
    m = Metrics()
    if event_type == "pageview":
        m.pageviews = 1
    elif event_type == "goal":
        m.goals = 1
    elif event_type == "payment":
        amount = parse_amount(metadata)
        if amount:
            kind = payment_type(metadata)
            setattr(m, f"revenue_{kind}", amount)
            m.revenue = -amount if kind == "refund" else amount
    return m
