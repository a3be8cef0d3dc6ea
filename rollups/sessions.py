"""Session Correlator.

A session is keyed by (site, session, visitor) and built from pageviews only.
Its whole contribution (sessions, bounce, duration) lives in the bucket that
contains its first pageview. `advance` returns the signed deltas that move
the rollups from the old contribution to the new one:

* first pageview: sessions+1, bounced+1 at the event's bucket
* later pageview, same start bucket: bounced-1 on the 1->2 transition and
  the duration difference
* start moves to another hour (only on out-of-order arrival): the full
  previous contribution is retracted from the old bucket and the full new
  contribution applied to the new one, as one pair of deltas
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from rollups.buckets import same_hour
from rollups.metrics import Metrics

CONTEXT_KEYS = ("country", "region", "city", "device", "browser")

Pageview = Tuple[int, Optional[Dict[str, Any]]]


class SessionKey(NamedTuple):
    site_id: str
    session_id: str
    visitor_id: str


@dataclass
class SessionState:
    pageviews: int
    first_timestamp: int
    last_timestamp: int
    first_context: Dict[str, Any] = field(default_factory=dict)  # geo/device/browser of the earliest pageview

    @property
    def duration_ms(self) -> int:
        return max(0, self.last_timestamp - self.first_timestamp)

    @property
    def bounced(self) -> bool:
        return self.pageviews == 1

    def contribution(self) -> Metrics:
        return Metrics(
            sessions=1,
            bounced_sessions=1 if self.bounced else 0,
            avg_session_duration_ms=self.duration_ms,
        )


@dataclass(frozen=True)
class SessionDelta:
    timestamp: int  # any instant inside the target bucket
    metrics: Metrics


def session_context(normalized: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    normalized = normalized or {}
    return {k: normalized.get(k) for k in CONTEXT_KEYS}


def advance(state: Optional[SessionState], ts: int,
            normalized: Optional[Dict[str, Any]] = None) -> Tuple[SessionState, List[SessionDelta]]:
    """Apply one pageview at `ts` to a session. Pure: `state` is not mutated."""
    if state is None:
        opened = SessionState(1, ts, ts, session_context(normalized))
        return opened, [SessionDelta(ts, opened.contribution())]

    earlier = ts < state.first_timestamp
    nxt = SessionState(
        pageviews=state.pageviews + 1,
        first_timestamp=ts if earlier else state.first_timestamp,
        last_timestamp=max(state.last_timestamp, ts),
        first_context=session_context(normalized) if earlier else dict(state.first_context),
    )

    if not same_hour(state.first_timestamp, nxt.first_timestamp):
        return nxt, [
            SessionDelta(state.first_timestamp, -state.contribution()),
            SessionDelta(nxt.first_timestamp, nxt.contribution()),
        ]

    delta = nxt.contribution() + (-state.contribution())
    if delta.is_zero():
        return nxt, []
    return nxt, [SessionDelta(nxt.first_timestamp, delta)]


def state_from_pageviews(pageviews: Iterable[Pageview]) -> Optional[SessionState]:
    """Rebuild a session's state from its stored (timestamp, normalized) pageviews."""
    state: Optional[SessionState] = None
    for ts, normalized in pageviews:
        state, _ = advance(state, int(ts), normalized)
    return state


class SessionCorrelator:
    """Open-session map for one rebuild pass. Never shared between passes.

    Sessions are replayed from their complete pageview history, so a session
    is attributed the same way whichever window is being rebuilt.
    """

    def __init__(self):
        self._open: Dict[SessionKey, SessionState] = {}

    def observe(self, key: SessionKey, ts: int,
                normalized: Optional[Dict[str, Any]] = None) -> List[SessionDelta]:
        state, deltas = advance(self._open.get(key), ts, normalized)
        self._open[key] = state
        return deltas

    def replay(self, key: SessionKey, pageviews: Iterable[Pageview]) -> List[SessionDelta]:
        """Feed a whole history; returns every delta, which net out per bucket."""
        deltas: List[SessionDelta] = []
        for ts, normalized in pageviews:
            deltas.extend(self.observe(key, int(ts), normalized))
        return deltas

    def get(self, key: SessionKey) -> Optional[SessionState]:
        return self._open.get(key)

    def __len__(self) -> int:
        return len(self._open)
