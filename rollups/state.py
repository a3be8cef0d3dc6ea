from __future__ import annotations
from typing import Dict, List, Set, Tuple

from rollups.buckets import DAILY, HOURLY, Window, bucket_of, daily_key, hourly_key
from rollups.metrics import Metrics
from rollups.planner import EventRecord, Key, plan_event
from rollups.sessions import Pageview, SessionCorrelator, SessionKey
from rollups.store import RollupSet, empty_rollups


class RollupArena:
    """In-memory accumulators for one rebuild pass.

    Fed the window's events in receipt order, it makes the same presence and
    planning decisions live ingestion makes. Session contributions are settled
    afterwards from each session's full pageview history, so its snapshot is
    what the store should hold for the window.
    """

    def __init__(self, window: Window):
        self.window = window
        self.rollups: RollupSet = empty_rollups()
        self.visitors_daily: Set[Tuple] = set()
        self.visitors_hourly: Set[Tuple] = set()
        self.sessions = SessionCorrelator()
        self.session_keys: Set[SessionKey] = set()
        self.events_scanned = 0
        self.events_processed = 0
        self.bot_events_skipped = 0

    def _accumulate(self, table: str, key: Key, delta: Metrics) -> None:
        acc = self.rollups[table]
        if key in acc:
            acc[key].add(delta)
        else:
            acc[key] = Metrics() + delta

    def observe(self, event: EventRecord) -> None:
        self.events_scanned += 1
        if event.bot:
            self.bot_events_skipped += 1
            return
        self.events_processed += 1

        first_day = first_hour = False
        if event.type == "pageview":
            d, h = bucket_of(event.timestamp)
            day_mark = (event.site_id, d, event.visitor_id)
            hour_mark = (event.site_id, d, h, event.visitor_id)
            first_day = day_mark not in self.visitors_daily
            first_hour = hour_mark not in self.visitors_hourly
            self.visitors_daily.add(day_mark)
            self.visitors_hourly.add(hour_mark)

        if event.session_key is not None:
            self.session_keys.add(event.session_key)

        for table, bucket_key, delta in plan_event(event, first_day, first_hour).items():
            self._accumulate(table, bucket_key, delta)

    def settle_sessions(self, histories: Dict[SessionKey, List[Pageview]]) -> None:
        """Replay every collected session from its complete history."""
        for key in self.session_keys:
            for delta in self.sessions.replay(key, histories.get(key, [])):
                self._accumulate(DAILY, daily_key(key.site_id, delta.timestamp), delta.metrics)
                self._accumulate(HOURLY, hourly_key(key.site_id, delta.timestamp), delta.metrics)

    def snapshot(self) -> RollupSet:
        """Non-zero rows whose bucket date falls inside the window."""
        out = empty_rollups()
        for table, rows in self.rollups.items():
            for key, metrics in rows.items():
                if self.window.contains_date(key.date) and not metrics.is_zero():
                    out[table][key] = metrics
        return out

    def presence(self) -> Tuple[Set[Tuple], Set[Tuple]]:
        return set(self.visitors_daily), set(self.visitors_hourly)
