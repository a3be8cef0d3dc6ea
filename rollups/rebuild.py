from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, Optional, Union

from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from rollups.buckets import TABLES, Window, resolve_window
from rollups.config import Settings, settings as default_settings
from rollups.errors import RebuildWindowError, StorageError
from rollups.raw_log import advisory_lock, scan_events, session_histories
from rollups.reconcile import diff_rollups
from rollups.retention import cutoff
from rollups.state import RollupArena
from rollups.store import RollupStore

logger = logging.getLogger(__name__)


@dataclass
class RebuildSummary:
    site_id: Optional[str]
    start: date
    end: date
    dry_run: bool
    events_processed: int = 0
    bot_events_skipped: int = 0
    rows: Dict[str, int] = field(default_factory=dict)
    diff: Optional[Dict[str, Any]] = None
    duration_ms: int = 0

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "site_id": self.site_id,
            "from": self.start.isoformat(),
            "to": self.end.isoformat(),
            "dry_run": self.dry_run,
            "events_processed": self.events_processed,
            "bot_events_skipped": self.bot_events_skipped,
            "rows": dict(self.rows),
            "duration_ms": self.duration_ms,
        }
        if self.diff is not None:
            out["diff"] = self.diff
        return out


class RebuildEngine:
    """Recompute a UTC-day window of rollups from the raw log.

    Must not run concurrently with live ingestion into the same window; the
    caller schedules it. Two rebuilds of the same scope serialize on an
    advisory lock on postgres.
    """

    def __init__(self, engine: Engine, settings: Settings = default_settings,
                 store: Optional[RollupStore] = None):
        self.engine = engine
        self.settings = settings
        self.store = store or RollupStore()

    def compute(self, conn: Connection, window: Window) -> RollupArena:
        chunk_size = self.settings.rebuild_chunk_size
        arena = RollupArena(window)
        for event in scan_events(conn, window.site_id, window.start_ms, window.end_ms, chunk_size=chunk_size):
            arena.observe(event)
        arena.settle_sessions(session_histories(conn, arena.session_keys, chunk_size=chunk_size))
        return arena

    def check_retention(self, window: Window, now: Optional[datetime] = None) -> None:
        """Raw events older than the retention are gone, so such a window cannot be recomputed."""
        oldest = cutoff(self.settings.raw_event_retention_days, now or datetime.now(timezone.utc)).date()
        if window.start_date < oldest:
            raise RebuildWindowError(f"Window starts before raw event retention ({oldest.isoformat()})")

    def run(self, site_id: Optional[str], from_ts: Union[datetime, date], to_ts: Union[datetime, date],
            dry_run: bool = False, include_diff: bool = False,
            now: Optional[datetime] = None) -> RebuildSummary:
        window = resolve_window(site_id, from_ts, to_ts)
        self.check_retention(window, now)
        include_diff = include_diff or dry_run
        summary = RebuildSummary(site_id=window.site_id, start=window.start_date, end=window.end_date,
                                 dry_run=dry_run)
        started = time.monotonic()
        logger.info("rollup rebuild started", extra={
            "site_id": window.site_id, "from": summary.start.isoformat(), "to": summary.end.isoformat(),
            "dry_run": dry_run,
        })

        try:
            if dry_run:
                with self.engine.connect() as conn:
                    arena = self.compute(conn, window)
                    expected = arena.snapshot()
                    summary.diff = diff_rollups(expected, self.store.load_window(conn, window),
                                                self.settings.diff_sample_limit)
            else:
                with self.engine.begin() as conn:
                    advisory_lock(conn, f"rebuild:{window.site_id or '*'}")
                    arena = self.compute(conn, window)
                    expected = arena.snapshot()
                    if include_diff:
                        summary.diff = diff_rollups(expected, self.store.load_window(conn, window),
                                                    self.settings.diff_sample_limit)
                    daily_marks, hourly_marks = arena.presence()
                    self.store.replace_window(conn, window, expected, daily_marks, hourly_marks,
                                              chunk_size=self.settings.rebuild_chunk_size)
        except SQLAlchemyError as exc:
            logger.exception("rollup rebuild failed", extra={"site_id": window.site_id})
            raise StorageError() from exc

        summary.events_processed = arena.events_processed
        summary.bot_events_skipped = arena.bot_events_skipped
        summary.rows = {t: len(expected[t]) for t in TABLES}
        summary.duration_ms = int((time.monotonic() - started) * 1000)

        logger.info("rollup rebuild finished", extra={
            "site_id": window.site_id, "events_processed": summary.events_processed,
            "bot_events_skipped": summary.bot_events_skipped, "rows": summary.rows,
            "duration_ms": summary.duration_ms,
        })
        if summary.diff and summary.diff["mismatches"]:
            logger.warning("rollup reconciliation mismatches", extra={
                "site_id": window.site_id, "mismatches": summary.diff["mismatches"],
            })
        return summary
