from datetime import date, datetime, timedelta, timezone

import pytest
from sqlalchemy import update

from conftest import DAY, SITE_ID
from rollups.buckets import DAILY, DIMENSION_HOURLY, TABLES, BucketKey
from rollups.errors import RebuildWindowError
from rollups.models import RollupDaily
from rollups.rebuild import RebuildEngine

NEXT_DAY = DAY + timedelta(days=1)

def _traffic(ingest, at):
    ingest(visitorId="a", sessionId="s1", ts=at(9), referrer="https://www.google.com/")
    ingest(visitorId="a", sessionId="s1", ts=at(9, 7), path="/pricing")
    ingest(visitorId="b", sessionId="s2", ts=at(10), headers={"x-country": "DE"})
    ingest(visitorId="b", sessionId="s2", ts=at(11, 20), headers={"x-country": "DE"})
    ingest(visitorId="c", sessionId="s3", ts=at(14, 10))
    ingest(visitorId="c", sessionId="s3", ts=at(13, 55))  # late arrival, earlier hour
    ingest(visitorId="b", type="goal", name="signup", ts=at(11, 30))
    ingest(visitorId="b", type="payment", ts=at(11, 31), metadata={"amount": 4900, "event_type": "new"})
    ingest(visitorId="a", type="payment", ts=at(15), metadata={"amount": 900, "event_type": "refund"})
    ingest(visitorId="d", ts=at(12), user_agent="curl/8.0")

def test_live_and_rebuilt_rollups_reconcile(engine, settings, ingest, at):
    _traffic(ingest, at)
    summary = RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY, dry_run=True)
    assert summary.diff["mismatches"] == 0, summary.diff["sample"]
    assert summary.events_processed == 9
    assert summary.bot_events_skipped == 1
    assert summary.rows[DAILY] == 1
    assert summary.to_dict()["dry_run"] is True

def test_diff_reports_drift_and_rebuild_repairs_it(engine, settings, ingest, stored, at):
    _traffic(ingest, at)
    with engine.begin() as conn:
        conn.execute(update(RollupDaily.__table__).values(pageviews=RollupDaily.__table__.c.pageviews + 5))

    rebuild = RebuildEngine(engine, settings)
    dry = rebuild.run(SITE_ID, DAY, NEXT_DAY, dry_run=True)
    assert dry.diff["mismatches"] == 1
    sample = dry.diff["sample"][0]
    assert sample["table"] == DAILY and sample["field"] == "pageviews"
    assert sample["stored"] - sample["expected"] == 5
    assert dry.diff["tables"][DAILY]["mismatched_rows"] == 1

    real = rebuild.run(SITE_ID, DAY, NEXT_DAY, include_diff=True)
    assert real.diff["mismatches"] == 1
    assert rebuild.run(SITE_ID, DAY, NEXT_DAY, dry_run=True).diff["mismatches"] == 0
    assert stored()[DAILY][BucketKey(SITE_ID, DAY, None)].pageviews == 6

def test_rebuild_is_idempotent(engine, settings, ingest, stored, at):
    _traffic(ingest, at)
    before = stored()
    rebuild = RebuildEngine(engine, settings)
    first = rebuild.run(SITE_ID, DAY, NEXT_DAY)
    second = rebuild.run(SITE_ID, DAY, NEXT_DAY)
    assert first.rows == second.rows
    assert stored() == before
    assert first.diff is None

def test_live_ingest_after_rebuild_keeps_visitor_presence(engine, settings, ingest, stored, at):
    _traffic(ingest, at)
    RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY)
    ingest(visitorId="a", ts=at(16))
    assert stored()[DAILY][BucketKey(SITE_ID, DAY, None)].visitors == 3
    assert RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY, dry_run=True).diff["mismatches"] == 0

def test_rebuild_restores_deleted_rollups(engine, settings, ingest, stored, at):
    _traffic(ingest, at)
    expected = stored()
    with engine.begin() as conn:
        conn.execute(RollupDaily.__table__.delete())
    summary = RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY, include_diff=True)
    assert summary.diff["tables"][DAILY]["missing_rows"] == 1
    assert stored() == expected

def test_rebuild_only_touches_the_window(engine, settings, ingest, stored, at):
    _traffic(ingest, at)
    ingest(visitorId="z", ts=at(10) + 86400000)
    next_day = stored(NEXT_DAY)
    RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY)
    assert stored(NEXT_DAY) == next_day
    assert next_day[DAILY][BucketKey(SITE_ID, NEXT_DAY, None)].pageviews == 1

def test_session_straddling_midnight_is_attributed_like_live(engine, settings, ingest, stored, at):
    late = at(23, 50) - 86400000  # previous day
    ingest(visitorId="m", sessionId="night", ts=late)
    ingest(visitorId="m", sessionId="night", ts=at(0, 10))
    summary = RebuildEngine(engine, settings).run(SITE_ID, DAY, NEXT_DAY, dry_run=True)
    assert summary.diff["mismatches"] == 0
    daily = stored()[DAILY][BucketKey(SITE_ID, DAY, None)]
    assert daily.sessions == 0 and daily.pageviews == 1

def test_empty_window_is_rejected(engine, settings):
    with pytest.raises(RebuildWindowError):
        RebuildEngine(engine, settings).run(SITE_ID, DAY, DAY)

def test_all_sites_rebuild_writes_every_table(engine, settings, ingest, at):
    _traffic(ingest, at)
    summary = RebuildEngine(engine, settings).run(None, DAY, date(2026, 2, 8))
    assert set(summary.rows) == set(TABLES)
    assert summary.rows[DIMENSION_HOURLY] > 0

def test_session_spanning_days_reconciles_from_either_end(engine, settings, ingest, stored, at):
    start_day = DAY - timedelta(days=2)
    ingest(visitorId="z", sessionId="long", ts=at(12) - 2 * 86400000)
    ingest(visitorId="z", sessionId="long", ts=at(12))
    rebuild = RebuildEngine(engine, settings)
    assert rebuild.run(SITE_ID, DAY, NEXT_DAY, dry_run=True).diff["mismatches"] == 0
    assert rebuild.run(SITE_ID, start_day, DAY, dry_run=True).diff["mismatches"] == 0

    rebuild.run(SITE_ID, DAY, NEXT_DAY)
    rebuild.run(SITE_ID, start_day, DAY)
    assert stored()[DAILY][BucketKey(SITE_ID, DAY, None)].sessions == 0
    opened = stored(start_day)[DAILY][BucketKey(SITE_ID, start_day, None)]
    assert (opened.sessions, opened.bounced_sessions) == (1, 0)
    assert opened.avg_session_duration_ms == 48 * 3600 * 1000

def test_window_older_than_raw_retention_is_rejected(engine, settings, ingest, stored, at):
    ingest(ts=at(9))
    before = stored()
    short = settings.model_copy(update={"raw_event_retention_days": 90})
    later = datetime(2026, 6, 1, tzinfo=timezone.utc)
    with pytest.raises(RebuildWindowError):
        RebuildEngine(engine, short).run(SITE_ID, DAY, NEXT_DAY, now=later)
    assert stored() == before
    summary = RebuildEngine(engine, short).run(SITE_ID, DAY, NEXT_DAY, dry_run=True,
                                               now=datetime(2026, 3, 1, tzinfo=timezone.utc))
    assert summary.diff["mismatches"] == 0
