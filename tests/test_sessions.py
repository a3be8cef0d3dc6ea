from datetime import datetime, timezone

from rollups.metrics import Metrics
from rollups.sessions import SessionCorrelator, SessionKey, advance, state_from_pageviews

def _ms(h, m=0):
    return int(datetime(2026, 2, 7, h, m, tzinfo=timezone.utc).timestamp() * 1000)

KEY = SessionKey("site-1", "s1", "v1")

def test_first_pageview_opens_bounced_session():
    state, deltas = advance(None, _ms(12))
    assert state.pageviews == 1 and state.bounced
    assert len(deltas) == 1
    assert deltas[0].metrics == Metrics(sessions=1, bounced_sessions=1)

def test_second_pageview_clears_bounce_and_adds_duration():
    corr = SessionCorrelator()
    corr.observe(KEY, _ms(12, 0))
    deltas = corr.observe(KEY, _ms(12, 10))
    assert len(deltas) == 1
    assert deltas[0].metrics == Metrics(bounced_sessions=-1, avg_session_duration_ms=600000)
    assert corr.get(KEY).duration_ms == 600000

    deltas = corr.observe(KEY, _ms(12, 5))
    assert deltas == []

def test_earlier_pageview_in_another_hour_moves_the_session():
    corr = SessionCorrelator()
    corr.observe(KEY, _ms(13, 10))
    deltas = corr.observe(KEY, _ms(12, 50))
    assert len(deltas) == 2
    retract, apply = deltas
    assert retract.timestamp == _ms(13, 10)
    assert retract.metrics == Metrics(sessions=-1, bounced_sessions=-1)
    assert apply.timestamp == _ms(12, 50)
    assert apply.metrics == Metrics(sessions=1, avg_session_duration_ms=20 * 60 * 1000)

def test_state_from_pageviews_keeps_the_earliest_context():
    views = [(_ms(12, 30), {"country": "US", "device": "desktop"}), (_ms(12, 10), {"country": "DE"}),
             (_ms(12, 40), None)]
    rebuilt = state_from_pageviews(views)
    assert (rebuilt.pageviews, rebuilt.first_timestamp, rebuilt.last_timestamp) == (3, _ms(12, 10), _ms(12, 40))
    assert rebuilt.first_context["country"] == "DE"
    assert rebuilt.first_context["device"] is None
    assert state_from_pageviews([]) is None

def test_replay_nets_to_the_final_contribution():
    corr = SessionCorrelator()
    deltas = corr.replay(KEY, [(_ms(15), None), (_ms(13), None), (_ms(12, 30), None)])
    per_hour = {}
    for d in deltas:
        hour = datetime.fromtimestamp(d.timestamp / 1000, timezone.utc).hour
        per_hour[hour] = per_hour.get(hour, Metrics()) + d.metrics
    assert per_hour[12] == Metrics(sessions=1, avg_session_duration_ms=150 * 60 * 1000)
    assert per_hour[13].is_zero() and per_hour[15].is_zero()
    assert len(corr) == 1
