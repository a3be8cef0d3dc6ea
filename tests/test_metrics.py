from rollups.metrics import Metrics, metrics_for_event, parse_amount

def test_pageview_and_goal_counters():
    assert metrics_for_event("pageview") == Metrics(pageviews=1)
    assert metrics_for_event("goal") == Metrics(goals=1)
    assert metrics_for_event("identify").is_zero()

def test_payment_revenue_is_net_of_refunds():
    new = metrics_for_event("payment", {"amount": 1999, "event_type": "new"})
    renewal = metrics_for_event("payment", {"amount": "500", "event_type": "renewal"})
    refund = metrics_for_event("payment", {"amount": 300, "event_type": "refund"})
    total = new + renewal + refund
    assert total.revenue == 1999 + 500 - 300
    assert total.revenue_by_type == {"new": 1999, "renewal": 500, "refund": 300}

def test_payment_without_event_type_counts_as_new():
    m = metrics_for_event("payment", {"amount": 100})
    assert m.revenue_new == 100 and m.revenue == 100

def test_unusable_amounts_degrade_to_zero():
    assert parse_amount({"amount": "1999.50"}) == 1999
    assert parse_amount({"amount": "abc"}) is None
    assert parse_amount({"amount": -5}) is None
    assert parse_amount({"amount": True}) is None
    assert metrics_for_event("payment", {"amount": "n/a"}).is_zero()
    assert metrics_for_event("payment", {}).is_zero()

def test_negation_and_zero():
    m = Metrics(sessions=1, bounced_sessions=1)
    assert (m + -m).is_zero()
